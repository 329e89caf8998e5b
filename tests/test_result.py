from crm_automation.services.result import CONFLICT, NOT_FOUND, Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success({"stage": "ASKING"})
        assert result.ok is True
        assert result.value == {"stage": "ASKING"}
        assert result.error is None
        assert result.is_conflict is False


class TestResultFailure:
    def test_failure_default_code(self):
        assert Result.failure("boom").error_code == "unknown"

    def test_not_found(self):
        result = Result.not_found(4)
        assert result.ok is False
        assert result.error_code == NOT_FOUND
        assert result.error == "Conversation 4 not found"
        assert result.is_conflict is False

    def test_conflict_default_message(self):
        result = Result.conflict(7)
        assert result.error_code == CONFLICT
        assert result.error == "Conversation 7 changed concurrently"
        assert result.is_conflict is True

    def test_conflict_with_detail(self):
        assert Result.conflict(7, "Version mismatch: expected 1, found 2").error.startswith("Version mismatch")

