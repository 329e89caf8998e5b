import pytest

from crm_automation.services.state_machine import (
    InvalidTransitionError,
    QualificationStage,
    can_transition,
    close,
    quote,
    transition,
)


class TestValidTransitions:
    def test_new_to_asking(self):
        assert transition(QualificationStage.NEW, QualificationStage.ASKING) == QualificationStage.ASKING

    def test_field_collected_loops(self):
        result = transition(QualificationStage.FIELD_COLLECTED, QualificationStage.FIELD_COLLECTED)
        assert result == QualificationStage.FIELD_COLLECTED

    def test_ready_to_quoted(self):
        assert transition(QualificationStage.READY_FOR_QUOTE, QualificationStage.QUOTED) == QualificationStage.QUOTED

    def test_quoted_to_done(self):
        assert close(QualificationStage.QUOTED) == QualificationStage.DONE


class TestInvalidTransitions:
    def test_quoted_cannot_go_back_to_field_collected(self):
        with pytest.raises(InvalidTransitionError):
            transition(QualificationStage.QUOTED, QualificationStage.FIELD_COLLECTED)

    def test_done_cannot_collect_fields(self):
        with pytest.raises(InvalidTransitionError):
            transition(QualificationStage.DONE, QualificationStage.FIELD_COLLECTED)

    def test_ready_cannot_collect_more(self):
        assert can_transition(QualificationStage.READY_FOR_QUOTE, QualificationStage.FIELD_COLLECTED) is False


class TestHelperFunctions:
    @pytest.mark.parametrize("stage", list(QualificationStage))
    def test_requalify_possible_from_any_stage(self, stage):
        assert can_transition(stage, QualificationStage.ASKING) is True

    @pytest.mark.parametrize("stage", list(QualificationStage))
    def test_quote_forced_from_any_stage(self, stage):
        assert quote(stage) == QualificationStage.QUOTED

    @pytest.mark.parametrize("stage", list(QualificationStage))
    def test_close_from_any_stage(self, stage):
        assert close(stage) == QualificationStage.DONE
