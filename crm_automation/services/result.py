from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

CONFLICT = "conflict"
NOT_FOUND = "not_found"


@dataclass
class Result(Generic[T]):
    """Outcome of a state write that callers branch on instead of catching."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @staticmethod
    def conflict(conversation_id: int, detail: Optional[str] = None) -> "Result[T]":
        """Another writer moved ``state_version`` first."""
        return Result.failure(detail or f"Conversation {conversation_id} changed concurrently", CONFLICT)

    @staticmethod
    def not_found(conversation_id: int) -> "Result[T]":
        return Result.failure(f"Conversation {conversation_id} not found", NOT_FOUND)

    @property
    def is_conflict(self) -> bool:
        return not self.ok and self.error_code == CONFLICT
