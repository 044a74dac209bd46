from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a business rule that the caller must show to a human.

    Expected refusals (already exited, blocked close) are failures with a
    stable ``error_code``; ``details`` carries extra payload for the response.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown", **details: Any) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, details=details)

    def to_error_body(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error_code, "message": self.error, **self.details}
