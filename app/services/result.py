from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of one pipeline stage.

    ``skipped`` marks a stage that was intentionally not attempted (disabled
    feature, incomplete configuration); it is neither a success nor a failure.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    skipped: bool = False

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @staticmethod
    def skip(reason: str, code: str = "skipped") -> "Result[T]":
        return Result(ok=False, error=reason, error_code=code, skipped=True)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    @property
    def status(self) -> str:
        if self.ok:
            return "ok"
        if self.skipped:
            return f"skipped:{self.error_code}"
        return f"failed:{self.error_code}"

    def to_log(self) -> dict[str, Any]:
        return {"status": self.status, "error": self.error}
