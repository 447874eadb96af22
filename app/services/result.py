from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

TRANSIENT = "transient"
PERMANENT = "permanent"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = TRANSIENT) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @property
    def is_transient(self) -> bool:
        return not self.ok and self.error_code == TRANSIENT

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
