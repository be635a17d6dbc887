"""Outcome type for operations whose failures the caller is expected to handle.

Stage writes, count lookups and catalog fetches return a Result instead of
raising. ``error_code`` is what the routers map to an HTTP status; ``source``
names the fallback strategy that produced the value, if any.
"""

from dataclasses import dataclass, replace
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    source: Optional[str] = None

    @classmethod
    def success(cls, value: T, source: Optional[str] = None) -> "Result[T]":
        return cls(ok=True, value=value, source=source)

    @classmethod
    def failure(cls, error: str, code: str = "unknown") -> "Result[T]":
        return cls(ok=False, error=error, error_code=code)

    def served_by(self, source: str) -> "Result[T]":
        return replace(self, source=source)

    def unwrap_or(self, default: T) -> T:
        if not self.ok:
            return default
        return self.value
