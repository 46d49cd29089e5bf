"""Explicit success/failure container returned by core operations."""
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Outcome(Generic[T, E]):
    """Either a value or an error, never both."""
    value: Optional[T] = None
    error: Optional[E] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None) -> "Outcome[T, E]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: E) -> "Outcome[T, E]":
        return cls(error=error)
