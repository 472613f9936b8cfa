"""Explicit outcome values returned by the progress engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar, cast

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Expected, recoverable reasons an engine operation can be refused."""

    NOT_FOUND = "NotFound"
    INVALID_INPUT = "InvalidInput"
    INVALID_PROGRESSION = "InvalidProgression"
    QUALITY_GATE_BLOCKED = "QualityGateBlocked"
    CRITICAL_NCR_BLOCKED = "CriticalNcrBlocked"
    WRONG_STEP = "WrongStep"
    ALREADY_TERMINAL = "AlreadyTerminal"
    COATING_OUTSTANDING = "CoatingOutstanding"
    CONCURRENCY_CONFLICT = "ConcurrencyConflict"


class EngineError(Exception):
    """Raised inside the engine; converted to a failed :class:`Result`."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


@dataclass(slots=True, frozen=True)
class Failure:
    kind: ErrorKind
    message: str


@dataclass(slots=True, frozen=True)
class Result(Generic[T]):
    """Success with a value, or failure with a :class:`Failure`."""

    value: Optional[T] = None
    error: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    def unwrap(self) -> T:
        if self.error is not None:
            raise EngineError(self.error.kind, self.error.message)
        return cast(T, self.value)

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result[T]":
        return cls(error=Failure(kind=kind, message=message))


__all__ = ["ErrorKind", "EngineError", "Failure", "Result"]
