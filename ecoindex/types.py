"""Core data types and errors for ecoindex."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class Status(str, Enum):
    """Outcome of processing one audio file."""

    OK = "ok"
    BAD_AUDIO = "bad_audio"
    ERROR = "error"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a computed value or the reason it could not be computed."""

    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, reason: str) -> "Outcome[T]":
        return cls(error=reason)


class EcoIndexError(Exception):
    """Base class for errors surfaced to the user as a failing run."""


class PipelineValidationError(EcoIndexError):
    """Input rejected before any file was processed."""


class UnknownIndexError(PipelineValidationError):
    """One or more requested index names are not registered."""

    def __init__(self, unknown: list[str], valid: list[str]):
        self.unknown = unknown
        self.valid = valid
        super().__init__(
            f"Invalid index name(s): {', '.join(unknown)}. "
            f"Valid indices are: {', '.join(valid)}."
        )


class CheckpointError(EcoIndexError):
    """A batch partition could not be written or read back intact."""


class SchedulerError(EcoIndexError):
    """A batch did not yield exactly one record per dispatched file."""
