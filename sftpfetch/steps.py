"""Step results and fault types shared by the transfer driver and backends.

Every non-blocking primitive a backend exposes returns one of three
results:

- :class:`Complete` — the operation finished and carries its value.
- :class:`WouldBlock` — the library is not ready; retry the *same*
  operation once the socket is ready in the given direction(s).
- :class:`Fault` — the operation failed and the transfer must tear down.

The driver turns a :class:`Fault` into a :class:`TransferError` that is
handed to the caller's completion callback.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, Flag, auto
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Direction(Flag):
    """Socket readiness a would-block result is waiting for."""

    READ = auto()
    WRITE = auto()


class FaultKind(Enum):
    """Category of a terminal transfer failure."""

    RESOLVE = auto()
    CONNECT = auto()
    HANDSHAKE = auto()
    AUTHENTICATION = auto()
    SUBSYSTEM_INIT = auto()
    FILE_OPEN = auto()
    READ = auto()
    DESTINATION = auto()
    CANCELLED = auto()
    TIMEOUT = auto()


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Complete(Generic[T]):
    """The step finished; *value* is whatever the primitive produced."""

    value: T = None  # type: ignore[assignment]


@dataclass(frozen=True)
class WouldBlock:
    """The step must be retried unchanged once *direction* is ready."""

    direction: Direction = Direction.WRITE


@dataclass(frozen=True)
class Fault:
    """The step failed for good."""

    kind: FaultKind
    message: str


StepResult = Union[Complete[T], WouldBlock, Fault]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TransferError(Exception):
    """Terminal failure of a transfer, delivered to ``on_complete``.

    Attributes:
        kind: The :class:`FaultKind` category.
        stage: Name of the stage that was running when the fault occurred
            (``None`` when the fault did not come from a stage).
    """

    def __init__(self, kind: FaultKind, message: str, stage: str | None = None) -> None:
        """Initialise with a fault category and a human-readable message."""
        super().__init__(message)
        self.kind = kind
        self.stage = stage

    @property
    def message(self) -> str:
        """The human-readable failure message."""
        return str(self.args[0]) if self.args else ""

    def __repr__(self) -> str:
        return f"TransferError({self.kind.name}, {self.message!r}, stage={self.stage!r})"


class ProtocolViolation(RuntimeError):
    """Raised when the driver's single-flight invariant is broken.

    This is a programming error in the driver, never a network condition.
    """


def describe(result: Any) -> str:
    """Short label for a step result, used in debug logging."""
    if isinstance(result, Complete):
        return "complete"
    if isinstance(result, WouldBlock):
        return f"would-block ({result.direction})"
    if isinstance(result, Fault):
        return f"fault ({result.kind.name}: {result.message})"
    return repr(result)
