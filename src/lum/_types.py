"""Type definitions shared across lum.

Defines render results returned by the renderer adapter and the
exception classes raised by the registry and the control channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RenderOutcome(str, Enum):
    """Outcome of a single render attempt."""

    OK = "ok"
    MISSING = "missing"  # file momentarily absent, worth retrying
    FAILED = "failed"


@dataclass(frozen=True)
class RenderResult:
    """Result of rendering one Markdown file.

    ``html`` is set only when ``outcome`` is OK; ``error`` carries a
    human-readable reason otherwise.
    """

    outcome: RenderOutcome
    html: bytes = b""
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is RenderOutcome.OK

    @property
    def retryable(self) -> bool:
        return self.outcome is RenderOutcome.MISSING


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LumError(Exception):
    """Base class for lum errors."""


class AddError(LumError):
    """A file could not be added to the registry."""


class NoInstanceError(LumError):
    """No primary instance is reachable on the control endpoint."""


class ControlError(LumError):
    """The primary instance answered a control command with ERROR."""


class ProtocolError(LumError):
    """The control endpoint sent a reply that could not be parsed."""


class EndpointInUseError(LumError):
    """Another live instance already owns the control endpoint."""
