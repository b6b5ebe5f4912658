"""Error taxonomy shared by the spectral processing engine."""

from __future__ import annotations

from dataclasses import dataclass


class ConfigurationError(ValueError):
    """Raised when a configuration change is rejected.

    The component that raises it keeps its previous configuration.
    """


class DataError(ValueError):
    """Raised by I/O collaborators that cannot return a partial result."""


ISSUE_CONFIGURATION = "configuration"
ISSUE_DATA = "data"


@dataclass(frozen=True)
class FrameIssue:
    """Problem detected while processing a single frame."""

    kind: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"
