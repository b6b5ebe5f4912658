"""Immutable per-frame results shared with the UI."""

from __future__ import annotations

from dataclasses import dataclass, replace
import threading
from typing import Optional, Tuple

from spectro_cam.engine.calibration import CalibrationResult
from spectro_cam.engine.errors import FrameIssue
from spectro_cam.engine.spectrum import AbsorbanceSpectrum, PeakDip, Spectrum


@dataclass(frozen=True, eq=False)
class PipelineSnapshot:
    sequence: int
    timestamp: float
    spectrum: Optional[Spectrum]
    peaks: Tuple[PeakDip, ...] = ()
    absorbance: Optional[AbsorbanceSpectrum] = None
    reference: Optional[Spectrum] = None
    calibration: Optional[CalibrationResult] = None
    issues: Tuple[FrameIssue, ...] = ()
    stale: bool = False
    dark_subtracted: bool = False

    @property
    def ok(self) -> bool:
        return not self.issues

    def as_stale(self) -> "PipelineSnapshot":
        return replace(self, stale=True)


class SnapshotSlot:
    """Holds the most recent snapshot.

    Readers get whatever was last published without waiting on the
    pipeline; publishing replaces a single reference.
    """

    def __init__(self) -> None:
        self._snapshot: Optional[PipelineSnapshot] = None
        self._lock = threading.Lock()
        self._version = 0

    def publish(self, snapshot: PipelineSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot
            self._version += 1

    def latest(self) -> Optional[PipelineSnapshot]:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._version
