"""
Error taxonomy for timetag-sync.

Every error carries the phase it was raised in (handshake, acquisition,
merge, estimation, transfer) and, where one applies, the channel. The
coordinators catch SyncError at the session boundary and turn it into
session ERROR state; nothing here is meant to escape a worker thread.

MergeStall is not an exception: a silent channel degrades a merge window
but never aborts the session, so stalls are recorded in the merge summary.
"""

from dataclasses import dataclass
from typing import Optional


class SyncError(Exception):
    """Base class for failures that abort a synchronization session."""

    phase = "session"

    def __init__(self, message: str, channel: Optional[int] = None, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.channel = channel
        if phase is not None:
            self.phase = phase

    def __str__(self) -> str:
        text = f"[{self.phase}] {self.message}"
        if self.channel is not None:
            text += f" (channel {self.channel})"
        return text


class HandshakeTimeout(SyncError):
    """Slave did not confirm readiness within the retry budget."""
    phase = "handshake"


class InstrumentCommandFailure(SyncError):
    """Instrument rejected a command or could not be reached."""
    phase = "acquisition"


class MergeFailure(SyncError):
    """Merger thread or merged-output sink failed."""
    phase = "merge"


class EstimationInsufficientData(SyncError):
    """Not enough samples to estimate or align."""
    phase = "estimation"


class TransferFailure(SyncError):
    """File transfer between nodes failed or arrived incomplete."""
    phase = "transfer"


@dataclass(frozen=True)
class MergeStall:
    """A window merged without one channel's block."""
    channel: int
    window: int
    waited_s: float

    phase = "merge"

    def __str__(self) -> str:
        return (f"[{self.phase}] window {self.window} merged without data "
                f"after {self.waited_s:.3f}s (channel {self.channel})")
