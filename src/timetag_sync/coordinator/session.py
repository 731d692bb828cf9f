"""
Acquisition session context.

One AcquisitionSession exists per synchronized acquisition. It is passed
explicitly to every worker taking part in the session and owns the status
fields those workers share. All mutable fields are guarded by one lock;
readers take a snapshot().

State machine:

    IDLE ─▶ PREPARING ─▶ READY_FOR_TRIGGER ─▶ TRIGGERED ─▶ ACQUIRING
                                                                │
                               COMPLETED ◀── STOPPING ◀────────┘

    Any non-terminal state may move to ERROR.
"""

import logging
import threading
import time
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ..errors import SyncError

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Coordinator/session state."""
    IDLE = "idle"
    PREPARING = "preparing"
    READY_FOR_TRIGGER = "ready_for_trigger"
    TRIGGERED = "triggered"
    ACQUIRING = "acquiring"
    STOPPING = "stopping"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ERROR)

    @property
    def activity(self) -> str:
        """Coarse node activity reported in status heartbeats."""
        return _ACTIVITY[self]


_ACTIVITY = {
    SessionState.IDLE: "idle",
    SessionState.PREPARING: "starting",
    SessionState.READY_FOR_TRIGGER: "starting",
    SessionState.TRIGGERED: "starting",
    SessionState.ACQUIRING: "running",
    SessionState.STOPPING: "running",
    SessionState.COMPLETED: "completed",
    SessionState.ERROR: "error",
}


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.PREPARING},
    SessionState.PREPARING: {SessionState.READY_FOR_TRIGGER},
    SessionState.READY_FOR_TRIGGER: {SessionState.TRIGGERED},
    SessionState.TRIGGERED: {SessionState.ACQUIRING},
    SessionState.ACQUIRING: {SessionState.STOPPING},
    SessionState.STOPPING: {SessionState.COMPLETED},
    SessionState.COMPLETED: set(),
    SessionState.ERROR: set(),
}


def validate_channels(channels: Iterable[int]) -> tuple:
    result = tuple(int(c) for c in channels)
    if not result:
        raise ValueError("channel set must not be empty")
    if any(c < 1 or c > 64 for c in result) or len(set(result)) != len(result):
        raise ValueError(f"invalid channel set {result}")
    return result


class AcquisitionSession:
    """Shared, lock-protected context of one synchronized acquisition."""

    def __init__(self, sequence_id: int, duration_s: float, channels: Iterable[int]):
        if duration_s <= 0:
            raise ValueError(f"duration must be positive, got {duration_s}")
        self.sequence_id = sequence_id
        self.requested_duration_s = float(duration_s)
        self.channels = validate_channels(channels)
        self.cancel_event = threading.Event()
        self.created = time.time()

        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._progress = 0.0
        self._error_message: Optional[str] = None
        self._failed_phase: Optional[str] = None
        self._master_trigger_ns = 0
        self._slave_trigger_ns = 0
        self._acquisition_started: Optional[float] = None
        self._channel_errors: Dict[int, List[str]] = {}

    # -- state ----------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    def transition(self, new_state: SessionState):
        """Move to `new_state`; illegal moves are programming errors."""
        with self._lock:
            if new_state not in _TRANSITIONS[self._state]:
                raise ValueError(f"session {self.sequence_id}: illegal transition "
                                 f"{self._state.value} -> {new_state.value}")
            self._state = new_state
            if new_state == SessionState.ACQUIRING:
                self._acquisition_started = time.monotonic()
            if new_state == SessionState.COMPLETED:
                self._progress = 100.0
        logger.debug(f"Session {self.sequence_id}: {new_state.value}")

    def fail(self, error) -> None:
        """Enter ERROR with the error's phase and message."""
        if isinstance(error, SyncError):
            phase, message = error.phase, str(error)
        else:
            phase, message = 'session', str(error)
        with self._lock:
            if self._state.terminal:
                return
            self._state = SessionState.ERROR
            self._error_message = message
            self._failed_phase = phase
        self.cancel_event.set()

    def cancel(self):
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    # -- shared fields ------------------------------------------------------------

    def set_progress(self, percent: float):
        with self._lock:
            self._progress = max(0.0, min(100.0, float(percent)))

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    @property
    def error_message(self) -> Optional[str]:
        with self._lock:
            return self._error_message

    @property
    def failed_phase(self) -> Optional[str]:
        with self._lock:
            return self._failed_phase

    @property
    def master_trigger_timestamp_ns(self) -> int:
        with self._lock:
            return self._master_trigger_ns

    @master_trigger_timestamp_ns.setter
    def master_trigger_timestamp_ns(self, value: int):
        with self._lock:
            self._master_trigger_ns = int(value)

    @property
    def slave_trigger_timestamp_ns(self) -> int:
        with self._lock:
            return self._slave_trigger_ns

    @slave_trigger_timestamp_ns.setter
    def slave_trigger_timestamp_ns(self, value: int):
        with self._lock:
            self._slave_trigger_ns = int(value)

    def elapsed_s(self) -> float:
        with self._lock:
            if self._acquisition_started is None:
                return 0.0
            return time.monotonic() - self._acquisition_started

    def record_channel_error(self, channel: int, message: str):
        with self._lock:
            self._channel_errors.setdefault(channel, []).append(message)

    @property
    def channel_errors(self) -> Dict[int, List[str]]:
        with self._lock:
            return {ch: list(errs) for ch, errs in self._channel_errors.items()}

    def snapshot(self) -> dict:
        """Consistent copy of the status fields."""
        with self._lock:
            elapsed = (time.monotonic() - self._acquisition_started
                       if self._acquisition_started is not None else 0.0)
            return {
                'sequence_id': self.sequence_id,
                'state': self._state.value,
                'activity': self._state.activity,
                'progress': round(self._progress, 1),
                'duration_s': self.requested_duration_s,
                'channels': list(self.channels),
                'master_trigger_timestamp_ns': self._master_trigger_ns,
                'slave_trigger_timestamp_ns': self._slave_trigger_ns,
                'elapsed_ms': int(elapsed * 1000),
                'remaining_ms': max(0, int((self.requested_duration_s - elapsed) * 1000)),
                'error': self._error_message,
                'failed_phase': self._failed_phase,
                'channel_errors': {str(ch): list(e) for ch, e in self._channel_errors.items()},
            }
