"""
Shared skeleton of the master and slave coordinators.

A coordinator owns its ZeroMQ context, its sockets, its worker threads and
its instrument. Only one acquisition session may be active at a time; the
acquisition_active flag is claimed with begin_session() and released by
end_session() on every exit path.
"""

import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import zmq

from ..instrument import TimeTagger, create_instrument
from .config import SyncConfig
from .session import AcquisitionSession, SessionState

logger = logging.getLogger('timetag-sync.coordinator')


class SyncCoordinator:
    """Base class for one node of the master/slave pair."""

    role = "node"

    def __init__(self, config: SyncConfig, instrument: Optional[TimeTagger] = None):
        self.config = config
        self.context = zmq.Context()
        self.instrument = instrument or create_instrument(config, self.context)
        self.output_dir = Path(config.output_dir)

        self._lock = threading.RLock()
        self._acquisition_active = False
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._closed = False
        self.current_session: Optional[AcquisitionSession] = None

        self.stats = {
            'sessions_started': 0,
            'sessions_completed': 0,
            'sessions_failed': 0,
            'last_error': None,
            'records_merged': 0,
            'start_time': time.time(),
        }

    # -- lifecycle --------------------------------------------------------------

    def start(self):
        """Open sockets and start the role's worker threads."""
        raise NotImplementedError

    def spawn(self, target: Callable, name: str, *args) -> threading.Thread:
        thread = threading.Thread(target=target, name=name, args=args, daemon=True)
        thread.start()
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        return thread

    def close_sockets(self):
        """Close the role's sockets; called after all threads are joined."""

    def request_stop(self):
        """Ask workers and the current session to wind down; safe from signal handlers."""
        self._stop_event.set()
        session = self.current_session
        if session is not None:
            session.cancel()

    def stop(self, timeout: float = 5.0):
        """Signal workers, join them, close sockets, release the context."""
        if self._closed:
            return
        self._closed = True
        self._stop_event.set()
        session = self.current_session
        if session is not None:
            session.cancel()
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"{self.role}: thread {thread.name} did not exit")
        self.close_sockets()
        try:
            self.instrument.close()
        finally:
            self.context.term()
        logger.info(f"{self.role.capitalize()} coordinator stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    # -- session bookkeeping ------------------------------------------------------

    @property
    def acquisition_active(self) -> bool:
        with self._lock:
            return self._acquisition_active

    def begin_session(self) -> bool:
        """Claim the acquisition slot; False if a session is already active."""
        with self._lock:
            if self._acquisition_active:
                return False
            self._acquisition_active = True
            self.stats['sessions_started'] += 1
            return True

    def end_session(self, session: Optional[AcquisitionSession]):
        """Release the acquisition slot and count the outcome."""
        with self._lock:
            self._acquisition_active = False
            if session is None:
                return
            if session.state == SessionState.COMPLETED:
                self.stats['sessions_completed'] += 1
            else:
                self.stats['sessions_failed'] += 1
                self.stats['last_error'] = session.error_message

    def output_paths(self, session: AcquisitionSession, kind: str = 'results') -> Tuple[Path, Optional[Path]]:
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        base = self.output_dir / f"{self.role}_{kind}_{stamp}_s{session.sequence_id}"
        text = base.with_suffix('.txt') if self.config.text_output else None
        return base.with_suffix('.bin'), text

    def get_status(self) -> Dict[str, Any]:
        """Status of this node, as sent in heartbeats and served over HTTP."""
        session = self.current_session
        status: Dict[str, Any] = {
            'role': self.role,
            'timestamp_ns': time.time_ns(),
            'acquisition_active': self.acquisition_active,
            'uptime_seconds': time.time() - self.stats['start_time'],
        }
        with self._lock:
            status.update({k: v for k, v in self.stats.items() if k != 'start_time'})
        if session is not None and status['acquisition_active']:
            status.update(session.snapshot())
            return status
        status.update({'state': SessionState.IDLE.value, 'activity': 'idle',
                       'sequence_id': None, 'progress': 0.0, 'error': None})
        if session is not None:
            # outcome of the most recent session
            status['last_session'] = session.snapshot()
        return status
