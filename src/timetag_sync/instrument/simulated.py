"""
Simulated time tagger.

Generates the event stream a Time Controller would produce and pushes it
over the same PAIR sockets, one block per sub-acquisition window, followed
by an empty end-of-stream message after stop().

Event times depend only on (seed, channel, window), so a master and a slave
simulator configured with the same seed observe the same events; the slave
adds clock_offset_ps and optional gaussian jitter. Channels listed in
silent_channels never send anything, not even the end marker. With
relative_timestamps the blocks count from their own window start, as the
Time Controller sends them.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Sequence

import numpy as np
import zmq

from ..errors import InstrumentCommandFailure
from .base import TimeTagger

logger = logging.getLogger(__name__)


class SimulatedTimeTagger(TimeTagger):

    name = "simulated"

    def __init__(
        self,
        context: zmq.Context,
        rate_hz: float = 2000.0,
        clock_offset_ps: int = 0,
        jitter_ps: int = 0,
        seed: Optional[int] = None,
        silent_channels: Sequence[int] = (),
        stream_host: str = '127.0.0.1',
        relative_timestamps: bool = False,
    ):
        self.context = context
        self.rate_hz = rate_hz
        self.clock_offset_ps = int(clock_offset_ps)
        self.jitter_ps = int(jitter_ps)
        self.seed = 0 if seed is None else int(seed)
        self.silent_channels = set(silent_channels)
        self.stream_host = stream_host
        self.window_relative = bool(relative_timestamps)

        self.channels: List[int] = []
        self.pwid_ps = 0
        self.pper_ps = 0
        self.ports: Dict[int, int] = {}
        self.windows_sent = 0

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._jitter_rng = np.random.default_rng([self.seed, 0x5EED])

    def identify(self) -> str:
        return "SIMULATED,TimeTagger,1.0,0"

    def configure(self, channels: Sequence[int], pwid_ps: int, pper_ps: int):
        if pwid_ps <= 0 or pper_ps < pwid_ps:
            raise InstrumentCommandFailure(f"invalid window PWID {pwid_ps} / PPER {pper_ps}")
        self.channels = list(channels)
        self.pwid_ps = int(pwid_ps)
        self.pper_ps = int(pper_ps)

    def start_streams(self, ports: Dict[int, int]):
        missing = set(self.channels) - set(ports)
        if missing:
            raise InstrumentCommandFailure(f"no stream port for channels {sorted(missing)}")
        self.ports = dict(ports)

    def window_events(self, channel: int, window: int) -> np.ndarray:
        """Sorted event times (ps) of one channel in one window."""
        rng = np.random.default_rng([self.seed, channel, window])
        # an empty block would read as end of stream
        count = max(1, int(rng.poisson(self.rate_hz * self.pwid_ps / 1e12)))
        offsets = np.sort(rng.integers(0, self.pwid_ps, size=count, dtype=np.int64))
        start = 0 if self.window_relative else window * self.pper_ps
        times = offsets + start + self.clock_offset_ps
        if self.jitter_ps:
            times = times + self._jitter_rng.normal(0, self.jitter_ps, size=count).astype(np.int64)
            times.sort()
        return np.clip(times, 0, None).astype('<u8')

    def play(self):
        if not self.ports:
            raise InstrumentCommandFailure("play() before start_streams()")
        self._stop_event.clear()
        self.windows_sent = 0
        self._thread = threading.Thread(target=self._stream_loop, name="SimulatedTagger", daemon=True)
        self._thread.start()

    def _stream_loop(self):
        sockets = {}
        try:
            for ch in self.channels:
                if ch in self.silent_channels:
                    continue
                socket = self.context.socket(zmq.PAIR)
                socket.setsockopt(zmq.LINGER, 1000)
                socket.connect(f"tcp://{self.stream_host}:{self.ports[ch]}")
                sockets[ch] = socket

            period_s = self.pper_ps / 1e12
            window = 0
            while not self._stop_event.wait(period_s):
                for ch, socket in sockets.items():
                    socket.send(self.window_events(ch, window).tobytes())
                window += 1
                self.windows_sent = window

            for socket in sockets.values():
                socket.send(b'')
        except zmq.ZMQError:
            logger.exception("Simulated stream failed")
        finally:
            for socket in sockets.values():
                socket.close()
        logger.debug(f"Simulator sent {self.windows_sent} windows on {sorted(sockets)}")

    def stop(self):
        self._stop_event.set()

    def wait_end(self, timeout: float):
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Simulated stream did not finish in time")

    def close_streams(self) -> Dict[int, List[str]]:
        self.ports = {}
        return {}
