"""
Channel Stream Listener - one per instrument channel.

The instrument streams each channel to its own socket at
stream_base_port + channel. Every non-empty message is one block of raw
little-endian uint64 timestamps; a zero-length message marks the end of the
stream. Blocks are numbered in receipt order and held until the merger
takes them. Instruments that count each block from the start of its own
sub-acquisition get window_period_ps * block index added on receipt.

All listeners of a session share one threading.Condition with the merger:
listeners notify on every new block or state change, the merger waits on it
with a bounded timeout.
"""

import logging
import threading
from typing import Dict, List, Optional

import numpy as np
import zmq

from ..interfaces.sync_result import ChannelBlock

logger = logging.getLogger(__name__)

TIMESTAMP_SIZE = 8


class ChannelStreamListener:
    """
    Receives one channel's timestamp blocks on a PAIR socket.

    Socket failures mark this listener failed; they never propagate to the
    other channels of the session.
    """

    def __init__(
        self,
        channel: int,
        port: int,
        condition: threading.Condition,
        context: Optional[zmq.Context] = None,
        bind_host: str = '127.0.0.1',
        poll_timeout: float = 0.1,
        window_period_ps: int = 0,
    ):
        self.channel = channel
        self.port = port
        self.condition = condition
        self.context = context
        self.bind_host = bind_host
        self.poll_timeout_ms = max(1, int(poll_timeout * 1000))
        self.window_period_ps = int(window_period_ps)

        self._blocks: Dict[int, ChannelBlock] = {}
        self._next_index = 0
        self._ended = False
        self._error: Optional[str] = None
        self._socket: Optional[zmq.Socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self.stats = {
            'blocks_received': 0,
            'timestamps_received': 0,
            'malformed_blocks': 0,
        }

    @property
    def endpoint(self) -> str:
        return f"tcp://{self.bind_host}:{self.port}"

    # -- block store (guarded by the shared condition) ---------------------

    def deliver(self, payload: bytes):
        """Record one received message as the next block, or end of stream."""
        with self.condition:
            if self._ended:
                logger.warning(f"Channel {self.channel}: data after end of stream ignored")
                return
            if len(payload) == 0:
                self._ended = True
                logger.debug(f"Channel {self.channel}: end of stream after "
                             f"{self._next_index} blocks")
                self.condition.notify_all()
                return

            usable = len(payload) - len(payload) % TIMESTAMP_SIZE
            if usable != len(payload):
                self.stats['malformed_blocks'] += 1
                logger.warning(f"Channel {self.channel}: block {self._next_index} has "
                               f"{len(payload)} bytes, dropping trailing "
                               f"{len(payload) - usable}")
            timestamps = np.frombuffer(payload[:usable], dtype='<u8').astype(np.uint64)
            if self.window_period_ps:
                timestamps = timestamps + np.uint64(self.window_period_ps * self._next_index)

            block = ChannelBlock(self.channel, self._next_index, timestamps)
            self._blocks[block.sequence_index] = block
            self._next_index += 1
            self.stats['blocks_received'] += 1
            self.stats['timestamps_received'] += len(timestamps)
            self.condition.notify_all()

    def fail(self, error: str):
        with self.condition:
            self._error = error
            self.condition.notify_all()
        logger.error(f"[acquisition] listener failed: {error} (channel {self.channel})")

    def has_block(self, index: int) -> bool:
        return index in self._blocks

    def take_block(self, index: int) -> Optional[ChannelBlock]:
        """Hand block `index` to the caller and release it here."""
        return self._blocks.pop(index, None)

    def discard_before(self, index: int) -> int:
        """Drop blocks older than `index`; returns how many were dropped."""
        stale = [i for i in self._blocks if i < index]
        for i in stale:
            del self._blocks[i]
        return len(stale)

    def discard_all(self) -> int:
        dropped = len(self._blocks)
        self._blocks.clear()
        return dropped

    def pending_indices(self) -> List[int]:
        return sorted(self._blocks)

    @property
    def received_count(self) -> int:
        return self._next_index

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def finished(self) -> bool:
        """No further blocks will arrive."""
        return self._ended or self._error is not None

    # -- thread -------------------------------------------------------------

    def start(self):
        """Bind the channel socket and start receiving."""
        if self.context is None:
            raise RuntimeError(f"Channel {self.channel}: no ZeroMQ context to bind with")
        try:
            self._socket = self.context.socket(zmq.PAIR)
            self._socket.setsockopt(zmq.LINGER, 0)
            self._socket.bind(self.endpoint)
        except zmq.ZMQError as e:
            self.fail(f"cannot bind {self.endpoint}: {e}")
            self._close_socket()
            return

        self._thread = threading.Thread(
            target=self._receive_loop,
            name=f"StreamListener-{self.channel}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Channel {self.channel}: listening on {self.endpoint}")

    def _receive_loop(self):
        while not self._stop_event.is_set() and not self.finished:
            try:
                if not self._socket.poll(self.poll_timeout_ms):
                    continue
                self.deliver(self._socket.recv(zmq.NOBLOCK))
            except zmq.Again:
                continue
            except zmq.ZMQError as e:
                self.fail(f"receive error: {e}")
            except Exception as e:
                logger.exception(f"Channel {self.channel}: unexpected listener error")
                self.fail(str(e))

    def stop(self):
        self._stop_event.set()

    def join(self, timeout: float = 2.0):
        """Stop the thread, wait for it, then close the socket."""
        self.stop()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Channel {self.channel}: listener thread did not exit")
                return
            self._thread = None
        self._close_socket()

    def _close_socket(self):
        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None
