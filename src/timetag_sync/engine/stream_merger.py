"""
Stream Merger - builds one time-ordered stream from per-channel blocks.

Window k is made of block k from every channel. Channels report windows
independently and out of step, so the merger walks a cursor:

    ┌───────────┐  block k   ┌──────────────────────────────────────┐
    │ channel 1 │──────────▶│                                      │
    ├───────────┤            │  wait until every open channel has  │
    │ channel 2 │──────────▶│  block k (bounded by window_timeout) │──▶ sink
    ├───────────┤            │  concatenate, stable sort by value,  │
    │ channel N │──────────▶│  tag channel, advance k              │
    └───────────┘            └──────────────────────────────────────┘

Silent channels:
    - a channel that sent its end-of-stream marker (or failed) stops being
      waited for once its blocks run out
    - a window that stays partial for window_timeout is merged with the
      channels that delivered; each missing channel is recorded as a
      MergeStall
    - after stall_window_limit consecutive misses the channel is closed
      for the rest of the session

finish() means no more data will arrive: complete windows are flushed,
partial trailing windows are dropped and counted.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Protocol

import numpy as np

from ..errors import MergeFailure, MergeStall
from ..interfaces.sync_result import MergeSummary
from .stream_listener import ChannelStreamListener

logger = logging.getLogger(__name__)


class RecordSink(Protocol):
    def write(self, timestamps: np.ndarray, channels: np.ndarray): ...


def window_timeout_for(pper_s: float, factor: float = 2.0, minimum: float = 0.25) -> float:
    """Bounded per-window wait derived from the sub-acquisition period."""
    return max(minimum, factor * pper_s)


class StreamMerger:
    """
    Merges the blocks of a session's listeners on its own thread.

    Args:
        listeners: one listener per channel, sharing `condition`
        sink: receives each merged window as (timestamps, channels) arrays
        condition: the condition the listeners notify on
        window_timeout: longest wait for a partially available window
        stall_window_limit: consecutive misses before a channel is closed
    """

    def __init__(
        self,
        listeners: List[ChannelStreamListener],
        sink: RecordSink,
        condition: threading.Condition,
        window_timeout: float = 0.25,
        stall_window_limit: int = 3,
        poll_interval: float = 0.05,
    ):
        if not listeners:
            raise ValueError("StreamMerger needs at least one channel listener")
        self.listeners = {l.channel: l for l in listeners}
        self.sink = sink
        self.condition = condition
        self.window_timeout = window_timeout
        self.stall_window_limit = max(1, stall_window_limit)
        self.poll_interval = poll_interval

        self.cursor = 0
        self.summary = MergeSummary()
        self.stalls: List[MergeStall] = []
        self.error: Optional[MergeFailure] = None

        self._closed: set = set()
        self._misses: Dict[int, int] = {ch: 0 for ch in self.listeners}
        self._last_timestamp: Optional[int] = None
        self._partial_since: Optional[float] = None
        self._finishing = False
        self._cancelled = False
        self._thread: Optional[threading.Thread] = None

    # -- control ------------------------------------------------------------

    def start(self):
        self._thread = threading.Thread(target=self._run, name="StreamMerger", daemon=True)
        self._thread.start()
        logger.info(f"Merger started for channels {sorted(self.listeners)} "
                    f"(window timeout {self.window_timeout:.3f}s)")

    def finish(self):
        """No more blocks will arrive: flush complete windows and stop."""
        with self.condition:
            self._finishing = True
            self.condition.notify_all()

    def cancel(self):
        """Stop without flushing."""
        with self.condition:
            self._cancelled = True
            self.condition.notify_all()

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        alive = self._thread.is_alive()
        if alive:
            logger.warning("Merger thread did not exit in time")
        return not alive

    @property
    def records_merged(self) -> int:
        return self.summary.records_merged

    # -- merge loop -----------------------------------------------------------

    def _run(self):
        try:
            while self._step():
                pass
        except Exception as e:
            logger.exception("[merge] merger thread failed")
            self.error = MergeFailure(f"merger stopped at window {self.cursor}: {e}")
        finally:
            logger.info(
                f"Merger done: {self.summary.windows_merged} windows, "
                f"{self.summary.records_merged} records, "
                f"{self.summary.dropped_partial_windows} partial windows dropped, "
                f"{self.summary.late_blocks} late blocks"
            )

    def _is_open(self, listener: ChannelStreamListener, index: int) -> bool:
        """Whether `listener` may still deliver block `index`."""
        if listener.channel in self._closed:
            return False
        if listener.has_block(index):
            return True
        return not listener.finished

    def _step(self) -> bool:
        """Merge at most one window; returns False when merging is over."""
        with self.condition:
            if self._cancelled:
                return False
            k = self.cursor
            for ch, listener in self.listeners.items():
                dropped = listener.discard_before(k)
                if ch in self._closed:
                    dropped += listener.discard_all()
                if dropped:
                    self.summary.late_blocks += dropped
                    logger.debug(f"Channel {ch}: {dropped} late blocks discarded")

            delivered = [l for l in self.listeners.values()
                         if l.channel not in self._closed and l.has_block(k)]
            waiting = [l for l in self.listeners.values()
                       if self._is_open(l, k) and not l.has_block(k)]

            if not waiting:
                if not delivered:
                    return False
                blocks = [l.take_block(k) for l in delivered]
            elif self._finishing:
                self._drop_trailing(k)
                return False
            elif not delivered:
                self.condition.wait(timeout=self.poll_interval)
                return True
            else:
                now = time.monotonic()
                if self._partial_since is None:
                    self._partial_since = now
                waited = now - self._partial_since
                if waited < self.window_timeout:
                    self.condition.wait(timeout=min(self.poll_interval,
                                                    self.window_timeout - waited))
                    return True
                blocks = [l.take_block(k) for l in delivered]
                self._record_stalls(k, [l.channel for l in waiting], waited)

        self._merge_window(k, blocks)
        with self.condition:
            for block in blocks:
                self._misses[block.channel] = 0
            self._partial_since = None
            self.cursor = k + 1
        return True

    def _record_stalls(self, window: int, channels: List[int], waited: float):
        for ch in channels:
            stall = MergeStall(channel=ch, window=window, waited_s=waited)
            self.stalls.append(stall)
            self.summary.stall_windows[ch] = self.summary.stall_windows.get(ch, 0) + 1
            self._misses[ch] += 1
            logger.warning(str(stall))
            if self._misses[ch] >= self.stall_window_limit:
                self._closed.add(ch)
                self.summary.closed_channels.append(ch)
                logger.warning(f"[merge] closing silent channel after "
                               f"{self._misses[ch]} missed windows (channel {ch})")

    def _drop_trailing(self, k: int):
        indices = set()
        for listener in self.listeners.values():
            indices.update(i for i in listener.pending_indices() if i >= k)
            listener.discard_all()
        self.summary.dropped_partial_windows += len(indices)
        if indices:
            logger.warning(f"[merge] dropped {len(indices)} partial trailing windows "
                           f"starting at window {k}")

    def _merge_window(self, k: int, blocks):
        timestamps = np.concatenate([b.timestamps for b in blocks])
        channels = np.concatenate([
            np.full(len(b.timestamps), b.channel, dtype=np.int32) for b in blocks
        ])
        order = np.argsort(timestamps, kind='stable')
        timestamps = timestamps[order]
        channels = channels[order]

        if self._last_timestamp is not None and len(timestamps):
            keep = timestamps >= self._last_timestamp
            behind = int(len(keep) - np.count_nonzero(keep))
            if behind:
                self.summary.out_of_order_records += behind
                logger.warning(f"[merge] window {k}: {behind} records earlier than "
                               f"the previous window discarded")
                timestamps = timestamps[keep]
                channels = channels[keep]

        self.sink.write(timestamps, channels)
        if len(timestamps):
            self._last_timestamp = int(timestamps[-1])
        self.summary.windows_merged += 1
        self.summary.records_merged += len(timestamps)
        logger.debug(f"Window {k}: merged {len(timestamps)} records from "
                     f"channels {[b.channel for b in blocks]}")
