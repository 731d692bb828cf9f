"""
Acquisition Runner - one node's part of a synchronized acquisition.

Used identically by master and slave:

    prepare()   bind one listener per channel, start the merger with its
                output file, configure the instrument and its streams
    acquire()   play for the session duration (progress every
                progress_interval, abortable through the session's cancel
                event), stop, drain, join listeners then merger
    abort()     tear everything down after a failure; safe to call twice

Teardown order is fixed: instrument stopped, listener threads joined (which
closes their sockets), merger finished and joined, output file closed.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import zmq

from ..coordinator.config import SyncConfig
from ..coordinator.session import AcquisitionSession
from ..errors import MergeFailure
from ..instrument.base import TimeTagger
from ..interfaces.sync_result import MergeSummary
from ..output.timestamp_files import MergedFileWriter
from .stream_listener import ChannelStreamListener
from .stream_merger import StreamMerger

logger = logging.getLogger('timetag-sync.engine')


@dataclass
class AcquisitionResult:
    """Artifacts and counters of one node's acquisition."""
    binary_path: Path
    text_path: Optional[Path]
    records: int
    merge: MergeSummary
    channel_errors: Dict[int, List[str]] = field(default_factory=dict)
    stats: Dict[int, dict] = field(default_factory=dict)


class AcquisitionRunner:
    """Runs the listeners, merger and instrument of one session."""

    def __init__(
        self,
        session: AcquisitionSession,
        config: SyncConfig,
        instrument: TimeTagger,
        context: zmq.Context,
        output_path: Path,
        text_path: Optional[Path] = None,
        title: str = "Merged timestamps",
    ):
        self.session = session
        self.config = config
        self.instrument = instrument
        self.context = context
        self.output_path = Path(output_path)
        self.text_path = Path(text_path) if text_path else None
        self.title = title

        self.condition = threading.Condition()
        self.listeners: List[ChannelStreamListener] = []
        self.merger: Optional[StreamMerger] = None
        self.writer: Optional[MergedFileWriter] = None
        self._prepared = False
        self._playing = False
        self._finished = False

    def prepare(self):
        """Bind listeners, start the merger and configure the instrument."""
        channels = self.session.channels
        self.listeners = [
            ChannelStreamListener(
                ch, self.config.stream_port(ch), self.condition, self.context,
                bind_host=self.config.stream_bind_host,
                poll_timeout=self.config.poll_timeout,
                window_period_ps=self.config.pper_ps if self.instrument.window_relative else 0,
            )
            for ch in channels
        ]
        for listener in self.listeners:
            listener.start()

        self.writer = MergedFileWriter(self.output_path, self.text_path, title=self.title).open()
        self.merger = StreamMerger(
            self.listeners,
            self.writer,
            self.condition,
            window_timeout=self.config.window_timeout,
            stall_window_limit=self.config.stall_window_limit,
        )
        self.merger.start()
        self._prepared = True

        self.instrument.configure(channels, self.config.pwid_ps, self.config.pper_ps)
        self.instrument.start_streams({ch: self.config.stream_port(ch) for ch in channels})
        logger.info(f"Session {self.session.sequence_id}: {self.instrument.name} ready on "
                    f"channels {list(channels)}")

    def play(self):
        """Start recording; called as soon as the trigger is taken."""
        self.instrument.play()
        self._playing = True

    def acquire(self) -> AcquisitionResult:
        """
        Record for the session duration and return the merged result.

        Raises:
            InstrumentCommandFailure: instrument rejected a command
            MergeFailure: merger or output file failed
        """
        if not self._prepared:
            raise RuntimeError("acquire() before prepare()")
        if not self._playing:
            self.play()

        duration = self.session.requested_duration_s
        started = time.monotonic()
        logger.info(f"Acquisition in progress for {duration:.3f}s...")
        while True:
            elapsed = time.monotonic() - started
            if elapsed >= duration:
                break
            self.session.set_progress(100.0 * elapsed / duration)
            step = min(self.config.progress_interval, duration - elapsed)
            if self.session.cancel_event.wait(step):
                logger.warning(f"Session {self.session.sequence_id}: acquisition cancelled")
                break
        self.session.set_progress(100.0)
        return self.finish()

    def _wait_streams_ended(self, timeout: float):
        deadline = time.monotonic() + timeout
        with self.condition:
            while not all(l.finished for l in self.listeners):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    pending = [l.channel for l in self.listeners if not l.finished]
                    logger.warning(f"[merge] no end of stream after {timeout:.1f}s "
                                   f"on channels {pending}")
                    return
                self.condition.wait(timeout=min(remaining, 0.1))

    def finish(self) -> AcquisitionResult:
        """Stop the instrument, drain the streams and close the output."""
        try:
            self._playing = False
            self.instrument.stop()
            self.instrument.wait_end(self.config.merge_grace)
            self._wait_streams_ended(self.config.merge_grace)
        finally:
            self._shutdown(flush=True)

        instrument_errors = self.instrument.close_streams()
        self._prepared = False
        for ch, messages in instrument_errors.items():
            for message in messages:
                self.session.record_channel_error(ch, message)
        for listener in self.listeners:
            if listener.error:
                self.session.record_channel_error(listener.channel, listener.error)

        if self.merger.error:
            raise self.merger.error

        summary = self.merger.summary
        for ch in summary.closed_channels:
            self.session.record_channel_error(ch, "no data; closed by merger")
        result = AcquisitionResult(
            binary_path=self.output_path,
            text_path=self.text_path,
            records=self.writer.count,
            merge=summary,
            channel_errors=self.session.channel_errors,
            stats={l.channel: dict(l.stats) for l in self.listeners},
        )
        logger.info(f"Session {self.session.sequence_id}: {result.records} records merged "
                    f"into {self.output_path.name}")
        return result

    def _shutdown(self, flush: bool):
        if self._finished:
            return
        self._finished = True
        for listener in self.listeners:
            listener.join()
        if self.merger is not None:
            if flush:
                self.merger.finish()
            else:
                self.merger.cancel()
            if not self.merger.join(timeout=self.config.merge_grace + self.config.window_timeout):
                self.merger.error = MergeFailure("merger did not finish in time")
                return
        if self.writer is not None:
            if flush:
                self.writer.close()
            else:
                self.writer.discard()

    def abort(self):
        """Tear down after a failure without producing a result. Never raises."""
        if self._playing:
            self._playing = False
            try:
                self.instrument.stop()
            except Exception as e:
                logger.warning(f"Cannot stop instrument during abort: {e}")
        try:
            self._shutdown(flush=False)
        except Exception:
            logger.exception("Teardown of the failed acquisition incomplete")
        if self._prepared:
            self._prepared = False
            try:
                self.instrument.close_streams()
            except Exception as e:
                logger.warning(f"Cannot close instrument streams during abort: {e}")
