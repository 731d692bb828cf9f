"""
Master Coordinator - initiator of every synchronized acquisition.

Session timeline:

    master                                   slave
    ──────                                   ─────
    prepare local acquisition
    request_ready ───── command (REQ) ─────▶ ack, prepare local acquisition
                  ◀──── sync (PULL) ──────── ready_for_trigger (after settle)
    (retry request_ready, poll status)
    trigger_ts = now
    trigger ─────────── trigger (PUB) ─────▶ play, trigger_timestamp ──▶ sync
    play; re-send trigger while slave
    is not "running"
    acquire duration                         acquire duration
    wait for "completed" ◀── status ──────── heartbeat every 100 ms
    request_partial_data ── command ───────▶ send leading fraction
                  ◀──── file (PULL) ──────── header / chunks / footer
    estimate offset, write corrected and aligned data, write SyncReport

Every failure inside run_session() ends the session in ERROR, asks the
slave to reset, and leaves the coordinator idle for the next session.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import zmq

from ..engine.acquisition import AcquisitionResult, AcquisitionRunner
from ..engine.alignment import align_files
from ..errors import (
    HandshakeTimeout,
    SyncError,
    TransferFailure,
)
from ..interfaces.sync_result import SyncReport
from ..output.file_transfer import FileReceiver
from ..timing.offset_estimator import OffsetEstimator
from . import protocol
from .base import SyncCoordinator
from .protocol import Command, MessageKind
from .session import AcquisitionSession, SessionState
from .transport import CommandClient, PushChannel, make_socket, recv_with_timeout

logger = logging.getLogger('timetag-sync.master')

STATUS_STALE_S = 1.0


def _session_view(status: Dict[str, Any], sequence_id: int) -> Optional[Dict[str, Any]]:
    """The slave's status of session `sequence_id`, whether running or just ended."""
    if status.get('sequence_id') == sequence_id:
        return status
    last = status.get('last_session') or {}
    if last.get('sequence_id') == sequence_id:
        return last
    return None

class MasterCoordinator(SyncCoordinator):
    """Runs synchronized acquisitions against one slave."""

    role = "master"

    def __init__(self, config, instrument=None):
        super().__init__(config, instrument)
        self.commands: Optional[CommandClient] = None
        self.trigger_channel: Optional[PushChannel] = None
        self.status_socket = None
        self.sync_socket = None
        self.file_socket = None

        self._sequence = 0
        self._slave_status: Dict[str, Any] = {}
        self._slave_status_time = 0.0
        self._status_condition = threading.Condition()
        self._sync_backlog: List[dict] = []

        self.last_report: Optional[SyncReport] = None
        self.estimator = OffsetEstimator(sync_fraction=config.sync_fraction)

    # -- lifecycle --------------------------------------------------------------

    def start(self):
        cfg = self.config
        logger.info("=" * 60)
        logger.info("Master coordinator starting")
        logger.info(f"  Slave: {cfg.slave_address} (command port {cfg.command_port})")
        logger.info(f"  Trigger/status/file/sync ports: {cfg.trigger_port}/{cfg.status_port}/"
                    f"{cfg.file_port}/{cfg.sync_port}")
        logger.info(f"  Channels: {list(cfg.channels)}  duration: {cfg.duration}s")
        logger.info(f"  Output: {self.output_dir}")
        logger.info("=" * 60)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.trigger_channel = PushChannel(
            make_socket(self.context, zmq.PUB, cfg.bind_endpoint(cfg.trigger_port), bind=True),
            'trigger',
        )
        self.status_socket = make_socket(self.context, zmq.PULL,
                                         cfg.bind_endpoint(cfg.status_port), bind=True)
        self.file_socket = make_socket(self.context, zmq.PULL,
                                       cfg.bind_endpoint(cfg.file_port), bind=True)
        self.sync_socket = make_socket(self.context, zmq.PULL,
                                       cfg.bind_endpoint(cfg.sync_port), bind=True)
        self.commands = CommandClient(self.context,
                                      cfg.endpoint(cfg.slave_address, cfg.command_port))
        self.spawn(self._status_loop, "MasterStatus")

        identity = self.instrument.identify()
        logger.info(f"Instrument: {identity}")

    def close_sockets(self):
        if self.commands:
            self.commands.close()
        if self.trigger_channel:
            self.trigger_channel.close()
        for socket in (self.status_socket, self.file_socket, self.sync_socket):
            if socket is not None:
                socket.close(linger=0)

    # -- slave status -------------------------------------------------------------

    def _status_loop(self):
        """Receive slave heartbeats and keep the latest one."""
        while self.running:
            try:
                raw = recv_with_timeout(self.status_socket, 0.1)
                if raw is None:
                    continue
                message = protocol.decode(raw, expected=MessageKind.STATUS)
                with self._status_condition:
                    self._slave_status = message
                    self._slave_status_time = time.monotonic()
                    self._status_condition.notify_all()
            except protocol.ProtocolError as e:
                logger.warning(f"[handshake] bad status message: {e}")
            except zmq.ZMQError as e:
                if self.running:
                    logger.error(f"Status channel error: {e}")
                return
            except Exception:
                logger.exception("Status loop error")

    @property
    def slave_status(self) -> Dict[str, Any]:
        with self._status_condition:
            return dict(self._slave_status)

    def _fresh_slave_status(self) -> Dict[str, Any]:
        """Latest heartbeat, or a status command if heartbeats went quiet."""
        with self._status_condition:
            if time.monotonic() - self._slave_status_time < STATUS_STALE_S:
                return dict(self._slave_status)
        reply = self.commands.request(Command.STATUS, self.config.command_timeout)
        if reply and reply.get('success'):
            return reply.get('data', {})
        return {}

    def _wait_slave_activity(self, sequence_id: int, wanted, timeout: float,
                             session: Optional[AcquisitionSession] = None) -> Optional[Dict[str, Any]]:
        """Wait until the slave reports one of `wanted` for `sequence_id`."""
        deadline = time.monotonic() + timeout
        while True:
            view = _session_view(self._fresh_slave_status(), sequence_id)
            if view is not None:
                if view.get('activity') in wanted:
                    return view
                if view.get('activity') == 'error':
                    raise SyncError(f"slave failed: {view.get('error')}",
                                    phase=view.get('failed_phase') or 'acquisition')
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not self.running:
                return None
            if session is not None and session.cancelled:
                return None
            with self._status_condition:
                self._status_condition.wait(timeout=min(remaining, 0.1))

    # -- sync channel ---------------------------------------------------------------

    def _wait_sync(self, kind: MessageKind, sequence_id: int, timeout: float) -> Optional[dict]:
        """Next sync message of `kind` for `sequence_id`; others are kept for later."""
        for i, message in enumerate(self._sync_backlog):
            if message['kind'] == kind and message.get('sequence_id') == sequence_id:
                return self._sync_backlog.pop(i)
        deadline = time.monotonic() + timeout
        while self.running:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            raw = recv_with_timeout(self.sync_socket, min(remaining, 0.1))
            if raw is None:
                continue
            try:
                message = protocol.decode(raw)
            except protocol.ProtocolError as e:
                logger.warning(f"[handshake] bad sync message: {e}")
                continue
            if message['kind'] == kind and message.get('sequence_id') == sequence_id:
                return message
            if message.get('sequence_id') == sequence_id:
                self._sync_backlog.append(message)
            else:
                logger.debug(f"Discarding {message['kind'].value} for session "
                             f"{message.get('sequence_id')}")
        return None

    # -- session phases ---------------------------------------------------------------

    def _handshake(self, session: AcquisitionSession):
        """request_ready until the slave confirms readiness, or give up."""
        cfg = self.config
        for attempt in range(1, cfg.ready_retries + 1):
            if session.cancelled or not self.running:
                raise HandshakeTimeout("handshake cancelled")
            logger.info(f"Requesting slave readiness (attempt {attempt}/{cfg.ready_retries})")
            reply = self.commands.request(
                Command.REQUEST_READY, cfg.command_timeout,
                sequence_id=session.sequence_id,
                duration_s=session.requested_duration_s,
                channels=list(session.channels),
            )
            if reply is None:
                logger.warning(f"[handshake] no acknowledgement within {cfg.command_timeout:.1f}s")
            elif not reply.get('success'):
                logger.warning(f"[handshake] slave refused: {reply.get('error')}")
            else:
                ready = self._wait_sync(MessageKind.READY_FOR_TRIGGER, session.sequence_id,
                                        cfg.ready_timeout)
                if ready is not None:
                    session.transition(SessionState.READY_FOR_TRIGGER)
                    logger.info(f"Slave ready for trigger (attempt {attempt})")
                    return
                logger.warning(f"[handshake] no ready_for_trigger within {cfg.ready_timeout:.1f}s")

            if attempt < cfg.ready_retries:
                status = self.commands.request(Command.STATUS, cfg.command_timeout)
                if status is None:
                    logger.warning("[handshake] slave not answering status requests")
                else:
                    data = status.get('data', {})
                    logger.info(f"Slave status: {data.get('state')} "
                                f"(session {data.get('sequence_id')}, error {data.get('error')})")
                session.cancel_event.wait(cfg.retry_pause)

        raise HandshakeTimeout(f"slave not ready after {cfg.ready_retries} attempts")

    def _trigger(self, session: AcquisitionSession, runner: AcquisitionRunner) -> bytes:
        trigger_ns = time.time_ns()
        session.master_trigger_timestamp_ns = trigger_ns
        message = protocol.trigger(trigger_ns, session.requested_duration_s,
                                   session.channels, session.sequence_id)
        self.trigger_channel.send(message)
        runner.play()
        session.transition(SessionState.TRIGGERED)
        logger.info(f"Trigger sent at {trigger_ns} ns (session {session.sequence_id})")
        return message

    def _confirm_trigger(self, session: AcquisitionSession, message: bytes):
        """Re-send the trigger while the slave does not report running."""
        cfg = self.config
        for attempt in range(cfg.trigger_resends + 1):
            try:
                status = self._wait_slave_activity(session.sequence_id, ('running', 'completed'),
                                                   cfg.trigger_grace, session)
            except SyncError as e:
                logger.warning(f"[handshake] slave failed after trigger: {e}")
                return
            except Exception:
                logger.exception("Trigger confirmation failed")
                return
            if status is not None:
                logger.debug(f"Slave running (session {session.sequence_id})")
                return
            if session.cancelled or not self.running:
                return
            if attempt < cfg.trigger_resends:
                logger.warning(f"[handshake] slave not running after {cfg.trigger_grace:.1f}s, "
                               f"re-sending trigger")
                self.trigger_channel.send(message)
        logger.warning("[handshake] slave never reported running; continuing")

    def _collect_slave_data(self, session: AcquisitionSession):
        cfg = self.config
        status = self._wait_slave_activity(session.sequence_id, ('completed',),
                                           cfg.completion_timeout, session)
        if status is None:
            raise TransferFailure(f"slave did not complete within {cfg.completion_timeout:.1f}s")

        stamp = self._wait_sync(MessageKind.TRIGGER_TIMESTAMP, session.sequence_id, 0.5)
        if stamp is not None:
            session.slave_trigger_timestamp_ns = stamp['trigger_timestamp_ns']
        elif status.get('slave_trigger_timestamp_ns'):
            session.slave_trigger_timestamp_ns = status['slave_trigger_timestamp_ns']

        command = (Command.REQUEST_FULL_DATA if cfg.transfer_mode == 'full'
                   else Command.REQUEST_PARTIAL_DATA)
        reply = self.commands.request(command, cfg.command_timeout,
                                      sequence_id=session.sequence_id,
                                      fraction=cfg.sync_fraction)
        if reply is None:
            raise TransferFailure(f"no reply to {command.value}")
        if not reply.get('success'):
            raise TransferFailure(f"slave refused {command.value}: {reply.get('error')}")

        receiver = FileReceiver(self.file_socket, self.output_dir / 'received', cfg.transfer_timeout)
        received = receiver.receive(sequence_id=session.sequence_id)
        return received

    def _align(self, session: AcquisitionSession, result: AcquisitionResult, slave_path: Path) -> SyncReport:
        """Estimate the offset, write corrected and aligned master data."""
        channel_notes = [f"channel {ch}: {msg}"
                         for ch, msgs in sorted(session.channel_errors.items()) for msg in msgs]
        return align_files(
            result.binary_path,
            slave_path,
            self.output_dir,
            self.estimator,
            slave_is_leading=self.config.transfer_mode == 'partial',
            text_output=self.config.text_output,
            sequence_id=session.sequence_id,
            master_trigger_timestamp_ns=session.master_trigger_timestamp_ns,
            slave_trigger_timestamp_ns=session.slave_trigger_timestamp_ns,
            channels=session.channels,
            duration_s=session.requested_duration_s,
            merge=result.merge,
            notes=channel_notes,
        )

    # -- public API ------------------------------------------------------------------

    def run_session(self, duration: Optional[float] = None,
                    channels: Optional[List[int]] = None) -> Optional[SyncReport]:
        """
        Run one synchronized acquisition.

        Returns the SyncReport, or None when the session failed or another
        session is still active. Failures never propagate to the caller.
        """
        if not self.begin_session():
            logger.warning("Acquisition already active; session request ignored")
            return None

        session = None
        runner = None
        report = None
        try:
            self._sequence += 1
            self._sync_backlog.clear()
            session = AcquisitionSession(
                self._sequence,
                duration if duration is not None else self.config.duration,
                channels if channels is not None else self.config.channels,
            )
            self.current_session = session
            logger.info("=" * 60)
            logger.info(f"Session {session.sequence_id}: {session.requested_duration_s}s "
                        f"on channels {list(session.channels)}")
            logger.info("=" * 60)

            session.transition(SessionState.PREPARING)
            binary_path, text_path = self.output_paths(session)
            runner = AcquisitionRunner(session, self.config, self.instrument, self.context,
                                       binary_path, text_path, title="Master merged data")
            runner.prepare()

            self._handshake(session)
            message = self._trigger(session, runner)
            session.transition(SessionState.ACQUIRING)
            watcher = self.spawn(self._confirm_trigger, "TriggerWatch", session, message)

            result = runner.acquire()
            watcher.join(timeout=self.config.trigger_grace * (self.config.trigger_resends + 2))
            session.transition(SessionState.STOPPING)
            with self._lock:
                self.stats['records_merged'] += result.records

            received = self._collect_slave_data(session)
            report = self._align(session, result, received.path)
            session.transition(SessionState.COMPLETED)
            self.last_report = report
            logger.info(f"Session {session.sequence_id} completed")
        except SyncError as e:
            logger.error(f"Session failed: {e}")
            if session is not None:
                session.fail(e)
            self._reset_slave()
            report = None
        except Exception as e:
            logger.exception(f"Session failed unexpectedly: {e}")
            if session is not None:
                session.fail(e)
            self._reset_slave()
            report = None
        finally:
            if runner is not None:
                runner.abort()
            self.end_session(session)
        return report

    def run_sessions(self, count: int) -> List[SyncReport]:
        """Run `count` consecutive sessions; stops at the first failure."""
        reports = []
        for index in range(count):
            if not self.running:
                break
            report = self.run_session()
            if report is None:
                logger.error(f"Stopping after failed session {index + 1}/{count}")
                break
            reports.append(report)
            if index + 1 < count:
                self._stop_event.wait(self.config.inter_session_pause)
        logger.info(f"Completed {len(reports)}/{count} sessions")
        return reports

    def _reset_slave(self):
        reply = self.commands.request(Command.RESET, self.config.command_timeout)
        if reply is None:
            logger.warning("Slave did not acknowledge reset")

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status['slave'] = self.slave_status
        report = self.last_report
        if report is not None and report.offset is not None:
            status['last_offset'] = report.offset.mean_offset
            status['last_quality'] = report.offset.quality_percent
        return status
