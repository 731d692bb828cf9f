"""
Slave Coordinator - responder side of the synchronization protocol.

Threads:
    SlaveCommands    REP loop answering status / request_ready / stop / reset /
                     request_partial_data / request_full_data
    SlaveTrigger     SUB loop taking trigger broadcasts, deduplicated by
                     sequence_id
    SlaveHeartbeat   pushes the node status every heartbeat_interval
    SlavePrepare     per session: local acquisition setup, settle delay,
                     ready_for_trigger
    SlaveAcquire     per session: play, acquire, merge
    SlaveTransfer    per data request: ships the merged data to the master

The status, sync and file PUSH sockets are shared between threads and
wrapped in lock-guarded PushChannels.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import zmq

from ..engine.acquisition import AcquisitionResult, AcquisitionRunner
from ..errors import SyncError, TransferFailure
from ..output.file_transfer import FileSender
from ..output.timestamp_files import read_binary, write_binary
from . import protocol
from .base import SyncCoordinator
from .protocol import Command, MessageKind
from .session import AcquisitionSession, SessionState
from .transport import PushChannel, make_socket, recv_with_timeout

logger = logging.getLogger('timetag-sync.slave')

POLL_S = 0.1


class SlaveCommandError(Exception):
    """Command cannot be served in the current state."""


class SlaveCoordinator(SyncCoordinator):
    """Answers the master and acquires when triggered."""

    role = "slave"

    def __init__(self, config, instrument=None):
        super().__init__(config, instrument)
        self.command_socket = None
        self.trigger_socket = None
        self.status_channel: Optional[PushChannel] = None
        self.sync_channel: Optional[PushChannel] = None
        self.file_channel: Optional[PushChannel] = None

        self.runner: Optional[AcquisitionRunner] = None
        self.last_result: Optional[AcquisitionResult] = None
        self._triggered = False
        self._heartbeats = 0

    # -- lifecycle --------------------------------------------------------------

    def start(self):
        cfg = self.config
        logger.info("=" * 60)
        logger.info("Slave coordinator starting")
        logger.info(f"  Master: {cfg.master_address}")
        logger.info(f"  Command port: {cfg.command_port}")
        logger.info(f"  Output: {self.output_dir}")
        logger.info("=" * 60)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        master = cfg.master_address
        self.command_socket = make_socket(self.context, zmq.REP,
                                          cfg.bind_endpoint(cfg.command_port), bind=True)
        self.trigger_socket = make_socket(self.context, zmq.SUB,
                                          cfg.endpoint(master, cfg.trigger_port),
                                          bind=False, subscribe=b'')
        self.status_channel = PushChannel(
            make_socket(self.context, zmq.PUSH, cfg.endpoint(master, cfg.status_port), bind=False),
            'status')
        self.sync_channel = PushChannel(
            make_socket(self.context, zmq.PUSH, cfg.endpoint(master, cfg.sync_port), bind=False),
            'sync')
        self.file_channel = PushChannel(
            make_socket(self.context, zmq.PUSH, cfg.endpoint(master, cfg.file_port), bind=False),
            'file')

        logger.info(f"Instrument: {self.instrument.identify()}")
        self.spawn(self._command_loop, "SlaveCommands")
        self.spawn(self._trigger_loop, "SlaveTrigger")
        self.spawn(self._heartbeat_loop, "SlaveHeartbeat")

    def close_sockets(self):
        with self._lock:
            runner = self.runner
            self.runner = None
        if runner is not None:
            runner.abort()
        for socket in (self.command_socket, self.trigger_socket):
            if socket is not None:
                socket.close(linger=0)
        for channel in (self.status_channel, self.sync_channel, self.file_channel):
            if channel is not None:
                channel.close()

    def serve_forever(self):
        """Block until stop() is called from a signal handler or another thread."""
        while self.running:
            self._stop_event.wait(1.0)

    # -- heartbeat ----------------------------------------------------------------

    def _heartbeat_loop(self):
        while not self._stop_event.wait(self.config.heartbeat_interval):
            try:
                self._heartbeats += 1
                self.status_channel.send(protocol.status(self._heartbeats, self.get_status()))
            except zmq.ZMQError as e:
                if self.running:
                    logger.error(f"Heartbeat failed: {e}")
            except Exception:
                logger.exception("Heartbeat loop error")

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        result = self.last_result
        status['records'] = result.records if result is not None else 0
        return status

    # -- commands -------------------------------------------------------------------

    def _command_loop(self):
        while self.running:
            try:
                raw = recv_with_timeout(self.command_socket, POLL_S)
                if raw is None:
                    continue
                reply = self._handle_raw_command(raw)
                self.command_socket.send(reply)
            except zmq.ZMQError as e:
                if self.running:
                    logger.error(f"Command channel error: {e}")
                return
            except Exception:
                logger.exception("Command loop error")

    def _handle_raw_command(self, raw: bytes) -> bytes:
        try:
            message = protocol.decode(raw, expected=MessageKind.COMMAND)
        except protocol.ProtocolError as e:
            return protocol.response('invalid', 0, False, error=str(e))
        name = message.get('command', '')
        sequence = message.get('sequence', 0)
        params = message.get('params') or {}
        try:
            command = Command(name)
        except ValueError:
            return protocol.response(name, sequence, False, error=f"unknown command {name!r}")

        logger.debug(f"Command {command.value} ({sequence})")
        try:
            data = self.handle_command(command, params)
        except SlaveCommandError as e:
            logger.warning(f"Command {command.value} refused: {e}")
            return protocol.response(command.value, sequence, False, error=str(e))
        except (SyncError, ValueError) as e:
            logger.error(f"Command {command.value} failed: {e}")
            return protocol.response(command.value, sequence, False, error=str(e))
        return protocol.response(command.value, sequence, True, data=data)

    def handle_command(self, command: Command, params: Dict[str, Any]) -> Dict[str, Any]:
        if command == Command.STATUS:
            return self.get_status()
        if command in (Command.REQUEST_READY, Command.PREPARE_TRIGGER):
            return self._request_ready(params)
        if command == Command.STOP:
            session = self.current_session
            if session is not None:
                session.cancel()
            return {'stopped': session is not None}
        if command == Command.RESET:
            return self._reset()
        if command in (Command.REQUEST_PARTIAL_DATA, Command.REQUEST_FULL_DATA):
            return self._request_data(command, params)
        raise SlaveCommandError(f"unhandled command {command.value}")

    def _request_ready(self, params: Dict[str, Any]) -> Dict[str, Any]:
        sequence_id = int(params.get('sequence_id', 0))
        duration = float(params.get('duration_s', self.config.duration))
        channels = params.get('channels') or list(self.config.channels)

        with self._lock:
            session = self.current_session
            if (session is not None and session.sequence_id == sequence_id
                    and session.state in (SessionState.PREPARING, SessionState.READY_FOR_TRIGGER)):
                # Retry of the current handshake
                if session.state == SessionState.READY_FOR_TRIGGER:
                    self.spawn(self._send_ready, "SlaveReady", session)
                return {'sequence_id': sequence_id, 'state': session.state.value}

            if self.acquisition_active:
                if session is not None and session.state in (
                        SessionState.TRIGGERED, SessionState.ACQUIRING, SessionState.STOPPING):
                    raise SlaveCommandError(f"acquisition {session.sequence_id} in progress")
                self._abandon_current()

            if not self.begin_session():
                raise SlaveCommandError("acquisition slot busy")
            session = AcquisitionSession(sequence_id, duration, channels)
            session.transition(SessionState.PREPARING)
            self.current_session = session
            self._triggered = False
        self.spawn(self._prepare, "SlavePrepare", session)
        return {'sequence_id': sequence_id, 'state': SessionState.PREPARING.value}

    def _abandon_current(self):
        """Drop a session that was prepared but never triggered."""
        session = self.current_session
        runner = self.runner
        self.runner = None
        if session is not None:
            session.fail(SyncError("superseded by a new handshake", phase='handshake'))
        if runner is not None:
            runner.abort()
        self.end_session(session)

    def _prepare(self, session: AcquisitionSession):
        try:
            binary_path, text_path = self.output_paths(session)
            runner = AcquisitionRunner(session, self.config, self.instrument, self.context,
                                       binary_path, text_path, title="Slave merged data")
            with self._lock:
                if self.current_session is not session:
                    return
                self.runner = runner
            runner.prepare()
            if session.cancel_event.wait(self.config.settle_delay):
                raise SyncError("cancelled while preparing", phase='handshake')
            session.transition(SessionState.READY_FOR_TRIGGER)
            self._send_ready(session)
        except Exception as e:
            if isinstance(e, SyncError):
                logger.error(f"Preparation failed: {e}")
            else:
                logger.exception("Preparation failed")
            self._finish_session(session, error=e)

    def _send_ready(self, session: AcquisitionSession):
        self.sync_channel.send(protocol.ready_for_trigger(session.sequence_id))
        logger.info(f"Ready for trigger (session {session.sequence_id})")

    def _reset(self) -> Dict[str, Any]:
        with self._lock:
            session = self.current_session
            if session is not None and not session.state.terminal:
                session.fail(SyncError("reset by master", phase='session'))
            runner = self.runner
            self.runner = None
        if runner is not None:
            runner.abort()
        with self._lock:
            if self.acquisition_active:
                self.end_session(session)
            self.current_session = None
            self._triggered = False
        logger.info("Reset to idle")
        return {'state': SessionState.IDLE.value}

    # -- trigger --------------------------------------------------------------------

    def _trigger_loop(self):
        while self.running:
            try:
                raw = recv_with_timeout(self.trigger_socket, POLL_S)
                if raw is None:
                    continue
                received_ns = time.time_ns()
                message = protocol.decode(raw, expected=MessageKind.TRIGGER)
                self._on_trigger(message, received_ns)
            except protocol.ProtocolError as e:
                logger.warning(f"[handshake] bad trigger message: {e}")
            except zmq.ZMQError as e:
                if self.running:
                    logger.error(f"Trigger channel error: {e}")
                return
            except Exception:
                logger.exception("Trigger loop error")

    def _on_trigger(self, message: Dict[str, Any], received_ns: int):
        sequence_id = message.get('sequence_id')
        with self._lock:
            session = self.current_session
            if session is None or session.sequence_id != sequence_id:
                logger.warning(f"[handshake] trigger for session {sequence_id} without a "
                               f"prepared session; ignored")
                return
            if self._triggered:
                logger.debug(f"Duplicate trigger for session {sequence_id} ignored")
                return
            if session.state != SessionState.READY_FOR_TRIGGER:
                logger.warning(f"[handshake] trigger in state {session.state.value}; ignored")
                return
            runner = self.runner
            self._triggered = True

        session.slave_trigger_timestamp_ns = received_ns
        logger.info(f"Trigger received for session {sequence_id} at {received_ns} ns "
                    f"(master sent {message.get('trigger_timestamp_ns')})")
        self.spawn(self._acquire, "SlaveAcquire", session, runner)

    def _acquire(self, session: AcquisitionSession, runner: AcquisitionRunner):
        error = None
        try:
            runner.play()
            session.transition(SessionState.TRIGGERED)
            self.sync_channel.send(protocol.trigger_timestamp(
                session.sequence_id, session.slave_trigger_timestamp_ns))
            session.transition(SessionState.ACQUIRING)
            result = runner.acquire()
            session.transition(SessionState.STOPPING)
            with self._lock:
                self.last_result = result
                self.stats['records_merged'] += result.records
            session.transition(SessionState.COMPLETED)
            logger.info(f"Session {session.sequence_id} completed: {result.records} records")
        except SyncError as e:
            logger.error(f"Acquisition failed: {e}")
            error = e
        except Exception as e:
            logger.exception("Acquisition failed")
            error = e
        finally:
            runner.abort()
            self._finish_session(session, error=error)

    def _finish_session(self, session: AcquisitionSession, error: Optional[Exception] = None):
        with self._lock:
            if error is not None:
                session.fail(error)
            if self.current_session is session:
                runner = self.runner
                self.runner = None
                if runner is not None and error is not None:
                    runner.abort()
                if self.acquisition_active:
                    self.end_session(session)

    # -- data transfer --------------------------------------------------------------------

    def _request_data(self, command: Command, params: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            session = self.current_session
            result = self.last_result
        if session is None or session.state != SessionState.COMPLETED or result is None:
            raise SlaveCommandError("no completed acquisition to send")
        requested = params.get('sequence_id')
        if requested is not None and requested != session.sequence_id:
            raise SlaveCommandError(f"data for session {requested} not available "
                                    f"(have {session.sequence_id})")

        if command == Command.REQUEST_FULL_DATA:
            path = result.binary_path
            purpose = 'full'
        else:
            fraction = float(params.get('fraction', self.config.sync_fraction))
            data = read_binary(result.binary_path, fraction=fraction)
            path = write_binary(self.output_paths(session, kind='partial')[0], data)
            purpose = 'partial'

        self.spawn(self._transfer, "SlaveTransfer", path, purpose, session.sequence_id)
        return {'filename': Path(path).name, 'purpose': purpose}

    def _transfer(self, path: Path, purpose: str, sequence_id: int):
        sender = FileSender(self.file_channel, self.config.chunk_size, self.config.transfer_timeout)
        try:
            sender.send_file(path, purpose=purpose, sequence_id=sequence_id)
        except TransferFailure as e:
            logger.error(f"Transfer failed: {e}")
            with self._lock:
                self.stats['last_error'] = str(e)
