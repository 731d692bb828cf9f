"""
Time Controller driver.

Two services are involved, both spoken to over ZeroMQ REQ sockets:

    SCPI service (port 5555)         plain-text commands, one reply each
    DataLinkTarget service (6060)    JSON replies; moves each channel's
                                     timestamps to a local stream port

The DataLinkTarget pushes raw uint64 blocks to the ChannelStreamListener
bound at stream_base_port + channel. Each block counts from the start of its
own sub-acquisition, so listeners rebase it by PPER * block index.
"""

import json
import logging
import time
from typing import Dict, List, Optional, Sequence

import zmq

from ..errors import InstrumentCommandFailure
from ..coordinator.transport import make_socket, recv_with_timeout
from .base import TimeTagger

logger = logging.getLogger(__name__)

NATURAL_INACTIVITY_S = 1.0
STATUS_POLL_S = 0.5


class TimeControllerInstrument(TimeTagger):
    """SCPI + DataLinkTarget driver for one Time Controller."""

    name = "time_controller"
    window_relative = True

    def __init__(
        self,
        context: zmq.Context,
        address: str = '127.0.0.1',
        scpi_port: int = 5555,
        dlt_port: int = 6060,
        stream_address: str = 'localhost',
        timeout: float = 2.0,
    ):
        self.context = context
        self.address = address
        self.scpi_endpoint = f"tcp://{address}:{scpi_port}"
        self.dlt_endpoint = f"tcp://localhost:{dlt_port}"
        self.stream_address = stream_address
        self.timeout = timeout

        self._scpi_socket: Optional[zmq.Socket] = None
        self._dlt_socket: Optional[zmq.Socket] = None
        self.channels: List[int] = []
        self.acquisition_ids: Dict[int, str] = {}

    # -- low level ------------------------------------------------------------

    def _exchange(self, attr: str, endpoint: str, request: str, service: str) -> str:
        socket = getattr(self, attr)
        if socket is None:
            socket = make_socket(self.context, zmq.REQ, endpoint, bind=False)
            setattr(self, attr, socket)
        try:
            socket.send_string(request)
            raw = recv_with_timeout(socket, self.timeout)
        except zmq.ZMQError as e:
            raw = None
            logger.debug(f"{service} {request!r}: {e}")
        if raw is None:
            socket.close(linger=0)
            setattr(self, attr, None)
            raise InstrumentCommandFailure(
                f"{service} did not answer {request!r} within {self.timeout:.1f}s"
            )
        return raw.decode('utf-8', errors='replace').rstrip('\n')

    def scpi(self, command: str) -> str:
        """Send one SCPI command and return the reply."""
        reply = self._exchange('_scpi_socket', self.scpi_endpoint, command, 'SCPI')
        if reply.upper().startswith('ERR'):
            raise InstrumentCommandFailure(f"SCPI {command!r} rejected: {reply}")
        logger.debug(f"SCPI {command} -> {reply}")
        return reply

    def dlt(self, command: str):
        """Run one DataLinkTarget command and return its decoded JSON reply."""
        reply = self._exchange('_dlt_socket', self.dlt_endpoint, command, 'DataLinkTarget')
        if not reply:
            return None
        try:
            result = json.loads(reply)
        except json.JSONDecodeError:
            raise InstrumentCommandFailure(f"DataLinkTarget {command!r}: invalid reply {reply!r}") from None
        if isinstance(result, dict) and result.get('error') is not None:
            error = result['error']
            description = error.get('description', 'unknown error') if isinstance(error, dict) else str(error)
            raise InstrumentCommandFailure(f"DataLinkTarget {command!r}: {description}")
        return result

    # -- TimeTagger ------------------------------------------------------------

    def identify(self) -> str:
        return self.scpi('*IDN?')

    def configure(self, channels: Sequence[int], pwid_ps: int, pper_ps: int):
        self.channels = list(channels)
        for ch in self.channels:
            self.scpi(f"RAW{ch}:REF:LINK NONE")
        self.scpi("REC:TRIG:ARM:MODE MANUal")
        self.scpi("REC:ENABle ON")
        self.scpi("REC:STOP")
        self.scpi("REC:NUM INF")
        self.scpi(f"REC:PWID {pwid_ps};PPER {pper_ps}")
        logger.info(f"Time Controller configured: channels {self.channels}, "
                    f"PWID {pwid_ps} ps, PPER {pper_ps} ps")

    def close_active_acquisitions(self):
        """Stop acquisitions left over from an earlier run."""
        try:
            active = self.dlt('list') or []
        except InstrumentCommandFailure as e:
            logger.warning(f"Cannot list active acquisitions: {e}")
            return
        for acquisition_id in active:
            try:
                self.dlt(f"stop --id {acquisition_id}")
                logger.info(f"Closed stale acquisition {acquisition_id}")
            except InstrumentCommandFailure as e:
                logger.warning(f"Cannot close stale acquisition {acquisition_id}: {e}")

    def start_streams(self, ports: Dict[int, int]):
        self.close_active_acquisitions()
        self.acquisition_ids = {}
        for ch, port in ports.items():
            try:
                self.scpi(f"RAW{ch}:ERRORS:CLEAR")
                response = self.dlt(f"start-stream --address {self.address} "
                                    f"--channel {ch} --stream-port {port}")
                if isinstance(response, dict) and 'id' in response:
                    self.acquisition_ids[ch] = str(response['id'])
                self.scpi(f"RAW{ch}:SEND ON")
            except InstrumentCommandFailure as e:
                e.channel = ch
                raise

    def play(self):
        self.scpi("REC:PLAY")

    def stop(self):
        self.scpi("REC:STOP")

    def _playing(self) -> bool:
        try:
            return 'PLAY' in self.scpi("REC:STAGe?").upper()
        except InstrumentCommandFailure as e:
            logger.warning(f"Cannot read recording stage: {e}")
            return False

    def wait_end(self, timeout: float):
        """Wait until every stream has been inactive past the last sub-acquisition."""
        deadline = time.monotonic() + max(timeout, NATURAL_INACTIVITY_S * 2)
        done = {ch: False for ch in self.acquisition_ids}
        while not all(done.values()) and time.monotonic() < deadline:
            time.sleep(STATUS_POLL_S)
            if self._playing():
                continue
            counts = {}
            for ch, acquisition_id in self.acquisition_ids.items():
                if done[ch]:
                    continue
                try:
                    status = self.dlt(f"status --id {acquisition_id}") or {}
                except InstrumentCommandFailure as e:
                    logger.warning(f"[acquisition] status failed, treating stream as ended: {e} "
                                   f"(channel {ch})")
                    done[ch] = True
                    continue
                counts[ch] = status.get('acquisitions_count', 0)
                if status.get('inactivity', 0.0) > NATURAL_INACTIVITY_S and counts[ch] > 0:
                    done[ch] = True
        pending = [ch for ch, finished in done.items() if not finished]
        if pending:
            logger.warning(f"[acquisition] streams still active after {timeout:.1f}s: channels {pending}")

    def close_streams(self) -> Dict[int, List[str]]:
        errors: Dict[int, List[str]] = {ch: [] for ch in self.channels}
        statuses = {}
        for ch, acquisition_id in self.acquisition_ids.items():
            try:
                response = self.dlt(f"stop --id {acquisition_id}") or {}
                statuses[ch] = response.get('status', {})
            except InstrumentCommandFailure as e:
                errors[ch].append(str(e))
                statuses[ch] = {}

        expected = max([1] + [s.get('acquisitions_count', 0) for s in statuses.values()])
        for ch, status in statuses.items():
            for error in status.get('errors', []) or []:
                if isinstance(error, dict) and 'description' in error:
                    errors[ch].append(error['description'])
            count = status.get('acquisitions_count', 0)
            if count < expected:
                errors[ch].append(f"end of acquisition not registered ({count}/{expected})")

        for ch in self.channels:
            try:
                self.scpi(f"RAW{ch}:SEND OFF")
                error_count = self.scpi(f"RAW{ch}:ERRORS?")
                if error_count.strip().isdigit() and int(error_count) != 0:
                    errors[ch].append("instrument reports timestamp acquisition errors")
            except InstrumentCommandFailure as e:
                errors[ch].append(str(e))

        self.acquisition_ids = {}
        for ch, messages in errors.items():
            for message in messages:
                logger.warning(f"[acquisition] {message} (channel {ch})")
        return {ch: messages for ch, messages in errors.items() if messages}

    def close(self):
        for attr in ('_scpi_socket', '_dlt_socket'):
            socket = getattr(self, attr)
            if socket is not None:
                socket.close(linger=0)
                setattr(self, attr, None)
