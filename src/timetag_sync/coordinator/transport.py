"""
ZeroMQ plumbing shared by both coordinator roles.

Each coordinator owns one zmq.Context and builds its sockets through
make_socket(). Sockets that more than one thread sends on are wrapped in
PushChannel, which serializes access with a lock. CommandClient is the
master's REQ side of the command channel; after a timeout the REQ socket
is in a stuck state, so it is closed and rebuilt before the next request.
"""

import itertools
import logging
import threading
from typing import Any, Dict, List, Optional

import zmq

from . import protocol

logger = logging.getLogger(__name__)

def make_socket(
    context: zmq.Context,
    socket_type: int,
    endpoint: str,
    bind: bool,
    subscribe: Optional[bytes] = None,
) -> zmq.Socket:
    """Create, configure and bind or connect one socket."""
    socket = context.socket(socket_type)
    socket.setsockopt(zmq.LINGER, 0)
    if subscribe is not None:
        socket.setsockopt(zmq.SUBSCRIBE, subscribe)
    try:
        if bind:
            socket.bind(endpoint)
        else:
            socket.connect(endpoint)
    except zmq.ZMQError:
        socket.close(linger=0)
        raise
    logger.debug(f"{'bound' if bind else 'connected'} {zmq_type_name(socket_type)} {endpoint}")
    return socket


def zmq_type_name(socket_type: int) -> str:
    names = {zmq.PUB: 'PUB', zmq.SUB: 'SUB', zmq.PUSH: 'PUSH', zmq.PULL: 'PULL',
             zmq.REQ: 'REQ', zmq.REP: 'REP', zmq.PAIR: 'PAIR'}
    return names.get(socket_type, str(socket_type))


def recv_with_timeout(socket: zmq.Socket, timeout: float) -> Optional[bytes]:
    """One message, or None when nothing arrives within `timeout` seconds."""
    if socket.poll(int(timeout * 1000)):
        return socket.recv(zmq.NOBLOCK)
    return None


def recv_multipart_with_timeout(socket: zmq.Socket, timeout: float) -> Optional[List[bytes]]:
    if socket.poll(int(timeout * 1000)):
        return socket.recv_multipart(zmq.NOBLOCK)
    return None


class PushChannel:
    """A PUSH (or PUB) socket that several threads may send on."""

    def __init__(self, socket: zmq.Socket, name: str):
        self.socket = socket
        self.name = name
        self._lock = threading.Lock()
        self.dropped = 0

    def send(self, data: bytes) -> bool:
        """Non-blocking send; False (and counted) when the peer is not keeping up."""
        with self._lock:
            try:
                self.socket.send(data, zmq.NOBLOCK)
                return True
            except zmq.Again:
                self.dropped += 1
                logger.debug(f"{self.name}: backpressure, message dropped")
                return False

    def send_multipart(self, frames: List[bytes], timeout: float) -> bool:
        """Blocking send bounded by `timeout` seconds."""
        with self._lock:
            if not self.socket.poll(int(timeout * 1000), zmq.POLLOUT):
                return False
            self.socket.send_multipart(frames, zmq.NOBLOCK)
            return True

    def close(self):
        with self._lock:
            self.socket.close(linger=0)


class CommandClient:
    """
    Master side of the command channel (lazy-pirate REQ).

    request() returns the decoded response, or None after a timeout. A
    timed-out socket is discarded and reconnected on the next request.
    """

    def __init__(self, context: zmq.Context, endpoint: str):
        self.context = context
        self.endpoint = endpoint
        self._socket: Optional[zmq.Socket] = None
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)
        self.timeouts = 0

    def _ensure_socket(self) -> zmq.Socket:
        if self._socket is None:
            self._socket = make_socket(self.context, zmq.REQ, self.endpoint, bind=False)
        return self._socket

    def _reset_socket(self):
        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None

    def request(self, name: protocol.Command, timeout: float, **params) -> Optional[Dict[str, Any]]:
        with self._lock:
            sequence = next(self._sequence)
            socket = self._ensure_socket()
            try:
                if not socket.poll(int(timeout * 1000), zmq.POLLOUT):
                    raise zmq.Again()
                socket.send(protocol.command(name, sequence, **params), zmq.NOBLOCK)
                raw = recv_with_timeout(socket, timeout)
            except zmq.Again:
                raw = None
            except zmq.ZMQError as e:
                logger.warning(f"Command {protocol.Command(name).value}: socket error {e}")
                self._reset_socket()
                return None

            if raw is None:
                self.timeouts += 1
                logger.debug(f"Command {protocol.Command(name).value}: no reply in {timeout:.1f}s")
                self._reset_socket()
                return None

            try:
                reply = protocol.decode(raw, expected=protocol.MessageKind.RESPONSE)
            except protocol.ProtocolError as e:
                logger.warning(f"Command {protocol.Command(name).value}: bad reply: {e}")
                return None
            if reply.get('sequence') != sequence:
                logger.warning(f"Command {protocol.Command(name).value}: reply for sequence "
                               f"{reply.get('sequence')}, expected {sequence}")
                self._reset_socket()
                return None
            return reply

    def close(self):
        with self._lock:
            self._reset_socket()
