"""
Wire protocol between master and slave.

Every control message is one JSON object with an explicit "kind". Receivers
dispatch on the kind only; no message is ever identified by its size or by
which fields happen to be present.

    command            master -> slave  (REQ/REP)    {command, sequence, params}
    response           slave -> master  (REQ/REP)    {command, sequence, success, error, data}
    trigger            master -> slaves (PUB/SUB)    {trigger_timestamp_ns, duration_s,
                                                      channels, sequence_id}
    ready_for_trigger  slave -> master  (sync PUSH)  {sequence_id}
    trigger_timestamp  slave -> master  (sync PUSH)  {sequence_id, trigger_timestamp_ns}
    status             slave -> master  (PUSH)       {state, progress, ...}

File transfer is multipart: [kind, json metadata] or [kind, json metadata,
payload] with kind one of file_header, file_chunk, file_footer.
"""

import json
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ProtocolError(ValueError):
    """Message could not be decoded or has an unknown kind."""


class MessageKind(str, Enum):
    COMMAND = "command"
    RESPONSE = "response"
    TRIGGER = "trigger"
    READY_FOR_TRIGGER = "ready_for_trigger"
    TRIGGER_TIMESTAMP = "trigger_timestamp"
    STATUS = "status"


class Command(str, Enum):
    STATUS = "status"
    PREPARE_TRIGGER = "prepare_trigger"
    REQUEST_READY = "request_ready"
    STOP = "stop"
    RESET = "reset"
    REQUEST_PARTIAL_DATA = "request_partial_data"
    REQUEST_FULL_DATA = "request_full_data"


class FileKind(str, Enum):
    HEADER = "file_header"
    CHUNK = "file_chunk"
    FOOTER = "file_footer"


def encode(kind: MessageKind, **fields) -> bytes:
    message = {'kind': MessageKind(kind).value, 'sent_ns': time.time_ns()}
    message.update(fields)
    return json.dumps(message).encode('utf-8')


def decode(raw: bytes, expected: Optional[MessageKind] = None) -> Dict[str, Any]:
    """
    Parse a control message.

    Raises:
        ProtocolError: malformed JSON, missing/unknown kind, or not `expected`
    """
    try:
        message = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"malformed message: {e}") from None
    if not isinstance(message, dict) or 'kind' not in message:
        raise ProtocolError("message has no kind")
    try:
        message['kind'] = MessageKind(message['kind'])
    except ValueError:
        raise ProtocolError(f"unknown message kind {message['kind']!r}") from None
    if expected is not None and message['kind'] != expected:
        raise ProtocolError(f"expected {expected.value}, got {message['kind'].value}")
    return message


# -- message builders ---------------------------------------------------------

def command(name: Command, sequence: int, **params) -> bytes:
    return encode(MessageKind.COMMAND, command=Command(name).value,
                  sequence=sequence, params=params)


def response(name: str, sequence: int, success: bool,
             error: Optional[str] = None, data: Optional[dict] = None) -> bytes:
    return encode(MessageKind.RESPONSE, command=name, sequence=sequence,
                  success=success, error=error, data=data or {})


def trigger(trigger_timestamp_ns: int, duration_s: float, channels, sequence_id: int) -> bytes:
    return encode(MessageKind.TRIGGER, trigger_timestamp_ns=int(trigger_timestamp_ns),
                  duration_s=float(duration_s), channels=list(channels),
                  sequence_id=sequence_id)


def ready_for_trigger(sequence_id: int) -> bytes:
    return encode(MessageKind.READY_FOR_TRIGGER, sequence_id=sequence_id)


def trigger_timestamp(sequence_id: int, timestamp_ns: int) -> bytes:
    return encode(MessageKind.TRIGGER_TIMESTAMP, sequence_id=sequence_id,
                  trigger_timestamp_ns=int(timestamp_ns))


def status(heartbeat: int, snapshot: Dict[str, Any]) -> bytes:
    return encode(MessageKind.STATUS, heartbeat=heartbeat, **snapshot)


# -- file frames -------------------------------------------------------------

def file_frames(kind: FileKind, meta: Dict[str, Any], payload: Optional[bytes] = None) -> List[bytes]:
    frames = [FileKind(kind).value.encode('ascii'), json.dumps(meta).encode('utf-8')]
    if payload is not None:
        frames.append(payload)
    return frames


def parse_file_frames(frames: List[bytes]) -> Tuple[FileKind, Dict[str, Any], Optional[bytes]]:
    """
    Raises:
        ProtocolError: wrong frame count, unknown kind, or bad metadata
    """
    if len(frames) not in (2, 3):
        raise ProtocolError(f"file message has {len(frames)} frames")
    try:
        kind = FileKind(frames[0].decode('ascii'))
    except (UnicodeDecodeError, ValueError):
        raise ProtocolError(f"unknown file message kind {frames[0][:32]!r}") from None
    try:
        meta = json.loads(frames[1])
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"malformed {kind.value} metadata: {e}") from None
    payload = frames[2] if len(frames) == 3 else None
    if kind == FileKind.CHUNK and payload is None:
        raise ProtocolError("file_chunk without payload")
    return kind, meta, payload
