"""
Chunked file transfer from slave to master over the file channel (PUSH/PULL).

    [file_header, {filename, size, chunks, purpose, sequence_id}]
    [file_chunk,  {filename, index}, <bytes>]     x chunks
    [file_footer, {filename, chunks_sent}]

The receiver writes chunks to a temporary file and only renames it into
place once the footer matches the header's chunk count and byte size.
"""

import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..coordinator import protocol
from ..coordinator.protocol import FileKind
from ..coordinator.transport import PushChannel, recv_multipart_with_timeout
from ..errors import TransferFailure

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass
class ReceivedFile:
    path: Path
    size: int
    chunks: int
    purpose: str
    sequence_id: Optional[int]


class FileSender:
    """Sends whole files as header, chunks and footer."""

    def __init__(self, channel: PushChannel, chunk_size: int = DEFAULT_CHUNK_SIZE,
                 timeout: float = 10.0):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.channel = channel
        self.chunk_size = chunk_size
        self.timeout = timeout

    def _send(self, frames, what: str):
        if not self.channel.send_multipart(frames, self.timeout):
            raise TransferFailure(f"receiver not accepting {what} within {self.timeout:.1f}s")

    def send_file(self, path, purpose: str = 'data', sequence_id: Optional[int] = None) -> int:
        """
        Send `path`; returns the number of chunks sent.

        Raises:
            TransferFailure: the file is missing or the receiver stopped accepting
        """
        path = Path(path)
        if not path.exists():
            raise TransferFailure(f"{path} does not exist")
        size = path.stat().st_size
        chunks = max(1, math.ceil(size / self.chunk_size))
        name = path.name

        logger.info(f"Sending {name} ({size} bytes, {chunks} chunks, purpose {purpose})")
        started = time.monotonic()
        self._send(protocol.file_frames(FileKind.HEADER, {
            'filename': name, 'size': size, 'chunks': chunks,
            'purpose': purpose, 'sequence_id': sequence_id,
        }), 'header')

        sent = 0
        with open(path, 'rb') as f:
            for index in range(chunks):
                payload = f.read(self.chunk_size)
                self._send(protocol.file_frames(
                    FileKind.CHUNK, {'filename': name, 'index': index}, payload
                ), f'chunk {index}')
                sent += 1

        self._send(protocol.file_frames(FileKind.FOOTER, {
            'filename': name, 'chunks_sent': sent,
        }), 'footer')
        logger.info(f"Sent {name} in {time.monotonic() - started:.2f}s")
        return sent


class FileReceiver:
    """Receives one file at a time from a PULL socket into dest_dir."""

    def __init__(self, socket, dest_dir, timeout: float = 10.0):
        self.socket = socket
        self.dest_dir = Path(dest_dir)
        self.timeout = timeout

    def _next(self, waiting_for: str):
        frames = recv_multipart_with_timeout(self.socket, self.timeout)
        if frames is None:
            raise TransferFailure(f"no {waiting_for} within {self.timeout:.1f}s")
        try:
            return protocol.parse_file_frames(frames)
        except protocol.ProtocolError as e:
            raise TransferFailure(f"bad file message while waiting for {waiting_for}: {e}") from None

    def receive(self, sequence_id: Optional[int] = None) -> ReceivedFile:
        """
        Receive the next complete file (for `sequence_id`, if given).

        Raises:
            TransferFailure: timeout, out-of-order chunk, or footer mismatch
        """
        while True:
            kind, meta, _ = self._next('file header')
            if kind != FileKind.HEADER:
                logger.warning(f"[transfer] discarding stray {kind.value} for {meta.get('filename')}")
                continue
            if sequence_id is not None and meta.get('sequence_id') != sequence_id:
                logger.warning(f"[transfer] discarding file from session {meta.get('sequence_id')}, "
                               f"expecting {sequence_id}")
                continue
            break

        name = Path(str(meta.get('filename', 'received.bin'))).name
        size = int(meta.get('size', -1))
        chunks = int(meta.get('chunks', -1))
        self.dest_dir.mkdir(parents=True, exist_ok=True)
        path = self.dest_dir / name
        tmp_path = path.with_suffix(path.suffix + '.part')

        received = 0
        written = 0
        try:
            with open(tmp_path, 'wb') as f:
                while True:
                    kind, chunk_meta, payload = self._next(f'chunk {received} of {name}')
                    if kind == FileKind.CHUNK:
                        if chunk_meta.get('index') != received:
                            raise TransferFailure(f"{name}: chunk {chunk_meta.get('index')} "
                                                  f"arrived, expected {received}")
                        f.write(payload)
                        received += 1
                        written += len(payload)
                    elif kind == FileKind.FOOTER:
                        sent = chunk_meta.get('chunks_sent')
                        if sent != chunks or received != chunks:
                            raise TransferFailure(f"{name}: header announced {chunks} chunks, "
                                                  f"footer {sent}, received {received}")
                        break
                    else:
                        raise TransferFailure(f"{name}: new header before footer")
            if written != size:
                raise TransferFailure(f"{name}: {written} bytes received, header announced {size}")
        except TransferFailure:
            tmp_path.unlink(missing_ok=True)
            raise

        tmp_path.replace(path)
        logger.info(f"Received {name} ({written} bytes, {received} chunks)")
        return ReceivedFile(path, written, received, str(meta.get('purpose', 'data')),
                            meta.get('sequence_id'))
