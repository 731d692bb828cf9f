"""
Timestamp file artifacts.

Binary layout (little endian):

    uint64 count
    count x record

A record is either a bare uint64 timestamp (untagged files, as produced by
a single-channel dump) or a (uint64 timestamp, int32 channel) pair (tagged
files, as produced by the merger). Readers tell the two apart from the
file size and the count header; there is no version byte.

The text mirror carries the same records as "index, timestamp, channel"
lines below a block of '#' comment lines.

Merged output is streamed by MergedFileWriter: the count header is
written as a placeholder, records are appended window by window, and the
header is patched on close before the file is renamed into place.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence, Union

import numpy as np

from ..interfaces.sync_result import MergedRecord

logger = logging.getLogger(__name__)

COUNT_DTYPE = np.dtype('<u8')
TIMESTAMP_DTYPE = np.dtype('<u8')
RECORD_DTYPE = np.dtype([('timestamp', '<u8'), ('channel', '<i4')])
HEADER_SIZE = COUNT_DTYPE.itemsize

TEXT_TITLE = "Distributed Timestamp System"
TEXT_FORMAT_LINE = "# Format: index, timestamp, channel"

PathLike = Union[str, Path]


@dataclass
class TimestampData:
    """Timestamps with their channel tags, as read from an artifact."""
    timestamps: np.ndarray               # uint64
    channels: np.ndarray                 # int32, zeros for untagged data
    tagged: bool = True

    def __len__(self) -> int:
        return len(self.timestamps)

    @classmethod
    def empty(cls) -> 'TimestampData':
        return cls(np.zeros(0, dtype=np.uint64), np.zeros(0, dtype=np.int32))

    def head(self, n: int) -> 'TimestampData':
        return TimestampData(self.timestamps[:n], self.channels[:n], self.tagged)

    @property
    def channel_set(self) -> list:
        return sorted(int(c) for c in np.unique(self.channels))

    def records(self, chunk: int = 100_000) -> Iterator[MergedRecord]:
        """Per-record view in file order."""
        for start in range(0, len(self), chunk):
            ts = self.timestamps[start:start + chunk].tolist()
            ch = self.channels[start:start + chunk].tolist()
            for i, (t, c) in enumerate(zip(ts, ch)):
                yield MergedRecord(start + i, t, c)


def leading_count(total: int, fraction: Optional[float]) -> int:
    """Number of leading records covered by `fraction`, at least one."""
    if total <= 0:
        return 0
    if fraction is None or fraction >= 1.0:
        return total
    return max(1, min(total, int(total * fraction)))


def _records(timestamps: np.ndarray, channels: np.ndarray) -> np.ndarray:
    records = np.empty(len(timestamps), dtype=RECORD_DTYPE)
    records['timestamp'] = timestamps
    records['channel'] = channels
    return records


class MergedFileWriter:
    """
    Append-only writer for tagged binary files.

    Only the merger thread calls write(); close() runs after the merger has
    been joined.
    """

    def __init__(self, path: PathLike, text_path: Optional[PathLike] = None,
                 title: str = "Merged timestamps"):
        self.path = Path(path)
        self.text_path = Path(text_path) if text_path else None
        self.title = title
        self.count = 0
        self._tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        self._file = None

    def open(self) -> 'MergedFileWriter':
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._tmp_path, 'wb')
        self._file.write(np.array([0], dtype=COUNT_DTYPE).tobytes())
        return self

    def write(self, timestamps: np.ndarray, channels: np.ndarray):
        if self._file is None:
            raise RuntimeError(f"{self.path} is not open")
        if len(timestamps) == 0:
            return
        _records(timestamps, channels).tofile(self._file)
        self.count += len(timestamps)

    def close(self) -> Path:
        if self._file is None:
            return self.path
        self._file.seek(0)
        self._file.write(np.array([self.count], dtype=COUNT_DTYPE).tobytes())
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()
        self._file = None
        self._tmp_path.rename(self.path)
        logger.info(f"Wrote {self.count} records to {self.path}")

        if self.text_path:
            binary_to_text(self.path, self.text_path, title=self.title)
        return self.path

    def discard(self):
        """Drop the partial output; neither the binary file nor its mirror is produced."""
        if self._file is None:
            return
        self._file.close()
        self._file = None
        self._tmp_path.unlink(missing_ok=True)
        logger.info(f"Discarded {self.count} records of {self.path.name}")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()


def write_binary(path: PathLike, data: TimestampData) -> Path:
    """Write a complete tagged (or untagged) binary file atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + '.tmp')
    with open(tmp_path, 'wb') as f:
        f.write(np.array([len(data)], dtype=COUNT_DTYPE).tobytes())
        if data.tagged:
            _records(data.timestamps, data.channels).tofile(f)
        else:
            np.asarray(data.timestamps, dtype=TIMESTAMP_DTYPE).tofile(f)
    tmp_path.rename(path)
    return path


def read_binary(path: PathLike, fraction: Optional[float] = None) -> TimestampData:
    """
    Read a binary timestamp file, optionally only its leading fraction.

    Raises:
        ValueError: if the file size matches neither record layout
    """
    path = Path(path)
    size = path.stat().st_size
    if size < HEADER_SIZE:
        raise ValueError(f"{path}: too short for a count header ({size} bytes)")

    with open(path, 'rb') as f:
        count = int(np.frombuffer(f.read(HEADER_SIZE), dtype=COUNT_DTYPE)[0])
        if size == HEADER_SIZE + count * RECORD_DTYPE.itemsize:
            tagged = True
        elif size == HEADER_SIZE + count * TIMESTAMP_DTYPE.itemsize:
            tagged = False
        else:
            raise ValueError(
                f"{path}: {size} bytes does not match {count} records "
                f"in either tagged or untagged layout"
            )

        n = leading_count(count, fraction)
        if tagged:
            records = np.fromfile(f, dtype=RECORD_DTYPE, count=n)
            return TimestampData(
                records['timestamp'].astype(np.uint64),
                records['channel'].astype(np.int32),
                tagged=True,
            )
        timestamps = np.fromfile(f, dtype=TIMESTAMP_DTYPE, count=n).astype(np.uint64)
        return TimestampData(timestamps, np.zeros(n, dtype=np.int32), tagged=False)


def _text_header(data: TimestampData, title: str) -> Iterable[str]:
    generated = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
    channels = ','.join(str(c) for c in data.channel_set)
    yield f"# {TEXT_TITLE} - {title}"
    yield f"# Generated: {generated}"
    yield f"# Channels: {channels}"
    yield f"# Total timestamps: {len(data)}"
    yield TEXT_FORMAT_LINE


def write_text(path: PathLike, data: TimestampData, title: str = "Timestamps",
               chunk: int = 100_000) -> Path:
    """Write the human-readable mirror of `data`."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + '.tmp')
    with open(tmp_path, 'w') as f:
        for line in _text_header(data, title):
            f.write(line + '\n')
        f.writelines(
            f"{r.global_index}, {r.timestamp}, {r.channel}\n" for r in data.records(chunk)
        )
    tmp_path.rename(path)
    return path


def read_text(path: PathLike) -> TimestampData:
    """
    Parse a text mirror. Lines starting with '#' and blank lines are skipped.

    Raises:
        ValueError: on a line that is not "index, timestamp, channel"
    """
    timestamps = []
    channels = []
    with open(path, 'r') as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            parts = [p.strip() for p in line.split(',')]
            if len(parts) != 3:
                raise ValueError(f"{path}:{lineno}: expected 3 fields, got {len(parts)}")
            try:
                timestamps.append(int(parts[1]))
                channels.append(int(parts[2]))
            except ValueError:
                raise ValueError(f"{path}:{lineno}: non-integer field in {line!r}") from None
    return TimestampData(
        np.array(timestamps, dtype=np.uint64),
        np.array(channels, dtype=np.int32),
        tagged=True,
    )


def binary_to_text(src: PathLike, dst: PathLike, title: str = "Timestamps") -> Path:
    return write_text(dst, read_binary(src), title=title)


def text_to_binary(src: PathLike, dst: PathLike) -> Path:
    return write_binary(dst, read_text(src))


def convert(src: PathLike, dst: PathLike) -> Path:
    """Convert between binary and text mirror, by file extension."""
    src, dst = Path(src), Path(dst)
    if src.suffix == '.txt' and dst.suffix != '.txt':
        return text_to_binary(src, dst)
    if src.suffix != '.txt' and dst.suffix == '.txt':
        return binary_to_text(src, dst, title=src.stem)
    raise ValueError(f"Cannot convert {src.name} to {dst.name}: need one .txt and one binary file")


def from_arrays(timestamps: Sequence[int], channels: Optional[Sequence[int]] = None) -> TimestampData:
    ts = np.asarray(timestamps, dtype=np.uint64)
    if channels is None:
        return TimestampData(ts, np.zeros(len(ts), dtype=np.int32), tagged=False)
    return TimestampData(ts, np.asarray(channels, dtype=np.int32), tagged=True)
