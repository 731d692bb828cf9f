"""
Synchronization Result Data Models

These dataclasses define the contract between the acquisition engine, the
offset estimator and the report writer. A SyncReport is written once per
session as plain text plus a JSON sidecar.

Offsets are expressed in the unit of the timestamp stream. The reference
instrument tags events in picoseconds, so offsets read from its files are
picoseconds too; trigger timestamps are host wall-clock nanoseconds.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, List, Any
import json

import numpy as np

TIMESTAMP_UNIT = "ps"


@dataclass
class ChannelBlock:
    """One block of raw timestamps received on a single channel."""
    channel: int
    sequence_index: int                  # receipt order on this channel
    timestamps: np.ndarray               # uint64

    def __len__(self) -> int:
        return len(self.timestamps)


@dataclass(frozen=True)
class MergedRecord:
    """A single record of the merged, time-ordered stream."""
    global_index: int
    timestamp: int
    channel: int


@dataclass(frozen=True)
class OffsetEstimate:
    """Mode A result: statistics of matched slave-minus-master offsets."""
    mean_offset: float
    min_offset: float
    max_offset: float
    std_dev: float
    quality_percent: float
    sample_count: int
    rejected_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class StartPointAlignment:
    """Mode B result: master data trimmed to a common start point."""
    master_start: int
    slave_start: int
    sync_point: int
    time_difference: int                 # slave_start - master_start
    removed_count: int
    kept_count: int
    trimmed_master: np.ndarray = field(repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            'master_start': self.master_start,
            'slave_start': self.slave_start,
            'sync_point': self.sync_point,
            'time_difference': self.time_difference,
            'removed_count': self.removed_count,
            'kept_count': self.kept_count,
        }


@dataclass
class MergeSummary:
    """Counters describing how a session's windows were merged."""
    windows_merged: int = 0
    records_merged: int = 0
    stall_windows: Dict[int, int] = field(default_factory=dict)
    closed_channels: List[int] = field(default_factory=list)
    dropped_partial_windows: int = 0
    late_blocks: int = 0
    out_of_order_records: int = 0

    @property
    def degraded(self) -> bool:
        return bool(self.stall_windows or self.closed_channels or self.dropped_partial_windows)

    def to_dict(self) -> dict:
        result = asdict(self)
        result['stall_windows'] = {str(k): v for k, v in self.stall_windows.items()}
        result['degraded'] = self.degraded
        return result


@dataclass(frozen=True)
class SyncReport:
    """
    Complete result of one synchronized acquisition, as seen by the master.

    Either estimate may be missing when estimation had insufficient data;
    the report is still written so the raw artifacts are traceable.
    """
    sequence_id: int
    master_trigger_timestamp_ns: int
    slave_trigger_timestamp_ns: int
    channels: tuple
    duration_s: float
    master_records: int
    slave_records: int
    offset: Optional[OffsetEstimate] = None
    alignment: Optional[StartPointAlignment] = None
    merge: Optional[MergeSummary] = None
    sync_fraction: float = 0.1
    files: Dict[str, str] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)

    @property
    def initial_trigger_offset_ns(self) -> int:
        """Slave trigger receipt minus master trigger send."""
        if not self.slave_trigger_timestamp_ns or not self.master_trigger_timestamp_ns:
            return 0
        return self.slave_trigger_timestamp_ns - self.master_trigger_timestamp_ns

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence_id': self.sequence_id,
            'master_trigger_timestamp_ns': self.master_trigger_timestamp_ns,
            'slave_trigger_timestamp_ns': self.slave_trigger_timestamp_ns,
            'initial_trigger_offset_ns': self.initial_trigger_offset_ns,
            'channels': list(self.channels),
            'duration_s': self.duration_s,
            'master_records': self.master_records,
            'slave_records': self.slave_records,
            'timestamp_unit': TIMESTAMP_UNIT,
            'sync_fraction': self.sync_fraction,
            'offset': self.offset.to_dict() if self.offset else None,
            'alignment': self.alignment.to_dict() if self.alignment else None,
            'merge': self.merge.to_dict() if self.merge else None,
            'files': dict(self.files),
            'notes': list(self.notes),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)
