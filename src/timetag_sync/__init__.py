"""
timetag-sync: Master/Slave Synchronized Time-Tagging

Two nodes, each driving a multi-channel picosecond time tagger, acquire
simultaneously on a network trigger. Each node merges its per-channel
streams into one time-ordered file; the master then estimates the
slave-master clock offset from the leading part of both files and writes
corrected data plus a sync report.

Architecture:
    time tagger → listeners → merger → file → (slave → master) → estimator → report

Version: 1.0.0
"""

__version__ = "1.0.0"

from .errors import (
    SyncError,
    HandshakeTimeout,
    InstrumentCommandFailure,
    MergeFailure,
    EstimationInsufficientData,
    TransferFailure,
)
from .interfaces.sync_result import (
    OffsetEstimate,
    StartPointAlignment,
    MergeSummary,
    SyncReport,
)

__all__ = [
    "SyncError",
    "HandshakeTimeout",
    "InstrumentCommandFailure",
    "MergeFailure",
    "EstimationInsufficientData",
    "TransferFailure",
    "OffsetEstimate",
    "StartPointAlignment",
    "MergeSummary",
    "SyncReport",
    "__version__",
]
