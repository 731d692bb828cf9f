"""Data contracts shared by the engine, estimator and coordinators."""

from .sync_result import (
    ChannelBlock,
    MergedRecord,
    MergeSummary,
    OffsetEstimate,
    StartPointAlignment,
    SyncReport,
    TIMESTAMP_UNIT,
)

__all__ = [
    'ChannelBlock',
    'MergedRecord',
    'MergeSummary',
    'OffsetEstimate',
    'StartPointAlignment',
    'SyncReport',
    'TIMESTAMP_UNIT',
]
