"""Acquisition engine - per-channel listeners, the stream merger and the runner.

Contains:
- ChannelStreamListener: receives one channel's timestamp blocks
- StreamMerger: merges windows of blocks into one time-ordered stream
- AcquisitionRunner: drives listeners, merger and instrument for a session
- align_files: offset estimation and start-point alignment of finished files
"""

from .stream_listener import ChannelStreamListener
from .stream_merger import StreamMerger, window_timeout_for
from .acquisition import AcquisitionRunner, AcquisitionResult
from .alignment import align_files

__all__ = [
    'ChannelStreamListener',
    'StreamMerger',
    'window_timeout_for',
    'AcquisitionRunner',
    'AcquisitionResult',
    'align_files',
]
