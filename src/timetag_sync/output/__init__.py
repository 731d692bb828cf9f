"""Output adapters - timestamp files, file transfer, sync reports, health monitoring."""

from .timestamp_files import (
    MergedFileWriter,
    TimestampData,
    convert,
    read_binary,
    read_text,
    write_binary,
    write_text,
)
from .report_writer import write_report
from .health_server import HealthServer

__all__ = [
    'MergedFileWriter',
    'TimestampData',
    'convert',
    'read_binary',
    'read_text',
    'write_binary',
    'write_text',
    'write_report',
    'HealthServer',
]
