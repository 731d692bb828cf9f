"""
Sync report writer.

Writes the plain-text report operators read, plus a JSON sidecar with the
same content for scripts. Both are written once per session.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from ..interfaces.sync_result import SyncReport, TIMESTAMP_UNIT

logger = logging.getLogger(__name__)

RULE = "=" * 60

QUALITY_GRADES = [
    (95.0, "Excellent - very stable synchronization"),
    (85.0, "Good - reliable synchronization"),
    (70.0, "Acceptable - usable synchronization"),
    (50.0, "Poor - high variability in synchronization"),
]


def quality_assessment(quality_percent: float) -> str:
    for threshold, text in QUALITY_GRADES:
        if quality_percent >= threshold:
            return text
    return "Unreliable - synchronization may not be accurate"


def format_report(report: SyncReport, generated: Optional[datetime] = None) -> str:
    generated = generated or datetime.now(timezone.utc)
    unit = TIMESTAMP_UNIT
    lines: List[str] = [
        "Distributed Timestamp System - Synchronization Report",
        RULE,
        f"Generated: {generated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
        f"Session: {report.sequence_id}",
        f"Channels: {', '.join(str(c) for c in report.channels)}",
        f"Duration: {report.duration_s:.3f} s",
        "",
        "TRIGGER:",
        f"Master trigger timestamp: {report.master_trigger_timestamp_ns} ns",
        f"Slave trigger timestamp: {report.slave_trigger_timestamp_ns} ns",
        f"Initial trigger offset: {report.initial_trigger_offset_ns} ns",
        "",
        "DATA:",
        f"Master records: {report.master_records}",
        f"Slave records used: {report.slave_records}",
        f"Sync fraction: {report.sync_fraction:.0%}",
    ]

    if report.merge is not None:
        merge = report.merge
        lines += [
            f"Windows merged: {merge.windows_merged}",
            f"Partial trailing windows dropped: {merge.dropped_partial_windows}",
            f"Late blocks discarded: {merge.late_blocks}",
        ]
        for ch, count in sorted(merge.stall_windows.items()):
            lines.append(f"Channel {ch} missing from {count} windows")
        if merge.closed_channels:
            lines.append(f"Channels closed as silent: {', '.join(map(str, merge.closed_channels))}")

    lines += ["", "OFFSET ESTIMATE:"]
    offset = report.offset
    if offset is None:
        lines.append("Not available - insufficient matching data")
    else:
        lines += [
            f"Minimum Offset: {offset.min_offset:.1f} {unit}",
            f"Maximum Offset: {offset.max_offset:.1f} {unit}",
            f"Average Offset: {offset.mean_offset:.1f} {unit}",
            f"Standard Deviation: {offset.std_dev:.1f} {unit}",
            f"Offset Range: {offset.max_offset - offset.min_offset:.1f} {unit}",
            f"Samples: {offset.sample_count} accepted, {offset.rejected_count} rejected",
            f"Synchronization Quality: {offset.quality_percent:.1f}%",
            f"Quality Assessment: {quality_assessment(offset.quality_percent)}",
        ]

    lines += ["", "SYNCHRONIZATION DETAILS:"]
    alignment = report.alignment
    if alignment is None:
        lines.append("Not available - insufficient data")
    else:
        lines += [
            f"Slave start time: {alignment.slave_start} {unit}",
            f"Master original start time: {alignment.master_start} {unit}",
            f"Time difference: {alignment.time_difference} {unit}",
            f"Synchronization point: {alignment.sync_point} {unit}",
            "",
            "DATA PROCESSING:",
            f"Timestamps removed: {alignment.removed_count}",
            f"Timestamps kept: {alignment.kept_count}",
        ]

    lines += ["", "RESULT:"]
    for label, path in sorted(report.files.items()):
        lines.append(f"{label}: {path}")
    for note in report.notes:
        lines.append(f"Note: {note}")
    lines.append("")
    return "\n".join(lines)


def write_report(report: SyncReport, path) -> Path:
    """Write the text report and its .json sidecar; returns the text path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix('.tmp')
    tmp_path.write_text(format_report(report))
    tmp_path.replace(path)
    path.with_suffix('.json').write_text(report.to_json())
    logger.info(f"Synchronization report saved to {path}")
    return path
