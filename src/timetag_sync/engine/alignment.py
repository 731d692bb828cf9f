"""
Post-acquisition alignment of a master file against slave data.

Shared by the master coordinator at the end of a session and by the
offline `timetag-sync align` command. Produces, next to the master file:

    master_corrected_*.bin/.txt   Mode A: master shifted by the mean offset
    master_aligned_*.bin/.txt     Mode B: master trimmed to the common start
    master_sync_report_*.txt/.json
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional

import numpy as np

from ..errors import EstimationInsufficientData
from ..interfaces.sync_result import MergeSummary, SyncReport
from ..output.report_writer import write_report
from ..output.timestamp_files import TimestampData, read_binary, write_binary, write_text
from ..timing.offset_estimator import OffsetEstimator, apply_offset

logger = logging.getLogger('timetag-sync.alignment')


def _stem_pattern(master_path: Path) -> str:
    stem = master_path.stem
    if 'master_results' in stem:
        return stem.replace('master_results', 'master_{}')
    return stem + '_{}'


def align_files(
    master_path: Path,
    slave_path: Path,
    output_dir: Path,
    estimator: OffsetEstimator,
    slave_is_leading: bool = True,
    text_output: bool = True,
    sequence_id: int = 0,
    master_trigger_timestamp_ns: int = 0,
    slave_trigger_timestamp_ns: int = 0,
    channels: Iterable[int] = (),
    duration_s: float = 0.0,
    merge: Optional[MergeSummary] = None,
    notes: Iterable[str] = (),
) -> SyncReport:
    """
    Run Mode A and Mode B on two timestamp files and write the artifacts.

    Args:
        slave_is_leading: slave_path already holds only the leading fraction
            (a partial transfer); otherwise the fraction is taken here.

    Estimation failures are recorded as report notes; the report is always
    written.
    """
    master_path = Path(master_path)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    master = read_binary(master_path)
    slave = read_binary(slave_path)
    slave_lead = slave.timestamps if slave_is_leading else estimator.leading_fraction(slave.timestamps)
    master_lead = estimator.leading_fraction(master.timestamps)

    files = {'Master raw data': str(master_path), 'Slave data': str(slave_path)}
    report_notes: List[str] = list(notes)
    stem = _stem_pattern(master_path)

    offset = estimator.estimate_offset(master_lead, slave_lead)
    if offset is None:
        report_notes.append("[estimation] offset estimate unavailable")
    else:
        corrected = TimestampData(apply_offset(master.timestamps, offset.mean_offset),
                                  master.channels)
        path = write_binary(output_dir / f"{stem.format('corrected')}.bin", corrected)
        files['Corrected master data'] = str(path)
        if text_output:
            write_text(path.with_suffix('.txt'), corrected, title="Corrected master data")

    alignment = None
    try:
        alignment = estimator.align_start_points(master.timestamps, slave_lead)
    except EstimationInsufficientData as e:
        report_notes.append(str(e))
    if alignment is not None:
        keep = master.timestamps >= np.uint64(alignment.sync_point)
        aligned = TimestampData(master.timestamps[keep], master.channels[keep])
        path = write_binary(output_dir / f"{stem.format('aligned')}.bin", aligned)
        files['Synchronized master data'] = str(path)
        if text_output:
            write_text(path.with_suffix('.txt'), aligned, title="Start-point aligned master data")

    report_path = output_dir / f"{stem.format('sync_report')}.txt"
    files['Sync report'] = str(report_path)
    report = SyncReport(
        sequence_id=sequence_id,
        master_trigger_timestamp_ns=master_trigger_timestamp_ns,
        slave_trigger_timestamp_ns=slave_trigger_timestamp_ns,
        channels=tuple(channels) or tuple(int(c) for c in master.channel_set),
        duration_s=duration_s,
        master_records=len(master),
        slave_records=len(slave_lead),
        offset=offset,
        alignment=alignment,
        merge=merge,
        sync_fraction=estimator.sync_fraction,
        files=files,
        notes=report_notes,
    )
    write_report(report, report_path)
    if offset is not None:
        logger.info(f"Offset {offset.mean_offset:.1f} ps "
                    f"(std {offset.std_dev:.1f}, quality {offset.quality_percent:.1f}%)")
    logger.info(f"Sync report: {report_path}")
    return report
