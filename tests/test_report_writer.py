"""
Tests for the sync report and offline alignment.
"""

import json

import numpy as np
import pytest


def make_report(**overrides):
    from timetag_sync.interfaces.sync_result import (
        MergeSummary, OffsetEstimate, StartPointAlignment, SyncReport,
    )

    values = dict(
        sequence_id=2,
        master_trigger_timestamp_ns=1_000_000,
        slave_trigger_timestamp_ns=1_000_450,
        channels=(1, 2),
        duration_s=0.6,
        master_records=4000,
        slave_records=400,
        offset=OffsetEstimate(mean_offset=50.0, min_offset=49.0, max_offset=51.0,
                              std_dev=0.8, quality_percent=98.4, sample_count=399,
                              rejected_count=1),
        alignment=StartPointAlignment(master_start=100, slave_start=150, sync_point=150,
                                      time_difference=50, removed_count=1, kept_count=3999,
                                      trimmed_master=np.zeros(0, dtype=np.uint64)),
        merge=MergeSummary(windows_merged=3, records_merged=4000, stall_windows={2: 1}),
        files={'Master raw data': '/data/master_results.bin'},
        notes=['channel 2: overflow'],
    )
    values.update(overrides)
    return SyncReport(**values)


class TestQualityAssessment:

    @pytest.mark.parametrize('quality,prefix', [
        (100.0, 'Excellent'),
        (95.0, 'Excellent'),
        (94.9, 'Good'),
        (85.0, 'Good'),
        (70.0, 'Acceptable'),
        (50.0, 'Poor'),
        (49.9, 'Unreliable'),
        (0.0, 'Unreliable'),
    ])
    def test_grades(self, quality, prefix):
        from timetag_sync.output.report_writer import quality_assessment

        assert quality_assessment(quality).startswith(prefix)


class TestFormatReport:

    def test_sections(self):
        from timetag_sync.output.report_writer import format_report

        text = format_report(make_report())

        assert 'Initial trigger offset: 450 ns' in text
        assert 'Average Offset: 50.0 ps' in text
        assert 'Offset Range: 2.0 ps' in text
        assert 'Synchronization Quality: 98.4%' in text
        assert 'Quality Assessment: Excellent' in text
        assert 'Synchronization point: 150 ps' in text
        assert 'Timestamps removed: 1' in text
        assert 'Channel 2 missing from 1 windows' in text
        assert 'Master raw data: /data/master_results.bin' in text
        assert 'Note: channel 2: overflow' in text

    def test_missing_estimates(self):
        from timetag_sync.output.report_writer import format_report

        text = format_report(make_report(offset=None, alignment=None))
        assert 'Not available - insufficient matching data' in text
        assert 'Not available - insufficient data' in text


class TestWriteReport:

    def test_text_and_json(self, tmp_path):
        from timetag_sync.output.report_writer import write_report

        path = write_report(make_report(), tmp_path / 'master_sync_report.txt')
        sidecar = json.loads(path.with_suffix('.json').read_text())

        assert path.read_text().startswith('Distributed Timestamp System - Synchronization Report')
        assert sidecar['sequence_id'] == 2
        assert sidecar['initial_trigger_offset_ns'] == 450
        assert sidecar['timestamp_unit'] == 'ps'
        assert sidecar['offset']['rejected_count'] == 1
        assert sidecar['alignment']['sync_point'] == 150
        assert 'trimmed_master' not in sidecar['alignment']
        assert sidecar['merge']['stall_windows'] == {'2': 1}
        assert sidecar['merge']['degraded'] is True

    def test_trigger_offset_zero_when_unknown(self):
        assert make_report(slave_trigger_timestamp_ns=0).initial_trigger_offset_ns == 0


class TestAlignFiles:
    """Offline alignment of a master file against slave data."""

    def _write(self, path, timestamps, channel=1):
        from timetag_sync.output.timestamp_files import from_arrays, write_binary

        return write_binary(path, from_arrays(timestamps, [channel] * len(timestamps)))

    def test_artifacts(self, tmp_path):
        from timetag_sync.engine.alignment import align_files
        from timetag_sync.output.timestamp_files import read_binary
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        master_ts = [1000 * i for i in range(1, 21)]
        slave_ts = [t + 300 for t in master_ts]
        master = self._write(tmp_path / 'master_results_20250101_000000_s1.bin', master_ts)
        slave = self._write(tmp_path / 'slave.bin', slave_ts)

        report = align_files(master, slave, tmp_path, OffsetEstimator(sync_fraction=0.5),
                             slave_is_leading=False, sequence_id=1)

        assert report.offset.mean_offset == 300.0
        assert report.offset.sample_count == 9
        assert report.slave_records == 10
        assert report.master_records == 20
        assert report.channels == (1,)

        corrected = tmp_path / 'master_corrected_20250101_000000_s1.bin'
        assert read_binary(corrected).timestamps.tolist() == slave_ts
        assert (tmp_path / 'master_corrected_20250101_000000_s1.txt').exists()

        aligned = read_binary(tmp_path / 'master_aligned_20250101_000000_s1.bin')
        assert aligned.timestamps.tolist() == master_ts[1:]
        assert report.alignment.removed_count == 1

        report_path = tmp_path / 'master_sync_report_20250101_000000_s1.txt'
        assert report.files['Sync report'] == str(report_path)
        assert report_path.exists()
        assert report_path.with_suffix('.json').exists()

    def test_insufficient_slave_data_still_reports(self, tmp_path):
        from timetag_sync.engine.alignment import align_files
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        master = self._write(tmp_path / 'm.bin', [10, 20, 30])
        slave = self._write(tmp_path / 's.bin', [])

        report = align_files(master, slave, tmp_path / 'out', OffsetEstimator(), text_output=False)

        assert report.offset is None
        assert report.alignment is None
        assert any('[estimation]' in note for note in report.notes)
        assert (tmp_path / 'out' / 'm_sync_report.txt').exists()
        assert not (tmp_path / 'out' / 'm_corrected.bin').exists()
