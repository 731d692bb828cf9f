"""
Tests for the offset estimator (ratio-filtered offset and start-point alignment).
"""

import numpy as np
import pytest


class TestEstimateOffset:
    """Mode A: inter-arrival ratio filtered offset."""

    def test_all_ratios_accepted(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        estimator = OffsetEstimator(sync_fraction=1.0)
        estimate = estimator.estimate_offset(
            np.array([1000, 2000, 3000, 4000], dtype=np.uint64),
            np.array([1050, 2051, 3049, 4052], dtype=np.uint64),
        )

        assert estimate is not None
        assert estimate.sample_count == 3
        assert estimate.rejected_count == 0
        assert estimate.mean_offset == pytest.approx(50.0)
        assert estimate.min_offset == 49.0
        assert estimate.max_offset == 51.0
        assert estimate.std_dev == pytest.approx(np.sqrt(2.0 / 3.0))
        assert estimate.quality_percent == pytest.approx(98.37, abs=0.01)

    def test_constant_offset_is_perfect(self, ladder_timestamps):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        estimate = OffsetEstimator().estimate_offset(
            ladder_timestamps['master'], ladder_timestamps['slave'])

        assert estimate.mean_offset == 50.0
        assert estimate.std_dev == 0.0
        assert estimate.quality_percent == 100.0

    def test_divergent_ratio_excluded(self):
        """A 5x jump in the slave interval removes that pair from the statistics."""
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        estimate = OffsetEstimator().estimate_offset(
            [1000, 2000, 3000, 4000],
            [1050, 2060, 7060, 8060],
        )

        assert estimate.sample_count == 2
        assert estimate.rejected_count == 1
        # The pair at index 1 (offset 60) precedes the 5x interval
        assert estimate.min_offset == 50.0
        assert estimate.max_offset == 4060.0
        assert estimate.mean_offset == pytest.approx(2055.0)

    def test_ratio_bounds_are_inclusive(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        estimate = OffsetEstimator(ratio_bounds=(0.9, 1.1)).estimate_offset(
            [0, 1000, 2000],
            [10, 1110, 1910],        # ratios 1.1 and 0.8
        )
        assert estimate.sample_count == 1
        assert estimate.mean_offset == 10.0

    def test_repeated_master_timestamp_rejected(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        estimate = OffsetEstimator().estimate_offset(
            [1000, 1000, 2000],
            [1020, 1030, 2030],
        )
        assert estimate.rejected_count == 1
        assert estimate.sample_count == 1
        assert estimate.mean_offset == 30.0

    def test_unequal_lengths_use_common_prefix(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        estimate = OffsetEstimator().estimate_offset(
            [100, 200, 300, 400, 500, 600],
            [105, 205, 305],
        )
        assert estimate.sample_count == 2
        assert estimate.mean_offset == 5.0

    @pytest.mark.parametrize('master,slave', [
        ([], [1, 2, 3]),
        ([1, 2, 3], []),
        ([1000], [1050]),
    ])
    def test_insufficient_data_returns_none(self, master, slave):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        assert OffsetEstimator().estimate_offset(master, slave) is None

    def test_everything_rejected_returns_none(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        assert OffsetEstimator().estimate_offset([0, 1000, 2000], [0, 5000, 25000]) is None

    def test_negative_offsets(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        estimate = OffsetEstimator().estimate_offset([5000, 6000, 7000], [4000, 5000, 6000])
        assert estimate.mean_offset == -1000.0
        assert estimate.quality_percent == 100.0


class TestQuality:
    """Coefficient-of-variation quality score."""

    def test_clamped_to_zero(self):
        from timetag_sync.timing.offset_estimator import coefficient_quality

        assert coefficient_quality(10.0, 50.0) == 0.0

    def test_zero_mean(self):
        from timetag_sync.timing.offset_estimator import coefficient_quality

        assert coefficient_quality(0.0, 0.0) == 100.0
        assert coefficient_quality(0.0, 3.0) == 0.0

    def test_uses_absolute_mean(self):
        from timetag_sync.timing.offset_estimator import coefficient_quality

        assert coefficient_quality(-200.0, 10.0) == pytest.approx(95.0)


class TestLeadingFraction:

    def test_fraction_of_length(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        values = np.arange(100, dtype=np.uint64)
        assert len(OffsetEstimator(sync_fraction=0.25).leading_fraction(values)) == 25

    def test_at_least_one_sample(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        values = np.arange(5, dtype=np.uint64)
        lead = OffsetEstimator(sync_fraction=0.1).leading_fraction(values)
        assert lead.tolist() == [0]

    @pytest.mark.parametrize('fraction', [0.0, -0.1, 1.5])
    def test_invalid_fraction(self, fraction):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        with pytest.raises(ValueError):
            OffsetEstimator(sync_fraction=fraction)

    def test_invalid_ratio_bounds(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        with pytest.raises(ValueError):
            OffsetEstimator(ratio_bounds=(1.1, 0.9))


class TestAlignStartPoints:
    """Mode B: trim master data to the later start."""

    def test_slave_started_later(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        alignment = OffsetEstimator().align_start_points(
            np.array([100, 200, 300, 400], dtype=np.uint64),
            np.array([250, 350], dtype=np.uint64),
        )

        assert alignment.master_start == 100
        assert alignment.slave_start == 250
        assert alignment.sync_point == 250
        assert alignment.time_difference == 150
        assert alignment.removed_count == 2
        assert alignment.kept_count == 2
        assert alignment.trimmed_master.tolist() == [300, 400]

    def test_master_started_later_keeps_everything(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        alignment = OffsetEstimator().align_start_points([500, 600], [100, 900])

        assert alignment.sync_point == 500
        assert alignment.time_difference == -400
        assert alignment.removed_count == 0
        assert alignment.kept_count == 2

    def test_timestamp_equal_to_sync_point_kept(self):
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        alignment = OffsetEstimator().align_start_points([100, 250, 300], [250])
        assert alignment.trimmed_master.tolist() == [250, 300]

    def test_empty_input_raises(self):
        from timetag_sync.errors import EstimationInsufficientData
        from timetag_sync.timing.offset_estimator import OffsetEstimator

        with pytest.raises(EstimationInsufficientData) as info:
            OffsetEstimator().align_start_points([], [1, 2])
        assert info.value.phase == 'estimation'


class TestApplyOffset:

    def test_shift_and_clamp(self):
        from timetag_sync.timing.offset_estimator import apply_offset

        original = np.array([100, 200, 1000], dtype=np.uint64)
        shifted = apply_offset(original, -150.4)

        assert shifted.dtype == np.uint64
        assert shifted.tolist() == [0, 50, 850]
        assert original.tolist() == [100, 200, 1000]

    def test_positive_offset(self):
        from timetag_sync.timing.offset_estimator import apply_offset

        assert apply_offset([1, 2], 49.6).tolist() == [51, 52]

    def test_clamped_at_both_ends_of_uint64(self):
        from timetag_sync.timing.offset_estimator import apply_offset

        top = 2**64 - 1
        values = np.array([2**63 + 5, top - 3, 4], dtype=np.uint64)

        assert apply_offset(values, 10).tolist() == [2**63 + 15, top, 14]
        assert apply_offset(values, -10).tolist() == [2**63 - 5, top - 13, 0]
        assert apply_offset(values, 2.0**70).tolist() == [top, top, top]
