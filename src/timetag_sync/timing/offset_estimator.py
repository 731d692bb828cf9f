"""
Offset Estimator - aligns master and slave streams after acquisition.

Two independent answers, both recorded in the sync report:

    Mode A (estimate_offset):
        Pair master[i] with slave[i]. Keep the pair only if the following
        inter-arrival intervals agree (slave_d / master_d within the ratio
        bounds), which rejects misaligned or missing events. The accepted
        slave - master differences give mean/min/max/std and a quality
        score based on their coefficient of variation.

    Mode B (align_start_points):
        Whichever node started later defines the common origin. Master data
        before that sync point is trimmed; nothing is shifted.

Only a leading fraction of each stream is needed for either mode; the
slave ships just that fraction to the master. apply_offset() produces the
corrected full master sequence from a Mode A estimate.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from ..errors import EstimationInsufficientData
from ..interfaces.sync_result import OffsetEstimate, StartPointAlignment
from ..output.timestamp_files import leading_count

logger = logging.getLogger(__name__)

DEFAULT_SYNC_FRACTION = 0.1
DEFAULT_RATIO_BOUNDS = (0.9, 1.1)
UINT64_MAX = int(np.iinfo(np.uint64).max)


def coefficient_quality(mean: float, std_dev: float) -> float:
    """100 * (1 - min(std/|mean|, 1)), clamped to [0, 100]."""
    if mean == 0:
        return 100.0 if std_dev == 0 else 0.0
    quality = 100.0 * (1.0 - min(std_dev / abs(mean), 1.0))
    return float(min(100.0, max(0.0, quality)))


class OffsetEstimator:
    """
    Estimates the residual clock offset between master and slave data.

    Args:
        sync_fraction: leading fraction of each stream used for estimation
        ratio_bounds: accepted (low, high) range of slave/master interval ratio
    """

    def __init__(self, sync_fraction: float = DEFAULT_SYNC_FRACTION,
                 ratio_bounds: Tuple[float, float] = DEFAULT_RATIO_BOUNDS):
        if not 0.0 < sync_fraction <= 1.0:
            raise ValueError(f"sync_fraction must be in (0, 1], got {sync_fraction}")
        low, high = ratio_bounds
        if not 0.0 < low <= high:
            raise ValueError(f"invalid ratio bounds {ratio_bounds}")
        self.sync_fraction = sync_fraction
        self.ratio_bounds = (float(low), float(high))

    def leading_fraction(self, values: np.ndarray) -> np.ndarray:
        """First max(1, int(len * sync_fraction)) samples."""
        return values[:leading_count(len(values), self.sync_fraction)]

    def estimate_offset(self, master: np.ndarray, slave: np.ndarray) -> Optional[OffsetEstimate]:
        """
        Mode A: inter-arrival ratio filtered offset estimate.

        Both sequences are used as given; callers pass the leading fraction.
        Returns None (with a warning) when there is nothing to estimate from.
        """
        master = np.asarray(master, dtype=np.int64)
        slave = np.asarray(slave, dtype=np.int64)
        if len(master) == 0 or len(slave) == 0:
            logger.warning(f"[estimation] cannot estimate offset: "
                           f"{len(master)} master / {len(slave)} slave samples")
            return None

        n = min(len(master), len(slave))
        if n < 2:
            logger.warning(f"[estimation] cannot estimate offset: need 2 paired samples, have {n}")
            return None

        master = master[:n]
        slave = slave[:n]
        master_d = np.diff(master).astype(np.float64)
        slave_d = np.diff(slave).astype(np.float64)

        low, high = self.ratio_bounds
        valid = master_d > 0
        ratio = np.zeros_like(master_d)
        np.divide(slave_d, master_d, out=ratio, where=valid)
        accepted = valid & (ratio >= low) & (ratio <= high)

        candidates = (slave[:-1] - master[:-1])[accepted].astype(np.float64)
        rejected = int(len(accepted) - np.count_nonzero(accepted))
        if len(candidates) == 0:
            logger.warning(f"[estimation] no offset candidates survived the "
                           f"[{low}, {high}] ratio filter ({rejected} rejected)")
            return None

        mean = float(np.mean(candidates))
        std_dev = float(np.std(candidates))
        estimate = OffsetEstimate(
            mean_offset=mean,
            min_offset=float(np.min(candidates)),
            max_offset=float(np.max(candidates)),
            std_dev=std_dev,
            quality_percent=coefficient_quality(mean, std_dev),
            sample_count=len(candidates),
            rejected_count=rejected,
        )
        logger.info(f"Offset estimate: mean={estimate.mean_offset:.1f} "
                    f"std={estimate.std_dev:.1f} quality={estimate.quality_percent:.1f}% "
                    f"({estimate.sample_count} samples, {rejected} rejected)")
        return estimate

    def align_start_points(self, master: np.ndarray, slave: np.ndarray) -> StartPointAlignment:
        """
        Mode B: trim master to timestamps at or after the later start.

        Raises:
            EstimationInsufficientData: if either sequence is empty
        """
        master = np.asarray(master, dtype=np.uint64)
        slave = np.asarray(slave, dtype=np.uint64)
        if len(master) == 0 or len(slave) == 0:
            raise EstimationInsufficientData(
                f"start-point alignment needs data from both nodes "
                f"({len(master)} master, {len(slave)} slave)"
            )

        master_start = int(master.min())
        slave_start = int(slave.min())
        sync_point = max(master_start, slave_start)
        trimmed = master[master >= sync_point]

        alignment = StartPointAlignment(
            master_start=master_start,
            slave_start=slave_start,
            sync_point=sync_point,
            time_difference=slave_start - master_start,
            removed_count=int(len(master) - len(trimmed)),
            kept_count=int(len(trimmed)),
            trimmed_master=trimmed,
        )
        logger.info(f"Start-point alignment: sync_point={sync_point} "
                    f"removed={alignment.removed_count} kept={alignment.kept_count}")
        return alignment


def apply_offset(values: np.ndarray, offset: float) -> np.ndarray:
    """Return values + offset clamped to [0, 2**64 - 1], as a new uint64 array."""
    values = np.asarray(values, dtype=np.uint64)
    delta = int(round(offset))
    step = np.uint64(min(abs(delta), UINT64_MAX))
    if delta >= 0:
        return np.minimum(values, np.uint64(UINT64_MAX) - step) + step
    return np.maximum(values, step) - step
