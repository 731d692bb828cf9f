"""Post-acquisition alignment of master and slave timestamp streams."""

from .offset_estimator import OffsetEstimator, apply_offset, coefficient_quality

__all__ = ['OffsetEstimator', 'apply_offset', 'coefficient_quality']
