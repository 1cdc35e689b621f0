"""Sample identity testing from genotype fingerprints."""

from .donors import DonorGroups
from .matcher import (
    DEFAULT_FINGERPRINT_THRESHOLD,
    DEFAULT_FINGERPRINT_THRESHOLDS,
    FingerprintResult,
    Fingerprints,
    build_fingerprints,
    calibrate_threshold,
    match_fingerprints,
    pairwise_statistics,
)

__all__ = [
    "DEFAULT_FINGERPRINT_THRESHOLD",
    "DEFAULT_FINGERPRINT_THRESHOLDS",
    "DonorGroups",
    "FingerprintResult",
    "Fingerprints",
    "build_fingerprints",
    "calibrate_threshold",
    "match_fingerprints",
    "pairwise_statistics",
]
