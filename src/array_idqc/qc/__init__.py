"""Per-sample QC: genotype outlier scores and sex concordance."""

from .outliers import (
    DEFAULT_OUTLIER_CUTOFF,
    OutlierScores,
    evaluate_outlier_pass,
    marker_log_odds,
    score_outliers,
    score_sample,
)
from .sex_check import (
    SexCheckResult,
    classify_sex,
    normalize_chrom,
    sex_features_from_intensities,
)

__all__ = [
    "DEFAULT_OUTLIER_CUTOFF",
    "OutlierScores",
    "score_outliers",
    "score_sample",
    "marker_log_odds",
    "evaluate_outlier_pass",
    "SexCheckResult",
    "classify_sex",
    "sex_features_from_intensities",
    "normalize_chrom",
]
