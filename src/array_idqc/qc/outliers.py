"""Per-sample genotype outlier score.

For every defined (marker, sample) the log2 odds of the best-supported
genotype component against the outlier component is computed from the
posteriors. A clean sample sits close to a genotype cluster at almost every
marker and scores high. Contaminated or degraded samples put many values
between clusters, where the outlier component dominates, and their mean
log odds drops.
"""

import logging
import math
from dataclasses import dataclass

import numpy as np
import pandas as pd

from ..models import PosteriorTensor

logger = logging.getLogger(__name__)

DEFAULT_OUTLIER_CUTOFF = -4.0


def marker_log_odds(posteriors: PosteriorTensor) -> np.ndarray:
    """Log2 odds of the best genotype against the outlier component.

    Returns:
        Array of shape (markers, samples), NaN where the posterior is undefined
    """
    return posteriors.log_odds


def evaluate_outlier_pass(score: float, cutoff: float = DEFAULT_OUTLIER_CUTOFF) -> bool | None:
    """Evaluate an outlier score against its cutoff.

    Args:
        score: Mean log2 odds for a sample
        cutoff: Lowest passing score (inclusive)

    Returns:
        True if the sample passes, None if the score is undefined
    """
    if score is None or math.isnan(score):
        return None
    return score >= cutoff


@dataclass(frozen=True, eq=False)
class OutlierScores:
    """Outlier scores and verdicts for a batch of samples."""

    scores: pd.Series
    n_markers: pd.Series
    cutoff: float = DEFAULT_OUTLIER_CUTOFF

    @property
    def failed(self) -> pd.Series:
        """True where the score is below the cutoff; undefined scores do not fail."""
        return (self.scores < self.cutoff).rename("outlier_failed")

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "outlier_score": self.scores,
                "outlier_markers": self.n_markers,
                "outlier_failed": self.failed,
            }
        )


def score_sample(posteriors: PosteriorTensor, sample_id: str) -> float:
    """Mean log2 odds over the defined markers of one sample."""
    column = marker_log_odds(posteriors)[:, posteriors.sample_index(sample_id)]
    defined = ~np.isnan(column)
    if not defined.any():
        return float("nan")
    return float(column[defined].mean())


def score_outliers(
    posteriors: PosteriorTensor,
    cutoff: float = DEFAULT_OUTLIER_CUTOFF,
) -> OutlierScores:
    """Score every sample in a posterior tensor.

    Samples with no defined marker get a NaN score and are not failed.

    Args:
        posteriors: Genotype posteriors
        cutoff: Lowest passing score

    Returns:
        OutlierScores with raw scores, marker counts and verdicts
    """
    log_odds = marker_log_odds(posteriors)
    defined = ~np.isnan(log_odds)
    n_markers = defined.sum(axis=0)
    totals = np.where(defined, log_odds, 0.0).sum(axis=0)

    with np.errstate(invalid="ignore", divide="ignore"):
        scores = np.where(n_markers > 0, totals / np.maximum(n_markers, 1), np.nan)

    index = pd.Index(posteriors.sample_ids, name="sample_id")
    result = OutlierScores(
        scores=pd.Series(scores, index=index, name="outlier_score"),
        n_markers=pd.Series(n_markers, index=index, name="outlier_markers"),
        cutoff=cutoff,
    )

    n_undefined = int((n_markers == 0).sum())
    if n_undefined:
        logger.warning("%d samples have no defined marker and no outlier score", n_undefined)
    logger.info(
        "Scored %d samples for genotype outliers: %d below cutoff %.2f",
        len(scores),
        int(result.failed.sum()),
        cutoff,
    )
    return result
