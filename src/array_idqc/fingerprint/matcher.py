"""Pairwise genetic fingerprint matching.

Every pair of samples gets an agreement statistic: the mean, over markers
where both samples have a posterior, of a per-marker genotype similarity.
Across a batch the statistic is bimodal. Pairs from different donors sit
near the population's chance concordance and pairs from the same donor sit
near one. A threshold between the two modes classifies each pair, and pairs
whose classification disagrees with the expected donor grouping are
reported.

The statistic is computed as blocked matrix products over sample tiles, so
the cost is dominated by BLAS rather than by per-pair loops.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
import pandas as pd

from ..config import DEFAULT_CONFIG, QCConfig
from ..errors import ConfigurationError, check_same_ids
from ..models import N_GENOTYPE_CLASSES, AgreementRecord, PosteriorTensor
from .donors import DonorGroups

logger = logging.getLogger(__name__)

DEFAULT_FINGERPRINT_THRESHOLD = 0.8

# unrelated pairs score 1 - p(1 - p) on average under the dosage statistic
DEFAULT_FINGERPRINT_THRESHOLDS = {"concordance": DEFAULT_FINGERPRINT_THRESHOLD, "dosage": 0.95}

SIMILARITY_METHODS = tuple(DEFAULT_FINGERPRINT_THRESHOLDS)


@dataclass(frozen=True, eq=False)
class Fingerprints:
    """Per-sample marker features used for pairwise comparison.

    ``features`` has one row per (marker, feature) and one column per
    sample, with zeros where the posterior is undefined. ``mask`` marks
    defined (marker, sample) entries.
    """

    sample_ids: tuple[str, ...]
    method: str
    features: np.ndarray
    mask: np.ndarray
    squared: np.ndarray | None = None


@dataclass(frozen=True, eq=False)
class FingerprintResult:
    """Pairwise statistics, calibrated threshold and identity conflicts."""

    sample_ids: tuple[str, ...]
    statistics: np.ndarray
    shared_markers: np.ndarray
    threshold: float
    threshold_source: str
    records: tuple[AgreementRecord, ...]
    n_unclassified: int = 0

    def statistics_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.statistics, index=self.sample_ids, columns=self.sample_ids)

    def pairs_frame(self) -> pd.DataFrame:
        """One row per unordered sample pair with its statistic."""
        rows, cols = np.triu_indices(len(self.sample_ids), k=1)
        samples = np.asarray(self.sample_ids, dtype=object)
        return pd.DataFrame(
            {
                "sample_a": samples[rows],
                "sample_b": samples[cols],
                "statistic": self.statistics[rows, cols],
                "n_shared_markers": self.shared_markers[rows, cols],
            }
        )

    def conflicts_frame(self) -> pd.DataFrame:
        columns = [
            "sample_a",
            "sample_b",
            "expected_match",
            "observed_match",
            "statistic",
            "n_shared_markers",
            "kind",
        ]
        return pd.DataFrame([r.to_row() for r in self.records], columns=columns)

    def conflict_counts(self) -> pd.Series:
        """Number of conflicting pairs each sample takes part in."""
        counts = pd.Series(0, index=pd.Index(self.sample_ids, name="sample_id"), name="n_conflicts")
        for record in self.records:
            counts[record.sample_a] += 1
            counts[record.sample_b] += 1
        return counts


def build_fingerprints(posteriors: PosteriorTensor, method: str = "concordance") -> Fingerprints:
    """Derive per-sample fingerprints from genotype posteriors.

    ``concordance`` keeps the full posterior so the pairwise statistic is the
    probability that two samples carry the same genotype. ``dosage`` reduces
    each marker to the expected B-allele dosage.
    """
    if method not in SIMILARITY_METHODS:
        raise ConfigurationError(f"Unknown similarity method '{method}'", [method])

    defined = posteriors.defined
    mask = defined.astype(np.float64)
    n_markers, n_samples = posteriors.shape

    if method == "concordance":
        probabilities = np.where(defined[..., None], posteriors.probabilities, 0.0)
        features = probabilities.transpose(0, 2, 1).reshape(n_markers * N_GENOTYPE_CLASSES, n_samples)
        squared = None
    else:
        features = np.where(defined, posteriors.dosages(), 0.0)
        squared = features**2

    return Fingerprints(
        sample_ids=posteriors.sample_ids,
        method=method,
        features=np.ascontiguousarray(features),
        mask=mask,
        squared=squared,
    )


def _tile_statistics(
    fingerprints: Fingerprints, start: int, stop: int
) -> tuple[np.ndarray, np.ndarray]:
    mask = fingerprints.mask
    shared = mask[:, start:stop].T @ mask

    if fingerprints.method == "concordance":
        total = fingerprints.features[:, start:stop].T @ fingerprints.features
    else:
        # sum over shared markers of 1 - (d_i - d_j)^2 / 4
        dosage = fingerprints.features
        squared = fingerprints.squared
        own = squared[:, start:stop].T @ mask
        other = mask[:, start:stop].T @ squared
        cross = dosage[:, start:stop].T @ dosage
        total = shared - (own + other - 2.0 * cross) / 4.0

    with np.errstate(invalid="ignore", divide="ignore"):
        statistic = np.where(shared > 0, total / np.maximum(shared, 1.0), np.nan)
    return statistic, shared


def pairwise_statistics(
    fingerprints: Fingerprints,
    block_size: int = 512,
    workers: int = 1,
) -> tuple[np.ndarray, np.ndarray]:
    """Agreement statistic and shared marker count for every sample pair.

    Rows are computed in tiles of ``block_size`` samples; with ``workers``
    above one the tiles run on a thread pool. Each tile returns its own row
    block, which is then placed into the result.

    Returns:
        Tuple of (statistics, shared marker counts), both samples x samples.
        The diagonal of ``statistics`` is NaN.
    """
    n = len(fingerprints.sample_ids)
    tiles = [(start, min(start + block_size, n)) for start in range(0, n, block_size)]

    if workers > 1 and len(tiles) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(_tile_statistics, fingerprints, start, stop)
                for start, stop in tiles
            ]
            blocks = [future.result() for future in futures]
    else:
        blocks = [_tile_statistics(fingerprints, start, stop) for start, stop in tiles]

    statistics = np.full((n, n), np.nan)
    shared = np.zeros((n, n), dtype=np.int64)
    for (start, stop), (block_statistic, block_shared) in zip(tiles, blocks):
        statistics[start:stop] = block_statistic
        shared[start:stop] = np.rint(block_shared).astype(np.int64)

    # mirror the upper triangle so the matrix is exactly symmetric
    rows, cols = np.triu_indices(n, k=1)
    statistics[cols, rows] = statistics[rows, cols]
    shared[cols, rows] = shared[rows, cols]
    np.fill_diagonal(statistics, np.nan)

    return statistics, shared


def calibrate_threshold(
    values: np.ndarray,
    min_separation: float = 0.2,
    fallback: float = DEFAULT_FINGERPRINT_THRESHOLD,
) -> tuple[float, str]:
    """Split pairwise statistics into two modes.

    Uses Otsu's criterion: the cut that maximises the between-group
    variance of the sorted statistics. The threshold is the midpoint of the
    gap at that cut. When there are fewer than two values, or the group
    means differ by less than ``min_separation`` (no same-donor mode), the
    fallback is returned.

    Returns:
        Tuple of (threshold, source) where source is "adaptive" or "fallback"
    """
    values = np.sort(np.asarray(values, dtype=np.float64)[np.isfinite(values)])
    n = values.size
    if n < 2:
        logger.warning(
            "Too few pairwise statistics (%d) to calibrate; using threshold %.3f", n, fallback
        )
        return fallback, "fallback"

    cumulative = np.cumsum(values)
    total = cumulative[-1]
    low_count = np.arange(1, n)
    high_count = n - low_count
    low_mean = cumulative[:-1] / low_count
    high_mean = (total - cumulative[:-1]) / high_count
    between = low_count * high_count * (high_mean - low_mean) ** 2

    # ties cannot be split; only cut where consecutive values differ
    between = np.where(values[1:] > values[:-1], between, -np.inf)
    cut = int(np.argmax(between))
    separation = high_mean[cut] - low_mean[cut]

    if not np.isfinite(between[cut]) or separation < min_separation:
        logger.warning(
            "Pairwise statistics are not bimodal (mode separation %.3f); using threshold %.3f",
            separation if np.isfinite(between[cut]) else 0.0,
            fallback,
        )
        return fallback, "fallback"

    threshold = float((values[cut] + values[cut + 1]) / 2.0)
    logger.info(
        "Calibrated fingerprint threshold %.3f (mode means %.3f and %.3f)",
        threshold,
        low_mean[cut],
        high_mean[cut],
    )
    return threshold, "adaptive"


def match_fingerprints(
    posteriors: PosteriorTensor,
    donors: DonorGroups,
    config: QCConfig | None = None,
    method: str = "concordance",
) -> FingerprintResult:
    """Test every sample pair for same/different donor identity.

    Args:
        posteriors: Genotype posteriors
        donors: Expected donor grouping; must cover exactly the same samples
        config: QC configuration (threshold strategy, tiling, workers)
        method: Per-marker similarity, "concordance" or "dosage". Without a
            configured ``fingerprint_threshold`` the fallback cutoff is the
            method default in ``DEFAULT_FINGERPRINT_THRESHOLDS``

    Returns:
        FingerprintResult with conflicts ordered by sample index pair

    Raises:
        InputMismatchError: If the donor grouping and the posteriors cover
            different samples
    """
    config = config or DEFAULT_CONFIG
    check_same_ids(
        "sample", "genotype posteriors", posteriors.sample_ids, "donor groups", donors.sample_ids
    )

    sample_ids = posteriors.sample_ids
    n = len(sample_ids)

    fingerprints = build_fingerprints(posteriors, method)
    statistics, shared = pairwise_statistics(
        fingerprints, block_size=config.block_size, workers=config.workers
    )

    rows, cols = np.triu_indices(n, k=1)
    classifiable = shared[rows, cols] >= config.min_shared_markers
    classifiable &= np.isfinite(statistics[rows, cols])
    n_unclassified = int((~classifiable).sum())
    if n_unclassified:
        logger.warning(
            "%d sample pairs share fewer than %d markers and were not classified",
            n_unclassified,
            config.min_shared_markers,
        )

    fallback = (
        config.fingerprint_threshold
        if config.fingerprint_threshold is not None
        else DEFAULT_FINGERPRINT_THRESHOLDS[method]
    )
    if config.fingerprint_calibration == "fixed":
        threshold, source = fallback, "fixed"
    else:
        threshold, source = calibrate_threshold(
            statistics[rows, cols][classifiable],
            min_separation=config.min_mode_separation,
            fallback=fallback,
        )

    expected = donors.expected_matrix(sample_ids)[rows, cols]
    observed = statistics[rows, cols] >= threshold
    conflicts = classifiable & (expected != observed)

    records = tuple(
        AgreementRecord(
            sample_a=sample_ids[i],
            sample_b=sample_ids[j],
            expected_match=bool(expected[k]),
            observed_match=bool(observed[k]),
            statistic=float(statistics[i, j]),
            n_shared_markers=int(shared[i, j]),
        )
        for k, i, j in zip(np.flatnonzero(conflicts), rows[conflicts], cols[conflicts])
    )

    logger.info(
        "Compared %d sample pairs at %d markers: %d identity conflicts (threshold %.3f, %s)",
        len(rows),
        len(posteriors.marker_ids),
        len(records),
        threshold,
        source,
    )

    return FingerprintResult(
        sample_ids=sample_ids,
        statistics=statistics,
        shared_markers=shared,
        threshold=threshold,
        threshold_source=source,
        records=records,
        n_unclassified=n_unclassified,
    )
