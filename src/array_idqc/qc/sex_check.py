"""Sex concordance check from X and Y chromosome intensities.

Each sample is summarised by two features: mean total intensity of chrX
probes and of chrY probes, both relative to the mean autosomal intensity.
Males carry one X and one Y, females two X and no Y, so the two sexes form
well separated clouds in this plane. Samples with a known label anchor one
centroid per sex, and every sample is assigned to the nearer centroid.
"""

import logging
from dataclasses import dataclass
from typing import Mapping

import numpy as np
import pandas as pd

from ..errors import ConfigurationError, InputMismatchError
from ..models import SexLabel, SexPrediction

logger = logging.getLogger(__name__)

FEATURE_COLUMNS = ("x", "y")


def normalize_chrom(chrom: str) -> str:
    """Normalize chromosome to bare upper-case format (no 'chr' prefix)."""
    chrom = str(chrom).strip()
    if chrom.lower().startswith("chr"):
        chrom = chrom[3:]
    return chrom.upper()


def sex_features_from_intensities(
    intensities: pd.DataFrame,
    chromosomes: Mapping[str, str] | pd.Series,
) -> pd.DataFrame:
    """Compute X and Y features per sample.

    Args:
        intensities: Probes x samples total intensities
        chromosomes: Chromosome of every probe in ``intensities``

    Returns:
        Samples x ("x", "y") DataFrame

    Raises:
        InputMismatchError: If a probe has no chromosome annotation
        ConfigurationError: If there are no X, Y or autosomal probes
    """
    chromosomes = pd.Series(chromosomes, dtype=object).map(normalize_chrom)
    chromosomes.index = chromosomes.index.astype(str)
    probes = [str(p) for p in intensities.index]
    unannotated = [p for p in probes if p not in chromosomes.index]
    if unannotated:
        raise InputMismatchError(
            "probe", "intensities", "chromosome annotation", missing_from_right=unannotated
        )

    chrom = chromosomes.reindex(probes).to_numpy()
    is_x = chrom == "X"
    is_y = chrom == "Y"
    is_autosome = ~(is_x | is_y)

    for label, mask in (("X", is_x), ("Y", is_y), ("autosomal", is_autosome)):
        if not mask.any():
            raise ConfigurationError(f"No {label} probes available for sex features")

    values = intensities.to_numpy(dtype=np.float64)
    autosomal = np.nanmean(values[is_autosome], axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        x = np.nanmean(values[is_x], axis=0) / autosomal
        y = np.nanmean(values[is_y], axis=0) / autosomal

    return pd.DataFrame(
        {"x": x, "y": y},
        index=pd.Index([str(s) for s in intensities.columns], name="sample_id"),
    )


@dataclass(frozen=True)
class SexCheckResult:
    """Per-sample sex predictions and the centroids they were made from."""

    predictions: tuple[SexPrediction, ...]
    centroid_male: tuple[float, float]
    centroid_female: tuple[float, float]

    def __iter__(self):
        return iter(self.predictions)

    def __len__(self) -> int:
        return len(self.predictions)

    @property
    def mismatches(self) -> tuple[str, ...]:
        return tuple(p.sample_id for p in self.predictions if p.mismatch)

    def prediction(self, sample_id: str) -> SexPrediction:
        for p in self.predictions:
            if p.sample_id == sample_id:
                return p
        raise ConfigurationError("No sex prediction for sample", [sample_id])

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame([p.to_row() for p in self.predictions])
        if frame.empty:
            return frame
        return frame.set_index("sample_id")


def _parse_labels(labels: Mapping[str, str | SexLabel]) -> dict[str, SexLabel]:
    return {str(s): SexLabel.parse(v) for s, v in labels.items() if pd.notna(v)}


def classify_sex(
    features: pd.DataFrame,
    known_labels: Mapping[str, str | SexLabel],
    reported: Mapping[str, str | SexLabel] | None = None,
) -> SexCheckResult:
    """Nearest-centroid sex prediction.

    Centroids are the mean (x, y) of the anchor samples of each sex. A sample
    exactly half way between the centroids is predicted female.

    Args:
        features: Samples x ("x", "y") features
        known_labels: Labels of the anchor samples used to place centroids
        reported: Reported sex used for the mismatch flag (default:
            ``known_labels``)

    Returns:
        SexCheckResult with one prediction per row of ``features``

    Raises:
        ConfigurationError: If a sex has no anchors, features are missing
            columns or hold non-finite values
        InputMismatchError: If an anchor or reported sample has no features
    """
    missing_columns = [c for c in FEATURE_COLUMNS if c not in features.columns]
    if missing_columns:
        raise ConfigurationError("Sex features are missing columns", missing_columns)

    sample_ids = [str(s) for s in features.index]
    values = features.loc[:, list(FEATURE_COLUMNS)].to_numpy(dtype=np.float64)

    non_finite = [s for s, row in zip(sample_ids, values) if not np.isfinite(row).all()]
    if non_finite:
        raise ConfigurationError("Non-finite sex features for samples", non_finite)

    anchors = _parse_labels(known_labels)
    reported_labels = _parse_labels(reported) if reported is not None else anchors

    known_samples = set(sample_ids)
    for name, labels in (("sex anchors", anchors), ("reported sex", reported_labels)):
        unknown = [s for s in labels if s not in known_samples]
        if unknown:
            raise InputMismatchError("sample", name, "sex features", missing_from_right=unknown)

    row_of = {s: i for i, s in enumerate(sample_ids)}
    centroids = {}
    for label in SexLabel:
        rows = [row_of[s] for s, anchor in anchors.items() if anchor is label]
        if not rows:
            raise ConfigurationError(
                f"No anchor samples labelled {label.name.lower()}; cannot place its centroid"
            )
        centroids[label] = values[rows].mean(axis=0)

    distance_male = np.linalg.norm(values - centroids[SexLabel.MALE], axis=1)
    distance_female = np.linalg.norm(values - centroids[SexLabel.FEMALE], axis=1)

    predictions = tuple(
        SexPrediction(
            sample_id=sample_id,
            predicted=SexLabel.MALE if d_male < d_female else SexLabel.FEMALE,
            distance_male=float(d_male),
            distance_female=float(d_female),
            reported=reported_labels.get(sample_id),
        )
        for sample_id, d_male, d_female in zip(sample_ids, distance_male, distance_female)
    )

    result = SexCheckResult(
        predictions=predictions,
        centroid_male=tuple(float(v) for v in centroids[SexLabel.MALE]),
        centroid_female=tuple(float(v) for v in centroids[SexLabel.FEMALE]),
    )
    logger.info(
        "Predicted sex for %d samples from %d anchors: %d mismatches with reported sex",
        len(predictions),
        len(anchors),
        len(result.mismatches),
    )
    return result
