"""Data models shared by the identity QC components."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np
import pandas as pd

from .errors import ConfigurationError, MarkerFitFailure

N_GENOTYPE_CLASSES = 3

# Columns of PosteriorTensor.log_posteriors: three genotype classes, then outlier.
OUTLIER_COLUMN = 3


class GenotypeClass(Enum):
    HOM_A = 0
    HET = 1
    HOM_B = 2


def validate_value_matrix(values: pd.DataFrame) -> pd.DataFrame:
    """Check a markers x samples matrix of fractional values.

    Args:
        values: DataFrame indexed by marker ID with one column per sample

    Returns:
        The matrix as float64 with string identifiers

    Raises:
        ConfigurationError: If the matrix is empty, has duplicate identifiers,
            or holds values outside [0, 1]
    """
    if not isinstance(values, pd.DataFrame):
        raise ConfigurationError(
            f"Value matrix must be a pandas DataFrame, got {type(values).__name__}"
        )
    if values.shape[0] == 0:
        raise ConfigurationError("Value matrix has no markers")
    if values.shape[1] == 0:
        raise ConfigurationError("Value matrix has no samples")

    duplicated_markers = values.index[values.index.duplicated()].astype(str).unique()
    if len(duplicated_markers):
        raise ConfigurationError("Duplicate marker IDs in value matrix", list(duplicated_markers))

    duplicated_samples = values.columns[values.columns.duplicated()].astype(str).unique()
    if len(duplicated_samples):
        raise ConfigurationError("Duplicate sample IDs in value matrix", list(duplicated_samples))

    matrix = values.astype(np.float64)
    matrix.index = matrix.index.astype(str)
    matrix.columns = matrix.columns.astype(str)

    out_of_range = (matrix < 0.0) | (matrix > 1.0)
    if out_of_range.to_numpy().any():
        bad_samples = matrix.columns[out_of_range.any(axis=0).to_numpy()]
        raise ConfigurationError("Values outside [0, 1] for samples", list(bad_samples))

    return matrix


@dataclass(frozen=True)
class MixtureParams:
    """Mixture parameters for one marker.

    Locations, scales and weights are ordered HOM_A, HET, HOM_B. The
    genotype weights and ``outlier_weight`` sum to one.
    """

    locations: tuple[float, float, float]
    scales: tuple[float, float, float]
    weights: tuple[float, float, float]
    outlier_weight: float = 0.01

    def as_arrays(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        return (
            np.asarray(self.locations, dtype=np.float64),
            np.asarray(self.scales, dtype=np.float64),
            np.asarray(self.weights, dtype=np.float64),
        )


@dataclass(frozen=True, eq=False)
class GenotypeModelParams:
    """Per-marker mixture parameters for a set of markers.

    Array fields have one row per marker, in ``marker_ids`` order.
    """

    marker_ids: tuple[str, ...]
    locations: np.ndarray
    scales: np.ndarray
    weights: np.ndarray
    outlier_weights: np.ndarray

    def __post_init__(self):
        n = len(self.marker_ids)
        for name in ("locations", "scales", "weights"):
            array = np.asarray(getattr(self, name), dtype=np.float64)
            if array.shape != (n, N_GENOTYPE_CLASSES):
                raise ConfigurationError(
                    f"{name} must have shape ({n}, {N_GENOTYPE_CLASSES}), got {array.shape}"
                )
            array.setflags(write=False)
            object.__setattr__(self, name, array)

        outlier = np.asarray(self.outlier_weights, dtype=np.float64)
        if outlier.shape != (n,):
            raise ConfigurationError(f"outlier_weights must have shape ({n},), got {outlier.shape}")
        outlier.setflags(write=False)
        object.__setattr__(self, "outlier_weights", outlier)

    def __len__(self) -> int:
        return len(self.marker_ids)

    def marker(self, marker_id: str) -> MixtureParams:
        i = self.marker_ids.index(marker_id)
        return MixtureParams(
            locations=tuple(self.locations[i]),
            scales=tuple(self.scales[i]),
            weights=tuple(self.weights[i]),
            outlier_weight=float(self.outlier_weights[i]),
        )

    @classmethod
    def from_marker_params(cls, params: dict[str, MixtureParams]) -> "GenotypeModelParams":
        marker_ids = tuple(params)
        return cls(
            marker_ids=marker_ids,
            locations=np.array([params[m].locations for m in marker_ids]).reshape(-1, 3),
            scales=np.array([params[m].scales for m in marker_ids]).reshape(-1, 3),
            weights=np.array([params[m].weights for m in marker_ids]).reshape(-1, 3),
            outlier_weights=np.array([params[m].outlier_weight for m in marker_ids]),
        )

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(
            {
                "loc_hom_a": self.locations[:, 0],
                "loc_het": self.locations[:, 1],
                "loc_hom_b": self.locations[:, 2],
                "scale_hom_a": self.scales[:, 0],
                "scale_het": self.scales[:, 1],
                "scale_hom_b": self.scales[:, 2],
                "weight_hom_a": self.weights[:, 0],
                "weight_het": self.weights[:, 1],
                "weight_hom_b": self.weights[:, 2],
                "weight_outlier": self.outlier_weights,
            },
            index=pd.Index(self.marker_ids, name="marker_id"),
        )
        return frame


@dataclass(frozen=True, eq=False)
class PosteriorTensor:
    """Genotype posteriors for every (marker, sample).

    ``log_posteriors`` holds natural-log posteriors over the three genotype
    classes and the outlier component, shape (markers, samples, 4).
    ``probabilities`` is the genotype part renormalised to sum to one. Entries
    for missing input values are NaN in every column.
    """

    marker_ids: tuple[str, ...]
    sample_ids: tuple[str, ...]
    log_posteriors: np.ndarray
    failures: tuple[MarkerFitFailure, ...] = ()
    probabilities: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        log_posteriors = np.asarray(self.log_posteriors, dtype=np.float64)
        expected = (len(self.marker_ids), len(self.sample_ids), N_GENOTYPE_CLASSES + 1)
        if log_posteriors.shape != expected:
            raise ConfigurationError(
                f"log_posteriors must have shape {expected}, got {log_posteriors.shape}"
            )

        genotype_log = log_posteriors[..., :N_GENOTYPE_CLASSES]
        with np.errstate(invalid="ignore"):
            shift = np.max(genotype_log, axis=-1, keepdims=True)
            unnormalised = np.exp(genotype_log - shift)
            probabilities = unnormalised / unnormalised.sum(axis=-1, keepdims=True)

        log_posteriors.setflags(write=False)
        probabilities.setflags(write=False)
        object.__setattr__(self, "log_posteriors", log_posteriors)
        object.__setattr__(self, "probabilities", probabilities)

    @property
    def shape(self) -> tuple[int, int]:
        return len(self.marker_ids), len(self.sample_ids)

    @property
    def defined(self) -> np.ndarray:
        """Boolean (markers, samples) mask of entries with a posterior."""
        return ~np.isnan(self.log_posteriors[..., 0])

    @property
    def outlier_probability(self) -> np.ndarray:
        return np.exp(self.log_posteriors[..., OUTLIER_COLUMN])

    @property
    def log_odds(self) -> np.ndarray:
        """Log2 odds of the best genotype against the outlier component."""
        best = np.max(self.log_posteriors[..., :N_GENOTYPE_CLASSES], axis=-1)
        return (best - self.log_posteriors[..., OUTLIER_COLUMN]) / np.log(2.0)

    def sample_index(self, sample_id: str) -> int:
        try:
            return self.sample_ids.index(sample_id)
        except ValueError:
            raise ConfigurationError("Unknown sample ID", [sample_id]) from None

    def dosages(self) -> np.ndarray:
        """Expected B-allele dosage (0 to 2) per (marker, sample), NaN if undefined."""
        return self.probabilities @ np.arange(N_GENOTYPE_CLASSES, dtype=np.float64)

    def best_calls(self) -> np.ndarray:
        """Most probable genotype class index, -1 where undefined."""
        calls = np.full(self.shape, -1, dtype=np.int8)
        defined = self.defined
        calls[defined] = np.argmax(self.probabilities[defined], axis=-1)
        return calls

    def sample_summary(self) -> pd.DataFrame:
        defined = self.defined
        n_called = defined.sum(axis=0)
        max_posterior = np.where(defined, self._filled_probabilities().max(axis=-1), 0.0)
        with np.errstate(invalid="ignore", divide="ignore"):
            mean_max = np.where(n_called > 0, max_posterior.sum(axis=0) / n_called, np.nan)
        return pd.DataFrame(
            {
                "n_called": n_called,
                "call_rate": n_called / max(len(self.marker_ids), 1),
                "mean_max_posterior": mean_max,
            },
            index=pd.Index(self.sample_ids, name="sample_id"),
        )

    def to_frame(self) -> pd.DataFrame:
        """Long-format table with one row per defined (marker, sample)."""
        markers, samples = np.nonzero(self.defined)
        probabilities = self.probabilities[markers, samples]
        return pd.DataFrame(
            {
                "marker_id": np.asarray(self.marker_ids, dtype=object)[markers],
                "sample_id": np.asarray(self.sample_ids, dtype=object)[samples],
                "p_hom_a": probabilities[:, 0],
                "p_het": probabilities[:, 1],
                "p_hom_b": probabilities[:, 2],
                "p_outlier": self.outlier_probability[markers, samples],
            }
        )

    def _filled_probabilities(self) -> np.ndarray:
        return np.where(np.isnan(self.probabilities), 0.0, self.probabilities)


@dataclass(frozen=True)
class AgreementRecord:
    """A sample pair whose observed identity disagrees with the expected one."""

    sample_a: str
    sample_b: str
    expected_match: bool
    observed_match: bool
    statistic: float
    n_shared_markers: int

    @property
    def kind(self) -> str:
        if self.expected_match:
            return "expected_same_observed_different"
        return "expected_different_observed_same"

    def to_row(self) -> dict[str, Any]:
        return {
            "sample_a": self.sample_a,
            "sample_b": self.sample_b,
            "expected_match": self.expected_match,
            "observed_match": self.observed_match,
            "statistic": self.statistic,
            "n_shared_markers": self.n_shared_markers,
            "kind": self.kind,
        }


@dataclass(frozen=True, eq=False)
class ControlMetricTable:
    """Per-sample control metric values, verdicts and cutoffs.

    ``values`` is samples x metrics with NaN where a metric was not
    computable. ``passed`` uses the nullable boolean dtype, with <NA> for the
    same entries.
    """

    values: pd.DataFrame
    passed: pd.DataFrame
    cutoffs: dict[str, tuple[float, str]]

    @property
    def computable(self) -> pd.DataFrame:
        return self.passed.notna()

    @property
    def failed(self) -> pd.Series:
        """True for samples with at least one computable metric failing."""
        failing = (~self.passed.astype("boolean")).fillna(False).astype(bool)
        return failing.any(axis=1).rename("failed")

    @property
    def n_computable(self) -> pd.Series:
        return self.computable.sum(axis=1).rename("n_computable")

    def failed_metrics(self, sample_id: str) -> list[str]:
        row = self.passed.loc[sample_id]
        return [name for name, ok in row.items() if ok is not pd.NA and not ok]

    def to_frame(self) -> pd.DataFrame:
        passed = self.passed.add_suffix(" pass")
        frame = pd.concat([self.values, passed], axis=1)
        frame["failed"] = self.failed
        return frame


class SexLabel(Enum):
    MALE = "M"
    FEMALE = "F"

    @classmethod
    def parse(cls, value: "str | SexLabel") -> "SexLabel":
        """Parse a reported sex such as "male", "M" or "f"."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().upper()
        if text in ("M", "MALE"):
            return cls.MALE
        if text in ("F", "FEMALE"):
            return cls.FEMALE
        raise ConfigurationError("Unrecognised sex label", [str(value)])


@dataclass(frozen=True)
class SexPrediction:
    """Inferred sex of one sample with the centroid distances used."""

    sample_id: str
    predicted: SexLabel
    distance_male: float
    distance_female: float
    reported: SexLabel | None = None

    @property
    def mismatch(self) -> bool | None:
        if self.reported is None:
            return None
        return self.reported is not self.predicted

    def to_row(self) -> dict[str, Any]:
        return {
            "sample_id": self.sample_id,
            "sex_predicted": self.predicted.value,
            "sex_reported": self.reported.value if self.reported else None,
            "sex_mismatch": self.mismatch,
            "distance_male": self.distance_male,
            "distance_female": self.distance_female,
        }
