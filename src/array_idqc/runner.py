"""End-to-end identity QC for one batch of array samples.

Runs control-metric QC, genotype calling, fingerprint matching, outlier
scoring and the sex check over one value matrix, and collects the results
into a single report.
"""

import logging
from dataclasses import dataclass
from typing import Mapping

import pandas as pd

from .config import DEFAULT_CONFIG, QCConfig, configure_logging
from .controls import DEFAULT_CONTROL_METRICS, ControlMetric, evaluate_control_metrics
from .errors import ConfigurationError, check_same_ids
from .fingerprint import DonorGroups, FingerprintResult, match_fingerprints
from .genotyping import PopulationReference, call_genotypes
from .models import ControlMetricTable, PosteriorTensor, SexLabel, validate_value_matrix
from .qc import OutlierScores, SexCheckResult, classify_sex, score_outliers

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class QCReport:
    """Results of every QC component for one batch."""

    sample_ids: tuple[str, ...]
    posteriors: PosteriorTensor
    fingerprints: FingerprintResult
    outliers: OutlierScores
    controls: ControlMetricTable | None = None
    sex: SexCheckResult | None = None

    @property
    def n_conflicts(self) -> int:
        return len(self.fingerprints.records)

    def sample_summary(self) -> pd.DataFrame:
        """One row per sample with every per-sample verdict.

        ``qc_pass`` is False when the sample fails control metrics, fails the
        outlier cutoff, takes part in an identity conflict, or its predicted
        sex disagrees with the reported one.
        """
        index = pd.Index(self.sample_ids, name="sample_id")
        summary = self.posteriors.sample_summary().reindex(index)
        summary = summary.join(self.outliers.to_frame())
        summary["n_conflicts"] = self.fingerprints.conflict_counts().reindex(index)

        failed = summary["outlier_failed"].astype(bool) | (summary["n_conflicts"] > 0)

        if self.controls is not None:
            summary["controls_computable"] = self.controls.n_computable.reindex(index)
            summary["controls_failed"] = self.controls.failed.reindex(index)
            failed |= summary["controls_failed"].astype(bool)

        if self.sex is not None:
            sex = self.sex.to_frame()[["sex_predicted", "sex_reported", "sex_mismatch"]]
            summary = summary.join(sex)
            failed |= summary["sex_mismatch"].eq(True)

        summary["qc_pass"] = ~failed
        return summary

    def conflicts_frame(self) -> pd.DataFrame:
        return self.fingerprints.conflicts_frame()

    def failures_frame(self) -> pd.DataFrame:
        """Markers excluded from the run because their mixture fit failed."""
        return pd.DataFrame(
            [f.to_row() for f in self.posteriors.failures],
            columns=["marker_id", "reason", "iterations"],
        )


class IdentityQC:
    """Identity QC pipeline.

    Constructing the pipeline applies ``config.log_level`` to the package
    loggers.

    Args:
        config: QC configuration
        reference: Population reference, required when ``config.learn`` is
            False
        similarity: Fingerprint similarity, "concordance" or "dosage"
    """

    def __init__(
        self,
        config: QCConfig | None = None,
        reference: PopulationReference | None = None,
        similarity: str = "concordance",
    ):
        self.config = config or DEFAULT_CONFIG
        configure_logging(self.config.log_level)
        self.reference = reference
        self.similarity = similarity

        if not self.config.learn and reference is None:
            raise ConfigurationError(
                "Fixed-parameter genotype calling requires a population reference"
            )

    def run(
        self,
        values: pd.DataFrame,
        donors: DonorGroups | Mapping[str, str],
        sex_features: pd.DataFrame | None = None,
        known_sex: Mapping[str, str | SexLabel] | None = None,
        control_intensities: pd.DataFrame | None = None,
        control_catalog: tuple[ControlMetric, ...] | None = None,
    ) -> QCReport:
        """Run every QC component over one batch.

        Args:
            values: Markers x samples matrix of values in [0, 1]
            donors: Expected donor grouping, or a sample to donor mapping
            sex_features: Samples x ("x", "y") sex features
            known_sex: Known sex labels; anchors the sex centroids and is
                compared with the predictions
            control_intensities: Samples x control-probe intensities
            control_catalog: Control metrics to evaluate (default catalog
                when omitted)

        Returns:
            QCReport

        Raises:
            InputMismatchError: If an input covers different samples than
                ``values``
            ConfigurationError: For invalid inputs or configuration
        """
        matrix = validate_value_matrix(values)
        sample_ids = tuple(matrix.columns)

        if not isinstance(donors, DonorGroups):
            donors = DonorGroups.from_mapping(donors)
        check_same_ids("sample", "value matrix", sample_ids, "donor groups", donors.sample_ids)

        if sex_features is not None:
            if known_sex is None:
                raise ConfigurationError("Sex check requires known sex labels")
            check_same_ids(
                "sample",
                "value matrix",
                sample_ids,
                "sex features",
                [str(s) for s in sex_features.index],
            )
        if control_intensities is not None:
            check_same_ids(
                "sample",
                "value matrix",
                sample_ids,
                "control intensities",
                [str(s) for s in control_intensities.index],
            )

        logger.info(
            "Running identity QC on %d samples at %d markers",
            len(sample_ids),
            len(matrix.index),
        )

        controls = None
        if control_intensities is not None:
            controls = evaluate_control_metrics(
                control_intensities,
                control_catalog or DEFAULT_CONTROL_METRICS,
                self.config.control_metric_cutoffs,
            )

        posteriors = call_genotypes(matrix, self.config, self.reference)
        fingerprints = match_fingerprints(posteriors, donors, self.config, self.similarity)
        outliers = score_outliers(posteriors, self.config.outlier_cutoff)

        sex = None
        if sex_features is not None:
            features = sex_features.copy()
            features.index = features.index.astype(str)
            sex = classify_sex(features.loc[list(sample_ids)], known_sex)

        report = QCReport(
            sample_ids=sample_ids,
            posteriors=posteriors,
            fingerprints=fingerprints,
            outliers=outliers,
            controls=controls,
            sex=sex,
        )

        n_failed = int((~report.sample_summary()["qc_pass"]).sum())
        logger.info(
            "Identity QC complete: %d of %d samples failed, %d identity conflicts, "
            "%d markers excluded",
            n_failed,
            len(sample_ids),
            report.n_conflicts,
            len(posteriors.failures),
        )
        return report
