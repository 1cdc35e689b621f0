"""Genotype calling over a markers x samples value matrix."""

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd

from ..config import DEFAULT_CONFIG, QCConfig
from ..errors import ConfigurationError, MarkerFitFailure
from ..models import GenotypeModelParams, MixtureParams, PosteriorTensor, validate_value_matrix
from .mixture import MarkerFit, compute_log_posteriors, fit_marker
from .reference import PopulationReference

logger = logging.getLogger(__name__)


def _chunks(n: int, size: int) -> list[tuple[int, int]]:
    return [(start, min(start + size, n)) for start in range(0, n, size)]


def _fit_chunk(
    matrix: np.ndarray,
    marker_ids: list[str],
    config: QCConfig,
) -> list[MarkerFit]:
    return [
        fit_marker(
            matrix[i],
            marker_id=marker_ids[i],
            max_iterations=config.em_max_iterations,
            tolerance=config.em_convergence_tolerance,
            variance_floor=config.variance_floor,
            outlier_weight=config.outlier_weight,
            min_observations=config.min_observations,
        )
        for i in range(len(marker_ids))
    ]


def fit_markers(
    values: pd.DataFrame,
    config: QCConfig | None = None,
) -> tuple[GenotypeModelParams | None, tuple[MarkerFitFailure, ...]]:
    """Fit the genotype mixture independently for every marker.

    Marker chunks are fitted on a thread pool of ``config.workers``; each
    chunk reads its own rows and returns its fits by value.

    Args:
        values: Markers x samples matrix (already validated)
        config: QC configuration

    Returns:
        Tuple of (parameters for the markers that fitted, or None if none
        did; failure records for the rest)
    """
    config = config or DEFAULT_CONFIG
    matrix = values.to_numpy(dtype=np.float64)
    marker_ids = [str(m) for m in values.index]

    chunks = _chunks(len(marker_ids), max(1, config.block_size))

    if config.workers > 1 and len(chunks) > 1:
        with ThreadPoolExecutor(max_workers=config.workers) as executor:
            futures = [
                executor.submit(_fit_chunk, matrix[start:stop], marker_ids[start:stop], config)
                for start, stop in chunks
            ]
            results = [future.result() for future in futures]
    else:
        results = [
            _fit_chunk(matrix[start:stop], marker_ids[start:stop], config)
            for start, stop in chunks
        ]

    fitted: dict[str, MixtureParams] = {}
    failures: list[MarkerFitFailure] = []
    for fits in results:
        for fit in fits:
            if fit.ok:
                fitted[fit.marker_id] = fit.params
            else:
                failures.append(fit.failure)

    for failure in failures:
        logger.warning("Excluding marker %s: %s", failure.marker_id, failure.reason)

    params = GenotypeModelParams.from_marker_params(fitted) if fitted else None
    return params, tuple(failures)


def call_genotypes(
    values: pd.DataFrame,
    config: QCConfig | None = None,
    reference: PopulationReference | None = None,
) -> PosteriorTensor:
    """Convert a value matrix into genotype posteriors.

    With ``config.learn`` the mixture is fitted per marker; otherwise the
    parameters come from ``reference``. Markers whose fit fails are left out
    of the tensor and listed in ``PosteriorTensor.failures``.

    Args:
        values: Markers x samples DataFrame of values in [0, 1], NaN missing
        config: QC configuration
        reference: Population reference for fixed-parameter mode

    Returns:
        PosteriorTensor over the retained markers

    Raises:
        ConfigurationError: If the matrix is invalid, fixed mode has no
            reference, or no marker could be fitted
        InputMismatchError: If a marker is missing from the reference
    """
    config = config or DEFAULT_CONFIG
    matrix = validate_value_matrix(values)

    if config.learn:
        params, failures = fit_markers(matrix, config)
        if params is None:
            raise ConfigurationError(
                "No marker could be fitted", [f.marker_id for f in failures]
            )
        source = "fitted"
    else:
        if reference is None:
            raise ConfigurationError(
                "Fixed-parameter genotype calling requires a population reference"
            )
        params = reference.restrict(matrix.index)
        failures = ()
        source = f"reference {reference.name} {reference.version}"

    kept = matrix.loc[list(params.marker_ids)].to_numpy(dtype=np.float64)
    log_posteriors = compute_log_posteriors(kept, params)

    logger.info(
        "Called genotypes for %d samples at %d markers (%s parameters, %d markers excluded)",
        matrix.shape[1],
        len(params.marker_ids),
        source,
        len(failures),
    )

    return PosteriorTensor(
        marker_ids=params.marker_ids,
        sample_ids=tuple(matrix.columns),
        log_posteriors=log_posteriors,
        failures=failures,
    )
