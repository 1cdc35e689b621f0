"""Three-genotype mixture model for fractional marker values.

Each marker is modelled as three Gaussian genotype clusters ordered by
location (HOM_A, HET, HOM_B) plus a uniform outlier component on [0, 1].
The outlier component absorbs values that sit between clusters, which is
what contaminated or degraded samples produce, instead of forcing them into
a confident genotype call.

Fitting is expectation-maximisation on the observed values of a single
marker. All iteration state is local to ``fit_marker``.
"""

import logging
import math
from dataclasses import dataclass

import numpy as np
from scipy.special import logsumexp
from scipy.stats import norm

from ..errors import MarkerFitFailure
from ..models import N_GENOTYPE_CLASSES, GenotypeModelParams, MixtureParams

logger = logging.getLogger(__name__)

CANONICAL_LOCATIONS = (0.1, 0.5, 0.9)
KMEANS_ITERATIONS = 20
MIN_WEIGHT = 1e-6
# A component carrying less than one observation's worth of responsibility
# keeps its previous location and scale.
MIN_COMPONENT_MASS = 1.0


@dataclass(frozen=True)
class MarkerFit:
    """Outcome of fitting one marker."""

    marker_id: str
    params: MixtureParams | None
    log_likelihood: float
    iterations: int
    converged: bool
    failure: MarkerFitFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def _normalise_weights(weights: np.ndarray, outlier_weight: float) -> np.ndarray:
    weights = np.maximum(weights, MIN_WEIGHT)
    return weights / weights.sum() * (1.0 - outlier_weight)


def initial_params(
    observed: np.ndarray,
    outlier_weight: float,
    variance_floor: float,
) -> MixtureParams:
    """Initial mixture parameters from a 1-D k-means on the observed values.

    Clustering starts from the canonical genotype locations; a cluster that
    ends up empty keeps its canonical location.

    Args:
        observed: Non-missing values of one marker
        outlier_weight: Mixing weight of the outlier component
        variance_floor: Smallest allowed component variance

    Returns:
        MixtureParams ordered by location
    """
    centers = np.array(CANONICAL_LOCATIONS, dtype=np.float64)
    assignment = np.zeros(observed.size, dtype=np.intp)

    for _ in range(KMEANS_ITERATIONS):
        assignment = np.argmin(np.abs(observed[:, None] - centers[None, :]), axis=1)
        updated = centers.copy()
        for k in range(N_GENOTYPE_CLASSES):
            members = observed[assignment == k]
            if members.size:
                updated[k] = members.mean()
        if np.allclose(updated, centers):
            break
        centers = updated

    floor_scale = math.sqrt(variance_floor)
    scales = np.full(N_GENOTYPE_CLASSES, floor_scale)
    counts = np.zeros(N_GENOTYPE_CLASSES)
    for k in range(N_GENOTYPE_CLASSES):
        members = observed[assignment == k]
        counts[k] = members.size
        if members.size > 1:
            scales[k] = max(float(members.std()), floor_scale)

    weights = _normalise_weights(counts / max(observed.size, 1), outlier_weight)
    order = np.argsort(centers, kind="stable")

    return MixtureParams(
        locations=tuple(float(x) for x in centers[order]),
        scales=tuple(float(x) for x in scales[order]),
        weights=tuple(float(x) for x in weights[order]),
        outlier_weight=outlier_weight,
    )


def joint_log_density(
    values: np.ndarray,
    locations: np.ndarray,
    scales: np.ndarray,
    weights: np.ndarray,
    outlier_weight: np.ndarray | float,
) -> np.ndarray:
    """Log of weight times density for each component.

    Parameter arrays broadcast against ``values[..., None]``; the result has
    one more trailing axis than ``values``, of length four (three genotype
    classes, then outlier). NaN values give NaN rows.
    """
    values = np.asarray(values, dtype=np.float64)
    with np.errstate(divide="ignore"):
        genotype = norm.logpdf(values[..., None], loc=locations, scale=scales) + np.log(weights)
        # uniform density on [0, 1] is 1, so only the weight contributes
        outlier = np.log(outlier_weight) + np.zeros_like(values)
    outlier = np.where(np.isnan(values), np.nan, outlier)
    return np.concatenate([genotype, outlier[..., None]], axis=-1)


def fit_marker(
    values: np.ndarray,
    marker_id: str = "",
    initial: MixtureParams | None = None,
    max_iterations: int = 100,
    tolerance: float = 1e-6,
    variance_floor: float = 1e-4,
    outlier_weight: float = 0.01,
    min_observations: int = 10,
) -> MarkerFit:
    """Fit the genotype mixture to one marker by expectation-maximisation.

    Convergence is declared when the mean per-observation log-likelihood
    changes by less than ``tolerance`` between iterations. The outlier weight
    is held fixed; genotype locations, scales and weights are updated.

    Args:
        values: Marker values across samples, NaN for missing
        marker_id: Identifier used in the failure record
        initial: Starting parameters (default: k-means initialisation)
        max_iterations: Iteration cap
        tolerance: Convergence threshold on mean log-likelihood change
        variance_floor: Smallest allowed component variance
        outlier_weight: Mixing weight of the outlier component
        min_observations: Fewest non-missing values accepted

    Returns:
        MarkerFit; ``failure`` is set when the fit was rejected
    """
    values = np.asarray(values, dtype=np.float64)
    observed = values[~np.isnan(values)]

    if observed.size < min_observations:
        return MarkerFit(
            marker_id=marker_id,
            params=None,
            log_likelihood=float("nan"),
            iterations=0,
            converged=False,
            failure=MarkerFitFailure(
                marker_id,
                f"only {observed.size} observed values (minimum {min_observations})",
            ),
        )

    if initial is None:
        initial = initial_params(observed, outlier_weight, variance_floor)
    else:
        outlier_weight = initial.outlier_weight

    locations, scales, weights = initial.as_arrays()
    floor_scale = math.sqrt(variance_floor)
    scales = np.maximum(scales, floor_scale)
    weights = _normalise_weights(weights, outlier_weight)
    n = observed.size

    previous = -np.inf
    mean_log_likelihood = -np.inf
    converged = False
    iteration = 0

    for iteration in range(1, max_iterations + 1):
        joint = joint_log_density(observed, locations, scales, weights, outlier_weight)
        log_norm = logsumexp(joint, axis=1)
        mean_log_likelihood = float(log_norm.mean())

        if not np.isfinite(mean_log_likelihood):
            return MarkerFit(
                marker_id=marker_id,
                params=None,
                log_likelihood=mean_log_likelihood,
                iterations=iteration,
                converged=False,
                failure=MarkerFitFailure(marker_id, "non-finite log-likelihood", iteration),
            )

        if abs(mean_log_likelihood - previous) < tolerance:
            converged = True
            break
        previous = mean_log_likelihood

        responsibilities = np.exp(joint - log_norm[:, None])
        mass = responsibilities[:, :N_GENOTYPE_CLASSES].sum(axis=0)

        for k in range(N_GENOTYPE_CLASSES):
            if mass[k] < MIN_COMPONENT_MASS:
                continue
            r = responsibilities[:, k]
            locations[k] = float(r @ observed / mass[k])
            variance = float(r @ (observed - locations[k]) ** 2 / mass[k])
            scales[k] = math.sqrt(max(variance, variance_floor))

        weights = _normalise_weights(mass / n, outlier_weight)

        order = np.argsort(locations, kind="stable")
        locations, scales, weights = locations[order], scales[order], weights[order]

    params = MixtureParams(
        locations=tuple(float(x) for x in locations),
        scales=tuple(float(x) for x in scales),
        weights=tuple(float(x) for x in weights),
        outlier_weight=outlier_weight,
    )

    if not converged:
        return MarkerFit(
            marker_id=marker_id,
            params=params,
            log_likelihood=mean_log_likelihood * n,
            iterations=iteration,
            converged=False,
            failure=MarkerFitFailure(
                marker_id, f"no convergence after {iteration} iterations", iteration
            ),
        )

    logger.debug(
        "Marker %s converged after %d iterations (locations %s)",
        marker_id,
        iteration,
        ", ".join(f"{x:.3f}" for x in locations),
    )
    return MarkerFit(
        marker_id=marker_id,
        params=params,
        log_likelihood=mean_log_likelihood * n,
        iterations=iteration,
        converged=True,
    )


def compute_log_posteriors(matrix: np.ndarray, params: GenotypeModelParams) -> np.ndarray:
    """Natural-log posteriors over genotype classes and outlier.

    Args:
        matrix: Values of shape (markers, samples), rows in ``params`` order
        params: Mixture parameters for those markers

    Returns:
        Array of shape (markers, samples, 4); NaN where the value is missing
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    joint = joint_log_density(
        matrix,
        params.locations[:, None, :],
        params.scales[:, None, :],
        params.weights[:, None, :],
        params.outlier_weights[:, None],
    )
    return joint - logsumexp(joint, axis=-1, keepdims=True)
