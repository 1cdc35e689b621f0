"""Control-probe metric evaluation.

Each metric is a ratio of control-probe intensity summaries compared
against a recommended cutoff. A sample fails when any metric that could be
computed for it fails. A metric that needs a probe absent from the input, or
whose intensities are missing for a sample, is "not computable" for that
sample and does not count towards the verdict.

Reference: Illumina BeadArray Controls Reporter metric definitions and
recommended cutoffs.
"""

import logging
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

import numpy as np
import pandas as pd

from ..config import VALID_DIRECTIONS
from ..errors import ConfigurationError
from ..models import ControlMetricTable

logger = logging.getLogger(__name__)

AGGREGATES = ("mean", "min", "max")


@dataclass(frozen=True)
class ControlMetric:
    """A named control metric with its cutoff.

    The value is ``agg(numerator probes) / agg(denominator probes)``, or the
    numerator summary alone when there is no denominator.
    """

    name: str
    numerator: tuple[str, ...]
    denominator: tuple[str, ...] = ()
    cutoff: float = 1.0
    direction: str = ">="
    numerator_agg: str = "mean"
    denominator_agg: str = "mean"

    def __post_init__(self):
        if not self.numerator:
            raise ConfigurationError(f"Control metric '{self.name}' has no numerator probes")
        if self.direction not in VALID_DIRECTIONS:
            raise ConfigurationError(
                f"Invalid direction '{self.direction}' for control metric", [self.name]
            )
        for agg in (self.numerator_agg, self.denominator_agg):
            if agg not in AGGREGATES:
                raise ConfigurationError(
                    f"Invalid aggregate '{agg}' for control metric", [self.name]
                )

    @property
    def probes(self) -> tuple[str, ...]:
        return self.numerator + self.denominator


def _ratio(name, numerator, denominator, cutoff, num_agg="mean", den_agg="mean") -> ControlMetric:
    return ControlMetric(
        name=name,
        numerator=tuple(numerator),
        denominator=tuple(denominator),
        cutoff=cutoff,
        direction=">=",
        numerator_agg=num_agg,
        denominator_agg=den_agg,
    )


DEFAULT_CONTROL_METRICS: tuple[ControlMetric, ...] = (
    _ratio("Restoration", ["restoration_green"], ["background_green"], 0.0),
    _ratio("Staining Green", ["staining_biotin_high_green"], ["staining_biotin_bkg_green"], 5.0),
    _ratio("Staining Red", ["staining_dnp_high_red"], ["staining_dnp_bkg_red"], 5.0),
    _ratio(
        "Extension Green",
        ["extension_c_green", "extension_g_green"],
        ["extension_a_green", "extension_t_green"],
        5.0,
        "min",
        "max",
    ),
    _ratio(
        "Extension Red",
        ["extension_a_red", "extension_t_red"],
        ["extension_c_red", "extension_g_red"],
        5.0,
        "min",
        "max",
    ),
    _ratio("Hybridization High/Medium", ["hyb_high_green"], ["hyb_medium_green"], 1.0),
    _ratio("Hybridization Medium/Low", ["hyb_medium_green"], ["hyb_low_green"], 1.0),
    _ratio("Target Removal 1", ["background_green"], ["target_removal_1_green"], 1.0),
    _ratio("Target Removal 2", ["background_green"], ["target_removal_2_green"], 1.0),
    _ratio(
        "Bisulfite Conversion I Green",
        ["bs_i_c_green"],
        ["bs_i_u_green"],
        1.0,
        "min",
        "max",
    ),
    _ratio("Bisulfite Conversion I Red", ["bs_i_c_red"], ["bs_i_u_red"], 1.0, "min", "max"),
    _ratio("Bisulfite Conversion II", ["bs_ii_red"], ["bs_ii_green"], 1.0, "min", "max"),
    _ratio("Specificity I Green", ["spec_i_pm_green"], ["spec_i_mm_green"], 1.0, "min", "max"),
    _ratio("Specificity I Red", ["spec_i_pm_red"], ["spec_i_mm_red"], 1.0, "min", "max"),
    _ratio("Specificity II", ["spec_ii_red"], ["spec_ii_green"], 1.0, "min", "max"),
    _ratio(
        "Non-polymorphic Green",
        ["np_c_green", "np_g_green"],
        ["np_a_green", "np_t_green"],
        5.0,
        "min",
        "max",
    ),
    _ratio(
        "Non-polymorphic Red",
        ["np_a_red", "np_t_red"],
        ["np_c_red", "np_g_red"],
        5.0,
        "min",
        "max",
    ),
)


def evaluate_metric_pass(value: float | None, cutoff: float, direction: str = ">=") -> bool | None:
    """Compare one metric value against its cutoff.

    The cutoff itself passes in either direction.

    Returns:
        True/False, or None if the value is not computable
    """
    if value is None or not np.isfinite(value):
        return None
    if direction == ">=":
        return bool(value >= cutoff)
    if direction == "<=":
        return bool(value <= cutoff)
    raise ConfigurationError(f"Invalid cutoff direction '{direction}'", [direction])


def apply_cutoff_overrides(
    catalog: tuple[ControlMetric, ...] | list[ControlMetric],
    cutoffs: Mapping[str, tuple[float, str]],
) -> tuple[ControlMetric, ...]:
    """Replace cutoffs and directions of catalog metrics.

    Raises:
        ConfigurationError: If a cutoff names a metric not in the catalog
    """
    names = {m.name for m in catalog}
    unknown = [name for name in cutoffs if name not in names]
    if unknown:
        raise ConfigurationError("Cutoffs given for unknown control metrics", unknown)

    return tuple(
        replace(m, cutoff=float(cutoffs[m.name][0]), direction=cutoffs[m.name][1])
        if m.name in cutoffs
        else m
        for m in catalog
    )


def catalog_from_dict(data: Mapping[str, Mapping[str, Any]]) -> tuple[ControlMetric, ...]:
    """Build a metric catalog from ``{name: {numerator, denominator, ...}}``."""
    catalog = []
    for name, entry in data.items():
        if "numerator" not in entry or "cutoff" not in entry:
            raise ConfigurationError("Control metric needs numerator and cutoff", [name])
        catalog.append(
            ControlMetric(
                name=name,
                numerator=tuple(entry["numerator"]),
                denominator=tuple(entry.get("denominator", ())),
                cutoff=float(entry["cutoff"]),
                direction=entry.get("direction", ">="),
                numerator_agg=entry.get("numerator_agg", "mean"),
                denominator_agg=entry.get("denominator_agg", "mean"),
            )
        )
    if not catalog:
        raise ConfigurationError("Control metric catalog is empty")
    return tuple(catalog)


def load_control_catalog(path: Path | str) -> tuple[ControlMetric, ...]:
    """Load a metric catalog from the ``[control_metrics]`` table of a TOML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Control metric catalog not found: {path}")

    with open(path, "rb") as f:
        data = tomllib.load(f)

    catalog = catalog_from_dict(data.get("control_metrics", {}))
    logger.info("Loaded %d control metrics from %s", len(catalog), path.name)
    return catalog


def _summarise(intensities: pd.DataFrame, probes: tuple[str, ...], agg: str) -> pd.Series:
    return getattr(intensities.loc[:, list(probes)], agg)(axis=1, skipna=False)


def compute_metric_values(
    intensities: pd.DataFrame,
    catalog: tuple[ControlMetric, ...] | list[ControlMetric] = DEFAULT_CONTROL_METRICS,
) -> pd.DataFrame:
    """Metric values per sample.

    Args:
        intensities: Samples x control-probe intensities
        catalog: Metrics to compute

    Returns:
        Samples x metrics DataFrame, NaN where not computable
    """
    columns = set(intensities.columns)
    values = {}
    for metric in catalog:
        missing = [p for p in metric.probes if p not in columns]
        if missing:
            logger.warning(
                "Control metric '%s' not computable: missing probes %s",
                metric.name,
                ", ".join(missing),
            )
            values[metric.name] = pd.Series(np.nan, index=intensities.index)
            continue

        value = _summarise(intensities, metric.numerator, metric.numerator_agg)
        if metric.denominator:
            with np.errstate(divide="ignore", invalid="ignore"):
                value = value / _summarise(intensities, metric.denominator, metric.denominator_agg)
        values[metric.name] = value.where(np.isfinite(value))

    frame = pd.DataFrame(values, index=intensities.index, columns=[m.name for m in catalog])
    return frame.astype(np.float64)


def evaluate_control_metrics(
    intensities: pd.DataFrame,
    catalog: tuple[ControlMetric, ...] | list[ControlMetric] = DEFAULT_CONTROL_METRICS,
    cutoffs: Mapping[str, tuple[float, str]] | None = None,
) -> ControlMetricTable:
    """Evaluate control metrics for every sample.

    Args:
        intensities: Samples x control-probe intensities
        catalog: Metrics to evaluate
        cutoffs: Optional ``{metric name: (threshold, direction)}`` overrides

    Returns:
        ControlMetricTable with values, per-metric verdicts and cutoffs
    """
    if cutoffs:
        catalog = apply_cutoff_overrides(catalog, cutoffs)

    intensities = intensities.copy()
    intensities.index = intensities.index.astype(str)
    intensities.columns = intensities.columns.astype(str)

    values = compute_metric_values(intensities, catalog)

    passed = pd.DataFrame(index=values.index)
    for metric in catalog:
        column = values[metric.name]
        if metric.direction == ">=":
            verdict = column >= metric.cutoff
        else:
            verdict = column <= metric.cutoff
        passed[metric.name] = verdict.astype("boolean").mask(column.isna())

    table = ControlMetricTable(
        values=values,
        passed=passed,
        cutoffs={m.name: (m.cutoff, m.direction) for m in catalog},
    )

    no_metrics = table.n_computable == 0
    if no_metrics.any():
        logger.warning(
            "%d samples have no computable control metric", int(no_metrics.sum())
        )
    logger.info(
        "Evaluated %d control metrics for %d samples: %d failed",
        len(catalog),
        len(values),
        int(table.failed.sum()),
    )
    return table
