"""Genotype calling from fractional marker values."""

from .caller import call_genotypes, fit_markers
from .mixture import (
    CANONICAL_LOCATIONS,
    MarkerFit,
    compute_log_posteriors,
    fit_marker,
    initial_params,
)
from .reference import (
    PopulationReference,
    load_population_reference,
    write_population_reference,
)

__all__ = [
    "CANONICAL_LOCATIONS",
    "MarkerFit",
    "PopulationReference",
    "call_genotypes",
    "compute_log_posteriors",
    "fit_marker",
    "fit_markers",
    "initial_params",
    "load_population_reference",
    "write_population_reference",
]
