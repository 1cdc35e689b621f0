"""Pytest configuration and fixtures for array-idqc tests."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from fixtures.array_generator import (  # noqa: E402
    ArrayGenerator,
    make_control_intensities,
    make_reference,
    make_sex_features,
)


@pytest.fixture
def generator() -> ArrayGenerator:
    """Seeded generator of synthetic value matrices."""
    return ArrayGenerator(n_markers=200, seed=7)


@pytest.fixture
def paired_batch(generator):
    """Ten donors with two replicate samples each."""
    return generator.batch(n_donors=10, replicates=2)


@pytest.fixture
def swapped_batch(paired_batch):
    """Paired batch with the data of s1 and s2 exchanged."""
    return paired_batch.swap_samples("s1", "s2")


@pytest.fixture
def fixed_config():
    """Configuration that calls genotypes from a population reference."""
    from array_idqc.config import QCConfig

    return QCConfig(learn=False)


@pytest.fixture
def reference_for():
    """Factory building a population reference for a synthetic batch."""

    def _factory(batch, **kwargs):
        return make_reference(batch.marker_ids, batch.allele_frequencies, **kwargs)

    return _factory


@pytest.fixture
def sex_features_for():
    """Factory building X/Y sex features for a synthetic batch."""

    def _factory(batch, seed: int = 0):
        return make_sex_features(batch.sex_of, seed=seed)

    return _factory


@pytest.fixture
def control_intensities_for():
    """Factory building passing control intensities for a synthetic batch."""

    def _factory(batch, **kwargs):
        return make_control_intensities(batch.sample_ids, **kwargs)

    return _factory
