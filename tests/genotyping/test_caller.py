"""Tests for batch genotype calling."""

import logging

import numpy as np
import pandas as pd
import pytest


class TestCallGenotypesLearned:
    def test_calls_match_truth(self, generator):
        from array_idqc.genotyping import call_genotypes

        batch = generator.batch(n_donors=120)
        tensor = call_genotypes(batch.values.iloc[:20])

        assert len(tensor.sample_ids) == 120
        assert len(tensor.marker_ids) + len(tensor.failures) == 20

        rows = [batch.marker_ids.index(m) for m in tensor.marker_ids]
        agreement = (tensor.best_calls() == batch.genotypes[rows]).mean()
        assert agreement > 0.98

    def test_failed_markers_are_excluded_and_recorded(self, generator, caplog):
        from array_idqc.genotyping import call_genotypes

        batch = generator.batch(n_donors=40)
        values = batch.values.iloc[:10].copy()
        values.iloc[3, 5:] = np.nan

        with caplog.at_level(logging.WARNING, logger="array_idqc.genotyping.caller"):
            tensor = call_genotypes(values)

        failed = batch.marker_ids[3]
        assert failed not in tensor.marker_ids
        assert len(tensor.marker_ids) == 9
        assert [f.marker_id for f in tensor.failures] == [failed]
        assert failed in caplog.text

    def test_all_markers_failing_raises(self):
        from array_idqc.errors import ConfigurationError
        from array_idqc.genotyping import call_genotypes

        values = pd.DataFrame([[0.1, 0.5], [0.9, 0.5]], index=["m1", "m2"], columns=["s1", "s2"])
        with pytest.raises(ConfigurationError) as exc_info:
            call_genotypes(values)
        assert exc_info.value.identifiers == ("m1", "m2")

    def test_worker_pool_matches_serial(self, generator):
        from array_idqc.config import QCConfig
        from array_idqc.genotyping import call_genotypes

        batch = generator.batch(n_donors=50)
        values = batch.values.iloc[:30]

        serial = call_genotypes(values, QCConfig(workers=1, block_size=8))
        pooled = call_genotypes(values, QCConfig(workers=4, block_size=8))

        assert serial.marker_ids == pooled.marker_ids
        np.testing.assert_array_equal(serial.log_posteriors, pooled.log_posteriors)

    def test_invalid_matrix_raises(self):
        from array_idqc.errors import ConfigurationError
        from array_idqc.genotyping import call_genotypes

        values = pd.DataFrame([[0.1, 1.5]], index=["m1"], columns=["s1", "s2"])
        with pytest.raises(ConfigurationError):
            call_genotypes(values)


class TestFitMarkers:
    def test_returns_params_for_fitted_markers(self, generator):
        from array_idqc.config import QCConfig
        from array_idqc.genotyping import fit_markers

        batch = generator.batch(n_donors=60)
        params, failures = fit_markers(batch.values.iloc[:5], QCConfig())

        assert failures == ()
        assert params.marker_ids == tuple(batch.marker_ids[:5])
        assert params.locations.shape == (5, 3)


class TestCallGenotypesFixed:
    def test_uses_reference_parameters(self, paired_batch, fixed_config, reference_for):
        from array_idqc.genotyping import call_genotypes

        reference = reference_for(paired_batch)
        tensor = call_genotypes(paired_batch.values, fixed_config, reference)

        assert tensor.marker_ids == tuple(paired_batch.marker_ids)
        assert tensor.failures == ()
        assert (tensor.best_calls() == paired_batch.genotypes).mean() > 0.99

    def test_reference_order_does_not_matter(self, paired_batch, fixed_config, reference_for):
        from array_idqc.genotyping import call_genotypes

        reference = reference_for(paired_batch)
        shuffled = paired_batch.values.iloc[::-1]
        tensor = call_genotypes(shuffled, fixed_config, reference)

        assert tensor.marker_ids == tuple(shuffled.index)

    def test_missing_reference_raises(self, paired_batch, fixed_config):
        from array_idqc.errors import ConfigurationError
        from array_idqc.genotyping import call_genotypes

        with pytest.raises(ConfigurationError, match="population reference"):
            call_genotypes(paired_batch.values, fixed_config)

    def test_marker_missing_from_reference_raises(self, paired_batch, fixed_config):
        from fixtures.array_generator import make_reference

        from array_idqc.errors import InputMismatchError
        from array_idqc.genotyping import call_genotypes

        reference = make_reference(paired_batch.marker_ids[1:])
        with pytest.raises(InputMismatchError) as exc_info:
            call_genotypes(paired_batch.values, fixed_config, reference)
        assert exc_info.value.missing_from_right == (paired_batch.marker_ids[0],)

    def test_extra_reference_markers_are_ignored(self, paired_batch, fixed_config):
        from fixtures.array_generator import make_reference

        from array_idqc.genotyping import call_genotypes

        reference = make_reference([*paired_batch.marker_ids, "rs_extra"])
        tensor = call_genotypes(paired_batch.values, fixed_config, reference)

        assert "rs_extra" not in tensor.marker_ids
