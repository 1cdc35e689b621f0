"""Tests for pairwise fingerprint matching."""

import logging

import numpy as np
import pytest


def _posteriors(batch, reference_for, fixed_config):
    from array_idqc.genotyping import call_genotypes

    return call_genotypes(batch.values, fixed_config, reference_for(batch))


def _donors(batch):
    from array_idqc.fingerprint import DonorGroups

    return DonorGroups.from_mapping(batch.donor_of)


class TestSampleSwap:
    def test_clean_batch_has_no_conflicts(self, paired_batch, reference_for, fixed_config):
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(paired_batch, reference_for, fixed_config)
        result = match_fingerprints(posteriors, _donors(paired_batch))

        assert result.records == ()
        assert result.threshold_source == "adaptive"
        assert 0.5 < result.threshold < 0.95

    def test_swap_is_reported_as_four_conflicts(self, swapped_batch, reference_for, fixed_config):
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(swapped_batch, reference_for, fixed_config)
        result = match_fingerprints(posteriors, _donors(swapped_batch))

        pairs = [(r.sample_a, r.sample_b) for r in result.records]
        assert pairs == [("s0", "s1"), ("s0", "s2"), ("s1", "s3"), ("s2", "s3")]

        kinds = {(r.sample_a, r.sample_b): r.kind for r in result.records}
        assert kinds[("s0", "s1")] == "expected_same_observed_different"
        assert kinds[("s2", "s3")] == "expected_same_observed_different"
        assert kinds[("s0", "s2")] == "expected_different_observed_same"
        assert kinds[("s1", "s3")] == "expected_different_observed_same"

        for record in result.records:
            assert record.n_shared_markers == 200
            assert record.expected_match != record.observed_match

    def test_conflict_counts(self, swapped_batch, reference_for, fixed_config):
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(swapped_batch, reference_for, fixed_config)
        counts = match_fingerprints(posteriors, _donors(swapped_batch)).conflict_counts()

        assert counts[["s0", "s1", "s2", "s3"]].tolist() == [2, 2, 2, 2]
        assert counts.drop(["s0", "s1", "s2", "s3"]).sum() == 0

    def test_dosage_similarity_finds_same_conflicts(
        self, swapped_batch, reference_for, fixed_config
    ):
        from array_idqc.config import QCConfig
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(swapped_batch, reference_for, fixed_config)
        config = QCConfig(fingerprint_calibration="fixed", fingerprint_threshold=0.95)
        result = match_fingerprints(posteriors, _donors(swapped_batch), config, method="dosage")

        pairs = [(r.sample_a, r.sample_b) for r in result.records]
        assert pairs == [("s0", "s1"), ("s0", "s2"), ("s1", "s3"), ("s2", "s3")]
        assert result.threshold_source == "fixed"

    def test_conflicts_frame(self, swapped_batch, reference_for, fixed_config):
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(swapped_batch, reference_for, fixed_config)
        frame = match_fingerprints(posteriors, _donors(swapped_batch)).conflicts_frame()

        assert len(frame) == 4
        assert list(frame.columns[:2]) == ["sample_a", "sample_b"]


class TestUnrelatedBatch:
    @pytest.mark.parametrize("method", ["concordance", "dosage"])
    def test_no_replicates_gives_no_conflicts(
        self, generator, reference_for, fixed_config, method
    ):
        from array_idqc.fingerprint import DEFAULT_FINGERPRINT_THRESHOLDS, match_fingerprints

        batch = generator.batch(n_donors=40)
        posteriors = _posteriors(batch, reference_for, fixed_config)
        result = match_fingerprints(posteriors, _donors(batch), method=method)

        assert result.threshold_source == "fallback"
        assert result.threshold == DEFAULT_FINGERPRINT_THRESHOLDS[method]
        assert result.records == ()
        assert np.nanmax(result.statistics) < result.threshold

    def test_configured_threshold_overrides_method_default(
        self, generator, reference_for, fixed_config
    ):
        from array_idqc.config import QCConfig
        from array_idqc.fingerprint import match_fingerprints

        batch = generator.batch(n_donors=10)
        posteriors = _posteriors(batch, reference_for, fixed_config)
        config = QCConfig(fingerprint_threshold=0.97)
        result = match_fingerprints(posteriors, _donors(batch), config, method="dosage")

        assert (result.threshold, result.threshold_source) == (0.97, "fallback")


class TestPairwiseStatistics:
    def test_matrix_is_symmetric_with_nan_diagonal(
        self, paired_batch, reference_for, fixed_config
    ):
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(paired_batch, reference_for, fixed_config)
        result = match_fingerprints(posteriors, _donors(paired_batch))

        statistics = result.statistics
        assert np.isnan(np.diag(statistics)).all()
        off_diagonal = ~np.eye(len(statistics), dtype=bool)
        assert (statistics[off_diagonal] == statistics.T[off_diagonal]).all()
        assert (result.shared_markers == result.shared_markers.T).all()

    def test_replicates_score_near_one(self, paired_batch, reference_for, fixed_config):
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(paired_batch, reference_for, fixed_config)
        frame = match_fingerprints(posteriors, _donors(paired_batch)).statistics_frame()

        assert frame.loc["s0", "s1"] > 0.95
        assert frame.loc["s0", "s2"] < 0.7

    def test_worker_pool_gives_identical_result(self, paired_batch, reference_for, fixed_config):
        from array_idqc.config import QCConfig
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(paired_batch, reference_for, fixed_config)
        donors = _donors(paired_batch)

        serial = match_fingerprints(posteriors, donors, QCConfig(block_size=3, workers=1))
        pooled = match_fingerprints(posteriors, donors, QCConfig(block_size=3, workers=4))

        np.testing.assert_array_equal(serial.statistics, pooled.statistics)
        assert serial.records == pooled.records

    def test_block_size_does_not_change_result(self, swapped_batch, reference_for, fixed_config):
        from array_idqc.config import QCConfig
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(swapped_batch, reference_for, fixed_config)
        donors = _donors(swapped_batch)

        whole = match_fingerprints(posteriors, donors, QCConfig(block_size=512))
        tiled = match_fingerprints(posteriors, donors, QCConfig(block_size=7, workers=2))

        np.testing.assert_allclose(whole.statistics, tiled.statistics, rtol=1e-12)
        assert [(r.sample_a, r.sample_b) for r in whole.records] == [
            (r.sample_a, r.sample_b) for r in tiled.records
        ]

    def test_pairs_frame_lists_each_pair_once(self, paired_batch, reference_for, fixed_config):
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(paired_batch, reference_for, fixed_config)
        frame = match_fingerprints(posteriors, _donors(paired_batch)).pairs_frame()

        assert len(frame) == 20 * 19 // 2
        assert not frame[["sample_a", "sample_b"]].duplicated().any()

    def test_missing_values_reduce_shared_markers(
        self, paired_batch, reference_for, fixed_config
    ):
        from array_idqc.fingerprint import match_fingerprints
        from array_idqc.genotyping import call_genotypes

        values = paired_batch.values.copy()
        values.iloc[:50, 0] = np.nan
        posteriors = call_genotypes(values, fixed_config, reference_for(paired_batch))
        result = match_fingerprints(posteriors, _donors(paired_batch))

        assert result.shared_markers[0, 1] == 150
        assert result.shared_markers[2, 3] == 200
        assert result.records == ()


class TestUnclassifiedPairs:
    def test_pairs_without_shared_markers_are_skipped(
        self, paired_batch, reference_for, fixed_config, caplog
    ):
        from array_idqc.fingerprint import match_fingerprints
        from array_idqc.genotyping import call_genotypes

        values = paired_batch.values.copy()
        values["s19"] = np.nan
        posteriors = call_genotypes(values, fixed_config, reference_for(paired_batch))

        with caplog.at_level(logging.WARNING, logger="array_idqc.fingerprint.matcher"):
            result = match_fingerprints(posteriors, _donors(paired_batch))

        assert result.n_unclassified == 19
        assert result.records == ()
        assert "were not classified" in caplog.text

    def test_min_shared_markers(self, paired_batch, reference_for, fixed_config):
        from array_idqc.config import QCConfig
        from array_idqc.fingerprint import match_fingerprints
        from array_idqc.genotyping import call_genotypes

        values = paired_batch.values.copy()
        values.iloc[:190, 0] = np.nan
        posteriors = call_genotypes(values, fixed_config, reference_for(paired_batch))

        result = match_fingerprints(
            posteriors, _donors(paired_batch), QCConfig(min_shared_markers=20)
        )
        assert result.n_unclassified == 19


class TestInputChecks:
    def test_donor_samples_must_match(self, paired_batch, reference_for, fixed_config):
        from array_idqc.errors import InputMismatchError
        from array_idqc.fingerprint import DonorGroups, match_fingerprints

        posteriors = _posteriors(paired_batch, reference_for, fixed_config)
        donor_of = dict(paired_batch.donor_of)
        del donor_of["s5"]
        donor_of["s99"] = "d99"

        with pytest.raises(InputMismatchError) as exc_info:
            match_fingerprints(posteriors, DonorGroups.from_mapping(donor_of))
        assert exc_info.value.missing_from_right == ("s5",)
        assert exc_info.value.missing_from_left == ("s99",)

    def test_unknown_method_raises(self, paired_batch, reference_for, fixed_config):
        from array_idqc.errors import ConfigurationError
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(paired_batch, reference_for, fixed_config)
        with pytest.raises(ConfigurationError):
            match_fingerprints(posteriors, _donors(paired_batch), method="ibs")


class TestCalibrateThreshold:
    def test_bimodal_split(self):
        from array_idqc.fingerprint import calibrate_threshold

        threshold, source = calibrate_threshold(np.array([0.3, 0.35, 0.4, 0.95, 1.0]))

        assert source == "adaptive"
        assert threshold == pytest.approx(0.675)

    def test_unimodal_falls_back(self, caplog):
        from array_idqc.fingerprint import DEFAULT_FINGERPRINT_THRESHOLD, calibrate_threshold

        with caplog.at_level(logging.WARNING, logger="array_idqc.fingerprint.matcher"):
            threshold, source = calibrate_threshold(np.array([0.40, 0.41, 0.42, 0.43]))

        assert (threshold, source) == (DEFAULT_FINGERPRINT_THRESHOLD, "fallback")
        assert "not bimodal" in caplog.text

    def test_configured_fallback(self):
        from array_idqc.fingerprint import calibrate_threshold

        threshold, source = calibrate_threshold(np.array([0.4, 0.41]), fallback=0.9)
        assert (threshold, source) == (0.9, "fallback")

    def test_too_few_values(self):
        from array_idqc.fingerprint import calibrate_threshold

        assert calibrate_threshold(np.array([0.5]))[1] == "fallback"
        assert calibrate_threshold(np.array([]))[1] == "fallback"

    def test_identical_values(self):
        from array_idqc.fingerprint import calibrate_threshold

        assert calibrate_threshold(np.full(10, 0.5))[1] == "fallback"

    def test_non_finite_values_ignored(self):
        from array_idqc.fingerprint import calibrate_threshold

        threshold, source = calibrate_threshold(
            np.array([0.3, np.nan, 0.35, 0.4, 0.95, 1.0, np.nan])
        )
        assert source == "adaptive"
        assert threshold == pytest.approx(0.675)

    def test_fixed_calibration_uses_configured_threshold(
        self, paired_batch, reference_for, fixed_config
    ):
        from array_idqc.config import QCConfig
        from array_idqc.fingerprint import match_fingerprints

        posteriors = _posteriors(paired_batch, reference_for, fixed_config)
        config = QCConfig(fingerprint_calibration="fixed", fingerprint_threshold=0.9)
        result = match_fingerprints(posteriors, _donors(paired_batch), config)

        assert (result.threshold, result.threshold_source) == (0.9, "fixed")
        assert result.records == ()
