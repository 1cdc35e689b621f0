"""Tests for population reference tables."""

import gzip

import numpy as np
import pytest

HEADER = (
    "marker_id\tloc_hom_a\tloc_het\tloc_hom_b\tscale_hom_a\tscale_het\tscale_hom_b"
    "\tweight_hom_a\tweight_het\tweight_hom_b"
)


def _write_table(path, rows, meta=("##name=panel", "##version=2024.1"), header=HEADER):
    lines = [*meta, header, *rows]
    text = "\n".join(lines) + "\n"
    if str(path).endswith(".gz"):
        with gzip.open(path, "wt") as f:
            f.write(text)
    else:
        path.write_text(text)
    return path


class TestLoadPopulationReference:
    def test_load_basic(self, tmp_path):
        from array_idqc.genotyping import load_population_reference

        path = _write_table(
            tmp_path / "panel.tsv",
            [
                "rs1\t0.05\t0.5\t0.95\t0.03\t0.03\t0.03\t0.25\t0.5\t0.25",
                "rs2\t0.1\t0.45\t0.9\t0.02\t0.04\t0.02\t0.5\t0.4\t0.1",
            ],
        )
        reference = load_population_reference(path)

        assert reference.name == "panel"
        assert reference.version == "2024.1"
        assert len(reference) == 2
        assert reference.params.marker_ids == ("rs1", "rs2")
        np.testing.assert_allclose(reference.params.locations[1], [0.1, 0.45, 0.9])
        assert reference.params.outlier_weights.tolist() == [0.01, 0.01]
        np.testing.assert_allclose(reference.params.weights[0], [0.2475, 0.495, 0.2475])

    def test_gzipped_table(self, tmp_path):
        from array_idqc.genotyping import load_population_reference

        path = _write_table(
            tmp_path / "panel.tsv.gz",
            ["rs1\t0.05\t0.5\t0.95\t0.03\t0.03\t0.03\t0.25\t0.5\t0.25"],
        )
        assert load_population_reference(path).params.marker_ids == ("rs1",)

    def test_outlier_weight_column(self, tmp_path):
        from array_idqc.genotyping import load_population_reference

        path = _write_table(
            tmp_path / "panel.tsv",
            ["rs1\t0.05\t0.5\t0.95\t0.03\t0.03\t0.03\t0.25\t0.5\t0.25\t0.05"],
            header=HEADER + "\tweight_outlier",
        )
        params = load_population_reference(path).params

        assert params.outlier_weights.tolist() == [0.05]
        assert params.weights[0].sum() == pytest.approx(0.95)

    def test_defaults_without_meta_lines(self, tmp_path):
        from array_idqc.genotyping import load_population_reference

        path = _write_table(
            tmp_path / "custom.tsv",
            ["rs1\t0.05\t0.5\t0.95\t0.03\t0.03\t0.03\t0.25\t0.5\t0.25"],
            meta=(),
        )
        reference = load_population_reference(path)

        assert reference.name == "custom"
        assert reference.version == "unversioned"

    def test_extra_meta_lines_kept(self, tmp_path):
        from array_idqc.genotyping import load_population_reference

        path = _write_table(
            tmp_path / "panel.tsv",
            ["rs1\t0.05\t0.5\t0.95\t0.03\t0.03\t0.03\t0.25\t0.5\t0.25"],
            meta=("##name=panel", "##version=3", "##array=GSA-24v3"),
        )
        assert load_population_reference(path).metadata == {"array": "GSA-24v3"}

    def test_missing_columns_raise(self, tmp_path):
        from array_idqc.errors import ConfigurationError
        from array_idqc.genotyping import load_population_reference

        path = _write_table(
            tmp_path / "panel.tsv",
            ["rs1\t0.05\t0.5\t0.95"],
            header="marker_id\tloc_hom_a\tloc_het\tloc_hom_b",
        )
        with pytest.raises(ConfigurationError) as exc_info:
            load_population_reference(path)
        assert "scale_hom_a" in exc_info.value.identifiers

    def test_duplicate_markers_raise(self, tmp_path):
        from array_idqc.errors import ConfigurationError
        from array_idqc.genotyping import load_population_reference

        row = "rs1\t0.05\t0.5\t0.95\t0.03\t0.03\t0.03\t0.25\t0.5\t0.25"
        path = _write_table(tmp_path / "panel.tsv", [row, row])

        with pytest.raises(ConfigurationError, match="Duplicate"):
            load_population_reference(path)

    @pytest.mark.parametrize(
        "row",
        [
            "rs1\t0.05\t0.5\t0.95\t0.0\t0.03\t0.03\t0.25\t0.5\t0.25",
            "rs1\t0.05\t0.5\t0.95\t0.03\t0.03\t0.03\t-0.25\t0.5\t0.25",
            "rs1\t0.05\tabc\t0.95\t0.03\t0.03\t0.03\t0.25\t0.5\t0.25",
        ],
    )
    def test_invalid_values_raise(self, tmp_path, row):
        from array_idqc.errors import ConfigurationError
        from array_idqc.genotyping import load_population_reference

        path = _write_table(tmp_path / "panel.tsv", [row])
        with pytest.raises(ConfigurationError) as exc_info:
            load_population_reference(path)
        assert exc_info.value.identifiers == ("rs1",)

    def test_missing_file_raises(self, tmp_path):
        from array_idqc.genotyping import load_population_reference

        with pytest.raises(FileNotFoundError):
            load_population_reference(tmp_path / "missing.tsv")


class TestWritePopulationReference:
    @pytest.mark.parametrize("filename", ["panel.tsv", "panel.tsv.gz"])
    def test_write_then_load_preserves_params(self, tmp_path, filename):
        from fixtures.array_generator import make_reference

        from array_idqc.genotyping import load_population_reference, write_population_reference

        reference = make_reference(
            ["rs1", "rs2", "rs3"], np.array([0.1, 0.3, 0.5]), name="batch7", version="fit-3"
        )
        path = tmp_path / filename

        assert write_population_reference(path, reference) == 3
        loaded = load_population_reference(path)

        assert loaded.name == "batch7"
        assert loaded.version == "fit-3"
        assert loaded.params.marker_ids == reference.params.marker_ids
        np.testing.assert_allclose(loaded.params.locations, reference.params.locations)
        np.testing.assert_allclose(loaded.params.scales, reference.params.scales)
        np.testing.assert_allclose(loaded.params.weights, reference.params.weights)
        np.testing.assert_allclose(loaded.params.outlier_weights, reference.params.outlier_weights)


class TestRestrict:
    def test_restrict_orders_and_drops(self):
        from fixtures.array_generator import make_reference

        reference = make_reference(["rs1", "rs2", "rs3"], np.array([0.1, 0.3, 0.5]))
        params = reference.restrict(["rs3", "rs1"])

        assert params.marker_ids == ("rs3", "rs1")
        np.testing.assert_allclose(params.weights[0], reference.params.weights[2])

    def test_restrict_missing_marker_raises(self):
        from fixtures.array_generator import make_reference

        from array_idqc.errors import InputMismatchError

        reference = make_reference(["rs1", "rs2"])
        with pytest.raises(InputMismatchError) as exc_info:
            reference.restrict(["rs1", "rs9"])
        assert exc_info.value.missing_from_right == ("rs9",)
        assert "population reference synthetic 1" in str(exc_info.value)
