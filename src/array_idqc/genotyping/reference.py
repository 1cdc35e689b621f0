"""Population reference tables of fixed genotype mixture parameters.

A reference is a tab-separated file (optionally gzipped) with one row per
marker. Leading ``##key=value`` lines carry metadata; ``name`` and
``version`` identify the population panel so it can be swapped without code
changes::

    ##name=reference-panel
    ##version=2024.1
    marker_id  loc_hom_a  loc_het  loc_hom_b  scale_hom_a  ...  weight_outlier

``weight_outlier`` is optional.
"""

import csv
import gzip
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from ..errors import ConfigurationError, InputMismatchError
from ..models import GenotypeModelParams

logger = logging.getLogger(__name__)

CLASS_SUFFIXES = ("hom_a", "het", "hom_b")
LOCATION_COLUMNS = tuple(f"loc_{s}" for s in CLASS_SUFFIXES)
SCALE_COLUMNS = tuple(f"scale_{s}" for s in CLASS_SUFFIXES)
WEIGHT_COLUMNS = tuple(f"weight_{s}" for s in CLASS_SUFFIXES)
OUTLIER_WEIGHT_COLUMN = "weight_outlier"
REQUIRED_COLUMNS = ("marker_id", *LOCATION_COLUMNS, *SCALE_COLUMNS, *WEIGHT_COLUMNS)

DEFAULT_OUTLIER_WEIGHT = 0.01


@dataclass(frozen=True, eq=False)
class PopulationReference:
    """Fixed mixture parameters for a named, versioned population panel."""

    name: str
    version: str
    params: GenotypeModelParams
    metadata: dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.params)

    def restrict(self, marker_ids) -> GenotypeModelParams:
        """Parameters for the given markers, in the given order.

        Markers present in the reference but not requested are dropped.

        Raises:
            InputMismatchError: If a requested marker is not in the reference
        """
        index = {m: i for i, m in enumerate(self.params.marker_ids)}
        marker_ids = [str(m) for m in marker_ids]
        missing = [m for m in marker_ids if m not in index]
        if missing:
            raise InputMismatchError(
                "marker",
                "value matrix",
                f"population reference {self.name} {self.version}",
                missing_from_right=missing,
            )

        rows = np.array([index[m] for m in marker_ids], dtype=np.intp)
        return GenotypeModelParams(
            marker_ids=tuple(marker_ids),
            locations=self.params.locations[rows],
            scales=self.params.scales[rows],
            weights=self.params.weights[rows],
            outlier_weights=self.params.outlier_weights[rows],
        )


def _open_text(path: Path, mode: str):
    if str(path).endswith(".gz"):
        return gzip.open(path, mode + "t")
    return open(path, mode)


def _parse_float(row: dict[str, str], column: str, marker_id: str) -> float:
    try:
        return float(row[column])
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Invalid {column} value {row.get(column)!r} in population reference",
            [marker_id],
        ) from None


def load_population_reference(
    path: Path | str,
    default_outlier_weight: float = DEFAULT_OUTLIER_WEIGHT,
) -> PopulationReference:
    """Load a population reference table.

    Genotype weights are rescaled so that they and the outlier weight sum to
    one.

    Args:
        path: TSV file (may be gzipped)
        default_outlier_weight: Outlier weight when the table has no
            ``weight_outlier`` column

    Returns:
        PopulationReference

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigurationError: If columns are missing or values are invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Population reference not found: {path}")

    metadata: dict[str, str] = {}
    marker_ids: list[str] = []
    locations: list[list[float]] = []
    scales: list[list[float]] = []
    weights: list[list[float]] = []
    outlier_weights: list[float] = []

    with _open_text(path, "r") as f:
        lines = iter(f)
        header_line = None
        for line in lines:
            if line.startswith("##"):
                key, _, value = line[2:].rstrip("\n").partition("=")
                metadata[key.strip()] = value.strip()
                continue
            header_line = line
            break

        if header_line is None:
            raise ConfigurationError(f"Population reference {path.name} has no header row")

        reader = csv.DictReader([header_line, *lines], delimiter="\t")
        columns = reader.fieldnames or []
        missing_columns = [c for c in REQUIRED_COLUMNS if c not in columns]
        if missing_columns:
            raise ConfigurationError(
                f"Population reference {path.name} is missing columns", missing_columns
            )
        has_outlier = OUTLIER_WEIGHT_COLUMN in columns

        for row in reader:
            marker_id = row["marker_id"].strip()
            loc = [_parse_float(row, c, marker_id) for c in LOCATION_COLUMNS]
            scale = [_parse_float(row, c, marker_id) for c in SCALE_COLUMNS]
            weight = [_parse_float(row, c, marker_id) for c in WEIGHT_COLUMNS]
            outlier = (
                _parse_float(row, OUTLIER_WEIGHT_COLUMN, marker_id)
                if has_outlier
                else default_outlier_weight
            )

            if any(s <= 0 for s in scale):
                raise ConfigurationError("Non-positive scale in population reference", [marker_id])
            if any(w < 0 for w in weight) or sum(weight) <= 0:
                raise ConfigurationError("Invalid weights in population reference", [marker_id])
            if not 0 < outlier < 1:
                raise ConfigurationError(
                    "Outlier weight outside (0, 1) in population reference", [marker_id]
                )

            total = sum(weight)
            marker_ids.append(marker_id)
            locations.append(loc)
            scales.append(scale)
            weights.append([w / total * (1.0 - outlier) for w in weight])
            outlier_weights.append(outlier)

    duplicated = sorted(m for m, count in Counter(marker_ids).items() if count > 1)
    if duplicated:
        raise ConfigurationError("Duplicate markers in population reference", duplicated)
    if not marker_ids:
        raise ConfigurationError(f"Population reference {path.name} has no markers")

    params = GenotypeModelParams(
        marker_ids=tuple(marker_ids),
        locations=np.array(locations),
        scales=np.array(scales),
        weights=np.array(weights),
        outlier_weights=np.array(outlier_weights),
    )

    name = metadata.pop("name", path.name.split(".")[0])
    version = metadata.pop("version", "unversioned")

    logger.info(
        "Loaded population reference %s (version %s) with %d markers from %s",
        name,
        version,
        len(marker_ids),
        path.name,
    )

    return PopulationReference(name=name, version=version, params=params, metadata=metadata)


def write_population_reference(path: Path | str, reference: PopulationReference) -> int:
    """Write a reference table, e.g. to freeze parameters fitted on a batch.

    Returns:
        Number of marker rows written
    """
    path = Path(path)
    frame = reference.params.to_frame()

    with _open_text(path, "w") as f:
        f.write(f"##name={reference.name}\n")
        f.write(f"##version={reference.version}\n")
        for key, value in reference.metadata.items():
            f.write(f"##{key}={value}\n")

        writer = csv.writer(f, delimiter="\t", lineterminator="\n")
        writer.writerow(["marker_id", *frame.columns])
        for marker_id, row in frame.iterrows():
            writer.writerow([marker_id, *(repr(float(v)) for v in row)])

    logger.info("Wrote %d markers to population reference %s", len(frame), path.name)
    return len(frame)
