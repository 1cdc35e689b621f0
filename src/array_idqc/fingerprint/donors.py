"""Expected donor identity of samples.

Technical replicates and monozygotic twins are genetically identical at
genotyping markers, so they are collapsed into one donor group. Groups are
built once with a union-find and then only read.
"""

import logging
from types import MappingProxyType
from typing import Iterable, Mapping

import numpy as np

from ..errors import ConfigurationError, InputMismatchError

logger = logging.getLogger(__name__)


class _UnionFind:
    def __init__(self, items: Iterable[str]):
        self._parent = {item: item for item in items}

    def __contains__(self, item: object) -> bool:
        return item in self._parent

    def find(self, item: str) -> str:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self._parent[root_b] = root_a


class DonorGroups:
    """Partition of samples into same-donor equivalence classes."""

    def __init__(self, assignments: Mapping[str, str]):
        self._group_of = MappingProxyType({str(s): str(g) for s, g in assignments.items()})
        members: dict[str, list[str]] = {}
        for sample_id, group_id in self._group_of.items():
            members.setdefault(group_id, []).append(sample_id)
        self._members = MappingProxyType({g: tuple(m) for g, m in members.items()})

    @classmethod
    def from_pairs(
        cls,
        sample_ids: Iterable[str],
        pairs: Iterable[tuple[str, str]],
    ) -> "DonorGroups":
        """Build groups from same-donor sample pairs.

        Samples not named in any pair form their own group. Each group is
        identified by its first member in ``sample_ids`` order.

        Raises:
            ConfigurationError: If a pair names a sample not in ``sample_ids``
        """
        sample_ids = [str(s) for s in sample_ids]
        union_find = _UnionFind(sample_ids)

        unknown = []
        for a, b in pairs:
            a, b = str(a), str(b)
            missing = [s for s in (a, b) if s not in union_find]
            if missing:
                unknown.extend(missing)
                continue
            union_find.union(a, b)
        if unknown:
            raise ConfigurationError("Donor pairs reference unknown samples", sorted(set(unknown)))

        first_member: dict[str, str] = {}
        assignments = {}
        for sample_id in sample_ids:
            root = union_find.find(sample_id)
            group_id = first_member.setdefault(root, sample_id)
            assignments[sample_id] = group_id
        return cls(assignments)

    @classmethod
    def from_mapping(
        cls,
        donor_of: Mapping[str, str],
        equivalent_donors: Iterable[tuple[str, str]] = (),
    ) -> "DonorGroups":
        """Build groups from a sample to donor mapping.

        ``equivalent_donors`` lists donor pairs to merge, such as the two
        donors of a monozygotic twin pair. A merged group takes the
        lexicographically smallest donor ID.

        Raises:
            ConfigurationError: If an equivalent donor is not in the mapping
        """
        donor_of = {str(s): str(d) for s, d in donor_of.items()}
        donors = sorted(set(donor_of.values()))
        union_find = _UnionFind(donors)

        unknown = []
        for a, b in equivalent_donors:
            a, b = str(a), str(b)
            missing = [d for d in (a, b) if d not in union_find]
            if missing:
                unknown.extend(missing)
                continue
            union_find.union(a, b)
        if unknown:
            raise ConfigurationError("Equivalent donors not in donor mapping", sorted(set(unknown)))

        label: dict[str, str] = {}
        for donor in donors:
            root = union_find.find(donor)
            label[root] = min(label.get(root, donor), donor)

        return cls({s: label[union_find.find(d)] for s, d in donor_of.items()})

    def __contains__(self, sample_id: object) -> bool:
        return sample_id in self._group_of

    def __len__(self) -> int:
        return len(self._group_of)

    @property
    def sample_ids(self) -> tuple[str, ...]:
        return tuple(self._group_of)

    def group_of(self, sample_id: str) -> str:
        try:
            return self._group_of[sample_id]
        except KeyError:
            raise InputMismatchError(
                "sample", "query", "donor groups", missing_from_right=[str(sample_id)]
            ) from None

    def same_donor(self, a: str, b: str) -> bool:
        return self.group_of(a) == self.group_of(b)

    def members(self, group_id: str) -> tuple[str, ...]:
        return self._members.get(group_id, ())

    def groups(self) -> Mapping[str, tuple[str, ...]]:
        return self._members

    def expected_matrix(self, sample_ids: Iterable[str]) -> np.ndarray:
        """Boolean matrix of expected same-donor relationships."""
        sample_ids = list(sample_ids)
        unknown = [s for s in sample_ids if s not in self._group_of]
        if unknown:
            raise InputMismatchError("sample", "query", "donor groups", missing_from_right=unknown)

        codes = {group_id: i for i, group_id in enumerate(self._members)}
        group_codes = np.array([codes[self._group_of[s]] for s in sample_ids], dtype=np.intp)
        return group_codes[:, None] == group_codes[None, :]
