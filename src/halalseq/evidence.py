"""
Per-sample evidence matrix.

Reads are never resolved to a single species while classifying. Each
classified read contributes weight to one or more equivalence classes, a
class being a marker together with the sorted tuple of species the read is
consistent with at that marker. The matrix of class weights is the
sufficient statistic the abundance estimator works from; individual reads
are not retained.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .genomic_types import EquivalenceClass, MarkerIndex, SpeciesIndex


class EvidenceMatrix:
    """
    Read weight per equivalence class, plus read counters.

    Adding reads and merging matrices are order independent (summation), so
    partial matrices built from chunks of a sample, in any process, can be
    combined into the sample's matrix.

    Attributes:
        num_species: Number of species in the bound database.
        num_markers: Number of markers in the bound database.
        reads_seen: Every record read, including malformed ones.
        classified_reads: Reads that contributed weight.
        unclassified_reads: Valid reads that matched nothing.
        malformed_reads: Records skipped as empty or non-nucleotide.
    """

    def __init__(self, num_species: int, num_markers: int) -> None:
        self.num_species = num_species
        self.num_markers = num_markers
        self._weights: Dict[EquivalenceClass, float] = {}
        self.reads_seen = 0
        self.classified_reads = 0
        self.unclassified_reads = 0
        self.malformed_reads = 0

    def __repr__(self) -> str:
        return (
            f"EvidenceMatrix(classes={len(self._weights)}, reads_seen={self.reads_seen}, "
            f"classified={self.classified_reads}, unclassified={self.unclassified_reads}, "
            f"malformed={self.malformed_reads})"
        )

    def __len__(self) -> int:
        return len(self._weights)

    # Accumulation

    def add_class_weight(
        self, marker: MarkerIndex, species: Iterable[SpeciesIndex], weight: float
    ) -> None:
        """Adds ``weight`` to one class; species order does not matter."""
        if weight < 0:
            raise ValueError(f"Class weight must be non-negative, got {weight}.")
        if not 0 <= marker < self.num_markers:
            raise IndexError(f"Marker index {marker} out of range.")
        members = tuple(sorted(set(species)))
        if not members:
            raise ValueError("An equivalence class needs at least one species.")
        if members[0] < 0 or members[-1] >= self.num_species:
            raise IndexError(f"Species indices {members} out of range.")
        if weight == 0:
            return
        key = (marker, members)
        self._weights[key] = self._weights.get(key, 0.0) + weight

    def add_read(self, classes: Sequence[EquivalenceClass]) -> None:
        """
        Records one read.

        A read with no classes is unclassified. A read hitting several
        markers splits its unit weight evenly across them.
        """
        self.reads_seen += 1
        if not classes:
            self.unclassified_reads += 1
            return
        self.classified_reads += 1
        share = 1.0 / len(classes)
        for marker, species in classes:
            self.add_class_weight(marker, species, share)

    def add_malformed(self, count: int = 1) -> None:
        self.reads_seen += count
        self.malformed_reads += count

    def merge(self, other: "EvidenceMatrix") -> "EvidenceMatrix":
        """Adds ``other`` into this matrix in place and returns ``self``."""
        if (other.num_species, other.num_markers) != (self.num_species, self.num_markers):
            raise ValueError("Cannot merge evidence matrices of different shapes.")
        for key, weight in other._weights.items():
            self._weights[key] = self._weights.get(key, 0.0) + weight
        self.reads_seen += other.reads_seen
        self.classified_reads += other.classified_reads
        self.unclassified_reads += other.unclassified_reads
        self.malformed_reads += other.malformed_reads
        return self

    # Views

    def classes(self) -> List[Tuple[EquivalenceClass, float]]:
        """All (class, weight) pairs in a fixed, sorted order."""
        return sorted(self._weights.items())

    def class_weight(self, marker: MarkerIndex, species: Iterable[SpeciesIndex]) -> float:
        return self._weights.get((marker, tuple(sorted(set(species)))), 0.0)

    @property
    def total_weight(self) -> float:
        return float(sum(self._weights.values()))

    @property
    def is_empty(self) -> bool:
        return not self._weights

    def unique_weights(self) -> np.ndarray:
        """Weight of single-species classes, per species."""
        unique = np.zeros(self.num_species, dtype=np.float64)
        for (_, species), weight in self._weights.items():
            if len(species) == 1:
                unique[species[0]] += weight
        return unique

    def evidenced_species(self) -> np.ndarray:
        """Boolean mask of species appearing in any class."""
        mask = np.zeros(self.num_species, dtype=bool)
        for _, species in self._weights:
            mask[list(species)] = True
        return mask

    def marker_weights(self) -> np.ndarray:
        weights = np.zeros(self.num_markers, dtype=np.float64)
        for (marker, _), weight in self._weights.items():
            weights[marker] += weight
        return weights

    def restricted_to_marker(self, marker: MarkerIndex) -> "EvidenceMatrix":
        """A matrix holding only the classes of one marker (no read counters)."""
        subset = EvidenceMatrix(self.num_species, self.num_markers)
        for (m_idx, species), weight in self._weights.items():
            if m_idx == marker:
                subset._weights[(m_idx, species)] = weight
        return subset

    def with_class_weights(self, weights: Sequence[float]) -> "EvidenceMatrix":
        """
        A copy with the weights of ``classes()`` replaced, in the same order.

        Classes whose new weight is zero are dropped. Read counters are not
        carried over.
        """
        keys = [key for key, _ in self.classes()]
        if len(weights) != len(keys):
            raise ValueError("Expected one weight per class.")
        replaced = EvidenceMatrix(self.num_species, self.num_markers)
        for key, weight in zip(keys, weights):
            if weight > 0:
                replaced._weights[key] = float(weight)
        return replaced

    def to_dataframe(
        self,
        species_ids: Optional[Sequence[str]] = None,
        marker_ids: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """One row per class: marker, species (comma separated), class size, weight."""
        rows = []
        for (marker, species), weight in self.classes():
            rows.append(
                {
                    "marker": marker_ids[marker] if marker_ids else marker,
                    "species": ",".join(
                        species_ids[s] if species_ids else str(s) for s in species
                    ),
                    "class_size": len(species),
                    "weight": weight,
                }
            )
        return pd.DataFrame(rows, columns=["marker", "species", "class_size", "weight"])

    @classmethod
    def merged(
        cls, matrices: Iterable["EvidenceMatrix"], num_species: int, num_markers: int
    ) -> "EvidenceMatrix":
        total = cls(num_species, num_markers)
        for matrix in matrices:
            total.merge(matrix)
        return total
