"""
Coarse candidate-selection tier of the k-mer index.

The classifier only needs one capability from this tier: given the k-mer
hashes of a read, name the few species worth an exact comparison. The
``CoarseSketch`` interface captures exactly that so that the sketching
algorithm can be swapped without touching the classifier.
"""

from abc import ABC, abstractmethod
from collections import Counter
from typing import Dict, Iterable, Iterator, List, Set, Tuple

from sourmash import MinHash

from .genomic_types import KmerHash, SpeciesIndex

DEFAULT_SKETCH_SIZE = 2000


class CoarseSketch(ABC):
    """Approximate per-species summaries supporting candidate queries."""

    @abstractmethod
    def add_species(self, species_idx: SpeciesIndex, hashes: Iterable[KmerHash]) -> None:
        """Adds (or extends) the summary of one species."""

    @abstractmethod
    def candidates(
        self, read_hashes: Iterable[KmerHash], max_candidates: int
    ) -> List[SpeciesIndex]:
        """Species ranked by estimated similarity to the read, best first."""

    @abstractmethod
    def items(self) -> Iterator[Tuple[SpeciesIndex, KmerHash]]:
        """All retained (species, hash) pairs, for persistence."""


class MinHashSketch(CoarseSketch):
    """
    Bottom-k MinHash sketch per species, backed by ``sourmash.MinHash``.

    Each species keeps at most ``num_hashes`` of its smallest k-mer hashes,
    however long its references are. The k-mers are hashed by the index, so
    the sketches are filled with ``add_many`` rather than ``add_sequence``.

    Retained hashes are also kept in an inverted table ``hash -> species``,
    so a query touches only the read's own hashes.
    """

    def __init__(self, num_hashes: int = DEFAULT_SKETCH_SIZE, ksize: int = 21, seed: int = 42):
        if num_hashes < 1:
            raise ValueError(f"num_hashes must be >= 1, got {num_hashes}")
        self.num_hashes = num_hashes
        self.ksize = ksize
        self.seed = seed
        self._minhashes: Dict[SpeciesIndex, MinHash] = {}
        self._inverted: Dict[KmerHash, Set[SpeciesIndex]] = {}

    def __len__(self) -> int:
        return len(self._inverted)

    # Pickled as plain hash lists; the MinHash objects are rebuilt on load.
    def __getstate__(self) -> Dict[str, object]:
        return {
            "num_hashes": self.num_hashes,
            "ksize": self.ksize,
            "seed": self.seed,
            "hashes": {s: sorted(mh.hashes) for s, mh in self._minhashes.items()},
        }

    def __setstate__(self, state: Dict[str, object]) -> None:
        self.__init__(state["num_hashes"], state["ksize"], state["seed"])
        for species_idx, hashes in state["hashes"].items():
            self.add_species(species_idx, hashes)

    def add_species(self, species_idx: SpeciesIndex, hashes: Iterable[KmerHash]) -> None:
        mh = self._minhashes.get(species_idx)
        if mh is None:
            mh = MinHash(n=self.num_hashes, ksize=self.ksize, seed=self.seed)
            self._minhashes[species_idx] = mh
        before = set(mh.hashes)
        mh.add_many(list(hashes))
        after = set(mh.hashes)

        # Hashes pushed out of the bottom-k no longer represent the species.
        for h in before - after:
            owners = self._inverted[h]
            owners.discard(species_idx)
            if not owners:
                del self._inverted[h]
        for h in after - before:
            self._inverted.setdefault(h, set()).add(species_idx)

    def sketch_size(self, species_idx: SpeciesIndex) -> int:
        mh = self._minhashes.get(species_idx)
        return 0 if mh is None else len(mh)

    def candidates(
        self, read_hashes: Iterable[KmerHash], max_candidates: int
    ) -> List[SpeciesIndex]:
        shared: Counter = Counter()
        for h in read_hashes:
            owners = self._inverted.get(h)
            if owners:
                shared.update(owners)
        if not shared:
            return []
        # Ties fall back to database order.
        ranked = sorted(shared.items(), key=lambda item: (-item[1], item[0]))
        return [species_idx for species_idx, _ in ranked[:max_candidates]]

    def items(self) -> Iterator[Tuple[SpeciesIndex, KmerHash]]:
        for h in sorted(self._inverted):
            for species_idx in sorted(self._inverted[h]):
                yield species_idx, h
