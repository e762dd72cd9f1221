"""
Two-tier k-mer index over a reference database.

- Coarse tier: a ``CoarseSketch`` (bottom-k MinHash by default) of every species'
  canonical k-mer content, used to pick a handful of candidate species.
- Fine tier: the exact set of canonical k-mer hashes of each
  (marker, species) reference, used to score candidates.
- Primer tier: per marker, strand-specific k-mers of the PCR primers, used
  to recognise amplicon reads and their orientation.

An index is bound to the database it was built from. It is persisted as a
single Parquet file whose schema metadata records the build parameters and
the species/marker identifiers, so a mismatched database is detected at load
time rather than producing silently wrong results.
"""

import json
import logging
import pathlib
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

import pyarrow as pa
import pyarrow.parquet as pq
from tqdm import tqdm

from .database import ReferenceDatabase
from .exceptions import IndexLoadFailedError, IndexMismatchError
from .genomic_types import HashSet, KmerHash, MarkerIndex, SpeciesIndex
from .sequence import (
    DEFAULT_HASH_SEED,
    canonical_kmer_hashes,
    reverse_complement,
    strand_kmer_hashes,
)
from .sketch import DEFAULT_SKETCH_SIZE, CoarseSketch, MinHashSketch

logger = logging.getLogger(__name__)

INDEX_FORMAT_VERSION = 2
DEFAULT_KMER_LENGTH = 21
DEFAULT_PRIMER_KMER_LENGTH = 12
DEFAULT_MAX_CANDIDATES = 4

TIER_COARSE = "coarse"
TIER_FINE = "fine"
TIER_PRIMER = "primer"

# Primer rows carry "<primer><orientation>" in the strand column:
# F/R for the forward/reverse primer, +/- for the marker strand the
# k-mers identify.
FORWARD_STRAND = "+"
REVERSE_STRAND = "-"
PRIMER_SLOTS = ("F", "R")

_META_PREFIX = "halalseq_"
INDEX_SCHEMA = pa.schema(
    [
        pa.field("tier", pa.string()),
        pa.field("marker", pa.int32()),
        pa.field("species", pa.int32()),
        pa.field("strand", pa.string()),
        pa.field("hash", pa.uint64()),
    ]
)


@dataclass(frozen=True)
class FineScore:
    hits: int
    fraction: float


@dataclass(frozen=True)
class PrimerMatch:
    """Orientation ("+", "-" or None) and strength in [0, 1] of a primer hit."""

    orientation: Optional[str]
    strength: float

    @property
    def matched(self) -> bool:
        return self.strength > 0.0


NO_PRIMER_MATCH = PrimerMatch(None, 0.0)

# marker -> orientation -> primer slot -> hash set
PrimerSets = Dict[MarkerIndex, Dict[str, Dict[str, HashSet]]]


class KmerIndex:
    """
    Queryable two-tier k-mer index bound to a ``ReferenceDatabase``.

    Build with ``KmerIndex.build(database)`` or load a saved index with
    ``KmerIndex.load(path, database)``. Instances are never mutated after
    construction and are safe to share between threads and to pickle into
    worker processes.
    """

    def __init__(
        self,
        database: ReferenceDatabase,
        sketch: CoarseSketch,
        fine_sets: Dict[Tuple[MarkerIndex, SpeciesIndex], HashSet],
        primer_sets: PrimerSets,
        kmer_length: int = DEFAULT_KMER_LENGTH,
        primer_kmer_length: int = DEFAULT_PRIMER_KMER_LENGTH,
        sketch_size: int = DEFAULT_SKETCH_SIZE,
        hash_seed: int = DEFAULT_HASH_SEED,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        source: Optional[pathlib.Path] = None,
    ) -> None:
        self.database = database
        self.sketch = sketch
        self.kmer_length = kmer_length
        self.primer_kmer_length = primer_kmer_length
        self.sketch_size = sketch_size
        self.hash_seed = hash_seed
        self.max_candidates = max_candidates
        self.source = source
        self._fine_sets = fine_sets
        self._primer_sets = primer_sets

        self._markers_for_species: Dict[SpeciesIndex, List[MarkerIndex]] = {}
        for m_idx, s_idx in sorted(fine_sets, key=lambda key: (key[1], key[0])):
            self._markers_for_species.setdefault(s_idx, []).append(m_idx)

    # Construction

    @classmethod
    def build(
        cls,
        database: ReferenceDatabase,
        kmer_length: int = DEFAULT_KMER_LENGTH,
        primer_kmer_length: int = DEFAULT_PRIMER_KMER_LENGTH,
        sketch_size: int = DEFAULT_SKETCH_SIZE,
        hash_seed: int = DEFAULT_HASH_SEED,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        show_progress: bool = False,
    ) -> "KmerIndex":
        """
        Builds an index from every reference sequence in ``database``.

        Args:
            database: Validated reference database.
            kmer_length: Length of the canonical k-mers in the coarse and
                fine tiers.
            primer_kmer_length: Length of the strand-specific primer k-mers.
                Primers shorter than this cannot be matched.
            sketch_size: Hashes kept per species in the coarse MinHash sketch.
            hash_seed: MurmurHash3 seed.
            max_candidates: Default bound of ``coarse_candidates``.
            show_progress: Show a tqdm progress bar over the references.
        """
        if kmer_length < 1 or primer_kmer_length < 1:
            raise ValueError("k-mer lengths must be positive.")
        logger.info(
            f"Building k-mer index (k={kmer_length}, primer k={primer_kmer_length}, "
            f"sketch size={sketch_size}, seed={hash_seed})"
        )
        sketch = MinHashSketch(num_hashes=sketch_size, ksize=kmer_length, seed=hash_seed)
        fine_sets: Dict[Tuple[MarkerIndex, SpeciesIndex], HashSet] = {}

        references = list(database.iter_references())
        for s_idx, m_idx, sequence in tqdm(
            references, desc="Indexing references", disable=not show_progress
        ):
            hashes = canonical_kmer_hashes(sequence, kmer_length, hash_seed)
            if not hashes:
                logger.warning(
                    f"Reference {database.species_ids[s_idx]}|{database.marker_ids[m_idx]} "
                    f"is shorter than k={kmer_length} or fully ambiguous; it cannot be matched."
                )
            fine_sets[(m_idx, s_idx)] = frozenset(hashes)
            sketch.add_species(s_idx, hashes)

        primer_sets: PrimerSets = {}
        for m_idx, marker in enumerate(database.markers):
            if not marker.has_primers:
                continue
            strands: Dict[str, Dict[str, HashSet]] = {FORWARD_STRAND: {}, REVERSE_STRAND: {}}
            for slot, primer in zip(PRIMER_SLOTS, (marker.forward_primer, marker.reverse_primer)):
                if not primer:
                    continue
                primer_bytes = primer.encode("ascii")
                rc_primer = reverse_complement(primer_bytes)
                # A forward primer reads 5'->3' on the + strand; a reverse
                # primer reads 5'->3' on the - strand.
                on_plus, on_minus = (
                    (primer_bytes, rc_primer) if slot == "F" else (rc_primer, primer_bytes)
                )
                strands[FORWARD_STRAND][slot] = frozenset(
                    _primer_hashes(on_plus, primer_kmer_length, hash_seed)
                )
                strands[REVERSE_STRAND][slot] = frozenset(
                    _primer_hashes(on_minus, primer_kmer_length, hash_seed)
                )
            primer_sets[m_idx] = strands

        index = cls(
            database,
            sketch,
            fine_sets,
            primer_sets,
            kmer_length=kmer_length,
            primer_kmer_length=primer_kmer_length,
            sketch_size=sketch_size,
            hash_seed=hash_seed,
            max_candidates=max_candidates,
        )
        stats = index.get_index_stats()
        logger.info(
            f"Index built: {stats['num_fine_sets']} fine sets, "
            f"{stats['total_fine_hashes']} fine hashes, {stats['sketch_hashes']} sketch hashes"
        )
        return index

    # Read-side helpers

    def read_hashes(self, sequence: bytes) -> Set[KmerHash]:
        """Canonical k-mer hashes of a read, compatible with this index."""
        return canonical_kmer_hashes(sequence, self.kmer_length, self.hash_seed)

    def read_primer_hashes(self, sequence: bytes) -> Set[KmerHash]:
        """Strand-specific primer-length k-mer hashes of a read."""
        return strand_kmer_hashes(sequence, self.primer_kmer_length, self.hash_seed)

    # Queries

    def coarse_candidates(
        self, read_hashes: Iterable[KmerHash], max_candidates: Optional[int] = None
    ) -> List[SpeciesIndex]:
        """
        Candidate species for a read, best first.

        Ranked by the number of sketch hashes shared with the read; ties are
        broken by database order. Empty when nothing is shared.
        """
        limit = self.max_candidates if max_candidates is None else max_candidates
        return self.sketch.candidates(read_hashes, limit)

    def fine_score(
        self, read_hashes: Set[KmerHash], marker: MarkerIndex, species: SpeciesIndex
    ) -> FineScore:
        """Exact containment of the read's k-mers in one (marker, species) reference."""
        reference = self._fine_sets.get((marker, species))
        if reference is None or not read_hashes:
            return FineScore(0, 0.0)
        hits = len(reference.intersection(read_hashes))
        return FineScore(hits, hits / len(read_hashes))

    def primer_match(self, read_primer_kmers: Set[KmerHash], marker: MarkerIndex) -> PrimerMatch:
        """
        Best primer hit of a read at one marker.

        Strength is the fraction of a primer's k-mers found in the read,
        maximised over the marker's primers. Orientation "+" means the read
        lies on the marker's forward strand, "-" on the reverse strand; it is
        ``None`` when both strands match equally well.
        """
        strands = self._primer_sets.get(marker)
        if not strands or not read_primer_kmers:
            return NO_PRIMER_MATCH
        plus = _best_primer_fraction(strands[FORWARD_STRAND], read_primer_kmers)
        minus = _best_primer_fraction(strands[REVERSE_STRAND], read_primer_kmers)
        if plus == 0.0 and minus == 0.0:
            return NO_PRIMER_MATCH
        if plus > minus:
            return PrimerMatch(FORWARD_STRAND, plus)
        if minus > plus:
            return PrimerMatch(REVERSE_STRAND, minus)
        return PrimerMatch(None, plus)

    def markers_for_species(self, species: SpeciesIndex) -> List[MarkerIndex]:
        return list(self._markers_for_species.get(species, ()))

    def markers_with_primers(self) -> List[MarkerIndex]:
        return sorted(self._primer_sets)

    def get_index_stats(self) -> Dict[str, int]:
        return {
            "kmer_length": self.kmer_length,
            "primer_kmer_length": self.primer_kmer_length,
            "sketch_size": self.sketch_size,
            "hash_seed": self.hash_seed,
            "num_species": self.database.num_species,
            "num_markers": self.database.num_markers,
            "num_fine_sets": len(self._fine_sets),
            "total_fine_hashes": sum(len(s) for s in self._fine_sets.values()),
            "sketch_hashes": sum(1 for _ in self.sketch.items()),
            "markers_with_primers": len(self._primer_sets),
        }

    # Persistence

    def save(self, path: Union[str, pathlib.Path]) -> pathlib.Path:
        """Writes the index to a Parquet file and returns its path."""
        output_path = pathlib.Path(path)
        columns: Dict[str, list] = {name: [] for name in INDEX_SCHEMA.names}

        def add_rows(tier: str, marker: int, species: int, strand: str, hashes: Iterable[int]):
            for h in sorted(hashes):
                columns["tier"].append(tier)
                columns["marker"].append(marker)
                columns["species"].append(species)
                columns["strand"].append(strand)
                columns["hash"].append(h)

        for (m_idx, s_idx), hashes in sorted(self._fine_sets.items()):
            add_rows(TIER_FINE, m_idx, s_idx, "", hashes)
        for s_idx, h in self.sketch.items():
            add_rows(TIER_COARSE, -1, s_idx, "", (h,))
        for m_idx, strands in sorted(self._primer_sets.items()):
            for orientation, by_slot in strands.items():
                for slot, hashes in by_slot.items():
                    add_rows(TIER_PRIMER, m_idx, -1, f"{slot}{orientation}", hashes)

        metadata = {
            "format_version": INDEX_FORMAT_VERSION,
            "kmer_length": self.kmer_length,
            "primer_kmer_length": self.primer_kmer_length,
            "sketch": "minhash",
            "sketch_size": self.sketch_size,
            "hash_seed": self.hash_seed,
            "max_candidates": self.max_candidates,
            "num_species": self.database.num_species,
            "num_markers": self.database.num_markers,
            "species_ids": json.dumps(self.database.species_ids),
            "marker_ids": json.dumps(self.database.marker_ids),
        }
        schema = INDEX_SCHEMA.with_metadata(
            {f"{_META_PREFIX}{key}".encode("utf-8"): str(value).encode("utf-8") for key, value in metadata.items()}
        )
        table = pa.Table.from_pydict(columns, schema=schema)
        pq.write_table(table, output_path)
        logger.info(f"Saved k-mer index ({table.num_rows} rows) to {output_path}")
        return output_path

    @classmethod
    def load(cls, path: Union[str, pathlib.Path], database: ReferenceDatabase) -> "KmerIndex":
        """
        Loads a saved index and binds it to ``database``.

        Raises:
            IndexLoadFailedError: The file is missing, unreadable or not a
                HalalSeq index.
            IndexMismatchError: The index was built from a database with
                different species or markers.
        """
        index_path = pathlib.Path(path).expanduser()
        logger.info(f"Loading k-mer index from {index_path}")
        if not index_path.is_file():
            raise IndexLoadFailedError("Index file not found.", {"path": str(index_path)})

        try:
            schema = pq.read_schema(index_path)
        except (OSError, pa.ArrowException) as e:
            raise IndexLoadFailedError(
                f"Could not read index schema: {e}", {"path": str(index_path)}
            ) from e

        meta = _read_metadata(schema, index_path)
        _check_binding(meta, database, index_path)

        try:
            table = pq.read_table(index_path, columns=INDEX_SCHEMA.names)
        except (OSError, pa.ArrowException) as e:
            raise IndexLoadFailedError(
                f"Could not read index data: {e}", {"path": str(index_path)}
            ) from e

        sketch = MinHashSketch(
            num_hashes=meta["sketch_size"], ksize=meta["kmer_length"], seed=meta["hash_seed"]
        )
        fine_hashes: Dict[Tuple[MarkerIndex, SpeciesIndex], Set[KmerHash]] = {}
        primer_hashes: Dict[Tuple[MarkerIndex, str], Set[KmerHash]] = {}
        coarse_hashes: Dict[SpeciesIndex, List[KmerHash]] = {}

        num_species, num_markers = database.num_species, database.num_markers
        rows = zip(
            table.column("tier").to_pylist(),
            table.column("marker").to_pylist(),
            table.column("species").to_pylist(),
            table.column("strand").to_pylist(),
            table.column("hash").to_pylist(),
        )
        for tier, m_idx, s_idx, strand, h in rows:
            if tier == TIER_FINE and 0 <= m_idx < num_markers and 0 <= s_idx < num_species:
                fine_hashes.setdefault((m_idx, s_idx), set()).add(h)
            elif tier == TIER_COARSE and 0 <= s_idx < num_species:
                coarse_hashes.setdefault(s_idx, []).append(h)
            elif tier == TIER_PRIMER and 0 <= m_idx < num_markers and strand in _PRIMER_STRAND_CODES:
                primer_hashes.setdefault((m_idx, strand), set()).add(h)
            else:
                raise IndexLoadFailedError(
                    "Index contains an invalid row.",
                    {"path": str(index_path), "tier": tier, "marker": m_idx, "species": s_idx},
                )

        for s_idx, hashes in coarse_hashes.items():
            sketch.add_species(s_idx, hashes)

        primer_sets: PrimerSets = {}
        for m_idx in sorted({m for m, _ in primer_hashes}):
            primer_sets[m_idx] = {
                orientation: {
                    slot: frozenset(primer_hashes[(m_idx, f"{slot}{orientation}")])
                    for slot in PRIMER_SLOTS
                    if (m_idx, f"{slot}{orientation}") in primer_hashes
                }
                for orientation in (FORWARD_STRAND, REVERSE_STRAND)
            }

        index = cls(
            database,
            sketch,
            {key: frozenset(hashes) for key, hashes in fine_hashes.items()},
            primer_sets,
            kmer_length=meta["kmer_length"],
            primer_kmer_length=meta["primer_kmer_length"],
            sketch_size=meta["sketch_size"],
            hash_seed=meta["hash_seed"],
            max_candidates=meta.get("max_candidates", DEFAULT_MAX_CANDIDATES),
            source=index_path,
        )
        logger.info(f"Loaded k-mer index with {table.num_rows} rows")
        return index


_PRIMER_STRAND_CODES = frozenset(
    f"{slot}{orientation}" for slot in PRIMER_SLOTS for orientation in (FORWARD_STRAND, REVERSE_STRAND)
)
_INT_METADATA = (
    "format_version",
    "kmer_length",
    "primer_kmer_length",
    "sketch_size",
    "hash_seed",
    "num_species",
    "num_markers",
)


def _primer_hashes(primer: bytes, kmer_length: int, seed: int) -> Set[KmerHash]:
    hashes = strand_kmer_hashes(primer, kmer_length, seed)
    if not hashes and len(primer) < kmer_length:
        logger.warning(
            f"Primer {primer.decode('ascii')} is shorter than primer k={kmer_length}; it cannot be matched."
        )
    return hashes


def _best_primer_fraction(primer_sets: Dict[str, HashSet], read_kmers: Set[KmerHash]) -> float:
    best = 0.0
    for primer in primer_sets.values():
        if primer:
            best = max(best, len(primer.intersection(read_kmers)) / len(primer))
    return best


def _read_metadata(schema: pa.Schema, index_path: pathlib.Path) -> Dict[str, object]:
    raw = schema.metadata or {}
    meta: Dict[str, object] = {}
    for key, value in raw.items():
        name = key.decode("utf-8", "replace")
        if name.startswith(_META_PREFIX):
            meta[name[len(_META_PREFIX):]] = value.decode("utf-8", "replace")

    missing = [key for key in _INT_METADATA + ("species_ids", "marker_ids") if key not in meta]
    if missing:
        raise IndexLoadFailedError(
            "File is not a HalalSeq k-mer index (missing metadata).",
            {"path": str(index_path), "missing": ",".join(missing)},
        )
    try:
        for key in _INT_METADATA + ("max_candidates",):
            if key in meta:
                meta[key] = int(meta[key])
        meta["species_ids"] = json.loads(meta["species_ids"])
        meta["marker_ids"] = json.loads(meta["marker_ids"])
    except ValueError as e:
        raise IndexLoadFailedError(
            f"Index metadata is malformed: {e}", {"path": str(index_path)}
        ) from e

    if meta["format_version"] != INDEX_FORMAT_VERSION:
        raise IndexLoadFailedError(
            "Unsupported index format version.",
            {"path": str(index_path), "version": meta["format_version"]},
        )
    if meta["kmer_length"] < 1 or meta["primer_kmer_length"] < 1 or meta["sketch_size"] < 1:
        raise IndexLoadFailedError("Index metadata is out of range.", {"path": str(index_path)})
    return meta


def _check_binding(
    meta: Dict[str, object], database: ReferenceDatabase, index_path: pathlib.Path
) -> None:
    if meta["num_species"] != database.num_species:
        raise IndexMismatchError(
            "Index species count does not match the reference database.",
            {"index": meta["num_species"], "database": database.num_species, "path": str(index_path)},
        )
    if meta["num_markers"] != database.num_markers:
        raise IndexMismatchError(
            "Index marker count does not match the reference database.",
            {"index": meta["num_markers"], "database": database.num_markers, "path": str(index_path)},
        )
    if meta["species_ids"] != database.species_ids:
        raise IndexMismatchError(
            "Index species identifiers do not match the reference database.",
            {"path": str(index_path)},
        )
    if meta["marker_ids"] != database.marker_ids:
        raise IndexMismatchError(
            "Index marker identifiers do not match the reference database.",
            {"path": str(index_path)},
        )
