"""
Reference database of species, markers and marker reference sequences.

A database directory holds three files:

- ``species.tsv``: ``species_id``, ``display_name`` (optional),
  ``halal_status`` and ``mito_copy_number``;
- ``markers.tsv``: ``marker_id``, ``forward_primer``, ``reverse_primer``;
- ``references.fasta``: one record per covered (species, marker) pair with
  the header ``>{species_id}|{marker_id}``.

Loading is all-or-nothing: any inconsistency raises ``CorruptDatabaseError``
and no partially populated object is ever returned.
"""

import logging
import pathlib
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from Bio.SeqIO.FastaIO import SimpleFastaParser

from .exceptions import CorruptDatabaseError, MalformedRecordError
from .genomic_types import MarkerId, MarkerIndex, SpeciesId, SpeciesIndex
from .sequence import GenomicSequence

logger = logging.getLogger(__name__)

SPECIES_FILE = "species.tsv"
MARKERS_FILE = "markers.tsv"
REFERENCES_FILE = "references.fasta"
REFERENCE_HEADER_SEPARATOR = "|"

# Food names shown in place of binomials when species.tsv gives none.
COMMON_NAMES: Dict[SpeciesId, str] = {
    "Bos_taurus": "Beef (Cow)",
    "Sus_scrofa": "Pork (Pig)",
    "Ovis_aries": "Lamb (Sheep)",
    "Gallus_gallus": "Chicken",
    "Capra_hircus": "Goat",
    "Equus_caballus": "Horse",
    "Bubalus_bubalis": "Buffalo",
    "Anas_platyrhynchos": "Duck",
    "Cervus_elaphus": "Deer (Venison)",
    "Meleagris_gallopavo": "Turkey",
    "Oryctolagus_cuniculus": "Rabbit",
    "Camelus_dromedarius": "Camel",
    "Canis_lupus": "Dog",
    "Equus_asinus": "Donkey",
}


class HalalStatus(str, Enum):
    HALAL = "halal"
    HARAM = "haram"
    DOUBTFUL = "doubtful"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Union[str, "HalalStatus"]) -> "HalalStatus":
        """Parses a status label; ``mashbooh`` is accepted for doubtful."""
        if isinstance(value, HalalStatus):
            return value
        label = str(value).strip().lower()
        if label == "mashbooh":
            return cls.DOUBTFUL
        try:
            return cls(label)
        except ValueError:
            raise ValueError(f"Unknown halal status: {value!r}") from None


@dataclass(frozen=True)
class Species:
    species_id: SpeciesId
    display_name: str
    halal_status: HalalStatus
    mito_copy_number: float


@dataclass(frozen=True)
class Marker:
    marker_id: MarkerId
    forward_primer: Optional[str] = None
    reverse_primer: Optional[str] = None

    @property
    def has_primers(self) -> bool:
        return bool(self.forward_primer or self.reverse_primer)


def default_display_name(species_id: SpeciesId) -> str:
    return COMMON_NAMES.get(species_id, species_id)


class ReferenceDatabase:
    """
    Read-only catalogue of species, markers and reference sequences.

    Species and markers keep the order in which they were declared; that
    order defines the species and marker indices used throughout the engine
    (index tables, evidence matrices and abundance vectors).

    Use ``ReferenceDatabase.load(path)`` for an on-disk database or
    ``ReferenceDatabase.from_records(...)`` for in-memory construction.
    Both run the same validation.
    """

    def __init__(
        self,
        species: Sequence[Species],
        markers: Sequence[Marker],
        references: Mapping[Tuple[SpeciesId, MarkerId], bytes],
        source: Optional[pathlib.Path] = None,
    ) -> None:
        self.source = source
        self._species: Tuple[Species, ...] = tuple(species)
        self._markers: Tuple[Marker, ...] = tuple(markers)

        if not self._species:
            raise CorruptDatabaseError("Reference database defines no species.")
        if not self._markers:
            raise CorruptDatabaseError("Reference database defines no markers.")

        self._species_index: Dict[SpeciesId, SpeciesIndex] = {}
        for idx, sp in enumerate(self._species):
            if sp.species_id in self._species_index:
                raise CorruptDatabaseError(
                    "Duplicate species id.", {"species_id": sp.species_id}
                )
            if not isinstance(sp.halal_status, HalalStatus):
                raise CorruptDatabaseError(
                    "Species status is not a HalalStatus.", {"species_id": sp.species_id}
                )
            if not np.isfinite(sp.mito_copy_number) or sp.mito_copy_number <= 0:
                raise CorruptDatabaseError(
                    "Mitochondrial copy number must be a positive number.",
                    {"species_id": sp.species_id, "value": sp.mito_copy_number},
                )
            self._species_index[sp.species_id] = idx

        self._marker_index: Dict[MarkerId, MarkerIndex] = {}
        normalized_markers = []
        for idx, marker in enumerate(self._markers):
            if marker.marker_id in self._marker_index:
                raise CorruptDatabaseError(
                    "Duplicate marker id.", {"marker_id": marker.marker_id}
                )
            primers = [
                _validated_bytes(primer.encode("ascii", "replace"), f"primer:{marker.marker_id}").decode("ascii")
                if primer
                else None
                for primer in (marker.forward_primer, marker.reverse_primer)
            ]
            normalized_markers.append(Marker(marker.marker_id, *primers))
            self._marker_index[marker.marker_id] = idx
        self._markers = tuple(normalized_markers)

        self._references: Dict[Tuple[SpeciesIndex, MarkerIndex], bytes] = {}
        for (species_id, marker_id), sequence in references.items():
            if species_id not in self._species_index:
                raise CorruptDatabaseError(
                    "Reference sequence for an unknown species.",
                    {"species_id": species_id, "marker_id": marker_id},
                )
            if marker_id not in self._marker_index:
                raise CorruptDatabaseError(
                    "Reference sequence for an unknown marker.",
                    {"species_id": species_id, "marker_id": marker_id},
                )
            key = (self._species_index[species_id], self._marker_index[marker_id])
            self._references[key] = _validated_bytes(
                sequence, f"{species_id}{REFERENCE_HEADER_SEPARATOR}{marker_id}"
            )

        if not self._references:
            raise CorruptDatabaseError("Reference database holds no reference sequences.")

    @classmethod
    def from_records(
        cls,
        species: Sequence[Species],
        markers: Sequence[Marker],
        references: Mapping[Tuple[SpeciesId, MarkerId], Union[bytes, str]],
    ) -> "ReferenceDatabase":
        encoded = {
            key: seq.encode("ascii", "replace") if isinstance(seq, str) else seq
            for key, seq in references.items()
        }
        return cls(species, markers, encoded)

    @classmethod
    def load(cls, path: Union[str, pathlib.Path]) -> "ReferenceDatabase":
        """
        Loads a database directory.

        Args:
            path: Directory containing species.tsv, markers.tsv and
                references.fasta.

        Returns:
            A fully validated ``ReferenceDatabase``.

        Raises:
            CorruptDatabaseError: If a file is missing or unreadable, or the
                contents are inconsistent in any way.
        """
        db_dir = pathlib.Path(path).expanduser().resolve()
        logger.info(f"Loading reference database from {db_dir}")
        if not db_dir.is_dir():
            raise CorruptDatabaseError(
                "Reference database directory not found.", {"path": str(db_dir)}
            )

        species = _read_species_table(db_dir / SPECIES_FILE)
        markers = _read_marker_table(db_dir / MARKERS_FILE)
        references = _read_references(db_dir / REFERENCES_FILE)

        database = cls(species, markers, references, source=db_dir)
        stats = database.get_database_stats()
        logger.info(
            f"Loaded {stats['num_species']} species, {stats['num_markers']} markers, "
            f"{stats['num_references']} reference sequences"
        )
        return database

    def __repr__(self) -> str:
        return (
            f"ReferenceDatabase(species={self.num_species}, markers={self.num_markers}, "
            f"references={len(self._references)})"
        )

    @property
    def species(self) -> Tuple[Species, ...]:
        return self._species

    @property
    def markers(self) -> Tuple[Marker, ...]:
        return self._markers

    @property
    def species_ids(self) -> List[SpeciesId]:
        return [sp.species_id for sp in self._species]

    @property
    def marker_ids(self) -> List[MarkerId]:
        return [m.marker_id for m in self._markers]

    @property
    def num_species(self) -> int:
        return len(self._species)

    @property
    def num_markers(self) -> int:
        return len(self._markers)

    def species_index(self, species_id: SpeciesId) -> SpeciesIndex:
        try:
            return self._species_index[species_id]
        except KeyError:
            raise KeyError(f"Unknown species: {species_id}") from None

    def marker_index(self, marker_id: MarkerId) -> MarkerIndex:
        try:
            return self._marker_index[marker_id]
        except KeyError:
            raise KeyError(f"Unknown marker: {marker_id}") from None

    def get_species(self, species_id: SpeciesId) -> Species:
        return self._species[self.species_index(species_id)]

    def get_marker(self, marker_id: MarkerId) -> Marker:
        return self._markers[self.marker_index(marker_id)]

    def halal_status(self, species_id: SpeciesId) -> HalalStatus:
        return self.get_species(species_id).halal_status

    def mito_copy_number(self, species_id: SpeciesId) -> float:
        return self.get_species(species_id).mito_copy_number

    def copy_numbers(self) -> np.ndarray:
        """Mitochondrial copy numbers as a float64 vector in species order."""
        return np.array([sp.mito_copy_number for sp in self._species], dtype=np.float64)

    def reference_sequence(
        self, species_id: SpeciesId, marker_id: MarkerId
    ) -> Optional[bytes]:
        key = (self.species_index(species_id), self.marker_index(marker_id))
        return self._references.get(key)

    def marker_reference_length(
        self, species_id: SpeciesId, marker_id: MarkerId
    ) -> Optional[int]:
        """Reference length for a pair, or ``None`` when the pair is not covered."""
        sequence = self.reference_sequence(species_id, marker_id)
        return None if sequence is None else len(sequence)

    def iter_references(self) -> Iterator[Tuple[SpeciesIndex, MarkerIndex, bytes]]:
        """Yields (species index, marker index, sequence) in database order."""
        for key in sorted(self._references):
            yield key[0], key[1], self._references[key]

    def coverage_table(self) -> pd.DataFrame:
        """Species x marker table of reference lengths (0 where uncovered)."""
        table = np.zeros((self.num_species, self.num_markers), dtype=np.int64)
        for (s_idx, m_idx), sequence in self._references.items():
            table[s_idx, m_idx] = len(sequence)
        return pd.DataFrame(table, index=self.species_ids, columns=self.marker_ids)

    def get_database_stats(self) -> Dict[str, object]:
        status_counts = {status.value: 0 for status in HalalStatus}
        for sp in self._species:
            status_counts[sp.halal_status.value] += 1
        return {
            "num_species": self.num_species,
            "num_markers": self.num_markers,
            "num_references": len(self._references),
            "status_counts": status_counts,
            "source": str(self.source) if self.source else None,
        }


def _validated_bytes(sequence: bytes, label: str) -> bytes:
    try:
        return GenomicSequence(label, sequence).sequence_data
    except MalformedRecordError as e:
        raise CorruptDatabaseError(f"Invalid sequence in reference database: {e}") from e


def _read_tsv(path: pathlib.Path, required: Sequence[str]) -> pd.DataFrame:
    if not path.is_file():
        raise CorruptDatabaseError("Reference database file is missing.", {"path": str(path)})
    try:
        df = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False, comment="#")
    except (OSError, ValueError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise CorruptDatabaseError(
            f"Could not parse {path.name}: {e}", {"path": str(path)}
        ) from e

    df.columns = [str(c).strip() for c in df.columns]
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise CorruptDatabaseError(
            f"{path.name} is missing required columns: {', '.join(missing)}",
            {"path": str(path)},
        )
    if df.empty:
        raise CorruptDatabaseError(f"{path.name} has no rows.", {"path": str(path)})
    return df.apply(lambda col: col.str.strip())


def _read_species_table(path: pathlib.Path) -> List[Species]:
    df = _read_tsv(path, ["species_id", "halal_status", "mito_copy_number"])
    copy_numbers = pd.to_numeric(df["mito_copy_number"], errors="coerce")

    species: List[Species] = []
    for row_num, row in enumerate(df.itertuples(index=False), start=2):
        species_id = row.species_id
        if not species_id:
            raise CorruptDatabaseError(f"{path.name} line {row_num}: empty species_id.")
        try:
            status = HalalStatus.parse(row.halal_status)
        except ValueError as e:
            raise CorruptDatabaseError(
                f"{path.name} line {row_num}: {e}", {"species_id": species_id}
            ) from e
        copy_number = copy_numbers.iloc[row_num - 2]
        if pd.isna(copy_number):
            raise CorruptDatabaseError(
                f"{path.name} line {row_num}: mito_copy_number is not numeric.",
                {"species_id": species_id, "value": row.mito_copy_number},
            )
        display_name = getattr(row, "display_name", "") or default_display_name(species_id)
        species.append(Species(species_id, display_name, status, float(copy_number)))
    return species


def _read_marker_table(path: pathlib.Path) -> List[Marker]:
    df = _read_tsv(path, ["marker_id"])
    markers: List[Marker] = []
    for row_num, row in enumerate(df.itertuples(index=False), start=2):
        if not row.marker_id:
            raise CorruptDatabaseError(f"{path.name} line {row_num}: empty marker_id.")
        forward = getattr(row, "forward_primer", "") or None
        reverse = getattr(row, "reverse_primer", "") or None
        markers.append(
            Marker(
                row.marker_id,
                forward.upper() if forward else None,
                reverse.upper() if reverse else None,
            )
        )
    return markers


def _read_references(path: pathlib.Path) -> Dict[Tuple[SpeciesId, MarkerId], bytes]:
    if not path.is_file():
        raise CorruptDatabaseError("Reference database file is missing.", {"path": str(path)})

    references: Dict[Tuple[SpeciesId, MarkerId], bytes] = {}
    try:
        with open(path, "rt") as handle:
            for title, sequence in SimpleFastaParser(handle):
                key = title.split()[0] if title.strip() else ""
                species_id, sep, marker_id = key.partition(REFERENCE_HEADER_SEPARATOR)
                if not sep or not species_id or not marker_id:
                    raise CorruptDatabaseError(
                        f"Reference header must be 'species{REFERENCE_HEADER_SEPARATOR}marker'.",
                        {"header": title},
                    )
                if (species_id, marker_id) in references:
                    raise CorruptDatabaseError(
                        "Duplicate reference sequence.",
                        {"species_id": species_id, "marker_id": marker_id},
                    )
                references[(species_id, marker_id)] = sequence.encode("ascii", "replace")
    except (OSError, UnicodeDecodeError, ValueError) as e:
        raise CorruptDatabaseError(f"Could not read {path.name}: {e}", {"path": str(path)}) from e
    return references
