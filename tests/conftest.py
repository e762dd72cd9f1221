"""
Shared fixtures: a small synthetic reference database on disk, its k-mer
index, and helpers to simulate and write reads.
"""

import gzip
import pathlib
import random
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from halalseq.database import ReferenceDatabase
from halalseq.kmer_index import KmerIndex

# (species_id, display_name, status, mito copy number)
SPECIES_ROWS = [
    ("Bos_taurus", "", "halal", "1.0"),
    ("Sus_scrofa", "", "haram", "1.0"),
    ("Equus_caballus", "Horse", "mashbooh", "2.0"),
]
MARKERS = ["cytb", "COI"]
FORWARD_PRIMER = "ACGGTCATGCAAGTCCTAGC"
REVERSE_PRIMER = "TTGACCGTAGCATCGGTACA"
BODY_LENGTH = 400
READ_LENGTH = 150


def _random_dna(rng: random.Random, length: int) -> str:
    return "".join(rng.choice("ACGT") for _ in range(length))


def _revcomp(seq: str) -> str:
    return seq.translate(str.maketrans("ACGT", "TGCA"))[::-1]


def make_reference_sequences(seed: int = 7) -> Dict[Tuple[str, str], str]:
    """Primer-flanked random marker sequences, distinct per species."""
    rng = random.Random(seed)
    references = {}
    for species_id, _, _, _ in SPECIES_ROWS:
        for marker in MARKERS:
            body = _random_dna(rng, BODY_LENGTH)
            references[(species_id, marker)] = FORWARD_PRIMER + body + _revcomp(REVERSE_PRIMER)
    return references


def write_database(
    db_dir: pathlib.Path,
    references: Dict[Tuple[str, str], str],
    species_rows: Sequence[Tuple[str, str, str, str]] = SPECIES_ROWS,
    markers: Sequence[str] = MARKERS,
) -> pathlib.Path:
    db_dir.mkdir(parents=True, exist_ok=True)
    with open(db_dir / "species.tsv", "w") as f:
        f.write("species_id\tdisplay_name\thalal_status\tmito_copy_number\n")
        for row in species_rows:
            f.write("\t".join(row) + "\n")
    with open(db_dir / "markers.tsv", "w") as f:
        f.write("marker_id\tforward_primer\treverse_primer\n")
        for marker in markers:
            f.write(f"{marker}\t{FORWARD_PRIMER}\t{REVERSE_PRIMER}\n")
    with open(db_dir / "references.fasta", "w") as f:
        for (species_id, marker), seq in references.items():
            f.write(f">{species_id}|{marker}\n")
            for i in range(0, len(seq), 60):
                f.write(seq[i : i + 60] + "\n")
    return db_dir


def simulate_reads(
    references: Dict[Tuple[str, str], str],
    counts: Dict[str, int],
    marker: Optional[str] = None,
    seed: int = 11,
    read_length: int = READ_LENGTH,
    prefix: str = "read",
) -> List[Tuple[str, str]]:
    """
    Error-free reads sampled from the given species' references.

    With ``marker`` unset, each read comes from a marker picked at random.
    Half of the reads are reverse complemented.
    """
    rng = random.Random(seed)
    reads = []
    n = 0
    for species_id, count in counts.items():
        for _ in range(count):
            chosen = marker or rng.choice(MARKERS)
            ref = references[(species_id, chosen)]
            start = rng.randrange(0, len(ref) - read_length + 1)
            seq = ref[start : start + read_length]
            if rng.random() < 0.5:
                seq = _revcomp(seq)
            reads.append((f"{prefix}_{n}", seq))
            n += 1
    return reads


def write_fastq(path: pathlib.Path, reads: Sequence[Tuple[str, str]]) -> pathlib.Path:
    opener = gzip.open if path.name.endswith(".gz") else open
    with opener(path, "wt") as f:
        for read_id, seq in reads:
            f.write(f"@{read_id}\n{seq}\n+\n{'I' * len(seq)}\n")
    return path


def write_fasta(path: pathlib.Path, reads: Sequence[Tuple[str, str]]) -> pathlib.Path:
    with open(path, "w") as f:
        for read_id, seq in reads:
            f.write(f">{read_id}\n{seq}\n")
    return path


@pytest.fixture(scope="session")
def reference_sequences() -> Dict[Tuple[str, str], str]:
    return make_reference_sequences()


@pytest.fixture(scope="session")
def reference_db_dir(tmp_path_factory, reference_sequences) -> pathlib.Path:
    return write_database(tmp_path_factory.mktemp("refdb"), reference_sequences)


@pytest.fixture(scope="session")
def database(reference_db_dir) -> ReferenceDatabase:
    return ReferenceDatabase.load(reference_db_dir)


@pytest.fixture(scope="session")
def kmer_index(database) -> KmerIndex:
    return KmerIndex.build(database)


@pytest.fixture(scope="session")
def saved_index(tmp_path_factory, kmer_index) -> pathlib.Path:
    return kmer_index.save(tmp_path_factory.mktemp("index") / "index.parquet")


@pytest.fixture
def fastq_writer(tmp_path) -> Callable[..., pathlib.Path]:
    """Writes reads to ``tmp_path/<name>`` and returns the path."""

    def _write(name: str, reads: Sequence[Tuple[str, str]]) -> pathlib.Path:
        return write_fastq(tmp_path / name, reads)

    return _write
