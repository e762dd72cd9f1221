"""
Sequence handling and k-mer extraction functionality.

Reads and reference sequences are handled as upper-case ASCII bytes. K-mers
are reduced to 64-bit MurmurHash3 values; classification uses canonical
k-mers (the smaller of a k-mer and its reverse complement) so that strand
orientation does not affect identity, while primer matching uses
strand-specific k-mers so that orientation can be recovered.
"""

import re
from dataclasses import dataclass, field
from typing import Iterator, Set

import mmh3

from .exceptions import MalformedRecordError
from .genomic_types import KmerHash

# IUPAC nucleotide alphabet. Ambiguity codes are biological and therefore
# valid in a read; k-mers that contain them are simply not hashed.
VALID_DNA_BYTES: frozenset[int] = frozenset(b"ACGTNRYSWKMBDHV")

DEFAULT_HASH_SEED = 42
_HASH_MASK = 0xFFFFFFFFFFFFFFFF
_ACGT_RUN = re.compile(rb"[ACGT]+")
_RC_TABLE = bytes.maketrans(b"ACGTNRYSWKMBDHV", b"TGCANYRSWMKVHDB")


@dataclass(frozen=True, slots=True)
class GenomicSequence:
    """
    Immutable, validated nucleotide sequence.

    Sequence data is upper-cased on construction and must be non-empty and
    contain only IUPAC nucleotide letters. Anything else raises
    ``MalformedRecordError`` so that the caller can skip and count the record.

    Attributes:
        sequence_id: Identifier for the sequence (read name or reference key).
        sequence_data: Upper-case sequence bytes.

    Example:
        >>> seq = GenomicSequence(sequence_id='read_001', sequence_data=b'acgtn')
        >>> str(seq)
        'ACGTN'
        >>> len(seq)
        5
    """

    sequence_id: str = field(compare=False)
    sequence_data: bytes

    def __post_init__(self) -> None:
        if isinstance(self.sequence_data, str):
            object.__setattr__(self, "sequence_data", self.sequence_data.encode("ascii", "replace"))
        if not isinstance(self.sequence_data, (bytes, bytearray)):
            raise TypeError(
                f"Sequence data must be bytes, got {type(self.sequence_data).__name__}."
            )
        object.__setattr__(self, "sequence_data", normalize_sequence(bytes(self.sequence_data), self.sequence_id))

    def __hash__(self) -> int:
        """Generate hash using MurmurHash3 for consistency and performance."""
        return mmh3.hash(self.sequence_data)

    def __len__(self) -> int:
        return len(self.sequence_data)

    def __str__(self) -> str:
        return self.sequence_data.decode("ascii")

    def reverse_complement(self) -> "GenomicSequence":
        return GenomicSequence(self.sequence_id, reverse_complement(self.sequence_data))


def normalize_sequence(sequence: bytes, sequence_id: str = "") -> bytes:
    """
    Upper-cases and validates raw sequence bytes.

    Args:
        sequence: Raw sequence bytes as read from a FASTA/FASTQ record.
        sequence_id: Used only to make error messages traceable.

    Returns:
        The upper-case sequence.

    Raises:
        MalformedRecordError: If the sequence is empty or contains bytes that
            are not IUPAC nucleotide letters.
    """
    if not sequence:
        raise MalformedRecordError(
            "Sequence data must be non-empty.", {"sequence_id": sequence_id}
        )
    upper = sequence.strip().upper()
    if not upper:
        raise MalformedRecordError(
            "Sequence data must be non-empty.", {"sequence_id": sequence_id}
        )
    invalid = set(upper) - VALID_DNA_BYTES
    if invalid:
        shown = ", ".join(repr(chr(b)) for b in sorted(invalid)[:5])
        raise MalformedRecordError(
            f"Sequence contains non-nucleotide characters: {shown}",
            {"sequence_id": sequence_id},
        )
    return upper


def reverse_complement(sequence: bytes) -> bytes:
    """Reverse complement of upper-case IUPAC sequence bytes."""
    return sequence.translate(_RC_TABLE)[::-1]


def hash_kmer(kmer: bytes, seed: int = DEFAULT_HASH_SEED) -> KmerHash:
    """Unsigned 64-bit MurmurHash3 of a k-mer."""
    return mmh3.hash64(kmer, seed)[0] & _HASH_MASK


def iter_acgt_kmers(sequence: bytes, kmer_length: int) -> Iterator[bytes]:
    """
    Yields every k-mer of ``sequence`` that consists only of A, C, G and T.

    K-mers spanning an N or any other ambiguity code are skipped rather than
    hashed, so they can never produce spurious matches.
    """
    if kmer_length <= 0:
        raise ValueError(f"kmer_length must be positive, got {kmer_length}.")
    for run in _ACGT_RUN.finditer(sequence):
        start, end = run.span()
        if end - start < kmer_length:
            continue
        view = memoryview(sequence)
        for i in range(start, end - kmer_length + 1):
            yield view[i : i + kmer_length].tobytes()


def canonical_kmer(kmer: bytes) -> bytes:
    """The lexicographically smaller of a k-mer and its reverse complement."""
    rc_kmer = reverse_complement(kmer)
    return kmer if kmer <= rc_kmer else rc_kmer


def canonical_kmer_hashes(
    sequence: bytes, kmer_length: int, seed: int = DEFAULT_HASH_SEED
) -> Set[KmerHash]:
    """
    Distinct canonical k-mer hashes of a sequence.

    Args:
        sequence: Upper-case sequence bytes.
        kmer_length: K-mer length.
        seed: MurmurHash3 seed; must match the seed the index was built with.

    Returns:
        Set of unsigned 64-bit hashes. Empty when the sequence is shorter than
        ``kmer_length`` or has no unambiguous stretch that long.
    """
    hashes: Set[KmerHash] = set()
    for kmer in iter_acgt_kmers(sequence, kmer_length):
        hashes.add(hash_kmer(canonical_kmer(kmer), seed))
    return hashes


def strand_kmer_hashes(
    sequence: bytes, kmer_length: int, seed: int = DEFAULT_HASH_SEED
) -> Set[KmerHash]:
    """Distinct hashes of the k-mers exactly as they appear on this strand."""
    return {hash_kmer(kmer, seed) for kmer in iter_acgt_kmers(sequence, kmer_length)}
