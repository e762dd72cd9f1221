"""
Pytest unit tests for halalseq.sequence: validation, reverse complements and
k-mer hashing.
"""

import mmh3
import pytest

from halalseq.exceptions import MalformedRecordError
from halalseq.sequence import (
    DEFAULT_HASH_SEED,
    GenomicSequence,
    canonical_kmer,
    canonical_kmer_hashes,
    hash_kmer,
    iter_acgt_kmers,
    normalize_sequence,
    reverse_complement,
    strand_kmer_hashes,
)


class TestGenomicSequence:
    def test_upper_cases_bytes(self):
        seq = GenomicSequence("read_1", b"acgtn")
        assert seq.sequence_data == b"ACGTN"
        assert str(seq) == "ACGTN"
        assert len(seq) == 5

    def test_accepts_str(self):
        assert GenomicSequence("read_1", "ACGT").sequence_data == b"ACGT"

    def test_equality_ignores_id(self):
        assert GenomicSequence("a", b"ACGT") == GenomicSequence("b", b"acgt")

    def test_hash_is_murmur(self):
        seq = GenomicSequence("a", b"ACGT")
        assert hash(seq) == mmh3.hash(b"ACGT")

    @pytest.mark.parametrize("bad", [b"", b"   ", b"ACGT1", b"ACXT"])
    def test_rejects_malformed(self, bad):
        with pytest.raises(MalformedRecordError):
            GenomicSequence("bad", bad)

    def test_rejects_non_bytes(self):
        with pytest.raises(TypeError, match="must be bytes"):
            GenomicSequence("bad", 12345)

    def test_frozen(self):
        seq = GenomicSequence("a", b"ACGT")
        with pytest.raises(AttributeError):
            seq.sequence_data = b"TTTT"

    def test_reverse_complement(self):
        seq = GenomicSequence("a", b"AACGTN")
        assert seq.reverse_complement().sequence_data == b"NACGTT"
        assert seq.reverse_complement().sequence_id == "a"


def test_normalize_sequence_reports_id():
    with pytest.raises(MalformedRecordError, match="non-nucleotide") as exc_info:
        normalize_sequence(b"ACGT*", "read_42")
    assert exc_info.value.details["sequence_id"] == "read_42"


def test_normalize_keeps_iupac_codes():
    assert normalize_sequence(b"acgtnrykm") == b"ACGTNRYKM"


@pytest.mark.parametrize(
    "seq, expected",
    [(b"ACGT", b"ACGT"), (b"AAAC", b"GTTT"), (b"ACGTR", b"YACGT"), (b"N", b"N")],
)
def test_reverse_complement_bytes(seq, expected):
    assert reverse_complement(seq) == expected


def test_hash_kmer_is_unsigned_64bit():
    h = hash_kmer(b"ACGTACGTACGT")
    assert 0 <= h < 2**64
    assert h == mmh3.hash64(b"ACGTACGTACGT", DEFAULT_HASH_SEED)[0] & (2**64 - 1)


def test_hash_kmer_depends_on_seed():
    assert hash_kmer(b"ACGTACGT", 1) != hash_kmer(b"ACGTACGT", 2)


def test_iter_acgt_kmers_skips_ambiguous_bases():
    kmers = list(iter_acgt_kmers(b"ACGTNACGTA", 4))
    assert kmers == [b"ACGT", b"ACGT", b"CGTA"]


def test_iter_acgt_kmers_short_sequence():
    assert list(iter_acgt_kmers(b"ACG", 4)) == []


def test_iter_acgt_kmers_rejects_non_positive_k():
    with pytest.raises(ValueError, match="positive"):
        list(iter_acgt_kmers(b"ACGT", 0))


def test_canonical_kmer():
    assert canonical_kmer(b"TTTT") == b"AAAA"
    assert canonical_kmer(b"AAAA") == b"AAAA"


def test_canonical_hashes_are_strand_independent():
    seq = b"ACGGTCATGCAAGTCCTAGCATTGACCA"
    assert canonical_kmer_hashes(seq, 11) == canonical_kmer_hashes(reverse_complement(seq), 11)


def test_strand_hashes_are_strand_specific():
    seq = b"ACGGTCATGCAAGTCCTAGCATTGACCA"
    forward = strand_kmer_hashes(seq, 11)
    reverse = strand_kmer_hashes(reverse_complement(seq), 11)
    assert forward and reverse
    assert forward != reverse


def test_canonical_hashes_count_distinct_kmers():
    assert len(canonical_kmer_hashes(b"AAAAAAAA", 4)) == 1
    assert canonical_kmer_hashes(b"NNNNNNNN", 4) == set()
