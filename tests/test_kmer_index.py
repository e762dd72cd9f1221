"""
Pytest unit tests for halalseq.kmer_index: building, querying and the
Parquet round trip, including binding checks against the database.
"""

import json
import pathlib

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from halalseq.database import HalalStatus, Marker, ReferenceDatabase, Species
from halalseq.exceptions import IndexLoadFailedError, IndexMismatchError
from halalseq.kmer_index import (
    FORWARD_STRAND,
    INDEX_FORMAT_VERSION,
    NO_PRIMER_MATCH,
    REVERSE_STRAND,
    KmerIndex,
)
from halalseq.sequence import reverse_complement

from conftest import FORWARD_PRIMER, REVERSE_PRIMER, SPECIES_ROWS, write_database


def _read(reference_sequences, species_id, marker_id, start, length=150) -> bytes:
    return reference_sequences[(species_id, marker_id)][start : start + length].encode()


class TestBuild:
    def test_fine_sets_cover_every_reference(self, kmer_index: KmerIndex):
        stats = kmer_index.get_index_stats()
        assert stats["num_fine_sets"] == 6
        assert stats["markers_with_primers"] == 2
        assert stats["sketch_hashes"] > 0

    def test_sketch_is_bounded_per_species(self, database):
        index = KmerIndex.build(database, sketch_size=50)
        assert index.get_index_stats()["sketch_hashes"] <= 50 * database.num_species
        assert all(index.sketch.sketch_size(s) == 50 for s in range(database.num_species))

    def test_markers_for_species(self, kmer_index: KmerIndex):
        assert kmer_index.markers_for_species(0) == [0, 1]
        assert kmer_index.markers_for_species(99) == []

    def test_fine_score_of_exact_substring(self, kmer_index, reference_sequences):
        read = _read(reference_sequences, "Sus_scrofa", "cytb", 100)
        hashes = kmer_index.read_hashes(read)
        score = kmer_index.fine_score(hashes, 0, 1)
        assert score.hits == len(hashes)
        assert score.fraction == pytest.approx(1.0)

    def test_fine_score_of_other_species_is_low(self, kmer_index, reference_sequences):
        read = _read(reference_sequences, "Sus_scrofa", "cytb", 100)
        hashes = kmer_index.read_hashes(read)
        assert kmer_index.fine_score(hashes, 0, 0).fraction < 0.1

    def test_fine_score_is_strand_independent(self, kmer_index, reference_sequences):
        read = reverse_complement(_read(reference_sequences, "Bos_taurus", "COI", 50))
        score = kmer_index.fine_score(kmer_index.read_hashes(read), 1, 0)
        assert score.fraction == pytest.approx(1.0)

    def test_fine_score_without_hashes(self, kmer_index):
        score = kmer_index.fine_score(set(), 0, 0)
        assert (score.hits, score.fraction) == (0, 0.0)

    def test_coarse_candidates_rank_source_first(self, kmer_index, reference_sequences):
        read = _read(reference_sequences, "Equus_caballus", "COI", 200)
        candidates = kmer_index.coarse_candidates(kmer_index.read_hashes(read))
        assert candidates[0] == 2

    def test_coarse_candidates_respect_limit(self, kmer_index, reference_sequences):
        read = _read(reference_sequences, "Bos_taurus", "cytb", 100)
        hashes = kmer_index.read_hashes(read)
        assert kmer_index.coarse_candidates(hashes, max_candidates=1) == [0]
        assert kmer_index.coarse_candidates(hashes, max_candidates=0) == []

    def test_rejects_bad_kmer_length(self, database):
        with pytest.raises(ValueError, match="positive"):
            KmerIndex.build(database, kmer_length=0)

    def test_short_reference_warns(self, caplog):
        db = ReferenceDatabase.from_records(
            [Species("Bos_taurus", "Beef", HalalStatus.HALAL, 1.0)],
            [Marker("cytb")],
            {("Bos_taurus", "cytb"): "ACGTACGT"},
        )
        index = KmerIndex.build(db, kmer_length=21)
        assert "cannot be matched" in caplog.text
        assert index.fine_score({1, 2}, 0, 0).hits == 0

    def test_show_progress(self, database):
        index = KmerIndex.build(database, show_progress=True)
        assert index.get_index_stats()["num_fine_sets"] == 6


class TestPrimerMatch:
    def test_forward_orientation(self, kmer_index, reference_sequences):
        read = _read(reference_sequences, "Bos_taurus", "cytb", 0)
        match = kmer_index.primer_match(kmer_index.read_primer_hashes(read), 0)
        assert match.orientation == FORWARD_STRAND
        assert match.strength == pytest.approx(1.0)
        assert match.matched

    def test_reverse_orientation(self, kmer_index, reference_sequences):
        read = reverse_complement(_read(reference_sequences, "Bos_taurus", "cytb", 0))
        match = kmer_index.primer_match(kmer_index.read_primer_hashes(read), 0)
        assert match.orientation == REVERSE_STRAND
        assert match.strength == pytest.approx(1.0)

    def test_reverse_primer_end(self, kmer_index, reference_sequences):
        ref = reference_sequences[("Sus_scrofa", "COI")]
        read = ref[-150:].encode()
        match = kmer_index.primer_match(kmer_index.read_primer_hashes(read), 1)
        assert match.orientation == FORWARD_STRAND

    def test_read_without_primer(self, kmer_index, reference_sequences):
        read = _read(reference_sequences, "Bos_taurus", "cytb", 150, 100)
        match = kmer_index.primer_match(kmer_index.read_primer_hashes(read), 0)
        assert match.strength < 0.5

    def test_no_kmers(self, kmer_index):
        assert kmer_index.primer_match(set(), 0) == NO_PRIMER_MATCH

    def test_both_strands_tie(self, kmer_index):
        read = (FORWARD_PRIMER + "A" * 30 + reverse_complement(FORWARD_PRIMER.encode()).decode()).encode()
        match = kmer_index.primer_match(kmer_index.read_primer_hashes(read), 0)
        assert match.orientation is None
        assert match.strength == pytest.approx(1.0)

    def test_markers_without_primers_never_match(self):
        db = ReferenceDatabase.from_records(
            [Species("Bos_taurus", "Beef", HalalStatus.HALAL, 1.0)],
            [Marker("cytb"), Marker("COI", None, REVERSE_PRIMER)],
            {("Bos_taurus", "cytb"): FORWARD_PRIMER + "ACGT" * 10},
        )
        index = KmerIndex.build(db)
        assert index.markers_with_primers() == [1]
        read = reverse_complement(REVERSE_PRIMER.encode())
        hashes = index.read_primer_hashes(read)
        assert index.primer_match(hashes, 0) == NO_PRIMER_MATCH
        assert index.primer_match(hashes, 1).orientation == FORWARD_STRAND


class TestPersistence:
    def test_round_trip(self, kmer_index, saved_index, database, reference_sequences):
        loaded = KmerIndex.load(saved_index, database)
        assert loaded.source == saved_index
        assert loaded.get_index_stats() == kmer_index.get_index_stats()

        read = _read(reference_sequences, "Equus_caballus", "cytb", 120)
        hashes = loaded.read_hashes(read)
        assert loaded.fine_score(hashes, 0, 2) == kmer_index.fine_score(hashes, 0, 2)
        assert loaded.coarse_candidates(hashes) == kmer_index.coarse_candidates(hashes)

        primer_read = _read(reference_sequences, "Bos_taurus", "COI", 0)
        primer_hashes = loaded.read_primer_hashes(primer_read)
        assert loaded.primer_match(primer_hashes, 1) == kmer_index.primer_match(primer_hashes, 1)

    def test_metadata(self, saved_index, database):
        meta = pq.read_schema(saved_index).metadata
        assert int(meta[b"halalseq_format_version"]) == INDEX_FORMAT_VERSION
        assert json.loads(meta[b"halalseq_species_ids"]) == database.species_ids
        assert meta[b"halalseq_sketch"] == b"minhash"

    def test_build_parameters_survive(self, database, tmp_path):
        index = KmerIndex.build(database, kmer_length=15, sketch_size=300, hash_seed=7)
        loaded = KmerIndex.load(index.save(tmp_path / "k15.parquet"), database)
        assert (loaded.kmer_length, loaded.sketch_size, loaded.hash_seed) == (15, 300, 7)

    def test_missing_file(self, database, tmp_path):
        with pytest.raises(IndexLoadFailedError, match="not found"):
            KmerIndex.load(tmp_path / "missing.parquet", database)

    def test_garbage_file(self, database, tmp_path):
        path = tmp_path / "garbage.parquet"
        path.write_bytes(b"this is not parquet")
        with pytest.raises(IndexLoadFailedError):
            KmerIndex.load(path, database)

    def test_foreign_parquet_file(self, database, tmp_path):
        path = tmp_path / "foreign.parquet"
        pq.write_table(pa.table({"x": [1, 2, 3]}), path)
        with pytest.raises(IndexLoadFailedError, match="missing metadata"):
            KmerIndex.load(path, database)

    def test_species_count_mismatch(self, saved_index, tmp_path, reference_sequences):
        rows = SPECIES_ROWS[:2]
        refs = {k: v for k, v in reference_sequences.items() if k[0] != "Equus_caballus"}
        other = ReferenceDatabase.load(write_database(tmp_path / "db2", refs, species_rows=rows))
        with pytest.raises(IndexMismatchError, match="species count"):
            KmerIndex.load(saved_index, other)

    def test_species_id_mismatch(self, saved_index, tmp_path, reference_sequences):
        rows = [("Ovis_aries",) + SPECIES_ROWS[0][1:]] + SPECIES_ROWS[1:]
        refs = {
            (("Ovis_aries" if s == "Bos_taurus" else s), m): seq
            for (s, m), seq in reference_sequences.items()
        }
        other = ReferenceDatabase.load(write_database(tmp_path / "db3", refs, species_rows=rows))
        with pytest.raises(IndexMismatchError, match="identifiers"):
            KmerIndex.load(saved_index, other)

    def test_mismatch_is_a_load_failure(self):
        assert issubclass(IndexMismatchError, IndexLoadFailedError)

    def test_unsupported_version(self, saved_index, database, tmp_path):
        table = pq.read_table(saved_index)
        meta = dict(table.schema.metadata)
        meta[b"halalseq_format_version"] = b"99"
        path = tmp_path / "v99.parquet"
        pq.write_table(table.replace_schema_metadata(meta), path)
        with pytest.raises(IndexLoadFailedError, match="version"):
            KmerIndex.load(path, database)
