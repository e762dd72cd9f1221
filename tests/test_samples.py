"""
Pytest unit tests for sample resolution in halalseq.samples.
"""

import gzip
import pathlib

import pytest

from halalseq.exceptions import TooManyInputFilesError
from halalseq.samples import (
    BYTES_PER_READ,
    Sample,
    estimate_input_size,
    is_supported_file,
    resolve_samples,
)


def _touch(directory: pathlib.Path, *names: str):
    paths = []
    for name in names:
        path = directory / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("@r\nACGT\n+\nIIII\n")
        paths.append(path)
    return paths


def test_single_end_file(tmp_path):
    (path,) = _touch(tmp_path, "beef.fastq")
    samples = resolve_samples([path])
    assert samples == [Sample("beef", (path,))]
    assert not samples[0].paired
    assert samples[0].reverse_file is None


@pytest.mark.parametrize(
    "r1, r2, name",
    [
        ("pork_R1.fastq", "pork_R2.fastq", "pork"),
        ("pork_R1_001.fastq.gz", "pork_R2_001.fastq.gz", "pork"),
        ("mix.R1.fq", "mix.R2.fq", "mix"),
        ("lamb-R1.fastq", "lamb-R2.fastq", "lamb"),
    ],
)
def test_pairs_by_name(tmp_path, r1, r2, name):
    fwd, rev = _touch(tmp_path, r1, r2)
    (sample,) = resolve_samples([rev, fwd])
    assert sample.name == name
    assert sample.paired
    assert sample.forward_file == fwd
    assert sample.reverse_file == rev


def test_lone_mate_is_single_end(tmp_path):
    (path,) = _touch(tmp_path, "pork_R1_001.fastq.gz")
    (sample,) = resolve_samples([path])
    assert sample.name == "pork_R1_001"
    assert not sample.paired


def test_different_chunks_do_not_pair(tmp_path):
    paths = _touch(tmp_path, "pork_R1_001.fq", "pork_R2_002.fq")
    samples = resolve_samples(paths)
    assert [s.paired for s in samples] == [False, False]


def test_pairs_only_within_a_directory(tmp_path):
    fwd, rev = _touch(tmp_path, "a/pork_R1.fq", "b/pork_R2.fq")
    samples = resolve_samples([fwd, rev])
    assert len(samples) == 2


def test_order_and_name_collisions(tmp_path):
    paths = _touch(
        tmp_path,
        "a/beef.fq",
        "b/beef.fq",
        "pork_R1.fq",
        "c/beef.fastq.gz",
        "pork_R2.fq",
    )
    samples = resolve_samples(paths)
    assert [s.name for s in samples] == ["beef", "beef_2", "pork", "beef_3"]
    assert samples[2].files == (paths[2], paths[4])


def test_duplicates_ignored(tmp_path):
    (path,) = _touch(tmp_path, "beef.fq")
    assert len(resolve_samples([path, path, str(path)])) == 1


def test_too_many_files(tmp_path):
    paths = _touch(tmp_path, *[f"s{i}.fq" for i in range(33)])
    with pytest.raises(TooManyInputFilesError, match="At most 32"):
        resolve_samples(paths)
    assert len(resolve_samples(paths[:32])) == 32


def test_unsafe_names_sanitized(tmp_path):
    (path,) = _touch(tmp_path, "pork sample (1).fq")
    (sample,) = resolve_samples([path])
    assert sample.name == "pork_sample__1"


def test_sample_needs_one_or_two_files():
    with pytest.raises(ValueError):
        Sample("empty", ())


@pytest.mark.parametrize(
    "name, supported",
    [("a.fq", True), ("a.FASTQ.GZ", True), ("a.fa", True), ("a.fasta.gz", True), ("a.bam", False)],
)
def test_is_supported_file(name, supported):
    assert is_supported_file(name) is supported


class TestEstimateInputSize:
    def test_plain_file(self, tmp_path):
        path = tmp_path / "beef.fq"
        path.write_bytes(b"x" * BYTES_PER_READ * 10)
        estimate = estimate_input_size([Sample("beef", (path,))])
        assert estimate.total_file_bytes == BYTES_PER_READ * 10
        assert estimate.estimated_reads == 10
        assert not estimate.subsample_advised

    def test_pair_counts_once(self, tmp_path):
        fwd, rev = tmp_path / "p_R1.fq", tmp_path / "p_R2.fq"
        for path in (fwd, rev):
            path.write_bytes(b"x" * BYTES_PER_READ * 10)
        estimate = estimate_input_size([Sample("p", (fwd, rev))])
        assert estimate.estimated_reads == 10

    def test_gzip_expansion_and_advice(self, tmp_path):
        path = tmp_path / "big.fq.gz"
        with gzip.open(path, "wb") as f:
            f.write(b"@r\nACGT\n+\nIIII\n")
        size = path.stat().st_size
        estimate = estimate_input_size([Sample("big", (path,))], subsample_reads=0)
        assert estimate.estimated_reads == int(size * 4.0 / BYTES_PER_READ)
        assert estimate.largest_sample_reads == estimate.estimated_reads
        assert estimate.subsample_advised == (estimate.estimated_reads > 0)

    def test_missing_file_counts_zero(self, tmp_path):
        estimate = estimate_input_size([Sample("gone", (tmp_path / "gone.fq",))])
        assert estimate == (0, 0, 0, False)
