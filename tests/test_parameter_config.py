import pathlib

import pytest
from pydantic import ValidationError

from halalseq.parameter_config import (
    DEFAULT_INDEX_NAME,
    DEFAULT_SUBSAMPLE_READS,
    ClassifierConfig,
    CliArgs,
    EstimatorConfig,
    IndexBuildConfig,
    PipelineConfig,
    process_arguments,
)


@pytest.fixture
def reads_file(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / "beef.fq"
    path.write_text("@r1\nACGT\n+\nIIII\n")
    return path


def test_defaults():
    config = PipelineConfig()
    assert config.classifier.min_containment == 0.5
    assert config.classifier.require_primer_match is False
    assert config.estimator.max_iterations == 1000
    assert config.confidence.n_bootstrap == 100
    assert config.report.min_report_pct == 0.1
    assert config.num_workers == 1
    assert IndexBuildConfig().kmer_length == 21


def test_models_are_frozen():
    config = ClassifierConfig()
    with pytest.raises(ValidationError):
        config.min_containment = 0.9


@pytest.mark.parametrize(
    "model, kwargs",
    [
        (ClassifierConfig, {"min_containment": 0.0}),
        (ClassifierConfig, {"ambiguity_ratio": 1.5}),
        (EstimatorConfig, {"max_iterations": 0}),
        (IndexBuildConfig, {"kmer_length": 3}),
        (PipelineConfig, {"num_workers": 0}),
    ],
)
def test_out_of_range_values(model, kwargs):
    with pytest.raises(ValidationError):
        model(**kwargs)


def test_process_arguments(reads_file, tmp_path):
    args = process_arguments(
        [str(reads_file), "-d", str(tmp_path), "-o", str(tmp_path / "out"), "-p", "3", "--verbose"]
    )
    assert args.input_files == [reads_file]
    assert args.db_path == tmp_path
    assert args.num_processes == 3
    assert args.verbose
    assert args.resolved_index_path() == tmp_path / DEFAULT_INDEX_NAME


def test_explicit_index_path(reads_file, tmp_path):
    args = process_arguments([str(reads_file), "-d", str(tmp_path), "-i", "my.parquet"])
    assert args.resolved_index_path() == pathlib.Path("my.parquet")


def test_missing_input_exits(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        process_arguments([str(tmp_path / "gone.fq"), "-d", str(tmp_path)])
    assert exc_info.value.code == 2


def test_missing_database_dir_exits(reads_file, tmp_path):
    with pytest.raises(SystemExit):
        process_arguments([str(reads_file), "-d", str(tmp_path / "nodb")])


@pytest.mark.parametrize(
    "subsample, max_reads, expected",
    [(False, None, None), (True, None, DEFAULT_SUBSAMPLE_READS), (True, 1000, 1000), (False, 50, 50)],
)
def test_to_pipeline_config(reads_file, tmp_path, subsample, max_reads, expected):
    args = CliArgs(
        input_files=[reads_file],
        db_path=tmp_path,
        subsample=subsample,
        max_reads=max_reads,
        n_bootstrap=7,
        min_report_pct=0.5,
    )
    config = args.to_pipeline_config()
    assert config.max_reads_per_sample == expected
    assert config.confidence.n_bootstrap == 7
    assert config.report.min_report_pct == 0.5
