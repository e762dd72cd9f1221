"""
Configuration models and command-line argument parsing.

Every tunable of the engine lives in one of the frozen pydantic models below;
``PipelineConfig`` aggregates them for a run. ``process_arguments`` maps the
``halalseq-classify`` command line onto ``CliArgs``.
"""

import argparse
import pathlib
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_CHUNK_SIZE = 10000
DEFAULT_NUM_PROCESSES = 1
DEFAULT_SUBSAMPLE_READS = 500_000
DEFAULT_MAX_INPUT_FILES = 32
DEFAULT_INDEX_NAME = "halalseq_index.parquet"


class IndexBuildConfig(BaseModel):
    """Parameters of ``KmerIndex.build``."""

    model_config = ConfigDict(frozen=True)

    kmer_length: int = Field(default=21, ge=5, le=64)
    primer_kmer_length: int = Field(default=12, ge=4, le=64)
    sketch_size: int = Field(default=2000, ge=1, description="Hashes kept per species in the coarse sketch.")
    hash_seed: int = Field(default=42, ge=0)
    max_candidates: int = Field(default=4, ge=1)


class ClassifierConfig(BaseModel):
    """Per-read acceptance rules of the read classifier."""

    model_config = ConfigDict(frozen=True)

    min_containment: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Minimum fraction of a read's k-mers found in a reference to accept the hit.",
    )
    ambiguity_ratio: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description=(
            "Species scoring within this ratio of a marker's best score share the read. "
            "0 keeps every accepted hit in the class."
        ),
    )
    require_primer_match: bool = Field(
        default=False,
        description="Only score markers whose primers are found in the read.",
    )
    min_primer_strength: float = Field(default=0.5, gt=0.0, le=1.0)
    max_candidates: Optional[int] = Field(
        default=None, ge=1, description="Coarse candidate bound; None uses the index default."
    )


class EstimatorConfig(BaseModel):
    """EM settings of the abundance estimator."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int = Field(default=1000, ge=1)
    tolerance: float = Field(default=1e-6, gt=0.0)
    init_floor: float = Field(default=1e-3, gt=0.0, lt=1.0)


class ConfidenceConfig(BaseModel):
    """Bootstrap interval and cross-marker agreement settings."""

    model_config = ConfigDict(frozen=True)

    n_bootstrap: int = Field(default=100, ge=0)
    confidence_level: float = Field(default=0.95, gt=0.0, lt=1.0)
    random_seed: Optional[int] = Field(default=42, ge=0)
    min_marker_reads: float = Field(
        default=5.0,
        ge=0.0,
        description="Read weight a marker needs before it takes part in agreement.",
    )


class ReportConfig(BaseModel):
    """Report and verdict settings."""

    model_config = ConfigDict(frozen=True)

    min_report_pct: float = Field(
        default=0.1,
        ge=0.0,
        le=100.0,
        description="Weight percentage at which a species counts as detected for the verdict.",
    )


class PipelineConfig(BaseModel):
    """Everything a pipeline run needs besides its samples and index."""

    model_config = ConfigDict(frozen=True)

    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    estimator: EstimatorConfig = Field(default_factory=EstimatorConfig)
    confidence: ConfidenceConfig = Field(default_factory=ConfidenceConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
    num_workers: int = Field(default=DEFAULT_NUM_PROCESSES, ge=1)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1)
    max_reads_per_sample: Optional[int] = Field(default=None, ge=1)
    max_in_flight_chunks: Optional[int] = Field(
        default=None, ge=1, description="Pool submission window; None means two per worker."
    )
    continue_on_unreadable: bool = True


class CliArgs(BaseModel):
    """Pydantic model for command-line argument validation and management."""

    model_config = ConfigDict(frozen=True)

    input_files: List[pathlib.Path] = Field(
        description="Input read file(s) (FASTA/FASTQ, possibly gzipped)."
    )
    db_path: pathlib.Path = Field(description="Reference database directory.")
    index_path: Optional[pathlib.Path] = Field(
        default=None, description="Saved k-mer index (Parquet)."
    )
    output_dir: pathlib.Path = Field(default=pathlib.Path("halalseq_out"))
    num_processes: int = Field(default=DEFAULT_NUM_PROCESSES, ge=1)
    subsample: bool = False
    max_reads: Optional[int] = Field(default=None, ge=1)
    n_bootstrap: int = Field(default=100, ge=0)
    random_seed: int = Field(default=42, ge=0)
    min_report_pct: float = Field(default=0.1, ge=0.0, le=100.0)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1)
    verbose: bool = False
    log_json: bool = False
    log_dir: Optional[pathlib.Path] = None

    @field_validator("input_files", mode="before")
    @classmethod
    def validate_inputs_exist(cls, v: Sequence[str]) -> List[pathlib.Path]:
        paths = [pathlib.Path(p) for p in v]
        for path in paths:
            if not path.is_file():
                raise ValueError(f"Input file does not exist: {path}")
        return paths

    @field_validator("db_path", mode="before")
    @classmethod
    def validate_db_dir(cls, v: str) -> pathlib.Path:
        path = pathlib.Path(v)
        if not path.is_dir():
            raise ValueError(f"Database directory does not exist: {path}")
        return path

    def resolved_index_path(self) -> pathlib.Path:
        return self.index_path or self.db_path / DEFAULT_INDEX_NAME

    def to_pipeline_config(self) -> PipelineConfig:
        max_reads = self.max_reads
        if max_reads is None and self.subsample:
            max_reads = DEFAULT_SUBSAMPLE_READS
        return PipelineConfig(
            confidence=ConfidenceConfig(n_bootstrap=self.n_bootstrap, random_seed=self.random_seed),
            report=ReportConfig(min_report_pct=self.min_report_pct),
            num_workers=self.num_processes,
            chunk_size=self.chunk_size,
            max_reads_per_sample=max_reads,
        )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="halalseq-classify",
        description="HalalSeq: species identification and halal verdicts from sequencing reads.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "input",
        help="Read files (FASTA/FASTQ, optionally gzipped). R1/R2 pairs are detected by name.",
        nargs="+",
        type=str,
    )
    parser.add_argument(
        "-d", "--db", help="Reference database directory.", required=True, type=str
    )
    parser.add_argument(
        "-i",
        "--index",
        help=f"Saved k-mer index. Defaults to <db>/{DEFAULT_INDEX_NAME}; "
        "built in memory when absent.",
        type=str,
        default=None,
    )
    parser.add_argument("-o", "--out", help="Output directory.", type=str, default="halalseq_out")
    parser.add_argument(
        "-p", "--procs", help="Number of worker processes.", type=int, default=DEFAULT_NUM_PROCESSES
    )
    parser.add_argument(
        "--subsample",
        help=f"Classify at most {DEFAULT_SUBSAMPLE_READS} reads per sample.",
        action="store_true",
        default=False,
    )
    parser.add_argument(
        "--max-reads", help="Classify at most this many reads per sample.", type=int, default=None
    )
    parser.add_argument(
        "--bootstrap", help="Bootstrap replicates for intervals (0 disables).", type=int, default=100
    )
    parser.add_argument("--seed", help="Random seed for bootstrapping.", type=int, default=42)
    parser.add_argument(
        "--min-pct",
        help="Weight percentage at which a species counts as detected.",
        type=float,
        default=0.1,
    )
    parser.add_argument(
        "--chunk-size", help="Reads per classification chunk.", type=int, default=DEFAULT_CHUNK_SIZE
    )
    parser.add_argument("--verbose", help="Enable verbose logging.", action="store_true", default=False)
    parser.add_argument("--log-json", help="Emit JSON log records.", action="store_true", default=False)
    parser.add_argument("--log-dir", help="Also write rotating log files here.", type=str, default=None)
    return parser


def process_arguments(argv: Optional[Sequence[str]] = None) -> CliArgs:
    """
    Parses and validates command-line arguments.

    Exits through ``parser.error`` (status 2) when validation fails, the same
    way argparse reports its own errors.
    """
    parser = build_argument_parser()
    args = parser.parse_args(argv)
    try:
        return CliArgs(
            input_files=args.input,
            db_path=args.db,
            index_path=args.index,
            output_dir=args.out,
            num_processes=args.procs,
            subsample=args.subsample,
            max_reads=args.max_reads,
            n_bootstrap=args.bootstrap,
            random_seed=args.seed,
            min_report_pct=args.min_pct,
            chunk_size=args.chunk_size,
            verbose=args.verbose,
            log_json=args.log_json,
            log_dir=args.log_dir,
        )
    except ValidationError as e:
        parser.error(str(e))
