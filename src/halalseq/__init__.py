"""
HalalSeq: species identification and halal verdicts from sequencing reads.

Reads are classified against marker references (for example mitochondrial
cytb and COI) through a two-tier k-mer index, species abundances are
estimated by EM with mitochondrial copy-number correction, and each sample
gets a report with per-species weights, intervals, cross-marker agreement
and a pass/fail/inconclusive verdict.
"""

__version__ = "0.1.0"

from .abundance import AbundanceEstimate, AbundanceEstimator
from .classify import ReadClassifier, ReadEvidence, SequenceFileProcessor
from .confidence import bootstrap_intervals, cross_marker_agreement
from .database import HalalStatus, Marker, ReferenceDatabase, Species
from .evidence import EvidenceMatrix
from .exceptions import (
    CorruptDatabaseError,
    HalalSeqException,
    IndexLoadFailedError,
    IndexMismatchError,
    InvalidRunRequestError,
    MalformedRecordError,
    PipelineBusyError,
    TooManyInputFilesError,
    UnreadableInputFileError,
)
from .kmer_index import FineScore, KmerIndex, PrimerMatch
from .parameter_config import (
    DEFAULT_SUBSAMPLE_READS,
    ClassifierConfig,
    ConfidenceConfig,
    EstimatorConfig,
    IndexBuildConfig,
    PipelineConfig,
    ReportConfig,
)
from .pipeline import PipelineController, PipelineSnapshot, PipelineState
from .report import SampleReport, SpeciesReport, Verdict
from .samples import SUPPORTED_EXTENSIONS, Sample, estimate_input_size, resolve_samples
from .sketch import CoarseSketch, MinHashSketch

__all__ = [
    "AbundanceEstimate",
    "AbundanceEstimator",
    "ClassifierConfig",
    "CoarseSketch",
    "ConfidenceConfig",
    "CorruptDatabaseError",
    "DEFAULT_SUBSAMPLE_READS",
    "EstimatorConfig",
    "EvidenceMatrix",
    "FineScore",
    "HalalSeqException",
    "HalalStatus",
    "IndexBuildConfig",
    "IndexLoadFailedError",
    "IndexMismatchError",
    "InvalidRunRequestError",
    "KmerIndex",
    "MalformedRecordError",
    "Marker",
    "MinHashSketch",
    "PipelineBusyError",
    "PipelineConfig",
    "PipelineController",
    "PipelineSnapshot",
    "PipelineState",
    "PrimerMatch",
    "ReadClassifier",
    "ReadEvidence",
    "ReferenceDatabase",
    "ReportConfig",
    "SUPPORTED_EXTENSIONS",
    "Sample",
    "SampleReport",
    "SequenceFileProcessor",
    "Species",
    "SpeciesReport",
    "TooManyInputFilesError",
    "UnreadableInputFileError",
    "Verdict",
    "bootstrap_intervals",
    "cross_marker_agreement",
    "estimate_input_size",
    "resolve_samples",
    "__version__",
]
