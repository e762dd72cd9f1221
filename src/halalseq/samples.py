"""
Grouping of input files into samples.

Resolution only looks at file names: ``pork_R1_001.fastq.gz`` and
``pork_R2_001.fastq.gz`` become one paired-end sample called ``pork``; any
file without a partner is a single-end sample named after its stem.
"""

import logging
import pathlib
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

from .exceptions import TooManyInputFilesError
from .parameter_config import DEFAULT_MAX_INPUT_FILES, DEFAULT_SUBSAMPLE_READS
from .utils import is_gzipped, sanitize_sample_name, strip_sequence_suffixes

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS: Tuple[str, ...] = tuple(
    ext + comp for ext in (".fq", ".fastq", ".fa", ".fasta") for comp in ("", ".gz")
)

# <prefix><sep>R<1|2>[_NNN], sep one of "_", "." or "-".
_PAIRED_NAME = re.compile(r"^(?P<prefix>.+?)[_.-]R(?P<mate>[12])(?P<chunk>_\d{3})?$")

# Plain FASTQ with ~150 bp reads averages roughly 350 bytes per record;
# gzip typically shrinks sequencing text about four-fold.
BYTES_PER_READ = 350
GZIP_RATIO = 4.0


@dataclass(frozen=True)
class Sample:
    """A named sample backed by one (single-end) or two (R1, R2) files."""

    name: str
    files: Tuple[pathlib.Path, ...]

    def __post_init__(self) -> None:
        if not 1 <= len(self.files) <= 2:
            raise ValueError(f"A sample has one or two files, got {len(self.files)}.")

    @property
    def paired(self) -> bool:
        return len(self.files) == 2

    @property
    def forward_file(self) -> pathlib.Path:
        return self.files[0]

    @property
    def reverse_file(self) -> Optional[pathlib.Path]:
        return self.files[1] if self.paired else None


class InputSizeEstimate(NamedTuple):
    total_file_bytes: int
    estimated_reads: int
    largest_sample_reads: int
    subsample_advised: bool


def _pair_key(path: pathlib.Path) -> Optional[Tuple[str, str, int]]:
    stem = strip_sequence_suffixes(path.name)
    match = _PAIRED_NAME.match(stem)
    if match is None:
        return None
    key = f"{path.parent}/{match.group('prefix')}{match.group('chunk') or ''}"
    return key, match.group("prefix"), int(match.group("mate"))


def resolve_samples(
    paths: Iterable[Union[str, pathlib.Path]], max_files: int = DEFAULT_MAX_INPUT_FILES
) -> List[Sample]:
    """
    Groups input file paths into samples.

    Args:
        paths: Input files in the order the user supplied them. Duplicates
            are ignored.
        max_files: Maximum number of distinct files accepted.

    Returns:
        Samples in first-seen order of their defining file. A pair is
        defined by whichever mate appears first. Names that collide get
        ``_2``, ``_3``, ... suffixes.

    Raises:
        TooManyInputFilesError: More than ``max_files`` distinct files.
    """
    unique: List[pathlib.Path] = []
    seen = set()
    for raw in paths:
        path = pathlib.Path(raw)
        if path in seen:
            continue
        seen.add(path)
        unique.append(path)

    if len(unique) > max_files:
        raise TooManyInputFilesError(
            f"At most {max_files} input files are accepted per run.",
            {"supplied": len(unique)},
        )

    # Group mates by key; a key only forms a pair with exactly one R1 and one R2.
    groups: Dict[str, Dict[int, List[pathlib.Path]]] = {}
    prefixes: Dict[str, str] = {}
    for path in unique:
        parsed = _pair_key(path)
        if parsed is not None:
            key, prefix, mate = parsed
            groups.setdefault(key, {1: [], 2: []})[mate].append(path)
            prefixes[key] = prefix

    paired: Dict[pathlib.Path, Tuple[str, Tuple[pathlib.Path, pathlib.Path]]] = {}
    for key, mates in groups.items():
        if len(mates[1]) == 1 and len(mates[2]) == 1:
            pair = (mates[1][0], mates[2][0])
            paired[pair[0]] = (prefixes[key], pair)
            paired[pair[1]] = (prefixes[key], pair)

    samples: List[Sample] = []
    emitted = set()
    used_names = set()
    for path in unique:
        if path in emitted:
            continue
        if path in paired:
            base_name, files = paired[path]
        else:
            base_name, files = strip_sequence_suffixes(path.name), (path,)
        emitted.update(files)

        base = sanitize_sample_name(base_name)
        name, suffix = base, 1
        while name in used_names:
            suffix += 1
            name = f"{base}_{suffix}"
        used_names.add(name)
        samples.append(Sample(name, files))

    logger.info(
        f"Resolved {len(unique)} file(s) into {len(samples)} sample(s) "
        f"({sum(1 for s in samples if s.paired)} paired)"
    )
    return samples


def is_supported_file(path: Union[str, pathlib.Path]) -> bool:
    return pathlib.Path(path).name.lower().endswith(SUPPORTED_EXTENSIONS)


def estimate_input_size(
    samples: Sequence[Sample], subsample_reads: int = DEFAULT_SUBSAMPLE_READS
) -> InputSizeEstimate:
    """
    Rough size of a run from file sizes alone.

    Read counts assume ~150 bp FASTQ records; for paired samples the reads
    of both mates count once, as a pair is classified as one read.
    """
    total_bytes = 0
    total_reads = 0
    largest = 0
    for sample in samples:
        sample_reads = 0
        for path in sample.files:
            size = path.stat().st_size if path.is_file() else 0
            total_bytes += size
            plain_size = size * GZIP_RATIO if is_gzipped(path) else size
            sample_reads += int(plain_size / BYTES_PER_READ)
        if sample.paired:
            sample_reads //= 2
        total_reads += sample_reads
        largest = max(largest, sample_reads)
    return InputSizeEstimate(total_bytes, total_reads, largest, largest > subsample_reads)
