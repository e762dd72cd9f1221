"""
Read parsing and per-read classification.

``SequenceFileProcessor`` streams (read id, forward bytes, reverse bytes)
records out of FASTA/FASTQ files, gzipped or not. ``ReadClassifier`` turns a
record into ``ReadEvidence`` and accumulates chunks of records into an
``EvidenceMatrix``. Ambiguity is never resolved here: a read that fits
several species equally well contributes to an equivalence class holding
all of them, and the abundance estimator apportions it later.
"""

import io
import itertools
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Callable, Dict, Generator, Iterable, Iterator, List, Optional, Set, TextIO, Tuple

from Bio import SeqIO
from Bio.SeqIO.QualityIO import FastqGeneralIterator

from .evidence import EvidenceMatrix
from .exceptions import MalformedRecordError, UnreadableInputFileError
from .genomic_types import (
    EquivalenceClass,
    EvidenceScores,
    KmerHash,
    MarkerIndex,
    RawRecord,
    ReadId,
    RecordChunk,
    SpeciesIndex,
)
from .kmer_index import KmerIndex, PrimerMatch
from .parameter_config import DEFAULT_CHUNK_SIZE, ClassifierConfig
from .sequence import normalize_sequence, reverse_complement
from .utils import open_file_transparently

logger = logging.getLogger(__name__)


class SequenceFileProcessor:
    """Handles sequence file parsing and format detection."""

    @staticmethod
    def open_file_handle(file_path: pathlib.Path) -> TextIO:
        """Opens a file, handling .gz compression transparently."""
        try:
            # Undecodable bytes become U+FFFD and fail sequence validation
            # for that record only.
            return open_file_transparently(file_path, mode="rt", errors="replace")
        except (FileNotFoundError, IOError) as e:
            raise UnreadableInputFileError(
                f"Cannot open input file: {e}", {"path": str(file_path)}
            ) from e

    @staticmethod
    def detect_file_format(file_path: pathlib.Path) -> Optional[str]:
        """
        Detects FASTA or FASTQ from the first non-blank line.

        Returns ``None`` for an empty file, which simply yields no reads.

        Raises:
            UnreadableInputFileError: The file cannot be read or does not
                look like FASTA/FASTQ.
        """
        try:
            with SequenceFileProcessor.open_file_handle(file_path) as f:
                for line in f:
                    first_line = line.strip()
                    if not first_line:
                        continue
                    if first_line.startswith(">"):
                        return "fasta"
                    if first_line.startswith("@"):
                        return "fastq"
                    raise UnreadableInputFileError(
                        "Unknown file format (expected FASTA or FASTQ).",
                        {"path": str(file_path)},
                    )
        except (OSError, EOFError) as e:
            raise UnreadableInputFileError(
                f"Cannot read input file: {e}", {"path": str(file_path)}
            ) from e
        return None

    @staticmethod
    def _iter_records(handle: TextIO, file_format: str) -> Iterator[Tuple[str, str]]:
        if file_format == "fasta":
            for record in SeqIO.parse(handle, "fasta"):
                yield record.id, str(record.seq)
        else:
            yield from SequenceFileProcessor._iter_fastq_records(handle)

    @staticmethod
    def _iter_fastq_records(handle: TextIO) -> Iterator[Tuple[str, str]]:
        """
        Yields (read id, sequence) per four-line FASTQ record.

        Every record is checked by ``FastqGeneralIterator`` on its own. A
        record that fails the check is yielded with an empty sequence, which
        the classifier counts as malformed, and parsing resumes at the next
        header. Stray lines between records are skipped.
        """
        lines = iter(handle)
        pending: List[str] = []

        def next_line() -> Optional[str]:
            return pending.pop(0) if pending else next(lines, None)

        in_stray_lines = False
        while True:
            header = next_line()
            if header is None:
                return
            if not header.strip():
                continue
            if not header.startswith("@"):
                if not in_stray_lines:
                    logger.debug(f"Skipping stray FASTQ line: {header.strip()[:40]!r}")
                    in_stray_lines = True
                continue
            in_stray_lines = False

            body: List[str] = []
            while len(body) < 3:
                line = next_line()
                if line is None:
                    break
                body.append(line)
            read_id = (header[1:].split() or [""])[0]

            well_formed = len(body) == 3 and body[1].startswith("+")
            parsed: List[Tuple[str, str, str]] = []
            if well_formed:
                try:
                    parsed = list(FastqGeneralIterator(io.StringIO(header + "".join(body))))
                except ValueError as e:
                    logger.debug(f"Skipping malformed FASTQ record {read_id}: {e}")
            if len(parsed) == 1:
                yield read_id, parsed[0][1]
                continue

            yield read_id, ""
            if not well_formed:
                # A missing line pulls the next header into this record.
                for pos, line in enumerate(body):
                    if line.startswith("@"):
                        pending[:0] = body[pos:]
                        break

    @staticmethod
    def parse_sequence_files(
        fwd_reads_path: pathlib.Path,
        rev_reads_path: Optional[pathlib.Path] = None,
    ) -> Generator[RawRecord, None, None]:
        """
        Parses sequence files and yields reads.

        Yields:
            Tuple of (ReadId, forward_sequence_bytes, reverse_sequence_bytes).
            For single-end reads, reverse_sequence_bytes will be empty bytes.

        Raises:
            UnreadableInputFileError: A file cannot be opened, has an unknown
                format, or cannot be read part-way through (for example a
                truncated gzip stream). A broken FASTQ record is not an error:
                it is yielded with an empty sequence and counted as malformed.
        """
        logger.info(
            f"Parsing files. Forward: {fwd_reads_path}, Reverse: {rev_reads_path or 'N/A'}"
        )

        fwd_format = SequenceFileProcessor.detect_file_format(fwd_reads_path)
        rev_format: Optional[str] = None
        if rev_reads_path:
            rev_format = SequenceFileProcessor.detect_file_format(rev_reads_path)
            if fwd_format and rev_format and fwd_format != rev_format:
                raise UnreadableInputFileError(
                    f"Mismatched file formats: {fwd_reads_path} is {fwd_format}, "
                    f"but {rev_reads_path} is {rev_format}."
                )
        if fwd_format is None:
            logger.warning(f"Input file {fwd_reads_path} is empty")
            return

        current_path = fwd_reads_path
        try:
            with SequenceFileProcessor.open_file_handle(fwd_reads_path) as fwd_fh:
                rev_fh: Optional[TextIO] = None
                if rev_reads_path and rev_format:
                    rev_fh = SequenceFileProcessor.open_file_handle(rev_reads_path)
                try:
                    fwd_iter = SequenceFileProcessor._iter_records(fwd_fh, fwd_format)
                    rev_iter = (
                        SequenceFileProcessor._iter_records(rev_fh, rev_format)
                        if rev_fh and rev_format
                        else None
                    )
                    while True:
                        current_path = fwd_reads_path
                        fwd_record = next(fwd_iter, None)
                        if fwd_record is None:
                            break
                        read_id, fwd_seq = fwd_record
                        rev_seq = ""
                        if rev_iter is not None:
                            current_path = rev_reads_path
                            rev_record = next(rev_iter, None)
                            if rev_record is None:
                                logger.warning(
                                    f"Reverse file ended before forward file at read {read_id}. "
                                    "Treating remaining as single-end."
                                )
                                rev_iter = None
                            else:
                                rev_seq = rev_record[1]
                                if not rev_seq:
                                    # A broken mate makes the whole pair malformed.
                                    fwd_seq = ""
                        yield read_id, fwd_seq.encode("ascii", "replace"), rev_seq.encode("ascii", "replace")
                finally:
                    if rev_fh:
                        rev_fh.close()
        except (OSError, EOFError, ValueError) as e:
            raise UnreadableInputFileError(
                f"Error while reading input file: {e}", {"path": str(current_path)}
            ) from e

    @staticmethod
    def iter_chunks(
        records: Iterable[RawRecord],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_reads: Optional[int] = None,
    ) -> Generator[RecordChunk, None, None]:
        """Groups records into lists of ``chunk_size``, stopping after ``max_reads``."""
        if max_reads is not None:
            records = itertools.islice(records, max_reads)
        iterator = iter(records)
        while True:
            chunk = list(itertools.islice(iterator, chunk_size))
            if not chunk:
                return
            yield chunk


@dataclass(frozen=True)
class ReadEvidence:
    """
    Everything learnt about one read.

    Attributes:
        read_id: Read (or read pair) identifier.
        scores: Accepted containment score per (marker id, species id).
        primer_orientation: Orientation of the strongest primer hit, if any.
        classes: Equivalence classes the read contributes to, one per marker.
    """

    read_id: ReadId
    scores: EvidenceScores = field(default_factory=dict)
    primer_orientation: Optional[str] = None
    classes: Tuple[EquivalenceClass, ...] = ()

    @property
    def classified(self) -> bool:
        return bool(self.classes)


class ReadClassifier:
    """
    Classifies reads against a ``KmerIndex``.

    Per read (the union of R1 and R2 k-mers for a pair):

    1. Validate the sequence; malformed records raise ``MalformedRecordError``.
    2. Match primers of every marker that has them. With
       ``require_primer_match`` only markers whose primer strength reaches
       ``min_primer_strength`` are scored afterwards.
    3. Ask the coarse tier for candidate species.
    4. Score each candidate at each of its covered markers; keep hits whose
       containment reaches ``min_containment``.
    5. Per marker, the species within ``ambiguity_ratio`` of the best score
       (by default every accepted species) form the read's equivalence
       class at that marker.
    """

    def __init__(self, index: KmerIndex, config: Optional[ClassifierConfig] = None):
        self.index = index
        self.config = config or ClassifierConfig()
        self._species_ids = index.database.species_ids
        self._marker_ids = index.database.marker_ids
        self._primer_markers = index.markers_with_primers()

    def _primer_matches(
        self, fwd_seq: bytes, rev_seq: bytes
    ) -> Dict[MarkerIndex, PrimerMatch]:
        if not self._primer_markers:
            return {}
        # R2 is read off the opposite strand; flip it so both mates vote for
        # the same fragment orientation.
        primer_kmers: Set[KmerHash] = self.index.read_primer_hashes(fwd_seq)
        if rev_seq:
            primer_kmers |= self.index.read_primer_hashes(reverse_complement(rev_seq))
        return {m: self.index.primer_match(primer_kmers, m) for m in self._primer_markers}

    def classify_read(self, read_id: ReadId, fwd_seq: bytes, rev_seq: bytes = b"") -> ReadEvidence:
        """
        Classifies one read or read pair.

        Raises:
            MalformedRecordError: A mate is empty or holds non-nucleotide
                characters.
        """
        fwd_seq = normalize_sequence(fwd_seq, read_id)
        if rev_seq:
            rev_seq = normalize_sequence(rev_seq, read_id)

        primer_matches = self._primer_matches(fwd_seq, rev_seq)
        orientation = None
        if primer_matches:
            best = max(primer_matches.values(), key=lambda pm: pm.strength)
            orientation = best.orientation if best.matched else None

        allowed: Optional[Set[MarkerIndex]] = None
        if self.config.require_primer_match:
            allowed = {
                m
                for m, pm in primer_matches.items()
                if pm.strength >= self.config.min_primer_strength
            }
            if not allowed:
                return ReadEvidence(read_id, primer_orientation=orientation)

        read_hashes = self.index.read_hashes(fwd_seq)
        if rev_seq:
            read_hashes |= self.index.read_hashes(rev_seq)
        if not read_hashes:
            return ReadEvidence(read_id, primer_orientation=orientation)

        candidates = self.index.coarse_candidates(read_hashes, self.config.max_candidates)
        if not candidates:
            return ReadEvidence(read_id, primer_orientation=orientation)

        accepted: Dict[MarkerIndex, Dict[SpeciesIndex, float]] = {}
        for s_idx in candidates:
            for m_idx in self.index.markers_for_species(s_idx):
                if allowed is not None and m_idx not in allowed:
                    continue
                score = self.index.fine_score(read_hashes, m_idx, s_idx)
                if score.hits and score.fraction >= self.config.min_containment:
                    accepted.setdefault(m_idx, {})[s_idx] = score.fraction

        classes: List[EquivalenceClass] = []
        scores: EvidenceScores = {}
        for m_idx in sorted(accepted):
            hits = accepted[m_idx]
            cutoff = max(hits.values()) * self.config.ambiguity_ratio
            members = tuple(sorted(s for s, fraction in hits.items() if fraction >= cutoff))
            classes.append((m_idx, members))
            for s_idx, fraction in hits.items():
                scores[(self._marker_ids[m_idx], self._species_ids[s_idx])] = fraction

        return ReadEvidence(read_id, scores, orientation, tuple(classes))

    def classify_batch(
        self,
        records: Iterable[RawRecord],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> EvidenceMatrix:
        """
        Classifies a chunk of records into a partial evidence matrix.

        ``should_stop`` is polled before every read; once it returns True the
        reads classified so far are returned.
        """
        matrix = EvidenceMatrix(len(self._species_ids), len(self._marker_ids))
        for read_id, fwd_seq, rev_seq in records:
            if should_stop is not None and should_stop():
                break
            try:
                evidence = self.classify_read(read_id, fwd_seq, rev_seq)
            except MalformedRecordError as e:
                logger.debug(f"Skipping malformed record: {e}")
                matrix.add_malformed()
                continue
            matrix.add_read(evidence.classes)
        return matrix


# Worker-process state for multiprocessing.Pool; set once per worker by
# init_worker so the index is transferred once rather than per chunk.
_WORKER_CLASSIFIER: Optional[ReadClassifier] = None


def init_worker(index: KmerIndex, config: ClassifierConfig) -> None:
    global _WORKER_CLASSIFIER
    _WORKER_CLASSIFIER = ReadClassifier(index, config)


def classify_chunk_in_worker(chunk: RecordChunk) -> EvidenceMatrix:
    if _WORKER_CLASSIFIER is None:
        raise RuntimeError("Worker classifier not initialized.")
    return _WORKER_CLASSIFIER.classify_batch(chunk)
