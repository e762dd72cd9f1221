"""
Pipeline controller: runs samples through the engine on a background worker.

The caller starts a run, then polls ``snapshot()`` (or receives each
snapshot through ``on_progress``) and may ``cancel()`` at any time. The
worker owns all run state and publishes immutable ``PipelineSnapshot``
objects by replacing a single reference, so readers never see partially
updated state.

State machine::

    IDLE -> LOADING_INDEX -> READING_INPUT -> CLASSIFYING
         -> ESTIMATING_ABUNDANCE -> GENERATING_REPORT
         -> (READING_INPUT for the next sample | DONE)

``ERROR`` can be entered from any non-terminal state. A new run can be
started from IDLE, DONE or ERROR.
"""

import logging
import multiprocessing as mp
import pathlib
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Deque, List, Optional, Sequence, Tuple, Union

from .abundance import AbundanceEstimator
from .classify import (
    ReadClassifier,
    SequenceFileProcessor,
    classify_chunk_in_worker,
    init_worker,
)
from .confidence import bootstrap_intervals, cross_marker_agreement
from .database import ReferenceDatabase
from .evidence import EvidenceMatrix
from .exceptions import (
    CancelledError,
    HalalSeqException,
    InvalidRunRequestError,
    PipelineBusyError,
    UnreadableInputFileError,
)
from .kmer_index import KmerIndex
from .logging_config import LogContext, StageTimer
from .parameter_config import DEFAULT_SUBSAMPLE_READS, PipelineConfig
from .report import ReportBuilder, SampleReport
from .samples import Sample

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_SUBSAMPLE_READS",
    "PipelineController",
    "PipelineSnapshot",
    "PipelineState",
]

IndexSource = Union[str, pathlib.Path, KmerIndex]


class PipelineState(str, Enum):
    IDLE = "idle"
    LOADING_INDEX = "loading_index"
    READING_INPUT = "reading_input"
    CLASSIFYING = "classifying"
    ESTIMATING_ABUNDANCE = "estimating_abundance"
    GENERATING_REPORT = "generating_report"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.IDLE, PipelineState.DONE, PipelineState.ERROR)


@dataclass(frozen=True)
class PipelineSnapshot:
    """
    Immutable view of a run.

    Attributes:
        state: Current pipeline state.
        sample_index: Zero-based index of the sample being processed; equals
            the number of samples already finished.
        sample_count: Samples in the run.
        current_sample: Name of the sample being processed.
        reads_seen: Records read so far for the current sample.
        reports: Reports of the samples completed so far.
        error_message: Run error, or the collected per-sample errors.
        sample_errors: (sample name, message) for samples that failed.
        cancelled: Whether the run stopped because of ``cancel()``.
    """

    state: PipelineState = PipelineState.IDLE
    sample_index: int = 0
    sample_count: int = 0
    current_sample: Optional[str] = None
    reads_seen: int = 0
    reports: Tuple[SampleReport, ...] = ()
    error_message: Optional[str] = None
    sample_errors: Tuple[Tuple[str, str], ...] = ()
    cancelled: bool = False

    @property
    def progress(self) -> float:
        """Fraction of samples finished, in [0, 1]."""
        if self.state == PipelineState.DONE and not self.cancelled:
            return 1.0
        if self.sample_count == 0:
            return 0.0
        return min(self.sample_index / self.sample_count, 1.0)


class PipelineController:
    """
    Runs a set of samples against a k-mer index on a worker thread.

    Args:
        database: Reference database used to load index files given by path.
            May be omitted when runs are always started with a loaded
            ``KmerIndex``.
        config: Run configuration.
        on_progress: Called with every published snapshot, from the worker
            thread.
    """

    def __init__(
        self,
        database: Optional[ReferenceDatabase] = None,
        config: Optional[PipelineConfig] = None,
        on_progress: Optional[Callable[[PipelineSnapshot], None]] = None,
    ) -> None:
        self.database = database
        self.config = config or PipelineConfig()
        self.on_progress = on_progress
        self.timer = StageTimer()
        self._snapshot = PipelineSnapshot()
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

    # Caller-side API

    def snapshot(self) -> PipelineSnapshot:
        return self._snapshot

    @property
    def state(self) -> PipelineState:
        return self._snapshot.state

    @property
    def progress(self) -> float:
        return self._snapshot.progress

    @property
    def reports(self) -> Tuple[SampleReport, ...]:
        return self._snapshot.reports

    @property
    def error_message(self) -> Optional[str]:
        return self._snapshot.error_message

    def start(self, samples: Sequence[Sample], index: Optional[IndexSource]) -> None:
        """
        Starts a run in the background.

        Raises:
            PipelineBusyError: A run is already in progress.
            InvalidRunRequestError: No index, no samples, or an index path
                without a database to bind it to. State is left unchanged.
        """
        with self._lock:
            if not self._snapshot.state.is_terminal:
                raise PipelineBusyError(
                    "A run is already in progress.", {"state": self._snapshot.state.value}
                )
            if index is None or (isinstance(index, (str, pathlib.Path)) and not str(index)):
                raise InvalidRunRequestError("No k-mer index was given.")
            if not samples:
                raise InvalidRunRequestError("No samples were given.")
            if not isinstance(index, KmerIndex) and self.database is None:
                raise InvalidRunRequestError(
                    "An index path needs a reference database to bind to."
                )

            run_samples = tuple(samples)
            self._cancel_event.clear()
            self._publish(
                PipelineSnapshot(PipelineState.LOADING_INDEX, sample_count=len(run_samples))
            )
            self._worker = threading.Thread(
                target=self._run,
                args=(run_samples, index),
                name="halalseq-pipeline",
                daemon=True,
            )
            self._worker.start()

    def cancel(self) -> bool:
        """Requests cancellation; returns whether a run was in progress."""
        if self._snapshot.state.is_terminal:
            return False
        logger.info("Cancellation requested")
        self._cancel_event.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Joins the worker; returns True when no run is in progress afterwards."""
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
            return not worker.is_alive()
        return True

    def run(
        self, samples: Sequence[Sample], index: IndexSource, timeout: Optional[float] = None
    ) -> PipelineSnapshot:
        """Starts a run and blocks until it finishes (or ``timeout`` passes)."""
        self.start(samples, index)
        self.wait(timeout)
        return self.snapshot()

    # Worker side

    def _publish(self, snapshot: PipelineSnapshot) -> None:
        self._snapshot = snapshot
        if self.on_progress is not None:
            try:
                self.on_progress(snapshot)
            except Exception:
                logger.exception("Progress callback raised")

    def _update(self, **changes) -> None:
        self._publish(replace(self._snapshot, **changes))

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise CancelledError("Run cancelled.")

    def _resolve_index(self, index: IndexSource) -> KmerIndex:
        if isinstance(index, KmerIndex):
            return index
        return KmerIndex.load(index, self.database)

    def _run(self, samples: Tuple[Sample, ...], index_source: IndexSource) -> None:
        try:
            index = self._resolve_index(index_source)
        except HalalSeqException as e:
            logger.error(f"Failed to load k-mer index: {e}")
            self._update(state=PipelineState.ERROR, error_message=str(e))
            return
        except Exception as e:
            logger.exception("Unexpected error while loading the k-mer index")
            self._update(state=PipelineState.ERROR, error_message=f"{type(e).__name__}: {e}")
            return

        reports: List[SampleReport] = []
        sample_errors: List[Tuple[str, str]] = []
        cancelled = False
        pool = None
        run_start = time.perf_counter()
        try:
            if self.config.num_workers > 1:
                # Spawned workers do not inherit this process's threads.
                pool = mp.get_context("spawn").Pool(
                    processes=self.config.num_workers,
                    initializer=init_worker,
                    initargs=(index, self.config.classifier),
                )
            classifier = ReadClassifier(index, self.config.classifier)
            for i, sample in enumerate(samples):
                if self._cancel_event.is_set():
                    cancelled = True
                    break
                self._update(sample_index=i, current_sample=sample.name, reads_seen=0)
                try:
                    with LogContext(sample=sample.name):
                        report = self._process_sample(sample, index, classifier, pool)
                except CancelledError:
                    cancelled = True
                    break
                except UnreadableInputFileError as e:
                    logger.warning(f"Sample {sample.name} abandoned: {e}")
                    sample_errors.append((sample.name, str(e)))
                    self._update(sample_errors=tuple(sample_errors))
                    if not self.config.continue_on_unreadable:
                        break
                    continue
                reports.append(report)
                self._update(sample_index=i + 1, reports=tuple(reports))
        except Exception as e:
            logger.exception("Unexpected error during pipeline run")
            if pool is not None:
                pool.terminate()
                pool.join()
                pool = None
            self._update(
                state=PipelineState.ERROR,
                error_message=f"{type(e).__name__}: {e}",
                reports=tuple(reports),
            )
            return
        finally:
            if pool is not None:
                if cancelled:
                    pool.terminate()
                else:
                    pool.close()
                pool.join()

        self.timer.record("run", time.perf_counter() - run_start, samples=len(reports))
        if cancelled:
            logger.info(f"Run cancelled after {len(reports)} completed sample(s)")
            self._update(state=PipelineState.DONE, cancelled=True, current_sample=None)
        elif sample_errors:
            message = "; ".join(f"{name}: {msg}" for name, msg in sample_errors)
            logger.error(f"{len(sample_errors)} sample(s) failed: {message}")
            self._update(
                state=PipelineState.ERROR,
                error_message=f"{len(sample_errors)} sample(s) failed: {message}",
                current_sample=None,
            )
        else:
            logger.info(f"Run finished: {len(reports)} sample report(s)")
            self._update(state=PipelineState.DONE, current_sample=None)

    def _classify_sample(
        self,
        sample: Sample,
        classifier: ReadClassifier,
        pool,
        matrix: EvidenceMatrix,
    ) -> None:
        records = SequenceFileProcessor.parse_sequence_files(
            sample.forward_file, sample.reverse_file
        )
        chunks = SequenceFileProcessor.iter_chunks(
            records, self.config.chunk_size, self.config.max_reads_per_sample
        )
        try:
            if pool is None:
                for chunk in chunks:
                    self._check_cancelled()
                    matrix.merge(classifier.classify_batch(chunk, self._cancel_event.is_set))
                    self._update(state=PipelineState.CLASSIFYING, reads_seen=matrix.reads_seen)
                    logger.debug(f"Classified chunk of {len(chunk)} reads")
                return

            # Bounded window of in-flight chunks, merged in submission order.
            # Workers do not see the cancel event, so chunks are the checkpoint.
            window_size = self.config.max_in_flight_chunks or 2 * self.config.num_workers
            in_flight: Deque = deque()
            for chunk in chunks:
                self._check_cancelled()
                in_flight.append(pool.apply_async(classify_chunk_in_worker, (chunk,)))
                while len(in_flight) >= window_size:
                    matrix.merge(in_flight.popleft().get())
                    self._update(state=PipelineState.CLASSIFYING, reads_seen=matrix.reads_seen)
            while in_flight:
                self._check_cancelled()
                matrix.merge(in_flight.popleft().get())
                self._update(state=PipelineState.CLASSIFYING, reads_seen=matrix.reads_seen)
        finally:
            records.close()

    def _process_sample(
        self, sample: Sample, index: KmerIndex, classifier: ReadClassifier, pool
    ) -> SampleReport:
        database = index.database
        logger.info(f"Processing sample {sample.name} ({len(sample.files)} file(s))")
        self._update(state=PipelineState.READING_INPUT)

        started = time.perf_counter()
        matrix = EvidenceMatrix(database.num_species, database.num_markers)
        self._classify_sample(sample, classifier, pool, matrix)
        self.timer.record_throughput("classify", matrix.reads_seen, time.perf_counter() - started)
        if matrix.malformed_reads:
            logger.warning(
                f"Skipped {matrix.malformed_reads} malformed record(s) in sample {sample.name}"
            )
        self._check_cancelled()

        self._update(state=PipelineState.ESTIMATING_ABUNDANCE, reads_seen=matrix.reads_seen)
        started = time.perf_counter()
        estimator = AbundanceEstimator(database.copy_numbers(), self.config.estimator)
        estimate = estimator.estimate(matrix)
        intervals = bootstrap_intervals(matrix, estimate, estimator, self.config.confidence)
        agreement = cross_marker_agreement(matrix, estimator, self.config.confidence)
        self.timer.record("estimate", time.perf_counter() - started)

        self._update(state=PipelineState.GENERATING_REPORT)
        builder = ReportBuilder(database, self.config.report)
        return builder.build(sample.name, matrix, estimate, intervals, agreement)
