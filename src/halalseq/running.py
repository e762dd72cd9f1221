"""
Headless command-line entry point (``halalseq-classify``).

Loads the reference database, resolves the input files into samples, runs
the pipeline controller to completion and writes one species table per
sample plus a ``reports.json`` with every sample report.
"""

import logging
import pathlib
import sys
from typing import List, Optional, Sequence

from .database import ReferenceDatabase
from .exceptions import HalalSeqException
from .kmer_index import KmerIndex
from .logging_config import setup_logging
from .parameter_config import CliArgs, IndexBuildConfig, process_arguments
from .pipeline import PipelineController, PipelineState
from .report import SampleReport, write_reports_json, write_species_report_tsv
from .samples import estimate_input_size, resolve_samples

logger = logging.getLogger(__name__)


def prepare_index(args: CliArgs, database: ReferenceDatabase):
    """The saved index path when one exists, otherwise an in-memory index."""
    index_path = args.resolved_index_path()
    if index_path.is_file():
        return index_path
    if args.index_path is not None:
        # An explicitly named index that does not exist is left to the
        # controller, which reports it as a load failure.
        return index_path
    logger.warning(f"No saved index at {index_path}; building one in memory for this run")
    build = IndexBuildConfig()
    return KmerIndex.build(database, **build.model_dump(), show_progress=args.verbose)


def write_outputs(reports: Sequence[SampleReport], output_dir: pathlib.Path) -> List[pathlib.Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    written = [
        write_species_report_tsv(report, output_dir / f"{report.sample_name}_species_report.tsv")
        for report in reports
    ]
    written.append(write_reports_json(reports, output_dir / "reports.json"))
    return written


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Runs a full analysis from the command line.

    Returns:
        0 when every sample produced a report, 1 otherwise.
    """
    args = process_arguments(argv)
    setup_logging(args.verbose, args.log_dir, args.log_json)

    try:
        database = ReferenceDatabase.load(args.db_path)
        samples = resolve_samples(args.input_files)
    except HalalSeqException as e:
        logger.error(str(e))
        return 1

    estimate = estimate_input_size(samples)
    logger.info(
        f"{len(samples)} sample(s), {estimate.total_file_bytes} bytes, "
        f"~{estimate.estimated_reads} reads"
    )
    config = args.to_pipeline_config()
    if estimate.subsample_advised and config.max_reads_per_sample is None:
        logger.warning(
            f"Largest sample holds ~{estimate.largest_sample_reads} reads; "
            "consider --subsample to cap reads per sample"
        )

    index = prepare_index(args, database)
    controller = PipelineController(database, config)
    snapshot = controller.run(samples, index)

    if snapshot.reports:
        for path in write_outputs(snapshot.reports, args.output_dir):
            logger.info(f"Wrote {path}")
    for report in snapshot.reports:
        logger.info(f"{report.sample_name}: {report.verdict.description}")

    if snapshot.state == PipelineState.ERROR:
        logger.error(snapshot.error_message)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
