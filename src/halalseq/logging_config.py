"""
Logging configuration for HalalSeq.

Library modules only create module-level loggers; handlers are attached here,
by the command-line runner or by an embedding application. Supports a plain
text console handler, a rotating file handler and JSON structured output.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    One JSON object per line. Fields from an enclosing ``LogContext``
    (``context_fields``) and from ``extra={"extra_fields": ...}`` (see
    ``StageTimer``) are merged into the object.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "context_fields"):
            log_data.update(record.context_fields)
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class StageTimer:
    """
    Records wall-clock durations of pipeline stages and logs them.

    Durations are kept per stage name so a run summary can be logged at the
    end of a multi-sample run.
    """

    def __init__(self, logger_name: str = "halalseq.performance"):
        self.logger = logging.getLogger(logger_name)
        self.durations: Dict[str, List[float]] = {}

    def record(self, stage: str, duration_seconds: float, **context: Any) -> None:
        self.durations.setdefault(stage, []).append(duration_seconds)
        self.logger.debug(
            f"{stage} completed in {duration_seconds:.2f}s",
            extra={
                "extra_fields": {
                    "stage": stage,
                    "duration_seconds": duration_seconds,
                    **context,
                }
            },
        )

    def record_throughput(self, stage: str, items: int, duration_seconds: float) -> None:
        rate = items / duration_seconds if duration_seconds > 0 else 0.0
        self.record(stage, duration_seconds, items_processed=items, items_per_second=rate)

    def get_summary(self) -> Dict[str, Dict[str, float]]:
        """Count and total/mean/max seconds per stage."""
        summary = {}
        for stage, durations in self.durations.items():
            summary[stage] = {
                "count": len(durations),
                "total_seconds": sum(durations),
                "mean_seconds": sum(durations) / len(durations),
                "max_seconds": max(durations),
            }
        return summary


def setup_logging(
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    enable_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure the root logger for a HalalSeq run.

    Args:
        verbose: Log DEBUG records to the console instead of INFO and above.
        log_dir: When given, also log everything to a rotating file
            ``halalseq_<date>.log`` in this directory.
        enable_json: Use ``StructuredFormatter`` for every handler.
        max_bytes: Maximum size of each log file before rotation.
        backup_count: Number of rotated log files to keep.

    Returns:
        The configured root logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if verbose or log_dir is not None else logging.INFO)
    root_logger.handlers.clear()

    if enable_json:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"halalseq_{datetime.now():%Y%m%d}.log"
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger


class LogContext:
    """Context manager that attaches key/value fields to every log record."""

    def __init__(self, **context: Any):
        self.context = context
        self.old_factory = None

    def __enter__(self):
        old_factory = logging.getLogRecordFactory()

        def record_factory(*args, **kwargs):
            record = old_factory(*args, **kwargs)
            record.context_fields = {**getattr(record, "context_fields", {}), **self.context}
            return record

        logging.setLogRecordFactory(record_factory)
        self.old_factory = old_factory
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.old_factory:
            logging.setLogRecordFactory(self.old_factory)
        return False
