"""
Custom exception hierarchy for HalalSeq.

Provides granular exception types so that callers (the pipeline controller,
the command-line runner, or an embedding application) can tell fatal run
errors apart from per-sample and per-record problems.
"""

from typing import Any, Dict, Optional


class HalalSeqException(Exception):
    """Base exception for all HalalSeq errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception with message and optional details.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional context
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


# Reference database exceptions
class DatabaseException(HalalSeqException):
    """Base exception for reference database errors."""
    pass


class CorruptDatabaseError(DatabaseException):
    """Reference database is missing, incomplete or internally inconsistent."""
    pass


# K-mer index exceptions
class IndexException(HalalSeqException):
    """Base exception for k-mer index errors."""
    pass


class IndexLoadFailedError(IndexException):
    """Index file could not be read or is not a valid HalalSeq index."""
    pass


class IndexMismatchError(IndexLoadFailedError):
    """Index was built from a different reference database than the bound one."""
    pass


# Input exceptions
class InputException(HalalSeqException):
    """Base exception for sequencing input errors."""
    pass


class UnreadableInputFileError(InputException):
    """A whole input file cannot be opened or parsed."""
    pass


class MalformedRecordError(InputException):
    """A single read record is empty or contains non-nucleotide characters."""
    pass


class TooManyInputFilesError(InputException):
    """More input files were supplied than a run accepts."""
    pass


# Pipeline exceptions
class PipelineException(HalalSeqException):
    """Base exception for pipeline control errors."""
    pass


class PipelineBusyError(PipelineException):
    """A run was requested while another run is still in progress."""
    pass


class InvalidRunRequestError(PipelineException):
    """A run was requested without an index or without samples."""
    pass


class CancelledError(PipelineException):
    """Raised inside the worker to unwind a cancelled run."""
    pass
