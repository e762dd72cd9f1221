#!/usr/bin/env python

import gzip
import hashlib
import mimetypes
import pathlib
import re
from typing import Optional, TextIO, Union

SEQUENCE_SUFFIXES = (".fastq", ".fasta", ".fq", ".fa", ".fna")
COMPRESSION_SUFFIXES = (".gz",)


def open_file_transparently(
    file_path: Union[str, pathlib.Path], mode: str = "rt", errors: Optional[str] = None
) -> TextIO:
    """Opens a file, transparently handling gzip compression.

    Infers compression from file extension. Defaults to text read mode.

    Args:
        file_path: Path to the file.
        mode: File open mode (e.g., "rt", "wt"). Defaults to "rt".
        errors: Text decoding error handler, e.g. "replace". Defaults to strict.

    Returns:
        A text file object.

    Raises:
        FileNotFoundError: If the file does not exist.
        IOError: If an I/O error occurs during opening.
        TypeError: If file_path is not a str or pathlib.Path.
    """
    if not isinstance(file_path, (str, pathlib.Path)):
        raise TypeError(
            f"file_path must be a string or pathlib.Path, not {type(file_path)}"
        )

    file_path = pathlib.Path(file_path)

    if "r" in mode and not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    _, encoding = mimetypes.guess_type(str(file_path))

    try:
        if encoding == "gzip":
            return gzip.open(file_path, mode=mode, errors=errors)  # type: ignore
        return open(file_path, mode=mode, errors=errors)
    except (IOError, OSError) as e:
        raise IOError(f"Error opening file {file_path} with mode '{mode}': {e}") from e


def strip_sequence_suffixes(file_name: str) -> str:
    """Removes compression and sequence-format extensions from a file name.

    ``"pork_R1_001.fastq.gz"`` becomes ``"pork_R1_001"``. Matching is
    case-insensitive; unknown extensions are left in place.
    """
    name = file_name
    lowered = name.lower()
    for suffix in COMPRESSION_SUFFIXES:
        if lowered.endswith(suffix):
            name = name[: -len(suffix)]
            lowered = lowered[: -len(suffix)]
            break
    for suffix in SEQUENCE_SUFFIXES:
        if lowered.endswith(suffix):
            name = name[: -len(suffix)]
            break
    return name


def sanitize_sample_name(name: str) -> str:
    """
    Makes a sample name safe for use in output file names.

    Only alphanumeric characters, underscores, hyphens and dots survive, so
    "../" and similar path manipulation cannot leak into output paths.

    Args:
        name: Raw sample name (usually derived from an input file name).

    Returns:
        Sanitized, non-empty sample name.
    """
    safe_name = re.sub(r"[^a-zA-Z0-9_.-]", "_", name)
    safe_name = safe_name.strip("._")

    if not safe_name:
        safe_name = f"sample_{hashlib.md5(name.encode()).hexdigest()[:8]}"

    return safe_name


def is_gzipped(file_path: pathlib.Path) -> bool:
    """True when the path carries a gzip extension."""
    return file_path.name.lower().endswith(COMPRESSION_SUFFIXES)
