"""
Type definitions for the HalalSeq package.

This module centralizes common type aliases used throughout the HalalSeq
engine to ensure consistency and improve code readability.
"""

from typing import Dict, FrozenSet, List, Tuple

import numpy as np
import numpy.typing as npt

# Type aliases for clarity
KmerHash = int  # Unsigned 64-bit MurmurHash3 of a canonical k-mer.
SpeciesId = str  # Stable species key, e.g. "Sus_scrofa".
MarkerId = str  # Marker key, e.g. "cytb" or "COI".
SpeciesIndex = int  # Position of a species in the reference database.
MarkerIndex = int  # Position of a marker in the reference database.
ReadId = str  # Identifier of a sequencing read (or read pair).
HashSet = FrozenSet[KmerHash]  # Exact set of k-mer hashes.
FractionVector = npt.NDArray[
    np.float64
]  # Per-species fractions, ordered like the reference database species.
EvidenceKey = Tuple[MarkerId, SpeciesId]  # (marker, species) pair of a hit.
EvidenceScores = Dict[EvidenceKey, float]  # Containment score per (marker, species).
EquivalenceClass = Tuple[
    MarkerIndex, Tuple[SpeciesIndex, ...]
]  # A marker and the sorted species a read is consistent with.
RawRecord = Tuple[ReadId, bytes, bytes]  # (read id, forward bytes, reverse bytes).
RecordChunk = List[RawRecord]
