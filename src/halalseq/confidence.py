"""
Uncertainty of abundance estimates.

- Bootstrap intervals: resample the evidence matrix's class weights and
  re-run EM to get percentile intervals per species.
- Cross-marker agreement: estimate abundances independently from each
  marker with enough evidence and measure how well they agree.
"""

import itertools
import logging
from typing import List, NamedTuple, Optional

import numpy as np

from .abundance import AbundanceEstimate, AbundanceEstimator
from .evidence import EvidenceMatrix
from .genomic_types import FractionVector, MarkerIndex
from .parameter_config import ConfidenceConfig

logger = logging.getLogger(__name__)

# Bound not computable for this species (no evidence, no resampling).
NO_INTERVAL = -1.0


class ConfidenceIntervals(NamedTuple):
    lower: FractionVector
    upper: FractionVector


class MarkerAgreement(NamedTuple):
    agreement: Optional[float]
    usable_markers: List[MarkerIndex]


def bootstrap_intervals(
    matrix: EvidenceMatrix,
    estimate: AbundanceEstimate,
    estimator: AbundanceEstimator,
    config: Optional[ConfidenceConfig] = None,
) -> ConfidenceIntervals:
    """
    Percentile bootstrap intervals on biomass fractions.

    Each replicate draws a multinomial sample of the class weights with the
    same total number of reads and re-runs EM. Bounds are the
    ``(1 - level) / 2`` and ``1 - (1 - level) / 2`` percentiles, widened where
    needed so that ``lower <= estimate <= upper`` always holds.

    Species without evidence, empty matrices and ``n_bootstrap == 0`` get
    ``NO_INTERVAL`` for both bounds. Results are reproducible for a fixed
    ``random_seed``.
    """
    config = config or ConfidenceConfig()
    num_species = matrix.num_species
    lower = np.full(num_species, NO_INTERVAL)
    upper = np.full(num_species, NO_INTERVAL)
    if config.n_bootstrap == 0 or matrix.is_empty:
        return ConfidenceIntervals(lower, upper)

    weights = np.array([weight for _, weight in matrix.classes()], dtype=np.float64)
    total = weights.sum()
    n_reads = max(int(round(total)), 1)
    probabilities = weights / total

    rng = np.random.default_rng(config.random_seed)
    replicates = np.empty((config.n_bootstrap, num_species), dtype=np.float64)
    for b in range(config.n_bootstrap):
        counts = rng.multinomial(n_reads, probabilities)
        resampled = matrix.with_class_weights(counts * (total / n_reads))
        replicates[b] = estimator.estimate(resampled).weight_fractions

    alpha = (1.0 - config.confidence_level) / 2.0
    q_lower = np.percentile(replicates, 100.0 * alpha, axis=0)
    q_upper = np.percentile(replicates, 100.0 * (1.0 - alpha), axis=0)

    point = estimate.weight_fractions
    evidenced = matrix.evidenced_species()
    lower[evidenced] = np.minimum(q_lower, point)[evidenced]
    upper[evidenced] = np.maximum(q_upper, point)[evidenced]
    logger.debug(f"Bootstrap finished with {config.n_bootstrap} replicates over {n_reads} reads")
    return ConfidenceIntervals(lower, upper)


def total_variation_distance(a: np.ndarray, b: np.ndarray) -> float:
    return 0.5 * float(np.abs(a - b).sum())


def cross_marker_agreement(
    matrix: EvidenceMatrix,
    estimator: AbundanceEstimator,
    config: Optional[ConfidenceConfig] = None,
) -> MarkerAgreement:
    """
    Agreement between per-marker abundance estimates.

    A marker is usable when its read weight reaches ``min_marker_reads``.
    Agreement is one minus the mean pairwise total-variation distance
    between the usable markers' biomass vectors, so 1.0 means identical
    estimates. It is ``None`` with fewer than two usable markers.
    """
    config = config or ConfidenceConfig()
    marker_weights = matrix.marker_weights()
    usable = [
        m
        for m, weight in enumerate(marker_weights)
        if weight > 0 and weight >= config.min_marker_reads
    ]
    if len(usable) < 2:
        return MarkerAgreement(None, usable)

    vectors = [estimator.estimate(matrix.restricted_to_marker(m)).weight_fractions for m in usable]
    distances = [total_variation_distance(a, b) for a, b in itertools.combinations(vectors, 2)]
    agreement = float(np.clip(1.0 - np.mean(distances), 0.0, 1.0))
    return MarkerAgreement(agreement, usable)
