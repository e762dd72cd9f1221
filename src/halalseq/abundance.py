"""
Abundance estimation from an evidence matrix.

Reads that fit several species are apportioned by expectation-maximisation:
each ambiguous class's weight is split among its species in proportion to
their current read-mass fractions, and the fractions are re-estimated from
the split. Read mass is then converted to biomass by dividing by each
species' mitochondrial copy number.

The estimator is a pure function of one ``EvidenceMatrix``: running it twice
on the same matrix gives the same answer.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .evidence import EvidenceMatrix
from .genomic_types import FractionVector
from .parameter_config import EstimatorConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class AbundanceEstimate:
    """
    Result of one EM run.

    Attributes:
        weight_fractions: Copy-number corrected biomass fractions.
        read_fractions: EM read-mass fractions before copy-number correction.
        raw_read_fractions: Naive shares, each read split evenly across the
            species of its class.
        iterations: EM iterations performed.
        converged: Whether the biomass change dropped below tolerance.
    """

    weight_fractions: FractionVector
    read_fractions: FractionVector
    raw_read_fractions: FractionVector
    iterations: int
    converged: bool

    def to_dataframe(self, species_ids: Sequence[str]) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "weight_fraction": self.weight_fractions,
                "read_fraction": self.read_fractions,
                "raw_read_fraction": self.raw_read_fractions,
            },
            index=pd.Index(list(species_ids), name="species_id"),
        )


def _normalized(values: np.ndarray) -> np.ndarray:
    total = values.sum()
    if total <= 0:
        return np.zeros_like(values)
    return values / total


class AbundanceEstimator:
    """
    EM abundance estimator.

    Args:
        copy_numbers: Mitochondrial copy number per species, in database
            order. All must be positive.
        config: Iteration limit, tolerance and initialisation floor.
    """

    def __init__(
        self, copy_numbers: Sequence[float], config: Optional[EstimatorConfig] = None
    ) -> None:
        self.copy_numbers = np.asarray(copy_numbers, dtype=np.float64)
        if self.copy_numbers.ndim != 1 or np.any(self.copy_numbers <= 0):
            raise ValueError("Copy numbers must be a vector of positive values.")
        self.config = config or EstimatorConfig()

    def _to_biomass(self, read_mass: np.ndarray) -> np.ndarray:
        return _normalized(read_mass / self.copy_numbers)

    def initial_fractions(self, matrix: EvidenceMatrix) -> np.ndarray:
        """
        Starting read-mass fractions.

        Proportional to unique (single-species) read weight. Species seen
        only in ambiguous classes start at ``init_floor``; with no unique
        reads at all, every evidenced species starts equal.
        """
        evidenced = matrix.evidenced_species()
        unique = matrix.unique_weights()
        if unique.sum() > 0:
            theta = _normalized(unique)
            theta[evidenced & (unique == 0)] = self.config.init_floor
            return _normalized(theta)
        return _normalized(evidenced.astype(np.float64))

    def estimate(self, matrix: EvidenceMatrix) -> AbundanceEstimate:
        num_species = matrix.num_species
        if num_species != len(self.copy_numbers):
            raise ValueError(
                f"Matrix has {num_species} species but {len(self.copy_numbers)} copy numbers were given."
            )

        classes = matrix.classes()
        if not classes:
            zeros = np.zeros(num_species, dtype=np.float64)
            return AbundanceEstimate(zeros, zeros.copy(), zeros.copy(), 0, True)

        # Flattened class membership: entry e links class_of[e] to species_of[e].
        class_weights = np.array([weight for _, weight in classes], dtype=np.float64)
        class_sizes = np.array([len(species) for (_, species), _ in classes])
        class_of = np.repeat(np.arange(len(classes)), class_sizes)
        species_of = np.concatenate([np.asarray(species) for (_, species), _ in classes])
        total_weight = class_weights.sum()

        raw = np.bincount(
            species_of,
            weights=(class_weights / class_sizes)[class_of],
            minlength=num_species,
        )
        raw_read_fractions = _normalized(raw)

        theta = self.initial_fractions(matrix)
        biomass = self._to_biomass(theta)
        converged = False
        iterations = 0
        for iterations in range(1, self.config.max_iterations + 1):
            # E-step: responsibilities of each species within each class.
            member_mass = theta[species_of]
            class_mass = np.bincount(class_of, weights=member_mass, minlength=len(classes))
            denom = class_mass[class_of]
            responsibility = np.where(
                denom > 0,
                member_mass / np.where(denom > 0, denom, 1.0),
                1.0 / class_sizes[class_of],
            )
            # M-step: read mass per species.
            read_mass = np.bincount(
                species_of,
                weights=class_weights[class_of] * responsibility,
                minlength=num_species,
            )
            theta = read_mass / total_weight

            new_biomass = self._to_biomass(theta)
            delta = float(np.abs(new_biomass - biomass).sum())
            biomass = new_biomass
            if delta < self.config.tolerance:
                converged = True
                break

        if not converged:
            logger.warning(
                f"EM did not converge within {self.config.max_iterations} iterations"
            )
        logger.debug(f"EM finished after {iterations} iteration(s), converged={converged}")
        return AbundanceEstimate(biomass, theta, raw_read_fractions, iterations, converged)
