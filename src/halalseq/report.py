"""
Sample reports: per-species percentages, intervals and the halal verdict.

Reports are immutable pydantic models so they can be handed to a caller
thread safely and serialized to JSON as-is.
"""

import json
import logging
import pathlib
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from .abundance import AbundanceEstimate
from .confidence import NO_INTERVAL, ConfidenceIntervals, MarkerAgreement
from .database import HalalStatus, ReferenceDatabase
from .evidence import EvidenceMatrix
from .parameter_config import ReportConfig

logger = logging.getLogger(__name__)

# Agreement thresholds for the confidence label, highest first.
CONFIDENCE_LABELS: Tuple[Tuple[float, str], ...] = (
    (0.95, "Very High"),
    (0.85, "High"),
    (0.70, "Moderate"),
)


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"

    @property
    def description(self) -> str:
        return {
            Verdict.PASS: "HALAL - No haram content detected",
            Verdict.FAIL: "NOT HALAL - Haram content detected",
            Verdict.INCONCLUSIVE: "INCONCLUSIVE - Unable to determine",
        }[self]


def confidence_label(agreement: Optional[float]) -> Optional[str]:
    if agreement is None:
        return None
    for threshold, label in CONFIDENCE_LABELS:
        if agreement >= threshold:
            return label
    return "Low"


class SpeciesReport(BaseModel):
    """Per-species line of a sample report; percentages, -1.0 when not computable."""

    model_config = ConfigDict(frozen=True)

    species_id: str
    display_name: str
    halal_status: HalalStatus
    weight_pct: float = Field(ge=0.0, le=100.0)
    read_pct: float = Field(ge=0.0, le=100.0)
    raw_read_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    ci_lo: float = Field(default=NO_INTERVAL, ge=NO_INTERVAL, le=100.0)
    ci_hi: float = Field(default=NO_INTERVAL, ge=NO_INTERVAL, le=100.0)

    @property
    def has_interval(self) -> bool:
        return self.ci_lo != NO_INTERVAL and self.ci_hi != NO_INTERVAL

    @model_validator(mode="after")
    def check_interval_brackets_estimate(self) -> "SpeciesReport":
        if self.has_interval and not (self.ci_lo <= self.weight_pct <= self.ci_hi):
            raise ValueError(
                f"Interval [{self.ci_lo}, {self.ci_hi}] does not contain {self.weight_pct}"
            )
        return self


class SampleReport(BaseModel):
    """Result of analysing one sample."""

    model_config = ConfigDict(frozen=True)

    sample_name: str
    verdict: Verdict
    total_reads: int = Field(ge=0, description="Classified reads.")
    cross_marker_agreement: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    species: Tuple[SpeciesReport, ...] = ()
    reads_seen: int = Field(default=0, ge=0)
    unclassified_reads: int = Field(default=0, ge=0)
    malformed_reads: int = Field(default=0, ge=0)
    converged: bool = True
    em_iterations: int = Field(default=0, ge=0)
    usable_markers: Tuple[str, ...] = ()

    @computed_field
    @property
    def confidence_label(self) -> Optional[str]:
        return confidence_label(self.cross_marker_agreement)

    def detected_species(self, min_pct: float) -> List[SpeciesReport]:
        return [sp for sp in self.species if sp.weight_pct >= min_pct]

    def to_dataframe(self) -> pd.DataFrame:
        columns = list(SpeciesReport.model_fields)
        df = pd.DataFrame([sp.model_dump(mode="json") for sp in self.species], columns=columns)
        df.insert(0, "sample_name", self.sample_name)
        return df


def determine_verdict(
    species: Iterable[SpeciesReport], total_reads: int, min_report_pct: float
) -> Verdict:
    """
    Verdict from detected species.

    No classified reads gives inconclusive. Any haram species at or above
    ``min_report_pct`` fails the sample; otherwise a detected doubtful or
    unknown species makes it inconclusive, and only halal species passes.
    """
    if total_reads <= 0:
        return Verdict.INCONCLUSIVE
    detected = [sp for sp in species if sp.weight_pct > 0 and sp.weight_pct >= min_report_pct]
    if any(sp.halal_status == HalalStatus.HARAM for sp in detected):
        return Verdict.FAIL
    if any(sp.halal_status in (HalalStatus.DOUBTFUL, HalalStatus.UNKNOWN) for sp in detected):
        return Verdict.INCONCLUSIVE
    if not detected:
        return Verdict.INCONCLUSIVE
    return Verdict.PASS


def _as_pct(fraction: float) -> float:
    return float(np.clip(fraction * 100.0, 0.0, 100.0))


def _bound_pct(fraction: float) -> float:
    return NO_INTERVAL if fraction == NO_INTERVAL else _as_pct(fraction)


class ReportBuilder:
    """Assembles ``SampleReport`` objects for one reference database."""

    def __init__(self, database: ReferenceDatabase, config: Optional[ReportConfig] = None):
        self.database = database
        self.config = config or ReportConfig()

    def build(
        self,
        sample_name: str,
        matrix: EvidenceMatrix,
        estimate: AbundanceEstimate,
        intervals: Optional[ConfidenceIntervals] = None,
        agreement: Optional[MarkerAgreement] = None,
    ) -> SampleReport:
        species_reports = []
        for s_idx, sp in enumerate(self.database.species):
            weight_pct = _as_pct(estimate.weight_fractions[s_idx])
            ci_lo = ci_hi = NO_INTERVAL
            if intervals is not None:
                ci_lo = _bound_pct(intervals.lower[s_idx])
                ci_hi = _bound_pct(intervals.upper[s_idx])
            species_reports.append(
                SpeciesReport(
                    species_id=sp.species_id,
                    display_name=sp.display_name,
                    halal_status=sp.halal_status,
                    weight_pct=weight_pct,
                    read_pct=_as_pct(estimate.read_fractions[s_idx]),
                    raw_read_pct=_as_pct(estimate.raw_read_fractions[s_idx]),
                    ci_lo=ci_lo,
                    ci_hi=ci_hi,
                )
            )

        # Highest weight first; database order among equals.
        order = sorted(range(len(species_reports)), key=lambda i: (-species_reports[i].weight_pct, i))
        species_reports = [species_reports[i] for i in order]

        verdict = determine_verdict(
            species_reports, matrix.classified_reads, self.config.min_report_pct
        )
        marker_ids = self.database.marker_ids
        report = SampleReport(
            sample_name=sample_name,
            verdict=verdict,
            total_reads=matrix.classified_reads,
            cross_marker_agreement=agreement.agreement if agreement else None,
            species=tuple(species_reports),
            reads_seen=matrix.reads_seen,
            unclassified_reads=matrix.unclassified_reads,
            malformed_reads=matrix.malformed_reads,
            converged=estimate.converged,
            em_iterations=estimate.iterations,
            usable_markers=tuple(marker_ids[m] for m in agreement.usable_markers) if agreement else (),
        )
        logger.info(
            f"Sample {sample_name}: verdict={verdict.value}, classified={matrix.classified_reads}/"
            f"{matrix.reads_seen}, agreement={report.cross_marker_agreement}"
        )
        return report


def write_species_report_tsv(report: SampleReport, path: pathlib.Path) -> pathlib.Path:
    report.to_dataframe().to_csv(path, sep="\t", index=False, float_format="%.4f")
    return path


def write_reports_json(reports: Sequence[SampleReport], path: pathlib.Path) -> pathlib.Path:
    with open(path, "w") as f:
        json.dump([r.model_dump(mode="json") for r in reports], f, indent=2)
    return path
