"""Complication Rate Analytics.

Cumulative posterior capsule rupture (PCR) rate over an owner's cataract cases,
plus the summary views shown alongside it (role breakdown, monthly counts).

The series is computed as a left fold over the date-ordered cases. The fold
state is ``(points, pcr_count, last_step)``; nothing is kept between calls.
"""

import logging
from dataclasses import dataclass
from datetime import date
from functools import reduce
from typing import Iterable, Optional

from proclog.domain.enums import Role
from proclog.domain.procedure_record import ProcedureRecord

logger = logging.getLogger(__name__)

DEFAULT_STEP = 3
CATARACT_MARKERS = ("phaco", "cataract")
PCR_MARKERS = ("pcr", "posterior capsule")


@dataclass(frozen=True)
class RatePoint:
    """One point of the PCR rate series.

    Attributes:
        index: 1-based case number
        date: Date of the case
        is_pcr: Whether this case had a PCR
        cumulative_count: PCR cases up to and including this one
        cumulative_rate: cumulative_count / index * 100
        stepped_rate: Last snapshotted cumulative rate
    """
    index: int
    date: date
    is_pcr: bool
    cumulative_count: int
    cumulative_rate: float
    stepped_rate: float


@dataclass(frozen=True)
class PhacoSummary:
    total: int
    performed: int
    supervised: int
    assisted: int
    pcr_count: int
    pcr_rate: float


def is_cataract_procedure(record: ProcedureRecord) -> bool:
    procedure = record.procedure.lower()
    return any(marker in procedure for marker in CATARACT_MARKERS)


def is_pcr(record: ProcedureRecord) -> bool:
    """True when a complication flag, cause or action mentions a PCR."""
    texts = [flag.value for flag in record.complication_flags]
    texts.extend(t for t in (record.complication_cause, record.complication_action) if t)
    return any(marker in text.lower() for text in texts for marker in PCR_MARKERS)


def cataract_cases(records: Iterable[ProcedureRecord]) -> list[ProcedureRecord]:
    """Cataract records ordered by date; same-day cases keep their input order."""
    return sorted((r for r in records if is_cataract_procedure(r)), key=lambda r: r.date)


def compute_pcr_series(records: Iterable[ProcedureRecord], step: int = DEFAULT_STEP) -> list[RatePoint]:
    """Compute the cumulative and stepped PCR rate series.

    The stepped rate takes a snapshot of the cumulative rate at every
    ``step``-th case and at the final case, holding its last value in between.
    Before the first snapshot it is 0.

    Parameters:
        records: Owner's records, in ingestion order
        step: Snapshot interval

    Returns:
        list[RatePoint]: One point per cataract case

    Example:
        ```python
        series = compute_pcr_series(records)
        [round(p.cumulative_rate, 1) for p in series]
        # [100.0, 50.0, 33.3, 25.0, 40.0, 33.3, 28.6]
        [round(p.stepped_rate, 1) for p in series]
        # [0.0, 0.0, 33.3, 33.3, 33.3, 33.3, 28.6]
        ```
    """
    if step < 1:
        raise ValueError(f"step must be positive, got {step}")

    cases = cataract_cases(records)
    total = len(cases)

    def fold(state, item):
        points, count, last_step = state
        index, record = item
        pcr = is_pcr(record)
        count += int(pcr)
        rate = count / index * 100
        if index % step == 0 or index == total:
            last_step = rate
        point = RatePoint(
            index=index,
            date=record.date,
            is_pcr=pcr,
            cumulative_count=count,
            cumulative_rate=rate,
            stepped_rate=last_step,
        )
        points.append(point)
        return points, count, last_step

    points, _, _ = reduce(fold, enumerate(cases, start=1), ([], 0, 0.0))
    return points


def role_breakdown(records: Iterable[ProcedureRecord]) -> dict[Role, int]:
    """Count cataract cases per role, every role present."""
    counts = {role: 0 for role in Role}
    for record in records:
        if is_cataract_procedure(record):
            counts[record.role] += 1
    return counts


def monthly_counts(records: Iterable[ProcedureRecord]) -> list[tuple[str, int]]:
    """Cataract cases per calendar month as ("YYYY-MM", count), oldest first."""
    counts: dict[str, int] = {}
    for record in records:
        if is_cataract_procedure(record):
            key = record.date.strftime("%Y-%m")
            counts[key] = counts.get(key, 0) + 1
    return sorted(counts.items())


def phaco_summary(records: Iterable[ProcedureRecord], start: Optional[date] = None,
                  end: Optional[date] = None) -> PhacoSummary:
    """Summarise cataract cases within an inclusive window.

    Performed counts P and PS; supervised counts SJ.
    """
    cases = [
        r for r in cataract_cases(records)
        if (start is None or r.date >= start) and (end is None or r.date <= end)
    ]
    roles = role_breakdown(cases)
    pcr_count = sum(1 for r in cases if is_pcr(r))
    total = len(cases)
    return PhacoSummary(
        total=total,
        performed=roles[Role.PERFORMED] + roles[Role.PERFORMED_SUPERVISED],
        supervised=roles[Role.SUPERVISED_JUNIOR],
        assisted=roles[Role.ASSISTED],
        pcr_count=pcr_count,
        pcr_rate=(pcr_count / total * 100) if total else 0.0,
    )
