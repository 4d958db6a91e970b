"""ESR Aggregation Service.

Buckets procedure records into the Electronic Summary Record grid: one row per
(clinical category, role), one column per training grade, with row totals,
column totals and a grand total.

Only records whose role and grade are both in the grid vocabularies
(``ESR_ROLES`` x ``ESR_GRADES``) and whose procedure maps to a category are
counted. Everything here is a pure function of the record set and window.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Iterable, Optional, Sequence

import pandas as pd

from proclog.domain.enums import ESR_GRADES, ESR_ROLES, Role, TrainingGrade
from proclog.domain.procedure_record import ProcedureRecord

logger = logging.getLogger(__name__)

# Ordered category -> keywords table. Keywords match at the start of a word.
# First matching category wins, so combined procedures
# ("Phaco + trabeculectomy") fall into the earlier row.
ESR_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Cataract", ("phaco", "cataract", "lens extraction", "secondary iol", "iol insertion")),
    ("Glaucoma", ("trabeculectomy", "trab", "tube", "glaucoma", "goniotomy", "iridectomy")),
    ("Vitreoretinal", ("vitrectomy", "retinal detachment", "scleral buckle", "epiretinal", "macular hole")),
    ("Cornea", ("keratoplasty", "cornea", "dalk", "dsaek", "dmek", "pterygium", "cross-link")),
    ("Oculoplastics", (
        "eyelid", "lid", "ptosis", "blepharoplasty", "entropion", "ectropion",
        "dcr", "dacryocystorhinostomy", "chalazion", "orbit", "enucleation",
    )),
    ("Strabismus", ("strabismus", "squint", "rectus", "oblique", "recession", "muscle resection")),
    ("Intravitreal injection", ("intravitreal", "ivt", "anti-vegf")),
    ("Laser", ("laser", "yag", "slt", "prp", "photocoagulation")),
)

CATEGORY_NAMES: tuple[str, ...] = tuple(name for name, _ in ESR_CATEGORIES)

_CATEGORY_PATTERNS: tuple[tuple[str, re.Pattern], ...] = tuple(
    (name, re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + ")", re.IGNORECASE))
    for name, keywords in ESR_CATEGORIES
)


class WindowPreset(str, Enum):
    """Analytics time-window presets."""
    LAST_MONTH = "last_month"
    LAST_6_MONTHS = "last_6_months"
    LAST_YEAR = "last_year"
    ALL_TIME = "all_time"
    CUSTOM = "custom"


def _months_back(today: date, months: int) -> date:
    """First day of the month ``months`` before ``today``'s month."""
    index = today.year * 12 + (today.month - 1) - months
    return date(index // 12, index % 12 + 1, 1)


def resolve_window(
    preset: WindowPreset = WindowPreset.ALL_TIME,
    now: Optional[date] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> tuple[Optional[date], date]:
    """Turn a preset into an inclusive (start, end) window.

    Relative presets start on the first day of a calendar month and end today.
    ``custom`` uses the given bounds, with the end defaulting to today.

    Parameters:
        preset: Which window to resolve
        now: Reference date (defaults to today)
        start: Custom start date
        end: Custom end date

    Returns:
        tuple: (start or None for unbounded, end)
    """
    today = now or date.today()
    preset = WindowPreset(preset)
    if preset == WindowPreset.LAST_MONTH:
        return _months_back(today, 1), today
    if preset == WindowPreset.LAST_6_MONTHS:
        return _months_back(today, 6), today
    if preset == WindowPreset.LAST_YEAR:
        return _months_back(today, 12), today
    if preset == WindowPreset.CUSTOM:
        return start, end or today
    return None, today


def in_window(record_date: date, start: Optional[date], end: date) -> bool:
    """Inclusive window membership; an unbounded start admits everything before end."""
    return (start is None or record_date >= start) and record_date <= end


def classify_category(procedure: str) -> Optional[str]:
    """Return the first category with a keyword starting a word of the procedure name."""
    for name, pattern in _CATEGORY_PATTERNS:
        if pattern.search(procedure):
            return name
    return None


@dataclass(frozen=True, eq=False)
class EsrGrid:
    """ESR summary grid.

    Attributes:
        table: Counts indexed by (category, role code), one column per grade code.
               Every category/role/grade combination is present (zero-filled).
        start: Inclusive window start (None for unbounded)
        end: Inclusive window end
    """

    table: pd.DataFrame
    start: Optional[date]
    end: date

    def count(self, category: str, role: Role, grade: TrainingGrade) -> int:
        return int(self.table.at[(category, Role(role).value), TrainingGrade(grade).value])

    @property
    def row_totals(self) -> dict[tuple[str, str], int]:
        """Total per (category, role) across grades."""
        return {key: int(value) for key, value in self.table.sum(axis=1).items()}

    @property
    def column_totals(self) -> dict[str, int]:
        """Total per grade across categories and roles."""
        return {key: int(value) for key, value in self.table.sum(axis=0).items()}

    @property
    def grand_total(self) -> int:
        return int(self.table.to_numpy().sum())

    def category_totals(self) -> dict[str, int]:
        """Total per category across roles and grades."""
        summed = self.table.sum(axis=1).groupby(level="category", sort=False).sum()
        return {key: int(value) for key, value in summed.items()}

    def to_frame(self, with_totals: bool = True) -> pd.DataFrame:
        """Display frame with a Total column and, optionally, a Total row."""
        frame = self.table.copy()
        if with_totals:
            frame["Total"] = frame.sum(axis=1)
            totals = frame.sum(axis=0).to_frame().T
            totals.index = pd.MultiIndex.from_tuples([("Total", "")], names=frame.index.names)
            frame = pd.concat([frame, totals])
        return frame


def _empty_table() -> pd.DataFrame:
    index = pd.MultiIndex.from_product(
        [list(CATEGORY_NAMES), [r.value for r in ESR_ROLES]],
        names=["category", "role"],
    )
    return pd.DataFrame(0, index=index, columns=[g.value for g in ESR_GRADES], dtype="int64")


def build_esr_grid(
    records: Iterable[ProcedureRecord],
    start: Optional[date] = None,
    end: Optional[date] = None,
    now: Optional[date] = None,
) -> EsrGrid:
    """Count in-window records into the ESR grid.

    Parameters:
        records: Full record set of one owner
        start: Inclusive window start (None for unbounded)
        end: Inclusive window end (defaults to today)
        now: Reference date used when ``end`` is None

    Returns:
        EsrGrid: The populated grid
    """
    end = end or now or date.today()
    roles = {r.value for r in ESR_ROLES}
    grades = {g.value for g in ESR_GRADES}

    rows: list[dict] = []
    excluded = 0
    for record in records:
        if not in_window(record.date, start, end):
            continue
        category = classify_category(record.procedure)
        if category is None or record.role.value not in roles or record.training_grade.value not in grades:
            excluded += 1
            continue
        rows.append({
            "category": category,
            "role": record.role.value,
            "grade": record.training_grade.value,
        })

    table = _empty_table()
    if rows:
        counts = (
            pd.DataFrame(rows)
            .groupby(["category", "role", "grade"])
            .size()
            .unstack("grade", fill_value=0)
        )
        table = table.add(counts, fill_value=0).reindex_like(table).fillna(0).astype("int64")

    logger.debug(f"ESR grid: {len(rows)} records counted, {excluded} in-window records excluded")
    return EsrGrid(table=table, start=start, end=end)


def grid_rows(grid: EsrGrid, categories: Sequence[str] = CATEGORY_NAMES) -> list[tuple[str, str, list[int], int]]:
    """Flatten non-empty grid rows as (category, role label, counts per grade, total)."""
    result = []
    for category in categories:
        for role in ESR_ROLES:
            counts = [grid.count(category, role, grade) for grade in ESR_GRADES]
            total = sum(counts)
            if total:
                result.append((category, role.label, counts, total))
    return result
