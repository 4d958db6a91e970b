"""Field Classification Service.

Turns one clustered token row from a logbook export into a ProcedureRecord.

The export table has no delimiters, a variable number of optional fields and
free-text columns that may contain arbitrary tokens. Only three fields come
from a closed vocabulary (the date, the role code and the training grade), so
classification runs as a sequence of anchor-finding passes over the token
list, each pass narrowing the span left for the next:

    1. date anchor      first token matching YYYY-MM-DD
    2. before the date  laterality codes, otherwise procedure name
    3. date validation  real calendar date only
    4. after the date   first role code; numeric tokens before it form the patient id.
                        Without a role code the role is P, the leading
                        numeric tokens form the patient id and the row needs
                        a patient id or a grade to count as data
    5. after the role   last grade token; tokens in between form the hospital

Rows that fail any pass are not data rows and yield None. Nothing here keeps
state between rows.
"""

import logging
import re
from datetime import date, datetime
from typing import Iterable, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from proclog.domain.enums import Laterality, Role, TrainingGrade
from proclog.domain.procedure_record import (
    MIN_PROCEDURE_LENGTH,
    UNKNOWN_HOSPITAL,
    ProcedureRecord,
)

logger = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
NUMERIC_PATTERN = re.compile(r"^[\d,\s]+$")
GRADE_PATTERN = re.compile(r"^(ST[1-7]|ASTO|TSC|OLT|FY[12]|CT[12]|FTSTA)$")

LATERALITY_CODES = {
    "L": Laterality.LEFT,
    "R": Laterality.RIGHT,
    "B/L": Laterality.BILATERAL,
}

# Two-character codes first so "PS" is never read as "P"
ROLE_CODES: tuple[str, ...] = ("PS", "SJ", "P", "A")

# Column headers repeated on every page of the export
HEADER_LABELS = frozenset({
    "Procedure",
    "Side",
    "Date",
    "Pt ID",
    "Pt",
    "ID",
    "Role",
    "Hospital",
    "Grade",
})


def find_date_anchor(tokens: Sequence[str]) -> Optional[int]:
    """Return the index of the first YYYY-MM-DD token, or None."""
    for index, token in enumerate(tokens):
        if DATE_PATTERN.match(token):
            return index
    return None


def parse_calendar_date(token: str) -> Optional[date]:
    """Parse a YYYY-MM-DD token, rejecting impossible dates such as 2021-02-30."""
    try:
        return datetime.strptime(token, "%Y-%m-%d").date()
    except ValueError:
        return None


def split_procedure_and_laterality(tokens: Sequence[str]) -> tuple[str, Laterality]:
    """Separate laterality codes from the procedure name before the date anchor.

    Header labels leaking from repeated table headers are dropped. If several
    laterality codes appear, the last one wins.
    """
    laterality = Laterality.UNKNOWN
    words: list[str] = []
    for token in tokens:
        if token in LATERALITY_CODES:
            laterality = LATERALITY_CODES[token]
        elif token in HEADER_LABELS:
            continue
        else:
            words.append(token)
    return " ".join(words).strip(), laterality


def match_role(token: str) -> Optional[Role]:
    """Return the role a token encodes, checking longer codes first."""
    for code in ROLE_CODES:
        if token == code:
            return Role(code)
    return None


def find_role(tokens: Sequence[str]) -> tuple[Optional[int], Optional[Role], str]:
    """Find the role anchor after the date and collect the patient identifier.

    Returns:
        tuple: (index of role token or None, role or None, patient identifier)
    """
    id_parts: list[str] = []
    for index, token in enumerate(tokens):
        role = match_role(token)
        if role is not None:
            return index, role, "".join(id_parts)
        if NUMERIC_PATTERN.match(token):
            id_parts.append(re.sub(r"[,\s]", "", token))
    return None, None, "".join(id_parts)


def leading_identifier(tokens: Sequence[str]) -> tuple[int, str]:
    """Collect the run of numeric tokens at the start of a span.

    Returns:
        tuple: (number of tokens consumed, patient identifier)
    """
    count = 0
    while count < len(tokens) and NUMERIC_PATTERN.match(tokens[count]):
        count += 1
    return count, "".join(re.sub(r"[,\s]", "", t) for t in tokens[:count])


def split_hospital_and_grade(tokens: Sequence[str]) -> tuple[str, TrainingGrade]:
    """Scan backwards for the training grade; tokens before it are the hospital.

    Without a grade token every remaining token is hospital text and the
    grade is UNKNOWN.
    """
    for index in range(len(tokens) - 1, -1, -1):
        if GRADE_PATTERN.match(tokens[index]):
            if index < len(tokens) - 1:
                logger.debug(f"Ignoring {len(tokens) - index - 1} tokens after grade")
            hospital = " ".join(tokens[:index]).strip()
            return hospital or UNKNOWN_HOSPITAL, TrainingGrade.from_code(tokens[index])
    hospital = " ".join(tokens).strip()
    return hospital or UNKNOWN_HOSPITAL, TrainingGrade.UNKNOWN


def classify_row(tokens: Sequence[str]) -> Optional[ProcedureRecord]:
    """Classify one ordered token row.

    Parameters:
        tokens: Row tokens ordered left-to-right

    Returns:
        Optional[ProcedureRecord]: The record, or None if the row is not a data row

    Example:
        ```python
        record = classify_row([
            "Phacoemulsification", "with", "IOL", "R", "2023-05-14",
            "123456", "PS", "Royal", "Eye", "Hospital", "ST3",
        ])
        record.procedure  # "Phacoemulsification with IOL"
        record.role       # Role.PERFORMED_SUPERVISED
        ```
    """
    tokens = [t.strip() for t in tokens if t and t.strip()]

    anchor = find_date_anchor(tokens)
    if anchor is None:
        return None

    procedure, laterality = split_procedure_and_laterality(tokens[:anchor])
    if len(procedure) < MIN_PROCEDURE_LENGTH:
        return None

    procedure_date = parse_calendar_date(tokens[anchor])
    if procedure_date is None:
        logger.debug(f"Rejected row with invalid date {tokens[anchor]!r}")
        return None

    after_date = tokens[anchor + 1:]
    role_index, role, patient_identifier = find_role(after_date)
    if role is None:
        consumed, patient_identifier = leading_identifier(after_date)
        role = Role.PERFORMED
        rest = after_date[consumed:]
    else:
        rest = after_date[role_index + 1:]

    hospital, grade = split_hospital_and_grade(rest)
    if role_index is None and not patient_identifier and grade == TrainingGrade.UNKNOWN:
        # dated footer or note line
        logger.debug("Rejected row without role, patient id or grade")
        return None

    try:
        return ProcedureRecord(
            procedure=procedure,
            laterality=laterality,
            date=procedure_date,
            patient_identifier=patient_identifier,
            role=role,
            hospital=hospital,
            training_grade=grade,
        )
    except PydanticValidationError as e:
        logger.debug(f"Rejected row failing record validation: {e.error_count()} errors")
        return None


def classify_rows(rows: Iterable[Sequence[str]]) -> list[ProcedureRecord]:
    """Classify every row and collect the records, skipping non-data rows."""
    records: list[ProcedureRecord] = []
    skipped = 0
    for row in rows:
        record = classify_row(row)
        if record is None:
            skipped += 1
            continue
        records.append(record)
    logger.debug(f"Classified {len(records)} rows, skipped {skipped}")
    return records
