"""Shared fixtures for proclog tests."""

from datetime import date

import pytest

from proclog.adapters.storage import DuckDBAdapter
from proclog.domain.enums import Laterality, Role, TrainingGrade
from proclog.domain.ports import TextExtractionPort, TextFragment
from proclog.domain.procedure_record import ProcedureRecord


def make_record(**overrides) -> ProcedureRecord:
    """Build a valid ProcedureRecord, overriding any field."""
    data = {
        "procedure": "Phacoemulsification with IOL",
        "laterality": Laterality.RIGHT,
        "date": date(2023, 5, 14),
        "patient_identifier": "123456",
        "role": Role.PERFORMED_SUPERVISED,
        "hospital": "Royal Eye Hospital",
        "training_grade": TrainingGrade.ST3,
    }
    data.update(overrides)
    return ProcedureRecord(**data)


def rows_to_page(rows: list[list[str]], top: float = 700.0, line_height: float = 14.0) -> list[TextFragment]:
    """Lay token rows out as fragments the way a PDF text layer would."""
    fragments = []
    for row_index, tokens in enumerate(rows):
        y = top - row_index * line_height
        for token_index, token in enumerate(tokens):
            fragments.append(TextFragment(text=token, x=40.0 + token_index * 60.0, y=y))
    return fragments


class FakeExtractor(TextExtractionPort):
    """Extractor returning prepared pages, or raising a prepared error."""

    def __init__(self, pages=None, error: Exception = None):
        self.pages = pages or []
        self.error = error
        self.calls = []

    def extract(self, source):
        self.calls.append(source)
        if self.error is not None:
            raise self.error
        return self.pages

    def can_extract(self, source):
        return True


LOGBOOK_ROWS = [
    ["Procedure", "Side", "Date", "Pt", "ID", "Role", "Hospital", "Grade"],
    ["Phacoemulsification", "with", "IOL", "R", "2023-05-14", "123456", "PS", "Royal", "Eye", "Hospital", "ST3"],
    ["Phacoemulsification", "with", "IOL", "L", "2023-05-21", "654321", "P", "Royal", "Eye", "Hospital", "ST3"],
    ["Trabeculectomy", "L", "2023-06-02", "112233", "A", "County", "Hospital", "ST4"],
    ["Page", "1", "of", "1"],
]


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def store():
    adapter = DuckDBAdapter(db_path=":memory:")
    result = adapter.initialize_schema()
    assert result.is_success()
    yield adapter
    adapter.close()


@pytest.fixture
def logbook_pages():
    return [rows_to_page(LOGBOOK_ROWS)]


@pytest.fixture
def page_builder():
    return rows_to_page


@pytest.fixture
def make_extractor():
    return FakeExtractor
