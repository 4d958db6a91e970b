"""Unit tests for the ESR aggregation service."""

from datetime import date

import pytest

from proclog.domain.enums import ESR_GRADES, Role, TrainingGrade
from proclog.domain.services.esr_aggregator import (
    CATEGORY_NAMES,
    WindowPreset,
    build_esr_grid,
    classify_category,
    grid_rows,
    in_window,
    resolve_window,
)


@pytest.fixture
def records(record_factory):
    return [
        record_factory(date=date(2023, 1, 10), patient_identifier="1", role="PS", training_grade="ST3"),
        record_factory(date=date(2023, 2, 10), patient_identifier="2", role="PS", training_grade="ST3"),
        record_factory(date=date(2023, 3, 10), patient_identifier="3", role="P", training_grade="ST4"),
        record_factory(procedure="Trabeculectomy", date=date(2023, 3, 11), patient_identifier="4",
                       role="A", training_grade="ST4"),
        # outside the grid: unknown grade, legacy grade, no category
        record_factory(date=date(2023, 3, 12), patient_identifier="5", training_grade="Unknown"),
        record_factory(date=date(2023, 3, 13), patient_identifier="6", training_grade="FY2"),
        record_factory(procedure="Clinic review", date=date(2023, 3, 14), patient_identifier="7"),
    ]


class TestBuildEsrGrid:
    """Test suite for build_esr_grid."""

    def test_counts(self, records):
        """Test records land in their category, role and grade cell."""
        grid = build_esr_grid(records, end=date(2023, 12, 31))

        assert grid.count("Cataract", Role.PERFORMED_SUPERVISED, TrainingGrade.ST3) == 2
        assert grid.count("Cataract", Role.PERFORMED, TrainingGrade.ST4) == 1
        assert grid.count("Glaucoma", Role.ASSISTED, TrainingGrade.ST4) == 1
        assert grid.count("Cornea", Role.PERFORMED, TrainingGrade.ST1) == 0

    def test_grand_total_counts_only_eligible_records(self, records):
        """Test records outside the grid vocabulary are not counted."""
        grid = build_esr_grid(records, end=date(2023, 12, 31))
        assert grid.grand_total == 4

    def test_totals_agree(self, records):
        """Test row, column and grand totals are consistent."""
        grid = build_esr_grid(records, end=date(2023, 12, 31))

        assert sum(grid.row_totals.values()) == grid.grand_total
        assert sum(grid.column_totals.values()) == grid.grand_total
        assert grid.row_totals[("Cataract", "PS")] == 2
        assert grid.column_totals["ST4"] == 2
        assert grid.category_totals()["Cataract"] == 3

    def test_every_cell_present(self):
        """Test an empty record set still yields the full zero grid."""
        grid = build_esr_grid([], end=date(2023, 12, 31))

        assert grid.table.shape == (len(CATEGORY_NAMES) * 4, len(ESR_GRADES))
        assert grid.grand_total == 0
        assert grid_rows(grid) == []

    def test_window_is_inclusive(self, records):
        """Test records on either bound are counted."""
        grid = build_esr_grid(records, start=date(2023, 2, 10), end=date(2023, 3, 10))

        assert grid.grand_total == 2
        assert grid.start == date(2023, 2, 10)
        assert grid.end == date(2023, 3, 10)

    def test_end_defaults_to_now(self, records):
        """Test the window end falls back to the reference date."""
        grid = build_esr_grid(records, now=date(2023, 1, 31))
        assert grid.end == date(2023, 1, 31)
        assert grid.grand_total == 1

    def test_grid_rows(self, records):
        """Test only non-empty rows are listed, with role labels."""
        grid = build_esr_grid(records, end=date(2023, 12, 31))
        rows = grid_rows(grid)

        assert [(category, label, total) for category, label, _, total in rows] == [
            ("Cataract", "Performed", 1),
            ("Cataract", "Performed Supervised", 2),
            ("Glaucoma", "Assisted", 1),
        ]
        st3 = [g.value for g in ESR_GRADES].index("ST3")
        assert rows[1][2][st3] == 2

    def test_to_frame_adds_totals(self, records):
        """Test the display frame carries a Total column and row."""
        frame = build_esr_grid(records, end=date(2023, 12, 31)).to_frame()

        assert "Total" in frame.columns
        assert frame.loc[("Total", ""), "Total"] == 4
        assert frame.loc[("Cataract", "PS"), "Total"] == 2


class TestClassifyCategory:
    """Test suite for classify_category."""

    @pytest.mark.parametrize("procedure,category", [
        ("Phacoemulsification with IOL", "Cataract"),
        ("Trabeculectomy with MMC", "Glaucoma"),
        ("Pars plana vitrectomy", "Vitreoretinal"),
        ("DMEK", "Cornea"),
        ("Upper lid blepharoplasty", "Oculoplastics"),
        ("Bilateral medial rectus recession", "Strabismus"),
        ("Intravitreal anti-VEGF", "Intravitreal injection"),
        ("YAG laser capsulotomy", "Laser"),
    ])
    def test_categories(self, procedure, category):
        """Test representative procedures map to their category."""
        assert classify_category(procedure) == category

    def test_first_match_wins(self):
        """Test combined procedures fall into the earlier category."""
        assert classify_category("Phaco + trabeculectomy") == "Cataract"

    @pytest.mark.parametrize("procedure,category", [
        ("Vitrectomy with IOL exchange", "Vitreoretinal"),
        ("Secondary IOL insertion", "Cataract"),
        ("Lateral rectus resection", "Strabismus"),
        ("Conjunctival tumour resection", None),
        ("Glaucoma drainage tubes", "Glaucoma"),
    ])
    def test_keywords_match_word_starts(self, procedure, category):
        """Test keywords do not match inside unrelated words or procedures."""
        assert classify_category(procedure) == category

    def test_unmatched(self):
        """Test unknown procedures have no category."""
        assert classify_category("Clinic review") is None


class TestResolveWindow:
    """Test suite for resolve_window."""

    NOW = date(2024, 3, 15)

    @pytest.mark.parametrize("preset,start", [
        (WindowPreset.LAST_MONTH, date(2024, 2, 1)),
        (WindowPreset.LAST_6_MONTHS, date(2023, 9, 1)),
        (WindowPreset.LAST_YEAR, date(2023, 3, 1)),
        (WindowPreset.ALL_TIME, None),
    ])
    def test_presets(self, preset, start):
        """Test relative presets start on the first of a month and end today."""
        assert resolve_window(preset, now=self.NOW) == (start, self.NOW)

    def test_last_month_in_january(self):
        """Test the previous month wraps into the previous year."""
        assert resolve_window("last_month", now=date(2024, 1, 20)) == (date(2023, 12, 1), date(2024, 1, 20))

    def test_custom(self):
        """Test custom bounds pass through, with the end defaulting to today."""
        assert resolve_window(WindowPreset.CUSTOM, now=self.NOW, start=date(2023, 1, 1),
                              end=date(2023, 6, 30)) == (date(2023, 1, 1), date(2023, 6, 30))
        assert resolve_window(WindowPreset.CUSTOM, now=self.NOW, start=date(2023, 1, 1)) == (
            date(2023, 1, 1), self.NOW,
        )

    def test_unknown_preset(self):
        """Test an unknown preset name is rejected."""
        with pytest.raises(ValueError):
            resolve_window("fortnight", now=self.NOW)

    def test_in_window(self):
        """Test inclusive membership with an open start."""
        assert in_window(date(2000, 1, 1), None, self.NOW)
        assert in_window(self.NOW, self.NOW, self.NOW)
        assert not in_window(date(2024, 3, 16), None, self.NOW)
