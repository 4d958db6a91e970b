"""Closed vocabularies for logbook procedure records.

The upstream logbook export encodes laterality, role and training grade as
short codes. Each enum keeps the canonical value that is persisted and a
``from_code`` helper that maps the export's code onto it.
"""

from enum import Enum
from typing import Optional


class Laterality(str, Enum):
    """Which eye a procedure was performed on."""
    LEFT = "Left"
    RIGHT = "Right"
    BILATERAL = "Bilateral"
    UNKNOWN = "Unknown"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "Laterality":
        """Map an export side code (L, R, B/L) or a full name to a Laterality."""
        if code is None:
            return cls.UNKNOWN
        value = str(code).strip()
        mapping = {
            "l": cls.LEFT,
            "left": cls.LEFT,
            "r": cls.RIGHT,
            "right": cls.RIGHT,
            "b/l": cls.BILATERAL,
            "b": cls.BILATERAL,
            "bilateral": cls.BILATERAL,
        }
        return mapping.get(value.lower(), cls.UNKNOWN)


class Role(str, Enum):
    """Trainee role for a logged procedure (export role codes)."""
    PERFORMED = "P"
    PERFORMED_SUPERVISED = "PS"
    SUPERVISED_JUNIOR = "SJ"
    ASSISTED = "A"

    @property
    def label(self) -> str:
        return _ROLE_LABELS[self]

    @classmethod
    def from_code(cls, code: str) -> "Role":
        """Map a role code or label to a Role.

        Raises:
            ValueError: If the value is neither a known code nor a label
        """
        value = str(code).strip()
        try:
            return cls(value.upper())
        except ValueError:
            pass
        for role, label in _ROLE_LABELS.items():
            if label.lower() == value.lower() or role.name.lower() == value.lower():
                return role
        raise ValueError(f"Unknown role code: {code!r}")


_ROLE_LABELS = {
    Role.PERFORMED: "Performed",
    Role.PERFORMED_SUPERVISED: "Performed Supervised",
    Role.SUPERVISED_JUNIOR: "Supervised Junior",
    Role.ASSISTED: "Assisted",
}


class TrainingGrade(str, Enum):
    """Trainee seniority at the time of the procedure.

    FY1/FY2 and CT1/CT2 are legacy grades still present in older exports;
    they are stored but sit outside the ESR grid vocabulary.
    """
    ST1 = "ST1"
    ST2 = "ST2"
    ST3 = "ST3"
    ST4 = "ST4"
    ST5 = "ST5"
    ST6 = "ST6"
    ST7 = "ST7"
    ASTO = "ASTO"
    TSC = "TSC"
    OLT = "OLT"
    FY1 = "FY1"
    FY2 = "FY2"
    CT1 = "CT1"
    CT2 = "CT2"
    UNKNOWN = "Unknown"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "TrainingGrade":
        """Normalize a grade token. ``FTSTA`` is a historical alias of ST1."""
        if code is None:
            return cls.UNKNOWN
        value = str(code).strip().upper()
        if value == "FTSTA":
            return cls.ST1
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# Grades that form the columns of the ESR summary grid, in display order
ESR_GRADES: tuple[TrainingGrade, ...] = (
    TrainingGrade.ST1,
    TrainingGrade.ST2,
    TrainingGrade.ST3,
    TrainingGrade.ST4,
    TrainingGrade.ST5,
    TrainingGrade.ST6,
    TrainingGrade.ST7,
    TrainingGrade.ASTO,
    TrainingGrade.TSC,
    TrainingGrade.OLT,
)

ESR_ROLES: tuple[Role, ...] = (
    Role.PERFORMED,
    Role.PERFORMED_SUPERVISED,
    Role.SUPERVISED_JUNIOR,
    Role.ASSISTED,
)


class ComplicationType(str, Enum):
    """Intra/post-operative complication recorded against a case."""
    POSTERIOR_CAPSULE_RUPTURE = "Posterior capsule rupture"
    VITREOUS_LOSS = "Vitreous loss"
    DROPPED_NUCLEUS = "Dropped nucleus"
    ZONULAR_DIALYSIS = "Zonular dialysis"
    IRIS_TRAUMA = "Iris trauma"
    CORNEAL_WOUND_BURN = "Corneal wound burn"
    RETAINED_LENS_MATERIAL = "Retained lens material"
    SUPRACHOROIDAL_HAEMORRHAGE = "Suprachoroidal haemorrhage"
    ENDOPHTHALMITIS = "Endophthalmitis"
    OTHER = "Other"

    @classmethod
    def from_value(cls, value: str) -> "ComplicationType":
        """Accept the stored label, the member name, or the PCR abbreviation."""
        text = str(value).strip()
        if text.upper() == "PCR":
            return cls.POSTERIOR_CAPSULE_RUPTURE
        for member in cls:
            if member.value.lower() == text.lower() or member.name.lower() == text.lower():
                return member
        raise ValueError(f"Unknown complication type: {value!r}")
