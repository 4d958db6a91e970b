"""Domain layer for proclog.

Procedure record models, closed vocabularies and the ports adapters implement.
All domain models are pure Python with no external dependencies beyond Pydantic.
"""

from .enums import (
    ESR_GRADES,
    ESR_ROLES,
    ComplicationType,
    Laterality,
    Role,
    TrainingGrade,
)
from .procedure_record import (
    ComplicationCase,
    IngestResult,
    ProcedureRecord,
    RecordPatch,
)

__all__ = [
    "ESR_GRADES",
    "ESR_ROLES",
    "ComplicationType",
    "Laterality",
    "Role",
    "TrainingGrade",
    "ComplicationCase",
    "IngestResult",
    "ProcedureRecord",
    "RecordPatch",
]
