"""Procedure Record Schema Definitions.

This module defines the canonical data models for logbook entities: the
procedure record reconstructed from an export row, the complication case
that may be linked to it, and the patch/result types used by ingestion.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Models are immutable and validated before use (Pydantic V2)
    - Follows Hexagonal Architecture: Domain Core is isolated from Adapters
"""

import re
import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from proclog.domain.enums import (
    ComplicationType,
    Laterality,
    Role,
    TrainingGrade,
)

UNKNOWN_HOSPITAL = "Unknown"
MIN_PROCEDURE_LENGTH = 3
MAX_COMPLICATIONS = 3

# Fields that make up the deduplication key (besides owner_id)
KEY_FIELDS = ("patient_identifier", "laterality", "procedure", "date")

_ID_SEPARATORS = re.compile(r"[,\s]")


def _coerce_complications(v) -> list[ComplicationType]:
    if not v:
        return []
    if isinstance(v, (str, ComplicationType)):
        v = [v]
    result = []
    for item in v:
        if isinstance(item, ComplicationType):
            result.append(item)
        else:
            result.append(ComplicationType.from_value(item))
    return result


class ProcedureRecord(BaseModel):
    """One row of the surgical logbook.

    Parameters:
        id: Store-assigned identifier (None before persistence)
        owner_id: Portfolio owner the record belongs to
        procedure: Free-text procedure name
        laterality: Operated eye
        date: Procedure date
        patient_identifier: Digits-only patient identifier
        role: Trainee role code
        hospital: Hospital name ("Unknown" if unresolved)
        training_grade: Grade at time of procedure
        comment: Optional free-text comment
        complication_flags: Complications recorded for this case
        complication_cause: Free-text cause of the complication
        complication_action: Free-text action taken
        linked_to_complication_log: Whether a ComplicationCase mirrors this record
        ingested_at: When the record was ingested
    """

    id: Optional[str] = Field(None, description="Store-assigned record identifier")
    owner_id: Optional[str] = Field(None, description="Owning portfolio")
    procedure: str = Field(..., description="Free-text procedure name")
    laterality: Laterality = Field(default=Laterality.UNKNOWN, description="Operated eye")
    date: dt.date = Field(..., description="Procedure date")
    patient_identifier: str = Field(default="", description="Digits-only patient identifier")
    role: Role = Field(..., description="Trainee role code")
    hospital: str = Field(default=UNKNOWN_HOSPITAL, description="Hospital name")
    training_grade: TrainingGrade = Field(
        default=TrainingGrade.UNKNOWN,
        description="Training grade at time of procedure"
    )
    comment: Optional[str] = Field(None, description="Free-text comment")
    complication_flags: frozenset[ComplicationType] = Field(
        default_factory=frozenset,
        description="Complications recorded for this case"
    )
    complication_cause: Optional[str] = Field(None, description="Cause of complication")
    complication_action: Optional[str] = Field(None, description="Action taken")
    linked_to_complication_log: bool = Field(default=False)
    ingested_at: dt.datetime = Field(default_factory=dt.datetime.now)

    @field_validator("procedure")
    @classmethod
    def validate_procedure(cls, v: str) -> str:
        """Procedure names shorter than three characters are header noise."""
        v = " ".join(v.split())
        if len(v) < MIN_PROCEDURE_LENGTH:
            raise ValueError(
                f"Procedure must be at least {MIN_PROCEDURE_LENGTH} characters. Got: {v!r}"
            )
        return v

    @field_validator("patient_identifier", mode="before")
    @classmethod
    def normalize_patient_identifier(cls, v) -> str:
        """Strip separators; what remains must be digits."""
        if v is None:
            return ""
        cleaned = _ID_SEPARATORS.sub("", str(v))
        if cleaned and not cleaned.isdigit():
            raise ValueError("Patient identifier must contain digits only")
        return cleaned

    @field_validator("laterality", mode="before")
    @classmethod
    def validate_laterality(cls, v) -> Laterality:
        if isinstance(v, Laterality):
            return v
        try:
            return Laterality(v)
        except ValueError:
            return Laterality.from_code(v)

    @field_validator("role", mode="before")
    @classmethod
    def validate_role(cls, v) -> Role:
        if isinstance(v, Role):
            return v
        return Role.from_code(v)

    @field_validator("training_grade", mode="before")
    @classmethod
    def validate_training_grade(cls, v) -> TrainingGrade:
        """Normalize grade codes; FTSTA is stored as ST1."""
        if isinstance(v, TrainingGrade):
            return v
        return TrainingGrade.from_code(v)

    @field_validator("hospital", mode="before")
    @classmethod
    def default_hospital(cls, v) -> str:
        if v is None or not str(v).strip():
            return UNKNOWN_HOSPITAL
        return " ".join(str(v).split())

    @field_validator("complication_flags", mode="before")
    @classmethod
    def validate_complication_flags(cls, v) -> frozenset[ComplicationType]:
        return frozenset(_coerce_complications(v))

    def dedup_key(self, owner_id: Optional[str] = None) -> tuple[str, str, str, str, str]:
        """Return the natural uniqueness key of this record.

        Parameters:
            owner_id: Owner to key under (defaults to the record's own owner_id)
        """
        return (
            owner_id if owner_id is not None else (self.owner_id or ""),
            self.patient_identifier,
            self.laterality.value,
            self.procedure,
            self.date.isoformat(),
        )

    def apply_patch(self, patch: "RecordPatch") -> "ProcedureRecord":
        """Return a copy of this record with the patch's set fields applied."""
        changes = patch.model_dump(exclude_unset=True)
        return self.model_copy(update=changes)

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
    )


class RecordPatch(BaseModel):
    """Partial update of a ProcedureRecord's mutable fields.

    Key fields (procedure, date, laterality, patient_identifier) are frozen
    after creation and are rejected here (extra="forbid").
    """

    comment: Optional[str] = None
    hospital: Optional[str] = None
    training_grade: Optional[TrainingGrade] = None
    role: Optional[Role] = None
    complication_flags: Optional[frozenset[ComplicationType]] = None
    complication_cause: Optional[str] = None
    complication_action: Optional[str] = None
    linked_to_complication_log: Optional[bool] = None

    @field_validator("training_grade", mode="before")
    @classmethod
    def validate_training_grade(cls, v) -> Optional[TrainingGrade]:
        if v is None or isinstance(v, TrainingGrade):
            return v
        return TrainingGrade.from_code(v)

    @field_validator("role", mode="before")
    @classmethod
    def validate_role(cls, v) -> Optional[Role]:
        if v is None or isinstance(v, Role):
            return v
        return Role.from_code(v)

    @field_validator("hospital", mode="before")
    @classmethod
    def default_hospital(cls, v) -> Optional[str]:
        if v is None:
            return None
        return " ".join(str(v).split()) or UNKNOWN_HOSPITAL

    @field_validator("complication_flags", mode="before")
    @classmethod
    def validate_complication_flags(cls, v) -> Optional[frozenset[ComplicationType]]:
        if v is None:
            return None
        return frozenset(_coerce_complications(v))

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


class ComplicationCase(BaseModel):
    """A complication logged against a patient episode.

    Parameters:
        id: Store-assigned identifier
        owner_id: Owning portfolio
        patient_identifier: Digits-only patient identifier
        date: Date of the operation
        laterality: Operated eye
        operation_type: Procedure the complication occurred in
        complications: One to three complication types, in entry order
        other_detail: Required when OTHER is among complications
        cause: Free-text cause
        action_taken: Free-text action taken
        procedure_record_id: Linked ProcedureRecord, if created via the link toggle
    """

    id: Optional[str] = None
    owner_id: Optional[str] = None
    patient_identifier: str = Field(default="")
    date: dt.date
    laterality: Laterality = Field(default=Laterality.UNKNOWN)
    operation_type: str
    complications: list[ComplicationType] = Field(default_factory=list)
    other_detail: Optional[str] = None
    cause: Optional[str] = None
    action_taken: Optional[str] = None
    procedure_record_id: Optional[str] = None

    @field_validator("patient_identifier", mode="before")
    @classmethod
    def normalize_patient_identifier(cls, v) -> str:
        if v is None:
            return ""
        return _ID_SEPARATORS.sub("", str(v))

    @field_validator("laterality", mode="before")
    @classmethod
    def validate_laterality(cls, v) -> Laterality:
        if isinstance(v, Laterality):
            return v
        try:
            return Laterality(v)
        except ValueError:
            return Laterality.from_code(v)

    @field_validator("complications", mode="before")
    @classmethod
    def validate_complications(cls, v) -> list[ComplicationType]:
        return _coerce_complications(v)

    @model_validator(mode="after")
    def check_complications(self) -> "ComplicationCase":
        """At least one and at most three complications; OTHER needs detail."""
        if not self.complications:
            raise ValueError("complications: select at least one complication type")
        if len(self.complications) > MAX_COMPLICATIONS:
            raise ValueError(
                f"complications: select at most {MAX_COMPLICATIONS} complication types"
            )
        if ComplicationType.OTHER in self.complications:
            if not self.other_detail or not self.other_detail.strip():
                raise ValueError("other_detail: describe the 'Other' complication")
        return self

    @classmethod
    def from_record(cls, record: ProcedureRecord) -> "ComplicationCase":
        """Build the complication case mirrored by a linked procedure record."""
        complications = sorted(record.complication_flags, key=lambda c: list(ComplicationType).index(c))
        return cls(
            owner_id=record.owner_id,
            patient_identifier=record.patient_identifier,
            date=record.date,
            laterality=record.laterality,
            operation_type=record.procedure,
            complications=complications,
            other_detail=record.comment if ComplicationType.OTHER in complications else None,
            cause=record.complication_cause,
            action_taken=record.complication_action,
            procedure_record_id=record.id,
        )

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
    )


class IngestResult(BaseModel):
    """Yield summary of one ingestion run.

    Parameters:
        accepted: Records newly persisted
        skipped_duplicate: Records skipped because their key already existed
        rows_extracted: Clustered rows read from the document
        rows_classified: Rows that classified as procedure records
        blob_path: Where the original document was retained (None if not stored)
        ingestion_id: Identifier of this ingestion run
    """

    accepted: int = 0
    skipped_duplicate: int = 0
    rows_extracted: int = 0
    rows_classified: int = 0
    blob_path: Optional[str] = None
    ingestion_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)
