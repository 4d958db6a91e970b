"""Row <-> model conversion shared by the SQL storage adapters."""

import json
from typing import Any, Optional

from proclog.domain.enums import ComplicationType
from proclog.domain.procedure_record import ComplicationCase, ProcedureRecord, RecordPatch

RECORD_COLUMNS = (
    "id",
    "owner_id",
    "procedure",
    "laterality",
    "date",
    "patient_identifier",
    "role",
    "hospital",
    "training_grade",
    "comment",
    "complication_flags",
    "complication_cause",
    "complication_action",
    "linked_to_complication_log",
    "ingested_at",
)

CASE_COLUMNS = (
    "id",
    "owner_id",
    "patient_identifier",
    "date",
    "laterality",
    "operation_type",
    "complications",
    "other_detail",
    "cause",
    "action_taken",
    "procedure_record_id",
)

_COMPLICATION_ORDER = {member: position for position, member in enumerate(ComplicationType)}


def dump_complications(values) -> str:
    """Serialize complication types as a JSON list in declaration order."""
    ordered = sorted((ComplicationType(v) for v in values or ()), key=_COMPLICATION_ORDER.__getitem__)
    return json.dumps([c.value for c in ordered])


def load_complications(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return json.loads(raw)


def record_to_row(record: ProcedureRecord, owner_id: str, record_id: str) -> dict[str, Any]:
    return {
        "id": record_id,
        "owner_id": owner_id,
        "procedure": record.procedure,
        "laterality": record.laterality.value,
        "date": record.date,
        "patient_identifier": record.patient_identifier,
        "role": record.role.value,
        "hospital": record.hospital,
        "training_grade": record.training_grade.value,
        "comment": record.comment,
        "complication_flags": dump_complications(record.complication_flags),
        "complication_cause": record.complication_cause,
        "complication_action": record.complication_action,
        "linked_to_complication_log": record.linked_to_complication_log,
        "ingested_at": record.ingested_at,
    }


def row_to_record(row: dict[str, Any]) -> ProcedureRecord:
    data = dict(row)
    data["id"] = str(data["id"])
    data["complication_flags"] = load_complications(data.get("complication_flags"))
    return ProcedureRecord(**data)


def patch_to_columns(patch: RecordPatch) -> dict[str, Any]:
    """Column values for the fields a patch sets."""
    changes = patch.model_dump(exclude_unset=True, mode="json")
    if "complication_flags" in changes:
        changes["complication_flags"] = dump_complications(changes["complication_flags"])
    return changes


def case_to_row(case: ComplicationCase, owner_id: str, case_id: str) -> dict[str, Any]:
    return {
        "id": case_id,
        "owner_id": owner_id,
        "patient_identifier": case.patient_identifier,
        "date": case.date,
        "laterality": case.laterality.value,
        "operation_type": case.operation_type,
        "complications": json.dumps([c.value for c in case.complications]),
        "other_detail": case.other_detail,
        "cause": case.cause,
        "action_taken": case.action_taken,
        "procedure_record_id": case.procedure_record_id,
    }


def row_to_case(row: dict[str, Any]) -> ComplicationCase:
    data = dict(row)
    data["id"] = str(data["id"])
    data["complications"] = load_complications(data.get("complications"))
    return ComplicationCase(**data)
