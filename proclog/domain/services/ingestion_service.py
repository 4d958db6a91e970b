"""Deduplicating Ingestion Service.

Runs one uploaded logbook export through extraction, clustering and
classification, merges the resulting records into the owner's store and keeps
the complication log in step with record edits.

Duplicates are decided by the store's UNIQUE constraint on
(owner_id, patient_identifier, laterality, procedure, date); an existing row is
never overwritten. Ingests for the same owner are serialised with an
owner-scoped asyncio.Lock; different owners proceed concurrently.
"""

import asyncio
import logging
import uuid
import weakref
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError

from proclog.domain.ports import (
    BlobStoragePort,
    RecordNotFoundError,
    RecordStorePort,
    Result,
    StorageError,
    TextExtractionPort,
    ValidationError,
)
from proclog.domain.procedure_record import (
    KEY_FIELDS,
    ComplicationCase,
    IngestResult,
    ProcedureRecord,
    RecordPatch,
)
from proclog.domain.services.field_classifier import classify_rows
from proclog.domain.services.row_clusterer import MIN_ROW_TOKENS, ROW_TOLERANCE, cluster_pages

logger = logging.getLogger(__name__)


def _unwrap(result: Result, operation: str):
    """Return a successful result's value or raise StorageError."""
    if result.is_failure():
        raise StorageError(
            result.error or f"{operation} failed",
            operation=operation,
            details=result.error_details,
        )
    return result.value


def _to_validation_error(error: PydanticValidationError) -> ValidationError:
    """Convert a pydantic error into a field-specific domain ValidationError."""
    first = error.errors()[0]
    loc = [str(part) for part in first.get("loc", ()) if part != "__root__"]
    message = first.get("msg", str(error)).removeprefix("Value error, ")
    field = loc[0] if loc else None
    # model-level validators prefix the message with the field name
    if field is None and ": " in message:
        prefix, _, rest = message.partition(": ")
        if prefix.isidentifier():
            field, message = prefix, rest
    return ValidationError(message, field=field, details={"errors": error.errors(include_url=False)})


class IngestionService:
    """Orchestrates ingestion and record maintenance for logbook owners.

    Parameters:
        store: Record store adapter
        extractor: PDF text extractor
        blob_store: Optional store for the original uploaded documents
        row_tolerance: Vertical clustering tolerance
        min_row_tokens: Minimum tokens per candidate row
    """

    def __init__(
        self,
        store: RecordStorePort,
        extractor: Optional[TextExtractionPort] = None,
        blob_store: Optional[BlobStoragePort] = None,
        row_tolerance: float = ROW_TOLERANCE,
        min_row_tokens: int = MIN_ROW_TOKENS,
    ):
        self.store = store
        self.extractor = extractor
        self.blob_store = blob_store
        self.row_tolerance = row_tolerance
        self.min_row_tokens = min_row_tokens
        # event loop -> owner -> lock; entries go away with their loop
        self._owner_locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def extract_records(self, source: Union[str, bytes, Path]) -> tuple[int, list[ProcedureRecord]]:
        """Extract, cluster and classify a document.

        Returns:
            tuple: (number of candidate rows, classified records)

        Raises:
            DocumentParseError: If the document has no usable text layer
        """
        if self.extractor is None:
            raise ValueError("IngestionService was created without an extractor")
        pages = self.extractor.extract(str(source) if isinstance(source, Path) else source)
        rows = cluster_pages(pages, tolerance=self.row_tolerance, min_tokens=self.min_row_tokens)
        records = classify_rows(rows)
        logger.info(f"Extracted {len(rows)} candidate rows, {len(records)} procedure records")
        return len(rows), records

    def ingest(self, owner_id: str, records: list[ProcedureRecord]) -> IngestResult:
        """Merge records into the owner's store, skipping key duplicates.

        Duplicates within the batch collapse to their first occurrence.
        Re-ingesting the same records is a no-op.

        Raises:
            StorageError: If the store rejects the write
        """
        unique: dict[tuple, ProcedureRecord] = {}
        for record in records:
            unique.setdefault(record.dedup_key(owner_id), record)

        batch = [record.model_copy(update={"owner_id": owner_id}) for record in unique.values()]
        inserted = _unwrap(self.store.upsert_records(owner_id, batch), "upsert_records") if batch else 0

        result = IngestResult(
            accepted=inserted,
            skipped_duplicate=len(records) - inserted,
            rows_classified=len(records),
        )
        logger.info(
            f"Owner ingest: {result.accepted} accepted, "
            f"{result.skipped_duplicate} skipped as duplicates"
        )
        return result

    async def ingest_document(
        self,
        owner_id: str,
        source: Union[str, bytes, Path],
        filename: Optional[str] = None,
    ) -> IngestResult:
        """Ingest one uploaded export as a single unit of work.

        The original document is retained in blob storage when configured;
        a blob failure is logged and does not block the records.

        Parameters:
            owner_id: Owner whose store receives the records
            source: PDF path or bytes
            filename: Name to retain the document under

        Returns:
            IngestResult: Yield summary
        """
        ingestion_id = str(uuid.uuid4())
        logger.info(f"Ingestion {ingestion_id} started")

        rows_extracted, records = await asyncio.to_thread(self.extract_records, source)

        async with self._owner_lock(owner_id):
            blob_path = await self._retain_document(owner_id, source, filename)
            result = await asyncio.to_thread(self.ingest, owner_id, records)

        result = result.model_copy(update={
            "rows_extracted": rows_extracted,
            "blob_path": blob_path,
            "ingestion_id": ingestion_id,
        })
        logger.info(
            f"Ingestion {ingestion_id} finished: {result.rows_extracted} rows, "
            f"{result.rows_classified} classified, {result.accepted} accepted, "
            f"{result.skipped_duplicate} duplicates"
        )
        return result

    def _owner_lock(self, owner_id: str) -> asyncio.Lock:
        """Lock serialising ingests for one owner within the running event loop.

        Locks are kept per loop because an asyncio.Lock is bound to the loop
        it was first contended in. Within a loop one lock per owner is kept
        for the service's lifetime.
        """
        locks = self._owner_locks.setdefault(asyncio.get_running_loop(), {})
        return locks.setdefault(owner_id, asyncio.Lock())

    async def _retain_document(
        self,
        owner_id: str,
        source: Union[str, bytes, Path],
        filename: Optional[str],
    ) -> Optional[str]:
        if self.blob_store is None:
            return None
        try:
            if isinstance(source, bytes):
                data = source
                name = filename or "logbook.pdf"
            else:
                path = Path(source)
                data = await asyncio.to_thread(path.read_bytes)
                name = filename or path.name
        except OSError as e:
            logger.warning(f"Could not read document for retention: {e}")
            return None

        result = await asyncio.to_thread(self.blob_store.store, owner_id, name, data)
        if result.is_failure():
            logger.warning(f"Document retention failed ({result.error_type}): {result.error}")
            return None
        return result.value

    def list_records(self, owner_id: str) -> list[ProcedureRecord]:
        return _unwrap(self.store.list_records(owner_id), "list_records")

    # ------------------------------------------------------------------
    # Record edits
    # ------------------------------------------------------------------

    def update(self, owner_id: str, record_id: str, patch: Union[RecordPatch, dict]) -> ProcedureRecord:
        """Apply a manual edit to one record.

        Key fields cannot be changed. Turning ``linked_to_complication_log`` on
        creates a complication case from the record; turning it off deletes
        the linked case.

        Raises:
            ValidationError: If the patch touches a key field or is invalid
            RecordNotFoundError: If the owner has no such record
            StorageError: If the store write fails
        """
        if isinstance(patch, dict):
            frozen = [name for name in KEY_FIELDS if name in patch]
            if frozen:
                raise ValidationError(
                    f"{frozen[0]} cannot be changed after ingestion",
                    field=frozen[0],
                )
            try:
                patch = RecordPatch(**patch)
            except PydanticValidationError as e:
                raise _to_validation_error(e) from e

        current = _unwrap(self.store.get_record(owner_id, record_id), "get_record")
        if current is None:
            raise RecordNotFoundError(f"Record {record_id} not found", record_id=record_id)

        proposed = current.apply_patch(patch)
        link_changed = proposed.linked_to_complication_log != current.linked_to_complication_log

        case = None
        if link_changed and proposed.linked_to_complication_log:
            # validate before the store is touched
            try:
                case = ComplicationCase.from_record(proposed)
            except PydanticValidationError as e:
                raise _to_validation_error(e) from e

        if case is None:
            updated = _unwrap(self.store.update_record(owner_id, record_id, patch), "update_record")
        else:
            # the case is written first so a linked record never lacks one
            case_id = _unwrap(self.store.insert_complication_case(owner_id, case), "insert_complication_case")
            try:
                updated = _unwrap(self.store.update_record(owner_id, record_id, patch), "update_record")
            except StorageError:
                self.store.delete_complication_case(owner_id, case_id)
                raise
            logger.info(f"Linked record {record_id} to the complication log")

        if link_changed and case is None:
            for linked in self._cases_for_record(owner_id, record_id):
                _unwrap(self.store.delete_complication_case(owner_id, linked.id), "delete_complication_case")
            logger.info(f"Unlinked record {record_id} from the complication log")

        return updated

    # ------------------------------------------------------------------
    # Complication log
    # ------------------------------------------------------------------

    def _cases_for_record(self, owner_id: str, record_id: str) -> list[ComplicationCase]:
        return [c for c in self.list_complication_cases(owner_id) if c.procedure_record_id == record_id]

    @staticmethod
    def _build_case(owner_id: str, data: Union[ComplicationCase, dict]) -> ComplicationCase:
        try:
            if isinstance(data, ComplicationCase):
                return data.model_copy(update={"owner_id": owner_id})
            return ComplicationCase(**{**data, "owner_id": owner_id})
        except PydanticValidationError as e:
            raise _to_validation_error(e) from e

    def create_complication_case(self, owner_id: str, data: Union[ComplicationCase, dict]) -> ComplicationCase:
        """Validate and store a complication case.

        Raises:
            ValidationError: With the offending field, before any write
        """
        case = self._build_case(owner_id, data)
        case_id = _unwrap(self.store.insert_complication_case(owner_id, case), "insert_complication_case")
        return case.model_copy(update={"id": case_id})

    def update_complication_case(self, owner_id: str, data: Union[ComplicationCase, dict]) -> ComplicationCase:
        case = self._build_case(owner_id, data)
        if not case.id:
            raise ValidationError("Complication case id is required for an update", field="id")
        return _unwrap(self.store.update_complication_case(owner_id, case), "update_complication_case")

    def delete_complication_case(self, owner_id: str, case_id: str) -> bool:
        return _unwrap(self.store.delete_complication_case(owner_id, case_id), "delete_complication_case")

    def list_complication_cases(self, owner_id: str) -> list[ComplicationCase]:
        return _unwrap(self.store.list_complication_cases(owner_id), "list_complication_cases")
