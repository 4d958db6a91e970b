"""Tests for the deduplicating ingestion service.

These run against an in-memory DuckDB store so the uniqueness constraint and
ingestion ordering are exercised for real.
"""

import asyncio
from datetime import date
from pathlib import Path
from unittest.mock import Mock

import pytest

from proclog.adapters.blob import LocalBlobStore
from proclog.domain.enums import ComplicationType
from proclog.domain.ports import (
    DocumentParseError,
    RecordNotFoundError,
    Result,
    StorageError,
    ValidationError,
)
from proclog.domain.services.ingestion_service import IngestionService


@pytest.fixture
def service(store):
    return IngestionService(store=store)


@pytest.fixture
def batch(record_factory):
    return [
        record_factory(patient_identifier="1", date=date(2023, 1, 1)),
        record_factory(patient_identifier="2", date=date(2023, 1, 2)),
        record_factory(patient_identifier="3", date=date(2023, 1, 3), procedure="Trabeculectomy"),
    ]


class TestIngest:
    """Test suite for IngestionService.ingest."""

    def test_new_records_are_accepted(self, service, batch):
        """Test a fresh batch is fully persisted."""
        result = service.ingest("owner-1", batch)

        assert result.accepted == 3
        assert result.skipped_duplicate == 0
        assert result.rows_classified == 3
        stored = service.list_records("owner-1")
        assert [r.patient_identifier for r in stored] == ["1", "2", "3"]
        assert all(r.owner_id == "owner-1" and r.id for r in stored)

    def test_reingest_is_idempotent(self, service, batch):
        """Test ingesting the same records twice adds nothing the second time."""
        service.ingest("owner-1", batch)
        result = service.ingest("owner-1", batch)

        assert result.accepted == 0
        assert result.skipped_duplicate == 3
        assert len(service.list_records("owner-1")) == 3

    def test_superset_adds_only_new_records(self, service, batch, record_factory):
        """Test an export containing earlier records only adds the new ones."""
        service.ingest("owner-1", batch[:2])
        result = service.ingest("owner-1", batch)

        assert result.accepted == 1
        assert result.skipped_duplicate == 2
        assert [r.patient_identifier for r in service.list_records("owner-1")] == ["1", "2", "3"]

    def test_existing_record_is_not_overwritten(self, service, batch):
        """Test a duplicate with different mutable fields leaves the stored row alone."""
        service.ingest("owner-1", batch[:1])
        changed = batch[0].model_copy(update={"hospital": "Elsewhere", "comment": "new"})
        result = service.ingest("owner-1", [changed])

        assert result.accepted == 0
        stored = service.list_records("owner-1")[0]
        assert stored.hospital == "Royal Eye Hospital"
        assert stored.comment is None

    def test_duplicates_within_a_batch(self, service, batch):
        """Test in-batch duplicates collapse to the first occurrence."""
        result = service.ingest("owner-1", [batch[0], batch[0], batch[1]])

        assert result.accepted == 2
        assert result.skipped_duplicate == 1

    def test_owners_are_independent(self, service, batch):
        """Test the same records are stored separately per owner."""
        service.ingest("owner-1", batch)
        result = service.ingest("owner-2", batch)

        assert result.accepted == 3
        assert len(service.list_records("owner-1")) == 3
        assert len(service.list_records("owner-2")) == 3

    def test_empty_batch(self, service):
        """Test an empty batch is a no-op."""
        result = service.ingest("owner-1", [])
        assert result.accepted == 0
        assert result.skipped_duplicate == 0

    def test_store_failure_raises(self, batch):
        """Test a failed write surfaces as StorageError."""
        store = Mock()
        store.upsert_records.return_value = Result.failure_result(
            StorageError("disk full", operation="upsert_records"), error_type="StorageError"
        )
        service = IngestionService(store=store)

        with pytest.raises(StorageError) as exc_info:
            service.ingest("owner-1", batch)
        assert exc_info.value.operation == "upsert_records"


class TestIngestDocument:
    """Test suite for IngestionService.ingest_document."""

    def test_document_is_ingested(self, store, logbook_pages, make_extractor, tmp_path):
        """Test extraction, classification, retention and persistence together."""
        extractor = make_extractor(pages=logbook_pages)
        service = IngestionService(store=store, extractor=extractor,
                                   blob_store=LocalBlobStore(root_dir=str(tmp_path / "blobs")))

        result = asyncio.run(service.ingest_document("owner-1", b"%PDF-1.4 logbook", filename="export.pdf"))

        assert result.rows_extracted == 5
        assert result.rows_classified == 3
        assert result.accepted == 3
        assert result.ingestion_id
        assert result.blob_path is not None
        assert Path(result.blob_path).read_bytes() == b"%PDF-1.4 logbook"
        assert Path(result.blob_path).name.endswith("export.pdf")
        assert extractor.calls == [b"%PDF-1.4 logbook"]

        stored = service.list_records("owner-1")
        assert [r.patient_identifier for r in stored] == ["123456", "654321", "112233"]

    def test_reupload_is_idempotent(self, store, logbook_pages, make_extractor):
        """Test uploading the same export twice stores each record once."""
        service = IngestionService(store=store, extractor=make_extractor(pages=logbook_pages))

        asyncio.run(service.ingest_document("owner-1", b"%PDF-"))
        second = asyncio.run(service.ingest_document("owner-1", b"%PDF-"))

        assert second.accepted == 0
        assert second.skipped_duplicate == 3
        assert second.blob_path is None
        assert len(service.list_records("owner-1")) == 3

    def test_path_source_is_retained_under_its_name(self, store, logbook_pages, make_extractor, tmp_path):
        """Test a path source is read for retention and passed to the extractor as a string."""
        pdf = tmp_path / "logbook.pdf"
        pdf.write_bytes(b"%PDF-1.7")
        extractor = make_extractor(pages=logbook_pages)
        service = IngestionService(store=store, extractor=extractor,
                                   blob_store=LocalBlobStore(root_dir=str(tmp_path / "blobs")))

        result = asyncio.run(service.ingest_document("owner-1", pdf))

        assert extractor.calls == [str(pdf)]
        assert Path(result.blob_path).name.endswith("logbook.pdf")

    def test_blob_failure_does_not_block_ingestion(self, store, logbook_pages, make_extractor):
        """Test a failed document retention is logged and records are still stored."""
        blob_store = Mock()
        blob_store.store.return_value = Result.failure_result(
            StorageError("read-only filesystem", operation="store_blob"), error_type="StorageError"
        )
        service = IngestionService(store=store, extractor=make_extractor(pages=logbook_pages),
                                   blob_store=blob_store)

        result = asyncio.run(service.ingest_document("owner-1", b"%PDF-"))

        assert result.accepted == 3
        assert result.blob_path is None
        blob_store.store.assert_called_once()

    def test_parse_error_propagates(self, store, make_extractor):
        """Test an unreadable document fails the upload without writing."""
        extractor = make_extractor(error=DocumentParseError("PDF has no text layer"))
        service = IngestionService(store=store, extractor=extractor)

        with pytest.raises(DocumentParseError):
            asyncio.run(service.ingest_document("owner-1", b"%PDF-"))
        assert service.list_records("owner-1") == []

    def test_concurrent_uploads_for_one_owner(self, store, logbook_pages, make_extractor):
        """Test concurrent ingests of one export never store a record twice."""
        service = IngestionService(store=store, extractor=make_extractor(pages=logbook_pages))

        async def run():
            return await asyncio.gather(*(
                service.ingest_document("owner-1", b"%PDF-") for _ in range(4)
            ))

        results = asyncio.run(run())

        assert sum(r.accepted for r in results) == 3
        assert sum(r.skipped_duplicate for r in results) == 9
        assert len(service.list_records("owner-1")) == 3

    def test_service_is_reusable_across_event_loops(self, store, logbook_pages, make_extractor):
        """Test contended ingests work from a second asyncio.run after a first one."""
        service = IngestionService(store=store, extractor=make_extractor(pages=logbook_pages))

        async def run(owner_id):
            return await asyncio.gather(*(
                service.ingest_document(owner_id, b"%PDF-") for _ in range(3)
            ))

        first = asyncio.run(run("owner-1"))
        second = asyncio.run(run("owner-1"))

        assert sum(r.accepted for r in first) == 3
        assert sum(r.accepted for r in second) == 0
        assert len(service.list_records("owner-1")) == 3

    def test_no_extractor(self, store):
        """Test a service without an extractor cannot read documents."""
        with pytest.raises(ValueError):
            IngestionService(store=store).extract_records(b"%PDF-")


class TestUpdate:
    """Test suite for manual record edits."""

    @pytest.fixture
    def stored(self, service, batch):
        service.ingest("owner-1", batch)
        return service.list_records("owner-1")[0]

    def test_update_comment(self, service, stored):
        """Test a mutable field is updated and key fields are untouched."""
        updated = service.update("owner-1", stored.id, {"comment": "Dense cataract"})

        assert updated.comment == "Dense cataract"
        assert updated.dedup_key() == stored.dedup_key()
        assert service.list_records("owner-1")[0].comment == "Dense cataract"

    @pytest.mark.parametrize("field", ["procedure", "date", "laterality", "patient_identifier"])
    def test_key_fields_cannot_change(self, service, stored, field):
        """Test edits to key fields are rejected with the field name."""
        with pytest.raises(ValidationError) as exc_info:
            service.update("owner-1", stored.id, {field: "2024-01-01"})
        assert exc_info.value.field == field

    def test_invalid_patch_value(self, service, stored):
        """Test invalid values are reported as ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            service.update("owner-1", stored.id, {"role": "X"})
        assert exc_info.value.field == "role"

    def test_unknown_record(self, service, stored):
        """Test an update for a missing record raises RecordNotFoundError."""
        with pytest.raises(RecordNotFoundError):
            service.update("owner-1", "no-such-id", {"comment": "x"})

    def test_other_owner_cannot_update(self, service, stored):
        """Test records are scoped to their owner."""
        with pytest.raises(RecordNotFoundError):
            service.update("owner-2", stored.id, {"comment": "x"})

    def test_link_creates_and_unlink_deletes_case(self, service, stored):
        """Test the link toggle keeps the complication log in step."""
        service.update("owner-1", stored.id, {
            "complication_flags": ["PCR"],
            "complication_cause": "Capsule tear",
            "linked_to_complication_log": True,
        })

        cases = service.list_complication_cases("owner-1")
        assert len(cases) == 1
        assert cases[0].procedure_record_id == stored.id
        assert cases[0].complications == [ComplicationType.POSTERIOR_CAPSULE_RUPTURE]
        assert cases[0].cause == "Capsule tear"

        updated = service.update("owner-1", stored.id, {"linked_to_complication_log": False})

        assert updated.linked_to_complication_log is False
        assert service.list_complication_cases("owner-1") == []

    def test_link_without_complications_is_rejected(self, service, stored):
        """Test linking needs complication flags and leaves the record unchanged."""
        with pytest.raises(ValidationError) as exc_info:
            service.update("owner-1", stored.id, {"linked_to_complication_log": True})

        assert exc_info.value.field == "complications"
        assert service.list_records("owner-1")[0].linked_to_complication_log is False
        assert service.list_complication_cases("owner-1") == []

    def test_link_with_too_many_complications_is_rejected(self, service, stored):
        """Test a record with more than three flags cannot be linked and nothing is written."""
        with pytest.raises(ValidationError) as exc_info:
            service.update("owner-1", stored.id, {
                "complication_flags": ["PCR", "Vitreous loss", "Dropped nucleus", "Iris trauma"],
                "linked_to_complication_log": True,
            })

        assert exc_info.value.field == "complications"
        record = service.list_records("owner-1")[0]
        assert record.linked_to_complication_log is False
        assert record.complication_flags == frozenset()
        assert service.list_complication_cases("owner-1") == []

    def test_failed_case_insert_leaves_record_unlinked(self, service, stored, store):
        """Test a failed case write does not mark the record linked, so a retry succeeds."""
        failing = Mock(wraps=store)
        failing.insert_complication_case.return_value = Result.failure_result(
            StorageError("disk full", operation="insert_complication_case"), error_type="StorageError"
        )
        patch = {"complication_flags": ["PCR"], "linked_to_complication_log": True}

        with pytest.raises(StorageError):
            IngestionService(store=failing).update("owner-1", stored.id, patch)

        assert service.list_records("owner-1")[0].linked_to_complication_log is False
        assert service.list_complication_cases("owner-1") == []

        service.update("owner-1", stored.id, patch)

        assert service.list_records("owner-1")[0].linked_to_complication_log is True
        assert len(service.list_complication_cases("owner-1")) == 1

    def test_failed_record_write_removes_new_case(self, service, stored, store):
        """Test the case created for a link is deleted when the record write fails."""
        failing = Mock(wraps=store)
        failing.update_record.return_value = Result.failure_result(
            StorageError("disk full", operation="update_record"), error_type="StorageError"
        )

        with pytest.raises(StorageError):
            IngestionService(store=failing).update("owner-1", stored.id, {
                "complication_flags": ["PCR"],
                "linked_to_complication_log": True,
            })

        assert service.list_records("owner-1")[0].linked_to_complication_log is False
        assert service.list_complication_cases("owner-1") == []


class TestComplicationCases:
    """Test suite for complication log maintenance."""

    @staticmethod
    def _case_data(**overrides):
        data = {
            "patient_identifier": "123456",
            "date": date(2023, 5, 14),
            "laterality": "Right",
            "operation_type": "Phacoemulsification",
            "complications": ["Vitreous loss"],
        }
        data.update(overrides)
        return data

    def test_create_list_update_delete(self, service):
        """Test the case lifecycle."""
        created = service.create_complication_case("owner-1", self._case_data())
        assert created.id
        assert created.owner_id == "owner-1"

        cases = service.list_complication_cases("owner-1")
        assert [c.id for c in cases] == [created.id]

        updated = service.update_complication_case(
            "owner-1", {**self._case_data(), "id": created.id, "action_taken": "Vitrectomy"}
        )
        assert updated.action_taken == "Vitrectomy"
        assert service.list_complication_cases("owner-1")[0].action_taken == "Vitrectomy"

        assert service.delete_complication_case("owner-1", created.id) is True
        assert service.delete_complication_case("owner-1", created.id) is False
        assert service.list_complication_cases("owner-1") == []

    def test_empty_complications(self, service):
        """Test a case without complications is rejected before any write."""
        with pytest.raises(ValidationError) as exc_info:
            service.create_complication_case("owner-1", self._case_data(complications=[]))
        assert exc_info.value.field == "complications"
        assert service.list_complication_cases("owner-1") == []

    def test_too_many_complications(self, service):
        """Test more than three complications are rejected."""
        data = self._case_data(complications=["PCR", "Vitreous loss", "Iris trauma", "Dropped nucleus"])
        with pytest.raises(ValidationError) as exc_info:
            service.create_complication_case("owner-1", data)
        assert exc_info.value.field == "complications"

    def test_other_without_detail(self, service):
        """Test OTHER without a description is rejected on other_detail."""
        with pytest.raises(ValidationError) as exc_info:
            service.create_complication_case("owner-1", self._case_data(complications=["Other"]))
        assert exc_info.value.field == "other_detail"

    def test_update_requires_id(self, service):
        """Test an update without an id is rejected."""
        with pytest.raises(ValidationError) as exc_info:
            service.update_complication_case("owner-1", self._case_data())
        assert exc_info.value.field == "id"

    def test_update_missing_case(self, service):
        """Test updating a case that does not exist raises StorageError."""
        with pytest.raises(StorageError):
            service.update_complication_case("owner-1", {**self._case_data(), "id": "missing"})
