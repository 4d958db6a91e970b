"""Tests for the pipeline factories in proclog.main."""

from unittest.mock import Mock

import pytest

from proclog import main
from proclog.adapters.extractors import PdfPlumberExtractor
from proclog.adapters.storage import DuckDBAdapter, PostgreSQLAdapter
from proclog.domain.ports import Result, StorageError
from proclog.infrastructure.config_manager import (
    BlobStorageConfig,
    DatabaseConfig,
    ParserConfig,
)


@pytest.fixture
def configured(monkeypatch, tmp_path):
    """Point the global settings at an in-memory store and a temporary blob root."""
    config_manager = Mock()
    config_manager.get_database_config.return_value = DatabaseConfig()
    config_manager.get_blob_storage_config.return_value = BlobStorageConfig(root_dir=str(tmp_path / "blobs"))
    config_manager.get_parser_config.return_value = ParserConfig(row_tolerance=2.0, min_row_tokens=5)
    monkeypatch.setattr(main.settings, "_config_manager", config_manager)
    return config_manager


class TestCreateStorageAdapter:
    """Test suite for create_storage_adapter."""

    def test_duckdb(self):
        """Test DuckDB is selected for duckdb configs."""
        adapter = main.create_storage_adapter(DatabaseConfig(db_type="duckdb"))
        assert isinstance(adapter, DuckDBAdapter)

    def test_postgresql(self):
        """Test PostgreSQL is selected for postgresql configs (pool is lazy)."""
        adapter = main.create_storage_adapter(
            DatabaseConfig(db_type="postgresql", host="db", database="logbook")
        )
        assert isinstance(adapter, PostgreSQLAdapter)

    def test_unsupported(self):
        """Test an unknown type is rejected."""
        config = DatabaseConfig().model_copy(update={"db_type": "oracle"})
        with pytest.raises(ValueError):
            main.create_storage_adapter(config)


class TestCreateIngestionService:
    """Test suite for create_ingestion_service."""

    def test_wiring(self, configured, tmp_path):
        """Test the service is built from configuration with an initialized store."""
        service = main.create_ingestion_service()
        try:
            assert isinstance(service.store, DuckDBAdapter)
            assert isinstance(service.extractor, PdfPlumberExtractor)
            assert service.blob_store.root == tmp_path / "blobs"
            assert service.row_tolerance == 2.0
            assert service.min_row_tokens == 5
            assert service.list_records("owner-1") == []
        finally:
            service.store.close()

    def test_blob_store_disabled(self, configured):
        """Test document retention can be switched off."""
        configured.get_blob_storage_config.return_value = BlobStorageConfig(enabled=False)
        assert main.create_blob_store() is None

    def test_schema_failure(self, configured):
        """Test a store that cannot create its schema is reported."""
        store = Mock()
        store.initialize_schema.return_value = Result.failure_result(
            StorageError("permission denied", operation="initialize_schema"), error_type="StorageError"
        )
        with pytest.raises(RuntimeError, match="permission denied"):
            main.create_ingestion_service(store=store)


class TestIngestFile:
    """Test suite for ingest_file."""

    def test_ingest_file(self, store, logbook_pages, make_extractor, tmp_path):
        """Test a document is ingested synchronously through a given service."""
        pdf = tmp_path / "export.pdf"
        pdf.write_bytes(b"%PDF-1.4")
        service = main.IngestionService(store=store, extractor=make_extractor(pages=logbook_pages))

        result = main.ingest_file("owner-1", pdf, service=service)

        assert result.accepted == 3
        assert len(service.list_records("owner-1")) == 3
