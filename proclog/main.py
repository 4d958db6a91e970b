"""Pipeline wiring for proclog.

Factories that build the storage adapter, blob store, extractor and
ingestion service from configuration, plus a programmatic entry point for
ingesting one document.

Architecture:
    - Follows Hexagonal Architecture principles
    - Storage adapter is selected by the configured database type
    - Domain services only see ports
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from proclog.adapters.blob import LocalBlobStore
from proclog.adapters.extractors import PdfPlumberExtractor
from proclog.adapters.storage import DuckDBAdapter, PostgreSQLAdapter
from proclog.domain.ports import BlobStoragePort, RecordStorePort
from proclog.domain.procedure_record import IngestResult
from proclog.domain.services.ingestion_service import IngestionService
from proclog.infrastructure.config_manager import DatabaseConfig
from proclog.infrastructure.settings import settings

logger = logging.getLogger(__name__)


def create_storage_adapter(db_config: Optional[DatabaseConfig] = None) -> RecordStorePort:
    """Create the record store for the configured database type.

    Raises:
        ValueError: If database type is unsupported
    """
    db_config = db_config or settings.db_config

    if db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB adapter with path: {db_config.db_path or ':memory:'}")
        return DuckDBAdapter(db_config=db_config)
    elif db_config.db_type == "postgresql":
        logger.info(f"Initializing PostgreSQL adapter with host: {db_config.host}")
        return PostgreSQLAdapter(db_config=db_config)
    else:
        raise ValueError(f"Unsupported database type: {db_config.db_type}")


def create_blob_store() -> Optional[BlobStoragePort]:
    """Create the document store, or None when retention is disabled."""
    blob_config = settings.blob_config
    if not blob_config.enabled:
        logger.info("Document retention disabled")
        return None
    return LocalBlobStore(config=blob_config)


def create_ingestion_service(store: Optional[RecordStorePort] = None) -> IngestionService:
    """Wire an IngestionService from configuration.

    The store's schema is initialized before the service is returned.

    Raises:
        RuntimeError: If schema initialization fails
    """
    store = store or create_storage_adapter()
    schema_result = store.initialize_schema()
    if schema_result.is_failure():
        raise RuntimeError(f"Schema initialization failed: {schema_result.error}")

    parser_config = settings.parser_config
    return IngestionService(
        store=store,
        extractor=PdfPlumberExtractor(),
        blob_store=create_blob_store(),
        row_tolerance=parser_config.row_tolerance,
        min_row_tokens=parser_config.min_row_tokens,
    )


def ingest_file(owner_id: str, source: Union[str, Path], service: Optional[IngestionService] = None) -> IngestResult:
    """Ingest one PDF synchronously; closes the store if it created the service."""
    owns_service = service is None
    service = service or create_ingestion_service()
    try:
        return asyncio.run(service.ingest_document(owner_id, Path(source)))
    finally:
        if owns_service:
            service.store.close()
