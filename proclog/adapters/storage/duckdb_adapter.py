"""DuckDB Storage Adapter.

This adapter implements the RecordStorePort contract on DuckDB, an in-process
analytical database. It is the default store: one file per deployment, or
``:memory:`` for tests and one-off CLI runs.

Architecture:
    - Implements RecordStorePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - The uniqueness key is a UNIQUE constraint; duplicates are dropped by
      ``INSERT ... ON CONFLICT DO NOTHING``
    - A sequence column preserves ingestion order for list queries
"""

import functools
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Optional

import duckdb
import pandas as pd

from proclog.adapters.storage.serialization import (
    CASE_COLUMNS,
    RECORD_COLUMNS,
    case_to_row,
    patch_to_columns,
    record_to_row,
    row_to_case,
    row_to_record,
)
from proclog.domain.ports import RecordStorePort, Result, StorageError
from proclog.domain.procedure_record import ComplicationCase, ProcedureRecord, RecordPatch
from proclog.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

_KEY_COLUMNS = ["owner_id", "patient_identifier", "laterality", "procedure", "date"]


def _synchronized(method):
    """Serialise access to the shared connection; DuckDB connections are not thread-safe."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class DuckDBAdapter(RecordStorePort):
    """DuckDB implementation of RecordStorePort.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        adapter = DuckDBAdapter(db_path=":memory:")
        adapter.initialize_schema()
        result = adapter.upsert_records("owner-1", records)
        if result.is_success():
            print(f"{result.value} new records")
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None,
    ):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._lock = threading.RLock()

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection (created lazily, then reused)."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except Exception as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def _ensure_schema(self) -> None:
        if not self._initialized:
            result = self.initialize_schema()
            if result.is_failure():
                raise StorageError(result.error, operation="initialize_schema")

    def _fetch_dicts(self, query: str, params: list) -> list[dict[str, Any]]:
        cursor = self._get_connection().execute(query, params)
        columns = [d[0] for d in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    @_synchronized
    def initialize_schema(self) -> Result[None]:
        """Create tables and the ingestion-order sequences.

        Returns:
            Result[None]: Success or failure result
        """
        try:
            conn = self._get_connection()

            conn.execute("CREATE SEQUENCE IF NOT EXISTS procedure_records_seq START 1")
            conn.execute("CREATE SEQUENCE IF NOT EXISTS complication_cases_seq START 1")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS procedure_records (
                    id VARCHAR PRIMARY KEY,
                    seq BIGINT NOT NULL DEFAULT nextval('procedure_records_seq'),
                    owner_id VARCHAR NOT NULL,
                    procedure VARCHAR NOT NULL,
                    laterality VARCHAR NOT NULL,
                    date DATE NOT NULL,
                    patient_identifier VARCHAR NOT NULL,
                    role VARCHAR NOT NULL,
                    hospital VARCHAR NOT NULL,
                    training_grade VARCHAR NOT NULL,
                    comment VARCHAR,
                    complication_flags VARCHAR,
                    complication_cause VARCHAR,
                    complication_action VARCHAR,
                    linked_to_complication_log BOOLEAN NOT NULL DEFAULT FALSE,
                    ingested_at TIMESTAMP NOT NULL,
                    UNIQUE (owner_id, patient_identifier, laterality, procedure, date)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS complication_cases (
                    id VARCHAR PRIMARY KEY,
                    owner_id VARCHAR NOT NULL,
                    patient_identifier VARCHAR NOT NULL,
                    date DATE NOT NULL,
                    laterality VARCHAR NOT NULL,
                    operation_type VARCHAR NOT NULL,
                    complications VARCHAR NOT NULL,
                    other_detail VARCHAR,
                    cause VARCHAR,
                    action_taken VARCHAR,
                    procedure_record_id VARCHAR,
                    seq BIGINT NOT NULL DEFAULT nextval('complication_cases_seq'),
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """)

            self._initialized = True
            logger.info("Database schema initialized successfully")
            return Result.success_result(None)

        except Exception as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    @_synchronized
    def list_records(self, owner_id: str) -> Result[list[ProcedureRecord]]:
        try:
            self._ensure_schema()
            rows = self._fetch_dicts(
                f"SELECT {', '.join(RECORD_COLUMNS)} FROM procedure_records "
                "WHERE owner_id = ? ORDER BY seq",
                [owner_id],
            )
            return Result.success_result([row_to_record(row) for row in rows])
        except Exception as e:
            error_msg = f"Failed to list records: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="list_records"),
                error_type="StorageError"
            )

    @_synchronized
    def get_record(self, owner_id: str, record_id: str) -> Result[Optional[ProcedureRecord]]:
        try:
            self._ensure_schema()
            rows = self._fetch_dicts(
                f"SELECT {', '.join(RECORD_COLUMNS)} FROM procedure_records "
                "WHERE owner_id = ? AND id = ?",
                [owner_id, record_id],
            )
            return Result.success_result(row_to_record(rows[0]) if rows else None)
        except Exception as e:
            error_msg = f"Failed to get record: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="get_record", details={"record_id": record_id}),
                error_type="StorageError"
            )

    @_synchronized
    def upsert_records(self, owner_id: str, records: list[ProcedureRecord]) -> Result[int]:
        """Bulk insert records; rows whose key already exists are left untouched.

        The batch is loaded through a registered DataFrame and inserted with
        ``ON CONFLICT DO NOTHING`` inside one transaction.

        Returns:
            Result[int]: Number of rows actually inserted
        """
        if not records:
            return Result.success_result(0)

        conn = None
        try:
            self._ensure_schema()
            conn = self._get_connection()

            df = pd.DataFrame([
                record_to_row(record, owner_id, str(uuid.uuid4())) for record in records
            ])
            df = df.drop_duplicates(subset=_KEY_COLUMNS, keep="first").reset_index(drop=True)
            df["date"] = df["date"].map(lambda d: d.isoformat())
            df["batch_position"] = range(len(df))

            columns = ", ".join(RECORD_COLUMNS)
            select_columns = ", ".join(
                "CAST(date AS DATE)" if c == "date"
                else "CAST(ingested_at AS TIMESTAMP)" if c == "ingested_at"
                else c
                for c in RECORD_COLUMNS
            )

            conn.execute("BEGIN TRANSACTION")
            before = conn.execute(
                "SELECT COUNT(*) FROM procedure_records WHERE owner_id = ?", [owner_id]
            ).fetchone()[0]

            conn.register("batch_df", df)
            conn.execute(
                f"INSERT INTO procedure_records ({columns}) "
                f"SELECT {select_columns} FROM batch_df ORDER BY batch_position "
                "ON CONFLICT (owner_id, patient_identifier, laterality, procedure, date) DO NOTHING"
            )
            conn.unregister("batch_df")

            after = conn.execute(
                "SELECT COUNT(*) FROM procedure_records WHERE owner_id = ?", [owner_id]
            ).fetchone()[0]
            conn.execute("COMMIT")

            inserted = after - before
            logger.info(f"Inserted {inserted} of {len(records)} records ({len(records) - inserted} duplicates)")
            return Result.success_result(inserted)

        except Exception as e:
            if conn is not None:
                try:
                    conn.execute("ROLLBACK")
                except duckdb.Error as rollback_error:
                    logger.warning(f"Rollback failed: {rollback_error}")
            error_msg = f"Failed to insert records: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="upsert_records", details={"batch_size": len(records)}),
                error_type="StorageError"
            )

    @_synchronized
    def update_record(self, owner_id: str, record_id: str, patch: RecordPatch) -> Result[ProcedureRecord]:
        try:
            self._ensure_schema()
            changes = patch_to_columns(patch)
            if changes:
                assignments = ", ".join(f"{column} = ?" for column in changes)
                self._get_connection().execute(
                    f"UPDATE procedure_records SET {assignments} WHERE owner_id = ? AND id = ?",
                    [*changes.values(), owner_id, record_id],
                )
            result = self.get_record(owner_id, record_id)
            if result.is_failure():
                return result
            if result.value is None:
                raise StorageError(f"Record {record_id} not found", operation="update_record")
            return Result.success_result(result.value)
        except Exception as e:
            error_msg = f"Failed to update record: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="update_record", details={"record_id": record_id}),
                error_type="StorageError"
            )

    @_synchronized
    def insert_complication_case(self, owner_id: str, case: ComplicationCase) -> Result[str]:
        try:
            self._ensure_schema()
            case_id = case.id or str(uuid.uuid4())
            row = case_to_row(case, owner_id, case_id)
            placeholders = ", ".join("?" for _ in CASE_COLUMNS)
            self._get_connection().execute(
                f"INSERT INTO complication_cases ({', '.join(CASE_COLUMNS)}) VALUES ({placeholders})",
                [row[c] for c in CASE_COLUMNS],
            )
            logger.info("Stored complication case")
            return Result.success_result(case_id)
        except Exception as e:
            error_msg = f"Failed to insert complication case: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="insert_complication_case"),
                error_type="StorageError"
            )

    @_synchronized
    def update_complication_case(self, owner_id: str, case: ComplicationCase) -> Result[ComplicationCase]:
        try:
            self._ensure_schema()
            row = case_to_row(case, owner_id, case.id)
            columns = [c for c in CASE_COLUMNS if c not in ("id", "owner_id")]
            assignments = ", ".join(f"{c} = ?" for c in columns)
            conn = self._get_connection()
            found = conn.execute(
                "SELECT COUNT(*) FROM complication_cases WHERE owner_id = ? AND id = ?",
                [owner_id, case.id],
            ).fetchone()[0]
            if not found:
                raise StorageError(f"Complication case {case.id} not found", operation="update_complication_case")
            conn.execute(
                f"UPDATE complication_cases SET {assignments} WHERE owner_id = ? AND id = ?",
                [*(row[c] for c in columns), owner_id, case.id],
            )
            return Result.success_result(case.model_copy(update={"owner_id": owner_id}))
        except Exception as e:
            error_msg = f"Failed to update complication case: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="update_complication_case", details={"case_id": case.id}),
                error_type="StorageError"
            )

    @_synchronized
    def delete_complication_case(self, owner_id: str, case_id: str) -> Result[bool]:
        try:
            self._ensure_schema()
            conn = self._get_connection()
            found = conn.execute(
                "SELECT COUNT(*) FROM complication_cases WHERE owner_id = ? AND id = ?",
                [owner_id, case_id],
            ).fetchone()[0]
            conn.execute(
                "DELETE FROM complication_cases WHERE owner_id = ? AND id = ?",
                [owner_id, case_id],
            )
            return Result.success_result(bool(found))
        except Exception as e:
            error_msg = f"Failed to delete complication case: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="delete_complication_case", details={"case_id": case_id}),
                error_type="StorageError"
            )

    @_synchronized
    def list_complication_cases(self, owner_id: str) -> Result[list[ComplicationCase]]:
        try:
            self._ensure_schema()
            rows = self._fetch_dicts(
                f"SELECT {', '.join(CASE_COLUMNS)} FROM complication_cases "
                "WHERE owner_id = ? ORDER BY seq",
                [owner_id],
            )
            return Result.success_result([row_to_case(row) for row in rows])
        except Exception as e:
            error_msg = f"Failed to list complication cases: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="list_complication_cases"),
                error_type="StorageError"
            )

    @_synchronized
    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                self._connection = None
                logger.info("Closed DuckDB connection")
            except Exception as e:
                logger.warning(f"Error closing connection: {str(e)}")
