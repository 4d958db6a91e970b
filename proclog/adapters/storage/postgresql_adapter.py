"""PostgreSQL Storage Adapter.

This adapter implements the RecordStorePort contract on PostgreSQL for
multi-user deployments where several processes share one record store.

Architecture:
    - Implements RecordStorePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - Connection pooling (psycopg2 ThreadedConnectionPool)
    - The uniqueness key is a UNIQUE constraint; bulk inserts use
      ``execute_values`` with ``ON CONFLICT ... DO NOTHING RETURNING id`` so
      concurrent ingests for the same owner cannot create duplicates
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from psycopg2 import pool
from psycopg2.extras import RealDictCursor, execute_values

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

_KEY_CONSTRAINT = "(owner_id, patient_identifier, laterality, procedure, date)"


class PostgreSQLAdapter(RecordStorePort):
    """PostgreSQL implementation of RecordStorePort.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        connection_string: Full PostgreSQL connection string
        host: Database host (required if no connection_string or db_config)
        port: Database port (default: 5432)
        database: Database name
        username: Database username
        password: Database password
        ssl_mode: SSL mode (require, prefer, disable)
        pool_size: Connection pool size
        max_overflow: Maximum connection pool overflow

    Note:
        Priority order: db_config > connection_string > individual parameters.
        Credentials are never logged.
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        connection_string: Optional[str] = None,
        host: Optional[str] = None,
        port: int = 5432,
        database: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        ssl_mode: Optional[str] = None,
        pool_size: int = 5,
        max_overflow: int = 10,
    ):
        self._connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self._schema_initialized = False
        self._schema_lock = threading.Lock()

        if db_config:
            if db_config.db_type != "postgresql":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match PostgreSQL adapter",
                    operation="__init__"
                )
            if db_config.connection_string:
                self.connection_params = {"dsn": db_config.connection_string.get_secret_value()}
            else:
                if not all([db_config.host, db_config.database]):
                    raise StorageError(
                        "PostgreSQL DatabaseConfig requires host and database",
                        operation="__init__"
                    )
                self.connection_params = {
                    "host": db_config.host,
                    "port": db_config.port or 5432,
                    "database": db_config.database,
                    "user": db_config.username,
                    "sslmode": db_config.ssl_mode or "prefer",
                }
                if db_config.password:
                    self.connection_params["password"] = db_config.password.get_secret_value()
            self.pool_size = db_config.pool_size
            self.max_overflow = db_config.max_overflow

        elif connection_string:
            self.connection_params = {"dsn": connection_string}
            self.pool_size = pool_size
            self.max_overflow = max_overflow
        else:
            if not all([host, database]):
                raise StorageError(
                    "PostgreSQL adapter requires either db_config, connection_string, or (host and database)",
                    operation="__init__"
                )
            self.connection_params = {
                "host": host,
                "port": port,
                "database": database,
                "user": username,
                "password": password,
                "sslmode": ssl_mode or "prefer",
            }
            self.pool_size = pool_size
            self.max_overflow = max_overflow

    def _get_connection_pool(self) -> pool.ThreadedConnectionPool:
        """Get or create the connection pool (created lazily, then reused)."""
        if self._connection_pool is None:
            try:
                self._connection_pool = pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=self.pool_size + self.max_overflow,
                    **self.connection_params
                )
                logger.info("Created PostgreSQL connection pool")
            except Exception as e:
                raise StorageError(
                    f"Failed to create PostgreSQL connection pool: {str(e)}",
                    operation="connect",
                    details={"host": self.connection_params.get("host", "N/A")}
                )
        return self._connection_pool

    @contextmanager
    def _cursor(self) -> Iterator:
        """Yield a dict cursor inside a transaction; commit on success, roll back on error."""
        connection_pool = self._get_connection_pool()
        try:
            conn = connection_pool.getconn()
        except Exception as e:
            raise StorageError(f"Failed to get connection from pool: {str(e)}", operation="get_connection")
        try:
            cursor = conn.cursor(cursor_factory=RealDictCursor)
            yield cursor
            conn.commit()
            cursor.close()
        except Exception:
            conn.rollback()
            raise
        finally:
            try:
                connection_pool.putconn(conn)
            except Exception as e:
                logger.warning(f"Error returning connection to pool: {str(e)}")

    def _ensure_schema(self) -> None:
        if not self._schema_initialized:
            result = self.initialize_schema()
            if result.is_failure():
                raise StorageError(result.error, operation="initialize_schema")

    def initialize_schema(self) -> Result[None]:
        """Create tables, constraints and indexes.

        Schema initialization is cached per adapter instance and guarded by a
        lock (double-checked).
        """
        if self._schema_initialized:
            return Result.success_result(None)

        with self._schema_lock:
            if self._schema_initialized:
                return Result.success_result(None)
            try:
                with self._cursor() as cursor:
                    cursor.execute(f"""
                        CREATE TABLE IF NOT EXISTS procedure_records (
                            id VARCHAR(36) PRIMARY KEY,
                            seq BIGSERIAL NOT NULL,
                            owner_id VARCHAR(255) NOT NULL,
                            procedure TEXT NOT NULL,
                            laterality VARCHAR(20) NOT NULL,
                            date DATE NOT NULL,
                            patient_identifier VARCHAR(50) NOT NULL,
                            role VARCHAR(4) NOT NULL,
                            hospital TEXT NOT NULL,
                            training_grade VARCHAR(10) NOT NULL,
                            comment TEXT,
                            complication_flags TEXT,
                            complication_cause TEXT,
                            complication_action TEXT,
                            linked_to_complication_log BOOLEAN NOT NULL DEFAULT FALSE,
                            ingested_at TIMESTAMP NOT NULL,
                            CONSTRAINT uq_procedure_records_key UNIQUE {_KEY_CONSTRAINT}
                        )
                    """)
                    cursor.execute("""
                        CREATE TABLE IF NOT EXISTS complication_cases (
                            id VARCHAR(36) PRIMARY KEY,
                            seq BIGSERIAL NOT NULL,
                            owner_id VARCHAR(255) NOT NULL,
                            patient_identifier VARCHAR(50) NOT NULL,
                            date DATE NOT NULL,
                            laterality VARCHAR(20) NOT NULL,
                            operation_type TEXT NOT NULL,
                            complications TEXT NOT NULL,
                            other_detail TEXT,
                            cause TEXT,
                            action_taken TEXT,
                            procedure_record_id VARCHAR(36),
                            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                        )
                    """)
                    cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_owner ON procedure_records(owner_id, seq)")
                    cursor.execute("CREATE INDEX IF NOT EXISTS idx_cases_owner ON complication_cases(owner_id, seq)")

                self._schema_initialized = True
                logger.info("PostgreSQL database schema initialized successfully")
                return Result.success_result(None)

            except Exception as e:
                error_msg = f"Failed to initialize schema: {str(e)}"
                logger.error(error_msg, exc_info=True)
                return Result.failure_result(
                    StorageError(error_msg, operation="initialize_schema"),
                    error_type="StorageError"
                )

    def list_records(self, owner_id: str) -> Result[list[ProcedureRecord]]:
        try:
            self._ensure_schema()
            with self._cursor() as cursor:
                cursor.execute(
                    f"SELECT {', '.join(RECORD_COLUMNS)} FROM procedure_records "
                    "WHERE owner_id = %s ORDER BY seq",
                    (owner_id,),
                )
                rows = cursor.fetchall()
            return Result.success_result([row_to_record(row) for row in rows])
        except Exception as e:
            error_msg = f"Failed to list records: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="list_records"),
                error_type="StorageError"
            )

    def get_record(self, owner_id: str, record_id: str) -> Result[Optional[ProcedureRecord]]:
        try:
            self._ensure_schema()
            with self._cursor() as cursor:
                cursor.execute(
                    f"SELECT {', '.join(RECORD_COLUMNS)} FROM procedure_records "
                    "WHERE owner_id = %s AND id = %s",
                    (owner_id, record_id),
                )
                row = cursor.fetchone()
            return Result.success_result(row_to_record(row) if row else None)
        except Exception as e:
            error_msg = f"Failed to get record: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="get_record", details={"record_id": record_id}),
                error_type="StorageError"
            )

    def upsert_records(self, owner_id: str, records: list[ProcedureRecord]) -> Result[int]:
        """Bulk insert with ``ON CONFLICT DO NOTHING``; returns the number inserted.

        PostgreSQL rejects a statement that hits the same conflict key twice,
        so in-batch duplicates are dropped first (first occurrence kept).
        """
        if not records:
            return Result.success_result(0)

        try:
            self._ensure_schema()

            seen: set[tuple] = set()
            values = []
            for record in records:
                key = record.dedup_key(owner_id)
                if key in seen:
                    continue
                seen.add(key)
                row = record_to_row(record, owner_id, str(uuid.uuid4()))
                values.append(tuple(row[c] for c in RECORD_COLUMNS))

            with self._cursor() as cursor:
                inserted_rows = execute_values(
                    cursor,
                    f"INSERT INTO procedure_records ({', '.join(RECORD_COLUMNS)}) VALUES %s "
                    f"ON CONFLICT {_KEY_CONSTRAINT} DO NOTHING RETURNING id",
                    values,
                    fetch=True,
                )

            inserted = len(inserted_rows or [])
            logger.info(f"Inserted {inserted} of {len(records)} records ({len(records) - inserted} duplicates)")
            return Result.success_result(inserted)

        except Exception as e:
            error_msg = f"Failed to insert records: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="upsert_records", details={"batch_size": len(records)}),
                error_type="StorageError"
            )

    def update_record(self, owner_id: str, record_id: str, patch: RecordPatch) -> Result[ProcedureRecord]:
        try:
            self._ensure_schema()
            changes = patch_to_columns(patch)
            with self._cursor() as cursor:
                if changes:
                    assignments = ", ".join(f"{column} = %s" for column in changes)
                    cursor.execute(
                        f"UPDATE procedure_records SET {assignments} WHERE owner_id = %s AND id = %s",
                        (*changes.values(), owner_id, record_id),
                    )
                cursor.execute(
                    f"SELECT {', '.join(RECORD_COLUMNS)} FROM procedure_records "
                    "WHERE owner_id = %s AND id = %s",
                    (owner_id, record_id),
                )
                row = cursor.fetchone()
            if not row:
                raise StorageError(f"Record {record_id} not found", operation="update_record")
            return Result.success_result(row_to_record(row))
        except Exception as e:
            error_msg = f"Failed to update record: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="update_record", details={"record_id": record_id}),
                error_type="StorageError"
            )

    def insert_complication_case(self, owner_id: str, case: ComplicationCase) -> Result[str]:
        try:
            self._ensure_schema()
            case_id = case.id or str(uuid.uuid4())
            row = case_to_row(case, owner_id, case_id)
            with self._cursor() as cursor:
                cursor.execute(
                    f"INSERT INTO complication_cases ({', '.join(CASE_COLUMNS)}) "
                    f"VALUES ({', '.join(['%s'] * len(CASE_COLUMNS))})",
                    tuple(row[c] for c in CASE_COLUMNS),
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

    def update_complication_case(self, owner_id: str, case: ComplicationCase) -> Result[ComplicationCase]:
        try:
            self._ensure_schema()
            row = case_to_row(case, owner_id, case.id)
            columns = [c for c in CASE_COLUMNS if c not in ("id", "owner_id")]
            with self._cursor() as cursor:
                cursor.execute(
                    f"UPDATE complication_cases SET {', '.join(f'{c} = %s' for c in columns)} "
                    "WHERE owner_id = %s AND id = %s",
                    (*(row[c] for c in columns), owner_id, case.id),
                )
                updated = cursor.rowcount
            if not updated:
                raise StorageError(f"Complication case {case.id} not found", operation="update_complication_case")
            return Result.success_result(case.model_copy(update={"owner_id": owner_id}))
        except Exception as e:
            error_msg = f"Failed to update complication case: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="update_complication_case", details={"case_id": case.id}),
                error_type="StorageError"
            )

    def delete_complication_case(self, owner_id: str, case_id: str) -> Result[bool]:
        try:
            self._ensure_schema()
            with self._cursor() as cursor:
                cursor.execute(
                    "DELETE FROM complication_cases WHERE owner_id = %s AND id = %s",
                    (owner_id, case_id),
                )
                deleted = cursor.rowcount
            return Result.success_result(deleted > 0)
        except Exception as e:
            error_msg = f"Failed to delete complication case: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="delete_complication_case", details={"case_id": case_id}),
                error_type="StorageError"
            )

    def list_complication_cases(self, owner_id: str) -> Result[list[ComplicationCase]]:
        try:
            self._ensure_schema()
            with self._cursor() as cursor:
                cursor.execute(
                    f"SELECT {', '.join(CASE_COLUMNS)} FROM complication_cases "
                    "WHERE owner_id = %s ORDER BY seq",
                    (owner_id,),
                )
                rows = cursor.fetchall()
            return Result.success_result([row_to_case(row) for row in rows])
        except Exception as e:
            error_msg = f"Failed to list complication cases: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="list_complication_cases"),
                error_type="StorageError"
            )

    def close(self) -> None:
        """Close storage connection pool and release resources."""
        if self._connection_pool is not None:
            try:
                self._connection_pool.closeall()
                self._connection_pool = None
                logger.info("Closed PostgreSQL connection pool")
            except Exception as e:
                logger.warning(f"Error closing connection pool: {str(e)}")
