"""Configuration Manager.

Loads database, blob storage and parser settings from environment variables
(optionally via a ``.env`` file) or from a JSON file, validating them with
Pydantic before use.

Architecture:
    - Infrastructure layer, isolated from the domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
    - Credentials are SecretStr and never logged
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, unquote, urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "PL_"


class DatabaseConfig(BaseModel):
    """Record store connection settings.

    Parameters:
        db_type: 'duckdb' (embedded, default) or 'postgresql'
        db_path: Path to the DuckDB file (':memory:' for in-memory)
        host: PostgreSQL host
        port: PostgreSQL port
        database: PostgreSQL database name
        username: PostgreSQL username
        password: PostgreSQL password (SecretStr - never logged)
        connection_string: Full connection string (SecretStr - never logged)
        ssl_mode: SSL mode for PostgreSQL connections
        pool_size: Connection pool size
        max_overflow: Maximum connection pool overflow
    """

    db_type: str = Field(default="duckdb", description="Database type (duckdb, postgresql)")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")
    host: Optional[str] = Field(None, description="Database host")
    port: Optional[int] = Field(None, description="Database port")
    database: Optional[str] = Field(None, description="Database name")
    username: Optional[str] = Field(None, description="Database username")
    password: Optional[SecretStr] = Field(None, description="Database password (secret)")
    connection_string: Optional[SecretStr] = Field(None, description="Full connection string (secret)")
    ssl_mode: Optional[str] = Field(None, description="SSL mode (require, prefer, disable)")
    pool_size: int = Field(default=5, ge=1, description="Connection pool size")
    max_overflow: int = Field(default=10, ge=0, description="Maximum connection pool overflow")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        supported_types = ["duckdb", "postgresql"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported database type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """The file may not exist yet, but its directory must."""
        if v is None or v == ":memory:":
            return v
        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    @staticmethod
    def _parse_postgresql_connection_string(conn_str: str) -> Dict[str, Any]:
        """Split a postgresql:// URL into host, port, database, credentials and sslmode."""
        parsed = urlparse(conn_str)
        if parsed.scheme not in ["postgresql", "postgres"]:
            raise ValueError(f"Unsupported connection string scheme: {parsed.scheme}")

        result = {
            "host": parsed.hostname,
            "port": parsed.port,
            "database": parsed.path.lstrip("/") if parsed.path else None,
            "username": unquote(parsed.username) if parsed.username else None,
            "password": unquote(parsed.password) if parsed.password else None,
        }
        query_params = parse_qs(parsed.query)
        if "sslmode" in query_params:
            result["ssl_mode"] = query_params["sslmode"][0]
        return result

    @model_validator(mode="after")
    def sync_connection_string(self) -> "DatabaseConfig":
        """Populate individual PostgreSQL fields from the connection string, which takes precedence."""
        if self.connection_string and self.db_type == "postgresql":
            try:
                parsed = self._parse_postgresql_connection_string(self.connection_string.get_secret_value())
            except ValueError as e:
                logger.warning(f"Failed to parse connection string, using as-is: {str(e)}")
                return self
            for name in ("host", "port", "database", "username", "ssl_mode"):
                if parsed.get(name):
                    setattr(self, name, parsed[name])
            if parsed.get("password"):
                self.password = SecretStr(parsed["password"])
        return self

    def describe(self) -> Dict[str, Any]:
        """Non-secret summary for display."""
        if self.db_type == "duckdb":
            return {"db_type": self.db_type, "db_path": self.db_path or ":memory:"}
        return {
            "db_type": self.db_type,
            "host": self.host,
            "port": self.port or 5432,
            "database": self.database,
            "ssl_mode": self.ssl_mode or "prefer",
            "pool_size": self.pool_size,
        }


class BlobStorageConfig(BaseModel):
    """Where original uploaded documents are retained.

    Parameters:
        enabled: Retain documents at all
        root_dir: Directory documents are written under (one subdirectory per owner)
    """

    enabled: bool = Field(default=True)
    root_dir: str = Field(default="data/uploads")


class ParserConfig(BaseModel):
    """Tunables for row clustering and the stepped PCR series."""

    row_tolerance: float = Field(default=3.0, gt=0, description="Row clustering tolerance (PDF units)")
    min_row_tokens: int = Field(default=4, ge=1, description="Minimum tokens for a candidate row")
    pcr_step: int = Field(default=3, ge=1, description="Stepped PCR snapshot interval")


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class ConfigManager:
    """Unified access to validated configuration.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()

        config = ConfigManager.from_file("config.json")
        parser = config.get_parser_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._blob_config: Optional[BlobStorageConfig] = None
        self._parser_config: Optional[ParserConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> "ConfigManager":
        """Load configuration from environment variables.

        Environment Variables:
            - PL_DB_TYPE: Database type (duckdb, postgresql)
            - PL_DB_PATH: Path to DuckDB file
            - PL_DB_HOST / PL_DB_PORT / PL_DB_NAME / PL_DB_USER: PostgreSQL settings
            - PL_DB_PASSWORD: Database password (secret)
            - PL_DB_CONNECTION_STRING: Full connection string (secret)
            - PL_DB_SSL_MODE: SSL mode
            - PL_DB_POOL_SIZE / PL_DB_MAX_OVERFLOW: Pool sizing
            - PL_BLOB_ENABLED / PL_BLOB_ROOT: Document retention
            - PL_ROW_TOLERANCE / PL_MIN_ROW_TOKENS / PL_PCR_STEP: Parser tunables

        A ``.env`` file (given, or in the working directory) is loaded first;
        variables already set in the environment win.
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path, override=False)
            logger.debug(f"Loaded environment variables from {env_path}")

        database = {
            "db_type": _env("DB_TYPE", "duckdb"),
            "db_path": _env("DB_PATH"),
            "host": _env("DB_HOST"),
            "port": int(_env("DB_PORT")) if _env("DB_PORT") else None,
            "database": _env("DB_NAME"),
            "username": _env("DB_USER"),
            "password": _env("DB_PASSWORD"),
            "connection_string": _env("DB_CONNECTION_STRING"),
            "ssl_mode": _env("DB_SSL_MODE"),
        }
        if _env("DB_POOL_SIZE"):
            database["pool_size"] = int(_env("DB_POOL_SIZE"))
        if _env("DB_MAX_OVERFLOW"):
            database["max_overflow"] = int(_env("DB_MAX_OVERFLOW"))

        blob_storage: Dict[str, Any] = {"enabled": _env_bool("BLOB_ENABLED", True)}
        if _env("BLOB_ROOT"):
            blob_storage["root_dir"] = _env("BLOB_ROOT")

        parser: Dict[str, Any] = {}
        if _env("ROW_TOLERANCE"):
            parser["row_tolerance"] = float(_env("ROW_TOLERANCE"))
        if _env("MIN_ROW_TOKENS"):
            parser["min_row_tokens"] = int(_env("MIN_ROW_TOKENS"))
        if _env("PCR_STEP"):
            parser["pcr_step"] = int(_env("PCR_STEP"))

        return cls({"database": database, "blob_storage": blob_storage, "parser": parser})

    @classmethod
    def from_file(cls, config_path: str) -> "ConfigManager":
        """Load configuration from a JSON file with ``database``, ``blob_storage`` and ``parser`` sections.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid JSON
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        if config_file.stat().st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )

        try:
            with open(config_file, "r") as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        if self._database_config is None:
            data = {k: v for k, v in self._config_data.get("database", {}).items() if v is not None}
            self._database_config = DatabaseConfig(**data)
        return self._database_config

    def get_blob_storage_config(self) -> BlobStorageConfig:
        if self._blob_config is None:
            self._blob_config = BlobStorageConfig(**self._config_data.get("blob_storage", {}))
        return self._blob_config

    def get_parser_config(self) -> ParserConfig:
        if self._parser_config is None:
            self._parser_config = ParserConfig(**self._config_data.get("parser", {}))
        return self._parser_config
