"""Application Settings.

Application-wide values combining the configuration manager with
environment overrides and defaults.
"""

import os
from typing import Optional

from proclog.infrastructure.config_manager import (
    BlobStorageConfig,
    ConfigManager,
    DatabaseConfig,
    ParserConfig,
)

APP_NAME = "proclog"
APP_VERSION = "0.1.0"


class Settings:
    """Application settings loaded lazily from the environment.

    Attributes:
        app_name: Display name
        log_level: Root log level (PL_LOG_LEVEL)
        log_json: Emit JSON log lines (PL_LOG_JSON)
        default_owner: Owner used by the CLI when --owner is omitted (PL_OWNER)
    """

    def __init__(self):
        self._config_manager: Optional[ConfigManager] = None

        self.app_name = os.getenv("PL_APP_NAME", APP_NAME)
        self.log_level = os.getenv("PL_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("PL_LOG_JSON", "false").lower() == "true"
        self.default_owner = os.getenv("PL_OWNER")

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config_manager.get_database_config()

    @property
    def blob_config(self) -> BlobStorageConfig:
        return self.config_manager.get_blob_storage_config()

    @property
    def parser_config(self) -> ParserConfig:
        return self.config_manager.get_parser_config()


# Global settings instance
settings = Settings()
