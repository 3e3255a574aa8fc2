# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Manages the application's configuration using Pydantic."""

import logging
import threading
from pathlib import Path
from typing import Protocol

import yaml
from psycopg.conninfo import make_conninfo
from pydantic import BaseModel, ConfigDict, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class DatabaseSettings(BaseModel):
    """Connection target, credentials and storage structure for PostgreSQL.

    The database, schema and table play the role of a document store's
    bucket, scope and collection.
    """

    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    # S105: Hardcoded password is used for local development.
    # In production, this should be set via environment variables.
    password: str = "postgres"
    dbname: str = "fhir_prescriptions"
    schema_name: str = "public"
    table_name: str = "prescriptions"
    maintenance_dbname: str = "postgres"
    connect_timeout: int = 10

    def conninfo_for(self, dbname: str) -> str:
        """Build a libpq connection string for an arbitrary database on this server."""
        return make_conninfo(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            dbname=dbname,
            connect_timeout=self.connect_timeout,
        )

    @computed_field
    @property
    def connection_string(self) -> str:
        """Construct the libpq connection string from individual settings."""
        return self.conninfo_for(self.dbname)


class ObjectStoreSettings(BaseModel):
    """Credentials and location of the S3-compatible bucket holding documents."""

    model_config = ConfigDict(frozen=True)

    access_key_id: str = ""
    secret_access_key: str = ""
    region: str = "us-east-1"
    bucket_name: str = ""
    endpoint_url: str | None = None
    force_path_style: bool = True
    default_prefix: str | None = None


class Settings(BaseSettings):
    """Manages configuration for the application.

    Reads settings from environment variables with the prefix 'FHIR_'.
    Nested values use a double underscore, e.g. ``FHIR_DATABASE__HOST``.
    """

    model_config = SettingsConfigDict(env_prefix="FHIR_", env_nested_delimiter="__")

    database: DatabaseSettings = DatabaseSettings()
    object_store: ObjectStoreSettings = ObjectStoreSettings()


class SettingsProvider(Protocol):
    """Anything able to hand out and persist the current settings."""

    def get(self) -> Settings: ...

    def save(self, settings: Settings) -> None: ...


class FileSettingsStore:
    """Settings provider backed by a YAML file.

    When the file does not exist yet, settings come from the environment
    and the defaults. The loaded value is cached; callers always receive
    a copy so they can never mutate the cached instance.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._cache: Settings | None = None

    def get(self) -> Settings:
        with self._lock:
            if self._cache is None:
                self._cache = self._read()
            return self._cache.model_copy(deep=True)

    def save(self, settings: Settings) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as f:
                yaml.safe_dump(
                    settings.model_dump(
                        mode="json", exclude={"database": {"connection_string"}},
                    ),
                    f,
                    sort_keys=False,
                )
            self._cache = settings.model_copy(deep=True)
        logger.info("Saved settings to %s", self.path)

    def _read(self) -> Settings:
        if not self.path.exists():
            logger.info("Settings file %s not found; using environment and defaults.", self.path)
            return Settings()

        with self.path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return Settings(**data)
