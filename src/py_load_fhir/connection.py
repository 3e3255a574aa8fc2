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
"""Owns the live PostgreSQL connection shared by the record store.

The connection is opened lazily and rebuilt whenever the database
settings returned by the settings provider change. Building it is a
critical section: concurrent callers wait for the single winner and then
share the new connection.
"""

import asyncio
import logging
import types
from collections.abc import Awaitable, Callable
from typing import NamedTuple

import psycopg
from psycopg.rows import dict_row

from .config import DatabaseSettings, SettingsProvider

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[psycopg.AsyncConnection]]


class ConnectionHandle(NamedTuple):
    connection: psycopg.AsyncConnection
    settings: DatabaseSettings


class ConnectionManager:
    """Lazily-initialised, invalidate-on-change PostgreSQL connection.

    Use as an async context manager, or call ``close()`` when done.
    """

    def __init__(
        self, settings_provider: SettingsProvider, connector: Connector | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            settings_provider: Source of the current database settings.
            connector: Coroutine function opening a connection from a libpq
                       conninfo string; defaults to psycopg's AsyncConnection.
        """
        self.settings_provider = settings_provider
        self._connect = connector or psycopg.AsyncConnection.connect
        self._gate = asyncio.Lock()
        self._settings: DatabaseSettings | None = None
        self._connection: psycopg.AsyncConnection | None = None
        self._closed = False

    def desired_settings(self) -> DatabaseSettings:
        return self.settings_provider.get().database

    async def ensure_ready(self) -> ConnectionHandle:
        """Return a live connection for the current settings, (re)connecting if needed."""
        async with self._gate:
            if self._closed:
                msg = "ConnectionManager has been closed."
                raise RuntimeError(msg)

            desired = self.desired_settings()
            if (
                self._connection is not None
                and not self._connection.closed
                and self._settings == desired
            ):
                return ConnectionHandle(self._connection, self._settings)

            await self._dispose_connection()

            logger.info(
                "Connecting to PostgreSQL at %s:%s/%s...", desired.host, desired.port, desired.dbname,
            )
            self._connection = await self.open_connection(desired)
            self._settings = desired
            logger.info(
                "PostgreSQL connection initialized against database %s, schema %s, table %s.",
                desired.dbname,
                desired.schema_name,
                desired.table_name,
            )
            return ConnectionHandle(self._connection, desired)

    async def open_connection(
        self, settings: DatabaseSettings, dbname: str | None = None,
    ) -> psycopg.AsyncConnection:
        """Open a new autocommit connection that the caller owns.

        Used for the shared connection and for short-lived administrative
        connections (e.g. to the maintenance database).
        """
        return await self._connect(
            settings.conninfo_for(dbname or settings.dbname),
            autocommit=True,
            row_factory=dict_row,
        )

    async def reset(self) -> None:
        """Drop the live connection so that the next call reconnects."""
        async with self._gate:
            await self._dispose_connection()

    async def close(self) -> None:
        async with self._gate:
            if self._closed:
                return
            self._closed = True
            await self._dispose_connection()

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    async def _dispose_connection(self) -> None:
        connection, self._connection, self._settings = self._connection, None, None
        if connection is not None and not connection.closed:
            await connection.close()

