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
"""Provides a PostgreSQL record store that keeps each record as a JSONB document."""

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from ..config import DatabaseSettings
from ..connection import ConnectionManager
from ..exceptions import StoreError
from ..models import ConnectionTestResult, PrescriptionRecord, SearchCriteria, StructureStatus
from .base import BaseRecordStore

logger = logging.getLogger(__name__)

READY_ATTEMPTS = 10
READY_DELAY_SECONDS = 1.0


def _table(settings: DatabaseSettings) -> sql.Composable:
    return sql.SQL("{}.{}").format(
        sql.Identifier(settings.schema_name), sql.Identifier(settings.table_name),
    )


class PostgresRecordStore(BaseRecordStore):
    """PostgreSQL implementation of the BaseRecordStore.

    Records live in ``<schema>.<table>(id text primary key, doc jsonb)``.
    The database, schema and table come from the settings the connection
    manager currently holds, so a settings change takes effect on the next
    call.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        ready_attempts: int = READY_ATTEMPTS,
        ready_delay: float = READY_DELAY_SECONDS,
    ) -> None:
        """Initialize the store.

        Args:
            manager: The shared connection manager.
            ready_attempts: How often to poll a newly created database.
            ready_delay: Seconds to wait between polls.
        """
        self.manager = manager
        self.ready_attempts = ready_attempts
        self.ready_delay = ready_delay

    async def store_batch(self, records: Sequence[PrescriptionRecord]) -> None:
        if not records:
            return

        params = [(record.id, Jsonb(record.to_document())) for record in records]
        try:
            handle = await self.manager.ensure_ready()
            upsert_sql = sql.SQL(
                "INSERT INTO {table} (id, doc) VALUES (%s, %s) "
                "ON CONFLICT (id) DO UPDATE SET doc = EXCLUDED.doc",
            ).format(table=_table(handle.settings))
            async with handle.connection.transaction():
                async with handle.connection.cursor() as cur:
                    await cur.executemany(upsert_sql, params)
        except psycopg.Error as e:
            msg = f"Failed to store {len(params)} prescription record(s): {e}"
            raise StoreError(msg) from e
        logger.info("Stored %d prescription record(s).", len(params))

    async def search(self, criteria: SearchCriteria) -> list[PrescriptionRecord]:
        conditions: list[sql.Composable] = [sql.SQL("TRUE")]
        params: dict[str, Any] = {}
        if criteria.code is not None:
            conditions.append(sql.SQL("doc->'codes' @> jsonb_build_array(%(code)s::text)"))
            params["code"] = criteria.code
        if criteria.issue_date_from is not None:
            conditions.append(sql.SQL("(doc->>'issueDate')::timestamptz >= %(issue_date_from)s"))
            params["issue_date_from"] = criteria.issue_date_from
        if criteria.issue_date_to is not None:
            conditions.append(sql.SQL("(doc->>'issueDate')::timestamptz <= %(issue_date_to)s"))
            params["issue_date_to"] = criteria.issue_date_to

        logger.debug("Executing search with parameters %s", params)

        try:
            handle = await self.manager.ensure_ready()
            query = sql.SQL(
                "SELECT doc FROM {table} WHERE {conditions} "
                "ORDER BY (doc->>'uploadedAt')::timestamptz DESC",
            ).format(
                table=_table(handle.settings),
                conditions=sql.SQL(" AND ").join(conditions),
            )
            async with handle.connection.cursor() as cur:
                await cur.execute(query, params)
                rows = await cur.fetchall()
        except psycopg.Error as e:
            msg = f"Prescription search failed: {e}"
            raise StoreError(msg) from e
        return [PrescriptionRecord.model_validate(row["doc"]) for row in rows]

    async def test_connection(self) -> ConnectionTestResult:
        started = time.perf_counter()
        try:
            handle = await self.manager.ensure_ready()
            async with handle.connection.cursor() as cur:
                await cur.execute("SELECT version() AS version, current_database() AS database")
                row = await cur.fetchone()
        except Exception as e:  # noqa: BLE001 - reported, not raised
            logger.error("PostgreSQL connectivity test failed: %s", e)
            return ConnectionTestResult(success=False, message=str(e))

        latency_ms = (time.perf_counter() - started) * 1000
        return ConnectionTestResult(
            success=True,
            message="Successfully connected to PostgreSQL.",
            details=[
                f"server: {row['version']}",
                f"database: {row['database']}",
                f"latency: {latency_ms:.1f} ms",
            ],
        )

    async def check_structure(self) -> StructureStatus:
        settings = self.manager.desired_settings()
        status = StructureStatus(
            database=settings.dbname,
            schema_name=settings.schema_name,
            table_name=settings.table_name,
        )

        try:
            async with await self.manager.open_connection(
                settings, settings.maintenance_dbname,
            ) as admin:
                status.server_reachable = True
                cur = await admin.execute(
                    "SELECT 1 FROM pg_database WHERE datname = %s", (settings.dbname,),
                )
                status.database_exists = await cur.fetchone() is not None

            if not status.database_exists:
                return status

            async with await self.manager.open_connection(settings) as conn:
                cur = await conn.execute(
                    "SELECT 1 FROM information_schema.schemata WHERE schema_name = %s",
                    (settings.schema_name,),
                )
                status.schema_exists = await cur.fetchone() is not None
                if not status.schema_exists:
                    return status

                cur = await conn.execute(
                    "SELECT 1 FROM information_schema.tables "
                    "WHERE table_schema = %s AND table_name = %s",
                    (settings.schema_name, settings.table_name),
                )
                status.table_exists = await cur.fetchone() is not None
        except psycopg.Error as e:
            logger.error("Failed to verify PostgreSQL structures: %s", e)
            status.errors.append(str(e))

        return status

    async def create_missing_structures(self) -> StructureStatus:
        status = await self.check_structure()
        if status.has_errors:
            return status

        settings = self.manager.desired_settings()
        try:
            if not status.database_exists:
                logger.info("Creating PostgreSQL database %s...", settings.dbname)
                async with await self.manager.open_connection(
                    settings, settings.maintenance_dbname,
                ) as admin:
                    await admin.execute(
                        sql.SQL("CREATE DATABASE {}").format(sql.Identifier(settings.dbname)),
                    )
                await self._wait_for_database_ready(settings)

            async with await self.manager.open_connection(settings) as conn:
                if not status.schema_exists:
                    logger.info("Creating schema %s in %s...", settings.schema_name, settings.dbname)
                    await conn.execute(
                        sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(
                            sql.Identifier(settings.schema_name),
                        ),
                    )
                if not status.table_exists:
                    logger.info(
                        "Creating table %s.%s in %s...",
                        settings.schema_name,
                        settings.table_name,
                        settings.dbname,
                    )
                    await self._create_table(conn, settings)
        except (psycopg.Error, TimeoutError) as e:
            logger.error("Failed to create PostgreSQL structures: %s", e)
            status.errors.append(str(e))
            return status

        refreshed = await self.check_structure()
        if not refreshed.has_errors and refreshed.is_complete:
            await self.manager.reset()
        return refreshed

    async def _create_table(
        self, conn: psycopg.AsyncConnection, settings: DatabaseSettings,
    ) -> None:
        table = _table(settings)
        async with conn.transaction():
            await conn.execute(
                sql.SQL(
                    "CREATE TABLE IF NOT EXISTS {table} "
                    "(id text PRIMARY KEY, doc jsonb NOT NULL)",
                ).format(table=table),
            )
            await conn.execute(
                sql.SQL(
                    "CREATE INDEX IF NOT EXISTS {index} ON {table} USING GIN ((doc->'codes'))",
                ).format(
                    index=sql.Identifier(f"{settings.table_name}_codes_idx"), table=table,
                ),
            )
            await conn.execute(
                sql.SQL(
                    "CREATE INDEX IF NOT EXISTS {index} ON {table} ((doc->>'uploadedAt'))",
                ).format(
                    index=sql.Identifier(f"{settings.table_name}_uploaded_at_idx"), table=table,
                ),
            )

    async def _wait_for_database_ready(self, settings: DatabaseSettings) -> None:
        """Poll a freshly created database until it accepts connections.

        Raises:
            TimeoutError: If it is still unavailable after ``ready_attempts`` tries.
        """
        for attempt in range(1, self.ready_attempts + 1):
            try:
                async with await self.manager.open_connection(settings):
                    return
            except psycopg.OperationalError as e:
                logger.debug(
                    "Database %s not ready (attempt %d/%d): %s",
                    settings.dbname,
                    attempt,
                    self.ready_attempts,
                    e,
                )
                await asyncio.sleep(self.ready_delay)

        msg = (
            f"Database '{settings.dbname}' was not ready after waiting for "
            f"{self.ready_attempts * self.ready_delay:g} seconds."
        )
        raise TimeoutError(msg)
