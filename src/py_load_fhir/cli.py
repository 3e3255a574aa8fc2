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
"""Command line entry point for loading and searching FHIR prescriptions."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, List, Optional

import typer

from .config import FileSettingsStore
from .connection import ConnectionManager
from .ingestion import IngestionService
from .models import IngestionOutcome, ObjectStoreOptions, RawDocument, SearchCriteria
from .processor import DocumentProcessor
from .retriever import ObjectStoreRetriever
from .store.base import BaseRecordStore
from .store.memory import MemoryRecordStore
from .store.postgres import PostgresRecordStore

logger = logging.getLogger(__name__)

app = typer.Typer(help="Load FHIR prescription bundles into PostgreSQL and search them.")

ConfigOption = typer.Option("config.yaml", "--config", help="Path to YAML config file.")
DryRunOption = typer.Option(
    False, "--dry-run", help="Process documents without writing to the database.",
)
DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M:%S%z"]
EMPTY_FILE_WARNING = "File is empty and was skipped."


@app.callback()
def configure_logging(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Basic structured logging setup."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@asynccontextmanager
async def open_store(config_file: str, dry_run: bool = False) -> AsyncIterator[BaseRecordStore]:
    """Yield the record store described by the config file, closing it afterwards."""
    if dry_run:
        yield MemoryRecordStore()
        return

    async with ConnectionManager(FileSettingsStore(config_file)) as manager:
        yield PostgresRecordStore(manager)


def _report_outcome(outcome: IngestionOutcome) -> None:
    for record in outcome.stored_records:
        typer.echo(
            f"stored {record.id}  {record.file_name}  "
            f"pzn={','.join(record.codes) or '-'}  issued={record.issue_date or '-'}",
        )
    for warning in outcome.warnings:
        typer.echo(f"warning: {warning}")
    for failure in outcome.failures:
        typer.echo(f"failed: {failure.file_name}: {failure.error_message}", err=True)
    typer.echo(
        f"{len(outcome.stored_records)} stored, {len(outcome.failures)} failed, "
        f"{len(outcome.warnings)} warning(s).",
    )


@app.command()
def ingest(
    paths: List[Path] = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="FHIR XML or JSON files.",
    ),
    config_file: str = ConfigOption,
    dry_run: bool = DryRunOption,
) -> None:
    """Ingest local FHIR documents."""

    non_empty: List[Path] = []
    skipped: List[str] = []
    for path in paths:
        if path.stat().st_size > 0:
            non_empty.append(path)
        else:
            logger.warning("Skipping empty file %s", path)
            skipped.append(f"{path.name}: {EMPTY_FILE_WARNING}")

    async def run() -> IngestionOutcome:
        async with open_store(config_file, dry_run) as store:
            service = IngestionService(DocumentProcessor(), store)
            documents = [
                RawDocument(file_name=path.name, content=path.open("rb")) for path in non_empty
            ]
            return await service.ingest(documents)

    outcome = asyncio.run(run())
    outcome.warnings.extend(skipped)
    _report_outcome(outcome)
    if outcome.failures:
        raise typer.Exit(code=1)


@app.command("import-bucket")
def import_bucket(
    prefix: Optional[str] = typer.Option(None, help="Key prefix to list; defaults to the configured prefix."),
    keys: Optional[List[str]] = typer.Option(None, "--key", help="Exact object key to fetch (repeatable)."),
    max_keys: int = typer.Option(25, help="Maximum number of objects to download (1-500)."),
    config_file: str = ConfigOption,
    dry_run: bool = DryRunOption,
) -> None:
    """Ingest FHIR documents from the configured S3 bucket."""
    settings = FileSettingsStore(config_file).get()
    options = ObjectStoreOptions.from_settings(
        settings.object_store, prefix=prefix, object_keys=keys or [], max_keys=max_keys,
    )

    async def run() -> IngestionOutcome:
        async with open_store(config_file, dry_run) as store:
            service = IngestionService(DocumentProcessor(), store)
            return await service.ingest_from_object_store(ObjectStoreRetriever(), options)

    outcome = asyncio.run(run())
    _report_outcome(outcome)
    if outcome.failures:
        raise typer.Exit(code=1)


@app.command()
def search(
    code: Optional[str] = typer.Option(None, "--code", help="PZN code the record must contain."),
    issue_date_from: Optional[datetime] = typer.Option(
        None, "--from", formats=DATE_FORMATS, help="Earliest issue date (inclusive).",
    ),
    issue_date_to: Optional[datetime] = typer.Option(
        None, "--to", formats=DATE_FORMATS, help="Latest issue date (inclusive).",
    ),
    config_file: str = ConfigOption,
) -> None:
    """Search stored prescriptions, newest upload first."""
    criteria = SearchCriteria(
        code=code, issue_date_from=issue_date_from, issue_date_to=issue_date_to,
    )

    async def run():
        async with open_store(config_file) as store:
            return await store.search(criteria)

    records = asyncio.run(run())
    for record in records:
        typer.echo(
            f"{record.uploaded_at.isoformat()}  {record.id}  {record.file_name}  "
            f"pzn={','.join(record.codes) or '-'}  issued={record.issue_date or '-'}",
        )
    typer.echo(f"{len(records)} record(s) found.")


@app.command("test-connection")
def test_connection(config_file: str = ConfigOption) -> None:
    """Check that the configured database is reachable."""

    async def run():
        async with open_store(config_file) as store:
            return await store.test_connection()

    result = asyncio.run(run())
    typer.echo(result.message)
    for detail in result.details:
        typer.echo(f"  {detail}")
    if not result.success:
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db(
    create: bool = typer.Option(False, "--create", help="Create missing structures."),
    config_file: str = ConfigOption,
) -> None:
    """Inspect, and optionally create, the database, schema and table."""

    async def run():
        async with open_store(config_file) as store:
            if create:
                return await store.create_missing_structures()
            return await store.check_structure()

    status = asyncio.run(run())
    typer.echo(f"server reachable: {status.server_reachable}")
    typer.echo(f"database {status.database}: {'present' if status.database_exists else 'missing'}")
    typer.echo(f"schema {status.schema_name}: {'present' if status.schema_exists else 'missing'}")
    typer.echo(f"table {status.table_name}: {'present' if status.table_exists else 'missing'}")
    for error in status.errors:
        typer.echo(f"error: {error}", err=True)
    if not status.is_complete:
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
