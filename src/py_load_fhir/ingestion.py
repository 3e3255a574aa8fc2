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
"""Runs batches of FHIR documents through processing and into the record store."""

import asyncio
import logging
from collections.abc import Iterable

from .models import (
    DocumentFormat,
    IngestionFailure,
    IngestionOutcome,
    ObjectStoreOptions,
    PrescriptionRecord,
    RawDocument,
)
from .processor import DocumentProcessor
from .retriever import ObjectStoreRetriever
from .store.base import BaseRecordStore

logger = logging.getLogger(__name__)


class IngestionService:
    """Ingests batches of raw documents.

    Each document is processed on its own; a failing document is recorded
    in the outcome and the batch carries on. All successfully processed
    records are then written to the store in a single batch.
    """

    def __init__(self, processor: DocumentProcessor, store: BaseRecordStore) -> None:
        self.processor = processor
        self.store = store

    async def ingest(self, documents: Iterable[RawDocument]) -> IngestionOutcome:
        """Process ``documents`` in order and persist the ones that succeed.

        Every document's content stream is closed once it has been
        processed, whatever the result.

        Raises:
            StoreError: If the processed records could not be persisted.
        """
        outcome = IngestionOutcome()
        staged: list[PrescriptionRecord] = []

        for document in documents:
            try:
                hint = None if document.format is DocumentFormat.UNKNOWN else document.format
                result = self.processor.process(document.content, document.file_name, hint)
            finally:
                document.content.close()

            if not result.succeeded or result.record is None:
                outcome.failures.append(
                    IngestionFailure(
                        file_name=document.file_name,
                        error_message=result.error_message or "Unknown processing error",
                    ),
                )
            else:
                staged.append(result.record)
                outcome.warnings.extend(
                    f"{document.file_name}: {warning}" for warning in result.warnings
                )

            # Let cancellation and other tasks in between documents.
            await asyncio.sleep(0)

        if staged:
            await self.store.store_batch(staged)
            outcome.stored_records.extend(staged)

        logger.info(
            "Ingested %d record(s); %d failure(s), %d warning(s).",
            len(outcome.stored_records),
            len(outcome.failures),
            len(outcome.warnings),
        )
        return outcome

    async def ingest_from_object_store(
        self, retriever: ObjectStoreRetriever, options: ObjectStoreOptions,
    ) -> IngestionOutcome:
        """Download documents from the object store and ingest them.

        Download failures are reported alongside processing failures, keyed
        by object key.
        """
        fetched = await retriever.load(options)
        outcome = await self.ingest(fetched.files)

        outcome.failures[:0] = [
            IngestionFailure(file_name=failure.object_key, error_message=failure.error_message)
            for failure in fetched.failures
        ]
        outcome.warnings[:0] = fetched.warnings
        return outcome
