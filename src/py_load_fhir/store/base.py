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
"""Defines the abstract base class for prescription record stores."""

import abc
from collections.abc import Sequence

from ..models import ConnectionTestResult, PrescriptionRecord, SearchCriteria, StructureStatus


class BaseRecordStore(abc.ABC):
    """Abstract Base Class for all prescription record stores.

    A record store persists PrescriptionRecords as documents keyed by
    their id and answers structured searches over them. Write and search
    failures are raised, never swallowed.
    """

    async def store(self, record: PrescriptionRecord) -> None:
        """Upsert a single record."""
        await self.store_batch([record])

    @abc.abstractmethod
    async def store_batch(self, records: Sequence[PrescriptionRecord]) -> None:
        """Upsert all records in one operation.

        Args:
            records: The records to persist, keyed by ``record.id``.

        Raises:
            StoreError: If the records could not be written.

        """
        raise NotImplementedError

    @abc.abstractmethod
    async def search(self, criteria: SearchCriteria) -> list[PrescriptionRecord]:
        """Return matching records, newest ``uploaded_at`` first.

        A record matches when it contains ``criteria.code`` (if set) and its
        issue date lies within the inclusive date bounds that are set.

        Raises:
            StoreError: If the query failed.

        """
        raise NotImplementedError

    @abc.abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """Check connectivity and report on it instead of raising."""
        raise NotImplementedError

    @abc.abstractmethod
    async def check_structure(self) -> StructureStatus:
        """Report which parts of the storage structure exist."""
        raise NotImplementedError

    @abc.abstractmethod
    async def create_missing_structures(self) -> StructureStatus:
        """Create whatever check_structure reports missing, then re-check."""
        raise NotImplementedError
