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
"""An in-process record store, used for dry runs."""

from collections.abc import Sequence

from ..models import ConnectionTestResult, PrescriptionRecord, SearchCriteria, StructureStatus
from .base import BaseRecordStore


class MemoryRecordStore(BaseRecordStore):
    """Keeps records in a dict keyed by id. Nothing survives the process."""

    def __init__(self) -> None:
        self.records: dict[str, PrescriptionRecord] = {}

    async def store_batch(self, records: Sequence[PrescriptionRecord]) -> None:
        for record in records:
            self.records[record.id] = record

    async def search(self, criteria: SearchCriteria) -> list[PrescriptionRecord]:
        matches = [record for record in self.records.values() if criteria.matches(record)]
        return sorted(matches, key=lambda record: record.uploaded_at, reverse=True)

    async def test_connection(self) -> ConnectionTestResult:
        return ConnectionTestResult(
            success=True,
            message="Using the in-memory record store.",
            details=[f"records: {len(self.records)}"],
        )

    async def check_structure(self) -> StructureStatus:
        return StructureStatus(
            database="memory",
            schema_name="memory",
            table_name="records",
            server_reachable=True,
            database_exists=True,
            schema_exists=True,
            table_exists=True,
        )

    async def create_missing_structures(self) -> StructureStatus:
        return await self.check_structure()
