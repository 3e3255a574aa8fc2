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

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from py_load_fhir.models import PrescriptionRecord, SearchCriteria
from py_load_fhir.store.memory import MemoryRecordStore

pytestmark = pytest.mark.unit

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def record(name: str, codes: list[str], issued: datetime | None, age_minutes: int) -> PrescriptionRecord:
    return PrescriptionRecord(
        file_name=name,
        codes=codes,
        primary_code=codes[0] if codes else None,
        issue_date=issued,
        uploaded_at=NOW - timedelta(minutes=age_minutes),
    )


@pytest_asyncio.fixture
async def store():
    store = MemoryRecordStore()
    await store.store_batch(
        [
            record("old.xml", ["111"], datetime(2023, 1, 1, tzinfo=timezone.utc), 30),
            record("new.xml", ["111", "222"], datetime(2023, 6, 1, tzinfo=timezone.utc), 1),
            record("undated.json", ["222"], None, 10),
        ],
    )
    return store


@pytest.mark.asyncio
async def test_search_orders_newest_upload_first(store):
    found = await store.search(SearchCriteria())

    assert [r.file_name for r in found] == ["new.xml", "undated.json", "old.xml"]


@pytest.mark.asyncio
async def test_search_by_code(store):
    found = await store.search(SearchCriteria(code="222"))

    assert [r.file_name for r in found] == ["new.xml", "undated.json"]


@pytest.mark.asyncio
async def test_search_date_bounds_are_inclusive_and_exclude_undated(store):
    criteria = SearchCriteria(
        issue_date_from=datetime(2023, 1, 1), issue_date_to=datetime(2023, 3, 1),
    )

    found = await store.search(criteria)

    assert [r.file_name for r in found] == ["old.xml"]


@pytest.mark.asyncio
async def test_store_upserts_by_id(store):
    existing = (await store.search(SearchCriteria(code="111")))[0]

    await store.store(existing.model_copy(update={"file_name": "renamed.xml"}))

    assert len(store.records) == 3
    assert store.records[existing.id].file_name == "renamed.xml"


@pytest.mark.asyncio
async def test_connection_and_structure_always_ready(store):
    result = await store.test_connection()
    status = await store.create_missing_structures()

    assert result.success
    assert result.details == ["records: 3"]
    assert status.is_complete
