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
"""Defines the data models for the application."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import IO, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import ObjectStoreSettings

DEFAULT_MAX_KEYS = 25
MAX_KEYS_LIMIT = 500


class DocumentFormat(str, Enum):
    XML = "xml"
    JSON = "json"
    UNKNOWN = "unknown"


@dataclass
class RawDocument:
    """A document waiting to be ingested.

    The content stream is owned by whoever ingests the document and is
    closed once the document has been processed. ``format`` is a hint only;
    ``UNKNOWN`` lets the processor detect it.
    """

    file_name: str
    content: IO[bytes]
    format: DocumentFormat = DocumentFormat.UNKNOWN


class ExtractedMetadata(BaseModel):
    """The structured fields pulled out of one FHIR document.

    ``codes`` keeps first-seen order and original casing, with no two
    entries equal under case-insensitive comparison.
    """

    model_config = ConfigDict(frozen=True)

    codes: tuple[str, ...] = ()
    primary_code: str | None = None
    issue_date: datetime | None = None
    warnings: tuple[str, ...] = ()


def _new_record_id() -> str:
    return uuid.uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PrescriptionRecord(BaseModel):
    """A processed prescription, persisted as a single JSON document keyed by id.

    Field aliases are the camelCase keys of the stored document.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=_new_record_id)
    file_name: str
    codes: list[str] = Field(default_factory=list)
    primary_code: str | None = None
    issue_date: datetime | None = None
    uploaded_at: datetime = Field(
        default_factory=_utc_now,
        description="Processing instant; never the document's own timestamp.",
    )
    canonical_payload: Any = Field(
        default=None, description="JSON form of the document, if a conversion succeeded.",
    )
    raw_payload: str = Field(default="", description="The document text exactly as received.")

    def to_document(self) -> dict[str, Any]:
        """Serialize to the JSON document stored in the record store."""
        return self.model_dump(mode="json", by_alias=True)


class ProcessingResult(BaseModel):
    succeeded: bool
    record: PrescriptionRecord | None = None
    warnings: list[str] = Field(default_factory=list)
    error_message: str | None = None


class IngestionFailure(BaseModel):
    file_name: str
    error_message: str


class IngestionOutcome(BaseModel):
    """Aggregated result of ingesting one batch of documents."""

    stored_records: list[PrescriptionRecord] = Field(default_factory=list)
    failures: list[IngestionFailure] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ObjectFailure(BaseModel):
    object_key: str
    error_message: str


@dataclass
class ObjectFetchOutcome:
    """Documents downloaded from the object store plus what went wrong."""

    files: list[RawDocument] = field(default_factory=list)
    failures: list[ObjectFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def any_success(self) -> bool:
        return len(self.files) > 0


class ObjectStoreOptions(BaseModel):
    """Options for a single object store retrieval.

    Either ``object_keys`` lists exact keys to fetch, or the bucket is
    listed under ``prefix`` up to ``max_keys`` objects.
    """

    access_key_id: str = ""
    secret_access_key: str = ""
    region: str = "us-east-1"
    bucket_name: str
    prefix: str | None = None
    endpoint_url: str | None = None
    force_path_style: bool = True
    max_keys: int = DEFAULT_MAX_KEYS
    object_keys: list[str] = Field(default_factory=list)

    @field_validator("prefix", "endpoint_url")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("object_keys")
    @classmethod
    def _drop_blank_keys(cls, value: list[str]) -> list[str]:
        return [key.strip() for key in value if key and key.strip()]

    @field_validator("max_keys")
    @classmethod
    def _clamp_max_keys(cls, value: int) -> int:
        if value <= 0:
            return DEFAULT_MAX_KEYS
        return min(value, MAX_KEYS_LIMIT)

    @property
    def has_explicit_keys(self) -> bool:
        return len(self.object_keys) > 0

    @classmethod
    def from_settings(
        cls,
        settings: ObjectStoreSettings,
        *,
        prefix: str | None = None,
        object_keys: list[str] | None = None,
        max_keys: int = DEFAULT_MAX_KEYS,
    ) -> "ObjectStoreOptions":
        """Build options from stored settings, defaulting the prefix from them."""
        return cls(
            access_key_id=settings.access_key_id,
            secret_access_key=settings.secret_access_key,
            region=settings.region,
            bucket_name=settings.bucket_name,
            endpoint_url=settings.endpoint_url,
            force_path_style=settings.force_path_style,
            prefix=prefix if prefix is not None else settings.default_prefix,
            object_keys=object_keys or [],
            max_keys=max_keys,
        )


class SearchCriteria(BaseModel):
    """Filters for a record search. Unset fields do not filter."""

    code: str | None = None
    issue_date_from: datetime | None = None
    issue_date_to: datetime | None = None

    @field_validator("code")
    @classmethod
    def _blank_code_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("issue_date_from", "issue_date_to")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, record: PrescriptionRecord) -> bool:
        if self.code is not None and self.code not in record.codes:
            return False
        if self.issue_date_from is not None and (
            record.issue_date is None or record.issue_date < self.issue_date_from
        ):
            return False
        if self.issue_date_to is not None and (
            record.issue_date is None or record.issue_date > self.issue_date_to
        ):
            return False
        return True


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
    details: list[str] = Field(default_factory=list)


class StructureStatus(BaseModel):
    """Which parts of the storage structure exist on the server."""

    database: str
    schema_name: str
    table_name: str
    server_reachable: bool = False
    database_exists: bool = False
    schema_exists: bool = False
    table_exists: bool = False
    errors: list[str] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0

    @property
    def is_complete(self) -> bool:
        return (
            self.server_reachable
            and self.database_exists
            and self.schema_exists
            and self.table_exists
        )

    @property
    def needs_creation(self) -> bool:
        return not self.has_errors and not (
            self.database_exists and self.schema_exists and self.table_exists
        )
