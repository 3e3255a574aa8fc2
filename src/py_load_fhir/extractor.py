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
"""Extracts PZN codes and the issue date from parsed FHIR documents."""

import logging
import re
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as date_parser
from dateutil.parser import isoparse

from .models import ExtractedMetadata
from .tree import DocumentTree

logger = logging.getLogger(__name__)

PZN_SYSTEM = "http://fhir.de/CodeSystem/ifa/pzn"

CODING_ELEMENT_NAMES = frozenset({"coding", "valuecoding"})

# Compared case-insensitively.
TIMESTAMP_ELEMENT_NAMES = frozenset(
    name.casefold()
    for name in (
        "timestamp",
        "authoredOn",
        "time",
        "whenHandedOver",
        "whenPrepared",
        "issued",
        "recordedDate",
    )
)

NO_CODE_WARNING = "No PZN code was found in the document."
NO_ISSUE_DATE_WARNING = "No issued/timestamp value was detected in the document."


class GermanParserInfo(date_parser.parserinfo):
    """dateutil parser vocabulary for German dates (``1. Mai 2023``, ``01.05.2023``)."""

    JUMP = date_parser.parserinfo.JUMP + ["um", "den", "Uhr"]
    WEEKDAYS = [
        ("Mo", "Montag"),
        ("Di", "Dienstag"),
        ("Mi", "Mittwoch"),
        ("Do", "Donnerstag"),
        ("Fr", "Freitag"),
        ("Sa", "Samstag"),
        ("So", "Sonntag"),
    ]
    MONTHS = [
        ("Jan", "Januar"),
        ("Feb", "Februar"),
        ("Mär", "Mrz", "März", "Maerz"),
        ("Apr", "April"),
        ("Mai",),
        ("Jun", "Juni"),
        ("Jul", "Juli"),
        ("Aug", "August"),
        ("Sep", "Sept", "September"),
        ("Okt", "Oktober"),
        ("Nov", "November"),
        ("Dez", "Dezember"),
    ]

    def __init__(self) -> None:
        super().__init__(dayfirst=True)


_GERMAN_PARSER_INFO = GermanParserInfo()
# Slash or dash separated numeric dates, or a month name next to a day number.
_INVARIANT_DATE_SHAPE = re.compile(
    r"\d{1,4}[/-]\d{1,2}[/-]\d{2,4}|[^\W\d_]{3,}\.?\s+\d{1,2}|\d{1,2}\s+[^\W\d_]{3,}",
)
# A day followed by a dotted month number or a month name.
_GERMAN_DATE_SHAPE = re.compile(r"\d{1,2}\.\s*(?:\d{1,2}\.|[^\W\d_]{3,})")
_PARSE_DEFAULT = datetime(1900, 1, 1)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw_value: str | None) -> datetime | None:
    """Parse a FHIR date/time string into an aware UTC datetime.

    ISO 8601 is tried first, then English notation (month first, as in
    ``May 1, 2023``, ``05/01/2023`` or RFC 1123), then German notation.
    Naive values are taken to be UTC. Returns None when no parser accepts
    the value.
    """
    if raw_value is None:
        return None
    raw_value = raw_value.strip()
    if not raw_value:
        return None

    try:
        return _to_utc(isoparse(raw_value))
    except (ValueError, OverflowError):
        pass

    if _INVARIANT_DATE_SHAPE.search(raw_value):
        try:
            return _to_utc(date_parser.parse(raw_value, default=_PARSE_DEFAULT))
        except (ValueError, OverflowError):
            pass

    if not _GERMAN_DATE_SHAPE.search(raw_value):
        return None
    try:
        parsed = date_parser.parse(
            raw_value, parserinfo=_GERMAN_PARSER_INFO, default=_PARSE_DEFAULT,
        )
    except (ValueError, OverflowError):
        return None
    return _to_utc(parsed)


class MetadataExtractor:
    """Walks a DocumentTree collecting PZN codes and the first issue date.

    Codes come from ``coding``/``valueCoding`` nodes whose ``system`` is
    the PZN code system. The issue date is the first node named like a
    FHIR timestamp element whose value parses as a date.
    """

    def __init__(self, code_system: str = PZN_SYSTEM) -> None:
        self.code_system = code_system.casefold()

    def extract(self, tree: DocumentTree[Any]) -> ExtractedMetadata:
        codes: list[str] = []
        seen: set[str] = set()
        issue_date: datetime | None = None

        for node in tree.walk():
            name = tree.name(node).casefold()

            if name in CODING_ELEMENT_NAMES:
                code = self._pzn_code(tree, node)
                if code is not None and code.casefold() not in seen:
                    seen.add(code.casefold())
                    codes.append(code)

            if issue_date is None and name in TIMESTAMP_ELEMENT_NAMES:
                issue_date = parse_timestamp(tree.value(node))

        warnings = []
        if not codes:
            warnings.append(NO_CODE_WARNING)
        if issue_date is None:
            warnings.append(NO_ISSUE_DATE_WARNING)

        logger.debug("Extracted %d PZN code(s), issue date %s", len(codes), issue_date)
        return ExtractedMetadata(
            codes=tuple(codes),
            primary_code=codes[0] if codes else None,
            issue_date=issue_date,
            warnings=tuple(warnings),
        )

    def _pzn_code(self, tree: DocumentTree[Any], node: Any) -> str | None:
        system_node = tree.child(node, "system")
        if system_node is None:
            return None
        system = tree.value(system_node)
        if system is None or system.casefold() != self.code_system:
            return None

        code_node = tree.child(node, "code")
        if code_node is None:
            return None
        code = tree.value(code_node)
        if code is None or not code.strip():
            return None
        return code
