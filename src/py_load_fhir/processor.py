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
"""Turns raw FHIR documents into prescription records.

A document is decoded, parsed into a tree, converted to a canonical JSON
payload and handed to the metadata extractor. XML documents go through an
ordered chain of conversions: a FHIR-aware one first, a generic
structural one second. If neither succeeds the record is stored without a
canonical payload.
"""

import codecs
import json
import logging
from collections.abc import Callable, Sequence
from pathlib import PurePath
from typing import IO, Any

import xmltodict
from fhir.resources import get_fhir_model_class
from lxml import etree

from .extractor import MetadataExtractor
from .models import DocumentFormat, PrescriptionRecord, ProcessingResult
from .tree import JsonTree, XmlTree

logger = logging.getLogger(__name__)

XmlConversion = Callable[[bytes, etree._Element], Any]

_EXTENSION_FORMATS = {
    ".json": DocumentFormat.JSON,
    ".xml": DocumentFormat.XML,
}


def detect_format(file_name: str, content: bytes) -> DocumentFormat:
    """Resolve the format of a document from its name, then its content.

    The extension wins when it is ``.json`` or ``.xml``. Otherwise the
    first non-whitespace character decides: ``{`` or ``[`` means JSON,
    anything else (including empty content) means XML.
    """
    suffix = PurePath(file_name).suffix.lower()
    if suffix in _EXTENSION_FORMATS:
        return _EXTENSION_FORMATS[suffix]

    head = content.removeprefix(codecs.BOM_UTF8).lstrip()[:1]
    if head in (b"{", b"["):
        return DocumentFormat.JSON
    return DocumentFormat.XML


def _read_content(content: bytes | IO[bytes]) -> bytes:
    if isinstance(content, (bytes, bytearray)):
        return bytes(content)
    if content.seekable():
        content.seek(0)
    return content.read()


def _decode_xml(data: bytes, root: etree._Element) -> str:
    """Decode the XML text using the encoding the document declares."""
    encoding = root.getroottree().docinfo.encoding or "utf-8"
    if codecs.lookup(encoding).name == "utf-8":
        encoding = "utf-8-sig"
    return data.decode(encoding)


def _make_xml_parser() -> etree.XMLParser:
    # Untrusted uploads: no external entities, no network access.
    return etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


def fhir_resource_to_json(data: bytes, root: etree._Element) -> Any:
    """Parse the XML as the FHIR resource named by its root element."""
    resource_class = get_fhir_model_class(etree.QName(root).localname)
    resource = resource_class.model_validate_xml(data)
    return json.loads(resource.model_dump_json(by_alias=True, exclude_none=True))


def generic_xml_to_json(data: bytes, root: etree._Element) -> Any:
    """Mirror the XML structure as JSON: ``@name`` attributes, ``#text`` text.

    The outer wrapper named after the root element is dropped.
    """
    parsed = xmltodict.parse(data)
    return next(iter(parsed.values()))


DEFAULT_XML_CONVERSIONS: tuple[XmlConversion, ...] = (
    fhir_resource_to_json,
    generic_xml_to_json,
)


class DocumentProcessor:
    """Processes one FHIR document at a time into a ProcessingResult.

    Processing never raises for bad input; read and parse errors are
    returned as unsuccessful results.
    """

    def __init__(
        self,
        extractor: MetadataExtractor | None = None,
        xml_conversions: Sequence[XmlConversion] = DEFAULT_XML_CONVERSIONS,
    ) -> None:
        self.extractor = extractor or MetadataExtractor()
        self.xml_conversions = tuple(xml_conversions)

    def process(
        self,
        content: bytes | IO[bytes],
        file_name: str,
        format_hint: DocumentFormat | None = None,
    ) -> ProcessingResult:
        """Process a document given as bytes or a binary stream.

        Args:
            content: The raw document. Streams are rewound when seekable.
            file_name: Name used for format detection and in the record.
            format_hint: Trusted format; ``None`` or ``UNKNOWN`` to detect.

        Returns:
            A ProcessingResult carrying the record and extraction warnings,
            or the error message when the document could not be read.
        """
        try:
            data = _read_content(content)
            if format_hint is None or format_hint is DocumentFormat.UNKNOWN:
                format_hint = detect_format(file_name, data)
            if format_hint is DocumentFormat.JSON:
                return self._process_json(data.decode("utf-8-sig"), file_name)
            return self._process_xml(data, file_name)
        except Exception as e:  # noqa: BLE001 - any unreadable document is a per-file failure
            logger.error("Failed to process FHIR document %s: %s", file_name, e)
            return ProcessingResult(succeeded=False, error_message=str(e) or type(e).__name__)

    def _process_json(self, text: str, file_name: str) -> ProcessingResult:
        document = json.loads(text)
        metadata = self.extractor.extract(JsonTree(document))
        record = PrescriptionRecord(
            file_name=file_name,
            codes=list(metadata.codes),
            primary_code=metadata.primary_code,
            issue_date=metadata.issue_date,
            canonical_payload=document,
            raw_payload=text,
        )
        return ProcessingResult(succeeded=True, record=record, warnings=list(metadata.warnings))

    def _process_xml(self, data: bytes, file_name: str) -> ProcessingResult:
        root = etree.fromstring(data, parser=_make_xml_parser())
        text = _decode_xml(data, root)
        payload = self._convert_xml(data, root, file_name)
        metadata = self.extractor.extract(XmlTree(root))
        record = PrescriptionRecord(
            file_name=file_name,
            codes=list(metadata.codes),
            primary_code=metadata.primary_code,
            issue_date=metadata.issue_date,
            canonical_payload=payload,
            raw_payload=text,
        )
        return ProcessingResult(succeeded=True, record=record, warnings=list(metadata.warnings))

    def _convert_xml(self, data: bytes, root: etree._Element, file_name: str) -> Any:
        """Return the first successful conversion, or None if all of them fail."""
        for conversion in self.xml_conversions:
            try:
                payload = conversion(data, root)
            except Exception as e:  # noqa: BLE001 - a failed conversion falls through to the next
                logger.warning(
                    "%s failed for %s, trying the next conversion: %s",
                    getattr(conversion, "__name__", repr(conversion)),
                    file_name,
                    e,
                )
                continue
            if payload is not None:
                return payload
        logger.warning("No JSON payload could be produced for %s; storing XML only.", file_name)
        return None
