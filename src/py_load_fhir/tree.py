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
"""Uniform navigation over parsed XML and JSON documents.

The metadata extractor walks documents through the ``DocumentTree``
interface so that the same traversal rules apply to both formats.
"""

import abc
from collections.abc import Iterator
from typing import Any, Generic, NamedTuple, TypeVar

from lxml import etree

NodeType = TypeVar("NodeType")


class DocumentTree(abc.ABC, Generic[NodeType]):
    """Abstract view of a parsed document as a tree of named nodes."""

    @property
    @abc.abstractmethod
    def root(self) -> NodeType:
        raise NotImplementedError

    @abc.abstractmethod
    def children(self, node: NodeType) -> list[NodeType]:
        """Return the direct children of ``node`` in document order."""
        raise NotImplementedError

    @abc.abstractmethod
    def name(self, node: NodeType) -> str:
        """Return the local element name or property key of ``node``."""
        raise NotImplementedError

    @abc.abstractmethod
    def attribute_or_value(self, node: NodeType, key: str) -> str | None:
        """Return the attribute (XML) or nested scalar property (JSON) ``key``."""
        raise NotImplementedError

    @abc.abstractmethod
    def text_value(self, node: NodeType) -> str | None:
        """Return the text content (XML) or scalar value (JSON) of ``node``."""
        raise NotImplementedError

    def walk(self) -> Iterator[NodeType]:
        """Yield every node in document (pre-)order, starting at the root."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(self.children(node)))

    def child(self, node: NodeType, name: str) -> NodeType | None:
        """Return the first direct child whose name matches case-insensitively."""
        wanted = name.casefold()
        for candidate in self.children(node):
            if self.name(candidate).casefold() == wanted:
                return candidate
        return None

    def value(self, node: NodeType) -> str | None:
        """Return the FHIR primitive value of ``node``.

        FHIR XML carries primitives in a ``value`` attribute; anything else
        falls back to the node's text.
        """
        attribute = self.attribute_or_value(node, "value")
        if attribute is not None:
            return attribute
        return self.text_value(node)


class XmlTree(DocumentTree[etree._Element]):
    """DocumentTree over an lxml element tree. Namespaces are ignored."""

    def __init__(self, root: etree._Element) -> None:
        self._root = root

    @property
    def root(self) -> etree._Element:
        return self._root

    def children(self, node: etree._Element) -> list[etree._Element]:
        # Comments and processing instructions are skipped.
        return list(node.iterchildren(tag=etree.Element))

    def name(self, node: etree._Element) -> str:
        return etree.QName(node).localname

    def attribute_or_value(self, node: etree._Element, key: str) -> str | None:
        return node.get(key)

    def text_value(self, node: etree._Element) -> str | None:
        return "".join(node.itertext())


class JsonNode(NamedTuple):
    """A JSON value together with the property name it was found under.

    Array items carry the name of the property holding the array.
    """

    name: str
    value: Any


def _scalar_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class JsonTree(DocumentTree[JsonNode]):
    """DocumentTree over a value produced by ``json.loads``."""

    def __init__(self, document: Any) -> None:
        self._root = JsonNode("", document)

    @property
    def root(self) -> JsonNode:
        return self._root

    def children(self, node: JsonNode) -> list[JsonNode]:
        if isinstance(node.value, dict):
            return [JsonNode(str(key), value) for key, value in node.value.items()]
        if isinstance(node.value, list):
            return [JsonNode(node.name, item) for item in node.value]
        return []

    def name(self, node: JsonNode) -> str:
        return node.name

    def attribute_or_value(self, node: JsonNode, key: str) -> str | None:
        if not isinstance(node.value, dict):
            return None
        return _scalar_text(node.value.get(key))

    def text_value(self, node: JsonNode) -> str | None:
        return _scalar_text(node.value)
