"""
XML to document conversion.

The root element becomes the single top-level key. Attributes are kept
under ``"$"`` and character data of elements with attributes or children
under ``"_"``. Elements with only text become that string, repeated
siblings become lists, and every leaf stays a string.

Names are reported as written: prefixed tags and attributes keep their
``prefix:name`` form and namespace declarations are ordinary ``xmlns``
attributes.
"""

import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Tuple

from shared.errors import DocumentParseError

from ..rules.document import Document

ATTRIBUTES_KEY = "$"
TEXT_KEY = "_"

XML_NAMESPACE = "http://www.w3.org/XML/1998/namespace"

_PARSE_EVENTS = ("start-ns", "start", "end")


def _qualified_name(name: str, scope: Dict[str, str]) -> str:
    # ElementTree reports namespaced names as "{uri}local"
    if not name.startswith("{"):
        return name
    uri, local = name[1:].split("}", 1)
    prefix = scope.get(uri, "")
    return f"{prefix}:{local}" if prefix else local


def _declaration_name(prefix: str) -> str:
    return f"xmlns:{prefix}" if prefix else "xmlns"


class _Names:
    """Qualified tag and attribute names collected while parsing."""

    def __init__(self):
        self.tags: Dict[ET.Element, str] = {}
        self.attributes: Dict[ET.Element, Dict[str, str]] = {}


def _parse(text: str) -> Tuple[ET.Element, _Names]:
    parser = ET.XMLPullParser(events=_PARSE_EVENTS)
    try:
        parser.feed(text)
        parser.close()
    except ET.ParseError as e:
        raise DocumentParseError("Invalid XML", {"error": str(e)}) from e

    names = _Names()
    root = None
    scopes: List[Dict[str, str]] = [{XML_NAMESPACE: "xml"}]
    declared: List[Tuple[str, str]] = []

    for event, item in parser.read_events():
        if event == "start-ns":
            declared.append(item)
        elif event == "start":
            if root is None:
                root = item
            scope = dict(scopes[-1])
            scope.update((uri, prefix) for prefix, uri in declared)
            scopes.append(scope)

            attributes = {_declaration_name(prefix): uri for prefix, uri in declared}
            attributes.update(
                (_qualified_name(key, scope), value) for key, value in item.attrib.items()
            )
            names.tags[item] = _qualified_name(item.tag, scope)
            names.attributes[item] = attributes
            declared = []
        else:
            scopes.pop()

    return root, names


def _element_text(element: ET.Element) -> str:
    parts = [element.text or ""]
    parts.extend(child.tail or "" for child in element)
    return "".join(parts)


def _convert(element: ET.Element, names: _Names) -> Any:
    text = _element_text(element)
    children = list(element)
    attributes = names.attributes[element]

    if not children and not attributes:
        return text

    node: Dict[str, Any] = {}
    if attributes:
        node[ATTRIBUTES_KEY] = attributes
    if text.strip():
        node[TEXT_KEY] = text

    for child in children:
        name = names.tags[child]
        value = _convert(child, names)
        if name not in node:
            node[name] = value
        elif isinstance(node[name], list):
            node[name].append(value)
        else:
            node[name] = [node[name], value]

    return node


def xml_to_document(text: str) -> Document:
    """Parse XML text into a document.

    Raises ``DocumentParseError`` when the text is not well-formed XML.
    """
    root, names = _parse(text)
    return {names.tags[root]: _convert(root, names)}
