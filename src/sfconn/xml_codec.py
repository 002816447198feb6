"""Schema-less conversion between Python values and SOAP XML fragments.

Values map onto XML like this:

* ``None`` – an element with ``xsi:nil="true"``
* ``str`` (or another scalar) – element text
* ``dict`` – one child element per key; a list value repeats the child tag.
  The key ``"_"`` sets the text (or nil) of the element itself and the key
  ``"$xsi:type"`` becomes an ``xsi:type`` attribute.

Entries whose value is :data:`UNSET` are skipped, which is how an optional
argument is left out of a request without sending an explicit nil.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Union

from .exceptions import XmlDecodeError

XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

_ATTR_RE = re.compile(r'([^\s=]+)\s*=\s*"([^"]*)"')

XmlValue = Union[None, str, Dict[str, Any]]


class _Unset:
    _instance = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------
def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _build(el: ET.Element, value: Any) -> None:
    if value is None:
        el.set("xsi:nil", "true")
    elif isinstance(value, dict):
        for key, item in value.items():
            if item is UNSET:
                continue
            if key == "_":
                if item is None:
                    el.set("xsi:nil", "true")
                else:
                    el.text = _scalar_text(item)
            elif key == "$xsi:type":
                el.set("xsi:type", item)
            elif isinstance(item, (list, tuple)):
                for entry in item:
                    _build(ET.SubElement(el, key), entry)
            else:
                _build(ET.SubElement(el, key), item)
    else:
        el.text = _scalar_text(value)


def parse_attributes(attributes: str) -> Dict[str, str]:
    """Split an attribute string like `` xmlns="a" xmlns:sf="b"`` into a dict."""
    return {name: val for name, val in _ATTR_RE.findall(attributes or "")}


def encode(root_tag: str, namespace_attrs: str, value: Any) -> str:
    """Serialize ``value`` under a ``root_tag`` element carrying ``namespace_attrs``."""
    root = ET.Element(root_tag, parse_attributes(namespace_attrs))
    _build(root, value)
    body = ET.tostring(root, encoding="unicode").replace(' xmlns=""', "")
    return XML_DECLARATION + body


# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------
def local_name(tag: str) -> str:
    """``{urn:x}foo`` or ``sf:foo`` -> ``foo``."""
    if tag.startswith("{"):
        tag = tag.split("}", 1)[1]
    return tag.rsplit(":", 1)[-1]


def _xsi_attr(element: ET.Element, name: str) -> str | None:
    value = element.get(f"{{{XSI_NS}}}{name}")
    if value is None:
        value = element.get(f"xsi:{name}")
    return value


def decode(element: ET.Element) -> Any:
    """Convert a parsed element back into ``None``, ``str`` or ``dict``.

    Repeated child tags are coalesced: the first occurrence is stored bare,
    the second turns it into a two item list and later ones are appended.
    Callers must keep same-tag siblings contiguous for a stable ordering.
    """
    if _xsi_attr(element, "nil") == "true":
        return None

    text = element.text or ""
    obj: Dict[str, Any] | None = None

    xsi_type = _xsi_attr(element, "type")
    if xsi_type:
        # Only ever present on sObjects, never on simple values.
        obj = {"$xsi:type": xsi_type}

    for child in element:
        if not isinstance(child.tag, str):
            raise XmlDecodeError(
                f"Unexpected XML node {child.tag!r} under <{local_name(element.tag)}>",
                raw=ET.tostring(child, encoding="unicode"),
            )
        if obj is None:
            obj = {}
        name = local_name(child.tag)
        content = decode(child)
        if name in obj:
            existing = obj[name]
            if isinstance(existing, list):
                existing.append(content)
            else:
                obj[name] = [existing, content]
        else:
            obj[name] = content
        text += child.tail or ""

    return obj if obj is not None else text


def parse(document: Union[str, bytes]) -> ET.Element:
    """Parse a document keeping comments and PIs so :func:`decode` can reject them."""
    parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True, insert_pis=True))
    return ET.fromstring(document, parser=parser)


def find_local(root: ET.Element, name: str) -> ET.Element | None:
    """First element in document order whose local name is ``name``."""
    for el in root.iter():
        if isinstance(el.tag, str) and local_name(el.tag) == name:
            return el
    return None


def as_array(value: Any) -> List[Any]:
    """Undo single-item coalescing: falsy -> ``[]``, list -> itself, else ``[value]``."""
    if not value:
        return []
    if isinstance(value, list):
        return value
    return [value]
