"""Placeholder lookup and QR compositing for SVG templates."""
from __future__ import annotations

from dataclasses import dataclass
import io
import logging
import math
import re
import xml.etree.ElementTree as ET
from typing import Iterable, List, Optional

SVG_NS = "http://www.w3.org/2000/svg"
ET.register_namespace("", SVG_NS)

PLACEHOLDER_ID = "qrcode"
PLACEHOLDER_TAG = "g"
LAYOUT_RECT_TAG = "rect"

DEFAULT_WIDTH = 1299.0
DEFAULT_HEIGHT = 1299.0
DEFAULT_X = 642.5
DEFAULT_Y = 1091.5

ASPECT_HINT = "xMidYMid meet"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

_NUMBER_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_RESERVED_PREFIX = re.compile(r"ns\d+$")

log = logging.getLogger("qrmerge.template")


class QRMergeError(ValueError):
    """Base error with a stable code for CLI mapping."""

    code = "E_QRMERGE"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class MalformedMarkup(QRMergeError):
    """Raised when a template or generated graphic is not well-formed XML."""

    code = "E_PARSE_XML"

    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None) -> None:
        super().__init__(message)
        self.line = line
        self.column = column


class PlaceholderNotFound(QRMergeError):
    """Raised when a template has no placeholder group to composite into."""

    code = "E_PLACEHOLDER_NOT_FOUND"

    def __init__(self, group_id: str, available_ids: Optional[List[str]] = None) -> None:
        self.group_id = group_id
        self.available_ids = list(available_ids or [])
        message = f'Template must contain a <g> group with id="{group_id}"'
        if self.available_ids:
            message += f" (ids found: {', '.join(self.available_ids)})"
        else:
            message += " (no ids found)"
        super().__init__(message)


class MalformedQRGraphic(QRMergeError):
    """Raised when generator output lacks a root element or a viewBox."""

    code = "E_QR_GRAPHIC"


class GeneratorFailure(QRMergeError):
    """Raised when the QR generator cannot encode a payload."""

    code = "E_GENERATOR"

    def __init__(self, payload: str, reason: str) -> None:
        super().__init__(f"failed to generate QR code for {payload!r}: {reason}")
        self.payload = payload
        self.reason = reason


@dataclass(frozen=True)
class Geometry:
    x: float
    y: float
    width: float
    height: float


DEFAULT_GEOMETRY = Geometry(x=DEFAULT_X, y=DEFAULT_Y, width=DEFAULT_WIDTH, height=DEFAULT_HEIGHT)


# -- document model ---------------------------------------------------------


def parse_document(text: str) -> ET.Element:
    """Parse markup into an element tree, keeping comments and declared prefixes."""
    try:
        _register_prefixes(text)
        parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True, insert_pis=True))
        parser.feed(text)
        return parser.close()
    except ET.ParseError as exc:
        line, column = getattr(exc, "position", (None, None))
        location = (
            f" at line {line}, column {column}" if line is not None and column is not None else ""
        )
        raise MalformedMarkup(
            f"failed to parse XML{location}: {exc}", line=line, column=column
        ) from exc


def _register_prefixes(text: str) -> None:
    # Keep prefixes like inkscape:/xlink: stable on output instead of ns0:, ns1:.
    for _event, (prefix, uri) in ET.iterparse(io.StringIO(text), events=("start-ns",)):
        if not prefix or uri == SVG_NS or _RESERVED_PREFIX.match(prefix):
            continue
        ET.register_namespace(prefix, uri)


def serialize_document(root: ET.Element, indent: str = "  ", xml_declaration: bool = False) -> str:
    """Serialize a tree to indented text. Re-indents ``root`` in place."""
    if indent:
        ET.indent(root, space=indent)
    # qrcode's SVG factories register an "svg:" prefix globally on instantiation.
    ET.register_namespace("", SVG_NS)
    text = ET.tostring(root, encoding="unicode")
    if xml_declaration:
        return XML_DECLARATION + "\n" + text
    return text


def has_xml_declaration(text: str) -> bool:
    return text.lstrip("\ufeff \t\r\n").startswith("<?xml")


def tree_equal(a: ET.Element, b: ET.Element) -> bool:
    """Structural equality ignoring indentation whitespace."""
    if a.tag != b.tag or a.attrib != b.attrib:
        return False
    if (a.text or "").strip() != (b.text or "").strip():
        return False
    if (a.tail or "").strip() != (b.tail or "").strip():
        return False
    if len(a) != len(b):
        return False
    return all(tree_equal(x, y) for x, y in zip(a, b))


# -- placeholder lookup -----------------------------------------------------


def find_by_attribute(
    nodes: Iterable[ET.Element], attribute: str, value: str
) -> Optional[ET.Element]:
    """Depth-first pre-order search; returns the first node with ``attribute == value``."""
    for node in nodes:
        if not _is_element(node):
            continue
        if node.get(attribute) == value:
            return node
        found = find_by_attribute(node, attribute, value)
        if found is not None:
            return found
    return None


def find_group_by_tag_and_id(
    root: ET.Element, tag: str = PLACEHOLDER_TAG, id_value: str = PLACEHOLDER_ID
) -> Optional[ET.Element]:
    """Like :func:`find_by_attribute` on ``id`` but the local tag name must match too."""
    if not _is_element(root):
        return None
    if _local_name(root.tag) == tag and root.get("id") == id_value:
        return root
    for child in root:
        found = find_group_by_tag_and_id(child, tag, id_value)
        if found is not None:
            return found
    return None


def collect_ids(root: ET.Element) -> List[str]:
    return [node.get("id") for node in root.iter() if _is_element(node) and node.get("id")]


# -- geometry ---------------------------------------------------------------


def find_layout_rect(group: ET.Element) -> Optional[ET.Element]:
    for child in group:
        if _is_element(child) and _local_name(child.tag) == LAYOUT_RECT_TAG:
            return child
    return None


def resolve_geometry(group: ET.Element) -> Geometry:
    rect = find_layout_rect(group)
    if rect is None:
        return DEFAULT_GEOMETRY
    return Geometry(
        x=_parse_number(rect.get("x"), DEFAULT_X),
        y=_parse_number(rect.get("y"), DEFAULT_Y),
        width=_parse_number(rect.get("width"), DEFAULT_WIDTH),
        height=_parse_number(rect.get("height"), DEFAULT_HEIGHT),
    )


def _parse_number(value: Optional[str], default: float) -> float:
    # Leading-number semantics: "100px" -> 100.0, "abc" -> default. Zero is kept.
    if value is None:
        return default
    match = _NUMBER_PREFIX.match(value)
    if not match:
        return default
    parsed = float(match.group(1))
    if not math.isfinite(parsed):
        return default
    return parsed


# -- compositing ------------------------------------------------------------


def composite(template_text: str, qr_svg_text: str, group_id: str = PLACEHOLDER_ID) -> str:
    """Splice a QR graphic into the template's placeholder group and return the SVG text."""
    root = parse_document(template_text)
    qr_root = parse_document(qr_svg_text)

    group = find_group_by_tag_and_id(root, PLACEHOLDER_TAG, group_id)
    if group is None:
        raise PlaceholderNotFound(group_id, collect_ids(root))

    view_box = qr_root.get("viewBox")
    if not view_box:
        raise MalformedQRGraphic(
            f"QR graphic <{_local_name(qr_root.tag)}> has no viewBox attribute"
        )

    rect = find_layout_rect(group)
    geometry = resolve_geometry(group)
    wrapper = build_wrapper(geometry, view_box, list(qr_root), _namespace_of(group.tag))

    for child in list(group):
        group.remove(child)
    if rect is not None:
        group.append(rect)
    group.append(wrapper)

    return serialize_document(root, xml_declaration=has_xml_declaration(template_text))


def build_wrapper(
    geometry: Geometry,
    view_box: str,
    children: List[ET.Element],
    namespace: Optional[str] = None,
) -> ET.Element:
    tag = _qual(namespace, "svg") if namespace else "svg"
    wrapper = ET.Element(tag)
    wrapper.set("x", format_number(geometry.x))
    wrapper.set("y", format_number(geometry.y))
    wrapper.set("width", format_number(geometry.width))
    wrapper.set("height", format_number(geometry.height))
    wrapper.set("viewBox", view_box)
    wrapper.set("preserveAspectRatio", ASPECT_HINT)
    wrapper.extend(children)
    return wrapper


class Template:
    """A template validated once and composited against a fresh parse per merge."""

    def __init__(self, text: str, group_id: str = PLACEHOLDER_ID) -> None:
        self.text = text
        self.group_id = group_id
        root = parse_document(text)
        group = find_group_by_tag_and_id(root, PLACEHOLDER_TAG, group_id)
        if group is None:
            raise PlaceholderNotFound(group_id, collect_ids(root))
        self.geometry = resolve_geometry(group)
        self.has_layout_rect = find_layout_rect(group) is not None

    @classmethod
    def from_text(cls, text: str, group_id: str = PLACEHOLDER_ID) -> "Template":
        template = cls(text, group_id)
        log.info(
            "Template placeholder %r: x=%s y=%s width=%s height=%s%s",
            group_id,
            format_number(template.geometry.x),
            format_number(template.geometry.y),
            format_number(template.geometry.width),
            format_number(template.geometry.height),
            "" if template.has_layout_rect else " (defaults, no <rect>)",
        )
        return template

    def merge(self, qr_svg_text: str) -> str:
        return composite(self.text, qr_svg_text, self.group_id)


# -- helpers ----------------------------------------------------------------


def _is_element(node: ET.Element) -> bool:
    # Comments and processing instructions carry a factory function as tag.
    return isinstance(node.tag, str)


def format_number(value: float) -> str:
    # Shortest text that parses back to the same float: 10.0 -> "10", 1e-07 -> "1e-07".
    text = repr(float(value))
    if text.endswith(".0"):
        text = text[:-2]
    return text


def _namespace_of(tag: str) -> Optional[str]:
    if tag.startswith("{"):
        return tag[1:].split("}", 1)[0]
    return None


def _local_name(tag: str) -> str:
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def _qual(ns: str, local: str) -> str:
    return f"{{{ns}}}{local}"


__all__ = [
    "DEFAULT_GEOMETRY",
    "Geometry",
    "GeneratorFailure",
    "MalformedMarkup",
    "MalformedQRGraphic",
    "PlaceholderNotFound",
    "QRMergeError",
    "Template",
    "collect_ids",
    "composite",
    "find_by_attribute",
    "find_group_by_tag_and_id",
    "format_number",
    "has_xml_declaration",
    "parse_document",
    "resolve_geometry",
    "serialize_document",
    "tree_equal",
]
