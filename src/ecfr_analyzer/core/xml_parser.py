"""
eCFR title XML parser.

Turns a full-title XML file (DLPSTEXTCLASS/TEXT/BODY/ECFRBRWS/DIV1) into
one document record per hierarchy node: the title itself plus every nested
DIV2..DIV9. Tag and attribute names are matched case-insensitively.

Parsing is pure and CPU-bound; ``TitleXMLParser.parse`` runs it in an
executor and then applies the blob spill policy to oversized records.
"""

import asyncio
import html
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

import bson
from lxml import etree

from ..models.errors import XMLParseError
from ..models.record_models import (
    DIV_DOCUMENT_TYPES,
    HIERARCHY_FIELDS,
    HIERARCHY_KEYS,
    DocumentType,
    utcnow,
)
from .dates import parse_date

logger = logging.getLogger(__name__)

NO_CONTENT = "No content available"

PARAGRAPH_TAGS: Tuple[str, ...] = (
    "p",
    "fp",
    "fp-1",
    "fp-2",
    "fp1-2",
    "fp2",
    "fp2-2",
    "fp-dash",
    "pspace",
)
FORMATTING_TAGS = {"i", "b", "em", "strong", "u", "sub", "sup"}

# <E T="..."> emphasis codes
EMPHASIS_TAGS: Dict[str, Tuple[str, str]] = {
    "02": ("<b>", "</b>"),
    "03": ("<i>", "</i>"),
    "04": ('<span style="font-variant: small-caps;">', "</span>"),
    "05": ('<span style="font-variant: small-caps;">', "</span>"),
    "51": ("<sup>", "</sup>"),
    "52": ("<sub>", "</sub>"),
}

# Elements whose text runs into the surrounding text without a separator
INLINE_TAGS = FORMATTING_TAGS | {"e", "su", "fr", "ac", "a", "span"}

# Spill policy
RECORD_SPILL_THRESHOLD = 10 * 1024 * 1024
FIELD_SPILL_THRESHOLD = 1024 * 1024
MAX_RECORD_BYTES = 16 * 1024 * 1024

_WHITESPACE = re.compile(r"\s+")


def _normalize(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _tag(element: Any) -> Optional[str]:
    """Lowercased local tag name, or None for comments and processing instructions."""
    if not isinstance(element.tag, str):
        return None
    return etree.QName(element).localname.lower()


def _attributes(element: Any) -> Dict[str, str]:
    return {etree.QName(k).localname.lower(): v for k, v in element.attrib.items()}


def _attr(element: Any, name: str) -> Optional[str]:
    return _attributes(element).get(name)


def _children(element: Any, name: Optional[str] = None) -> Iterator[Any]:
    for child in element:
        tag = _tag(child)
        if tag is not None and (name is None or tag == name):
            yield child


def _first_child(element: Any, name: str) -> Optional[Any]:
    return next(_children(element, name), None)


def _find_outermost(element: Any, names: Sequence[str]) -> Iterator[Any]:
    """Descendants whose tag is in ``names``, without descending into matches."""
    for child in _children(element):
        if _tag(child) in names:
            yield child
        else:
            yield from _find_outermost(child, names)


def plain_text(element: Any) -> str:
    """Depth-first text of an element; attribute values never contribute."""
    parts: List[str] = []

    def walk(node: Any) -> None:
        if node.text:
            parts.append(node.text)
        for child in node:
            tag = _tag(child)
            if tag is not None:
                separator = "" if tag in INLINE_TAGS else " "
                parts.append(separator)
                walk(child)
                parts.append(separator)
            if child.tail:
                parts.append(child.tail)

    walk(element)
    return _normalize("".join(parts))


def _format_wrapper(element: Any, tag: str) -> Tuple[str, str]:
    if tag in FORMATTING_TAGS:
        return f"<{tag}>", f"</{tag}>"
    if tag == "e":
        code = _attr(element, "t")
        return EMPHASIS_TAGS.get(code or "", ("", ""))
    if tag == "su":
        return "<sup>", "</sup>"
    if tag == "p" or tag in PARAGRAPH_TAGS:
        return "<p>", "</p>"
    if tag in INLINE_TAGS:
        return "", ""
    return " ", " "


def formatted_text(element: Any) -> str:
    """Text with a restricted set of inline tags rendered as HTML."""
    parts: List[str] = []

    def walk(node: Any) -> None:
        if node.text:
            parts.append(html.escape(node.text, quote=False))
        for child in node:
            tag = _tag(child)
            if tag is not None:
                opening, closing = _format_wrapper(child, tag)
                parts.append(opening)
                walk(child)
                parts.append(closing)
            if child.tail:
                parts.append(html.escape(child.tail, quote=False))

    walk(element)
    return _normalize("".join(parts))


def _safe_key(key: str) -> str:
    """MongoDB field names may not contain dots or start with '$'."""
    key = key.replace(".", "_")
    return "_" + key[1:] if key.startswith("$") else key


def element_to_tree(element: Any) -> Any:
    """
    Convert an element to a JSON-like tree.

    Attributes are merged into the node, repeated child tags become lists
    and the element's own text is kept under ``_``. A bare element with
    only text collapses to that string.
    """
    attrs = {_safe_key(k): v for k, v in _attributes(element).items()}
    children = list(_children(element))

    own_text = [element.text or ""] + [child.tail or "" for child in element]
    text = _normalize(" ".join(own_text))

    if not attrs and not children:
        return text

    node: Dict[str, Any] = dict(attrs)
    if text:
        node["_"] = text
    for child in children:
        key = _safe_key(_tag(child) or "")
        value = element_to_tree(child)
        if key in node:
            existing = node[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                node[key] = [existing, value]
        else:
            node[key] = value
    return node


def _pdf_link_for(src: str) -> Optional[str]:
    if ".gif" not in src:
        return None
    return src.replace(".gif", ".pdf").replace("/graphics/", "/graphics/pdfs/")


def extract_images(element: Any) -> List[Dict[str, Any]]:
    images: List[Dict[str, Any]] = []

    def walk(node: Any) -> None:
        for child in _children(node):
            tag = _tag(child)
            if tag == "img":
                src = _attr(child, "src")
                if src:
                    images.append(
                        {"src": src, "alt": _attr(child, "alt"), "pdfLink": _pdf_link_for(src)}
                    )
            elif tag == "a":
                href = _attr(child, "href") or ""
                if ".pdf" in href and images and not images[-1]["pdfLink"]:
                    images[-1]["pdfLink"] = href
            else:
                walk(child)

    walk(element)
    return images


def extract_paragraphs(element: Any) -> List[Dict[str, Any]]:
    paragraphs: List[Dict[str, Any]] = []

    def walk(node: Any, depth: int) -> None:
        for child in _children(node):
            tag = _tag(child)
            if tag in PARAGRAPH_TAGS:
                paragraphs.append({"type": tag, "content": plain_text(child), "depth": depth})
            else:
                walk(child, depth + 1)

    walk(element, 0)
    return paragraphs


def extract_structured_content(element: Any) -> Dict[str, Any]:
    structured: Dict[str, Any] = {
        "paragraphs": extract_paragraphs(element),
        "tables": [
            {"raw": element_to_tree(table), "text": plain_text(table)}
            for table in _find_outermost(element, ("table",))
        ],
        "extracts": [
            {"content": plain_text(extract), "structured": element_to_tree(extract)}
            for extract in _find_outermost(element, ("extract",))
        ],
    }
    toc = _first_child(element, "cfrtoc")
    if toc is not None:
        structured["tableOfContents"] = element_to_tree(toc)
    return structured


def _effective_date(element: Any) -> Optional[datetime]:
    value = _attr(element, "effectivedate")
    if value is None:
        child = _first_child(element, "effectivedate")
        value = plain_text(child) if child is not None else None
    return parse_date(value)


def _note_heading(note: Any) -> str:
    hed = _first_child(note, "hed")
    return plain_text(hed) if hed is not None else "Editorial Note"


def _identifier_token(n: Optional[str]) -> str:
    return re.sub(r"[^A-Za-z0-9.\-]+", "-", n).strip("-") if n else ""


@dataclass
class ParsedTitle:
    """Result of parsing one title's XML."""

    title_number: int
    amendment_date: Optional[datetime]
    documents: List[Dict[str, Any]] = field(default_factory=list)

    def count_by_type(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for doc in self.documents:
            counts[doc["type"]] = counts.get(doc["type"], 0) + 1
        return counts


class _DocumentBuilder:
    """Walks the DIV hierarchy and emits document records in document order."""

    def __init__(self, title_number: int, amendment_date: Optional[datetime]):
        self.title_number = title_number
        self.amendment_date = amendment_date
        self.ordinal = 0
        self.parsed_at = utcnow()
        self.documents: List[Dict[str, Any]] = []

    def walk(self, element: Any, doc_type: DocumentType, hierarchy: Dict[str, str]) -> None:
        n = _attr(element, "n")

        own_hierarchy = dict(hierarchy)
        coordinate = HIERARCHY_FIELDS.get(doc_type)
        if coordinate and n is not None:
            own_hierarchy[coordinate] = n

        self.documents.append(self.build(element, doc_type, own_hierarchy, n))

        for child in _children(element):
            child_type = DIV_DOCUMENT_TYPES.get(_tag(child) or "")
            if child_type is not None:
                self.walk(child, child_type, own_hierarchy)

    def build(
        self,
        element: Any,
        doc_type: DocumentType,
        hierarchy: Dict[str, str],
        n: Optional[str],
    ) -> Dict[str, Any]:
        self.ordinal += 1
        token = _identifier_token(n)
        identifier = (
            f"{doc_type.value}_{token}_{self.ordinal}" if token else f"{doc_type.value}_{self.ordinal}"
        )

        head = _first_child(element, "head")
        auth = _first_child(element, "auth")
        source = _first_child(element, "source")

        text = plain_text(element)
        formatted = formatted_text(element)

        document: Dict[str, Any] = {
            "titleNumber": self.title_number,
            "type": doc_type.value,
            "identifier": identifier,
            "node": _attr(element, "node"),
        }
        for key in HIERARCHY_KEYS:
            document[key] = hierarchy.get(key)

        document.update(
            {
                "heading": (plain_text(head) or None) if head is not None else None,
                "authority": plain_text(auth) if auth is not None else None,
                "source": plain_text(source) if source is not None else None,
                "structuredContent": extract_structured_content(element),
                "content": text or NO_CONTENT,
                "formattedContent": formatted or text or NO_CONTENT,
                "contentLength": len(text.encode("utf-8")) if text else 0,
                "citations": [
                    {"text": plain_text(cita), "type": _attr(cita, "type") or "N"}
                    for cita in _find_outermost(element, ("cita",))
                ],
                "editorialNotes": [
                    {"heading": _note_heading(note), "content": plain_text(note)}
                    for note in _find_outermost(element, ("ednote",))
                ],
                "images": extract_images(element),
                "effectiveDate": _effective_date(element),
                "amendmentDate": self.amendment_date,
                "lastModified": self.parsed_at,
            }
        )
        return document


def _locate_title_division(root: Any) -> Tuple[Any, Optional[datetime]]:
    if _tag(root) != "dlpstextclass":
        raise XMLParseError(f"Unexpected root element <{root.tag}>")

    text = _first_child(root, "text")
    body = _first_child(text, "body") if text is not None else None
    if body is None:
        raise XMLParseError("Missing DLPSTEXTCLASS/TEXT/BODY")

    for browse in _children(body, "ecfrbrws"):
        div1 = _first_child(browse, "div1")
        if div1 is None:
            continue
        amddate = _first_child(browse, "amddate")
        amendment_date = parse_date(plain_text(amddate)) if amddate is not None else None
        return div1, amendment_date

    raise XMLParseError("No ECFRBRWS element carries a DIV1")


def parse_title_xml(xml_bytes: bytes, title_number: int) -> ParsedTitle:
    """
    Parse a title's XML into document records.

    Args:
        xml_bytes: Raw XML as downloaded
        title_number: Title the XML belongs to

    Returns:
        ParsedTitle with the title document first, descendants in document order

    Raises:
        XMLParseError: If the XML is malformed or lacks the title division
    """
    parser = etree.XMLParser(
        huge_tree=True, resolve_entities=False, no_network=True, remove_comments=True
    )
    try:
        root = etree.fromstring(xml_bytes, parser)
    except etree.XMLSyntaxError as e:
        raise XMLParseError(f"Malformed XML for title {title_number}: {e}") from e

    div1, amendment_date = _locate_title_division(root)

    builder = _DocumentBuilder(title_number, amendment_date)
    builder.walk(div1, DocumentType.TITLE, {})

    parsed = ParsedTitle(title_number, amendment_date, builder.documents)
    logger.info(
        f"Parsed {len(parsed.documents)} documents from title {title_number}: "
        f"{parsed.count_by_type()}"
    )
    return parsed


class BlobWriter(Protocol):
    async def upload(self, filename: str, data: bytes, metadata: Dict[str, Any]) -> Any: ...


def _utf8_size(value: Optional[str]) -> int:
    return len(value.encode("utf-8")) if value else 0


def estimate_record_size(document: Dict[str, Any]) -> int:
    """BSON size of a record, with the large text fields measured as UTF-8."""
    large = ("content", "formattedContent", "structuredContent")
    rest = {k: v for k, v in document.items() if k not in large}
    structured = document.get("structuredContent")
    structured_size = (
        len(json.dumps(structured, default=str).encode("utf-8")) if structured else 0
    )
    return (
        len(bson.encode(rest))
        + _utf8_size(document.get("content"))
        + _utf8_size(document.get("formattedContent"))
        + structured_size
    )


async def apply_spill_policy(
    documents: List[Dict[str, Any]],
    blob_store: BlobWriter,
    record_threshold: int = RECORD_SPILL_THRESHOLD,
    field_threshold: int = FIELD_SPILL_THRESHOLD,
) -> int:
    """
    Move oversized fields of large records to the blob store, in place.

    Returns:
        Number of fields spilled
    """
    spilled = 0

    for document in documents:
        if estimate_record_size(document) <= record_threshold:
            continue

        title_number = document["titleNumber"]
        identifier = document["identifier"]
        metadata = {
            "titleNumber": title_number,
            "type": document["type"],
            "identifier": identifier,
        }
        logger.info(f"Document {identifier} of title {title_number} exceeds spill threshold")

        content = document.get("content") or ""
        content_bytes = content.encode("utf-8")
        if len(content_bytes) > field_threshold:
            document["contentGridFS"] = await blob_store.upload(
                f"{title_number}_{identifier}_content", content_bytes, metadata
            )
            document["content"] = f"[Content stored in GridFS: {len(content_bytes)} bytes]"
            spilled += 1

        structured_bytes = json.dumps(document.get("structuredContent"), default=str).encode(
            "utf-8"
        )
        if len(structured_bytes) > field_threshold:
            document["structuredContentGridFS"] = await blob_store.upload(
                f"{title_number}_{identifier}_structured", structured_bytes, metadata
            )
            document["structuredContent"] = {
                "storedInGridFS": True,
                "size": len(structured_bytes),
            }
            spilled += 1

        formatted_bytes = (document.get("formattedContent") or "").encode("utf-8")
        if len(formatted_bytes) > field_threshold:
            document["formattedContentGridFS"] = await blob_store.upload(
                f"{title_number}_{identifier}_formatted", formatted_bytes, metadata
            )
            document["formattedContent"] = (
                f"[Formatted content stored in GridFS: {len(formatted_bytes)} bytes]"
            )
            spilled += 1

        final_size = estimate_record_size(document)
        if final_size > MAX_RECORD_BYTES:
            logger.error(
                f"Document {identifier} of title {title_number} is still {final_size} bytes "
                f"after spilling; the insert will be rejected"
            )

    return spilled


class TitleXMLParser:
    """Async facade: parse in an executor, then spill oversized fields."""

    def __init__(
        self,
        blob_store: BlobWriter,
        record_threshold: int = RECORD_SPILL_THRESHOLD,
        field_threshold: int = FIELD_SPILL_THRESHOLD,
    ):
        self.blob_store = blob_store
        self.record_threshold = record_threshold
        self.field_threshold = field_threshold

    async def parse(self, xml_bytes: bytes, title_number: int) -> ParsedTitle:
        loop = asyncio.get_running_loop()
        parsed = await loop.run_in_executor(None, parse_title_xml, xml_bytes, title_number)

        spilled = await apply_spill_policy(
            parsed.documents, self.blob_store, self.record_threshold, self.field_threshold
        )
        if spilled:
            logger.info(f"Spilled {spilled} oversized fields of title {title_number} to GridFS")
        return parsed
