"""Normalise loosely structured web-renderer output into page descriptors.

Accepted shapes:

* wrapped ``web_page`` artifacts whose ``content.html`` embeds a JSON page list
  (optionally behind a ``json`` prefix or inside code fences);
* direct ``{"pages": [...]}`` documents, optionally carrying ``brand``,
  ``content_format`` and ``media_assets``;
* single-page ``{"html": ...}``, ``{"body": ...}`` or
  ``{"content": {"title": ..., "html": ...}}`` objects;
* plain text: markdown split into per-page sections, or a single markup or
  markdown page.

Anything else yields zero pages so callers can reject the input instead of
publishing a guess.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from bs4 import BeautifulSoup
from slugify import slugify as _slugify

from .content import ContentBlock, MediaAsset, PageBody, asset_from_payload, block_from_payload
from .formats import ContentFormat, classify_body, looks_like_markdown, looks_like_markup, parse_content_format

LOGGER = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 80
DEFAULT_BRAND = "unknown"

_FENCE_OPEN = re.compile(r"^```(?:json)?[ \t]*\r?\n", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\r?\n?```\s*$")
_JSON_PREFIX = re.compile(r"^json[ \t]*\r?\n", re.IGNORECASE)
_PAGE_MARKER = re.compile(r"^[ \t]*<!--\s*page:\s*(?P<key>.+?)\s*-->[ \t]*$", re.IGNORECASE | re.MULTILINE)
_PAGE_HEADING = re.compile(
    r"^#{1,2}[ \t]+Page(?:[ \t]+\d+)?[ \t]*[:\-–—][ \t]*(?P<title>.+?)[ \t]*#*[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_MARKDOWN_H1 = re.compile(r"^#[ \t]+(?P<title>.+?)[ \t]*#*[ \t]*$", re.MULTILINE)


class RendererFormatError(ValueError):
    """Raised when renderer output yields no pages."""


@dataclass(slots=True)
class NormalizedPage:
    source_key: str
    title: str
    body: PageBody
    meta_title: str | None = None
    meta_description: str | None = None
    blocks: list[ContentBlock] = field(default_factory=list)


@dataclass(slots=True)
class NormalizedOutput:
    brand: str
    content_format: ContentFormat
    pages: list[NormalizedPage]
    source_kind: str
    media_assets: list[MediaAsset] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.pages


def slugify(title: str) -> str:
    """Return a URL-safe slug for a title; ``page`` when nothing survives."""

    return _slugify(title or "", max_length=SLUG_MAX_LENGTH) or "page"


def normalize_escapes(text: str) -> str:
    """Turn literal JSON escape sequences left in pasted bodies into real characters."""

    if "\\n" not in text and "\\t" not in text and '\\"' not in text and "\\'" not in text:
        return text
    return (
        text.replace("\\r\\n", "\n")
        .replace("\\n", "\n")
        .replace("\\t", "\t")
        .replace('\\"', '"')
        .replace("\\'", "'")
    )


def _strip_wrappers(text: str) -> str:
    cleaned = text.lstrip("\ufeff").strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", cleaned)).strip()
    return _JSON_PREFIX.sub("", cleaned).strip()


def _empty(kind: str) -> NormalizedOutput:
    return NormalizedOutput(
        brand=DEFAULT_BRAND,
        content_format=ContentFormat.HTML,
        pages=[],
        source_kind=kind,
    )


def _string_field(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def _normalize_page(
    raw: Mapping[str, Any],
    index: int,
    declared: ContentFormat,
) -> NormalizedPage:
    raw_slug = (_string_field(raw, "slug") or "").strip()
    raw_title = (_string_field(raw, "title") or "").strip()
    if not raw_title and not raw_slug:
        raw_title = f"Page {index + 1}"
    source_key = raw_slug or slugify(raw_title)
    title = raw_title or source_key

    body_html = _string_field(raw, "body_html")
    body_markdown = _string_field(raw, "body_markdown")
    if body_html is not None:
        body_html = normalize_escapes(body_html)
    if body_markdown is not None:
        body_markdown = normalize_escapes(body_markdown)

    blocks = [
        block_from_payload(item, index=position, declared=declared)
        for position, item in enumerate(raw.get("content_blocks") or [])
        if isinstance(item, Mapping)
    ]
    if body_html is None and body_markdown is None and blocks:
        body = PageBody(format=blocks[0].body.format, text="\n".join(block.body.text for block in blocks))
    else:
        body = PageBody.from_fields(body_html, body_markdown, declared)

    return NormalizedPage(
        source_key=source_key,
        title=title,
        body=body,
        meta_title=_string_field(raw, "meta_title"),
        meta_description=_string_field(raw, "meta_description"),
        blocks=blocks,
    )


def _from_page_document(document: Mapping[str, Any], kind: str) -> NormalizedOutput:
    declared = parse_content_format(document.get("content_format"))
    pages = [
        _normalize_page(item, index, declared)
        for index, item in enumerate(document.get("pages") or [])
        if isinstance(item, Mapping)
    ]
    assets = [
        asset_from_payload(item)
        for item in document.get("media_assets") or []
        if isinstance(item, Mapping)
    ]
    brand = document.get("brand")
    return NormalizedOutput(
        brand=brand if isinstance(brand, str) and brand.strip() else DEFAULT_BRAND,
        content_format=declared,
        pages=pages,
        source_kind=kind,
        media_assets=assets,
    )


def _single_page(title: str, body_text: str, kind: str, *, source_key: str | None = None) -> NormalizedOutput:
    body_text = normalize_escapes(body_text)
    body = PageBody(format=classify_body(body_text, ContentFormat.HTML), text=body_text)
    page = NormalizedPage(source_key=source_key or slugify(title), title=title, body=body)
    return NormalizedOutput(
        brand=DEFAULT_BRAND,
        content_format=ContentFormat.HTML,
        pages=[page],
        source_kind=kind,
    )


def _extract_embedded_document(html_field: str) -> Mapping[str, Any] | None:
    candidate = _strip_wrappers(html_field)
    if not candidate.startswith("{"):
        return None
    try:
        inner = json.loads(candidate)
    except ValueError:
        return None
    if isinstance(inner, Mapping) and isinstance(inner.get("pages"), list) and inner["pages"]:
        return inner
    return None


def _from_json_object(document: Mapping[str, Any]) -> NormalizedOutput:
    content = document.get("content")

    if document.get("artifact_type") == "web_page" and isinstance(content, Mapping):
        html_field = _string_field(content, "html")
        if not html_field or not html_field.strip():
            LOGGER.debug("Wrapped web_page artifact has no content.html")
            return _empty("wrapped")
        embedded = _extract_embedded_document(html_field)
        if embedded is not None:
            return _from_page_document(embedded, "wrapped")
        title = (_string_field(content, "title") or "Page").strip() or "Page"
        return _single_page(title, html_field, "wrapped")

    if isinstance(document.get("pages"), list) and document["pages"]:
        return _from_page_document(document, "direct")

    single_body = _string_field(document, "html") or _string_field(document, "body")
    if single_body and single_body.strip():
        return _single_page("Page", single_body, "direct", source_key="page")

    if isinstance(content, Mapping):
        content_html = _string_field(content, "html")
        if content_html and content_html.strip():
            title = (_string_field(content, "title") or "Page").strip() or "Page"
            return _single_page(title, content_html, "direct")

    return _empty("direct")


def _split_sections(text: str) -> list[NormalizedPage]:
    markers: list[tuple[int, int, str, str | None]] = []
    for match in _PAGE_MARKER.finditer(text):
        markers.append((match.start(), match.end(), "marker", match.group("key")))
    for match in _PAGE_HEADING.finditer(text):
        markers.append((match.start(), match.end(), "heading", match.group("title")))
    if not markers:
        return []
    markers.sort(key=lambda item: item[0])

    preamble = text[: markers[0][0]].strip()
    if preamble:
        LOGGER.debug("Ignoring %d characters before the first page section", len(preamble))

    pages: list[NormalizedPage] = []
    for position, (_start, end, kind, label) in enumerate(markers):
        next_start = markers[position + 1][0] if position + 1 < len(markers) else len(text)
        section = text[end:next_start].strip()
        label = (label or "").strip()
        if kind == "heading":
            title = label
            source_key = slugify(title)
        else:
            source_key = slugify(label)
            heading = _MARKDOWN_H1.search(section)
            title = heading.group("title").strip() if heading else label
        section = normalize_escapes(section)
        body = PageBody(format=classify_body(section, ContentFormat.MARKDOWN), text=section)
        pages.append(NormalizedPage(source_key=source_key, title=title, body=body))
    return pages


def _title_from_markup(text: str) -> str:
    soup = BeautifulSoup(text, "html.parser")
    for selector in ("h1", "title"):
        node = soup.find(selector)
        if node is not None:
            heading = node.get_text(" ", strip=True)
            if heading:
                return heading
    return "Page"


def _from_text(text: str) -> NormalizedOutput:
    sections = _split_sections(text)
    if sections:
        return NormalizedOutput(
            brand=DEFAULT_BRAND,
            content_format=ContentFormat.MARKDOWN,
            pages=sections,
            source_kind="markdown_sections",
        )

    if looks_like_markup(text):
        return _single_page(_title_from_markup(text), text, "raw_string")

    if looks_like_markdown(text):
        heading = _MARKDOWN_H1.search(text)
        title = heading.group("title").strip() if heading else "Page"
        body_text = normalize_escapes(text)
        page = NormalizedPage(
            source_key=slugify(title),
            title=title,
            body=PageBody(format=ContentFormat.MARKDOWN, text=body_text),
        )
        return NormalizedOutput(
            brand=DEFAULT_BRAND,
            content_format=ContentFormat.MARKDOWN,
            pages=[page],
            source_kind="raw_string",
        )

    return _empty("raw_string")


def normalize_renderer_output(raw: str | Mapping[str, Any]) -> NormalizedOutput:
    """Parse renderer output; an unrecognised format returns zero pages."""

    if isinstance(raw, Mapping):
        return _from_json_object(raw)
    if not isinstance(raw, str):
        return _empty("unsupported")

    text = _strip_wrappers(raw)
    if not text:
        return _empty("empty")

    if text.startswith("{") or text.startswith("["):
        try:
            document = json.loads(text)
        except ValueError:
            LOGGER.debug("Renderer output looks like JSON but does not parse; refusing to guess")
            return _empty("invalid_json")
        if not isinstance(document, Mapping):
            return _empty("invalid_json")
        return _from_json_object(document)

    return _from_text(text)

