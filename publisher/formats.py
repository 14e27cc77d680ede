"""Content format detection for page and block bodies."""

from __future__ import annotations

import re
from enum import Enum


class ContentFormat(str, Enum):
    HTML = "html"
    MARKDOWN = "markdown"


_MARKUP_PATTERN = re.compile(
    r"^<[a-z]|<(h[1-6]|p|div|section|ul|ol|li|table|article|header|footer|main|nav|figure|blockquote)\b",
    re.IGNORECASE,
)
_MARKDOWN_PATTERN = re.compile(
    r"^#{1,6}\s|^\*\s|^-\s|^\d+\.\s|\*\*[^*]+\*\*|__[^_]+__|^>|!\[|\[[^\]]+\]\(",
    re.MULTILINE,
)


def parse_content_format(value: object, default: ContentFormat = ContentFormat.HTML) -> ContentFormat:
    if isinstance(value, ContentFormat):
        return value
    if isinstance(value, str):
        cleaned = value.strip().lower()
        if cleaned in {"md", "markdown", "text", "plain", "plaintext"}:
            return ContentFormat.MARKDOWN
        if cleaned in {"html", "htm", "markup"}:
            return ContentFormat.HTML
    return default


def looks_like_markup(text: str | None) -> bool:
    """Return True when the text opens with a tag or embeds a block-level tag."""

    if not text:
        return False
    return bool(_MARKUP_PATTERN.search(text.strip()))


def looks_like_markdown(text: str | None) -> bool:
    if not text:
        return False
    return bool(_MARKDOWN_PATTERN.search(text))


def classify_body(text: str, declared: ContentFormat | None = None) -> ContentFormat:
    """Decide once whether a body is markup or markdown.

    Sniffed markup always wins so mislabelled markdown blocks never get
    double-converted. Text that is neither markup nor markdown keeps the
    declared format when it is HTML, otherwise it is treated as markdown
    (plain paragraphs render as ``<p>`` elements).
    """

    if looks_like_markup(text):
        return ContentFormat.HTML
    if declared == ContentFormat.HTML and not looks_like_markdown(text):
        return ContentFormat.HTML
    return ContentFormat.MARKDOWN
