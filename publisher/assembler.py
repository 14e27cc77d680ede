"""Assemble final page markup from content blocks and resolved media."""

from __future__ import annotations

import html
import re
from typing import Iterable, Mapping

from markdown_it import MarkdownIt

from .config import DEFAULT_MEDIA_CLASS_PREFIX
from .content import ContentBlock, MediaBinding, PageBody, Placement
from .formats import ContentFormat
from .jobs import Page
from .media import ResolvedMedia

_MARKDOWN = MarkdownIt("commonmark", {"linkify": True}).enable(["table", "strikethrough", "linkify"])

_PARAGRAPH_CLOSE = re.compile(r"</p\s*>", re.IGNORECASE)


def render_block_markup(body: PageBody) -> str:
    if body.format == ContentFormat.HTML:
        return body.text
    return _MARKDOWN.render(body.text).rstrip("\n")


def _attribute(value: str) -> str:
    return html.escape(value, quote=False).replace('"', "&quot;")


def build_figure_html(
    media: ResolvedMedia,
    binding: MediaBinding,
    prefix: str = DEFAULT_MEDIA_CLASS_PREFIX,
) -> str:
    classes = [prefix, f"{prefix}--{media.intent}"]
    if binding.alignment:
        classes.append(f"{prefix}--{binding.alignment}")
    if binding.size:
        classes.append(f"{prefix}--{binding.size}")

    image = f'<img src="{_attribute(media.remote_url)}" alt="{_attribute(media.alt)}" />'
    if binding.link_to:
        image = f'<a href="{_attribute(binding.link_to)}">{image}</a>'
    caption = f"<figcaption>{html.escape(media.caption, quote=False)}</figcaption>" if media.caption else ""
    return f'<figure class="{" ".join(classes)}">{image}{caption}</figure>'


def _splice(markup: str, figure: str, placement: str) -> str:
    if placement == Placement.ABOVE.value:
        return f"{figure}\n{markup}" if markup else figure
    if placement == Placement.INLINE.value:
        match = _PARAGRAPH_CLOSE.search(markup)
        if match:
            cut = match.end()
            return f"{markup[:cut]}\n{figure}{markup[cut:]}"
    return f"{markup}\n{figure}" if markup else figure


def apply_media_bindings(
    markup: str,
    bindings: Iterable[MediaBinding],
    resolved: Mapping[str, ResolvedMedia],
    prefix: str = DEFAULT_MEDIA_CLASS_PREFIX,
) -> str:
    """Splice each bound figure into ``markup`` in binding order."""

    output = markup
    for binding in bindings:
        media = resolved.get(binding.asset_id)
        if media is None:
            raise KeyError(f'Media "{binding.asset_id}" was not resolved')
        output = _splice(output, build_figure_html(media, binding, prefix), binding.placement)
    return output


def assemble_block(
    block: ContentBlock,
    resolved: Mapping[str, ResolvedMedia],
    prefix: str = DEFAULT_MEDIA_CLASS_PREFIX,
) -> str:
    return apply_media_bindings(render_block_markup(block.body), block.media_bindings, resolved, prefix)


def assemble_page(
    page: Page,
    resolved: Mapping[str, ResolvedMedia],
    prefix: str = DEFAULT_MEDIA_CLASS_PREFIX,
) -> str:
    return "\n".join(assemble_block(block, resolved, prefix) for block in page.content_blocks())


__all__ = [
    "apply_media_bindings",
    "assemble_block",
    "assemble_page",
    "build_figure_html",
    "render_block_markup",
]
