"""Content and media data models shared by the job aggregate and the publisher."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from .formats import ContentFormat, classify_body


class MediaSource(str, Enum):
    CMS = "cms"
    URL = "url"
    UPLOAD = "upload"


class Placement(str, Enum):
    ABOVE = "above"
    BELOW = "below"
    INLINE = "inline"


KNOWN_MEDIA_SOURCES = frozenset(source.value for source in MediaSource)
KNOWN_PLACEMENTS = frozenset(placement.value for placement in Placement)


@dataclass(slots=True)
class PageBody:
    """A body whose format was decided once, at ingestion."""

    format: ContentFormat
    text: str

    @classmethod
    def from_fields(
        cls,
        body_html: str | None,
        body_markdown: str | None,
        declared: ContentFormat | None = None,
    ) -> "PageBody":
        if body_html is not None:
            return cls(format=classify_body(body_html, ContentFormat.HTML), text=body_html)
        if body_markdown is not None:
            return cls(format=classify_body(body_markdown, ContentFormat.MARKDOWN), text=body_markdown)
        return cls(format=declared or ContentFormat.HTML, text="")

    @property
    def html(self) -> str | None:
        return self.text if self.format == ContentFormat.HTML else None

    @property
    def markdown(self) -> str | None:
        return self.text if self.format == ContentFormat.MARKDOWN else None

    def to_payload(self) -> dict[str, str | None]:
        return {"body_html": self.html, "body_markdown": self.markdown}


@dataclass(slots=True)
class SeoMetadata:
    alt: str = ""
    filename_slug: str = ""
    title: str | None = None
    caption: str | None = None


@dataclass(slots=True)
class GeoMetadata:
    llm_description: str = ""
    entities: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MediaAsset:
    asset_id: str
    source: str
    cms_media_id: int | None = None
    url: str | None = None
    upload_path: str | None = None
    intent: str = "section"
    seo: SeoMetadata = field(default_factory=SeoMetadata)
    geo: GeoMetadata = field(default_factory=GeoMetadata)


@dataclass(slots=True)
class MediaBinding:
    asset_id: str
    placement: str = Placement.BELOW.value
    alignment: str | None = None
    size: str | None = None
    link_to: str | None = None


@dataclass(slots=True)
class ContentBlock:
    block_id: str
    body: PageBody
    media_bindings: list[MediaBinding] = field(default_factory=list)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def asset_from_payload(payload: Mapping[str, Any]) -> MediaAsset:
    """Build a MediaAsset leniently; defects are reported by binding validation."""

    seo_payload = payload.get("seo") or {}
    geo_payload = payload.get("geo") or {}
    return MediaAsset(
        asset_id=str(payload.get("asset_id") or ""),
        source=str(payload.get("source") or ""),
        cms_media_id=_optional_int(payload.get("cms_media_id")),
        url=_optional_str(payload.get("url")),
        upload_path=_optional_str(payload.get("upload_path")),
        intent=_optional_str(payload.get("intent")) or "section",
        seo=SeoMetadata(
            alt=str(seo_payload.get("alt") or ""),
            filename_slug=str(seo_payload.get("filename_slug") or ""),
            title=_optional_str(seo_payload.get("title")),
            caption=_optional_str(seo_payload.get("caption")),
        ),
        geo=GeoMetadata(
            llm_description=str(geo_payload.get("llm_description") or ""),
            entities=[str(item) for item in geo_payload.get("entities") or []],
            topics=[str(item) for item in geo_payload.get("topics") or []],
        ),
    )


def asset_to_payload(asset: MediaAsset) -> dict[str, Any]:
    return {
        "asset_id": asset.asset_id,
        "source": asset.source,
        "cms_media_id": asset.cms_media_id,
        "url": asset.url,
        "upload_path": asset.upload_path,
        "intent": asset.intent,
        "seo": {
            "alt": asset.seo.alt,
            "filename_slug": asset.seo.filename_slug,
            "title": asset.seo.title,
            "caption": asset.seo.caption,
        },
        "geo": {
            "llm_description": asset.geo.llm_description,
            "entities": list(asset.geo.entities),
            "topics": list(asset.geo.topics),
        },
    }


def binding_from_payload(payload: Mapping[str, Any]) -> MediaBinding:
    return MediaBinding(
        asset_id=str(payload.get("asset_id") or ""),
        placement=str(payload.get("placement") or Placement.BELOW.value),
        alignment=_optional_str(payload.get("alignment")),
        size=_optional_str(payload.get("size")),
        link_to=_optional_str(payload.get("link_to")),
    )


def binding_to_payload(binding: MediaBinding) -> dict[str, str | None]:
    return {
        "asset_id": binding.asset_id,
        "placement": binding.placement,
        "alignment": binding.alignment,
        "size": binding.size,
        "link_to": binding.link_to,
    }


def block_from_payload(
    payload: Mapping[str, Any],
    *,
    index: int,
    declared: ContentFormat | None = None,
) -> ContentBlock:
    body_html = payload.get("body_html", payload.get("html"))
    body_markdown = payload.get("body_markdown", payload.get("markdown"))
    body = PageBody.from_fields(
        str(body_html) if isinstance(body_html, str) else None,
        str(body_markdown) if isinstance(body_markdown, str) else None,
        declared,
    )
    bindings = [
        binding_from_payload(item)
        for item in payload.get("media_bindings") or []
        if isinstance(item, Mapping)
    ]
    block_id = _optional_str(payload.get("block_id")) or f"block-{index + 1}"
    return ContentBlock(block_id=block_id, body=body, media_bindings=bindings)


def block_to_payload(block: ContentBlock) -> dict[str, Any]:
    payload: dict[str, Any] = {"block_id": block.block_id}
    payload.update(block.body.to_payload())
    payload["media_bindings"] = [binding_to_payload(binding) for binding in block.media_bindings]
    return payload


def referenced_asset_ids(blocks: Iterable[ContentBlock]) -> list[str]:
    """Return asset ids referenced by bindings, in first-reference order."""

    seen: list[str] = []
    for block in blocks:
        for binding in block.media_bindings:
            if binding.asset_id not in seen:
                seen.append(binding.asset_id)
    return seen
