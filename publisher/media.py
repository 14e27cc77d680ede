"""Media binding validation and per-publish media resolution."""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

import httpx

from .cms_client import CmsApiError, CmsClient
from .config import PublishConfig
from .content import (
    KNOWN_MEDIA_SOURCES,
    KNOWN_PLACEMENTS,
    ContentBlock,
    MediaAsset,
    MediaSource,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_EXTENSION = "jpg"

_EXTENSION_BY_CONTENT_TYPE = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "image/avif": "avif",
}

_MIME_BY_EXTENSION = {extension: mime for mime, extension in _EXTENSION_BY_CONTENT_TYPE.items()}
_MIME_BY_EXTENSION["jpg"] = "image/jpeg"


class MediaValidationError(ValueError):
    """Raised before any I/O when media assets or bindings are defective."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("Media binding validation failed:\n  - " + "\n  - ".join(self.errors))


class UnknownMediaSourceError(ValueError):
    """Raised when an asset names a provenance the resolver cannot handle."""


class MediaResolutionError(RuntimeError):
    """Raised when a referenced asset cannot be fetched or uploaded."""


@dataclass(slots=True)
class ResolvedMedia:
    asset_id: str
    remote_url: str
    remote_media_id: int
    alt: str
    caption: str | None = None
    intent: str = "section"


def _asset_defects(asset: MediaAsset) -> list[str]:
    label = f'Asset "{asset.asset_id}"'
    defects: list[str] = []
    if asset.source not in KNOWN_MEDIA_SOURCES:
        defects.append(f'{label} has unknown source "{asset.source}"')
    elif asset.source == MediaSource.CMS.value and asset.cms_media_id is None:
        defects.append(f"{label} (cms) is missing cms_media_id")
    elif asset.source == MediaSource.URL.value and not asset.url:
        defects.append(f"{label} (url) is missing url")
    elif asset.source == MediaSource.UPLOAD.value and not asset.upload_path:
        defects.append(f"{label} (upload) is missing upload_path")
    if not asset.seo.alt.strip():
        defects.append(f"{label} is missing seo.alt")
    if not asset.seo.filename_slug.strip():
        defects.append(f"{label} is missing seo.filename_slug")
    if not asset.geo.llm_description.strip():
        defects.append(f"{label} is missing geo.llm_description")
    return defects


def validate_media_bindings(assets: Iterable[MediaAsset], blocks: Iterable[ContentBlock]) -> None:
    """Check every binding and every referenced asset, reporting all defects at once."""

    by_id = {asset.asset_id: asset for asset in assets}
    errors: list[str] = []
    checked: set[str] = set()
    for block in blocks:
        for binding in block.media_bindings:
            asset = by_id.get(binding.asset_id)
            if asset is None:
                errors.append(f'Block "{block.block_id}" references unknown asset "{binding.asset_id}"')
            elif asset.asset_id not in checked:
                checked.add(asset.asset_id)
                errors.extend(_asset_defects(asset))
            if binding.placement not in KNOWN_PLACEMENTS:
                allowed = ", ".join(sorted(KNOWN_PLACEMENTS))
                errors.append(
                    f'Block "{block.block_id}" binding for "{binding.asset_id}" has invalid placement '
                    f'"{binding.placement}" (expected one of: {allowed})'
                )
    if errors:
        raise MediaValidationError(errors)


def _extension_from_url(url: str, default: str) -> str:
    suffix = url.split("?")[0].split("#")[0].rsplit("/", 1)[-1].rsplit(".", 1)
    if len(suffix) == 2 and suffix[1]:
        return suffix[1].lower()
    return default


def _extension_for(content_type: str | None, url: str) -> str:
    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        extension = _EXTENSION_BY_CONTENT_TYPE.get(mime)
        if extension:
            return extension
    return _extension_from_url(url, DEFAULT_EXTENSION)


class MediaResolver:
    """Resolve referenced assets to remote media, each at most once per instance.

    Create one resolver per publish call; the cache is not meant to outlive it.
    """

    def __init__(
        self,
        client: CmsClient,
        config: PublishConfig | None = None,
        *,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._cms = client
        self._config = config or PublishConfig()
        if http_client is None:
            self._http = httpx.Client(
                timeout=self._config.timeout.media_timeout,
                headers={"User-Agent": self._config.user_agent},
                follow_redirects=True,
            )
            self._owns_http = True
        else:
            self._http = http_client
            self._owns_http = False
        self._cache: dict[str, ResolvedMedia] = {}

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "MediaResolver":  # pragma: no cover - convenience wrapper
        return self

    def __exit__(self, *_exc_info) -> None:  # pragma: no cover - convenience wrapper
        self.close()

    def resolve(self, assets: Iterable[MediaAsset], referenced_ids: Iterable[str]) -> dict[str, ResolvedMedia]:
        """Resolve the referenced subset of ``assets`` and return the cache view."""

        wanted = set(referenced_ids)
        for asset in assets:
            if asset.asset_id not in wanted or asset.asset_id in self._cache:
                continue
            self._cache[asset.asset_id] = self._resolve_one(asset)
        return dict(self._cache)

    def _resolve_one(self, asset: MediaAsset) -> ResolvedMedia:
        if asset.source == MediaSource.CMS.value:
            if asset.cms_media_id is None:
                raise MediaResolutionError(f'Asset "{asset.asset_id}" has no cms_media_id')
            try:
                media = self._cms.get_media(asset.cms_media_id)
            except CmsApiError as exc:
                raise MediaResolutionError(f'Asset "{asset.asset_id}": {exc}') from exc
            return self._resolved(asset, media.id, media.source_url)

        if asset.source == MediaSource.URL.value:
            content, extension, mime = self._download(asset)
        elif asset.source == MediaSource.UPLOAD.value:
            content, extension, mime = self._read_upload(asset)
        else:
            raise UnknownMediaSourceError(f'Asset "{asset.asset_id}" has unknown source "{asset.source}"')

        filename = f"{asset.seo.filename_slug}.{extension}"
        try:
            media = self._cms.upload_media(content, filename, mime)
            self._cms.update_media_metadata(
                media.id,
                alt_text=asset.seo.alt,
                title=asset.seo.title,
                caption=asset.seo.caption,
            )
        except CmsApiError as exc:
            raise MediaResolutionError(f'Asset "{asset.asset_id}": {exc}') from exc
        return self._resolved(asset, media.id, media.source_url)

    @staticmethod
    def _resolved(asset: MediaAsset, media_id: int, url: str) -> ResolvedMedia:
        return ResolvedMedia(
            asset_id=asset.asset_id,
            remote_url=url,
            remote_media_id=media_id,
            alt=asset.seo.alt,
            caption=asset.seo.caption,
            intent=asset.intent,
        )

    def _download(self, asset: MediaAsset) -> tuple[bytes, str, str]:
        url = str(asset.url or "")
        try:
            response = self._http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise MediaResolutionError(f'Asset "{asset.asset_id}": download of {url} failed: {exc}') from exc
        content = response.content
        if not content:
            raise MediaResolutionError(f'Asset "{asset.asset_id}": empty response body for {url}')
        content_type = response.headers.get("content-type")
        extension = _extension_for(content_type, url)
        mime = (content_type or "").split(";")[0].strip() or _MIME_BY_EXTENSION.get(extension, "application/octet-stream")
        LOGGER.debug("Downloaded %d bytes for asset %s", len(content), asset.asset_id)
        return content, extension, mime

    def _read_upload(self, asset: MediaAsset) -> tuple[bytes, str, str]:
        path = Path(str(asset.upload_path or ""))
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise MediaResolutionError(f'Asset "{asset.asset_id}": cannot read {path}: {exc}') from exc
        if not content:
            raise MediaResolutionError(f'Asset "{asset.asset_id}": file {path} is empty')
        guessed, _encoding = mimetypes.guess_type(path.name)
        extension = _extension_for(guessed, path.name)
        mime = guessed or _MIME_BY_EXTENSION.get(extension, "application/octet-stream")
        return content, extension, mime


__all__ = [
    "MediaResolutionError",
    "MediaResolver",
    "MediaValidationError",
    "ResolvedMedia",
    "UnknownMediaSourceError",
    "validate_media_bindings",
]
