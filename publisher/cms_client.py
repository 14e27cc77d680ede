"""HTTP client for the WordPress REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config import CmsCredentials, PublishConfig

LOGGER = logging.getLogger(__name__)

PAGES_PATH = "/wp-json/wp/v2/pages"
MEDIA_PATH = "/wp-json/wp/v2/media"


class CmsApiError(RuntimeError):
    """Raised when the CMS rejects a request or cannot be reached."""

    def __init__(self, operation: str, status_code: int | None, message: str) -> None:
        self.operation = operation
        self.status_code = status_code
        self.remote_message = message
        status = f"HTTP {status_code}" if status_code is not None else "no response"
        super().__init__(f"{operation} failed ({status}): {message}")


@dataclass(slots=True)
class CmsPage:
    id: int
    link: str | None = None
    status: str | None = None


@dataclass(slots=True)
class CmsMedia:
    id: int
    source_url: str


def _remote_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text


class CmsClient:
    """Authenticated WordPress client; one instance per site and invocation."""

    def __init__(
        self,
        credentials: CmsCredentials,
        config: PublishConfig | None = None,
        *,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._credentials = credentials
        self._config = config or PublishConfig()
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None

    @property
    def site_key(self) -> str:
        return self._credentials.site_key

    def _build_client(self) -> httpx.Client:
        kwargs: dict[str, object] = {
            "base_url": self._credentials.base_url,
            "timeout": self._config.timeout.request_timeout,
            "headers": {
                "User-Agent": self._config.user_agent,
                "Authorization": self._credentials.auth_header(),
            },
            "follow_redirects": True,
        }
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise CmsApiError(operation, None, str(exc)) from exc
        if not response.is_success:
            raise CmsApiError(operation, response.status_code, _remote_message(response))
        try:
            return response.json()
        except ValueError as exc:
            raise CmsApiError(operation, response.status_code, "Response body is not JSON") from exc

    @staticmethod
    def _page_from_payload(payload: Any, operation: str) -> CmsPage:
        if not isinstance(payload, dict) or payload.get("id") is None:
            raise CmsApiError(operation, None, "Response did not include a page id")
        return CmsPage(id=int(payload["id"]), link=payload.get("link"), status=payload.get("status"))

    def find_page_id_by_slug(self, slug: str) -> int | None:
        payload = self._request(
            "Page lookup",
            "GET",
            PAGES_PATH,
            params={"slug": slug, "status": "any", "per_page": 1},
        )
        if isinstance(payload, list) and payload:
            first = payload[0]
            if isinstance(first, dict) and first.get("id") is not None:
                return int(first["id"])
        return None

    def update_page(
        self,
        page_id: int,
        content: str,
        status: str,
        title: str | None = None,
    ) -> CmsPage:
        body: dict[str, Any] = {"content": content, "status": status}
        if title is not None:
            body["title"] = title
        payload = self._request("Page update", "POST", f"{PAGES_PATH}/{page_id}", json=body)
        page = self._page_from_payload(payload, "Page update")
        LOGGER.debug("Updated CMS page %s on %s", page.id, self.site_key)
        return page

    def create_page(self, slug: str, title: str, content: str, status: str) -> CmsPage:
        body = {"slug": slug, "title": title, "content": content, "status": status}
        payload = self._request("Page create", "POST", PAGES_PATH, json=body)
        page = self._page_from_payload(payload, "Page create")
        LOGGER.info("Created CMS page %s (%s) on %s", page.id, slug, self.site_key)
        return page

    def get_media(self, media_id: int) -> CmsMedia:
        payload = self._request("Media fetch", "GET", f"{MEDIA_PATH}/{media_id}")
        if not isinstance(payload, dict) or not payload.get("source_url"):
            raise CmsApiError("Media fetch", None, f"Media {media_id} has no source_url")
        return CmsMedia(id=int(payload.get("id") or media_id), source_url=str(payload["source_url"]))

    def upload_media(self, content: bytes, filename: str, mime_type: str) -> CmsMedia:
        headers = {
            "Content-Type": mime_type,
            "Content-Disposition": f'attachment; filename="{filename}"',
        }
        payload = self._request(
            "Media upload",
            "POST",
            MEDIA_PATH,
            content=content,
            headers=headers,
            timeout=self._config.timeout.media_timeout,
        )
        if not isinstance(payload, dict) or payload.get("id") is None:
            raise CmsApiError("Media upload", None, "Response did not include a media id")
        LOGGER.info("Uploaded media %s as %s on %s", filename, payload["id"], self.site_key)
        return CmsMedia(id=int(payload["id"]), source_url=str(payload.get("source_url") or ""))

    def update_media_metadata(
        self,
        media_id: int,
        *,
        alt_text: str | None = None,
        title: str | None = None,
        caption: str | None = None,
    ) -> None:
        body = {
            key: value
            for key, value in (
                ("alt_text", alt_text),
                ("title", title),
                ("caption", caption),
            )
            if value
        }
        if not body:
            return
        self._request("Media metadata update", "POST", f"{MEDIA_PATH}/{media_id}", json=body)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "CmsClient":  # pragma: no cover - convenience wrapper
        return self

    def __exit__(self, *_exc_info) -> None:  # pragma: no cover - convenience wrapper
        self.close()


__all__ = ["CmsApiError", "CmsClient", "CmsMedia", "CmsPage"]
