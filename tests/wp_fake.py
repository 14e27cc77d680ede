"""In-memory WordPress REST double served through httpx.MockTransport."""

from __future__ import annotations

import json
import re

import httpx

from publisher.cms_client import CmsClient
from publisher.config import CmsCredentials, PublishConfig

BASE_URL = "https://site.test"
CREDENTIALS = CmsCredentials(
    site_key="llif-staging",
    base_url=BASE_URL,
    username="editor",
    app_password="abcd efgh",
)

_PAGE_ITEM = re.compile(r"^/wp-json/wp/v2/pages/(\d+)$")
_MEDIA_ITEM = re.compile(r"^/wp-json/wp/v2/media/(\d+)$")
_FILENAME = re.compile(r'filename="([^"]+)"')

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


class FakeWordPress:
    def __init__(self, pages: dict[str, int] | None = None) -> None:
        self.pages_by_slug: dict[str, int] = dict(pages or {})
        self.page_bodies: dict[int, dict] = {}
        self.media: dict[int, str] = {}
        self.media_meta: dict[int, dict] = {}
        self.uploads: list[dict] = []
        self.downloads: dict[str, tuple[bytes, str]] = {}
        self.failing_page_ids: set[int] = set()
        self.failing_lookups: set[str] = set()
        self.requests: list[tuple[str, str]] = []
        self._next_page_id = 900
        self._next_media_id = 500

    def add_media(self, media_id: int, source_url: str) -> None:
        self.media[media_id] = source_url

    def add_download(self, url: str, content: bytes = PNG_BYTES, content_type: str = "image/png") -> None:
        self.downloads[url] = (content, content_type)

    def client(self, config: PublishConfig | None = None) -> CmsClient:
        return CmsClient(CREDENTIALS, config, transport=httpx.MockTransport(self.handler))

    def http_client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def _slug_for(self, page_id: int) -> str:
        for slug, known_id in self.pages_by_slug.items():
            if known_id == page_id:
                return slug
        return str(page_id)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, str(request.url)))

        if request.url.host != "site.test":
            if request.method == "GET" and str(request.url) in self.downloads:
                content, content_type = self.downloads[str(request.url)]
                return httpx.Response(200, content=content, headers={"content-type": content_type})
            return httpx.Response(404, text="not found")

        if request.method == "GET" and path == "/wp-json/wp/v2/pages":
            slug = request.url.params.get("slug")
            if slug in self.failing_lookups:
                return httpx.Response(503, json={"code": "unavailable", "message": "Lookup unavailable"})
            page_id = self.pages_by_slug.get(slug)
            return httpx.Response(200, json=[{"id": page_id, "slug": slug}] if page_id else [])

        match = _PAGE_ITEM.match(path)
        if request.method == "POST" and match:
            page_id = int(match.group(1))
            if page_id in self.failing_page_ids:
                return httpx.Response(500, json={"code": "internal_error", "message": "Page write exploded"})
            body = json.loads(request.content)
            self.page_bodies[page_id] = body
            return httpx.Response(
                200,
                json={
                    "id": page_id,
                    "link": f"{BASE_URL}/{self._slug_for(page_id)}/",
                    "status": body.get("status"),
                },
            )

        if request.method == "POST" and path == "/wp-json/wp/v2/pages":
            body = json.loads(request.content)
            self._next_page_id += 1
            page_id = self._next_page_id
            self.pages_by_slug[body["slug"]] = page_id
            self.page_bodies[page_id] = body
            return httpx.Response(
                201,
                json={"id": page_id, "link": f"{BASE_URL}/{body['slug']}/", "status": body.get("status")},
            )

        if request.method == "POST" and path == "/wp-json/wp/v2/media":
            disposition = request.headers.get("content-disposition", "")
            filename_match = _FILENAME.search(disposition)
            self._next_media_id += 1
            media_id = self._next_media_id
            filename = filename_match.group(1) if filename_match else "upload"
            self.media[media_id] = f"{BASE_URL}/wp-content/uploads/{filename}"
            self.uploads.append(
                {
                    "id": media_id,
                    "filename": filename,
                    "content_type": request.headers.get("content-type"),
                    "size": len(request.content),
                }
            )
            return httpx.Response(201, json={"id": media_id, "source_url": self.media[media_id]})

        match = _MEDIA_ITEM.match(path)
        if match:
            media_id = int(match.group(1))
            if media_id not in self.media:
                return httpx.Response(404, json={"code": "rest_post_invalid_id", "message": "Invalid post ID."})
            if request.method == "GET":
                return httpx.Response(200, json={"id": media_id, "source_url": self.media[media_id]})
            self.media_meta[media_id] = json.loads(request.content)
            return httpx.Response(200, json={"id": media_id, "source_url": self.media[media_id]})

        return httpx.Response(404, json={"code": "rest_no_route", "message": "No route was found"})

    def mutating_requests(self) -> list[tuple[str, str]]:
        return [item for item in self.requests if item[0] != "GET"]
