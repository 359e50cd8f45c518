"""
Shared fixtures: in-memory images, a fake HTTP server for httpx.MockTransport
and in-memory doubles for the photo store and the CDN.
"""
import io
import itertools
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from PIL import Image

from photo_crawler.errors import PersistenceError
from photo_crawler.models import PhotoRecord
from photo_crawler.storage import UploadResult


def make_image(width: int, height: int, fmt: str = "JPEG", color=(180, 120, 60)) -> bytes:
    """Encode a solid-colour image of the given size."""
    mode = "RGBA" if fmt == "PNG" else "RGB"
    img = Image.new(mode, (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def image_bytes() -> Callable[..., bytes]:
    return make_image


class FakeWeb:
    """
    Minimal web server for MockTransport: HTML pages and images by URL.

    Images answer HEAD, plain GET and ranged GET (206 + Content-Range).
    Unknown URLs are 404. ``requests`` records (method, url) for assertions.
    """

    def __init__(self):
        self.pages: Dict[str, Tuple[int, str]] = {}
        self.images: Dict[str, Tuple[bytes, str]] = {}
        self.errors: Dict[str, Exception] = {}
        self.requests: List[Tuple[str, str]] = []

    def page(self, url: str, html: str, status: int = 200) -> None:
        self.pages[url] = (status, html)

    def image(self, url: str, data: bytes, content_type: str = "image/jpeg") -> None:
        self.images[url] = (data, content_type)

    def fail(self, url: str, exc: Exception) -> None:
        self.errors[url] = exc

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append((request.method, url))
        if url in self.errors:
            raise self.errors[url]
        if url in self.pages:
            status, html = self.pages[url]
            return httpx.Response(status, text=html, headers={"content-type": "text/html; charset=utf-8"})
        if url in self.images:
            data, content_type = self.images[url]
            if request.method == "HEAD":
                return httpx.Response(
                    200, headers={"content-type": content_type, "content-length": str(len(data))}
                )
            rng = request.headers.get("range")
            if rng and rng.startswith("bytes=0-"):
                end = min(int(rng.split("-")[1]), len(data) - 1)
                return httpx.Response(
                    206,
                    content=data[: end + 1],
                    headers={"content-type": content_type, "content-range": f"bytes 0-{end}/{len(data)}"},
                )
            return httpx.Response(200, content=data, headers={"content-type": content_type})
        return httpx.Response(404, text="not found")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_web() -> FakeWeb:
    return FakeWeb()


class FakePhotoStore:
    """Same methods as SupabasePhotoStore, backed by dicts."""

    def __init__(self, existing: Optional[Dict[str, int]] = None, primary: Optional[Dict[str, str]] = None):
        self.existing = dict(existing or {})
        self.primary = dict(primary or {})
        self.records: List[PhotoRecord] = []
        self.photo_ids: Dict[str, List[str]] = {}
        self.fail_on_create = False
        self.primary_failures = 0
        self._ids = itertools.count(1)

    def count_photos(self, venue_id: str) -> int:
        return self.existing.get(venue_id, 0) + sum(1 for r in self.records if r.venue_id == venue_id)

    def create_photo(self, record: PhotoRecord) -> str:
        if self.fail_on_create:
            raise PersistenceError("insert refused")
        self.records.append(record)
        photo_id = f"photo-{next(self._ids)}"
        self.photo_ids.setdefault(record.venue_id, []).append(photo_id)
        return photo_id

    def get_primary_photo(self, venue_id: str) -> Optional[str]:
        return self.primary.get(venue_id)

    def set_primary_photo(self, venue_id: str, photo_id: str) -> None:
        if self.primary_failures:
            self.primary_failures -= 1
            raise PersistenceError("primary update refused")
        self.primary[venue_id] = photo_id

    def latest_photo_id(self, venue_id: str) -> Optional[str]:
        ids = self.photo_ids.get(venue_id)
        return ids[-1] if ids else None


@pytest.fixture
def fake_store() -> FakePhotoStore:
    return FakePhotoStore()


class FakeCDN:
    """Records uploads and hands back predictable CDN URLs."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.uploads: List[Tuple[str, int, dict]] = []

    async def upload(self, data: bytes, filename: str, metadata: dict) -> UploadResult:
        if self.fail:
            raise PersistenceError("Cloudflare upload failed after 4 attempts: HTTP 503")
        self.uploads.append((filename, len(data), metadata))
        image_id = f"img{len(self.uploads)}"
        return UploadResult(id=image_id, cdn_url=f"https://cdn.test/{image_id}/public")


@pytest.fixture
def fake_cdn() -> FakeCDN:
    return FakeCDN()
