"""
Image validation against a size / format / dimension policy.

``validate_image`` works on bytes already in memory and never raises: a
malformed or truncated image comes back as an invalid result with a
human-readable reason. ``probe_image`` and ``download_image`` fetch those bytes
over httpx; they raise FetchError (network, timeout, HTTP status) or
ValidationError (oversized body) so the caller can demote the candidate.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

import httpx
from PIL import Image

from .config import IMAGE_TIMEOUT, PROBE_TIMEOUT, USER_AGENT
from .errors import FetchError, ValidationError
from .models import ImageMetadata, ValidationResult

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024
PROBE_BYTES     = 64 * 1024          # enough for the header of every allowed format
CHUNK_SIZE      = 64 * 1024

# Pillow reports some camera JPEGs as MPO
_FORMAT_ALIASES = {"mpo": "jpeg", "jpg": "jpeg"}


@dataclass(frozen=True)
class ImagePolicy:
    name: str
    min_width: int
    min_height: int
    max_bytes: int = MAX_IMAGE_BYTES
    formats: FrozenSet[str] = field(default=frozenset({"jpeg", "png", "webp"}))


WEB_POLICY     = ImagePolicy("web", 500, 300)
CURATED_POLICY = ImagePolicy("curated", 1200, 600)
RELAXED_POLICY = ImagePolicy("relaxed", 100, 100)

POLICIES = {p.name: p for p in (WEB_POLICY, CURATED_POLICY, RELAXED_POLICY)}


def _fmt_mb(n: int) -> str:
    return f"{n / (1024 * 1024):.1f}MB"


def _media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def validate_image(
    data: bytes,
    policy: ImagePolicy = WEB_POLICY,
    content_type: Optional[str] = None,
    total_size: Optional[int] = None,
    partial: bool = False,
) -> ValidationResult:
    """
    Check bytes against ``policy``.

    ``total_size`` is the full resource size when ``data`` is only a prefix of
    it (ranged probe). With ``partial=True`` a header Pillow cannot decode
    yet is reported as valid without metadata: the full download decides.
    """
    try:
        return _validate(data, policy, content_type, total_size, partial)
    except Exception as exc:
        return ValidationResult(False, reason=f"Failed to validate: {exc}")


def _validate(
    data: bytes,
    policy: ImagePolicy,
    content_type: Optional[str],
    total_size: Optional[int],
    partial: bool,
) -> ValidationResult:
    media_type = _media_type(content_type)
    if content_type is not None and not media_type.startswith("image/"):
        return ValidationResult(False, reason=f"Content type '{media_type or 'unknown'}' is not an image")

    size = total_size if total_size is not None else len(data or b"")
    if size > policy.max_bytes:
        return ValidationResult(
            False, reason=f"Image size {_fmt_mb(size)} exceeds maximum {_fmt_mb(policy.max_bytes)}"
        )
    if not data:
        return ValidationResult(False, reason="Empty image data")

    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            fmt = (img.format or "").lower()
            if not partial:
                img.load()
    except Exception as exc:
        if partial:
            logger.debug(f"Header not decodable from {len(data)} byte prefix: {exc}")
            return ValidationResult(True, reason="header inconclusive")
        return ValidationResult(False, reason=f"Unreadable or truncated image: {exc}")

    fmt = _FORMAT_ALIASES.get(fmt, fmt)
    metadata = ImageMetadata(
        width=width,
        height=height,
        format=fmt,
        mime_type=Image.MIME.get(fmt.upper(), f"image/{fmt}"),
        size_bytes=size,
    )

    if fmt not in policy.formats:
        return ValidationResult(False, reason=f"Image format '{fmt or 'unknown'}' not allowed", metadata=metadata)
    if width < policy.min_width:
        return ValidationResult(
            False,
            reason=f"Image width {width}px is below minimum {policy.min_width}px",
            metadata=metadata,
        )
    if height < policy.min_height:
        return ValidationResult(
            False,
            reason=f"Image height {height}px is below minimum {policy.min_height}px",
            metadata=metadata,
        )
    return ValidationResult(True, metadata=metadata)


# ─── Network probing ──────────────────────────────────────────────────────────


def _total_size(resp: httpx.Response) -> Optional[int]:
    """Full resource size from Content-Range (206) or Content-Length (200)."""
    content_range = resp.headers.get("content-range", "")
    if "/" in content_range:
        total = content_range.rsplit("/", 1)[1].strip()
        if total.isdigit():
            return int(total)
    if resp.status_code == 200:
        length = resp.headers.get("content-length", "")
        if length.isdigit():
            return int(length)
    return None


async def _read_prefix(client: httpx.AsyncClient, url: str, limit: int) -> Tuple[httpx.Response, bytes]:
    headers = {"Range": f"bytes=0-{limit - 1}", "User-Agent": USER_AGENT}
    buf = bytearray()
    async with client.stream("GET", url, headers=headers, follow_redirects=True) as resp:
        if resp.status_code not in (200, 206):
            raise FetchError(f"HTTP {resp.status_code} probing {url}")
        async for chunk in resp.aiter_bytes(CHUNK_SIZE):
            buf.extend(chunk)
            if len(buf) >= limit:
                break
    return resp, bytes(buf[:limit])


async def probe_image(
    client: httpx.AsyncClient,
    url: str,
    policy: ImagePolicy = WEB_POLICY,
    timeout: float = PROBE_TIMEOUT,
) -> ValidationResult:
    """
    Cheap pre-check: HEAD (many servers refuse it, so failures are ignored),
    then a ranged GET of the first PROBE_BYTES decoded by Pillow.
    """
    head_length: Optional[int] = None
    try:
        head = await client.head(
            url, headers={"User-Agent": USER_AGENT}, follow_redirects=True, timeout=timeout
        )
        if head.is_success:
            media_type = _media_type(head.headers.get("content-type"))
            if media_type and not media_type.startswith("image/"):
                return ValidationResult(False, reason=f"Content type '{media_type}' is not an image")
            length = head.headers.get("content-length", "")
            if length.isdigit():
                head_length = int(length)
                if head_length > policy.max_bytes:
                    return ValidationResult(
                        False,
                        reason=f"Image size {_fmt_mb(head_length)} exceeds maximum {_fmt_mb(policy.max_bytes)}",
                    )
    except httpx.HTTPError as exc:
        logger.debug(f"HEAD failed for {url}: {exc}")

    try:
        resp, prefix = await asyncio.wait_for(_read_prefix(client, url, PROBE_BYTES), timeout)
    except asyncio.TimeoutError as exc:
        raise FetchError(f"Timeout probing {url}") from exc
    except httpx.HTTPError as exc:
        raise FetchError(f"Probe failed for {url}: {exc}") from exc

    total = _total_size(resp) or head_length
    if total is None and len(prefix) < PROBE_BYTES:
        total = len(prefix)
    return validate_image(
        prefix,
        policy,
        content_type=resp.headers.get("content-type", ""),
        total_size=total,
        partial=len(prefix) >= PROBE_BYTES,
    )


async def _read_all(client: httpx.AsyncClient, url: str, max_bytes: int) -> Tuple[bytes, str]:
    buf = bytearray()
    async with client.stream(
        "GET", url, headers={"User-Agent": USER_AGENT}, follow_redirects=True
    ) as resp:
        if resp.status_code != 200:
            raise FetchError(f"HTTP {resp.status_code} downloading {url}")
        length = resp.headers.get("content-length", "")
        if length.isdigit() and int(length) > max_bytes:
            raise ValidationError(
                f"Image size {_fmt_mb(int(length))} exceeds maximum {_fmt_mb(max_bytes)}"
            )
        async for chunk in resp.aiter_bytes(CHUNK_SIZE):
            buf.extend(chunk)
            if len(buf) > max_bytes:
                raise ValidationError(f"Image exceeds maximum {_fmt_mb(max_bytes)} while downloading")
        return bytes(buf), resp.headers.get("content-type", "")


async def download_image(
    client: httpx.AsyncClient,
    url: str,
    policy: ImagePolicy = WEB_POLICY,
    timeout: float = IMAGE_TIMEOUT,
) -> Tuple[bytes, str]:
    """Download the full image, capped at ``policy.max_bytes``. Returns (bytes, content type)."""
    try:
        return await asyncio.wait_for(_read_all(client, url, policy.max_bytes), timeout)
    except asyncio.TimeoutError as exc:
        raise FetchError(f"Timeout downloading {url}") from exc
    except httpx.HTTPError as exc:
        raise FetchError(f"Download failed for {url}: {exc}") from exc
