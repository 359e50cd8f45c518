"""
Image candidates scraped from a venue's own web presence.

The website is tried first; the Instagram page only when the website yields
nothing, then the Facebook page. Within a page:

  1. structured metadata: og:image, twitter:image, <link rel="image_src">,
     JSON-LD ``image`` (string, list or ImageObject, including ``@graph``)
  2. inline <img> tags, largest declared width × height first, skipping
     anything that looks like a logo, icon or avatar

A license is attached only when the page declares one (rel="license" link or
JSON-LD ``license``); unlicensed candidates are still returned so the caller
can record why they were rejected.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from .config import PAGE_TIMEOUT, USER_AGENT
from .models import PRIORITY_INLINE, PRIORITY_STRUCTURED, Candidate, Source, Venue

logger = logging.getLogger(__name__)

EXCLUDED_URL_RE = re.compile(r"logo|icon|avatar", re.IGNORECASE)
_DIGITS_RE = re.compile(r"\d+")

PAGE_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

_META_IMAGE_KEYS = ("og:image", "og:image:url", "og:image:secure_url", "twitter:image", "twitter:image:src")

_SOCIAL_HOSTS = {
    Source.INSTAGRAM: "https://www.instagram.com/",
    Source.FACEBOOK:  "https://www.facebook.com/",
}


# ─── URL helpers ──────────────────────────────────────────────────────────────


def origin(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}" if p.scheme and p.netloc else url


def absolutize(url: Optional[str], base: str) -> Optional[str]:
    """Absolute http(s) URL or None (data: URIs, javascript:, empty)."""
    if not url:
        return None
    url = url.strip()
    if not url or url.lower().startswith("data:"):
        return None
    resolved = urljoin(base, url)
    if urlparse(resolved).scheme not in ("http", "https"):
        return None
    return resolved


def page_url(value: Optional[str], source: Source = Source.WEBSITE) -> Optional[str]:
    """
    Turn a stored website / social value into a fetchable URL.

    Bare domains get https://, social handles like "@cafe_x" become profile
    URLs on the matching network.
    """
    if not value:
        return None
    value = value.strip()
    if not value:
        return None
    if value.startswith(("http://", "https://")):
        return value
    if source in _SOCIAL_HOSTS and "." not in value.split("/")[0]:
        return _SOCIAL_HOSTS[source] + value.lstrip("@").strip("/") + "/"
    return "https://" + value.lstrip("/")


def _first_srcset(srcset: str) -> str:
    first = srcset.split(",")[0].strip()
    return first.split()[0] if first else ""


def _area(tag: Any) -> int:
    dims = []
    for attr in ("width", "height"):
        m = _DIGITS_RE.search(str(tag.get(attr) or ""))
        dims.append(int(m.group()) if m else 0)
    return dims[0] * dims[1]


# ─── JSON-LD ──────────────────────────────────────────────────────────────────


def _jsonld_nodes(data: Any) -> Iterator[dict]:
    if isinstance(data, list):
        for item in data:
            yield from _jsonld_nodes(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _jsonld_nodes(data["@graph"])


def _jsonld_images(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, list):
        for item in value:
            yield from _jsonld_images(item)
    elif isinstance(value, dict):
        url = value.get("url") or value.get("contentUrl")
        if isinstance(url, str):
            yield url


def _jsonld_license(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in ("url", "@id", "name"):
            if isinstance(value.get(key), str) and value[key].strip():
                return value[key].strip()
    if isinstance(value, list):
        for item in value:
            found = _jsonld_license(item)
            if found:
                return found
    return None


def _parse_jsonld(soup: BeautifulSoup) -> List[dict]:
    nodes: List[dict] = []
    for script in soup.find_all("script", type="application/ld+json"):
        raw = script.string or script.get_text() or ""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            logger.debug("  Ignoring unparseable JSON-LD block")
            continue
        nodes.extend(_jsonld_nodes(data))
    return nodes


# ─── Extraction ───────────────────────────────────────────────────────────────


def page_license(soup: BeautifulSoup, nodes: List[dict]) -> Optional[str]:
    """License declared by the page itself, if any."""
    for tag in soup.find_all(["link", "a"], rel="license"):
        href = (tag.get("href") or "").strip()
        if href:
            return href
        label = tag.get_text(strip=True)
        if label:
            return label
    for node in nodes:
        found = _jsonld_license(node.get("license"))
        if found:
            return found
    return None


def structured_image_urls(soup: BeautifulSoup, nodes: List[dict]) -> List[str]:
    urls: List[str] = []
    for meta in soup.find_all("meta"):
        key = (meta.get("property") or meta.get("name") or "").strip().lower()
        if key in _META_IMAGE_KEYS:
            urls.append(meta.get("content") or "")
    for link in soup.find_all("link", rel="image_src"):
        urls.append(link.get("href") or "")
    for node in nodes:
        urls.extend(_jsonld_images(node.get("image")))
    return urls


def inline_image_urls(soup: BeautifulSoup, base: str) -> List[str]:
    """<img> URLs (resolved), largest declared area first, logos/icons/avatars removed."""
    found: List[Tuple[int, str]] = []
    for img in soup.find_all("img"):
        for raw in (img.get("src"), img.get("data-src"), _first_srcset(img.get("srcset") or "")):
            url = absolutize(raw, base)
            if url:
                break
        else:
            continue
        if EXCLUDED_URL_RE.search(url):
            continue
        found.append((_area(img), url))
    found.sort(key=lambda pair: pair[0], reverse=True)
    return [url for _, url in found]


def extract_from_html(
    html: str,
    url: str,
    venue_name: str,
    source: Source = Source.WEBSITE,
    start_index: int = 0,
) -> List[Candidate]:
    """Candidates found in one page, already deduped and in discovery order."""
    soup = BeautifulSoup(html or "", "html.parser")
    base_tag = soup.find("base", href=True)
    base = urljoin(url, base_tag["href"]) if base_tag else url

    nodes = _parse_jsonld(soup)
    license = page_license(soup, nodes)
    if license:
        license = absolutize(license, base) if license.startswith("/") else license
    attribution = f"© {venue_name} – {origin(url)}"
    penalty = source.priority_penalty

    candidates: List[Candidate] = []
    seen = set()

    def _add(candidate_url: Optional[str], base_priority: int) -> None:
        if not candidate_url or candidate_url in seen:
            return
        seen.add(candidate_url)
        candidates.append(
            Candidate(
                url=candidate_url,
                source=source,
                priority=base_priority + penalty,
                attribution=attribution,
                license=license,
                author=venue_name,
                source_url=url,
                discovery_index=start_index + len(candidates),
            )
        )

    for raw in structured_image_urls(soup, nodes):
        _add(absolutize(raw, base), PRIORITY_STRUCTURED)
    for inline in inline_image_urls(soup, base):
        _add(inline, PRIORITY_INLINE)
    return candidates


# ─── Fetching ─────────────────────────────────────────────────────────────────


async def fetch_html(
    client: httpx.AsyncClient, url: str, timeout: float = PAGE_TIMEOUT
) -> Optional[Tuple[str, str]]:
    """(html, final URL) or None on any fetch error or non-2xx response."""
    try:
        resp = await client.get(url, headers=PAGE_HEADERS, follow_redirects=True, timeout=timeout)
    except httpx.HTTPError as exc:
        logger.debug(f"  Page fetch failed {url}: {type(exc).__name__}: {exc}")
        return None
    if not resp.is_success:
        logger.debug(f"  [{resp.status_code}] Page fetch failed {url}")
        return None
    return resp.text, str(resp.url)


async def candidates_from_page(
    client: httpx.AsyncClient,
    url: str,
    venue_name: str,
    source: Source = Source.WEBSITE,
    start_index: int = 0,
) -> List[Candidate]:
    fetched = await fetch_html(client, url)
    if fetched is None:
        return []
    html, final_url = fetched
    return extract_from_html(html, final_url, venue_name, source, start_index)


async def gather_web_candidates(
    client: httpx.AsyncClient, venue: Venue, start_index: int = 0
) -> List[Candidate]:
    """Website candidates, falling back to Instagram, then Facebook, only when empty."""
    pages = (
        (Source.WEBSITE,   venue.website),
        (Source.INSTAGRAM, venue.instagram),
        (Source.FACEBOOK,  venue.facebook),
    )
    for source, value in pages:
        url = page_url(value, source)
        if not url:
            continue
        found = await candidates_from_page(client, url, venue.name, source, start_index)
        if found:
            logger.debug(f"  {venue.name}: {len(found)} candidates from {source.value} ({url})")
            return found
    return []
