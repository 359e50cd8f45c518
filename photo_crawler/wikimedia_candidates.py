#!/usr/bin/env python3
"""
Resolve OSM matches to Wikimedia Commons images.

Sources of a Commons file for a matched venue:
  - the Wikidata item's P18 image, from a local ``qid<TAB>commons_file`` TSV
    or the Wikidata SPARQL endpoint (--sparql, 50 ids per query)
  - an OSM ``image`` tag that already points at Commons

Every file is then looked up in the Commons imageinfo API for its direct URL,
license short name and author. Lookup failures are logged and leave the
license empty, so the import stage will reject the candidate.

Output (wikimedia_candidates.csv):
  slug,commons_file,url,author,license,source_url

Usage:
    python -m photo_crawler.wikimedia_candidates --matches data/osm_matches.csv --wikidata data/wikidata_p18.tsv
    python -m photo_crawler.wikimedia_candidates --matches data/osm_matches.csv --sparql
    python -m photo_crawler.wikimedia_candidates --matches data/osm_matches.csv --sparql --offline
"""

from __future__ import annotations

import argparse
import hashlib
import logging
import re
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import quote, unquote, urlparse

import httpx
from bs4 import BeautifulSoup

from . import licenses
from .config import DATA_DIR, DEFAULT_MATCHES, DEFAULT_WIKIMEDIA, PAGE_TIMEOUT, USER_AGENT, setup_logging
from .errors import ConfigurationError
from .models import MatchResult
from .tables import WIKIMEDIA_COLS, read_matches, write_table

logger = logging.getLogger(__name__)

LOG_FILE         = DATA_DIR / "wikimedia_candidates.log"
SPARQL_ENDPOINT  = "https://query.wikidata.org/sparql"
COMMONS_API      = "https://commons.wikimedia.org/w/api.php"
COMMONS_WIKI     = "https://commons.wikimedia.org/wiki/File:"
COMMONS_UPLOAD   = "https://upload.wikimedia.org/wikipedia/commons"
SPARQL_BATCH     = 50
COMMONS_BATCH    = 50     # imageinfo titles per request
BATCH_PAUSE      = 1.0    # seconds between SPARQL batches
THUMB_WIDTH      = 2000   # px; Commons originals can exceed the download cap

_QID_RE = re.compile(r"^Q?(\d+)$", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")
_COMMONS_PATH_RE = re.compile(r"/wiki/(?:Special:FilePath/|File:|Image:)(.+)$", re.IGNORECASE)


@dataclass(frozen=True)
class CommonsInfo:
    url: str
    license: str
    author: str


# ─── Commons file names ───────────────────────────────────────────────────────


def normalize_qid(value: Optional[str]) -> Optional[str]:
    m = _QID_RE.match((value or "").strip())
    return f"Q{m.group(1)}" if m else None


def commons_file_name(value: Optional[str]) -> Optional[str]:
    """
    Bare Commons file name (spaces, no "File:" prefix) from a file title, a
    commons.wikimedia.org page / Special:FilePath URL or an upload URL.
    Returns None for anything that is not a Commons reference.
    """
    if not value:
        return None
    value = value.strip()
    if value.lower().startswith(("file:", "image:")):
        name = value.split(":", 1)[1]
    elif value.startswith(("http://", "https://")):
        parsed = urlparse(value)
        path = unquote(parsed.path)
        if parsed.netloc == "upload.wikimedia.org" and "/commons/" in path:
            parts = [p for p in path.split("/") if p]
            # thumbnails end in "<width>px-<name>"; the original name sits before it
            name = parts[-2] if "thumb" in parts and len(parts) >= 2 else parts[-1]
        elif parsed.netloc.endswith("commons.wikimedia.org"):
            m = _COMMONS_PATH_RE.search(path)
            if not m:
                return None
            name = m.group(1)
        else:
            return None
    else:
        return None
    name = name.replace("_", " ").strip()
    return name or None


def commons_page_url(name: str) -> str:
    return COMMONS_WIKI + quote(name.replace(" ", "_"))


def commons_direct_url(name: str) -> str:
    """upload.wikimedia.org URL derived from the md5 of the file name."""
    clean = name.replace(" ", "_")
    digest = hashlib.md5(clean.encode("utf-8")).hexdigest()
    return f"{COMMONS_UPLOAD}/{digest[0]}/{digest[:2]}/{quote(clean)}"


def html_to_text(value: str) -> str:
    """Plain text of an extmetadata HTML fragment (Artist is usually a link)."""
    if not value:
        return ""
    text = BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
    return _WS_RE.sub(" ", text).strip()


# ─── Wikidata P18 ─────────────────────────────────────────────────────────────


def load_p18_tsv(path: Path) -> Dict[str, str]:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Wikidata P18 file not found: {path}")
    mapping: Dict[str, str] = {}
    with open(path, encoding="utf-8") as f:
        for line in f:
            parts = line.rstrip("\n").split("\t")
            if len(parts) < 2:
                continue
            qid = normalize_qid(parts[0])
            name = commons_file_name(parts[1]) or commons_file_name(f"File:{parts[1].strip()}")
            if qid and name:
                mapping[qid] = name
    logger.info(f"Loaded {len(mapping):,} Wikidata → Commons mappings from {path}")
    return mapping


def query_p18_sparql(
    client: httpx.Client,
    qids: Iterable[str],
    batch_size: int = SPARQL_BATCH,
    pause: float = BATCH_PAUSE,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, str]:
    """P18 file names for ``qids``; failed batches are logged and skipped."""
    ids = sorted({q for q in (normalize_qid(x) for x in qids) if q})
    mapping: Dict[str, str] = {}
    for i in range(0, len(ids), batch_size):
        batch = ids[i:i + batch_size]
        values = " ".join(f"wd:{q}" for q in batch)
        query = f"SELECT ?item ?image WHERE {{ VALUES ?item {{ {values} }} ?item wdt:P18 ?image. }}"
        try:
            resp = client.get(
                SPARQL_ENDPOINT,
                params={"query": query, "format": "json"},
                headers={"User-Agent": USER_AGENT, "Accept": "application/sparql-results+json"},
            )
            resp.raise_for_status()
            bindings = resp.json().get("results", {}).get("bindings", [])
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"SPARQL batch {i // batch_size + 1} failed: {exc}")
            bindings = []

        for b in bindings:
            qid = normalize_qid(b.get("item", {}).get("value", "").rsplit("/", 1)[-1])
            name = commons_file_name(b.get("image", {}).get("value", ""))
            if qid and name and qid not in mapping:
                mapping[qid] = name

        if i + batch_size < len(ids):
            sleep(pause)
    logger.info(f"SPARQL resolved {len(mapping):,}/{len(ids):,} Wikidata ids to Commons files")
    return mapping


# ─── Commons imageinfo ────────────────────────────────────────────────────────


def _meta(extmeta: Dict, key: str) -> str:
    return str((extmeta.get(key) or {}).get("value") or "")


def fetch_commons_info(client: httpx.Client, names: Iterable[str]) -> Dict[str, CommonsInfo]:
    """
    Download URL, normalized license and author per requested file name.

    The URL is a THUMB_WIDTH rendition when Commons offers one, else the
    original. Results are keyed by the name as requested, following the
    API's title normalization ("berlin_tor.jpg" comes back as "Berlin tor.jpg").
    Missing files are absent.
    """
    unique = sorted(set(names))
    infos: Dict[str, CommonsInfo] = {}
    for i in range(0, len(unique), COMMONS_BATCH):
        batch = unique[i:i + COMMONS_BATCH]
        params = {
            "action": "query",
            "format": "json",
            "prop": "imageinfo",
            "iiprop": "url|extmetadata",
            "iiurlwidth": THUMB_WIDTH,
            "titles": "|".join(f"File:{n}" for n in batch),
        }
        try:
            resp = client.get(COMMONS_API, params=params, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
            query = resp.json().get("query", {})
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Commons imageinfo lookup failed for {len(batch)} files: {exc}")
            continue

        requested: Dict[str, List[str]] = {}
        for n in (query.get("normalized") or []):
            to_name = commons_file_name(n.get("to", ""))
            from_name = commons_file_name(n.get("from", ""))
            if to_name and from_name:
                requested.setdefault(to_name, []).append(from_name)

        for page in (query.get("pages") or {}).values():
            imageinfo = page.get("imageinfo") or []
            if not imageinfo:
                logger.debug(f"  No imageinfo for {page.get('title')}")
                continue
            ii = imageinfo[0]
            extmeta = ii.get("extmetadata") or {}
            name = commons_file_name(page.get("title", ""))
            if not name:
                continue
            short = _meta(extmeta, "LicenseShortName")
            info = CommonsInfo(
                url=ii.get("thumburl") or ii.get("url") or commons_direct_url(name),
                license=licenses.normalize(short) if short else "",
                author=html_to_text(_meta(extmeta, "Artist")),
            )
            infos[name] = info
            for original in requested.get(name, []):
                infos[original] = info
    return infos


# ─── Candidates ───────────────────────────────────────────────────────────────


def commons_files_for(matches: Iterable[MatchResult], p18: Dict[str, str]) -> List[Dict[str, str]]:
    """(slug, commons_file) pairs from P18 first, then Commons image tags; deduped."""
    pairs: List[Dict[str, str]] = []
    seen = set()
    for m in matches:
        names = []
        qid = normalize_qid(m.wikidata)
        if qid and qid in p18:
            names.append(p18[qid])
        elif qid:
            logger.debug(f"  ⚠ No Commons image for {m.venue_id} ({qid})")
        tag_name = commons_file_name(m.image_url)
        if tag_name:
            names.append(tag_name)
        for name in names:
            key = (m.venue_id, name)
            if key in seen:
                continue
            seen.add(key)
            pairs.append({"slug": m.venue_id, "commons_file": name})
    return pairs


def build_rows(pairs: List[Dict[str, str]], infos: Dict[str, CommonsInfo]) -> List[Dict[str, str]]:
    rows = []
    for pair in pairs:
        name = pair["commons_file"]
        info = infos.get(name)
        rows.append({
            "slug":         pair["slug"],
            "commons_file": name,
            "url":          info.url if info else commons_direct_url(name),
            "author":       info.author if info else "",
            "license":      info.license if info else "",
            "source_url":   commons_page_url(name),
        })
    return rows


# ─── Main ─────────────────────────────────────────────────────────────────────


def run(args: argparse.Namespace, client: Optional[httpx.Client] = None) -> List[Dict[str, str]]:
    if not args.wikidata and not args.sparql:
        raise ConfigurationError("Pass --wikidata <tsv> or --sparql")

    matches = read_matches(Path(args.matches))
    logger.info(f"Loaded {len(matches):,} OSM matches")

    own_client = client is None
    client = client or httpx.Client(timeout=PAGE_TIMEOUT, follow_redirects=True)
    try:
        if args.wikidata:
            p18 = load_p18_tsv(Path(args.wikidata))
        else:
            p18 = query_p18_sparql(client, (m.wikidata for m in matches if m.wikidata))

        pairs = commons_files_for(matches, p18)
        logger.info(f"{len(pairs):,} Commons files for {len({p['slug'] for p in pairs}):,} places")

        infos: Dict[str, CommonsInfo] = {}
        if pairs and not args.offline:
            infos = fetch_commons_info(client, (p["commons_file"] for p in pairs))
            unresolved = len({p["commons_file"] for p in pairs}) - len(infos)
            if unresolved:
                logger.warning(f"{unresolved:,} Commons files without metadata; their license is left empty")
    finally:
        if own_client:
            client.close()

    rows = build_rows(pairs, infos)
    for row in rows:
        marker = "✓" if licenses.is_allowed(row["license"]) else "✗"
        logger.debug(f"  {marker} {row['slug']}: {row['commons_file']} ({row['license'] or 'no license'})")

    write_table(rows, Path(args.output), WIKIMEDIA_COLS)
    allowed = sum(1 for r in rows if licenses.is_allowed(r["license"]))
    logger.info(
        f"\nWrote {len(rows):,} Wikimedia candidates ({allowed:,} with an allowed license)\n"
        f"Output: {args.output}"
    )
    return rows


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Resolve OSM matches to Wikimedia Commons images",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--matches", default=str(DEFAULT_MATCHES), help="OSM match CSV")
    parser.add_argument("--wikidata", default=None, help="Local qid<TAB>commons_file TSV")
    parser.add_argument("--sparql", action="store_true", help="Query the Wikidata SPARQL endpoint for P18")
    parser.add_argument("--offline", action="store_true", help="Skip the Commons imageinfo API (licenses left empty)")
    parser.add_argument("--output", default=str(DEFAULT_WIKIMEDIA), help="Output candidates CSV")
    parser.add_argument("--log-file", default=str(LOG_FILE), help="Log file path")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(Path(args.log_file))
    try:
        run(args)
    except ConfigurationError as exc:
        logger.error(str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
