#!/usr/bin/env python3
"""
Score a bulk openly-licensed media index (Openverse export) against venues.

Used as a fallback for venues without an OSM match. For every record with an
allowed license:

  +50  title contains the venue name
  +30  fuzzy name match (similarity ≥ 0.7)
  +20  title contains the venue's city
  +10  title contains the venue's country
   +5  per category keyword in the title (restaurant, cafe, bar, park, hotel, shop)

Records scoring 0 are dropped; the top N (default 3) per venue are written,
ties kept in index order.

Input  (index CSV): identifier,title,creator,url,thumbnail_url,license,license_version[,foreign_landing_url]
Output (openverse_candidates.csv):
  slug,source_id,title,url,thumbnail_url,author,license,source_url,score

Usage:
    python -m photo_crawler.bulk_candidates --places data/places.csv --index data/openverse.csv
    python -m photo_crawler.bulk_candidates --places data/places.csv --index openverse.csv --matches data/osm_matches.csv --top 5
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd
from tqdm import tqdm

from . import licenses
from .config import DATA_DIR, DEFAULT_BULK_OUTPUT, DEFAULT_MATCHES, DEFAULT_PLACES, ScoringConfig, setup_logging
from .errors import ConfigurationError
from .geo_text import contains_keyword, contains_phrase, fuzzy_match
from .models import Venue
from .tables import BULK_COLS, read_places, read_table, text, write_table

logger = logging.getLogger(__name__)

LOG_FILE      = DATA_DIR / "bulk_candidates.log"
DEFAULT_INDEX = DATA_DIR / "openverse.csv"
INDEX_TTL     = 3600.0   # seconds before a cached index is re-read

INDEX_REQUIRED = ["identifier", "title", "url", "license"]
INDEX_OPTIONAL = ["creator", "thumbnail_url", "license_version", "foreign_landing_url"]


@dataclass(frozen=True)
class MediaRecord:
    identifier: str
    title: str
    creator: str
    url: str
    thumbnail_url: str
    license: str          # code and version joined, e.g. "BY-SA-4.0"
    source_url: str


@dataclass(frozen=True)
class BulkCandidate:
    venue_id: str
    record: MediaRecord
    score: int

    def to_row(self) -> Dict[str, Any]:
        r = self.record
        return {
            "slug":          self.venue_id,
            "source_id":     r.identifier,
            "title":         r.title or "Untitled",
            "url":           r.url,
            "thumbnail_url": r.thumbnail_url or r.url,
            "author":        r.creator or "Unknown",
            "license":       licenses.normalize(r.license),
            "source_url":    r.source_url or r.url,
            "score":         self.score,
        }


# ─── Index loading / cache ────────────────────────────────────────────────────


def load_media_index(path: Path) -> List[MediaRecord]:
    """Parse the bulk export. Malformed lines are skipped, not fatal."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Media index not found: {path}")
    df = pd.read_csv(path, dtype=str, keep_default_na=False, on_bad_lines="skip", low_memory=False)
    missing = [c for c in INDEX_REQUIRED if c not in df.columns]
    if missing:
        raise ConfigurationError(f"Media index {path} is missing columns: {', '.join(missing)}")
    for col in INDEX_OPTIONAL:
        if col not in df.columns:
            df[col] = ""

    records = [
        MediaRecord(
            identifier=text(row["identifier"]),
            title=text(row["title"]),
            creator=text(row["creator"]),
            url=text(row["url"]),
            thumbnail_url=text(row["thumbnail_url"]),
            license=licenses.license_from_parts(row["license"], row["license_version"]),
            source_url=text(row["foreign_landing_url"]),
        )
        for row in df.to_dict("records")
        if text(row["url"])
    ]
    logger.info(f"Loaded {len(records):,} media records from {path}")
    return records


class MediaIndexCache:
    """
    Parsed media index shared by every venue in a run.

    The index is loaded lazily on first ``get()`` and re-read once ``ttl``
    seconds have passed on ``clock``; ``invalidate()`` forces a reload.
    """

    def __init__(
        self,
        path: Path,
        ttl: float = INDEX_TTL,
        clock: Callable[[], float] = time.monotonic,
        loader: Callable[[Path], List[MediaRecord]] = load_media_index,
    ):
        self.path = Path(path)
        self.ttl = ttl
        self._clock = clock
        self._loader = loader
        self._records: Optional[List[MediaRecord]] = None
        self._loaded_at = 0.0

    def get(self) -> List[MediaRecord]:
        now = self._clock()
        if self._records is None or now - self._loaded_at >= self.ttl:
            self._records = self._loader(self.path)
            self._loaded_at = now
        return self._records

    def invalidate(self) -> None:
        self._records = None


# ─── Scoring ──────────────────────────────────────────────────────────────────


@lru_cache(maxsize=1024)
def _license_allowed(license: str) -> bool:
    return licenses.is_allowed(license)


def score_record(venue: Venue, record: MediaRecord, cfg: ScoringConfig = ScoringConfig()) -> int:
    title = record.title
    score = 0
    if contains_phrase(title, venue.name):
        score += cfg.title_name_points
    if fuzzy_match(venue.name, title, cfg.fuzzy_threshold):
        score += cfg.fuzzy_name_points
    if contains_phrase(title, venue.city):
        score += cfg.city_points
    if contains_phrase(title, venue.country):
        score += cfg.country_points
    for keyword in cfg.keywords:
        if contains_keyword(title, keyword):
            score += cfg.keyword_points
    return score


def find_candidates(
    venue: Venue,
    records: Sequence[MediaRecord],
    cfg: ScoringConfig = ScoringConfig(),
    top_n: Optional[int] = None,
) -> List[BulkCandidate]:
    """Top-N licensed records for one venue, highest score first (stable)."""
    scored: List[BulkCandidate] = []
    for record in records:
        if not _license_allowed(record.license):
            continue
        score = score_record(venue, record, cfg)
        if score <= 0:
            continue
        scored.append(BulkCandidate(venue.id, record, score))
    scored.sort(key=lambda c: c.score, reverse=True)
    return scored[: top_n if top_n is not None else cfg.top_n]


def matched_slugs(path: Optional[Path]) -> set:
    if not path or not Path(path).exists():
        return set()
    df = read_table(Path(path), ["slug"], "Matches")
    return {text(s) for s in df["slug"] if text(s)}


# ─── Main ─────────────────────────────────────────────────────────────────────


def run(args: argparse.Namespace, cache: Optional[MediaIndexCache] = None) -> List[BulkCandidate]:
    cfg = ScoringConfig.from_env().with_overrides(top_n=args.top)

    venues = read_places(Path(args.places))
    logger.info(f"Loaded {len(venues):,} places")

    skip = matched_slugs(Path(args.matches) if args.matches else None)
    if skip:
        logger.info(f"{len(skip):,} places already matched in {args.matches}")
    pending = [v for v in venues if v.id not in skip]
    logger.info(f"{len(pending):,} places need bulk candidates")

    cache = cache or MediaIndexCache(Path(args.index))
    records = cache.get()

    found: List[BulkCandidate] = []
    for venue in tqdm(pending, desc="Scoring places"):
        candidates = find_candidates(venue, records, cfg)
        if candidates:
            found.extend(candidates)
            logger.debug(f"  ✓ {len(candidates)} candidates for {venue.name} (best score: {candidates[0].score})")
        else:
            logger.debug(f"  ✗ No candidates for {venue.name}")

    write_table((c.to_row() for c in found), Path(args.output), BULK_COLS)
    venues_hit = len({c.venue_id for c in found})
    logger.info(
        f"\nFound {len(found):,} candidates for {venues_hit:,}/{len(pending):,} places\n"
        f"Wrote candidates to: {args.output}"
    )
    return found


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Score a bulk openly-licensed image index against venues",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--places", default=str(DEFAULT_PLACES), help="Venue CSV")
    parser.add_argument("--index", default=str(DEFAULT_INDEX), help="Bulk media export CSV")
    parser.add_argument("--matches", default=str(DEFAULT_MATCHES), help="OSM match CSV; matched venues are skipped")
    parser.add_argument("--top", type=int, default=None, help="Candidates kept per venue (default 3)")
    parser.add_argument("--output", default=str(DEFAULT_BULK_OUTPUT), help="Output candidates CSV")
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
