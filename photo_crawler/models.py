"""Data model shared by every pipeline stage."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple


# ─── Venues and POIs ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Venue:
    id: str
    name: str
    lat: float
    lon: float
    city: str = ""
    country: str = ""
    website: Optional[str] = None
    instagram: Optional[str] = None
    facebook: Optional[str] = None
    has_photo: bool = False
    primary_photo_id: Optional[str] = None


@dataclass(frozen=True)
class POIFeature:
    id: str
    osm_type: str          # node | way | relation
    lat: float
    lon: float
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return (self.tags.get("name") or self.tags.get("name:en") or "").strip()

    @property
    def image_url(self) -> Optional[str]:
        return self.tags.get("image") or self.tags.get("image:url") or None

    @property
    def wikidata(self) -> Optional[str]:
        return self.tags.get("wikidata") or None


@dataclass(frozen=True)
class MatchResult:
    venue_id: str
    osm_id: str
    osm_type: str
    name: str
    score: float
    distance_m: float
    image_url: Optional[str] = None
    wikidata: Optional[str] = None


# ─── Candidates ───────────────────────────────────────────────────────────────


class Source(str, Enum):
    """Where a candidate image came from. Declaration order is the tie-break rank."""

    WEBSITE   = "website"
    WIKIMEDIA = "wikimedia"
    OSM       = "osm"
    OPENVERSE = "openverse"
    INSTAGRAM = "instagram"
    FACEBOOK  = "facebook"

    @property
    def rank(self) -> int:
        return list(Source).index(self)

    @property
    def priority_penalty(self) -> int:
        """Added to page-level priorities so social pages lose to the website."""
        return _SOCIAL_PENALTY.get(self, 0)

    @property
    def is_social(self) -> bool:
        return self in _SOCIAL_PENALTY


_SOCIAL_PENALTY = {Source.INSTAGRAM: 3, Source.FACEBOOK: 4}

# Base priorities (lower is preferred)
PRIORITY_STRUCTURED = 1   # og:image, twitter:image, JSON-LD, image_src
PRIORITY_INLINE     = 2   # largest <img> fallback
PRIORITY_CURATED    = 1   # Commons file / OSM image tag
PRIORITY_BULK       = 3   # bulk index heuristic match


@dataclass(frozen=True)
class Candidate:
    url: str
    source: Source
    priority: int
    attribution: str = ""
    license: Optional[str] = None
    author: Optional[str] = None
    source_url: Optional[str] = None
    discovery_index: int = 0

    @property
    def rank_key(self) -> Tuple[int, int, int]:
        """Total order: priority, then source rank, then discovery order."""
        return (self.priority, self.source.rank, self.discovery_index)


def rank_candidates(candidates: Iterable[Candidate]) -> List[Candidate]:
    """Dedupe by absolute URL (best rank wins) and sort by rank_key."""
    best: Dict[str, Candidate] = {}
    for c in candidates:
        if not c.url:
            continue
        current = best.get(c.url)
        if current is None or c.rank_key < current.rank_key:
            best[c.url] = c
    return sorted(best.values(), key=lambda c: c.rank_key)


# ─── Images and photo records ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: str
    mime_type: str
    size_bytes: int


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    metadata: Optional[ImageMetadata] = None


class PhotoStatus(str, Enum):
    PENDING  = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class PhotoRecord:
    venue_id: str
    cdn_url: str
    width: int
    height: int
    format: str
    author: str
    license: str
    source_url: str
    source: Source
    attribution: str = ""
    status: PhotoStatus = PhotoStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_row(self) -> Dict[str, object]:
        return {
            "venue_id":    self.venue_id,
            "cdn_url":     self.cdn_url,
            "width":       self.width,
            "height":      self.height,
            "format":      self.format,
            "author":      self.author,
            "license":     self.license,
            "source_url":  self.source_url,
            "source":      self.source.value,
            "attribution": self.attribution,
            "status":      self.status.value,
            "created_at":  self.created_at.isoformat(),
        }


# ─── Per-venue outcomes ───────────────────────────────────────────────────────


class VenueOutcome(str, Enum):
    DONE    = "done"
    SKIPPED = "skipped"
    FAILED  = "failed"


@dataclass
class VenueResult:
    venue_id: str
    name: str
    outcome: VenueOutcome
    reason: Optional[str] = None
    candidate: Optional[Candidate] = None
    photo_id: Optional[str] = None
    cdn_url: Optional[str] = None
    candidates_found: int = 0
    candidates_tried: int = 0
    rejections: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is VenueOutcome.DONE

    @property
    def skipped(self) -> bool:
        return self.outcome is VenueOutcome.SKIPPED

    def to_row(self) -> Dict[str, object]:
        c = self.candidate
        return {
            "slug":             self.venue_id,
            "name":             self.name,
            "outcome":          self.outcome.value,
            "reason":           self.reason or "",
            "source":           c.source.value if c else "",
            "image_url":        c.url if c else "",
            "license":          (c.license or "") if c else "",
            "photo_id":         self.photo_id or "",
            "cdn_url":          self.cdn_url or "",
            "candidates_found": self.candidates_found,
            "candidates_tried": self.candidates_tried,
            "dry_run":          self.dry_run,
        }


@dataclass
class RunSummary:
    total: int = 0
    by_outcome: Counter = field(default_factory=Counter)
    skip_reasons: Counter = field(default_factory=Counter)
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def add(self, result: VenueResult) -> None:
        self.total += 1
        self.by_outcome[result.outcome.value] += 1
        if result.outcome is VenueOutcome.SKIPPED:
            self.skip_reasons[result.reason or "unknown"] += 1
        elif result.outcome is VenueOutcome.FAILED:
            self.failures.append((result.venue_id, result.reason or "unknown"))

    def to_state(self) -> Dict[str, object]:
        return {
            "total":        self.total,
            "by_outcome":   dict(self.by_outcome),
            "skip_reasons": dict(self.skip_reasons),
            "failures":     [list(f) for f in self.failures],
        }

    @classmethod
    def from_state(cls, state: Dict[str, object]) -> "RunSummary":
        summary = cls()
        summary.total = int(state.get("total", 0))
        summary.by_outcome.update(state.get("by_outcome", {}))
        summary.skip_reasons.update(state.get("skip_reasons", {}))
        summary.failures = [tuple(f) for f in state.get("failures", [])]
        return summary
