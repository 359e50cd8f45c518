"""
CSV exchange between pipeline stages.

Every stage reads and writes plain delimited files with fixed columns so each
one can be re-run on its own. Missing files or required columns raise
ConfigurationError.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from .errors import ConfigurationError
from .models import MatchResult, Venue

logger = logging.getLogger(__name__)

PLACE_COLS      = ["slug", "name", "lat", "lon", "city", "country"]
PLACE_OPTIONAL  = ["website", "instagram", "facebook", "has_photo", "primary_photo_id"]
MATCH_COLS      = ["slug", "osm_id", "osm_type", "name", "image_url", "wikidata", "score"]
BULK_COLS       = ["slug", "source_id", "title", "url", "thumbnail_url", "author", "license", "source_url", "score"]
WIKIMEDIA_COLS  = ["slug", "commons_file", "url", "author", "license", "source_url"]

_TRUE = {"1", "true", "yes", "y", "t"}


def _isnan(v: object) -> bool:
    """Only a real missing value; the string "NaN" is a name like any other."""
    return v is None or (isinstance(v, float) and math.isnan(v))


def text(v: object) -> str:
    """Cell value as a stripped string; NaN/None become ''."""
    if _isnan(v):
        return ""
    return str(v).strip()


def opt_text(v: object) -> Optional[str]:
    return text(v) or None


def read_table(path: Path, required: Sequence[str], label: str) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"{label} file not found: {path}")
    df = pd.read_csv(path, low_memory=False, dtype=str, keep_default_na=False)
    df = df.loc[:, ~df.columns.duplicated()]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ConfigurationError(f"{label} file {path} is missing columns: {', '.join(missing)}")
    return df


def write_table(rows: Iterable[Dict[str, Any]], path: Path, columns: Sequence[str]) -> int:
    """Write rows with a fixed column order (overwrites the file, always with a header). Returns row count."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(list(rows), columns=list(columns))
    df.to_csv(path, index=False)
    return len(df)


def append_rows(rows: List[Dict[str, Any]], path: Path) -> None:
    """Append rows to a CSV, writing header only if file is new."""
    if not rows:
        return
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(rows)
    write_header = not path.exists()
    df.to_csv(path, mode="a", header=write_header, index=False)


# ─── Venues ──────────────────────────────────────────────────────────────────


def read_places(path: Path) -> List[Venue]:
    """Load venues; rows without a slug, name or usable coordinates are dropped with a warning."""
    df = read_table(path, PLACE_COLS, "Places")
    venues: List[Venue] = []
    dropped = 0
    for row in df.to_dict("records"):
        slug, name = text(row.get("slug")), text(row.get("name"))
        try:
            lat, lon = float(row.get("lat")), float(row.get("lon"))
        except (TypeError, ValueError):
            lat = lon = float("nan")
        if not slug or not name or math.isnan(lat) or math.isnan(lon):
            dropped += 1
            continue
        venues.append(
            Venue(
                id=slug,
                name=name,
                lat=lat,
                lon=lon,
                city=text(row.get("city")),
                country=text(row.get("country")),
                website=opt_text(row.get("website")),
                instagram=opt_text(row.get("instagram")),
                facebook=opt_text(row.get("facebook")),
                has_photo=text(row.get("has_photo")).lower() in _TRUE,
                primary_photo_id=opt_text(row.get("primary_photo_id")),
            )
        )
    if dropped:
        logger.warning(f"Dropped {dropped:,} place rows missing slug, name or coordinates")
    return venues


# ─── Matches ─────────────────────────────────────────────────────────────────


def match_to_row(m: MatchResult) -> Dict[str, Any]:
    return {
        "slug":      m.venue_id,
        "osm_id":    m.osm_id,
        "osm_type":  m.osm_type,
        "name":      m.name,
        "image_url": m.image_url or "",
        "wikidata":  m.wikidata or "",
        "score":     round(m.score, 4),
    }


def read_matches(path: Path) -> List[MatchResult]:
    df = read_table(path, ["slug", "osm_id", "osm_type", "name", "image_url", "wikidata"], "Matches")
    out: List[MatchResult] = []
    for row in df.to_dict("records"):
        try:
            score = float(row.get("score") or 0)
        except ValueError:
            score = 0.0
        out.append(
            MatchResult(
                venue_id=text(row["slug"]),
                osm_id=text(row["osm_id"]),
                osm_type=text(row["osm_type"]),
                name=text(row["name"]),
                score=score,
                distance_m=float("nan"),
                image_url=opt_text(row.get("image_url")),
                wikidata=opt_text(row.get("wikidata")),
            )
        )
    return out


def read_rows(path: Path, columns: Sequence[str], label: str) -> List[Dict[str, str]]:
    """Generic candidate file reader; values are stripped strings."""
    df = read_table(path, columns, label)
    return [{k: text(v) for k, v in row.items()} for row in df.to_dict("records")]
