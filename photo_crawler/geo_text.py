"""
Geometry and text helpers used by the record linker and the bulk scorer.
"""

from __future__ import annotations

import math
import re
import unicodedata
from typing import Any, Dict, Iterable, Tuple

from rapidfuzz.distance import Levenshtein
from shapely.geometry import shape

EARTH_RADIUS_M = 6_371_000.0

# Score given when one normalized name contains the other ("Tiergarten" / "Tiergarten Park")
CONTAINMENT_SCORE = 0.9

_WS_RE = re.compile(r"\s+")


# ─── Geometry ─────────────────────────────────────────────────────────────────


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points, in metres."""
    p = math.pi / 180.0
    dlat = (lat2 - lat1) * p
    dlon = (lon2 - lon1) * p
    a = (math.sin(dlat / 2) ** 2
         + math.cos(lat1 * p) * math.cos(lat2 * p) * math.sin(dlon / 2) ** 2)
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def bounding_box(
    points: Iterable[Tuple[float, float]], padding: float = 0.0
) -> Tuple[float, float, float, float]:
    """(min_lon, min_lat, max_lon, max_lat) of (lat, lon) points, padded in degrees."""
    lats, lons = [], []
    for lat, lon in points:
        lats.append(lat)
        lons.append(lon)
    if not lats:
        raise ValueError("bounding_box needs at least one point")
    return (
        min(lons) - padding,
        min(lats) - padding,
        max(lons) + padding,
        max(lats) + padding,
    )


def in_bbox(lat: float, lon: float, bbox: Tuple[float, float, float, float]) -> bool:
    min_lon, min_lat, max_lon, max_lat = bbox
    return min_lat <= lat <= max_lat and min_lon <= lon <= max_lon


def centroid(geometry: Dict[str, Any]) -> Tuple[float, float]:
    """(lat, lon) of a GeoJSON geometry; points pass through, anything else uses its centroid."""
    geom = shape(geometry)
    if geom.is_empty:
        raise ValueError("empty geometry")
    if geom.geom_type == "Point":
        return geom.y, geom.x
    c = geom.centroid
    return c.y, c.x


# ─── Text ─────────────────────────────────────────────────────────────────────


def _strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_name(text: str) -> str:
    """Lowercase, diacritics stripped, every non-alphanumeric character removed."""
    if not text:
        return ""
    folded = _strip_diacritics(str(text)).lower()
    return "".join(ch for ch in folded if ch.isalnum())


def fold_text(text: str) -> str:
    """Lowercase and diacritic-free, with whitespace collapsed. Keeps word boundaries."""
    if not text:
        return ""
    return _WS_RE.sub(" ", _strip_diacritics(str(text)).lower()).strip()


def levenshtein(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def name_similarity(name1: str, name2: str) -> float:
    """
    Similarity in [0, 1] between two place names.

    Exact match on normalized names scores 1.0, containment of one in the
    other scores CONTAINMENT_SCORE, anything else is the normalized
    Levenshtein similarity.
    """
    n1 = normalize_name(name1)
    n2 = normalize_name(name2)

    if not n1 or not n2:
        # Names made only of punctuation/symbols: compare them verbatim.
        r1 = (name1 or "").strip().casefold()
        r2 = (name2 or "").strip().casefold()
        return 1.0 if r1 and r1 == r2 else 0.0

    if n1 == n2:
        return 1.0
    if n1 in n2 or n2 in n1:
        return CONTAINMENT_SCORE

    max_len = max(len(n1), len(n2))
    return 1.0 - levenshtein(n1, n2) / max_len


def fuzzy_match(name1: str, name2: str, threshold: float = 0.7) -> bool:
    """Diacritic-insensitive approximate name equality."""
    return name_similarity(name1, name2) >= threshold


def contains_phrase(haystack: str, needle: str) -> bool:
    """True when the folded needle occurs in the folded haystack. Empty needles never match."""
    n = fold_text(needle)
    return bool(n) and n in fold_text(haystack)


def contains_keyword(haystack: str, word: str) -> bool:
    """
    Whole-word containment on folded text, plural forms included:
    "bar" matches "Bars" but not "Barcelona", "cafe" matches "Cafés".
    """
    w = fold_text(word)
    if not w:
        return False
    return re.search(rf"(?<!\w){re.escape(w)}(?:e?s)?(?!\w)", fold_text(haystack)) is not None
