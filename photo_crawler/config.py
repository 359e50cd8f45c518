"""
Shared configuration for the photo pipeline stages.

Paths and timeouts are plain module constants. The empirically chosen match /
scoring thresholds live in ``ScoringConfig`` so a run can tune them through
``PHOTO_*`` environment variables (or ``.env``) and CLI flags without code
changes.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError

_root = Path(__file__).resolve().parent.parent
load_dotenv(_root / ".env")

# ─── Paths ────────────────────────────────────────────────────────────────────

DATA_DIR = Path(os.environ.get("PHOTO_DATA_DIR", _root / "data"))
TEMP_DIR = DATA_DIR / "tmp"

DEFAULT_PLACES      = DATA_DIR / "places.csv"
DEFAULT_MATCHES     = DATA_DIR / "osm_matches.csv"
DEFAULT_WIKIMEDIA   = DATA_DIR / "wikimedia_candidates.csv"
DEFAULT_BULK_OUTPUT = DATA_DIR / "openverse_candidates.csv"
DEFAULT_IMPORT_OUT  = DATA_DIR / "photo_import_results.csv"
DEFAULT_REPORT      = DATA_DIR / "photo_import_report.md"
STATE_FILE          = DATA_DIR / "photo_import_state.json"

# ─── Network ──────────────────────────────────────────────────────────────────

USER_AGENT      = "Mozilla/5.0 (compatible; VenuePhotoBot/1.0; offline enrichment)"
PAGE_TIMEOUT    = 15      # seconds to fetch one venue / social page
PROBE_TIMEOUT   = 10      # seconds for HEAD + ranged GET probe
IMAGE_TIMEOUT   = 30      # seconds to download one full image
UPLOAD_TIMEOUT  = 45      # seconds for one CDN upload
VENUE_TIMEOUT   = 180     # hard cap for everything done for a single venue
RETRY_DELAYS    = [5, 15, 30]   # seconds on 429 / 5xx from the CDN

# ─── Batch processing ─────────────────────────────────────────────────────────

DEFAULT_CONCURRENCY = 5
DEFAULT_BATCH_DELAY = 5.0   # seconds between worker batches

# ─── POI extraction ───────────────────────────────────────────────────────────

BBOX_PADDING = 0.05   # degrees added around the venue extent

# key -> allowed values handed to `osmium tags-filter`
POI_TAG_FILTERS: Dict[str, Tuple[str, ...]] = {
    "amenity": ("restaurant", "cafe", "bar", "pub", "veterinary", "dog_park"),
    "tourism": ("attraction", "hotel"),
    "leisure": ("park", "dog_park"),
    "shop":    ("pet",),
}


@dataclass(frozen=True)
class ScoringConfig:
    """Tunable thresholds and weights for record linkage and bulk scoring."""

    max_distance_m: float = 200.0
    similarity_floor: float = 0.6
    name_weight: float = 0.7
    distance_weight: float = 0.3

    fuzzy_threshold: float = 0.7
    title_name_points: int = 50
    fuzzy_name_points: int = 30
    city_points: int = 20
    country_points: int = 10
    keyword_points: int = 5
    keywords: Tuple[str, ...] = field(
        default=("restaurant", "cafe", "bar", "park", "hotel", "shop")
    )
    top_n: int = 3

    @classmethod
    def from_env(cls) -> "ScoringConfig":
        """Build a config, applying any PHOTO_* overrides from the environment."""
        overrides = {}
        env_map = {
            "PHOTO_MAX_DISTANCE_M":    ("max_distance_m", float),
            "PHOTO_SIMILARITY_FLOOR":  ("similarity_floor", float),
            "PHOTO_NAME_WEIGHT":       ("name_weight", float),
            "PHOTO_DISTANCE_WEIGHT":   ("distance_weight", float),
            "PHOTO_FUZZY_THRESHOLD":   ("fuzzy_threshold", float),
            "PHOTO_TOP_N":             ("top_n", int),
        }
        for env_key, (attr, cast) in env_map.items():
            raw = os.environ.get(env_key, "").strip()
            if not raw:
                continue
            try:
                overrides[attr] = cast(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{env_key}={raw!r} is not a valid {cast.__name__}") from exc
        return replace(cls(), **overrides)

    def with_overrides(self, **kwargs) -> "ScoringConfig":
        """Return a copy with every non-None keyword applied."""
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})


# ─── Logging ─────────────────────────────────────────────────────────────────


def setup_logging(log_file: Path, name: str = "photo_crawler") -> logging.Logger:
    """File handler at DEBUG, console at INFO. Safe to call more than once."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    if logger.handlers:
        return logger

    log_file.parent.mkdir(parents=True, exist_ok=True)
    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)
    logger.addHandler(fh)
    logger.addHandler(ch)
    return logger


def require_env(*keys: str) -> Dict[str, str]:
    """Return the named environment variables or raise ConfigurationError."""
    values = {k: os.environ.get(k, "").strip() for k in keys}
    missing = [k for k, v in values.items() if not v]
    if missing:
        raise ConfigurationError(f"{', '.join(missing)} must be set in .env or the environment")
    return values
