#!/usr/bin/env python3
"""
Match venues to OpenStreetMap POIs by name similarity and distance.

The PBF extract is cut to the venue bounding box (padded by 0.05°) and
filtered to the POI tag allow-list with osmium, exported to GeoJSON, and every
venue is linked to at most one POI:

  - POIs farther than --max-distance metres are rejected
  - POIs without a name tag are rejected
  - name similarity below --similarity is rejected
  - composite = 0.7 * name + 0.3 * (1 - distance / max_distance), best wins

Output (osm_matches.csv):
  slug,osm_id,osm_type,name,image_url,wikidata,score

Usage:
    python -m photo_crawler.osm_match --places data/places.csv --pbf data/berlin.osm.pbf
    python -m photo_crawler.osm_match --places data/places.csv --geojson data/pois.geojson
    python -m photo_crawler.osm_match --places data/places.csv --pbf berlin.osm.pbf --max-distance 150
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import (
    BBOX_PADDING,
    DATA_DIR,
    DEFAULT_MATCHES,
    DEFAULT_PLACES,
    POI_TAG_FILTERS,
    TEMP_DIR,
    ScoringConfig,
    setup_logging,
)
from .errors import ConfigurationError, ExtractionError
from .geo_text import EARTH_RADIUS_M, bounding_box, centroid, haversine_m, in_bbox, name_similarity
from .models import MatchResult, POIFeature, Venue
from .tables import MATCH_COLS, match_to_row, read_places, write_table

logger = logging.getLogger(__name__)

LOG_FILE = DATA_DIR / "osm_match.log"

# metres per degree of latitude on the haversine sphere
_M_PER_DEG_LAT = math.radians(1) * EARTH_RADIUS_M

_TYPE_PREFIXES = {"n": "node", "w": "way", "r": "relation", "a": "way"}

BBox = Tuple[float, float, float, float]


# ─── Extraction ───────────────────────────────────────────────────────────────


def tag_filter_expressions(filters: Dict[str, Sequence[str]] = POI_TAG_FILTERS) -> List[str]:
    """osmium tags-filter expressions, e.g. 'amenity=restaurant,cafe'."""
    return [f"{key}={','.join(values)}" for key, values in filters.items()]


def _run_osmium(args: List[str]) -> None:
    cmd = ["osmium"] + args
    logger.debug(f"  $ {' '.join(cmd)}")
    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise ExtractionError("osmium command not found. Install osmium-tool.") from exc
    except subprocess.CalledProcessError as exc:
        raise ExtractionError(f"osmium {args[0]} failed: {(exc.stderr or '').strip()}") from exc


def extract_pois(pbf_path: Path, bbox: BBox, workdir: Path = TEMP_DIR) -> List[POIFeature]:
    """Cut, filter and export POIs from a PBF extract. Raises ExtractionError."""
    pbf_path = Path(pbf_path)
    if not pbf_path.exists():
        raise ConfigurationError(f"PBF file not found: {pbf_path}")
    if shutil.which("osmium") is None:
        raise ExtractionError("osmium command not found. Install osmium-tool.")

    workdir.mkdir(parents=True, exist_ok=True)
    cut_path      = workdir / "osm_bbox.osm.pbf"
    filtered_path = workdir / "osm_filtered.osm.pbf"
    geojson_path  = workdir / "osm_extract.geojson"

    min_lon, min_lat, max_lon, max_lat = bbox
    logger.info(f"Extracting POIs from {pbf_path} in bbox [{min_lon:.4f}, {min_lat:.4f}, {max_lon:.4f}, {max_lat:.4f}]...")

    _run_osmium([
        "extract", "-b", f"{min_lon},{min_lat},{max_lon},{max_lat}",
        str(pbf_path), "-o", str(cut_path), "--overwrite",
    ])
    _run_osmium(
        ["tags-filter", str(cut_path)]
        + tag_filter_expressions()
        + ["-o", str(filtered_path), "--overwrite"]
    )
    _run_osmium([
        "export", str(filtered_path), "-o", str(geojson_path),
        "-f", "geojson", "--add-unique-id=type_id", "--overwrite",
    ])
    return load_geojson(geojson_path, bbox)


def _parse_osm_id(feature: Dict[str, Any], props: Dict[str, Any]) -> Tuple[str, str]:
    """('123', 'way') from 'w123', 'way/123' or '@id' style ids."""
    raw = str(feature.get("id") or props.get("@id") or props.get("id") or "").strip()
    if "/" in raw:
        kind, _, num = raw.partition("/")
        return num, kind if kind in ("node", "way", "relation") else "node"
    if raw[:1] in _TYPE_PREFIXES and raw[1:].isdigit():
        return raw[1:], _TYPE_PREFIXES[raw[0]]
    return raw, "node"


def parse_features(geojson: Dict[str, Any], bbox: Optional[BBox] = None) -> List[POIFeature]:
    features: List[POIFeature] = []
    skipped = 0
    for feature in geojson.get("features", []) or []:
        geometry = feature.get("geometry")
        props = feature.get("properties") or {}
        if not geometry or not props:
            skipped += 1
            continue
        try:
            lat, lon = centroid(geometry)
        except Exception as exc:
            logger.debug(f"  Skip feature with unusable geometry: {exc}")
            skipped += 1
            continue
        if bbox is not None and not in_bbox(lat, lon, bbox):
            continue

        osm_id, osm_type = _parse_osm_id(feature, props)
        tags = {str(k): str(v) for k, v in props.items() if v is not None and not str(k).startswith("@")}
        features.append(POIFeature(id=osm_id, osm_type=osm_type, lat=lat, lon=lon, tags=tags))

    if skipped:
        logger.debug(f"Skipped {skipped} features without geometry or tags")
    return features


def load_geojson(path: Path, bbox: Optional[BBox] = None) -> List[POIFeature]:
    """Read an exported feature collection. Unreadable output is an ExtractionError."""
    path = Path(path)
    if not path.exists():
        raise ExtractionError(f"POI extract not found: {path}")
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ExtractionError(f"Could not read POI extract {path}: {exc}") from exc
    features = parse_features(data, bbox)
    logger.info(f"Extracted {len(features):,} POIs")
    return features


# ─── Matching ─────────────────────────────────────────────────────────────────


def venue_bbox(venues: Sequence[Venue], padding: float = BBOX_PADDING) -> BBox:
    return bounding_box(((v.lat, v.lon) for v in venues), padding)


def match_venue(
    venue: Venue,
    features: Sequence[POIFeature],
    cfg: ScoringConfig = ScoringConfig(),
) -> Optional[MatchResult]:
    """Best POI for ``venue`` by composite score, or None."""
    max_d = cfg.max_distance_m
    lat_window = max_d / _M_PER_DEG_LAT
    best: Optional[Tuple[float, POIFeature, float]] = None

    for feature in features:
        if abs(feature.lat - venue.lat) > lat_window:
            continue
        distance = haversine_m(venue.lat, venue.lon, feature.lat, feature.lon)
        if distance > max_d:
            continue

        poi_name = feature.name
        if not poi_name:
            continue

        similarity = name_similarity(venue.name, poi_name)
        if similarity < cfg.similarity_floor:
            continue

        distance_score = max(0.0, 1 - distance / max_d) if max_d > 0 else 1.0
        score = cfg.name_weight * similarity + cfg.distance_weight * distance_score
        if best is None or score > best[0]:
            best = (score, feature, distance)

    if best is None:
        return None

    score, feature, distance = best
    return MatchResult(
        venue_id=venue.id,
        osm_id=feature.id,
        osm_type=feature.osm_type,
        name=feature.name,
        score=score,
        distance_m=distance,
        image_url=feature.image_url,
        wikidata=feature.wikidata,
    )


def match_all(
    venues: Sequence[Venue],
    features: Sequence[POIFeature],
    cfg: ScoringConfig = ScoringConfig(),
) -> List[MatchResult]:
    matches: List[MatchResult] = []
    for venue in venues:
        match = match_venue(venue, features, cfg)
        if match:
            matches.append(match)
            logger.info(
                f"  ✓ {venue.name} → OSM {match.osm_type}/{match.osm_id} "
                f"'{match.name}' ({match.distance_m:.0f} m, score {match.score:.2f})"
            )
        else:
            logger.info(f"  ✗ No match: {venue.name}")
    return matches


# ─── Main ─────────────────────────────────────────────────────────────────────


def run(args: argparse.Namespace) -> List[MatchResult]:
    cfg = ScoringConfig.from_env().with_overrides(
        max_distance_m=args.max_distance,
        similarity_floor=args.similarity,
    )

    venues = read_places(Path(args.places))
    logger.info(f"Loaded {len(venues):,} places from {args.places}")
    if not venues:
        raise ConfigurationError(f"No usable places in {args.places}")

    bbox = venue_bbox(venues, args.padding)
    if args.geojson:
        features = load_geojson(Path(args.geojson), bbox)
    else:
        features = extract_pois(Path(args.pbf), bbox)

    logger.info("Matching places to OSM features...")
    matches = match_all(venues, features, cfg)

    write_table((match_to_row(m) for m in matches), Path(args.output), MATCH_COLS)
    with_image = sum(1 for m in matches if m.image_url)
    with_wikidata = sum(1 for m in matches if m.wikidata)
    logger.info(
        f"\nMatched {len(matches):,}/{len(venues):,} places "
        f"({with_image:,} with image tag, {with_wikidata:,} with wikidata)\n"
        f"Wrote matches to: {args.output}"
    )
    return matches


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Match venues to OpenStreetMap POIs by fuzzy name and proximity",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--places", default=str(DEFAULT_PLACES), help="Venue CSV (slug,name,lat,lon,city,country)")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--pbf", help="OSM .osm.pbf extract (requires osmium-tool)")
    source.add_argument("--geojson", help="Already exported POI feature collection")
    parser.add_argument("--output", default=str(DEFAULT_MATCHES), help="Output osm_matches.csv")
    parser.add_argument("--max-distance", type=float, default=None, help="Max venue→POI distance in metres (default 200)")
    parser.add_argument("--similarity", type=float, default=None, help="Name similarity floor 0-1 (default 0.6)")
    parser.add_argument("--padding", type=float, default=BBOX_PADDING, help="Bounding box padding in degrees")
    parser.add_argument("--log-file", default=str(LOG_FILE), help="Log file path")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(Path(args.log_file))
    try:
        run(args)
    except (ConfigurationError, ExtractionError) as exc:
        logger.error(str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
