#!/usr/bin/env python3
"""
Import one license-compliant photo per venue into the moderation queue.

For each venue (batches of --concurrency, --batch-delay seconds apart):
  1. Skip if the venue already has a photo record of any status
  2. Gather candidates: venue website (then Instagram / Facebook), OSM image
     tags, Wikimedia Commons files and bulk-index matches; dedupe by URL and
     sort by (priority, source, discovery order)
  3. Try candidates in order: license allow-list → ranged probe → full
     download and validation
  4. Upload the first valid image to Cloudflare Images, create a PENDING
     photo record and make it the primary photo if the venue has none

Outcomes per venue: done / skipped (already-has-photo, no-candidates,
none-validated) / failed (upload, database or timeout). The run checkpoints
after every batch, so --resume continues where it stopped.

Output:
  data/photo_import_results.csv   (one row per processed venue)
  data/photo_import_report.md
  data/photo_import_state.json    (checkpoint)

Usage:
    python -m photo_crawler.photo_import --places data/places.csv --dry-run --limit 20
    python -m photo_crawler.photo_import --matches data/osm_matches.csv --wikimedia data/wikimedia_candidates.csv
    python -m photo_crawler.photo_import --bulk data/openverse_candidates.csv --no-web --policy curated
    python -m photo_crawler.photo_import --resume

Requirements (.env, not needed with --dry-run):
    CLOUDFLARE_ACCOUNT_ID=...
    CLOUDFLARE_API_TOKEN=...
    SUPABASE_URL=...
    SUPABASE_SERVICE_ROLE_KEY=...
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from . import licenses
from .config import (
    DATA_DIR,
    DEFAULT_BATCH_DELAY,
    DEFAULT_CONCURRENCY,
    DEFAULT_IMPORT_OUT,
    DEFAULT_PLACES,
    DEFAULT_REPORT,
    IMAGE_TIMEOUT,
    STATE_FILE,
    VENUE_TIMEOUT,
    setup_logging,
)
from .errors import ConfigurationError, FetchError, PersistenceError, ValidationError
from .image_validator import POLICIES, WEB_POLICY, ImagePolicy, download_image, probe_image, validate_image
from .models import (
    PRIORITY_BULK,
    PRIORITY_CURATED,
    Candidate,
    ImageMetadata,
    PhotoRecord,
    RunSummary,
    Source,
    Venue,
    VenueOutcome,
    VenueResult,
    rank_candidates,
)
from .storage import CloudflareImagesClient, SupabasePhotoStore
from .tables import BULK_COLS, WIKIMEDIA_COLS, append_rows, read_matches, read_places, read_rows
from .web_candidates import gather_web_candidates
from .wikimedia_candidates import commons_file_name

logger = logging.getLogger(__name__)

LOG_FILE = DATA_DIR / "photo_import.log"

SKIP_HAS_PHOTO     = "already-has-photo"
SKIP_NO_CANDIDATES = "no-candidates"
SKIP_NONE_VALID    = "none-validated"

_EXTENSIONS = {"jpeg": "jpg", "png": "png", "webp": "webp"}


@dataclass
class ImportContext:
    """Everything a venue needs; shared read-only by concurrent workers."""

    client: httpx.AsyncClient
    policy: ImagePolicy = WEB_POLICY
    store: Any = None                      # SupabasePhotoStore or a test double
    cdn: Optional[CloudflareImagesClient] = None
    curated: Dict[str, List[Candidate]] = field(default_factory=dict)
    use_web: bool = True
    dry_run: bool = False
    venue_timeout: float = VENUE_TIMEOUT


# ─── Candidate files ──────────────────────────────────────────────────────────


def osm_tag_candidates(path: Path) -> Dict[str, List[Candidate]]:
    """Direct image tags from the OSM match file. Commons references are left to the Wikimedia file."""
    out: Dict[str, List[Candidate]] = defaultdict(list)
    for i, m in enumerate(read_matches(path)):
        if not m.image_url or commons_file_name(m.image_url):
            continue
        if not m.image_url.startswith(("http://", "https://")):
            continue
        out[m.venue_id].append(
            Candidate(
                url=m.image_url,
                source=Source.OSM,
                priority=PRIORITY_CURATED,
                attribution=f"OpenStreetMap image tag for {m.name}",
                source_url=f"https://www.openstreetmap.org/{m.osm_type}/{m.osm_id}",
                discovery_index=i,
            )
        )
    return out


def wikimedia_candidates(path: Path) -> Dict[str, List[Candidate]]:
    out: Dict[str, List[Candidate]] = defaultdict(list)
    for i, row in enumerate(read_rows(path, WIKIMEDIA_COLS, "Wikimedia candidates")):
        if not row["slug"] or not row["url"]:
            continue
        author = row["author"] or "Unknown"
        license = row["license"]
        out[row["slug"]].append(
            Candidate(
                url=row["url"],
                source=Source.WIKIMEDIA,
                priority=PRIORITY_CURATED,
                attribution=f"{author}, {license or 'unknown license'}, via Wikimedia Commons",
                license=license or None,
                author=author,
                source_url=row["source_url"] or None,
                discovery_index=i,
            )
        )
    return out


def bulk_candidates(path: Path) -> Dict[str, List[Candidate]]:
    """Bulk-index matches; file order is score order, kept through discovery_index."""
    out: Dict[str, List[Candidate]] = defaultdict(list)
    for i, row in enumerate(read_rows(path, BULK_COLS, "Bulk candidates")):
        if not row["slug"] or not row["url"]:
            continue
        author = row["author"] or "Unknown"
        license = row["license"]
        out[row["slug"]].append(
            Candidate(
                url=row["url"],
                source=Source.OPENVERSE,
                priority=PRIORITY_BULK,
                attribution=f"{author}, {license or 'unknown license'}, via Openverse",
                license=license or None,
                author=author,
                source_url=row["source_url"] or None,
                discovery_index=i,
            )
        )
    return out


def merge_curated(*groups: Dict[str, List[Candidate]]) -> Dict[str, List[Candidate]]:
    merged: Dict[str, List[Candidate]] = defaultdict(list)
    for group in groups:
        for slug, candidates in group.items():
            merged[slug].extend(candidates)
    return dict(merged)


# ─── Per-venue processing ─────────────────────────────────────────────────────


async def gather_candidates(venue: Venue, ctx: ImportContext) -> List[Candidate]:
    found: List[Candidate] = list(ctx.curated.get(venue.id, []))
    if ctx.use_web:
        found.extend(await gather_web_candidates(ctx.client, venue))
    return rank_candidates(found)


async def check_candidate(candidate: Candidate, ctx: ImportContext) -> Tuple[bytes, ImageMetadata]:
    """Bytes and metadata of a usable candidate; FetchError / ValidationError otherwise."""
    if not licenses.is_allowed(candidate.license):
        raise ValidationError(f"License not allowed: {candidate.license or 'none declared'}")

    probe = await probe_image(ctx.client, candidate.url, ctx.policy)
    if not probe.valid:
        raise ValidationError(probe.reason or "probe rejected")

    # a response without a Content-Type is rejected here just as in the probe
    data, content_type = await download_image(ctx.client, candidate.url, ctx.policy)
    result = validate_image(data, ctx.policy, content_type=content_type)
    if not result.valid or result.metadata is None:
        raise ValidationError(result.reason or "validation failed")
    return data, result.metadata


async def _store_call(fn, *args):
    return await asyncio.to_thread(fn, *args)


async def has_existing_photo(venue: Venue, ctx: ImportContext) -> bool:
    if venue.has_photo:
        return True
    if ctx.store is None:
        return False
    return await _store_call(ctx.store.count_photos, venue.id) > 0


async def restore_primary_photo(venue: Venue, ctx: ImportContext) -> Optional[str]:
    """
    Point a venue without a primary photo at its newest non-rejected record.

    Covers a run that created the record but failed before the primary
    update; later runs skip the venue, so the link is made here.
    """
    if venue.has_photo or venue.primary_photo_id or ctx.store is None or ctx.dry_run:
        return None
    if await _store_call(ctx.store.get_primary_photo, venue.id):
        return None
    photo_id = await _store_call(ctx.store.latest_photo_id, venue.id)
    if photo_id:
        await _store_call(ctx.store.set_primary_photo, venue.id, photo_id)
        logger.info(f"  ↺ {venue.name}: primary photo set to existing record {photo_id}")
    return photo_id


async def persist(
    venue: Venue, candidate: Candidate, data: bytes, meta: ImageMetadata, ctx: ImportContext
) -> Tuple[str, str]:
    """Upload, create the PENDING record, set primary photo. Returns (photo id, CDN URL)."""
    if ctx.cdn is None or ctx.store is None:
        raise PersistenceError("no CDN / photo store configured")

    license = licenses.normalize(candidate.license)
    author = candidate.author or "Unknown"
    filename = f"{venue.id}-{candidate.source.value}.{_EXTENSIONS.get(meta.format, meta.format)}"
    upload = await ctx.cdn.upload(
        data,
        filename,
        {
            "venue": venue.id,
            "source": candidate.source.value,
            "source_url": candidate.source_url or candidate.url,
            "license": license,
            "author": author,
        },
    )

    record = PhotoRecord(
        venue_id=venue.id,
        cdn_url=upload.cdn_url,
        width=meta.width,
        height=meta.height,
        format=meta.format,
        author=author,
        license=license,
        source_url=candidate.source_url or candidate.url,
        source=candidate.source,
        attribution=candidate.attribution or f"{author}, {license}",
    )
    photo_id = await _store_call(ctx.store.create_photo, record)

    primary = venue.primary_photo_id or await _store_call(ctx.store.get_primary_photo, venue.id)
    if not primary:
        await _store_call(ctx.store.set_primary_photo, venue.id, photo_id)
    return photo_id, upload.cdn_url


async def process_venue(venue: Venue, ctx: ImportContext) -> VenueResult:
    result = VenueResult(venue_id=venue.id, name=venue.name, outcome=VenueOutcome.SKIPPED, dry_run=ctx.dry_run)

    if await has_existing_photo(venue, ctx):
        result.reason = SKIP_HAS_PHOTO
        result.photo_id = await restore_primary_photo(venue, ctx)
        return result

    candidates = await gather_candidates(venue, ctx)
    result.candidates_found = len(candidates)
    if not candidates:
        result.reason = SKIP_NO_CANDIDATES
        return result

    chosen: Optional[Tuple[Candidate, bytes, ImageMetadata]] = None
    for candidate in candidates:
        result.candidates_tried += 1
        try:
            data, meta = await check_candidate(candidate, ctx)
        except ValidationError as exc:
            result.rejections.append(f"{candidate.url}: {exc.reason}")
            logger.debug(f"    ✗ [{candidate.source.value}] {candidate.url}: {exc.reason}")
            continue
        except FetchError as exc:
            result.rejections.append(f"{candidate.url}: {exc}")
            logger.debug(f"    ✗ [{candidate.source.value}] {candidate.url}: {exc}")
            continue
        chosen = (candidate, data, meta)
        break

    if chosen is None:
        result.reason = SKIP_NONE_VALID
        return result

    candidate, data, meta = chosen
    result.candidate = candidate
    if ctx.dry_run:
        logger.info(
            f"  [dry-run] would upload {candidate.url} "
            f"({meta.width}×{meta.height} {meta.format}, {licenses.normalize(candidate.license)}) for {venue.name}"
        )
        result.outcome = VenueOutcome.DONE
        return result

    result.photo_id, result.cdn_url = await persist(venue, candidate, data, meta, ctx)
    result.outcome = VenueOutcome.DONE
    return result


async def run_venue(venue: Venue, ctx: ImportContext, semaphore: asyncio.Semaphore) -> VenueResult:
    """process_venue bounded by the venue timeout; venue-local errors become FAILED."""
    async with semaphore:
        try:
            return await asyncio.wait_for(process_venue(venue, ctx), ctx.venue_timeout)
        except asyncio.TimeoutError:
            reason = f"timeout after {ctx.venue_timeout:.0f}s"
            logger.error(f"  ✗ {venue.name}: {reason}")
        except PersistenceError as exc:
            reason = f"persistence: {exc}"
            logger.error(f"  ✗ {venue.name}: {reason}")
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            logger.exception(f"  ✗ {venue.name}: unexpected error")
    return VenueResult(venue_id=venue.id, name=venue.name, outcome=VenueOutcome.FAILED, reason=reason, dry_run=ctx.dry_run)


def _log_result(r: VenueResult) -> None:
    if r.ok:
        c = r.candidate
        where = r.cdn_url or (c.url if c else "")
        logger.info(f"  ✓ {r.name} [{c.source.value if c else '?'}] → {where}")
    elif r.skipped:
        logger.info(f"  – {r.name}: {r.reason} ({r.candidates_tried}/{r.candidates_found} tried)")
    else:
        logger.info(f"  ✗ {r.name}: {r.reason}")


# ─── State / Checkpoint helpers ───────────────────────────────────────────────


def fresh_state() -> Dict[str, Any]:
    return {
        "processed_ids": [],
        "summary": RunSummary().to_state(),
        "started_at": datetime.now(timezone.utc).isoformat(),
    }


def load_state(state_file: Path) -> Dict[str, Any]:
    if state_file.exists():
        try:
            with open(state_file) as f:
                state = json.load(f)
            if isinstance(state, dict) and "processed_ids" in state:
                return state
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"Ignoring unreadable state file {state_file}: {exc}")
    return fresh_state()


def save_state(state: Dict[str, Any], state_file: Path) -> None:
    state_file.parent.mkdir(parents=True, exist_ok=True)
    tmp = state_file.with_suffix(".tmp")
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    tmp.replace(state_file)


# ─── Batch runner ─────────────────────────────────────────────────────────────


async def run_batches(
    venues: Sequence[Venue],
    ctx: ImportContext,
    state: Dict[str, Any],
    output_path: Path,
    state_file: Path,
    concurrency: int = DEFAULT_CONCURRENCY,
    batch_delay: float = DEFAULT_BATCH_DELAY,
) -> RunSummary:
    """Process venues in batches; counters and checkpoint change only between batches."""
    summary = RunSummary.from_state(state.get("summary", {}))
    concurrency = max(1, concurrency)
    semaphore = asyncio.Semaphore(concurrency)

    for start in range(0, len(venues), concurrency):
        batch = venues[start:start + concurrency]
        logger.info(f"Batch {start // concurrency + 1} | venues {start + 1}–{start + len(batch)} of {len(venues)}")

        results = await asyncio.gather(*(run_venue(v, ctx, semaphore) for v in batch), return_exceptions=True)

        rows = []
        for venue, result in zip(batch, results):
            if isinstance(result, BaseException):
                logger.error(f"  ✗ {venue.name}: {result}")
                result = VenueResult(
                    venue_id=venue.id, name=venue.name, outcome=VenueOutcome.FAILED,
                    reason=f"{type(result).__name__}: {result}", dry_run=ctx.dry_run,
                )
            _log_result(result)
            summary.add(result)
            state["processed_ids"].append(venue.id)
            rows.append(result.to_row())

        append_rows(rows, output_path)
        state["summary"] = summary.to_state()
        save_state(state, state_file)
        logger.info(
            f"  Checkpoint: done={summary.by_outcome['done']}, "
            f"skipped={summary.by_outcome['skipped']}, failed={summary.by_outcome['failed']}"
        )

        if batch_delay > 0 and start + concurrency < len(venues):
            await asyncio.sleep(batch_delay)
    return summary


# ─── Report generation ────────────────────────────────────────────────────────


def write_report(summary: RunSummary, report_path: Path, input_total: int, dry_run: bool) -> None:
    done = summary.by_outcome.get("done", 0)
    lines = [
        "# Photo Import Report",
        "",
        f"**Generated**: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Mode**: {'dry run (nothing uploaded)' if dry_run else 'live'}",
        "",
        "## Summary",
        "",
        f"- **Input venues**: {input_total:,}",
        f"- **Processed**: {summary.total:,}",
        f"- **Imported**: {done:,}",
        f"- **Skipped**: {summary.by_outcome.get('skipped', 0):,}",
        f"- **Failed**: {summary.by_outcome.get('failed', 0):,}",
        f"- **Import rate**: {done / summary.total * 100:.1f}%" if summary.total else "- **Import rate**: N/A",
        "",
    ]
    if summary.skip_reasons:
        lines += ["## Skip reasons", "", "| Reason | Venues |", "|---|---|"]
        lines += [f"| {reason} | {n:,} |" for reason, n in summary.skip_reasons.most_common()]
        lines.append("")
    if summary.failures:
        lines += ["## Failures", ""]
        lines += [f"- `{slug}`: {reason}" for slug, reason in summary.failures]
        lines.append("")

    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text("\n".join(lines))
    logger.info(f"Report saved → {report_path}")


# ─── Main ─────────────────────────────────────────────────────────────────────


def load_curated(args: argparse.Namespace) -> Dict[str, List[Candidate]]:
    groups = []
    if args.matches:
        groups.append(osm_tag_candidates(Path(args.matches)))
    if args.wikimedia:
        groups.append(wikimedia_candidates(Path(args.wikimedia)))
    if args.bulk:
        groups.append(bulk_candidates(Path(args.bulk)))
    curated = merge_curated(*groups)
    logger.info(f"Loaded file candidates for {len(curated):,} venues")
    return curated


def open_store(dry_run: bool) -> Optional[SupabasePhotoStore]:
    """Live runs require credentials; dry runs use the store read-only when it is configured."""
    if dry_run:
        if os.environ.get("SUPABASE_URL") and os.environ.get("SUPABASE_SERVICE_ROLE_KEY"):
            return SupabasePhotoStore.from_env()
        logger.warning("Supabase not configured: dry run only checks the has_photo column")
        return None
    return SupabasePhotoStore.from_env()


async def run(args: argparse.Namespace) -> RunSummary:
    policy = POLICIES[args.policy]
    if args.no_web and not (args.matches or args.wikimedia or args.bulk):
        raise ConfigurationError("--no-web needs at least one of --matches, --wikimedia, --bulk")

    venues = read_places(Path(args.places))
    logger.info(f"Loaded {len(venues):,} venues from {args.places}")
    if args.city:
        venues = [v for v in venues if v.city.lower() == args.city.lower()]
        logger.info(f"  {len(venues):,} in {args.city}")
    input_total = len(venues)

    curated = load_curated(args)
    store = open_store(args.dry_run)

    output_path = Path(args.output)
    state_file = Path(args.state)
    if args.resume:
        state = load_state(state_file)
    else:
        state = fresh_state()
        for p in (output_path, state_file):
            if p.exists():
                p.unlink()
                logger.debug(f"Removed existing {p.name}")

    processed = set(state["processed_ids"])
    remaining = [v for v in venues if v.id not in processed]
    if args.limit:
        remaining = remaining[: args.limit]
    logger.info(f"Already processed: {len(processed):,} | Remaining: {len(remaining):,}")

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(IMAGE_TIMEOUT, connect=10),
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        follow_redirects=True,
    )
    try:
        cdn = None if args.dry_run else CloudflareImagesClient.from_env(client=http_client)
        ctx = ImportContext(
            client=http_client,
            policy=policy,
            store=store,
            cdn=cdn,
            curated=curated,
            use_web=not args.no_web,
            dry_run=args.dry_run,
        )
        summary = await run_batches(
            remaining, ctx, state, output_path, state_file,
            concurrency=args.concurrency, batch_delay=args.batch_delay,
        )
    finally:
        await http_client.aclose()

    write_report(summary, Path(args.report), input_total, args.dry_run)
    log_summary(summary, args)
    return summary


def log_summary(summary: RunSummary, args: argparse.Namespace) -> None:
    lines = [
        f"\n✓ Photo import complete{' (dry run)' if args.dry_run else ''}",
        f"  Processed : {summary.total:,}",
        f"  Done      : {summary.by_outcome.get('done', 0):,}",
        f"  Skipped   : {summary.by_outcome.get('skipped', 0):,}",
        f"  Failed    : {summary.by_outcome.get('failed', 0):,}",
    ]
    for reason, n in summary.skip_reasons.most_common():
        lines.append(f"    skipped {reason}: {n:,}")
    for slug, reason in summary.failures[:20]:
        lines.append(f"    failed {slug}: {reason}")
    if len(summary.failures) > 20:
        lines.append(f"    … {len(summary.failures) - 20} more in {args.report}")
    lines.append(f"  Output    : {args.output}")
    logger.info("\n".join(lines))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Import one license-compliant photo per venue into the moderation queue",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--places", default=str(DEFAULT_PLACES), help="Venue CSV")
    parser.add_argument("--matches", default=None, help="OSM match CSV (image tags)")
    parser.add_argument("--wikimedia", default=None, help="Wikimedia candidates CSV")
    parser.add_argument("--bulk", default=None, help="Bulk-index candidates CSV")
    parser.add_argument("--no-web", action="store_true", help="Do not scrape venue websites / social pages")
    parser.add_argument("--city", default=None, help="Only venues in this city")
    parser.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY, help="Venues processed in parallel per batch")
    parser.add_argument("--batch-delay", type=float, default=DEFAULT_BATCH_DELAY, help="Seconds to wait between batches")
    parser.add_argument("--policy", choices=sorted(POLICIES), default=WEB_POLICY.name, help="Image size policy")
    parser.add_argument("--dry-run", action="store_true", help="Validate candidates but do not upload or write records")
    parser.add_argument("--resume", action="store_true", help="Skip venues processed by a previous run")
    parser.add_argument("--limit", type=int, default=0, help="Max venues to process (0 = all)")
    parser.add_argument("--output", default=str(DEFAULT_IMPORT_OUT), help="Per-venue results CSV")
    parser.add_argument("--report", default=str(DEFAULT_REPORT), help="Markdown report")
    parser.add_argument("--state", default=str(STATE_FILE), help="Checkpoint file")
    parser.add_argument("--log-file", default=str(LOG_FILE), help="Log file path")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(Path(args.log_file))
    try:
        asyncio.run(run(args))
    except ConfigurationError as exc:
        logger.error(str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
