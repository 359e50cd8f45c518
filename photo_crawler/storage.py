"""
Where accepted photos end up: Cloudflare Images for the bytes, Supabase for
the moderation records.

Both clients raise PersistenceError on any failure so the import stage can
mark the venue as failed without touching the rest of the run.

Requirements (.env):
    CLOUDFLARE_ACCOUNT_ID=...
    CLOUDFLARE_API_TOKEN=...
    CLOUDFLARE_DELIVERY_URL=https://imagedelivery.net/<hash>   (optional)
    SUPABASE_URL=...
    SUPABASE_SERVICE_ROLE_KEY=...
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .config import RETRY_DELAYS, UPLOAD_TIMEOUT, require_env
from .errors import PersistenceError
from .models import PhotoRecord, PhotoStatus

logger = logging.getLogger(__name__)

CLOUDFLARE_API = "https://api.cloudflare.com/client/v4/accounts/{account_id}/images/v1"

PLACES_TABLE = "places"
PHOTOS_TABLE = "place_photos"


# ─── Cloudflare Images ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UploadResult:
    id: str
    cdn_url: str
    variants: List[str] = field(default_factory=list)


class CloudflareImagesClient:
    """Multipart uploads to Cloudflare Images with retries on 429 / 5xx."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        delivery_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_delays: Optional[List[float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout: float = UPLOAD_TIMEOUT,
    ):
        self.endpoint = CLOUDFLARE_API.format(account_id=account_id)
        self.delivery_url = (delivery_url or "").rstrip("/") or None
        self._token = api_token
        self._client = client
        self._retry_delays = list(RETRY_DELAYS if retry_delays is None else retry_delays)
        self._sleep = sleep
        self._timeout = timeout

    @classmethod
    def from_env(cls, client: Optional[httpx.AsyncClient] = None) -> "CloudflareImagesClient":
        env = require_env("CLOUDFLARE_ACCOUNT_ID", "CLOUDFLARE_API_TOKEN")
        return cls(
            env["CLOUDFLARE_ACCOUNT_ID"],
            env["CLOUDFLARE_API_TOKEN"],
            delivery_url=os.environ.get("CLOUDFLARE_DELIVERY_URL", "").strip() or None,
            client=client,
        )

    def cdn_url_for(self, image_id: str, variants: List[str]) -> str:
        if self.delivery_url:
            return f"{self.delivery_url}/{image_id}/public"
        if variants:
            return variants[0]
        raise PersistenceError(f"Upload {image_id} returned no delivery variants")

    async def upload(self, data: bytes, filename: str, metadata: Dict[str, Any]) -> UploadResult:
        client = self._client or httpx.AsyncClient()
        try:
            body = await self._post_with_retry(client, data, filename, metadata)
        finally:
            if self._client is None:
                await client.aclose()

        if not body.get("success"):
            errors = body.get("errors") or []
            detail = "; ".join(str(e.get("message", e)) for e in errors) or "unknown error"
            raise PersistenceError(f"Cloudflare rejected upload: {detail}")

        result = body.get("result") or {}
        image_id = str(result.get("id") or "")
        if not image_id:
            raise PersistenceError("Cloudflare upload response has no image id")
        variants = [str(v) for v in result.get("variants") or []]
        return UploadResult(id=image_id, cdn_url=self.cdn_url_for(image_id, variants), variants=variants)

    async def _post_with_retry(
        self, client: httpx.AsyncClient, data: bytes, filename: str, metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token}"}
        attempts = len(self._retry_delays) + 1
        last_error = "no attempt made"

        for attempt, delay in enumerate([0] + self._retry_delays, 1):
            if delay:
                logger.warning(f"  upload retry {attempt}/{attempts} after {delay}s …")
                await self._sleep(delay)
            try:
                resp = await client.post(
                    self.endpoint,
                    headers=headers,
                    files={"file": (filename, data)},
                    data={"metadata": json.dumps(metadata)},
                    timeout=self._timeout,
                )
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(f"  upload network error: {last_error}")
                continue

            if resp.status_code == 429 or resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}"
                logger.warning(f"  {filename} → {last_error}")
                continue
            try:
                body = resp.json()
            except ValueError as exc:
                raise PersistenceError(f"Cloudflare returned HTTP {resp.status_code} with invalid JSON") from exc
            if not resp.is_success and body.get("success") is not False:
                raise PersistenceError(f"Cloudflare upload failed: HTTP {resp.status_code}")
            return body

        raise PersistenceError(f"Cloudflare upload failed after {attempts} attempts: {last_error}")


# ─── Supabase photo store ─────────────────────────────────────────────────────


class SupabasePhotoStore:
    """
    Photo records in Supabase. Venues are addressed by slug; the store maps
    them to ``places.id`` once and caches the result.
    """

    def __init__(self, client: Any):
        self._db = client
        self._place_ids: Dict[str, str] = {}

    @classmethod
    def from_env(cls) -> "SupabasePhotoStore":
        from supabase import create_client

        env = require_env("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY")
        return cls(create_client(env["SUPABASE_URL"], env["SUPABASE_SERVICE_ROLE_KEY"]))

    def _place_id(self, venue_id: str) -> str:
        if venue_id in self._place_ids:
            return self._place_ids[venue_id]
        try:
            resp = (
                self._db.table(PLACES_TABLE)
                .select("id")
                .eq("slug", venue_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"place lookup failed for {venue_id}: {exc}") from exc
        rows = resp.data or []
        if not rows:
            raise PersistenceError(f"place {venue_id} not found in {PLACES_TABLE}")
        self._place_ids[venue_id] = str(rows[0]["id"])
        return self._place_ids[venue_id]

    def count_photos(self, venue_id: str) -> int:
        """Photo records of any status for the venue."""
        place_id = self._place_id(venue_id)
        try:
            resp = (
                self._db.table(PHOTOS_TABLE)
                .select("id", count="exact")
                .eq("place_id", place_id)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"photo count failed for {venue_id}: {exc}") from exc
        if resp.count is not None:
            return int(resp.count)
        return len(resp.data or [])

    def create_photo(self, record: PhotoRecord) -> str:
        place_id = self._place_id(record.venue_id)
        row = record.to_row()
        row.pop("venue_id")
        row["place_id"] = place_id
        row["url"] = row.pop("cdn_url")
        try:
            resp = self._db.table(PHOTOS_TABLE).insert(row).execute()
        except Exception as exc:
            raise PersistenceError(f"photo insert failed for {record.venue_id}: {exc}") from exc
        rows = resp.data or []
        if not rows or "id" not in rows[0]:
            raise PersistenceError(f"photo insert for {record.venue_id} returned no id")
        return str(rows[0]["id"])

    def get_primary_photo(self, venue_id: str) -> Optional[str]:
        place_id = self._place_id(venue_id)
        try:
            resp = (
                self._db.table(PLACES_TABLE)
                .select("primary_photo_id")
                .eq("id", place_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"primary photo lookup failed for {venue_id}: {exc}") from exc
        rows = resp.data or []
        value = rows[0].get("primary_photo_id") if rows else None
        return str(value) if value else None

    def set_primary_photo(self, venue_id: str, photo_id: str) -> None:
        place_id = self._place_id(venue_id)
        try:
            self._db.table(PLACES_TABLE).update(
                {"primary_photo_id": photo_id}
            ).eq("id", place_id).execute()
        except Exception as exc:
            raise PersistenceError(f"primary photo update failed for {venue_id}: {exc}") from exc

    def latest_photo_id(self, venue_id: str) -> Optional[str]:
        """Newest photo record for the venue that moderation has not rejected."""
        place_id = self._place_id(venue_id)
        try:
            resp = (
                self._db.table(PHOTOS_TABLE)
                .select("id, status")
                .eq("place_id", place_id)
                .order("created_at", desc=True)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"photo lookup failed for {venue_id}: {exc}") from exc
        for row in resp.data or []:
            if row.get("status") != PhotoStatus.REJECTED.value:
                return str(row["id"])
        return None
