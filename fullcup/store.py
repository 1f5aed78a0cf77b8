"""SQLite shop store: batched upserts, stale marking and sync history."""
from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, Iterator, List, Optional, Sequence

from . import config
from .cache import configure_connection, utc_now_iso
from .models import RawPlace, UpsertItem, UpsertResult

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_TEMPORARILY_CLOSED = "temporarily_closed"
STATUS_CLOSED = "closed"

_BUSINESS_STATUS_MAP = {
    "OPERATIONAL": STATUS_ACTIVE,
    "CLOSED_TEMPORARILY": STATUS_TEMPORARILY_CLOSED,
    "CLOSED_PERMANENTLY": STATUS_CLOSED,
}


def map_business_status(business_status: Optional[str]) -> str:
    if not business_status:
        return STATUS_ACTIVE
    return _BUSINESS_STATUS_MAP.get(business_status.upper(), STATUS_ACTIVE)


def synthesize_place_id(place: RawPlace) -> str:
    """Stable id for places the provider returned without one."""
    name = "_".join((place.name or "unknown").split())
    lat = place.lat if place.lat is not None else 0
    lng = place.lng if place.lng is not None else 0
    return f"local:{name}:{lat}:{lng}"


def _chunks(items: Sequence[UpsertItem], size: int) -> Iterator[Sequence[UpsertItem]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class ShopStore:
    def __init__(self, db_path: str = config.SHOPS_DB_PATH) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        configure_connection(self.conn)
        self._init_db()

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS coffee_shops (
                google_place_id TEXT PRIMARY KEY,
                name TEXT,
                formatted_address TEXT,
                latitude REAL,
                longitude REAL,
                google_rating REAL,
                user_rating_count INTEGER,
                types_json TEXT,
                primary_type TEXT,
                status TEXT,
                source_grid_id TEXT,
                grid_radius INTEGER,
                search_level INTEGER,
                first_seen_at TEXT,
                last_seen_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT,
                finished_at TEXT,
                mode TEXT,
                areas_searched INTEGER,
                places_found INTEGER,
                api_calls INTEGER,
                status TEXT,
                error TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_sync_history_started_at ON sync_history (started_at)"
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def upsert_batch(
        self,
        items: Sequence[UpsertItem],
        batch_size: Optional[int] = None,
    ) -> UpsertResult:
        size = max(1, int(batch_size or config.UPSERT_BATCH_SIZE))
        items = list(items)
        inserted = 0
        updated = 0
        errors: List[str] = []
        batches = list(_chunks(items, size))

        for index, batch in enumerate(batches, start=1):
            rows = [self._row(item) for item in batch]
            ids = list(dict.fromkeys(row["google_place_id"] for row in rows))
            try:
                existing = self._existing_ids(ids)
                self.conn.executemany(
                    """
                    INSERT INTO coffee_shops (
                        google_place_id, name, formatted_address, latitude, longitude,
                        google_rating, user_rating_count, types_json, primary_type, status,
                        source_grid_id, grid_radius, search_level, first_seen_at, last_seen_at
                    ) VALUES (
                        :google_place_id, :name, :formatted_address, :latitude, :longitude,
                        :google_rating, :user_rating_count, :types_json, :primary_type, :status,
                        :source_grid_id, :grid_radius, :search_level, :seen_at, :seen_at
                    )
                    ON CONFLICT(google_place_id) DO UPDATE SET
                        name = excluded.name,
                        formatted_address = excluded.formatted_address,
                        latitude = excluded.latitude,
                        longitude = excluded.longitude,
                        google_rating = excluded.google_rating,
                        user_rating_count = excluded.user_rating_count,
                        types_json = excluded.types_json,
                        primary_type = excluded.primary_type,
                        status = excluded.status,
                        source_grid_id = excluded.source_grid_id,
                        grid_radius = excluded.grid_radius,
                        search_level = excluded.search_level,
                        last_seen_at = excluded.last_seen_at
                    """,
                    rows,
                )
                self.conn.commit()
            except sqlite3.Error as exc:
                self.conn.rollback()
                errors.append(f"batch {index}: {exc}")
                logger.warning(
                    "Upsert batch %s/%s (%s items) failed: %s", index, len(batches), len(rows), exc
                )
                continue

            batch_inserted = len(ids) - len(existing)
            inserted += batch_inserted
            updated += len(existing)
            logger.debug(
                "Upsert batch %s/%s: inserted=%s updated=%s",
                index,
                len(batches),
                batch_inserted,
                len(existing),
            )

        return UpsertResult(inserted=inserted, updated=updated, errors=errors)

    def _existing_ids(self, ids: List[str]) -> set[str]:
        if not ids:
            return set()
        placeholders = ",".join("?" for _ in ids)
        cur = self.conn.execute(
            f"SELECT google_place_id FROM coffee_shops WHERE google_place_id IN ({placeholders})",
            ids,
        )
        return {row["google_place_id"] for row in cur.fetchall()}

    @staticmethod
    def _row(item: UpsertItem) -> Dict[str, Any]:
        place = item.place.place
        return {
            "google_place_id": place.place_id or synthesize_place_id(place),
            "name": place.name,
            "formatted_address": place.formatted_address,
            "latitude": place.lat,
            "longitude": place.lng,
            "google_rating": place.rating,
            "user_rating_count": place.user_rating_count,
            "types_json": json.dumps(list(place.types)),
            "primary_type": place.primary_type,
            "status": map_business_status(place.business_status),
            "source_grid_id": item.source_grid_id,
            "grid_radius": item.grid_radius,
            "search_level": item.search_level,
            "seen_at": utc_now_iso(),
        }

    def mark_not_seen_since(self, timestamp: str) -> int:
        """Flag active shops not refreshed since ``timestamp`` as temporarily closed."""
        cur = self.conn.execute(
            """
            UPDATE coffee_shops
            SET status = ?
            WHERE status = ? AND last_seen_at < ?
            """,
            (STATUS_TEMPORARILY_CLOSED, STATUS_ACTIVE, timestamp),
        )
        self.conn.commit()
        return int(cur.rowcount or 0)

    def record_sync_run(
        self,
        mode: str,
        started_at: str,
        finished_at: str,
        areas_searched: int,
        places_found: int,
        api_calls: int,
        status: str,
        error: Optional[str] = None,
    ) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO sync_history (
                started_at, finished_at, mode, areas_searched, places_found, api_calls, status, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (started_at, finished_at, mode, areas_searched, places_found, api_calls, status, error),
        )
        self.conn.commit()
        return int(cur.lastrowid)

    def get_shop(self, google_place_id: str) -> Optional[Dict[str, Any]]:
        cur = self.conn.execute(
            "SELECT * FROM coffee_shops WHERE google_place_id = ?", (google_place_id,)
        )
        row = cur.fetchone()
        return self._shop_dict(row) if row else None

    def all_shops(self) -> List[Dict[str, Any]]:
        cur = self.conn.execute("SELECT * FROM coffee_shops ORDER BY google_place_id")
        return [self._shop_dict(row) for row in cur.fetchall()]

    def sync_history(self) -> List[Dict[str, Any]]:
        cur = self.conn.execute("SELECT * FROM sync_history ORDER BY id")
        return [dict(row) for row in cur.fetchall()]

    @staticmethod
    def _shop_dict(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["types"] = json.loads(data.pop("types_json") or "[]")
        return data
