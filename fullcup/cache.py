"""SQLite cache for Places search responses."""
from __future__ import annotations

import hashlib
import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def make_request_cache_key(url: str, field_mask: str, body: Dict[str, Any]) -> str:
    payload = json.dumps(body, sort_keys=True, separators=(",", ":"))
    raw = f"{url}|{field_mask}|{payload}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def configure_connection(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    try:
        cur.execute("PRAGMA journal_mode=WAL")
        cur.fetchone()
    except sqlite3.DatabaseError:
        pass
    try:
        cur.execute("PRAGMA synchronous=NORMAL")
    except sqlite3.DatabaseError:
        pass


class Cache:
    def __init__(self, db_path: str, commit_every: int = 50) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self._pending_writes = 0
        self._commit_every = max(1, int(commit_every))
        configure_connection(self.conn)
        self._init_db()

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS places_search_cache (
                key TEXT PRIMARY KEY,
                url TEXT,
                response_json TEXT,
                created_at TEXT
            )
            """
        )
        self.conn.commit()

    def _mark_dirty(self) -> None:
        self._pending_writes += 1
        if self._pending_writes >= self._commit_every:
            self.commit()

    def commit(self) -> None:
        if self._pending_writes:
            self.conn.commit()
            self._pending_writes = 0

    def close(self) -> None:
        self.commit()
        self.conn.close()

    def get_search_cache(self, key: str) -> Optional[Dict[str, Any]]:
        cur = self.conn.cursor()
        cur.execute("SELECT response_json FROM places_search_cache WHERE key = ?", (key,))
        row = cur.fetchone()
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_search_cache(self, key: str, response: Dict[str, Any], url: str = "") -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            INSERT INTO places_search_cache (key, url, response_json, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                url = excluded.url,
                response_json = excluded.response_json,
                created_at = excluded.created_at
            """,
            (key, url, json.dumps(response), utc_now_iso()),
        )
        self._mark_dirty()

    def count_entries(self) -> int:
        cur = self.conn.cursor()
        cur.execute("SELECT COUNT(*) AS n FROM places_search_cache")
        return int(cur.fetchone()["n"])
