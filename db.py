from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional


class SQLiteStore:
    """Closest-snapshot lookup cache and run history."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS lookup_cache (
                    cache_key TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    requested_timestamp TEXT NOT NULL,
                    closest_timestamp TEXT,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_type TEXT NOT NULL,
                    era TEXT,
                    state TEXT NOT NULL,
                    summary_json TEXT,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_lookup_cache_url ON lookup_cache(url)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_history_created ON runs_history(created_at DESC)")

    def _lookup_key(self, url: str, timestamp: str) -> str:
        return f"{url}|{timestamp}"

    def get_closest(self, url: str, timestamp: str, max_age_seconds: int) -> Optional[Dict[str, Any]]:
        """Return {"closest": ts-or-None, "age_seconds": n} for a cached lookup, None on miss."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT closest_timestamp, created_at FROM lookup_cache WHERE cache_key = ?",
                (self._lookup_key(url, timestamp),),
            ).fetchone()
        if row is None:
            return None
        age_seconds = int(time.time()) - int(row["created_at"])
        if age_seconds > max_age_seconds:
            return None
        return {"closest": row["closest_timestamp"], "age_seconds": max(0, age_seconds)}

    def set_closest(self, url: str, timestamp: str, closest: Optional[str]) -> None:
        now = int(time.time())
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO lookup_cache(cache_key,url,requested_timestamp,closest_timestamp,created_at)
                VALUES(?,?,?,?,?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    closest_timestamp=excluded.closest_timestamp,
                    created_at=excluded.created_at
                """,
                (self._lookup_key(url, timestamp), url, timestamp, closest, now),
            )

    def add_run_history(
        self,
        run_type: str,
        state: str,
        era: Optional[str] = None,
        summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO runs_history(run_type,era,state,summary_json,created_at)
                VALUES(?,?,?,?,?)
                """,
                (run_type, era, state, json.dumps(summary or {}), int(time.time())),
            )

    def list_recent_runs(self, limit: int = 12) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT run_type, era, state, summary_json, created_at
                FROM runs_history
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()

        out: List[Dict[str, Any]] = []
        now = int(time.time())
        for row in rows:
            item = dict(row)
            try:
                item["summary"] = json.loads(item.pop("summary_json") or "{}")
            except json.JSONDecodeError:
                item["summary"] = {}
            created_at = int(item.get("created_at") or 0)
            item["age_seconds"] = max(0, now - created_at)
            item["created_local"] = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(created_at)) if created_at else ""
            out.append(item)
        return out

    def prune_old_data(self, cache_retention_seconds: int, runs_retention_seconds: int) -> Dict[str, int]:
        now = int(time.time())
        cache_cutoff = now - max(60, int(cache_retention_seconds))
        runs_cutoff = now - max(60, int(runs_retention_seconds))
        removed = {"lookup_cache": 0, "runs_history": 0}
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM lookup_cache WHERE created_at < ?", (cache_cutoff,))
            removed["lookup_cache"] = max(0, int(cur.rowcount or 0))
            cur = conn.execute("DELETE FROM runs_history WHERE created_at < ?", (runs_cutoff,))
            removed["runs_history"] = max(0, int(cur.rowcount or 0))
        return removed
