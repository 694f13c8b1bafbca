from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from flask import Flask, abort, jsonify, request, send_from_directory

from assets import is_within
from config import Settings
from db import SQLiteStore
from errors import InventoryCorrupt
from inventory import InventoryStore, count_by_status
from pipeline import Pipeline


logger = logging.getLogger(__name__)

settings = Settings.from_env()
settings.data_root.mkdir(parents=True, exist_ok=True)
store = SQLiteStore(settings.db_path)
inventory = InventoryStore(settings.inventory_path)

app = Flask(__name__)
JOBS: dict[str, dict] = {}
JOBS_LOCK = threading.Lock()
JOB_RETENTION_SECONDS = int(os.environ.get("JOB_RETENTION_SECONDS", "3600"))


class JobCapacityError(RuntimeError):
    pass


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_optional_int(value: Optional[object]) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(str(value).strip())


def _elapsed_seconds(started_at: float) -> int:
    return max(0, int(time.time() - started_at))


def _normalize_progress(payload: dict, started_at: float, stage: str, message: str) -> dict:
    out = dict(payload or {})
    out.setdefault("stage", stage)
    out.setdefault("message", message)
    out["percent"] = max(0, min(100, int(out.get("percent", 0) or 0)))
    out["elapsed_seconds"] = _elapsed_seconds(started_at)
    return out


def _cleanup_old_jobs() -> None:
    cutoff = time.time() - JOB_RETENTION_SECONDS
    with JOBS_LOCK:
        for job_id in list(JOBS.keys()):
            job = JOBS[job_id]
            if job.get("state") in ("done", "error") and float(job.get("started_at", 0)) < cutoff:
                JOBS.pop(job_id, None)


def _active_job_locked() -> bool:
    return any(job.get("state") in ("queued", "running") for job in JOBS.values())


def _has_active_job() -> bool:
    with JOBS_LOCK:
        return _active_job_locked()


def _load_records():
    try:
        return inventory.load(), None
    except InventoryCorrupt as exc:
        return [], str(exc)


def _start_download_job(era: Optional[str], limit: Optional[int], rescan: bool) -> str:
    job_id = uuid.uuid4().hex
    started_at = time.time()
    with JOBS_LOCK:
        if _active_job_locked():
            raise JobCapacityError("A download job is already running")
        JOBS[job_id] = {
            "state": "queued",
            "error": None,
            "started_at": started_at,
            "progress": _normalize_progress({}, started_at, stage="queued", message="Queued"),
            "result": None,
        }

    def _runner() -> None:
        def _update(payload: dict) -> None:
            with JOBS_LOCK:
                if job_id in JOBS:
                    JOBS[job_id]["state"] = "running"
                    JOBS[job_id]["progress"] = _normalize_progress(payload, started_at, stage="download", message="Downloading")

        try:
            records = inventory.load()
            pipeline = Pipeline(settings, inventory, history=store, progress_callback=_update)
            summary = pipeline.run(records, rescan=rescan, era=era, limit=limit)
            with JOBS_LOCK:
                if job_id in JOBS:
                    JOBS[job_id]["state"] = "done"
                    JOBS[job_id]["result"] = asdict(summary)
                    JOBS[job_id]["progress"] = _normalize_progress(
                        {"percent": 100}, started_at, stage="done", message="Download completed"
                    )
        except Exception as exc:
            logger.exception("download job %s failed", job_id)
            store.add_run_history("download", "error", era=era, summary={"error": str(exc)})
            with JOBS_LOCK:
                if job_id in JOBS:
                    JOBS[job_id]["state"] = "error"
                    JOBS[job_id]["error"] = str(exc)
                    JOBS[job_id]["progress"] = _normalize_progress({}, started_at, stage="error", message=str(exc))

    thread = threading.Thread(target=_runner, daemon=True)
    thread.start()
    return job_id


@app.get("/")
def index():
    records, error = _load_records()
    eras: dict[str, int] = {}
    for record in records:
        eras[record.era] = eras.get(record.era, 0) + 1
    return jsonify(
        {
            "ok": error is None,
            "error": error,
            "inventory": {
                "total": len(records),
                "status": count_by_status(records),
                "eras": eras,
            },
            "recent_runs": store.list_recent_runs(limit=8),
        }
    )


@app.get("/inventory")
def inventory_list():
    records, error = _load_records()
    if error:
        return jsonify({"ok": False, "error": error}), 500
    status = request.args.get("status", "").strip()
    era = request.args.get("era", "").strip()
    if status:
        records = [r for r in records if r.status == status]
    if era:
        records = [r for r in records if r.era == era]
    return jsonify({"ok": True, "count": len(records), "items": [r.to_dict() for r in records]})


@app.post("/download/start")
def download_start():
    payload = request.get_json(silent=True) or {}
    era = str(payload.get("era") or request.form.get("era") or "").strip() or None
    rescan = _parse_bool(str(payload.get("rescan") or request.form.get("rescan") or ""), default=False)
    try:
        limit = _parse_optional_int(payload.get("limit", request.form.get("limit")))
    except ValueError:
        return jsonify({"ok": False, "error": "limit must be an integer"}), 400
    if limit is not None and limit < 0:
        return jsonify({"ok": False, "error": "limit must be positive"}), 400

    _cleanup_old_jobs()
    try:
        job_id = _start_download_job(era, limit, rescan)
    except JobCapacityError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 409
    return jsonify({"ok": True, "job_id": job_id}), 202


@app.get("/download/status/<job_id>")
def download_status(job_id: str):
    with JOBS_LOCK:
        job = JOBS.get(job_id)
        if not job:
            return jsonify({"ok": False, "error": "Job not found"}), 404
        payload = {
            "ok": True,
            "state": job["state"],
            "error": job["error"],
            "progress": dict(job["progress"]),
            "result": job["result"],
        }
    return jsonify(payload)


@app.get("/archive/<path:subpath>")
def archive_file(subpath: str):
    root = settings.data_root
    if not is_within(root, root / subpath):
        abort(404)
    return send_from_directory(str(root), subpath)


@app.get("/diagnostics")
def diagnostics():
    db_path: Path = settings.db_path
    return jsonify(
        {
            "ok": True,
            "config": {
                "archive_base": settings.archive_base,
                "data_root": str(settings.data_root),
                "inventory_path": str(settings.inventory_path),
                "concurrency": settings.concurrency,
                "asset_workers": settings.asset_workers,
                "max_redirects": settings.max_redirects,
            },
            "runtime": {
                "active_job": _has_active_job(),
                "jobs": len(JOBS),
            },
            "storage": {
                "db_path": str(db_path),
                "db_size_bytes": int(db_path.stat().st_size) if db_path.exists() else 0,
                "inventory_exists": inventory.exists(),
            },
        }
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    app.run(host=os.environ.get("HOST", "127.0.0.1"), port=int(os.environ.get("PORT", "5000")))
