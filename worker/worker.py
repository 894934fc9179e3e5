"""
Worker that polls Supabase for queued session jobs and runs them.
Job kinds:
  collect  -- full pipeline over config.urls
  search   -- ranked search of stored sessions for config.query
Requires env vars:
  SUPABASE_URL
  SUPABASE_SERVICE_ROLE_KEY
Optional:
  SESSIONS_DB_PATH (default sessions.db)
  JOBS_POLL_INTERVAL (seconds, default 10)
  JOBS_BATCH_LIMIT (default 1)
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
import traceback
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from supabase import Client, create_client

from ingestion.fetcher import ContentSource
from ingestion.http_source import UrlListSource
from pipelines.session_pipeline import (
    Notifier,
    PipelineReport,
    SearchReport,
    SessionPipeline,
    SessionPipelineConfig,
)

load_dotenv()

POLL_INTERVAL = int(os.getenv("JOBS_POLL_INTERVAL", "10"))
BATCH_LIMIT = int(os.getenv("JOBS_BATCH_LIMIT", "1"))
DB_PATH = os.getenv("SESSIONS_DB_PATH", "sessions.db")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_path(val: Optional[str]) -> Optional[Path]:
    if not val:
        return None
    return Path(val).expanduser().resolve()


def _build_config(job: Dict[str, Any]) -> SessionPipelineConfig:
    cfg = job.get("config") or {}
    kwargs: Dict[str, Any] = {"catalog_path": _to_path(cfg.get("catalog_path") or DB_PATH)}
    path_fields = {"catalog_path", "raw_response_dir"}
    for field in fields(SessionPipelineConfig):
        name = field.name
        if name == "catalog_path" or name not in cfg:
            continue
        val = cfg[name]
        if name in path_fields and val is not None:
            kwargs[name] = _to_path(val)
        else:
            kwargs[name] = val
    return SessionPipelineConfig(**kwargs)


def _build_source(job: Dict[str, Any]) -> ContentSource:
    cfg = job.get("config") or {}
    urls = cfg.get("urls") or []
    if isinstance(urls, str):
        urls = urls.split()
    return UrlListSource(urls)


def _post_event(sb: Client, job_id: str, event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
    try:
        sb.table("job_events").insert(
            {"job_id": job_id, "event_type": event_type, "message": message, "data": data or {}, "created_at": _utcnow().isoformat()}
        ).execute()
    except Exception:
        traceback.print_exc()


def _update_job(sb: Client, job_id: str, payload: Dict[str, Any]) -> None:
    payload["updated_at"] = _utcnow().isoformat()
    sb.table("jobs").update(payload).eq("id", job_id).execute()


def _claim_next_job(sb: Client) -> Optional[Dict[str, Any]]:
    res = sb.table("jobs").select("*").eq("status", "queued").order("created_at", desc=False).limit(BATCH_LIMIT).execute()
    jobs = res.data or []
    for job in jobs:
        job_id = job["id"]
        updated = sb.table("jobs").update({"status": "running", "started_at": _utcnow().isoformat()}).eq("id", job_id).eq(
            "status", "queued"
        ).execute()
        if updated.data:
            return job
    return None


class SupabaseNotifier(Notifier):
    """Publishes run outcomes as job_events rows."""

    def __init__(self, sb: Client, job_id: str) -> None:
        self.sb = sb
        self.job_id = job_id

    def completed(self, count: int, report: PipelineReport) -> None:
        _post_event(self.sb, self.job_id, "pipeline-completed", f"{count} documents filed", report.to_dict())

    def failed(self, reason: str) -> None:
        _post_event(self.sb, self.job_id, "pipeline-failed", reason)

    def search_completed(self, report: SearchReport) -> None:
        _post_event(self.sb, self.job_id, "search-completed", f"{len(report.hits)} hits", report.to_dict())


def run_job(sb: Client, job: Dict[str, Any]) -> None:
    job_id = job["id"]
    kind = (job.get("kind") or (job.get("config") or {}).get("kind") or "collect").lower()
    print(f"[worker] running {kind} job {job_id}", flush=True)
    _post_event(sb, job_id, "status", f"Starting {kind} job")
    try:
        config = _build_config(job)
        pipeline = SessionPipeline(config, _build_source(job), notifier=SupabaseNotifier(sb, job_id))
        if kind == "collect":
            asyncio.run(pipeline.run())
        elif kind == "search":
            query = (job.get("config") or {}).get("query") or job.get("query") or ""
            if not query.strip():
                raise ValueError("Search job missing query in config.")
            asyncio.run(pipeline.search(query))
        else:
            raise ValueError(f"Unknown job kind: {kind}")
        _update_job(
            sb,
            job_id,
            {"status": "completed", "finished_at": _utcnow().isoformat(), "error": None},
        )
        _post_event(sb, job_id, "status", f"Completed {kind} job")
    except Exception as exc:
        err_text = f"{type(exc).__name__}: {exc}"
        _post_event(sb, job_id, "log", f"Job failed: {err_text}", {"traceback": traceback.format_exc()})
        _update_job(sb, job_id, {"status": "failed", "finished_at": _utcnow().isoformat(), "error": err_text})


def main() -> None:
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        print("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY", file=sys.stderr)
        sys.exit(1)

    sb = create_client(url, key)
    print("[worker] started; polling for jobs...", flush=True)
    while True:
        job = _claim_next_job(sb)
        if not job:
            time.sleep(POLL_INTERVAL)
            continue
        run_job(sb, job)


if __name__ == "__main__":
    main()
