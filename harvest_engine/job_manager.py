"""Job lifecycle: create (fanning out discover tasks), inspect, stop, resume, delete.

Also owns the emails table writes so total_emails stays in step with it.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from harvest_engine import task_queue
from harvest_engine.batched_store import remove_job_storage
from harvest_engine.config import cfg
from harvest_engine.db.init_db import get_conn, now_iso
from harvest_engine.models import (
    DiscoverPayload, JobCreateRequest, JobStatus, TaskType, WorkerStatus,
)

logger = logging.getLogger(__name__)


# ── Search query fan-out ──


def build_search_queries(niche: str, country: str = "", depth: int | None = None) -> list[str]:
    """Expand comma-separated niche keywords into distinct search queries, capped at `depth`."""
    depth = cfg.default_search_depth if depth is None else depth
    country = (country or "").strip()
    queries: list[str] = []
    for kw in (k.strip() for k in (niche or "").split(",")):
        if not kw:
            continue
        if country:
            queries.append(f"{kw} in {country}")
            queries.append(f"{kw} {country}")
        queries.extend([
            kw,
            f"{kw} companies",
            f"{kw} businesses",
            f"{kw} directory",
            f"{kw} email contacts",
        ])
        if depth >= 20:
            queries.extend([
                f"top {kw} companies",
                f"best {kw} services",
                f"{kw} providers",
            ])

    seen = set()
    unique = []
    for q in queries:
        key = q.lower()
        if key not in seen:
            seen.add(key)
            unique.append(q)
    return unique[:max(depth, 0)]


# ── Job CRUD ──


def create_job(req: JobCreateRequest, now: Optional[datetime] = None) -> int:
    """Insert a job and enqueue one discover task per generated query. Returns the job id."""
    created = now or datetime.now()
    deadline = None
    if req.time_limit_minutes > 0:
        deadline = now_iso(created + timedelta(minutes=req.time_limit_minutes))

    conn = get_conn()
    cur = conn.execute("""
        INSERT INTO jobs (name, niche, country_code, email_type, speed_mode, search_depth,
                          status, target_email_count, time_limit_minutes, deadline,
                          total_emails, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, 0, ?, ?)
    """, (req.name, req.niche, req.country_code, req.email_type, req.speed_mode,
          req.search_depth, req.target_email_count, req.time_limit_minutes, deadline,
          now_iso(created), now_iso(created)))
    job_id = cur.lastrowid
    conn.commit()
    conn.close()

    queries = build_search_queries(req.niche, req.country_code, req.search_depth)
    for q in queries:
        task_queue.enqueue(job_id, TaskType.DISCOVER,
                           DiscoverPayload(query=q, country=req.country_code, niche=req.niche))

    logger.info("Created job %d '%s' with %d discover tasks", job_id, req.name, len(queries))
    return job_id


def get_job(job_id: int) -> Optional[dict]:
    conn = get_conn()
    row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
    conn.close()
    return dict(row) if row else None


def list_jobs(status: Optional[str] = None, limit: int = 50) -> list[dict]:
    conn = get_conn()
    if status:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE status = ? ORDER BY id DESC LIMIT ?", (status, limit)
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM jobs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    conn.close()
    return [dict(r) for r in rows]


def set_status(job_id: int, status: JobStatus, only_from: tuple[JobStatus, ...] = ()) -> bool:
    """Move a job to `status`; when `only_from` is given the job must currently be in one of those."""
    ts = now_iso()
    completed_at = ts if status in (JobStatus.COMPLETED, JobStatus.FAILED) else None
    sql = "UPDATE jobs SET status = ?, updated_at = ?, completed_at = COALESCE(?, completed_at) WHERE id = ?"
    params: list = [status.value, ts, completed_at, job_id]
    if only_from:
        sql += f" AND status IN ({','.join('?' * len(only_from))})"
        params.extend(s.value for s in only_from)
    conn = get_conn()
    cur = conn.execute(sql, params)
    changed = cur.rowcount == 1
    conn.commit()
    conn.close()
    return changed


def stop_job(job_id: int) -> bool:
    """Advisory stop: workers stop claiming the job's tasks; in-flight tasks finish."""
    ok = set_status(job_id, JobStatus.STOPPED, only_from=(JobStatus.PENDING, JobStatus.RUNNING))
    if ok:
        logger.info("Stopped job %d", job_id)
    return ok


def resume_job(job_id: int) -> bool:
    ok = set_status(job_id, JobStatus.RUNNING, only_from=(JobStatus.STOPPED,))
    if ok:
        logger.info("Resumed job %d", job_id)
    return ok


def delete_job(job_id: int) -> bool:
    """Delete a job with its tasks, emails and alerts, plus its storage directory."""
    conn = get_conn()
    cur = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
    deleted = cur.rowcount == 1
    conn.commit()
    conn.close()
    if deleted:
        remove_job_storage(job_id)
        logger.info("Deleted job %d", job_id)
    return deleted


# ── Emails ──


def insert_emails(job_id: int, rows: list[dict]) -> list[str]:
    """INSERT OR IGNORE each row; duplicates per job are dropped silently.

    Each row: email, fingerprint, domain, email_type, source, company_name.
    Returns the addresses actually inserted and refreshes jobs.total_emails.
    """
    if not rows:
        return []
    ts = now_iso()
    inserted = []
    conn = get_conn()
    for r in rows:
        cur = conn.execute("""
            INSERT OR IGNORE INTO emails (job_id, email, fingerprint, domain, email_type,
                                          source, company_name, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (job_id, r["email"], r["fingerprint"], r.get("domain", ""),
              str(r.get("email_type", "domain")), str(r.get("source", "extracted")),
              r.get("company_name", ""), ts))
        if cur.rowcount:
            inserted.append(r["email"])
    conn.execute("""
        UPDATE jobs SET total_emails = (SELECT COUNT(*) FROM emails WHERE job_id = ?), updated_at = ?
        WHERE id = ?
    """, (job_id, ts, job_id))
    conn.commit()
    conn.close()
    return inserted


def list_emails(job_id: int, email_type: Optional[str] = None, domain: Optional[str] = None,
                limit: Optional[int] = None) -> list[dict]:
    clauses = ["job_id = ?"]
    params: list = [job_id]
    if email_type and email_type != "all":
        clauses.append("email_type = ?")
        params.append(email_type)
    if domain:
        clauses.append("domain = ?")
        params.append(domain.lower())
    sql = f"SELECT * FROM emails WHERE {' AND '.join(clauses)} ORDER BY id"
    if limit:
        sql += " LIMIT ?"
        params.append(limit)
    conn = get_conn()
    rows = conn.execute(sql, params).fetchall()
    conn.close()
    return [dict(r) for r in rows]


def recent_emails(limit: int = 20) -> list[dict]:
    conn = get_conn()
    rows = conn.execute("""
        SELECT e.email, e.domain, e.email_type, e.source, e.company_name, e.created_at,
               e.job_id, j.name AS job_name
        FROM emails e JOIN jobs j ON j.id = e.job_id
        ORDER BY e.id DESC LIMIT ?
    """, (limit,)).fetchall()
    conn.close()
    return [dict(r) for r in rows]


# ── Progress ──


def job_progress(job_id: int) -> Optional[dict]:
    job = get_job(job_id)
    if not job:
        return None
    counts = task_queue.counts_by_status(job_id)
    total = sum(counts.values())
    done = counts["completed"] + counts["failed"] + counts["cancelled"]
    return {
        "job_id": job_id,
        "name": job["name"],
        "status": job["status"],
        "total_emails": job["total_emails"],
        "target_email_count": job["target_email_count"],
        "deadline": job["deadline"],
        "tasks": counts,
        "total_tasks": total,
        "progress_pct": round(100.0 * done / total, 1) if total else 0.0,
    }


def global_stats(now: Optional[datetime] = None) -> dict:
    now = now or datetime.now()
    since = now_iso(now - timedelta(minutes=5))
    conn = get_conn()
    total_jobs = conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0]
    active_jobs = conn.execute(
        "SELECT COUNT(*) FROM jobs WHERE status IN ('pending', 'running')"
    ).fetchone()[0]
    total_emails = conn.execute("SELECT COUNT(*) FROM emails").fetchone()[0]
    recent = conn.execute("SELECT COUNT(*) FROM emails WHERE created_at >= ?", (since,)).fetchone()[0]
    active_workers = conn.execute(
        "SELECT COUNT(*) FROM workers WHERE status != ?", (WorkerStatus.STOPPED.value,)
    ).fetchone()[0]
    conn.close()

    counts = task_queue.counts_by_status()
    return {
        "total_jobs": total_jobs,
        "active_jobs": active_jobs,
        "total_emails": total_emails,
        "active_workers": active_workers,
        "pending_tasks": counts["pending"],
        "processing_tasks": counts["processing"],
        "completed_tasks": counts["completed"],
        "failed_tasks": counts["failed"],
        "emails_per_minute": round(recent / 5.0, 2),
    }
