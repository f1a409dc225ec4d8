"""Durable task queue on SQLite.

Tasks move pending → processing → completed | failed, or pending → cancelled
when their job finishes. claim_next() is the only contended operation: it
runs inside BEGIN IMMEDIATE so two workers can never leave with the same
task. A claim also stamps a lease; reclaim_expired() puts tasks whose
worker died mid-task back to pending.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from harvest_engine.config import cfg
from harvest_engine.db.init_db import get_conn, now_iso
from harvest_engine.models import (
    TASK_PRIORITY, JobStatus, Task, TaskStatus, TaskType, parse_payload,
)

logger = logging.getLogger(__name__)

# Tasks of jobs in any other state are left alone by claimers
_ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


def default_dedupe_key(task_type: TaskType, payload) -> Optional[str]:
    """One discover task per query, one extract per URL, one generate per domain within a job."""
    if task_type == TaskType.DISCOVER:
        return f"{payload.query.strip().lower()}|{payload.country.lower()}"
    if task_type == TaskType.EXTRACT:
        return payload.url.strip()
    if task_type == TaskType.GENERATE:
        return payload.domain.strip().lower()
    return None


# ── Enqueue ──


def enqueue(job_id: int, task_type: TaskType | str, payload: BaseModel | dict,
            priority: Optional[int] = None, dedupe_key: Optional[str] = None) -> Optional[int]:
    """Insert a pending task. Returns its id, or None if an identical task already exists for the job."""
    task_type = TaskType(task_type)
    raw = payload.model_dump() if isinstance(payload, BaseModel) else payload
    model = parse_payload(task_type, raw)
    if priority is None:
        priority = TASK_PRIORITY[task_type]
    if dedupe_key is None:
        dedupe_key = default_dedupe_key(task_type, model)

    conn = get_conn()
    cur = conn.execute("""
        INSERT OR IGNORE INTO queue (job_id, task_type, payload, dedupe_key, status, priority, created_at)
        VALUES (?, ?, ?, ?, 'pending', ?, ?)
    """, (job_id, task_type.value, json.dumps(model.model_dump()), dedupe_key, priority, now_iso()))
    task_id = cur.lastrowid if cur.rowcount else None
    conn.commit()
    conn.close()

    if task_id is None:
        logger.debug("Skipped duplicate %s task for job %d (%s)", task_type.value, job_id, dedupe_key)
    return task_id


# ── Claim ──


def claim_many(task_type: TaskType | str, worker_id: str, limit: int = 1) -> list[Task]:
    """Atomically claim up to `limit` pending tasks of one type, best priority then oldest first."""
    task_type = TaskType(task_type)
    now = datetime.now()
    lease_until = now_iso(now + timedelta(seconds=cfg.task_lease_seconds))

    conn = get_conn()
    conn.isolation_level = None
    claimed_ids: list[int] = []
    try:
        conn.execute("BEGIN IMMEDIATE")
        rows = conn.execute("""
            SELECT q.id, q.job_id FROM queue q
            JOIN jobs j ON j.id = q.job_id
            WHERE q.task_type = ? AND q.status = 'pending'
              AND j.status IN (?, ?)
            ORDER BY q.priority ASC, q.created_at ASC, q.id ASC
            LIMIT ?
        """, (task_type.value, *_ACTIVE_JOB_STATUSES, max(1, limit))).fetchall()

        for r in rows:
            cur = conn.execute("""
                UPDATE queue
                SET status = 'processing', claimed_by = ?, started_at = ?,
                    lease_expires_at = ?, completed_at = NULL, error_message = NULL
                WHERE id = ? AND status = 'pending'
            """, (worker_id, now_iso(now), lease_until, r["id"]))
            if cur.rowcount == 1:
                claimed_ids.append(r["id"])
                conn.execute("""
                    UPDATE jobs SET status = 'running', updated_at = ?
                    WHERE id = ? AND status = 'pending'
                """, (now_iso(now), r["job_id"]))
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        conn.close()
        raise

    tasks = []
    if claimed_ids:
        marks = ",".join("?" * len(claimed_ids))
        rows = conn.execute(
            f"SELECT * FROM queue WHERE id IN ({marks}) ORDER BY priority, created_at, id",
            claimed_ids,
        ).fetchall()
        tasks = [Task.from_row(r) for r in rows]
    conn.close()
    return tasks


def claim_next(task_type: TaskType | str, worker_id: str) -> Optional[Task]:
    tasks = claim_many(task_type, worker_id, 1)
    return tasks[0] if tasks else None


# ── Finish ──


def complete(task_id: int, ok: bool = True, error: Optional[str] = None) -> bool:
    """processing → completed (ok) or failed (with error text). False if the task was not processing."""
    status = TaskStatus.COMPLETED if ok else TaskStatus.FAILED
    conn = get_conn()
    cur = conn.execute("""
        UPDATE queue
        SET status = ?, completed_at = ?, error_message = ?, lease_expires_at = NULL
        WHERE id = ? AND status = 'processing'
    """, (status.value, now_iso(), None if ok else (error or "failed")[:2000], task_id))
    changed = cur.rowcount == 1
    conn.commit()
    conn.close()
    if not changed:
        logger.warning("Task %d was not processing; %s ignored", task_id, status.value)
    return changed


def cancel_pending(job_id: int) -> int:
    """Cancel every still-pending task of a job. Returns the number cancelled."""
    conn = get_conn()
    cur = conn.execute("""
        UPDATE queue SET status = 'cancelled', completed_at = ?
        WHERE job_id = ? AND status = 'pending'
    """, (now_iso(), job_id))
    n = cur.rowcount
    conn.commit()
    conn.close()
    if n:
        logger.info("Cancelled %d pending tasks for job %d", n, job_id)
    return n


def cancel_claimed(task_id: int) -> bool:
    """processing → cancelled, for a claimed task whose job finished before it ran."""
    conn = get_conn()
    cur = conn.execute("""
        UPDATE queue SET status = 'cancelled', completed_at = ?, lease_expires_at = NULL
        WHERE id = ? AND status = 'processing'
    """, (now_iso(), task_id))
    changed = cur.rowcount == 1
    conn.commit()
    conn.close()
    return changed


def reclaim_expired(now: Optional[datetime] = None) -> int:
    """Return processing tasks whose lease ran out to pending. Returns the number reclaimed.

    A task that has already used up cfg.task_max_attempts leases is marked
    failed instead, so a task that kills its worker cannot cycle forever.
    """
    cutoff = now_iso(now)
    max_attempts = max(1, cfg.task_max_attempts)
    conn = get_conn()
    cur = conn.execute("""
        UPDATE queue
        SET status = 'failed', completed_at = ?, lease_expires_at = NULL,
            attempts = attempts + 1, error_message = ?
        WHERE status = 'processing' AND lease_expires_at IS NOT NULL AND lease_expires_at < ?
          AND attempts + 1 >= ?
    """, (now_iso(), f"LeaseExpired: gave up after {max_attempts} attempts", cutoff, max_attempts))
    given_up = cur.rowcount
    cur = conn.execute("""
        UPDATE queue
        SET status = 'pending', claimed_by = NULL, started_at = NULL,
            lease_expires_at = NULL, attempts = attempts + 1
        WHERE status = 'processing' AND lease_expires_at IS NOT NULL AND lease_expires_at < ?
    """, (cutoff,))
    n = cur.rowcount
    conn.commit()
    conn.close()
    if given_up:
        logger.warning("Failed %d tasks after %d expired leases", given_up, max_attempts)
    if n:
        logger.warning("Reclaimed %d tasks with expired leases", n)
    return n


# ── Reads ──


def get_task(task_id: int) -> Optional[Task]:
    conn = get_conn()
    row = conn.execute("SELECT * FROM queue WHERE id = ?", (task_id,)).fetchone()
    conn.close()
    return Task.from_row(row) if row else None


def list_tasks(job_id: int, status: Optional[TaskStatus | str] = None,
               task_type: Optional[TaskType | str] = None, limit: int = 500) -> list[Task]:
    clauses = ["job_id = ?"]
    params: list = [job_id]
    if status is not None:
        clauses.append("status = ?")
        params.append(TaskStatus(status).value)
    if task_type is not None:
        clauses.append("task_type = ?")
        params.append(TaskType(task_type).value)
    params.append(limit)

    conn = get_conn()
    rows = conn.execute(
        f"SELECT * FROM queue WHERE {' AND '.join(clauses)} ORDER BY id LIMIT ?", params
    ).fetchall()
    conn.close()
    return [Task.from_row(r) for r in rows]


def counts_by_status(job_id: Optional[int] = None) -> dict[str, int]:
    """Task counts keyed by status (every status present, zero-filled)."""
    conn = get_conn()
    if job_id is None:
        rows = conn.execute("SELECT status, COUNT(*) AS n FROM queue GROUP BY status").fetchall()
    else:
        rows = conn.execute(
            "SELECT status, COUNT(*) AS n FROM queue WHERE job_id = ? GROUP BY status", (job_id,)
        ).fetchall()
    conn.close()
    counts = {s.value: 0 for s in TaskStatus}
    counts.update({r["status"]: r["n"] for r in rows})
    return counts


def pending_count(task_type: Optional[TaskType | str] = None) -> int:
    """Pending tasks that a worker could claim right now (job still active)."""
    sql = """
        SELECT COUNT(*) FROM queue q JOIN jobs j ON j.id = q.job_id
        WHERE q.status = 'pending' AND j.status IN (?, ?)
    """
    params: list = list(_ACTIVE_JOB_STATUSES)
    if task_type is not None:
        sql += " AND q.task_type = ?"
        params.append(TaskType(task_type).value)
    conn = get_conn()
    n = conn.execute(sql, params).fetchone()[0]
    conn.close()
    return n


def processing_count() -> int:
    conn = get_conn()
    n = conn.execute("SELECT COUNT(*) FROM queue WHERE status = 'processing'").fetchone()[0]
    conn.close()
    return n
