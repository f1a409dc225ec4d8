"""Decide whether a job is done, and if so freeze its remaining work.

A job completes when it has a target and total_emails has reached it, or
when it has a deadline and the deadline has passed. With neither set it
runs until its queue drains or an operator stops it. Checked by workers
after each task; there is no central timer.
"""

import logging
from datetime import datetime
from typing import Optional

from harvest_engine import task_queue
from harvest_engine.db.init_db import get_conn, now_iso
from harvest_engine.models import JobStatus
from harvest_engine.notifications import raise_alert

logger = logging.getLogger(__name__)


def completion_reason(job: dict, now: Optional[datetime] = None) -> str:
    """Return 'target' or 'deadline' when the job is done, else an empty string."""
    target = job.get("target_email_count") or 0
    if target > 0 and (job.get("total_emails") or 0) >= target:
        return "target"
    deadline = job.get("deadline")
    if deadline and now_iso(now) >= deadline:
        return "deadline"
    return ""


def evaluate(job_id: int, now: Optional[datetime] = None) -> bool:
    """Complete the job if its target or deadline is met. Returns True if the job is completed."""
    conn = get_conn()
    row = conn.execute(
        "SELECT id, status, target_email_count, total_emails, deadline FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()
    if row is None:
        conn.close()
        return False
    job = dict(row)

    if job["status"] == JobStatus.COMPLETED.value:
        conn.close()
        # Tasks enqueued by stages that finished after completion
        task_queue.cancel_pending(job_id)
        return True
    if job["status"] not in (JobStatus.PENDING.value, JobStatus.RUNNING.value):
        conn.close()
        return False

    reason = completion_reason(job, now)
    if not reason:
        conn.close()
        return False

    ts = now_iso(now)
    cur = conn.execute("""
        UPDATE jobs SET status = 'completed', completed_at = ?, updated_at = ?
        WHERE id = ? AND status IN ('pending', 'running')
    """, (ts, ts, job_id))
    won = cur.rowcount == 1
    conn.commit()
    conn.close()

    cancelled = task_queue.cancel_pending(job_id)
    if won:
        logger.info("Job %d completed (%s): %d emails, %d pending tasks cancelled",
                    job_id, reason, job["total_emails"], cancelled)
        raise_alert("job_completed",
                    f"reached {reason} with {job['total_emails']} emails",
                    level="info", job_id=job_id)
    return True
