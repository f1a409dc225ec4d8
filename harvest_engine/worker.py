"""Worker loop: one process, one task type.

Claims tasks of its type, runs the stage, reports the outcome, checks job
completion, and repeats until it has processed max_tasks or found the
queue empty max_idle_checks times in a row. Exiting is normal: a
supervisor respawns workers while there is work.

Extract workers claim up to `parallelism` tasks per cycle and fetch their
pages together through ParallelFetcher.
"""

import logging
import os
import time
import uuid
from typing import Optional

from pydantic import ValidationError

from harvest_engine import completion_policy, job_manager, pipeline_stages, task_queue
from harvest_engine.config import cfg
from harvest_engine.db.init_db import get_conn, now_iso
from harvest_engine.models import Task, TaskType, WorkerStatus, parse_payload
from harvest_engine.parallel_fetcher import ParallelFetcher
from harvest_engine.search_provider import ProviderError, SearchProvider, get_provider

logger = logging.getLogger(__name__)

# Failures we expect from bad pages/payloads/providers; anything else is logged with a traceback
_EXPECTED_ERRORS = (pipeline_stages.StageError, ValidationError, ProviderError, ValueError)


# ── Worker registry ──


def register_worker(worker_id: str, worker_type: TaskType):
    ts = now_iso()
    conn = get_conn()
    conn.execute("""
        INSERT INTO workers (worker_id, worker_type, status, current_task_id, tasks_processed,
                             started_at, last_heartbeat)
        VALUES (?, ?, 'active', NULL, 0, ?, ?)
        ON CONFLICT(worker_id) DO UPDATE SET
            worker_type = excluded.worker_type, status = 'active', current_task_id = NULL,
            started_at = excluded.started_at, last_heartbeat = excluded.last_heartbeat
    """, (worker_id, worker_type.value, ts, ts))
    conn.commit()
    conn.close()


def heartbeat(worker_id: str, status: WorkerStatus, current_task_id: Optional[int] = None,
              processed_delta: int = 0) -> bool:
    """Update the heartbeat. Returns False if an operator has marked this worker stopped."""
    conn = get_conn()
    row = conn.execute("SELECT status FROM workers WHERE worker_id = ?", (worker_id,)).fetchone()
    if row is not None and row["status"] == WorkerStatus.STOPPED.value:
        conn.close()
        return False
    conn.execute("""
        UPDATE workers SET status = ?, current_task_id = ?, last_heartbeat = ?,
               tasks_processed = tasks_processed + ?
        WHERE worker_id = ?
    """, (status.value, current_task_id, now_iso(), processed_delta, worker_id))
    conn.commit()
    conn.close()
    return True


def mark_worker_stopped(worker_id: str):
    conn = get_conn()
    conn.execute("""
        UPDATE workers SET status = 'stopped', current_task_id = NULL, last_heartbeat = ?
        WHERE worker_id = ?
    """, (now_iso(), worker_id))
    conn.commit()
    conn.close()


def request_stop(worker_type: Optional[str] = None) -> int:
    """Ask running workers (of one type, or all) to exit at their next heartbeat."""
    conn = get_conn()
    if worker_type:
        cur = conn.execute(
            "UPDATE workers SET status = 'stopped' WHERE status != 'stopped' AND worker_type = ?",
            (TaskType(worker_type).value,),
        )
    else:
        cur = conn.execute("UPDATE workers SET status = 'stopped' WHERE status != 'stopped'")
    n = cur.rowcount
    conn.commit()
    conn.close()
    logger.info("Requested stop for %d workers", n)
    return n


def list_workers(active_only: bool = False) -> list[dict]:
    conn = get_conn()
    if active_only:
        rows = conn.execute(
            "SELECT * FROM workers WHERE status != 'stopped' ORDER BY started_at"
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM workers ORDER BY started_at").fetchall()
    conn.close()
    return [dict(r) for r in rows]


# ── Loop ──


class WorkerLoop:
    def __init__(self, worker_type: TaskType | str, worker_id: Optional[str] = None,
                 provider: Optional[SearchProvider] = None,
                 fetcher: Optional[ParallelFetcher] = None,
                 max_tasks: Optional[int] = None, max_idle_checks: Optional[int] = None,
                 idle_sleep: Optional[float] = None, parallelism: Optional[int] = None):
        self.worker_type = TaskType(worker_type)
        self.worker_id = worker_id or f"{self.worker_type.value}_{os.getpid()}_{uuid.uuid4().hex[:6]}"
        self._provider = provider
        self._fetcher = fetcher
        self.max_tasks = cfg.worker_max_tasks if max_tasks is None else max_tasks
        self.max_idle_checks = cfg.worker_max_idle_checks if max_idle_checks is None else max_idle_checks
        self.idle_sleep = cfg.worker_idle_sleep if idle_sleep is None else idle_sleep
        if self.worker_type == TaskType.EXTRACT:
            self.parallelism = max(1, parallelism or cfg.extract_parallelism)
        else:
            self.parallelism = 1
        self.processed = 0
        self.failed = 0
        self._stop = False
        self._sinks: dict[int, pipeline_stages.EmailSink] = {}
        self._tag = f"[{self.worker_type.value}:{self.worker_id}]"

    @property
    def provider(self) -> SearchProvider:
        if self._provider is None:
            self._provider = get_provider()
        return self._provider

    @property
    def fetcher(self) -> ParallelFetcher:
        if self._fetcher is None:
            self._fetcher = ParallelFetcher(max_in_flight=self.parallelism)
        return self._fetcher

    def stop(self):
        """Finish the current task, then exit."""
        self._stop = True

    def _sink(self, job_id: int) -> pipeline_stages.EmailSink:
        if job_id not in self._sinks:
            self._sinks[job_id] = pipeline_stages.EmailSink(job_id)
        return self._sinks[job_id]

    def run(self) -> int:
        """Process tasks until a bound is hit. Returns the number of tasks processed."""
        register_worker(self.worker_id, self.worker_type)
        logger.info("%s started (max_tasks=%d, parallelism=%d)", self._tag, self.max_tasks, self.parallelism)
        idle_checks = 0
        try:
            while not self._stop and self.processed < self.max_tasks:
                if not heartbeat(self.worker_id, WorkerStatus.ACTIVE):
                    logger.info("%s stop requested by operator", self._tag)
                    break

                limit = min(self.parallelism, self.max_tasks - self.processed)
                tasks = task_queue.claim_many(self.worker_type, self.worker_id, limit)
                if not tasks:
                    idle_checks += 1
                    if idle_checks >= self.max_idle_checks:
                        logger.info("%s queue empty, exiting", self._tag)
                        break
                    heartbeat(self.worker_id, WorkerStatus.IDLE)
                    time.sleep(self.idle_sleep)
                    continue

                idle_checks = 0
                if self.worker_type == TaskType.EXTRACT:
                    self._run_extract_batch(tasks)
                else:
                    for task in tasks:
                        self._run_one(task)
        finally:
            for sink in self._sinks.values():
                sink.flush()
            mark_worker_stopped(self.worker_id)

        logger.info("%s exiting: %d processed, %d failed", self._tag, self.processed, self.failed)
        return self.processed

    # ── Per-task ──

    def _finish(self, task: Task, error: Optional[BaseException] = None):
        if error is None:
            task_queue.complete(task.id, ok=True)
        else:
            self.failed += 1
            if isinstance(error, _EXPECTED_ERRORS):
                logger.error("%s task %d failed: %s", self._tag, task.id, error)
            else:
                logger.error("%s task %d crashed", self._tag, task.id,
                             exc_info=(type(error), error, error.__traceback__))
            task_queue.complete(task.id, ok=False, error=f"{type(error).__name__}: {error}")
        self.processed += 1
        heartbeat(self.worker_id, WorkerStatus.ACTIVE, task.id, processed_delta=1)
        completion_policy.evaluate(task.job_id)

    def _run_one(self, task: Task):
        heartbeat(self.worker_id, WorkerStatus.ACTIVE, task.id)
        logger.info("%s task %d (job %d)", self._tag, task.id, task.job_id)
        try:
            payload = parse_payload(task.task_type, task.payload)
            job = job_manager.get_job(task.job_id) or {}
            if task.task_type == TaskType.DISCOVER:
                pipeline_stages.discover(task, payload, self.provider)
            else:
                pipeline_stages.generate(task, payload, job, self._sink(task.job_id))
        except Exception as e:
            self._finish(task, e)
            return
        self._finish(task)

    def _run_extract_batch(self, tasks: list[Task]):
        payloads = {}
        for task in tasks:
            try:
                payloads[task.id] = parse_payload(task.task_type, task.payload)
            except (ValidationError, ValueError) as e:
                self._finish(task, e)

        runnable = [t for t in tasks if t.id in payloads]
        if not runnable:
            return
        try:
            pages = self.fetcher.fetch_many([payloads[t.id].url for t in runnable])
        except Exception as e:
            for task in runnable:
                self._finish(task, e)
            return
        by_url = {}
        for page in pages:
            by_url.setdefault(page.url, page)

        for task in runnable:
            payload = payloads[task.id]
            # A job can complete while its batch is being fetched
            if completion_policy.evaluate(task.job_id):
                task_queue.cancel_claimed(task.id)
                self.processed += 1
                continue
            heartbeat(self.worker_id, WorkerStatus.ACTIVE, task.id)
            try:
                job = job_manager.get_job(task.job_id) or {}
                pipeline_stages.extract(task, payload, by_url[payload.url], job,
                                        self._sink(task.job_id))
            except Exception as e:
                self._finish(task, e)
                continue
            self._finish(task)
