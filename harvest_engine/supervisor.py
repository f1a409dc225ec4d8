"""Supervisor: keeps worker processes running while there is work.

Holds a fixed number of slots per task type. Each poll it sweeps expired
leases, then fills any empty slot whose type has claimable tasks by
launching `python -m harvest_engine.cli worker --type T --id ID`. Returns
once no worker is alive and nothing is pending or processing.
"""

import logging
import signal
import subprocess
import sys
import time
from typing import Callable, Optional

from harvest_engine import task_queue
from harvest_engine.config import cfg
from harvest_engine.models import TaskType

logger = logging.getLogger(__name__)

# (worker_type, worker_id) -> Popen-like object with poll() / terminate() / wait()
Spawner = Callable[[TaskType, str], subprocess.Popen]


def spawn_worker_process(worker_type: TaskType, worker_id: str) -> subprocess.Popen:
    cmd = [sys.executable, "-m", "harvest_engine.cli", "worker",
           "--type", worker_type.value, "--id", worker_id]
    logger.info("Launching %s", " ".join(cmd[1:]))
    return subprocess.Popen(cmd)


class Supervisor:
    def __init__(self, counts: Optional[dict] = None, spawner: Optional[Spawner] = None,
                 poll_seconds: Optional[float] = None):
        counts = counts or {t: 1 for t in TaskType}
        self.counts = {TaskType(t): min(max(int(n), 0), cfg.supervisor_max_per_type)
                       for t, n in counts.items()}
        self.spawner = spawner or spawn_worker_process
        self.poll_seconds = cfg.supervisor_poll_seconds if poll_seconds is None else poll_seconds
        self.slots: dict[TaskType, list] = {t: [None] * n for t, n in self.counts.items()}
        self.spawned = 0
        self._stopping = False

    def _alive(self) -> int:
        return sum(1 for procs in self.slots.values() for p in procs if p is not None)

    def _reap(self):
        for t, procs in self.slots.items():
            for i, p in enumerate(procs):
                if p is not None and p.poll() is not None:
                    if p.returncode:
                        logger.warning("%s worker slot %d exited with %d", t.value, i, p.returncode)
                    procs[i] = None

    def step(self) -> bool:
        """One poll: reap, reclaim, respawn. Returns False once all work is done."""
        self._reap()
        task_queue.reclaim_expired()
        if self._stopping:
            return self._alive() > 0

        for t, procs in self.slots.items():
            if task_queue.pending_count(t) == 0:
                continue
            for i, p in enumerate(procs):
                if p is None:
                    self.spawned += 1
                    procs[i] = self.spawner(t, f"{t.value}_sup{self.spawned}")

        if self._alive():
            return True
        pending = sum(task_queue.pending_count(t) for t, n in self.counts.items() if n)
        return pending > 0 or task_queue.processing_count() > 0

    def shutdown(self, *_):
        """Terminate all children; used for SIGINT/SIGTERM."""
        self._stopping = True
        for procs in self.slots.values():
            for p in procs:
                if p is not None and p.poll() is None:
                    p.terminate()
        for procs in self.slots.values():
            for p in procs:
                if p is not None:
                    try:
                        p.wait(timeout=10)
                    except subprocess.TimeoutExpired:
                        p.kill()
        self._reap()

    def run(self) -> int:
        """Block until all work is done or a signal arrives. Returns workers spawned."""
        previous = {sig: signal.signal(sig, self.shutdown) for sig in (signal.SIGINT, signal.SIGTERM)}
        logger.info("Supervisor started: %s",
                    ", ".join(f"{t.value}={n}" for t, n in self.counts.items()))
        try:
            while self.step():
                time.sleep(self.poll_seconds)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
        logger.info("Supervisor finished after spawning %d workers", self.spawned)
        return self.spawned
