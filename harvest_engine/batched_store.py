"""Buffered append-only store of accepted (fingerprint, domain) pairs.

One "fingerprint|domain" line per accepted email. The buffer is written
out when it reaches batch_size and on flush()/close().
"""

import fcntl
import logging
import shutil
from pathlib import Path

from harvest_engine.config import cfg

logger = logging.getLogger(__name__)

BLOOM_FILE = "bloom.bin"
STORE_FILE = "emails.tmp"


def job_storage_dir(job_id: int) -> Path:
    """Per-job directory holding the bloom filter and the batched store."""
    return Path(cfg.storage_dir) / f"job_{job_id}"


def remove_job_storage(job_id: int) -> bool:
    path = job_storage_dir(job_id)
    if not path.exists():
        return False
    shutil.rmtree(path)
    logger.info("Removed storage for job %d", job_id)
    return True


class BatchedStore:
    def __init__(self, file_path: Path | str, batch_size: int | None = None):
        self.file_path = Path(file_path)
        self.batch_size = batch_size or cfg.store_batch_size
        self._buffer: list[str] = []
        self.file_path.parent.mkdir(parents=True, exist_ok=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.flush()

    def add(self, fingerprint: str, domain: str):
        self._buffer.append(f"{fingerprint}|{domain}")
        if len(self._buffer) >= self.batch_size:
            self.flush()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def flush(self) -> int:
        """Append the buffer to disk under an exclusive lock. Returns lines written."""
        if not self._buffer:
            return 0
        data = "\n".join(self._buffer) + "\n"
        with open(self.file_path, "a", encoding="utf-8") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(data)
                f.flush()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        written = len(self._buffer)
        self._buffer = []
        logger.debug("Flushed %d entries to %s", written, self.file_path)
        return written

    close = flush

    def read_all(self) -> list[dict]:
        if not self.file_path.exists():
            return []
        rows = []
        for line in self.file_path.read_text(encoding="utf-8").splitlines():
            parts = line.strip().split("|")
            if len(parts) == 2 and parts[0]:
                rows.append({"hash": parts[0], "domain": parts[1]})
        return rows

    def count(self) -> int:
        if not self.file_path.exists():
            return 0
        with open(self.file_path, encoding="utf-8") as f:
            return sum(1 for line in f if line.strip())

    def clear(self):
        self._buffer = []
        if self.file_path.exists():
            self.file_path.unlink()
