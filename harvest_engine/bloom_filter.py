"""
Persistent bloom filter for email fingerprints.

Sizing follows the usual optimum for n expected elements and false-positive
rate p:  m = ceil(-n·ln p / (ln 2)^2) bits,  k = round(m/n · ln 2) probes.
Probe positions come from two MurmurHash3 (x86, 32-bit) values combined by
double hashing, h_i = (h1 + i·h2) mod m.

The bit array is a flat byte file. Concurrent workers may race on
load/modify/save; a lost update only lets a duplicate through to the emails
table, whose UNIQUE(job_id, email) constraint drops it.
"""

import fcntl
import logging
import math
import os
from pathlib import Path

logger = logging.getLogger(__name__)

_MASK32 = 0xFFFFFFFF


def murmur3_32(data: bytes, seed: int = 0) -> int:
    """MurmurHash3 x86_32."""
    c1, c2 = 0xCC9E2D51, 0x1B873593
    h = seed & _MASK32
    length = len(data)
    nblocks = length // 4

    for i in range(nblocks):
        k = int.from_bytes(data[i * 4:i * 4 + 4], "little")
        k = (k * c1) & _MASK32
        k = ((k << 15) | (k >> 17)) & _MASK32
        k = (k * c2) & _MASK32
        h ^= k
        h = ((h << 13) | (h >> 19)) & _MASK32
        h = (h * 5 + 0xE6546B64) & _MASK32

    tail = data[nblocks * 4:]
    k = 0
    if len(tail) >= 3:
        k ^= tail[2] << 16
    if len(tail) >= 2:
        k ^= tail[1] << 8
    if tail:
        k ^= tail[0]
        k = (k * c1) & _MASK32
        k = ((k << 15) | (k >> 17)) & _MASK32
        k = (k * c2) & _MASK32
        h ^= k

    h ^= length
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & _MASK32
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & _MASK32
    h ^= h >> 16
    return h


def optimal_size(expected_elements: int, false_positive_rate: float) -> tuple[int, int]:
    """Return (m bits, k hashes)."""
    if expected_elements <= 0:
        raise ValueError("expected_elements must be positive")
    if not 0 < false_positive_rate < 1:
        raise ValueError("false_positive_rate must be in (0, 1)")
    m = math.ceil(-expected_elements * math.log(false_positive_rate) / (math.log(2) ** 2))
    k = max(1, round((m / expected_elements) * math.log(2)))
    return m, k


class BloomFilter:
    def __init__(self, expected_elements: int = 1_000_000, false_positive_rate: float = 0.01,
                 file_path: Path | str | None = None):
        self.expected_elements = expected_elements
        self.false_positive_rate = false_positive_rate
        self.size, self.hash_count = optimal_size(expected_elements, false_positive_rate)
        self.file_path = Path(file_path) if file_path else None
        self._bits = bytearray(self._byte_length)
        self.load()

    @property
    def _byte_length(self) -> int:
        return (self.size + 7) // 8

    def _positions(self, fingerprint: str) -> list[int]:
        data = fingerprint.encode("utf-8")
        h1 = murmur3_32(data, 0)
        h2 = murmur3_32(data, h1) or 1
        return [(h1 + i * h2) % self.size for i in range(self.hash_count)]

    def add(self, fingerprint: str):
        for pos in self._positions(fingerprint):
            self._bits[pos >> 3] |= 1 << (pos & 7)

    def contains(self, fingerprint: str) -> bool:
        """False means definitely absent; True means probably present."""
        for pos in self._positions(fingerprint):
            if not self._bits[pos >> 3] & (1 << (pos & 7)):
                return False
        return True

    __contains__ = contains

    def clear(self):
        self._bits = bytearray(self._byte_length)

    # ── Persistence ──

    def _lock_path(self) -> Path:
        return self.file_path.with_name(self.file_path.name + ".lock")

    def load(self) -> bool:
        """Read the bit array from disk. A missing or wrong-sized file leaves the filter empty."""
        if not self.file_path or not self.file_path.exists():
            return False
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path(), "a+b") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_SH)
            try:
                raw = self.file_path.read_bytes()
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)
        if len(raw) != self._byte_length:
            logger.warning("Bloom file %s has %d bytes, expected %d, starting empty",
                           self.file_path, len(raw), self._byte_length)
            self.clear()
            return False
        self._bits = bytearray(raw)
        return True

    def save(self):
        if not self.file_path:
            return
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.file_path.with_name(self.file_path.name + f".{os.getpid()}.tmp")
        with open(self._lock_path(), "a+b") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                tmp.write_bytes(bytes(self._bits))
                os.replace(tmp, self.file_path)
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)
        logger.debug("Saved bloom filter to %s", self.file_path)

    def bits_set(self) -> int:
        return sum(bin(b).count("1") for b in self._bits)
