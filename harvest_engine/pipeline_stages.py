"""Stage logic for the three task types.

discover  query → search provider → one extract task per usable result URL
extract   fetched page → emails (mailto + de-obfuscated text scan) → store;
          a page with no emails queues a generate task for its domain
generate  domain → role-based and company-slug candidate addresses → store

Raising StageError (or any exception) fails the task; the worker records
the message and moves on.
"""

import logging
from typing import Iterable, Optional
from urllib.parse import urlparse

from harvest_engine import job_manager, task_queue
from harvest_engine.batched_store import BLOOM_FILE, STORE_FILE, BatchedStore, job_storage_dir
from harvest_engine.bloom_filter import BloomFilter
from harvest_engine.config import cfg
from harvest_engine.email_hasher import (
    classify_email, extract_domain, extract_emails, extract_mailto, hash_email,
    is_valid_email, page_title, registrable_domain, slugify,
)
from harvest_engine.models import (
    DiscoverPayload, EmailSource, EmailType, ExtractPayload, FetchResult,
    GeneratePayload, ResultType, Task, TaskType,
)
from harvest_engine.notifications import raise_alert
from harvest_engine.search_provider import ProviderError, SearchProvider

logger = logging.getLogger(__name__)


class StageError(Exception):
    """Task-level failure; the message ends up in queue.error_message."""


ROLE_LOCAL_PARTS = [
    "info", "contact", "hello", "support", "sales",
    "admin", "office", "enquiries", "inquiries",
]

# Search engines and social sites never hold a business's own contact page
_EXCLUDED_HOSTS = ("bing.com", "yahoo.com", "duckduckgo.com", "youtube.com", "facebook.com")


def is_crawlable_url(url: str) -> bool:
    try:
        parsed = urlparse(url or "")
        parsed.port  # raises ValueError for a non-numeric or out-of-range port
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https"):
        return False
    host = (parsed.hostname or "").lower()
    if not host or "." not in host:
        return False
    if host == "google.com" or host.startswith("google.") or ".google." in host:
        return False
    return not any(host == d or host.endswith("." + d) for d in _EXCLUDED_HOSTS)


# ── Dedup + persistence for one job ──


class EmailSink:
    """Bloom filter, batched store and emails table for a single job."""

    def __init__(self, job_id: int, expected_elements: Optional[int] = None,
                 false_positive_rate: Optional[float] = None):
        self.job_id = job_id
        base = job_storage_dir(job_id)
        self.bloom = BloomFilter(
            expected_elements or cfg.bloom_expected_elements,
            false_positive_rate or cfg.bloom_false_positive_rate,
            base / BLOOM_FILE,
        )
        self.store = BatchedStore(base / STORE_FILE)

    def accept(self, job: dict, emails: Iterable[str], source: EmailSource,
               company_name: str = "", forced_type: Optional[EmailType] = None) -> list[str]:
        """Filter, dedupe and persist addresses. Returns the ones newly stored."""
        wanted = (job.get("email_type") or "all").lower()
        rows = []
        for email in emails:
            fingerprint = hash_email(email)
            if fingerprint is None:
                continue
            email_type = forced_type or classify_email(email)
            if wanted != "all" and email_type.value != wanted:
                logger.debug("Skipping %s (%s, job wants %s)", email, email_type.value, wanted)
                continue
            if self.bloom.contains(fingerprint):
                logger.debug("Bloom hit for %s", email)
                continue
            rows.append({
                "email": email.strip().lower(),
                "fingerprint": fingerprint,
                "domain": extract_domain(email) or "",
                "email_type": email_type.value,
                "source": source.value,
                "company_name": company_name,
            })

        inserted = set(job_manager.insert_emails(self.job_id, rows))
        stored = []
        for r in rows:
            if r["email"] in inserted:
                self.bloom.add(r["fingerprint"])
                self.store.add(r["fingerprint"], r["domain"])
                stored.append(r["email"])
        return stored

    def flush(self):
        self.store.flush()
        self.bloom.save()


# ── Stages ──


def discover(task: Task, payload: DiscoverPayload, provider: SearchProvider,
             result_types: Optional[list[str]] = None) -> int:
    """Search once per result type and enqueue extract tasks. Returns tasks enqueued."""
    types = [ResultType(t) for t in (result_types or cfg.search_result_types)]
    seen: set[str] = set()
    results = []
    for rt in types:
        try:
            found = provider.search(payload.query, country=payload.country or None,
                                    result_type=rt)
        except ProviderError as e:
            raise_alert("provider_error", f"{provider.name} {rt.value} search for "
                        f"'{payload.query}' failed: {e}", level="error",
                        job_id=task.job_id, task_id=task.id)
            raise
        for r in found or []:
            url = (r.url or "").strip()
            if url in seen:
                continue
            seen.add(url)
            if not is_crawlable_url(url):
                logger.debug("Dropping result URL %s", url)
                continue
            results.append(r)

    if not results:
        raise_alert("zero_results", f"query '{payload.query}' returned no usable URLs",
                    level="warning", job_id=task.job_id, task_id=task.id)
        return 0

    enqueued = 0
    for r in results:
        tid = task_queue.enqueue(task.job_id, TaskType.EXTRACT, ExtractPayload(
            url=r.url, company_name=r.title, niche=payload.niche, source=provider.name,
        ))
        if tid:
            enqueued += 1
    logger.info("Discover '%s': %d URLs, %d new extract tasks", payload.query, len(results), enqueued)
    return enqueued


def extract(task: Task, payload: ExtractPayload, page: FetchResult, job: dict,
            sink: EmailSink) -> int:
    """Pull emails from a fetched page. Returns the number newly stored."""
    if not page.success:
        raise StageError(page.error or f"fetch failed for {payload.url}")

    found = extract_mailto(page.content)
    for email in extract_emails(page.content):
        if email not in found:
            found.append(email)

    company = payload.company_name or page_title(page.content)

    if not found:
        domain = registrable_domain(payload.url)
        if domain:
            task_queue.enqueue(task.job_id, TaskType.GENERATE, GeneratePayload(
                domain=domain, company_name=company, niche=payload.niche,
            ))
            logger.info("No emails on %s, queued generate for %s", payload.url, domain)
        return 0

    stored = sink.accept(job, found, EmailSource.EXTRACTED, company_name=company)
    sink.flush()
    logger.info("Extracted %d emails from %s (%d new)", len(found), payload.url, len(stored))
    return len(stored)


def generate_candidates(domain: str, company_name: str = "") -> list[str]:
    domain = domain.strip().lower()
    candidates = [f"{local}@{domain}" for local in ROLE_LOCAL_PARTS]
    slug = slugify(company_name)
    if slug:
        candidates.append(f"{slug}@{domain}")
        candidates.append(f"hello@{slug}.{domain}")
    return [c for c in dict.fromkeys(candidates) if is_valid_email(c)]


def generate(task: Task, payload: GeneratePayload, job: dict, sink: EmailSink) -> int:
    """Store pattern-based addresses for a domain with no scraped email."""
    candidates = generate_candidates(payload.domain, payload.company_name)
    if not candidates:
        raise StageError(f"no valid candidates for domain {payload.domain!r}")
    stored = sink.accept(job, candidates, EmailSource.GENERATED,
                         company_name=payload.company_name, forced_type=EmailType.DOMAIN)
    sink.flush()
    logger.info("Generated %d emails for %s (%d new)", len(candidates), payload.domain, len(stored))
    return len(stored)
