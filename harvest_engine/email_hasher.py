"""Email extraction, validation and fingerprinting.

Every address that reaches the bloom filter or the emails table goes through
here first: candidates are pulled out of page text (after undoing common
"name [at] domain [dot] com" obfuscation), checked for format, dropped when
they point at placeholder domains or look like asset filenames, and then
fingerprinted with SHA-256 of the lower-cased, trimmed address.
"""

import hashlib
import html
import logging
import re
from urllib.parse import unquote, urlparse

from bs4 import BeautifulSoup

from harvest_engine.config import cfg
from harvest_engine.models import EmailType

logger = logging.getLogger(__name__)

_EMAIL_REGEX = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_VALID_REGEX = re.compile(r"^[a-z0-9._%+-]+@[a-z0-9-]+(?:\.[a-z0-9-]+)*\.[a-z]{2,}$")

# "[at]", "(at)", "{at}" with any surrounding whitespace
_BRACKET_AT = re.compile(r"\s*[\[\(\{]\s*at\s*[\]\)\}]\s*", re.IGNORECASE)
_BRACKET_DOT = re.compile(r"\s*[\[\(\{]\s*dot\s*[\]\)\}]\s*", re.IGNORECASE)
# "john at acme dot com", only when a " dot " follows, so prose like "us at" is left alone
_PLAIN_AT_DOT = re.compile(
    r"([A-Za-z0-9._%+-]+)\s+at\s+([A-Za-z0-9-]+(?:\s+dot\s+[A-Za-z0-9-]+)+)",
    re.IGNORECASE,
)
_PLAIN_DOT = re.compile(r"\s+dot\s+", re.IGNORECASE)

FAKE_DOMAINS = frozenset({
    "example.com", "example.org", "example.net",
    "test.com", "test.org", "test.net",
    "domain.com", "domain.org", "domain.net",
    "sample.com", "sample.org", "sample.net",
    "demo.com", "demo.org", "demo.net",
    "localhost", "localhost.localdomain",
    "invalid", "invalid.invalid",
    "yoursite.com", "yourdomain.com",
    "email.com", "mail.com",
    "sentry.io", "schema.org", "w3.org",
})

# Matched with their subdomains too: Sentry DSNs look like key@o123.ingest.sentry.io
_TRACKER_DOMAINS = ("sentry.io", "schema.org", "w3.org")

_ASSET_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico", ".bmp",
    ".css", ".js", ".json", ".woff", ".woff2", ".ttf", ".pdf", ".mp4",
)

PERSONAL_DOMAINS = frozenset({
    "gmail.com", "googlemail.com", "yahoo.com", "hotmail.com", "outlook.com",
    "live.com", "aol.com", "icloud.com", "me.com", "protonmail.com", "gmx.com",
})

EXECUTIVE_KEYWORDS = (
    "ceo", "cto", "cfo", "coo", "cmo", "founder", "cofounder", "owner",
    "president", "director", "vp", "chief", "partner", "principal",
)


def _fake_domains() -> frozenset[str]:
    if cfg.extra_fake_domains:
        return FAKE_DOMAINS | set(cfg.extra_fake_domains)
    return FAKE_DOMAINS


def normalize(email: str) -> str:
    return (email or "").strip().lower()


def extract_domain(email: str) -> str | None:
    """Domain part of an address, or None when it is not local@domain."""
    parts = normalize(email).split("@")
    if len(parts) != 2 or not parts[1]:
        return None
    return parts[1]


def is_valid_email(email: str) -> bool:
    e = normalize(email)
    if not e or len(e) > 254 or "/" in e:
        return False
    if not _VALID_REGEX.match(e):
        return False
    local, domain = e.split("@", 1)
    if local.startswith(".") or local.endswith(".") or ".." in local:
        return False
    if len(local) > 64:
        return False
    if any(label.startswith("-") or label.endswith("-") for label in domain.split(".")):
        return False
    if e.endswith(_ASSET_EXTENSIONS):
        return False
    return True


def is_fake_domain(email: str) -> bool:
    domain = extract_domain(email)
    if not domain:
        return True
    if domain in _fake_domains():
        return True
    return any(domain.endswith("." + d) for d in _TRACKER_DOMAINS)


def hash_email(email: str | None) -> str | None:
    """SHA-256 fingerprint of the canonical address; None for invalid or placeholder input."""
    if email is None:
        return None
    e = normalize(email)
    if not is_valid_email(e) or is_fake_domain(e):
        return None
    return hashlib.sha256(e.encode("utf-8")).hexdigest()


def deobfuscate(text: str) -> str:
    """Turn "[at]"/"(at)"/" at " and "[dot]"/"(dot)"/" dot " forms back into an address."""
    if not text:
        return ""
    out = html.unescape(text)
    out = _BRACKET_AT.sub("@", out)
    out = _BRACKET_DOT.sub(".", out)

    def _join(m: re.Match) -> str:
        return f"{m.group(1)}@{_PLAIN_DOT.sub('.', m.group(2))}"

    return _PLAIN_AT_DOT.sub(_join, out)


def extract_emails(text: str) -> list[str]:
    """Valid, non-placeholder addresses in first-seen order, no duplicates."""
    if not text:
        return []
    seen: set[str] = set()
    found: list[str] = []
    for match in _EMAIL_REGEX.findall(deobfuscate(text)):
        email = normalize(match).rstrip(".")
        if email in seen:
            continue
        if not is_valid_email(email) or is_fake_domain(email):
            logger.debug("Dropped candidate %s", email)
            continue
        seen.add(email)
        found.append(email)
    return found


def extract_mailto(page_html: str) -> list[str]:
    """Addresses from mailto: links, same filtering as extract_emails."""
    if not page_html:
        return []
    soup = BeautifulSoup(page_html, "html.parser")
    found: list[str] = []
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href.lower().startswith("mailto:"):
            continue
        addr = unquote(href[7:].split("?")[0])
        for email in addr.split(","):
            email = normalize(email)
            if email and email not in found and is_valid_email(email) and not is_fake_domain(email):
                found.append(email)
    return found


def page_title(page_html: str) -> str:
    if not page_html:
        return ""
    soup = BeautifulSoup(page_html, "html.parser")
    if soup.title and soup.title.string:
        return " ".join(soup.title.string.split())[:200]
    return ""


def classify_email(email: str) -> EmailType:
    """personal webmail → PERSONAL, executive-looking local part → EXECUTIVE, else DOMAIN."""
    e = normalize(email)
    local, _, domain = e.partition("@")
    if domain in PERSONAL_DOMAINS:
        return EmailType.PERSONAL
    tokens = [t for t in re.split(r"[._+\-]", local) if t]
    for token in tokens:
        for kw in EXECUTIVE_KEYWORDS:
            # Short keywords ("vp", "cto") must be the whole token, so "doctor" stays a domain address
            if token == kw or (len(kw) > 3 and token.startswith(kw)):
                return EmailType.EXECUTIVE
    return EmailType.DOMAIN


def registrable_domain(url: str) -> str:
    """Host of a URL, lower-cased, without a leading "www."."""
    if not url:
        return ""
    raw = url.strip()
    if "://" not in raw:
        raw = "https://" + raw
    try:
        host = urlparse(raw).hostname or ""
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host.lower()


def slugify(text: str, max_length: int = 20) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", (text or "").lower())
    slug = re.sub(r"[\s-]+", "-", slug).strip("-")
    return slug[:max_length].strip("-")
