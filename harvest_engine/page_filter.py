"""
Page filter: accept only fetched pages worth scanning for emails.

Size is measured in bytes of the body; content-type is matched by substring
so values like "text/html; charset=utf-8" pass.
"""

from harvest_engine.config import cfg

ACCEPTED_CONTENT_TYPES = (
    "text/html",
    "text/plain",
    "application/xhtml+xml",
    "application/xml",
)


def content_size(content: str | bytes) -> int:
    if isinstance(content, str):
        return len(content.encode("utf-8"))
    return len(content)


def is_valid_size(content: str | bytes, min_bytes: int | None = None,
                  max_bytes: int | None = None) -> bool:
    lo = cfg.page_min_bytes if min_bytes is None else min_bytes
    hi = cfg.page_max_bytes if max_bytes is None else max_bytes
    return lo <= content_size(content) <= hi


def is_valid_content_type(content_type: str) -> bool:
    ct = (content_type or "").lower()
    return any(t in ct for t in ACCEPTED_CONTENT_TYPES)


def is_valid(content: str | bytes, content_type: str = "text/html") -> bool:
    return is_valid_size(content) and is_valid_content_type(content_type)


def rejection_reason(content: str | bytes, content_type: str) -> str:
    """Human-readable reason a page was rejected, or "" if it passes."""
    if not is_valid_content_type(content_type):
        return f"unsupported content-type {content_type or '(none)'}"
    size = content_size(content)
    if size < cfg.page_min_bytes:
        return f"page too small ({format_size(size)})"
    if size > cfg.page_max_bytes:
        return f"page too large ({format_size(size)})"
    return ""


def format_size(num_bytes: int) -> str:
    size = float(max(num_bytes, 0))
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{round(size, 2)} {unit}"
        size /= 1024
    return f"{round(size, 2)} GB"
