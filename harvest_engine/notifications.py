"""Operator alerts: problems a human should look at.

Every alert is written to the alerts table and logged. If a Telegram bot
token and chat id are configured the alert is also pushed there.

Alert kinds:
  - provider_error: search API rejected a request (bad key, quota, outage)
  - zero_results: a discover query produced no usable URLs
  - job_completed: a job reached its target or deadline
"""

import logging
from typing import Optional

import httpx

from harvest_engine.config import cfg
from harvest_engine.db.init_db import get_conn, now_iso

logger = logging.getLogger(__name__)

_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


def _push_telegram(text: str) -> bool:
    """Send a message to the operator chat. Uses sync httpx."""
    if not cfg.telegram_chat_id or not cfg.telegram_bot_token:
        return False

    url = f"https://api.telegram.org/bot{cfg.telegram_bot_token}/sendMessage"
    try:
        with httpx.Client(timeout=10) as client:
            resp = client.post(url, json={"chat_id": cfg.telegram_chat_id, "text": text})
            result = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Telegram push failed: %s", e)
        return False
    if not result.get("ok"):
        logger.warning("Telegram sendMessage failed: %s", result)
        return False
    return True


def raise_alert(kind: str, message: str, level: str = "warning",
                job_id: Optional[int] = None, task_id: Optional[int] = None) -> int:
    """Record an alert. Returns the alert id."""
    logger.log(_LEVELS.get(level, logging.WARNING), "[ALERT %s] job=%s task=%s %s",
               kind, job_id, task_id, message)
    conn = get_conn()
    cur = conn.execute("""
        INSERT INTO alerts (job_id, task_id, level, kind, message, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (job_id, task_id, level, kind, message[:1000], now_iso()))
    alert_id = cur.lastrowid
    conn.commit()
    conn.close()

    if level in ("warning", "error"):
        prefix = "[ERROR]" if level == "error" else "[WARN]"
        job = f" job #{job_id}" if job_id else ""
        _push_telegram(f"{prefix}{job} {kind}: {message}")
    return alert_id


def recent_alerts(limit: int = 20, job_id: Optional[int] = None) -> list[dict]:
    conn = get_conn()
    if job_id is None:
        rows = conn.execute(
            "SELECT * FROM alerts ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM alerts WHERE job_id = ? ORDER BY id DESC LIMIT ?", (job_id, limit)
        ).fetchall()
    conn.close()
    return [dict(r) for r in rows]
