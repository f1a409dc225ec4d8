"""Export a job's emails as CSV or JSON."""

import csv
import io
import json
from pathlib import Path
from typing import Optional

from harvest_engine import job_manager

EXPORT_FIELDS = ["email", "domain", "email_type", "source", "company_name", "created_at"]


def _rows(job_id: int, email_type: Optional[str], domain: Optional[str]) -> list[dict]:
    return [{k: r.get(k, "") for k in EXPORT_FIELDS}
            for r in job_manager.list_emails(job_id, email_type=email_type, domain=domain)]


def export_csv(job_id: int, email_type: Optional[str] = None, domain: Optional[str] = None) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=EXPORT_FIELDS)
    writer.writeheader()
    writer.writerows(_rows(job_id, email_type, domain))
    return buf.getvalue()


def export_json(job_id: int, email_type: Optional[str] = None, domain: Optional[str] = None) -> str:
    job = job_manager.get_job(job_id) or {}
    rows = _rows(job_id, email_type, domain)
    return json.dumps({
        "job_id": job_id,
        "job_name": job.get("name", ""),
        "count": len(rows),
        "emails": rows,
    }, indent=2)


def export_to_file(job_id: int, path: Path | str, fmt: str = "csv",
                   email_type: Optional[str] = None, domain: Optional[str] = None) -> Path:
    path = Path(path)
    if fmt == "csv":
        text = export_csv(job_id, email_type, domain)
    elif fmt == "json":
        text = export_json(job_id, email_type, domain)
    else:
        raise ValueError(f"unknown export format {fmt!r}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path
