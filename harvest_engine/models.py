"""Pydantic models and enums for the harvest engine."""

import json
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


class TaskType(str, Enum):
    DISCOVER = "discover"
    EXTRACT = "extract"
    GENERATE = "generate"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EmailType(str, Enum):
    DOMAIN = "domain"
    EXECUTIVE = "executive"
    PERSONAL = "personal"


class EmailSource(str, Enum):
    EXTRACTED = "extracted"
    GENERATED = "generated"


class WorkerStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    STOPPED = "stopped"


class ResultType(str, Enum):
    WEB = "web"
    NEWS = "news"
    PLACES = "places"
    IMAGES = "images"
    SHOPPING = "shopping"


# Lower number is dequeued first
TASK_PRIORITY: dict[TaskType, int] = {
    TaskType.DISCOVER: 1,
    TaskType.EXTRACT: 2,
    TaskType.GENERATE: 3,
}


# ── Task payloads (one shape per task type) ──


class DiscoverPayload(BaseModel):
    kind: Literal["discover"] = "discover"
    query: str = Field(min_length=1)
    country: str = ""
    niche: str = ""


class ExtractPayload(BaseModel):
    kind: Literal["extract"] = "extract"
    url: str = Field(min_length=1)
    company_name: str = ""
    niche: str = ""
    source: str = ""


class GeneratePayload(BaseModel):
    kind: Literal["generate"] = "generate"
    domain: str = Field(min_length=1)
    company_name: str = ""
    niche: str = ""


TaskPayload = Annotated[
    Union[DiscoverPayload, ExtractPayload, GeneratePayload],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter = TypeAdapter(TaskPayload)


def parse_payload(task_type: TaskType | str, raw: str | dict) -> TaskPayload:
    """Validate a stored payload against the shape for its task type."""
    data = json.loads(raw) if isinstance(raw, str) else dict(raw)
    expected = TaskType(task_type).value
    kind = data.setdefault("kind", expected)
    if kind != expected:
        raise ValueError(f"payload kind {kind!r} does not match task type {expected!r}")
    return _payload_adapter.validate_python(data)


class Task(BaseModel):
    id: int
    job_id: int
    task_type: TaskType
    payload: dict[str, Any]
    status: TaskStatus
    priority: int
    claimed_by: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 0

    @classmethod
    def from_row(cls, row) -> "Task":
        data = dict(row)
        data["payload"] = json.loads(data.get("payload") or "{}")
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})


# ── Requests ──


class JobCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    niche: str = Field(min_length=1)
    country_code: str = ""
    email_type: str = "all"
    speed_mode: str = "normal"
    search_depth: int = Field(default=10, ge=1)
    target_email_count: int = Field(default=0, ge=0)
    time_limit_minutes: int = Field(default=0, ge=0)

    @field_validator("email_type")
    @classmethod
    def _check_email_type(cls, v: str) -> str:
        v = (v or "all").lower()
        if v != "all" and v not in {t.value for t in EmailType}:
            raise ValueError(f"unknown email_type {v!r}")
        return v

    @field_validator("country_code")
    @classmethod
    def _lower_country(cls, v: str) -> str:
        return (v or "").strip().lower()


# ── Search + fetch results ──


class SearchResult(BaseModel):
    url: str
    title: str = ""


class FetchResult(BaseModel):
    url: str
    content: str = ""
    http_status: int = 0
    content_type: str = ""
    error: str = ""
    success: bool = False
