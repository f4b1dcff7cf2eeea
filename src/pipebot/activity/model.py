from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import pydantic


class PipelineState(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    aborted = "aborted"
    unknown = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "PipelineState":
        # lighthouse spellings
        aliases = {
            "triggered": cls.pending,
            "success": cls.succeeded,
            "failure": cls.failed,
            "error": cls.failed,
        }
        return aliases.get(str(value).lower(), cls.unknown)


def _parse_utc_datetime(value: Any) -> Any:
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        value = datetime.fromisoformat(raw)
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="ignore", frozen=True)

    @pydantic.field_validator("status", mode="before", check_fields=False)
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return PipelineState(value.lower())
        return value


class ActivityStep(Model):
    name: str = ""
    status: PipelineState = PipelineState.unknown
    steps: List["ActivityStep"] = pydantic.Field(default_factory=list)


class ActivityRecord(Model):
    name: str = ""
    owner: str
    repo: str
    branch: str = "master"
    build: str = ""
    context: str = ""
    status: PipelineState = PipelineState.unknown
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    git_url: str = ""
    link_url: str = ""
    log_url: str = ""
    stages: List[ActivityStep] = pydantic.Field(default_factory=list)
    annotations: Dict[str, str] = pydantic.Field(default_factory=dict)

    @pydantic.field_validator("start_time", "completion_time", mode="before")
    @classmethod
    def _normalize_times(cls, value: Any) -> Any:
        return _parse_utc_datetime(value)

    @pydantic.field_validator("branch", mode="before")
    @classmethod
    def _default_branch(cls, value: Any) -> Any:
        return value or "master"

    @property
    def pipeline(self) -> str:
        return f"{self.owner}/{self.repo}/{self.branch}"

    def __str__(self) -> str:
        return f"Activity({self.pipeline} #{self.build})"
