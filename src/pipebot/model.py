from __future__ import annotations

from enum import Enum
import io
from pathlib import Path
from typing import Dict, List, Optional, Union

import pydantic
import yaml


class Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="forbid", populate_by_name=True)


class StatusKind(str, Enum):
    merged = "merged"
    closed = "closed"
    aborted = "aborted"
    errored = "errored"
    failed = "failed"
    approved = "approved"
    not_approved = "not_approved"
    needs_ok_to_test = "needs_ok_to_test"
    hold = "hold"
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    lgtm = "lgtm"
    unknown = "unknown"


class Status(Model):
    emoji: str
    text: str = ""

    def __str__(self) -> str:
        return f"{self.emoji} {self.text}".strip()


class Statuses(Model):
    merged: Optional[Status] = None
    closed: Optional[Status] = None
    aborted: Optional[Status] = None
    errored: Optional[Status] = None
    failed: Optional[Status] = None
    approved: Optional[Status] = None
    not_approved: Optional[Status] = pydantic.Field(None, alias="not-approved")
    needs_ok_to_test: Optional[Status] = pydantic.Field(None, alias="needs-ok-to-test")
    hold: Optional[Status] = None
    pending: Optional[Status] = None
    running: Optional[Status] = None
    succeeded: Optional[Status] = None
    lgtm: Optional[Status] = None
    unknown: Optional[Status] = None

    def get(self, kind: StatusKind) -> Optional[Status]:
        return getattr(self, kind.value)


class Org(Model):
    name: str
    repos: List[str] = pydantic.Field(default_factory=list)


class PipelineRule(Model):
    channel: Optional[str] = None
    direct_message: bool = pydantic.Field(False, alias="direct-message")
    orgs: List[Org] = pydantic.Field(default_factory=list)
    ignore_labels: List[str] = pydantic.Field(
        default_factory=list, alias="ignore-labels"
    )
    statuses: Statuses = pydantic.Field(default_factory=Statuses)


class PullRequestRule(PipelineRule):
    notify_reviewers: bool = pydantic.Field(False, alias="notify-reviewers")


class BotConfig(Model):
    pipelines: List[PipelineRule] = pydantic.Field(default_factory=list)
    pull_requests: List[PullRequestRule] = pydantic.Field(
        default_factory=list, alias="pull-requests"
    )
    statuses: Statuses = pydantic.Field(default_factory=Statuses)
    lgtm_repos: List[Org] = pydantic.Field(default_factory=list, alias="lgtm-repos")
    users: Dict[str, str] = pydantic.Field(default_factory=dict)


class InvalidConfig(Exception):
    raw_config: str
    source: str

    def __init__(self, *args, **kwargs):
        self.raw_config = kwargs.pop("raw_config")
        self.source = kwargs.pop("source")
        super().__init__(*args, **kwargs)


def parse_config(raw: str, source: str = "<string>") -> BotConfig:
    data = yaml.safe_load(io.StringIO(raw))
    try:
        return BotConfig() if data is None else BotConfig.model_validate(data)
    except pydantic.ValidationError as e:
        raise InvalidConfig(str(e), raw_config=raw, source=source)


def load_config(path: Union[str, Path]) -> BotConfig:
    with open(path) as fh:
        raw = fh.read()
    return parse_config(raw, source=str(path))
