from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pipebot.activity.model import ActivityRecord
from pipebot.github.model import PullRequest


@dataclass(frozen=True)
class MessageReference:
    """Slack's own coordinates of a message we posted earlier."""

    channel_id: str
    timestamp: str


@dataclass(frozen=True)
class ChatIdentity:
    id: str
    name: Optional[str] = None
    url: Optional[str] = None


class PostAction(Enum):
    create = "create"
    update = "update"
    skip = "skip"


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    pull_request: Optional[PullRequest] = None


@dataclass(frozen=True)
class PullRequestThread:
    anchor: ActivityRecord
    latest: ActivityRecord
    key: str
    siblings: List[ActivityRecord] = field(default_factory=list)

    @property
    def degenerate(self) -> bool:
        return not self.siblings
