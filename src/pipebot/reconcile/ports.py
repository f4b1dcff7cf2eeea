"""Contracts for the collaborators the reconciliation engine talks to.

The engine only depends on these protocols. Slack, GitHub and the activity
store adapters implement them, and tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol, Sequence

from pipebot.activity.model import ActivityRecord
from pipebot.github.model import GitUser, PullRequest
from pipebot.reconcile.types import ChatIdentity, MessageReference

if TYPE_CHECKING:
    from pipebot.reconcile.render import Message


class ActivityProvider(Protocol):
    async def list_activities(
        self, owner: str, repo: str, pr_number: int
    ) -> Sequence[ActivityRecord]:
        ...


class PullRequestProvider(Protocol):
    async def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequest:
        ...


class IdentityResolver(Protocol):
    async def resolve(self, user: GitUser) -> Optional[ChatIdentity]:
        ...


class MessageSink(Protocol):
    async def send(self, destination: str, message: Message) -> MessageReference:
        ...

    async def update(self, reference: MessageReference, message: Message) -> None:
        ...

    async def open_direct_conversation(self, user_id: str) -> str:
        ...


class ActivityAnnotator(Protocol):
    def annotate_activity(self, name: str, key: str, value: str) -> None:
        ...
