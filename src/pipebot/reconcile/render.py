from __future__ import annotations

from datetime import datetime, timedelta, timezone
import re
from typing import Any, Dict, List, Optional, Sequence

import pydantic

from pipebot.activity.model import ActivityRecord, ActivityStep
from pipebot.github.model import GitUser, PullRequest
from pipebot.model import Statuses
from pipebot.reconcile.status import (
    TERMINAL_KINDS,
    attachment_color,
    build_status,
    pipeline_state,
    review_status,
    step_emoji,
)
from pipebot.reconcile.thread import get_pull_request_number
from pipebot.reconcile.types import ChatIdentity

WORD_START = re.compile(r"(?<!\w)\w")

KNOWN_PIPELINE_STAGE_TYPES = (
    "setup",
    "setVersion",
    "preBuild",
    "build",
    "postBuild",
    "promote",
    "pipeline",
)

META_PIPELINE_STAGE = "meta pipeline"

FRIENDLY_NAMES = {
    "SetVersion": "Set Version",
    "PreBuild": "Pre Build",
    "PostBuild": "Post Build",
}

LOG_STORAGE_PREFIX = "gs://"
LOG_VIEWER_PREFIX = "https://storage.cloud.google.com/"

CREATE_WINDOW = timedelta(hours=24)


class Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="forbid")


class AttachmentAction(Model):
    type: str = "button"
    text: str
    url: str


class AttachmentField(Model):
    title: Optional[str] = None
    value: str
    short: bool = False


class Attachment(Model):
    callback_id: Optional[str] = None
    color: Optional[str] = None
    title: Optional[str] = None
    text: Optional[str] = None
    fallback: Optional[str] = None
    actions: Optional[List[AttachmentAction]] = None
    fields: Optional[List[AttachmentField]] = None
    footer_icon: Optional[str] = None
    mrkdwn_in: Optional[List[str]] = None
    ts: Optional[int] = None


class Message(Model):
    attachments: List[Attachment] = pydantic.Field(default_factory=list)
    create_if_missing: bool = True

    @property
    def text(self) -> str:
        """Plain text used by Slack for notifications and screen readers."""
        if not self.attachments:
            return ""
        first = self.attachments[0]
        return first.title or first.text or first.fallback or ""

    def payload(self) -> List[Dict[str, Any]]:
        return [a.model_dump(exclude_none=True) for a in self.attachments]


def link(text: str, url: str) -> str:
    if not url:
        return text
    return f"<{url}|{text or url}>"


def mention_user(user_id: str) -> str:
    return f"<@{user_id}>"


def mention_or_link(identity: Optional[ChatIdentity], user: Optional[GitUser]) -> str:
    if identity is not None and identity.id:
        return mention_user(identity.id)
    if user is None:
        return ""
    name = user.name or user.login
    if user.html_url:
        return link(name, user.html_url)
    return name


def channel_name(channel: str) -> str:
    if channel.startswith("#"):
        return channel
    return f"#{channel}"


def pull_request_name(url: str) -> str:
    idx = url.rfind("/")
    if idx > 0:
        return "#" + url[idx + 1 :]
    return url


def repository_name(activity: ActivityRecord) -> str:
    owner_url = activity.git_url.rstrip("/")
    idx = owner_url.rfind("/")
    if idx > 0:
        owner_url = owner_url[: idx + 1]
    return (
        link(activity.owner, owner_url) + "/" + link(activity.repo, activity.git_url)
    )


def pipeline_name(activity: ActivityRecord) -> str:
    if activity.branch == "master":
        return "Release Pipeline"
    if get_pull_request_number(activity) > 0:
        return "Pull Request Pipeline"
    return "Pipeline"


def build_link(activity: ActivityRecord) -> str:
    return link("#" + activity.build, activity.link_url)


def log_viewer_url(url: str) -> str:
    return url.replace(LOG_STORAGE_PREFIX, LOG_VIEWER_PREFIX)


def title_case(name: str) -> str:
    # words are split on anything but letters, digits and underscores
    return WORD_START.sub(lambda m: m.group(0).upper(), name)


def friendly_name(name: str) -> str:
    return " ".join(FRIENDLY_NAMES.get(word, word) for word in name.split(" "))


def is_user_pipeline_step(name: str) -> bool:
    words = name.split()
    if not words:
        return False
    first = words[0].lower()
    return any(first == known.lower() for known in KNOWN_PIPELINE_STAGE_TYPES)


def last_updated(
    pr: Optional[PullRequest], activity: Optional[ActivityRecord]
) -> Optional[datetime]:
    candidates = []
    if pr is not None and pr.updated_at is not None:
        candidates.append(pr.updated_at)
    if activity is not None:
        candidates += [
            t for t in (activity.start_time, activity.completion_time) if t is not None
        ]
    if not candidates:
        return None
    return max(_as_utc(t) for t in candidates)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _epoch(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp())


def render_step(
    step: ActivityStep, name: str, policies: Sequence[Optional[Statuses]]
) -> Attachment:
    text_name = friendly_name(title_case(name or step.name))
    emoji = step_emoji(step.status, policies)
    return Attachment(
        text=f"{emoji} {text_name}".strip(),
        mrkdwn_in=["fields"],
        color=attachment_color(step.status),
    )


def render_stage(
    stage: ActivityStep, policies: Sequence[Optional[Statuses]]
) -> List[Attachment]:
    attachments = [render_step(stage, stage.name or "Stage", policies)]
    if stage.name == META_PIPELINE_STAGE:
        return attachments
    for step in stage.steps:
        # generated steps (git-clone, place-tools, ...) are not interesting
        if is_user_pipeline_step(step.name):
            attachments.append(render_step(step, "", policies))
    return attachments


def render_pipeline_message(
    activity: ActivityRecord,
    pr: Optional[PullRequest],
    policies: Sequence[Optional[Statuses]] = (),
    now: Optional[datetime] = None,
) -> Message:
    now = now or datetime.now(timezone.utc)
    state = pipeline_state(activity)

    title = f"{pipeline_name(activity)} {repository_name(activity)}"
    pr_number = get_pull_request_number(activity)
    if pr_number > 0:
        if pr is not None and pr.html_url:
            title += " " + link(pull_request_name(pr.html_url), pr.html_url)
        else:
            title += f" #{pr_number}"
    title += f" (Build {build_link(activity)})"

    actions: List[AttachmentAction] = []
    fallback: List[str] = []
    if activity.git_url:
        fallback.append("Repo: " + activity.git_url)
        actions.append(AttachmentAction(text="Repository", url=activity.git_url))
    if activity.link_url:
        fallback.append("Build: " + activity.link_url)
        actions.append(AttachmentAction(text="Pipeline", url=activity.link_url))
    if activity.log_url:
        fallback.append("Logs: " + activity.log_url)
        actions.append(
            AttachmentAction(text="Build Logs", url=log_viewer_url(activity.log_url))
        )

    updated = last_updated(pr, activity)
    attachments = [
        Attachment(
            callback_id="pipelineactivity:" + activity.name,
            color=attachment_color(state),
            title=title,
            fallback=", ".join(fallback),
            actions=actions,
            ts=_epoch(updated),
        )
    ]
    for stage in activity.stages:
        attachments += render_stage(stage, policies)

    create_if_missing = updated is not None and updated >= now - CREATE_WINDOW
    return Message(attachments=attachments, create_if_missing=create_if_missing)


def render_review_message(
    activity: ActivityRecord,
    pr: PullRequest,
    *,
    author: Optional[ChatIdentity],
    reviewers: Sequence[ChatIdentity] = (),
    notify_reviewers: bool = False,
    lgtm_repo: bool = False,
    policies: Sequence[Optional[Statuses]] = (),
) -> Message:
    mentions = []
    if notify_reviewers:
        mentions = [mention_user(r.id) for r in reviewers if r.id]

    review = review_status(pr, lgtm_repo, policies)
    build_kind, build = build_status(pr, activity, policies)

    please = "please" if mentions else "Please"
    pr_link = link(
        f"Pull Request {pull_request_name(pr.html_url)} ({pr.title})", pr.html_url
    )
    text = " ".join(mentions + [please, "review", pr_link])
    text += f" created on {repository_name(activity)} by {mention_or_link(author, pr.user)}"

    attachment = Attachment(
        callback_id="preview:" + activity.name,
        color=attachment_color(pipeline_state(activity)),
        text=text,
        fallback="",
        actions=[],
        fields=[
            AttachmentField(value=str(review), short=True),
            AttachmentField(value=str(build), short=True),
        ],
        ts=_epoch(last_updated(pr, activity)),
    )
    return Message(
        attachments=[attachment],
        create_if_missing=build_kind not in TERMINAL_KINDS,
    )
