"""Mapping of CI and pull request state onto display statuses.

Every lookup goes through ``resolve_status`` which walks the configured
policies (most specific first) before falling back to ``DEFAULT_STATUSES``.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional, Sequence, Set, Tuple

from pipebot.activity.model import ActivityRecord, PipelineState
from pipebot.github.model import PullRequest
from pipebot.model import Status, Statuses, StatusKind


DEFAULT_STATUSES: Dict[StatusKind, Status] = {
    StatusKind.merged: Status(emoji=":purple_heart:", text="merged"),
    StatusKind.closed: Status(emoji=":closed_book:", text="closed and not merged"),
    StatusKind.aborted: Status(emoji=":red_circle:", text="build aborted"),
    StatusKind.errored: Status(emoji=":red_circle:", text="build errored"),
    StatusKind.failed: Status(emoji=":red_circle:", text="build failed"),
    StatusKind.approved: Status(emoji=":+1:", text="approved"),
    StatusKind.not_approved: Status(emoji=":wave:", text="not approved"),
    StatusKind.needs_ok_to_test: Status(emoji=":wave:", text="needs /ok-to-test"),
    StatusKind.hold: Status(emoji=":octagonal_sign:", text="hold"),
    StatusKind.pending: Status(emoji=":question:", text="build pending"),
    StatusKind.running: Status(emoji=":white_circle:", text="build running"),
    StatusKind.succeeded: Status(emoji=":white_check_mark:", text="build succeeded"),
    StatusKind.lgtm: Status(emoji=":+1:", text="lgtm"),
    StatusKind.unknown: Status(emoji=":grey_question:", text=""),
}

TERMINAL_KINDS = frozenset({StatusKind.merged, StatusKind.closed})

_BUILD_KINDS: Dict[PipelineState, StatusKind] = {
    PipelineState.pending: StatusKind.pending,
    PipelineState.running: StatusKind.running,
    PipelineState.succeeded: StatusKind.succeeded,
    PipelineState.failed: StatusKind.failed,
    PipelineState.aborted: StatusKind.aborted,
}

LabelRule = Tuple[Callable[[Set[str], bool], bool], StatusKind]

# Evaluated top to bottom, the last matching rule wins.
REVIEW_RULES: Sequence[LabelRule] = (
    (lambda labels, lgtm_repo: True, StatusKind.not_approved),
    (lambda labels, lgtm_repo: lgtm_repo and "lgtm" in labels, StatusKind.lgtm),
    (
        lambda labels, lgtm_repo: not lgtm_repo and "approved" in labels,
        StatusKind.approved,
    ),
    (lambda labels, lgtm_repo: "do-not-merge/hold" in labels, StatusKind.hold),
    (
        lambda labels, lgtm_repo: "needs-ok-to-test" in labels,
        StatusKind.needs_ok_to_test,
    ),
)


def resolve_status(kind: StatusKind, *policies: Optional[Statuses]) -> Status:
    for policy in policies:
        if policy is None:
            continue
        override = policy.get(kind)
        if override is not None:
            return override
    return DEFAULT_STATUSES.get(kind, DEFAULT_STATUSES[StatusKind.unknown])


def review_kind(labels: Set[str], lgtm_repo: bool) -> StatusKind:
    kind = StatusKind.unknown
    for predicate, candidate in REVIEW_RULES:
        if predicate(labels, lgtm_repo):
            kind = candidate
    return kind


def review_status(
    pr: PullRequest, lgtm_repo: bool, policies: Sequence[Optional[Statuses]] = ()
) -> Status:
    return resolve_status(review_kind(pr.label_names, lgtm_repo), *policies)


def build_kind(pr: Optional[PullRequest], state: PipelineState) -> StatusKind:
    if pr is not None:
        if pr.is_merged:
            return StatusKind.merged
        if pr.is_closed:
            return StatusKind.closed
    return _BUILD_KINDS.get(state, StatusKind.unknown)


def build_status(
    pr: Optional[PullRequest],
    activity: ActivityRecord,
    policies: Sequence[Optional[Statuses]] = (),
) -> Tuple[StatusKind, Status]:
    kind = build_kind(pr, activity.status)
    return kind, resolve_status(kind, *policies)


def step_emoji(state: PipelineState, policies: Sequence[Optional[Statuses]] = ()) -> str:
    if state in (PipelineState.failed, PipelineState.aborted):
        return resolve_status(StatusKind.failed, *policies).emoji
    if state == PipelineState.succeeded:
        return resolve_status(StatusKind.succeeded, *policies).emoji
    if state in (PipelineState.running, PipelineState.pending):
        return resolve_status(StatusKind.running, *policies).emoji
    return ""


def attachment_color(state: PipelineState) -> str:
    if state == PipelineState.failed:
        return "danger"
    if state == PipelineState.succeeded:
        return "good"
    if state in (PipelineState.running, PipelineState.pending):
        return "#3AA3E3"
    return ""


def pipeline_state(activity: ActivityRecord) -> PipelineState:
    if activity.status in (
        PipelineState.succeeded,
        PipelineState.failed,
        PipelineState.aborted,
    ):
        return activity.status
    if activity.stages:
        return activity.stages[-1].status
    return activity.status
