from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from pipebot.activity.model import ActivityRecord
from pipebot.github.model import GitUser, Label, PullRequest
from pipebot.model import parse_config
from pipebot.reconcile.errors import (
    ConfigurationError,
    NotificationFailed,
    ProviderError,
    SinkError,
)
from pipebot.reconcile.orchestrator import (
    NotificationOrchestrator,
    annotation_key,
    message_key,
)
from pipebot.reconcile.references import MemoryReferenceStore
from pipebot.reconcile.types import ChatIdentity, MessageReference

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _FakeSink:
    def __init__(self, fail_on=(), delay: float = 0.0):
        self.fail_on = set(fail_on)
        self.delay = delay
        self.sent: List[tuple] = []
        self.updated: List[tuple] = []
        self.opened: List[str] = []
        self._counter = 0

    async def send(self, destination, message):
        if self.delay:
            await asyncio.sleep(self.delay)
        if destination in self.fail_on:
            raise SinkError("channel_not_found", destination=destination)
        self._counter += 1
        self.sent.append((destination, message))
        channel_id = destination if destination.startswith("D") else f"C-{destination}"
        return MessageReference(channel_id=channel_id, timestamp=f"{self._counter}.0")

    async def update(self, reference, message):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.updated.append((reference, message))

    async def open_direct_conversation(self, user_id):
        self.opened.append(user_id)
        return f"D-{user_id}"


class _FakePullRequests:
    def __init__(self, pr: Optional[PullRequest] = None, exc=None):
        self.pr = pr
        self.exc = exc
        self.calls = 0

    async def get_pull_request(self, owner, repo, number):
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        return self.pr


class _FakeActivities:
    def __init__(self, activities=()):
        self.activities = list(activities)
        self.calls = 0

    async def list_activities(self, owner, repo, pr_number):
        self.calls += 1
        return self.activities


class _FakeIdentities:
    def __init__(self, users: Dict[str, str]):
        self.users = users

    async def resolve(self, user):
        if user.login not in self.users:
            return None
        return ChatIdentity(id=self.users[user.login], name=user.login)


class _FakeAnnotator:
    def __init__(self):
        self.annotations = []

    def annotate_activity(self, name, key, value):
        self.annotations.append((name, key, value))


def make_activity(build="1", status="Running", **kwargs) -> ActivityRecord:
    data = dict(
        name=f"acme-widget-pr-7-{build}",
        owner="acme",
        repo="widget",
        branch="PR-7",
        build=build,
        status=status,
        start_time="2026-03-01T11:50:00Z",
        git_url="https://github.com/acme/widget",
        link_url=f"https://ci.example.com/acme/widget/PR-7/{build}",
    )
    data.update(kwargs)
    return ActivityRecord(**data)


def make_pr(labels=(), **kwargs) -> PullRequest:
    data = dict(
        number=7,
        title="Add gizmo",
        html_url="https://github.com/acme/widget/pull/7",
        updated_at=datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc),
        user=GitUser(login="alice", html_url="https://github.com/alice"),
        requested_reviewers=[GitUser(login="bob"), GitUser(login="nobody")],
        labels=[Label(name=label) for label in labels],
    )
    data.update(kwargs)
    return PullRequest(**data)


PIPELINE_CONFIG = """
pipelines:
  - channel: builds
    orgs:
      - name: acme
"""

REVIEW_CONFIG = """
pull-requests:
  - channel: reviews
    direct-message: true
    notify-reviewers: true
"""


def make_orchestrator(
    raw_config: str,
    *,
    pr: Optional[PullRequest] = None,
    activities=(),
    sink: Optional[_FakeSink] = None,
    references: Optional[MemoryReferenceStore] = None,
    pull_requests: Optional[_FakePullRequests] = None,
    **kwargs,
) -> NotificationOrchestrator:
    return NotificationOrchestrator(
        config=parse_config(raw_config),
        sink=sink or _FakeSink(),
        references=references if references is not None else MemoryReferenceStore(),
        pull_requests=pull_requests or _FakePullRequests(pr or make_pr()),
        activities=_FakeActivities(activities),
        identities=_FakeIdentities({"alice": "UALICE", "bob": "UBOB"}),
        clock=lambda: NOW,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_pipeline_event_creates_then_updates():
    orchestrator = make_orchestrator(PIPELINE_CONFIG)
    sink = orchestrator.sink

    await orchestrator.handle_pipeline_event(make_activity(status="Running"))
    await orchestrator.handle_pipeline_event(make_activity(status="Succeeded"))

    assert len(sink.sent) == 1
    assert sink.sent[0][0] == "#builds"
    assert len(sink.updated) == 1
    reference, message = sink.updated[0]
    assert reference == MessageReference(channel_id="C-#builds", timestamp="1.0")
    assert message.attachments[0].color == "good"
    assert orchestrator.references.lookup(
        "#builds", message_key("pipeline", "acme-widget-pr-7-1")
    ) == reference


@pytest.mark.asyncio
async def test_pipeline_event_is_idempotent():
    orchestrator = make_orchestrator(PIPELINE_CONFIG)
    activity = make_activity()

    await orchestrator.handle_pipeline_event(activity)
    await orchestrator.handle_pipeline_event(activity)

    assert len(orchestrator.sink.sent) == 1
    assert len(orchestrator.sink.updated) == 1
    assert len(orchestrator.references) == 1


@pytest.mark.asyncio
async def test_pipeline_event_for_other_org_is_ignored():
    orchestrator = make_orchestrator(PIPELINE_CONFIG)
    await orchestrator.handle_pipeline_event(make_activity(owner="other"))
    assert orchestrator.sink.sent == []


@pytest.mark.asyncio
async def test_pipeline_event_ignored_label():
    raw = """
pipelines:
  - channel: builds
    ignore-labels: [wip]
"""
    orchestrator = make_orchestrator(raw, pr=make_pr(labels=["wip"]))
    await orchestrator.handle_pipeline_event(make_activity())
    assert orchestrator.sink.sent == []


@pytest.mark.asyncio
async def test_pipeline_old_activity_without_reference_is_skipped():
    orchestrator = make_orchestrator(
        PIPELINE_CONFIG,
        pr=make_pr(updated_at=datetime(2026, 2, 1, tzinfo=timezone.utc)),
    )
    await orchestrator.handle_pipeline_event(
        make_activity(start_time="2026-02-01T10:00:00Z")
    )
    assert orchestrator.sink.sent == []
    assert len(orchestrator.references) == 0


@pytest.mark.asyncio
async def test_pipeline_direct_message_to_author():
    raw = """
pipelines:
  - direct-message: true
"""
    orchestrator = make_orchestrator(raw)
    await orchestrator.handle_pipeline_event(make_activity())
    await orchestrator.handle_pipeline_event(make_activity(status="Succeeded"))

    sink = orchestrator.sink
    assert sink.opened == ["UALICE"]
    assert [d for d, _ in sink.sent] == ["D-UALICE"]
    assert len(sink.updated) == 1


@pytest.mark.asyncio
async def test_empty_activity_name_is_configuration_error():
    orchestrator = make_orchestrator(PIPELINE_CONFIG + REVIEW_CONFIG)
    with pytest.raises(ConfigurationError):
        await orchestrator.handle_pipeline_event(make_activity(name=""))
    with pytest.raises(ConfigurationError):
        await orchestrator.handle_review_event(make_activity(name=""))
    assert orchestrator.sink.sent == []


@pytest.mark.asyncio
async def test_malformed_pull_request_branch_is_configuration_error():
    orchestrator = make_orchestrator(REVIEW_CONFIG)
    with pytest.raises(ConfigurationError):
        await orchestrator.handle_review_event(make_activity(branch="PR-abc"))


@pytest.mark.asyncio
async def test_rule_failure_does_not_stop_other_rules():
    raw = """
pipelines:
  - channel: broken
  - channel: builds
"""
    orchestrator = make_orchestrator(raw, sink=_FakeSink(fail_on=["#broken"]))

    with pytest.raises(NotificationFailed) as exc_info:
        await orchestrator.handle_pipeline_event(make_activity())

    assert [d for d, _ in orchestrator.sink.sent] == ["#builds"]
    assert len(exc_info.value.errors) == 1
    error = exc_info.value.errors[0]
    assert isinstance(error, SinkError)
    assert error.destination == "#broken"


@pytest.mark.asyncio
async def test_sink_timeout_leaves_store_untouched():
    orchestrator = make_orchestrator(
        PIPELINE_CONFIG, sink=_FakeSink(delay=1.0), sink_timeout=0.01
    )

    with pytest.raises(NotificationFailed) as exc_info:
        await orchestrator.handle_pipeline_event(make_activity())

    assert isinstance(exc_info.value.errors[0], SinkError)
    assert "timed out" in str(exc_info.value.errors[0])
    assert len(orchestrator.references) == 0


@pytest.mark.asyncio
async def test_pull_request_provider_failure():
    orchestrator = make_orchestrator(
        PIPELINE_CONFIG, pull_requests=_FakePullRequests(exc=RuntimeError("502"))
    )
    with pytest.raises(NotificationFailed) as exc_info:
        await orchestrator.handle_pipeline_event(make_activity())
    assert isinstance(exc_info.value.errors[0], ProviderError)
    assert orchestrator.sink.sent == []


@pytest.mark.asyncio
async def test_pull_request_not_fetched_for_uncovered_repo():
    config = """
pipelines:
  - channel: builds
    orgs:
      - name: someone-else
pull-requests:
  - channel: reviews
    orgs:
      - name: someone-else
"""
    pull_requests = _FakePullRequests(exc=RuntimeError("502"))
    orchestrator = make_orchestrator(config, pull_requests=pull_requests)

    await orchestrator.handle_pipeline_event(make_activity())
    await orchestrator.handle_review_event(make_activity())

    assert pull_requests.calls == 0
    assert orchestrator.sink.sent == []


@pytest.mark.asyncio
async def test_pull_request_failure_is_reported_per_rule():
    config = """
pipelines:
  - channel: elsewhere
    orgs:
      - name: someone-else
  - channel: builds
    orgs:
      - name: acme
  - channel: releases
"""
    pull_requests = _FakePullRequests(exc=RuntimeError("502"))
    orchestrator = make_orchestrator(config, pull_requests=pull_requests)

    with pytest.raises(NotificationFailed) as exc_info:
        await orchestrator.handle_pipeline_event(make_activity())

    assert pull_requests.calls == 1
    assert len(exc_info.value.errors) == 2
    assert all(isinstance(e, ProviderError) for e in exc_info.value.errors)
    assert orchestrator.sink.sent == []


@pytest.mark.asyncio
async def test_render_is_deterministic():
    first = make_orchestrator(PIPELINE_CONFIG)
    second = make_orchestrator(PIPELINE_CONFIG)
    activity = make_activity()

    await first.handle_pipeline_event(activity)
    await second.handle_pipeline_event(activity)

    assert first.sink.sent[0][1].payload() == second.sink.sent[0][1].payload()


@pytest.mark.asyncio
async def test_dry_run_sends_nothing():
    orchestrator = make_orchestrator(PIPELINE_CONFIG, dry_run=True)
    await orchestrator.handle_pipeline_event(make_activity())
    assert orchestrator.sink.sent == []
    assert len(orchestrator.references) == 0


@pytest.mark.asyncio
async def test_review_event_keyed_by_oldest_build():
    activities = [make_activity("1"), make_activity("2")]
    orchestrator = make_orchestrator(REVIEW_CONFIG, activities=activities)
    anchor_key = message_key("pr", "acme-widget-pr-7-1")
    existing = MessageReference(channel_id="CREV", timestamp="10.0")
    orchestrator.references.record("#reviews", anchor_key, existing)

    await orchestrator.handle_review_event(make_activity("2"))

    sink = orchestrator.sink
    assert [ref for ref, _ in sink.updated][0] == existing
    assert "#reviews" not in [d for d, _ in sink.sent]


@pytest.mark.asyncio
async def test_review_event_for_stale_build_is_dropped():
    activities = [make_activity("1"), make_activity("2")]
    orchestrator = make_orchestrator(REVIEW_CONFIG, activities=activities)

    await orchestrator.handle_review_event(make_activity("1", status="Succeeded"))

    assert orchestrator.sink.sent == []
    assert orchestrator.sink.updated == []


@pytest.mark.asyncio
async def test_review_event_not_a_pull_request():
    orchestrator = make_orchestrator(REVIEW_CONFIG)
    await orchestrator.handle_review_event(make_activity(branch="master"))
    assert orchestrator.pull_requests.calls == 0
    assert orchestrator.sink.sent == []


@pytest.mark.asyncio
async def test_review_event_notifies_resolved_reviewers():
    orchestrator = make_orchestrator(
        REVIEW_CONFIG, activities=[make_activity("1")]
    )
    await orchestrator.handle_review_event(make_activity("1"))
    await orchestrator.handle_review_event(make_activity("1", status="Succeeded"))

    sink = orchestrator.sink
    # nobody has no chat identity and is not messaged
    assert sink.opened == ["UBOB"]
    assert sorted(d for d, _ in sink.sent) == ["#reviews", "D-UBOB"]
    assert len(sink.updated) == 2

    text = sink.sent[0][1].attachments[0].text
    assert text.startswith("<@UBOB> please review")
    assert text.endswith("by <@UALICE>")


@pytest.mark.asyncio
async def test_review_message_for_merged_pr_is_not_created():
    orchestrator = make_orchestrator(
        REVIEW_CONFIG,
        pr=make_pr(merged=True, state="closed"),
        activities=[make_activity("1")],
    )
    await orchestrator.handle_review_event(make_activity("1"))
    assert orchestrator.sink.sent == []


@pytest.mark.asyncio
async def test_review_message_for_merged_pr_updates_existing():
    orchestrator = make_orchestrator(
        REVIEW_CONFIG,
        pr=make_pr(merged=True, state="closed"),
        activities=[make_activity("1")],
    )
    existing = MessageReference(channel_id="CREV", timestamp="10.0")
    orchestrator.references.record(
        "#reviews", message_key("pr", "acme-widget-pr-7-1"), existing
    )

    await orchestrator.handle_review_event(make_activity("1", status="Succeeded"))

    assert orchestrator.sink.sent == []
    reference, message = orchestrator.sink.updated[0]
    assert reference == existing
    assert message.attachments[0].fields[1].value == ":purple_heart: merged"


@pytest.mark.asyncio
async def test_review_hold_label_takes_precedence():
    orchestrator = make_orchestrator(
        REVIEW_CONFIG,
        pr=make_pr(labels=["approved", "do-not-merge/hold"]),
        activities=[make_activity("1")],
    )
    await orchestrator.handle_review_event(make_activity("1"))

    message = orchestrator.sink.sent[0][1]
    assert message.attachments[0].fields[0].value == ":octagonal_sign: hold"


@pytest.mark.asyncio
async def test_review_lgtm_repo_and_rule_statuses():
    raw = """
lgtm-repos:
  - name: acme
    repos: [widget]
statuses:
  lgtm:
    emoji: ":ok:"
    text: looks good
pull-requests:
  - channel: reviews
    statuses:
      running:
        emoji: ":hourglass:"
        text: building
"""
    orchestrator = make_orchestrator(
        raw, pr=make_pr(labels=["lgtm"]), activities=[make_activity("1")]
    )
    await orchestrator.handle_review_event(make_activity("1"))

    fields = orchestrator.sink.sent[0][1].attachments[0].fields
    assert [f.value for f in fields] == [":ok: looks good", ":hourglass: building"]


@pytest.mark.asyncio
async def test_sibling_lookup_shared_between_rules():
    raw = """
pull-requests:
  - channel: reviews
  - channel: team
"""
    orchestrator = make_orchestrator(raw, activities=[make_activity("1")])
    await orchestrator.handle_review_event(make_activity("1"))

    assert orchestrator.activities.calls == 1
    assert orchestrator.pull_requests.calls == 1
    assert sorted(d for d, _ in orchestrator.sink.sent) == ["#reviews", "#team"]


@pytest.mark.asyncio
async def test_activity_event_runs_both_flows_and_annotates():
    annotator = _FakeAnnotator()
    orchestrator = make_orchestrator(
        PIPELINE_CONFIG + REVIEW_CONFIG,
        activities=[make_activity("1")],
        annotator=annotator,
    )
    await orchestrator.handle_activity_event(make_activity("1"))

    assert sorted(d for d, _ in orchestrator.sink.sent) == [
        "#builds",
        "#reviews",
        "D-UBOB",
    ]
    assert (
        "acme-widget-pr-7-1",
        "bot.slack.apps.jenkins-x.io-pipeline/builds",
        "C-#builds/1.0",
    ) in annotator.annotations
    assert annotation_key("#reviews", "pr") == "bot.slack.apps.jenkins-x.io-pr/reviews"


@pytest.mark.asyncio
async def test_concurrent_events_create_one_message():
    orchestrator = make_orchestrator(PIPELINE_CONFIG, sink=_FakeSink(delay=0.01))
    activity = make_activity()

    await asyncio.gather(*(orchestrator.handle_pipeline_event(activity) for _ in range(5)))

    assert len(orchestrator.sink.sent) == 1
    assert len(orchestrator.sink.updated) == 4


@pytest.mark.asyncio
async def test_metrics_track_actions_and_stale_updates():
    from pipebot.metric import message_action_counter, stale_update_counter

    created = message_action_counter.labels(type="pipeline", action="create")
    skipped = message_action_counter.labels(type="pr", action="skip")
    before_created = created._value.get()
    before_skipped = skipped._value.get()
    before_stale = stale_update_counter._value.get()

    orchestrator = make_orchestrator(PIPELINE_CONFIG)
    await orchestrator.handle_pipeline_event(make_activity())

    stale = make_orchestrator(
        REVIEW_CONFIG, activities=[make_activity("1"), make_activity("2")]
    )
    await stale.handle_review_event(make_activity("1"))

    merged = make_orchestrator(
        REVIEW_CONFIG,
        pr=make_pr(merged=True, state="closed"),
        activities=[make_activity("1")],
    )
    await merged.handle_review_event(make_activity("1"))

    assert created._value.get() == before_created + 1
    assert stale_update_counter._value.get() == before_stale + 1
    # channel and the resolved reviewer
    assert skipped._value.get() == before_skipped + 2
