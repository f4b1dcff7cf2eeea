from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import time
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

import pydantic
from sanic.log import logger

from pipebot.activity.model import ActivityRecord
from pipebot.github.model import GitUser, PullRequest
from pipebot.metric import (
    event_counter,
    event_duration_seconds,
    message_action_counter,
    rule_error_counter,
    stale_update_counter,
)
from pipebot.model import BotConfig, Org, PipelineRule, PullRequestRule
from pipebot.reconcile.eligibility import (
    check_eligibility,
    fetch_pull_request,
    repo_allowed,
)
from pipebot.reconcile.errors import (
    ConfigurationError,
    NotificationFailed,
    PipebotError,
    ProviderError,
    RenderError,
    SinkError,
)
from pipebot.reconcile.ports import (
    ActivityAnnotator,
    ActivityProvider,
    IdentityResolver,
    MessageSink,
    PullRequestProvider,
)
from pipebot.reconcile.references import ReferenceStore, decide_action
from pipebot.reconcile.render import (
    Message,
    channel_name,
    render_pipeline_message,
    render_review_message,
)
from pipebot.reconcile.thread import find_thread, get_pull_request_number, is_stale
from pipebot.reconcile.types import (
    ChatIdentity,
    EligibilityResult,
    MessageReference,
    PostAction,
    PullRequestThread,
)

SLACK_ANNOTATION_PREFIX = "bot.slack.apps.jenkins-x.io"
PULL_REQUEST_REVIEW_MESSAGE_TYPE = "pr"
PIPELINE_MESSAGE_TYPE = "pipeline"

T = TypeVar("T")


def message_key(message_type: str, name: str) -> str:
    return f"{message_type}:{name}"


def annotation_key(channel: str, message_type: str) -> str:
    return f"{SLACK_ANNOTATION_PREFIX}-{message_type}/{channel.lstrip('#')}"


@dataclass
class _EventContext:
    """Per event state shared by all rules of a flow.

    The pull request and the sibling thread are looked up at most once, and
    only when a rule needs them. A failed pull request lookup is kept so
    every rule depending on it reports the same error.
    """

    activity: ActivityRecord
    fetched: bool = False
    pull_request: Optional[PullRequest] = None
    fetch_error: Optional[ProviderError] = None
    thread: Optional[PullRequestThread] = None


class NotificationOrchestrator:
    def __init__(
        self,
        *,
        config: BotConfig,
        sink: MessageSink,
        references: ReferenceStore,
        pull_requests: PullRequestProvider,
        activities: ActivityProvider,
        identities: IdentityResolver,
        annotator: Optional[ActivityAnnotator] = None,
        provider_timeout: Optional[float] = None,
        sink_timeout: Optional[float] = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.sink = sink
        self.references = references
        self.pull_requests = pull_requests
        self.activities = activities
        self.identities = identities
        self.annotator = annotator
        self.provider_timeout = provider_timeout
        self.sink_timeout = sink_timeout
        self.dry_run = dry_run
        self.clock = clock

    async def handle_activity_event(self, activity: ActivityRecord) -> None:
        errors: List[PipebotError] = []
        for handler in (self.handle_pipeline_event, self.handle_review_event):
            try:
                await handler(activity)
            except NotificationFailed as exc:
                errors += exc.errors
        if errors:
            raise NotificationFailed(errors)

    async def handle_pipeline_event(self, activity: ActivityRecord) -> None:
        _require_name(activity)
        get_pull_request_number(activity)
        if not self.config.pipelines:
            return

        started = time.monotonic()
        event_counter.labels(flow=PIPELINE_MESSAGE_TYPE).inc()
        context = _EventContext(activity=activity)

        errors: List[PipebotError] = []
        for idx, rule in enumerate(self.config.pipelines, start=1):
            try:
                await self._pipeline_rule(context, rule)
            except (ProviderError, SinkError, RenderError) as exc:
                self._rule_failed(PIPELINE_MESSAGE_TYPE, idx, activity, exc)
                errors.append(exc)

        event_duration_seconds.labels(flow=PIPELINE_MESSAGE_TYPE).observe(
            time.monotonic() - started
        )
        if errors:
            raise NotificationFailed(errors)

    async def handle_review_event(self, activity: ActivityRecord) -> None:
        _require_name(activity)
        if get_pull_request_number(activity) == 0:
            logger.debug("Review flow skip activity=%s reason=not_a_pr", activity.name)
            return
        if not self.config.pull_requests:
            return

        started = time.monotonic()
        event_counter.labels(flow=PULL_REQUEST_REVIEW_MESSAGE_TYPE).inc()
        context = _EventContext(activity=activity)

        errors: List[PipebotError] = []
        for idx, rule in enumerate(self.config.pull_requests, start=1):
            try:
                await self._review_rule(context, rule)
            except (ProviderError, SinkError, RenderError) as exc:
                self._rule_failed(PULL_REQUEST_REVIEW_MESSAGE_TYPE, idx, activity, exc)
                errors.append(exc)

        event_duration_seconds.labels(flow=PULL_REQUEST_REVIEW_MESSAGE_TYPE).observe(
            time.monotonic() - started
        )
        if errors:
            raise NotificationFailed(errors)

    async def _pipeline_rule(self, context: _EventContext, rule: PipelineRule) -> None:
        activity = context.activity
        result = await self._check_rule(context, rule.orgs, rule.ignore_labels)
        if not result.eligible:
            return
        pull_request = result.pull_request

        try:
            message = render_pipeline_message(
                activity,
                pull_request,
                (rule.statuses, self.config.statuses),
                now=self.clock(),
            )
        except pydantic.ValidationError as exc:
            raise RenderError(
                f"rendering pipeline message for {activity.name}: {exc}"
            ) from exc

        if rule.channel:
            channel = channel_name(rule.channel)
            await self._post(
                channel,
                direct=False,
                message_type=PIPELINE_MESSAGE_TYPE,
                name=activity.name,
                message=message,
            )
            logger.info("Channel message sent to %s", channel)

        if rule.direct_message and pull_request is not None:
            identity = await self._resolve(pull_request.user, activity)
            if identity is not None:
                await self._post(
                    identity.id,
                    direct=True,
                    message_type=PIPELINE_MESSAGE_TYPE,
                    name=activity.name,
                    message=message,
                )
                logger.info("Direct message sent to %s", pull_request.user)

    async def _review_rule(self, context: _EventContext, rule: PullRequestRule) -> None:
        activity = context.activity
        result = await self._check_rule(context, rule.orgs, rule.ignore_labels)
        if not result.eligible:
            return
        pull_request = result.pull_request
        if pull_request is None:
            logger.warning(
                "Review flow skip activity=%s reason=no_pull_request", activity.name
            )
            return

        logger.info("Preparing review request message for %s", activity.name)
        if context.thread is None:
            context.thread = await find_thread(
                activity, self.activities, self.provider_timeout
            )
        thread = context.thread

        if is_stale(activity, thread):
            logger.info(
                "Skipping %s as it is older than latest build number %s",
                activity.name,
                thread.latest.build,
            )
            stale_update_counter.inc()
            return

        author = await self._resolve(pull_request.user, activity)
        reviewers: List[ChatIdentity] = []
        if rule.notify_reviewers:
            for user in pull_request.requested_reviewers:
                identity = await self._resolve(user, activity)
                if identity is not None:
                    reviewers.append(identity)

        try:
            message = render_review_message(
                activity,
                pull_request,
                author=author,
                reviewers=reviewers,
                notify_reviewers=rule.notify_reviewers,
                lgtm_repo=self._is_lgtm_repo(activity),
                policies=(rule.statuses, self.config.statuses),
            )
        except pydantic.ValidationError as exc:
            raise RenderError(
                f"rendering review message for {activity.name}: {exc}"
            ) from exc

        if rule.channel:
            await self._post(
                channel_name(rule.channel),
                direct=False,
                message_type=PULL_REQUEST_REVIEW_MESSAGE_TYPE,
                name=thread.key,
                message=message,
            )
        if rule.direct_message and rule.notify_reviewers:
            for reviewer in reviewers:
                await self._post(
                    reviewer.id,
                    direct=True,
                    message_type=PULL_REQUEST_REVIEW_MESSAGE_TYPE,
                    name=thread.key,
                    message=message,
                )

    async def _post(
        self,
        destination: str,
        *,
        direct: bool,
        message_type: str,
        name: str,
        message: Message,
    ) -> None:
        key = message_key(message_type, name)
        async with self.references.lock(destination, key):
            existing = self.references.lookup(destination, key)
            action = decide_action(existing, message.create_if_missing)
            message_action_counter.labels(type=message_type, action=action.value).inc()

            if action == PostAction.skip:
                logger.info(
                    "No existing message to update, ignoring, for %s destination=%s",
                    name,
                    destination,
                )
                return
            if self.dry_run:
                logger.info(
                    "Dry run, would %s message for %s destination=%s",
                    action.value,
                    name,
                    destination,
                )
                return

            if existing is not None:
                logger.info(
                    "Updating message for %s with timestamp %s",
                    name,
                    existing.timestamp,
                )
                await self._sink_call(self.sink.update(existing, message), destination)
                reference = existing
            else:
                logger.info("Creating new message for %s", name)
                channel = destination
                if direct:
                    channel = await self._sink_call(
                        self.sink.open_direct_conversation(destination), destination
                    )
                reference = await self._sink_call(
                    self.sink.send(channel, message), destination
                )

            self.references.record(destination, key, reference)

        self._annotate(name, destination, message_type, reference)

    async def _sink_call(self, call: Awaitable[T], destination: str) -> T:
        try:
            return await asyncio.wait_for(call, self.sink_timeout)
        except SinkError:
            raise
        except asyncio.TimeoutError as exc:
            raise SinkError(
                f"timed out after {self.sink_timeout}s", destination=destination
            ) from exc
        except Exception as exc:
            raise SinkError(str(exc), destination=destination) from exc

    async def _check_rule(
        self,
        context: _EventContext,
        orgs: Sequence[Org],
        ignore_labels: Sequence[str],
    ) -> EligibilityResult:
        if not repo_allowed(context.activity, orgs):
            logger.debug(
                "Eligibility skip activity=%s reason=not_allowed owner=%s repo=%s",
                context.activity.name,
                context.activity.owner,
                context.activity.repo,
            )
            return EligibilityResult(eligible=False)
        pull_request = await self._pull_request(context)
        return check_eligibility(context.activity, orgs, ignore_labels, pull_request)

    async def _pull_request(self, context: _EventContext) -> Optional[PullRequest]:
        if not context.fetched:
            context.fetched = True
            try:
                context.pull_request = await fetch_pull_request(
                    context.activity, self.pull_requests, self.provider_timeout
                )
            except ProviderError as exc:
                context.fetch_error = exc
        if context.fetch_error is not None:
            raise context.fetch_error
        return context.pull_request

    async def _resolve(
        self, user: GitUser, activity: ActivityRecord
    ) -> Optional[ChatIdentity]:
        try:
            return await asyncio.wait_for(
                self.identities.resolve(user), self.provider_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                f"timed out resolving {user.login}",
                provider="identity resolver",
                activity=activity.name,
            ) from exc
        except Exception as exc:
            raise ProviderError(
                f"resolving {user.login}: {exc}",
                provider="identity resolver",
                activity=activity.name,
            ) from exc

    def _is_lgtm_repo(self, activity: ActivityRecord) -> bool:
        return bool(self.config.lgtm_repos) and repo_allowed(
            activity, self.config.lgtm_repos
        )

    def _annotate(
        self, name: str, destination: str, message_type: str, reference: MessageReference
    ) -> None:
        if self.annotator is None:
            return
        try:
            self.annotator.annotate_activity(
                name,
                annotation_key(destination, message_type),
                f"{reference.channel_id}/{reference.timestamp}",
            )
        except Exception:  # noqa: BLE001
            logger.warning(
                "Failed to annotate activity=%s destination=%s",
                name,
                destination,
                exc_info=True,
            )

    @staticmethod
    def _rule_failed(
        flow: str, idx: int, activity: ActivityRecord, exc: PipebotError
    ) -> None:
        rule_error_counter.labels(flow=flow, error=type(exc).__name__).inc()
        logger.error(
            "Rule #%d of %s flow failed for activity=%s: %s",
            idx,
            flow,
            activity.name,
            exc,
        )


def _require_name(activity: ActivityRecord) -> None:
    if activity.name == "":
        raise ConfigurationError("PipelineActivity name cannot be empty")
