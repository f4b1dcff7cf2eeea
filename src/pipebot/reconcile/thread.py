"""Grouping of pull request builds into a single message thread.

A pull request is built many times, and every build produces its own
activity. All of them should keep editing one Slack message, so the oldest
build (by build number) is picked as the anchor whose name keys the thread.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence

from sanic.log import logger

from pipebot.activity.model import ActivityRecord
from pipebot.reconcile.errors import ConfigurationError, ProviderError
from pipebot.reconcile.ports import ActivityProvider
from pipebot.reconcile.types import PullRequestThread

PR_BRANCH_PREFIX = "pr-"


def get_pull_request_number(activity: ActivityRecord) -> int:
    branch = activity.branch.lower()
    if not branch.startswith(PR_BRANCH_PREFIX):
        return 0
    suffix = branch[len(PR_BRANCH_PREFIX) :]
    if not suffix.isdecimal():
        raise ConfigurationError(
            f"branch {activity.branch!r} of {activity.name} is not a pull request number"
        )
    return int(suffix)


def build_number(activity: ActivityRecord) -> int:
    try:
        return int(activity.build)
    except ValueError as exc:
        raise ConfigurationError(
            f"build {activity.build!r} of {activity.name} is not a number"
        ) from exc


def thread_fallback_key(activity: ActivityRecord, pr_number: int) -> str:
    return f"{activity.owner}/{activity.repo}/pr-{pr_number}"


def sort_by_build_number(activities: Sequence[ActivityRecord]) -> List[ActivityRecord]:
    numbered = []
    for activity in activities:
        if not activity.build.isdecimal():
            logger.warning(
                "Dropping activity=%s from thread, build %r is not a number",
                activity.name,
                activity.build,
            )
            continue
        numbered.append(activity)
    # sorted() is stable, equal builds keep the provider's order
    return sorted(numbered, key=lambda a: int(a.build))


async def find_thread(
    activity: ActivityRecord,
    provider: ActivityProvider,
    timeout: Optional[float] = None,
) -> PullRequestThread:
    pr_number = get_pull_request_number(activity)
    if pr_number == 0:
        raise ConfigurationError(f"{activity.name} is not a pull request build")

    try:
        found = await asyncio.wait_for(
            provider.list_activities(activity.owner, activity.repo, pr_number),
            timeout,
        )
    except asyncio.TimeoutError as exc:
        raise ProviderError(
            f"timed out after {timeout}s",
            provider="activity provider",
            activity=activity.name,
        ) from exc
    except Exception as exc:
        raise ProviderError(
            str(exc), provider="activity provider", activity=activity.name
        ) from exc

    siblings = sort_by_build_number(found)
    if not siblings:
        # historical activities can miss the labels that associate them with the PR
        logger.warning(
            "No pipeline activities exist for %s/%s/pr-%d, using %s as anchor",
            activity.owner,
            activity.repo,
            pr_number,
            activity.name,
        )
        return PullRequestThread(
            anchor=activity,
            latest=activity,
            key=thread_fallback_key(activity, pr_number),
        )

    return PullRequestThread(
        anchor=siblings[0],
        latest=siblings[-1],
        key=siblings[0].name,
        siblings=siblings,
    )


def is_stale(activity: ActivityRecord, thread: PullRequestThread) -> bool:
    if thread.degenerate:
        return False
    return build_number(activity) < build_number(thread.latest)
