from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence

from sanic.log import logger

from pipebot.activity.model import ActivityRecord
from pipebot.github.model import PullRequest
from pipebot.model import Org
from pipebot.reconcile.errors import NotFoundError, ProviderError
from pipebot.reconcile.ports import PullRequestProvider
from pipebot.reconcile.thread import get_pull_request_number
from pipebot.reconcile.types import EligibilityResult


def repo_allowed(activity: ActivityRecord, orgs: Sequence[Org]) -> bool:
    if len(orgs) == 0:
        return True
    for org in orgs:
        if org.name != activity.owner:
            continue
        if len(org.repos) == 0 or activity.repo in org.repos:
            return True
    return False


def ignored_labels(
    pull_request: Optional[PullRequest], ignore_labels: Sequence[str]
) -> List[str]:
    if pull_request is None or len(ignore_labels) == 0:
        return []
    labels = pull_request.label_names
    return [label for label in ignore_labels if label in labels]


def check_eligibility(
    activity: ActivityRecord,
    orgs: Sequence[Org],
    ignore_labels: Sequence[str],
    pull_request: Optional[PullRequest],
) -> EligibilityResult:
    if not repo_allowed(activity, orgs):
        logger.debug(
            "Eligibility skip activity=%s reason=not_allowed owner=%s repo=%s",
            activity.name,
            activity.owner,
            activity.repo,
        )
        return EligibilityResult(eligible=False)

    found = ignored_labels(pull_request, ignore_labels)
    if found:
        logger.info("Ignoring %s because it has labels %s", activity.name, found)
        return EligibilityResult(eligible=False)

    return EligibilityResult(eligible=True, pull_request=pull_request)


async def fetch_pull_request(
    activity: ActivityRecord,
    provider: PullRequestProvider,
    timeout: Optional[float] = None,
) -> Optional[PullRequest]:
    """Fetch the pull request an activity was built for.

    Returns ``None`` for activities that are not pull request builds and for
    pull requests the provider does not know about. Any other provider failure
    is raised as :class:`ProviderError`.
    """
    number = get_pull_request_number(activity)
    if number == 0:
        return None
    try:
        return await asyncio.wait_for(
            provider.get_pull_request(activity.owner, activity.repo, number),
            timeout,
        )
    except NotFoundError:
        logger.warning(
            "Pull request %s/%s#%d not found for activity=%s",
            activity.owner,
            activity.repo,
            number,
            activity.name,
        )
        return None
    except asyncio.TimeoutError as exc:
        raise ProviderError(
            f"timed out after {timeout}s",
            provider="pull request provider",
            activity=activity.name,
        ) from exc
    except Exception as exc:
        raise ProviderError(
            str(exc), provider="pull request provider", activity=activity.name
        ) from exc


async def evaluate_rule(
    activity: ActivityRecord,
    orgs: Sequence[Org],
    ignore_labels: Sequence[str],
    provider: PullRequestProvider,
    timeout: Optional[float] = None,
) -> EligibilityResult:
    """Fetch the pull request and check a single rule against it.

    Callers evaluating several rules for one event fetch the pull request
    once with :func:`fetch_pull_request` and use :func:`check_eligibility`.
    """
    if not repo_allowed(activity, orgs):
        return EligibilityResult(eligible=False)
    pull_request = await fetch_pull_request(activity, provider, timeout)
    return check_eligibility(activity, orgs, ignore_labels, pull_request)
