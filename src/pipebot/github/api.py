from gidgethub import BadRequest
from gidgethub.abc import GitHubAPI

from sanic.log import logger

from pipebot.github.model import GitUser, PullRequest
from pipebot.metric import api_call_count
from pipebot.reconcile.errors import NotFoundError


class API:
    gh: GitHubAPI

    call_count: int

    def __init__(self, gh: GitHubAPI):
        self.gh = gh
        self.call_count = 0

    async def _getitem(self, url: str) -> dict:
        self.call_count += 1
        api_call_count.inc()
        try:
            return await self.gh.getitem(url)
        except BadRequest as e:
            if e.status_code == 404:
                raise NotFoundError(f"{url} not found") from e
            raise

    async def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequest:
        url = f"/repos/{owner}/{repo}/pulls/{number}"
        logger.debug("Get pull request %s", url)
        return PullRequest.model_validate(await self._getitem(url))

    async def get_user(self, login: str) -> GitUser:
        url = f"/users/{login}"
        logger.debug("Get user %s", url)
        return GitUser.model_validate(await self._getitem(url))
