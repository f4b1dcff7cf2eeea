from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import aiocache
import aiohttp
import cachetools
from gidgethub import aiohttp as gh_aiohttp
from gidgethub.apps import get_installation_access_token
from sanic.log import logger

from pipebot import config as app_config
from pipebot.github.api import API
from pipebot.github.model import GitUser, PullRequest
from pipebot.reconcile.errors import ConfigurationError

__all__ = ["API", "SessionAPI", "get_access_token", "github_client"]

httpcache = cachetools.LRUCache(maxsize=500)


@aiocache.cached(ttl=app_config.ACCESS_TOKEN_TTL, key_builder=lambda fn, gh, id: id)
async def get_access_token(gh: gh_aiohttp.GitHubAPI, installation_id: int) -> str:
    logger.debug("Getting NEW installation access token for %d", installation_id)
    access_token_response = await get_installation_access_token(
        gh,
        installation_id=installation_id,
        app_id=app_config.GITHUB_APP_ID,
        private_key=app_config.GITHUB_PRIVATE_KEY,
    )
    return access_token_response["token"]


async def client_for_session(
    session: aiohttp.ClientSession,
    token: Optional[str] = None,
    installation_id: Optional[int] = None,
) -> gh_aiohttp.GitHubAPI:
    token = token or app_config.GITHUB_TOKEN
    installation_id = installation_id or app_config.GITHUB_INSTALLATION_ID

    if token is None:
        if (
            installation_id is None
            or app_config.GITHUB_APP_ID is None
            or app_config.GITHUB_PRIVATE_KEY is None
        ):
            raise ConfigurationError(
                "Either GITHUB_TOKEN or GITHUB_APP_ID, GITHUB_PRIVATE_KEY "
                "and GITHUB_INSTALLATION_ID must be set"
            )
        gh_pre = gh_aiohttp.GitHubAPI(session, "pipebot")
        token = await get_access_token(gh_pre, installation_id)

    return gh_aiohttp.GitHubAPI(
        session,
        "pipebot",
        oauth_token=token,
        cache=httpcache,
    )


@asynccontextmanager
async def github_client(
    token: Optional[str] = None, installation_id: Optional[int] = None
) -> AsyncIterator[API]:
    async with aiohttp.ClientSession() as session:
        gh = await client_for_session(session, token, installation_id)
        yield API(gh)



class SessionAPI:
    """GitHub access that builds a fresh :class:`API` for every call.

    App installation tokens expire, so the token is resolved again on each
    call. ``get_access_token`` caches it for ``ACCESS_TOKEN_TTL`` seconds.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: Optional[str] = None,
        installation_id: Optional[int] = None,
    ):
        self.session = session
        self.token = token
        self.installation_id = installation_id

    async def api(self) -> API:
        gh = await client_for_session(self.session, self.token, self.installation_id)
        return API(gh)

    async def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequest:
        return await (await self.api()).get_pull_request(owner, repo, number)

    async def get_user(self, login: str) -> GitUser:
        return await (await self.api()).get_user(login)
