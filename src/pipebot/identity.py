from typing import Mapping, Optional, Protocol

import cachetools
from sanic.log import logger
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from pipebot.github.model import GitUser
from pipebot.reconcile.errors import NotFoundError
from pipebot.reconcile.types import ChatIdentity


class UserProvider(Protocol):
    async def get_user(self, login: str) -> GitUser:
        ...


class SlackIdentityResolver:
    """Maps git users to Slack users.

    The static ``users`` map (git login to Slack user id) wins. Otherwise the
    user's email is looked up in Slack, loading the email from GitHub when the
    webhook payload did not carry one.
    """

    def __init__(
        self,
        client: AsyncWebClient,
        users: Optional[Mapping[str, str]] = None,
        git_users: Optional[UserProvider] = None,
        cache_size: int = 500,
        cache_ttl: float = 3600,
    ):
        self.client = client
        self.users = dict(users or {})
        self.git_users = git_users
        self.cache = cachetools.TTLCache(maxsize=cache_size, ttl=cache_ttl)

    async def resolve(self, user: GitUser) -> Optional[ChatIdentity]:
        if user.login in self.users:
            return ChatIdentity(id=self.users[user.login], name=user.login)

        if user.login in self.cache:
            return self.cache[user.login]

        email = user.email
        if not email and self.git_users is not None:
            try:
                email = (await self.git_users.get_user(user.login)).email
            except NotFoundError:
                logger.warning("Git user %s not found", user.login)
        if not email:
            logger.info("Identity skip login=%s reason=no_email", user.login)
            return None

        try:
            response = await self.client.users_lookupByEmail(email=email)
        except SlackApiError as e:
            if e.response is not None and e.response.get("error") == "users_not_found":
                logger.info("Identity skip login=%s reason=not_in_slack", user.login)
                self.cache[user.login] = None
                return None
            raise

        slack_user = response["user"]
        identity = ChatIdentity(
            id=slack_user["id"],
            name=slack_user.get("name"),
            url=user.html_url,
        )
        self.cache[user.login] = identity
        return identity
