"""Slack Web API implementation of the message sink."""

from typing import Optional

from sanic.log import logger
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from pipebot.reconcile.errors import SinkError
from pipebot.reconcile.render import Message
from pipebot.reconcile.types import MessageReference


class SlackMessageSink:
    client: AsyncWebClient

    def __init__(self, client: Optional[AsyncWebClient] = None, token: Optional[str] = None):
        self.client = client if client is not None else AsyncWebClient(token=token)

    async def send(self, destination: str, message: Message) -> MessageReference:
        logger.debug("chat.postMessage channel=%s", destination)
        try:
            response = await self.client.chat_postMessage(
                channel=destination,
                text=message.text,
                attachments=message.payload(),
            )
        except SlackApiError as e:
            raise SinkError(_slack_error(e), destination=destination) from e

        return MessageReference(
            channel_id=response["channel"], timestamp=response["ts"]
        )

    async def update(self, reference: MessageReference, message: Message) -> None:
        logger.debug(
            "chat.update channel=%s ts=%s", reference.channel_id, reference.timestamp
        )
        try:
            await self.client.chat_update(
                channel=reference.channel_id,
                ts=reference.timestamp,
                text=message.text,
                attachments=message.payload(),
            )
        except SlackApiError as e:
            raise SinkError(_slack_error(e), destination=reference.channel_id) from e

    async def open_direct_conversation(self, user_id: str) -> str:
        logger.debug("conversations.open user=%s", user_id)
        try:
            response = await self.client.conversations_open(users=[user_id])
        except SlackApiError as e:
            raise SinkError(_slack_error(e), destination=user_id) from e
        return response["channel"]["id"]


def _slack_error(e: SlackApiError) -> str:
    error = e.response.get("error") if e.response is not None else None
    return f"Slack API error: {error or e}"
