"""Discord messaging bot talking to the REST API through httpx."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

import httpx
import structlog

from ..access import AccessReview
from ..bot import Recipient, raise_for_failures
from ..errors import BotApiError
from ..messages import request_message_text
from ..plugindata import AccessRequestData, MessageData

DEFAULT_DISCORD_API_URL = "https://discord.com/api/"
DISCORD_HTTP_TIMEOUT = 10.0


class DiscordBot:
    """Post and edit plain text access request messages in Discord channels.

    Discord has no threaded replies, so reviews are folded into the message
    body on every update. Recipients are channel ids used verbatim.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        cluster_name: str,
        web_proxy_url: str | None = None,
        api_url: str | None = None,
    ) -> None:
        if client is None and token is None:
            raise ValueError("Either an instantiated client or a bot token must be provided.")

        self._client = client or httpx.AsyncClient(
            base_url=api_url or DEFAULT_DISCORD_API_URL,
            headers={
                "Authorization": f"Bot {token}",
                "Accept": "application/json",
            },
            timeout=DISCORD_HTTP_TIMEOUT,
        )
        self.cluster_name = cluster_name
        self.web_proxy_url = web_proxy_url

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def _request(self, method: str, path: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.HTTPError as exc:
            raise BotApiError(f"discord {method} {path} failed: {exc}") from exc

        if response.is_error:
            raise _api_error(response)
        if not response.content:
            return {}
        return response.json()

    def _message_text(
        self,
        request_id: str,
        data: AccessRequestData,
        reviews: Sequence[AccessReview] | None = None,
    ) -> str:
        return request_message_text(
            request_id,
            data,
            self.cluster_name,
            self.web_proxy_url,
            list(reviews or []),
        )

    async def check_health(self) -> None:
        try:
            await self._request("GET", "/users/@me")
        except BotApiError as exc:
            raise BotApiError(
                f"health check failed, probably invalid token: {exc}",
                status_code=exc.status_code,
                error_code=exc.error_code,
            ) from exc

    async def broadcast(
        self,
        recipients: Sequence[Recipient],
        request_id: str,
        data: AccessRequestData,
    ) -> List[MessageData]:
        log = structlog.get_logger().bind(request_id=request_id)
        text = self._message_text(request_id, data)

        sent: List[MessageData] = []
        errors: List[Exception] = []
        for recipient in recipients:
            try:
                result = await self._request("POST", f"/channels/{recipient.id}/messages", {"content": text})
            except BotApiError as exc:
                log.error("discord_post_failed", channel=recipient.id, error=str(exc))
                errors.append(exc)
                continue
            message_id = result.get("id")
            if not message_id:
                log.warning("discord_response_missing_id", channel=recipient.id)
                errors.append(BotApiError(f"discord message create returned no id for channel {recipient.id}"))
                continue
            sent.append(MessageData(channel_id=recipient.id, message_id=str(message_id)))

        raise_for_failures(f"failed to post request {request_id} to some channels", errors, sent)
        return sent

    async def post_review_reply(self, channel_id: str, thread_id: str, review: AccessReview) -> None:
        """Discord messages carry their reviews in the body, see :meth:`update_messages`."""

    async def update_messages(
        self,
        request_id: str,
        data: AccessRequestData,
        sent_messages: Sequence[MessageData],
        reviews: Sequence[AccessReview],
    ) -> None:
        text = self._message_text(request_id, data, reviews)

        updated: List[MessageData] = []
        errors: List[Exception] = []
        for message in sent_messages:
            path = f"/channels/{message.channel_id}/messages/{message.message_id}"
            try:
                await self._request("PATCH", path, {"content": text})
            except BotApiError as exc:
                structlog.get_logger().error(
                    "discord_update_failed",
                    request_id=request_id,
                    channel=message.channel_id,
                    error=str(exc),
                )
                errors.append(exc)
                continue
            updated.append(message)

        raise_for_failures(f"failed to update some messages of request {request_id}", errors, updated)

    async def fetch_recipient(self, name: str) -> Recipient:
        return Recipient(name=name, id=name, kind="Channel")

    async def aclose(self) -> None:
        await self._client.aclose()


def _api_error(response: httpx.Response) -> BotApiError:
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict) and body.get("message"):
        code = body.get("code")
        return BotApiError(
            f"{body['message']} (code: {code}, status: {response.status_code})",
            status_code=response.status_code,
            error_code=str(code) if code is not None else None,
        )
    return BotApiError(
        f"Discord API returned error: {response.text} (status: {response.status_code})",
        status_code=response.status_code,
    )
