"""Slack messaging bot built on the Block Kit layout."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Sequence

import structlog
from slack_sdk.errors import SlackApiError

from ..access import AccessReview
from ..background import BackgroundRunner
from ..bot import Recipient, raise_for_failures
from ..errors import BotApiError
from ..messages import fields_text, review_text, status_text
from ..plugindata import AccessRequestData, MessageData
from ..slack_client import SlackClient

HEADER_TEXT = "You have a new Role Request:"


def _section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def build_request_blocks(
    request_id: str,
    data: AccessRequestData,
    cluster_name: str,
    web_proxy_url: str | None = None,
) -> List[Dict[str, Any]]:
    """Build the Block Kit payload describing an access request."""

    return [
        _section(HEADER_TEXT),
        _section(fields_text(request_id, data, cluster_name, web_proxy_url)),
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": status_text(data.resolution_tag, data.resolution_reason)},
            ],
        },
    ]


def _fallback_text(request_id: str, data: AccessRequestData) -> str:
    label = data.resolution_tag.value or "PENDING"
    return f"Role request {request_id} from {data.user or 'unknown user'}: {label}"


def _api_error(operation: str, exc: SlackApiError) -> BotApiError:
    response = getattr(exc, "response", None)
    error_code = response.get("error") if response is not None else None
    status_code = getattr(response, "status_code", None)
    return BotApiError(
        f"slack {operation} failed: {error_code or exc}",
        status_code=status_code,
        error_code=error_code,
    )


class SlackBot:
    """Post and update access request messages in Slack.

    Every WebClient call blocks, so calls go through the background runner's
    thread pool instead of running on the event loop.
    """

    def __init__(
        self,
        client: SlackClient,
        runner: BackgroundRunner,
        *,
        cluster_name: str,
        web_proxy_url: str | None = None,
    ) -> None:
        self._client = client
        self._runner = runner
        self.cluster_name = cluster_name
        self.web_proxy_url = web_proxy_url

    async def _call(self, operation: str, func: Callable[..., Mapping[str, Any]], /, **kwargs: Any) -> Mapping[str, Any]:
        try:
            return await self._runner.run_in_thread(func, **kwargs)
        except SlackApiError as exc:
            raise _api_error(operation, exc) from exc

    async def check_health(self) -> None:
        try:
            await self._call("auth.test", self._client.auth_test)
        except BotApiError as exc:
            if exc.error_code == "invalid_auth":
                raise BotApiError(
                    "authentication failed, probably invalid token",
                    status_code=exc.status_code,
                    error_code=exc.error_code,
                ) from exc
            raise

    async def broadcast(
        self,
        recipients: Sequence[Recipient],
        request_id: str,
        data: AccessRequestData,
    ) -> List[MessageData]:
        log = structlog.get_logger().bind(request_id=request_id)
        blocks = build_request_blocks(request_id, data, self.cluster_name, self.web_proxy_url)
        text = _fallback_text(request_id, data)

        sent: List[MessageData] = []
        errors: List[Exception] = []
        for recipient in recipients:
            try:
                response = await self._call(
                    "chat.postMessage",
                    self._client.post_message,
                    channel=recipient.id,
                    text=text,
                    blocks=blocks,
                )
            except BotApiError as exc:
                log.error("slack_post_failed", channel=recipient.id, error=str(exc))
                errors.append(exc)
                continue

            channel_id = response.get("channel") or recipient.id
            ts = response.get("ts")
            if not ts:
                log.warning("slack_response_missing_ts", channel=channel_id)
                errors.append(BotApiError(f"slack chat.postMessage returned no timestamp for {channel_id}"))
                continue
            sent.append(MessageData(channel_id=channel_id, message_id=ts))

        raise_for_failures(f"failed to post request {request_id} to some recipients", errors, sent)
        return sent

    async def post_review_reply(self, channel_id: str, thread_id: str, review: AccessReview) -> None:
        await self._call(
            "chat.postMessage",
            self._client.post_thread_reply,
            channel=channel_id,
            thread_ts=thread_id,
            text=review_text(review),
        )

    async def update_messages(
        self,
        request_id: str,
        data: AccessRequestData,
        sent_messages: Sequence[MessageData],
        reviews: Sequence[AccessReview],
    ) -> None:
        # Reviews live in the message thread, so the updated body only carries the status.
        blocks = build_request_blocks(request_id, data, self.cluster_name, self.web_proxy_url)
        text = _fallback_text(request_id, data)

        updated: List[MessageData] = []
        errors: List[Exception] = []
        for message in sent_messages:
            try:
                await self._call(
                    "chat.update",
                    self._client.update_message,
                    channel=message.channel_id,
                    ts=message.message_id,
                    text=text,
                    blocks=blocks,
                )
            except BotApiError as exc:
                if exc.error_code == "message_not_found":
                    exc = BotApiError(
                        f"cannot find message with timestamp {message.message_id} in channel {message.channel_id}",
                        status_code=exc.status_code,
                        error_code=exc.error_code,
                    )
                structlog.get_logger().error(
                    "slack_update_failed",
                    request_id=request_id,
                    channel=message.channel_id,
                    error=str(exc),
                )
                errors.append(exc)
                continue
            updated.append(message)

        raise_for_failures(f"failed to update some messages of request {request_id}", errors, updated)

    async def fetch_recipient(self, name: str) -> Recipient:
        """Resolve an email address to a user, anything else is used as a channel."""

        if "@" not in name:
            return Recipient(name=name, id=name, kind="Channel")

        response = await self._call("users.lookupByEmail", self._client.lookup_user_by_email, email=name)
        user = response.get("user") or {}
        user_id = user.get("id")
        if not user_id:
            raise BotApiError(f"slack users.lookupByEmail returned no user for {name}")
        return Recipient(name=name, id=user_id, kind="User", data=user)

    async def aclose(self) -> None:
        """The WebClient keeps no pooled connections, so there is nothing to release."""
