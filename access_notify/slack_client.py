"""Thin wrapper utilities around the Slack WebClient."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from slack_sdk import WebClient

DEFAULT_SLACK_API_URL = "https://slack.com/api/"


class SlackClient:
    """Encapsulate the Slack WebClient calls the notifier needs, for easier testing."""

    def __init__(
        self,
        *,
        token: str | None = None,
        client: WebClient | None = None,
        base_url: str | None = None,
    ) -> None:
        if client is None and token is None:
            raise ValueError("Either an instantiated client or a bot token must be provided.")

        self._client = client or WebClient(token=token, base_url=base_url or DEFAULT_SLACK_API_URL)

    @property
    def client(self) -> WebClient:
        """Expose the underlying WebClient for advanced use cases."""

        return self._client

    def post_message(
        self,
        *,
        channel: str,
        text: str,
        blocks: Sequence[Mapping[str, Any]],
    ) -> Mapping[str, Any]:
        """Post a message with Block Kit content to a Slack channel or user."""

        return self._client.chat_postMessage(channel=channel, text=text, blocks=list(blocks))

    def post_thread_reply(self, *, channel: str, thread_ts: str, text: str) -> Mapping[str, Any]:
        """Reply in the thread started by the message at *thread_ts*."""

        return self._client.chat_postMessage(channel=channel, thread_ts=thread_ts, text=text)

    def update_message(
        self,
        *,
        channel: str,
        ts: str,
        text: str,
        blocks: Sequence[Mapping[str, Any]],
    ) -> Mapping[str, Any]:
        """Update an existing Slack message."""

        return self._client.chat_update(channel=channel, ts=ts, text=text, blocks=list(blocks))

    def lookup_user_by_email(self, email: str) -> Mapping[str, Any]:
        return self._client.users_lookupByEmail(email=email)

    def auth_test(self) -> Mapping[str, Any]:
        return self._client.auth_test()
