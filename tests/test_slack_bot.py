"""Tests for the Slack messaging bot."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from slack_sdk.errors import SlackApiError
from structlog.testing import capture_logs

from access_notify.access import AccessReview, RequestState
from access_notify.background import BackgroundRunner
from access_notify.bot import DeliveryError, Recipient
from access_notify.bots.slack import SlackBot, build_request_blocks
from access_notify.errors import BotApiError
from access_notify.plugindata import AccessRequestData, MessageData, ResolutionTag
from access_notify.slack_client import SlackClient


class DummyWebClient:
    def __init__(self, *, failing_channels=(), error="channel_not_found"):
        self.calls = []
        self.failing_channels = set(failing_channels)
        self.error = error
        self.counter = 0

    def _maybe_fail(self, channel):
        if channel in self.failing_channels:
            raise SlackApiError("request failed", {"ok": False, "error": self.error})

    def chat_postMessage(self, **kwargs):
        self.calls.append(("post", kwargs))
        self._maybe_fail(kwargs["channel"])
        self.counter += 1
        return {"ok": True, "channel": kwargs["channel"], "ts": f"1700000000.00000{self.counter}"}

    def chat_update(self, **kwargs):
        self.calls.append(("update", kwargs))
        self._maybe_fail(kwargs["channel"])
        return {"ok": True}

    def users_lookupByEmail(self, **kwargs):
        self.calls.append(("lookup", kwargs))
        if kwargs["email"] == "ghost@example.com":
            raise SlackApiError("request failed", {"ok": False, "error": "users_not_found"})
        return {"ok": True, "user": {"id": "U123", "name": "alice"}}

    def auth_test(self):
        self.calls.append(("auth", {}))
        if self.error == "invalid_auth":
            raise SlackApiError("request failed", {"ok": False, "error": "invalid_auth"})
        return {"ok": True}


@pytest.fixture
def runner():
    background = BackgroundRunner(max_workers=2)
    yield background
    background.shutdown()


def _bot(dummy, runner, web_proxy_url=None) -> SlackBot:
    return SlackBot(SlackClient(client=dummy), runner, cluster_name="cluster-a", web_proxy_url=web_proxy_url)


def _data(**overrides) -> AccessRequestData:
    values = {"user": "alice", "roles": ["dev"], "request_reason": "deploy"}
    values.update(overrides)
    return AccessRequestData(**values)


def test_build_request_blocks_layout():
    blocks = build_request_blocks("req-1", _data(resolution_tag=ResolutionTag.DENIED), "cluster-a")

    assert [block["type"] for block in blocks] == ["section", "section", "context"]
    assert blocks[0]["text"]["text"] == "You have a new Role Request:"
    assert "*ID*: req-1" in blocks[1]["text"]["text"]
    assert blocks[2]["elements"][0]["text"] == "*Status:* ❌ DENIED"


@pytest.mark.asyncio
async def test_broadcast_posts_to_every_recipient(runner):
    dummy = DummyWebClient()
    bot = _bot(dummy, runner, "https://proxy.example.com")
    recipients = [Recipient("chan", "C1", "Channel"), Recipient("alice@example.com", "U1", "User")]

    sent = await bot.broadcast(recipients, "req-1", _data())

    assert sent == [
        MessageData(channel_id="C1", message_id="1700000000.000001"),
        MessageData(channel_id="U1", message_id="1700000000.000002"),
    ]
    post = dummy.calls[0][1]
    assert post["channel"] == "C1"
    assert "https://proxy.example.com/web/requests/req-1" in post["blocks"][1]["text"]["text"]


@pytest.mark.asyncio
async def test_broadcast_collects_failures_with_partial_result(runner):
    dummy = DummyWebClient(failing_channels={"C2"})
    bot = _bot(dummy, runner)
    recipients = [Recipient(name, name, "Channel") for name in ("C1", "C2", "C3")]

    with capture_logs() as logs, pytest.raises(DeliveryError) as err:
        await bot.broadcast(recipients, "req-1", _data())

    assert [message.channel_id for message in err.value.sent] == ["C1", "C3"]
    assert len(err.value.exceptions) == 1
    assert err.value.exceptions[0].error_code == "channel_not_found"
    assert any(entry["event"] == "slack_post_failed" for entry in logs)


@pytest.mark.asyncio
async def test_post_review_reply_uses_thread(runner):
    dummy = DummyWebClient()
    bot = _bot(dummy, runner)
    review = AccessReview(author="bob", created=datetime(2024, 1, 2, 3, 4, tzinfo=UTC), proposed_state=RequestState.APPROVED)

    await bot.post_review_reply("C1", "1700000000.000001", review)

    kind, call = dummy.calls[0]
    assert kind == "post"
    assert call["thread_ts"] == "1700000000.000001"
    assert call["text"].startswith("bob reviewed the request at 02 Jan 24 03:04 UTC.")


@pytest.mark.asyncio
async def test_update_messages_reports_missing_message(runner):
    dummy = DummyWebClient(failing_channels={"C2"}, error="message_not_found")
    bot = _bot(dummy, runner)
    messages = [MessageData("C1", "1.1"), MessageData("C2", "2.2")]

    with capture_logs(), pytest.raises(DeliveryError) as err:
        await bot.update_messages("req-1", _data(resolution_tag=ResolutionTag.APPROVED), messages, [])

    assert err.value.sent == [MessageData("C1", "1.1")]
    assert "cannot find message with timestamp 2.2 in channel C2" in str(err.value.exceptions[0])
    assert [call[1]["ts"] for call in dummy.calls] == ["1.1", "2.2"]


@pytest.mark.asyncio
async def test_fetch_recipient_resolves_emails_and_channels(runner):
    dummy = DummyWebClient()
    bot = _bot(dummy, runner)

    user = await bot.fetch_recipient("alice@example.com")
    channel = await bot.fetch_recipient("access-requests")

    assert (user.id, user.kind) == ("U123", "User")
    assert (channel.id, channel.kind) == ("access-requests", "Channel")
    assert [call[0] for call in dummy.calls] == ["lookup"]

    with pytest.raises(BotApiError):
        await bot.fetch_recipient("ghost@example.com")


@pytest.mark.asyncio
async def test_check_health_flags_invalid_token(runner):
    bot = _bot(DummyWebClient(error="invalid_auth"), runner)

    with pytest.raises(BotApiError, match="invalid token"):
        await bot.check_health()

    await _bot(DummyWebClient(), runner).check_health()
