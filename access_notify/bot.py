"""Messaging bot interface shared by every chat platform integration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Protocol, Sequence

from .access import AccessReview
from .plugindata import AccessRequestData, MessageData


@dataclass(frozen=True)
class Recipient:
    """A resolved notification target.

    ``name`` is the raw configured value (email, channel name...), ``id`` the
    platform identifier used to send messages, ``kind`` a platform tag such as
    ``"User"`` or ``"Channel"``. ``data`` belongs to the bot that produced it.
    """

    name: str
    id: str
    kind: str
    data: Any = None


class DeliveryError(ExceptionGroup):
    """Some targets of a multi-target operation failed.

    Every individual failure is kept in ``exceptions``; ``sent`` lists the
    messages that were delivered anyway.
    """

    def __new__(cls, message: str, exceptions: Sequence[Exception], sent: Sequence[MessageData] = ()):
        self = super().__new__(cls, message, exceptions)
        self.sent = list(sent)
        return self

    def derive(self, excs: Sequence[Exception]) -> "DeliveryError":
        return DeliveryError(self.message, excs, self.sent)


def raise_for_failures(message: str, errors: List[Exception], sent: Sequence[MessageData] = ()) -> None:
    if errors:
        raise DeliveryError(message, errors, sent)


class MessagingBot(Protocol):
    """Everything the notifier needs from a chat platform."""

    async def check_health(self) -> None:
        """Raise when the platform cannot be reached with the configured credentials."""

    async def broadcast(
        self,
        recipients: Sequence[Recipient],
        request_id: str,
        data: AccessRequestData,
    ) -> List[MessageData]:
        """Post the request message to every recipient.

        Raises :class:`DeliveryError` carrying the partial result when some posts fail.
        """

    async def post_review_reply(self, channel_id: str, thread_id: str, review: AccessReview) -> None:
        """Reply to a sent message with a review. A no-op without threaded replies."""

    async def update_messages(
        self,
        request_id: str,
        data: AccessRequestData,
        sent_messages: Sequence[MessageData],
        reviews: Sequence[AccessReview],
    ) -> None:
        """Refresh every sent message, raising :class:`DeliveryError` on partial failure."""

    async def fetch_recipient(self, name: str) -> Recipient:
        ...

    async def aclose(self) -> None:
        """Release connections held by the bot."""
