"""Access request event handler tying plugin data, recipients and the chat bot together."""

from __future__ import annotations

import asyncio
import random
import weakref
from dataclasses import replace
from typing import Callable, List, Sequence, Tuple

import structlog

from .access import AccessClient, AccessRequest, AccessReview, Event, OpType, RequestState
from .bot import DeliveryError, MessagingBot, Recipient, raise_for_failures
from .errors import AccessNotifyError, CompareFailedError, NotFoundError
from .plugindata import (
    AccessRequestData,
    GenericPluginData,
    ResolutionTag,
    decode_plugin_data,
    encode_plugin_data,
)
from .recipients import RecipientsMap

DEFAULT_MAX_UPDATE_ATTEMPTS = 5
DEFAULT_UPDATE_BACKOFF = 0.05

PluginDataModifier = Callable[[GenericPluginData | None], GenericPluginData | None]

_RESOLUTIONS = {
    RequestState.APPROVED: ResolutionTag.APPROVED,
    RequestState.DENIED: ResolutionTag.DENIED,
}


class AccessRequestNotifier:
    """Handle watcher events by broadcasting and updating chat messages.

    Events for the same request are handled one at a time; events for
    different requests run concurrently.
    """

    def __init__(
        self,
        client: AccessClient,
        bot: MessagingBot,
        recipients: RecipientsMap,
        *,
        cluster_name: str,
        max_update_attempts: int = DEFAULT_MAX_UPDATE_ATTEMPTS,
        update_backoff: float = DEFAULT_UPDATE_BACKOFF,
    ) -> None:
        self._client = client
        self._bot = bot
        self._recipients = recipients
        self.cluster_name = cluster_name
        self.max_update_attempts = max_update_attempts
        self.update_backoff = update_backoff
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, request_id: str) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[request_id] = lock
        return lock

    async def on_watcher_event(self, event: Event) -> None:
        request = event.request
        if not request.id:
            raise ValueError("access request event without a request id")

        async with self._lock_for(request.id):
            if event.op is OpType.PUT:
                await self._on_put(request)
            elif event.op is OpType.DELETE:
                await self._on_deleted(request.id)
            else:
                raise ValueError(f"unexpected event operation {event.op.value}")

    async def _on_put(self, request: AccessRequest) -> None:
        log = structlog.get_logger()
        if request.state.is_pending:
            await self._on_pending(request)
        elif request.state.is_resolved:
            await self._on_resolved(request)
        else:
            log.warning("unknown_request_state", state=request.state.value)

    async def _on_pending(self, request: AccessRequest) -> None:
        request_data = AccessRequestData(
            user=request.user,
            roles=list(request.roles),
            request_reason=request.request_reason,
        )

        def create(existing: GenericPluginData | None) -> GenericPluginData | None:
            if existing is not None:
                return None
            return GenericPluginData(**vars(request_data))

        _, created = await self._modify_plugin_data(request.id, create)
        if created is not None:
            await self._broadcast(request, request_data)

        if request.reviews:
            await self._post_review_replies(request)

    async def _broadcast(self, request: AccessRequest, request_data: AccessRequestData) -> None:
        log = structlog.get_logger()
        recipients = await self._resolve_recipients(request)
        if not recipients:
            log.warning("no_recipients_resolved", roles=list(request.roles))
            return

        failure: Exception | None = None
        try:
            sent = await self._bot.broadcast(recipients, request.id, request_data)
        except DeliveryError as exc:
            sent = exc.sent
            failure = exc

        if sent:
            def append_sent(existing: GenericPluginData | None) -> GenericPluginData | None:
                data = existing or GenericPluginData(**vars(request_data))
                data.sent_messages.extend(sent)
                return data

            await self._modify_plugin_data(request.id, append_sent)
            log.info("request_broadcast", messages=len(sent), recipients=len(recipients))

        if failure is not None:
            raise failure

    async def _resolve_recipients(self, request: AccessRequest) -> List[Recipient]:
        log = structlog.get_logger()
        names = self._recipients.get_recipients_for(request.roles, request.suggested_reviewers)

        resolved: List[Recipient] = []
        seen = set()
        for name in names:
            try:
                recipient = await self._bot.fetch_recipient(name)
            except AccessNotifyError as exc:
                log.warning("recipient_lookup_failed", recipient=name, error=str(exc))
                continue
            if recipient.id in seen:
                continue
            seen.add(recipient.id)
            resolved.append(recipient)
        return resolved

    async def _post_review_replies(self, request: AccessRequest) -> None:
        reviews = list(request.reviews)

        def bump_reviews(existing: GenericPluginData | None) -> GenericPluginData | None:
            if existing is None or existing.reviews_count >= len(reviews):
                return None
            existing.reviews_count = len(reviews)
            return existing

        previous, updated = await self._modify_plugin_data(request.id, bump_reviews)
        if previous is None or updated is None:
            return

        new_reviews = reviews[previous.reviews_count:]
        errors: List[Exception] = []
        for message in updated.sent_messages:
            for review in new_reviews:
                try:
                    await self._bot.post_review_reply(message.channel_id, message.message_id, review)
                except AccessNotifyError as exc:
                    errors.append(exc)
        raise_for_failures(f"failed to post some review replies of request {request.id}", errors)

        structlog.get_logger().info("review_replies_posted", reviews=len(new_reviews))
        await self._update_messages(request.id, updated, reviews)

    async def _on_resolved(self, request: AccessRequest) -> None:
        if request.reviews:
            await self._post_review_replies(request)

        tag = _RESOLUTIONS[request.state]

        def resolve(existing: GenericPluginData | None) -> GenericPluginData | None:
            if existing is None or existing.resolution_tag is not ResolutionTag.UNRESOLVED:
                return None
            existing.resolution_tag = tag
            existing.resolution_reason = request.resolve_reason
            return existing

        _, resolved = await self._modify_plugin_data(request.id, resolve)
        if resolved is None:
            structlog.get_logger().debug("resolution_already_recorded", resolution=tag.value)
            return

        await self._update_messages(request.id, resolved, request.reviews)
        structlog.get_logger().info("request_resolved", resolution=tag.value)

    async def _on_deleted(self, request_id: str) -> None:
        log = structlog.get_logger()

        def expire(existing: GenericPluginData | None) -> GenericPluginData | None:
            if existing is None or existing.resolution_tag is not ResolutionTag.UNRESOLVED:
                return None
            existing.resolution_tag = ResolutionTag.EXPIRED
            return existing

        previous, expired = await self._modify_plugin_data(request_id, expire)
        if previous is None:
            log.warning("cannot_expire_unknown_request")
            return
        if expired is None:
            return

        await self._update_messages(request_id, expired, [])
        log.info("request_expired")

    async def _update_messages(
        self,
        request_id: str,
        data: GenericPluginData,
        reviews: Sequence[AccessReview],
    ) -> None:
        if not data.sent_messages:
            structlog.get_logger().warning("no_messages_to_update")
            return

        request_data = AccessRequestData(
            user=data.user,
            roles=list(data.roles),
            request_reason=data.request_reason,
            reviews_count=data.reviews_count,
            resolution_tag=data.resolution_tag,
            resolution_reason=data.resolution_reason,
        )
        await self._bot.update_messages(request_id, request_data, list(data.sent_messages), list(reviews))

    async def _modify_plugin_data(
        self,
        request_id: str,
        modify: PluginDataModifier,
    ) -> Tuple[GenericPluginData | None, GenericPluginData | None]:
        """Apply *modify* to the stored plugin data with compare-and-swap semantics.

        Returns ``(previous, written)``. ``written`` is None when *modify*
        declined to change anything. Lost races are retried with jittered
        exponential backoff until ``max_update_attempts`` is exhausted.
        """

        for attempt in range(self.max_update_attempts):
            try:
                current_map = await self._client.get_plugin_data(request_id)
            except NotFoundError:
                current_map = None

            previous = decode_plugin_data(current_map) if current_map else None
            candidate = replace(previous, sent_messages=list(previous.sent_messages)) if previous else None
            written = modify(candidate)
            if written is None:
                return previous, None

            try:
                await self._client.update_plugin_data(request_id, encode_plugin_data(written), current_map or None)
            except CompareFailedError:
                delay = self.update_backoff * (2**attempt) * random.uniform(0.5, 1.5)
                structlog.get_logger().debug("plugin_data_update_conflict", attempt=attempt + 1, retry_in=delay)
                await asyncio.sleep(delay)
                continue
            return previous, written

        raise CompareFailedError(
            f"failed to update plugin data of request {request_id} after {self.max_update_attempts} attempts"
        )

