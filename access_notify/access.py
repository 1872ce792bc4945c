"""Access request data model and the client interfaces the plugins consume."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Dict, List, Mapping, Protocol, Tuple

from .errors import ServerVersionError

PluginDataMap = Dict[str, str]

MIN_SERVER_VERSION = "4.3.0"

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$")


class RequestState(str, Enum):
    NONE = "NONE"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"

    @property
    def is_pending(self) -> bool:
        return self is RequestState.PENDING

    @property
    def is_resolved(self) -> bool:
        return self in (RequestState.APPROVED, RequestState.DENIED)


class OpType(str, Enum):
    """Operation carried by a watcher event. ``INIT`` is the sync sentinel."""

    INIT = "INIT"
    PUT = "PUT"
    DELETE = "DELETE"


@dataclass(frozen=True)
class AccessReview:
    author: str
    created: datetime
    proposed_state: RequestState
    reason: str = ""


@dataclass(frozen=True)
class AccessRequest:
    """An access request as delivered by the watcher.

    For ``DELETE`` events only ``id`` is populated.
    """

    id: str
    user: str = ""
    roles: List[str] = field(default_factory=list)
    state: RequestState = RequestState.NONE
    request_reason: str = ""
    resolve_reason: str = ""
    suggested_reviewers: List[str] = field(default_factory=list)
    reviews: List[AccessReview] = field(default_factory=list)


@dataclass(frozen=True)
class Event:
    op: OpType
    request: AccessRequest


@dataclass(frozen=True)
class RequestFilter:
    state: RequestState | None = None
    user: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class Pong:
    cluster_name: str
    proxy_public_addr: str = ""
    server_version: str = ""

    def assert_server_version(self, minimum: str = MIN_SERVER_VERSION) -> None:
        """Raise ``ServerVersionError`` unless the server is at least *minimum*."""

        current = parse_version(self.server_version)
        if current is None:
            raise ServerVersionError(f"cannot parse server version {self.server_version!r}")
        if current < parse_version(minimum):
            raise ServerVersionError(f"server version {self.server_version} is less than {minimum}")


def parse_version(version: str) -> Tuple[int, int, int, bool] | None:
    """Parse a semantic version into a comparable tuple; pre-releases sort first."""

    match = _VERSION_RE.match(version.strip())
    if match is None:
        return None
    major, minor, patch, prerelease = match.groups()
    return int(major), int(minor), int(patch), prerelease is None


class Watcher(Protocol):
    """A single subscription to the access request event stream."""

    async def wait_init(self, timeout: float) -> None:
        """Block until the stream reports its initial synchronisation."""

    def events(self) -> AsyncIterator[Event]:
        """Iterate events in delivery order; iteration ends when the stream is done."""

    def error(self) -> BaseException | None:
        """Return the error the stream finished with, if any."""

    async def close(self) -> None:
        ...


class AccessClient(Protocol):
    """Client for the access request API.

    Implementations should retry connection establishment with backoff once
    :meth:`with_wait_for_ready` has been applied instead of failing fast.
    """

    def with_wait_for_ready(self) -> "AccessClient":
        ...

    async def ping(self) -> Pong:
        ...

    def watch_requests(self, request_filter: RequestFilter) -> Watcher:
        ...

    async def get_plugin_data(self, request_id: str) -> PluginDataMap:
        """Return the stored plugin data, raising ``NotFoundError`` when there is none."""

    async def update_plugin_data(
        self,
        request_id: str,
        set_data: Mapping[str, str],
        expect_data: Mapping[str, str] | None,
    ) -> None:
        """Compare-and-swap update, raising ``CompareFailedError`` when *expect_data* is stale."""
