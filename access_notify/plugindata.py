"""Flat string-map codec for the plugin data stored alongside access requests.

The plugin data store only accepts ``dict[str, str]`` values, so request state
and the identifiers of sent messages are flattened into a fixed set of keys.
Decoding is best-effort: malformed or missing values degrade to zero values and
never raise, so a damaged record cannot block request processing.

Message entries come in two shapes. The structured shape is base64-encoded JSON
(``{"id": ..., "ts": ..., "rid": ...}``) and is always tried first; the legacy
shape is ``channel/message`` or ``channel/message/recipient``. Records written
by older plugin releases therefore keep decoding after an upgrade.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping

from pydantic import BaseModel

MESSAGE_SEPARATOR = ","
PART_SEPARATOR = "/"

PLUGIN_DATA_KEYS = (
    "user",
    "roles",
    "request_reason",
    "reviews_count",
    "resolution",
    "resolve_reason",
    "messages",
)


class ResolutionTag(str, Enum):
    """Resolution of an access request as recorded in plugin data."""

    UNRESOLVED = ""
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"


@dataclass
class AccessRequestData:
    """Snapshot of the request fields the notification plugins care about."""

    user: str = ""
    roles: List[str] = field(default_factory=list)
    request_reason: str = ""
    reviews_count: int = 0
    resolution_tag: ResolutionTag = ResolutionTag.UNRESOLVED
    resolution_reason: str = ""


@dataclass(frozen=True)
class MessageData:
    """Identifies a message previously sent to a chat channel.

    ``message_id`` is platform specific: a numeric id on Discord, a timestamp
    on Slack. ``recipient_id`` is only populated by plugins that need it to
    address later edits.
    """

    channel_id: str
    message_id: str
    recipient_id: str = ""


@dataclass
class GenericPluginData(AccessRequestData):
    """Access request data plus every message broadcast for the request."""

    sent_messages: List[MessageData] = field(default_factory=list)


class _StructuredMessage(BaseModel):
    id: str
    ts: str
    rid: str = ""


def split_string(value: str | None, sep: str = MESSAGE_SEPARATOR) -> List[str]:
    """Split *value* on *sep*, returning an empty list for empty input."""

    if not value:
        return []
    return value.split(sep)


def decode_int(value: str | None) -> int:
    if not value:
        return 0
    try:
        return int(value.strip())
    except ValueError:
        return 0


def encode_int(value: int) -> str:
    if not value:
        return ""
    return str(value)


def _decode_resolution(value: str | None) -> ResolutionTag:
    try:
        return ResolutionTag(value or "")
    except ValueError:
        return ResolutionTag.UNRESOLVED


def decode_access_request_data(data_map: Mapping[str, str] | None) -> AccessRequestData:
    """Deserialize the request fields of a plugin data map."""

    data_map = data_map or {}
    return AccessRequestData(
        user=data_map.get("user", ""),
        roles=split_string(data_map.get("roles")),
        request_reason=data_map.get("request_reason", ""),
        reviews_count=max(decode_int(data_map.get("reviews_count")), 0),
        resolution_tag=_decode_resolution(data_map.get("resolution")),
        resolution_reason=data_map.get("resolve_reason", ""),
    )


def encode_access_request_data(data: AccessRequestData) -> Dict[str, str]:
    """Serialize the request fields into a plugin data map."""

    return {
        "user": data.user,
        "roles": MESSAGE_SEPARATOR.join(data.roles),
        "request_reason": data.request_reason,
        "reviews_count": encode_int(data.reviews_count),
        "resolution": data.resolution_tag.value,
        "resolve_reason": data.resolution_reason,
    }


def _decode_structured_message(entry: str) -> MessageData | None:
    try:
        raw = base64.b64decode(entry, validate=True)
        message = _StructuredMessage.model_validate_json(raw)
    except (binascii.Error, ValueError):
        return None
    return MessageData(channel_id=message.id, message_id=message.ts, recipient_id=message.rid)


def _decode_legacy_message(entry: str) -> MessageData | None:
    parts = entry.split(PART_SEPARATOR)
    if len(parts) == 2:
        return MessageData(channel_id=parts[0], message_id=parts[1])
    if len(parts) == 3:
        return MessageData(channel_id=parts[0], message_id=parts[1], recipient_id=parts[2])
    return None


def decode_message(entry: str) -> MessageData | None:
    """Decode one ``messages`` entry, newest format first. Returns None when malformed."""

    return _decode_structured_message(entry) or _decode_legacy_message(entry)


def _is_legacy_safe(message: MessageData) -> bool:
    if message.recipient_id:
        return False
    for value in (message.channel_id, message.message_id):
        if PART_SEPARATOR in value or MESSAGE_SEPARATOR in value:
            return False
    return True


def encode_message(message: MessageData) -> str:
    """Encode one message entry.

    The legacy ``channel/message`` form is kept whenever it is unambiguous so
    older plugin releases can still read the record. Identifiers carrying a
    separator, or messages with a recipient id, use the structured form.
    """

    if _is_legacy_safe(message):
        return f"{message.channel_id}{PART_SEPARATOR}{message.message_id}"

    payload = _StructuredMessage(
        id=message.channel_id,
        ts=message.message_id,
        rid=message.recipient_id,
    ).model_dump_json()
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_plugin_data(data_map: Mapping[str, str] | None) -> GenericPluginData:
    """Deserialize a plugin data map into :class:`GenericPluginData`."""

    data_map = data_map or {}
    request_data = decode_access_request_data(data_map)
    data = GenericPluginData(**vars(request_data))

    # Records written before multi-channel broadcasts stored a single message.
    channel_id, timestamp = data_map.get("channel_id", ""), data_map.get("timestamp", "")
    if channel_id and timestamp:
        data.sent_messages.append(MessageData(channel_id=channel_id, message_id=timestamp))

    for entry in split_string(data_map.get("messages")):
        message = decode_message(entry)
        if message is not None:
            data.sent_messages.append(message)

    return data


def encode_plugin_data(data: GenericPluginData) -> Dict[str, str]:
    """Serialize :class:`GenericPluginData` into the complete set of plugin data keys."""

    result = encode_access_request_data(data)
    result["messages"] = MESSAGE_SEPARATOR.join(encode_message(message) for message in data.sent_messages)
    return result
