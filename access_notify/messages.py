"""Platform independent text builders for access request notifications."""

from __future__ import annotations

from datetime import UTC
from string import Template
from typing import Dict, List, Tuple
from urllib.parse import quote, urlsplit

from .access import AccessReview, RequestState
from .errors import MessageFormatError
from .plugindata import AccessRequestData, ResolutionTag

# Slack caps message text at 4000 characters and section text at 3000, so
# reasons are cut well below either limit.
REQUEST_REASON_LIMIT = 500
RESOLUTION_REASON_LIMIT = 500
REVIEW_REASON_LIMIT = 500

REVIEW_TIME_FORMAT = "%d %b %y %H:%M %Z"

_MARKDOWN_SPECIAL = frozenset("\\`*_~")
_TRUNCATED_SUFFIX = " (truncated)"

_STATUS_LABELS: Dict[ResolutionTag, Tuple[str, str]] = {
    ResolutionTag.UNRESOLVED: ("PENDING", "⏳"),
    ResolutionTag.APPROVED: ("APPROVED", "✅"),
    ResolutionTag.DENIED: ("DENIED", "❌"),
    ResolutionTag.EXPIRED: ("EXPIRED", "⌛"),
}

_PROPOSED_STATE_EMOJI = {
    RequestState.APPROVED: "✅",
    RequestState.DENIED: "❌",
}

REVIEW_REPLY_TEMPLATE = Template(
    "${author} reviewed the request at ${created}.\n"
    "Resolution: ${emoji} ${proposed_state}.\n"
    "${reason_line}"
)


def markdown_escape(text: str, limit: int) -> str:
    """Escape markdown emphasis characters and cut *text* to *limit* characters."""

    truncated = len(text) > limit
    escaped = "".join(f"\\{char}" if char in _MARKDOWN_SPECIAL else char for char in text[:limit])
    if truncated:
        escaped += _TRUNCATED_SUFFIX
    return escaped


def proxy_url(addr: str) -> str | None:
    """Turn a web proxy address such as ``proxy.example.com:443`` into a base URL."""

    addr = (addr or "").strip()
    if not addr:
        return None
    if "://" not in addr:
        addr = f"https://{addr}"
    return addr


def request_url(web_proxy_url: str, request_id: str) -> str:
    parts = urlsplit(web_proxy_url)
    return parts._replace(path=f"/web/requests/{quote(request_id)}", query="", fragment="").geturl()


def _field_line(label: str, value: str) -> str:
    return f"*{label}*: {value}\n"


def status_text(tag: ResolutionTag, reason: str = "") -> str:
    """Return the status line for a request, with its resolution reason when present."""

    label, emoji = _STATUS_LABELS.get(tag, (tag.value, ""))
    text = f"*Status:* {emoji} {label}"
    if reason:
        text += f"\n*Resolution reason*: {markdown_escape(reason, RESOLUTION_REASON_LIMIT)}"
    return text


def fields_text(
    request_id: str,
    data: AccessRequestData,
    cluster_name: str,
    web_proxy_url: str | None = None,
) -> str:
    """Build the ordered ``*Field*: value`` list describing a request."""

    lines: List[str] = [
        _field_line("ID", request_id),
        _field_line("Cluster", cluster_name),
    ]
    if data.user:
        lines.append(_field_line("User", data.user))
    if data.roles:
        lines.append(_field_line("Role(s)", ",".join(data.roles)))
    if data.request_reason:
        lines.append(_field_line("Reason", markdown_escape(data.request_reason, REQUEST_REASON_LIMIT)))

    if web_proxy_url:
        lines.append(_field_line("Link", request_url(web_proxy_url, request_id)))
    elif data.resolution_tag == ResolutionTag.UNRESOLVED:
        lines.append(_field_line("Approve", f"`tsh request review --approve {request_id}`"))
        lines.append(_field_line("Deny", f"`tsh request review --deny {request_id}`"))

    return "".join(lines)


def review_text(review: AccessReview) -> str:
    """Render a single review as a reply message.

    Raises :class:`MessageFormatError` when the template cannot be rendered.
    """

    created = review.created
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)

    reason_line = ""
    if review.reason:
        reason_line = f"Reason: {markdown_escape(review.reason, REVIEW_REASON_LIMIT)}."

    try:
        return REVIEW_REPLY_TEMPLATE.substitute(
            author=review.author,
            created=created.strftime(REVIEW_TIME_FORMAT),
            emoji=_PROPOSED_STATE_EMOJI.get(review.proposed_state, ""),
            proposed_state=review.proposed_state.value,
            reason_line=reason_line,
        )
    except (KeyError, ValueError) as exc:
        raise MessageFormatError(f"failed to render review reply: {exc}") from exc


def reviews_text(reviews: List[AccessReview]) -> str:
    """Render every review, one block per review. Propagates template failures."""

    if not reviews:
        return ""
    return "\n" + "".join(review_text(review) + "\n" for review in reviews)


def request_message_text(
    request_id: str,
    data: AccessRequestData,
    cluster_name: str,
    web_proxy_url: str | None = None,
    reviews: List[AccessReview] | None = None,
) -> str:
    """Plain text rendering used by platforms without rich layouts."""

    return (
        "You have a new Role Request:\n"
        + fields_text(request_id, data, cluster_name, web_proxy_url)
        + reviews_text(reviews or [])
        + status_text(data.resolution_tag, data.resolution_reason)
    )
