"""Assemble the notification record for a matched mail."""

from __future__ import annotations

import base64
from typing import Literal, Optional, Sequence

from .message import DEFAULT_BODY_MIME_TYPES, MailMessage
from .models import MatchResult, NotificationPayload

HeaderStyle = Literal["capitalized", "downcased", "snakecased"]


def normalize_header_name(name: str, style: HeaderStyle = "capitalized") -> str:
    """``content-TYPE`` → ``Content-Type`` / ``content-type`` / ``content_type``."""
    if style == "downcased":
        return name.lower()
    if style == "snakecased":
        return name.lower().replace("-", "_")
    return "-".join(word.capitalize() for word in name.split("-"))


def select_headers(
    message: MailMessage,
    wanted: Sequence[str],
    style: HeaderStyle = "capitalized",
) -> dict[str, str]:
    """Collect the ``wanted`` headers; repeated ones are joined by newlines."""
    wanted_keys = {name.lower() for name in wanted}
    headers: dict[str, str] = {}
    for name, value in message.header_items():
        if name.lower() not in wanted_keys:
            continue
        key = normalize_header_name(name, style)
        headers[key] = f"{headers[key]}\n{value}" if key in headers else value
    return headers


def build_payload(
    message: MailMessage,
    match: MatchResult,
    *,
    mime_types: Sequence[str] = DEFAULT_BODY_MIME_TYPES,
    include_raw_mail: bool = False,
    event_headers: Optional[Sequence[str]] = None,
    event_headers_style: HeaderStyle = "capitalized",
) -> NotificationPayload:
    part = match.body_part
    if part is None:
        parts = message.body_parts(mime_types)
        part = parts[0] if parts else None

    if part is not None:
        mime_type, body = part.mime_type, part.text
    else:
        mime_type, body = "text/plain", ""

    raw_mail = None
    if include_raw_mail:
        raw_mail = base64.encodebytes(message.raw_bytes()).decode("ascii")

    headers = None
    if event_headers:
        headers = select_headers(message, event_headers, event_headers_style)

    from_addrs = message.from_addrs
    return NotificationPayload(
        message_id=message.message_id,
        folder=message.folder,
        subject=message.subject,
        sender=from_addrs[0] if from_addrs else None,
        to=message.to_addrs,
        cc=message.cc_addrs,
        date=message.date_iso,
        mime_type=mime_type,
        body=body,
        matches=dict(match.captures),
        has_attachment=message.has_attachment(),
        raw_mail=raw_mail,
        headers=headers,
    )
