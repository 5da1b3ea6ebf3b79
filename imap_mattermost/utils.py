"""Utility helpers shared across modules."""

from __future__ import annotations

import codecs
from datetime import UTC, datetime
from email.header import decode_header
from email.utils import parsedate_to_datetime

SCRUB_ERRORS = "hexscrub"


def _hex_placeholder(exc: UnicodeError) -> tuple[str, int]:
    if not isinstance(exc, UnicodeDecodeError):
        raise exc
    bad = exc.object[exc.start:exc.end]
    return f"<{bad.hex()}>", exc.end


codecs.register_error(SCRUB_ERRORS, _hex_placeholder)


def decode_bytes(payload: bytes, charset: str | None = None) -> str:
    """Decode bytes, turning every invalid sequence into a ``<hex>`` placeholder."""
    try:
        return payload.decode(charset or "utf-8", SCRUB_ERRORS)
    except LookupError:
        return payload.decode("utf-8", SCRUB_ERRORS)


def scrub(value: str | bytes | None) -> str:
    """Return text safe for matching and display.

    Strings coming out of ``email`` carry undecodable header bytes as
    surrogate escapes; those are turned back into bytes and rendered as
    ``<hex>`` like any other invalid sequence.
    """
    if value is None:
        return ""
    if isinstance(value, bytes):
        return decode_bytes(value)
    return decode_bytes(value.encode("utf-8", "surrogateescape"))


def decode_header_value(value: str | None) -> str:
    """Decode RFC 2047 encoded words and scrub what cannot be decoded."""
    if not value:
        return ""
    chunks = []
    for part, charset in decode_header(value):
        if isinstance(part, bytes):
            chunks.append(decode_bytes(part, charset))
        else:
            chunks.append(scrub(part))
    return "".join(chunks)


def ensure_utc(dt: datetime) -> datetime:
    """Force a datetime into UTC without altering instant."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_mail_date(value: str | None) -> datetime | None:
    """Parse a ``Date:`` header, returning ``None`` when it is garbage."""
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None


def pluralize(count: int, noun: str) -> str:
    return f"{count} {noun if count == 1 else noun + 's'}"
