"""Lazy view over one fetched mail.

Only the header is fetched up front. The BODYSTRUCTURE (for the attachment
flag) and the full RFC822 source (for body parts, attachments and the raw
blob) are each fetched at most once, on first use, and memoised for the
lifetime of the message.
"""

from __future__ import annotations

import email
import logging
from email import policy
from email.message import EmailMessage, Message
from email.utils import getaddresses
from typing import Optional, Sequence

from .models import AttachmentPart
from .utils import decode_bytes, decode_header_value, ensure_utc, parse_mail_date, scrub

logger = logging.getLogger(__name__)

DEFAULT_BODY_MIME_TYPES = ("text/plain", "text/enriched", "text/html")
DEFAULT_ATTACHMENT_MIME_TYPES = ("image/jpeg", "image/png", "image/gif")


def struct_has_attachment(struct) -> bool:
    """True if any multipart node of a BODYSTRUCTURE is ``multipart/mixed``."""
    if struct is None or not getattr(struct, "is_multipart", False):
        return False
    subtype = struct[1]
    if isinstance(subtype, bytes):
        subtype = subtype.decode("ascii", "replace")
    if str(subtype).upper() == "MIXED":
        return True
    return any(struct_has_attachment(part) for part in struct[0])


def _is_attachment(part: Message) -> bool:
    # Some mailers send attachments without an explicit disposition.
    return part.get_content_disposition() == "attachment" or part.get_filename() is not None


class BodyPart:
    """A non-attachment text part, with its decoded text memoised."""

    def __init__(self, part: Message) -> None:
        self.part = part
        self.mime_type = part.get_content_type()
        self._text: Optional[str] = None

    @property
    def text(self) -> str:
        if self._text is None:
            payload = self.part.get_payload(decode=True) or b""
            self._text = decode_bytes(payload, self.part.get_content_charset())
        return self._text

    def __repr__(self) -> str:
        return f"BodyPart({self.mime_type!r})"


class MailMessage:
    """One candidate mail in the current scan."""

    def __init__(
        self,
        session,
        uid: int,
        header_bytes: bytes,
        *,
        folder: str,
        epoch: int,
    ) -> None:
        self.session = session
        self.uid = uid
        self.folder = folder
        self.epoch = epoch
        self.header = email.message_from_bytes(header_bytes)
        self._scrubbed: dict[str, str] = {}
        self._has_attachment: Optional[bool] = None
        self._raw: Optional[bytes] = None
        self._parsed: Optional[EmailMessage] = None
        self._body_parts: dict[tuple[str, ...], list[BodyPart]] = {}

    def __repr__(self) -> str:
        return f"MailMessage(folder={self.folder!r}, uid={self.uid})"

    def _scrubbed_header(self, name: str) -> str:
        key = name.lower()
        if key not in self._scrubbed:
            self._scrubbed[key] = decode_header_value(self.header.get(name))
        return self._scrubbed[key]

    @property
    def subject(self) -> str:
        return self._scrubbed_header("Subject")

    @property
    def message_id(self) -> Optional[str]:
        value = self.header.get("Message-ID")
        if not value:
            return None
        return str(value).strip() or None

    @property
    def date_iso(self) -> Optional[str]:
        value = self.header.get("Date")
        parsed = parse_mail_date(str(value) if value is not None else None)
        if parsed is None:
            return None
        if parsed.tzinfo is None:
            parsed = ensure_utc(parsed)
        return parsed.isoformat()

    def addresses(self, name: str) -> Optional[list[str]]:
        """Bare addresses of header ``name``; ``None`` if the header is absent."""
        values = self.header.get_all(name)
        if not values:
            return None
        # Split before decoding: an encoded display name may hide a comma.
        raw = [str(value) for value in values]
        return [scrub(address) for _, address in getaddresses(raw) if address]

    @property
    def from_addrs(self) -> list[str]:
        return self.addresses("From") or []

    @property
    def to_addrs(self) -> list[str]:
        return self.addresses("To") or []

    @property
    def cc_addrs(self) -> list[str]:
        return self.addresses("Cc") or []

    def header_items(self) -> list[tuple[str, str]]:
        return [(name, decode_header_value(value)) for name, value in self.header.items()]

    def has_attachment(self) -> bool:
        if self._has_attachment is None:
            struct = self.session.fetch_structure(self.uid)
            self._has_attachment = struct_has_attachment(struct)
        return self._has_attachment

    def raw_bytes(self) -> bytes:
        if self._raw is None:
            self._raw = self.session.fetch_raw(self.uid)
        return self._raw

    def parsed(self) -> EmailMessage:
        if self._parsed is None:
            self._parsed = email.message_from_bytes(self.raw_bytes(), policy=policy.default)
        return self._parsed

    def body_parts(self, mime_types: Sequence[str] = DEFAULT_BODY_MIME_TYPES) -> list[BodyPart]:
        """Text parts usable as a body, in ``mime_types`` preference order."""
        key = tuple(mime_type.lower() for mime_type in mime_types)
        if key not in self._body_parts:
            mail = self.parsed()
            leaves = list(mail.walk()) if mail.is_multipart() else [mail]
            selected = [
                BodyPart(part)
                for part in leaves
                if not part.is_multipart()
                and not _is_attachment(part)
                and part.get_content_maintype() == "text"
                and part.get_content_type() in key
            ]
            selected.sort(key=lambda body: key.index(body.mime_type))
            self._body_parts[key] = selected
        return self._body_parts[key]

    def attachments(
        self, mime_types: Sequence[str] = DEFAULT_ATTACHMENT_MIME_TYPES
    ) -> list[AttachmentPart]:
        allowed = {mime_type.lower() for mime_type in mime_types}
        found: list[AttachmentPart] = []
        for index, part in enumerate(self.parsed().walk()):
            if part.is_multipart() or not _is_attachment(part):
                continue
            mime_type = part.get_content_type()
            if mime_type not in allowed:
                logger.debug("Skipping %s attachment of %s", mime_type, self)
                continue
            filename = part.get_filename() or f"attachment-{self.uid}-{index}"
            found.append(
                AttachmentPart(
                    filename=filename,
                    mime_type=mime_type,
                    content=part.get_payload(decode=True) or b"",
                )
            )
        return found

    def mark_read(self) -> None:
        self.session.mark_read(self.uid)

    def delete(self) -> None:
        self.session.delete(self.uid)
