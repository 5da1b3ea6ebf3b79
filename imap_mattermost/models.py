"""Typed containers shared across the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from .dedupe_cache import NotifiedCache
from .watermarks import Watermarks


@dataclass(frozen=True)
class FolderStatus:
    """What SELECT told us about a folder."""

    name: str
    epoch: int
    exists: int


@dataclass
class AttachmentPart:
    """An attachment to upload next to the notification."""

    filename: str
    mime_type: str
    content: bytes


@dataclass
class MatchResult:
    """Outcome of evaluating a condition set against one message."""

    matched: bool
    captures: dict[str, Optional[str]] = field(default_factory=dict)
    body_part: Any = None


@dataclass(frozen=True)
class NotificationPayload:
    """Everything the notifier needs to announce one mail."""

    message_id: Optional[str]
    folder: str
    subject: str
    sender: Optional[str]
    to: list[str]
    cc: list[str]
    date: Optional[str]
    mime_type: str
    body: str
    matches: dict[str, Optional[str]]
    has_attachment: bool
    raw_mail: Optional[str] = None
    headers: Optional[dict[str, str]] = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "message_id": self.message_id,
            "folder": self.folder,
            "subject": self.subject,
            "from": self.sender,
            "to": list(self.to),
            "cc": list(self.cc),
            "date": self.date,
            "mime_type": self.mime_type,
            "body": self.body,
            "matches": dict(self.matches),
            "has_attachment": self.has_attachment,
        }
        if self.raw_mail is not None:
            data["raw_mail"] = self.raw_mail
        if self.headers is not None:
            data["headers"] = dict(self.headers)
        return data


@dataclass
class RunState:
    """Durable memory of the relay: watermarks plus recently notified ids."""

    watermarks: Watermarks = field(default_factory=Watermarks)
    notified: NotifiedCache = field(default_factory=NotifiedCache)


@dataclass
class RunSummary:
    """Counters reported at the end of a run."""

    folders: int = 0
    candidates: int = 0
    matched: int = 0
    notified: int = 0
    duplicates: int = 0
    failed: int = 0
    committed: bool = False
