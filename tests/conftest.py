from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass, field
from email.message import EmailMessage

import pytest
from imapclient import DELETED, SEEN
from imapclient.response_types import BodyData

from imap_mattermost.config import Settings
from imap_mattermost.errors import MailboxProtocolError, NotifierError
from imap_mattermost.message import MailMessage
from imap_mattermost.models import FolderStatus
from imap_mattermost.state_store import StateStore

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"

PLAIN_STRUCTURE = BodyData.create((b"text", b"plain", (b"charset", b"utf-8"), None, None, b"7bit", 10, 1))
MIXED_STRUCTURE = BodyData.create(
    (
        (b"text", b"plain", (b"charset", b"utf-8"), None, None, b"7bit", 10, 1),
        (b"image", b"png", (b"name", b"pic.png"), None, None, b"base64", 20),
        b"mixed",
    )
)


def make_mail(
    *,
    subject: str = "Test message",
    sender: str = "Sender <sender@example.com>",
    to: str | None = "me@example.com",
    cc: str | None = None,
    body: str = "hello",
    html: str | None = None,
    attachment: bool = False,
    message_id: str | None = "<msg-1@example.com>",
) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    if to:
        msg["To"] = to
    if cc:
        msg["Cc"] = cc
    msg["Date"] = "Mon, 16 Feb 2026 10:00:00 -0500"
    if message_id:
        msg["Message-ID"] = message_id
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    if attachment:
        msg.add_attachment(PNG_BYTES, maintype="image", subtype="png", filename="pic.png")
    return msg.as_bytes()


@dataclass
class FakeMail:
    raw: bytes
    flags: set = field(default_factory=set)

    @property
    def header(self) -> bytes:
        head = self.raw.split(b"\n\n", 1)[0]
        return head + b"\n\n"

    @property
    def structure(self):
        return MIXED_STRUCTURE if b"multipart/mixed" in self.header else PLAIN_STRUCTURE


@dataclass
class FakeFolder:
    epoch: int
    mails: dict = field(default_factory=dict)

    def add(self, uid: int, raw: bytes, *, seen: bool = False) -> None:
        self.mails[uid] = FakeMail(raw=raw, flags={SEEN} if seen else set())


class FakeSession:
    """In-memory stand-in for ImapSession that records every call."""

    def __init__(self, folders: dict[str, FakeFolder]) -> None:
        self.folders = folders
        self.selected: FakeFolder | None = None
        self.calls: list[tuple] = []
        self.closed = False

    def _record(self, *call) -> None:
        self.calls.append(call)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def login(self, username, password) -> None:
        self._record("login", username)

    def select_folder(self, name: str) -> FolderStatus:
        self._record("select_folder", name)
        if name not in self.folders:
            raise MailboxProtocolError(f"no such folder {name}")
        self.selected = self.folders[name]
        return FolderStatus(name=name, epoch=self.selected.epoch, exists=len(self.selected.mails))

    def highest_uid(self):
        self._record("highest_uid")
        return max(self.selected.mails) if self.selected.mails else None

    def list_flags_after(self, uid: int):
        self._record("list_flags_after", uid)
        return [
            (msg_uid, tuple(mail.flags))
            for msg_uid, mail in sorted(self.selected.mails.items())
            if msg_uid > uid
        ]

    def fetch_headers(self, uids):
        uids = list(uids)
        self._record("fetch_headers", tuple(uids))
        return {uid: self.selected.mails[uid].header for uid in uids}

    def fetch_structure(self, uid: int):
        self._record("fetch_structure", uid)
        return self.selected.mails[uid].structure

    def fetch_raw(self, uid: int) -> bytes:
        self._record("fetch_raw", uid)
        return self.selected.mails[uid].raw

    def mark_read(self, uid: int) -> None:
        self._record("mark_read", uid)
        self.selected.mails[uid].flags.add(SEEN)

    def delete(self, uid: int) -> None:
        self._record("delete", uid)
        self.selected.mails[uid].flags.add(DELETED)
        del self.selected.mails[uid]

    def close(self) -> None:
        self.closed = True


class FakeNotifier:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.sent: list = []

    def notify(self, payload, attachments=()):
        if payload.message_id in self.fail_for:
            raise NotifierError(f"boom for {payload.message_id}")
        self.sent.append((payload, list(attachments)))
        return "post-id"


def open_message(raw: bytes, uid: int = 1) -> tuple[MailMessage, FakeSession]:
    """Wrap a single raw mail in a selected fake folder."""
    folder = FakeFolder(epoch=1)
    folder.add(uid, raw)
    session = FakeSession({"INBOX": folder})
    session.select_folder("INBOX")
    header = session.fetch_headers([uid])[uid]
    return MailMessage(session, uid, header, folder="INBOX", epoch=1), session


def session_factory(session: FakeSession):
    return lambda: nullcontext(session)


BASE_SETTINGS = {
    "IMAP_HOST": "imap.example.com",
    "IMAP_USERNAME": "relay@example.com",
    "IMAP_PASSWORD": "secret",
    "MATTERMOST_SERVER_URL": "https://chat.example.com",
    "MATTERMOST_TEAM": "ops",
    "MATTERMOST_CHANNEL": "alerts",
    "MATTERMOST_TOKEN": "token",
}


@pytest.fixture
def make_settings():
    def factory(**overrides) -> Settings:
        values = dict(BASE_SETTINGS)
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return factory


@pytest.fixture
def store() -> StateStore:
    return StateStore()
