"""IMAP session wrapper exposing exactly what the relay needs."""

from __future__ import annotations

import logging
import ssl as ssl_lib
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from imapclient import DELETED, SEEN, IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from .errors import MailboxAuthError, MailboxConnectionError, MailboxProtocolError
from .models import FolderStatus

logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """Map imapclient/socket errors onto the relay's taxonomy."""
    try:
        yield
    except IMAPClientAbortError as exc:
        raise MailboxConnectionError(f"Connection lost while trying to {action}: {exc}") from exc
    except LoginError as exc:
        raise MailboxAuthError(f"Login rejected: {exc}") from exc
    except IMAPClientError as exc:
        raise MailboxProtocolError(f"Failed to {action}: {exc}") from exc
    except (OSError, ssl_lib.SSLError) as exc:
        raise MailboxConnectionError(f"Network error while trying to {action}: {exc}") from exc


class ImapSession:
    """One authenticated IMAP connection with a currently selected folder."""

    def __init__(self, client: IMAPClient, host: str) -> None:
        self.client = client
        self.host = host
        self.folder: Optional[str] = None
        self.epoch: Optional[int] = None

    def login(self, username: str, password: str) -> None:
        logger.info("Logging in as %s", username)
        with _translate_errors("log in"):
            self.client.login(username, password)

    def select_folder(self, folder: str) -> FolderStatus:
        """Select ``folder`` read-write and return its UIDVALIDITY and size."""
        logger.info("Selecting the folder: %s", folder)
        with _translate_errors(f"select folder {folder!r}"):
            response = self.client.select_folder(folder)
        try:
            epoch = int(response[b"UIDVALIDITY"])
            exists = int(response.get(b"EXISTS", 0))
        except (KeyError, TypeError, ValueError) as exc:
            raise MailboxProtocolError(
                f"SELECT {folder!r} on {self.host} returned no usable UIDVALIDITY"
            ) from exc
        self.folder = folder
        self.epoch = epoch
        return FolderStatus(name=folder, epoch=epoch, exists=exists)

    def highest_uid(self) -> Optional[int]:
        """UID of the newest message in the selected folder, if any."""
        with _translate_errors("fetch the highest UID"):
            response = self.client.fetch("*", ["UID"])
        return max(response) if response else None

    def list_flags_after(self, uid: int) -> list[tuple[int, tuple[bytes, ...]]]:
        """Ascending ``(uid, flags)`` for every message with a UID above ``uid``."""
        with _translate_errors(f"list messages after UID {uid}"):
            response = self.client.fetch(f"{uid + 1}:*", ["FLAGS"])
        # "n:*" always matches the newest message, even when its UID is below n.
        return [
            (msg_uid, tuple(data.get(b"FLAGS", ())))
            for msg_uid, data in sorted(response.items())
            if msg_uid > uid
        ]

    def fetch_headers(self, uids: Iterable[int]) -> dict[int, bytes]:
        uids = list(uids)
        if not uids:
            return {}
        with _translate_errors("fetch headers"):
            response = self.client.fetch(uids, ["RFC822.HEADER"])
        return {
            msg_uid: data[b"RFC822.HEADER"]
            for msg_uid, data in response.items()
            if data.get(b"RFC822.HEADER") is not None
        }

    def fetch_structure(self, uid: int):
        with _translate_errors(f"fetch BODYSTRUCTURE of UID {uid}"):
            response = self.client.fetch([uid], ["BODYSTRUCTURE"])
        data = response.get(uid)
        return data.get(b"BODYSTRUCTURE") if data else None

    def fetch_raw(self, uid: int) -> bytes:
        # BODY.PEEK[] leaves the \Seen flag untouched.
        with _translate_errors(f"fetch UID {uid}"):
            response = self.client.fetch([uid], ["BODY.PEEK[]"])
        data = response.get(uid)
        if not data:
            return b""
        return data.get(b"BODY[]") or b""

    def mark_read(self, uid: int) -> None:
        with _translate_errors(f"mark UID {uid} as read"):
            self.client.add_flags([uid], [SEEN])

    def delete(self, uid: int) -> None:
        with _translate_errors(f"delete UID {uid}"):
            self.client.add_flags([uid], [DELETED])
            self.client.expunge()

    def close(self) -> None:
        try:
            self.client.logout()
        except Exception as exc:
            logger.warning("Error during logout from %s: %s", self.host, exc)
        finally:
            logger.info("Connection closed")


@contextmanager
def open_session(
    host: str,
    port: Optional[int] = None,
    use_ssl: bool = True,
    timeout: Optional[float] = None,
) -> Iterator[ImapSession]:
    """Connect to ``host`` and yield a session that is closed on every exit path."""
    logger.info(
        "Connecting to %s%s%s",
        host,
        f":{port}" if port else "",
        " via SSL" if use_ssl else "",
    )
    with _translate_errors(f"connect to {host}"):
        client = IMAPClient(host, port=port, ssl=use_ssl, timeout=timeout)
    session = ImapSession(client, host)
    try:
        yield session
    finally:
        session.close()
