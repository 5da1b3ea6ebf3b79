"""One relay run: scan folders, filter, notify, mutate, commit."""

from __future__ import annotations

import enum
import logging
from contextlib import AbstractContextManager
from typing import Callable, Optional

from .conditions import ConditionEvaluator, unread_filter
from .config import Settings
from .dedupe_cache import NotifiedCache
from .errors import MailboxAuthError, MailboxConnectionError, MailboxProtocolError, NotifierError
from .imap_client import ImapSession, open_session
from .message import MailMessage
from .models import RunState, RunSummary
from .payload import build_payload
from .scanner import scan_folder
from .state_store import StateStore

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[ImapSession]]


class RunPhase(str, enum.Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    FOLDER_SELECTED = "folder_selected"
    SCANNING = "scanning"
    EVALUATING = "evaluating"
    NOTIFYING = "notifying"
    COMMITTING = "committing"
    FAILED = "failed"


class MailRelay:
    """Tie the IMAP session, conditions, notifier and state store together.

    State is loaded once at the start of :meth:`run` and committed once at the
    end. A connection or authentication failure (and, unless
    ``abort_on_folder_error`` is off, a folder-level protocol failure) aborts
    the run before anything is committed, so the next run starts again from
    the last committed watermarks.
    """

    def __init__(
        self,
        settings: Settings,
        notifier,
        store: StateStore,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.settings = settings
        self.notifier = notifier
        self.store = store
        self.session_factory = session_factory or self._open_session
        conditions = settings.conditions
        self.evaluator = ConditionEvaluator(conditions, settings.imap_mime_types)
        self.is_unread = unread_filter(conditions)
        self.phase = RunPhase.IDLE

    def _open_session(self) -> AbstractContextManager[ImapSession]:
        return open_session(
            self.settings.imap_host,
            self.settings.imap_port,
            self.settings.imap_ssl,
            timeout=self.settings.imap_timeout,
        )

    def _enter(self, phase: RunPhase) -> None:
        logger.debug("Run phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    def run(self) -> RunSummary:
        summary = RunSummary()
        state = self.store.load()
        try:
            with self.session_factory() as session:
                self._enter(RunPhase.CONNECTED)
                session.login(self.settings.imap_username, self.settings.imap_password)
                visited: set[int] = set()
                skipped = False
                for folder in self.settings.imap_folders:
                    try:
                        visited.add(self._process_folder(session, folder, state, summary))
                    except MailboxProtocolError as exc:
                        if self.settings.imap_abort_on_folder_error:
                            raise
                        skipped = True
                        logger.error(
                            "Skipping folder %s on %s: %s", folder, self.settings.imap_host, exc
                        )
                    else:
                        summary.folders += 1

            # Prune only when every configured folder reported its epoch.
            if not skipped:
                for epoch in state.watermarks.retain(visited):
                    logger.info("Forgetting the watermark of stale epoch %s", epoch)

            if self.settings.dry_run:
                logger.info("[DRY-RUN] Leaving watermarks and notified ids uncommitted")
            else:
                self._enter(RunPhase.COMMITTING)
                self.store.commit(state)
                summary.committed = True
        except Exception:
            self._enter(RunPhase.FAILED)
            raise
        self._enter(RunPhase.IDLE)
        return summary

    def _process_folder(self, session: ImapSession, folder: str, state: RunState, summary: RunSummary) -> int:
        status = session.select_folder(folder)
        self._enter(RunPhase.FOLDER_SELECTED)
        self._enter(RunPhase.SCANNING)
        scan = scan_folder(session, status, state.watermarks, self.is_unread)

        for message in scan.candidates:
            summary.candidates += 1
            try:
                self._process_message(message, state.notified, summary)
            except (MailboxConnectionError, MailboxAuthError, MailboxProtocolError):
                raise
            except Exception:
                summary.failed += 1
                logger.exception(
                    "Failed to process mail uid=%s in %s on %s; skipping",
                    message.uid,
                    folder,
                    self.settings.imap_host,
                )

        # Only now is the folder fully processed.
        if scan.watermark is not None:
            state.watermarks.advance(scan.epoch, scan.watermark)
        return scan.epoch

    def _process_message(self, message: MailMessage, notified: NotifiedCache, summary: RunSummary) -> None:
        self._enter(RunPhase.EVALUATING)
        match = self.evaluator.evaluate(message)
        if not match.matched:
            return
        summary.matched += 1

        message_id = message.message_id
        if message_id is not None and message_id in notified:
            logger.info("Ignoring mail: %s (already notified)", message_id)
            summary.duplicates += 1
        elif not self._notify(message, match, summary):
            return
        elif message_id is not None and not self.settings.dry_run:
            notified.add(message_id)

        self._mutate(message)

    def _notify(self, message: MailMessage, match, summary: RunSummary) -> bool:
        payload = build_payload(
            message,
            match,
            mime_types=self.settings.imap_mime_types,
            include_raw_mail=self.settings.imap_include_raw_mail,
            event_headers=self.settings.imap_event_headers,
            event_headers_style=self.settings.imap_event_headers_style,
        )
        if self.settings.dry_run:
            logger.info("[DRY-RUN] Would emit an event for mail: %s", payload.message_id)
            return True

        self._enter(RunPhase.NOTIFYING)
        logger.info("Emitting an event for mail: %s", payload.message_id)
        attachments = message.attachments(self.settings.imap_attachment_mime_types)
        try:
            self.notifier.notify(payload, attachments)
        except NotifierError as exc:
            summary.failed += 1
            logger.error(
                "Notification failed for uid=%s in %s on %s: %s",
                message.uid,
                message.folder,
                self.settings.imap_host,
                exc,
            )
            return False
        summary.notified += 1
        return True

    def _mutate(self, message: MailMessage) -> None:
        if self.settings.imap_mark_as_read:
            logger.info("Marking as read")
            if not self.settings.dry_run:
                message.mark_read()
        if self.settings.imap_delete:
            logger.info("Deleting")
            if not self.settings.dry_run:
                message.delete()
