from __future__ import annotations

import pytest

from conftest import FakeFolder, FakeNotifier, FakeSession, make_mail, session_factory
from imap_mattermost.dedupe_cache import NotifiedCache
from imap_mattermost.errors import MailboxConnectionError, MailboxProtocolError
from imap_mattermost.models import RunState
from imap_mattermost.relay import MailRelay, RunPhase
from imap_mattermost.watermarks import Watermarks

EPOCH = 7


def mail(uid: int, **kwargs) -> bytes:
    kwargs.setdefault("message_id", f"<{uid}@example.com>")
    kwargs.setdefault("subject", f"mail {uid}")
    return make_mail(**kwargs)


@pytest.fixture
def inbox() -> FakeFolder:
    folder = FakeFolder(epoch=EPOCH)
    folder.add(1, mail(1))
    folder.add(2, mail(2))
    return folder


@pytest.fixture
def session(inbox) -> FakeSession:
    return FakeSession({"INBOX": inbox})


def seed(store, watermark: int = 2, notified=()) -> None:
    store.commit(RunState(watermarks=Watermarks({EPOCH: watermark}), notified=NotifiedCache(list(notified))))


def make_relay(settings, session, store, notifier=None) -> tuple[MailRelay, FakeNotifier]:
    notifier = notifier or FakeNotifier()
    return MailRelay(settings, notifier, store, session_factory=session_factory(session)), notifier


def notified_subjects(notifier: FakeNotifier) -> list[str]:
    return [payload.subject for payload, _ in notifier.sent]


def test_first_run_only_records_the_watermark(make_settings, session, store) -> None:
    relay, notifier = make_relay(make_settings(), session, store)

    summary = relay.run()

    assert notifier.sent == []
    assert summary.committed is True
    assert summary.folders == 1
    assert store.load().watermarks == {EPOCH: 2}
    assert relay.phase is RunPhase.IDLE
    assert ("login", "relay@example.com") in session.calls


def test_new_mails_are_notified_in_order(make_settings, session, inbox, store) -> None:
    seed(store)
    inbox.add(3, mail(3))
    inbox.add(4, mail(4))
    relay, notifier = make_relay(make_settings(), session, store)

    summary = relay.run()

    state = store.load()
    assert notified_subjects(notifier) == ["mail 3", "mail 4"]
    assert summary.notified == 2
    assert state.watermarks == {EPOCH: 4}
    assert state.notified.to_list() == ["<3@example.com>", "<4@example.com>"]


def test_second_run_sends_nothing_new(make_settings, session, inbox, store) -> None:
    seed(store)
    inbox.add(3, mail(3))
    make_relay(make_settings(), session, store)[0].run()

    relay, notifier = make_relay(make_settings(), session, store)
    relay.run()

    assert notifier.sent == []


def test_conditions_filter_but_watermark_covers_everything(make_settings, session, inbox, store) -> None:
    seed(store)
    inbox.add(3, mail(3, subject="all fine"))
    inbox.add(4, mail(4, subject="CRITICAL: disk"))
    settings = make_settings(IMAP_CONDITIONS={"subject": "(?i)critical"})
    relay, notifier = make_relay(settings, session, store)

    summary = relay.run()

    assert notified_subjects(notifier) == ["CRITICAL: disk"]
    assert summary.candidates == 2
    assert summary.matched == 1
    assert store.load().watermarks == {EPOCH: 4}


def test_unread_condition_skips_read_mails(make_settings, session, inbox, store) -> None:
    seed(store)
    inbox.add(3, mail(3), seen=True)
    inbox.add(4, mail(4))
    relay, notifier = make_relay(make_settings(IMAP_CONDITIONS={"is_unread": True}), session, store)

    relay.run()

    assert notified_subjects(notifier) == ["mail 4"]
    assert store.load().watermarks == {EPOCH: 4}


def test_already_notified_message_id_is_not_sent_again(make_settings, session, inbox, store) -> None:
    seed(store, notified=["<dup@example.com>"])
    inbox.add(3, mail(3, message_id="<dup@example.com>"))
    relay, notifier = make_relay(make_settings(IMAP_MARK_AS_READ=True), session, store)

    summary = relay.run()

    assert notifier.sent == []
    assert summary.duplicates == 1
    assert ("mark_read", 3) in session.calls


def test_same_message_in_two_folders_is_sent_once(make_settings, inbox, store) -> None:
    archive = FakeFolder(epoch=8)
    session = FakeSession({"INBOX": inbox, "Archive": archive})
    store.commit(RunState(watermarks=Watermarks({EPOCH: 2, 8: 0})))
    inbox.add(3, mail(3, message_id="<copy@example.com>"))
    archive.add(1, mail(1, message_id="<copy@example.com>"))
    relay, notifier = make_relay(make_settings(IMAP_FOLDERS="INBOX;Archive"), session, store)

    summary = relay.run()

    assert len(notifier.sent) == 1
    assert summary.duplicates == 1
    assert store.load().watermarks == {EPOCH: 3, 8: 1}


def test_failed_notification_is_not_remembered(make_settings, session, inbox, store) -> None:
    seed(store)
    inbox.add(3, mail(3))
    inbox.add(4, mail(4))
    settings = make_settings(IMAP_MARK_AS_READ=True)
    relay, notifier = make_relay(settings, session, store, FakeNotifier(fail_for={"<3@example.com>"}))

    summary = relay.run()

    state = store.load()
    assert notified_subjects(notifier) == ["mail 4"]
    assert summary.failed == 1
    assert "<3@example.com>" not in state.notified
    assert state.watermarks == {EPOCH: 4}
    assert ("mark_read", 3) not in session.calls
    assert ("mark_read", 4) in session.calls


def test_unexpected_error_skips_only_that_mail(make_settings, session, inbox, store) -> None:
    class ExplodingNotifier(FakeNotifier):
        def notify(self, payload, attachments=()):
            if payload.message_id == "<3@example.com>":
                raise RuntimeError("template exploded")
            return super().notify(payload, attachments)

    seed(store)
    inbox.add(3, mail(3))
    inbox.add(4, mail(4))
    relay, notifier = make_relay(make_settings(), session, store, ExplodingNotifier())

    summary = relay.run()

    assert notified_subjects(notifier) == ["mail 4"]
    assert summary.failed == 1
    assert summary.committed is True


def test_attachments_are_forwarded(make_settings, session, inbox, store) -> None:
    seed(store)
    inbox.add(3, mail(3, attachment=True))
    relay, notifier = make_relay(make_settings(), session, store)

    relay.run()

    payload, attachments = notifier.sent[0]
    assert payload.has_attachment is True
    assert [attachment.filename for attachment in attachments] == ["pic.png"]


def test_matched_mails_are_deleted_when_configured(make_settings, session, inbox, store) -> None:
    seed(store)
    inbox.add(3, mail(3))
    relay, _ = make_relay(make_settings(IMAP_DELETE=True), session, store)

    relay.run()

    assert ("delete", 3) in session.calls
    assert 3 not in inbox.mails
    assert store.load().watermarks == {EPOCH: 3}


def test_dry_run_sends_mutates_and_commits_nothing(make_settings, session, inbox, store) -> None:
    seed(store)
    inbox.add(3, mail(3))
    settings = make_settings(DRY_RUN=True, IMAP_MARK_AS_READ=True, IMAP_DELETE=True)
    relay, notifier = make_relay(settings, session, store)

    summary = relay.run()

    assert notifier.sent == []
    assert summary.committed is False
    assert session.count("mark_read") == 0
    assert session.count("delete") == 0
    assert store.load().watermarks == {EPOCH: 2}


def test_connection_loss_commits_nothing(make_settings, inbox, store) -> None:
    class DroppingSession(FakeSession):
        def list_flags_after(self, uid):
            raise MailboxConnectionError("connection reset")

    seed(store, notified=["<old@example.com>"])
    inbox.add(3, mail(3))
    relay, notifier = make_relay(make_settings(), DroppingSession({"INBOX": inbox}), store)

    with pytest.raises(MailboxConnectionError):
        relay.run()

    state = store.load()
    assert relay.phase is RunPhase.FAILED
    assert notifier.sent == []
    assert state.watermarks == {EPOCH: 2}
    assert state.notified.to_list() == ["<old@example.com>"]


def test_folder_error_aborts_the_run_by_default(make_settings, session, inbox, store) -> None:
    seed(store)
    inbox.add(3, mail(3))
    relay, _ = make_relay(make_settings(IMAP_FOLDERS="INBOX;Missing"), session, store)

    with pytest.raises(MailboxProtocolError):
        relay.run()

    assert store.load().watermarks == {EPOCH: 2}


def test_folder_error_can_be_skipped(make_settings, session, inbox, store) -> None:
    seed(store)
    inbox.add(3, mail(3))
    settings = make_settings(IMAP_FOLDERS="Missing;INBOX", IMAP_ABORT_ON_FOLDER_ERROR=False)
    relay, notifier = make_relay(settings, session, store)

    summary = relay.run()

    assert summary.folders == 1
    assert summary.committed is True
    assert notified_subjects(notifier) == ["mail 3"]
    assert store.load().watermarks == {EPOCH: 3}


def test_watermark_never_moves_backwards(make_settings, session, inbox, store) -> None:
    seed(store, watermark=10)
    relay, notifier = make_relay(make_settings(), session, store)

    relay.run()

    assert notifier.sent == []
    assert store.load().watermarks == {EPOCH: 10}


def test_epochs_no_folder_reports_are_forgotten(make_settings, session, store) -> None:
    store.commit(RunState(watermarks=Watermarks({EPOCH: 2, 3: 99, 4: 12})))
    relay, _ = make_relay(make_settings(), session, store)

    relay.run()

    assert store.load().watermarks == {EPOCH: 2}


def test_epochs_are_kept_when_a_folder_was_skipped(make_settings, session, store) -> None:
    store.commit(RunState(watermarks=Watermarks({EPOCH: 2, 3: 99})))
    settings = make_settings(IMAP_FOLDERS="INBOX;Missing", IMAP_ABORT_ON_FOLDER_ERROR=False)
    relay, _ = make_relay(settings, session, store)

    relay.run()

    assert store.load().watermarks == {EPOCH: 2, 3: 99}
