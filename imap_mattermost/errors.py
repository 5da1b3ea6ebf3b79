"""Exception hierarchy for the IMAP→Mattermost relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by the relay."""


class MailboxConnectionError(RelayError):
    """Network or TLS failure talking to the IMAP server. Fatal to the run."""


class MailboxAuthError(RelayError):
    """The IMAP server rejected the credentials. Fatal to the run."""


class MailboxProtocolError(RelayError):
    """Unknown folder or malformed server response."""


class EvaluationError(RelayError):
    """A single message could not be evaluated; the scan goes on."""


class NotifierError(RelayError):
    """Delivery to Mattermost failed for one message."""
