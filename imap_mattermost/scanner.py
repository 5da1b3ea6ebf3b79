"""Find the mails that arrived in a folder since the last run."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from imapclient import SEEN

from .message import MailMessage
from .models import FolderStatus
from .utils import pluralize
from .watermarks import Watermarks

logger = logging.getLogger(__name__)


@dataclass
class FolderScan:
    """Result of scanning one folder.

    ``watermark`` is the highest UID *observed*, filtered mails included, and
    is only merged into the run state once the folder has been processed.
    """

    status: FolderStatus
    watermark: Optional[int]
    first_visit: bool = False
    candidates: list[MailMessage] = field(default_factory=list)

    @property
    def epoch(self) -> int:
        return self.status.epoch


def _describe(is_unread: Optional[bool]) -> str:
    if is_unread is True:
        return "new unread mail"
    if is_unread is False:
        return "new read mail"
    return "new mail"


def scan_folder(
    session,
    status: FolderStatus,
    watermarks: Watermarks,
    is_unread: Optional[bool] = None,
) -> FolderScan:
    """Collect the candidates of the selected folder in ascending UID order.

    ``status`` is what selecting the folder returned.
    """
    folder = status.name
    lastseen = watermarks.get(status.epoch)

    if lastseen is None:
        logger.info("Recording the initial status: %s", pluralize(status.exists, "existing mail"))
        highest = session.highest_uid() if status.exists > 0 else None
        return FolderScan(status=status, watermark=highest, first_visit=True)

    watermark = lastseen
    uids: list[int] = []
    for uid, flags in session.list_flags_after(lastseen):
        watermark = max(watermark, uid)
        if is_unread is None or is_unread == (SEEN not in flags):
            uids.append(uid)

    logger.info("%s in %s", pluralize(len(uids), _describe(is_unread)), folder)
    scan = FolderScan(status=status, watermark=watermark)
    if not uids:
        return scan

    headers = session.fetch_headers(uids)
    for uid in sorted(headers):
        scan.candidates.append(
            MailMessage(session, uid, headers[uid], folder=folder, epoch=status.epoch)
        )
    return scan
