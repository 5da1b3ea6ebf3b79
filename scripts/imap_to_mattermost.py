"""Entry point that relays new IMAP mails matching the configured conditions to Mattermost."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys

from dotenv import load_dotenv
from pydantic import ValidationError

# Ensure project root is on sys.path when running as a script
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from imap_mattermost.config import Settings
from imap_mattermost.errors import RelayError
from imap_mattermost.mattermost_client import MattermostClient
from imap_mattermost.relay import MailRelay
from imap_mattermost.state_store import StateStore

load_dotenv()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Relay new IMAP mails to a Mattermost channel.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate mails without posting, flagging, deleting or saving state",
    )
    parser.add_argument(
        "--folder",
        action="append",
        dest="folders",
        help="Folder to watch instead of IMAP_FOLDERS (repeatable)",
    )
    parser.add_argument("--state-db", type=Path, help="Override STATE_DB")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def load_settings(args: argparse.Namespace) -> Settings:
    overrides = {}
    if args.dry_run:
        overrides["DRY_RUN"] = True
    if args.folders:
        overrides["IMAP_FOLDERS"] = ";".join(args.folders)
    if args.state_db:
        overrides["STATE_DB"] = args.state_db
    return Settings(**overrides)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except ValidationError as exc:
        configure_logging("INFO")
        logging.error("Invalid configuration:\n%s", exc)
        return 2

    configure_logging(settings.log_level)

    relay = MailRelay(
        settings,
        notifier=MattermostClient(settings),
        store=StateStore(settings.state_db),
    )

    try:
        summary = relay.run()
    except RelayError as exc:
        logging.error("Run against %s failed, no state committed: %s", settings.imap_host, exc)
        return 1

    logging.info(
        "Run complete: folders=%s candidates=%s matched=%s notified=%s duplicates=%s failed=%s committed=%s",
        summary.folders,
        summary.candidates,
        summary.matched,
        summary.notified,
        summary.duplicates,
        summary.failed,
        summary.committed,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
