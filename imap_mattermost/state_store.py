"""SQLite-backed durable memory (watermarks and notified ids) between runs."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

import sqlite_utils

from .dedupe_cache import IDCACHE_SIZE, NotifiedCache
from .models import RunState
from .watermarks import Watermarks

logger = logging.getLogger(__name__)

LASTSEEN_SLOT = "lastseen"
NOTIFIED_SLOT = "notified"


class StateStore:
    """Store the ``lastseen`` and ``notified`` slots as JSON text."""

    TABLE = "relay_state"

    def __init__(self, db_path: Optional[Path] = None, cache_size: int = IDCACHE_SIZE) -> None:
        self.db_path = db_path
        self.cache_size = cache_size
        if db_path is None:
            self.db = sqlite_utils.Database(memory=True)
        else:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self.db = sqlite_utils.Database(str(db_path))
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.db[self.TABLE].create(
            {
                "slot": str,
                "value": str,
                "updated_at": str,
            },
            pk="slot",
            if_not_exists=True,
        )

    def _read_slot(self, slot: str) -> Any:
        rows = list(self.db[self.TABLE].rows_where("slot = ?", [slot]))
        if not rows:
            return None
        return json.loads(rows[0]["value"])

    def load(self) -> RunState:
        """Read both slots; a fresh database yields an empty state."""
        lastseen = self._read_slot(LASTSEEN_SLOT)
        notified = self._read_slot(NOTIFIED_SLOT)
        state = RunState(
            watermarks=Watermarks.from_json(lastseen),
            notified=NotifiedCache(notified, capacity=self.cache_size),
        )
        logger.debug(
            "Loaded state: %s watermark(s), %s notified id(s)",
            len(state.watermarks),
            len(state.notified),
        )
        return state

    def commit(self, state: RunState) -> None:
        """Write both slots in one statement so they never diverge."""
        now = datetime.now(tz=UTC).isoformat()
        self.db[self.TABLE].upsert_all(
            [
                {
                    "slot": LASTSEEN_SLOT,
                    "value": json.dumps(state.watermarks.to_json()),
                    "updated_at": now,
                },
                {
                    "slot": NOTIFIED_SLOT,
                    "value": json.dumps(state.notified.to_list()),
                    "updated_at": now,
                },
            ],
            pk="slot",
        )
        logger.debug("Committed state to %s", self.db_path or ":memory:")
