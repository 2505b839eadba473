"""Ledger persistence through a named-aggregate gateway."""
from __future__ import annotations

import copy
import json
import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .ledger import Ledger
from .models import Member, Mission, PenaltyRecord, new_id

logger = logging.getLogger(__name__)

MEMBERS_KEY = "squad_members"
MISSION_KEY = "active_mission"
HISTORY_KEY = "penalty_history"

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS aggregates (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""


class PersistenceGateway(Protocol):
    """Synchronous get/set of named, JSON-compatible aggregates."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class MemoryGateway:
    """In-process gateway; values are deep-copied on the way in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self.writes: List[str] = []

    def get(self, key: str) -> Optional[Any]:
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)
        self.writes.append(key)


class SQLiteGateway:
    """Gateway storing each aggregate as a JSON document in SQLite."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _ensure_schema(self) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    def get(self, key: str) -> Optional[Any]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute("SELECT value FROM aggregates WHERE key = ?", (key,)).fetchone()
        if not row:
            return None
        return json.loads(row[0])

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "REPLACE INTO aggregates (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
                (key, payload),
            )
            conn.commit()


class LedgerStore:
    """Loads and saves the three ledger aggregates through a gateway."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        default_roster: Iterable[Dict[str, str]] = (),
    ) -> None:
        self._gateway = gateway
        self._default_roster = list(default_roster)

    @property
    def gateway(self) -> PersistenceGateway:
        return self._gateway

    def _read(self, key: str) -> Optional[Any]:
        try:
            return self._gateway.get(key)
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            logger.warning("Stored aggregate %s is unreadable: %s", key, exc)
            return None

    def _load_members(self) -> List[Member]:
        raw = self._read(MEMBERS_KEY)
        if raw is None:
            # Seeded ids must survive the next load.
            members = [
                Member(id=new_id(), name=entry["name"], avatar=entry.get("avatar", "🎮"))
                for entry in self._default_roster
            ]
            self._gateway.set(MEMBERS_KEY, [member.to_dict() for member in members])
            return members
        try:
            return [Member.from_dict(item) for item in raw]
        except (AttributeError, KeyError, OSError, OverflowError, TypeError, ValueError) as exc:
            logger.warning("Discarding corrupted %s aggregate: %s", MEMBERS_KEY, exc)
            return []

    def _load_history(self) -> List[PenaltyRecord]:
        raw = self._read(HISTORY_KEY)
        if raw is None:
            return []
        try:
            return [PenaltyRecord.from_dict(item) for item in raw]
        except (AttributeError, KeyError, OSError, OverflowError, TypeError, ValueError) as exc:
            logger.warning("Discarding corrupted %s aggregate: %s", HISTORY_KEY, exc)
            return []

    def _load_mission(self) -> Optional[Mission]:
        raw = self._read(MISSION_KEY)
        if not raw:
            return None
        try:
            return Mission.from_dict(raw)
        except (AttributeError, KeyError, OSError, OverflowError, TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable %s aggregate: %s", MISSION_KEY, exc)
            return None

    def load(self) -> Ledger:
        return Ledger(
            members=self._load_members(),
            history=self._load_history(),
            active_mission=self._load_mission(),
        )

    def save(self, ledger: Ledger) -> None:
        """Write roster, mission and history, one after another."""

        self._gateway.set(MEMBERS_KEY, [member.to_dict() for member in ledger.members])
        mission = ledger.active_mission
        self._gateway.set(MISSION_KEY, mission.to_dict() if mission else None)
        self._gateway.set(HISTORY_KEY, [record.to_dict() for record in ledger.history])


__all__ = [
    "HISTORY_KEY",
    "LedgerStore",
    "MEMBERS_KEY",
    "MISSION_KEY",
    "MemoryGateway",
    "PersistenceGateway",
    "SQLiteGateway",
]
