"""High-level squad service orchestrating commands."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .config import Settings, get_settings
from .ledger import Ledger
from .mission import MissionController, SettlementInProgressError, format_remaining
from .models import Member, Mission, PenaltyRecord
from .roast_client import RoastProvider, get_roast_provider
from .settlement import SettlementEngine, SettlementReport
from .state import LedgerStore, PersistenceGateway, SQLiteGateway
from .sync_codec import SyncOutcome, SyncSnapshot, build_share_link, consume_share_link, encode
from .telemetry import TelemetryCollector, get_telemetry

logger = logging.getLogger(__name__)


class SquadService:
    """Coordinates the ledger, its persistence, the mission lifecycle and sync."""

    def __init__(
        self,
        db_path: Path | None = None,
        settings: Settings | None = None,
        *,
        gateway: PersistenceGateway | None = None,
        roasts: RoastProvider | None = None,
        clock: Optional[Callable[[], datetime]] = None,
        telemetry: TelemetryCollector | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        if gateway is None:
            if db_path is None:
                raise ValueError("Either db_path or gateway is required")
            gateway = SQLiteGateway(db_path)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._telemetry = telemetry
        self.store = LedgerStore(gateway, default_roster=self.settings.default_roster)
        self.ledger: Ledger = self.store.load()
        self.roasts = roasts or get_roast_provider(self.settings.fallback_phrases)
        self.settlement = SettlementEngine(
            self.ledger, self.store, self.roasts, clock=self._clock, telemetry=telemetry
        )
        self.missions = MissionController(
            self.ledger, self.store, self.settlement, clock=self._clock, telemetry=telemetry
        )

    def refresh(self) -> None:
        """Re-read the persisted aggregates into the live ledger.

        Lets a long-running process observe check-ins written by another
        process sharing the same database.
        """

        if self.missions.settling:
            return
        loaded = self.store.load()
        self.ledger.members = loaded.members
        self.ledger.history = loaded.history
        self.ledger.active_mission = loaded.active_mission

    # Roster helpers -------------------------------------------------------
    def members(self) -> List[Member]:
        return list(self.ledger.members)

    def add_member(self, name: str, avatar: Optional[str] = None) -> Member:
        member = self.ledger.add_member(name, avatar)
        self.store.save(self.ledger)
        return member

    def edit_member(
        self,
        member_id: str,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Member:
        member = self.ledger.edit_member(member_id, name=name, avatar=avatar)
        self.store.save(self.ledger)
        return member

    def remove_member(self, member_id: str) -> Member:
        member = self.ledger.remove_member(member_id)
        self.store.save(self.ledger)
        return member

    def leaderboard(self) -> List[Member]:
        return self.ledger.leaderboard()

    def history(self, limit: Optional[int] = None) -> List[PenaltyRecord]:
        return self.ledger.recent_history(limit)

    # Mission commands -----------------------------------------------------
    @property
    def mission(self) -> Optional[Mission]:
        return self.missions.mission

    def start_mission(
        self,
        participant_ids: Iterable[str],
        *,
        game_name: Optional[str] = None,
        penalty_amount: Optional[float] = None,
        duration_minutes: Optional[int] = None,
    ) -> Mission:
        return self.missions.create_mission(
            game_name if game_name is not None else self.settings.default_game,
            penalty_amount if penalty_amount is not None else self.settings.default_penalty_amount,
            duration_minutes if duration_minutes is not None else self.settings.default_duration_minutes,
            participant_ids,
            now=self._clock(),
        )

    def check_in(self, member_id: str) -> bool:
        return self.missions.check_in(member_id)

    def cancel_mission(self) -> None:
        self.missions.cancel_mission()

    async def tick(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        return await self.missions.tick(now)

    async def expire(self, now: Optional[datetime] = None) -> Optional[SettlementReport]:
        return await self.missions.expire(now)

    def status(self, now: Optional[datetime] = None) -> Dict[str, object]:
        mission = self.missions.mission
        if mission is None:
            return {"mission": None}
        remaining = self.missions.remaining(now or self._clock())
        participants = []
        for participant in mission.participants:
            member = self.ledger.get_member(participant.member_id)
            participants.append(
                {
                    "member_id": participant.member_id,
                    "name": member.name if member else None,
                    "status": participant.status.value,
                }
            )
        return {
            "mission": mission.id,
            "game": mission.game_name,
            "state": mission.state.value,
            "penalty": mission.penalty_amount,
            "remaining": format_remaining(remaining),
            "participants": participants,
        }

    # Sync -----------------------------------------------------------------
    def share_token(self) -> str:
        return encode(
            self.ledger.members,
            self.ledger.history,
            history_limit=self.settings.sync_history_limit,
        )

    def share_link(self, base_url: str) -> str:
        link = build_share_link(base_url, self.share_token(), param=self.settings.sync_query_param)
        self._track_sync("export", True)
        return link

    def import_share_link(
        self,
        url: str,
        confirm: Callable[[SyncSnapshot], bool],
    ) -> SyncOutcome:
        """Replace roster and history with a shared snapshot once confirmed."""

        if self.missions.settling:
            raise SettlementInProgressError("Cannot import a squad while a settlement is running")
        outcome = consume_share_link(url, confirm, param=self.settings.sync_query_param)
        if not outcome.found:
            return outcome
        if outcome.snapshot is None:
            self._track_sync("import", False)
            try:
                (self._telemetry or get_telemetry()).track_error("sync_import", outcome.error)
            except Exception:
                logger.debug("Telemetry tracking for sync error failed", exc_info=True)
            return outcome
        if outcome.accepted:
            self.ledger.replace_roster_and_history(outcome.snapshot.members, outcome.snapshot.history)
            self.store.save(self.ledger)
            self._track_sync("import", True, len(outcome.snapshot.members))
        return outcome

    def _track_sync(self, action: str, success: bool, members: int = 0) -> None:
        try:
            telemetry = self._telemetry or get_telemetry()
            telemetry.track_sync(action, success, members=members or len(self.ledger.members))
        except Exception:
            logger.debug("Telemetry tracking for sync failed", exc_info=True)


__all__ = ["SquadService"]
