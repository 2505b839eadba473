"""Mission lifecycle state machine."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from .ledger import Ledger, ValidationError
from .models import Mission, MissionState, Participant, ParticipantStatus, new_id
from .settlement import SettlementEngine, SettlementReport
from .state import LedgerStore
from .telemetry import TelemetryCollector, get_telemetry

logger = logging.getLogger(__name__)


class SettlementInProgressError(RuntimeError):
    """Raised when a command would race with an in-flight settlement."""


def format_remaining(remaining: Optional[timedelta]) -> str:
    """Render a countdown as ``MM:SS``."""

    if remaining is None:
        return "--:--"
    seconds = max(0, int(remaining.total_seconds()))
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes:02d}:{seconds:02d}"


class MissionController:
    """Owns the single active mission: creation, check-in, countdown, expiry.

    States are ``None`` (no mission), ``ASSEMBLING`` and ``PLAYING``. Every
    committed transition is persisted before the method returns.
    """

    def __init__(
        self,
        ledger: Ledger,
        store: LedgerStore,
        settlement: SettlementEngine,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._settlement = settlement
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._telemetry = telemetry
        self._settling: Optional[str] = None
        # Only the active mission can expire, so the last settled id is enough.
        self._settled_id: Optional[str] = None

    @property
    def mission(self) -> Optional[Mission]:
        return self._ledger.active_mission

    @property
    def state(self) -> Optional[MissionState]:
        mission = self._ledger.active_mission
        return mission.state if mission else None

    @property
    def settling(self) -> bool:
        return self._settling is not None

    def _ensure_not_settling(self, action: str) -> None:
        if self._settling is not None:
            raise SettlementInProgressError(
                f"Cannot {action} while mission {self._settling} is being settled"
            )

    def _commit(self, event: str, mission: Mission, **details) -> None:
        self._store.save(self._ledger)
        try:
            telemetry = self._telemetry or get_telemetry()
            telemetry.track_mission_event(event, mission.id, **details)
        except Exception:
            logger.debug("Telemetry tracking for mission event failed", exc_info=True)

    # Commands -------------------------------------------------------------
    def create_mission(
        self,
        game_name: str,
        penalty_amount: float,
        duration_minutes: int,
        participant_ids: Iterable[str],
        *,
        now: Optional[datetime] = None,
    ) -> Mission:
        self._ensure_not_settling("start a mission")
        game_name = (game_name or "").strip()
        member_ids: List[str] = []
        for member_id in participant_ids:
            if member_id not in member_ids:
                member_ids.append(member_id)

        if not member_ids:
            raise ValidationError("Select at least one participant")
        if not game_name:
            raise ValidationError("Game name must not be empty")
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
            raise ValidationError("Duration must be a positive number of minutes")
        if isinstance(penalty_amount, bool) or not isinstance(penalty_amount, (int, float)) or penalty_amount <= 0:
            raise ValidationError("Penalty amount must be positive")
        unknown = [mid for mid in member_ids if self._ledger.get_member(mid) is None]
        if unknown:
            raise ValidationError(f"Unknown participants: {', '.join(unknown)}")

        now = now or self._clock()
        previous = self._ledger.active_mission
        mission = Mission(
            id=new_id(),
            game_name=game_name,
            penalty_amount=penalty_amount,
            start_time=now + timedelta(minutes=duration_minutes),
            duration_minutes=duration_minutes,
            participants=[Participant(member_id=mid) for mid in member_ids],
            state=MissionState.ASSEMBLING,
        )
        self._ledger.active_mission = mission
        if previous is not None:
            logger.info("Mission %s replaced by %s", previous.id, mission.id)
        logger.info(
            "Mission %s started for %s: %d participants, deadline %s",
            mission.id,
            game_name,
            len(member_ids),
            mission.start_time.isoformat(),
        )
        self._commit("created", mission, participants=len(member_ids))
        return mission

    def check_in(self, member_id: str) -> bool:
        """Mark a participant online; returns False when ignored."""

        mission = self._ledger.active_mission
        if mission is None or mission.state is not MissionState.ASSEMBLING or self.settling:
            return False
        participant = mission.participant(member_id)
        if participant is None or participant.status is ParticipantStatus.ONLINE:
            return False

        participant.status = ParticipantStatus.ONLINE
        if mission.all_online():
            mission.state = MissionState.PLAYING
            logger.info("Everyone checked in for mission %s; nobody owes anything", mission.id)
            self._commit("all_checked_in", mission)
        else:
            self._commit("checked_in", mission, member_id=member_id)
        return True

    def cancel_mission(self) -> None:
        self._ensure_not_settling("cancel the mission")
        mission = self._ledger.active_mission
        self._ledger.active_mission = None
        if mission is None:
            return
        logger.info("Mission %s cancelled", mission.id)
        self._commit("cancelled", mission)

    # Countdown ------------------------------------------------------------
    def remaining(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        mission = self._ledger.active_mission
        if mission is None:
            return None
        now = now or self._clock()
        return max(timedelta(0), mission.start_time - now)

    async def tick(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Recompute the remaining time from the deadline and expire at zero."""

        now = now or self._clock()
        remaining = self.remaining(now)
        if remaining is None:
            return None
        mission = self._ledger.active_mission
        if remaining == timedelta(0) and mission.state is MissionState.ASSEMBLING:
            await self.expire(now)
        return remaining

    async def expire(self, now: Optional[datetime] = None) -> Optional[SettlementReport]:
        """Expiry handler; runs settlement at most once per mission."""

        mission = self._ledger.active_mission
        if mission is None or mission.state is not MissionState.ASSEMBLING:
            return None
        if self._settling is not None or mission.id == self._settled_id:
            logger.debug("Expiry for mission %s already handled", mission.id)
            return None

        self._settling = mission.id
        self._settled_id = mission.id
        try:
            pending = mission.pending_participants()
            logger.info("Mission %s expired with %d pending participants", mission.id, len(pending))
            report = await self._settlement.settle(mission, pending, now)
        finally:
            self._settling = None
        return report


__all__ = [
    "MissionController",
    "SettlementInProgressError",
    "ValidationError",
    "format_remaining",
]
