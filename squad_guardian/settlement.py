"""One-shot settlement of a mission's pending participants."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from .ledger import Ledger
from .models import Mission, MissionState, Participant, PenaltyRecord, format_timestamp, new_id
from .roast_client import RoastProvider
from .state import LedgerStore
from .telemetry import TelemetryCollector, get_telemetry

logger = logging.getLogger(__name__)


@dataclass
class SettlementReport:
    mission_id: str
    penalized: List[PenaltyRecord] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)


class SettlementEngine:
    """Charges every still-pending participant of an expired mission.

    Roasts are requested one participant at a time, in participant order.
    Ledger mutations happen afterwards in a single synchronous block, so
    nothing observes a partially applied settlement.
    """

    def __init__(
        self,
        ledger: Ledger,
        store: LedgerStore,
        roasts: RoastProvider,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._roasts = roasts
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._telemetry = telemetry

    async def settle(
        self,
        mission: Mission,
        pending: Sequence[Participant],
        now: Optional[datetime] = None,
    ) -> SettlementReport:
        now = now or self._clock()
        started = time.perf_counter()
        report = SettlementReport(mission_id=mission.id)
        staged: List[Tuple[str, PenaltyRecord]] = []

        for participant in pending:
            member = self._ledger.get_member(participant.member_id)
            if member is None:
                report.skipped.append(participant.member_id)
                continue
            roast = await self._roasts.roast(member.name, mission.game_name, mission.penalty_amount)
            if roast.degraded:
                report.degraded.append(member.id)
            staged.append(
                (
                    member.id,
                    PenaltyRecord(
                        id=new_id(),
                        member_id=member.id,
                        member_name=member.name,
                        game_name=mission.game_name,
                        amount=mission.penalty_amount,
                        date=format_timestamp(now),
                        roast=roast.text,
                    ),
                )
            )

        for member_id, record in staged:
            # The roster may have changed while roasts were awaited.
            if self._ledger.get_member(member_id) is None:
                report.skipped.append(member_id)
                continue
            self._ledger.record_penalty(member_id, record)
            report.penalized.append(record)

        mission.state = MissionState.PLAYING
        self._store.save(self._ledger)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Settled mission %s: %d penalized, %d skipped, %d fallback roasts",
            mission.id,
            len(report.penalized),
            len(report.skipped),
            len(report.degraded),
        )
        try:
            telemetry = self._telemetry or get_telemetry()
            telemetry.track_settlement(
                mission.id,
                penalized=len(report.penalized),
                skipped=len(report.skipped),
                degraded=len(report.degraded),
                duration_ms=duration_ms,
            )
        except Exception:
            logger.debug("Telemetry tracking for settlement failed", exc_info=True)
        return report


__all__ = ["SettlementEngine", "SettlementReport"]
