"""The durable aggregate: roster, penalty history and the active mission."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .models import Member, Mission, PenaltyRecord, new_id

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """Raised when a command carries invalid input; no state is changed."""


class MemberNotFoundError(LookupError):
    """Raised when an explicit roster operation targets an unknown member."""


@dataclass
class Ledger:
    """Roster plus most-recent-first penalty history plus the mission slot.

    ``record_penalty`` is the only path that increases a member's
    ``total_penalties`` so the cached totals stay equal to the history sums.
    """

    members: List[Member] = field(default_factory=list)
    history: List[PenaltyRecord] = field(default_factory=list)
    active_mission: Optional[Mission] = None

    # Roster ---------------------------------------------------------------
    def get_member(self, member_id: str) -> Optional[Member]:
        for member in self.members:
            if member.id == member_id:
                return member
        return None

    def _require_member(self, member_id: str) -> Member:
        member = self.get_member(member_id)
        if member is None:
            raise MemberNotFoundError(member_id)
        return member

    def add_member(self, name: str, avatar: Optional[str] = None) -> Member:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Member name must not be empty")
        member = Member(id=new_id(), name=name, avatar=avatar or "🎮")
        self.members.append(member)
        logger.info("Added member %s (%s)", member.name, member.id)
        return member

    def edit_member(
        self,
        member_id: str,
        *,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Member:
        member = self._require_member(member_id)
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Member name must not be empty")
            member.name = name
        if avatar is not None:
            member.avatar = avatar or "🎮"
        return member

    def remove_member(self, member_id: str) -> Member:
        member = self._require_member(member_id)
        self.members.remove(member)
        logger.info("Removed member %s (%s)", member.name, member.id)
        return member

    def leaderboard(self) -> List[Member]:
        """Members ordered by accumulated penalties, largest first."""

        return sorted(self.members, key=lambda m: m.total_penalties, reverse=True)

    # History --------------------------------------------------------------
    def record_penalty(self, member_id: str, record: PenaltyRecord) -> Member:
        member = self._require_member(member_id)
        self.history.insert(0, record)
        member.total_penalties += record.amount
        return member

    def recent_history(self, limit: Optional[int] = None) -> List[PenaltyRecord]:
        if limit is None:
            return list(self.history)
        return self.history[: max(0, limit)]

    def penalty_sums(self) -> Dict[str, float]:
        sums: Dict[str, float] = {}
        for record in self.history:
            if record.member_id is None:
                continue
            sums[record.member_id] = sums.get(record.member_id, 0) + record.amount
        return sums

    def inconsistencies(self) -> Dict[str, tuple]:
        """Return ``{member_id: (cached_total, history_sum)}`` for mismatches."""

        sums = self.penalty_sums()
        mismatched = {}
        for member in self.members:
            expected = sums.get(member.id, 0)
            if not math.isclose(member.total_penalties, expected, abs_tol=1e-9):
                mismatched[member.id] = (member.total_penalties, expected)
        return mismatched

    def replace_roster_and_history(
        self,
        members: Iterable[Member],
        history: Iterable[PenaltyRecord],
    ) -> None:
        """Destructively overwrite roster and history; the mission slot is kept."""

        self.members = list(members)
        self.history = list(history)
        logger.info(
            "Ledger replaced: %d members, %d history entries",
            len(self.members),
            len(self.history),
        )


__all__ = ["Ledger", "MemberNotFoundError", "ValidationError"]
