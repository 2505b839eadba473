"""Core data models for Squad Guardian.

Dict codecs use the camelCase keys of the persisted aggregates and of sync
tokens, so documents written by other clients load unchanged.
"""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def new_id() -> str:
    """Return a collision-resistant identifier."""

    return uuid.uuid4().hex


def _require_str(data: Dict[str, Any], key: str, *, allow_empty: bool = False) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    if not allow_empty and not value.strip():
        raise ValueError(f"{key} must not be empty")
    return value


def _require_amount(data: Dict[str, Any], key: str, *, positive: bool) -> float:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{key} must be a number")
    try:
        finite = math.isfinite(value)
    except OverflowError as exc:
        raise ValueError(f"{key} is out of range") from exc
    if not finite:
        raise ValueError(f"{key} must be finite")
    if positive and value <= 0:
        raise ValueError(f"{key} must be positive")
    if value < 0:
        raise ValueError(f"{key} must not be negative")
    return value


class ParticipantStatus(str, Enum):
    PENDING = "pending"
    ONLINE = "online"


class MissionState(str, Enum):
    """Lifecycle of the single active mission.

    ``ASSEMBLING`` is the countdown window. ``PLAYING`` is reached either when
    every participant has checked in or when settlement has run, and is
    terminal until the mission is cancelled or replaced.
    """

    ASSEMBLING = "assembling"
    PLAYING = "playing"


@dataclass
class Member:
    id: str
    name: str
    avatar: str = "🎮"
    total_penalties: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "avatar": self.avatar,
            "totalPenalties": self.total_penalties,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Member":
        avatar = data.get("avatar") or "🎮"
        if not isinstance(avatar, str):
            raise TypeError("avatar must be a string")
        return Member(
            id=_require_str(data, "id"),
            name=_require_str(data, "name"),
            avatar=avatar,
            total_penalties=_require_amount(data, "totalPenalties", positive=False),
        )


@dataclass
class Participant:
    member_id: str
    status: ParticipantStatus = ParticipantStatus.PENDING

    @property
    def is_pending(self) -> bool:
        return self.status is ParticipantStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {"memberId": self.member_id, "status": self.status.value}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Participant":
        return Participant(
            member_id=_require_str(data, "memberId"),
            status=ParticipantStatus(data.get("status", "pending")),
        )


@dataclass
class Mission:
    id: str
    game_name: str
    penalty_amount: float
    start_time: datetime
    duration_minutes: int
    participants: List[Participant] = field(default_factory=list)
    state: MissionState = MissionState.ASSEMBLING

    def participant(self, member_id: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.member_id == member_id:
                return participant
        return None

    def pending_participants(self) -> List[Participant]:
        return [p for p in self.participants if p.is_pending]

    def all_online(self) -> bool:
        return all(p.status is ParticipantStatus.ONLINE for p in self.participants)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "gameName": self.game_name,
            "penaltyAmount": self.penalty_amount,
            "startTime": int(self.start_time.timestamp() * 1000),
            "durationMinutes": self.duration_minutes,
            "participants": [p.to_dict() for p in self.participants],
            "gameState": self.state.value,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Mission":
        start_ms = data["startTime"]
        if isinstance(start_ms, bool) or not isinstance(start_ms, (int, float)):
            raise TypeError("startTime must be epoch milliseconds")
        participants = data.get("participants") or []
        if not isinstance(participants, list):
            raise TypeError("participants must be a list")
        return Mission(
            id=_require_str(data, "id"),
            game_name=_require_str(data, "gameName"),
            penalty_amount=_require_amount(data, "penaltyAmount", positive=True),
            start_time=datetime.fromtimestamp(start_ms / 1000, tz=timezone.utc),
            duration_minutes=int(data.get("durationMinutes", 0)),
            participants=[Participant.from_dict(item) for item in participants],
            state=MissionState(data.get("gameState", "assembling")),
        )


@dataclass(frozen=True)
class PenaltyRecord:
    id: str
    member_name: str
    game_name: str
    amount: float
    date: str
    roast: Optional[str] = None
    member_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "memberName": self.member_name,
            "gameName": self.game_name,
            "amount": self.amount,
            "date": self.date,
        }
        if self.member_id is not None:
            payload["memberId"] = self.member_id
        if self.roast is not None:
            payload["roast"] = self.roast
        return payload

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PenaltyRecord":
        roast = data.get("roast")
        if roast is not None and not isinstance(roast, str):
            raise TypeError("roast must be a string")
        member_id = data.get("memberId")
        if member_id is not None and not isinstance(member_id, str):
            raise TypeError("memberId must be a string")
        return PenaltyRecord(
            id=_require_str(data, "id"),
            member_name=_require_str(data, "memberName"),
            game_name=_require_str(data, "gameName"),
            amount=_require_amount(data, "amount", positive=False),
            date=_require_str(data, "date", allow_empty=True),
            roast=roast,
            member_id=member_id,
        )


def format_timestamp(moment: datetime) -> str:
    """Human-readable local timestamp used for penalty records."""

    return moment.astimezone().strftime("%Y-%m-%d %H:%M:%S")


__all__ = [
    "Member",
    "Mission",
    "MissionState",
    "Participant",
    "ParticipantStatus",
    "PenaltyRecord",
    "format_timestamp",
    "new_id",
]
