"""Settlement of expired missions."""
from __future__ import annotations

import random
import sqlite3
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from squad_guardian.ledger import Ledger
from squad_guardian.mission import MissionController
from squad_guardian.models import MissionState
from squad_guardian.roast_client import Roast, RoastConfig, RoastProvider, RoastSource
from squad_guardian.settlement import SettlementEngine
from squad_guardian.state import LedgerStore, MemoryGateway


NOW = datetime(2026, 10, 19, 20, 0, tzinfo=timezone.utc)
LATER = NOW + timedelta(minutes=30)
PHRASES = ("Pay up.", "Late again.")


class FlakyChat:
    """Chat completions stub that fails for one member name."""

    def __init__(self, fail_for: str) -> None:
        self.prompts = []
        self._fail_for = fail_for
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        prompt = kwargs["messages"][-1]["content"]
        self.prompts.append(prompt)
        if f'"{self._fail_for}"' in prompt:
            raise ConnectionError("upstream unavailable")
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Remote roast"))])


class ScriptedRoasts:
    """Runs an optional hook while a given member is being roasted."""

    def __init__(self, hooks=None) -> None:
        self.hooks = hooks or {}
        self.calls = []

    async def roast(self, member_name, game_name, penalty_amount):
        self.calls.append(member_name)
        hook = self.hooks.get(member_name)
        if hook is not None:
            hook()
        return Roast(f"{member_name} lagged", RoastSource.REMOTE)


def build(roasts, names=("Ada", "Bob", "Cat")):
    ledger = Ledger()
    members = {name: ledger.add_member(name) for name in names}
    gateway = MemoryGateway()
    store = LedgerStore(gateway)
    engine = SettlementEngine(ledger, store, roasts, clock=lambda: NOW)
    controller = MissionController(ledger, store, engine, clock=lambda: NOW)
    return controller, ledger, members, gateway


@pytest.mark.asyncio
async def test_only_pending_participants_are_charged():
    roasts = ScriptedRoasts()
    controller, ledger, members, _ = build(roasts, names=("Ada", "Bob"))
    controller.create_mission("League of Legends", 10, 10, [members["Ada"].id, members["Bob"].id])
    controller.check_in(members["Ada"].id)

    report = await controller.expire(LATER)

    assert members["Ada"].total_penalties == 0
    assert members["Bob"].total_penalties == 10
    assert len(ledger.history) == 1
    record = ledger.history[0]
    assert record.member_id == members["Bob"].id
    assert record.member_name == "Bob"
    assert record.game_name == "League of Legends"
    assert record.amount == 10
    assert record.roast == "Bob lagged"
    assert report.penalized == [record]
    assert controller.state is MissionState.PLAYING
    assert ledger.inconsistencies() == {}


@pytest.mark.asyncio
async def test_records_follow_participant_order_most_recent_first():
    roasts = ScriptedRoasts()
    controller, ledger, members, _ = build(roasts)
    order = [members["Cat"].id, members["Ada"].id, members["Bob"].id]
    controller.create_mission("Apex", 5, 10, order)

    await controller.expire(LATER)

    assert roasts.calls == ["Cat", "Ada", "Bob"]
    assert [r.member_name for r in ledger.history] == ["Bob", "Ada", "Cat"]
    assert ledger.inconsistencies() == {}


@pytest.mark.asyncio
async def test_failed_roast_uses_fallback_and_trips_breaker():
    chat = FlakyChat(fail_for="Cat")
    provider = RoastProvider(RoastConfig(api_key="k"), phrases=PHRASES, client=chat, rng=random.Random(1))
    controller, ledger, members, _ = build(provider)
    controller.create_mission("Apex", 10, 10, [members["Ada"].id, members["Cat"].id, members["Bob"].id])

    report = await controller.expire(LATER)

    by_name = {r.member_name: r for r in ledger.history}
    assert by_name["Ada"].roast == "Remote roast"
    assert by_name["Cat"].roast in PHRASES
    # Breaker is open after Cat, so Bob never reaches the remote service.
    assert by_name["Bob"].roast in PHRASES
    assert len(chat.prompts) == 2
    assert report.degraded == [members["Cat"].id, members["Bob"].id]
    assert all(m.total_penalties == 10 for m in members.values())
    assert ledger.inconsistencies() == {}


@pytest.mark.asyncio
async def test_failed_roast_without_breaker_keeps_trying_remote():
    chat = FlakyChat(fail_for="Cat")
    provider = RoastProvider(
        RoastConfig(api_key="k", circuit_breaker=False), phrases=PHRASES, client=chat, rng=random.Random(1)
    )
    controller, ledger, members, _ = build(provider)
    controller.create_mission("Apex", 10, 10, [members["Ada"].id, members["Cat"].id, members["Bob"].id])

    report = await controller.expire(LATER)

    by_name = {r.member_name: r for r in ledger.history}
    assert by_name["Cat"].roast in PHRASES
    assert by_name["Bob"].roast == "Remote roast"
    assert report.degraded == [members["Cat"].id]
    assert len(ledger.history) == 3


@pytest.mark.asyncio
async def test_deleted_participant_is_skipped():
    roasts = ScriptedRoasts()
    controller, ledger, members, _ = build(roasts)
    controller.create_mission("Apex", 10, 10, [members["Ada"].id, members["Bob"].id])
    ledger.remove_member(members["Bob"].id)

    report = await controller.expire(LATER)

    assert report.skipped == [members["Bob"].id]
    assert [r.member_name for r in ledger.history] == ["Ada"]
    assert roasts.calls == ["Ada"]
    assert ledger.inconsistencies() == {}


@pytest.mark.asyncio
async def test_member_removed_while_roasting_is_skipped_at_commit():
    controller, ledger, members, _ = build(ScriptedRoasts())
    ada = members["Ada"]
    roasts = ScriptedRoasts({"Bob": lambda: ledger.remove_member(ada.id)})
    controller._settlement._roasts = roasts
    controller.create_mission("Apex", 10, 10, [ada.id, members["Bob"].id])

    report = await controller.expire(LATER)

    assert roasts.calls == ["Ada", "Bob"]
    assert report.skipped == [ada.id]
    assert [r.member_name for r in ledger.history] == ["Bob"]
    assert ledger.inconsistencies() == {}


@pytest.mark.asyncio
async def test_settlement_is_persisted(telemetry):
    controller, ledger, members, gateway = build(ScriptedRoasts())
    controller.create_mission("Apex", 7.5, 10, [members["Ada"].id])

    await controller.expire(LATER)

    reloaded = LedgerStore(gateway).load()
    assert reloaded.active_mission.state is MissionState.PLAYING
    assert reloaded.history == ledger.history
    assert reloaded.get_member(members["Ada"].id).total_penalties == 7.5
    assert reloaded.inconsistencies() == {}

    telemetry.flush()
    with sqlite3.connect(telemetry.db_path) as conn:
        rows = conn.execute(
            "SELECT value FROM metrics WHERE metric_type = 'settlement'"
        ).fetchall()
    assert rows == [(1.0,)]
