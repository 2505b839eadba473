"""Tests for settings loading."""
from __future__ import annotations

import pytest

from squad_guardian.config import Settings, SettingsLoader, get_settings


def test_packaged_settings_load():
    settings = get_settings()
    assert settings.default_game == "League of Legends"
    assert settings.default_duration_minutes == 10
    assert settings.default_penalty_amount == 10
    assert settings.sync_query_param == "sync"
    assert settings.sync_history_limit == 5
    assert len(settings.fallback_phrases) >= 1
    assert [entry["avatar"] for entry in settings.default_roster] == ["🎮", "⚡"]


def test_loader_caches_until_forced(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "mission:\n  default_game: Apex\nroast:\n  fallback_phrases: ['Pay up.']\n",
        encoding="utf-8",
    )
    loader = SettingsLoader(path)

    first = loader.load()
    path.write_text(
        "mission:\n  default_game: Dota\nroast:\n  fallback_phrases: ['Pay up.']\n",
        encoding="utf-8",
    )

    assert loader.load() is first
    assert loader.load(force=True).default_game == "Dota"


def test_missing_sections_fall_back_to_defaults():
    settings = Settings.from_dict({"roast": {"fallback_phrases": ["Late."]}})
    assert settings.tick_interval_seconds == 1.0
    assert settings.default_roster == ()
    assert settings.fallback_phrases == ("Late.",)


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"roast": {"fallback_phrases": ["  "]}},
        {"roast": {"fallback_phrases": ["x"]}, "mission": {"tick_interval_seconds": 0}},
        {"roast": {"fallback_phrases": ["x"]}, "sync": {"history_limit": -1}},
    ],
)
def test_invalid_settings_are_rejected(data):
    with pytest.raises(ValueError):
        Settings.from_dict(data)


def test_roster_entries_without_name_are_skipped():
    settings = Settings.from_dict(
        {
            "roast": {"fallback_phrases": ["x"]},
            "roster": {"defaults": [{"name": ""}, {"name": "Solo"}]},
        }
    )
    assert settings.default_roster == ({"name": "Solo", "avatar": "🎮"},)
