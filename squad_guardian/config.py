"""Configuration loading utilities for Squad Guardian."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    default_game: str
    default_duration_minutes: int
    default_penalty_amount: float
    tick_interval_seconds: float
    sync_query_param: str
    sync_history_limit: int
    fallback_phrases: Tuple[str, ...]
    default_roster: Tuple[Dict[str, str], ...]

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        mission_cfg = data.get("mission", {})
        sync_cfg = data.get("sync", {})
        roast_cfg = data.get("roast", {})
        roster_cfg = data.get("roster", {})

        phrases = [str(item).strip() for item in roast_cfg.get("fallback_phrases", []) if str(item).strip()]
        if not phrases:
            raise ValueError("roast.fallback_phrases must contain at least one phrase")

        tick_interval = float(mission_cfg.get("tick_interval_seconds", 1.0))
        if tick_interval <= 0:
            raise ValueError("mission.tick_interval_seconds must be positive")
        history_limit = int(sync_cfg.get("history_limit", 5))
        if history_limit < 0:
            raise ValueError("sync.history_limit must not be negative")

        defaults: List[Dict[str, str]] = []
        for entry in roster_cfg.get("defaults", []) or []:
            name = str(entry.get("name", "")).strip()
            if not name:
                continue
            defaults.append({"name": name, "avatar": str(entry.get("avatar", "🎮"))})

        return Settings(
            default_game=str(mission_cfg.get("default_game", "League of Legends")),
            default_duration_minutes=int(mission_cfg.get("default_duration_minutes", 10)),
            default_penalty_amount=float(mission_cfg.get("default_penalty_amount", 10)),
            tick_interval_seconds=tick_interval,
            sync_query_param=str(sync_cfg.get("query_param", "sync")),
            sync_history_limit=history_limit,
            fallback_phrases=tuple(phrases),
            default_roster=tuple(defaults),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["Settings", "SettingsLoader", "get_settings"]
