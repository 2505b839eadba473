"""Shared fixtures keeping telemetry and the roast singleton per-test."""
from __future__ import annotations

import pytest

from squad_guardian import roast_client
from squad_guardian import telemetry as telemetry_module
from squad_guardian.telemetry import TelemetryCollector


@pytest.fixture(autouse=True)
def telemetry(tmp_path, monkeypatch):
    for var in (
        "API_KEY",
        "ROAST_API_BASE",
        "ROAST_API_KEY",
        "ROAST_MODE",
        "ROAST_MODEL_NAME",
        "ROAST_TIMEOUT",
        "ROAST_CIRCUIT_BREAKER",
    ):
        monkeypatch.delenv(var, raising=False)
    collector = TelemetryCollector(tmp_path / "telemetry.db")
    monkeypatch.setattr(telemetry_module, "_telemetry", collector)
    monkeypatch.setattr(roast_client, "_roast_provider", None)
    yield collector
