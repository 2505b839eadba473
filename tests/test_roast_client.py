"""Tests for roast generation, fallback and the circuit breaker."""
from __future__ import annotations

import os
import random
import time
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from squad_guardian.roast_client import (
    Roast,
    RoastConfig,
    RoastGenerationError,
    RoastNotEnabledError,
    RoastProvider,
    RoastSource,
    build_roast_prompt,
    get_roast_provider,
)


PHRASES = ("Pay up.", "Late again.", "The lobby remembers.")


def _response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeChatClient:
    """Mimics ``client.chat.completions.create`` of the openai SDK."""

    def __init__(self, *, content="You missed the drop, and the bill.", error=None, delay=0.0, fail_for=None):
        self.calls = []
        self._content = content
        self._error = error
        self._delay = delay
        self._fail_for = fail_for
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self._delay:
            time.sleep(self._delay)
        prompt = kwargs["messages"][-1]["content"]
        if self._error is not None and (self._fail_for is None or f'"{self._fail_for}"' in prompt):
            raise self._error
        if callable(self._content):
            return self._content(kwargs)
        return _response(self._content)


def _provider(client=None, **config) -> RoastProvider:
    config.setdefault("api_key", "test-key" if client is not None else "")
    return RoastProvider(RoastConfig(**config), phrases=PHRASES, client=client, rng=random.Random(7))


def test_roast_config_from_env():
    with patch.dict(os.environ, {
        "ROAST_API_BASE": "http://test:8080/v1",
        "ROAST_API_KEY": "test-key",
        "ROAST_MODEL_NAME": "test-model",
        "ROAST_TIMEOUT": "2.5",
        "ROAST_CIRCUIT_BREAKER": "false",
        "ROAST_MODE": "mock",
    }):
        config = RoastConfig.from_env()
    assert config.api_base == "http://test:8080/v1"
    assert config.api_key == "test-key"
    assert config.model_name == "test-model"
    assert config.timeout == 2.5
    assert config.circuit_breaker is False
    assert config.mock_mode is True


def test_roast_config_falls_back_to_generic_api_key():
    with patch.dict(os.environ, {"API_KEY": "shared-key"}):
        assert RoastConfig.from_env().api_key == "shared-key"


def test_roast_config_defaults():
    config = RoastConfig()
    assert config.api_key == ""
    assert config.circuit_breaker is True
    assert config.mock_mode is False
    assert config.timeout > 0


def test_prompt_mentions_member_game_and_amount():
    prompt = build_roast_prompt("Ada", "Apex Legends", 10)
    assert '"Ada"' in prompt
    assert '"Apex Legends"' in prompt
    assert "10" in prompt


def test_fallback_draws_from_phrase_list():
    provider = _provider()
    picks = {provider.fallback() for _ in range(50)}
    assert picks <= set(PHRASES)
    assert len(picks) > 1


def test_empty_phrase_list_is_rejected():
    with pytest.raises(ValueError):
        RoastProvider(RoastConfig(), phrases=["", "  "])


@pytest.mark.asyncio
async def test_remote_success_passes_single_shot_request():
    client = FakeChatClient()
    provider = _provider(client, model_name="roaster")

    roast = await provider.roast("Ada", "Apex", 10)

    assert roast == Roast("You missed the drop, and the bill.", RoastSource.REMOTE)
    assert not roast.degraded
    assert len(client.calls) == 1
    assert client.calls[0]["model"] == "roaster"
    assert not provider.degraded


@pytest.mark.asyncio
async def test_remote_without_credential_is_not_enabled():
    provider = _provider()
    with pytest.raises(RoastNotEnabledError):
        await provider.remote("Ada", "Apex", 10)

    roast = await provider.roast("Ada", "Apex", 10)
    assert roast.source is RoastSource.FALLBACK
    assert roast.text in PHRASES


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [None, "   ", lambda _kwargs: SimpleNamespace(choices=[])])
async def test_malformed_responses_raise(content):
    provider = _provider(FakeChatClient(content=content))
    with pytest.raises(RoastGenerationError):
        await provider.remote("Ada", "Apex", 10)


@pytest.mark.asyncio
async def test_failure_trips_circuit_breaker(caplog, telemetry):
    client = FakeChatClient(error=ConnectionError("network down"))
    provider = _provider(client)

    first = await provider.roast("Ada", "Apex", 10)
    second = await provider.roast("Bob", "Apex", 10)

    assert first.source is RoastSource.FALLBACK
    assert second.source is RoastSource.FALLBACK
    assert first.text in PHRASES and second.text in PHRASES
    assert len(client.calls) == 1
    assert provider.degraded
    assert "network down" in provider.degraded_reason
    assert "using fallback" in caplog.text

    events = telemetry.get_system_events()
    assert events[0]["event"] == "roast_circuit_open"

    provider.reset_circuit()
    await provider.roast("Cat", "Apex", 10)
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_breaker_can_be_disabled():
    client = FakeChatClient(error=RuntimeError("boom"), fail_for="Ada")
    provider = _provider(client, circuit_breaker=False)

    first = await provider.roast("Ada", "Apex", 10)
    second = await provider.roast("Bob", "Apex", 10)

    assert first.source is RoastSource.FALLBACK
    assert second.source is RoastSource.REMOTE
    assert not provider.degraded


@pytest.mark.asyncio
async def test_slow_remote_is_bounded_by_timeout():
    client = FakeChatClient(delay=0.5)
    provider = _provider(client, timeout=0.05)

    started = time.perf_counter()
    roast = await provider.roast("Ada", "Apex", 10)

    assert time.perf_counter() - started < 0.4
    assert roast.source is RoastSource.FALLBACK
    assert "timed out" in provider.degraded_reason
    provider.close()


@pytest.mark.asyncio
async def test_mock_mode_is_deterministic(telemetry):
    provider = RoastProvider(RoastConfig(mock_mode=True), phrases=PHRASES)

    roast = await provider.roast("Ada", "Apex", 12.5)

    assert roast.source is RoastSource.MOCK
    assert roast.text == "[MOCK] Ada was late for Apex and owes 12.5."
    summary = telemetry.get_roast_activity_summary()
    assert summary["mock"]["successes"] == 1


def test_singleton_provider():
    first = get_roast_provider(PHRASES)
    second = get_roast_provider()
    assert first is second
    assert first.phrases == PHRASES
