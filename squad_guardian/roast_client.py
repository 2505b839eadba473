"""Roast generation through an OpenAI-compatible API with local fallback."""
from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import openai

from .telemetry import TelemetryCollector, get_telemetry

logger = logging.getLogger(__name__)


_RANDOM = random.Random()  # nosec B311 - pseudo-RNG acceptable for phrase selection

DEFAULT_FALLBACK_PHRASES: tuple[str, ...] = (
    "Late means you pay. No exceptions, no excuses.",
    "The lobby waited. The lobby remembers. The lobby sends an invoice.",
    "Somewhere a loading screen is still waiting for you.",
)


class RoastGenerationError(RuntimeError):
    """Raised when the remote service cannot produce a roast."""


class RoastNotEnabledError(RoastGenerationError):
    """Raised when no credential is configured for the remote service."""


class RoastSource(str, Enum):
    REMOTE = "remote"
    FALLBACK = "fallback"
    MOCK = "mock"


@dataclass(frozen=True)
class Roast:
    text: str
    source: RoastSource

    @property
    def degraded(self) -> bool:
        return self.source is RoastSource.FALLBACK


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class RoastConfig:
    """Configuration for the roast client."""
    api_base: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    api_key: str = ""
    model_name: str = "gemini-3-flash-preview"
    temperature: float = 0.9
    max_tokens: int = 200
    timeout: float = 15.0
    circuit_breaker: bool = True  # Stop calling the remote after the first failure
    mock_mode: bool = False

    @classmethod
    def from_env(cls) -> "RoastConfig":
        """Load configuration from environment variables."""
        return cls(
            api_base=os.getenv("ROAST_API_BASE", cls.api_base),
            api_key=os.getenv("ROAST_API_KEY") or os.getenv("API_KEY", ""),
            model_name=os.getenv("ROAST_MODEL_NAME", cls.model_name),
            temperature=float(os.getenv("ROAST_TEMPERATURE", "0.9")),
            max_tokens=int(os.getenv("ROAST_MAX_TOKENS", "200")),
            timeout=float(os.getenv("ROAST_TIMEOUT", "15")),
            circuit_breaker=_env_flag("ROAST_CIRCUIT_BREAKER", "true"),
            mock_mode=os.getenv("ROAST_MODE", "").lower() == "mock",
        )


def build_roast_prompt(member_name: str, game_name: str, penalty_amount: float) -> str:
    amount = f"{penalty_amount:g}"
    return (
        f'Player "{member_name}" showed up late for a session of "{game_name}" '
        f"and now owes the squad {amount}. Write one short, witty, savage roast "
        "about it. Keep it playful and under 40 words."
    )


class RoastProvider:
    """Remote roast generation with a fallback phrase list and a circuit breaker.

    :meth:`roast` never raises: any remote failure substitutes a fallback
    phrase. With the breaker enabled the first failure marks the provider as
    degraded and later calls skip the remote service entirely.
    """

    def __init__(
        self,
        config: Optional[RoastConfig] = None,
        phrases: Optional[Sequence[str]] = None,
        *,
        client: Any = None,
        rng: Optional[random.Random] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ):
        self.config = config or RoastConfig.from_env()
        self._phrases = tuple(p for p in (phrases or DEFAULT_FALLBACK_PHRASES) if p and p.strip())
        if not self._phrases:
            raise ValueError("At least one fallback phrase is required")
        self._rng = rng or _RANDOM
        self._telemetry = telemetry
        self._executor = ThreadPoolExecutor(max_workers=2)
        self._degraded = False
        self._degraded_reason: Optional[str] = None
        self.client = client

        if self.config.mock_mode:
            logger.info("Roast client initialised in mock mode")
        elif self.client is None and self.config.api_key:
            self.client = openai.OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.api_base,
                timeout=self.config.timeout,
                max_retries=0,
            )
            logger.info(f"Roast client initialized with base URL: {self.config.api_base}")
        elif self.client is None:
            logger.info("No roast API key configured; roasts will use fallback phrases")

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def degraded_reason(self) -> Optional[str]:
        return self._degraded_reason

    @property
    def phrases(self) -> tuple[str, ...]:
        return self._phrases

    def fallback(self) -> str:
        """Pick a local phrase; always succeeds."""
        return self._rng.choice(self._phrases)

    async def remote(self, member_name: str, game_name: str, penalty_amount: float) -> str:
        """Single-shot remote generation bounded by the configured timeout."""
        if self.config.mock_mode:
            return self._mock_generation(member_name, game_name, penalty_amount)
        if self.client is None:
            raise RoastNotEnabledError("No API key configured for roast generation")

        messages: List[Dict[str, str]] = [
            {"role": "system", "content": "You write short humorous roasts for a gaming squad."},
            {"role": "user", "content": build_roast_prompt(member_name, game_name, penalty_amount)},
        ]
        loop = asyncio.get_running_loop()
        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(
                    self._executor,
                    lambda: self.client.chat.completions.create(
                        model=self.config.model_name,
                        messages=messages,
                        temperature=self.config.temperature,
                        max_tokens=self.config.max_tokens,
                    ),
                ),
                timeout=self.config.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise RoastGenerationError(
                f"Roast request timed out after {self.config.timeout:g}s"
            ) from exc
        except Exception as exc:
            raise RoastGenerationError(str(exc) or exc.__class__.__name__) from exc
        return self._extract_text(response)

    @staticmethod
    def _extract_text(response: Any) -> str:
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, KeyError, TypeError) as exc:
            raise RoastGenerationError("Malformed roast response") from exc
        if not isinstance(content, str) or not content.strip():
            raise RoastGenerationError("Empty roast response")
        return content.strip()

    async def roast(self, member_name: str, game_name: str, penalty_amount: float) -> Roast:
        """Remote first, fallback on any failure."""
        if self._degraded:
            return Roast(self.fallback(), RoastSource.FALLBACK)

        start_time = time.perf_counter()
        try:
            text = await self.remote(member_name, game_name, penalty_amount)
        except RoastGenerationError as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.warning("Roast generation failed for %s, using fallback: %s", member_name, exc)
            self._track(False, duration_ms, str(exc))
            if self.config.circuit_breaker:
                self._open_circuit(str(exc))
            return Roast(self.fallback(), RoastSource.FALLBACK)

        duration_ms = (time.perf_counter() - start_time) * 1000
        self._track(True, duration_ms)
        source = RoastSource.MOCK if self.config.mock_mode else RoastSource.REMOTE
        return Roast(text, source)

    def reset_circuit(self) -> None:
        self._degraded = False
        self._degraded_reason = None

    def _open_circuit(self, reason: str) -> None:
        if self._degraded:
            return
        self._degraded = True
        self._degraded_reason = reason
        logger.warning("Roast service marked degraded for this session: %s", reason)
        try:
            self._get_telemetry().track_system_event(
                "roast_circuit_open", source="roast_client", reason=reason
            )
        except Exception:
            logger.debug("Telemetry tracking for roast circuit failed", exc_info=True)

    def _track(self, success: bool, duration_ms: float, error: Optional[str] = None) -> None:
        try:
            self._get_telemetry().track_roast_activity(
                "mock" if self.config.mock_mode else "remote",
                success=success,
                duration_ms=duration_ms,
                error=error,
            )
        except Exception:
            logger.debug("Telemetry tracking for roast failed", exc_info=True)

    def _get_telemetry(self) -> TelemetryCollector:
        if self._telemetry is None:
            self._telemetry = get_telemetry()
        return self._telemetry

    def _mock_generation(self, member_name: str, game_name: str, penalty_amount: float) -> str:
        """Return deterministic text in mock mode."""
        return f"[MOCK] {member_name} was late for {game_name} and owes {penalty_amount:g}."

    def close(self):
        """Clean up resources."""
        self._executor.shutdown(wait=False)
        close = getattr(self.client, "close", None)
        if callable(close):
            close()


# Singleton instance
_roast_provider: Optional[RoastProvider] = None


def get_roast_provider(phrases: Optional[Sequence[str]] = None) -> RoastProvider:
    """Get or create the process-wide provider so the breaker spans the session."""
    global _roast_provider
    if _roast_provider is None:
        _roast_provider = RoastProvider(phrases=phrases)
    return _roast_provider


__all__ = [
    "DEFAULT_FALLBACK_PHRASES",
    "Roast",
    "RoastConfig",
    "RoastGenerationError",
    "RoastNotEnabledError",
    "RoastProvider",
    "RoastSource",
    "build_roast_prompt",
    "get_roast_provider",
]
