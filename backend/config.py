"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide typed, immutable config objects
- Validate delivery tuning once, at construction

Non-responsibilities:
- No relay logic
- No protocol constants (see constants.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from constants import (
    CONVERSATION_IDLE_TIMEOUT_S,
    CONVERSATION_SWEEP_INTERVAL_S,
    FORCE_COMPLETION_CEILING_MS,
    IDLE_TIMEOUT_MS,
    IMMEDIATE_FIRST_UNIT,
    INTER_LANE_DELAY_MS,
    INTER_UNIT_DELAY_MS,
    INTERRUPT_CLEAR_DELAY_MS,
    LANE_COUNT,
    LATENCY_BUDGET_MS,
    MAX_UNIT_DURATION_S,
    MEDIUM_UNIT_DURATION_S,
    MIN_UNIT_DURATION_S,
    SEQUENTIAL_DELAY_MS,
    TARGET_UNIT_DURATION_S,
)


class ConfigError(ValueError):
    """Raised when a configuration value is out of range or inconsistent."""


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


# =============================================================================
# Delivery tuning
# =============================================================================

@dataclass(frozen=True)
class DeliveryConfig:
    """
    Tuning for accumulation, unit sizing, lane pacing and interruption.

    Constructed once per process and shared by the accumulator, scheduler,
    lanes and interruption controller. Invalid combinations raise
    ConfigError at construction time.
    """

    # ------------------------------------------------------------------
    # Unit sizing
    # ------------------------------------------------------------------

    target_unit_duration_s: float = TARGET_UNIT_DURATION_S
    min_unit_duration_s: float = MIN_UNIT_DURATION_S
    max_unit_duration_s: float = MAX_UNIT_DURATION_S
    medium_unit_duration_s: float = MEDIUM_UNIT_DURATION_S
    latency_budget_ms: int = LATENCY_BUDGET_MS

    # ------------------------------------------------------------------
    # Lanes
    # ------------------------------------------------------------------

    lane_count: int = LANE_COUNT
    inter_unit_delay_ms: int = INTER_UNIT_DELAY_MS
    inter_lane_delay_ms: int = INTER_LANE_DELAY_MS
    sequential_delay_ms: int = SEQUENTIAL_DELAY_MS
    immediate_first_unit: bool = IMMEDIATE_FIRST_UNIT

    # ------------------------------------------------------------------
    # Accumulation / interruption timers
    # ------------------------------------------------------------------

    idle_timeout_ms: int = IDLE_TIMEOUT_MS
    force_completion_ceiling_ms: int = FORCE_COMPLETION_CEILING_MS
    interrupt_clear_delay_ms: int = INTERRUPT_CLEAR_DELAY_MS

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """
        Check ranges and cross-field consistency.

        Raises:
            ConfigError listing every violated rule.
        """
        errors: list[str] = []

        if self.min_unit_duration_s <= 0:
            errors.append("min_unit_duration_s must be > 0")
        if self.max_unit_duration_s < self.min_unit_duration_s:
            errors.append("max_unit_duration_s must be >= min_unit_duration_s")
        if not (
            self.min_unit_duration_s
            <= self.target_unit_duration_s
            <= self.max_unit_duration_s
        ):
            errors.append("target_unit_duration_s must lie within [min, max]")
        if self.medium_unit_duration_s <= 0:
            errors.append("medium_unit_duration_s must be > 0")
        if self.latency_budget_ms <= 0:
            errors.append("latency_budget_ms must be > 0")
        if self.lane_count < 1:
            errors.append("lane_count must be >= 1")
        for name in (
            "inter_unit_delay_ms",
            "inter_lane_delay_ms",
            "sequential_delay_ms",
            "interrupt_clear_delay_ms",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be >= 0")
        if self.idle_timeout_ms <= 0:
            errors.append("idle_timeout_ms must be > 0")
        if self.force_completion_ceiling_ms < self.idle_timeout_ms:
            errors.append("force_completion_ceiling_ms must be >= idle_timeout_ms")

        if errors:
            raise ConfigError("; ".join(errors))

    def snapshot(self) -> dict[str, float | int | bool]:
        """Plain dict view for status endpoints and logs."""
        return {
            "target_unit_duration_s": self.target_unit_duration_s,
            "min_unit_duration_s": self.min_unit_duration_s,
            "max_unit_duration_s": self.max_unit_duration_s,
            "medium_unit_duration_s": self.medium_unit_duration_s,
            "latency_budget_ms": self.latency_budget_ms,
            "lane_count": self.lane_count,
            "inter_unit_delay_ms": self.inter_unit_delay_ms,
            "inter_lane_delay_ms": self.inter_lane_delay_ms,
            "sequential_delay_ms": self.sequential_delay_ms,
            "immediate_first_unit": self.immediate_first_unit,
            "idle_timeout_ms": self.idle_timeout_ms,
            "force_completion_ceiling_ms": self.force_completion_ceiling_ms,
            "interrupt_clear_delay_ms": self.interrupt_clear_delay_ms,
        }

    @staticmethod
    def load_from_env() -> DeliveryConfig:
        """
        Load delivery tuning from DELIVERY_* environment variables.

        Raises:
            ConfigError if a value cannot be parsed or fails validation.
        """
        return DeliveryConfig(
            target_unit_duration_s=_env_float(
                "DELIVERY_TARGET_UNIT_DURATION_S", TARGET_UNIT_DURATION_S
            ),
            min_unit_duration_s=_env_float(
                "DELIVERY_MIN_UNIT_DURATION_S", MIN_UNIT_DURATION_S
            ),
            max_unit_duration_s=_env_float(
                "DELIVERY_MAX_UNIT_DURATION_S", MAX_UNIT_DURATION_S
            ),
            medium_unit_duration_s=_env_float(
                "DELIVERY_MEDIUM_UNIT_DURATION_S", MEDIUM_UNIT_DURATION_S
            ),
            latency_budget_ms=_env_int("DELIVERY_LATENCY_BUDGET_MS", LATENCY_BUDGET_MS),
            lane_count=_env_int("DELIVERY_LANE_COUNT", LANE_COUNT),
            inter_unit_delay_ms=_env_int(
                "DELIVERY_INTER_UNIT_DELAY_MS", INTER_UNIT_DELAY_MS
            ),
            inter_lane_delay_ms=_env_int(
                "DELIVERY_INTER_LANE_DELAY_MS", INTER_LANE_DELAY_MS
            ),
            sequential_delay_ms=_env_int(
                "DELIVERY_SEQUENTIAL_DELAY_MS", SEQUENTIAL_DELAY_MS
            ),
            immediate_first_unit=_env_bool(
                "DELIVERY_IMMEDIATE_FIRST_UNIT", IMMEDIATE_FIRST_UNIT
            ),
            idle_timeout_ms=_env_int("DELIVERY_IDLE_TIMEOUT_MS", IDLE_TIMEOUT_MS),
            force_completion_ceiling_ms=_env_int(
                "DELIVERY_FORCE_COMPLETION_CEILING_MS", FORCE_COMPLETION_CEILING_MS
            ),
            interrupt_clear_delay_ms=_env_int(
                "DELIVERY_INTERRUPT_CLEAR_DELAY_MS", INTERRUPT_CLEAR_DELAY_MS
            ),
        )


# =============================================================================
# Application
# =============================================================================

@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the app factory, relay runtime and upstream engine.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str = "dev"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: tuple[str, ...] = ("*",)

    # ------------------------------------------------------------------
    # Upstream realtime engine
    # ------------------------------------------------------------------

    upstream_provider: str = "openai"
    openai_api_key: str | None = None
    realtime_model: str = "gpt-4o-realtime-preview"
    realtime_voice: str = "alloy"
    realtime_instructions: str = (
        "You are a friendly voice assistant. Keep answers short and conversational."
    )
    realtime_server_vad: bool = True

    # ------------------------------------------------------------------
    # Conversation lifecycle
    # ------------------------------------------------------------------

    conversation_idle_timeout_s: float = CONVERSATION_IDLE_TIMEOUT_S
    conversation_sweep_interval_s: float = CONVERSATION_SWEEP_INTERVAL_S

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ConfigError if a numeric variable is malformed or delivery
            tuning is inconsistent.
        """
        origins = os.environ.get("CORS_ORIGINS", "*")
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8000),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),

            upstream_provider=os.environ.get("UPSTREAM_PROVIDER", "openai"),
            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            realtime_model=os.environ.get("REALTIME_MODEL", "gpt-4o-realtime-preview"),
            realtime_voice=os.environ.get("REALTIME_VOICE", "alloy"),
            realtime_instructions=os.environ.get(
                "REALTIME_INSTRUCTIONS",
                "You are a friendly voice assistant. "
                "Keep answers short and conversational.",
            ),
            realtime_server_vad=_env_bool("REALTIME_SERVER_VAD", True),

            conversation_idle_timeout_s=_env_float(
                "CONVERSATION_IDLE_TIMEOUT_S", CONVERSATION_IDLE_TIMEOUT_S
            ),
            conversation_sweep_interval_s=_env_float(
                "CONVERSATION_SWEEP_INTERVAL_S", CONVERSATION_SWEEP_INTERVAL_S
            ),

            delivery=DeliveryConfig.load_from_env(),
        )
