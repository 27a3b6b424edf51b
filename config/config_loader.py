"""Load settings.yaml into typed dataclasses. Checks provider API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class PromptsConfig:
    participant_system: str
    judge_system: str
    initial: str
    history: str
    judge_synthesis: str
    interjection: str
    personas: dict[str, str] = field(default_factory=dict)


@dataclass
class DefaultsConfig:
    mode: str = "sequential"
    max_rounds: int = 3
    consensus_threshold: float = 0.7
    consensus_mode: str = "weighted"
    minimum_stable_rounds: int = 2
    resolution_quorum: float = 0.75
    pause_between_responses_sec: float = 0.5
    allow_user_interjection: bool = True
    judge: str = "claude"
    auto_stop_on_consensus: bool = True
    enable_pruning: bool = False
    pruning_threshold: float = 0.85
    max_context_tokens: int = 8000
    max_response_retries: int = 1
    retry_backoff_sec: float = 0.8
    output_dir: Path = Path("output")
    sessions_dir: Path = Path("sessions")
    default_panel: list[str] = field(default_factory=list)


@dataclass
class AgentsConfig:
    max_concurrent: int = 5
    health_check_interval_sec: float = 10.0
    circuit_breaker_max_failures: int = 3
    circuit_breaker_cooldown_sec: float = 30.0
    restart_backoff_base_sec: float = 1.0
    max_restart_attempts: int = 5
    shutdown_grace_sec: float = 5.0


@dataclass
class LockConfig:
    retries: int = 3
    retry_delay_sec: float = 0.2
    stale_timeout_sec: float = 10.0
    lock_timeout_sec: float = 5.0


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    available_providers: set[str] = field(default_factory=set)


def _load_defaults(raw: dict) -> DefaultsConfig:
    base = DefaultsConfig()
    return DefaultsConfig(
        mode=str(raw.get("mode", base.mode)),
        max_rounds=int(raw.get("max_rounds", base.max_rounds)),
        consensus_threshold=float(raw.get("consensus_threshold", base.consensus_threshold)),
        consensus_mode=str(raw.get("consensus_mode", base.consensus_mode)),
        minimum_stable_rounds=int(raw.get("minimum_stable_rounds", base.minimum_stable_rounds)),
        resolution_quorum=float(raw.get("resolution_quorum", base.resolution_quorum)),
        pause_between_responses_sec=float(
            raw.get("pause_between_responses_sec", base.pause_between_responses_sec)
        ),
        allow_user_interjection=bool(raw.get("allow_user_interjection", base.allow_user_interjection)),
        judge=str(raw.get("judge", base.judge)),
        auto_stop_on_consensus=bool(raw.get("auto_stop_on_consensus", base.auto_stop_on_consensus)),
        enable_pruning=bool(raw.get("enable_pruning", base.enable_pruning)),
        pruning_threshold=float(raw.get("pruning_threshold", base.pruning_threshold)),
        max_context_tokens=int(raw.get("max_context_tokens", base.max_context_tokens)),
        max_response_retries=int(raw.get("max_response_retries", base.max_response_retries)),
        retry_backoff_sec=float(raw.get("retry_backoff_sec", base.retry_backoff_sec)),
        output_dir=Path(raw.get("output_dir", base.output_dir)),
        sessions_dir=Path(raw.get("sessions_dir", base.sessions_dir)),
        default_panel=list(raw.get("default_panel", [])),
    )


def _load_agents(raw: dict) -> AgentsConfig:
    base = AgentsConfig()
    return AgentsConfig(
        max_concurrent=int(raw.get("max_concurrent", base.max_concurrent)),
        health_check_interval_sec=float(raw.get("health_check_interval_sec", base.health_check_interval_sec)),
        circuit_breaker_max_failures=int(
            raw.get("circuit_breaker_max_failures", base.circuit_breaker_max_failures)
        ),
        circuit_breaker_cooldown_sec=float(
            raw.get("circuit_breaker_cooldown_sec", base.circuit_breaker_cooldown_sec)
        ),
        restart_backoff_base_sec=float(raw.get("restart_backoff_base_sec", base.restart_backoff_base_sec)),
        max_restart_attempts=int(raw.get("max_restart_attempts", base.max_restart_attempts)),
        shutdown_grace_sec=float(raw.get("shutdown_grace_sec", base.shutdown_grace_sec)),
    )


def _load_lock(raw: dict) -> LockConfig:
    base = LockConfig()
    return LockConfig(
        retries=int(raw.get("retries", base.retries)),
        retry_delay_sec=float(raw.get("retry_delay_sec", base.retry_delay_sec)),
        stale_timeout_sec=float(raw.get("stale_timeout_sec", base.stale_timeout_sec)),
        lock_timeout_sec=float(raw.get("lock_timeout_sec", base.lock_timeout_sec)),
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if the settings file is missing and KeyError if
    the models or prompts section is incomplete. The defaults, agents and
    lock sections are optional.

    Missing API keys are logged, not raised; callers check available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    defaults = _load_defaults(raw.get("defaults") or {})
    agents = _load_agents(raw.get("agents") or {})
    lock = _load_lock(raw.get("lock") or {})

    prompts_raw = raw["prompts"]
    personas_raw = raw.get("personas") or {}
    prompts = PromptsConfig(
        participant_system=prompts_raw["participant_system"],
        judge_system=prompts_raw["judge_system"],
        initial=prompts_raw["initial"],
        history=prompts_raw["history"],
        judge_synthesis=prompts_raw["judge_synthesis"],
        interjection=prompts_raw["interjection"],
        personas={k: str(v) for k, v in personas_raw.items()},
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        prompts=prompts,
        agents=agents,
        lock=lock,
        available_providers=available_providers,
    )
