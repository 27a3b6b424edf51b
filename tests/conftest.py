"""Shared pytest fixtures and test doubles."""

import asyncio
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from bounce.agents.base import AgentAdapter, AgentCapabilities, AgentConfig, AgentProcess
from bounce.models import (
    COMPLETE,
    BounceConfig,
    BounceResponse,
    BounceRound,
    BounceState,
    ConsensusAnalysis,
    ModelResponse,
    ParticipantConfig,
)
from bounce.protocol.types import EntryFields, EntryMetadata, ProtocolEntry, ProtocolRules
from bounce.providers.base import AIProvider
from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, PromptsConfig, load_config

SESSION_ID = "550e8400-e29b-41d4-a716-446655440000"

SAMPLE_SESSION = f"""<!-- bounce-protocol: 0.1 -->
<!-- created: 2025-01-15T10:00:00.000Z -->
<!-- session-id: {SESSION_ID} -->

# Bounce Session: Auth redesign

## Protocol Rules

```yaml
agents:
  - claude
  - codex
turn-order: round-robin
max-turns-per-round: 1
turn-timeout: 300
consensus-threshold: 0.66
consensus-mode: majority
escalation: human
max-rounds: 10
output-format: structured
```

## Context

Should the session service move to signed JWTs?

## Dialogue

<!-- entry: e-1 -->
<!-- turn: 1 round: 1 -->
2025-01-15T10:01:00.000Z [author: claude] [status: yield]
stance: approve
confidence: 0.8
summary: Move to JWTs
action_requested: review
evidence: load tests

JWTs remove the session lookup from every request.

<!-- yield -->

<!-- entry: e-2 -->
<!-- turn: 2 round: 1 -->
2025-01-15T10:02:00.000Z [author: codex] [status: yield]
stance: approve
confidence: 0.7
summary: Agree, with short expiry
action_requested: none
evidence: revocation notes

Agreed, as long as tokens expire within 15 minutes.

<!-- yield -->
"""


@pytest.fixture
def sample_session_text() -> str:
    return SAMPLE_SESSION


@pytest.fixture
def session_file(tmp_path: Path) -> Path:
    path = tmp_path / "session.md"
    path.write_text(SAMPLE_SESSION, encoding="utf-8")
    return path


@pytest.fixture
def sample_rules() -> ProtocolRules:
    return ProtocolRules(
        agents=["claude", "codex"],
        turn_order="round-robin",
        max_turns_per_round=1,
        turn_timeout=300,
        consensus_threshold=0.66,
        consensus_mode="majority",
        escalation="human",
        max_rounds=10,
        output_format="structured",
    )


def make_entry(
    author: str,
    round_number: int = 1,
    turn: int = 1,
    stance: str | None = "approve",
    confidence: float | None = 0.8,
    entry_id: str | None = None,
) -> ProtocolEntry:
    return ProtocolEntry(
        metadata=EntryMetadata(entry_id=entry_id or f"{author}-{round_number}-{turn}", turn=turn, round=round_number),
        timestamp="2025-01-15T10:00:00.000Z",
        author=author,
        status="yield",
        fields=EntryFields(stance=stance, confidence=confidence),
    )


def make_response(
    session_id: str,
    content: str,
    stance: str = "neutral",
    confidence: float = 0.6,
    key_points: list[str] | None = None,
) -> BounceResponse:
    return BounceResponse(
        participant_session_id=session_id,
        model_id=session_id,
        model_title=session_id.title(),
        stance=stance,
        content=content,
        key_points=key_points or [],
        confidence=confidence,
        duration_sec=0.5,
        timestamp=1_736_935_200.0,
    )


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="test",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def prompts() -> PromptsConfig:
    """Prompt templates exactly as shipped in config/settings.yaml."""
    return load_config().prompts


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        max_rounds=2,
        output_dir=tmp_path / "output",
        sessions_dir=tmp_path / "sessions",
        default_panel=["claude", "openai"],
    )


@pytest.fixture
def sample_app_config(sample_defaults_config: DefaultsConfig, prompts: PromptsConfig) -> AppConfig:
    model_cfg = ModelConfig(
        name="claude",
        sdk="anthropic",
        model="claude-sonnet-4-20250514",
        api_key_env="ANTHROPIC_API_KEY",
        timeout_sec=60,
        max_tokens=4096,
    )
    return AppConfig(
        defaults=sample_defaults_config,
        models={"claude": model_cfg},
        prompts=prompts,
        available_providers={"claude"},
    )


def participants(*names: str) -> list[ParticipantConfig]:
    return [ParticipantConfig(session_id=n, model_id=n, title=n.title()) for n in names]


# ----------------------------------------------------------------------
# Providers and transports
# ----------------------------------------------------------------------


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(self, provider_name: str = "mock", response_content: str = "Mock response") -> None:
        self._name = provider_name
        self._response_content = response_content
        # Instance-level AsyncMock shadows the class method so tests can assert on calls.
        self.generate = AsyncMock(  # type: ignore[assignment]
            return_value=ModelResponse(
                provider=provider_name,
                model="mock-model",
                content=response_content,
                latency_sec=0.1,
                token_count=10,
            )
        )

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def generate(self, system_prompt: str, prompt: str) -> ModelResponse:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return ModelResponse(
            provider=self._name,
            model="mock-model",
            content=self._response_content,
            latency_sec=0.1,
            token_count=10,
        )


Reply = str | Exception | Callable[[str, str], str]


class ScriptedTransport:
    """send_message double. Each model id answers from its own queue; the last reply repeats.

    A queued Exception is raised instead of answered. A queued callable
    receives (system_prompt, user_message) and returns the answer.
    """

    def __init__(self, script: dict[str, list[Reply]], delay_sec: float = 0.0) -> None:
        self.script = {k: list(v) for k, v in script.items()}
        self.delay_sec = delay_sec
        self.calls: list[tuple[str, str, str]] = []

    async def __call__(
        self,
        model_id: str,
        system_prompt: str,
        user_message: str,
        abort: asyncio.Event | None = None,
    ) -> str:
        self.calls.append((model_id, system_prompt, user_message))
        if self.delay_sec:
            await asyncio.sleep(self.delay_sec)
        queue = self.script[model_id]
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(system_prompt, user_message)
        return reply

    def calls_for(self, model_id: str) -> list[tuple[str, str, str]]:
        return [c for c in self.calls if c[0] == model_id]


# ----------------------------------------------------------------------
# Agent adapters
# ----------------------------------------------------------------------


class MockAdapter(AgentAdapter):
    """In-memory adapter. Tests flip `alive` and push output through `emit_output`."""

    def __init__(self, name: str = "mock", fail_spawns: int = 0) -> None:
        self.name = name
        self.capabilities = AgentCapabilities(supports_streaming=True)
        self.fail_spawns = fail_spawns   # number of upcoming spawn() calls that raise
        self.spawn_count = 0
        self.killed: list[str] = []
        self.prompts: list[tuple[str, str]] = []
        self.alive: dict[str, bool] = {}
        self.available = True
        self._listeners: dict[str, list[Callable[[str], None]]] = {}

    async def is_available(self) -> bool:
        return self.available

    async def spawn(self, config: AgentConfig) -> AgentProcess:
        self.spawn_count += 1
        if self.fail_spawns > 0:
            self.fail_spawns -= 1
            raise RuntimeError(f"{self.name} failed to start")
        process = AgentProcess(id=f"{self.name}-{self.spawn_count}", adapter_name=self.name, pid=1000 + self.spawn_count)
        self.alive[process.id] = True
        return process

    async def send_prompt(self, process: AgentProcess, prompt: str) -> None:
        self.prompts.append((process.id, prompt))

    def on_output(self, process: AgentProcess, callback: Callable[[str], None]) -> Callable[[], None]:
        listeners = self._listeners.setdefault(process.id, [])
        listeners.append(callback)
        return lambda: listeners.remove(callback) if callback in listeners else None

    def emit_output(self, process_id: str, data: str) -> None:
        for callback in list(self._listeners.get(process_id, [])):
            callback(data)

    def is_alive(self, process: AgentProcess) -> bool:
        return self.alive.get(process.id, False)

    async def kill(self, process: AgentProcess) -> None:
        self.killed.append(process.id)
        self.alive[process.id] = False
        process.running = False

    def crash(self, process_id: str) -> None:
        self.alive[process_id] = False


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def mock_adapter() -> MockAdapter:
    return MockAdapter()


@pytest.fixture
def finished_state() -> BounceState:
    """A two-round debate that ended with a judge synthesis."""
    analysis = ConsensusAnalysis(
        score=0.82, vote_score=0.8, consensus_outcome="reached", level="strong",
        agreed_points=["use redis for sessions"],
    )
    round_one = [
        make_response("claude", "Use Redis.\nIt cuts reads.", stance="agree", confidence=0.8, key_points=["Use Redis"]),
        make_response("openai", "Keep Postgres.", stance="disagree", confidence=0.7),
    ]
    round_two = [
        make_response("claude", "Redis with a short TTL.", stance="strongly_agree", confidence=0.9),
        make_response("openai", "Fine, Redis with a TTL.", stance="refine", confidence=0.75),
    ]
    return BounceState(
        status=COMPLETE,
        config=BounceConfig(participants=participants("claude", "openai"), judge_model_id="claude"),
        original_topic="Should sessions move to Redis?\nWe run Postgres today.",
        current_round=2,
        rounds=[
            BounceRound(1, round_one, replace(analysis, score=0.4, level="low"), 1_736_935_200.0),
            BounceRound(2, round_two, analysis, 1_736_935_260.0),
        ],
        consensus=analysis,
        final_answer="## Verdict\nMove sessions to Redis with a 15 minute TTL.",
        started_at=1_736_935_100.0,
        completed_at=1_736_935_300.0,
    )
