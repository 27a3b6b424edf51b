"""Dataclasses for orchestrated debates. Only calculate_bounce_metrics carries logic."""

from dataclasses import dataclass, field
from typing import Any, Literal

BounceMode = Literal["sequential", "parallel"]
ResponseStance = Literal[
    "strongly_agree",
    "agree",
    "neutral",
    "disagree",
    "strongly_disagree",
    "refine",       # agrees, wants to improve
    "synthesize",   # merging views
]

RESPONSE_STANCES: tuple[str, ...] = (
    "strongly_agree",
    "agree",
    "neutral",
    "disagree",
    "strongly_disagree",
    "refine",
    "synthesize",
)

# Orchestrator statuses
IDLE = "idle"
CONFIGURING = "configuring"
RUNNING = "running"
PAUSED = "paused"
WAITING_USER = "waiting_user"
CONSENSUS = "consensus"
MAX_ROUNDS = "max_rounds"
JUDGING = "judging"
COMPLETE = "complete"
ERROR = "error"


@dataclass
class ModelResponse:
    provider: str          # "gemini", "openai", "claude", "grok"
    model: str             # actual model string used
    content: str
    latency_sec: float
    token_count: int | None


@dataclass
class ParticipantConfig:
    session_id: str
    model_id: str
    title: str
    system_prompt: str | None = None


@dataclass
class BounceConfig:
    participants: list[ParticipantConfig] = field(default_factory=list)
    mode: BounceMode = "sequential"
    max_rounds: int = 3
    consensus_threshold: float = 0.7
    consensus_mode: str = "weighted"
    minimum_stable_rounds: int = 2
    resolution_quorum: float = 0.75
    pause_between_responses_sec: float = 0.5
    allow_user_interjection: bool = True
    judge_model_id: str = "claude"
    auto_stop_on_consensus: bool = True
    enable_pruning: bool = False
    pruning_threshold: float = 0.85
    max_context_tokens: int = 8000
    max_response_retries: int = 1
    retry_backoff_sec: float = 0.8


@dataclass
class BounceResponse:
    participant_session_id: str
    model_id: str
    model_title: str
    stance: str
    content: str
    key_points: list[str] = field(default_factory=list)
    agreements: list[str] = field(default_factory=list)
    disagreements: list[str] = field(default_factory=list)
    confidence: float = 0.6
    duration_sec: float = 0.0
    timestamp: float = 0.0


@dataclass
class ProposalConvergence:
    leading_proposal: str = ""
    support_ratio: float = 0.0
    supporters: list[str] = field(default_factory=list)
    dissenters: list[str] = field(default_factory=list)


@dataclass
class ConsensusAnalysis:
    score: float
    vote_score: float
    consensus_outcome: str          # "reached", "not-reached", "deadlock"
    level: str                      # "none", "low", "partial", "strong", "unanimous"
    agreed_points: list[str] = field(default_factory=list)
    disputed_points: list[str] = field(default_factory=list)
    unclear_points: list[str] = field(default_factory=list)
    stance_breakdown: dict[str, str] = field(default_factory=dict)
    trend: str = "stable"           # "improving", "stable", "degrading"
    recommendation: str = "continue"
    stable_rounds: int = 0
    proposal_convergence: ProposalConvergence = field(default_factory=ProposalConvergence)


@dataclass
class BounceRound:
    round_number: int
    responses: list[BounceResponse]
    consensus_at_end: ConsensusAnalysis
    timestamp: float


@dataclass
class PrunedParticipant:
    session_id: str
    model_title: str
    pruned_at_round: int


@dataclass
class BounceState:
    status: str = IDLE
    config: BounceConfig = field(default_factory=BounceConfig)
    original_topic: str = ""
    source_session_id: str = ""
    current_round: int = 0
    current_participant_index: int = 0
    rounds: list[BounceRound] = field(default_factory=list)
    consensus: ConsensusAnalysis | None = None
    final_answer: str | None = None
    pruned_participants: list[PrunedParticipant] = field(default_factory=list)
    error: str | None = None
    started_at: float | None = None
    completed_at: float | None = None


@dataclass
class BounceEvent:
    """One orchestrator notification. payload keys depend on type."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class BounceAction:
    """Input to BounceOrchestrator.dispatch(). Only the fields type needs are read."""

    type: str
    topic: str = ""
    participants: list[ParticipantConfig] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    participant: ParticipantConfig | None = None
    session_id: str = ""


@dataclass
class SharedKnowledgeEntry:
    id: str
    debate_topic: str
    finding: str
    confidence: float
    participants: list[str]
    captured_at: float
    source_debate_id: str


@dataclass
class DebateFindings:
    agreements: list[SharedKnowledgeEntry]
    disputes: list[str]
    consensus_score: float
    topic: str
    debate_id: str


@dataclass
class BounceMetrics:
    total_rounds: int
    total_responses: int
    total_duration_sec: float
    average_response_time_sec: float
    consensus_trend: list[float]
    participant_contributions: dict[str, int]
    stance_distribution: dict[str, int]
    final_consensus_score: float
    was_consensus_reached: bool
    was_judge_used: bool


def calculate_bounce_metrics(state: BounceState) -> BounceMetrics:
    responses = [r for rnd in state.rounds for r in rnd.responses]
    total_duration = (
        state.completed_at - state.started_at
        if state.completed_at and state.started_at
        else 0.0
    )

    stance_distribution = {stance: 0 for stance in RESPONSE_STANCES}
    contributions: dict[str, int] = {}
    for r in responses:
        stance_distribution[r.stance] = stance_distribution.get(r.stance, 0) + 1
        contributions[r.participant_session_id] = contributions.get(r.participant_session_id, 0) + 1

    return BounceMetrics(
        total_rounds=len(state.rounds),
        total_responses=len(responses),
        total_duration_sec=total_duration,
        average_response_time_sec=(
            sum(r.duration_sec for r in responses) / len(responses) if responses else 0.0
        ),
        consensus_trend=[rnd.consensus_at_end.score for rnd in state.rounds],
        participant_contributions=contributions,
        stance_distribution=stance_distribution,
        final_consensus_score=state.consensus.score if state.consensus else 0.0,
        was_consensus_reached=state.status in (CONSENSUS, COMPLETE),
        was_judge_used=state.status == JUDGING or state.final_answer is not None,
    )
