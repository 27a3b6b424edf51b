"""Value types for Bounce Protocol v0.1 session files."""

from dataclasses import dataclass, field
from typing import Literal

PROTOCOL_VERSION = "0.1"

TurnOrder = Literal["round-robin", "free-form", "supervised"]
ConsensusMode = Literal["majority", "weighted", "unanimous"]
EscalationPolicy = Literal["human", "default-action", "timeout-skip"]
OutputFormat = Literal["structured", "free-text"]
Stance = Literal["approve", "reject", "neutral", "defer"]
EntryStatus = Literal["open", "in_progress", "closed", "yield"]
Severity = Literal["error", "warning"]
ConsensusOutcome = Literal["reached", "not-reached", "deadlock"]

VALID_TURN_ORDERS = frozenset({"round-robin", "free-form", "supervised"})
VALID_CONSENSUS_MODES = frozenset({"majority", "weighted", "unanimous"})
VALID_ESCALATIONS = frozenset({"human", "default-action", "timeout-skip"})
VALID_OUTPUT_FORMATS = frozenset({"structured", "free-text"})
VALID_STANCES = frozenset({"approve", "reject", "neutral", "defer"})
VALID_STATUSES = frozenset({"open", "in_progress", "closed", "yield"})

# Attribute name -> key used inside the rules block, in canonical order.
RULE_KEYS: dict[str, str] = {
    "agents": "agents",
    "turn_order": "turn-order",
    "max_turns_per_round": "max-turns-per-round",
    "turn_timeout": "turn-timeout",
    "consensus_threshold": "consensus-threshold",
    "consensus_mode": "consensus-mode",
    "escalation": "escalation",
    "max_rounds": "max-rounds",
    "output_format": "output-format",
}

# Attribute name -> field key used inside an entry.
FIELD_KEYS: dict[str, str] = {
    "stance": "stance",
    "confidence": "confidence",
    "summary": "summary",
    "action_requested": "action_requested",
    "evidence": "evidence",
}


class ValidationCodes:
    """Stable machine-readable codes attached to every ValidationIssue."""

    MISSING_PROTOCOL_VERSION = "MISSING_PROTOCOL_VERSION"
    MISSING_CREATED = "MISSING_CREATED"
    MISSING_SESSION_ID = "MISSING_SESSION_ID"
    INVALID_PROTOCOL_VERSION = "INVALID_PROTOCOL_VERSION"
    INVALID_CREATED_FORMAT = "INVALID_CREATED_FORMAT"
    INVALID_SESSION_ID_FORMAT = "INVALID_SESSION_ID_FORMAT"

    MISSING_TITLE = "MISSING_TITLE"
    EMPTY_TITLE = "EMPTY_TITLE"

    MISSING_RULES_SECTION = "MISSING_RULES_SECTION"
    MISSING_REQUIRED_RULE = "MISSING_REQUIRED_RULE"
    INVALID_RULE_VALUE = "INVALID_RULE_VALUE"
    DUPLICATE_AGENT_NAME = "DUPLICATE_AGENT_NAME"
    EMPTY_AGENTS_LIST = "EMPTY_AGENTS_LIST"

    MISSING_CONTEXT_SECTION = "MISSING_CONTEXT_SECTION"
    MISSING_DIALOGUE_SECTION = "MISSING_DIALOGUE_SECTION"

    MISSING_ENTRY_ID = "MISSING_ENTRY_ID"
    DUPLICATE_ENTRY_ID = "DUPLICATE_ENTRY_ID"
    MISSING_TURN_ROUND = "MISSING_TURN_ROUND"
    MISSING_STATUS_LINE = "MISSING_STATUS_LINE"
    INVALID_ENTRY_STATUS = "INVALID_ENTRY_STATUS"
    INVALID_STANCE = "INVALID_STANCE"
    INVALID_CONFIDENCE = "INVALID_CONFIDENCE"
    CONFIDENCE_OUT_OF_RANGE = "CONFIDENCE_OUT_OF_RANGE"
    MISSING_YIELD_MARKER = "MISSING_YIELD_MARKER"
    UNKNOWN_AGENT = "UNKNOWN_AGENT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    ROUND_NOT_MONOTONIC = "ROUND_NOT_MONOTONIC"
    OUT_OF_ORDER_TURN = "OUT_OF_ORDER_TURN"


@dataclass
class ProtocolRules:
    """Session governance. Attributes left as None were absent from the file."""

    agents: list[str] | None = None
    turn_order: str | None = None
    max_turns_per_round: int | None = None
    turn_timeout: int | None = None          # seconds
    consensus_threshold: float | None = None
    consensus_mode: str | None = None
    escalation: str | None = None
    max_rounds: int | None = None
    output_format: str | None = None


@dataclass
class SessionHeader:
    protocol_version: str | None = None
    created: str | None = None
    session_id: str | None = None


@dataclass
class EntryMetadata:
    entry_id: str
    turn: int
    round: int


@dataclass
class EntryFields:
    """Structured entry fields. None means the field line was absent; "" means present but empty."""

    stance: str | None = None
    confidence: float | None = None
    summary: str | None = None
    action_requested: str | None = None
    evidence: str | None = None


@dataclass
class ProtocolEntry:
    metadata: EntryMetadata
    timestamp: str
    author: str
    status: str = "open"
    fields: EntryFields = field(default_factory=EntryFields)
    body: str = ""
    has_yield: bool = True


@dataclass
class BounceSession:
    """A parsed or programmatically built session. Parsed sessions may be partial."""

    header: SessionHeader | None = None
    title: str | None = None
    rules: ProtocolRules | None = None
    context: str | None = None
    entries: list[ProtocolEntry] = field(default_factory=list)
    raw_source: str = ""


@dataclass
class ValidationIssue:
    severity: str  # "error" | "warning"
    code: str
    message: str
    line: int | None = None  # 1-indexed
    entry_id: str | None = None


@dataclass
class ValidationResult:
    valid: bool
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "warning"]


@dataclass
class ParseResult:
    session: BounceSession | None
    validation: ValidationResult


@dataclass
class AgentStance:
    agent: str
    stance: str
    confidence: float


@dataclass
class ConsensusResult:
    outcome: str  # ConsensusOutcome
    score: float
    round: int
    agent_stances: list[AgentStance] = field(default_factory=list)


def make_issue(
    severity: str,
    code: str,
    message: str,
    line: int | None = None,
    entry_id: str | None = None,
) -> ValidationIssue:
    return ValidationIssue(severity=severity, code=code, message=message, line=line, entry_id=entry_id)


def is_valid(issues: list[ValidationIssue]) -> bool:
    return not any(i.severity == "error" for i in issues)
