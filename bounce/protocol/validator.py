"""Structural and cross-entry validation for in-memory sessions."""

import math

from bounce.protocol.parser import UUID_RE
from bounce.protocol.types import (
    FIELD_KEYS,
    RULE_KEYS,
    VALID_CONSENSUS_MODES,
    VALID_ESCALATIONS,
    VALID_OUTPUT_FORMATS,
    VALID_STANCES,
    VALID_TURN_ORDERS,
    BounceSession,
    ProtocolEntry,
    ProtocolRules,
    SessionHeader,
    ValidationCodes,
    ValidationIssue,
    ValidationResult,
    is_valid,
    make_issue,
)


def _validate_header(header: SessionHeader | None, issues: list[ValidationIssue]) -> None:
    if header is None:
        for code in (
            ValidationCodes.MISSING_PROTOCOL_VERSION,
            ValidationCodes.MISSING_CREATED,
            ValidationCodes.MISSING_SESSION_ID,
        ):
            issues.append(make_issue("error", code, "Missing session header"))
        return

    if header.protocol_version is None:
        issues.append(make_issue("error", ValidationCodes.MISSING_PROTOCOL_VERSION, "Missing protocol version"))
    elif not header.protocol_version.strip():
        issues.append(make_issue("error", ValidationCodes.INVALID_PROTOCOL_VERSION, "Protocol version is empty"))

    if header.created is None:
        issues.append(make_issue("error", ValidationCodes.MISSING_CREATED, "Missing created timestamp"))
    elif not header.created.strip():
        issues.append(make_issue("error", ValidationCodes.INVALID_CREATED_FORMAT, "Created timestamp is empty"))

    if not header.session_id:
        issues.append(make_issue("error", ValidationCodes.MISSING_SESSION_ID, "Missing session ID"))
    elif not UUID_RE.match(header.session_id):
        issues.append(make_issue(
            "error", ValidationCodes.INVALID_SESSION_ID_FORMAT,
            f'Invalid session ID format: "{header.session_id}"',
        ))


def _validate_title(title: str | None, issues: list[ValidationIssue]) -> None:
    if title is None:
        issues.append(make_issue("error", ValidationCodes.MISSING_TITLE, "Missing session title"))
    elif not title.strip():
        issues.append(make_issue("error", ValidationCodes.EMPTY_TITLE, "Session title is empty"))


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_rules(rules: ProtocolRules | None, issues: list[ValidationIssue]) -> None:
    if rules is None:
        issues.append(make_issue("error", ValidationCodes.MISSING_RULES_SECTION, "Missing protocol rules"))
        return

    for attr, key in RULE_KEYS.items():
        if getattr(rules, attr) is None:
            issues.append(make_issue(
                "error", ValidationCodes.MISSING_REQUIRED_RULE, f"Missing required rule: {key}",
            ))

    if rules.agents is not None:
        if not rules.agents:
            issues.append(make_issue("error", ValidationCodes.EMPTY_AGENTS_LIST, "Agents list is empty"))
        seen: set[str] = set()
        for agent in rules.agents:
            if not agent.strip():
                issues.append(make_issue("error", ValidationCodes.EMPTY_AGENTS_LIST, "Agent name is empty"))
            if agent in seen:
                issues.append(make_issue(
                    "error", ValidationCodes.DUPLICATE_AGENT_NAME, f'Duplicate agent name: "{agent}"',
                ))
            seen.add(agent)

    enums = (
        ("turn-order", rules.turn_order, VALID_TURN_ORDERS),
        ("consensus-mode", rules.consensus_mode, VALID_CONSENSUS_MODES),
        ("escalation", rules.escalation, VALID_ESCALATIONS),
        ("output-format", rules.output_format, VALID_OUTPUT_FORMATS),
    )
    for key, value, allowed in enums:
        if value is not None and value not in allowed:
            issues.append(make_issue("error", ValidationCodes.INVALID_RULE_VALUE, f'Invalid {key}: "{value}"'))

    if rules.max_turns_per_round is not None and (
        not _is_int(rules.max_turns_per_round) or rules.max_turns_per_round < 1
    ):
        issues.append(make_issue(
            "error", ValidationCodes.INVALID_RULE_VALUE, f"Invalid max-turns-per-round: {rules.max_turns_per_round}",
        ))
    if rules.turn_timeout is not None and (not _is_int(rules.turn_timeout) or rules.turn_timeout < 1):
        issues.append(make_issue(
            "error", ValidationCodes.INVALID_RULE_VALUE, f"Invalid turn-timeout: {rules.turn_timeout}",
        ))
    if rules.consensus_threshold is not None and not 0 <= rules.consensus_threshold <= 1:
        issues.append(make_issue(
            "error", ValidationCodes.INVALID_RULE_VALUE,
            f"consensus-threshold {rules.consensus_threshold} out of range [0.0, 1.0]",
        ))
    if rules.max_rounds is not None and (not _is_int(rules.max_rounds) or not 1 <= rules.max_rounds <= 100):
        issues.append(make_issue(
            "error", ValidationCodes.INVALID_RULE_VALUE, f"Invalid max-rounds: {rules.max_rounds}",
        ))


def _validate_round_robin(entries: list[ProtocolEntry], agents: list[str], issues: list[ValidationIssue]) -> None:
    """Warn about entries whose author is not the one expected by position within its round."""
    by_round: dict[int, list[ProtocolEntry]] = {}
    for entry in entries:
        by_round.setdefault(entry.metadata.round, []).append(entry)

    for round_number, round_entries in by_round.items():
        for position, entry in enumerate(round_entries):
            expected = agents[position % len(agents)]
            if entry.author and expected and entry.author != expected:
                issues.append(make_issue(
                    "warning", ValidationCodes.OUT_OF_ORDER_TURN,
                    f'Expected "{expected}" but got "{entry.author}" at position {position + 1} '
                    f"in round {round_number}",
                    entry_id=entry.metadata.entry_id,
                ))


def _validate_entries(
    entries: list[ProtocolEntry],
    rules: ProtocolRules | None,
    issues: list[ValidationIssue],
) -> None:
    if not entries:
        return

    agents = set(rules.agents or []) if rules else set()
    output_format = rules.output_format if rules else None
    seen_ids: set[str] = set()
    last_round = 0

    for entry in entries:
        eid = entry.metadata.entry_id
        fields = entry.fields

        if eid in seen_ids:
            issues.append(make_issue(
                "error", ValidationCodes.DUPLICATE_ENTRY_ID, f'Duplicate entry ID: "{eid}"', entry_id=eid,
            ))
        seen_ids.add(eid)

        if agents and entry.author and entry.author not in agents:
            issues.append(make_issue(
                "error", ValidationCodes.UNKNOWN_AGENT,
                f'Entry author "{entry.author}" is not in the agents list', entry_id=eid,
            ))

        if fields.stance is not None and fields.stance not in VALID_STANCES:
            issues.append(make_issue(
                "error", ValidationCodes.INVALID_STANCE, f'Invalid stance: "{fields.stance}"', entry_id=eid,
            ))

        if fields.confidence is not None:
            if math.isnan(fields.confidence):
                issues.append(make_issue(
                    "error", ValidationCodes.INVALID_CONFIDENCE,
                    f"Invalid confidence value for entry {eid}", entry_id=eid,
                ))
            elif not 0 <= fields.confidence <= 1:
                issues.append(make_issue(
                    "error", ValidationCodes.CONFIDENCE_OUT_OF_RANGE,
                    f"Confidence {fields.confidence} out of range [0.0, 1.0]", entry_id=eid,
                ))

        # Only absent fields count as missing here; an empty string was written on purpose.
        if output_format == "structured":
            for attr, key in FIELD_KEYS.items():
                if getattr(fields, attr) is None:
                    issues.append(make_issue(
                        "error", ValidationCodes.MISSING_REQUIRED_FIELD,
                        f"Missing required structured field: {key}", entry_id=eid,
                    ))

        if not entry.has_yield:
            issues.append(make_issue(
                "warning", ValidationCodes.MISSING_YIELD_MARKER,
                f"Entry {eid} is missing the yield marker", entry_id=eid,
            ))

        round_number = entry.metadata.round
        if round_number > 0 and last_round > 0 and round_number < last_round:
            issues.append(make_issue(
                "warning", ValidationCodes.ROUND_NOT_MONOTONIC,
                f"Round {round_number} appears after round {last_round} (non-monotonic)", entry_id=eid,
            ))
        if round_number > 0:
            last_round = round_number

    if rules and rules.turn_order == "round-robin" and rules.agents and len(rules.agents) > 1:
        _validate_round_robin(entries, rules.agents, issues)


def validate_session(session: BounceSession) -> ValidationResult:
    """Validate a parsed or hand-built session.

    Unlike the parser, this also checks cross-entry rules: duplicate entry
    ids, round monotonicity, round-robin order and required fields under the
    structured output format.
    """
    issues: list[ValidationIssue] = []

    _validate_header(session.header, issues)
    _validate_title(session.title, issues)
    _validate_rules(session.rules, issues)
    if session.context is None:
        issues.append(make_issue("error", ValidationCodes.MISSING_CONTEXT_SECTION, "Missing context section"))
    _validate_entries(session.entries, session.rules, issues)

    return ValidationResult(valid=is_valid(issues), issues=issues)
