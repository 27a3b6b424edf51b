"""Line scanner that turns Bounce Protocol markdown into a BounceSession. Never raises."""

import logging
import re
from pathlib import Path

from bounce.protocol.types import (
    VALID_CONSENSUS_MODES,
    VALID_ESCALATIONS,
    VALID_OUTPUT_FORMATS,
    VALID_STANCES,
    VALID_STATUSES,
    VALID_TURN_ORDERS,
    BounceSession,
    EntryFields,
    EntryMetadata,
    ParseResult,
    ProtocolEntry,
    ProtocolRules,
    SessionHeader,
    ValidationCodes,
    ValidationIssue,
    ValidationResult,
    is_valid,
    make_issue,
)

logger = logging.getLogger(__name__)

HEADER_COMMENT_RE = re.compile(r"^<!--\s+(bounce-protocol|created|session-id):\s*(.*?)\s*-->$")
TITLE_RE = re.compile(r"^#\s+Bounce Session:\s*(.+)$")
ENTRY_MARKER_RE = re.compile(r"^<!--\s+entry:\s*([0-9a-f-]+)\s*-->$")
TURN_ROUND_RE = re.compile(r"^<!--\s+turn:\s*(\d+)\s+round:\s*(\d+)\s*-->$")
STATUS_LINE_RE = re.compile(r"^(\S+)\s+\[author:\s*([^\]]+)\]\s+\[status:\s*([^\]]+)\]$")
YIELD_MARKER_RE = re.compile(r"^<!--\s+yield\s*-->$")
FIELD_RE = re.compile(r"^(stance|confidence|summary|action_requested|evidence):\s*(.*)$")
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

RULES_HEADING = "## Protocol Rules"
CONTEXT_HEADING = "## Context"
DIALOGUE_HEADING = "## Dialogue"

_HEADER_SCAN_LINES = 10

_LEADING_INT_RE = re.compile(r"^[+-]?\d+")
_LEADING_FLOAT_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


def _leading_int(text: str) -> int | None:
    """Parse the integer prefix of text ("12s" -> 12). None when there is none."""
    match = _LEADING_INT_RE.match(text.strip())
    return int(match.group(0)) if match else None


def _leading_float(text: str) -> float | None:
    match = _LEADING_FLOAT_RE.match(text.strip())
    return float(match.group(0)) if match else None


class _Sections:
    """Line index ranges [start, end) of the three level-2 sections."""

    def __init__(self, lines: list[str]) -> None:
        self.title_line = -1
        rules_at = context_at = dialogue_at = -1

        for i, line in enumerate(lines):
            trimmed = line.strip()
            if self.title_line == -1 and TITLE_RE.match(trimmed):
                self.title_line = i
            elif trimmed == RULES_HEADING:
                rules_at = i
            elif trimmed == CONTEXT_HEADING:
                context_at = i
            elif trimmed == DIALOGUE_HEADING:
                dialogue_at = i

        total = len(lines)
        self.rules: tuple[int, int] | None = None
        self.context: tuple[int, int] | None = None
        self.dialogue: tuple[int, int] | None = None

        if rules_at != -1:
            end = context_at if context_at != -1 else dialogue_at if dialogue_at != -1 else total
            self.rules = (rules_at + 1, end)
        if context_at != -1:
            self.context = (context_at + 1, dialogue_at if dialogue_at != -1 else total)
        if dialogue_at != -1:
            self.dialogue = (dialogue_at + 1, total)


def _parse_header(lines: list[str], issues: list[ValidationIssue]) -> SessionHeader:
    header = SessionHeader()
    for line in lines[:_HEADER_SCAN_LINES]:
        match = HEADER_COMMENT_RE.match(line.strip())
        if not match:
            continue
        key, value = match.group(1), match.group(2)
        if key == "bounce-protocol":
            header.protocol_version = value
        elif key == "created":
            header.created = value
        else:
            header.session_id = value

    if not header.protocol_version:
        issues.append(make_issue("error", ValidationCodes.MISSING_PROTOCOL_VERSION,
                                 "Missing bounce-protocol header comment"))
    if not header.created:
        issues.append(make_issue("error", ValidationCodes.MISSING_CREATED, "Missing created header comment"))
    if not header.session_id:
        issues.append(make_issue("error", ValidationCodes.MISSING_SESSION_ID, "Missing session-id header comment"))

    if header.protocol_version == "":
        issues.append(make_issue("error", ValidationCodes.INVALID_PROTOCOL_VERSION, "Protocol version is empty"))
    if header.created == "":
        issues.append(make_issue("error", ValidationCodes.INVALID_CREATED_FORMAT, "Created timestamp is empty"))
    if header.session_id is not None and not UUID_RE.match(header.session_id):
        issues.append(make_issue(
            "error",
            ValidationCodes.INVALID_SESSION_ID_FORMAT,
            f'Invalid session-id format: "{header.session_id}" (expected UUID v4)',
        ))
    return header


def _parse_title(lines: list[str], title_line: int, issues: list[ValidationIssue]) -> str | None:
    if title_line == -1:
        issues.append(make_issue("error", ValidationCodes.MISSING_TITLE,
                                 "Missing session title (# Bounce Session: ...)"))
        return None
    match = TITLE_RE.match(lines[title_line].strip())
    title = match.group(1).strip() if match else ""
    if not title:
        issues.append(make_issue("error", ValidationCodes.EMPTY_TITLE, "Session title is empty", title_line + 1))
    return title


def _rules_block(section_lines: list[str]) -> list[str]:
    """Return the lines inside the first fenced block of the rules section."""
    block: list[str] = []
    in_fence = False
    for line in section_lines:
        if line.strip().startswith("```"):
            if in_fence:
                break
            in_fence = True
            continue
        if in_fence:
            block.append(line)
    return block


def _invalid_rule(issues: list[ValidationIssue], message: str) -> None:
    issues.append(make_issue("error", ValidationCodes.INVALID_RULE_VALUE, message))


def _parse_rules(
    lines: list[str],
    sections: _Sections,
    issues: list[ValidationIssue],
) -> ProtocolRules | None:
    if sections.rules is None:
        issues.append(make_issue("error", ValidationCodes.MISSING_RULES_SECTION,
                                 "Missing ## Protocol Rules section"))
        return None

    start, end = sections.rules
    rules = ProtocolRules()
    agents: list[str] = []
    in_agents = False

    for line in _rules_block(lines[start:end]):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue

        if in_agents:
            if trimmed.startswith("- "):
                agents.append(trimmed[2:].strip())
                continue
            in_agents = False

        key, sep, value = trimmed.partition(":")
        if not sep:
            continue
        key, value = key.strip(), value.strip()

        if key == "agents":
            in_agents = True
        elif key == "turn-order":
            if value in VALID_TURN_ORDERS:
                rules.turn_order = value
            else:
                _invalid_rule(issues, f'Invalid turn-order value: "{value}"')
        elif key in ("max-turns-per-round", "turn-timeout"):
            number = _leading_int(value)
            if number is None or number < 1:
                _invalid_rule(issues, f'Invalid {key}: "{value}"')
            elif key == "turn-timeout":
                rules.turn_timeout = number
            else:
                rules.max_turns_per_round = number
        elif key == "consensus-threshold":
            threshold = _leading_float(value)
            if threshold is None or not 0 <= threshold <= 1:
                _invalid_rule(issues, f'Invalid consensus-threshold: "{value}" (must be 0.0-1.0)')
            else:
                rules.consensus_threshold = threshold
        elif key == "consensus-mode":
            if value in VALID_CONSENSUS_MODES:
                rules.consensus_mode = value
            else:
                _invalid_rule(issues, f'Invalid consensus-mode: "{value}"')
        elif key == "escalation":
            if value in VALID_ESCALATIONS:
                rules.escalation = value
            else:
                _invalid_rule(issues, f'Invalid escalation: "{value}"')
        elif key == "max-rounds":
            number = _leading_int(value)
            if number is None or not 1 <= number <= 100:
                _invalid_rule(issues, f'Invalid max-rounds: "{value}" (must be 1-100)')
            else:
                rules.max_rounds = number
        elif key == "output-format":
            if value in VALID_OUTPUT_FORMATS:
                rules.output_format = value
            else:
                _invalid_rule(issues, f'Invalid output-format: "{value}"')

    if agents:
        rules.agents = agents
    return rules


def _parse_context(lines: list[str], sections: _Sections, issues: list[ValidationIssue]) -> str | None:
    if sections.context is None:
        issues.append(make_issue("error", ValidationCodes.MISSING_CONTEXT_SECTION, "Missing ## Context section"))
        return None
    start, end = sections.context
    return "\n".join(lines[start:end]).strip()


def _parse_entry(
    entry_lines: list[str],
    line_no: int,
    issues: list[ValidationIssue],
) -> ProtocolEntry:
    """Parse one entry block. entry_lines[0] is the entry marker; line_no is its 1-indexed position."""
    entry_id = ENTRY_MARKER_RE.match(entry_lines[0].strip()).group(1)
    metadata = EntryMetadata(entry_id=entry_id, turn=0, round=0)

    if len(entry_lines) > 1:
        turn_match = TURN_ROUND_RE.match(entry_lines[1].strip())
        if turn_match:
            metadata.turn = int(turn_match.group(1))
            metadata.round = int(turn_match.group(2))
        else:
            issues.append(make_issue(
                "error", ValidationCodes.MISSING_TURN_ROUND,
                f"Missing or malformed turn/round comment for entry {entry_id}", line_no + 1, entry_id,
            ))
    else:
        issues.append(make_issue(
            "error", ValidationCodes.MISSING_TURN_ROUND,
            f"Entry {entry_id} is truncated (missing turn/round)", line_no, entry_id,
        ))

    timestamp = ""
    author = ""
    status = "open"
    status_parsed = False
    if len(entry_lines) > 2:
        status_match = STATUS_LINE_RE.match(entry_lines[2].strip())
        if status_match:
            timestamp = status_match.group(1)
            author = status_match.group(2).strip()
            raw_status = status_match.group(3).strip()
            if raw_status in VALID_STATUSES:
                status = raw_status
            else:
                issues.append(make_issue(
                    "error", ValidationCodes.INVALID_ENTRY_STATUS,
                    f'Invalid entry status: "{raw_status}" for entry {entry_id}', line_no + 2, entry_id,
                ))
            status_parsed = True
        else:
            issues.append(make_issue(
                "error", ValidationCodes.MISSING_STATUS_LINE,
                f"Missing or malformed status line for entry {entry_id}", line_no + 2, entry_id,
            ))

    fields = EntryFields()
    body_lines: list[str] = []
    has_yield = False
    bad_confidence = False
    in_fields = True

    for line in entry_lines[3 if status_parsed else 2:]:
        trimmed = line.strip()
        if YIELD_MARKER_RE.match(trimmed):
            has_yield = True
            continue

        if in_fields:
            field_match = FIELD_RE.match(trimmed)
            if field_match:
                name, value = field_match.group(1), field_match.group(2).strip()
                if name == "confidence":
                    fields.confidence = _leading_float(value)
                    bad_confidence = fields.confidence is None
                else:
                    setattr(fields, name, value)
                continue
            in_fields = False
            if not trimmed:
                continue

        body_lines.append(line)

    if fields.stance is not None and fields.stance not in VALID_STANCES:
        issues.append(make_issue(
            "error", ValidationCodes.INVALID_STANCE,
            f'Invalid stance value: "{fields.stance}" for entry {entry_id}', line_no, entry_id,
        ))

    if bad_confidence:
        issues.append(make_issue(
            "error", ValidationCodes.INVALID_CONFIDENCE,
            f"Invalid confidence value for entry {entry_id}", line_no, entry_id,
        ))
    elif fields.confidence is not None and not 0 <= fields.confidence <= 1:
        issues.append(make_issue(
            "error", ValidationCodes.CONFIDENCE_OUT_OF_RANGE,
            f"Confidence {fields.confidence} out of range [0.0, 1.0] for entry {entry_id}", line_no, entry_id,
        ))

    if not has_yield:
        issues.append(make_issue(
            "warning", ValidationCodes.MISSING_YIELD_MARKER,
            f"Entry {entry_id} is missing the <!-- yield --> marker", line_no, entry_id,
        ))

    return ProtocolEntry(
        metadata=metadata,
        timestamp=timestamp,
        author=author,
        status=status,
        fields=fields,
        body="\n".join(body_lines).strip("\n"),
        has_yield=has_yield,
    )


def _parse_entries(
    lines: list[str],
    sections: _Sections,
    issues: list[ValidationIssue],
) -> list[ProtocolEntry]:
    if sections.dialogue is None:
        issues.append(make_issue("error", ValidationCodes.MISSING_DIALOGUE_SECTION, "Missing ## Dialogue section"))
        return []

    start, end = sections.dialogue
    entries: list[ProtocolEntry] = []
    block: list[str] = []
    block_line = 0

    # Each entry runs from its marker up to the next marker, so a broken entry
    # never swallows the one after it.
    for index in range(start, end):
        line = lines[index]
        if ENTRY_MARKER_RE.match(line.strip()):
            if block:
                entries.append(_parse_entry(block, block_line, issues))
            block = [line]
            block_line = index + 1
        elif block:
            block.append(line)
    if block:
        entries.append(_parse_entry(block, block_line, issues))

    return entries


def parse_session(raw_markdown: str) -> ParseResult:
    """Parse a session document into a (possibly partial) BounceSession plus issues.

    Malformed input never raises: whatever could be recovered is returned
    alongside the ValidationIssues describing what was wrong.
    """
    issues: list[ValidationIssue] = []

    if not raw_markdown or not raw_markdown.strip():
        for code in (
            ValidationCodes.MISSING_PROTOCOL_VERSION,
            ValidationCodes.MISSING_CREATED,
            ValidationCodes.MISSING_SESSION_ID,
            ValidationCodes.MISSING_TITLE,
        ):
            issues.append(make_issue("error", code, "Empty input"))
        return ParseResult(session=None, validation=ValidationResult(valid=False, issues=issues))

    lines = raw_markdown.split("\n")
    header = _parse_header(lines, issues)
    sections = _Sections(lines)
    title = _parse_title(lines, sections.title_line, issues)
    rules = _parse_rules(lines, sections, issues)
    context = _parse_context(lines, sections, issues)
    entries = _parse_entries(lines, sections, issues)

    has_header = bool(header.protocol_version or header.created or header.session_id)
    session = BounceSession(
        header=header if has_header else None,
        title=title,
        rules=rules,
        context=context,
        entries=entries,
        raw_source=raw_markdown,
    )

    logger.debug("Parsed session: %d entries, %d issues", len(entries), len(issues))
    return ParseResult(session=session, validation=ValidationResult(valid=is_valid(issues), issues=issues))


def parse_session_file(path: Path) -> ParseResult:
    """Read and parse a session file. Raises OSError only if the file cannot be read."""
    return parse_session(Path(path).read_text(encoding="utf-8"))
