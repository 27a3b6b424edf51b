"""Tests for bounce/protocol/parser.py."""

from bounce.protocol.parser import parse_session, parse_session_file
from bounce.protocol.types import ValidationCodes
from tests.conftest import SAMPLE_SESSION, SESSION_ID


def _codes(result) -> set[str]:
    return {i.code for i in result.validation.issues}


def test_parse_valid_session(sample_session_text):
    result = parse_session(sample_session_text)

    assert result.validation.valid is True
    assert result.validation.issues == []
    session = result.session
    assert session.header.protocol_version == "0.1"
    assert session.header.session_id == SESSION_ID
    assert session.title == "Auth redesign"
    assert session.rules.agents == ["claude", "codex"]
    assert session.rules.consensus_threshold == 0.66
    assert session.rules.max_rounds == 10
    assert session.context == "Should the session service move to signed JWTs?"


def test_parse_entries(sample_session_text):
    entries = parse_session(sample_session_text).session.entries

    assert [e.metadata.entry_id for e in entries] == ["e-1", "e-2"]
    first = entries[0]
    assert first.author == "claude"
    assert first.status == "yield"
    assert first.metadata.turn == 1
    assert first.metadata.round == 1
    assert first.fields.stance == "approve"
    assert first.fields.confidence == 0.8
    assert first.fields.summary == "Move to JWTs"
    assert first.body == "JWTs remove the session lookup from every request."
    assert first.has_yield is True


def test_empty_input_reports_missing_header_and_title():
    result = parse_session("   \n")

    assert result.session is None
    assert result.validation.valid is False
    assert _codes(result) == {
        ValidationCodes.MISSING_PROTOCOL_VERSION,
        ValidationCodes.MISSING_CREATED,
        ValidationCodes.MISSING_SESSION_ID,
        ValidationCodes.MISSING_TITLE,
    }


def test_missing_sections_are_reported_not_raised():
    result = parse_session("<!-- bounce-protocol: 0.1 -->\n# Bounce Session: Lonely\n")

    codes = _codes(result)
    assert ValidationCodes.MISSING_RULES_SECTION in codes
    assert ValidationCodes.MISSING_CONTEXT_SECTION in codes
    assert ValidationCodes.MISSING_DIALOGUE_SECTION in codes
    assert result.session.title == "Lonely"


def test_invalid_session_id_format():
    text = SAMPLE_SESSION.replace(SESSION_ID, "not-a-uuid")
    assert ValidationCodes.INVALID_SESSION_ID_FORMAT in _codes(parse_session(text))


def test_invalid_rule_values_leave_rule_unset():
    text = SAMPLE_SESSION.replace("consensus-mode: majority", "consensus-mode: dictator")
    result = parse_session(text)

    assert ValidationCodes.INVALID_RULE_VALUE in _codes(result)
    assert result.session.rules.consensus_mode is None


def test_max_rounds_out_of_range():
    text = SAMPLE_SESSION.replace("max-rounds: 10", "max-rounds: 101")
    assert ValidationCodes.INVALID_RULE_VALUE in _codes(parse_session(text))


def test_turn_timeout_accepts_unit_suffix():
    text = SAMPLE_SESSION.replace("turn-timeout: 300", "turn-timeout: 120s")
    assert parse_session(text).session.rules.turn_timeout == 120


def test_invalid_stance_and_confidence():
    text = SAMPLE_SESSION.replace("stance: approve\nconfidence: 0.8", "stance: maybe\nconfidence: high")
    codes = _codes(parse_session(text))
    assert ValidationCodes.INVALID_STANCE in codes
    assert ValidationCodes.INVALID_CONFIDENCE in codes


def test_confidence_out_of_range():
    text = SAMPLE_SESSION.replace("confidence: 0.8", "confidence: 1.5")
    assert ValidationCodes.CONFIDENCE_OUT_OF_RANGE in _codes(parse_session(text))


def test_invalid_entry_status():
    text = SAMPLE_SESSION.replace("[author: claude] [status: yield]", "[author: claude] [status: sleeping]")
    result = parse_session(text)
    assert ValidationCodes.INVALID_ENTRY_STATUS in _codes(result)
    assert result.session.entries[0].status == "open"


def test_missing_yield_marker_is_a_warning():
    text = SAMPLE_SESSION.rstrip().removesuffix("<!-- yield -->")
    result = parse_session(text)

    issue = next(i for i in result.validation.issues if i.code == ValidationCodes.MISSING_YIELD_MARKER)
    assert issue.severity == "warning"
    assert issue.entry_id == "e-2"
    assert result.validation.valid is True


def test_broken_entry_does_not_swallow_the_next():
    text = SAMPLE_SESSION.replace("<!-- turn: 1 round: 1 -->\n", "")
    result = parse_session(text)

    assert ValidationCodes.MISSING_TURN_ROUND in _codes(result)
    assert len(result.session.entries) == 2
    assert result.session.entries[1].author == "codex"


def test_parse_session_file(session_file):
    result = parse_session_file(session_file)
    assert result.validation.valid is True
    assert len(result.session.entries) == 2
