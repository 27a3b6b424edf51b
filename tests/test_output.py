"""Tests for bounce/output.py."""

from pathlib import Path

import pytest

from bounce.output import _slug, export_debate_session, print_final_answer, print_round_summary, save_to_file
from bounce.protocol.parser import parse_session_file
from bounce.protocol.validator import validate_session


def test_slug_basic():
    assert _slug("Should we use YAML or JSON?") == "should-we-use-yaml-or-json"


def test_slug_max_len():
    assert len(_slug("a" * 100)) <= 40


def test_slug_special_chars():
    result = _slug("API vs. SDK (2024)")
    assert "." not in result
    assert "(" not in result


def test_save_to_file_creates_output_dir(tmp_path: Path, finished_state):
    output_dir = tmp_path / "nested" / "output"
    saved = save_to_file(finished_state, output_dir)
    assert saved.exists()
    assert saved.suffix == ".md"
    assert saved.parent == output_dir


def test_save_to_file_slug_override(tmp_path: Path, finished_state):
    saved = save_to_file(finished_state, tmp_path, slug_override="custom")
    assert saved.name.endswith("_custom.md")


def test_save_to_file_content(tmp_path: Path, finished_state):
    content = save_to_file(finished_state, tmp_path).read_text(encoding="utf-8")

    assert content.startswith("# Bounce Debate: Should sessions move to Redis?")
    assert "**Participants:** Claude (claude), Openai (openai)" in content
    assert "**Final consensus:** strong (82%)" in content
    assert "## Round 1" in content
    assert "## Round 2" in content
    assert "*Stance: Agrees | Confidence: 80% | Latency: 0.50s*" in content
    assert "> Consensus after round 1: low (40%)" in content
    assert "## Final Answer (by claude)" in content
    assert "Move sessions to Redis with a 15 minute TTL." in content


def test_print_helpers_do_not_raise(finished_state):
    print_round_summary(finished_state.rounds[0])
    print_final_answer(finished_state)


async def test_export_debate_session_round_trips(tmp_path: Path, finished_state):
    path = tmp_path / "sessions" / "redis.md"

    await export_debate_session(finished_state, path)

    result = parse_session_file(path)
    assert result.validation.valid is True
    assert validate_session(result.session).valid is True

    session = result.session
    assert session.title == "Should sessions move to Redis?"
    assert session.rules.agents == ["claude", "openai"]
    assert session.rules.output_format == "structured"
    assert len(session.entries) == 4

    first = session.entries[0]
    assert first.author == "claude"
    assert first.metadata.turn == 1
    assert first.metadata.round == 1
    assert first.fields.stance == "approve"
    assert first.fields.confidence == 0.8
    assert first.fields.summary == "Use Redis"
    assert first.timestamp == "2025-01-15T10:00:00.000Z"
    assert session.entries[1].fields.stance == "reject"
    assert session.entries[1].fields.summary == "Keep Postgres."
    assert session.entries[3].metadata.round == 2


async def test_export_refuses_existing_file(tmp_path: Path, finished_state):
    path = tmp_path / "redis.md"
    path.write_text("already here", encoding="utf-8")
    with pytest.raises(FileExistsError):
        await export_debate_session(finished_state, path)
