"""Tests for bounce/protocol/serializer.py."""

import asyncio
import re

import pytest

from bounce.protocol.parser import parse_session, parse_session_file
from bounce.protocol.serializer import (
    append_entry,
    create_session,
    create_session_file,
    iso_now,
    new_entry,
    serialize_entry,
    serialize_rules,
)
from bounce.protocol.validator import validate_session
from tests.conftest import SESSION_ID


def test_iso_now_format():
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", iso_now())


def test_serialize_rules_canonical_order(sample_rules):
    text = serialize_rules(sample_rules)
    lines = text.splitlines()
    assert lines[:3] == ["agents:", "  - claude", "  - codex"]
    assert lines[3] == "turn-order: round-robin"
    assert "consensus-threshold: 0.66" in lines
    assert lines[-1] == "output-format: structured"


def test_create_session_parses_back_clean(sample_rules):
    document = create_session("Caching", sample_rules, "Pick a cache.", session_id=SESSION_ID)
    result = parse_session(document)

    assert result.validation.valid is True
    assert result.session.title == "Caching"
    assert result.session.header.session_id == SESSION_ID
    assert result.session.rules == sample_rules
    assert result.session.context == "Pick a cache."
    assert result.session.entries == []


def test_serialize_entry_omits_unset_fields():
    entry = new_entry("claude", turn=3, round_number=2, body="Looks fine.", status="yield", stance="approve")
    entry.metadata.entry_id = "abc-123"
    entry.timestamp = "2025-01-15T10:00:00.000Z"
    text = serialize_entry(entry)

    assert text.startswith("<!-- entry: abc-123 -->\n<!-- turn: 3 round: 2 -->\n")
    assert "2025-01-15T10:00:00.000Z [author: claude] [status: yield]" in text
    assert "stance: approve" in text
    assert "confidence:" not in text
    assert text.rstrip().endswith("<!-- yield -->")


def test_serialize_entry_fills_id_and_timestamp():
    text = serialize_entry(new_entry("claude", turn=1, round_number=1))
    entry_id = re.search(r"<!-- entry: ([0-9a-f-]+) -->", text).group(1)
    assert len(entry_id) == 36


async def test_append_entry_preserves_existing_bytes(session_file):
    before = session_file.read_text(encoding="utf-8")
    entry = new_entry(
        "claude", turn=3, round_number=2, body="Second round.", status="yield",
        stance="approve", confidence=0.9, summary="Ship it", action_requested="merge", evidence="tests",
    )
    entry_id = await append_entry(session_file, entry)

    after = session_file.read_text(encoding="utf-8")
    assert after.startswith(before)
    result = parse_session_file(session_file)
    assert result.validation.valid is True
    appended = result.session.entries[-1]
    assert appended.metadata.entry_id == entry_id
    assert appended.metadata.round == 2
    assert appended.fields.confidence == 0.9
    assert appended.body == "Second round."


async def test_append_entry_adds_missing_newline(session_file):
    session_file.write_text(session_file.read_text(encoding="utf-8").rstrip("\n"), encoding="utf-8")
    await append_entry(session_file, new_entry("codex", turn=3, round_number=2, stance="neutral"))

    entries = parse_session_file(session_file).session.entries
    assert len(entries) == 3
    assert entries[1].has_yield is True


async def test_concurrent_appends_all_land(session_file):
    entries = [
        new_entry("claude" if i % 2 == 0 else "codex", turn=3 + i, round_number=2, body=f"entry {i}")
        for i in range(5)
    ]
    ids = await asyncio.gather(
        *(append_entry(session_file, e, retries=20, retry_delay_sec=0.01) for e in entries)
    )

    parsed = parse_session_file(session_file).session.entries
    assert len(parsed) == 7
    assert {e.metadata.entry_id for e in parsed[2:]} == set(ids)
    assert not session_file.with_name(session_file.name + ".lock").exists()


async def test_create_session_file_refuses_overwrite(tmp_path, sample_rules):
    path = tmp_path / "nested" / "new.md"
    await create_session_file(path, "Fresh", sample_rules, "context")

    assert validate_session(parse_session_file(path).session).valid is True
    with pytest.raises(FileExistsError):
        await create_session_file(path, "Again", sample_rules, "context")
