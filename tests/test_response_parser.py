"""Tests for bounce/response_parser.py."""

import pytest

from bounce.response_parser import (
    extract_agreements_and_disagreements,
    extract_confidence,
    extract_key_points,
    format_stance,
    parse_stance,
)


@pytest.mark.parametrize(
    "content, expected",
    [
        ("STANCE: agree\n\nRedis is fine.", "agree"),
        ("**Stance**: strongly disagree\nNo way.", "strongly_disagree"),
        ("stance - REFINE\nKeep the cache but shard it.", "refine"),
        ("Stance: synthesize", "synthesize"),
        ("STANCE: disagree\nCONFIDENCE: 60%", "disagree"),
        ("STANCE: neutral\nI agree with most of it.", "neutral"),
    ],
)
def test_structured_stance_wins(content, expected):
    assert parse_stance(content) == expected


def test_strongly_takes_precedence_over_plain_agree():
    assert parse_stance("STANCE: strongly agree") == "strongly_agree"


def test_phrase_heuristic_in_opening():
    assert parse_stance("I completely agree with the proposal to use Postgres.") == "strongly_agree"
    assert parse_stance("I oppose the premise here.") == "disagree"
    assert parse_stance("Let me build upon the earlier idea.") == "refine"


def test_phrases_after_first_500_chars_are_ignored():
    content = "x " * 300 + "I strongly disagree."
    assert parse_stance(content) != "strongly_disagree"


def test_signal_balance_needs_margin_above_two():
    assert parse_stance("yes, correct, valid, makes sense") == "agree"
    assert parse_stance("yes, correct") == "neutral"


def test_default_is_neutral():
    assert parse_stance("Caching is a tradeoff between latency and freshness.") == "neutral"


def test_key_points_from_numbered_bold_list():
    content = "1. **Use Redis for sessions**\n2. **Keep Postgres as source of truth**\n"
    assert extract_key_points(content)[:2] == ["Use Redis for sessions", "Keep Postgres as source of truth"]


def test_key_points_skip_short_items_and_cap_at_five():
    content = "\n".join(f"- point number {i} is a long enough bullet" for i in range(8)) + "\n- tiny"
    points = extract_key_points(content)
    assert len(points) == 5
    assert "tiny" not in points


def test_key_points_fall_back_to_section():
    content = "Key Points:\nCaching reduces read load\nInvalidation is hard\n\nThe rest."
    assert extract_key_points(content) == ["Caching reduces read load", "Invalidation is hard"]


def test_agreements_and_disagreements():
    content = (
        "I agree with the plan to shard by tenant. "
        "However, the migration window is far too short. "
        "I disagree that we can skip the dual-write phase."
    )
    agreements, disagreements = extract_agreements_and_disagreements(content)
    assert agreements == ["the plan to shard by tenant"]
    assert "we can skip the dual-write phase" in disagreements
    assert "the migration window is far too short" in disagreements


def test_positions_capped_at_three():
    content = " ".join(f"But option number {i} has issues." for i in range(6))
    _, disagreements = extract_agreements_and_disagreements(content)
    assert len(disagreements) == 3


@pytest.mark.parametrize(
    "content, expected",
    [
        ("CONFIDENCE: 85%", 0.85),
        ("confidence 150%", 1.0),
        ("I have high confidence in this.", 0.85),
        ("This will definitely work.", 0.8),
        ("It might work.", 0.45),
        ("Plain statement.", 0.6),
    ],
)
def test_extract_confidence(content, expected):
    assert extract_confidence(content) == pytest.approx(expected)


def test_format_stance():
    assert format_stance("strongly_agree") == "Strongly Agrees"
    assert format_stance("synthesize") == "Synthesizing"
    assert format_stance("bogus") == "Unknown"
