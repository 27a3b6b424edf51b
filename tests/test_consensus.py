"""Tests for bounce/coordination/consensus.py."""

from dataclasses import replace

import pytest

from bounce.coordination.consensus import detect_consensus, get_latest_entries_per_agent
from tests.conftest import make_entry


def test_latest_entries_later_overwrites_earlier():
    entries = [
        make_entry("a", round_number=1, turn=1, stance="reject"),
        make_entry("a", round_number=1, turn=2, stance="approve"),
        make_entry("b", round_number=2, turn=1),
    ]
    latest = get_latest_entries_per_agent(entries)
    assert latest["a"].fields.stance == "approve"
    assert set(latest) == {"a", "b"}

    assert set(get_latest_entries_per_agent(entries, round_number=2)) == {"b"}


def test_no_entries_is_not_reached(sample_rules):
    result = detect_consensus([], sample_rules)
    assert result.outcome == "not-reached"
    assert result.score == 0.0
    assert result.round == 0


def test_majority_reached(sample_rules):
    rules = replace(sample_rules, agents=["a", "b", "c"], consensus_threshold=0.7)
    entries = [
        make_entry("a", confidence=0.8),
        make_entry("b", confidence=0.9),
        make_entry("c", stance="reject", confidence=0.9),
    ]
    result = detect_consensus(entries, rules)
    assert result.outcome == "reached"
    assert result.score == pytest.approx(0.85)


def test_majority_needs_more_than_half(sample_rules):
    entries = [make_entry("a", confidence=0.9), make_entry("b", stance="reject", confidence=0.9)]
    assert detect_consensus(entries, sample_rules).outcome == "not-reached"


def test_majority_low_confidence_not_reached(sample_rules):
    entries = [make_entry("a", confidence=0.5), make_entry("b", confidence=0.5)]
    result = detect_consensus(entries, sample_rules)
    assert result.outcome == "not-reached"
    assert result.score == pytest.approx(0.5)


def test_weighted_subtracts_rejections(sample_rules):
    rules = replace(sample_rules, consensus_mode="weighted", consensus_threshold=0.25)
    entries = [
        make_entry("a", confidence=0.9),
        make_entry("b", confidence=0.8),
        make_entry("c", stance="reject", confidence=0.5),
        make_entry("d", stance="neutral", confidence=1.0),
    ]
    result = detect_consensus(entries, rules)
    assert result.score == pytest.approx(0.3)
    assert result.outcome == "reached"


def test_unanimous_uses_minimum_confidence(sample_rules):
    rules = replace(sample_rules, consensus_mode="unanimous", consensus_threshold=0.7)
    entries = [make_entry("a", confidence=0.9), make_entry("b", confidence=0.75)]
    result = detect_consensus(entries, rules)
    assert result.outcome == "reached"
    assert result.score == pytest.approx(0.75)

    entries.append(make_entry("c", stance="neutral", confidence=1.0))
    result = detect_consensus(entries, rules)
    assert result.outcome == "not-reached"
    assert result.score == 0.0


def test_deferring_agents_are_excluded(sample_rules):
    entries = [make_entry("a", confidence=0.9), make_entry("b", stance="defer", confidence=0.1)]
    result = detect_consensus(entries, sample_rules)
    assert result.outcome == "reached"
    assert len(result.agent_stances) == 2


def test_everyone_defers_is_deadlock(sample_rules):
    entries = [make_entry("a", stance="defer"), make_entry("b", stance="defer")]
    assert detect_consensus(entries, sample_rules).outcome == "deadlock"


def test_only_highest_round_counts(sample_rules):
    entries = [
        make_entry("a", round_number=1, stance="reject"),
        make_entry("b", round_number=1, stance="reject"),
        make_entry("a", round_number=2, turn=1, confidence=0.9),
    ]
    result = detect_consensus(entries, sample_rules)
    assert result.round == 2
    assert [s.agent for s in result.agent_stances] == ["a"]
    assert result.outcome == "reached"


def test_missing_fields_default_to_neutral_and_zero(sample_rules):
    result = detect_consensus([make_entry("a", stance=None, confidence=None)], sample_rules)
    stance = result.agent_stances[0]
    assert stance.stance == "neutral"
    assert stance.confidence == 0.0
    assert result.outcome == "not-reached"


def test_unknown_mode_is_not_reached(sample_rules):
    rules = replace(sample_rules, consensus_mode="dictator")
    assert detect_consensus([make_entry("a")], rules).outcome == "not-reached"
