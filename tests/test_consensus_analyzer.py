"""Tests for bounce/consensus_analyzer.py."""

import pytest

from bounce.consensus_analyzer import (
    AnalysisOptions,
    analyze_consensus,
    analyze_consensus_trend,
    combined_similarity,
    determine_recommendation,
    extract_debate_findings,
    extract_proposal_convergence,
    extract_proposed_resolution,
    format_knowledge_for_prompt,
    identify_prunable_participants,
    quick_consensus_check,
    stance_alignment,
    to_protocol_stance,
    update_consensus_with_trend,
    word_similarity,
)
from bounce.models import BounceRound, ConsensusAnalysis, ProposalConvergence, SharedKnowledgeEntry
from tests.conftest import make_response

REDIS = "PROPOSED_RESOLUTION: Use Redis for session caching with a short expiry window"
POSTGRES = "PROPOSED_RESOLUTION: Keep everything inside Postgres tables and skip caching"


def _snapshot(score: float, outcome: str = "not-reached", support: float = 0.5) -> ConsensusAnalysis:
    return ConsensusAnalysis(
        score=score,
        vote_score=score,
        consensus_outcome=outcome,
        level="partial",
        proposal_convergence=ProposalConvergence(support_ratio=support),
    )


def _rounds(*scores: float) -> list[BounceRound]:
    return [BounceRound(i + 1, [], _snapshot(s), float(i)) for i, s in enumerate(scores)]


# ----------------------------------------------------------------------
# similarity
# ----------------------------------------------------------------------


def test_identical_text():
    assert word_similarity("Redis caching layer", "redis CACHING layer!") == 1.0
    assert combined_similarity("Redis caching layer", "Redis caching layer") == pytest.approx(1.0)


def test_short_words_are_ignored():
    assert word_similarity("a an the of", "a an the of") == 0.0


def test_disjoint_text():
    assert combined_similarity("Redis caching layer", "Postgres storage engine") == 0.0


def test_empty_input():
    assert word_similarity("", "anything here") == 0.0


# ----------------------------------------------------------------------
# stances
# ----------------------------------------------------------------------


def test_alignment_of_identical_stances():
    responses = [make_response("a", "x", stance="agree"), make_response("b", "y", stance="agree")]
    assert stance_alignment(responses) == 1.0


def test_alignment_of_even_split_is_zero():
    responses = [
        make_response("a", "x", stance="strongly_agree"),
        make_response("b", "y", stance="strongly_disagree"),
    ]
    assert stance_alignment(responses) == 0.0


def test_single_response_is_aligned():
    assert stance_alignment([make_response("a", "x", stance="disagree")]) == 1.0


@pytest.mark.parametrize(
    "stance, expected",
    [("refine", "approve"), ("synthesize", "approve"), ("strongly_disagree", "reject"), ("neutral", "neutral")],
)
def test_protocol_mapping(stance, expected):
    assert to_protocol_stance(stance) == expected


# ----------------------------------------------------------------------
# proposals
# ----------------------------------------------------------------------


def test_explicit_resolution_line():
    response = make_response("a", f"Some preamble.\n{REDIS}\nMore text.")
    assert extract_proposed_resolution(response) == "Use Redis for session caching with a short expiry window"


def test_falls_back_to_key_point():
    response = make_response("a", "No marker here.", key_points=["Shard by tenant"])
    assert extract_proposed_resolution(response) == "Shard by tenant"


def test_falls_back_to_first_long_sentence():
    response = make_response("a", "Short. This sentence is definitely long enough. Tail.")
    assert extract_proposed_resolution(response) == "This sentence is definitely long enough"


def test_convergence_groups_similar_proposals():
    responses = [
        make_response("a", REDIS),
        make_response("b", REDIS),
        make_response("c", POSTGRES),
    ]
    convergence = extract_proposal_convergence(responses)
    assert convergence.supporters == ["a", "b"]
    assert convergence.dissenters == ["c"]
    assert convergence.support_ratio == pytest.approx(2 / 3)


def test_convergence_tie_broken_by_confidence():
    responses = [make_response("a", REDIS, confidence=0.4), make_response("b", POSTGRES, confidence=0.9)]
    assert extract_proposal_convergence(responses).supporters == ["b"]


def test_convergence_without_responses():
    assert extract_proposal_convergence([]).support_ratio == 0.0


# ----------------------------------------------------------------------
# analyze_consensus
# ----------------------------------------------------------------------


def test_empty_round():
    analysis = analyze_consensus([])
    assert analysis.score == 0.0
    assert analysis.level == "none"


def test_single_response_is_unanimous():
    analysis = analyze_consensus([make_response("a", REDIS, key_points=["Use Redis"])])
    assert analysis.level == "unanimous"
    assert analysis.recommendation == "complete"
    assert analysis.agreed_points == ["Use Redis"]


def test_identical_confident_agreement_completes():
    responses = [make_response(n, REDIS, stance="agree", confidence=0.9) for n in ("a", "b", "c")]
    analysis = analyze_consensus(responses)

    assert analysis.consensus_outcome == "reached"
    assert analysis.vote_score == pytest.approx(0.9)
    assert analysis.score == pytest.approx(0.9775)
    assert analysis.level == "unanimous"
    assert analysis.recommendation == "complete"
    assert analysis.stance_breakdown == {"a": "agree", "b": "agree", "c": "agree"}


def test_opposed_round_scores_low():
    responses = [
        make_response("a", "Redis caching layer wins", stance="strongly_agree", confidence=0.9),
        make_response("b", "Postgres storage engine only", stance="strongly_disagree", confidence=0.9),
    ]
    analysis = analyze_consensus(responses)

    assert analysis.consensus_outcome == "not-reached"
    assert analysis.vote_score == pytest.approx(0.0)
    assert analysis.score == pytest.approx(0.4)
    assert analysis.level == "low"


def test_friendly_tone_without_a_vote_is_not_complete():
    responses = [make_response(n, REDIS, stance="neutral", confidence=0.9) for n in ("a", "b", "c")]
    analysis = analyze_consensus(responses)
    assert analysis.consensus_outcome == "not-reached"
    assert analysis.recommendation != "complete"


def test_common_points_need_a_majority():
    responses = [
        make_response("a", "x", key_points=["Use Redis for sessions"]),
        make_response("b", "y", key_points=["use redis for sessions"]),
        make_response("c", "z", key_points=["Rewrite everything in Rust"]),
    ]
    analysis = analyze_consensus(responses)
    assert analysis.agreed_points == ["use redis for sessions"]
    assert analysis.unclear_points == ["Rewrite everything in Rust"]


def test_disputed_points_are_deduplicated():
    first = make_response("a", "x")
    first.disagreements = ["the migration window is too short"]
    second = make_response("b", "y")
    second.disagreements = ["The migration window is too short", "tokens never expire"]
    analysis = analyze_consensus([first, second])
    assert analysis.disputed_points == ["the migration window is too short", "tokens never expire"]


# ----------------------------------------------------------------------
# recommendation
# ----------------------------------------------------------------------


def test_deadlock_outcome_wins():
    assert determine_recommendation(0.9, 3, 0, "deadlock", 1.0, 0.75) == "deadlock"


def test_reached_with_quorum_completes():
    assert determine_recommendation(0.8, 3, 0, "reached", 0.8, 0.75) == "complete"


def test_reached_without_quorum_calls_judge():
    assert determine_recommendation(0.5, 3, 0, "reached", 0.65, 0.75) == "call_judge"


def test_open_vote_with_disputes_focuses():
    assert determine_recommendation(0.45, 3, 2, "not-reached", 0.3, 0.75) == "focus_dispute"


def test_open_vote_large_panel_low_score_deadlocks():
    assert determine_recommendation(0.2, 4, 0, "not-reached", 0.25, 0.75) == "deadlock"


def test_small_panel_keeps_going():
    assert determine_recommendation(0.2, 2, 0, "not-reached", 0.5, 0.75) == "continue"


# ----------------------------------------------------------------------
# trend
# ----------------------------------------------------------------------


def test_too_few_rounds_is_stable():
    assert analyze_consensus_trend(_rounds(0.2)) == "stable"


def test_improving_and_degrading():
    assert analyze_consensus_trend(_rounds(0.2, 0.3, 0.5)) == "improving"
    assert analyze_consensus_trend(_rounds(0.9, 0.7, 0.6)) == "degrading"
    assert analyze_consensus_trend(_rounds(0.5, 0.55)) == "stable"


def test_only_last_three_rounds_count():
    assert analyze_consensus_trend(_rounds(0.0, 0.6, 0.6, 0.65)) == "stable"


def test_degrading_low_score_deadlocks():
    updated = update_consensus_with_trend(_snapshot(0.4), _rounds(0.8, 0.6))
    assert updated.trend == "degrading"
    assert updated.recommendation == "deadlock"


def test_improving_promotes_continue_to_judge():
    updated = update_consensus_with_trend(_snapshot(0.65), _rounds(0.3, 0.5))
    assert updated.recommendation == "call_judge"


def test_stable_rounds_drive_completion():
    options = AnalysisOptions(consensus_threshold=0.7, resolution_quorum=0.75, minimum_stable_rounds=2)
    earlier = BounceRound(1, [], _snapshot(0.8, "reached", 1.0), 0.0)
    current = _snapshot(0.8, "reached", 1.0)

    updated = update_consensus_with_trend(current, [earlier], options)
    assert updated.stable_rounds == 2
    assert updated.recommendation == "complete"

    assert update_consensus_with_trend(current, [], options).stable_rounds == 1


# ----------------------------------------------------------------------
# pruning
# ----------------------------------------------------------------------


def test_never_prunes_a_pair():
    responses = [make_response("a", REDIS, stance="agree"), make_response("b", REDIS, stance="agree")]
    assert identify_prunable_participants(responses, 0.8) == []


def test_prunes_echoes_but_keeps_two():
    responses = [make_response(n, REDIS, stance="agree") for n in ("a", "b", "c", "d")]
    pruned = identify_prunable_participants(responses, 0.8)
    assert [(r.participant_session_id, title) for r, title in pruned] == [("b", "A"), ("c", "A")]


def test_different_stance_is_not_an_echo():
    responses = [
        make_response("a", REDIS, stance="strongly_agree"),
        make_response("b", REDIS, stance="disagree"),
        make_response("c", POSTGRES, stance="neutral"),
    ]
    assert identify_prunable_participants(responses, 0.8) == []


# ----------------------------------------------------------------------
# findings
# ----------------------------------------------------------------------


def test_findings_from_agreed_points():
    responses = [make_response("a", "x"), make_response("b", "y")]
    final = ConsensusAnalysis(
        score=0.8, vote_score=0.8, consensus_outcome="reached", level="strong",
        agreed_points=["use redis"], disputed_points=["expiry"],
    )
    findings = extract_debate_findings("d1", "Caching", [BounceRound(1, responses, final, 0.0)], final)

    assert findings.disputes == ["expiry"]
    assert findings.agreements[0].id == "d1-finding-0"
    assert findings.agreements[0].participants == ["A", "B"]
    assert findings.agreements[0].confidence == 0.8


def test_format_groups_by_topic():
    entries = [
        SharedKnowledgeEntry("1", "Caching", "use redis", 0.82, ["A", "B"], 0.0, "d1"),
        SharedKnowledgeEntry("2", "Auth", "use JWTs", 0.7, ["C"], 0.0, "d2"),
    ]
    text = format_knowledge_for_prompt(entries)
    assert text.startswith("# DEBATE FINDINGS (accumulated knowledge)")
    assert "## Caching\n- use redis (82% consensus, A, B)" in text
    assert "## Auth\n- use JWTs (70% consensus, C)" in text


def test_format_knowledge_empty():
    assert format_knowledge_for_prompt([]) == ""


# ----------------------------------------------------------------------
# quick check
# ----------------------------------------------------------------------


def test_quick_check_single_response():
    assert quick_consensus_check([make_response("a", "x")]) == (1.0, "unanimous")


def test_quick_check_all_supporting():
    responses = [make_response("a", "x", stance="agree"), make_response("b", "y", stance="refine")]
    assert quick_consensus_check(responses) == (1.0, "unanimous")


def test_quick_check_mixed():
    responses = [
        make_response("a", "x", stance="agree"),
        make_response("b", "y", stance="neutral"),
        make_response("c", "z", stance="disagree"),
        make_response("d", "w", stance="agree"),
    ]
    assert quick_consensus_check(responses) == (0.5, "partial")
