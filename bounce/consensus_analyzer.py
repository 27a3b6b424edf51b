"""Consensus analysis over free-text debate responses.

Combines three signals into one score in [0, 1]:

- the protocol vote (detect_consensus over the responses mapped to
  protocol stances), normalised to [0, 1]        45%
- proposal convergence: the share of participants whose proposed
  resolution falls in the largest cluster         35%
- semantic agreement: pairwise text similarity blended with stance
  alignment                                       20%

The vote outcome and support ratio also gate the recommendation, so a
friendly tone alone never reads as consensus.
"""

import logging
import math
import re
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from bounce.coordination.consensus import detect_consensus
from bounce.models import (
    BounceConfig,
    BounceResponse,
    BounceRound,
    ConsensusAnalysis,
    DebateFindings,
    ProposalConvergence,
    SharedKnowledgeEntry,
)
from bounce.protocol.types import EntryFields, EntryMetadata, ProtocolEntry, ProtocolRules

logger = logging.getLogger(__name__)

CLUSTER_SIMILARITY = 0.62
POINT_SIMILARITY = 0.5
MAX_POINTS = 5
MAX_UNCLEAR_POINTS = 3

_STANCE_VALUES = {
    "strongly_agree": 1.0,
    "agree": 0.75,
    "refine": 0.6,
    "synthesize": 0.5,
    "neutral": 0.5,
    "disagree": 0.25,
    "strongly_disagree": 0.0,
}

_SUPPORTING = frozenset({"strongly_agree", "agree", "refine", "synthesize"})
_OPPOSING = frozenset({"disagree", "strongly_disagree"})

_PROPOSAL_PATTERNS = [
    re.compile(r"(?:^|\n)\s*(?:\*\*)?proposed[_\s-]?resolution(?:\*\*)?\s*[:\-]\s*(.+)", re.IGNORECASE),
    re.compile(r"(?:^|\n)\s*(?:\*\*)?final[_\s-]?recommendation(?:\*\*)?\s*[:\-]\s*(.+)", re.IGNORECASE),
    re.compile(r"(?:^|\n)\s*(?:\*\*)?recommendation(?:\*\*)?\s*[:\-]\s*(.+)", re.IGNORECASE),
    re.compile(r"(?:^|\n)\s*(?:\*\*)?conclusion(?:\*\*)?\s*[:\-]\s*(.+)", re.IGNORECASE),
]
_SENTENCE_END = re.compile(r"[.!?](?:\s|$)")


@dataclass
class AnalysisOptions:
    consensus_mode: str = "weighted"
    consensus_threshold: float = 0.7
    resolution_quorum: float = 0.75
    minimum_stable_rounds: int = 2

    @classmethod
    def from_config(cls, config: BounceConfig) -> "AnalysisOptions":
        return cls(
            consensus_mode=config.consensus_mode,
            consensus_threshold=config.consensus_threshold,
            resolution_quorum=config.resolution_quorum,
            minimum_stable_rounds=config.minimum_stable_rounds,
        )


def word_similarity(text1: str, text2: str) -> float:
    """Jaccard index over the distinct words longer than three characters."""
    if not text1 or not text2:
        return 0.0

    def words(text: str) -> set[str]:
        return {w for w in re.sub(r"[^\w\s]", " ", text.lower()).split() if len(w) > 3}

    words1, words2 = words(text1), words(text2)
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


def bigram_similarity(text1: str, text2: str) -> float:
    """Jaccard index over adjacent word pairs."""

    def bigrams(text: str) -> set[str]:
        words = re.sub(r"[^\w\s]", "", text.lower()).split()
        return {f"{a} {b}" for a, b in zip(words, words[1:])}

    bigrams1, bigrams2 = bigrams(text1), bigrams(text2)
    if not bigrams1 or not bigrams2:
        return 0.0
    return len(bigrams1 & bigrams2) / len(bigrams1 | bigrams2)


def combined_similarity(text1: str, text2: str) -> float:
    return word_similarity(text1, text2) * 0.6 + bigram_similarity(text1, text2) * 0.4


def stance_to_numeric(stance: str) -> float:
    return _STANCE_VALUES.get(stance, 0.5)


def stance_alignment(responses: list[BounceResponse]) -> float:
    """1.0 when every stance is equal, 0.0 at the variance of an even agree/disagree split."""
    if len(responses) < 2:
        return 1.0
    values = [stance_to_numeric(r.stance) for r in responses]
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return max(0.0, min(1.0, 1 - variance / 0.25))


def to_protocol_stance(stance: str) -> str:
    if stance in _SUPPORTING:
        return "approve"
    if stance in _OPPOSING:
        return "reject"
    return "neutral"


def _protocol_rules(responses: list[BounceResponse], options: AnalysisOptions) -> ProtocolRules:
    return ProtocolRules(
        agents=[r.participant_session_id for r in responses],
        turn_order="round-robin",
        max_turns_per_round=1,
        turn_timeout=300,
        consensus_threshold=options.consensus_threshold,
        consensus_mode=options.consensus_mode,
        escalation="human",
        max_rounds=10,
        output_format="structured",
    )


def _protocol_entries(responses: list[BounceResponse]) -> list[ProtocolEntry]:
    entries = []
    for index, r in enumerate(responses):
        timestamp = datetime.fromtimestamp(r.timestamp, timezone.utc).isoformat(timespec="milliseconds")
        entries.append(
            ProtocolEntry(
                metadata=EntryMetadata(
                    entry_id=f"{r.participant_session_id}-{r.timestamp}-{index}",
                    turn=index + 1,
                    round=1,
                ),
                timestamp=timestamp.replace("+00:00", "Z"),
                author=r.participant_session_id,
                status="yield",
                fields=EntryFields(
                    stance=to_protocol_stance(r.stance),
                    confidence=r.confidence,
                    summary=r.key_points[0] if r.key_points else r.content[:120],
                    action_requested="n/a",
                    evidence="n/a",
                ),
                body=r.content,
            )
        )
    return entries


def _normalize_vote_score(score: float, mode: str) -> float:
    if mode == "weighted":
        # weighted scores live in [-1, 1]
        score = (score + 1) / 2
    return max(0.0, min(1.0, score))


def extract_proposed_resolution(response: BounceResponse) -> str:
    """The response's one-line proposal.

    Looks for a PROPOSED_RESOLUTION, final recommendation, recommendation or
    conclusion line, then the first key point, then the first sentence
    longer than 20 characters.
    """
    content = response.content or ""
    for pattern in _PROPOSAL_PATTERNS:
        match = pattern.search(content)
        if match and match.group(1):
            return match.group(1).strip()[:280]

    if response.key_points:
        return response.key_points[0].strip()[:280]

    flattened = re.sub(r"\s+", " ", content)
    first_sentence = next(
        (s.strip() for s in _SENTENCE_END.split(flattened) if len(s.strip()) > 20),
        None,
    )
    return (first_sentence or content[:180]).strip()


def extract_proposal_convergence(responses: list[BounceResponse]) -> ProposalConvergence:
    """Cluster proposals greedily by similarity to each cluster's first member.

    The leading cluster is the largest one, ties broken by mean confidence.
    """
    if not responses:
        return ProposalConvergence()

    clusters: list[tuple[str, list[str], list[float]]] = []
    for r in responses:
        proposal = extract_proposed_resolution(r)
        for leader, members, confidences in clusters:
            if combined_similarity(leader, proposal) >= CLUSTER_SIMILARITY:
                members.append(r.participant_session_id)
                confidences.append(r.confidence)
                break
        else:
            clusters.append((proposal, [r.participant_session_id], [r.confidence]))

    clusters.sort(key=lambda c: (-len(c[1]), -sum(c[2]) / len(c[2])))
    leader, supporters, _ = clusters[0]
    supporter_set = set(supporters)
    return ProposalConvergence(
        leading_proposal=leader,
        support_ratio=len(supporters) / len(responses),
        supporters=list(supporters),
        dissenters=[r.participant_session_id for r in responses if r.participant_session_id not in supporter_set],
    )


def _find_common_points(responses: list[BounceResponse]) -> list[str]:
    if len(responses) < 2:
        return []

    counts: dict[str, int] = {}
    for point in (p for r in responses for p in r.key_points):
        normalized = point.lower().strip()
        for existing in counts:
            if word_similarity(normalized, existing) > POINT_SIMILARITY:
                counts[existing] += 1
                break
        else:
            counts[normalized] = 1

    majority = math.ceil(len(responses) / 2)
    return [point for point, count in counts.items() if count >= majority][:MAX_POINTS]


def _find_disputed_points(responses: list[BounceResponse]) -> list[str]:
    unique: list[str] = []
    for disagreement in (d for r in responses for d in r.disagreements):
        normalized = disagreement.lower().strip()
        if not any(word_similarity(normalized, existing) > POINT_SIMILARITY for existing in unique):
            unique.append(normalized)
    return unique[:MAX_POINTS]


def _level(score: float) -> str:
    if score >= 0.85:
        return "unanimous"
    if score >= 0.65:
        return "strong"
    if score >= 0.45:
        return "partial"
    if score >= 0.25:
        return "low"
    return "none"


def determine_recommendation(
    score: float,
    participant_count: int,
    dispute_count: int,
    outcome: str,
    support_ratio: float,
    quorum: float,
) -> str:
    if outcome == "deadlock":
        return "deadlock"
    if outcome == "reached" and support_ratio >= quorum and score >= 0.75:
        return "complete"
    if outcome == "reached" and support_ratio >= 0.6:
        return "call_judge"
    if score >= 0.65:
        return "call_judge"
    if dispute_count > 0 and score < 0.5:
        return "focus_dispute"
    if score < 0.4 and participant_count < 3:
        return "continue"
    # Fallback deadlock while the vote itself is still open.
    if score < 0.3 and participant_count >= 3:
        return "deadlock"
    return "continue"


def analyze_consensus(
    responses: list[BounceResponse],
    options: AnalysisOptions | None = None,
) -> ConsensusAnalysis:
    """Score one round of responses.

    trend and stable_rounds are left at their defaults; see
    update_consensus_with_trend().
    """
    options = options or AnalysisOptions()

    if not responses:
        return ConsensusAnalysis(score=0.0, vote_score=0.0, consensus_outcome="not-reached", level="none")

    if len(responses) == 1:
        only = responses[0]
        return ConsensusAnalysis(
            score=1.0,
            vote_score=1.0,
            consensus_outcome="reached",
            level="unanimous",
            agreed_points=list(only.key_points),
            stance_breakdown={only.participant_session_id: only.stance},
            recommendation="complete",
            stable_rounds=1,
            proposal_convergence=ProposalConvergence(
                leading_proposal=extract_proposed_resolution(only),
                support_ratio=1.0,
                supporters=[only.participant_session_id],
            ),
        )

    similarities = [
        combined_similarity(a.content, b.content)
        for i, a in enumerate(responses)
        for b in responses[i + 1:]
    ]
    avg_similarity = sum(similarities) / len(similarities)
    alignment = stance_alignment(responses)

    vote = detect_consensus(_protocol_entries(responses), _protocol_rules(responses, options))
    convergence = extract_proposal_convergence(responses)

    semantic = avg_similarity * 0.7 + alignment * 0.3
    score = (
        _normalize_vote_score(vote.score, options.consensus_mode) * 0.45
        + convergence.support_ratio * 0.35
        + semantic * 0.20
    )

    agreed = _find_common_points(responses)
    disputed = _find_disputed_points(responses)
    unclear = [
        point
        for r in responses
        for point in r.key_points
        if not any(word_similarity(a, point) > POINT_SIMILARITY for a in agreed)
        and not any(word_similarity(d, point) > POINT_SIMILARITY for d in disputed)
    ][:MAX_UNCLEAR_POINTS]

    recommendation = determine_recommendation(
        score,
        len(responses),
        len(disputed),
        vote.outcome,
        convergence.support_ratio,
        options.resolution_quorum,
    )
    logger.debug(
        "Consensus: score %.3f (vote %s %.3f, support %.2f, semantic %.3f) -> %s",
        score, vote.outcome, vote.score, convergence.support_ratio, semantic, recommendation,
    )

    return ConsensusAnalysis(
        score=score,
        vote_score=vote.score,
        consensus_outcome=vote.outcome,
        level=_level(score),
        agreed_points=agreed,
        disputed_points=disputed,
        unclear_points=unclear,
        stance_breakdown={r.participant_session_id: r.stance for r in responses},
        recommendation=recommendation,
        proposal_convergence=convergence,
    )


def analyze_consensus_trend(rounds: list[BounceRound]) -> str:
    """Compare the latest round score with the one up to two rounds earlier."""
    if len(rounds) < 2:
        return "stable"
    recent = [r.consensus_at_end.score for r in rounds][-3:]
    delta = recent[-1] - recent[0]
    if delta > 0.1:
        return "improving"
    if delta < -0.1:
        return "degrading"
    return "stable"


def update_consensus_with_trend(
    current: ConsensusAnalysis,
    rounds: list[BounceRound],
    options: AnalysisOptions | None = None,
) -> ConsensusAnalysis:
    """Fill in trend and stable_rounds for current and adjust its recommendation.

    stable_rounds counts consecutive snapshots, newest first and including
    current, where the vote was reached and both threshold and quorum held.
    """
    options = options or AnalysisOptions()
    trend = analyze_consensus_trend(rounds)

    stable_rounds = 0
    for snapshot in reversed([r.consensus_at_end for r in rounds] + [current]):
        if (
            snapshot.consensus_outcome == "reached"
            and snapshot.score >= options.consensus_threshold
            and snapshot.proposal_convergence.support_ratio >= options.resolution_quorum
        ):
            stable_rounds += 1
            continue
        break

    recommendation = current.recommendation
    if trend == "degrading" and current.score < 0.5:
        recommendation = "deadlock"
    elif trend == "improving" and current.score > 0.6 and recommendation == "continue":
        recommendation = "call_judge"

    if (
        current.consensus_outcome == "reached"
        and current.proposal_convergence.support_ratio >= options.resolution_quorum
        and stable_rounds >= options.minimum_stable_rounds
    ):
        recommendation = "complete"

    return replace(current, trend=trend, recommendation=recommendation, stable_rounds=stable_rounds)


def identify_prunable_participants(
    responses: list[BounceResponse],
    threshold: float,
) -> list[tuple[BounceResponse, str]]:
    """Responses that repeat an earlier participant, paired with that participant's title.

    A response is redundant when its text is at least threshold similar to a
    kept response and its stance sits within 0.15 of that response's stance.
    At least two participants always remain.
    """
    if len(responses) <= 2:
        return []

    kept: list[BounceResponse] = []
    prunable: list[tuple[BounceResponse, str]] = []
    for response in responses:
        similar_to = next(
            (
                k for k in kept
                if combined_similarity(response.content, k.content) >= threshold
                and abs(stance_to_numeric(response.stance) - stance_to_numeric(k.stance)) <= 0.15
            ),
            None,
        )
        if similar_to is None:
            kept.append(response)
        else:
            prunable.append((response, similar_to.model_title))

    return prunable[: len(responses) - 2]


def extract_debate_findings(
    debate_id: str,
    topic: str,
    rounds: list[BounceRound],
    final_consensus: ConsensusAnalysis,
) -> DebateFindings:
    titles = list(dict.fromkeys(r.model_title for rnd in rounds for r in rnd.responses))
    captured_at = time.time()
    agreements = [
        SharedKnowledgeEntry(
            id=f"{debate_id}-finding-{i}",
            debate_topic=topic,
            finding=point,
            confidence=final_consensus.score,
            participants=titles,
            captured_at=captured_at,
            source_debate_id=debate_id,
        )
        for i, point in enumerate(final_consensus.agreed_points)
    ]
    return DebateFindings(
        agreements=agreements,
        disputes=list(final_consensus.disputed_points),
        consensus_score=final_consensus.score,
        topic=topic,
        debate_id=debate_id,
    )


def format_knowledge_for_prompt(entries: list[SharedKnowledgeEntry]) -> str:
    """Render findings grouped by debate topic, ready to prepend to a system prompt."""
    if not entries:
        return ""

    grouped: dict[str, list[SharedKnowledgeEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.debate_topic, []).append(entry)

    sections = []
    for topic, findings in grouped.items():
        lines = [
            f"- {f.finding} ({round(f.confidence * 100)}% consensus, {', '.join(f.participants)})"
            for f in findings
        ]
        sections.append(f"## {topic}\n" + "\n".join(lines))
    return "# DEBATE FINDINGS (accumulated knowledge)\n\n" + "\n\n".join(sections)


def quick_consensus_check(responses: list[BounceResponse]) -> tuple[float, str]:
    """Stance-only (score, level), cheap enough to run after every response."""
    if len(responses) < 2:
        return 1.0, "unanimous"

    agreeing = sum(1 for r in responses if r.stance in _SUPPORTING)
    disagreeing = sum(1 for r in responses if r.stance in _OPPOSING)
    score = agreeing / len(responses)

    if disagreeing == 0 and agreeing == len(responses):
        level = "unanimous"
    elif score >= 0.7:
        level = "strong"
    elif score >= 0.5:
        level = "partial"
    elif score >= 0.3:
        level = "low"
    else:
        level = "none"
    return score, level
