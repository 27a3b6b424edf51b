"""Deterministic consensus detection over protocol entries."""

import logging

from bounce.protocol.types import AgentStance, ConsensusResult, ProtocolEntry, ProtocolRules

logger = logging.getLogger(__name__)


def get_latest_entries_per_agent(
    entries: list[ProtocolEntry],
    round_number: int | None = None,
) -> dict[str, ProtocolEntry]:
    """Map each author to their last entry, optionally only within one round.

    Entries are in chronological order, so later ones overwrite earlier ones.
    """
    latest: dict[str, ProtocolEntry] = {}
    for entry in entries:
        if round_number is not None and entry.metadata.round != round_number:
            continue
        latest[entry.author] = entry
    return latest


def _latest_round(entries: list[ProtocolEntry]) -> int:
    return max((e.metadata.round for e in entries), default=0)


def _majority(active: list[AgentStance], threshold: float) -> tuple[str, float]:
    approvers = [s for s in active if s.stance == "approve"]
    if not approvers:
        return "not-reached", 0.0
    avg_confidence = sum(s.confidence for s in approvers) / len(approvers)
    reached = len(approvers) > len(active) / 2 and avg_confidence >= threshold
    return ("reached" if reached else "not-reached"), avg_confidence


def _weighted(active: list[AgentStance], threshold: float) -> tuple[str, float]:
    total = 0.0
    for s in active:
        if s.stance == "approve":
            total += s.confidence
        elif s.stance == "reject":
            total -= s.confidence
    score = total / len(active)
    return ("reached" if score >= threshold else "not-reached"), score


def _unanimous(active: list[AgentStance], threshold: float) -> tuple[str, float]:
    if not all(s.stance == "approve" for s in active):
        return "not-reached", 0.0
    score = min(s.confidence for s in active)
    return ("reached" if score >= threshold else "not-reached"), score


_MODES = {
    "majority": _majority,
    "weighted": _weighted,
    "unanimous": _unanimous,
}


def detect_consensus(entries: list[ProtocolEntry], rules: ProtocolRules) -> ConsensusResult:
    """Score the latest round of a session under rules.consensus_mode.

    Only each agent's last entry in the highest round present is counted.
    Missing stances count as neutral and missing confidences as 0. Deferring
    agents are left out of the scoring; if everyone defers the result is a
    deadlock.
    """
    latest_round = _latest_round(entries)
    if latest_round == 0:
        return ConsensusResult(outcome="not-reached", score=0.0, round=0)

    stances = [
        AgentStance(
            agent=agent,
            stance=entry.fields.stance or "neutral",
            confidence=entry.fields.confidence if entry.fields.confidence is not None else 0.0,
        )
        for agent, entry in get_latest_entries_per_agent(entries, latest_round).items()
    ]
    active = [s for s in stances if s.stance != "defer"]

    if not active:
        outcome = "deadlock" if stances else "not-reached"
        return ConsensusResult(outcome=outcome, score=0.0, round=latest_round, agent_stances=stances)

    scorer = _MODES.get(rules.consensus_mode or "")
    if scorer is None:
        logger.warning("Unknown consensus mode %r, treating as not reached", rules.consensus_mode)
        return ConsensusResult(outcome="not-reached", score=0.0, round=latest_round, agent_stances=stances)

    threshold = rules.consensus_threshold if rules.consensus_threshold is not None else 0.0
    outcome, score = scorer(active, threshold)
    logger.debug("Consensus round %d (%s): %s, score %.3f", latest_round, rules.consensus_mode, outcome, score)
    return ConsensusResult(outcome=outcome, score=score, round=latest_round, agent_stances=stances)
