"""Prompt assembly for debate participants and the judge."""

import logging
import math
import re

from bounce.models import BounceResponse, ConsensusAnalysis
from bounce.response_parser import format_stance
from config.config_loader import PromptsConfig

logger = logging.getLogger(__name__)

RESPONSE_SEPARATOR = "\n---\n\n"


def estimate_tokens(text: str) -> int:
    """Rough token count: words x 1.3, rounded up."""
    return math.ceil(len(re.split(r"\s+", text)) * 1.3)


def participant_system_prompt(prompts: PromptsConfig, title: str, extra: str | None = None) -> str:
    prompt = prompts.participant_system.format(title=title)
    if extra:
        prompt += f"\n\nAdditional Context:\n{extra}"
    return prompt


def judge_system_prompt(prompts: PromptsConfig) -> str:
    return prompts.judge_system


def initial_prompt(prompts: PromptsConfig, topic: str) -> str:
    return prompts.initial.format(topic=topic)


def _full_block(r: BounceResponse) -> str:
    block = f"### {r.model_title}\n**Stance**: {format_stance(r.stance)}\n\n{r.content}\n\n"
    if r.key_points:
        block += "**Key Points**:\n" + "\n".join(f"- {p}" for p in r.key_points)
    return block + "\n"


def _condensed_block(r: BounceResponse) -> str:
    points = "\n".join(f"- {p}" for p in r.key_points) or "- (no key points extracted)"
    return (
        f"### {r.model_title} *(condensed)*\n"
        f"**Stance**: {format_stance(r.stance)}\n"
        f"**Key Points**:\n{points}\n"
    )


def history_prompt(
    prompts: PromptsConfig,
    topic: str,
    previous: list[BounceResponse],
    round_number: int,
    max_context_tokens: int | None = None,
) -> str:
    """Prompt for every turn after the first, quoting all earlier responses.

    When the quoted responses would push the prompt past max_context_tokens,
    responses are condensed to stance and key points, oldest first. The
    newest one is condensed last, and only if still over budget.
    """
    frame_tokens = estimate_tokens(prompts.history.format(topic=topic, round=round_number, responses=""))
    full = [_full_block(r) for r in previous]
    full_text = RESPONSE_SEPARATOR.join(full)

    if not max_context_tokens or estimate_tokens(full_text) + frame_tokens <= max_context_tokens:
        return prompts.history.format(topic=topic, round=round_number, responses=full_text)

    condensed = [_condensed_block(r) for r in previous]
    full_tokens = [estimate_tokens(b) for b in full]
    condensed_tokens = [estimate_tokens(b) for b in condensed]
    separators = max(len(full) - 1, 0) * estimate_tokens(RESPONSE_SEPARATOR)
    total = sum(full_tokens) + separators + frame_tokens

    blocks = list(full)
    for i in range(len(blocks) - 1):
        if total <= max_context_tokens:
            break
        total += condensed_tokens[i] - full_tokens[i]
        blocks[i] = condensed[i]

    if total > max_context_tokens and blocks:
        total += condensed_tokens[-1] - full_tokens[-1]
        blocks[-1] = condensed[-1]

    logger.debug("History condensed to ~%d tokens (budget %d)", total, max_context_tokens)
    return prompts.history.format(topic=topic, round=round_number, responses=RESPONSE_SEPARATOR.join(blocks))


def judge_synthesis_prompt(
    prompts: PromptsConfig,
    topic: str,
    responses: list[BounceResponse],
    consensus: ConsensusAnalysis,
) -> str:
    summary = RESPONSE_SEPARATOR.join(
        f"### {r.model_title} ({format_stance(r.stance)})\n{r.content}\n\n"
        f"Key Points: {'; '.join(r.key_points) or 'Not specified'}\n"
        for r in responses
    )
    return prompts.judge_synthesis.format(
        topic=topic,
        responses=summary,
        level=consensus.level,
        percent=round(consensus.score * 100),
        agreed="; ".join(consensus.agreed_points) or "None identified",
        disputed="; ".join(consensus.disputed_points) or "None identified",
        stances=", ".join(f"{k}: {v}" for k, v in consensus.stance_breakdown.items()),
    )


def interjection_prompt(
    prompts: PromptsConfig,
    topic: str,
    current_round: int,
    consensus: ConsensusAnalysis,
) -> str:
    return prompts.interjection.format(
        topic=topic,
        round=current_round,
        level=consensus.level,
        percent=round(consensus.score * 100),
        agreed="\n".join(f"- {p}" for p in consensus.agreed_points) or "- None yet identified",
        disputed="\n".join(f"- {p}" for p in consensus.disputed_points) or "- None yet identified",
    )
