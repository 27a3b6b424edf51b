"""Rich console output, markdown transcripts and protocol-log export for debate results."""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from bounce.consensus_analyzer import to_protocol_stance
from bounce.models import BounceResponse, BounceRound, BounceState, ConsensusAnalysis, calculate_bounce_metrics
from bounce.protocol.serializer import append_entry, create_session_file, new_entry
from bounce.protocol.types import ProtocolRules
from bounce.response_parser import format_stance

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_LEVEL_STYLES = {
    "unanimous": "bold green",
    "strong": "green",
    "partial": "yellow",
    "low": "red",
    "none": "bold red",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _response_preview(response: BounceResponse, words: int = 50) -> str:
    all_words = response.content.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def _iso(timestamp: float) -> str:
    if not timestamp:
        return ""
    return (
        datetime.fromtimestamp(timestamp, timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def _summary(response: BounceResponse) -> str:
    if response.key_points:
        return response.key_points[0]
    lines = response.content.strip().splitlines()
    return lines[0][:120] if lines else "n/a"


def print_round_summary(rnd: BounceRound) -> None:
    """Print one panel per response plus the consensus reached at the end of the round."""
    console.print(Rule(f"[bold cyan]Round {rnd.round_number}[/bold cyan]"))
    for resp in rnd.responses:
        console.print(
            Panel(
                Text(_response_preview(resp)),
                title=f"[bold]{resp.model_title}[/bold] ({resp.model_id})",
                subtitle=f"{format_stance(resp.stance)} | {resp.confidence:.0%} | {resp.duration_sec:.1f}s",
                border_style="dim",
            )
        )
    print_consensus(rnd.consensus_at_end)


def print_consensus(analysis: ConsensusAnalysis) -> None:
    style = _LEVEL_STYLES.get(analysis.level, "white")
    line = Text()
    line.append("Consensus: ", style="bold")
    line.append(f"{analysis.level} ({analysis.score:.0%})", style=style)
    line.append(f" | trend {analysis.trend} | next: {analysis.recommendation}", style="dim")
    console.print(line)
    if analysis.proposal_convergence.leading_proposal:
        console.print(
            Text(
                f"Leading proposal ({analysis.proposal_convergence.support_ratio:.0%} support): "
                f"{analysis.proposal_convergence.leading_proposal}",
                style="dim",
            )
        )


def print_final_answer(state: BounceState) -> None:
    """Print the judge's synthesis with a one-line metrics footer."""
    metrics = calculate_bounce_metrics(state)
    console.print(Rule("[bold green]Judge Synthesis[/bold green]"))
    console.print(
        Text(
            f"Judge: {state.config.judge_model_id} | "
            f"Duration: {metrics.total_duration_sec:.1f}s | "
            f"Rounds: {metrics.total_rounds} | "
            f"Responses: {metrics.total_responses} | "
            f"Final consensus: {metrics.final_consensus_score:.0%}",
            style="dim",
        )
    )
    console.print(Markdown(state.final_answer or "_No final answer was produced._"))


def save_to_file(state: BounceState, output_dir: Path, slug_override: str | None = None) -> Path:
    """Save the full debate transcript as a markdown file.

    Args:
        state: Orchestrator state after the debate ended.
        output_dir: Directory to save the file in.
        slug_override: Filename stem to use instead of one derived from the topic.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(state.original_topic)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    metrics = calculate_bounce_metrics(state)
    participants = ", ".join(f"{p.title} ({p.model_id})" for p in state.config.participants)
    consensus = state.consensus

    lines: list[str] = [
        f"# Bounce Debate: {state.original_topic[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Participants:** {participants}",
        f"**Judge:** {state.config.judge_model_id}",
        f"**Mode:** {state.config.mode}",
        f"**Rounds:** {metrics.total_rounds}",
        f"**Duration:** {metrics.total_duration_sec:.1f}s",
        f"**Status:** {state.status}",
    ]
    if consensus is not None:
        lines.append(f"**Final consensus:** {consensus.level} ({consensus.score:.0%})")
    if state.pruned_participants:
        pruned = ", ".join(f"{p.model_title} (round {p.pruned_at_round})" for p in state.pruned_participants)
        lines.append(f"**Pruned:** {pruned}")
    lines += ["", "---", ""]

    for rnd in state.rounds:
        lines.append(f"## Round {rnd.round_number}")
        lines.append("")
        for resp in rnd.responses:
            lines.append(f"### {resp.model_title} ({resp.model_id})")
            lines.append("")
            lines.append(resp.content)
            lines.append("")
            lines.append(
                f"*Stance: {format_stance(resp.stance)} | "
                f"Confidence: {resp.confidence:.0%} | "
                f"Latency: {resp.duration_sec:.2f}s*"
            )
            lines.append("")
        snapshot = rnd.consensus_at_end
        lines.append(f"> Consensus after round {rnd.round_number}: {snapshot.level} ({snapshot.score:.0%})")
        lines.append("")

    if state.final_answer:
        lines += [f"## Final Answer (by {state.config.judge_model_id})", "", state.final_answer, ""]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Debate saved to: %s", filepath)
    return filepath


async def export_debate_session(state: BounceState, path: Path, **lock_options: float) -> Path:
    """Write a finished debate as a Bounce Protocol session log, one entry per response.

    Raises:
        FileExistsError: If path already exists.
    """
    agents = [p.session_id for p in state.config.participants]
    for rnd in state.rounds:
        for resp in rnd.responses:
            if resp.participant_session_id not in agents:
                agents.append(resp.participant_session_id)

    rules = ProtocolRules(
        agents=agents,
        turn_order="round-robin",
        max_turns_per_round=max(1, len(agents)),
        turn_timeout=300,
        consensus_threshold=state.config.consensus_threshold,
        consensus_mode=state.config.consensus_mode,
        escalation="human",
        max_rounds=max(state.config.max_rounds, len(state.rounds)),
        output_format="structured",
    )
    topic_lines = state.original_topic.strip().splitlines()
    title = topic_lines[0][:80] if topic_lines else "Debate"
    await create_session_file(path, title, rules, state.original_topic.strip())

    turn = 0
    for rnd in state.rounds:
        for resp in rnd.responses:
            turn += 1
            entry = new_entry(
                author=resp.participant_session_id,
                turn=turn,
                round_number=rnd.round_number,
                body=resp.content,
                stance=to_protocol_stance(resp.stance),
                confidence=round(resp.confidence, 2),
                summary=_summary(resp),
                action_requested="n/a",
                evidence="n/a",
            )
            entry.timestamp = _iso(resp.timestamp)
            await append_entry(path, entry, **lock_options)

    logger.info("Exported %d entries to %s", turn, path)
    return Path(path)
