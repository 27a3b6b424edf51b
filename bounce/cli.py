"""Click CLI: orchestrated debates, protocol session files and CLI agent discovery."""

import asyncio
import logging
import sys
from collections.abc import Callable
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn

from bounce.agents.registry import AdapterRegistry
from bounce.agents.subprocess_adapter import ClaudeCodeAdapter
from bounce.coordination.consensus import detect_consensus
from bounce.healthcheck import run_health_checks
from bounce.models import ERROR, WAITING_USER, BounceAction, BounceEvent, BounceState, ParticipantConfig
from bounce.orchestrator import (
    INJECT_MESSAGE,
    JUDGING_STARTED,
    PARTICIPANT_PRUNED,
    PARTICIPANT_THINKING,
    RESUME,
    ROUND_COMPLETE,
    ROUND_STARTED,
    START,
    BounceOrchestrator,
)
from bounce.output import console, export_debate_session, print_final_answer, print_round_summary, save_to_file
from bounce.protocol.lock import LockError
from bounce.protocol.parser import parse_session_file
from bounce.protocol.serializer import append_entry, create_session_file, new_entry
from bounce.protocol.types import ProtocolEntry, ProtocolRules
from bounce.protocol.validator import validate_session
from bounce.providers.anthropic import AnthropicProvider
from bounce.providers.base import AIProvider
from bounce.providers.gemini import GeminiProvider
from bounce.providers.openai_provider import OpenAIProvider
from bounce.providers.transport import ProviderTransport
from bounce.providers.xai import XAIProvider
from bounce.topics import TopicFile, load_topic_file, pick
from config.config_loader import AppConfig, LockConfig, load_config

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "claude": AnthropicProvider,
    "grok": XAIProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _fail(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    sys.exit(1)


def _load_config_or_exit() -> AppConfig:
    try:
        return load_config()
    except (FileNotFoundError, KeyError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


def _lock_options(lock: LockConfig) -> dict[str, float]:
    return {
        "retries": lock.retries,
        "retry_delay_sec": lock.retry_delay_sec,
        "stale_timeout_sec": lock.stale_timeout_sec,
        "lock_timeout_sec": lock.lock_timeout_sec,
    }


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(verbose: bool) -> None:
    """Bounce -- multi-model debates and the Bounce Protocol session format.

    \b
    Examples:
      bounce debate "Should we use REST or GraphQL?" --rounds 2
      bounce debate --file topic.md --models claude,openai --no-interjection
      bounce session new sessions/auth.md --title "Auth redesign" --agent claude --agent codex
      bounce session append sessions/auth.md --author claude --stance approve --confidence 0.8
      bounce session consensus sessions/auth.md
      bounce agents
    """
    # Model responses can contain characters the Windows console codec rejects.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)


# ----------------------------------------------------------------------
# debate
# ----------------------------------------------------------------------


def _build_all_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build all available providers. Returns dict keyed by name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_providers):
        if name not in PROVIDER_CLASSES:
            logger.warning("Provider '%s' unknown, skipping", name)
            continue
        try:
            providers[name] = PROVIDER_CLASSES[name](config.models[name])
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _check_and_filter_providers(all_providers: dict[str, AIProvider]) -> dict[str, AIProvider]:
    """Run health checks, print results, and ask the user what to do on failures."""
    console.print("\n[bold]Checking providers...[/bold]")
    results = asyncio.run(run_health_checks(all_providers))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return all_providers

    working = {n: p for n, p in all_providers.items() if n not in failed_names}
    if not working:
        _fail("No providers passed the health check.")

    console.print(f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}")
    console.print(f"Working providers: {', '.join(sorted(working))}")
    if not click.confirm("Continue with working providers only?", default=True):
        sys.exit(0)

    console.print()
    return working


def _resolve_topic(topic: str | None, topic_file: Path | None) -> TopicFile:
    if topic_file is not None:
        try:
            return load_topic_file(topic_file)
        except ValueError as exc:
            _fail(str(exc))
    if topic:
        return TopicFile(topic=topic, source="cli")
    _fail("Provide a TOPIC argument or --file.")


def _participants(panel: list[str], config: AppConfig) -> list[ParticipantConfig]:
    return [
        ParticipantConfig(
            session_id=name,
            model_id=name,
            title=name.title(),
            system_prompt=config.prompts.personas.get(name),
        )
        for name in panel
    ]


def _on_event(progress: Progress, task_id: TaskID) -> Callable[[BounceEvent], None]:
    def handle(event: BounceEvent) -> None:
        payload = event.payload
        if event.type == ROUND_STARTED:
            progress.update(task_id, description=f"Round {payload['round_number']}...")
        elif event.type == PARTICIPANT_THINKING:
            progress.update(task_id, description=f"Waiting for {payload['session_id']}...")
        elif event.type == ROUND_COMPLETE:
            print_round_summary(payload["round"])
        elif event.type == PARTICIPANT_PRUNED:
            progress.print(f"[yellow]Pruned[/yellow] {payload['model_title']}: {payload['reason']}")
        elif event.type == JUDGING_STARTED:
            progress.update(task_id, description="Judge synthesizing...")

    return handle


async def _drive(orchestrator: BounceOrchestrator, first: BounceAction) -> BounceState:
    """Dispatch first, then keep answering interjection requests until the debate leaves waiting_user."""
    action = first
    while True:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task("Starting debate...", total=None)
            unsubscribe = orchestrator.subscribe(_on_event(progress, task_id))
            try:
                await orchestrator.dispatch(action)
            finally:
                unsubscribe()

        state = orchestrator.get_state()
        if state.status != WAITING_USER:
            return state

        message = click.prompt(
            "Add a message for the next round (empty to continue)", default="", show_default=False
        )
        if message.strip():
            action = BounceAction(type=INJECT_MESSAGE, message=message.strip())
        else:
            action = BounceAction(type=RESUME)


@main.command()
@click.argument("topic", required=False)
@click.option("--file", "topic_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Read the topic from a markdown file with optional front matter")
@click.option("--models", default=None, help="Comma-separated provider list (default: from config)")
@click.option("--judge", default=None, help="Provider that writes the final synthesis")
@click.option("--rounds", default=None, type=int, help="Maximum number of rounds")
@click.option("--mode", default=None, type=click.Choice(["sequential", "parallel"]))
@click.option("--consensus-mode", default=None, type=click.Choice(["majority", "weighted", "unanimous"]))
@click.option("--threshold", default=None, type=float, help="Consensus threshold in [0, 1]")
@click.option("--no-interjection", is_flag=True, help="Never pause between rounds for user input")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--session-log", default=None, type=click.Path(dir_okay=False, path_type=Path),
              help="Also write the debate as a Bounce Protocol session file")
@click.option("--skip-health-check", is_flag=True, help="Skip the API connectivity check at startup")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def debate(
    topic: str | None,
    topic_file: Path | None,
    models: str | None,
    judge: str | None,
    rounds: int | None,
    mode: str | None,
    consensus_mode: str | None,
    threshold: float | None,
    no_interjection: bool,
    output_path: str | None,
    session_log: Path | None,
    skip_health_check: bool,
    verbose: bool,
) -> None:
    """Run an orchestrated debate between configured providers."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = _load_config_or_exit()
    defaults = config.defaults
    topic_spec = _resolve_topic(topic, topic_file)

    cli_models = [m.strip() for m in models.split(",") if m.strip()] if models else None
    panel_names = pick(cli_models, topic_spec.models, defaults.default_panel)
    judge_name = pick(judge, topic_spec.judge, defaults.judge)

    all_providers = _build_all_providers(config)
    if not all_providers:
        _fail("No providers available. Check API keys in .env.")
    if not skip_health_check:
        all_providers = _check_and_filter_providers(all_providers)

    panel = [n for n in panel_names if n in all_providers]
    if len(panel) < 2:
        _fail(f"Need at least 2 providers in the panel, got {len(panel)}. Check API keys in .env or adjust --models.")
    if judge_name not in all_providers:
        logger.warning("Judge '%s' unavailable, using %s", judge_name, panel[0])
        judge_name = panel[0]

    overrides = {
        "mode": pick(mode, topic_spec.mode, defaults.mode),
        "max_rounds": pick(rounds, topic_spec.rounds, defaults.max_rounds),
        "consensus_threshold": pick(threshold, None, defaults.consensus_threshold),
        "consensus_mode": pick(consensus_mode, None, defaults.consensus_mode),
        "minimum_stable_rounds": defaults.minimum_stable_rounds,
        "resolution_quorum": defaults.resolution_quorum,
        "pause_between_responses_sec": defaults.pause_between_responses_sec,
        "allow_user_interjection": defaults.allow_user_interjection and not no_interjection,
        "judge_model_id": judge_name,
        "auto_stop_on_consensus": defaults.auto_stop_on_consensus,
        "enable_pruning": defaults.enable_pruning,
        "pruning_threshold": defaults.pruning_threshold,
        "max_context_tokens": defaults.max_context_tokens,
        "max_response_retries": defaults.max_response_retries,
        "retry_backoff_sec": defaults.retry_backoff_sec,
    }

    participants = _participants(panel, config)
    transport = ProviderTransport({n: all_providers[n] for n in {*panel, judge_name}})
    orchestrator = BounceOrchestrator(transport, config.prompts)

    console.print(
        f"\n[bold cyan]Bounce[/bold cyan] -- {len(panel)} models, up to {overrides['max_rounds']} rounds "
        f"[{overrides['mode']}, {overrides['consensus_mode']}]"
    )
    console.print(f"Panel: {', '.join(panel)}")
    console.print(f"Judge: {judge_name}")
    short_topic = topic_spec.topic[:80] + ("..." if len(topic_spec.topic) > 80 else "")
    console.print(f"Topic: [italic]{short_topic}[/italic]\n")

    start = BounceAction(type=START, topic=topic_spec.topic, participants=participants, config=overrides)
    state = asyncio.run(_drive(orchestrator, start))

    if state.status == ERROR:
        _fail(f"Debate failed: {state.error}")

    print_final_answer(state)

    output_dir = Path(output_path) if output_path else defaults.output_dir
    slug = Path(topic_spec.source).stem if topic_file is not None else None
    saved = save_to_file(state, output_dir, slug_override=slug)
    console.print(f"\n[dim]Saved to: {saved}[/dim]")

    if session_log is not None:
        try:
            asyncio.run(export_debate_session(state, session_log, **_lock_options(config.lock)))
        except (FileExistsError, LockError) as exc:
            _fail(str(exc))
        console.print(f"[dim]Session log: {session_log}[/dim]")


# ----------------------------------------------------------------------
# session
# ----------------------------------------------------------------------


@main.group()
def session() -> None:
    """Create, validate and append to Bounce Protocol session files."""


@session.command("new")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--title", required=True, help="Session name")
@click.option("--agent", "agents", multiple=True, required=True, help="Participating agent (repeatable)")
@click.option("--context", default="", help="Context section text")
@click.option("--turn-order", default="round-robin", type=click.Choice(["round-robin", "free-form", "supervised"]))
@click.option("--max-turns-per-round", default=1, type=int, show_default=True)
@click.option("--turn-timeout", default=300, type=int, show_default=True, help="Seconds")
@click.option("--threshold", default=0.66, type=float, show_default=True)
@click.option("--consensus-mode", default="majority", type=click.Choice(["majority", "weighted", "unanimous"]))
@click.option("--escalation", default="human", type=click.Choice(["human", "default-action", "timeout-skip"]))
@click.option("--max-rounds", default=10, type=int, show_default=True)
@click.option("--output-format", default="structured", type=click.Choice(["structured", "free-text"]))
def session_new(
    path: Path,
    title: str,
    agents: tuple[str, ...],
    context: str,
    turn_order: str,
    max_turns_per_round: int,
    turn_timeout: int,
    threshold: float,
    consensus_mode: str,
    escalation: str,
    max_rounds: int,
    output_format: str,
) -> None:
    """Create a new session file at PATH."""
    rules = ProtocolRules(
        agents=list(agents),
        turn_order=turn_order,
        max_turns_per_round=max_turns_per_round,
        turn_timeout=turn_timeout,
        consensus_threshold=threshold,
        consensus_mode=consensus_mode,
        escalation=escalation,
        max_rounds=max_rounds,
        output_format=output_format,
    )

    async def _create() -> None:
        await create_session_file(path, title, rules, context)

    try:
        asyncio.run(_create())
    except (FileExistsError, LockError) as exc:
        _fail(str(exc))
    console.print(f"[green]Created[/green] {path}")


@session.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def session_validate(path: Path) -> None:
    """Parse and validate PATH. Exits 1 when the session is invalid."""
    result = parse_session_file(path)
    issues = list(result.validation.issues)
    if result.session is not None:
        seen = {(i.code, i.entry_id) for i in issues}
        for issue in validate_session(result.session).issues:
            if (issue.code, issue.entry_id) not in seen:
                issues.append(issue)

    errors = [i for i in issues if i.severity == "error"]
    for issue in issues:
        colour = "red" if issue.severity == "error" else "yellow"
        where = f" (line {issue.line})" if issue.line else ""
        where += f" [entry {issue.entry_id}]" if issue.entry_id else ""
        console.print(f"  [{colour}]{issue.severity.upper():7}[/{colour}] {issue.code}: {escape(issue.message + where)}")

    entries = len(result.session.entries) if result.session else 0
    if errors:
        console.print(f"[bold red]Invalid[/bold red]: {len(errors)} error(s), {len(issues) - len(errors)} warning(s)")
        sys.exit(1)
    console.print(f"[green]Valid[/green]: {entries} entries, {len(issues)} warning(s)")


def _next_position(entries: list[ProtocolEntry], author: str) -> tuple[int, int]:
    """(turn, round) for a new entry: a new round starts once author has already spoken in the latest one."""
    if not entries:
        return 1, 1
    latest_round = max(e.metadata.round for e in entries)
    turn = max(e.metadata.turn for e in entries) + 1
    spoke = any(e.author == author and e.metadata.round == latest_round for e in entries)
    return turn, latest_round + 1 if spoke else latest_round


@session.command("append")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--author", required=True)
@click.option("--stance", default=None, type=click.Choice(["approve", "reject", "neutral", "defer"]))
@click.option("--confidence", default=None, type=click.FloatRange(0.0, 1.0))
@click.option("--summary", default=None)
@click.option("--action", "action_requested", default=None, help="action_requested field")
@click.option("--evidence", default=None)
@click.option("--status", default="yield", type=click.Choice(["open", "in_progress", "closed", "yield"]))
@click.option("--body", default="", help="Free-form entry body")
def session_append(
    path: Path,
    author: str,
    stance: str | None,
    confidence: float | None,
    summary: str | None,
    action_requested: str | None,
    evidence: str | None,
    status: str,
    body: str,
) -> None:
    """Append one entry to PATH under the session file lock."""
    config = _load_config_or_exit()
    result = parse_session_file(path)
    if result.session is None:
        _fail(f"Cannot parse {path}")

    rules = result.session.rules
    if rules is not None and rules.agents and author not in rules.agents:
        console.print(f"[yellow]Warning:[/yellow] {author} is not in the agents list")

    turn, round_number = _next_position(result.session.entries, author)
    entry = new_entry(
        author=author,
        turn=turn,
        round_number=round_number,
        body=body,
        status=status,
        stance=stance,
        confidence=confidence,
        summary=summary,
        action_requested=action_requested,
        evidence=evidence,
    )
    try:
        entry_id = asyncio.run(append_entry(path, entry, **_lock_options(config.lock)))
    except LockError as exc:
        _fail(str(exc))
    console.print(f"[green]Appended[/green] {entry_id} (turn {turn}, round {round_number})")


@session.command("consensus")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def session_consensus(path: Path) -> None:
    """Run consensus detection over the latest round of PATH."""
    result = parse_session_file(path)
    if result.session is None or result.session.rules is None:
        _fail(f"{path} has no readable Protocol Rules section")

    consensus = detect_consensus(result.session.entries, result.session.rules)
    colour = {"reached": "green", "deadlock": "red"}.get(consensus.outcome, "yellow")
    console.print(
        f"Round {consensus.round}: [{colour}]{consensus.outcome}[/{colour}] "
        f"(score {consensus.score:.2f}, mode {result.session.rules.consensus_mode})"
    )
    for stance in consensus.agent_stances:
        console.print(f"  {stance.agent}: {stance.stance} ({stance.confidence:.0%})")


# ----------------------------------------------------------------------
# agents
# ----------------------------------------------------------------------


def _default_registry() -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register(ClaudeCodeAdapter())
    return registry


@main.command()
def agents() -> None:
    """List CLI agent adapters and whether their tools are installed."""
    registry = _default_registry()
    available = {a.name for a in asyncio.run(registry.discover_available())}
    for adapter in registry.list():
        if adapter.name in available:
            console.print(f"  [green]OK     [/green] {adapter.name}")
        else:
            console.print(f"  [red]MISSING[/red] {adapter.name}")


if __name__ == "__main__":
    main()
