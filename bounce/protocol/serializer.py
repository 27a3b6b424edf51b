"""Render sessions and entries as Bounce Protocol markdown; append-only file writes."""

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from bounce.protocol.lock import with_file_lock
from bounce.protocol.types import (
    FIELD_KEYS,
    PROTOCOL_VERSION,
    RULE_KEYS,
    EntryFields,
    EntryMetadata,
    ProtocolEntry,
    ProtocolRules,
)

logger = logging.getLogger(__name__)


def iso_now() -> str:
    """UTC timestamp in the 2025-01-01T12:00:00.000Z form used throughout session files."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _format_value(value: object) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def serialize_rules(rules: ProtocolRules) -> str:
    """Render the body of the rules block, without the fence lines."""
    lines = ["agents:"]
    lines.extend(f"  - {agent}" for agent in rules.agents or [])
    for attr, key in RULE_KEYS.items():
        if attr == "agents":
            continue
        lines.append(f"{key}: {_format_value(getattr(rules, attr))}")
    return "\n".join(lines)


def create_session(
    session_name: str,
    rules: ProtocolRules,
    context: str,
    session_id: str | None = None,
    created: str | None = None,
) -> str:
    """Build a complete new session document with an empty Dialogue section."""
    lines = [
        f"<!-- bounce-protocol: {PROTOCOL_VERSION} -->",
        f"<!-- created: {created or iso_now()} -->",
        f"<!-- session-id: {session_id or str(uuid.uuid4())} -->",
        "",
        f"# Bounce Session: {session_name}",
        "",
        "## Protocol Rules",
        "",
        "```yaml",
        serialize_rules(rules),
        "```",
        "",
        "## Context",
        "",
        context,
        "",
        "## Dialogue",
        "",
    ]
    return "\n".join(lines)


def serialize_entry(entry: ProtocolEntry) -> str:
    """Render one entry block, always closed by a yield marker.

    An empty entry id or timestamp is filled in with a fresh UUID4 or the
    current time. Fields that are None are left out.
    """
    entry_id = entry.metadata.entry_id or str(uuid.uuid4())
    timestamp = entry.timestamp or iso_now()

    lines = [
        f"<!-- entry: {entry_id} -->",
        f"<!-- turn: {entry.metadata.turn} round: {entry.metadata.round} -->",
        f"{timestamp} [author: {entry.author}] [status: {entry.status}]",
    ]
    for attr, key in FIELD_KEYS.items():
        value = getattr(entry.fields, attr)
        if value is not None:
            lines.append(f"{key}: {_format_value(value)}")

    if entry.body:
        lines += ["", entry.body]

    lines += ["", "<!-- yield -->", ""]
    return "\n".join(lines)


async def append_entry(path: str | Path, entry: ProtocolEntry, **lock_options: float) -> str:
    """Append entry to the end of the session file under the file lock.

    Existing bytes are never rewritten: the new block is written after the
    current content, preceded by a newline only if the file lacks a trailing one.

    Returns:
        The id of the appended entry (generated when the entry had none).
    """
    path = Path(path)
    entry_id = entry.metadata.entry_id or str(uuid.uuid4())
    entry = replace(entry, metadata=replace(entry.metadata, entry_id=entry_id))
    block = serialize_entry(entry)

    async def _append() -> None:
        existing = path.read_text(encoding="utf-8")
        separator = "" if existing.endswith("\n") else "\n"
        with path.open("a", encoding="utf-8", newline="") as f:
            f.write(separator + block)

    await with_file_lock(path, _append, **lock_options)
    logger.info("Appended entry %s (round %d) by %s to %s", entry_id, entry.metadata.round, entry.author, path)
    return entry_id


async def create_session_file(
    path: str | Path,
    session_name: str,
    rules: ProtocolRules,
    context: str,
    session_id: str | None = None,
    created: str | None = None,
) -> Path:
    """Write a new session document to path.

    Raises:
        FileExistsError: If path already exists; session files are never overwritten.
    """
    path = Path(path)
    document = create_session(session_name, rules, context, session_id=session_id, created=created)
    path.parent.mkdir(parents=True, exist_ok=True)

    async def _create() -> None:
        if path.exists():
            raise FileExistsError(f"Session file already exists: {path}")
        path.write_text(document, encoding="utf-8", newline="")

    await with_file_lock(path, _create)
    logger.info("Created session %s at %s", session_name, path)
    return path


def new_entry(
    author: str,
    turn: int,
    round_number: int,
    body: str = "",
    status: str = "open",
    **fields: object,
) -> ProtocolEntry:
    """Convenience constructor for an entry that has not been written yet."""
    return ProtocolEntry(
        metadata=EntryMetadata(entry_id="", turn=turn, round=round_number),
        timestamp="",
        author=author,
        status=status,
        fields=EntryFields(**fields),
        body=body,
    )
