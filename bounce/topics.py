"""Topic files: markdown body with optional YAML front matter overriding debate settings."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import frontmatter

logger = logging.getLogger(__name__)


@dataclass
class TopicFile:
    """Debate topic plus the settings its front matter overrides (None = not set)."""

    topic: str
    source: str
    rounds: int | None = None
    models: list[str] | None = None
    mode: str | None = None
    judge: str | None = None


def _split_models(value: Any) -> list[str]:
    if isinstance(value, str):
        return [m.strip() for m in value.split(",") if m.strip()]
    return [str(m).strip() for m in value if str(m).strip()]


def load_topic_file(path: Path) -> TopicFile:
    """Parse a topic file. Files without front matter give a TopicFile with only topic set.

    Raises ValueError when the body is empty.
    """
    post = frontmatter.load(str(path))
    topic = post.content.strip()
    if not topic:
        raise ValueError(f"Topic file has no body: {path}")

    meta = dict(post.metadata)
    unknown = set(meta) - {"rounds", "models", "mode", "judge"}
    if unknown:
        logger.warning("Ignoring unknown front matter keys in %s: %s", path, ", ".join(sorted(unknown)))

    return TopicFile(
        topic=topic,
        source=str(path),
        rounds=int(meta["rounds"]) if "rounds" in meta else None,
        models=_split_models(meta["models"]) if "models" in meta else None,
        mode=str(meta["mode"]) if "mode" in meta else None,
        judge=str(meta["judge"]) if "judge" in meta else None,
    )


def pick(cli_value: Any, topic_value: Any, default: Any) -> Any:
    """CLI flag wins over front matter, front matter wins over the config default."""
    if cli_value is not None:
        return cli_value
    if topic_value is not None:
        return topic_value
    return default
