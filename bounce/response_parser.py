"""Heuristic extraction of stance, key points, agreements and confidence from free-text answers."""

import logging
import re

logger = logging.getLogger(__name__)

_STRUCTURED_STANCE = re.compile(r"(?:^|\n)\s*(?:\*\*)?stance(?:\*\*)?\s*[:\-]\s*([a-z_ \t-]+)", re.IGNORECASE)

# Checked in order; each stance must come before any stance it contains.
_STRUCTURED_STANCE_ORDER = (
    "strongly_disagree",
    "strongly_agree",
    "disagree",
    "agree",
    "refine",
    "synthesize",
    "neutral",
)

_STANCE_PHRASES: list[tuple[str, tuple[str, ...]]] = [
    ("strongly_agree", ("strongly agree", "completely agree", "fully support")),
    ("strongly_disagree", ("strongly disagree", "completely disagree", "cannot support")),
    ("disagree", ("i disagree", "disagree with", "oppose")),
    ("agree", ("i agree", "agree with", "support this")),
    ("refine", ("refine", "build upon", "extend")),
    ("synthesize", ("synthesize", "combine", "merge")),
]

_POSITIVE_SIGNALS = ("yes", "correct", "valid", "good point", "makes sense", "agree")
_NEGATIVE_SIGNALS = ("no", "incorrect", "invalid", "flawed", "wrong", "disagree")

_LIST_PATTERNS = [
    re.compile(r"\d+\.\s*\*\*([^*]+)\*\*"),   # 1. **Point**
    re.compile(r"\d+\.\s+([^\n]+)"),          # 1. Point
    re.compile(r"[-•]\s*\*\*([^*]+)\*\*"),    # - **Point**
    re.compile(r"[-•]\s+([^\n]+)"),           # - Point
]
_KEY_POINTS_SECTION = re.compile(r"key points?:?\s*([\s\S]*?)(?=\n\n|\n#|$)", re.IGNORECASE)
_LIST_MARKER = re.compile(r"^[-•\d.]\s*")

_AGREEMENT_PATTERNS = [
    re.compile(r"i agree (?:with|that) ([^.]+)", re.IGNORECASE),
    re.compile(r"(?:agree|concur) (?:with|on) ([^.]+)", re.IGNORECASE),
    re.compile(r"(?:correct|valid|good) point (?:about|regarding|on) ([^.]+)", re.IGNORECASE),
]
_DISAGREEMENT_PATTERNS = [
    re.compile(r"i disagree (?:with|that) ([^.]+)", re.IGNORECASE),
    re.compile(r"(?:disagree|differ) (?:with|on) ([^.]+)", re.IGNORECASE),
    re.compile(r"(?:incorrect|flawed|wrong) (?:about|regarding|on) ([^.]+)", re.IGNORECASE),
    re.compile(r"however,?\s+([^.]+)", re.IGNORECASE),
    re.compile(r"but\s+([^.]+)", re.IGNORECASE),
]

_EXPLICIT_CONFIDENCE = re.compile(r"confidence[:\s]+(\d+)%")
_CONFIDENCE_KEYWORDS: list[tuple[float, tuple[str, ...]]] = [
    (0.85, ("high confidence", "very confident")),
    (0.65, ("moderate confidence", "fairly confident")),
    (0.4, ("low confidence", "uncertain")),
    (0.8, ("definitely", "certainly", "absolutely")),
    (0.65, ("probably", "likely")),
    (0.45, ("possibly", "maybe", "might")),
]
DEFAULT_CONFIDENCE = 0.6

MAX_KEY_POINTS = 5
MAX_POSITIONS = 3


def parse_stance(content: str) -> str:
    """Classify a response into one of the seven response stances.

    A ``STANCE:`` line wins. Otherwise stock phrases in the first 500
    characters decide, and as a last resort a count of positive against
    negative signal words anywhere in the text. Defaults to neutral.
    """
    match = _STRUCTURED_STANCE.search(content)
    if match:
        raw = re.sub(r"\s+", "_", match.group(1).strip().lower())
        for stance in _STRUCTURED_STANCE_ORDER:
            if stance in raw:
                return stance

    lower = content.lower()
    opening = lower[:500]
    for stance, phrases in _STANCE_PHRASES:
        if any(p in opening for p in phrases):
            return stance

    positive = sum(1 for s in _POSITIVE_SIGNALS if s in lower)
    negative = sum(1 for s in _NEGATIVE_SIGNALS if s in lower)
    if positive > negative + 2:
        return "agree"
    if negative > positive + 2:
        return "disagree"
    return "neutral"


def extract_key_points(content: str) -> list[str]:
    """Up to five list items, falling back to the lines under a "Key Points" label."""
    points: list[str] = []
    for pattern in _LIST_PATTERNS:
        for match in pattern.finditer(content):
            point = match.group(1).strip()
            if 10 < len(point) < 200 and point not in points:
                points.append(point)

    if not points:
        section = _KEY_POINTS_SECTION.search(content)
        if section:
            lines = [line for line in section.group(1).split("\n") if line.strip()]
            points.extend(_LIST_MARKER.sub("", line).strip() for line in lines[:MAX_KEY_POINTS])

    return points[:MAX_KEY_POINTS]


def _collect(patterns: list[re.Pattern[str]], content: str) -> list[str]:
    found: list[str] = []
    for pattern in patterns:
        for match in pattern.finditer(content):
            point = match.group(1).strip()
            if 10 < len(point) < 150 and point not in found:
                found.append(point)
    return found[:MAX_POSITIONS]


def extract_agreements_and_disagreements(content: str) -> tuple[list[str], list[str]]:
    """Return (agreements, disagreements), at most three of each, in order of appearance per pattern."""
    return _collect(_AGREEMENT_PATTERNS, content), _collect(_DISAGREEMENT_PATTERNS, content)


def extract_confidence(content: str) -> float:
    """An explicit ``confidence: NN%`` wins (capped at 1.0); otherwise keyword buckets, else 0.6."""
    lower = content.lower()
    match = _EXPLICIT_CONFIDENCE.search(lower)
    if match:
        return min(int(match.group(1)) / 100, 1.0)

    for value, keywords in _CONFIDENCE_KEYWORDS:
        if any(k in lower for k in keywords):
            return value
    return DEFAULT_CONFIDENCE


def format_stance(stance: str) -> str:
    return {
        "strongly_agree": "Strongly Agrees",
        "agree": "Agrees",
        "neutral": "Neutral",
        "disagree": "Disagrees",
        "strongly_disagree": "Strongly Disagrees",
        "refine": "Refining",
        "synthesize": "Synthesizing",
    }.get(stance, "Unknown")
