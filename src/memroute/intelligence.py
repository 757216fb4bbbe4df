"""
Text heuristics layer: complexity scoring, note splitting and tokenizing.

These utilities sit underneath the stores and the router to provide:
  - A prompt complexity score used to pick an execution tier
  - Splitting of a free-text notes file into discrete entries
  - Word / shingle tokenization shared by the offline embedder
"""

from __future__ import annotations

import re
import uuid

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Words per point of the token-count factor, and its cap.
TOKEN_FACTOR_WORDS: int = 1000
TOKEN_FACTOR_CAP: float = 0.3

CODE_FENCE_BONUS: float = 0.2
REASONING_BONUS: float = 0.1
MULTI_STEP_BONUS: float = 0.2

REASONING_KEYWORDS: tuple[str, ...] = ("analyze", "design", "architect", "explain", "compare")
SEQUENCING_WORDS: tuple[str, ...] = ("first", "then", "next", "finally", "after that")

_WORD_RE = re.compile(r"\w+", re.UNICODE)
_NUMBERED_ITEM_RE = re.compile(r"(?:^|\s)(?:\d+[.)]|step\s+\d+)", re.MULTILINE)


# ---------------------------------------------------------------------------
# Complexity scoring
# ---------------------------------------------------------------------------


def compute_complexity(prompt: str) -> float:
    """
    Estimate how demanding *prompt* is as a float in [0.0, 1.0].

    Heuristics (summed, then clamped):
      - Token count: words / 1000, capped at 0.3
      - +0.2 if the prompt contains a fenced code block
      - +0.1 if any reasoning keyword appears
      - +0.2 for multi-step structure: sequencing words used at least
        twice, or at least two numbered items / "step N" mentions
    """
    lower = prompt.lower()
    words = lower.split()

    score = min(len(words) / TOKEN_FACTOR_WORDS, TOKEN_FACTOR_CAP)
    if "```" in lower:
        score += CODE_FENCE_BONUS
    if any(keyword in lower for keyword in REASONING_KEYWORDS):
        score += REASONING_BONUS
    if _has_multi_step_structure(lower):
        score += MULTI_STEP_BONUS

    return max(0.0, min(score, 1.0))


def _has_multi_step_structure(lower: str) -> bool:
    sequencing = sum(
        len(re.findall(rf"\b{re.escape(word)}\b", lower)) for word in SEQUENCING_WORDS
    )
    if sequencing >= 2:
        return True
    return len(_NUMBERED_ITEM_RE.findall(lower)) >= 2


# ---------------------------------------------------------------------------
# Note splitting
# ---------------------------------------------------------------------------


def split_into_sections(content: str) -> list[str]:
    """
    Split a markdown notes file into discrete entries.

    Strategy:
      1. Split on ``## `` headings, keeping each heading with its body.
      2. If that yields fewer than two sections, split on blank lines.
    Empty sections are dropped.
    """
    sections = _split_by_headers(content)
    if len(sections) >= 2:
        return sections
    return _split_by_paragraphs(content)


def _split_by_headers(content: str) -> list[str]:
    sections: list[str] = []
    current: list[str] = []
    for line in content.splitlines():
        if line.startswith("## ") and "\n".join(current).strip():
            sections.append("\n".join(current).strip())
            current = []
        current.append(line)
    if "\n".join(current).strip():
        sections.append("\n".join(current).strip())
    return sections


def _split_by_paragraphs(content: str) -> list[str]:
    return [p.strip() for p in re.split(r"\n\s*\n", content) if p.strip()]


# ---------------------------------------------------------------------------
# Tokenizing
# ---------------------------------------------------------------------------


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens of *text*."""
    return _WORD_RE.findall(text.lower())


def shingles(text: str) -> list[tuple[str, float]]:
    """
    Overlapping weighted shingles of *text*.

    Word unigrams weigh 1.0, word bigrams 0.5 and character trigrams of
    each word (padded with ``#``) 0.25.  The prefixes keep the three kinds
    from colliding with each other.
    """
    words = tokenize(text)
    out: list[tuple[str, float]] = [(f"w:{w}", 1.0) for w in words]
    out.extend((f"b:{a} {b}", 0.5) for a, b in zip(words, words[1:]))
    for word in words:
        padded = f"#{word}#"
        out.extend((f"c:{padded[i:i + 3]}", 0.25) for i in range(len(padded) - 2))
    return out


# ---------------------------------------------------------------------------
# ID generation
# ---------------------------------------------------------------------------


def generate_id() -> str:
    """Return a new unique segment ID."""
    return str(uuid.uuid4())
