"""
Transcript Service
Turn records for webhook-driven conversations and their text rendering.

The ordered turn list (agent_runs.transcript_turns) is the source of truth.
transcript_text is rendered from it for people and exports:

    [2025-01-01T10:00:00] AI: Hello, this is Ava from Acme.

    [2025-01-01T10:00:07] User: Who is this?

Runs written before turn lists existed only have text; those are parsed
back into turns, dropping any entry that does not match the pattern.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

ENTRY_SEPARATOR = "\n\n"
ENTRY_PATTERN = re.compile(r"^\[(.*?)\] (.*?): (.*)$")

ROLE_LABELS = {"assistant": "AI", "user": "User"}
ASSISTANT_LABELS = {"ai", "assistant"}


@dataclass
class TranscriptTurn:
    """A single turn in a conversation transcript."""
    role: str  # "user" or "assistant"
    content: str
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    confidence: Optional[float] = None  # STT confidence score if available

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "confidence": self.confidence
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptTurn":
        return cls(
            role=data.get("role", "user"),
            content=data.get("content", ""),
            timestamp=data.get("timestamp") or datetime.utcnow().isoformat(),
            confidence=data.get("confidence"),
        )


def render_entry(turn: TranscriptTurn) -> str:
    label = ROLE_LABELS.get(turn.role, "User")
    # One entry per line; embedded newlines would split it
    content = " ".join(turn.content.split())
    return f"[{turn.timestamp}] {label}: {content}"


def render_transcript(turns: List[TranscriptTurn]) -> str:
    """Render turns as transcript text."""
    return ENTRY_SEPARATOR.join(render_entry(turn) for turn in turns)


def parse_transcript(text: Optional[str]) -> List[TranscriptTurn]:
    """
    Parse transcript text back into turns.

    Lines that do not match "[timestamp] role: content" are dropped.
    """
    if not text:
        return []

    turns = []
    for line in text.split("\n"):
        line = line.strip()
        if not line:
            continue

        match = ENTRY_PATTERN.match(line)
        if not match:
            logger.debug(f"Dropping malformed transcript line: {line[:50]}")
            continue

        timestamp, label, content = match.groups()
        role = "assistant" if label.strip().lower() in ASSISTANT_LABELS else "user"
        turns.append(TranscriptTurn(role=role, content=content, timestamp=timestamp))

    return turns


def turns_from_run(run: Dict[str, Any]) -> List[TranscriptTurn]:
    """Conversation so far for a stored run (turn list first, text as fallback)."""
    stored = run.get("transcript_turns")
    if stored:
        return [TranscriptTurn.from_dict(item) for item in stored]
    return parse_transcript(run.get("transcript_text"))


def to_history(turns: List[TranscriptTurn]) -> List[Dict[str, str]]:
    """Turns as LLM chat history."""
    return [{"role": turn.role, "content": turn.content} for turn in turns]
