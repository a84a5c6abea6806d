"""
Transcript segmentation: turns the vendor's final transcript into ordered,
role-tagged utterances ready to persist as conversation messages.
"""

from __future__ import annotations

from typing import Any, Optional

from intake.models import Role, Utterance

# Case-sensitive speaker markers. Longer markers first so "AI Agent:" wins over "Agent:".
_ROLE_MARKERS: tuple[tuple[str, Role], ...] = (
    ("AI Agent:", Role.AGENT),
    ("Agent:", Role.AGENT),
    ("Lead:", Role.LEAD),
    ("Customer:", Role.LEAD),
    ("User:", Role.LEAD),
)


def _split_marker(line: str) -> tuple[Role, str]:
    for marker, role in _ROLE_MARKERS:
        if line.startswith(marker):
            return role, line[len(marker):].strip()
    return Role.LEAD, line


def segment_transcript(transcript: Optional[str]) -> list[Utterance]:
    """
    Split a newline-delimited transcript into utterances.

    Blank lines (and lines that are nothing but a marker) are dropped and
    ``seq`` is numbered over the surviving lines, so the same transcript
    always yields the same sequence.
    """
    if not transcript:
        return []

    utterances: list[Utterance] = []
    for raw_line in transcript.split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        role, content = _split_marker(line)
        if not content:
            continue
        utterances.append(Utterance(role=role, content=content, seq=len(utterances)))
    return utterances


def utterances_from_transcript_object(transcript_object: Any) -> list[Utterance]:
    """Convert the vendor's structured ``transcript_object`` list ([{role, content}, ...])."""
    if not isinstance(transcript_object, list):
        return []

    utterances: list[Utterance] = []
    for item in transcript_object:
        if not isinstance(item, dict):
            continue
        content = str(item.get("content") or item.get("text") or "").strip()
        if not content:
            continue
        role = Role.AGENT if item.get("role") == "agent" else Role.LEAD
        utterances.append(Utterance(role=role, content=content, seq=len(utterances)))
    return utterances
