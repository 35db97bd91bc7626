from __future__ import annotations

import re

from common.schemas import SpeechSegment

_TIMESTAMP = r"[0-9]{2}:[0-9]{2}:[0-9]{2}\.[0-9]{3}"
LINE_PATTERN = re.compile(rf"^\[({_TIMESTAMP}) --> ({_TIMESTAMP})\]\s*(.*?)$")
_TURN_MARKER = re.compile(r"^-\s*")


def parse_lines(raw_text: str) -> list[SpeechSegment]:
    """Parse timestamp-tagged recognizer output into speech segments.

    Lines that do not look like ``[HH:MM:SS.mmm --> HH:MM:SS.mmm] text`` are
    dropped. A leading ``-`` marks a speaker turn; such a segment is kept
    even when no text follows the marker.
    """
    segments: list[SpeechSegment] = []
    for line in raw_text.strip().split("\n"):
        match = LINE_PATTERN.match(line)
        if match is None:
            continue

        content = match.group(3).strip()
        new_speaker = content.startswith("-")
        text = _TURN_MARKER.sub("", content).strip()
        if not text and not new_speaker:
            continue

        segments.append(
            SpeechSegment(
                start=match.group(1),
                end=match.group(2),
                text=text,
                new_speaker=new_speaker,
            )
        )
    return segments


def segments_text(segments: list[SpeechSegment]) -> str:
    return "\n".join(seg.text for seg in segments)
