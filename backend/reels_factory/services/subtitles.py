"""Subtitle cue normalization and SRT/VTT rendering."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


@dataclass(frozen=True)
class SubtitleCue:
    start: float
    end: float
    text: str


def _as_seconds(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("cue time must be a number")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip().replace(",", ".")
        if ":" in text:
            parts = [float(part) for part in text.split(":")]
            seconds = 0.0
            for part in parts:
                seconds = seconds * 60 + part
            return seconds
        return float(text)
    raise ValueError(f"unsupported cue time: {value!r}")


def parse_cues(raw: Iterable[Any]) -> list[SubtitleCue]:
    """Accept cue dicts (start/end or startTime/endTime) and drop unusable ones."""
    cues: list[SubtitleCue] = []
    for item in raw:
        if isinstance(item, SubtitleCue):
            cues.append(item)
            continue
        if not isinstance(item, dict):
            continue
        text = str(item.get("text") or "").strip()
        if not text:
            continue
        try:
            start = _as_seconds(item.get("start", item.get("startTime")))
            end = _as_seconds(item.get("end", item.get("endTime")))
        except ValueError:
            continue
        if end <= start or start < 0:
            continue
        cues.append(SubtitleCue(start=start, end=end, text=text))
    cues.sort(key=lambda cue: cue.start)
    return cues


def rebase_cues(cues: list[SubtitleCue]) -> list[SubtitleCue]:
    """Shift cues so the first one starts at zero.

    Cues are timed against the narration of a single clip; a clip muxed on
    its own starts its timeline at zero.
    """
    if not cues:
        return []
    offset = cues[0].start
    return [SubtitleCue(start=cue.start - offset, end=cue.end - offset, text=cue.text) for cue in cues]


def clamp_cues(cues: list[SubtitleCue], duration: float) -> list[SubtitleCue]:
    clamped: list[SubtitleCue] = []
    for cue in cues:
        if cue.start >= duration:
            break
        clamped.append(SubtitleCue(start=cue.start, end=min(cue.end, duration), text=cue.text))
    return clamped


def _split_time(seconds: float) -> tuple[int, int, int, int]:
    total_ms = int(round(max(seconds, 0.0) * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, millis = divmod(rest, 1000)
    return hours, minutes, secs, millis


def format_srt_time(seconds: float) -> str:
    hours, minutes, secs, millis = _split_time(seconds)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def format_vtt_time(seconds: float) -> str:
    hours, minutes, secs, millis = _split_time(seconds)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def render_srt(cues: list[SubtitleCue]) -> str:
    blocks = [
        f"{idx}\n{format_srt_time(cue.start)} --> {format_srt_time(cue.end)}\n{cue.text}\n"
        for idx, cue in enumerate(cues, start=1)
    ]
    return "\n".join(blocks)


def render_vtt(cues: list[SubtitleCue]) -> str:
    blocks = [f"{format_vtt_time(cue.start)} --> {format_vtt_time(cue.end)}\n{cue.text}\n" for cue in cues]
    return "WEBVTT\n\n" + "\n".join(blocks)


def cues_to_dicts(cues: list[SubtitleCue]) -> list[dict[str, Any]]:
    return [
        {"index": idx, "start": round(cue.start, 3), "end": round(cue.end, 3), "text": cue.text}
        for idx, cue in enumerate(cues, start=1)
    ]


def even_cues(text: str, duration: float, max_chars: int = 40) -> list[SubtitleCue]:
    """Split narration into sentence cues spread evenly over ``duration``."""
    pieces: list[str] = []
    for chunk in text.replace("\n", " ").split(". "):
        chunk = chunk.strip()
        while len(chunk) > max_chars:
            cut = chunk.rfind(" ", 0, max_chars)
            cut = cut if cut > 0 else max_chars
            pieces.append(chunk[:cut].strip())
            chunk = chunk[cut:].strip()
        if chunk:
            pieces.append(chunk)
    if not pieces or duration <= 0:
        return []
    total_chars = sum(len(piece) for piece in pieces)
    cues: list[SubtitleCue] = []
    cursor = 0.0
    for piece in pieces:
        span = duration * len(piece) / total_chars
        cues.append(SubtitleCue(start=cursor, end=cursor + span, text=piece))
        cursor += span
    return cues
