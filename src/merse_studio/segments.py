"""Split a requested duration into provider-sized clips and write their prompts."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

CONTINUITY_CLAUSE = (
    "Continue seamlessly from the previous part: same subject identity, palette, "
    "lighting and camera language; no hard reset."
)


@dataclass(frozen=True)
class PlannedSegment:
    index: int
    start: int
    duration: int

    @property
    def end(self) -> int:
        return self.start + self.duration


def plan_segments(
    total_seconds: float,
    allowed_durations: Sequence[int],
    max_segments: int | None = None,
) -> list[PlannedSegment]:
    """
    Pick the multiset of allowed clip lengths whose sum is the smallest value
    >= total_seconds, preferring fewer clips on ties. Longer clips go first.
    """
    durations = sorted({int(d) for d in allowed_durations if int(d) > 0})
    if not durations:
        raise ValueError("provider has no allowed segment durations")
    if total_seconds is None or total_seconds <= 0:
        raise ValueError("total duration must be positive")

    target = int(math.ceil(total_seconds))
    limit = target + durations[-1]

    # best[s] = (clip count, last clip) for the fewest clips summing to exactly s
    best: list[tuple[int, int] | None] = [None] * (limit + 1)
    best[0] = (0, 0)
    for s in range(1, limit + 1):
        for d in durations:
            prev = best[s - d] if s - d >= 0 else None
            if prev is None:
                continue
            cand = prev[0] + 1
            if best[s] is None or cand < best[s][0]:
                best[s] = (cand, d)

    reached = next(s for s in range(target, limit + 1) if best[s] is not None)
    clips: list[int] = []
    s = reached
    while s > 0:
        entry = best[s]
        assert entry is not None
        clips.append(entry[1])
        s -= entry[1]
    clips.sort(reverse=True)

    if max_segments is not None and len(clips) > max_segments:
        raise ValueError(f"{total_seconds}s needs {len(clips)} segments, above the limit of {max_segments}")

    out: list[PlannedSegment] = []
    start = 0
    for idx, d in enumerate(clips):
        out.append(PlannedSegment(index=idx, start=start, duration=d))
        start += d
    return out


def split_storyboard(storyboard: str | None) -> list[str]:
    if not storyboard:
        return []
    return [line.strip() for line in storyboard.splitlines() if line.strip()]


def _default_beat(index: int, total: int) -> str:
    if total == 1:
        return "Single continuous take: open on the subject, develop the idea and land a clear ending."
    if index == 0:
        return "Opening: establish the world, the subject and the tone."
    if index == total - 1:
        return "Closing: resolve the story and end on a clean hero frame."
    return "Development: advance the story with a new angle while keeping momentum."


def assign_beats(scenes: Sequence[str], total: int) -> list[str]:
    """Spread storyboard scenes over `total` segments proportionally."""
    if total <= 0:
        return []
    if not scenes:
        return [_default_beat(i, total) for i in range(total)]

    n = len(scenes)
    beats: list[str] = []
    for i in range(total):
        lo = (i * n) // total
        hi = ((i + 1) * n) // total
        chunk = list(scenes[lo:hi]) or [scenes[min(lo, n - 1)]]
        beats.append(" ".join(chunk))
    return beats


def build_segment_prompt(
    base_prompt: str,
    segment: PlannedSegment,
    total_segments: int,
    total_seconds: int,
    beat: str,
) -> str:
    parts: list[str] = []
    if total_segments > 1:
        parts.append(
            f"Part {segment.index + 1}/{total_segments}, {segment.start}-{segment.end}s of {total_seconds}s."
        )
    if beat:
        parts.append(beat.rstrip(".") + ".")
    parts.append(base_prompt.strip())
    if segment.index > 0:
        parts.append(CONTINUITY_CLAUSE)
    return " ".join(p for p in parts if p)
