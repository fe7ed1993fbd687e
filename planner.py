"""Divide a video timeline into segment windows.

Two strategies share the same output type:

- keyframe: every keyframe timestamp starts a window, so each segment can be
  encoded from a key picture.
- fixed: windows of a nominal length L; the last one holds the remainder.

The windows are contiguous, start at 0 and end exactly at the total duration
(within the rounding precision). A segment request later replays one window, so
window_for_index() must agree with plan_fixed() bit for bit.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from config import PRECISION
from errors import InputValidation


# Scaled-unit slack for float noise, e.g. 1.001 * 10**4 == 10010.000000000002
_EPSILON = 1e-6


@dataclass(frozen=True, slots=True)
class SegmentWindow:
    index: int
    start: float
    duration: float

    @property
    def end(self) -> float:
        return self.start + self.duration


def round_half(num: float, precision: int = PRECISION) -> float:
    return round(num, precision)


def round_up(num: float, precision: int = PRECISION) -> float:
    scale = 10**precision
    return math.ceil(num * scale - _EPSILON) / scale


def round_down(num: float, precision: int = PRECISION) -> float:
    scale = 10**precision
    return math.floor(num * scale + _EPSILON) / scale


def format_seconds(value: float, precision: int = PRECISION) -> str:
    """Render a duration the way it appears in manifests and ffmpeg arguments."""
    return f"{value:.{precision}f}"


def segment_count(total_duration: float, segment_seconds: float) -> int:
    if segment_seconds <= 0:
        raise ValueError(f"segment length must be positive, got {segment_seconds}")
    if total_duration <= 0:
        return 0
    # 10.00000001 must not produce an extra empty window
    return math.ceil(round_down(total_duration / segment_seconds, PRECISION + 2))


def window_for_index(
    total_duration: float,
    segment_seconds: float,
    index: int,
    precision: int = PRECISION,
) -> SegmentWindow:
    """Window of segment index under fixed-length planning."""
    count = segment_count(total_duration, segment_seconds)
    if not 0 <= index < count:
        raise InputValidation(f"Segment index out of range (0-{count - 1})")
    start = round_half(index * segment_seconds, precision)
    if index < count - 1:
        duration = float(segment_seconds)
    else:
        duration = round_down(total_duration - start, precision)
    return SegmentWindow(index=index, start=start, duration=duration)


def plan_fixed(
    total_duration: float,
    segment_seconds: float,
    precision: int = PRECISION,
) -> list[SegmentWindow]:
    count = segment_count(total_duration, segment_seconds)
    return [window_for_index(total_duration, segment_seconds, i, precision) for i in range(count)]


def plan_keyframes(
    total_duration: float,
    keyframes: Iterable[float],
    precision: int = PRECISION,
) -> list[SegmentWindow]:
    """Plan one window per keyframe.

    keyframes must be the ordered timestamps produced by probe.extract_keyframes
    (already rounded up, starting at 0, all below total_duration).
    """
    starts = list(keyframes)
    if not starts or total_duration <= 0:
        return []
    if starts[0] != 0:
        raise ValueError(f"first keyframe must be at 0, got {starts[0]}")
    windows: list[SegmentWindow] = []
    for i, start in enumerate(starts):
        end = starts[i + 1] if i + 1 < len(starts) else total_duration
        if end <= start:
            raise ValueError(f"keyframes not strictly increasing at {start}")
        windows.append(
            SegmentWindow(index=i, start=start, duration=round_half(end - start, precision))
        )
    return windows


def target_duration(windows: Iterable[SegmentWindow], nominal: float = 0) -> int:
    """Whole-second upper bound on any window, as #EXT-X-TARGETDURATION requires."""
    longest = max((w.duration for w in windows), default=0.0)
    return max(1, math.ceil(max(longest, nominal) - _EPSILON / 10**PRECISION))
