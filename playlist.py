"""M3U8 manifest rendering."""

from __future__ import annotations

import urllib.parse
from collections.abc import Sequence

from config import PLAN_FIXED
from config import PRECISION
from planner import SegmentWindow
from planner import format_seconds
from planner import target_duration


SEGMENT_ROUTE = "/video/rttSegment"


def segment_url(
    video_path: str,
    has_audio: bool,
    window: SegmentWindow,
    plan_mode: str,
    precision: int = PRECISION,
) -> str:
    """URL of one segment; fixed mode addresses by index, keyframe mode by time."""
    query = f"path={urllib.parse.quote(video_path, safe='')}&audio={int(has_audio)}"
    if plan_mode == PLAN_FIXED:
        return f"{SEGMENT_ROUTE}?{query}&segment={window.index}"
    start = format_seconds(window.start, precision)
    duration = format_seconds(window.duration, precision)
    return f"{SEGMENT_ROUTE}?{query}&start={start}&duration={duration}"


def generate_playlist(
    video_path: str,
    has_audio: bool,
    windows: Sequence[SegmentWindow],
    plan_mode: str,
    nominal_seconds: float = 0,
    precision: int = PRECISION,
) -> str:
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{target_duration(windows, nominal_seconds)}",
        "#EXT-X-PLAYLIST-TYPE:VOD",
    ]
    for window in windows:
        lines.append(f"#EXTINF:{format_seconds(window.duration, precision)},")
        lines.append(segment_url(video_path, has_audio, window, plan_mode, precision))
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"
