"""Media metadata and keyframe timestamps via ffprobe."""

from __future__ import annotations

import json
import logging
import math
import pathlib
import subprocess
from contextlib import suppress
from dataclasses import dataclass
from fractions import Fraction
from typing import Any

from config import PRECISION
from errors import DurationUnavailable
from errors import ProbeExecutionError
from errors import ProbeParseError
from planner import round_half
from planner import round_up


log = logging.getLogger(__name__)

DEFAULT_TIME_BASE = Fraction(1, 1000)


@dataclass(frozen=True, slots=True)
class MediaInfo:
    duration: float
    has_audio: bool
    time_base: Fraction = DEFAULT_TIME_BASE


def _run_ffprobe(cmd: list[str]) -> Any:
    log.debug("Probing: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, check=False, capture_output=True, text=True)
    except OSError as e:
        log.error("Failed to launch ffprobe: %s", e)
        raise ProbeExecutionError(f"cannot launch ffprobe: {e}") from e
    if result.returncode != 0:
        log.error("ffprobe exited with code %d: %s", result.returncode, result.stderr.strip())
        raise ProbeExecutionError(f"ffprobe exited with code {result.returncode}")
    try:
        data = json.loads(result.stdout)
    except ValueError as e:
        log.error("ffprobe returned malformed JSON: %s", e)
        raise ProbeParseError(f"malformed ffprobe output: {e}") from e
    if not isinstance(data, dict):
        raise ProbeParseError("ffprobe output is not a JSON object")
    return data


def parse_time_base(value: Any) -> Fraction:
    """Parse "1/90000" style values, defaulting to 1/1000."""
    if isinstance(value, str) and "/" in value:
        with suppress(ValueError, ZeroDivisionError):
            tb = Fraction(value)
            if tb > 0:
                return tb
    return DEFAULT_TIME_BASE


def _parse_duration(value: Any) -> float | None:
    if value is None:
        return None
    with suppress(ValueError, TypeError):
        duration = float(value)
        if math.isfinite(duration):
            return duration
    return None


def parse_media_info(data: dict[str, Any], precision: int = PRECISION) -> MediaInfo:
    """Build MediaInfo from ffprobe format/stream JSON.

    The first video stream's duration wins; the container duration is the
    fallback for formats (e.g. MKV) that don't report per-stream durations.
    """
    streams = data.get("streams") or []
    fmt = data.get("format") or {}
    if not isinstance(streams, list) or not isinstance(fmt, dict):
        raise ProbeParseError("unexpected ffprobe structure")

    video: dict[str, Any] | None = None
    has_audio = False
    for stream in streams:
        if not isinstance(stream, dict):
            continue
        codec_type = stream.get("codec_type")
        if codec_type == "video" and video is None:
            video = stream
        elif codec_type == "audio":
            has_audio = True

    duration = _parse_duration(video.get("duration")) if video else None
    if duration is None:
        duration = _parse_duration(fmt.get("duration"))
    if duration is None or duration <= 0:
        raise DurationUnavailable("no usable stream or container duration")

    return MediaInfo(
        duration=round_half(duration, precision),
        has_audio=has_audio,
        time_base=parse_time_base(video.get("time_base")) if video else DEFAULT_TIME_BASE,
    )


def probe_media(path: pathlib.Path, precision: int = PRECISION) -> MediaInfo:
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-show_entries",
        "stream=index,codec_type,duration,time_base",
        "-of",
        "json",
        str(path),
    ]
    info = parse_media_info(_run_ffprobe(cmd), precision)
    log.info(
        "Probe: %s duration=%.4fs audio=%s time_base=%s",
        path.name,
        info.duration,
        info.has_audio,
        info.time_base,
    )
    return info


def keyframe_timestamps(
    data: dict[str, Any],
    time_base: Fraction,
    total_duration: float,
    precision: int = PRECISION,
) -> list[float]:
    """Convert ffprobe keyframe entries into ordered segment start times.

    Timestamps are rounded up so a segment never starts before its keyframe.
    The result always starts at 0 and stays below total_duration.
    """
    frames = data.get("frames")
    if not isinstance(frames, list):
        raise ProbeParseError("ffprobe output has no frame list")
    timestamps: set[float] = set()
    for frame in frames:
        if not isinstance(frame, dict):
            continue
        pts = frame.get("pts")
        if pts is None:
            pts = frame.get("pkt_dts")
        if pts is None:
            continue
        try:
            seconds = round_up(float(int(pts) * time_base), precision)
        except (ValueError, TypeError) as e:
            raise ProbeParseError(f"bad keyframe timestamp {pts!r}") from e
        if 0 <= seconds < total_duration:
            timestamps.add(seconds)
    timestamps.add(0.0)
    return sorted(timestamps)


def extract_keyframes(
    path: pathlib.Path,
    time_base: Fraction,
    total_duration: float,
    precision: int = PRECISION,
) -> list[float]:
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-skip_frame",
        "nokey",
        "-show_entries",
        "frame=pts,pkt_dts",
        "-of",
        "json",
        str(path),
    ]
    timestamps = keyframe_timestamps(_run_ffprobe(cmd), time_base, total_duration, precision)
    log.info("Keyframes: %s has %d segment boundaries", path.name, len(timestamps))
    return timestamps
