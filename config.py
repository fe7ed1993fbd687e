"""Process start configuration."""

from __future__ import annotations

import argparse
import logging
import pathlib
from collections.abc import Sequence
from dataclasses import dataclass


log = logging.getLogger(__name__)

DEFAULT_SEGMENT_SECONDS = 5
DEFAULT_MAX_TRANSCODES = 10
DEFAULT_VIDEO_BITRATE = "4567k"
DEFAULT_AUDIO_BITRATE = "256k"
DEFAULT_PORT = 8082
PRECISION = 4  # decimal digits kept for every duration and boundary

PLAN_FIXED = "fixed"
PLAN_KEYFRAME = "keyframe"


@dataclass(frozen=True, slots=True)
class Settings:
    root_dir: pathlib.Path
    segment_seconds: int = DEFAULT_SEGMENT_SECONDS
    plan_mode: str = PLAN_FIXED
    max_transcodes: int = DEFAULT_MAX_TRANSCODES
    video_bitrate: str = DEFAULT_VIDEO_BITRATE
    audio_bitrate: str = DEFAULT_AUDIO_BITRATE
    precision: int = PRECISION
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    detect_hwaccel: bool = True
    debug: bool = False


def resolve_root_dir(value: str | None) -> pathlib.Path:
    """Use value as the runtime directory, falling back to the cwd with a warning."""
    cwd = pathlib.Path.cwd().resolve()
    if not value:
        return cwd
    path = pathlib.Path(value)
    if not path.exists():
        log.warning('Runtime directory "%s" does not exist, using %s instead', value, cwd)
        return cwd
    if not path.is_dir():
        log.warning('Runtime directory "%s" is not a directory, using %s instead', value, cwd)
        return cwd
    return path.resolve()


def parse_segment_seconds(value: str | None) -> int:
    if value is None:
        return DEFAULT_SEGMENT_SECONDS
    try:
        seconds = int(value)
    except ValueError:
        seconds = 0
    if seconds <= 0:
        log.warning(
            "Invalid segment length %r, using default %ds", value, DEFAULT_SEGMENT_SECONDS
        )
        return DEFAULT_SEGMENT_SECONDS
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="On-demand HLS segment server")
    parser.add_argument("root", nargs="?", help="Directory videos are served from")
    parser.add_argument(
        "--st",
        "--segment-time",
        dest="segment_time",
        metavar="SECONDS",
        help=f"Nominal segment length for fixed planning (default: {DEFAULT_SEGMENT_SECONDS})",
    )
    parser.add_argument(
        "--mode",
        choices=(PLAN_FIXED, PLAN_KEYFRAME),
        default=PLAN_FIXED,
        help="Segment planning strategy",
    )
    parser.add_argument(
        "--max-transcodes",
        type=int,
        default=DEFAULT_MAX_TRANSCODES,
        help="Concurrent ffmpeg processes allowed",
    )
    parser.add_argument("--bitrate", default=DEFAULT_VIDEO_BITRATE, help="Target video bitrate")
    parser.add_argument("--host", default="0.0.0.0", help="Address to listen on")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to listen on")
    parser.add_argument(
        "--no-hwaccel", action="store_true", help="Skip hardware acceleration detection"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> Settings:
    args = build_parser().parse_args(argv)
    max_transcodes = args.max_transcodes
    if max_transcodes < 1:
        log.warning(
            "Invalid --max-transcodes %d, using default %d",
            max_transcodes,
            DEFAULT_MAX_TRANSCODES,
        )
        max_transcodes = DEFAULT_MAX_TRANSCODES
    return Settings(
        root_dir=resolve_root_dir(args.root),
        segment_seconds=parse_segment_seconds(args.segment_time),
        plan_mode=args.mode,
        max_transcodes=max_transcodes,
        video_bitrate=args.bitrate,
        host=args.host,
        port=args.port,
        detect_hwaccel=not args.no_hwaccel,
        debug=args.debug,
    )
