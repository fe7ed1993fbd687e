#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastapi", "uvicorn[standard]"]
# ///
"""On-demand HLS segment server.

Serves every video below a root directory as a VOD playlist whose segments are
transcoded by ffmpeg only when a client asks for them.

Usage:
    ./main.py [ROOT] [--st SECONDS] [--mode fixed|keyframe] [--port PORT]

Options:
    ROOT                Directory to serve (default: current directory)
    --st SECONDS        Segment length for fixed planning (default: 5)
    --mode MODE         "fixed" segments or "keyframe" aligned segments (default: fixed)
    --max-transcodes N  Concurrent ffmpeg processes (default: 10)
    --port PORT         Port to listen on (default: 8082)

Examples:
    ./main.py /srv/videos                  # fixed 5 second segments
    ./main.py /srv/videos --st 10          # fixed 10 second segments
    ./main.py /srv/videos --mode keyframe  # one segment per keyframe
"""

from __future__ import annotations

import asyncio
import logging
import math
import pathlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import PlainTextResponse
from fastapi.responses import Response

from admission import AdmissionController
from config import PLAN_FIXED
from config import Settings
from config import parse_args
from errors import InputValidation
from errors import MediaNotFound
from errors import StreamError
from paths import find_sidecar_subtitle
from paths import resolve_media_path
from planner import SegmentWindow
from planner import plan_fixed
from planner import plan_keyframes
from planner import round_half
from planner import window_for_index
from playlist import generate_playlist
from probe import extract_keyframes
from probe import probe_media
from transcoding import HwAccel
from transcoding import TranscodeRequest
from transcoding import detect_hwaccel
from transcoding import transcode_segment


log = logging.getLogger()

PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_MEDIA_TYPE = "video/MP2T"


@dataclass(slots=True)
class AppState:
    """Process-wide state, built once in the lifespan and shared by all requests."""

    settings: Settings
    admission: AdmissionController
    hw: HwAccel


def get_state(request: Request) -> AppState:
    return request.app.state.stream


def _require(value: str | None, name: str) -> str:
    if value is None or value == "":
        raise InputValidation(f"Missing parameter: {name}")
    return value


def _parse_seconds(value: str, name: str) -> float:
    try:
        seconds = float(value)
    except ValueError:
        raise InputValidation(f"Invalid time parameter: {name}") from None
    if not math.isfinite(seconds) or seconds < 0:
        raise InputValidation(f"Invalid time parameter: {name}")
    return seconds


def _parse_index(value: str) -> int:
    try:
        index = int(value)
    except ValueError:
        raise InputValidation("Invalid segment index") from None
    if index < 0:
        raise InputValidation("Invalid segment index")
    return index


def _locate_file(root: pathlib.Path, relative: str) -> pathlib.Path:
    abs_path = resolve_media_path(root, relative)
    if not abs_path.is_file():
        raise MediaNotFound(f"{abs_path} is not a file")
    return abs_path


def create_app(settings: Settings, hw: HwAccel | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        detected = hw
        if detected is None:
            detected = detect_hwaccel() if settings.detect_hwaccel else HwAccel()
        app.state.stream = AppState(
            settings=settings,
            admission=AdmissionController(settings.max_transcodes),
            hw=detected,
        )
        log.info("Serving %s", settings.root_dir)
        log.info(
            "Planning: %s%s, max %d concurrent transcodes, encoder %s",
            settings.plan_mode,
            f" ({settings.segment_seconds}s)" if settings.plan_mode == PLAN_FIXED else "",
            settings.max_transcodes,
            detected.encoder,
        )
        yield

    app = FastAPI(title="rttStream", lifespan=lifespan)

    @app.exception_handler(StreamError)
    async def stream_error_handler(request: Request, exc: StreamError):
        log.warning(
            "%s %s -> %d %s: %s",
            request.method,
            request.url.path,
            exc.status_code,
            type(exc).__name__,
            exc,
        )
        return PlainTextResponse(
            exc.public_message,
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.get("/")
    async def index():
        return PlainTextResponse("404 Not Found.", status_code=404)

    @app.get("/video/rttPlaylist")
    async def rtt_playlist(
        state: Annotated[AppState, Depends(get_state)],
        path: str | None = None,
    ):
        """Probe the video and return its VOD playlist."""
        video_path = _require(path, "path")
        settings = state.settings
        abs_path = await asyncio.to_thread(_locate_file, settings.root_dir, video_path)

        info = await asyncio.to_thread(probe_media, abs_path, settings.precision)
        if settings.plan_mode == PLAN_FIXED:
            windows = plan_fixed(info.duration, settings.segment_seconds, settings.precision)
            nominal_seconds = settings.segment_seconds
        else:
            keyframes = await asyncio.to_thread(
                extract_keyframes, abs_path, info.time_base, info.duration, settings.precision
            )
            windows = plan_keyframes(info.duration, keyframes, settings.precision)
            nominal_seconds = 0  # keyframe windows have no nominal length

        subtitle = await asyncio.to_thread(find_sidecar_subtitle, abs_path)
        if subtitle:
            log.info("Subtitle found for %s: %s", abs_path.name, subtitle.name)

        log.info(
            "Playlist: %s duration=%.4fs audio=%s segments=%d",
            video_path,
            info.duration,
            info.has_audio,
            len(windows),
        )
        body = generate_playlist(
            video_path,
            info.has_audio,
            windows,
            settings.plan_mode,
            nominal_seconds=nominal_seconds,
            precision=settings.precision,
        )
        return Response(content=body, media_type=PLAYLIST_MEDIA_TYPE)

    @app.get("/video/rttSegment")
    async def rtt_segment(
        state: Annotated[AppState, Depends(get_state)],
        path: str | None = None,
        audio: str | None = None,
        start: str | None = None,
        duration: str | None = None,
        segment: str | None = None,
    ):
        """Transcode one window of the video to MPEG-TS."""
        video_path = _require(path, "path")
        settings = state.settings
        if settings.plan_mode == PLAN_FIXED:
            index = _parse_index(_require(segment, "segment"))
            abs_path = await asyncio.to_thread(_locate_file, settings.root_dir, video_path)
            info = await asyncio.to_thread(probe_media, abs_path, settings.precision)
            window = window_for_index(
                info.duration, settings.segment_seconds, index, settings.precision
            )
        else:
            start_sec = _parse_seconds(_require(start, "start"), "start")
            duration_sec = _parse_seconds(_require(duration, "duration"), "duration")
            if duration_sec <= 0:
                raise InputValidation("Invalid time parameter: duration")
            abs_path = await asyncio.to_thread(_locate_file, settings.root_dir, video_path)
            window = SegmentWindow(
                index=-1,
                start=round_half(start_sec, settings.precision),
                duration=round_half(duration_sec, settings.precision),
            )

        job = TranscodeRequest(path=abs_path, window=window, has_audio=audio == "1")
        data = await transcode_segment(
            job,
            state.admission,
            state.hw,
            settings.video_bitrate,
            settings.audio_bitrate,
            settings.precision,
        )
        return Response(
            content=data,
            media_type=SEGMENT_MEDIA_TYPE,
            headers={"Content-Length": str(len(data))},
        )

    return app


if __name__ == "__main__":
    import sys

    import uvicorn  # pyright: ignore[reportMissingImports]

    # Configure logging before parsing so fallback warnings are formatted
    log_level = logging.DEBUG if "--debug" in sys.argv[1:] else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )
    settings = parse_args()

    uv_log = "debug" if settings.debug else "info"
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        access_log=settings.debug,
        log_level=uv_log,
    )
