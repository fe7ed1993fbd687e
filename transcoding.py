"""Segment transcoding with ffmpeg and hardware acceleration detection."""

from __future__ import annotations

import asyncio
import logging
import pathlib
import subprocess
from collections.abc import Callable
from dataclasses import dataclass

from admission import AdmissionController
from config import DEFAULT_AUDIO_BITRATE
from config import DEFAULT_VIDEO_BITRATE
from config import PRECISION
from errors import TranscodeFailed
from errors import TranscodeLaunchError
from planner import SegmentWindow
from planner import format_seconds
from planner import round_half


log = logging.getLogger(__name__)

SOFTWARE_ENCODER = "libx264"
_DETECT_TIMEOUT_SEC = 10
_TRIAL_TIMEOUT_SEC = 5
_STDERR_TAIL_LINES = 10

# Trial input: 1 frame of 64x64 black
_TRIAL_BASE = ("ffmpeg", "-hide_banner", "-loglevel", "error", "-y")
_TRIAL_INPUT = ("-f", "lavfi", "-i", "color=black:s=64x64:d=0.04", "-frames:v", "1")
_TRIAL_OUTPUT = ("-f", "null", "-")

# Preference order: first one ffmpeg reports and runs wins
_HW_DECODERS = ("videotoolbox", "cuda", "qsv", "amf")
_HW_ENCODERS = ("h264_videotoolbox", "h264_nvenc", "h264_qsv", "h264_amf")

_HW_NAMES = {
    "videotoolbox": "Apple VideoToolbox",
    "cuda": "NVIDIA CUDA",
    "qsv": "Intel QSV",
    "amf": "AMD AMF",
    "h264_videotoolbox": "Apple VideoToolbox",
    "h264_nvenc": "NVIDIA NVENC",
    "h264_qsv": "Intel QSV",
    "h264_amf": "AMD AMF",
}


@dataclass(frozen=True, slots=True)
class HwAccel:
    decoder: str = ""  # empty = software decode
    encoder: str = SOFTWARE_ENCODER


@dataclass(frozen=True, slots=True)
class TranscodeRequest:
    path: pathlib.Path
    window: SegmentWindow
    has_audio: bool


def _ffmpeg_listing(flag: str) -> str | None:
    """Output of `ffmpeg -hide_banner <flag>`, or None if ffmpeg is unusable."""
    try:
        result = subprocess.run(
            ["ffmpeg", "-hide_banner", flag],
            capture_output=True,
            text=True,
            timeout=_DETECT_TIMEOUT_SEC,
        )
    except FileNotFoundError:
        log.error("ffmpeg not found, hardware acceleration unavailable")
        return None
    except (OSError, subprocess.TimeoutExpired) as e:
        log.error("Cannot run ffmpeg %s: %s", flag, e)
        return None
    if result.returncode != 0:
        log.error("ffmpeg %s exited with code %d", flag, result.returncode)
        return None
    return result.stdout


def _trial_run(cmd: list[str]) -> tuple[bool, str]:
    """Run a one-frame trial. Returns (success, error_message)."""
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=_TRIAL_TIMEOUT_SEC)
    except subprocess.TimeoutExpired:
        return False, "timeout"
    except FileNotFoundError:
        return False, "ffmpeg not found"
    except OSError as e:
        return False, str(e)
    if result.returncode == 0:
        return True, ""
    stderr = result.stderr.decode(errors="replace").strip()
    # Most relevant line is the first one not prefixed by a component tag
    for line in stderr.splitlines():
        if line and not line.startswith("["):
            return False, line
    return False, stderr or "unknown error"


def decoder_trial_cmd(decoder: str) -> list[str]:
    return [*_TRIAL_BASE, "-init_hw_device", decoder, *_TRIAL_INPUT, *_TRIAL_OUTPUT]


def encoder_trial_cmd(encoder: str) -> list[str]:
    return [*_TRIAL_BASE, *_TRIAL_INPUT, "-c:v", encoder, *_TRIAL_OUTPUT]


def _pick(
    listing: str | None,
    names: tuple[str, ...],
    trial_cmd: Callable[[str], list[str]],
    trial: Callable[[list[str]], tuple[bool, str]],
) -> str | None:
    """First name ffmpeg lists whose trial run also succeeds."""
    if not listing:
        return None
    words = set(listing.split())
    for name in names:
        if name not in words:
            continue
        ok, err = trial(trial_cmd(name))
        if ok:
            return name
        log.info("  %s (%s): listed but unusable - %s", _HW_NAMES[name], name, err)
    return None


def detect_hwaccel(
    run: Callable[[str], str | None] = _ffmpeg_listing,
    trial: Callable[[list[str]], tuple[bool, str]] = _trial_run,
) -> HwAccel:
    """Pick the hardware decoder and encoder once at startup.

    Static ffmpeg builds list accelerators the host may not have, so each listed
    candidate must also pass a one-frame trial before it is used.
    """
    log.info("Detecting hardware acceleration...")
    decoder = _pick(run("-hwaccels"), _HW_DECODERS, decoder_trial_cmd, trial)
    if decoder:
        log.info("  Decoder: %s (%s)", _HW_NAMES[decoder], decoder)
    else:
        log.info("  Decoder: none usable, using software decoding")
    encoder = _pick(run("-encoders"), _HW_ENCODERS, encoder_trial_cmd, trial)
    if encoder:
        log.info("  Encoder: %s (%s)", _HW_NAMES[encoder], encoder)
    else:
        log.info("  Encoder: none usable, using %s", SOFTWARE_ENCODER)
    return HwAccel(decoder=decoder or "", encoder=encoder or SOFTWARE_ENCODER)


def build_segment_cmd(
    request: TranscodeRequest,
    hw: HwAccel,
    video_bitrate: str = DEFAULT_VIDEO_BITRATE,
    audio_bitrate: str = DEFAULT_AUDIO_BITRATE,
    precision: int = PRECISION,
) -> list[str]:
    """ffmpeg arguments for one window, written to stdout as MPEG-TS.

    Each segment is encoded from timestamp zero; muxdelay/muxpreload of half the
    window start shift its timestamps so consecutive segments line up.
    """
    start = request.window.start
    start_str = format_seconds(round_half(start, precision), precision)
    duration_str = format_seconds(round_half(request.window.duration, precision), precision)
    delay_str = format_seconds(round_half(start / 2, precision), precision)

    cmd = ["ffmpeg", "-hide_banner", "-loglevel", "error"]
    if hw.decoder:
        cmd.extend(["-hwaccel", hw.decoder])
    cmd.extend(
        [
            "-ss",
            start_str,
            "-t",
            duration_str,
            "-accurate_seek",
            "-i",
            str(request.path),
            "-map",
            "0:v:0",
            "-c:v",
            hw.encoder,
            "-b:v",
            video_bitrate,
            "-bsf:v",
            "h264_mp4toannexb",
        ]
    )
    if request.has_audio:
        cmd.extend(["-map", "0:a:0", "-c:a", "aac", "-b:a", audio_bitrate])
    cmd.extend(
        [
            "-avoid_negative_ts",
            "make_zero",
            "-start_at_zero",
            "-muxdelay",
            delay_str,
            "-muxpreload",
            delay_str,
            "-f",
            "mpegts",
            "pipe:1",
        ]
    )
    return cmd


async def _kill_and_reap(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


async def _spawn(cmd: list[str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


async def _kill_once_spawned(spawn: asyncio.Future[asyncio.subprocess.Process]) -> None:
    try:
        process = await spawn
    except OSError:
        return
    log.info("Transcode cancelled during launch, killing ffmpeg pid %s", process.pid)
    await _kill_and_reap(process)


async def run_transcode(cmd: list[str]) -> bytes:
    """Run ffmpeg to completion and return everything it wrote to stdout."""
    spawn = asyncio.ensure_future(_spawn(cmd))
    try:
        process = await asyncio.shield(spawn)
    except asyncio.CancelledError:
        # ffmpeg may already be forked; wait for its handle so it can be killed
        await asyncio.shield(_kill_once_spawned(spawn))
        raise
    except OSError as e:
        log.error("Failed to launch ffmpeg: %s", e)
        raise TranscodeLaunchError(str(e)) from e

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        # Client went away; don't leave ffmpeg running without a reader
        log.info("Transcode cancelled, killing ffmpeg pid %s", process.pid)
        await asyncio.shield(_kill_and_reap(process))
        raise

    if process.returncode != 0:
        err = stderr.decode(errors="replace").strip()
        tail = "\n".join(err.splitlines()[-_STDERR_TAIL_LINES:]) or "no output"
        log.error("ffmpeg failed (exit %d): %s", process.returncode, tail)
        raise TranscodeFailed(process.returncode, err)
    return stdout


async def transcode_segment(
    request: TranscodeRequest,
    admission: AdmissionController,
    hw: HwAccel,
    video_bitrate: str = DEFAULT_VIDEO_BITRATE,
    audio_bitrate: str = DEFAULT_AUDIO_BITRATE,
    precision: int = PRECISION,
) -> bytes:
    """Transcode one window while holding an admission slot.

    Raises CapacityExceeded without spawning anything when the gate is full.
    """
    cmd = build_segment_cmd(request, hw, video_bitrate, audio_bitrate, precision)
    with admission.slot():
        log.info(
            "Transcoding %s [%s +%s] (%d/%d slots)",
            request.path.name,
            format_seconds(request.window.start, precision),
            format_seconds(request.window.duration, precision),
            admission.in_use,
            admission.capacity,
        )
        log.debug("ffmpeg: %s", " ".join(cmd))
        data = await run_transcode(cmd)
    log.debug("Segment of %s: %d bytes", request.path.name, len(data))
    return data
