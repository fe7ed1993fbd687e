"""Failure taxonomy for playlist and segment requests.

Every failure is resolved at the request boundary: main.py maps a StreamError to
its status_code and public_message. Anything more detailed (paths, ffmpeg stderr)
stays in the server log.
"""

from __future__ import annotations


class StreamError(Exception):
    """Base class for failures surfaced to HTTP clients."""

    status_code = 500
    public_message = "Internal error"


class InputValidation(StreamError):
    """Missing or malformed query parameters."""

    status_code = 400
    public_message = "Missing or invalid parameters"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.public_message)
        if detail:
            self.public_message = detail


class PathResolutionError(StreamError):
    """Client path could not be resolved (permission denied, loop, bad bytes)."""

    status_code = 403
    public_message = "Path resolution failed"


class MediaNotFound(PathResolutionError):
    status_code = 404
    public_message = "Video file not found"


class PathTraversal(StreamError):
    """Canonical path escapes the configured root."""

    status_code = 403
    public_message = "Illegal path access"


class ProbeError(StreamError):
    """Media metadata could not be established."""

    status_code = 403
    public_message = "Could not read video information"


class ProbeExecutionError(ProbeError):
    pass


class ProbeParseError(ProbeError):
    pass


class DurationUnavailable(ProbeError):
    public_message = "Could not determine video duration"


class CapacityExceeded(StreamError):
    """Admission gate is full. Retryable by the client."""

    status_code = 500
    public_message = "Transcoding capacity reached, retry later"
    headers = {"Retry-After": "1"}


class TranscodeError(StreamError):
    status_code = 500
    public_message = "Transcode failed - check server logs for details"


class TranscodeLaunchError(TranscodeError):
    pass


class TranscodeFailed(TranscodeError):
    def __init__(self, returncode: int, stderr: str) -> None:
        super().__init__(f"ffmpeg exited with code {returncode}")
        self.returncode = returncode
        self.stderr = stderr
