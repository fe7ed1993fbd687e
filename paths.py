"""Confine client-supplied paths to the served root directory."""

from __future__ import annotations

import logging
import pathlib

from errors import MediaNotFound
from errors import PathResolutionError
from errors import PathTraversal


log = logging.getLogger(__name__)

SUBTITLE_EXTENSION = ".ass"


def _is_within(path: pathlib.Path, root: pathlib.Path) -> bool:
    return path == root or root in path.parents


def resolve_media_path(root: pathlib.Path, relative: str) -> pathlib.Path:
    """Return the canonical absolute path of relative inside root.

    Symlinks are resolved before the containment check, so neither "..", an
    absolute path, nor a link pointing outside root can escape it.
    """
    root = root.resolve()
    try:
        # Non-strict first: a traversal attempt is reported as such even when the
        # target does not exist.
        candidate = (root / relative).resolve()
    except (OSError, RuntimeError, ValueError) as e:
        raise PathResolutionError(f"cannot resolve {relative!r}: {e}") from e
    if not _is_within(candidate, root):
        log.warning("Rejected path outside root: %r -> %s", relative, candidate)
        raise PathTraversal(f"{relative!r} resolves outside {root}")
    try:
        resolved = candidate.resolve(strict=True)
    except FileNotFoundError as e:
        raise MediaNotFound(f"{candidate} does not exist") from e
    except (OSError, RuntimeError) as e:
        raise PathResolutionError(f"cannot stat {candidate}: {e}") from e
    if not _is_within(resolved, root):
        log.warning("Rejected path outside root: %r -> %s", relative, resolved)
        raise PathTraversal(f"{relative!r} resolves outside {root}")
    return resolved


def find_sidecar_subtitle(video_path: pathlib.Path) -> pathlib.Path | None:
    """Find "<stem>.ass" or "<name>.ass" next to the video, best effort."""
    candidates = (
        video_path.with_suffix(SUBTITLE_EXTENSION),
        video_path.with_name(video_path.name + SUBTITLE_EXTENSION),
    )
    for path in candidates:
        try:
            if path.is_file():
                return path
        except OSError as e:
            log.debug("Subtitle lookup failed for %s: %s", path, e)
    return None
