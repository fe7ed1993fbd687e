"""Tests for the HTTP surface in main.py."""

from __future__ import annotations

from fractions import Fraction
from pathlib import Path
from unittest import mock

import asyncio

import pytest
from fastapi.testclient import TestClient

import main
import paths
from config import Settings
from errors import ProbeExecutionError
from errors import TranscodeFailed
from probe import MediaInfo
from transcoding import HwAccel


TS_PACKET = b"\x47" + b"\x00" * 187


@pytest.fixture
def root(tmp_path: Path) -> Path:
    root = tmp_path / "media"
    root.mkdir()
    (root / "movie.mp4").write_bytes(b"x")
    (tmp_path / "secret.mp4").write_bytes(b"x")
    return root


def _client(root: Path, **overrides) -> TestClient:
    settings = Settings(root_dir=root.resolve(), **overrides)
    return TestClient(main.create_app(settings, hw=HwAccel()))


@pytest.fixture
def client(root: Path):
    with _client(root) as c:
        yield c


@pytest.fixture
def keyframe_client(root: Path):
    with _client(root, plan_mode="keyframe") as c:
        yield c


def _probe(duration=12.3, has_audio=True):
    return mock.patch(
        "main.probe_media",
        return_value=MediaInfo(duration=duration, has_audio=has_audio),
    )


class TestIndex:
    def test_root_is_404(self, client):
        response = client.get("/")
        assert response.status_code == 404

    def test_unknown_route_is_404(self, client):
        assert client.get("/video/other").status_code == 404


class TestPlaylist:
    def test_fixed_playlist(self, client):
        with _probe():
            response = client.get("/video/rttPlaylist", params={"path": "movie.mp4"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        body = response.text
        assert body.startswith("#EXTM3U\n#EXT-X-VERSION:3\n")
        assert body.count("#EXTINF:") == 3
        assert "#EXTINF:5.0000," in body
        assert "#EXTINF:2.3000," in body
        assert "&audio=1&segment=2" in body
        assert body.endswith("#EXT-X-ENDLIST\n")

    def test_segment_length_setting(self, root):
        with _client(root, segment_seconds=4) as c, _probe(duration=12.3):
            body = c.get("/video/rttPlaylist", params={"path": "movie.mp4"}).text
        assert "#EXT-X-TARGETDURATION:4" in body
        assert body.count("#EXTINF:") == 4

    def test_keyframe_playlist(self, keyframe_client):
        info = MediaInfo(duration=10.5, has_audio=False, time_base=Fraction(1, 90000))
        with mock.patch("main.probe_media", return_value=info), mock.patch(
            "main.extract_keyframes", return_value=[0.0, 4.0, 8.0]
        ) as extract:
            response = keyframe_client.get("/video/rttPlaylist", params={"path": "movie.mp4"})
        assert response.status_code == 200
        assert "start=8.0000&duration=2.5000" in response.text
        assert "&audio=0&" in response.text
        assert extract.call_args.args[1:3] == (Fraction(1, 90000), 10.5)
        # Target duration comes from the longest keyframe window
        assert "#EXT-X-TARGETDURATION:4\n" in response.text

    def test_missing_path(self, client):
        assert client.get("/video/rttPlaylist").status_code == 400

    def test_traversal(self, client):
        response = client.get("/video/rttPlaylist", params={"path": "../secret.mp4"})
        assert response.status_code == 403
        assert "secret" not in response.text

    def test_missing_file(self, client):
        response = client.get("/video/rttPlaylist", params={"path": "nope.mp4"})
        assert response.status_code == 404

    def test_directory(self, client, root):
        (root / "shows").mkdir()
        assert client.get("/video/rttPlaylist", params={"path": "shows"}).status_code == 404

    def test_probe_failure(self, client):
        with mock.patch("main.probe_media", side_effect=ProbeExecutionError("exit 1")):
            response = client.get("/video/rttPlaylist", params={"path": "movie.mp4"})
        assert response.status_code == 403
        assert "exit 1" not in response.text


class TestFixedSegment:
    def test_segment(self, client):
        run = mock.AsyncMock(return_value=TS_PACKET * 2)
        with _probe(), mock.patch("transcoding.run_transcode", new=run):
            response = client.get(
                "/video/rttSegment", params={"path": "movie.mp4", "audio": "1", "segment": "2"}
            )
        assert response.status_code == 200
        assert response.headers["content-type"] == "video/MP2T"
        assert response.headers["content-length"] == str(len(TS_PACKET) * 2)
        assert response.content == TS_PACKET * 2
        cmd = run.call_args.args[0]
        assert cmd[cmd.index("-ss") + 1] == "10.0000"
        assert cmd[cmd.index("-t") + 1] == "2.3000"
        assert "0:a:0" in cmd

    def test_audio_off(self, client):
        run = mock.AsyncMock(return_value=TS_PACKET)
        with _probe(), mock.patch("transcoding.run_transcode", new=run):
            client.get("/video/rttSegment", params={"path": "movie.mp4", "segment": "0"})
        assert "0:a:0" not in run.call_args.args[0]

    @pytest.mark.parametrize("segment", [None, "", "x", "1.5", "-1"])
    def test_bad_index(self, client, segment):
        params = {"path": "movie.mp4", "audio": "1"}
        if segment is not None:
            params["segment"] = segment
        run = mock.AsyncMock()
        with _probe(), mock.patch("transcoding.run_transcode", new=run):
            response = client.get("/video/rttSegment", params=params)
        assert response.status_code == 400
        run.assert_not_called()

    def test_index_out_of_range(self, client):
        run = mock.AsyncMock()
        with _probe(), mock.patch("transcoding.run_transcode", new=run):
            response = client.get("/video/rttSegment", params={"path": "movie.mp4", "segment": "3"})
        assert response.status_code == 400
        run.assert_not_called()

    def test_traversal(self, client):
        run = mock.AsyncMock()
        with mock.patch("transcoding.run_transcode", new=run):
            response = client.get(
                "/video/rttSegment", params={"path": "../secret.mp4", "segment": "0"}
            )
        assert response.status_code == 403
        run.assert_not_called()


class TestKeyframeSegment:
    def test_segment(self, keyframe_client):
        run = mock.AsyncMock(return_value=TS_PACKET)
        with mock.patch("transcoding.run_transcode", new=run):
            response = keyframe_client.get(
                "/video/rttSegment",
                params={"path": "movie.mp4", "audio": "0", "start": "8.3417", "duration": "2.1583"},
            )
        assert response.status_code == 200
        cmd = run.call_args.args[0]
        assert cmd[cmd.index("-ss") + 1] == "8.3417"
        assert cmd[cmd.index("-t") + 1] == "2.1583"
        assert "0:a:0" not in cmd

    @pytest.mark.parametrize(
        "start,duration",
        [
            (None, "2"),
            ("0", None),
            ("abc", "2"),
            ("0", "xyz"),
            ("nan", "2"),
            ("0", "inf"),
            ("-1", "2"),
            ("0", "0"),
        ],
    )
    def test_bad_times(self, keyframe_client, start, duration):
        params = {"path": "movie.mp4", "audio": "1"}
        if start is not None:
            params["start"] = start
        if duration is not None:
            params["duration"] = duration
        run = mock.AsyncMock()
        with mock.patch("transcoding.run_transcode", new=run):
            response = keyframe_client.get("/video/rttSegment", params=params)
        assert response.status_code == 400
        run.assert_not_called()


class TestSegmentFailures:
    def test_transcode_failure_is_500(self, keyframe_client):
        run = mock.AsyncMock(side_effect=TranscodeFailed(1, "Conversion failed!"))
        with mock.patch("transcoding.run_transcode", new=run):
            response = keyframe_client.get(
                "/video/rttSegment", params={"path": "movie.mp4", "start": "0", "duration": "5"}
            )
        assert response.status_code == 500
        assert "Conversion failed" not in response.text

    def test_capacity_exceeded_is_retryable_500(self, root):
        with _client(root, plan_mode="keyframe", max_transcodes=1) as c:
            c.app.state.stream.admission.acquire()
            run = mock.AsyncMock(return_value=TS_PACKET)
            with mock.patch("transcoding.run_transcode", new=run):
                response = c.get(
                    "/video/rttSegment", params={"path": "movie.mp4", "start": "0", "duration": "5"}
                )
            assert response.status_code == 500
            assert response.headers["retry-after"] == "1"
            run.assert_not_called()

            c.app.state.stream.admission.release()
            with mock.patch("transcoding.run_transcode", new=run):
                response = c.get(
                    "/video/rttSegment", params={"path": "movie.mp4", "start": "0", "duration": "5"}
                )
            assert response.status_code == 200
            assert c.app.state.stream.admission.in_use == 0


class TestPathResolution:
    def _recording_resolver(self, seen):
        def resolve(root, relative):
            try:
                asyncio.get_running_loop()
                seen.append("event loop")
            except RuntimeError:
                seen.append("worker thread")
            return paths.resolve_media_path(root, relative)

        return resolve

    def test_playlist_resolves_off_event_loop(self, client):
        seen = []
        with _probe(), mock.patch("main.resolve_media_path", new=self._recording_resolver(seen)):
            response = client.get("/video/rttPlaylist", params={"path": "movie.mp4"})
        assert response.status_code == 200
        assert seen == ["worker thread"]

    def test_segment_resolves_off_event_loop(self, keyframe_client):
        seen = []
        run = mock.AsyncMock(return_value=TS_PACKET)
        with mock.patch("main.resolve_media_path", new=self._recording_resolver(seen)), mock.patch(
            "transcoding.run_transcode", new=run
        ):
            response = keyframe_client.get(
                "/video/rttSegment", params={"path": "movie.mp4", "start": "0", "duration": "5"}
            )
        assert response.status_code == 200
        assert seen == ["worker thread"]

    def test_segment_for_directory_is_404(self, keyframe_client, root):
        (root / "shows").mkdir()
        run = mock.AsyncMock()
        with mock.patch("transcoding.run_transcode", new=run):
            response = keyframe_client.get(
                "/video/rttSegment", params={"path": "shows", "start": "0", "duration": "5"}
            )
        assert response.status_code == 404
        run.assert_not_called()
