"""
End-to-end tests for broadcaster.daemon.BroadcastDaemon.

The whole pipeline runs on the test event loop with fake Xvfb/ffmpeg
processes, a fake Playwright and a fake LiveKit API.
"""

import asyncio
import json
import os
import signal
import socket
from unittest.mock import patch

import pytest
from conftest import (
    FakeBrowser,
    FakeEgressService,
    FakeIngressService,
    FakeLiveKitAPI,
    FakePlaywright,
    FakeResponse,
    FakeSpawner,
    egress_info,
    ingress_info,
)

from broadcaster.audio import AudioSourceResolver
from broadcaster.base.daemon import SingleInstance, pid_alive, sd_notify
from broadcaster.browser import OverlayRenderer
from broadcaster.config import resolve_config
from broadcaster.daemon import EXIT_CONFIG_ERROR, BroadcastDaemon
from broadcaster.display import DisplayAllocator
from broadcaster.egress import EgressController
from broadcaster.encoder import EncodingPipeline, VideoSettings
from broadcaster.ingress import IngressProvisioner
from broadcaster.supervisor import PipelineState

RTMP_URL = "rtmp://relay.example.com/live/primary-key"
BACKUP_URL = "rtmp://backup.example.com/live/backup-key"

BASE_DOCUMENT = {
    "rtmpUrl": RTMP_URL,
    "displaySettleSeconds": 0,
    "streamSettleSeconds": 0,
    "audio": {"mode": "silence"},
    "livekit": {"ingress": {"enabled": False}},
}


def document(**overrides):
    doc = json.loads(json.dumps(BASE_DOCUMENT))
    doc.update(overrides)
    return doc


def build_daemon(tmp_path, x_root, spawner, doc, playwright=None, lkapi=None):
    config = resolve_config(doc, base_dir=tmp_path, env={})
    lkapi = lkapi or FakeLiveKitAPI()
    return BroadcastDaemon(
        config,
        lock_dir=tmp_path,
        state_file=tmp_path / "state" / "broadcast_state.json",
        allocator=DisplayAllocator(
            base_display=config.display,
            width=config.width,
            height=config.height,
            ready_timeout=0.2,
            retry_pause=0,
            x_root=x_root,
            spawn=spawner,
        ),
        renderer=OverlayRenderer(
            config.overlay_url,
            width=config.width,
            height=config.height,
            playwright_factory=playwright or FakePlaywright(),
        ),
        audio=AudioSourceResolver(config.audio, tmp_path / "scratch"),
        ingress=IngressProvisioner(config.livekit, api_factory=lkapi.factory),
        encoder=EncodingPipeline(VideoSettings.from_config(config), spawn=spawner),
        egress=EgressController(config.livekit, api_factory=lkapi.factory),
    )


async def wait_for_state(daemon, state, timeout=2.0):
    async def _poll():
        while daemon.supervisor.state != state:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


def read_state(daemon) -> dict:
    return json.loads(daemon.state_file.read_text())


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestPipeline:
    @pytest.mark.asyncio
    async def test_single_output_silence_until_sigterm(self, tmp_path, x_root, spawner):
        playwright = FakePlaywright()
        daemon = build_daemon(tmp_path, x_root, spawner, document(), playwright=playwright)
        loop = asyncio.get_running_loop()

        with patch("broadcaster.daemon.sd_notify") as notify:
            task = asyncio.create_task(daemon._run())
            try:
                await wait_for_state(daemon, PipelineState.STREAMING)

                state = read_state(daemon)
                assert state["state"] == "streaming"
                assert state["display"] == ":99"
                assert state["destinations"] == ["rtmp://relay.example.com/live/•••"]
                assert state["ingress"] is False
                assert state["audio"] == "silence"

                os.kill(os.getpid(), signal.SIGTERM)
                code = await asyncio.wait_for(task, 2.0)
            finally:
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.remove_signal_handler(sig)

        assert code == 0
        assert daemon.supervisor.state == PipelineState.STOPPED
        assert read_state(daemon)["state"] == "stopped"
        notify.assert_any_call("READY=1")
        notify.assert_any_call("STATUS=streaming")

        ffmpeg = spawner.commands("ffmpeg")
        assert len(ffmpeg) == 1
        assert ffmpeg[0][-3:] == ["-f", "flv", RTMP_URL]
        assert "anullsrc=channel_layout=stereo:sample_rate=44100" in ffmpeg[0]

        assert all(not h.running for h in spawner.handles)
        assert playwright.browser.closed
        assert playwright.stopped

    @pytest.mark.asyncio
    async def test_tee_with_shuffled_playlist(self, tmp_path, x_root, spawner):
        music = tmp_path / "music"
        music.mkdir()
        for name in ("one.mp3", "two.mp3", "three.mp3"):
            (music / name).write_bytes(b"\x00")
        doc = document(
            destinations=[BACKUP_URL],
            audio={"mode": "playlist", "directory": "music", "shuffle": True},
        )
        daemon = build_daemon(tmp_path, x_root, spawner, doc)

        task = asyncio.create_task(daemon.run_daemon())
        await wait_for_state(daemon, PipelineState.STREAMING)

        command = spawner.commands("ffmpeg")[0]
        manifest = daemon.audio_plan.manifest
        listed = [line for line in manifest.read_text().splitlines() if line.startswith("file ")]
        assert command[command.index("concat") + 4] == str(manifest)
        assert len(listed) == 3
        assert {t.name for t in daemon.audio_plan.tracks} == {"one.mp3", "two.mp3", "three.mp3"}

        assert command[command.index("-f", command.index("-flags")) + 1] == "tee"
        slaves = command[-1].split("|")
        assert slaves == [f"[f=flv:onfail=ignore]{RTMP_URL}", f"[f=flv:onfail=ignore]{BACKUP_URL}"]

        daemon.request_shutdown("SIGTERM")
        assert await asyncio.wait_for(task, 2.0) == 0
        assert not manifest.exists()

    @pytest.mark.asyncio
    async def test_cloud_ingress_and_hls(self, tmp_path, x_root, spawner):
        lkapi = FakeLiveKitAPI(
            ingress=FakeIngressService(
                existing=[ingress_info("IN_1", "overlay-broadcast", url="rtmps://ingest.example.com/x", stream_key="sk")]
            ),
            egress=FakeEgressService(
                started=egress_info("EG_1", live_playlist="https://cdn.example.com/live.m3u8"),
            ),
        )
        doc = document(
            livekit={
                "host": "wss://lk.example.com",
                "apiKey": "key",
                "apiSecret": "secret",
                "enableHls": True,
            }
        )
        daemon = build_daemon(tmp_path, x_root, spawner, doc, lkapi=lkapi)

        task = asyncio.create_task(daemon.run_daemon())
        await wait_for_state(daemon, PipelineState.STREAMING)
        await asyncio.sleep(0.05)

        state = read_state(daemon)
        assert state["ingress"] is True
        assert state["playlistUrl"] == "https://cdn.example.com/live.m3u8"
        assert "sk" not in json.dumps(state["destinations"])
        assert "rtmps://ingest.example.com/x/sk" in spawner.commands("ffmpeg")[0][-1]
        assert lkapi.settings[0].host == "https://lk.example.com"

        daemon.request_shutdown("SIGINT")
        assert await asyncio.wait_for(task, 2.0) == 0
        assert lkapi.egress.stopped == ["EG_1"]
        assert lkapi.ingress.deleted == []

    @pytest.mark.asyncio
    async def test_ingress_failure_streams_direct(self, tmp_path, x_root, spawner):
        lkapi = FakeLiveKitAPI(ingress=FakeIngressService(error=ConnectionError("refused")))
        doc = document(livekit={"host": "https://lk", "apiKey": "k", "apiSecret": "s"})
        daemon = build_daemon(tmp_path, x_root, spawner, doc, lkapi=lkapi)

        task = asyncio.create_task(daemon.run_daemon())
        await wait_for_state(daemon, PipelineState.STREAMING)

        assert spawner.commands("ffmpeg")[0][-1] == RTMP_URL

        daemon.request_shutdown("SIGTERM")
        assert await asyncio.wait_for(task, 2.0) == 0

    @pytest.mark.asyncio
    async def test_encoder_crash_tears_down(self, tmp_path, x_root, spawner):
        daemon = build_daemon(tmp_path, x_root, spawner, document())

        task = asyncio.create_task(daemon.run_daemon())
        await wait_for_state(daemon, PipelineState.STREAMING)

        spawner.handles_for("ffmpeg")[0].process.exit(1)
        code = await asyncio.wait_for(task, 2.0)

        assert code == 1
        assert daemon.supervisor.cause.label == "ffmpeg"
        assert all(not h.running for h in spawner.handles_for("Xvfb"))
        assert read_state(daemon)["exitCode"] == 1

    @pytest.mark.asyncio
    async def test_overlay_failure_is_fatal(self, tmp_path, x_root, spawner):
        playwright = FakePlaywright(FakeBrowser(response=FakeResponse(500)))
        daemon = build_daemon(tmp_path, x_root, spawner, document(), playwright=playwright)

        code = await asyncio.wait_for(daemon.run_daemon(), 2.0)

        assert code == 1
        assert spawner.commands("ffmpeg") == []
        assert all(not h.running for h in spawner.handles)
        assert playwright.browser.closed
        assert daemon.supervisor.state == PipelineState.STOPPED

    @pytest.mark.asyncio
    async def test_no_display_stops_before_browser_and_encoder(self, tmp_path, x_root):
        spawner = FakeSpawner(x_root, dead_displays=range(99, 109))
        playwright = FakePlaywright()
        daemon = build_daemon(tmp_path, x_root, spawner, document(), playwright=playwright)

        code = await asyncio.wait_for(daemon.run_daemon(), 2.0)

        assert code != 0
        assert len(spawner.commands("Xvfb")) == 10
        assert playwright.started is False
        assert spawner.commands("ffmpeg") == []
        assert daemon.supervisor.state == PipelineState.STOPPED
        assert read_state(daemon)["display"] is None

    @pytest.mark.asyncio
    async def test_shutdown_during_startup(self, tmp_path, x_root, spawner):
        daemon = build_daemon(tmp_path, x_root, spawner, document(displaySettleSeconds=30))

        task = asyncio.create_task(daemon.run_daemon())
        await wait_for_state(daemon, PipelineState.DISPLAY_READY)
        daemon.request_shutdown("SIGTERM")

        assert await asyncio.wait_for(task, 2.0) == 0
        assert spawner.commands("ffmpeg") == []
        assert all(not h.running for h in spawner.handles)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestMain:
    def test_missing_destination_exits_before_spawning(self, tmp_path):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"destinations": []}))

        with patch("broadcaster.process.asyncio.create_subprocess_exec") as create:
            with pytest.raises(SystemExit) as exc_info:
                BroadcastDaemon.main(["--config", str(config_path)])

        assert exc_info.value.code == EXIT_CONFIG_ERROR
        create.assert_not_called()

    def test_bad_number_exits_with_config_error(self, tmp_path):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"rtmpUrl": RTMP_URL, "navigationTimeout": None}))

        with patch("broadcaster.process.asyncio.create_subprocess_exec") as create:
            with pytest.raises(SystemExit) as exc_info:
                BroadcastDaemon.main(["--config", str(config_path)])

        assert exc_info.value.code == EXIT_CONFIG_ERROR
        create.assert_not_called()

    def test_check_config(self, tmp_path, capsys):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"rtmpBase": "rtmp://relay.example.com/live", "streamKey": "YOUR-KEY"}))
        (tmp_path / "config.local.json").write_text(json.dumps({"streamKey": "secret-key", "audio": {"mode": "silence"}}))

        with pytest.raises(SystemExit) as exc_info:
            BroadcastDaemon.main(["--config", str(config_path), "--check-config"])

        out = capsys.readouterr().out
        assert exc_info.value.code == 0
        assert "secret-key" not in out
        assert "rtmp://relay.example.com/live/•••" in out
        assert "x11grab" in out

    def test_credentials_from_dotenv(self, tmp_path, capsys):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"rtmpUrl": RTMP_URL, "audio": {"mode": "silence"}}))
        (tmp_path / ".env").write_text(
            "LIVEKIT_URL=wss://lk.example.com\nLIVEKIT_API_KEY=key\nLIVEKIT_API_SECRET=secret\n"
        )

        with patch.dict(os.environ):
            for name in ("LIVEKIT_URL", "LIVEKIT_API_KEY", "LIVEKIT_API_SECRET"):
                os.environ.pop(name, None)
            with pytest.raises(SystemExit):
                BroadcastDaemon.main(["--config", str(config_path), "--check-config"])

        summary = json.loads(capsys.readouterr().out.split("\n}\n")[0] + "\n}")
        assert summary["ingress"] is True

    def test_lock_held(self, tmp_path):
        config = resolve_config(BASE_DOCUMENT, env={})
        holder = SingleInstance(BroadcastDaemon.name, tmp_path)
        assert holder.acquire()
        try:
            daemon = BroadcastDaemon(config, lock_dir=tmp_path, state_file=None)
            assert daemon.run() == 1
        finally:
            holder.release()


# ---------------------------------------------------------------------------
# Single instance
# ---------------------------------------------------------------------------


class TestSingleInstance:
    def test_acquire_release(self, tmp_path):
        first = SingleInstance("broadcast", tmp_path)
        second = SingleInstance("broadcast", tmp_path)

        assert first.acquire()
        assert first.is_acquired
        assert first.get_running_pid() == os.getpid()
        assert not second.acquire()

        first.release()
        assert not first.pid_path.exists()
        assert second.acquire()
        second.release()

    def test_status(self, tmp_path, capsys):
        assert BroadcastDaemon.handle_status(tmp_path) == 1
        assert "not running" in capsys.readouterr().out

        instance = SingleInstance("broadcast", tmp_path)
        instance.acquire()
        try:
            assert BroadcastDaemon.handle_status(tmp_path) == 0
        finally:
            instance.release()

    def test_status_prints_state_file(self, tmp_path, capsys):
        state_file = tmp_path / "broadcast_state.json"
        state_file.write_text(json.dumps({"state": "streaming", "playlistUrl": "https://cdn/live.m3u8"}))
        instance = SingleInstance("broadcast", tmp_path)
        instance.acquire()
        try:
            assert BroadcastDaemon.handle_status(tmp_path, state_file) == 0
        finally:
            instance.release()

        out = capsys.readouterr().out
        assert f"PID: {os.getpid()}" in out
        assert '"state": "streaming"' in out

    def test_stop_when_not_running(self, tmp_path, capsys):
        assert BroadcastDaemon.handle_stop(tmp_path) == 1
        assert "not running" in capsys.readouterr().out

    def test_stale_pid_file(self, tmp_path):
        instance = SingleInstance("broadcast", tmp_path)
        instance.pid_path.write_text("99999999\n")
        assert instance.get_running_pid() is None
        assert not pid_alive(99999999)


class TestSdNotify:
    def test_without_socket(self):
        assert sd_notify("READY=1") is False

    def test_sends_datagram(self, tmp_path, monkeypatch):
        address = tmp_path / "notify"
        with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as server:
            server.bind(str(address))
            monkeypatch.setenv("NOTIFY_SOCKET", str(address))

            assert sd_notify("READY=1", "STATUS=streaming") is True
            assert server.recv(1024) == b"READY=1\nSTATUS=streaming"

    def test_unreachable_socket(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NOTIFY_SOCKET", str(tmp_path / "missing"))
        assert sd_notify("STOPPING=1") is False


class TestStateFile:
    def test_written_atomically(self, tmp_path):
        config = resolve_config(BASE_DOCUMENT, env={})
        state_file = tmp_path / "nested" / "broadcast_state.json"
        daemon = BroadcastDaemon(config, lock_dir=tmp_path, state_file=state_file)

        daemon.write_state()

        state = json.loads(state_file.read_text())
        assert state["state"] == "init"
        assert state["pid"] == os.getpid()
        assert state["destinations"] == []
        assert list(state_file.parent.glob("*.tmp")) == []
