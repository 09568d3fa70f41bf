import asyncio
import json
import os
import shutil
import sys
import time
from pathlib import Path

import pytest

import mpv_link_opener as mlo


MEDIA_ENV = "MPV_LINK_TEST_MEDIA"

# Minimal stand-in for mpv: listens on --input-ipc-server, records its argv and
# every non-empty line it receives, exits after the first one.
FAKE_PLAYER = """\
import json, os, socket, sys
args = sys.argv[1:]
ipc = [a.split("=", 1)[1] for a in args if a.startswith("--input-ipc-server=")][0]
log = os.environ["FAKE_PLAYER_LOG"]
srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
srv.bind(ipc)
srv.listen(8)
srv.settimeout(15)
with open(log, "a") as fh:
    fh.write(json.dumps({"argv": args}) + "\\n")
try:
    while True:
        conn, _ = srv.accept()
        conn.settimeout(5)
        data = b""
        with conn:
            while True:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                data += chunk
        if data:
            with open(log, "a") as fh:
                fh.write(json.dumps({"command": data.decode()}) + "\\n")
            break
finally:
    srv.close()
    os.unlink(ipc)
"""


def read_log(path, count, timeout=10.0):
    deadline = time.monotonic() + timeout
    entries = []
    while time.monotonic() < deadline:
        if path.exists():
            entries = [json.loads(line) for line in path.read_text().splitlines() if line.strip()]
            if len(entries) >= count:
                break
        time.sleep(0.05)
    return entries


def wait_live(endpoint, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if asyncio.run(mlo.probe_endpoint(endpoint)):
            return True
        time.sleep(0.05)
    return False


@pytest.mark.skipif(sys.platform == "win32", reason="fake player uses Unix domain sockets")
def test_fake_player_launch_reuse_and_seek(short_tmp, monkeypatch):
    script = short_tmp / "fake-mpv"
    script.write_text(f"#!{sys.executable}\n{FAKE_PLAYER}")
    script.chmod(0o755)
    log = short_tmp / "player.log"
    monkeypatch.setenv("FAKE_PLAYER_LOG", str(log))

    config = mlo.PlayerConfig(mpv_path=str(script), socket_dir=str(short_tmp), ready_retries=200, ready_interval=0.05)
    manager = mlo.PlayerSessionManager(config)
    source = "/media/clip.mp4"

    first = asyncio.run(manager.open(mlo.MediaReference(source)))
    assert first.launched is True
    assert wait_live(first.endpoint)

    second = asyncio.run(manager.open(mlo.MediaReference(source)))
    assert second.launched is False
    assert second.endpoint == first.endpoint

    third = asyncio.run(manager.open(mlo.MediaReference(source, "30")))
    assert third.launched is False
    assert third.seek_sent is True

    entries = read_log(log, 2)
    assert entries[0]["argv"] == [source, f"--input-ipc-server={first.endpoint.address}"]
    assert entries[1] == {"command": "seek 30 absolute\n"}


@pytest.mark.skipif(MEDIA_ENV not in os.environ, reason="MPV_LINK_TEST_MEDIA not set")
@pytest.mark.skipif(shutil.which("mpv") is None, reason="mpv not on PATH")
def test_real_mpv_open_then_seek(short_tmp):
    media = Path(os.environ[MEDIA_ENV]).resolve()
    assert media.is_file(), f"Media file not found: {media}"

    config = mlo.PlayerConfig(
        socket_dir=str(short_tmp),
        mpv_additional_args=["--no-terminal", "--pause", "--vo=null", "--ao=null"],
        ready_retries=100,
        ready_interval=0.05,
    )
    manager = mlo.PlayerSessionManager(config)
    first = asyncio.run(manager.open(mlo.MediaReference(str(media), "1")))
    print(f"[integration] media={media} endpoint={first.endpoint} ready={first.ready}")
    try:
        assert first.launched is True
        assert first.ready is True
        assert first.seek_sent is True

        again = asyncio.run(manager.open(mlo.MediaReference(str(media), "2")))
        assert again.launched is False
        assert again.seek_sent is True
    finally:
        asyncio.run(mlo.send_command(first.endpoint, "quit"))
