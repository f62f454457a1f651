import socket

import pytest

from hubbridge.lib.watchdog import sd_notify
from hubbridge.player import MpvProcess, build_mpv_args


def test_mpv_args():
    args = build_mpv_args("/run/mpv.sock", "Jellyfin - Show 1x2", ["--fs"])

    assert "--input-ipc-server=/run/mpv.sock" in args
    assert "--title=Jellyfin - Show 1x2" in args
    assert "--idle=yes" in args
    assert "--save-position-on-quit=no" in args
    assert args[-1] == "--fs"


async def test_missing_binary_raises_oserror(tmp_path):
    process = MpvProcess(str(tmp_path / "no-such-mpv"), str(tmp_path / "mpv.sock"))
    with pytest.raises(OSError):
        await process.start("title")
    assert not process.alive


async def test_terminate_before_start_is_a_noop(tmp_path):
    process = MpvProcess("mpv", str(tmp_path / "mpv.sock"))
    await process.terminate()
    assert process.pid is None


async def test_stale_socket_removed_before_start(tmp_path):
    stale = tmp_path / "mpv.sock"
    stale.write_text("")
    process = MpvProcess(str(tmp_path / "no-such-mpv"), str(stale))
    with pytest.raises(OSError):
        await process.start("title")
    assert not stale.exists()


def test_sd_notify_without_socket(monkeypatch):
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    assert not sd_notify("READY=1")


def test_sd_notify_sends_datagram(tmp_path, monkeypatch):
    path = str(tmp_path / "notify")
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    sock.bind(path)
    try:
        monkeypatch.setenv("NOTIFY_SOCKET", path)
        assert sd_notify("WATCHDOG=1")
        assert sock.recv(64) == b"WATCHDOG=1"
    finally:
        sock.close()
