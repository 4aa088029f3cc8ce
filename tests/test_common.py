import os
import shutil
import socket
import tempfile
from pathlib import Path

import pytest

from pike.common import (
    BuildType,
    PikeError,
    cargo_build,
    check_running_instances,
    get_active_socket_path,
)

FAKE_CARGO = """#!/bin/sh
echo "$@" > cargo_args.txt
echo "Compiling fake"
exit ${FAKE_CARGO_EXIT:-0}
"""


@pytest.fixture
def fake_cargo(tmp_path, monkeypatch):
    bindir = tmp_path / "bin"
    bindir.mkdir()
    script = bindir / "cargo"
    script.write_text(FAKE_CARGO)
    script.chmod(0o755)
    monkeypatch.setenv("PATH", f"{bindir}{os.pathsep}{os.environ.get('PATH', '')}")
    build_dir = tmp_path / "plugin"
    build_dir.mkdir()
    return build_dir


@pytest.fixture
def short_root():
    root = Path(tempfile.mkdtemp(prefix="pk", dir="/tmp"))
    yield root
    shutil.rmtree(root, ignore_errors=True)


def _listen(path: Path) -> socket.socket:
    path.parent.mkdir(parents=True, exist_ok=True)
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(os.fspath(path))
    server.listen(1)
    return server


def test_cargo_build_release_args(fake_cargo, capsys):
    cargo_build(BuildType.RELEASE, Path("target"), fake_cargo)
    args = (fake_cargo / "cargo_args.txt").read_text().split()
    assert args == ["build", "--release", "--target-dir", "target"]
    assert "Compiling fake" in capsys.readouterr().out


def test_cargo_build_debug_has_no_release_flag(fake_cargo):
    cargo_build(BuildType.DEBUG, "target", fake_cargo)
    args = (fake_cargo / "cargo_args.txt").read_text().split()
    assert "--release" not in args
    assert args[0] == "build"


def test_cargo_build_failure(fake_cargo, monkeypatch):
    monkeypatch.setenv("FAKE_CARGO_EXIT", "1")
    with pytest.raises(PikeError, match="build error"):
        cargo_build(BuildType.DEBUG, "target", fake_cargo)


def test_cargo_build_missing_cargo(tmp_path, monkeypatch):
    empty = tmp_path / "empty"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    with pytest.raises(PikeError, match="running cargo build"):
        cargo_build(BuildType.DEBUG, "target", tmp_path)


def test_active_socket_path_with_listener(short_root):
    sock_path = short_root / "tmp" / "cluster" / "i1" / "admin.sock"
    server = _listen(sock_path)
    try:
        assert get_active_socket_path(Path("tmp"), short_root, "i1") == str(sock_path)
    finally:
        server.close()


def test_active_socket_path_without_listener(short_root):
    sock_path = short_root / "tmp" / "cluster" / "i1" / "admin.sock"
    sock_path.parent.mkdir(parents=True)
    sock_path.touch()
    assert get_active_socket_path(Path("tmp"), short_root, "i1") is None


def test_active_socket_path_missing(short_root):
    assert get_active_socket_path(Path("tmp"), short_root, "i1") is None


def test_check_running_instances_no_cluster(short_root):
    assert check_running_instances(Path("tmp"), short_root) is None


def test_check_running_instances_finds_active(short_root):
    (short_root / "tmp" / "cluster" / "i1").mkdir(parents=True)
    sock_path = short_root / "tmp" / "cluster" / "i2" / "admin.sock"
    server = _listen(sock_path)
    try:
        assert check_running_instances(Path("tmp"), short_root) == str(sock_path)
    finally:
        server.close()


def test_check_running_instances_none_active(short_root):
    (short_root / "tmp" / "cluster" / "i1").mkdir(parents=True)
    assert check_running_instances(Path("tmp"), short_root) is None