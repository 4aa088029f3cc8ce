"""Shared helpers: cargo builds and discovery of running instances."""

from __future__ import annotations

import enum
import os
import socket
import subprocess
from pathlib import Path


class PikeError(Exception):
    """Raised when a pike command cannot complete."""


class BuildType(enum.Enum):
    """Cargo build profile."""

    RELEASE = "release"
    DEBUG = "debug"


def cargo_build(build_type: BuildType, target_dir, build_dir) -> None:
    """Run ``cargo build`` in *build_dir*, echoing its output."""
    args = ["cargo", "build"]
    if build_type is BuildType.RELEASE:
        args.append("--release")
    args += ["--target-dir", os.fspath(target_dir)]

    try:
        proc = subprocess.Popen(
            args, cwd=os.fspath(build_dir), stdout=subprocess.PIPE, text=True
        )
    except OSError as exc:
        raise PikeError(f"running cargo build: {exc}") from exc

    with proc:
        assert proc.stdout is not None
        for line in proc.stdout:
            print(line, end="")

    if proc.returncode != 0:
        raise PikeError(f"build error: cargo exited with code {proc.returncode}")


def get_active_socket_path(data_dir, plugin_path, instance_name: str) -> str | None:
    """Return the admin socket path of *instance_name* if something listens on it."""
    socket_path = Path(plugin_path) / data_dir / "cluster" / instance_name / "admin.sock"
    if not socket_path.exists():
        return None

    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        try:
            sock.connect(os.fspath(socket_path))
        except OSError:
            return None
    return str(socket_path)


def check_running_instances(data_dir, plugin_path) -> str | None:
    """Return the admin socket path of the first running instance, if any."""
    instances_path = Path(plugin_path) / data_dir / "cluster"
    if not instances_path.exists():
        return None

    try:
        names = sorted(entry.name for entry in instances_path.iterdir())
    except OSError as exc:
        raise PikeError(
            f"cluster data dir with path {instances_path} does not exist"
        ) from exc

    for name in names:
        active = get_active_socket_path(data_dir, plugin_path, name)
        if active is not None:
            return active
    return None