"""Stopping a cluster started by the run command."""

from __future__ import annotations

import logging
import os
import re
import signal
from dataclasses import dataclass
from pathlib import Path

from pike.common import PikeError, get_active_socket_path

log = logging.getLogger(__name__)

_PID_PATTERN = re.compile(r"\+?[0-9]+")
_MAX_PID = 2**32 - 1


@dataclass
class StopParams:
    """Where the cluster to stop lives."""

    data_dir: Path = Path("./tmp")
    plugin_path: Path = Path("./")


def read_pid_from_file(pid_file_path) -> int:
    """Read the PID stored on the first line of *pid_file_path*."""
    with open(pid_file_path, encoding="utf-8") as pid_file:
        first_line = pid_file.readline()
    if not first_line:
        raise PikeError("PID file is empty")

    text = first_line.strip()
    if not _PID_PATTERN.fullmatch(text) or int(text) > _MAX_PID:
        raise PikeError(f"failed to parse PID from file {pid_file_path}")
    return int(text)


def kill_process_by_pid(pid: int) -> None:
    """Send SIGKILL to *pid*."""
    try:
        os.kill(pid, signal.SIGKILL)
    except OSError as exc:
        raise PikeError(f"failed to kill picodata instance (pid: {pid}): {exc}") from exc


def stop(params: StopParams) -> None:
    """Kill every live instance reachable through the cluster's name symlinks."""
    data_dir = Path(params.data_dir)
    plugin_path = Path(params.plugin_path)
    instances_path = plugin_path / data_dir / "cluster"

    try:
        entries = sorted(instances_path.iterdir())
    except OSError as exc:
        raise PikeError(
            f"cluster data dir with path {instances_path} does not exist"
        ) from exc

    log.info("stopping picodata cluster, data folder: %s", data_dir)

    for instance_dir in entries:
        # Only the symlinks carry the real instance names.
        if not instance_dir.is_symlink():
            continue
        if not instance_dir.is_dir():
            raise PikeError(f"{instance_dir} is not a directory")

        pid_file_path = instance_dir / "pid"
        if not pid_file_path.exists():
            raise PikeError(f"PID file does not exist in folder: {instance_dir}")

        try:
            pid = read_pid_from_file(pid_file_path)
        except (PikeError, OSError) as exc:
            raise PikeError("failed to read the PID file") from exc

        link_name = instance_dir.name
        if get_active_socket_path(data_dir, plugin_path, link_name) is None:
            log.info("stopping picodata instance: %s - SKIPPED", link_name)
            continue

        try:
            kill_process_by_pid(pid)
        except PikeError as exc:
            raise PikeError(
                f"failed to stop picodata instance with PID {pid}. Error: {exc}"
            ) from exc
        log.info("stopping picodata instance: %s - OK", link_name)