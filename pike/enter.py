"""Opening the admin console of a cluster instance."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from pike.common import PikeError

log = logging.getLogger(__name__)


def enter_instance(base_path, instance_name: str, picodata_path) -> None:
    """Run ``picodata admin`` against the instance's admin socket."""
    instance_dir = Path(base_path) / instance_name
    if not instance_dir.is_dir():
        raise PikeError(
            f"failed to find instance data directory with path {instance_dir}"
        )

    sock_path = instance_dir / "admin.sock"
    if not sock_path.exists():
        raise PikeError("failed to find admin.sock in instance directory")

    try:
        result = subprocess.run([os.fspath(picodata_path), "admin", str(sock_path)])
    except OSError as exc:
        raise PikeError("failed to execute picodata") from exc
    if result.returncode != 0:
        raise PikeError("failed to execute picodata admin")


def enter(instance_name: str, data_dir, plugin_path, picodata_path) -> None:
    """Enter the instance *instance_name* of the cluster in *data_dir*."""
    log.info("Entering instance <%s>", instance_name)
    cluster_dir = Path(plugin_path) / data_dir / "cluster"
    try:
        enter_instance(cluster_dir, instance_name, picodata_path)
    except PikeError as exc:
        raise PikeError(f"failed to enter instance {instance_name}") from exc