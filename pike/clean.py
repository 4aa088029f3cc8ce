"""Removing the data of a previous cluster run."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from pike.common import PikeError
from pike.stop import StopParams, stop

log = logging.getLogger(__name__)


def clean(data_dir, plugin_path) -> None:
    """Stop the cluster if possible, then delete its data directory."""
    log.info("Clearing cluster data directory:")
    try:
        stop(StopParams(data_dir=Path(data_dir), plugin_path=Path(plugin_path)))
    except (PikeError, OSError) as exc:
        log.debug("failed stop cluster before clean: %s", exc)

    plugin_data_dir = Path(plugin_path) / data_dir
    if plugin_data_dir.exists():
        try:
            shutil.rmtree(plugin_data_dir)
        except OSError as exc:
            raise PikeError(f"failed to remove directory {plugin_data_dir}") from exc
        log.info("Successfully cleaned: %s", plugin_data_dir)
    else:
        log.warning("Data directory does not exist")