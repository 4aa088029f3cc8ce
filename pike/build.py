"""Building a plugin with cargo."""

from __future__ import annotations

from pike.common import BuildType, PikeError, cargo_build


def build(release: bool, target_dir, plugin_path) -> None:
    """Build the plugin in *plugin_path*, in release or debug mode."""
    build_type = BuildType.RELEASE if release else BuildType.DEBUG
    try:
        cargo_build(build_type, target_dir, plugin_path)
    except PikeError as exc:
        raise PikeError("building of plugin") from exc