"""Applying service configuration to plugins of a running cluster."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tomllib
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from pike.common import PikeError

log = logging.getLogger(__name__)

DEFAULT_PLUGIN_CONFIG_PATH = "plugin_config.yaml"

ConfigMap = dict[str, dict[str, Any]]


class ConfigPathConflict(PikeError):
    """A custom config path was given for a workspace without naming a plugin."""

    def __init__(self) -> None:
        super().__init__(
            "You are trying to apply config from custom directory, however to use "
            "this flag, you must specify the plugin with --plugin-name"
        )


@dataclass
class ApplyParams:
    """Options of the config apply command.

    When ``config_map`` is set it is used instead of reading ``config_path``.
    """

    config_path: Path = Path(DEFAULT_PLUGIN_CONFIG_PATH)
    config_map: ConfigMap | None = None
    data_dir: Path = Path("./tmp")
    plugin_path: Path = Path("./")
    plugin_name: str | None = None


def read_config(path) -> ConfigMap:
    """Read a plugin config: service names mapped to their properties."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PikeError(f"failed to read config file at {path}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PikeError(f"failed to parse config file at {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise PikeError(
            f"failed to parse config file at {path}: expected a mapping of services"
        )
    config: ConfigMap = {}
    for service, properties in data.items():
        if not isinstance(service, str) or not isinstance(properties, dict):
            raise PikeError(
                f"failed to parse config file at {path}: "
                f"service {service!r} must map to a mapping of properties"
            )
        if not all(isinstance(key, str) for key in properties):
            raise PikeError(
                f"failed to parse config file at {path}: "
                f"property names of service {service} must be strings"
            )
        config[service] = dict(properties)
    return config


def service_config_queries(
    plugin_name: str, plugin_version: str, service_name: str, config: dict[str, Any]
) -> list[str]:
    """Return the admin queries that set every property of one service."""
    queries = []
    for key, value in config.items():
        try:
            encoded = json.dumps(
                value, separators=(",", ":"), ensure_ascii=False, default=str
            )
        except (TypeError, ValueError) as exc:
            raise PikeError(f"failed to serialize the string with key {key}") from exc
        queries.append(
            f'ALTER PLUGIN "{plugin_name}" {plugin_version} '
            f"SET \"{service_name}\".\"{key}\"='{encoded}';"
        )
    return queries


def apply_service_config(
    plugin_name: str,
    plugin_version: str,
    service_name: str,
    config: dict[str, Any],
    admin_socket,
) -> None:
    """Send the service's properties to the cluster through ``picodata admin``."""
    for query in service_config_queries(plugin_name, plugin_version, service_name, config):
        log.info("picodata admin: %s", query)
        try:
            result = subprocess.run(
                ["picodata", "admin", os.fspath(admin_socket)],
                input=query,
                capture_output=True,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            raise PikeError("failed to run picodata admin") from exc

        context = ""
        for line in result.stdout.splitlines() + result.stderr.splitlines():
            log.info("picodata admin: %s", line)
            context += f" line: {line}"

        if result.returncode == 1:
            raise PikeError(f"failed to execute picodata query {query}: context {context}")


def _read_package(plugin_dir: Path) -> tuple[str, str]:
    try:
        text = (plugin_dir / "Cargo.toml").read_text(encoding="utf-8")
    except OSError as exc:
        raise PikeError("failed to read Cargo.toml") from exc
    try:
        manifest = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise PikeError(f"failed to parse Cargo.toml: {exc}") from exc

    package = manifest.get("package")
    if not isinstance(package, dict):
        raise PikeError("failed to parse Cargo.toml: missing field `package`")
    name, version = package.get("name"), package.get("version")
    if not isinstance(name, str) or not isinstance(version, str):
        raise PikeError("failed to parse Cargo.toml: package name and version required")
    return name, version


def apply_plugin_config(params: ApplyParams, current_plugin_path) -> None:
    """Apply the config of the plugin in *current_plugin_path* under the project."""
    plugin_path = Path(params.plugin_path)
    plugin_dir = Path.cwd() / plugin_path / current_plugin_path
    admin_socket = plugin_path / params.data_dir / "cluster" / "i1" / "admin.sock"

    name, version = _read_package(plugin_dir)

    if params.config_map is not None:
        config = {service: dict(props) for service, props in params.config_map.items()}
    else:
        config = read_config(plugin_dir / params.config_path)

    for service_name, service_config in config.items():
        try:
            apply_service_config(name, version, service_name, service_config, admin_socket)
        except PikeError as exc:
            raise PikeError(
                f"failed to apply service config for service {service_name}: {exc}"
            ) from exc


def _plugin_members(root_dir: Path, workspace: Any) -> Iterator[str]:
    members = workspace.get("members") if isinstance(workspace, dict) else None
    if not isinstance(members, list):
        return
    for member in members:
        if isinstance(member, str) and (root_dir / member / "manifest.yaml.template").exists():
            yield member


def apply(params: ApplyParams) -> None:
    """Apply plugin config to the cluster: one plugin, every workspace plugin, or the crate."""
    if params.plugin_name is not None:
        log.info("Applying plugin config for plugin %s", params.plugin_name)
        apply_plugin_config(params, params.plugin_name)
        return

    root_dir = Path.cwd() / params.plugin_path
    cargo_toml_path = root_dir / "Cargo.toml"
    try:
        text = cargo_toml_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PikeError(f"Failed to read Cargo.toml in {cargo_toml_path}") from exc
    try:
        manifest = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise PikeError(f"Failed to parse Cargo.toml: {exc}") from exc

    workspace = manifest.get("workspace")
    if workspace is not None:
        if (
            params.config_map is None
            and os.fspath(params.config_path) != DEFAULT_PLUGIN_CONFIG_PATH
        ):
            raise ConfigPathConflict()
        log.info("Applying plugin config for each plugin")
        for member in _plugin_members(root_dir, workspace):
            apply_plugin_config(params, member)
        return

    log.info("Applying plugin config")
    apply_plugin_config(params, "./")