"""Cluster topology description and the tier configuration derived from it."""

from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from pike.common import PikeError

log = logging.getLogger(__name__)


@dataclass
class Tier:
    """A tier: how many replicasets and how many replicas in each."""

    replicasets: int
    replication_factor: int


@dataclass
class MigrationContextVar:
    """A variable passed to plugin migrations."""

    name: str
    value: str


@dataclass
class Service:
    """A plugin service and the tiers it runs on."""

    tiers: list[str] = field(default_factory=list)


@dataclass
class Plugin:
    """A plugin to install into the cluster."""

    migration_context: list[MigrationContextVar] = field(default_factory=list)
    services: dict[str, Service] = field(default_factory=dict)
    version: str | None = None

    def __post_init__(self) -> None:
        self.services = dict(sorted(self.services.items()))


@dataclass
class Topology:
    """Tiers, plugins and instance environment of a cluster."""

    tiers: dict[str, Tier] = field(default_factory=dict)
    plugins: dict[str, Plugin] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.tiers = dict(sorted(self.tiers.items()))
        self.plugins = dict(sorted(self.plugins.items()))
        self.environment = dict(sorted(self.environment.items()))

    def find_plugin_versions(self, plugins_dir) -> None:
        """Set each plugin's version to the newest one built in *plugins_dir*."""
        for plugin_name, plugin in self.plugins.items():
            plugin_dir = Path(plugins_dir) / plugin_name
            if not plugin_dir.exists():
                raise PikeError(f"plugin directory {plugin_dir} does not exist")
            versions = sorted(entry.name for entry in plugin_dir.iterdir())
            if not versions:
                raise PikeError(f"no plugin versions found in {plugin_dir}")
            plugin.version = versions[-1]


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _table(value: Any, path: str) -> dict:
    if not isinstance(value, dict):
        raise PikeError(f"{path or 'topology'}: expected a table")
    return value


def _warn_unknown(table: dict, known: set[str], path: str) -> None:
    for key in table:
        if key not in known:
            log.warning("Unknown field %s", _join(path, key))


def _require(table: dict, key: str, path: str) -> Any:
    if key not in table:
        raise PikeError(f"{path or 'topology'}: missing field `{key}`")
    return table[key]


def _string(value: Any, path: str) -> str:
    if not isinstance(value, str):
        raise PikeError(f"{path}: expected a string")
    return value


def _u8(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 255:
        raise PikeError(f"{path}: expected an integer between 0 and 255")
    return value


def _tier_from(raw: Any, path: str) -> Tier:
    table = _table(raw, path)
    _warn_unknown(table, {"replicasets", "replication_factor"}, path)
    return Tier(
        replicasets=_u8(_require(table, "replicasets", path), _join(path, "replicasets")),
        replication_factor=_u8(
            _require(table, "replication_factor", path),
            _join(path, "replication_factor"),
        ),
    )


def _migration_var_from(raw: Any, path: str) -> MigrationContextVar:
    table = _table(raw, path)
    _warn_unknown(table, {"name", "value"}, path)
    return MigrationContextVar(
        name=_string(_require(table, "name", path), _join(path, "name")),
        value=_string(_require(table, "value", path), _join(path, "value")),
    )


def _service_from(raw: Any, path: str) -> Service:
    table = _table(raw, path)
    _warn_unknown(table, {"tiers"}, path)
    tiers_path = _join(path, "tiers")
    tiers = _require(table, "tiers", path)
    if not isinstance(tiers, list):
        raise PikeError(f"{tiers_path}: expected an array")
    return Service(tiers=[_string(tier, tiers_path) for tier in tiers])


def _plugin_from(raw: Any, path: str) -> Plugin:
    table = _table(raw, path)
    _warn_unknown(table, {"migration_context", "service"}, path)

    context_path = _join(path, "migration_context")
    context = table.get("migration_context", [])
    if not isinstance(context, list):
        raise PikeError(f"{context_path}: expected an array")

    service_path = _join(path, "service")
    services = _table(table.get("service", {}), service_path)
    return Plugin(
        migration_context=[_migration_var_from(item, context_path) for item in context],
        services={
            name: _service_from(value, _join(service_path, name))
            for name, value in services.items()
        },
    )


def parse_topology(text: str) -> Topology:
    """Parse a topology TOML document, warning about unknown fields."""
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise PikeError(f"invalid topology: {exc}") from exc

    _warn_unknown(raw, {"tier", "plugin", "enviroment"}, "")
    tiers = _table(_require(raw, "tier", ""), "tier")
    plugins = _table(raw.get("plugin", {}), "plugin")
    environment = _table(raw.get("enviroment", {}), "enviroment")

    return Topology(
        tiers={name: _tier_from(value, _join("tier", name)) for name, value in tiers.items()},
        plugins={
            name: _plugin_from(value, _join("plugin", name))
            for name, value in plugins.items()
        },
        environment={
            name: _string(value, _join("enviroment", name))
            for name, value in environment.items()
        },
    )


def load_topology(path) -> Topology:
    """Read and parse the topology file at *path*."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PikeError(f"failed to read {path}") from exc
    try:
        return parse_topology(text)
    except PikeError as exc:
        raise PikeError(f"failed to parse .toml file of {path}") from exc


def merged_tier_config(plugin_path, config_path, tiers: dict[str, Tier]) -> str:
    """Merge the picodata config's ``cluster.tier`` section with *tiers*, as JSON."""
    conf_file = Path(plugin_path) / config_path
    try:
        raw_conf = conf_file.read_text(encoding="utf-8")
    except OSError:
        raw_conf = ""
    try:
        conf = yaml.safe_load(raw_conf)
    except yaml.YAMLError:
        conf = None
    if not isinstance(conf, dict):
        conf = {}

    cluster_params = conf.get("cluster")
    if not isinstance(cluster_params, dict):
        cluster_params = {}
    tier_params = cluster_params.get("tier")
    tier_params = dict(tier_params) if isinstance(tier_params, dict) else {}

    for name, value in tier_params.items():
        if value is None:
            tier_params[name] = {}

    for tier_name, tier in sorted(tiers.items()):
        if tier_name in tier_params:
            entry = tier_params[tier_name]
            if isinstance(entry, dict):
                entry["replication_factor"] = tier.replication_factor
        else:
            tier_params[tier_name] = {"replication_factor": tier.replication_factor}

    return json.dumps(tier_params, separators=(",", ":"))