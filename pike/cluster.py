"""Starting a local picodata cluster and installing plugins into it."""

from __future__ import annotations

import contextlib
import copy
import dataclasses
import logging
import os
import random
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from itertools import chain
from pathlib import Path
from typing import IO, Any

import jinja2

from pike.common import BuildType, PikeError, cargo_build, check_running_instances
from pike.topology import Topology, merged_tier_config

log = logging.getLogger(__name__)

_PICODATA_MISSING = (
    "It seems picodata is not installed on your system: "
    "install it or point to it with --picodata-path."
)
_INSTANCE_NAME_LUA = "\\lua\npico.instance_info().name\n"
_IGNORED_ADMIN_ERRORS = ("already enabled", "already exists")
_LEGACY_VERSION = "picodata 24.6"
_FIRST_INSTANCE_BIN_PORT = 3001
_BIN_PORT_BASE = 3000
_NAME_TIMEOUT_SEC = 10.0
_NAME_POLL_SEC = 0.1
_STARTUP_GRACE_SEC = 3.0


@dataclass
class RunParams:
    """Options of a cluster run."""

    topology: Topology
    data_dir: Path = Path("./tmp")
    disable_plugin_install: bool = False
    base_http_port: int = 8000
    picodata_path: Path = Path("picodata")
    base_pg_port: int = 5432
    use_release: bool = False
    target_dir: Path = Path("target")
    daemon: bool = False
    disable_colors: bool = False
    plugin_path: Path = Path("./")
    no_build: bool = False
    config_path: Path = Path("./picodata.yaml")


@dataclass(frozen=True)
class InstanceProperties:
    """Ports, names and location of a running instance."""

    bin_port: int
    pg_port: int
    http_port: int
    data_dir: Path
    instance_name: str
    tier: str
    instance_id: int


class _LogSink:
    """A log file shared by several reader threads; closed by the last one."""

    def __init__(self, path: Path, writers: int) -> None:
        try:
            self._file = open(path, "w", encoding="utf-8")
        except OSError as exc:
            raise PikeError(f"Failed to open log file {path}") from exc
        self._lock = threading.Lock()
        self._writers = writers

    def write(self, line: str) -> None:
        with self._lock:
            self._file.write(line + "\n")
            self._file.flush()

    def release(self) -> None:
        with self._lock:
            self._writers -= 1
            if self._writers == 0:
                self._file.close()


def _pump(stream: IO[str], prefix: str, sink: _LogSink) -> None:
    try:
        for raw in stream:
            line = raw.rstrip("\n")
            print(f"{prefix}{line}", flush=True)
            sink.write(line)
    finally:
        stream.close()
        sink.release()


class PicodataInstance:
    """A picodata process started as part of a cluster."""

    def __init__(
        self,
        *,
        instance_name: str,
        instance_id: int,
        tier: str,
        process: subprocess.Popen,
        daemon: bool,
        disable_colors: bool,
        data_dir: Path,
        log_file_path: Path,
        bin_port: int,
        http_port: int,
        pg_port: int,
    ) -> None:
        self.instance_name = instance_name
        self.instance_id = instance_id
        self.tier = tier
        self.process = process
        self.daemon = daemon
        self.disable_colors = disable_colors
        self.data_dir = data_dir
        self.log_file_path = log_file_path
        self.bin_port = bin_port
        self.http_port = http_port
        self.pg_port = pg_port
        self._log_threads: list[threading.Thread] = []

    def __repr__(self) -> str:
        return f"PicodataInstance({self.instance_name!r}, pid={self.pid})"

    @property
    def pid(self) -> int:
        return self.process.pid

    def properties(self) -> InstanceProperties:
        """Return everything known about the instance at once."""
        return InstanceProperties(
            bin_port=self.bin_port,
            pg_port=self.pg_port,
            http_port=self.http_port,
            data_dir=self.data_dir,
            instance_name=self.instance_name,
            tier=self.tier,
            instance_id=self.instance_id,
        )

    def kill(self) -> None:
        """Kill the picodata process."""
        try:
            self.process.kill()
        except OSError as exc:
            raise PikeError(f"failed to kill instance {self.instance_name}: {exc}") from exc

    def join(self) -> None:
        """Wait until the instance's output has been fully relayed."""
        threads, self._log_threads = self._log_threads, []
        for thread in threads:
            thread.join()

    def wait(self) -> None:
        """Wait for the process to finish, unless it runs as a daemon."""
        if self.daemon:
            return
        self.process.wait()

    def _capture_logs(self) -> None:
        red, green, blue = (random.randrange(30, 220) for _ in range(3))
        prefix = f"{self.instance_name}: "
        if not self.disable_colors:
            prefix = f"\x1b[38;2;{red};{green};{blue}m{prefix}\x1b[0m"

        streams = [self.process.stdout, self.process.stderr]
        sink = _LogSink(self.log_file_path, len(streams))
        for stream in streams:
            thread = threading.Thread(
                target=_pump,
                args=(stream, prefix, sink),
                name=f"log_catcher::{self.instance_name}",
                daemon=True,
            )
            thread.start()
            self._log_threads.append(thread)

    def _write_pid_file(self) -> None:
        (self.data_dir / "pid").write_text(f"{self.pid}\n", encoding="utf-8")


def enable_plugin_queries(topology: Topology) -> list[str]:
    """Return the admin queries that install and enable every plugin."""
    queries: list[str] = []
    for name, plugin in topology.plugins.items():
        version = plugin.version
        if version is None:
            raise PikeError(f"version of plugin {name} is unknown")
        queries.append(f'CREATE PLUGIN "{name}" {version};')
        queries.extend(
            f"ALTER PLUGIN \"{name}\" {version} SET migration_context.{var.name}='{var.value}';"
            for var in plugin.migration_context
        )
        queries.append(f'ALTER PLUGIN "{name}" MIGRATE TO {version};')
        queries.extend(
            f'ALTER PLUGIN "{name}" {version} ADD SERVICE "{service_name}" TO TIER "{tier}";'
            for service_name, service in plugin.services.items()
            for tier in service.tiers
        )
        queries.append(f'ALTER PLUGIN "{name}" {version} ENABLE;')
    return queries


def _admin(picodata_path, socket_path: Path, text: str) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            [os.fspath(picodata_path), "admin", str(socket_path)],
            input=text,
            capture_output=True,
            text=True,
            errors="replace",
        )
    except OSError as exc:
        raise PikeError("failed to spawn child proccess of picodata admin") from exc


def enable_plugins(topology: Topology, data_dir, picodata_path) -> None:
    """Install and enable the topology's plugins through the first instance."""
    queries = enable_plugin_queries(topology)
    admin_socket = Path(data_dir) / "cluster" / "i1" / "admin.sock"

    for query in queries:
        log.info("picodata admin: %s", query)
        result = _admin(picodata_path, admin_socket, query)

        ignore_errors = False
        for line in chain(result.stdout.splitlines(), result.stderr.splitlines()):
            log.info("picodata admin: %s", line)
            # Re-creating or re-enabling a plugin is not a failure.
            if any(message in line for message in _IGNORED_ADMIN_ERRORS):
                ignore_errors = True

        if result.returncode == 1 and not ignore_errors:
            raise PikeError(f"failed to execute picodata query {query}")

    for name, plugin in topology.plugins.items():
        log.info("Plugin %s:%s has been enabled", name, plugin.version)


def get_instance_name(picodata_path, instance_data_dir) -> str:
    """Ask the instance in *instance_data_dir* for its cluster-assigned name."""
    result = _admin(picodata_path, Path(instance_data_dir) / "admin.sock", _INSTANCE_NAME_LUA)
    if result.returncode != 0:
        raise PikeError(f"get version error: {result.stderr}")
    for line in result.stdout.split("\n"):
        if line.startswith("- "):
            return line[2:]
    raise PikeError(f"get version error: {result.stdout}")


def get_picodata_version(picodata_path) -> str:
    """Return the output of ``picodata --version``."""
    try:
        result = subprocess.run(
            [os.fspath(picodata_path), "--version"], capture_output=True
        )
    except FileNotFoundError as exc:
        print(_PICODATA_MISSING)
        raise PikeError("Picodata not found") from exc
    except OSError as exc:
        raise PikeError(f"failed to get picodata version ({exc})") from exc
    try:
        return result.stdout.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PikeError(f"picodata version is not valid UTF-8: {exc}") from exc


def is_plugin_dir(path) -> bool:
    """Tell whether *path* is a plugin crate or a workspace holding one."""
    path = Path(path)
    if not path.is_dir() or not (path / "Cargo.toml").exists():
        return False
    if (path / "manifest.yaml.template").exists():
        return True
    return any(
        entry.is_dir() and (entry / "manifest.yaml.template").exists()
        for entry in path.iterdir()
    )


def compute_env_vars(env_templates: dict[str, str], context: dict[str, Any]) -> dict[str, str]:
    """Render every environment template with *context*."""
    env = jinja2.Environment(
        undefined=jinja2.StrictUndefined, keep_trailing_newline=True, autoescape=False
    )
    rendered: dict[str, str] = {}
    for key, template in sorted(env_templates.items()):
        try:
            rendered[key] = env.from_string(template).render(context)
        except jinja2.TemplateError as exc:
            raise PikeError(f"invalid environment template for {key}: {exc}") from exc
    return rendered


def _start_instance(
    instance_id: int,
    tier: str,
    params: RunParams,
    plugins_dir: Path | None,
    tiers_config: str,
) -> PicodataInstance:
    instance_name = f"i{instance_id}"
    cluster_dir = Path(params.data_dir) / "cluster"
    instance_dir = cluster_dir / instance_name
    log_file_path = instance_dir / "picodata.log"

    try:
        instance_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise PikeError("Failed to create instance data dir") from exc

    env_vars = compute_env_vars(params.topology.environment, {"instance_id": instance_id})

    version = get_picodata_version(params.picodata_path)
    legacy = _LEGACY_VERSION in version
    if legacy:
        log.warning(
            "You are using old version of picodata: %s In the next major release "
            "it WILL NOT BE SUPPORTED",
            version,
        )

    bin_port = _BIN_PORT_BASE + instance_id
    http_port = params.base_http_port + instance_id
    pg_port = params.base_pg_port + instance_id

    args = [
        os.fspath(params.picodata_path),
        "run",
        "--data-dir" if legacy else "--instance-dir",
        str(instance_dir),
        "--listen" if legacy else "--iproto-listen",
        f"127.0.0.1:{bin_port}",
        "--peer",
        f"127.0.0.1:{_FIRST_INSTANCE_BIN_PORT}",
        "--http-listen",
        f"0.0.0.0:{http_port}",
        "--pg-listen",
        f"127.0.0.1:{pg_port}",
        "--tier",
        tier,
        "--config-parameter",
        f"cluster.tier={tiers_config}",
    ]

    config_path = Path(params.config_path)
    if config_path.exists():
        args += ["--config", str(config_path)]
    else:
        log.warning("couldn't locate picodata config at %s - skipping.", config_path)

    if plugins_dir is not None:
        args += ["--plugin-dir", str(plugins_dir)]

    if params.daemon:
        output = subprocess.DEVNULL
        args += ["--log", str(log_file_path)]
    else:
        output = subprocess.PIPE

    try:
        process = subprocess.Popen(
            args,
            env={**os.environ, **env_vars},
            stdout=output,
            stderr=output,
            text=True,
            errors="replace",
        )
    except OSError as exc:
        raise PikeError(f"failed to start picodata instance: {instance_id}") from exc

    deadline = time.monotonic() + _NAME_TIMEOUT_SEC
    while time.monotonic() < deadline:
        time.sleep(_NAME_POLL_SEC)
        try:
            new_name = get_instance_name(params.picodata_path, instance_dir)
        except PikeError as exc:
            log.debug("%s", exc)
            continue

        # A symlink named after the real instance points at its data dir.
        link = cluster_dir / new_name
        with contextlib.suppress(OSError):
            link.unlink()
        try:
            os.symlink(instance_name, link)
        except OSError as exc:
            raise PikeError("failed create symlink to instance dir") from exc
        instance_name = new_name
        break

    instance = PicodataInstance(
        instance_name=instance_name,
        instance_id=instance_id,
        tier=tier,
        process=process,
        daemon=params.daemon,
        disable_colors=params.disable_colors,
        data_dir=instance_dir,
        log_file_path=log_file_path,
        bin_port=bin_port,
        http_port=http_port,
        pg_port=pg_port,
    )
    if not params.daemon:
        instance._capture_logs()
    instance._write_pid_file()
    return instance


def cluster(params: RunParams) -> list[PicodataInstance]:
    """Build the plugin if there is one, start the cluster and enable plugins."""
    running = check_running_instances(params.data_dir, params.plugin_path)
    if running is not None:
        raise PikeError(f"cluster has already started, can connect via {running}")

    plugin_path = Path(params.plugin_path)
    params = dataclasses.replace(
        params,
        data_dir=plugin_path / params.data_dir,
        topology=copy.deepcopy(params.topology),
    )

    plugins_dir: Path | None = None
    if is_plugin_dir(plugin_path):
        if params.use_release:
            build_type, profile = BuildType.RELEASE, "release"
        else:
            build_type, profile = BuildType.DEBUG, "debug"
        plugins_dir = plugin_path / params.target_dir / profile
        if not params.no_build:
            cargo_build(build_type, params.target_dir, plugin_path)
        params.topology.find_plugin_versions(plugins_dir)

    log.info("Running the cluster...")
    started_at = time.monotonic()

    tiers_config = merged_tier_config(plugin_path, params.config_path, params.topology.tiers)

    instances: list[PicodataInstance] = []
    instance_id = 0
    for tier_name, tier in params.topology.tiers.items():
        for _ in range(tier.replicasets * tier.replication_factor):
            instance_id += 1
            instances.append(
                _start_instance(instance_id, tier_name, params, plugins_dir, tiers_config)
            )
            log.info("i%d - started", instance_id)

    time.sleep(_STARTUP_GRACE_SEC)

    if not params.disable_plugin_install:
        log.info("Enabling plugins...")
        if plugins_dir is not None:
            try:
                enable_plugins(params.topology, params.data_dir, params.picodata_path)
            except PikeError as exc:
                for instance in instances:
                    try:
                        instance.kill()
                    except PikeError as kill_error:
                        log.error("failed to kill picodata instances: %s", kill_error)
                raise PikeError(f"failed to enable plugins: {exc}") from exc

    log.info(
        "Picodata cluster has started (launch time: %d sec, total instances: %d)",
        int(time.monotonic() - started_at),
        instance_id,
    )
    return instances


def run(params: RunParams) -> None:
    """Start the cluster; unless daemonised, relay its output until it stops."""
    instances = cluster(params)
    if params.daemon:
        return

    pids = [instance.pid for instance in instances]

    def _on_interrupt(signum, frame) -> None:
        log.info("received Ctrl+C. Shutting down ...")
        for pid in pids:
            with contextlib.suppress(OSError):
                os.kill(pid, signal.SIGKILL)

    try:
        signal.signal(signal.SIGINT, _on_interrupt)
    except ValueError as exc:
        raise PikeError("failed to set Ctrl+c handler") from exc

    for instance in instances:
        instance.join()
    for instance in instances:
        instance.wait()