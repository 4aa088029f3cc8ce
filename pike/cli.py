"""Command line interface of the plugin development helper."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import time
from importlib import metadata
from pathlib import Path
from typing import Any, Callable

import tomlkit

from pike.apply import ApplyParams, ConfigPathConflict, apply
from pike.build import build
from pike.clean import clean
from pike.cluster import RunParams, run
from pike.common import PikeError
from pike.enter import enter
from pike.pack import pack
from pike.stop import StopParams, stop
from pike.topology import load_topology

log = logging.getLogger(__name__)

_CHECK_PARENT_INTERVAL_SEC = 3

OUTSIDE_PLUGIN_MESSAGE = """\
 ________________________________________
/ It seems to me, that you are trying to \\
| run pike outside Plugin directory, try |
| using --plugin-dir flag or move into   |
\\ plugin directory.                      /
 ----------------------------------------"""

NOTHING_TO_CLEAN_MESSAGE = """\
 _________________________________
/     Nothing to clean inside     \\
| given directory. Please provide |
\\    high quality food for me.    /
 ---------------------------------"""

CONFIG_CONFLICT_MESSAGE = """\
 ________________________________________
/ You are trying to apply config from     \\
| custom directory, however to use this   |
| flag, you must specify the plugin with  |
\\           --plugin-name                 /
 ----------------------------------------"""


def require_path(plugin_dir, required_path, message: str, exit_code: int) -> None:
    """Exit with *exit_code* after printing *message* unless the path exists.

    The path is looked up as given and relative to *plugin_dir*.
    """
    required_path = Path(required_path)
    if required_path.exists() or (Path(plugin_dir) / required_path).exists():
        return
    print(message)
    sys.exit(exit_code)


def modify_workspace(plugin_name: str, plugin_path) -> None:
    """Add *plugin_name* to the members of the workspace in *plugin_path*."""
    cargo_toml_path = Path(plugin_path) / "Cargo.toml"
    try:
        document = tomlkit.parse(cargo_toml_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise PikeError(f"failed to read {cargo_toml_path}") from exc
    except tomlkit.exceptions.TOMLKitError as exc:
        raise PikeError(f"failed to parse {cargo_toml_path}: {exc}") from exc

    workspace = document.get("workspace")
    if not isinstance(workspace, dict):
        raise PikeError("You are trying to add plugin outside of workspace directory")

    members = workspace.get("members")
    if isinstance(members, list) and plugin_name in members:
        raise PikeError("Plugin with this name already exists")
    if not isinstance(members, list):
        raise PikeError("Members field can't be found")

    members.append(plugin_name)
    cargo_toml_path.write_text(tomlkit.dumps(document), encoding="utf-8")


def run_child_killer() -> None:
    """Fork a supervisor that kills this process group once this process dies."""
    master_pid = os.getpid()
    try:
        pid = os.fork()
    except OSError:
        log.warning("Error run supervisor process")
        return
    if pid != 0:
        return

    os.setsid()
    while True:
        try:
            os.kill(master_pid, 0)
        except OSError:
            try:
                os.killpg(master_pid, signal.SIGKILL)
            except OSError:
                pass
            break
        time.sleep(_CHECK_PARENT_INTERVAL_SEC)
    os._exit(0)


def _port(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {text}") from None
    if not 0 <= value <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {text}")
    return value


def _version() -> str:
    try:
        return metadata.version("pike")
    except metadata.PackageNotFoundError:
        return "unknown"


def _add_data_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--data-dir", type=Path, default=Path("./tmp"), metavar="DATA_DIR",
        help="Path to data directory of the cluster",
    )


def _add_plugin_path(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--plugin-path", type=Path, default=Path("./"), metavar="PLUGIN_PATH",
        help="Path to the plugin's project directory",
    )


def _add_picodata_path(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--picodata-path", type=Path, default=Path("picodata"), metavar="BINARY_PATH",
        help="Specify path to picodata binary",
    )


def _add_target_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--target-dir", type=Path, default=Path("target"), metavar="TARGET_DIR",
        help="Change target folder",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cargo pike", description="A helper utility to work with Picodata plugins."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {_version()}")
    commands = parser.add_subparsers(dest="command", required=True)

    run_cmd = commands.add_parser("run", aliases=["start"], help="Run Picodata cluster")
    run_cmd.add_argument(
        "-t", "--topology", type=Path, default=Path("topology.toml"), metavar="TOPOLOGY"
    )
    _add_data_dir(run_cmd)
    run_cmd.add_argument(
        "--disable-install-plugins", action="store_true",
        help="Disable the automatic installation of plugins",
    )
    run_cmd.add_argument(
        "--base-http-port", type=_port, default=8000,
        help="Base http port for picodata instances",
    )
    run_cmd.add_argument(
        "--base-pg-port", type=_port, default=5432, help="Port for Pgproto server"
    )
    _add_picodata_path(run_cmd)
    run_cmd.add_argument("--release", action="store_true", help="Run release version of plugin")
    _add_target_dir(run_cmd)
    run_cmd.add_argument("-d", "--daemon", action="store_true", help="Run cluster in background")
    run_cmd.add_argument("--disable-colors", action="store_true", help="Disable colors in stdout")
    _add_plugin_path(run_cmd)
    run_cmd.add_argument(
        "--no-build", action="store_true", help="Disable plugin build before cluster start"
    )
    run_cmd.add_argument(
        "--config-path", type=Path, default=Path("./picodata.yaml"), metavar="CONFIG_PATH",
        help="Path to picodata config file",
    )

    stop_cmd = commands.add_parser("stop", help="Stop Picodata cluster")
    _add_data_dir(stop_cmd)
    _add_plugin_path(stop_cmd)

    clean_cmd = commands.add_parser("clean", help="Remove all data files of previous cluster run")
    _add_data_dir(clean_cmd)
    _add_plugin_path(clean_cmd)

    enter_cmd = commands.add_parser("enter", help="Enter specific instance by name")
    enter_cmd.add_argument(
        "instance_name", help="Name of the Picodata instance to enter, e.g. default_1_1"
    )
    _add_data_dir(enter_cmd)
    _add_plugin_path(enter_cmd)
    _add_picodata_path(enter_cmd)

    plugin_cmd = commands.add_parser("plugin", help="Helpers for work with plugins")
    plugin_commands = plugin_cmd.add_subparsers(dest="plugin_command", required=True)

    pack_cmd = plugin_commands.add_parser(
        "pack", help="Pack your plugin into a distributable bundle"
    )
    pack_cmd.add_argument(
        "--debug", action="store_true", help="Pack the archive with debug version of plugin"
    )
    _add_target_dir(pack_cmd)
    _add_plugin_path(pack_cmd)

    build_cmd = plugin_commands.add_parser("build", help="Alias for cargo build command")
    _add_target_dir(build_cmd)
    build_cmd.add_argument(
        "-r", "--release", action="store_true", help="Build release version of plugin"
    )
    _add_plugin_path(build_cmd)

    config_cmd = commands.add_parser("config", help="Helpers for work with config of services")
    config_commands = config_cmd.add_subparsers(dest="config_command", required=True)

    apply_cmd = config_commands.add_parser(
        "apply", help="Apply services config on Picodata cluster started by the run command"
    )
    apply_cmd.add_argument(
        "-c", "--config-path", type=Path, default=Path("plugin_config.yaml"), metavar="CONFIG",
        help="Path to config of the plugin",
    )
    _add_data_dir(apply_cmd)
    _add_plugin_path(apply_cmd)
    apply_cmd.add_argument(
        "--plugin-name", default=None, metavar="PLUGIN_NAME",
        help="Choose plugin which config should be applied",
    )
    return parser


def _with_context(message: str, action: Callable[..., Any], *args: Any) -> None:
    try:
        action(*args)
    except (PikeError, OSError) as exc:
        raise PikeError(message) from exc


def _report(exc: BaseException) -> None:
    print(f"Error: {exc}", file=sys.stderr)
    causes = []
    cause = exc.__cause__
    while cause is not None:
        causes.append(cause)
        cause = cause.__cause__
    if causes:
        print("\nCaused by:", file=sys.stderr)
        for index, cause in enumerate(causes):
            print(f"    {index}: {cause}", file=sys.stderr)


def _run(args: argparse.Namespace) -> None:
    require_path(args.plugin_path, args.topology, OUTSIDE_PLUGIN_MESSAGE, 1)
    if not args.daemon:
        run_child_killer()

    topology = load_topology(Path(args.plugin_path) / args.topology)
    params = RunParams(
        topology=topology,
        data_dir=args.data_dir,
        disable_plugin_install=args.disable_install_plugins,
        base_http_port=args.base_http_port,
        picodata_path=args.picodata_path,
        base_pg_port=args.base_pg_port,
        use_release=args.release,
        target_dir=args.target_dir,
        daemon=args.daemon,
        disable_colors=args.disable_colors,
        plugin_path=args.plugin_path,
        no_build=args.no_build,
        config_path=args.config_path,
    )
    _with_context("failed to execute Run command", run, params)


def _plugin(args: argparse.Namespace) -> None:
    run_child_killer()
    require_path(args.plugin_path, Path("Cargo.toml"), OUTSIDE_PLUGIN_MESSAGE, 1)
    if args.plugin_command == "pack":
        _with_context(
            'failed to execute "pack" command', pack, args.debug, args.target_dir, args.plugin_path
        )
    else:
        _with_context(
            'failed to execute "build" command',
            build, args.release, args.target_dir, args.plugin_path,
        )


def _config(args: argparse.Namespace) -> None:
    run_child_killer()
    params = ApplyParams(
        config_path=args.config_path,
        data_dir=args.data_dir,
        plugin_path=args.plugin_path,
        plugin_name=args.plugin_name,
    )
    try:
        apply(params)
    except ConfigPathConflict:
        raise
    except (PikeError, OSError) as exc:
        raise PikeError('failed to execute "config apply" command') from exc


def _dispatch(args: argparse.Namespace) -> None:
    command = args.command
    if command in ("run", "start"):
        _run(args)
    elif command == "stop":
        require_path(args.plugin_path, args.data_dir, OUTSIDE_PLUGIN_MESSAGE, 1)
        run_child_killer()
        _with_context(
            'failed to execute "stop" command',
            stop, StopParams(data_dir=args.data_dir, plugin_path=args.plugin_path),
        )
    elif command == "clean":
        require_path(args.plugin_path, args.data_dir, NOTHING_TO_CLEAN_MESSAGE, 0)
        run_child_killer()
        _with_context(
            'failed to execute "clean" command', clean, args.data_dir, args.plugin_path
        )
    elif command == "enter":
        require_path(args.plugin_path, args.data_dir, OUTSIDE_PLUGIN_MESSAGE, 1)
        run_child_killer()
        _with_context(
            'failed to execute "enter" command',
            enter, args.instance_name, args.data_dir, args.plugin_path, args.picodata_path,
        )
    elif command == "plugin":
        _plugin(args)
    elif command == "config":
        _config(args)


def main(argv=None) -> int:
    """Parse the command line, run the chosen command and return the exit code."""
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)
    # Invoked by cargo as ``cargo-pike pike <command>``.
    if argv and argv[0] == "pike":
        argv = argv[1:]

    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    args = _build_parser().parse_args(argv)

    try:
        _dispatch(args)
    except ConfigPathConflict:
        print(CONFIG_CONFLICT_MESSAGE)
        return 1
    except PikeError as exc:
        _report(exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())