"""Packing built plugins into distributable archives."""

from __future__ import annotations

import logging
import sys
import tarfile
import tomllib
from pathlib import Path, PurePosixPath
from typing import Any

from pike.common import BuildType, PikeError, cargo_build

log = logging.getLogger(__name__)


def lib_extension() -> str:
    """Return the file extension of shared libraries on this platform."""
    if sys.platform.startswith("linux"):
        return "so"
    if sys.platform == "darwin":
        return "dylib"
    raise PikeError(f"unsupported platform: {sys.platform}")


def _load_manifest(plugin_dir: Path) -> dict[str, Any]:
    try:
        text = (plugin_dir / "Cargo.toml").read_text(encoding="utf-8")
    except OSError as exc:
        raise PikeError("failed to read Cargo.toml") from exc
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise PikeError(f"failed to parse Cargo.toml: {exc}") from exc


def get_latest_plugin_version(plugin_dir) -> str:
    """Return the package version declared in the plugin's Cargo.toml."""
    plugin_dir = Path(plugin_dir)
    package = _load_manifest(plugin_dir).get("package")
    if not isinstance(package, dict):
        raise PikeError(f"Couldn't resolve plugin version from Cargo.toml at {plugin_dir}")
    if "version" not in package:
        raise PikeError("Couldn't find version in plugin Cargo.toml")
    version = package["version"]
    if not isinstance(version, str):
        raise PikeError("plugin version in Cargo.toml must be a string")
    return version


def _package_name_and_version(plugin_dir: Path) -> tuple[str, str]:
    package = _load_manifest(plugin_dir).get("package")
    if not isinstance(package, dict):
        raise PikeError("failed to parse Cargo.toml: missing field `package`")
    name, version = package.get("name"), package.get("version")
    if not isinstance(name, str) or not isinstance(version, str):
        raise PikeError("failed to parse Cargo.toml: package name and version required")
    return name, version


def _archive_if_exists(tar: tarfile.TarFile, root_in_archive: PurePosixPath, path: Path) -> None:
    if not path.exists():
        log.info("Couldn't find %s while packing plugin - skipping.", path)
        return

    arcname = str(root_in_archive / path.name)
    kind = "directory" if path.is_dir() else "file"
    try:
        tar.add(path, arcname=arcname, recursive=True)
    except OSError as exc:
        raise PikeError(f"failed to append {kind}: {path} to archive") from exc


def create_plugin_archive(build_dir, plugin_dir) -> Path:
    """Pack the plugin's built library, manifest, migrations and assets."""
    build_dir = Path(build_dir)
    plugin_dir = Path(plugin_dir)

    plugin_version = get_latest_plugin_version(plugin_dir)
    package_name, package_version = _package_name_and_version(plugin_dir)
    lib_name = f"lib{package_name.replace('-', '_')}.{lib_extension()}"

    plugin_build_dir = build_dir / package_name / plugin_version
    root_in_archive = PurePosixPath(package_name) / plugin_version
    archive_path = build_dir / f"{package_name}-{package_version}.tar.gz"

    try:
        tar = tarfile.open(archive_path, "w:gz", compresslevel=9, dereference=True)
    except OSError as exc:
        raise PikeError("failed to pack the plugin") from exc

    with tar:
        for artefact in (lib_name, "manifest.yaml", "migrations"):
            _archive_if_exists(tar, root_in_archive, plugin_build_dir / artefact)

        assets_path = plugin_build_dir / "assets"
        if assets_path.exists():
            for entry in sorted(assets_path.iterdir()):
                _archive_if_exists(tar, root_in_archive, entry)

    return archive_path


def pack(debug: bool, target_dir, plugin_path) -> list[Path]:
    """Build the plugin (or every workspace plugin) and pack it; return the archives."""
    root_dir = Path.cwd() / plugin_path
    build_type, profile = (BuildType.DEBUG, "debug") if debug else (BuildType.RELEASE, "release")

    try:
        cargo_build(build_type, target_dir, plugin_path)
    except PikeError as exc:
        raise PikeError(f"building {profile} version of plugin: {exc}") from exc

    build_dir = root_dir / target_dir / profile

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
    if workspace is None:
        return [create_plugin_archive(build_dir, root_dir)]

    members = workspace.get("members") if isinstance(workspace, dict) else None
    if not isinstance(members, list):
        return []
    return [
        create_plugin_archive(build_dir, root_dir / member)
        for member in members
        if isinstance(member, str) and (root_dir / member / "manifest.yaml.template").exists()
    ]