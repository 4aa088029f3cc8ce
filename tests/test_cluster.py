import json
import os
import shutil
import socket
import sys
import tempfile
from pathlib import Path

import pytest

from pike.cluster import (
    RunParams,
    cluster,
    compute_env_vars,
    enable_plugin_queries,
    enable_plugins,
    get_instance_name,
    get_picodata_version,
    is_plugin_dir,
)
from pike.common import PikeError
from pike.topology import MigrationContextVar, Plugin, Service, Tier, Topology

FAKE_PICODATA = """\
import json
import os
import sys
from pathlib import Path

record = Path(__file__).with_name("record.jsonl")
args = sys.argv[1:]


def note(entry):
    with record.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(entry) + "\\n")


if args[:1] == ["--version"]:
    print(os.environ.get("FAKE_PICO_VERSION", "picodata 25.1.0"))
elif args[:1] == ["admin"]:
    query = sys.stdin.read()
    note({"cmd": "admin", "socket": args[1], "query": query})
    if "instance_info" in query:
        if os.environ.get("FAKE_PICO_NO_NAME"):
            print("nothing here")
        else:
            number = int(Path(args[1]).parent.name[1:])
            print("---")
            print(f"- default_{(number - 1) // 2 + 1}_{(number - 1) % 2 + 1}")
    elif "MIGRATE" in query and os.environ.get("FAKE_PICO_FAIL_MIGRATE"):
        print("migration failed", file=sys.stderr)
        sys.exit(1)
    elif "ENABLE" in query and os.environ.get("FAKE_PICO_ALREADY"):
        print("plugin is already enabled", file=sys.stderr)
        sys.exit(1)
elif args[:1] == ["run"]:
    note({"cmd": "run", "args": args, "env": os.environ.get("NODE_LABEL")})
    print("hello from instance")
    print("oops", file=sys.stderr)
"""


@pytest.fixture
def fake_picodata(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "picodata"
    script.write_text(f"#!{sys.executable}\n" + FAKE_PICODATA, encoding="utf-8")
    script.chmod(0o755)
    return script


def records(script, cmd):
    record_file = script.with_name("record.jsonl")
    if not record_file.exists():
        return []
    entries = [json.loads(line) for line in record_file.read_text().splitlines()]
    return [entry for entry in entries if entry["cmd"] == cmd]


def demo_topology():
    plugin = Plugin(
        migration_context=[MigrationContextVar(name="name", value="value")],
        services={"example_service": Service(tiers=["default"])},
        version="0.1.0",
    )
    return Topology(
        tiers={"default": Tier(replicasets=2, replication_factor=2)},
        plugins={"demo": plugin},
    )


def test_enable_plugin_queries_full_plugin():
    assert enable_plugin_queries(demo_topology()) == [
        'CREATE PLUGIN "demo" 0.1.0;',
        "ALTER PLUGIN \"demo\" 0.1.0 SET migration_context.name='value';",
        'ALTER PLUGIN "demo" MIGRATE TO 0.1.0;',
        'ALTER PLUGIN "demo" 0.1.0 ADD SERVICE "example_service" TO TIER "default";',
        'ALTER PLUGIN "demo" 0.1.0 ENABLE;',
    ]


def test_enable_plugin_queries_plain_plugin():
    topology = Topology(plugins={"p": Plugin(version="1.2.3")})
    assert enable_plugin_queries(topology) == [
        'CREATE PLUGIN "p" 1.2.3;',
        'ALTER PLUGIN "p" MIGRATE TO 1.2.3;',
        'ALTER PLUGIN "p" 1.2.3 ENABLE;',
    ]


def test_enable_plugin_queries_without_version():
    with pytest.raises(PikeError, match="version of plugin p"):
        enable_plugin_queries(Topology(plugins={"p": Plugin()}))


def test_enable_plugins_sends_queries(tmp_path, fake_picodata):
    data_dir = tmp_path / "data"
    enable_plugins(demo_topology(), data_dir, fake_picodata)
    sent = records(fake_picodata, "admin")
    assert [entry["query"] for entry in sent] == enable_plugin_queries(demo_topology())
    assert {entry["socket"] for entry in sent} == {
        str(data_dir / "cluster" / "i1" / "admin.sock")
    }


def test_enable_plugins_migration_failure(tmp_path, fake_picodata, monkeypatch):
    monkeypatch.setenv("FAKE_PICO_FAIL_MIGRATE", "1")
    with pytest.raises(PikeError, match="MIGRATE"):
        enable_plugins(demo_topology(), tmp_path, fake_picodata)
    assert len(records(fake_picodata, "admin")) == 3


def test_enable_plugins_ignores_already_enabled(tmp_path, fake_picodata, monkeypatch):
    monkeypatch.setenv("FAKE_PICO_ALREADY", "1")
    enable_plugins(Topology(plugins={"p": Plugin(version="0.1.0")}), tmp_path, fake_picodata)
    assert [entry["query"] for entry in records(fake_picodata, "admin")][-1] == (
        'ALTER PLUGIN "p" 0.1.0 ENABLE;'
    )


def test_get_instance_name(tmp_path, fake_picodata):
    assert get_instance_name(fake_picodata, tmp_path / "i1") == "default_1_1"
    assert get_instance_name(fake_picodata, tmp_path / "i4") == "default_2_2"


def test_get_instance_name_without_answer(tmp_path, fake_picodata, monkeypatch):
    monkeypatch.setenv("FAKE_PICO_NO_NAME", "1")
    with pytest.raises(PikeError, match="get version error"):
        get_instance_name(fake_picodata, tmp_path / "i1")


def test_get_picodata_version(fake_picodata, monkeypatch):
    monkeypatch.setenv("FAKE_PICO_VERSION", "picodata 24.6.3")
    assert get_picodata_version(fake_picodata) == "picodata 24.6.3\n"


def test_get_picodata_version_missing_binary(tmp_path, capsys):
    with pytest.raises(PikeError, match="Picodata not found"):
        get_picodata_version(tmp_path / "no-such-picodata")
    assert "not installed" in capsys.readouterr().out


def test_is_plugin_dir(tmp_path):
    assert is_plugin_dir(tmp_path / "missing") is False

    crate = tmp_path / "crate"
    crate.mkdir()
    (crate / "Cargo.toml").write_text("")
    assert is_plugin_dir(crate) is False

    (crate / "manifest.yaml.template").write_text("")
    assert is_plugin_dir(crate) is True


def test_is_plugin_dir_workspace(tmp_path):
    (tmp_path / "Cargo.toml").write_text("")
    (tmp_path / "member").mkdir()
    assert is_plugin_dir(tmp_path) is False
    (tmp_path / "member" / "manifest.yaml.template").write_text("")
    assert is_plugin_dir(tmp_path) is True


def test_compute_env_vars():
    templates = {"PORT": "port-{{ instance_id }}", "PLAIN": "x"}
    assert compute_env_vars(templates, {"instance_id": 3}) == {"PLAIN": "x", "PORT": "port-3"}


def test_compute_env_vars_unknown_variable():
    with pytest.raises(PikeError, match="BAD"):
        compute_env_vars({"BAD": "{{ nope }}"}, {"instance_id": 1})


def test_cluster_refuses_second_run():
    base = Path(tempfile.mkdtemp(dir="/tmp", prefix="pk"))
    try:
        sock_dir = base / "tmp" / "cluster" / "i1"
        sock_dir.mkdir(parents=True)
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as server:
            server.bind(str(sock_dir / "admin.sock"))
            server.listen(1)
            params = RunParams(topology=demo_topology(), plugin_path=base, daemon=True)
            with pytest.raises(PikeError, match="cluster has already started, can connect via"):
                cluster(params)
    finally:
        shutil.rmtree(base)


def test_cluster_daemon_instance_properties(tmp_path, fake_picodata, monkeypatch):
    monkeypatch.chdir(tmp_path)
    plugin_dir = tmp_path / "plugin"
    topology = Topology(tiers={"default": Tier(replicasets=1, replication_factor=2)})
    params = RunParams(
        topology=topology, daemon=True, plugin_path=plugin_dir, picodata_path=fake_picodata
    )

    instances = cluster(params)
    for instance in instances:
        instance.process.wait()

    assert len(instances) == 2
    cluster_dir = plugin_dir / "tmp" / "cluster"
    first = instances[0].properties()
    assert first.bin_port == 3001
    assert first.http_port == 8001
    assert first.pg_port == 5433
    assert first.instance_id == 1
    assert first.tier == "default"
    assert first.instance_name == "default_1_1"
    assert first.data_dir == cluster_dir / "i1"

    second = instances[1].properties()
    assert (second.bin_port, second.http_port, second.pg_port) == (3002, 8002, 5434)
    assert second.instance_name == "default_1_2"

    assert os.readlink(cluster_dir / "default_1_1") == "i1"
    assert os.readlink(cluster_dir / "default_1_2") == "i2"
    pid = int((cluster_dir / "i1" / "pid").read_text().strip())
    assert pid == instances[0].pid

    run_args = records(fake_picodata, "run")[0]["args"]
    assert run_args[:5] == [
        "run",
        "--instance-dir",
        str(cluster_dir / "i1"),
        "--iproto-listen",
        "127.0.0.1:3001",
    ]
    assert run_args[run_args.index("--peer") + 1] == "127.0.0.1:3001"
    assert run_args[run_args.index("--config-parameter") + 1] == (
        'cluster.tier={"default":{"replication_factor":2}}'
    )
    assert run_args[run_args.index("--log") + 1] == str(cluster_dir / "i1" / "picodata.log")
    assert "--plugin-dir" not in run_args
    assert "--config" not in run_args


def test_cluster_failure_on_migration(tmp_path, fake_picodata, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FAKE_PICO_FAIL_MIGRATE", "1")
    plugin_dir = tmp_path / "demo"
    plugin_dir.mkdir()
    (plugin_dir / "Cargo.toml").write_text("")
    (plugin_dir / "manifest.yaml.template").write_text("")
    (plugin_dir / "target" / "debug" / "demo" / "0.1.0").mkdir(parents=True)

    params = RunParams(
        topology=Topology(
            tiers={"default": Tier(replicasets=1, replication_factor=1)},
            plugins={"demo": Plugin()},
        ),
        daemon=True,
        no_build=True,
        plugin_path=plugin_dir,
        picodata_path=fake_picodata,
    )

    with pytest.raises(PikeError, match="MIGRATE"):
        cluster(params)

    run_args = records(fake_picodata, "run")[0]["args"]
    assert run_args[run_args.index("--plugin-dir") + 1] == str(
        plugin_dir / "target" / "debug"
    )
    assert params.topology.plugins["demo"].version is None


def test_cluster_foreground_legacy_version(tmp_path, fake_picodata, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FAKE_PICO_VERSION", "picodata 24.6.3")
    plugin_dir = tmp_path / "plugin"
    params = RunParams(
        topology=Topology(
            tiers={"default": Tier(replicasets=1, replication_factor=1)},
            environment={"NODE_LABEL": "node-{{ instance_id }}"},
        ),
        disable_colors=True,
        plugin_path=plugin_dir,
        picodata_path=fake_picodata,
    )

    instances = cluster(params)
    for instance in instances:
        instance.join()
        instance.wait()

    entry = records(fake_picodata, "run")[0]
    assert entry["args"][1] == "--data-dir"
    assert entry["args"][3] == "--listen"
    assert "--log" not in entry["args"]
    assert entry["env"] == "node-1"

    log_text = (plugin_dir / "tmp" / "cluster" / "i1" / "picodata.log").read_text()
    assert "hello from instance" in log_text
    assert "oops" in log_text
    assert "default_1_1: hello from instance" in capsys.readouterr().out