# pike

A command-line helper for developing Picodata plugins. It builds a plugin
with cargo, starts a local Picodata cluster described by a `topology.toml`,
installs and enables the plugins on it, applies service configuration,
opens an instance's admin console, stops and cleans the cluster, and packs
the built plugin into a `.tar.gz` bundle.

`pike` runs the `cargo` and `picodata` executables, so both must be on your
`PATH` (for `run` and `enter` the picodata binary can also be given with
`--picodata-path`). It needs a POSIX system (Linux or macOS).

## Installation

```
pip install .
```

## Running a cluster

From the plugin's directory:

```
pike run
```

The cluster layout comes from `topology.toml`:

```toml
[tier.default]
replicasets = 2
replication_factor = 2

[plugin.my_plugin]
migration_context = [{ name = "name", value = "value" }]

[plugin.my_plugin.service.example_service]
tiers = ["default"]

[enviroment]
MY_VAR = "instance-{{ instance_id }}"
```

The `tier` table is required; `plugin` and `enviroment` are optional.
Unknown fields are reported as warnings. Each `enviroment` value is a
Jinja2 template rendered with `instance_id` and passed to that instance's
environment.

If the plugin directory holds a plugin crate (a `Cargo.toml` next to a
`manifest.yaml.template`, or a workspace with such a member), `pike run`
first builds it with cargo, picks the newest built version of every plugin
in the topology, and after the instances are up creates, migrates and
enables each plugin and adds its services to the listed tiers. Replication
factors from the topology are merged into the `cluster.tier` section of the
picodata config file.

Options of `pike run` (alias `pike start`):

- `-t`, `--topology PATH` – topology file (default `topology.toml`)
- `--data-dir DIR` – cluster data directory (default `./tmp`)
- `--plugin-path DIR` – plugin project directory (default `./`)
- `--picodata-path PATH` – picodata binary (default `picodata`)
- `--base-http-port N`, `--base-pg-port N` – base ports (defaults 8000 and 5432)
- `--release` – build and run the release version of the plugin
- `--target-dir DIR` – cargo target directory (default `target`)
- `--no-build` – skip building the plugin
- `--disable-install-plugins` – start the cluster without enabling plugins
- `-d`, `--daemon` – run the cluster in the background
- `--disable-colors` – plain instance log prefixes
- `--config-path PATH` – picodata config file (default `./picodata.yaml`)

Instances are numbered from 1: instance *n* keeps its data in
`<data-dir>/cluster/i<n>` and listens on binary port `3000 + n`, HTTP port
`base-http-port + n` and pgproto port `base-pg-port + n`. A symlink named
after the instance's cluster name (for example `default_1_1`) points at its
data directory. In the foreground, instance output is printed with a
coloured name prefix and also written to `picodata.log` in the instance
directory; press Ctrl+C to stop the cluster.

## Other commands

```
pike stop                 # kill the running instances of the cluster
pike clean                # stop the cluster and remove its data directory
pike enter default_1_1    # open the admin console of an instance
pike config apply         # apply plugin_config.yaml to the running cluster
pike plugin build         # cargo build (add --release for a release build)
pike plugin pack          # build in release mode and create the .tar.gz bundle
pike plugin pack --debug  # pack the debug build instead
pike --version
```

`stop`, `clean`, `enter` and `config apply` accept `--data-dir` and
`--plugin-path`; `plugin build` and `plugin pack` accept `--target-dir` and
`--plugin-path`.

`pike config apply` accepts `-c`/`--config-path` and `--plugin-name`. Without
`--plugin-name` in a workspace it applies each member plugin's
`plugin_config.yaml`; a custom config path may then only be used together
with `--plugin-name`. Configuration is sent through the `picodata` found on
`PATH`.

`pike plugin pack` writes `<name>-<version>.tar.gz` into
`<target-dir>/release` (or `debug`). The archive holds, under
`<name>/<version>/`, the plugin's shared library, `manifest.yaml`, the
`migrations` directory and the entries of the `assets` directory, whichever
of them were built. In a workspace every member plugin is packed.

A first argument `pike` is ignored, so the command also works when called as
`cargo-pike pike ...`.

## Using it from Python

The operations are available as functions:

- `pike.cluster.run(params)` and `pike.cluster.cluster(params)` with a
  `pike.cluster.RunParams` built from a `pike.topology.Topology`
  (or one read with `pike.topology.load_topology(path)`); `cluster` returns
  the started `PicodataInstance` objects, whose `properties()` gives ports,
  names and data directory.
- `pike.stop.stop(params)` with `pike.stop.StopParams`.
- `pike.clean.clean(data_dir, plugin_path)`.
- `pike.enter.enter(instance_name, data_dir, plugin_path, picodata_path)`.
- `pike.apply.apply(params)` with `pike.apply.ApplyParams`; setting
  `config_map` applies a mapping of services to properties instead of a file.
- `pike.build.build(release, target_dir, plugin_path)` and
  `pike.pack.pack(debug, target_dir, plugin_path)`, which returns the paths
  of the archives it wrote.
- `pike.cli.modify_workspace(plugin_name, plugin_path)` adds a member to a
  workspace `Cargo.toml`.

Failures raise `pike.common.PikeError`.

## What it does not do

`pike` has no command to create a new plugin project or to add a new plugin
crate to a workspace: there is no plugin template, so projects have to be
set up by hand (`modify_workspace` only edits the workspace's member list).