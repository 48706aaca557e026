# nodefeat

`nodefeat` holds the logic for node feature discovery in a cluster. It takes the
features that workers report about their nodes and turns them into node labels,
annotations, extended resources and taints. It also keeps per-node resource
topology objects up to date, and it removes topology objects whose nodes have
gone away.

## Modules

- `nodefeat.master`: `NfdMaster` receives feature labels in two ways. Workers
  send them through `set_labels(node_name, nfd_version, labels, features)`, and
  NodeFeature objects deliver them through `nfd_api_update_one_node` and
  `nfd_api_update_all_nodes`. The master runs the NodeFeatureRule objects
  against the features and writes the result to the node as JSON patches.
  `prune` removes every label and annotation that the master manages. `run`
  loads the configuration and polls the config file, reloading it when the
  file changes. It starts the node updater pool. If `metrics_port` is set, it
  also serves metrics. It keeps running until `stop` is called.
- `nodefeat.filtering`: namespace helpers (`add_ns`, `split_ns`,
  `string_to_ns_names`), checks for denied namespaces, and resolution of
  dynamic `@domain.feature.element` values. It also holds the filters for
  labels, taints and extended resources.
- `nodefeat.features`: `Features`, `AttributeFeatureSet`, `Taint`,
  `RuleOutput`, `parse_taints`, and the well-known namespaces and annotation
  names.
- `nodefeat.patches`: `JsonPatch`, `new_json_patch` and `create_patches`.
  `create_patches` works out the add, replace and remove operations needed to
  turn the old contents of a map into the new ones.
- `nodefeat.validation`: checks for qualified names and label values, and
  parsing of resource quantities (`parse_quantity`, `quantity_as_int`).
- `nodefeat.config`: `NFDConfig`, `default_config`, `load_config` for YAML
  configuration with inline overrides, `parse_duration`, and `validate_args`
  for the instance name and TLS file arguments.
- `nodefeat.controller`: `NfdController` turns NodeFeature and
  NodeFeatureRule events into node update requests.
- `nodefeat.updater_pool`: `NodeUpdaterPool` processes update requests on
  worker threads and retries a failed update up to five times, with a growing
  delay between attempts.
- `nodefeat.metrics`: the master's `Gauge`, `Counter` and `MasterMetrics`, and
  `MetricsServer`, which serves them at `/metrics` over HTTP.
- `nodefeat.topology_updater`: `TopologyUpdater` publishes per-node resource
  topology together with the topology manager's policy and scope.
  `get_kubelet_config_func` reads the kubelet configuration from a `file:` URI,
  or fetches it from an `https:` URI through a fetcher that you supply.
- `nodefeat.kubelet_notifier`: `Notifier` sends an `Info` when its timer
  fires, and another when a kubelet state file changes.
- `nodefeat.topology_gc`: `TopologyGC` deletes topology objects whose nodes
  no longer exist. It does this when a node is deleted, and at a fixed interval.

## Examples

Working out patches:

```python
from nodefeat.patches import create_patches

old = {"key-1": "val-1", "key-2": "val-2", "key-3": "val-3"}
new = {"new-key": "new-val", "key-2": "new-2"}
patches = create_patches(["key-1", "key-2", "key-3"], old, new, "/metadata/labels")
# remove key-1 and key-3, replace key-2, add new-key
```

Namespaces in label names:

```python
from nodefeat.filtering import add_ns, split_ns

add_ns("feature-1", "feature.node.kubernetes.io")   # "feature.node.kubernetes.io/feature-1"
split_ns("vendor.io/feature-2")                     # ("vendor.io", "feature-2")
split_ns("plain")                                   # ("", "plain")
```

Loading configuration:

```python
from nodefeat.config import load_config, parse_duration

config = load_config("/etc/nfd/master.conf", '{"noPublish": true}', None)
parse_duration("2h")
```

If the configuration file is missing, the defaults are used. Inline overrides
take precedence over the file. A `ConfigOverrides` object takes precedence over
both.

Updating topology attributes:

```python
from nodefeat.topology_updater import AttributeInfo, update_attribute

attrs = [AttributeInfo("topologyManagerPolicy", "none")]
update_attribute(attrs, AttributeInfo("topologyManagerPolicy", "single-numa-node"))
update_attribute(attrs, AttributeInfo("topologyManagerScope", "container"))
# the existing entry keeps its place and gets the new value; new names go at the end
```

## What the package does not do

- It does not talk to a cluster API on its own. `NfdMaster` works through an
  `apihelper` object that you pass in, and `TopologyGC` and `TopologyUpdater`
  work through clients that you pass in.
- It has no gRPC or TLS server. Worker requests come in by calling
  `set_labels` directly.
- It does not watch NodeFeature or NodeFeatureRule objects. You feed events to
  `NfdController.on_node_feature_event` and `on_rule_event`, and you provide
  the listers and the factory that creates the controller.
- It has no leader election.
- It does not scan pod resources. `TopologyUpdater` needs a `scanner` and an
  `aggregator` that you supply.
- It provides no command-line program.

## Tests

The tests use pytest, which the `test` extra installs.