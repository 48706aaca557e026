"""The master: applies discovered features to node objects."""

from __future__ import annotations

import copy
import logging
import os
import queue
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import timedelta
from typing import Any

from .config import Args, NFDConfig, default_config, load_config, validate_args
from .controller import NfdController
from .features import (
    ANNOTATION_NS,
    EXTENDED_RESOURCE_ANNOTATION,
    FEATURE_LABEL_NS,
    FEATURE_LABELS_ANNOTATION,
    MASTER_VERSION_ANNOTATION,
    NODE_FEATURE_OBJ_NODE_NAME_LABEL,
    NODE_TAINTS_ANNOTATION,
    RULE_BACKREF_DOMAIN,
    RULE_BACKREF_FEATURE,
    WORKER_VERSION_ANNOTATION,
    AttributeFeatureSet,
    Features,
    Taint,
    parse_taints,
)
from .filtering import (
    DeniedNamespaces,
    filter_extended_resources,
    filter_feature_labels,
    filter_taints,
    preprocess_denied_namespaces,
    string_to_ns_names,
)
from .metrics import MasterMetrics, MetricsServer
from .patches import JsonPatch, create_patches, new_json_patch
from .updater_pool import NodeUpdaterPool
from .validation import quantity_as_int

log = logging.getLogger(__name__)

ControllerFactory = Callable[[bool, timedelta], NfdController]


def _file_signature(path: str) -> tuple[int, int] | None:
    try:
        st = os.stat(path)
    except OSError:
        return None
    return st.st_mtime_ns, st.st_size


def _merge_spec(src: Any, dst: Any) -> None:
    """Merge the labels and features of src into dst."""
    dst.labels.update(getattr(src, "labels", None) or {})
    src_f: Features = src.features
    dst_f: Features = dst.features
    for key, values in src_f.flags.items():
        dst_f.flags.setdefault(key, set()).update(values)
    for key, fset in src_f.attributes.items():
        dst_f.attributes.setdefault(key, AttributeFeatureSet()).elements.update(fset.elements)
    for key, instances in src_f.instances.items():
        dst_f.instances.setdefault(key, []).extend(copy.deepcopy(instances))


def _taint_matches(a: Taint, b: Taint) -> bool:
    return a.key == b.key and a.effect == b.effect


class NfdMaster:
    """Applies labels, annotations, extended resources and taints to nodes.

    apihelper is an object with get_client(), get_node(cli, name),
    get_nodes(cli), patch_node(cli, name, patches),
    patch_node_status(cli, name, patches), update_node(cli, node) and
    patch_node_taints(cli, name, taints). Nodes carry name, labels,
    annotations, capacity and taints.
    """

    def __init__(
        self,
        args: Args | None = None,
        apihelper: Any = None,
        node_name: str | None = None,
        namespace: str | None = None,
        version: str = "",
        controller_factory: ControllerFactory | None = None,
        config_poll_interval: float = 1.0,
    ):
        self.args = args if args is not None else Args()
        self.apihelper = apihelper
        self.node_name = node_name if node_name is not None else os.environ.get("NODE_NAME", "")
        self.namespace = (
            namespace
            if namespace is not None
            else os.environ.get("KUBERNETES_NAMESPACE", "default")
        )
        self.version = version
        self.controller_factory = controller_factory
        self.config_poll_interval = config_poll_interval
        self.config: NFDConfig = default_config()
        self.denied = DeniedNamespaces()
        self.controller: NfdController | None = None
        self.metrics = MasterMetrics(version)
        self._ready = threading.Event()
        self._stop = threading.Event()
        validate_args(self.args)
        self.config_file_path = (
            os.path.normpath(self.args.config_file) if self.args.config_file else ""
        )
        self.node_updater_pool = NodeUpdaterPool(self.nfd_api_update_one_node)

    # configuration -------------------------------------------------------

    def configure(self, filepath: str, overrides: str) -> None:
        """Load the configuration and derive the denied namespaces."""
        config = load_config(filepath, overrides, self.args.overrides)
        self.config = config
        normal, wildcard = preprocess_denied_namespaces(config.deny_label_ns)
        normal.update({"", "kubernetes.io"})
        wildcard.add(".kubernetes.io")
        self.denied = DeniedNamespaces(normal=normal, wildcard=wildcard)
        log.info("configuration successfully updated: %s", config)

    def instance_annotation(self, name: str) -> str:
        """Prefix an annotation name with the instance name, if any."""
        if not self.args.instance:
            return name
        return f"{self.args.instance}.{name}"

    # lifecycle -----------------------------------------------------------

    def _start_controller(self) -> None:
        if self.controller_factory is None:
            raise RuntimeError("failed to initialize CRD controller: no controller factory")
        log.info("starting the nfd api controller")
        self.controller = self.controller_factory(
            not self.args.enable_node_feature_api, self.config.resync_period
        )

    def run(self) -> None:
        """Run until stop() is called or a fatal error occurs."""
        log.info("Node Feature Discovery Master %s on node %s", self.version, self.node_name)
        self.configure(self.config_file_path, self.args.options)
        if self.args.prune:
            self.prune()
            return
        if self.args.crd_controller:
            self._start_controller()
        self.node_updater_pool.start(self.config.nfd_api_parallelism)
        if not self.config.no_publish:
            try:
                self.update_master_node()
            except Exception as exc:
                raise RuntimeError(f"failed to update master node: {exc}") from exc

        metrics_server = None
        if self.args.metrics_port > 0:
            metrics_server = MetricsServer(self.args.metrics_port, self.metrics)
            metrics_server.start()
            self.metrics.register_version(self.version)

        if self.controller is not None:
            threading.Thread(target=self._update_handler, daemon=True).start()

        signature = _file_signature(self.config_file_path) if self.config_file_path else None
        self._ready.set()
        try:
            while not self._stop.wait(self.config_poll_interval):
                if not self.config_file_path:
                    continue
                current = _file_signature(self.config_file_path)
                if current == signature:
                    continue
                signature = current
                log.info("reloading configuration")
                self.configure(self.config_file_path, self.args.options)
                if self.controller is not None:
                    self.controller.stop()
                if self.args.crd_controller:
                    self._start_controller()
                if self.controller is not None and self.args.enable_node_feature_api:
                    self.controller.update_all_nodes()
                self.node_updater_pool.stop()
                self.node_updater_pool.start(self.config.nfd_api_parallelism)
            log.info("shutting down nfd-master")
        finally:
            if metrics_server is not None:
                metrics_server.stop()

    def _update_handler(self) -> None:
        update_all = self.args.enable_node_feature_api
        while not self._stop.wait(1.0):
            controller = self.controller
            if controller is None:
                continue
            if controller.update_all_nodes_event.is_set():
                controller.update_all_nodes_event.clear()
                update_all = True
            nodes: set[str] = set()
            while True:
                try:
                    nodes.add(controller.update_one_node_queue.get_nowait())
                except queue.Empty:
                    break
            failed = False
            if update_all:
                try:
                    self.nfd_api_update_all_nodes()
                except Exception as exc:  # noqa: BLE001
                    log.error("failed to update nodes: %s", exc)
                    failed = True
            else:
                for name in nodes:
                    self.node_updater_pool.add(name)
            update_all = failed

    def stop(self) -> None:
        """Stop the master."""
        if self.controller is not None:
            self.controller.stop()
        self.node_updater_pool.stop()
        self._stop.set()

    def wait_for_ready(self, timeout: float) -> bool:
        """Wait up to timeout seconds for the master to be ready."""
        return self._ready.wait(timeout)

    # node operations -----------------------------------------------------

    def prune(self) -> None:
        """Remove all NFD-owned properties from all nodes."""
        if self.config.no_publish:
            log.info("skipping pruning of nodes as noPublish config option is set")
            return
        cli = self.apihelper.get_client()
        for node in self.apihelper.get_nodes(cli):
            log.info("pruning node %s", node.name)
            try:
                self.update_node_object(cli, node.name, {}, {}, {}, [])
            except Exception as exc:
                raise RuntimeError(f"failed to prune node {node.name!r}: {exc}") from exc
            fresh = self.apihelper.get_node(cli, node.name)
            prefix = self.instance_annotation(ANNOTATION_NS)
            fresh.annotations = {
                k: v for k, v in fresh.annotations.items() if not k.startswith(prefix)
            }
            try:
                self.apihelper.update_node(cli, fresh)
            except Exception as exc:
                raise RuntimeError(
                    f"failed to prune annotations from node {node.name!r}: {exc}"
                ) from exc

    def update_master_node(self) -> None:
        """Advertise the master version as an annotation of its node."""
        cli = self.apihelper.get_client()
        node = self.apihelper.get_node(cli, self.node_name)
        patches = create_patches(
            None,
            node.annotations,
            {self.instance_annotation(MASTER_VERSION_ANNOTATION): self.version},
            "/metadata/annotations",
        )
        try:
            self.apihelper.patch_node(cli, node.name, patches)
        except Exception as exc:
            raise RuntimeError(f"failed to patch node annotations: {exc}") from exc

    def set_labels(
        self,
        node_name: str,
        nfd_version: str,
        labels: Mapping[str, str] | None,
        features: Features | None = None,
    ) -> None:
        """Handle a labeling request from a worker."""
        log.info("SetLabels request received for node %s", node_name)
        if self.config.no_publish:
            return
        cli = self.apihelper.get_client()
        annotations = {self.instance_annotation(WORKER_VERSION_ANNOTATION): nfd_version}
        self.refresh_node_features(cli, node_name, annotations, labels, features)

    def nfd_api_update_all_nodes(self) -> None:
        """Queue an update of every node in the cluster."""
        log.info("will process all nodes in the cluster")
        cli = self.apihelper.get_client()
        for node in self.apihelper.get_nodes(cli):
            self.node_updater_pool.add(node.name)

    def nfd_api_update_one_node(self, node_name: str) -> None:
        """Update one node from its NodeFeature objects."""
        controller = self.controller
        if controller is None or controller.feature_lister is None:
            return
        try:
            objs = list(controller.feature_lister({NODE_FEATURE_OBJ_NODE_NAME_LABEL: node_name}))
        except Exception as exc:
            raise RuntimeError(
                f"failed to get NodeFeature resources for node {node_name!r}: {exc}"
            ) from exc
        objs.sort(key=lambda o: (o.namespace != self.namespace, o.name, o.namespace))
        if self.config.no_publish:
            return

        labels: dict[str, str] = {}
        features = Features()
        annotations: dict[str, str] = {}
        if objs:
            spec = copy.deepcopy(objs[0].spec)
            for other in objs[1:]:
                _merge_spec(other.spec, spec)
            labels = dict(spec.labels or {})
            features = spec.features
            first = objs[0]
            if first.namespace == self.namespace and first.name == node_name:
                worker_version = (getattr(first, "annotations", None) or {}).get(
                    WORKER_VERSION_ANNOTATION, ""
                )
                if worker_version:
                    annotations[WORKER_VERSION_ANNOTATION] = worker_version

        cli = self.apihelper.get_client()
        self.refresh_node_features(cli, node_name, annotations, labels, features)

    def refresh_node_features(
        self,
        cli: Any,
        node_name: str,
        annotations: dict[str, str],
        labels: Mapping[str, str] | None,
        features: Features | None,
    ) -> None:
        """Compute and apply all NFD-owned properties of a node."""
        if features is None:
            features = Features()
        labels = dict(labels or {})
        cr_labels, cr_resources, cr_taints = self.process_node_feature_rule(node_name, features)
        labels.update(cr_labels)
        labels, extended_resources = filter_feature_labels(
            labels, features, self.config, self.denied
        )
        extended_resources.update(cr_resources)
        extended_resources = filter_extended_resources(features, extended_resources)
        taints = filter_taints(cr_taints) if self.config.enable_taints else []
        try:
            self.update_node_object(
                cli, node_name, labels, annotations, extended_resources, taints
            )
        except Exception:
            log.exception("failed to update node %s", node_name)
            raise
        self.metrics.updated_nodes.inc()

    def process_node_feature_rule(
        self, node_name: str, features: Features
    ) -> tuple[dict[str, str], dict[str, str], list[Taint]]:
        """Run all NodeFeatureRule objects against the features of a node."""
        labels: dict[str, str] = {}
        extended_resources: dict[str, str] = {}
        taints: list[Taint] = []
        controller = self.controller
        if controller is None or controller.rule_lister is None:
            return labels, extended_resources, taints
        try:
            rule_specs = sorted(controller.rule_lister(), key=lambda r: r.name)
        except Exception as exc:  # noqa: BLE001
            log.error("failed to list NodeFeatureRule resources: %s", exc)
            return labels, extended_resources, taints

        start = time.perf_counter_ns()
        for spec in rule_specs:
            log.debug("executing NodeFeatureRule %s on node %s", spec.name, node_name)
            for rule in spec.spec.rules:
                try:
                    out = rule.execute(features)
                except Exception as exc:  # noqa: BLE001
                    log.error("failed to process rule %s of %s: %s", rule.name, spec.name, exc)
                    continue
                taints.extend(out.taints)
                labels.update(out.labels)
                extended_resources.update(out.extended_resources)
                features.insert_attribute_features(
                    RULE_BACKREF_DOMAIN, RULE_BACKREF_FEATURE, out.labels
                )
                features.insert_attribute_features(
                    RULE_BACKREF_DOMAIN, RULE_BACKREF_FEATURE, out.vars
                )
        self.metrics.crd_processing_time.set(time.perf_counter_ns() - start)
        return labels, extended_resources, taints

    def update_node_object(
        self,
        cli: Any,
        node_name: str,
        labels: Mapping[str, str],
        annotations: dict[str, str],
        extended_resources: Mapping[str, str],
        taints: Iterable[Taint] | None,
    ) -> None:
        """Bring the node's labels, annotations, resources and taints up to date."""
        if cli is None:
            raise ValueError("no client is passed, client:  <nil>")
        node = self.apihelper.get_node(cli, node_name)
        trim = FEATURE_LABEL_NS + "/"

        def _short(key: str) -> str:
            return key[len(trim):] if key.startswith(trim) else key

        if labels:
            annotations[self.instance_annotation(FEATURE_LABELS_ANNOTATION)] = ",".join(
                sorted(_short(k) for k in labels)
            )
        if extended_resources:
            annotations[self.instance_annotation(EXTENDED_RESOURCE_ANNOTATION)] = ",".join(
                sorted(_short(k) for k in extended_resources)
            )

        old_labels = string_to_ns_names(
            node.annotations.get(self.instance_annotation(FEATURE_LABELS_ANNOTATION), ""),
            FEATURE_LABEL_NS,
        )
        patches = create_patches(old_labels, node.labels, labels, "/metadata/labels")
        patches += create_patches(
            [FEATURE_LABELS_ANNOTATION, EXTENDED_RESOURCE_ANNOTATION],
            node.annotations,
            annotations,
            "/metadata/annotations",
        )

        status_patches = self.create_extended_resource_patches(node, extended_resources)
        try:
            self.apihelper.patch_node_status(cli, node.name, status_patches)
        except Exception as exc:
            raise RuntimeError(f"error while patching extended resources: {exc}") from exc
        try:
            self.apihelper.patch_node(cli, node.name, patches)
        except Exception as exc:
            raise RuntimeError(f"error while patching node object: {exc}") from exc

        if patches or status_patches:
            log.info("node %s updated", node_name)
        else:
            log.debug("no updates to node %s", node_name)

        self.set_taints(cli, list(taints or []), node.name)

    def set_taints(self, cli: Any, taints: list[Taint], node_name: str) -> None:
        """Apply NFD-owned taints and record them in an annotation."""
        node = self.apihelper.get_node(cli, node_name)
        old_taints: list[Taint] = []
        spec = node.annotations.get(NODE_TAINTS_ANNOTATION)
        if spec is not None:
            old_taints, _ = parse_taints(spec.split(","))

        new_taints = list(getattr(node, "taints", None) or [])
        updated = False
        for old in old_taints:
            if any(_taint_matches(t, old) for t in taints):
                continue
            kept = [t for t in new_taints if not _taint_matches(t, old)]
            if len(kept) == len(new_taints):
                log.debug("taint %s already deleted from node", old)
            else:
                updated = True
            new_taints = kept

        for taint in taints:
            for idx, existing in enumerate(new_taints):
                if _taint_matches(existing, taint):
                    if existing != taint:
                        new_taints[idx] = taint
                        updated = True
                    break
            else:
                new_taints.append(taint)
                updated = True

        if updated:
            try:
                self.apihelper.patch_node_taints(cli, node_name, new_taints)
            except Exception as exc:
                raise RuntimeError(f"failed to patch the node {node.name}") from exc
            log.info("updated node taints of %s", node_name)

        new_annotations: dict[str, str] = {}
        if taints:
            new_annotations[NODE_TAINTS_ANNOTATION] = ",".join(t.to_string() for t in taints)
        patches = create_patches(
            [NODE_TAINTS_ANNOTATION], node.annotations, new_annotations, "/metadata/annotations"
        )
        if patches:
            try:
                self.apihelper.patch_node(cli, node.name, patches)
            except Exception as exc:
                raise RuntimeError(f"error while patching node object: {exc}") from exc

    def create_extended_resource_patches(
        self, node: Any, extended_resources: Mapping[str, str]
    ) -> list[JsonPatch]:
        """Return the node status patches for the extended resources."""
        patches: list[JsonPatch] = []
        capacity: Mapping[str, str] = getattr(node, "capacity", None) or {}
        old_resources = string_to_ns_names(
            node.annotations.get(self.instance_annotation(EXTENDED_RESOURCE_ANNOTATION), ""),
            FEATURE_LABEL_NS,
        )
        for resource in old_resources:
            if resource in capacity and resource not in extended_resources:
                patches.append(new_json_patch("remove", "/status/capacity", resource, ""))
                patches.append(new_json_patch("remove", "/status/allocatable", resource, ""))

        for resource, value in extended_resources.items():
            if resource in capacity:
                try:
                    current = quantity_as_int(str(capacity[resource]))
                except ValueError:
                    current = 0
                if str(current) != value:
                    patches.append(new_json_patch("replace", "/status/capacity", resource, value))
                    patches.append(
                        new_json_patch("replace", "/status/allocatable", resource, value)
                    )
            else:
                patches.append(new_json_patch("add", "/status/capacity", resource, value))
        return patches