"""Keeps the NodeResourceTopology object of a node up to date."""

from __future__ import annotations

import copy
import logging
import os
import queue
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml

from .kubelet_notifier import EventType, Info

log = logging.getLogger(__name__)

TOPOLOGY_MANAGER_POLICY_ATTRIBUTE_NAME = "topologyManagerPolicy"
TOPOLOGY_MANAGER_SCOPE_ATTRIBUTE_NAME = "topologyManagerScope"

KubeletConfigFunc = Callable[[], Mapping[str, Any]]


@dataclass
class AttributeInfo:
    """A named attribute of a topology object."""

    name: str
    value: str


@dataclass
class NodeResourceTopology:
    """The resource topology of one node."""

    name: str
    zones: list[Any] = field(default_factory=list)
    attributes: list[AttributeInfo] = field(default_factory=list)
    topology_policies: list[str] = field(default_factory=list)


@dataclass
class TopologyUpdaterConfig:
    """Configuration of the topology updater."""

    exclude_list: dict[str, list[str]] = field(default_factory=dict)


def create_topology_attributes(policy: str, scope: str) -> list[AttributeInfo]:
    """Return the attributes describing the topology manager policy and scope."""
    return [
        AttributeInfo(TOPOLOGY_MANAGER_POLICY_ATTRIBUTE_NAME, policy),
        AttributeInfo(TOPOLOGY_MANAGER_SCOPE_ATTRIBUTE_NAME, scope),
    ]


def update_attribute(attr_list: list[AttributeInfo] | None, attr_info: AttributeInfo) -> None:
    """Set the value of an attribute in place, appending it if it is new."""
    if attr_list is None:
        return
    for attr in attr_list:
        if attr.name == attr_info.name:
            attr.value = attr_info.value
            return
    attr_list.append(attr_info)


def update_attributes(
    lhs: list[AttributeInfo] | None, rhs: Iterable[AttributeInfo] | None
) -> None:
    """Apply update_attribute for every attribute of rhs."""
    for attr in rhs or ():
        update_attribute(lhs, attr)


def get_kubelet_config_func(
    uri: str,
    api_auth_token_file: str = "",
    configz_fetcher: Callable[[str, str], Mapping[str, Any]] | None = None,
) -> KubeletConfigFunc:
    """Return a function that reads the kubelet configuration from uri.

    A file: URI is read as YAML. An https: URI is read by
    configz_fetcher(uri, api_auth_token_file).
    """
    parsed = urlsplit(uri)
    if not uri or (not parsed.scheme and not uri.startswith("/")):
        raise ValueError(f"failed to parse -kubelet-config-uri: invalid URI {uri!r}")

    if parsed.scheme == "file":
        path = parsed.path

        def read_file() -> Mapping[str, Any]:
            try:
                data = yaml.safe_load(Path(path).read_text())
            except (OSError, yaml.YAMLError) as exc:
                raise RuntimeError(f"failed to read kubelet config: {exc}") from exc
            if data is None:
                return {}
            if not isinstance(data, dict):
                raise RuntimeError(f"failed to read kubelet config: not a mapping: {path}")
            return data

        return read_file

    if parsed.scheme == "https":
        if configz_fetcher is None:
            raise ValueError(
                "failed to initialize rest config for kubelet config uri: no configz fetcher"
            )

        def fetch() -> Mapping[str, Any]:
            try:
                return dict(configz_fetcher(uri, api_auth_token_file))
            except Exception as exc:
                raise RuntimeError(
                    f"failed to get kubelet config from configz endpoint: {exc}"
                ) from exc

        return fetch

    raise ValueError(f"unsupported URI scheme: {parsed.scheme}")


def _parse_exclude_list(value: Any) -> dict[str, list[str]]:
    if not isinstance(value, dict):
        raise ValueError(f"excludeList: expected a mapping, got {value!r}")
    result: dict[str, list[str]] = {}
    for key, items in value.items():
        if items is None:
            items = []
        if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
            raise ValueError(f"excludeList[{key!r}]: expected a list of strings, got {items!r}")
        result[str(key)] = list(items)
    return result


class TopologyUpdater:
    """Publishes the resource topology of a node whenever it is notified.

    topology_client has get(name), raising LookupError when the object does
    not exist, create(nrt) and update(nrt). scanner() returns an object with
    pod_resources and attributes; aggregator(pod_resources, exclude_list)
    returns the zones. policy_detector(policy, scope), if given, yields the
    value of the topology_policies field.
    """

    def __init__(
        self,
        node_name: str,
        kubelet_config_func: KubeletConfigFunc,
        *,
        topology_client: Any = None,
        scanner: Callable[[], Any] | None = None,
        aggregator: Callable[[Any, dict[str, list[str]]], Iterable[Any]] | None = None,
        events: queue.Queue[Info] | None = None,
        config_file: str = "",
        no_publish: bool = False,
        oneshot: bool = False,
        policy_detector: Callable[[str, str], str] | None = None,
        poll_interval: float = 0.1,
    ):
        self.node_name = node_name
        self.kubelet_config_func = kubelet_config_func
        self.topology_client = topology_client
        self.scanner = scanner
        self.aggregator = aggregator
        self.events: queue.Queue[Info] = events if events is not None else queue.Queue()
        self.config_file_path = os.path.normpath(config_file) if config_file else ""
        self.no_publish = no_publish
        self.oneshot = oneshot
        self.policy_detector = policy_detector
        self.poll_interval = poll_interval
        self.config = TopologyUpdaterConfig()
        self._stop = threading.Event()

    def configure(self) -> None:
        """Read the configuration file, if there is one."""
        if not self.config_file_path:
            log.info("no configuration file specified")
            return
        try:
            text = Path(self.config_file_path).read_text()
        except FileNotFoundError:
            log.info("configuration file %s not found", self.config_file_path)
            return
        try:
            data = yaml.safe_load(text)
            if data is not None:
                if not isinstance(data, dict):
                    raise ValueError(f"expected a mapping, got {data!r}")
                for key, value in data.items():
                    if str(key).lower() == "excludelist" and value is not None:
                        self.config.exclude_list = _parse_exclude_list(value)
        except (yaml.YAMLError, ValueError) as exc:
            raise ValueError(
                f"failed to parse configuration file {self.config_file_path!r}: {exc}"
            ) from exc
        log.info("configuration file %s parsed: %s", self.config_file_path, self.config)

    def detect_topology_policy_and_scope(self) -> tuple[str, str]:
        """Return the topology manager policy and scope of the kubelet."""
        config = self.kubelet_config_func()
        return (
            str(config.get("topologyManagerPolicy", "") or ""),
            str(config.get("topologyManagerScope", "") or ""),
        )

    def _update_topology_manager_info(self, nrt: NodeResourceTopology) -> None:
        try:
            policy, scope = self.detect_topology_policy_and_scope()
        except Exception as exc:
            raise RuntimeError(
                f"failed to detect TopologyManager's policy and scope: {exc}"
            ) from exc
        update_attributes(nrt.attributes, create_topology_attributes(policy, scope))
        if self.policy_detector is not None:
            nrt.topology_policies = [str(self.policy_detector(policy, scope))]

    def update_node_resource_topology(
        self, zones: Iterable[Any], scan_response: Any, read_kubelet_config: bool
    ) -> None:
        """Create or update the topology object of the node."""
        client = self.topology_client
        if client is None:
            raise RuntimeError("no topology client configured")
        scan_attributes = getattr(scan_response, "attributes", None) or []
        try:
            current = client.get(self.node_name)
        except LookupError:
            fresh = NodeResourceTopology(name=self.node_name, zones=list(zones))
            self._update_topology_manager_info(fresh)
            update_attributes(fresh.attributes, scan_attributes)
            try:
                client.create(fresh)
            except Exception as exc:
                raise RuntimeError(f"failed to create NodeResourceTopology: {exc}") from exc
            return

        mutated = copy.deepcopy(current)
        mutated.zones = list(zones)
        if read_kubelet_config:
            self._update_topology_manager_info(mutated)
        update_attributes(mutated.attributes, scan_attributes)
        try:
            client.update(mutated)
        except Exception as exc:
            raise RuntimeError(f"failed to update NodeResourceTopology: {exc}") from exc
        log.debug("NodeResourceTopology object of %s updated", self.node_name)

    def run(self) -> None:
        """Publish the topology on every notification until stopped.

        With oneshot set, returns after the first publication.
        """
        log.info("Node Feature Discovery Topology Updater on node %s", self.node_name)
        if self.scanner is None:
            raise RuntimeError("failed to initialize ResourceMonitor instance: no scanner")
        try:
            self.configure()
        except Exception as exc:
            raise RuntimeError(
                f"failed to configure Node Feature Discovery Topology Updater: {exc}"
            ) from exc

        while not self._stop.is_set():
            try:
                info = self.events.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            log.debug("event received, scanning: %s", info.event)
            try:
                scan_response = self.scanner()
            except Exception as exc:  # noqa: BLE001 - a failed scan waits for the next event
                log.error("scan failed: %s", exc)
                continue
            pod_resources = getattr(scan_response, "pod_resources", None)
            zones = (
                list(self.aggregator(pod_resources, self.config.exclude_list))
                if self.aggregator is not None
                else []
            )
            read_kubelet_config = info.event == EventType.INTERVAL_BASED
            if not self.no_publish:
                self.update_node_resource_topology(zones, scan_response, read_kubelet_config)
            if self.oneshot:
                return
        log.info("shutting down nfd-topology-updater")

    def stop(self) -> None:
        """Stop the updater."""
        self._stop.set()