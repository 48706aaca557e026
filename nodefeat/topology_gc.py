"""Garbage collection of NodeResourceTopology objects whose node is gone."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

log = logging.getLogger(__name__)


def _object_key(obj: Any) -> str:
    """Return the "namespace/name" key of an object, or its name if cluster scoped."""
    if isinstance(obj, str):
        if not obj:
            raise ValueError("object has no name")
        return obj
    name = getattr(obj, "name", None)
    if not isinstance(name, str) or not name:
        raise ValueError(f"object {obj!r} has no name")
    namespace = getattr(obj, "namespace", "") or ""
    return f"{namespace}/{name}" if namespace else name


class TopologyGC:
    """Removes NodeResourceTopology objects that have no matching node.

    topo_client is an object with list() returning the topology objects
    (each with a name) and delete(name), which raises LookupError when the
    object does not exist. list_nodes returns the nodes of the cluster, as
    objects with a name or as plain names.
    """

    def __init__(
        self,
        topo_client: Any,
        list_nodes: Callable[[], Iterable[Any]],
        gc_period: float = 60.0,
    ):
        self.topo_client = topo_client
        self.list_nodes = list_nodes
        self.gc_period = gc_period
        self._stop = threading.Event()

    def delete_nrt(self, node_name: str) -> None:
        """Delete the topology object of a node; a missing object is fine."""
        try:
            self.topo_client.delete(node_name)
        except LookupError:
            log.debug("NodeResourceTopology of %s not found, omitting deletion", node_name)
            return
        except Exception as exc:  # noqa: BLE001 - deletion failures are only logged
            log.error("failed to delete NodeResourceTopology object of %s: %s", node_name, exc)
            return
        log.info("NodeResourceTopology object of %s has been deleted", node_name)

    def delete_node_handler(self, obj: Any) -> None:
        """Handle the deletion of a node, possibly wrapped in a tombstone."""
        node = obj
        inner = getattr(obj, "obj", None)
        if inner is not None and hasattr(obj, "key"):
            log.debug("found stale NodeResourceTopology object %r", obj)
            node = inner
        name = getattr(node, "name", None)
        if not isinstance(name, str) or not name:
            log.info("cannot convert object to a node: %r", obj)
            return
        self.delete_nrt(name)

    def run_gc(self) -> None:
        """Delete every topology object whose node does not exist."""
        log.info("Running GC")
        nodes: set[str] = set()
        for node in self.list_nodes():
            try:
                nodes.add(_object_key(node))
            except ValueError as exc:
                log.error("failed to create key: %s", exc)

        try:
            nrts = list(self.topo_client.list())
        except Exception as exc:  # noqa: BLE001
            log.error("failed to list NodeResourceTopology objects: %s", exc)
            return

        for nrt in nrts:
            try:
                key = _object_key(nrt)
            except ValueError as exc:
                log.error("failed to create key: %s", exc)
                continue
            if key not in nodes:
                self.delete_nrt(key)

    def periodic_gc(self, gc_period: float) -> None:
        """Run the garbage collector every gc_period seconds until stopped."""
        while not self._stop.wait(gc_period):
            self.run_gc()
        log.info("shutting down periodic Garbage Collector")

    def start(self) -> None:
        """Clear out stale topology objects once."""
        self.run_gc()

    def run(self) -> None:
        """Collect garbage once, then periodically until stop() is called."""
        self.start()
        self.periodic_gc(self.gc_period)

    def stop(self) -> None:
        """Stop the periodic garbage collection."""
        self._stop.set()