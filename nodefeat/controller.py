"""Controller that turns NodeFeature and NodeFeatureRule events into node updates."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import timedelta
from typing import Any

from .features import NODE_FEATURE_OBJ_NODE_NAME_LABEL

log = logging.getLogger(__name__)

FeatureLister = Callable[[Mapping[str, str]], Iterable[Any]]
RuleLister = Callable[[], Iterable[Any]]


def _object_ref(obj: Any) -> str:
    name = getattr(obj, "name", "")
    namespace = getattr(obj, "namespace", "")
    return f"{namespace}/{name}" if namespace else str(name)


def get_node_name_for_obj(obj: Any) -> str:
    """Return the node name an object is labelled with; raise ValueError if it has none."""
    labels = getattr(obj, "labels", None) or {}
    if NODE_FEATURE_OBJ_NODE_NAME_LABEL not in labels:
        raise ValueError(f'"{NODE_FEATURE_OBJ_NODE_NAME_LABEL}" label is missing')
    node_name = labels[NODE_FEATURE_OBJ_NODE_NAME_LABEL]
    if not node_name:
        raise ValueError(f'"{NODE_FEATURE_OBJ_NODE_NAME_LABEL}" label is empty')
    return node_name


class NfdController:
    """Collects update requests coming from the NFD API objects.

    Requests to update every node coalesce into one pending flag; requests to
    update a single node are queued by node name.
    """

    def __init__(
        self,
        feature_lister: FeatureLister | None = None,
        rule_lister: RuleLister | None = None,
        disable_node_feature: bool = False,
        resync_period: timedelta = timedelta(hours=1),
    ):
        self.disable_node_feature = disable_node_feature
        self.resync_period = resync_period
        self.feature_lister = None if disable_node_feature else feature_lister
        self.rule_lister = rule_lister
        self.stop_event = threading.Event()
        self.update_all_nodes_event = threading.Event()
        self.update_one_node_queue: queue.Queue[str] = queue.Queue()
        log.debug(
            "initializing new NFD API controller: disable_node_feature=%s resync_period=%s",
            disable_node_feature,
            resync_period,
        )

    def on_node_feature_event(self, obj: Any) -> None:
        """Handle an added, updated or deleted NodeFeature object."""
        if self.disable_node_feature:
            return
        log.debug("NodeFeature event: %s", _object_ref(obj))
        self.update_one_node("NodeFeature", obj)

    def on_rule_event(self, obj: Any) -> None:
        """Handle an added, updated or deleted NodeFeatureRule object."""
        log.debug("NodeFeatureRule event: %s", _object_ref(obj))
        # With the NodeFeature API disabled rules are processed on gRPC requests.
        if not self.disable_node_feature:
            self.update_all_nodes()

    def update_one_node(self, typ: str, obj: Any) -> None:
        """Queue an update of the node the object belongs to."""
        try:
            node_name = get_node_name_for_obj(obj)
        except ValueError as exc:
            log.error(
                "failed to determine node name for %s object %s: %s", typ, _object_ref(obj), exc
            )
            return
        self.update_one_node_queue.put(node_name)

    def update_all_nodes(self) -> None:
        """Request an update of all nodes; repeated requests coalesce."""
        self.update_all_nodes_event.set()

    def stop(self) -> None:
        """Signal the controller to stop."""
        self.stop_event.set()