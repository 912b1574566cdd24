"""Controller that deletes or taints nodes gone or shut down in the cloud."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

from cloudnodectl.types import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    NODE_READY,
    TAINT_EFFECT_NO_SCHEDULE,
    TAINT_NODE_SHUTDOWN,
    CloudProviderError,
    ConditionStatus,
    InstanceNotFoundError,
    Node,
    ProviderNotImplementedError,
    Taint,
    get_node_condition,
)

log = logging.getLogger(__name__)

DELETE_NODE_EVENT = "DeletingNode"
DELETE_NODE_FAILED_EVENT = "DeletingNodeFailed"

SHUTDOWN_TAINT = Taint(key=TAINT_NODE_SHUTDOWN, effect=TAINT_EFFECT_NO_SCHEDULE)

EventRecorder = Callable[[Node, str, str, str], None]


def get_instance_provider_id(cloud: Any, node_name: str) -> str:
    """Build the provider ID of a node from the cloud's instance ID."""
    instances = cloud.instances()
    if instances is None:
        raise CloudProviderError("failed to get instances from cloud provider")
    try:
        instance_id = instances.instance_id(node_name)
    except (InstanceNotFoundError, ProviderNotImplementedError):
        raise
    except Exception as err:
        raise CloudProviderError(f"failed to get instance ID from cloud provider: {err}") from err
    return f"{cloud.provider_name()}://{instance_id}"


class CloudNodeLifecycleController:
    """Deletes nodes removed from the cloud and taints nodes shut down there.

    ``node_lister`` is a callable returning the cached nodes. ``kube_client``
    provides ``delete_node(name)``, ``add_or_update_taint(name, taint)`` and
    ``remove_taint(name, taint)``. ``cloud`` provides ``instances()`` and
    ``instances_v2()``, each returning an implementation or None.
    """

    def __init__(
        self,
        node_lister: Callable[[], Iterable[Node]],
        kube_client: Any,
        cloud: Any,
        node_monitor_period: float,
    ) -> None:
        if kube_client is None:
            raise ValueError("kubernetes client is missing")
        if cloud is None:
            raise ValueError("no cloud provider provided")
        if cloud.instances() is None and cloud.instances_v2() is None:
            raise ValueError("cloud provider does not support instances")
        self.node_lister = node_lister
        self.kube_client = kube_client
        self.cloud = cloud
        self.node_monitor_period = node_monitor_period
        self.recorder: EventRecorder | None = None

    def run(self, stop_event: threading.Event) -> None:
        """Check nodes every period until ``stop_event`` is set."""
        log.info("Starting cloud node lifecycle controller")
        while not stop_event.is_set():
            try:
                self.monitor_nodes()
            except Exception:
                log.exception("node monitoring failed")
            if stop_event.wait(self.node_monitor_period):
                break

    def monitor_nodes(self) -> None:
        """Delete nodes gone from the cloud; taint nodes shut down there."""
        try:
            nodes = list(self.node_lister())
        except Exception as err:
            log.error("error listing nodes from cache: %s", err)
            return

        for node in nodes:
            condition = get_node_condition(node, NODE_READY)
            status = condition.status if condition is not None else ConditionStatus.UNKNOWN

            if status == ConditionStatus.TRUE:
                if node.has_taint(SHUTDOWN_TAINT):
                    try:
                        self.kube_client.remove_taint(node.name, SHUTDOWN_TAINT)
                    except Exception as err:
                        log.error("error patching node taints: %s", err)
                continue

            try:
                exists = self.ensure_node_exists_by_provider_id(node)
            except Exception as err:
                log.error("error checking if node %s exists: %s", node.name, err)
                continue

            if not exists:
                self._delete_node(node)
                continue

            try:
                shutdown = self.shutdown_in_cloud_provider(node)
            except Exception as err:
                log.error("error checking if node %s is shutdown: %s", node.name, err)
                continue

            if shutdown:
                try:
                    self.kube_client.add_or_update_taint(node.name, SHUTDOWN_TAINT)
                except Exception:
                    log.error(
                        "failed to apply shutdown taint to node %s, it may have been deleted.", node.name
                    )

    def _delete_node(self, node: Node) -> None:
        log.debug("deleting node since it is no longer present in cloud provider: %s", node.name)
        self._record(
            node,
            EVENT_TYPE_NORMAL,
            DELETE_NODE_EVENT,
            f"Deleting node {node.name} because it does not exist in the cloud provider",
        )
        try:
            self.kube_client.delete_node(node.name)
        except Exception as err:
            log.error("unable to delete node %r: %s", node.name, err)
            self._record(
                node, EVENT_TYPE_WARNING, DELETE_NODE_FAILED_EVENT, f"Failed deleting node {node.name}: {err}"
            )

    def _record(self, node: Node, event_type: str, reason: str, message: str) -> None:
        log.info("event %s/%s for node %s: %s", event_type, reason, node.name, message)
        if self.recorder is not None:
            self.recorder(node, event_type, reason, message)

    def get_provider_id(self, node: Node) -> str:
        """Return the node's provider ID, asking the cloud when it is unset."""
        if node.provider_id:
            return node.provider_id
        instances_v2 = self.cloud.instances_v2()
        if instances_v2 is not None:
            return instances_v2.instance_metadata(node).provider_id
        return get_instance_provider_id(self.cloud, node.name)

    def shutdown_in_cloud_provider(self, node: Node) -> bool:
        """Return True if the node's instance is shut down."""
        instances_v2 = self.cloud.instances_v2()
        if instances_v2 is not None:
            return instances_v2.instance_shutdown(node)

        instances = self.cloud.instances()
        if instances is None:
            raise CloudProviderError("cloud provider does not support instances")

        try:
            provider_id = self.get_provider_id(node)
        except InstanceNotFoundError:
            return False

        try:
            return instances.instance_shutdown_by_provider_id(provider_id)
        except ProviderNotImplementedError:
            return False

    def ensure_node_exists_by_provider_id(self, node: Node) -> bool:
        """Return True if the node's instance still exists in the cloud."""
        instances_v2 = self.cloud.instances_v2()
        if instances_v2 is not None:
            return instances_v2.instance_exists(node)

        instances = self.cloud.instances()
        if instances is None:
            raise CloudProviderError("instances interface not supported in the cloud provider")

        try:
            provider_id = self.get_provider_id(node)
        except InstanceNotFoundError:
            return False

        return instances.instance_exists_by_provider_id(provider_id)