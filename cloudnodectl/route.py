"""Keeps cloud routing rules in step with the pod CIDRs of registered nodes."""

from __future__ import annotations

import enum
import ipaddress
import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, TypeVar

from cloudnodectl.types import (
    EVENT_TYPE_WARNING,
    NODE_NETWORK_UNAVAILABLE,
    CloudProviderError,
    ConditionStatus,
    ConflictError,
    Node,
    NodeAddress,
    NodeCondition,
    Route,
    get_node_condition,
)

log = logging.getLogger(__name__)

MAX_CONCURRENT_ROUTE_OPERATIONS = 200

T = TypeVar("T")

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
EventRecorder = Callable[[Node, str, str, str], None]


class RouteAction(str, enum.Enum):
    """What to do with the route for one pod CIDR of a node."""

    KEEP = "keep"
    ADD = "add"
    REMOVE = "remove"
    UPDATE = "update"


@dataclass(frozen=True)
class Backoff:
    """Retry schedule: at most ``steps`` attempts, sleeping between them."""

    steps: int
    duration: float
    factor: float = 0.0
    jitter: float = 0.0


UPDATE_NETWORK_CONDITION_BACKOFF = Backoff(steps=5, duration=0.1, jitter=1.0)


def retry_on_conflict(backoff: Backoff, fn: Callable[[], T]) -> T:
    """Call ``fn``, retrying while it raises ConflictError.

    Other errors propagate at once; when every attempt conflicts, the last
    ConflictError is raised.
    """
    delay = backoff.duration
    attempts = max(backoff.steps, 1)
    for attempt in range(attempts):
        try:
            return fn()
        except ConflictError:
            if attempt == attempts - 1:
                raise
        sleep_for = delay
        if backoff.jitter > 0:
            sleep_for += random.random() * backoff.jitter * delay
        if sleep_for > 0:
            time.sleep(sleep_for)
        if backoff.factor:
            delay *= backoff.factor
    raise AssertionError("unreachable")


def equal_node_addrs(addrs0: list[NodeAddress], addrs1: list[NodeAddress]) -> bool:
    """True if both lists have the same length and every address of the first is in the second."""
    if len(addrs0) != len(addrs1):
        return False
    return all(addr in addrs1 for addr in addrs0)


def get_route_action(
    routes: Iterable[Route], cidr: str, node_name: str, real_node_addrs: list[NodeAddress]
) -> RouteAction:
    """Decide whether the route for ``cidr`` is kept, updated or added."""
    for route in routes:
        if route.destination_cidr == cidr:
            if not route.enable_node_addresses or equal_node_addrs(
                real_node_addrs, route.target_node_addresses
            ):
                return RouteAction.KEEP
            log.info(
                "Node addresses have changed from %s to %s", route.target_node_addresses, real_node_addrs
            )
            return RouteAction.UPDATE
    return RouteAction.ADD


@dataclass
class _RouteNode:
    name: str
    addrs: list[NodeAddress] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)
    actions: dict[str, RouteAction] = field(default_factory=dict)


class RouteController:
    """Creates and deletes cloud routes so every node's pod CIDRs are reachable.

    ``routes`` provides ``list_routes(cluster_name)``,
    ``create_route(cluster_name, name_hint, route)`` and
    ``delete_route(cluster_name, route)``. ``kube_client`` provides
    ``set_node_condition(node_name, condition)``, which may raise
    ConflictError. ``node_lister`` is a callable returning the cached nodes.
    """

    def __init__(
        self,
        routes: Any,
        kube_client: Any,
        node_lister: Callable[[], Iterable[Node]],
        cluster_name: str,
        cluster_cidrs: Iterable[str | IPNetwork],
    ) -> None:
        cidrs = [ipaddress.ip_network(c, strict=False) for c in cluster_cidrs]
        if not cidrs:
            raise ValueError("RouteController: Must specify clusterCIDR.")
        self.routes = routes
        self.kube_client = kube_client
        self.node_lister = node_lister
        self.cluster_name = cluster_name
        self.cluster_cidrs: list[IPNetwork] = cidrs
        self.recorder: EventRecorder | None = None
        self.backoff = UPDATE_NETWORK_CONDITION_BACKOFF

    def run(self, sync_period: float, stop_event: threading.Event) -> None:
        """Reconcile routes every ``sync_period`` seconds until ``stop_event`` is set."""
        log.info("Starting route controller")
        try:
            while not stop_event.is_set():
                started = time.monotonic()
                try:
                    self.reconcile_node_routes()
                except Exception as err:
                    log.error("Couldn't reconcile node routes: %s", err)
                remaining = sync_period - (time.monotonic() - started)
                if stop_event.wait(max(remaining, 0.0)):
                    break
        finally:
            log.info("Shutting down route controller")

    def reconcile_node_routes(self) -> None:
        """List the cloud routes and cached nodes, then reconcile them."""
        try:
            route_list = list(self.routes.list_routes(self.cluster_name))
        except Exception as err:
            raise CloudProviderError(f"error listing routes: {err}") from err
        try:
            nodes = list(self.node_lister())
        except Exception as err:
            raise RuntimeError(f"error listing nodes: {err}") from err
        self.reconcile(nodes, route_list)

    def reconcile(self, nodes: list[Node], routes: list[Route]) -> None:
        """Delete stale routes, create missing ones and update node conditions."""
        lock = threading.Lock()
        route_map: dict[str, _RouteNode] = {}

        for route in routes:
            if not route.target_node:
                continue
            route_map.setdefault(route.target_node, _RouteNode(route.target_node)).routes.append(route)

        for node in nodes:
            if not node.pod_cidrs:
                continue
            rn = route_map.setdefault(node.name, _RouteNode(node.name))
            rn.addrs = list(node.addresses)
            for pod_cidr in node.pod_cidrs:
                action = get_route_action(rn.routes, pod_cidr, node.name, node.addresses)
                rn.actions[pod_cidr] = action
                log.info("action for Node %r with CIDR %r: %r", node.name, pod_cidr, action.value)

        def should_delete_route(node_name: str, cidr: str) -> bool:
            with lock:
                rn = route_map.get(node_name)
                if rn is None:
                    return True
                action = rn.actions.get(cidr)
            if action is None or action in (RouteAction.REMOVE, RouteAction.UPDATE):
                log.info(
                    "route should be deleted, spec: exist: %s, action: %r, Node %r, CIDR %r",
                    action is not None,
                    action.value if action else "",
                    node_name,
                    cidr,
                )
                return True
            return False

        limiter = threading.BoundedSemaphore(MAX_CONCURRENT_ROUTE_OPERATIONS)

        with ThreadPoolExecutor(max_workers=MAX_CONCURRENT_ROUTE_OPERATIONS) as pool:
            deletions = [
                pool.submit(self._delete_route, route, limiter)
                for route in routes
                if self.is_responsible_for_route(route)
                and (route.blackhole or should_delete_route(route.target_node, route.destination_cidr))
            ]
            # Adding and deleting the same route must not overlap when node
            # addresses are tracked, since an update is a delete plus an add.
            if routes and routes[0].enable_node_addresses:
                wait(deletions)

            for node in nodes:
                if not node.pod_cidrs:
                    continue
                for pod_cidr in node.pod_cidrs:
                    with lock:
                        action = route_map[node.name].actions[pod_cidr]
                    if action in (RouteAction.KEEP, RouteAction.REMOVE):
                        continue
                    route = Route(
                        target_node=node.name,
                        target_node_addresses=list(node.addresses),
                        destination_cidr=pod_cidr,
                    )
                    log.info("route spec to be created: %s", route)
                    pool.submit(self._create_route, node, node.uid, route, limiter, route_map, lock)

        with ThreadPoolExecutor(max_workers=MAX_CONCURRENT_ROUTE_OPERATIONS) as pool:
            for node in nodes:
                rn = route_map.get(node.name)
                if rn is None:
                    continue
                if not rn.actions:
                    log.info(
                        "node %s has no routes assigned to it. NodeNetworkUnavailable will be set to true",
                        node.name,
                    )
                    pool.submit(self._update_condition_logged, node, False)
                    continue
                all_created = not any(
                    action in (RouteAction.ADD, RouteAction.UPDATE) for action in rn.actions.values()
                )
                pool.submit(self._update_condition_logged, node, all_created)

    def _delete_route(self, route: Route, limiter: threading.BoundedSemaphore) -> None:
        started = time.monotonic()
        with limiter:
            log.info("Deleting route %s %s", route.name, route.destination_cidr)
            try:
                self.routes.delete_route(self.cluster_name, route)
            except Exception as err:
                log.error(
                    "Could not delete route %s %s after %.3fs: %s",
                    route.name,
                    route.destination_cidr,
                    time.monotonic() - started,
                    err,
                )
            else:
                log.info(
                    "Deleted route %s %s after %.3fs",
                    route.name,
                    route.destination_cidr,
                    time.monotonic() - started,
                )

    def _create_route(
        self,
        node: Node,
        name_hint: str,
        route: Route,
        limiter: threading.BoundedSemaphore,
        route_map: dict[str, _RouteNode],
        lock: threading.Lock,
    ) -> None:
        def attempt() -> None:
            started = time.monotonic()
            with limiter:
                log.info(
                    "Creating route for node %s %s with hint %s",
                    node.name,
                    route.destination_cidr,
                    name_hint,
                )
                try:
                    self.routes.create_route(self.cluster_name, name_hint, replace(route))
                except Exception as err:
                    msg = (
                        f"Could not create route {name_hint} {route.destination_cidr} for node "
                        f"{node.name} after {time.monotonic() - started:.3f}s: {err}"
                    )
                    self._record(node, EVENT_TYPE_WARNING, "FailedToCreateRoute", msg)
                    raise
            with lock:
                route_map[node.name].actions[route.destination_cidr] = RouteAction.KEEP
            log.info(
                "Created route for node %s %s with hint %s after %.3fs",
                node.name,
                route.destination_cidr,
                name_hint,
                time.monotonic() - started,
            )

        try:
            retry_on_conflict(self.backoff, attempt)
        except Exception as err:
            log.error(
                "Could not create route %s %s for node %s: %s",
                name_hint,
                route.destination_cidr,
                node.name,
                err,
            )

    def _record(self, node: Node, event_type: str, reason: str, message: str) -> None:
        log.debug("event %s/%s for node %s: %s", event_type, reason, node.name, message)
        if self.recorder is not None:
            self.recorder(node, event_type, reason, message)

    def _update_condition_logged(self, node: Node, routes_created: bool) -> None:
        try:
            self.update_networking_condition(node, routes_created)
        except Exception as err:
            log.error("failed to update networking condition: %s", err)

    def update_networking_condition(self, node: Node, routes_created: bool) -> None:
        """Set the node's NetworkUnavailable condition unless it already says so."""
        condition = get_node_condition(node, NODE_NETWORK_UNAVAILABLE)
        if routes_created and condition is not None and condition.status == ConditionStatus.FALSE:
            log.debug("set node %s with NodeNetworkUnavailable=false was canceled because it is already set", node.name)
            return
        if not routes_created and condition is not None and condition.status == ConditionStatus.TRUE:
            log.debug("set node %s with NodeNetworkUnavailable=true was canceled because it is already set", node.name)
            return

        log.info("Patching node status %s with %s previous condition was:%s", node.name, routes_created, condition)

        def attempt() -> None:
            now = datetime.now(timezone.utc)
            if routes_created:
                new_condition = NodeCondition(
                    type=NODE_NETWORK_UNAVAILABLE,
                    status=ConditionStatus.FALSE,
                    reason="RouteCreated",
                    message="RouteController created a route",
                    last_transition_time=now,
                )
            else:
                new_condition = NodeCondition(
                    type=NODE_NETWORK_UNAVAILABLE,
                    status=ConditionStatus.TRUE,
                    reason="NoRouteCreated",
                    message="RouteController failed to create a route",
                    last_transition_time=now,
                )
            try:
                self.kube_client.set_node_condition(node.name, new_condition)
            except Exception as err:
                log.debug("Error updating node %s, retrying: %s", node.name, err)
                raise

        try:
            retry_on_conflict(self.backoff, attempt)
        except Exception as err:
            log.error("Error updating node %s: %s", node.name, err)
            raise

    def is_responsible_for_route(self, route: Route) -> bool:
        """True if the route's CIDR overlaps one of the cluster CIDRs."""
        try:
            cidr = ipaddress.ip_network(route.destination_cidr.strip(), strict=False)
        except ValueError as err:
            log.error("Ignoring route %s, unparsable CIDR: %s", route.name, err)
            return False
        first, last = cidr.network_address, cidr.broadcast_address
        return any(first in cluster or last in cluster for cluster in self.cluster_cidrs)