# cloudnodectl

Two controllers that keep a cluster's node records and a cloud's routing
table in step with what the cloud provider actually runs. Both work against
objects you supply, so they fit any cluster API and any cloud.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `cloudnodectl.types`

The data model shared by both controllers:

- `Node` – name, uid, provider_id, pod_cidrs, taints, conditions, addresses;
  `Node.has_taint(taint)` is true when a taint with the same key and effect
  is present.
- `NodeCondition`, `NodeAddress`, `Taint`, `Route`, `InstanceMetadata`.
- `ConditionStatus` – `TRUE`, `FALSE`, `UNKNOWN`.
- Errors: `CloudProviderError`, and its subclasses `InstanceNotFoundError`
  and `ProviderNotImplementedError`; `ConflictError` for updates rejected
  because the object changed concurrently.
- `get_node_condition(node, condition_type)` returns the node's condition of
  that type, or `None`.

### `cloudnodectl.nodelifecycle`

`CloudNodeLifecycleController(node_lister, kube_client, cloud, node_monitor_period)`

Each call of `monitor_nodes()` goes through the nodes returned by
`node_lister()`:

- A node whose Ready condition is `True` has the shutdown taint
  (`SHUTDOWN_TAINT`, key `node.cloudprovider.kubernetes.io/shutdown`,
  effect `NoSchedule`) removed if it carries it.
- Any other node (Ready missing, `False` or `Unknown`) is checked with the
  cloud. If its instance no longer exists the node is deleted; if it exists
  and is shut down the shutdown taint is added.
- Errors from the cloud or the client are logged and the node is skipped.

The objects it uses:

- `kube_client`: `delete_node(name)`, `add_or_update_taint(name, taint)`,
  `remove_taint(name, taint)`.
- `cloud`: `instances()` and `instances_v2()`, each returning an
  implementation or `None`; `provider_name()` when provider IDs are built
  from instance IDs.
- an `instances_v2()` object: `instance_exists(node)`,
  `instance_shutdown(node)`, `instance_metadata(node)` returning
  `InstanceMetadata`. When present it is preferred.
- an `instances()` object: `instance_id(node_name)`,
  `instance_exists_by_provider_id(provider_id)`,
  `instance_shutdown_by_provider_id(provider_id)`.

`get_provider_id(node)` returns the node's own provider ID, or asks the cloud
for it. `get_instance_provider_id(cloud, node_name)` builds
`"<provider_name>://<instance_id>"`. An instance the cloud reports as not
found counts as not existing and not shut down.

The constructor raises `ValueError` when the client or cloud is missing, or
when the cloud supports neither instance interface.

### `cloudnodectl.route`

`RouteController(routes, kube_client, node_lister, cluster_name, cluster_cidrs)`

`cluster_cidrs` may be strings or `ipaddress` networks; an empty list raises
`ValueError`.

`reconcile(nodes, routes)`:

- deletes every route whose CIDR overlaps a cluster CIDR and that is a
  blackhole, or that no longer matches a pod CIDR of its target node, or
  whose node addresses changed (when the route tracks them);
- creates the routes missing for each node's pod CIDRs, retrying on
  `ConflictError`; at most 200 route operations run at once;
- sets each node's `NetworkUnavailable` condition to `False` when all its
  routes exist and to `True` otherwise, skipping nodes already in that state.

`reconcile_node_routes()` lists the cloud routes and the nodes, then calls
`reconcile`. `update_networking_condition(node, routes_created)` and
`is_responsible_for_route(route)` are available on their own.
`get_route_action`, `equal_node_addrs`, `RouteAction`, `Backoff` and
`retry_on_conflict(backoff, fn)` are the helpers behind them.

The objects it uses:

- `routes`: `list_routes(cluster_name)`,
  `create_route(cluster_name, name_hint, route)`,
  `delete_route(cluster_name, route)`.
- `kube_client`: `set_node_condition(node_name, condition)`, which may raise
  `ConflictError`.

## Running continuously

Both controllers have a blocking `run` that repeats its work until a
`threading.Event` is set:

```python
import threading

from cloudnodectl.nodelifecycle import CloudNodeLifecycleController
from cloudnodectl.route import RouteController

lifecycle = CloudNodeLifecycleController(node_lister, kube_client, cloud, 5.0)
routes = RouteController(cloud_routes, kube_client, node_lister, "my-cluster", ["10.120.0.0/16"])

stop = threading.Event()
threading.Thread(target=lifecycle.run, args=(stop,)).start()
threading.Thread(target=routes.run, args=(300.0, stop)).start()
# ... later
stop.set()
```

Events (node deleted, deletion failed, route creation failed) are logged and,
if a controller's `recorder` attribute is set, passed to it as
`recorder(node, event_type, reason, message)`.

## What it does not do

The package has no cluster API client, node cache or cloud provider of its
own, and no command-line program: the node lister, client and cloud objects
must be supplied by the caller. It publishes no metrics and sends events
nowhere but the log and the optional `recorder`.