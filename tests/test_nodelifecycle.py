import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest

from cloudnodectl.nodelifecycle import (
    SHUTDOWN_TAINT,
    CloudNodeLifecycleController,
    get_instance_provider_id,
)
from cloudnodectl.types import (
    NODE_READY,
    CloudProviderError,
    ConditionStatus,
    InstanceMetadata,
    InstanceNotFoundError,
    Node,
    NodeCondition,
    ProviderNotImplementedError,
)

ERR = CloudProviderError("err!")


@dataclass
class FakeCloud:
    enable_instances_v2: bool = False
    supports_instances: bool = True
    exists_by_provider_id: bool = False
    err_by_provider_id: Exception | None = None
    node_shutdown: bool = False
    err_shutdown_by_provider_id: Exception | None = None
    ext_id: dict = field(default_factory=dict)
    ext_id_err: dict = field(default_factory=dict)
    provider_ids: dict = field(default_factory=dict)

    def provider_name(self):
        return "fake"

    def instances(self):
        return self if self.supports_instances else None

    def instances_v2(self):
        return self if self.enable_instances_v2 else None

    def instance_id(self, node_name):
        if node_name in self.ext_id_err:
            raise self.ext_id_err[node_name]
        return self.ext_id.get(node_name, "")

    def instance_exists_by_provider_id(self, provider_id):
        if self.err_by_provider_id is not None:
            raise self.err_by_provider_id
        return self.exists_by_provider_id

    def instance_shutdown_by_provider_id(self, provider_id):
        if self.err_shutdown_by_provider_id is not None:
            raise self.err_shutdown_by_provider_id
        return self.node_shutdown

    def instance_exists(self, node):
        return self.instance_exists_by_provider_id(node.provider_id)

    def instance_shutdown(self, node):
        return self.instance_shutdown_by_provider_id(node.provider_id)

    def instance_metadata(self, node):
        return InstanceMetadata(provider_id=self.provider_ids.get(node.name, ""))


class FakeKubeClient:
    def __init__(self, *nodes, fail_delete=False):
        self.nodes = {n.name: copy.deepcopy(n) for n in nodes}
        self.fail_delete = fail_delete

    def list_nodes(self):
        return [copy.deepcopy(n) for n in self.nodes.values()]

    def delete_node(self, name):
        if self.fail_delete:
            raise CloudProviderError("delete refused")
        del self.nodes[name]

    def add_or_update_taint(self, name, taint):
        node = self.nodes[name]
        node.taints = [t for t in node.taints if not t.matches(taint)] + [taint]

    def remove_taint(self, name, taint):
        node = self.nodes[name]
        node.taints = [t for t in node.taints if not t.matches(taint)]


def make_node(status, provider_id="", taints=None):
    stamp = datetime(2015, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    return Node(
        name="node0",
        creation_timestamp=datetime(2012, 1, 1, tzinfo=timezone.utc),
        provider_id=provider_id,
        taints=list(taints or []),
        conditions=[
            NodeCondition(
                type=NODE_READY, status=status, last_heartbeat_time=stamp, last_transition_time=stamp
            )
        ],
    )


def run_monitor(existing, cloud, client=None):
    client = client or FakeKubeClient(existing)
    controller = CloudNodeLifecycleController(client.list_nodes, client, cloud, 1.0)
    events = []
    controller.recorder = lambda node, etype, reason, msg: events.append((node.name, etype, reason))
    controller.monitor_nodes()
    return client, events


F, T, U = ConditionStatus.FALSE, ConditionStatus.TRUE, ConditionStatus.UNKNOWN

DELETED_CASES = [
    ("not ready and does not exist", F, "", {}, True),
    ("not ready and provider returns err", F, "node0", {"err_by_provider_id": ERR}, False),
    ("not ready but still exists", F, "node0", {"exists_by_provider_id": True}, False),
    ("unknown, doesn't exist", U, "", {}, True),
    ("unknown, exists", U, "", {"exists_by_provider_id": True, "ext_id": {"node0": "foo://12345"}}, False),
    ("ready, provider says deleted", T, "node0", {}, False),
]


@pytest.mark.parametrize("v2", [False, True])
@pytest.mark.parametrize("name,status,provider_id,cloud_kwargs,deleted", DELETED_CASES)
def test_nodes_deleted(name, status, provider_id, cloud_kwargs, deleted, v2):
    existing = make_node(status, provider_id)
    client, _ = run_monitor(existing, FakeCloud(enable_instances_v2=v2, **cloud_kwargs))
    if deleted:
        assert "node0" not in client.nodes
    else:
        assert client.nodes["node0"] == make_node(status, provider_id)


SHUTDOWN_CASES = [
    ("not ready, shutdown, exists", F, "node0",
     {"node_shutdown": True, "exists_by_provider_id": True}, False, True),
    ("empty provider id, shutdown, exists", F, "",
     {"node_shutdown": True, "exists_by_provider_id": True, "ext_id": {"node0": "foo://12345"}}, False, True),
    ("non-existing provider id deleted", F, "", {"ext_id": {"node0": ""}}, True, False),
    ("error getting provider id", F, "", {"ext_id_err": {"node0": ERR}}, False, False),
    ("instance not found deleted", F, "", {"ext_id_err": {"node0": InstanceNotFoundError()}}, True, False),
    ("error checking shutdown", F, "", {"err_shutdown_by_provider_id": ERR}, True, False),
    ("not ready and not shutdown", F, "", {}, True, False),
    ("ready but provider says shutdown", T, "", {"node_shutdown": True}, False, False),
    ("shutdown but does not exist", U, "", {"node_shutdown": True}, True, False),
]


@pytest.mark.parametrize("name,status,provider_id,cloud_kwargs,deleted,tainted", SHUTDOWN_CASES)
def test_nodes_shutdown(name, status, provider_id, cloud_kwargs, deleted, tainted):
    existing = make_node(status, provider_id)
    client, _ = run_monitor(existing, FakeCloud(**cloud_kwargs))
    if deleted:
        assert "node0" not in client.nodes
    else:
        expected = make_node(status, provider_id, [SHUTDOWN_TAINT] if tainted else [])
        assert client.nodes["node0"] == expected


PROVIDER_ID_CASES = [
    ("initialized with provider id", {}, "fake://12345", "fake://12345"),
    ("initialized with provider id v2", {"enable_instances_v2": True}, "fake://12345", "fake://12345"),
    ("instances", {"ext_id": {"node0": "12345"}}, "", "fake://12345"),
    ("instances v2", {"enable_instances_v2": True, "provider_ids": {"node0": "fake://12345"}}, "", "fake://12345"),
    ("instances v2 without provider id", {"enable_instances_v2": True}, "", ""),
]


@pytest.mark.parametrize("name,cloud_kwargs,provider_id,expected", PROVIDER_ID_CASES)
def test_get_provider_id(name, cloud_kwargs, provider_id, expected):
    node = Node(name="node0", provider_id=provider_id)
    controller = CloudNodeLifecycleController(lambda: [], FakeKubeClient(), FakeCloud(**cloud_kwargs), 1.0)
    assert controller.get_provider_id(node) == expected


def test_get_provider_id_instance_missing():
    cloud = FakeCloud(ext_id_err={"node0": InstanceNotFoundError()})
    controller = CloudNodeLifecycleController(lambda: [], FakeKubeClient(), cloud, 1.0)
    with pytest.raises(InstanceNotFoundError):
        controller.get_provider_id(Node(name="node0"))


def test_get_provider_id_unknown_error():
    cloud = FakeCloud(ext_id_err={"node0": RuntimeError("unknown error")})
    controller = CloudNodeLifecycleController(lambda: [], FakeKubeClient(), cloud, 1.0)
    with pytest.raises(CloudProviderError) as info:
        controller.get_provider_id(Node(name="node0"))
    assert str(info.value) == "failed to get instance ID from cloud provider: unknown error"


def test_get_instance_provider_id_without_instances():
    with pytest.raises(CloudProviderError, match="failed to get instances from cloud provider"):
        get_instance_provider_id(FakeCloud(supports_instances=False), "node0")


def test_shutdown_not_implemented_counts_as_running():
    cloud = FakeCloud(err_shutdown_by_provider_id=ProviderNotImplementedError())
    controller = CloudNodeLifecycleController(lambda: [], FakeKubeClient(), cloud, 1.0)
    assert controller.shutdown_in_cloud_provider(make_node(F, "node0")) is False


def test_ready_node_loses_shutdown_taint():
    existing = make_node(T, "node0", [SHUTDOWN_TAINT])
    client, _ = run_monitor(existing, FakeCloud(exists_by_provider_id=True))
    assert client.nodes["node0"].taints == []


def test_delete_records_events():
    existing = make_node(F, "node0")
    _, events = run_monitor(existing, FakeCloud())
    assert events == [("node0", "Normal", "DeletingNode")]


def test_failed_delete_records_warning_and_keeps_node():
    existing = make_node(F, "node0")
    client = FakeKubeClient(existing, fail_delete=True)
    client, events = run_monitor(existing, FakeCloud(), client)
    assert "node0" in client.nodes
    assert events == [("node0", "Normal", "DeletingNode"), ("node0", "Warning", "DeletingNodeFailed")]


def test_lister_error_leaves_nodes_alone():
    client = FakeKubeClient(make_node(F, "node0"))

    def broken_lister():
        raise CloudProviderError("cache unavailable")

    controller = CloudNodeLifecycleController(broken_lister, client, FakeCloud(), 1.0)
    controller.monitor_nodes()
    assert list(client.nodes) == ["node0"]


@pytest.mark.parametrize(
    "client,cloud,message",
    [
        (None, FakeCloud(), "kubernetes client"),
        (FakeKubeClient(), None, "no cloud provider provided"),
        (FakeKubeClient(), FakeCloud(supports_instances=False), "does not support instances"),
    ],
)
def test_constructor_rejects_bad_arguments(client, cloud, message):
    with pytest.raises(ValueError, match=message):
        CloudNodeLifecycleController(lambda: [], client, cloud, 1.0)


def test_run_monitors_once_then_stops_when_event_set():
    stop = threading.Event()
    client = FakeKubeClient(make_node(F, "node0"))
    calls = []

    def lister():
        calls.append(1)
        stop.set()
        return client.list_nodes()

    controller = CloudNodeLifecycleController(lister, client, FakeCloud(), 60.0)
    controller.run(stop)
    assert "node0" not in client.nodes
    assert len(calls) == 1


def test_run_does_nothing_when_already_stopped():
    stop = threading.Event()
    stop.set()
    calls = []
    controller = CloudNodeLifecycleController(lambda: calls.append(1) or [], FakeKubeClient(), FakeCloud(), 60.0)
    controller.run(stop)
    assert calls == []