"""Data model shared by the cloud node controllers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

NODE_READY = "Ready"
NODE_NETWORK_UNAVAILABLE = "NetworkUnavailable"
NODE_INTERNAL_IP = "InternalIP"
TAINT_NODE_SHUTDOWN = "node.cloudprovider.kubernetes.io/shutdown"
TAINT_EFFECT_NO_SCHEDULE = "NoSchedule"
EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


class ConditionStatus(str, enum.Enum):
    """Status of a node condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class NodeAddress:
    """One address a node can be reached at."""

    type: str
    address: str


@dataclass(frozen=True)
class Taint:
    """A taint applied to a node."""

    key: str
    effect: str
    value: str = ""

    def matches(self, other: Taint) -> bool:
        """Taints match when key and effect agree."""
        return self.key == other.key and self.effect == other.effect


@dataclass
class NodeCondition:
    """A single observed condition of a node."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_heartbeat_time: datetime | None = None
    last_transition_time: datetime | None = None


@dataclass
class Node:
    """A cluster node as seen by the controllers."""

    name: str
    uid: str = ""
    creation_timestamp: datetime | None = None
    provider_id: str = ""
    pod_cidrs: list[str] = field(default_factory=list)
    taints: list[Taint] = field(default_factory=list)
    conditions: list[NodeCondition] = field(default_factory=list)
    addresses: list[NodeAddress] = field(default_factory=list)

    def has_taint(self, taint: Taint) -> bool:
        """Return True if a taint with the same key and effect is present."""
        return any(existing.matches(taint) for existing in self.taints)


@dataclass
class Route:
    """A cloud route sending a pod CIDR to a node."""

    name: str = ""
    target_node: str = ""
    target_node_addresses: list[NodeAddress] = field(default_factory=list)
    destination_cidr: str = ""
    blackhole: bool = False
    enable_node_addresses: bool = False


@dataclass
class InstanceMetadata:
    """Metadata a cloud provider reports about an instance."""

    provider_id: str = ""
    instance_type: str = ""
    node_addresses: list[NodeAddress] = field(default_factory=list)
    zone: str = ""
    region: str = ""


class CloudProviderError(Exception):
    """A cloud provider call failed."""


class InstanceNotFoundError(CloudProviderError):
    """The cloud provider has no such instance."""

    def __init__(self, message: str = "instance not found") -> None:
        super().__init__(message)


class ProviderNotImplementedError(CloudProviderError):
    """The cloud provider does not implement the requested call."""

    def __init__(self, message: str = "unimplemented") -> None:
        super().__init__(message)


class ConflictError(Exception):
    """An update was rejected because the object changed concurrently."""


def get_node_condition(node: Node, condition_type: str) -> NodeCondition | None:
    """Return the node's condition of the given type, or None."""
    return next((c for c in node.conditions if c.type == condition_type), None)