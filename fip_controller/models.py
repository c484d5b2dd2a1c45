"""Data model of the Fip, Port and Vpc resources.

Resources travel through the Kubernetes client as plain dicts. The classes
here convert them to typed values and back. Entries that must be hashable
(they end up inside queued ``FipPatch`` items) are frozen and hold tuples.
"""

import copy
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import StatusSerializationError

EIP = "eip"
SNAT = "snat"

# FipPatch operations
OP_ADD = "add"
OP_DEL = "del"
OP_REPLACE = "replace"

# FipPatch field paths
PATH_ALLOCATED_IPS = "/status/allocatedIPs"
PATH_ALLOCATED_IP = "/status/allocatedIPs/allocatedIP"
PATH_NEUTRON_ROUTERS = "/status/neutronRouters"
PATH_FORBIDDEN_IPS = "/status/forbiddenIPs"

# Port condition types
CONDITION_CREATED = "Created"
CONDITION_ERROR = "Error"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def resource_key(namespace: str, name: str) -> str:
    """Return the ``namespace/name`` key of a namespaced object."""
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_resource_key(key: str) -> Tuple[str, str]:
    """Split a ``namespace/name`` key.

    Raises:
        ValueError: key is not of the form ``namespace/name``
    """
    parts = key.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"invalid resource key: {key!r}")
    return parts[0], parts[1]


def object_key(obj: Dict[str, Any]) -> str:
    """Return the cache key of a raw Kubernetes object."""
    metadata = obj.get("metadata") or {}
    return resource_key(metadata.get("namespace") or "", metadata.get("name", ""))


@dataclass(frozen=True)
class AllocationPool:
    """A start..end range of an external subnet."""

    cidr: str
    start: str
    end: str

    def sort_key(self) -> Tuple[str, str]:
        return self.cidr, self.start

    def to_dict(self) -> Dict[str, Any]:
        return {"cidr": self.cidr, "start": self.start, "end": self.end}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllocationPool":
        return cls(cidr=data.get("cidr", ""), start=data.get("start", ""), end=data.get("end", ""))


@dataclass(frozen=True)
class NeutronRouter:
    """Router attached to an external network, one per Vpc."""

    neutron_router_id: str
    neutron_router_name: str = ""
    availability_zone: str = ""
    external_gateway_ip: str = ""
    subnets: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "neutronRouterID": self.neutron_router_id,
            "neutronRouterName": self.neutron_router_name,
            "availabilityZone": self.availability_zone,
            "externalGatewayIP": self.external_gateway_ip,
            "subnets": list(self.subnets),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NeutronRouter":
        return cls(
            neutron_router_id=data.get("neutronRouterID", ""),
            neutron_router_name=data.get("neutronRouterName", ""),
            availability_zone=data.get("availabilityZone", ""),
            external_gateway_ip=data.get("externalGatewayIP", ""),
            subnets=tuple(data.get("subnets") or ()),
        )


@dataclass(frozen=True)
class AllocatedIP:
    """A floating IP handed out to one (eip) or many (snat) resources."""

    ip: str
    type: str
    resources: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"ip": self.ip, "type": self.type, "resources": list(self.resources)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllocatedIP":
        return cls(
            ip=data.get("ip", ""),
            type=data.get("type", ""),
            resources=tuple(data.get("resources") or ()),
        )


@dataclass
class FipSpec:
    external_network_id: str = ""
    external_network_name: str = ""
    allocation_pools: List[AllocationPool] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "externalNetworkID": self.external_network_id,
            "externalNetworkName": self.external_network_name,
            "allocationPools": [p.to_dict() for p in self.allocation_pools],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FipSpec":
        return cls(
            external_network_id=data.get("externalNetworkID", ""),
            external_network_name=data.get("externalNetworkName", ""),
            allocation_pools=[AllocationPool.from_dict(p) for p in data.get("allocationPools") or []],
        )


@dataclass
class FipStatus:
    neutron_routers: List[NeutronRouter] = field(default_factory=list)
    allocated_ips: List[AllocatedIP] = field(default_factory=list)
    forbidden_ips: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "neutronRouters": [r.to_dict() for r in self.neutron_routers],
            "allocatedIPs": [a.to_dict() for a in self.allocated_ips],
            "forbiddenIPs": list(self.forbidden_ips),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FipStatus":
        return cls(
            neutron_routers=[NeutronRouter.from_dict(r) for r in data.get("neutronRouters") or []],
            allocated_ips=[AllocatedIP.from_dict(a) for a in data.get("allocatedIPs") or []],
            forbidden_ips=list(data.get("forbiddenIPs") or []),
        )

    def copy(self) -> "FipStatus":
        # Entries are immutable, copying the lists is enough.
        return FipStatus(
            neutron_routers=list(self.neutron_routers),
            allocated_ips=list(self.allocated_ips),
            forbidden_ips=list(self.forbidden_ips),
        )

    def to_patch_body(self, name: str) -> Dict[str, Any]:
        """Return the merge-patch body for the status subresource.

        Raises:
            StatusSerializationError: status holds a value JSON cannot encode
        """
        body = {"status": self.to_dict()}
        try:
            json.dumps(body)
        except (TypeError, ValueError) as e:
            raise StatusSerializationError(name=name, details=str(e))
        return body


@dataclass
class Fip:
    """Floating IP record of one external network."""

    name: str
    spec: FipSpec = field(default_factory=FipSpec)
    status: FipStatus = field(default_factory=FipStatus)
    annotations: Dict[str, str] = field(default_factory=dict)
    resource_version: Optional[str] = None

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Fip":
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            spec=FipSpec.from_dict(obj.get("spec") or {}),
            status=FipStatus.from_dict(obj.get("status") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            resource_version=metadata.get("resourceVersion"),
        )

    def to_dict(self, api_version: str) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name}
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        return {
            "apiVersion": api_version,
            "kind": "Fip",
            "metadata": metadata,
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    def find_allocated_ip(self, ip: str) -> Optional[AllocatedIP]:
        for allocated in self.status.allocated_ips:
            if allocated.ip == ip:
                return allocated
        return None


@dataclass(frozen=True)
class FipPatch:
    """A queued, field-scoped mutation of a Fip status.

    Only the payload matching ``path`` is meaningful. Identical patches
    compare and hash equal so the work queue can collapse them.
    """

    op: str
    name: str
    path: str
    allocated_ip: Optional[AllocatedIP] = None
    neutron_routers: Tuple[NeutronRouter, ...] = ()
    forbidden_ips: Tuple[str, ...] = ()

    def payload(self) -> Any:
        if self.path == PATH_NEUTRON_ROUTERS:
            return self.neutron_routers
        if self.path == PATH_FORBIDDEN_IPS:
            return self.forbidden_ips
        return self.allocated_ip


def with_resource(allocated: AllocatedIP, resource: str) -> AllocatedIP:
    """Return a copy of ``allocated`` with ``resource`` appended."""
    return replace(allocated, resources=allocated.resources + (resource,))


def without_resource(allocated: AllocatedIP, resource: str) -> AllocatedIP:
    """Return a copy of ``allocated`` with the first ``resource`` removed."""
    resources = list(allocated.resources)
    resources.remove(resource)
    return replace(allocated, resources=tuple(resources))


@dataclass
class Vpc:
    """Router-bearing resource; the source of a Fip's NeutronRouters."""

    name: str
    external_network_id: str = ""
    external_network_name: str = ""
    neutron_router: str = ""
    availability_zone: str = ""
    external_gateway_ip: str = ""
    subnets: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Vpc":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            external_network_id=spec.get("externalNetworkID", ""),
            external_network_name=spec.get("externalNetworkName", ""),
            neutron_router=spec.get("neutronRouter", ""),
            availability_zone=spec.get("availabilityZone", ""),
            external_gateway_ip=spec.get("externalGatewayIP", ""),
            subnets=tuple(status.get("subnets") or ()),
        )

    def to_neutron_router(self) -> NeutronRouter:
        return NeutronRouter(
            neutron_router_id=self.neutron_router,
            neutron_router_name=self.name,
            availability_zone=self.availability_zone,
            external_gateway_ip=self.external_gateway_ip,
            subnets=self.subnets,
        )


@dataclass
class PortCondition:
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_update_time: str = ""
    last_transition_time: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastUpdateTime": self.last_update_time,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortCondition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", CONDITION_UNKNOWN),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_update_time=data.get("lastUpdateTime", ""),
            last_transition_time=data.get("lastTransitionTime", ""),
        )


@dataclass
class PortSpec:
    name: str = ""
    project_id: str = ""
    network_id: str = ""
    subnet_id: str = ""
    security_group_ids: List[str] = field(default_factory=list)
    fix_ip: str = ""
    fix_mac: str = ""
    delete_by_pod: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortSpec":
        return cls(
            name=data.get("name", ""),
            project_id=data.get("projectId", ""),
            network_id=data.get("networkId", ""),
            subnet_id=data.get("subnetId", ""),
            security_group_ids=list(data.get("securityGroupId") or []),
            fix_ip=data.get("fixIp", ""),
            fix_mac=data.get("fixMac", ""),
            delete_by_pod=bool(data.get("deleteByPod", False)),
        )


@dataclass
class PortStatus:
    conditions: List[PortCondition] = field(default_factory=list)
    id: str = ""
    ip: str = ""
    mac: str = ""
    security_group_ids: List[str] = field(default_factory=list)
    cidr: str = ""
    gateway: str = ""
    mtu: int = 0
    host_id: str = ""
    bind_pod: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortStatus":
        return cls(
            conditions=[PortCondition.from_dict(c) for c in data.get("conditions") or []],
            id=data.get("id", ""),
            ip=data.get("ip", ""),
            mac=data.get("mac", ""),
            security_group_ids=list(data.get("securityGroupId") or []),
            cidr=data.get("cidr", ""),
            gateway=data.get("gateway", ""),
            mtu=int(data.get("mtu") or 0),
            host_id=data.get("hostId", ""),
            bind_pod=data.get("bindPod", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conditions": [c.to_dict() for c in self.conditions],
            "id": self.id,
            "ip": self.ip,
            "mac": self.mac,
            "securityGroupId": list(self.security_group_ids),
            "cidr": self.cidr,
            "gateway": self.gateway,
            "mtu": self.mtu,
            "hostId": self.host_id,
            "bindPod": self.bind_pod,
        }

    def to_patch_body(self, name: str) -> Dict[str, Any]:
        body = {"status": self.to_dict()}
        try:
            json.dumps(body)
        except (TypeError, ValueError) as e:
            raise StatusSerializationError(name=name, details=str(e))
        return body

    def get_condition(self, ctype: str) -> Optional[PortCondition]:
        for condition in self.conditions:
            if condition.type == ctype:
                return condition
        return None

    def is_condition_true(self, ctype: str) -> bool:
        condition = self.get_condition(ctype)
        return condition is not None and condition.status == CONDITION_TRUE

    def set_condition_value(self, ctype: str, status: str, reason: str = "", message: str = "") -> None:
        """Update the condition of ``ctype`` in place, or append it.

        The transition time only moves when ``status`` changes.
        """
        now = _utc_now()
        condition = self.get_condition(ctype)
        if condition is None:
            self.conditions.append(
                PortCondition(
                    type=ctype,
                    status=status,
                    reason=reason,
                    message=message,
                    last_update_time=now,
                    last_transition_time=now,
                )
            )
            return
        if condition.status == status and condition.reason == reason and condition.message == message:
            return
        condition.last_update_time = now
        if condition.status != status:
            condition.last_transition_time = now
        condition.status = status
        condition.reason = reason
        condition.message = message

    def set_condition(self, ctype: str, reason: str = "", message: str = "") -> None:
        self.set_condition_value(ctype, CONDITION_TRUE, reason, message)

    def clear_condition(self, ctype: str, reason: str = "", message: str = "") -> None:
        self.set_condition_value(ctype, CONDITION_FALSE, reason, message)

    def set_error(self, reason: str, message: str) -> None:
        self.set_condition(CONDITION_ERROR, reason, message)


@dataclass
class Port:
    namespace: str
    name: str
    spec: PortSpec = field(default_factory=PortSpec)
    status: PortStatus = field(default_factory=PortStatus)
    resource_version: Optional[str] = None
    deletion_timestamp: Optional[str] = None

    @property
    def key(self) -> str:
        return resource_key(self.namespace, self.name)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Port":
        metadata = obj.get("metadata") or {}
        return cls(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            spec=PortSpec.from_dict(obj.get("spec") or {}),
            status=PortStatus.from_dict(obj.get("status") or {}),
            resource_version=metadata.get("resourceVersion"),
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )

    def deep_copy(self) -> "Port":
        return copy.deepcopy(self)


def pod_annotations(pod: Dict[str, Any]) -> Dict[str, str]:
    return (pod.get("metadata") or {}).get("annotations") or {}
