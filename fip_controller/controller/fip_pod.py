"""Pod-triggered allocation and release of eip and snat addresses.

A pod asks for addresses through annotations: an exclusive eip, a shared
snat IP, and the logical router (Vpc) whose external network provides them.
Provider resources are created or deleted here; the Fip status change is
queued to the patch applier.
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict

from oslo_log import log as logging

from ..exceptions import (
    EipAlreadyAllocated,
    FipAnnotationConflict,
    LogicalRouterAnnotationMissing,
    ResourceNotFound,
    VpcNotFound,
)
from ..models import (
    EIP,
    OP_ADD,
    OP_DEL,
    PATH_ALLOCATED_IP,
    PATH_ALLOCATED_IPS,
    SNAT,
    AllocatedIP,
    Fip,
    FipPatch,
    Vpc,
    object_key,
    pod_annotations,
    split_resource_key,
)
from .keymutex import KeyMutex
from .workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

LOG = logging.getLogger(__name__)


def _parse_ip(ip: str):
    try:
        return ipaddress.ip_address(ip)
    except ValueError:
        return None


def is_available(ip: str, fip: Fip) -> bool:
    """Whether ``ip`` can be handed out from ``fip``.

    True iff the address lies inside one of the allocation pools (both ends
    inclusive) and is neither allocated nor forbidden.
    """
    addr = _parse_ip(ip) if ip else None
    if addr is None:
        return False

    in_pool = False
    for pool in fip.spec.allocation_pools:
        start, end = _parse_ip(pool.start), _parse_ip(pool.end)
        if start is None or end is None or start.version != addr.version:
            continue
        if start <= addr <= end:
            in_pool = True
            break
    if not in_pool:
        return False

    if any(allocated.ip == ip for allocated in fip.status.allocated_ips):
        return False
    return ip not in fip.status.forbidden_ips


def is_pod_eip_allocated(ip: str, resource: str, fip: Fip) -> bool:
    """Whether ``ip`` is the eip of exactly ``resource``."""
    if not ip:
        return False
    return AllocatedIP(ip=ip, type=EIP, resources=(resource,)) in fip.status.allocated_ips


def is_other_pod_eip_allocated(ip: str, resource: str, fip: Fip) -> bool:
    """Whether ``ip`` is allocated to anything other than ``resource`` alone."""
    if not ip:
        return False
    return any(a.ip == ip and a.resources != (resource,) for a in fip.status.allocated_ips)


def is_snat_allocated(ip: str, resource: str, fip: Fip) -> bool:
    if not ip:
        return False
    return any(a.ip == ip and resource in a.resources for a in fip.status.allocated_ips)


def is_snat_unique_allocated(ip: str, resource: str, fip: Fip) -> bool:
    if not ip:
        return False
    return AllocatedIP(ip=ip, type=SNAT, resources=(resource,)) in fip.status.allocated_ips


def is_snat_shareable(ip: str, fip: Fip) -> bool:
    """Whether ``ip`` is free or already a snat, i.e. not someone's eip."""
    entry = fip.find_allocated_ip(ip)
    return entry is None or entry.type == SNAT


def gen_eip_patch(op: str, eip: str, resource: str, fip: Fip) -> FipPatch:
    return FipPatch(
        op=op,
        name=fip.name,
        path=PATH_ALLOCATED_IPS,
        allocated_ip=AllocatedIP(ip=eip, type=EIP, resources=(resource,)),
    )


def gen_snat_patch(op: str, snat: str, resource: str, fip: Fip) -> FipPatch:
    """Build the snat patch for ``resource``.

    Joining an existing entry, or leaving one that other resources still
    share, touches only the member list. Creating the entry, or leaving it
    as its last member, adds or removes the entry as a whole.
    """
    allocated = AllocatedIP(ip=snat, type=SNAT, resources=(resource,))
    path = PATH_ALLOCATED_IPS
    entry = fip.find_allocated_ip(snat)
    if entry is not None:
        if op == OP_ADD:
            path = PATH_ALLOCATED_IP
        elif op == OP_DEL and len(entry.resources) > 1:
            path = PATH_ALLOCATED_IP
    return FipPatch(op=op, name=fip.name, path=path, allocated_ip=allocated)


@dataclass(frozen=True)
class PodEvent:
    """A pod add or delete waiting for allocation handling.

    Events compare by operation and pod key only.
    """

    op: str
    key: str
    pod: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


class PodAllocationHandler:
    """Turns pod annotations into provider floating IPs and Fip patches."""

    def __init__(self, store, neutron, vpc_informer, applier, config):
        """Initialize the handler.

        Args:
            store: ResourceStore, source of authoritative Fip reads
            neutron: NeutronClient
            vpc_informer: Vpc informer
            applier: FipPatchApplier receiving status patches
            config: ControllerConfig
        """
        self.store = store
        self.neutron = neutron
        self.vpc_informer = vpc_informer
        self.applier = applier
        self.config = config
        self.mutex = KeyMutex("pod")
        self.queue = RateLimitingQueue(
            "pod-fip",
            ItemExponentialFailureRateLimiter(config.queue_base_delay, config.queue_max_delay),
        )

    def _requests_fip(self, pod: Dict[str, Any]) -> bool:
        annotations = pod_annotations(pod)
        return bool(annotations.get(self.config.eip_annotation) or annotations.get(self.config.snat_annotation))

    def enqueue_add(self, pod: Dict[str, Any]) -> None:
        if self._requests_fip(pod):
            self.queue.add(PodEvent(op=OP_ADD, key=object_key(pod), pod=pod))

    def enqueue_delete(self, pod: Dict[str, Any]) -> None:
        if self._requests_fip(pod):
            self.queue.add(PodEvent(op=OP_DEL, key=object_key(pod), pod=pod))

    def handle_pod_event(self, event: PodEvent) -> None:
        with self.mutex.lock(event.key):
            if event.op == OP_ADD and not self._pod_exists(event):
                LOG.info("pod %s no longer exists, skip allocation", event.key)
                return
            self.handle_fip(event.op, event.pod)

    def _pod_exists(self, event: PodEvent) -> bool:
        """Whether the pod of ``event`` is still the one on the API server."""
        namespace, name = split_resource_key(event.key)
        current = self.store.get_pod(namespace, name)
        if current is None:
            return False
        uid = (event.pod.get("metadata") or {}).get("uid")
        return not uid or (current.get("metadata") or {}).get("uid") == uid

    def handle_fip(self, op: str, pod: Dict[str, Any]) -> None:
        """Allocate (``add``) or release (``del``) the addresses of ``pod``.

        Raises:
            ValueError: unknown ``op``
            FipAnnotationConflict: eip and snat are the same address
            LogicalRouterAnnotationMissing: pod names no logical router
            EipAlreadyAllocated: eip belongs to another resource, or snat is an eip
            VpcNotFound: logical router is not a known Vpc
            FipNotFound: Fip of the external network does not exist yet
            NeutronError: provider failure; no patch was queued
        """
        if op not in (OP_ADD, OP_DEL):
            raise ValueError(f"{op} is an unknown operator")

        annotations = pod_annotations(pod)
        eip = annotations.get(self.config.eip_annotation, "")
        snat = annotations.get(self.config.snat_annotation, "")
        if not eip and not snat:
            LOG.debug("eip and snat annotation not found, no handle")
            return
        if eip == snat:
            raise FipAnnotationConflict(ip=eip)

        resource = object_key(pod)
        logical_router = annotations.get(self.config.logical_router_annotation, "")
        if not logical_router:
            raise LogicalRouterAnnotationMissing(pod=resource)

        LOG.info(
            "handle fip, op: %s, pod: %s, eip: %s, snat: %s, logicalRouter: %s",
            op,
            resource,
            eip,
            snat,
            logical_router,
        )

        vpc = self._get_vpc(logical_router)
        network = self.neutron.get_network(vpc.external_network_id)
        fip = self.store.get_fip(network["id"])

        if op == OP_ADD:
            self._allocate(network["id"], eip, snat, resource, fip)
        else:
            self._release(network["id"], eip, snat, resource, fip)

    def _get_vpc(self, name: str) -> Vpc:
        obj = self.vpc_informer.get(name)
        if obj is None:
            raise VpcNotFound(name=name)
        vpc = Vpc.from_dict(obj)
        if not vpc.external_network_id:
            raise ResourceNotFound(resource_id=f"external network of vpc {name}")
        return vpc

    def _allocate(self, network_id: str, eip: str, snat: str, resource: str, fip: Fip) -> None:
        if is_other_pod_eip_allocated(eip, resource, fip):
            raise EipAlreadyAllocated(ip=eip)
        if snat and not is_snat_shareable(snat, fip):
            raise EipAlreadyAllocated(ip=snat)

        if is_available(eip, fip):
            self.neutron.create_port_with_fip(network_id, eip)
            self.applier.enqueue(gen_eip_patch(OP_ADD, eip, resource, fip))

        if snat:
            # The first user of a snat address creates it, later users share it
            if is_available(snat, fip):
                self.neutron.create_port_with_fip(network_id, snat)
            self.applier.enqueue(gen_snat_patch(OP_ADD, snat, resource, fip))

    def _release(self, network_id: str, eip: str, snat: str, resource: str, fip: Fip) -> None:
        if is_pod_eip_allocated(eip, resource, fip):
            self.neutron.delete_port_with_fip(network_id, eip)
            self.applier.enqueue(gen_eip_patch(OP_DEL, eip, resource, fip))

        if is_snat_allocated(snat, resource, fip):
            if is_snat_unique_allocated(snat, resource, fip):
                self.neutron.delete_port_with_fip(network_id, snat)
            self.applier.enqueue(gen_snat_patch(OP_DEL, snat, resource, fip))
