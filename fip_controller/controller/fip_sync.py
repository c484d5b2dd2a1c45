"""Periodic reconciliation of Fip topology against the provider.

For every external network referenced by a Vpc, the synchronizer keeps the
Fip record's routers, allocation pools and forbidden addresses current.
Allocations are left to the pod handler and the garbage collector.
"""

import time
from collections import defaultdict
from typing import Dict, List, Optional

from oslo_log import log as logging

from ..exceptions import FipControllerException, FipNotFound, NeutronError, ResourceStoreError
from ..models import (
    OP_REPLACE,
    PATH_FORBIDDEN_IPS,
    PATH_NEUTRON_ROUTERS,
    AllocationPool,
    Fip,
    FipPatch,
    FipSpec,
    FipStatus,
    NeutronRouter,
    Vpc,
)

LOG = logging.getLogger(__name__)

ORPHANED_SINCE_ANNOTATION = "neutron.io/orphaned-since"


def gen_neutron_routers(vpcs: List[Vpc]) -> List[NeutronRouter]:
    """One router entry per Vpc, sorted by router id."""
    routers = [vpc.to_neutron_router() for vpc in vpcs]
    return sorted(routers, key=lambda r: r.neutron_router_id)


def gen_fip(network: Dict, neutron_routers: List[NeutronRouter], pools: List[AllocationPool]) -> Fip:
    return Fip(
        name=network["id"],
        spec=FipSpec(
            external_network_id=network["id"],
            external_network_name=network.get("name", ""),
            allocation_pools=list(pools),
        ),
        status=FipStatus(neutron_routers=list(neutron_routers), allocated_ips=[], forbidden_ips=[]),
    )


class FipSynchronizer:
    """Keeps Fip records in line with Vpcs and provider networks."""

    def __init__(self, store, neutron, vpc_informer, fip_informer, applier, config):
        self.store = store
        self.neutron = neutron
        self.vpc_informer = vpc_informer
        self.fip_informer = fip_informer
        self.applier = applier
        self.config = config

    def group_vpcs(self) -> Dict[str, List[Vpc]]:
        """Group cached Vpcs by external network id, skipping Vpcs without one."""
        groups: Dict[str, List[Vpc]] = defaultdict(list)
        for obj in self.vpc_informer.list():
            vpc = Vpc.from_dict(obj)
            if not vpc.external_network_id:
                continue
            groups[vpc.external_network_id].append(vpc)
        return dict(groups)

    def get_allocation_pools(self, network: Dict) -> List[AllocationPool]:
        """Union of the allocation pools of every subnet of ``network``.

        Raises:
            NeutronError: network has no subnets or a subnet lookup failed
        """
        subnets = network.get("subnets")
        if not subnets:
            raise NeutronError(details=f"subnets of external network {network.get('id')} is empty")

        pools = []
        for subnet_id in subnets:
            subnet = self.neutron.get_subnet(subnet_id)
            for pool in subnet.get("allocation_pools") or []:
                pools.append(AllocationPool(cidr=subnet.get("cidr", ""), start=pool["start"], end=pool["end"]))
        return sorted(pools, key=AllocationPool.sort_key)

    def get_forbidden_ips(self, network_id: str) -> List[str]:
        """Fixed IPs of every port on the network except our own fip ports."""
        forbidden = []
        for port in self.neutron.list_ports(network_id):
            if port.get("device_owner") == self.config.fip_port_device_owner:
                continue
            for fixed_ip in port.get("fixed_ips") or []:
                forbidden.append(fixed_ip["ip_address"])
        return sorted(forbidden)

    # Start-up

    def init_fip(self) -> None:
        """Create the missing Fip records before any worker starts.

        Raises:
            NeutronError: provider failure, start-up is aborted
        """
        LOG.info("init fip")
        for network_id, vpcs in self.group_vpcs().items():
            network = self.neutron.get_network(network_id)
            LOG.info("get external network success, id: %s, name: %s", network["id"], network.get("name"))
            neutron_routers = gen_neutron_routers(vpcs)
            pools = self.get_allocation_pools(network)

            try:
                self.store.get_fip(network["id"])
                LOG.info("the fip in external network %s has been created", network["id"])
                continue
            except FipNotFound:
                pass

            try:
                self.store.create_fip(gen_fip(network, neutron_routers, pools))
            except ResourceStoreError as e:
                LOG.warning("create fip %s failed: %s", network["id"], e)
                continue
            LOG.info("create fip %s success", network["id"])

    # Periodic pass

    def sync_fip(self, now: Optional[float] = None) -> None:
        """Run one reconciliation pass over all external networks.

        A failure on one network is logged and the pass moves on.
        """
        groups = self.group_vpcs()
        for network_id, vpcs in groups.items():
            try:
                self.sync_network(network_id, vpcs)
            except FipControllerException as e:
                LOG.error("sync fip of external network %s failed: %s", network_id, e)
        self.reap_orphans(set(groups), now)

    def sync_network(self, network_id: str, vpcs: List[Vpc]) -> None:
        network = self.neutron.get_network(network_id)
        pools = self.get_allocation_pools(network)
        neutron_routers = gen_neutron_routers(vpcs)

        try:
            old = self.store.get_fip(network["id"])
        except FipNotFound:
            self.store.create_fip(gen_fip(network, neutron_routers, pools))
            LOG.info("create fip %s success", network["id"])
            return

        if sorted(old.status.neutron_routers, key=lambda r: r.neutron_router_id) != neutron_routers:
            self.applier.enqueue(
                FipPatch(
                    op=OP_REPLACE,
                    name=old.name,
                    path=PATH_NEUTRON_ROUTERS,
                    neutron_routers=tuple(neutron_routers),
                )
            )

        forbidden_ips = self.get_forbidden_ips(network["id"])
        if sorted(old.status.forbidden_ips) != forbidden_ips:
            self.applier.enqueue(
                FipPatch(
                    op=OP_REPLACE,
                    name=old.name,
                    path=PATH_FORBIDDEN_IPS,
                    forbidden_ips=tuple(forbidden_ips),
                )
            )

        if sorted(old.spec.allocation_pools, key=AllocationPool.sort_key) != pools:
            try:
                self.store.patch_fip(
                    old.name,
                    {"spec": {"allocationPools": [p.to_dict() for p in pools]}},
                )
            except FipControllerException as e:
                LOG.warning("patch fip %s allocation pools failed: %s", old.name, e)

        if ORPHANED_SINCE_ANNOTATION in old.annotations:
            LOG.info("fip %s is referenced again, clearing orphan mark", old.name)
            self.store.patch_fip(old.name, {"metadata": {"annotations": {ORPHANED_SINCE_ANNOTATION: None}}})

    def reap_orphans(self, referenced: set, now: Optional[float] = None) -> None:
        """Mark Fips no Vpc references and delete them after the grace period.

        A Fip that still carries allocations is never deleted.
        """
        now = time.time() if now is None else now
        for obj in self.fip_informer.list():
            fip = Fip.from_dict(obj)
            if fip.name in referenced:
                continue
            try:
                self._reap_orphan(fip, now)
            except FipControllerException as e:
                LOG.warning("handling orphaned fip %s failed: %s", fip.name, e)

    def _reap_orphan(self, fip: Fip, now: float) -> None:
        since = fip.annotations.get(ORPHANED_SINCE_ANNOTATION)
        if since is None:
            LOG.info("fip %s is no longer referenced by any vpc, marking orphaned", fip.name)
            self.store.patch_fip(
                fip.name, {"metadata": {"annotations": {ORPHANED_SINCE_ANNOTATION: str(int(now))}}}
            )
            return

        grace = self.config.fip_orphan_grace_period
        if not grace:
            return
        try:
            orphaned_at = float(since)
        except ValueError:
            LOG.warning("fip %s has invalid %s annotation %r", fip.name, ORPHANED_SINCE_ANNOTATION, since)
            return
        if now - orphaned_at < grace:
            return
        if fip.status.allocated_ips:
            LOG.warning(
                "fip %s orphaned for %d s but still has %d allocations, keeping it",
                fip.name,
                now - orphaned_at,
                len(fip.status.allocated_ips),
            )
            return
        LOG.info("deleting fip %s orphaned since %s", fip.name, since)
        self.store.delete_fip(fip.name)
