"""Serialized application of ``FipPatch`` items to Fip status.

Every writer of Fip status (pod handler, synchronizer, garbage collector)
enqueues field-scoped patches here. The applier re-reads the Fip from the
API server under a per-Fip lock, applies the delta and writes only when the
status actually changed, so applying the same patch twice is harmless.
"""

from oslo_log import log as logging

from ..exceptions import FipNotFound, InvalidFipPatch
from ..models import (
    OP_ADD,
    OP_DEL,
    OP_REPLACE,
    PATH_ALLOCATED_IP,
    PATH_ALLOCATED_IPS,
    PATH_FORBIDDEN_IPS,
    PATH_NEUTRON_ROUTERS,
    SNAT,
    AllocatedIP,
    FipPatch,
    FipStatus,
    with_resource,
    without_resource,
)
from .keymutex import KeyMutex
from .workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

LOG = logging.getLogger(__name__)


def add_allocated_ip(status: FipStatus, allocated: AllocatedIP) -> None:
    """Append ``allocated`` unless the address already has an entry.

    A snat entry for an address that already has one is merged into it, so
    two pods racing to create the same shared address end up as members of
    a single entry. Any other clash on the address is dropped.
    """
    if allocated in status.allocated_ips:
        return
    for entry in status.allocated_ips:
        if entry.ip != allocated.ip:
            continue
        if allocated.type == SNAT and entry.type == SNAT:
            add_allocated_ip_resource(status, allocated)
        else:
            LOG.warning(
                "%s is already allocated as %s to %s, ignore %s", entry.ip, entry.type, entry.resources, allocated
            )
        return
    status.allocated_ips.append(allocated)


def del_allocated_ip(status: FipStatus, allocated: AllocatedIP) -> None:
    if allocated in status.allocated_ips:
        status.allocated_ips.remove(allocated)


def add_allocated_ip_resource(status: FipStatus, allocated: AllocatedIP) -> None:
    """Add the resource of ``allocated`` to the existing snat entry of the same IP.

    Only snat entries are shared; an eip entry keeps its single owner.
    """
    resource = allocated.resources[0]
    for i, entry in enumerate(status.allocated_ips):
        if entry.ip != allocated.ip:
            continue
        if entry.type != SNAT:
            LOG.warning("%s is an %s of %s, cannot share it with %s", entry.ip, entry.type, entry.resources, resource)
        elif resource not in entry.resources:
            status.allocated_ips[i] = with_resource(entry, resource)
        return


def del_allocated_ip_resource(status: FipStatus, allocated: AllocatedIP) -> None:
    """Remove the resource of ``allocated`` from the entry of the same IP.

    An entry identical to ``allocated`` (its last member) is removed entirely.
    """
    resource = allocated.resources[0]
    for i, entry in enumerate(status.allocated_ips):
        if entry.ip != allocated.ip:
            continue
        if entry == allocated:
            del status.allocated_ips[i]
            return
        if resource in entry.resources:
            status.allocated_ips[i] = without_resource(entry, resource)
            return


def apply_patch(status: FipStatus, patch: FipPatch) -> FipStatus:
    """Return a copy of ``status`` with ``patch`` applied.

    Raises:
        InvalidFipPatch: unknown op/path combination or missing payload
    """
    new = status.copy()
    handler = _PATCH_HANDLERS.get((patch.op, patch.path))
    if handler is None:
        raise InvalidFipPatch(op=patch.op, path=patch.path)
    if patch.path in (PATH_ALLOCATED_IPS, PATH_ALLOCATED_IP):
        if patch.allocated_ip is None or not patch.allocated_ip.resources:
            raise InvalidFipPatch(op=patch.op, path=patch.path)
    handler(new, patch)
    return new


def _replace_neutron_routers(status: FipStatus, patch: FipPatch) -> None:
    status.neutron_routers = list(patch.neutron_routers)


def _replace_forbidden_ips(status: FipStatus, patch: FipPatch) -> None:
    status.forbidden_ips = list(patch.forbidden_ips)


_PATCH_HANDLERS = {
    (OP_ADD, PATH_ALLOCATED_IPS): lambda s, p: add_allocated_ip(s, p.allocated_ip),
    (OP_ADD, PATH_ALLOCATED_IP): lambda s, p: add_allocated_ip_resource(s, p.allocated_ip),
    (OP_DEL, PATH_ALLOCATED_IPS): lambda s, p: del_allocated_ip(s, p.allocated_ip),
    (OP_DEL, PATH_ALLOCATED_IP): lambda s, p: del_allocated_ip_resource(s, p.allocated_ip),
    (OP_REPLACE, PATH_NEUTRON_ROUTERS): _replace_neutron_routers,
    (OP_REPLACE, PATH_FORBIDDEN_IPS): _replace_forbidden_ips,
}


class FipPatchApplier:
    """Consumer of the Fip patch queue."""

    def __init__(self, store, config):
        self.store = store
        self.config = config
        self.mutex = KeyMutex("fip")
        self.queue = RateLimitingQueue(
            "sync-fip",
            ItemExponentialFailureRateLimiter(config.queue_base_delay, config.queue_max_delay),
        )

    def enqueue(self, patch: FipPatch) -> None:
        LOG.info(
            "add FipPatch to %s, op: %s, name: %s, path: %s, patch: %s",
            self.queue.name,
            patch.op,
            patch.name,
            patch.path,
            patch.payload(),
        )
        self.queue.add(patch)

    def handle_sync_fip(self, patch: FipPatch) -> None:
        """Apply one patch to the authoritative Fip status.

        The Fip is read from the API server, not the informer cache, which
        may lag behind earlier patches.

        Raises:
            InvalidFipPatch: patch cannot be applied, not retried
            ResourceStoreError: read or write failed, retried
        """
        with self.mutex.lock(patch.name):
            try:
                fip = self.store.get_fip(patch.name)
            except FipNotFound:
                LOG.warning("fip not found, fipName: %s", patch.name)
                return

            new_status = apply_patch(fip.status, patch)
            if new_status == fip.status:
                LOG.info("fip %s status unchanged, no sync required", patch.name)
                return

            LOG.info(
                "gen new fip, name: %s, allocatedIPs: %s, forbiddenIPs: %s, neutronRouters: %s",
                patch.name,
                new_status.allocated_ips,
                new_status.forbidden_ips,
                new_status.neutron_routers,
            )
            self.store.patch_fip_status(patch.name, new_status.to_patch_body(patch.name))
