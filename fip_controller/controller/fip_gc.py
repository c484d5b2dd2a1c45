"""Garbage collection of eip allocations whose pod is gone.

Pods can lose their eip annotation, or be removed while the controller is
down, without a delete event ever releasing the address. The collector
periodically walks the cached Fips and releases eips held by missing pods.
"""

import threading
from typing import Optional

from oslo_log import log as logging

from ..exceptions import FipControllerException, FipNotFound
from ..models import EIP, OP_DEL, PATH_ALLOCATED_IPS, AllocatedIP, Fip, FipPatch, split_resource_key

LOG = logging.getLogger(__name__)


class FipGarbageCollector:
    """Releases eips whose owning pod no longer exists."""

    def __init__(self, store, neutron, fip_informer, pod_informer, applier, config, stop_event=None):
        self.store = store
        self.neutron = neutron
        self.fip_informer = fip_informer
        self.pod_informer = pod_informer
        self.applier = applier
        self.config = config
        self.stop_event = stop_event or threading.Event()

    def gc_fip(self) -> None:
        """Run one sweep over all cached Fips."""
        for obj in self.fip_informer.list():
            fip = Fip.from_dict(obj)
            for allocated in fip.status.allocated_ips:
                # TODO: shared snat entries leak the same way once all their pods are gone
                if allocated.type != EIP:
                    continue
                if self.stop_event.is_set():
                    return
                try:
                    self.collect(fip, allocated)
                except FipControllerException as e:
                    LOG.error("gc of eip %s in fip %s failed: %s", allocated.ip, fip.name, e)

    def collect(self, fip: Fip, allocated: AllocatedIP) -> Optional[FipPatch]:
        """Release ``allocated`` if its pod is confirmed gone.

        The pod is first looked up in the cache, then, after a debounce
        delay, in the API server. The eip is released only if the entry is
        still present in a freshly read Fip.

        Returns:
            The queued del patch, or None if nothing was released
        """
        if len(allocated.resources) != 1:
            LOG.error("eip %s in fip %s has %d resources, expected 1", allocated.ip, fip.name, len(allocated.resources))
            return None
        try:
            namespace, name = split_resource_key(allocated.resources[0])
        except ValueError:
            LOG.error("eip %s in fip %s has malformed resource %r", allocated.ip, fip.name, allocated.resources[0])
            return None

        if self.pod_informer.get(allocated.resources[0]) is not None:
            return None

        # Tolerate informer lag before asking the API server
        if self.stop_event.wait(self.config.fip_gc_debounce):
            return None
        if self.store.get_pod(namespace, name) is not None:
            return None

        try:
            current = self.store.get_fip(fip.name)
        except FipNotFound:
            return None
        if allocated not in current.status.allocated_ips:
            return None

        try:
            self.neutron.delete_port_with_fip(current.spec.external_network_id, allocated.ip)
        except FipControllerException as e:
            LOG.error("delete port with floatingip %s failed: %s", allocated.ip, e)
            return None
        LOG.info("released eip %s of deleted pod %s", allocated.ip, allocated.resources[0])

        patch = FipPatch(op=OP_DEL, name=fip.name, path=PATH_ALLOCATED_IPS, allocated_ip=allocated)
        self.applier.enqueue(patch)
        return patch
