"""Port reconciler.

Creates a provider port for every new Port resource and deletes it again
when the resource goes away. Spec updates are not reconciled.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict

from oslo_log import log as logging

from ..exceptions import NeutronError, PortNotFound, PortUpdateNotSupported, ResourceStoreError
from ..models import CONDITION_CREATED, CONDITION_ERROR, Port, PortSpec, split_resource_key
from .keymutex import KeyMutex
from .workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

LOG = logging.getLogger(__name__)

REASON_CREATED = "Created"
REASON_CREATE_FAILED = "CreateFailed"


def fills_provider_values(old: PortSpec, new: PortSpec) -> bool:
    """Whether ``new`` differs from ``old`` at most by provider-assigned values.

    After creation the reconciler writes the address, MAC and security
    groups the provider picked into the empty spec fields. Such a change is
    not a user update.
    """
    filled = replace(
        old,
        fix_ip=old.fix_ip or new.fix_ip,
        fix_mac=old.fix_mac or new.fix_mac,
        security_group_ids=old.security_group_ids or new.security_group_ids,
    )
    return filled == new


@dataclass(frozen=True)
class PortEvent:
    """A deleted Port, carrying the provider id it was bound to."""

    key: str
    provider_id: str = ""


class PortReconciler:
    """Create/delete lifecycle of Port resources."""

    def __init__(self, store, neutron, informer, config):
        """Initialize the reconciler.

        Args:
            store: ResourceStore used for spec/status patches
            neutron: NeutronClient
            informer: Port informer
            config: ControllerConfig
        """
        self.store = store
        self.neutron = neutron
        self.informer = informer
        self.config = config
        self.mutex = KeyMutex("port")

        self.add_queue = RateLimitingQueue("add-port", self._rate_limiter())
        self.update_queue = RateLimitingQueue("update-port", self._rate_limiter())
        self.delete_queue = RateLimitingQueue("delete-port", self._rate_limiter())

    def _rate_limiter(self) -> ItemExponentialFailureRateLimiter:
        return ItemExponentialFailureRateLimiter(self.config.queue_base_delay, self.config.queue_max_delay)

    def queues(self):
        """Return ``(action, queue, handler)`` for every port queue."""
        return [
            ("add port", self.add_queue, self.handle_add),
            ("update port", self.update_queue, self.handle_update),
            ("delete port", self.delete_queue, self.handle_delete),
        ]

    # Informer callbacks

    def enqueue_add(self, obj: Dict[str, Any]) -> None:
        port = Port.from_dict(obj)
        if port.status.is_condition_true(CONDITION_CREATED):
            return
        LOG.info("enqueue %s to %s", port.key, self.add_queue.name)
        self.add_queue.add(port.key)

    def enqueue_update(self, old: Dict[str, Any], new: Dict[str, Any]) -> None:
        old_port = Port.from_dict(old)
        new_port = Port.from_dict(new)
        if old_port.resource_version == new_port.resource_version:
            return
        if new_port.deletion_timestamp:
            return
        if fills_provider_values(old_port.spec, new_port.spec):
            return
        LOG.info("enqueue %s to %s", new_port.key, self.update_queue.name)
        self.update_queue.add(new_port.key)

    def enqueue_delete(self, obj: Dict[str, Any]) -> None:
        port = Port.from_dict(obj)
        LOG.info("enqueue %s to %s", port.key, self.delete_queue.name)
        self.delete_queue.add(PortEvent(key=port.key, provider_id=port.status.id))

    # Handlers

    def handle_add(self, key: str) -> None:
        """Create the provider port of a Port resource.

        The provider port is deleted again when its status cannot be
        recorded.

        Raises:
            NeutronError: provider failure, the item is retried
            ResourceStoreError: status write failed, the item is retried
        """
        try:
            namespace, name = split_resource_key(key)
        except ValueError:
            LOG.error("invalid resource key: %s", key)
            return

        with self.mutex.lock(key):
            if self.informer.get(key) is None:
                LOG.info("Port %s no longer exists, skipping create", key)
                return
            # The cache may not have seen the status of an earlier attempt yet
            try:
                port = self.store.get_port(namespace, name)
            except PortNotFound:
                LOG.info("Port %s no longer exists, skipping create", key)
                return
            if port.status.is_condition_true(CONDITION_CREATED):
                LOG.debug("Port %s already created as %s", key, port.status.id)
                return

            status = port.deep_copy().status
            try:
                created = self.neutron.create_port(
                    name=key,
                    project_id=port.spec.project_id,
                    network_id=port.spec.network_id,
                    subnet_id=port.spec.subnet_id,
                    ip=port.spec.fix_ip,
                    security_groups=port.spec.security_group_ids,
                )
            except NeutronError as e:
                LOG.error("creating port %s error: %s", key, e)
                status.set_error(REASON_CREATE_FAILED, str(e))
                self.store.patch_port_status(namespace, name, status.to_patch_body(key))
                raise

            status.id = created.id
            status.ip = created.ip
            status.mac = created.mac
            status.cidr = created.cidr
            status.gateway = created.gateway
            status.mtu = created.mtu
            status.security_group_ids = list(created.security_groups)
            status.set_condition(CONDITION_CREATED, REASON_CREATED, f"port {created.id} created")
            if status.get_condition(CONDITION_ERROR) is not None:
                status.clear_condition(CONDITION_ERROR)
            try:
                self.store.patch_port_status(namespace, name, status.to_patch_body(key))
            except PortNotFound:
                LOG.info("Port %s deleted while creating, deleting provider port %s", key, created.id)
                self._delete_created(key, created.id)
                return
            except ResourceStoreError as e:
                LOG.error("recording port %s error: %s, deleting provider port %s", key, e, created.id)
                self._delete_created(key, created.id)
                raise
            LOG.info("Port %s bound to provider port %s (%s)", key, created.id, created.ip)

            spec_patch = {}
            if not port.spec.fix_ip:
                spec_patch["fixIp"] = created.ip
            if not port.spec.fix_mac:
                spec_patch["fixMac"] = created.mac
            if not port.spec.security_group_ids and created.security_groups:
                spec_patch["securityGroupId"] = list(created.security_groups)
            if spec_patch:
                try:
                    self.store.patch_port(namespace, name, {"spec": spec_patch})
                except (PortNotFound, ResourceStoreError) as e:
                    LOG.warning("filling spec of port %s error: %s", key, e)

    def _delete_created(self, key: str, port_id: str) -> None:
        try:
            self.neutron.delete_port(port_id)
        except NeutronError as e:
            LOG.error("deleting provider port %s of %s error: %s", port_id, key, e)

    def handle_delete(self, event: PortEvent) -> None:
        """Delete the provider port of a removed Port resource."""
        if not event.provider_id:
            LOG.info("Port %s was never created in the provider, nothing to delete", event.key)
            return
        with self.mutex.lock(event.key):
            self.neutron.delete_port(event.provider_id)

    def handle_update(self, key: str) -> None:
        raise PortUpdateNotSupported(key=key)
