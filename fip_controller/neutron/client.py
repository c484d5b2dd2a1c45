"""Neutron provider client.

Thin wrapper over python-neutronclient exposing the network, subnet, port,
floating IP and tag calls the controller needs. Provider exceptions are
translated into the controller's exception hierarchy.
"""

import contextlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from keystoneauth1 import exceptions as ks_exceptions
from keystoneauth1 import loading as ks_loading
from neutronclient.common import exceptions as neutron_exceptions
from neutronclient.v2_0 import client as neutron_client
from oslo_log import log as logging

from ..configuration import FIP_BACKEND_FLOATINGIP, NEUTRON_GROUP
from ..exceptions import (
    NeutronAuthenticationError,
    NeutronError,
    NeutronFloatingIPError,
    NeutronNetworkNotFound,
    NeutronPortCreationFailed,
)

LOG = logging.getLogger(__name__)


@dataclass
class NeutronPort:
    """Port created for a Port resource, with its subnet and network facts."""

    id: str
    name: str = ""
    subnet_id: str = ""
    mac: str = ""
    ip: str = ""
    cidr: str = ""
    gateway: str = ""
    mtu: int = 0
    security_groups: List[str] = field(default_factory=list)


@contextlib.contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """Map neutronclient/keystoneauth failures onto controller exceptions."""
    try:
        yield
    except (ks_exceptions.Unauthorized, neutron_exceptions.Unauthorized) as e:
        LOG.error("Neutron authentication failed while trying to %s: %s", action, e)
        raise NeutronAuthenticationError(details=str(e))
    except (ks_exceptions.Forbidden, neutron_exceptions.Forbidden) as e:
        LOG.error("Neutron permission denied while trying to %s: %s", action, e)
        raise NeutronError(details=f"Permission denied to {action}: {e}")
    except (neutron_exceptions.ServiceUnavailable, neutron_exceptions.ConnectionFailed) as e:
        LOG.warning("Neutron service unavailable while trying to %s: %s", action, e)
        raise NeutronError(details=f"Service unavailable: {e}")
    except ks_exceptions.ClientException as e:
        # Connect failures and timeouts of the keystoneauth session
        LOG.warning("Neutron request failed while trying to %s: %s", action, e)
        raise NeutronError(details=f"Failed to {action}: {e}")


def create_neutron_client(conf):
    """Create Neutron client using [neutron] section auth configuration.

    The keystoneauth1 session is loaded from the [neutron] config group; its
    ``timeout`` option bounds every provider call.

    Raises:
        ValueError: Neutron authentication not configured
    """
    auth = ks_loading.load_auth_from_conf_options(conf, NEUTRON_GROUP)
    if not auth:
        raise ValueError(
            "Neutron authentication not configured. "
            "Please configure the [neutron] section with "
            "auth_url, auth_type, username, password, project_name, etc."
        )

    session = ks_loading.load_session_from_conf_options(conf, NEUTRON_GROUP, auth=auth)
    return neutron_client.Client(session=session)


class NeutronClient:
    """Provider API used by the port reconciler and the Fip engine."""

    def __init__(self, client, config):
        """Initialize the provider client.

        Args:
            client: neutronclient ``Client`` instance
            config: ControllerConfig
        """
        self._client = client
        self.config = config

    @classmethod
    def from_conf(cls, conf, config) -> "NeutronClient":
        return cls(create_neutron_client(conf), config)

    # Networks and subnets

    def get_network(self, network_id: str) -> Dict[str, Any]:
        """Return the network with its subnets and MTU.

        Raises:
            NeutronNetworkNotFound: network does not exist
        """
        try:
            with _translate_errors(f"get network {network_id}"):
                return self._client.show_network(network_id)["network"]
        except neutron_exceptions.NotFound:
            raise NeutronNetworkNotFound(network_id=network_id)
        except neutron_exceptions.NeutronClientException as e:
            raise NeutronError(details=f"Failed to get network {network_id}: {e}")

    def get_subnet(self, subnet_id: str) -> Dict[str, Any]:
        try:
            with _translate_errors(f"get subnet {subnet_id}"):
                return self._client.show_subnet(subnet_id)["subnet"]
        except neutron_exceptions.NeutronClientException as e:
            raise NeutronError(details=f"Failed to get subnet {subnet_id}: {e}")

    def list_ports(self, network_id: str, **filters) -> List[Dict[str, Any]]:
        try:
            with _translate_errors(f"list ports of network {network_id}"):
                return self._client.list_ports(network_id=network_id, **filters)["ports"]
        except neutron_exceptions.NeutronClientException as e:
            raise NeutronError(details=f"Failed to list ports of network {network_id}: {e}")

    # Ports

    def create_port(
        self,
        name: str,
        project_id: str,
        network_id: str,
        subnet_id: str,
        ip: str = "",
        security_groups: Optional[List[str]] = None,
    ) -> NeutronPort:
        """Create a port and collect its subnet CIDR/gateway and network MTU.

        If the subnet or network lookup fails after the port was created,
        the port is deleted again before the error propagates.

        Raises:
            NeutronPortCreationFailed: port creation was rejected
            NeutronError: provider unavailable or lookup failed
        """
        fixed_ip: Dict[str, str] = {"subnet_id": subnet_id}
        if ip:
            fixed_ip["ip_address"] = ip
        port_body: Dict[str, Any] = {
            "port": {
                "name": name,
                "network_id": network_id,
                "fixed_ips": [fixed_ip],
                "admin_state_up": True,
            }
        }
        if project_id:
            port_body["port"]["project_id"] = project_id
        if security_groups:
            port_body["port"]["security_groups"] = list(security_groups)

        try:
            with _translate_errors(f"create port {name}"):
                port = self._client.create_port(port_body)["port"]
        except neutron_exceptions.BadRequest as e:
            LOG.error("Invalid Neutron port request for %s: %s", name, e)
            raise NeutronPortCreationFailed(details=f"Bad request: {e}")
        except neutron_exceptions.Conflict as e:
            LOG.warning("Neutron port conflict for %s: %s", name, e)
            raise NeutronPortCreationFailed(details=f"Port conflict: {e}")
        except neutron_exceptions.NeutronClientException as e:
            LOG.error("Unexpected error creating Neutron port %s: %s", name, e)
            raise NeutronPortCreationFailed(details=str(e))

        LOG.info("Created Neutron port %s for %s on network %s", port["id"], name, network_id)

        try:
            subnet = self.get_subnet(subnet_id)
            network = self.get_network(network_id)
        except NeutronError:
            LOG.warning("Rolling back Neutron port %s after lookup failure", port["id"])
            try:
                self.delete_port(port["id"])
            except NeutronError:
                LOG.exception("Failed to roll back Neutron port %s", port["id"])
            raise

        fixed_ips = port.get("fixed_ips") or []
        return NeutronPort(
            id=port["id"],
            name=port.get("name", name),
            subnet_id=subnet_id,
            mac=port.get("mac_address", ""),
            ip=fixed_ips[0]["ip_address"] if fixed_ips else "",
            cidr=subnet.get("cidr", ""),
            gateway=subnet.get("gateway_ip") or "",
            mtu=int(network.get("mtu") or 0),
            security_groups=list(port.get("security_groups") or []),
        )

    def delete_port(self, port_id: str) -> None:
        """Delete a port. A port that is already gone counts as deleted."""
        try:
            with _translate_errors(f"delete port {port_id}"):
                self._client.delete_port(port_id)
        except neutron_exceptions.NotFound:
            LOG.info("Neutron port %s already deleted", port_id)
            return
        except neutron_exceptions.NeutronClientException as e:
            raise NeutronError(details=f"Failed to delete port {port_id}: {e}")
        LOG.info("Deleted Neutron port %s", port_id)

    # Tags

    def add_tag(self, resource_type: str, resource_id: str, tag: str) -> None:
        try:
            with _translate_errors(f"tag {resource_type} {resource_id}"):
                self._client.add_tag(resource_type, resource_id, tag)
        except neutron_exceptions.NeutronClientException as e:
            raise NeutronError(details=f"Failed to tag {resource_type} {resource_id}: {e}")

    # Floating IPs

    def create_port_with_fip(self, network_id: str, ip: str) -> Dict[str, Any]:
        """Reserve ``ip`` on the external network.

        Depending on ``fip_backend`` this creates either a port holding the
        address or a Neutron floating IP object. The new resource is tagged
        with ``fip_tag``; if tagging fails the resource is removed again.

        Raises:
            NeutronFloatingIPError: reservation failed
        """
        if self.config.fip_backend == FIP_BACKEND_FLOATINGIP:
            resource_type = "floatingips"
            body = {
                "floatingip": {
                    "floating_network_id": network_id,
                    "floating_ip_address": ip,
                    "description": self.config.fip_tag,
                }
            }
            create, delete = self._client.create_floatingip, self._client.delete_floatingip
        else:
            resource_type = "ports"
            body = {
                "port": {
                    "name": f"fip-{ip}",
                    "network_id": network_id,
                    "fixed_ips": [{"ip_address": ip}],
                    "admin_state_up": True,
                    "device_owner": self.config.fip_port_device_owner,
                    "description": self.config.fip_tag,
                }
            }
            create, delete = self._client.create_port, self._client.delete_port

        try:
            with _translate_errors(f"create floating ip {ip}"):
                resource = create(body)[resource_type[:-1]]
        except neutron_exceptions.NeutronClientException as e:
            LOG.error("Failed to create floating ip %s on network %s: %s", ip, network_id, e)
            raise NeutronFloatingIPError(ip=ip, details=str(e))

        try:
            self.add_tag(resource_type, resource["id"], self.config.fip_tag)
        except NeutronError as e:
            LOG.warning("Tagging %s %s failed, removing it: %s", resource_type, resource["id"], e)
            try:
                delete(resource["id"])
            except (neutron_exceptions.NeutronClientException, ks_exceptions.ClientException):
                LOG.exception("Failed to remove untagged %s %s", resource_type, resource["id"])
            raise NeutronFloatingIPError(ip=ip, details=str(e))

        LOG.info("Created floating ip %s (%s %s) on network %s", ip, resource_type, resource["id"], network_id)
        return resource

    def delete_port_with_fip(self, network_id: str, ip: str) -> None:
        """Release ``ip`` on the external network.

        A reservation that no longer exists counts as released.

        Raises:
            NeutronFloatingIPError: release failed
        """
        try:
            with _translate_errors(f"delete floating ip {ip}"):
                if self.config.fip_backend == FIP_BACKEND_FLOATINGIP:
                    found = self._client.list_floatingips(
                        floating_network_id=network_id,
                        floating_ip_address=ip,
                    )["floatingips"]
                    delete = self._client.delete_floatingip
                else:
                    found = self._client.list_ports(
                        network_id=network_id,
                        device_owner=self.config.fip_port_device_owner,
                        fixed_ips=[f"ip_address={ip}"],
                    )["ports"]
                    delete = self._client.delete_port

                if not found:
                    LOG.warning("Floating ip %s not found on network %s, nothing to delete", ip, network_id)
                    return

                for resource in found:
                    try:
                        delete(resource["id"])
                    except neutron_exceptions.NotFound:
                        LOG.info("Floating ip resource %s already deleted", resource["id"])
        except neutron_exceptions.NeutronClientException as e:
            LOG.error("Failed to delete floating ip %s on network %s: %s", ip, network_id, e)
            raise NeutronFloatingIPError(ip=ip, details=str(e))

        LOG.info("Deleted floating ip %s on network %s", ip, network_id)
