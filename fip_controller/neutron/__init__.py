"""Neutron provider access for the floating IP controller."""

from .client import NeutronClient, NeutronPort, create_neutron_client

__all__ = ["NeutronClient", "NeutronPort", "create_neutron_client"]
