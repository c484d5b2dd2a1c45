"""
Neutron floating IP controller.

Keeps the cluster's Fip and Port resources consistent with an OpenStack
Neutron backend: port provisioning, eip/snat allocation for pods, periodic
topology synchronisation and garbage collection of leaked allocations.
"""

__version__ = "0.1.0"
__all__ = ["api", "controller", "kube", "neutron"]
