"""
Pytest configuration and fixtures.
"""

import copy
import threading
from unittest.mock import Mock

import pytest

from fip_controller.configuration import ControllerConfig
from fip_controller.exceptions import FipNotFound, PortNotFound
from fip_controller.kube.informer import Informer
from fip_controller.models import Fip, Port

EXT_NET = "ext-net-uuid"


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: tests exercising the API and CLI surfaces")


class InMemoryStore:
    """ResourceStore stand-in keeping Fips, Ports and pods as plain dicts."""

    api_version = "neutron.io/v1"

    def __init__(self):
        self.fips = {}
        self.pods = {}
        self.ports = {}
        self.created = []
        self.deleted = []
        self.status_patches = []
        self.fip_patches = []
        self.port_patches = []
        self.port_status_patches = []
        self._lock = threading.Lock()

    def add_fip(self, obj):
        self.fips[obj["metadata"]["name"]] = copy.deepcopy(obj)

    def get_fip(self, name):
        with self._lock:
            if name not in self.fips:
                raise FipNotFound(name=name)
            return Fip.from_dict(copy.deepcopy(self.fips[name]))

    def create_fip(self, fip):
        self.fips[fip.name] = fip.to_dict(self.api_version)
        self.created.append(fip.name)
        return fip

    def delete_fip(self, name):
        self.fips.pop(name, None)
        self.deleted.append(name)

    def patch_fip(self, name, body):
        if name not in self.fips:
            raise FipNotFound(name=name)
        self.fip_patches.append((name, copy.deepcopy(body)))
        obj = self.fips[name]
        for key, value in (body.get("spec") or {}).items():
            obj.setdefault("spec", {})[key] = value
        annotations = obj.setdefault("metadata", {}).setdefault("annotations", {})
        for key, value in ((body.get("metadata") or {}).get("annotations") or {}).items():
            if value is None:
                annotations.pop(key, None)
            else:
                annotations[key] = value

    def patch_fip_status(self, name, body):
        with self._lock:
            if name not in self.fips:
                raise FipNotFound(name=name)
            self.status_patches.append((name, copy.deepcopy(body)))
            self.fips[name]["status"] = copy.deepcopy(body["status"])

    def get_pod(self, namespace, name):
        return copy.deepcopy(self.pods.get(f"{namespace}/{name}"))

    def add_port(self, obj):
        metadata = obj["metadata"]
        self.ports[f"{metadata['namespace']}/{metadata['name']}"] = copy.deepcopy(obj)

    def get_port(self, namespace, name):
        key = f"{namespace}/{name}"
        if key not in self.ports:
            raise PortNotFound(key=key)
        return Port.from_dict(copy.deepcopy(self.ports[key]))

    def patch_port(self, namespace, name, body):
        self.port_patches.append((f"{namespace}/{name}", copy.deepcopy(body)))

    def patch_port_status(self, namespace, name, body):
        key = f"{namespace}/{name}"
        self.port_status_patches.append((key, copy.deepcopy(body)))
        if key in self.ports:
            self.ports[key]["status"] = copy.deepcopy(body["status"])


@pytest.fixture
def config():
    """Controller config with no requeue or gc delays."""
    return ControllerConfig(queue_base_delay=0.0, queue_max_delay=0.0, fip_gc_debounce=0.0)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def mock_neutron():
    """Create mock NeutronClient."""
    neutron = Mock()
    neutron.get_network.return_value = {
        "id": EXT_NET,
        "name": "public",
        "subnets": ["subnet-uuid-1"],
        "mtu": 1500,
    }
    neutron.get_subnet.return_value = {
        "id": "subnet-uuid-1",
        "cidr": "172.16.0.0/24",
        "gateway_ip": "172.16.0.1",
        "allocation_pools": [{"start": "172.16.0.10", "end": "172.16.0.200"}],
    }
    neutron.list_ports.return_value = []
    neutron.create_port_with_fip.return_value = {"id": "fip-port-uuid"}
    return neutron


@pytest.fixture
def make_informer():
    """Build a synced informer pre-filled with ``items``."""

    def _make(name, items=()):
        informer = Informer(name, Mock(), list)
        informer.replace([copy.deepcopy(item) for item in items])
        informer.has_synced.set()
        return informer

    return _make


@pytest.fixture
def fip_obj():
    """Build a raw Fip object."""

    def _make(
        name=EXT_NET,
        pools=(("172.16.0.0/24", "172.16.0.10", "172.16.0.200"),),
        allocated=(),
        forbidden=(),
        routers=(),
        annotations=None,
    ):
        metadata = {"name": name, "resourceVersion": "1"}
        if annotations:
            metadata["annotations"] = dict(annotations)
        return {
            "apiVersion": "neutron.io/v1",
            "kind": "Fip",
            "metadata": metadata,
            "spec": {
                "externalNetworkID": name,
                "externalNetworkName": "public",
                "allocationPools": [{"cidr": c, "start": s, "end": e} for c, s, e in pools],
            },
            "status": {
                "neutronRouters": [dict(r) for r in routers],
                "allocatedIPs": [{"ip": ip, "type": t, "resources": list(res)} for ip, t, res in allocated],
                "forbiddenIPs": list(forbidden),
            },
        }

    return _make


@pytest.fixture
def pod_obj():
    """Build a raw pod object with fip annotations."""

    def _make(name, namespace="default", eip=None, snat=None, router="vpc-1"):
        annotations = {}
        if eip is not None:
            annotations["ovn.kubernetes.io/eip"] = eip
        if snat is not None:
            annotations["ovn.kubernetes.io/snat"] = snat
        if router is not None:
            annotations["ovn.kubernetes.io/logical_router"] = router
        return {"metadata": {"name": name, "namespace": namespace, "annotations": annotations}}

    return _make


@pytest.fixture
def vpc_obj():
    """Build a raw Vpc object."""

    def _make(name="vpc-1", network_id=EXT_NET, router_id="router-1", subnets=None, zone="az1", gateway="172.16.0.2"):
        obj = {
            "metadata": {"name": name, "resourceVersion": "1"},
            "spec": {
                "externalNetworkID": network_id,
                "externalNetworkName": "public",
                "neutronRouter": router_id,
                "availabilityZone": zone,
                "externalGatewayIP": gateway,
            },
            "status": {},
        }
        if subnets is not None:
            obj["status"]["subnets"] = list(subnets)
        return obj

    return _make


@pytest.fixture
def drain():
    """Run every queued patch of an applier to completion."""

    def _drain(applier):
        while len(applier.queue):
            patch, _ = applier.queue.get()
            try:
                applier.handle_sync_fip(patch)
            finally:
                applier.queue.done(patch)

    return _drain
