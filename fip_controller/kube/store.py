"""Authoritative access to the Fip, Port, Vpc and Pod resources.

Reads here go to the API server, never to the informer caches. Writes are
JSON merge-patches against the ``spec`` (main resource) or the ``status``
subresource, so the two are updated independently.
"""

from typing import Any, Dict, List, Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client import ApiException
from oslo_log import log as logging

from ..exceptions import FipNotFound, PortNotFound, ResourceStoreError
from ..models import Fip, Port

LOG = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"

FIP_PLURAL = "fips"
PORT_PLURAL = "ports"
VPC_PLURAL = "vpcs"


def load_api_client(kubeconfig: Optional[str] = None) -> k8s_client.ApiClient:
    """Build an API client from a kubeconfig file or the in-cluster config."""
    if kubeconfig:
        k8s_config.load_kube_config(config_file=kubeconfig)
    else:
        k8s_config.load_incluster_config()
    return k8s_client.ApiClient()


class ResourceStore:
    """Kubernetes API access used by the controller."""

    def __init__(self, api_client, config):
        """Initialize the store.

        Args:
            api_client: kubernetes ``ApiClient``
            config: ControllerConfig
        """
        self.config = config
        self.api_client = api_client
        self.custom_api = k8s_client.CustomObjectsApi(api_client)
        self.core_api = k8s_client.CoreV1Api(api_client)

    @classmethod
    def from_config(cls, config) -> "ResourceStore":
        return cls(load_api_client(config.kubeconfig), config)

    @property
    def api_version(self) -> str:
        return f"{self.config.crd_group}/{self.config.crd_version}"

    def to_dict(self, obj: Any) -> Dict[str, Any]:
        """Convert a typed client model into its JSON form."""
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    # Fip (cluster scoped)

    def get_fip(self, name: str) -> Fip:
        """Fetch a Fip straight from the API server.

        Raises:
            FipNotFound: no such Fip
            ResourceStoreError: any other API failure
        """
        try:
            obj = self.custom_api.get_cluster_custom_object(
                self.config.crd_group, self.config.crd_version, FIP_PLURAL, name
            )
        except ApiException as e:
            if e.status == 404:
                raise FipNotFound(name=name)
            raise ResourceStoreError(details=f"get fip {name}: {e.reason}")
        return Fip.from_dict(obj)

    def list_fips(self, **kwargs) -> Dict[str, Any]:
        return self.custom_api.list_cluster_custom_object(
            self.config.crd_group, self.config.crd_version, FIP_PLURAL, **kwargs
        )

    def create_fip(self, fip: Fip) -> Fip:
        try:
            obj = self.custom_api.create_cluster_custom_object(
                self.config.crd_group, self.config.crd_version, FIP_PLURAL, fip.to_dict(self.api_version)
            )
        except ApiException as e:
            raise ResourceStoreError(details=f"create fip {fip.name}: {e.reason}")
        return Fip.from_dict(obj)

    def delete_fip(self, name: str) -> None:
        try:
            self.custom_api.delete_cluster_custom_object(
                self.config.crd_group, self.config.crd_version, FIP_PLURAL, name
            )
        except ApiException as e:
            if e.status == 404:
                LOG.info("Fip %s already deleted", name)
                return
            raise ResourceStoreError(details=f"delete fip {name}: {e.reason}")

    def patch_fip(self, name: str, body: Dict[str, Any]) -> None:
        """Merge-patch the main resource (spec and metadata)."""
        try:
            self.custom_api.patch_cluster_custom_object(
                self.config.crd_group,
                self.config.crd_version,
                FIP_PLURAL,
                name,
                body,
                _content_type=MERGE_PATCH,
            )
        except ApiException as e:
            if e.status == 404:
                raise FipNotFound(name=name)
            raise ResourceStoreError(details=f"patch fip {name}: {e.reason}")

    def patch_fip_status(self, name: str, body: Dict[str, Any]) -> None:
        """Merge-patch the status subresource."""
        try:
            self.custom_api.patch_cluster_custom_object_status(
                self.config.crd_group,
                self.config.crd_version,
                FIP_PLURAL,
                name,
                body,
                _content_type=MERGE_PATCH,
            )
        except ApiException as e:
            if e.status == 404:
                raise FipNotFound(name=name)
            raise ResourceStoreError(details=f"patch fip status {name}: {e.reason}")

    # Port (namespaced)

    def get_port(self, namespace: str, name: str) -> Port:
        try:
            obj = self.custom_api.get_namespaced_custom_object(
                self.config.crd_group, self.config.crd_version, namespace, PORT_PLURAL, name
            )
        except ApiException as e:
            if e.status == 404:
                raise PortNotFound(key=f"{namespace}/{name}")
            raise ResourceStoreError(details=f"get port {namespace}/{name}: {e.reason}")
        return Port.from_dict(obj)

    def list_ports(self, **kwargs) -> Dict[str, Any]:
        return self.custom_api.list_cluster_custom_object(
            self.config.crd_group, self.config.crd_version, PORT_PLURAL, **kwargs
        )

    def patch_port(self, namespace: str, name: str, body: Dict[str, Any]) -> None:
        try:
            self.custom_api.patch_namespaced_custom_object(
                self.config.crd_group,
                self.config.crd_version,
                namespace,
                PORT_PLURAL,
                name,
                body,
                _content_type=MERGE_PATCH,
            )
        except ApiException as e:
            if e.status == 404:
                raise PortNotFound(key=f"{namespace}/{name}")
            raise ResourceStoreError(details=f"patch port {namespace}/{name}: {e.reason}")

    def patch_port_status(self, namespace: str, name: str, body: Dict[str, Any]) -> None:
        try:
            self.custom_api.patch_namespaced_custom_object_status(
                self.config.crd_group,
                self.config.crd_version,
                namespace,
                PORT_PLURAL,
                name,
                body,
                _content_type=MERGE_PATCH,
            )
        except ApiException as e:
            if e.status == 404:
                raise PortNotFound(key=f"{namespace}/{name}")
            raise ResourceStoreError(details=f"patch port status {namespace}/{name}: {e.reason}")

    # Vpc (cluster scoped, read only)

    def list_vpcs(self, **kwargs) -> Dict[str, Any]:
        return self.custom_api.list_cluster_custom_object(
            self.config.vpc_group, self.config.vpc_version, VPC_PLURAL, **kwargs
        )

    # Pods

    def get_pod(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Return the pod from the API server, or None if it does not exist."""
        try:
            pod = self.core_api.read_namespaced_pod(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise ResourceStoreError(details=f"get pod {namespace}/{name}: {e.reason}")
        return self.to_dict(pod)

    def list_pods(self, **kwargs):
        return self.core_api.list_pod_for_all_namespaces(**kwargs)

    def list_items(self, response: Any) -> List[Dict[str, Any]]:
        """Return the items of a list response as plain dicts."""
        if isinstance(response, dict):
            return list(response.get("items") or [])
        return [self.to_dict(item) for item in response.items or []]
