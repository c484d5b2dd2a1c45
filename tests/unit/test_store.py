"""Unit tests for ResourceStore."""

from unittest.mock import Mock, patch

import pytest
from kubernetes.client import ApiException

from fip_controller.configuration import ControllerConfig
from fip_controller.exceptions import FipNotFound, PortNotFound, ResourceStoreError
from fip_controller.kube.store import MERGE_PATCH, ResourceStore, load_api_client
from fip_controller.models import Fip, FipSpec


@pytest.fixture
def resource_store():
    store = ResourceStore(Mock(), ControllerConfig())
    store.custom_api = Mock()
    store.core_api = Mock()
    return store


class TestLoadApiClient:
    """Tests for load_api_client."""

    @pytest.mark.unit
    @patch("fip_controller.kube.store.k8s_config")
    def test_kubeconfig(self, mock_config):
        load_api_client("/etc/kube/config")
        mock_config.load_kube_config.assert_called_once_with(config_file="/etc/kube/config")
        mock_config.load_incluster_config.assert_not_called()

    @pytest.mark.unit
    @patch("fip_controller.kube.store.k8s_config")
    def test_in_cluster(self, mock_config):
        load_api_client()
        mock_config.load_incluster_config.assert_called_once_with()


class TestFipAccess:
    """Tests for Fip reads and writes."""

    @pytest.mark.unit
    def test_get_fip(self, resource_store):
        resource_store.custom_api.get_cluster_custom_object.return_value = {
            "metadata": {"name": "ext-net", "resourceVersion": "7"},
            "spec": {"externalNetworkID": "ext-net"},
            "status": {"forbiddenIPs": ["172.16.0.1"]},
        }

        fip = resource_store.get_fip("ext-net")

        resource_store.custom_api.get_cluster_custom_object.assert_called_once_with(
            "neutron.io", "v1", "fips", "ext-net"
        )
        assert fip.name == "ext-net"
        assert fip.resource_version == "7"
        assert fip.status.forbidden_ips == ["172.16.0.1"]

    @pytest.mark.unit
    def test_get_fip_not_found(self, resource_store):
        resource_store.custom_api.get_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(FipNotFound):
            resource_store.get_fip("ext-net")

    @pytest.mark.unit
    def test_get_fip_api_error_is_retryable(self, resource_store):
        resource_store.custom_api.get_cluster_custom_object.side_effect = ApiException(status=500, reason="Boom")
        with pytest.raises(ResourceStoreError) as exc:
            resource_store.get_fip("ext-net")
        assert exc.value.retryable is True

    @pytest.mark.unit
    def test_create_fip(self, resource_store):
        fip = Fip(name="ext-net", spec=FipSpec(external_network_id="ext-net"))
        resource_store.custom_api.create_cluster_custom_object.return_value = fip.to_dict("neutron.io/v1")

        resource_store.create_fip(fip)

        args = resource_store.custom_api.create_cluster_custom_object.call_args[0]
        assert args[:3] == ("neutron.io", "v1", "fips")
        assert args[3]["apiVersion"] == "neutron.io/v1"
        assert args[3]["kind"] == "Fip"

    @pytest.mark.unit
    def test_delete_missing_fip_is_success(self, resource_store):
        resource_store.custom_api.delete_cluster_custom_object.side_effect = ApiException(status=404)
        resource_store.delete_fip("ext-net")

    @pytest.mark.unit
    def test_patch_fip_uses_merge_patch(self, resource_store):
        body = {"spec": {"allocationPools": []}}
        resource_store.patch_fip("ext-net", body)
        resource_store.custom_api.patch_cluster_custom_object.assert_called_once_with(
            "neutron.io", "v1", "fips", "ext-net", body, _content_type=MERGE_PATCH
        )

    @pytest.mark.unit
    def test_patch_fip_status_uses_status_subresource(self, resource_store):
        body = {"status": {"allocatedIPs": []}}
        resource_store.patch_fip_status("ext-net", body)
        resource_store.custom_api.patch_cluster_custom_object_status.assert_called_once_with(
            "neutron.io", "v1", "fips", "ext-net", body, _content_type=MERGE_PATCH
        )

    @pytest.mark.unit
    def test_patch_fip_status_not_found(self, resource_store):
        resource_store.custom_api.patch_cluster_custom_object_status.side_effect = ApiException(status=404)
        with pytest.raises(FipNotFound):
            resource_store.patch_fip_status("ext-net", {"status": {}})


class TestPortAccess:
    """Tests for Port reads and writes."""

    @pytest.mark.unit
    def test_get_port_not_found(self, resource_store):
        resource_store.custom_api.get_namespaced_custom_object.side_effect = ApiException(status=404)
        with pytest.raises(PortNotFound):
            resource_store.get_port("ns1", "port-1")

    @pytest.mark.unit
    def test_patch_port_status(self, resource_store):
        body = {"status": {"id": "port-uuid"}}
        resource_store.patch_port_status("ns1", "port-1", body)
        resource_store.custom_api.patch_namespaced_custom_object_status.assert_called_once_with(
            "neutron.io", "v1", "ns1", "ports", "port-1", body, _content_type=MERGE_PATCH
        )

    @pytest.mark.unit
    def test_patch_port_error(self, resource_store):
        resource_store.custom_api.patch_namespaced_custom_object.side_effect = ApiException(status=409, reason="Conflict")
        with pytest.raises(ResourceStoreError):
            resource_store.patch_port("ns1", "port-1", {"spec": {}})


class TestPodsAndLists:
    """Tests for pod reads and list helpers."""

    @pytest.mark.unit
    def test_get_pod(self, resource_store):
        pod = Mock()
        resource_store.core_api.read_namespaced_pod.return_value = pod
        resource_store.api_client.sanitize_for_serialization.return_value = {"metadata": {"name": "a"}}

        assert resource_store.get_pod("default", "a") == {"metadata": {"name": "a"}}
        resource_store.core_api.read_namespaced_pod.assert_called_once_with("a", "default")

    @pytest.mark.unit
    def test_get_pod_missing(self, resource_store):
        resource_store.core_api.read_namespaced_pod.side_effect = ApiException(status=404)
        assert resource_store.get_pod("default", "a") is None

    @pytest.mark.unit
    def test_get_pod_error(self, resource_store):
        resource_store.core_api.read_namespaced_pod.side_effect = ApiException(status=500)
        with pytest.raises(ResourceStoreError):
            resource_store.get_pod("default", "a")

    @pytest.mark.unit
    def test_list_vpcs_uses_vpc_group(self, resource_store):
        resource_store.list_vpcs(resource_version="5")
        resource_store.custom_api.list_cluster_custom_object.assert_called_once_with(
            "kubeovn.io", "v1", "vpcs", resource_version="5"
        )

    @pytest.mark.unit
    def test_list_items_of_dict_response(self, resource_store):
        assert resource_store.list_items({"items": [{"a": 1}]}) == [{"a": 1}]
        assert resource_store.list_items({"items": None}) == []

    @pytest.mark.unit
    def test_list_items_of_typed_response(self, resource_store):
        response = Mock(items=["pod-a"])
        resource_store.api_client.sanitize_for_serialization.return_value = {"metadata": {"name": "a"}}
        assert resource_store.list_items(response) == [{"metadata": {"name": "a"}}]
