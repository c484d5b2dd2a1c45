"""Unit tests for the Fip state synchronizer."""

from unittest.mock import Mock

import pytest

from fip_controller.controller.fip_patch import FipPatchApplier
from fip_controller.controller.fip_sync import (
    ORPHANED_SINCE_ANNOTATION,
    FipSynchronizer,
    gen_neutron_routers,
)
from fip_controller.exceptions import NeutronError, NeutronNetworkNotFound
from fip_controller.models import (
    PATH_FORBIDDEN_IPS,
    PATH_NEUTRON_ROUTERS,
    AllocationPool,
    NeutronRouter,
    Vpc,
)

EXT_NET = "ext-net-uuid"


class TestHelpers:
    """Tests for router, pool and forbidden IP derivation."""

    @pytest.mark.unit
    def test_gen_neutron_routers_sorted_with_default_subnets(self, vpc_obj):
        vpcs = [
            Vpc.from_dict(vpc_obj("vpc-b", router_id="router-2", subnets=["10.0.1.0/24"])),
            Vpc.from_dict(vpc_obj("vpc-a", router_id="router-1")),
        ]
        routers = gen_neutron_routers(vpcs)
        assert [r.neutron_router_id for r in routers] == ["router-1", "router-2"]
        assert routers[0] == NeutronRouter("router-1", "vpc-a", "az1", "172.16.0.2", ())
        assert routers[0].to_dict()["subnets"] == []
        assert routers[1].subnets == ("10.0.1.0/24",)

    @pytest.mark.unit
    def test_allocation_pools_union(self, mock_neutron, config):
        mock_neutron.get_subnet.side_effect = [
            {"cidr": "172.16.1.0/24", "allocation_pools": [{"start": "172.16.1.10", "end": "172.16.1.20"}]},
            {
                "cidr": "172.16.0.0/24",
                "allocation_pools": [
                    {"start": "172.16.0.100", "end": "172.16.0.200"},
                    {"start": "172.16.0.10", "end": "172.16.0.20"},
                ],
            },
        ]
        sync = FipSynchronizer(Mock(), mock_neutron, Mock(), Mock(), Mock(), config)
        pools = sync.get_allocation_pools({"id": EXT_NET, "subnets": ["s1", "s2"]})
        assert pools == [
            AllocationPool("172.16.0.0/24", "172.16.0.10", "172.16.0.20"),
            AllocationPool("172.16.0.0/24", "172.16.0.100", "172.16.0.200"),
            AllocationPool("172.16.1.0/24", "172.16.1.10", "172.16.1.20"),
        ]

    @pytest.mark.unit
    def test_allocation_pools_require_subnets(self, mock_neutron, config):
        sync = FipSynchronizer(Mock(), mock_neutron, Mock(), Mock(), Mock(), config)
        with pytest.raises(NeutronError):
            sync.get_allocation_pools({"id": EXT_NET, "subnets": []})

    @pytest.mark.unit
    def test_forbidden_ips_skip_own_ports(self, mock_neutron, config):
        mock_neutron.list_ports.return_value = [
            {"device_owner": "network:router_gateway", "fixed_ips": [{"ip_address": "172.16.0.2"}]},
            {"device_owner": "compute:nova", "fixed_ips": [{"ip_address": "172.16.0.30"}, {"ip_address": "172.16.0.4"}]},
            {"device_owner": config.fip_port_device_owner, "fixed_ips": [{"ip_address": "172.16.0.50"}]},
        ]
        sync = FipSynchronizer(Mock(), mock_neutron, Mock(), Mock(), Mock(), config)
        assert sync.get_forbidden_ips(EXT_NET) == ["172.16.0.2", "172.16.0.30", "172.16.0.4"]

    @pytest.mark.unit
    def test_group_vpcs_skips_unbound(self, make_informer, vpc_obj, config):
        vpcs = make_informer(
            "vpc",
            [vpc_obj("vpc-1"), vpc_obj("vpc-2", router_id="router-2"), vpc_obj("vpc-3", network_id="")],
        )
        sync = FipSynchronizer(Mock(), Mock(), vpcs, Mock(), Mock(), config)
        groups = sync.group_vpcs()
        assert list(groups) == [EXT_NET]
        assert sorted(v.name for v in groups[EXT_NET]) == ["vpc-1", "vpc-2"]


class TestSyncFip:
    """Tests for FipSynchronizer.sync_fip."""

    @pytest.fixture
    def applier(self, store, config):
        return FipPatchApplier(store, config)

    @pytest.fixture
    def make_sync(self, store, mock_neutron, make_informer, applier, config):
        def _make(vpcs=(), fips=()):
            return FipSynchronizer(
                store,
                mock_neutron,
                make_informer("vpc", vpcs),
                make_informer("fip", fips),
                applier,
                config,
            )

        return _make

    @pytest.mark.unit
    def test_creates_missing_fip(self, make_sync, store, vpc_obj):
        make_sync([vpc_obj()]).sync_fip()

        assert store.created == [EXT_NET]
        fip = store.get_fip(EXT_NET)
        assert fip.spec.external_network_name == "public"
        assert fip.spec.allocation_pools == [AllocationPool("172.16.0.0/24", "172.16.0.10", "172.16.0.200")]
        assert [r.neutron_router_id for r in fip.status.neutron_routers] == ["router-1"]
        assert fip.status.allocated_ips == []
        assert fip.status.forbidden_ips == []

    @pytest.mark.unit
    def test_in_sync_fip_queues_nothing(self, make_sync, store, applier, vpc_obj, fip_obj):
        router = {
            "neutronRouterID": "router-1",
            "neutronRouterName": "vpc-1",
            "availabilityZone": "az1",
            "externalGatewayIP": "172.16.0.2",
            "subnets": [],
        }
        store.add_fip(fip_obj(routers=[router]))
        make_sync([vpc_obj()]).sync_fip()

        assert len(applier.queue) == 0
        assert store.fip_patches == []

    @pytest.mark.unit
    def test_router_and_forbidden_changes_are_queued(
        self, make_sync, store, applier, mock_neutron, vpc_obj, fip_obj, drain
    ):
        mock_neutron.list_ports.return_value = [
            {"device_owner": "network:router_gateway", "fixed_ips": [{"ip_address": "172.16.0.2"}]}
        ]
        store.add_fip(fip_obj(allocated=[("172.16.0.50", "eip", ["default/a"])]))
        make_sync([vpc_obj()]).sync_fip()

        paths = sorted(patch.path for patch in applier.queue._queue)
        assert paths == [PATH_FORBIDDEN_IPS, PATH_NEUTRON_ROUTERS]

        drain(applier)
        fip = store.get_fip(EXT_NET)
        assert fip.status.forbidden_ips == ["172.16.0.2"]
        assert [r.neutron_router_id for r in fip.status.neutron_routers] == ["router-1"]
        # Allocations are never touched by the synchronizer
        assert [a.ip for a in fip.status.allocated_ips] == ["172.16.0.50"]

    @pytest.mark.unit
    def test_pool_change_patches_spec(self, make_sync, store, vpc_obj, fip_obj):
        store.add_fip(fip_obj(pools=[("172.16.0.0/24", "172.16.0.10", "172.16.0.100")]))
        make_sync([vpc_obj()]).sync_fip()

        assert store.fip_patches == [
            (
                EXT_NET,
                {"spec": {"allocationPools": [{"cidr": "172.16.0.0/24", "start": "172.16.0.10", "end": "172.16.0.200"}]}},
            )
        ]

    @pytest.mark.unit
    def test_provider_failure_moves_to_next_network(self, make_sync, store, mock_neutron, vpc_obj):
        mock_neutron.get_network.side_effect = [
            NeutronNetworkNotFound(network_id="net-a"),
            {"id": "net-b", "name": "b", "subnets": ["subnet-uuid-1"]},
        ]
        make_sync([vpc_obj("vpc-a", network_id="net-a"), vpc_obj("vpc-b", network_id="net-b")]).sync_fip()
        assert store.created == ["net-b"]

    @pytest.mark.unit
    def test_orphan_is_marked(self, make_sync, store, fip_obj):
        orphan = fip_obj(name="old-net")
        store.add_fip(orphan)
        make_sync([], [orphan]).sync_fip(now=1000.0)
        assert store.fips["old-net"]["metadata"]["annotations"] == {ORPHANED_SINCE_ANNOTATION: "1000"}

    @pytest.mark.unit
    def test_orphan_deleted_after_grace_period(self, make_sync, store, fip_obj, config):
        orphan = fip_obj(name="old-net", annotations={ORPHANED_SINCE_ANNOTATION: "1000"})
        store.add_fip(orphan)
        sync = make_sync([], [orphan])

        sync.sync_fip(now=1000.0 + config.fip_orphan_grace_period - 1)
        assert store.deleted == []
        sync.sync_fip(now=1000.0 + config.fip_orphan_grace_period)
        assert store.deleted == ["old-net"]

    @pytest.mark.unit
    def test_orphan_with_allocations_is_kept(self, make_sync, store, fip_obj):
        orphan = fip_obj(
            name="old-net",
            annotations={ORPHANED_SINCE_ANNOTATION: "0"},
            allocated=[("172.16.0.50", "eip", ["default/a"])],
        )
        store.add_fip(orphan)
        make_sync([], [orphan]).sync_fip(now=10 ** 9)
        assert store.deleted == []

    @pytest.mark.unit
    def test_referenced_again_clears_mark(self, make_sync, store, vpc_obj, fip_obj):
        fip = fip_obj(annotations={ORPHANED_SINCE_ANNOTATION: "1000"})
        store.add_fip(fip)
        make_sync([vpc_obj()], [fip]).sync_fip(now=10 ** 9)
        assert ORPHANED_SINCE_ANNOTATION not in store.fips[EXT_NET]["metadata"]["annotations"]
        assert store.deleted == []


class TestInitFip:
    """Tests for FipSynchronizer.init_fip."""

    @pytest.mark.unit
    def test_creates_only_missing(self, store, mock_neutron, make_informer, vpc_obj, fip_obj, config):
        mock_neutron.get_network.side_effect = lambda network_id: {
            "id": network_id,
            "name": network_id,
            "subnets": ["subnet-uuid-1"],
        }
        store.add_fip(fip_obj(name="net-a"))
        vpcs = make_informer("vpc", [vpc_obj("vpc-a", network_id="net-a"), vpc_obj("vpc-b", network_id="net-b")])
        FipSynchronizer(store, mock_neutron, vpcs, Mock(), Mock(), config).init_fip()
        assert store.created == ["net-b"]

    @pytest.mark.unit
    def test_provider_error_aborts(self, store, mock_neutron, make_informer, vpc_obj, config):
        mock_neutron.get_network.side_effect = NeutronError(details="unreachable")
        vpcs = make_informer("vpc", [vpc_obj()])
        with pytest.raises(NeutronError):
            FipSynchronizer(store, mock_neutron, vpcs, Mock(), Mock(), config).init_fip()
        assert store.created == []
