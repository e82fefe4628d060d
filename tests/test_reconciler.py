"""Tests for firewall reconciliation and address replanning."""

import copy
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

from azure_mock import (
    OP_STORAGE_UPDATE,
    OP_SUBNET_UPDATE,
    OP_VNET_UPDATE,
    MockNetworkClient,
    MockResourceState,
    MockStorageClient,
)
from conftest import NSG_ID, SCANNER_RG

from netconfig.applier import ConfigurationApplier
from netconfig.backup import BackupWriter
from netconfig.config import REQUIRED_SERVICE_ENDPOINTS, Config
from netconfig.inventory import Inventory
from netconfig.models import NatGatewayResource, NetworkResource, SubnetResource
from netconfig.reconciler import (
    OutcomeStatus,
    Progress,
    ReconcileResult,
    Reconciler,
    build_firewall_rule_set,
    index_networks_by_region,
    is_already_planned,
    merge_service_endpoints,
    replan,
)

DESIRED_IPS = ["1.2.3.4", "5.6.7.8"]


def statuses(result: ReconcileResult) -> dict[str, OutcomeStatus]:
    return {o.name: o.status for o in result.outcomes}


def add_centralus_network(state: MockResourceState, subnet_name: str = "dspm-centralus") -> None:
    state.add_network(
        SCANNER_RG,
        "vnet-dspm-centralus",
        "centralus",
        ["10.0.3.0/24"],
        subnets=[{"name": subnet_name, "address_prefix": "10.0.3.0/24"}],
        tags={"dspm": "true"},
    )


class TestPureHelpers:
    """Tests for the side-effect free reconciliation helpers."""

    def test_rule_set(self) -> None:
        """Test the desired rule set allows exactly the given IPs and subnets."""
        rule_set = build_firewall_rule_set(DESIRED_IPS + ["1.2.3.4"], ["id1", "id2"])

        assert rule_set.ip_rules == DESIRED_IPS
        assert rule_set.virtual_network_rules == ["id1", "id2"]
        assert rule_set.default_action == "Deny"
        assert set(rule_set.bypass) == {"Logging", "Metrics", "AzureServices"}

    def test_merge_service_endpoints(self) -> None:
        """Test existing endpoints are kept and missing ones appended."""
        merged = merge_service_endpoints(
            ["microsoft.storage", "Microsoft.KeyVault"], REQUIRED_SERVICE_ENDPOINTS
        )

        assert merged == [
            "microsoft.storage",
            "Microsoft.KeyVault",
            "Microsoft.AzureCosmosDB",
            "Microsoft.Sql",
        ]

    def test_index_keeps_first_network(self) -> None:
        """Test a second network in the same region is ignored."""
        first = NetworkResource(name="vnet-a", region="westus")
        second = NetworkResource(name="vnet-b", region="West US")

        assert index_networks_by_region([first, second]) == {"westus": first}

    def test_replan(self) -> None:
        """Test a replanned network has one prefix and one managed subnet."""
        network = NetworkResource(
            name="vnet",
            region="westus",
            address_prefixes=["10.0.0.0/16", "10.1.0.0/16"],
            subnets=[
                SubnetResource(name="dspm-westus", address_prefix="10.0.0.0/24"),
                SubnetResource(name="aux", address_prefix="10.1.0.0/24"),
            ],
            tags={"dspm": "true"},
        )
        gateway = NatGatewayResource(name="ng", id="nat-id", region="westus")

        replanned = replan(network, "10.5.0.0/24", "dspm", gateway)

        assert replanned.address_prefixes == ["10.5.0.0/24"]
        assert [(s.name, s.address_prefix, s.nat_gateway_id) for s in replanned.subnets] == [
            ("dspm-westus", "10.5.0.0/24", "nat-id")
        ]
        assert replanned.tags == {"dspm": "true"}
        assert len(network.subnets) == 2
        assert is_already_planned(replanned, "10.5.0.0/24", "dspm")
        assert not is_already_planned(network, "10.5.0.0/24", "dspm")


class TestReconcileFirewalls:
    """Tests for storage firewall reconciliation."""

    def test_reconcile(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test paired accounts are locked down and unpaired ones skipped."""
        result = Reconciler(applier, "dspm").reconcile_firewalls(discover(), DESIRED_IPS)

        assert statuses(result) == {
            "stdspmwestus": OutcomeStatus.SUCCESS,
            "stdspmeastus": OutcomeStatus.SUCCESS,
            "stdspmcentralus": OutcomeStatus.SKIPPED,
        }
        assert result.success
        assert result.skipped[0].detail == "no tagged network in region"

        westus = state.storage_accounts[(SCANNER_RG, "stdspmwestus")].network_rule_set
        assert westus.default_action == "Deny"
        assert [r.ip_address_or_range for r in westus.ip_rules] == DESIRED_IPS
        assert [r.virtual_network_resource_id for r in westus.virtual_network_rules] == [
            state.subnet_id(SCANNER_RG, "vnet-dspm-westus", "dspm-westus")
        ]

        eastus = state.storage_accounts[(SCANNER_RG, "stdspmeastus")].network_rule_set
        assert [r.virtual_network_resource_id for r in eastus.virtual_network_rules] == [
            state.subnet_id(SCANNER_RG, "vnet-dspm-eastus", "dspm-eastus"),
            state.subnet_id(SCANNER_RG, "vnet-dspm-eastus", "aux"),
        ]

        untouched = state.storage_accounts[(SCANNER_RG, "stdspmcentralus")].network_rule_set
        assert untouched.default_action == "Allow"
        assert untouched.ip_rules == []

    def test_subnet_endpoints_attached(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test the managed subnet gains endpoints and keeps its prefix and NSG."""
        Reconciler(applier, "dspm").reconcile_firewalls(discover(), DESIRED_IPS)

        subnet = state.networks[(SCANNER_RG, "vnet-dspm-westus")].subnets[0]
        assert subnet.address_prefix == "10.0.1.0/24"
        assert [e.service for e in subnet.service_endpoints] == [
            "Microsoft.Storage",
            "Microsoft.AzureCosmosDB",
            "Microsoft.Sql",
        ]
        assert subnet.network_security_group.id == NSG_ID

        aux = state.networks[(SCANNER_RG, "vnet-dspm-eastus")].subnets[1]
        assert aux.service_endpoints == []

    def test_region_filter(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test accounts outside the filter are skipped without writes."""
        result = Reconciler(applier, "dspm").reconcile_firewalls(
            discover(), DESIRED_IPS, region_filter={"West US"}
        )

        assert [o.name for o in result.succeeded] == ["stdspmwestus"]
        assert {o.detail for o in result.skipped} == {"region excluded by filter"}
        assert state.calls_for(OP_STORAGE_UPDATE) == ["stdspmwestus"]
        assert state.calls_for(OP_SUBNET_UPDATE) == ["dspm-westus"]

    def test_missing_subnet_fails(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test a network without the managed subnet fails that account only."""
        add_centralus_network(state, subnet_name="workloads")

        result = Reconciler(applier, "dspm").reconcile_firewalls(discover(), DESIRED_IPS)

        assert statuses(result)["stdspmcentralus"] == OutcomeStatus.FAILED
        assert result.failed[0].detail == (
            "subnet dspm-centralus not found in network vnet-dspm-centralus"
        )
        assert "stdspmcentralus" not in state.calls_for(OP_STORAGE_UPDATE)

    def test_subnet_failure_skips_firewall(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test the firewall is not touched when the endpoint update fails."""
        state.inject_error(OP_SUBNET_UPDATE, "dspm-westus")

        result = Reconciler(applier, "dspm").reconcile_firewalls(discover(), DESIRED_IPS)

        assert statuses(result)["stdspmwestus"] == OutcomeStatus.FAILED
        assert state.calls_for(OP_STORAGE_UPDATE) == ["stdspmeastus"]

    def test_failure_is_isolated(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test one failing account does not stop the others."""
        add_centralus_network(state)
        state.inject_error(OP_STORAGE_UPDATE, "stdspmeastus")

        result = Reconciler(applier, "dspm").reconcile_firewalls(discover(), DESIRED_IPS)

        assert statuses(result) == {
            "stdspmwestus": OutcomeStatus.SUCCESS,
            "stdspmeastus": OutcomeStatus.FAILED,
            "stdspmcentralus": OutcomeStatus.SUCCESS,
        }
        assert not result.success
        assert "Simulated failure" in result.failed[0].detail
        assert state.storage_accounts[(SCANNER_RG, "stdspmeastus")].network_rule_set.ip_rules == []

    def test_idempotent(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test a second run converges on the same configuration."""
        reconciler = Reconciler(applier, "dspm")

        reconciler.reconcile_firewalls(discover(), DESIRED_IPS)
        first_accounts = copy.deepcopy(state.storage_accounts)
        first_networks = copy.deepcopy(state.networks)

        second = reconciler.reconcile_firewalls(discover(), DESIRED_IPS)

        assert second.success
        assert state.storage_accounts == first_accounts
        assert state.networks == first_networks

    def test_progress(
        self,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test progress is reported after every account."""
        reports: list[Progress] = []

        Reconciler(applier, "dspm", progress=reports.append).reconcile_firewalls(
            discover(), DESIRED_IPS
        )

        assert [(p.processed, p.total) for p in reports] == [(1, 3), (2, 3), (3, 3)]
        assert reports[-1].fraction == 1.0

    def test_dry_run(
        self,
        state: MockResourceState,
        config: Config,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test dry run reports success without writing."""
        applier = ConfigurationApplier(
            MockNetworkClient(state),
            MockStorageClient(state),
            SCANNER_RG,
            replace(config, dry_run=True),
        )

        result = Reconciler(applier, "dspm").reconcile_firewalls(discover(), DESIRED_IPS)

        assert all(o.detail.startswith("dry run: ") for o in result.succeeded)
        assert state.calls == []


class TestReplanNetworks:
    """Tests for address replanning."""

    PLAN = {"westus": "10.5.0.0/24", "eastus": "10.6.0.0/24"}

    def test_replan(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test each network ends with one prefix and one managed subnet."""
        result = Reconciler(applier, "dspm").replan_networks(discover(), self.PLAN)

        assert result.success
        assert [o.name for o in result.succeeded] == ["vnet-dspm-westus", "vnet-dspm-eastus"]
        assert result.succeeded[0].detail == "10.0.1.0/24 -> 10.5.0.0/24, NAT gateway ng-dspm-westus"

        westus = state.networks[(SCANNER_RG, "vnet-dspm-westus")]
        assert westus.address_space.address_prefixes == ["10.5.0.0/24"]
        assert [(s.name, s.address_prefix) for s in westus.subnets] == [
            ("dspm-westus", "10.5.0.0/24")
        ]
        assert westus.subnets[0].nat_gateway.id == state.nat_gateways[
            (SCANNER_RG, "ng-dspm-westus")
        ].id

        eastus = state.networks[(SCANNER_RG, "vnet-dspm-eastus")]
        assert eastus.address_space.address_prefixes == ["10.6.0.0/24"]
        assert [s.name for s in eastus.subnets] == ["dspm-eastus"]
        assert eastus.subnets[0].nat_gateway is None

        unrelated = state.networks[(SCANNER_RG, "vnet-unrelated")]
        assert unrelated.address_space.address_prefixes == ["192.168.0.0/16"]

    def test_replan_keeps_dns_servers(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test network properties outside the address space survive a replan."""
        state.add_network(
            SCANNER_RG,
            "vnet-dspm-eastus",
            "eastus",
            ["10.0.2.0/24"],
            subnets=[{"name": "dspm-eastus", "address_prefix": "10.0.2.0/24"}],
            tags={"dspm": "true"},
            dns_servers=["10.0.0.4"],
        )

        result = Reconciler(applier, "dspm").replan_networks(discover(), self.PLAN)

        assert result.success
        eastus = state.networks[(SCANNER_RG, "vnet-dspm-eastus")]
        assert eastus.address_space.address_prefixes == ["10.6.0.0/24"]
        assert eastus.dhcp_options.dns_servers == ["10.0.0.4"]

    def test_unplanned_region_skipped(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test networks without a planned CIDR are left alone."""
        result = Reconciler(applier, "dspm").replan_networks(discover(), {"westus": "10.5.0.0/24"})

        assert statuses(result)["vnet-dspm-eastus"] == OutcomeStatus.SKIPPED
        assert result.skipped[0].detail == "no CIDR planned for region"
        assert state.calls_for(OP_VNET_UPDATE) == ["vnet-dspm-westus"]

    def test_region_filter(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test the region filter narrows the networks replanned."""
        result = Reconciler(applier, "dspm").replan_networks(
            discover(), self.PLAN, region_filter={"eastus"}
        )

        assert [o.name for o in result.succeeded] == ["vnet-dspm-eastus"]
        assert state.calls_for(OP_VNET_UPDATE) == ["vnet-dspm-eastus"]

    def test_already_planned_skipped(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test a second run skips networks at the planned shape unless forced."""
        reconciler = Reconciler(applier, "dspm")
        reconciler.replan_networks(discover(), self.PLAN)

        second = reconciler.replan_networks(discover(), self.PLAN)
        assert {o.detail for o in second.skipped} == {
            "already uses 10.5.0.0/24",
            "already uses 10.6.0.0/24",
        }
        assert len(state.calls_for(OP_VNET_UPDATE)) == 2

        forced = reconciler.replan_networks(discover(), self.PLAN, force=True)
        assert len(forced.succeeded) == 2
        assert len(state.calls_for(OP_VNET_UPDATE)) == 4

    def test_backup_before_change(
        self,
        tmp_path: Path,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test every replanned network is backed up."""
        writer = BackupWriter(tmp_path / "backups")

        result = Reconciler(applier, "dspm").replan_networks(
            discover(), self.PLAN, backup_writer=writer
        )

        backups = sorted(p.name for p in (tmp_path / "backups").iterdir())
        assert len(backups) == 2
        assert backups[0].startswith("vnet-dspm-eastus-eastus-")
        assert backups[1].startswith("vnet-dspm-westus-westus-")
        assert all(", backup " in o.detail for o in result.succeeded)

    def test_backup_failure_prevents_change(
        self,
        tmp_path: Path,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test a network is not modified when its backup cannot be written."""
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("", encoding="utf-8")

        result = Reconciler(applier, "dspm").replan_networks(
            discover(), self.PLAN, backup_writer=BackupWriter(blocker)
        )

        assert len(result.failed) == 2
        assert all("Failed to write backup" in o.detail for o in result.failed)
        assert state.calls_for(OP_VNET_UPDATE) == []
        assert state.networks[(SCANNER_RG, "vnet-dspm-eastus")].address_space.address_prefixes == [
            "10.0.2.0/24"
        ]

    def test_provider_rejection(
        self,
        state: MockResourceState,
        applier: ConfigurationApplier,
        discover: Callable[[], Inventory],
    ) -> None:
        """Test a rejected network leaves the other regions replanned."""
        state.inject_error(OP_VNET_UPDATE, "vnet-dspm-westus")

        result = Reconciler(applier, "dspm").replan_networks(discover(), self.PLAN)

        assert statuses(result) == {
            "vnet-dspm-westus": OutcomeStatus.FAILED,
            "vnet-dspm-eastus": OutcomeStatus.SUCCESS,
        }
        westus = state.networks[(SCANNER_RG, "vnet-dspm-westus")]
        assert westus.address_space.address_prefixes == ["10.0.1.0/24"]
