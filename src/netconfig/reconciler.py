"""Reconciliation of scanner networks and storage firewalls.

Two procedures are implemented on top of a discovered Inventory:

Firewall reconciliation (reconcile_firewalls):
1. Pair every storage account with the tagged network in its region
2. Attach the required service endpoints to the region's scanner subnet
3. Lock the storage account down to the IP allow-list and the network's
   subnets (default deny, platform traffic bypassed)

Address replanning (replan_networks):
1. Resolve each region's new CIDR from an address plan
2. Optionally back the network up
3. Replace the network's address space and all of its subnets with a
   single prefix and a single scanner subnet

Both procedures process one resource at a time. A failure is recorded
against the resource and the batch carries on; the caller receives every
outcome in a ReconcileResult. Only configuration errors, raised before the
loop, stop a run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from azure.core.exceptions import AzureError

from .applier import ApplyResult, ConfigurationApplier, ProviderError
from .backup import BackupError, BackupWriter
from .config import REQUIRED_SERVICE_ENDPOINTS, normalize_region
from .inventory import Inventory
from .models import (
    FIREWALL_BYPASS,
    FirewallRuleSet,
    NatGatewayResource,
    NetworkResource,
    StorageResource,
    SubnetResource,
    subnet_name_for,
)

logger = logging.getLogger(__name__)


class ReconcileError(Exception):
    """Raised when a single resource cannot be reconciled."""

    pass


class OutcomeStatus(str, Enum):
    """Outcome of processing one resource."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ResourceOutcome:
    """What happened to one resource during a run."""

    name: str
    region: str
    status: OutcomeStatus
    detail: str = ""


@dataclass
class Progress:
    """Progress report emitted after each resource."""

    processed: int
    total: int
    name: str
    region: str

    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 1.0
        return self.processed / self.total


ProgressCallback = Callable[[Progress], None]


@dataclass
class ReconcileResult:
    """Result of a reconciliation run."""

    operation: str
    outcomes: list[ResourceOutcome] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def _with_status(self, status: OutcomeStatus) -> list[ResourceOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> list[ResourceOutcome]:
        return self._with_status(OutcomeStatus.SUCCESS)

    @property
    def skipped(self) -> list[ResourceOutcome]:
        return self._with_status(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> list[ResourceOutcome]:
        return self._with_status(OutcomeStatus.FAILED)

    @property
    def success(self) -> bool:
        """Check if every resource was reconciled or skipped."""
        return not self.failed


# =============================================================================
# Pure Helpers
# =============================================================================


def index_networks_by_region(networks: Iterable[NetworkResource]) -> dict[str, NetworkResource]:
    """Index networks by region, keeping the first network of each region."""
    index: dict[str, NetworkResource] = {}
    for network in networks:
        existing = index.get(network.region)
        if existing is not None:
            logger.warning(
                "Multiple tagged networks in region, using the first",
                extra={"region": network.region, "used": existing.name, "ignored": network.name},
            )
            continue
        index[network.region] = network
    return index


def index_nat_gateways_by_region(
    gateways: Iterable[NatGatewayResource],
) -> dict[str, NatGatewayResource]:
    """Index NAT gateways by region, keeping the first gateway of each region."""
    index: dict[str, NatGatewayResource] = {}
    for gateway in gateways:
        index.setdefault(gateway.region, gateway)
    return index


def merge_service_endpoints(existing: Sequence[str], required: Sequence[str]) -> list[str]:
    """Existing endpoints followed by any missing required ones."""
    merged = list(existing)
    present = {endpoint.lower() for endpoint in existing}
    for endpoint in required:
        if endpoint.lower() not in present:
            merged.append(endpoint)
            present.add(endpoint.lower())
    return merged


def build_firewall_rule_set(
    desired_ips: Sequence[str],
    subnet_ids: Sequence[str],
) -> FirewallRuleSet:
    """Desired firewall: allow the listed IPs and subnets, deny everything else."""
    return FirewallRuleSet(
        ip_rules=list(dict.fromkeys(desired_ips)),
        virtual_network_rules=list(dict.fromkeys(subnet_ids)),
        default_action="Deny",
        bypass=list(FIREWALL_BYPASS),
    )


def replan(
    network: NetworkResource,
    new_cidr: str,
    tag: str,
    nat_gateway: NatGatewayResource | None = None,
) -> NetworkResource:
    """Compute the replanned definition of a network.

    Every existing prefix and subnet is dropped, including subnets this
    tool does not manage. The result has exactly one prefix and one subnet
    named <tag>-<region> covering it.
    """
    subnet = SubnetResource(
        name=subnet_name_for(tag, network.region),
        address_prefix=new_cidr,
        nat_gateway_id=nat_gateway.id if nat_gateway else None,
    )
    return network.model_copy(
        update={"address_prefixes": [new_cidr], "subnets": [subnet]},
        deep=True,
    )


def is_already_planned(network: NetworkResource, cidr: str, tag: str) -> bool:
    """Check whether a network already matches its replanned shape."""
    if network.address_prefixes != [cidr] or len(network.subnets) != 1:
        return False
    subnet = network.subnets[0]
    return (
        subnet.name.lower() == subnet_name_for(tag, network.region)
        and subnet.address_prefix == cidr
    )


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    """Drives the applier over an inventory snapshot.

    The reconciler holds no discovery state of its own; the inventory is
    passed into each call so runs can be tested against synthetic inventories.
    """

    def __init__(
        self,
        applier: ConfigurationApplier,
        tag: str,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            applier: Writes configuration to the provider.
            tag: Scanner tag; subnets are named <tag>-<region>.
            progress: Called after each resource is processed.
        """
        self._applier = applier
        self._tag = tag
        self._progress = progress

    def reconcile_firewalls(
        self,
        inventory: Inventory,
        desired_ips: Sequence[str],
        region_filter: set[str] | None = None,
    ) -> ReconcileResult:
        """Reconcile the firewall of every storage account in the inventory."""
        result = ReconcileResult(operation="firewall")
        networks_by_region = index_networks_by_region(inventory.networks)
        regions = _normalize_filter(region_filter)
        total = len(inventory.storage_resources)

        logger.info(
            "Starting firewall reconciliation",
            extra={
                "resource_group": inventory.resource_group.name,
                "storage_accounts": total,
                "networks": len(networks_by_region),
                "ip_rules": len(desired_ips),
                "region_filter": sorted(regions) if regions else None,
            },
        )

        for index, storage in enumerate(inventory.storage_resources, start=1):
            if regions is not None and storage.region not in regions:
                outcome = self._skip(storage.name, storage.region, "region excluded by filter")
            elif (network := networks_by_region.get(storage.region)) is None:
                outcome = self._skip(
                    storage.name, storage.region, "no tagged network in region"
                )
            else:
                outcome = self._guarded(
                    storage.name,
                    storage.region,
                    lambda: self._reconcile_storage(storage, network, desired_ips),  # noqa: B023
                )

            result.outcomes.append(outcome)
            self._report(index, total, storage.name, storage.region)

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def replan_networks(
        self,
        inventory: Inventory,
        plan: dict[str, str],
        region_filter: set[str] | None = None,
        backup_writer: BackupWriter | None = None,
        force: bool = False,
    ) -> ReconcileResult:
        """Replace the address space of every tagged network with a planned CIDR.

        Args:
            inventory: Discovered networks and NAT gateways.
            plan: Region to CIDR. Regions absent from the plan are skipped.
            region_filter: Only these regions are processed when given.
            backup_writer: Backs each network up before it is modified.
            force: Replace networks that already have the planned shape.
        """
        result = ReconcileResult(operation="replan")
        nat_gateways = index_nat_gateways_by_region(inventory.nat_gateways)
        regions = _normalize_filter(region_filter)
        planned = {normalize_region(region): cidr for region, cidr in plan.items()}
        total = len(inventory.networks)

        logger.info(
            "Starting address replan",
            extra={
                "resource_group": inventory.resource_group.name,
                "networks": total,
                "planned_regions": sorted(planned),
                "backup": backup_writer is not None,
                "force": force,
            },
        )

        for index, network in enumerate(inventory.networks, start=1):
            cidr = planned.get(network.region)
            if regions is not None and network.region not in regions:
                outcome = self._skip(network.name, network.region, "region excluded by filter")
            elif cidr is None:
                outcome = self._skip(network.name, network.region, "no CIDR planned for region")
            elif not force and is_already_planned(network, cidr, self._tag):
                outcome = self._skip(network.name, network.region, f"already uses {cidr}")
            else:
                outcome = self._guarded(
                    network.name,
                    network.region,
                    lambda: self._replan_network(  # noqa: B023
                        network, cidr, nat_gateways.get(network.region), backup_writer
                    ),
                )

            result.outcomes.append(outcome)
            self._report(index, total, network.name, network.region)

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _reconcile_storage(
        self,
        storage: StorageResource,
        network: NetworkResource,
        desired_ips: Sequence[str],
    ) -> str:
        """Attach service endpoints, then apply the storage firewall.

        Returns:
            Outcome detail.

        Raises:
            ReconcileError: If the scanner subnet does not exist.
            AzureError: If a provider call fails.
        """
        subnet_name = subnet_name_for(self._tag, network.region)
        subnet = network.get_subnet(subnet_name)
        if subnet is None:
            raise ReconcileError(f"subnet {subnet_name} not found in network {network.name}")

        subnet_result = self._applier.update_subnet(
            network,
            subnet.name,
            merge_service_endpoints(subnet.service_endpoints, REQUIRED_SERVICE_ENDPOINTS),
        )

        rule_set = build_firewall_rule_set(desired_ips, network.subnet_ids)
        firewall_result = self._applier.update_storage_firewall(storage, rule_set)

        return _apply_detail(
            [subnet_result, firewall_result],
            f"{len(rule_set.ip_rules)} IP rules, {len(rule_set.virtual_network_rules)} subnet rules",
        )

    def _replan_network(
        self,
        network: NetworkResource,
        cidr: str,
        nat_gateway: NatGatewayResource | None,
        backup_writer: BackupWriter | None,
    ) -> str:
        """Back up (optionally) and replace a network's address space.

        Raises:
            BackupError: If the backup fails; the network is left untouched.
            AzureError: If the provider rejects the new definition.
        """
        backup_path = backup_writer.backup(network) if backup_writer else None

        replanned = replan(network, cidr, self._tag, nat_gateway)
        new_subnet = replanned.subnets[0]

        removed = [subnet.name for subnet in network.subnets]
        if removed:
            logger.warning(
                "Removing all existing subnets",
                extra={"network": network.name, "region": network.region, "subnets": removed},
            )

        apply_result = self._applier.replace_network_address_space(network, cidr, new_subnet)

        detail = f"{', '.join(network.address_prefixes) or 'none'} -> {cidr}"
        if nat_gateway:
            detail += f", NAT gateway {nat_gateway.name}"
        if backup_path:
            detail += f", backup {backup_path}"
        return _apply_detail([apply_result], detail)

    def _guarded(self, name: str, region: str, action: Callable[[], str]) -> ResourceOutcome:
        """Run the per-resource action, converting failures into outcomes."""
        try:
            detail = action()
        except (AzureError, ProviderError, BackupError, ReconcileError) as e:
            logger.error(
                "Failed to reconcile resource",
                extra={
                    "resource": name,
                    "region": region,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return ResourceOutcome(name, region, OutcomeStatus.FAILED, str(e))
        except Exception as e:
            logger.exception(
                "Unexpected error reconciling resource",
                extra={"resource": name, "region": region, "error": str(e)},
            )
            return ResourceOutcome(name, region, OutcomeStatus.FAILED, str(e))

        logger.info("Resource reconciled", extra={"resource": name, "region": region})
        return ResourceOutcome(name, region, OutcomeStatus.SUCCESS, detail)

    def _skip(self, name: str, region: str, reason: str) -> ResourceOutcome:
        logger.info("Skipping resource", extra={"resource": name, "region": region, "reason": reason})
        return ResourceOutcome(name, region, OutcomeStatus.SKIPPED, reason)

    def _report(self, processed: int, total: int, name: str, region: str) -> None:
        if self._progress is not None:
            self._progress(Progress(processed=processed, total=total, name=name, region=region))

    def _log_result(self, result: ReconcileResult) -> None:
        log_data = {
            "operation": result.operation,
            "duration_seconds": round(result.duration_seconds, 2),
            "succeeded": len(result.succeeded),
            "skipped": len(result.skipped),
            "failed": len(result.failed),
        }
        if result.success:
            logger.info("Reconciliation completed", extra=log_data)
        else:
            log_data["failed_resources"] = [o.name for o in result.failed]
            logger.warning("Reconciliation completed with failures", extra=log_data)


def _normalize_filter(region_filter: set[str] | None) -> set[str] | None:
    if region_filter is None:
        return None
    return {normalize_region(region) for region in region_filter}


def _apply_detail(results: Sequence[ApplyResult], detail: str) -> str:
    if any(not r.applied for r in results):
        return f"dry run: {detail}"
    return detail
