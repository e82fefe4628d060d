"""Inventory discovery through the Azure management APIs.

The adapter lists the scanner resource group and everything the
reconciler works on inside it:
- Virtual networks carrying the scanner tag
- Storage accounts
- NAT gateways

Results are converted to the pydantic models in models.py and returned as
an immutable Inventory snapshot. Nothing is cached between runs.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Any

from azure.core.credentials import TokenCredential
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.storage import StorageManagementClient

from .config import Config, ConfigurationError
from .models import (
    FirewallRuleSet,
    NatGatewayResource,
    NetworkResource,
    ResourceGroup,
    StorageResource,
    SubnetResource,
)

logger = logging.getLogger(__name__)

_GLOB_CHARACTERS = ("*", "?", "[")


def _enum_value(value: Any) -> str | None:
    """Convert an SDK enum (or plain string) to its string value."""
    if value is None:
        return None
    return str(getattr(value, "value", value))


def _sub_resource_id(value: Any) -> str | None:
    """Extract the ID of an SDK sub-resource reference."""
    if value is None:
        return None
    return getattr(value, "id", None)


def matches_pattern(name: str, pattern: str) -> bool:
    """Match a resource name against a marker.

    Glob patterns are matched with fnmatch; plain markers match as a
    case-insensitive substring.
    """
    name_lower = name.lower()
    pattern_lower = pattern.lower()
    if any(ch in pattern_lower for ch in _GLOB_CHARACTERS):
        return fnmatch.fnmatchcase(name_lower, pattern_lower)
    return pattern_lower in name_lower


# =============================================================================
# SDK Conversion
# =============================================================================


def subnet_from_sdk(subnet: Any) -> SubnetResource:
    """Convert an azure.mgmt.network Subnet."""
    address_prefix = subnet.address_prefix
    if not address_prefix and getattr(subnet, "address_prefixes", None):
        address_prefix = subnet.address_prefixes[0]

    return SubnetResource(
        id=subnet.id,
        name=subnet.name,
        address_prefix=address_prefix or "",
        service_endpoints=[
            endpoint.service for endpoint in (subnet.service_endpoints or []) if endpoint.service
        ],
        nat_gateway_id=_sub_resource_id(getattr(subnet, "nat_gateway", None)),
        network_security_group_id=_sub_resource_id(
            getattr(subnet, "network_security_group", None)
        ),
    )


def network_from_sdk(vnet: Any) -> NetworkResource:
    """Convert an azure.mgmt.network VirtualNetwork."""
    address_space = vnet.address_space
    prefixes = list(address_space.address_prefixes or []) if address_space else []

    return NetworkResource(
        id=vnet.id,
        name=vnet.name,
        region=vnet.location,
        address_prefixes=prefixes,
        subnets=[subnet_from_sdk(s) for s in (vnet.subnets or [])],
        tags=dict(vnet.tags or {}),
    )


def rule_set_from_sdk(rule_set: Any) -> FirewallRuleSet | None:
    """Convert an azure.mgmt.storage NetworkRuleSet."""
    if rule_set is None:
        return None

    bypass = _enum_value(rule_set.bypass) or ""
    return FirewallRuleSet(
        ip_rules=[rule.ip_address_or_range for rule in (rule_set.ip_rules or [])],
        virtual_network_rules=[
            rule.virtual_network_resource_id for rule in (rule_set.virtual_network_rules or [])
        ],
        default_action=_enum_value(rule_set.default_action) or "Allow",
        bypass=[item.strip() for item in bypass.split(",") if item.strip() and item != "None"],
    )


def storage_from_sdk(account: Any) -> StorageResource:
    """Convert an azure.mgmt.storage StorageAccount."""
    return StorageResource(
        id=account.id,
        name=account.name,
        region=account.location,
        network_rule_set=rule_set_from_sdk(account.network_rule_set),
        public_network_access=_enum_value(getattr(account, "public_network_access", None)),
    )


def nat_gateway_from_sdk(gateway: Any) -> NatGatewayResource:
    """Convert an azure.mgmt.network NatGateway."""
    return NatGatewayResource(id=gateway.id, name=gateway.name, region=gateway.location)


# =============================================================================
# Inventory Snapshot
# =============================================================================


@dataclass(frozen=True)
class Inventory:
    """Point-in-time view of the scanner resource group.

    Attributes:
        resource_group: The single resource group matched by the marker
        networks: Virtual networks carrying the scanner tag
        storage_resources: Storage accounts to be firewalled
        nat_gateways: NAT gateways available for new subnets
    """

    resource_group: ResourceGroup
    networks: list[NetworkResource] = field(default_factory=list)
    storage_resources: list[StorageResource] = field(default_factory=list)
    nat_gateways: list[NatGatewayResource] = field(default_factory=list)

    @property
    def regions(self) -> set[str]:
        """Regions that have a tagged network."""
        return {network.region for network in self.networks}


class InventoryAdapter:
    """Read-only view of the Azure resources the reconciler works on."""

    def __init__(self, credential: TokenCredential, config: Config) -> None:
        """Initialize management clients.

        Args:
            credential: Azure credential.
            config: Run configuration.
        """
        self._config = config
        self._resource_client = ResourceManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )
        self._network_client = NetworkManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )
        self._storage_client = StorageManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )

    @property
    def network_client(self) -> NetworkManagementClient:
        return self._network_client

    @property
    def storage_client(self) -> StorageManagementClient:
        return self._storage_client

    def list_resource_groups(self, name_pattern: str) -> list[ResourceGroup]:
        """List resource groups whose name matches the marker pattern."""
        groups = [
            ResourceGroup(name=rg.name, location=rg.location, id=rg.id)
            for rg in self._resource_client.resource_groups.list()
            if rg.name and matches_pattern(rg.name, name_pattern)
        ]
        logger.debug(
            "Listed resource groups",
            extra={"pattern": name_pattern, "matches": [g.name for g in groups]},
        )
        return groups

    def find_resource_group(self, name_pattern: str) -> ResourceGroup:
        """Find the single resource group matching the marker pattern.

        Raises:
            ConfigurationError: If zero or more than one group matches.
        """
        groups = self.list_resource_groups(name_pattern)
        if not groups:
            raise ConfigurationError(f"No resource group matches pattern '{name_pattern}'")
        if len(groups) > 1:
            names = ", ".join(sorted(g.name for g in groups))
            raise ConfigurationError(
                f"Resource group pattern '{name_pattern}' is ambiguous, matched: {names}"
            )
        return groups[0]

    def list_networks(self, resource_group: ResourceGroup) -> list[NetworkResource]:
        """List virtual networks carrying the scanner tag."""
        tag = self._config.tag.lower()
        networks: list[NetworkResource] = []
        for vnet in self._network_client.virtual_networks.list(resource_group.name):
            tags = {key.lower() for key in (vnet.tags or {})}
            if tag not in tags:
                logger.debug(
                    "Ignoring untagged network",
                    extra={"network": vnet.name, "tag": self._config.tag},
                )
                continue
            networks.append(network_from_sdk(vnet))
        return networks

    def list_storage_resources(self, resource_group: ResourceGroup) -> list[StorageResource]:
        """List storage accounts in the resource group."""
        return [
            storage_from_sdk(account)
            for account in self._storage_client.storage_accounts.list_by_resource_group(
                resource_group.name
            )
        ]

    def list_nat_gateways(self, resource_group: ResourceGroup) -> list[NatGatewayResource]:
        """List NAT gateways in the resource group."""
        return [
            nat_gateway_from_sdk(gateway)
            for gateway in self._network_client.nat_gateways.list(resource_group.name)
        ]

    def discover(self, name_pattern: str | None = None) -> Inventory:
        """Discover the complete inventory of the scanner resource group.

        Raises:
            ConfigurationError: If the resource group cannot be resolved.
        """
        resource_group = self.find_resource_group(
            name_pattern or self._config.resource_group_pattern
        )
        inventory = Inventory(
            resource_group=resource_group,
            networks=self.list_networks(resource_group),
            storage_resources=self.list_storage_resources(resource_group),
            nat_gateways=self.list_nat_gateways(resource_group),
        )
        logger.info(
            "Inventory discovered",
            extra={
                "resource_group": resource_group.name,
                "networks": len(inventory.networks),
                "storage_accounts": len(inventory.storage_resources),
                "nat_gateways": len(inventory.nat_gateways),
            },
        )
        return inventory
