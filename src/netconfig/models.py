"""Pydantic models for the discovered Azure resources.

These models provide:
1. A provider-independent view of networks, subnets and storage accounts
2. Validation at the boundary (fail fast, fail loudly)
3. Plain data the reconciler and the backup writer can work with
"""

from __future__ import annotations

import ipaddress
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

from .config import normalize_region

# =============================================================================
# Firewall Constants
# =============================================================================

DEFAULT_ACTION_DENY = "Deny"
RULE_ACTION_ALLOW = "Allow"

# Platform traffic that bypasses the storage firewall
FIREWALL_BYPASS: tuple[str, ...] = ("Logging", "Metrics", "AzureServices")


def subnet_name_for(tag: str, region: str) -> str:
    """Name of the managed scanner subnet in a region."""
    return f"{tag}-{normalize_region(region)}"


def check_cidr(value: str) -> str:
    """Validate IPv4 CIDR notation (a.b.c.d/n) without host bits.

    Returns:
        The canonical form of the CIDR.

    Raises:
        ValueError: If the value is not a valid IPv4 network.
    """
    value = value.strip()
    if "/" not in value:
        raise ValueError(f"'{value}' must be in CIDR notation (e.g., 10.0.0.0/24)")
    try:
        network = ipaddress.IPv4Network(value, strict=True)
    except ValueError as e:
        raise ValueError(f"'{value}' is not a valid IPv4 CIDR: {e}") from e
    return str(network)


class _RegionalModel(BaseModel):
    """Base for resources that live in an Azure region."""

    model_config = {"extra": "ignore"}

    region: Annotated[str, Field(min_length=1)]

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        return normalize_region(v)


# =============================================================================
# Discovery Scope
# =============================================================================


class ResourceGroup(BaseModel):
    """Resource group that scopes discovery."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=90)]
    location: str | None = None
    id: str | None = None


# =============================================================================
# Network Resources
# =============================================================================


class SubnetResource(BaseModel):
    """Subnet of a virtual network.

    The parent network owns its subnets list; subnets are replaced wholesale.
    """

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    address_prefix: str
    id: str | None = None
    service_endpoints: list[str] = Field(default_factory=list)
    nat_gateway_id: str | None = None
    network_security_group_id: str | None = None


class NetworkResource(_RegionalModel):
    """Regional virtual network discovered in the scanner resource group."""

    name: Annotated[str, Field(min_length=1, max_length=64)]
    id: str | None = None
    address_prefixes: list[str] = Field(default_factory=list)
    subnets: list[SubnetResource] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)

    def get_subnet(self, name: str) -> SubnetResource | None:
        """Find a subnet by name (case-insensitive)."""
        for subnet in self.subnets:
            if subnet.name.lower() == name.lower():
                return subnet
        return None

    @property
    def subnet_ids(self) -> list[str]:
        """Resource IDs of all subnets, in definition order."""
        return [subnet.id for subnet in self.subnets if subnet.id]


class NatGatewayResource(_RegionalModel):
    """NAT gateway providing outbound connectivity for a region."""

    name: Annotated[str, Field(min_length=1)]
    id: str


# =============================================================================
# Storage Resources
# =============================================================================


class FirewallRuleSet(BaseModel):
    """Network ACL of a storage account.

    Every listed IP range and subnet is allowed; everything else falls
    through to the default action. Bypassed platform traffic is always allowed.
    """

    model_config = {"extra": "ignore"}

    ip_rules: list[str] = Field(default_factory=list)
    virtual_network_rules: list[str] = Field(default_factory=list)
    default_action: str = DEFAULT_ACTION_DENY
    bypass: list[str] = Field(default_factory=lambda: list(FIREWALL_BYPASS))

    @field_validator("default_action")
    @classmethod
    def validate_default_action(cls, v: str) -> str:
        valid_actions = {"Allow", "Deny"}
        if v not in valid_actions:
            raise ValueError(f"default_action must be one of {valid_actions}")
        return v


class StorageResource(_RegionalModel):
    """Storage account to be firewalled."""

    name: Annotated[str, Field(min_length=3, max_length=24)]
    id: str | None = None
    network_rule_set: FirewallRuleSet | None = None
    public_network_access: str | None = None


# =============================================================================
# Address Planning
# =============================================================================


class AddressPlanEntry(_RegionalModel):
    """Desired address range for one region."""

    cidr: str

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return check_cidr(v)
