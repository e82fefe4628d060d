"""Pytest configuration and fixtures."""

import sys
from collections.abc import Callable
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import (  # noqa: E402
    MockAzureContext,
    MockCredential,
    MockNetworkClient,
    MockResourceState,
    MockStorageClient,
)
from azure_mock.resources import DEFAULT_SUBSCRIPTION_ID  # noqa: E402

from netconfig.applier import ConfigurationApplier  # noqa: E402
from netconfig.config import Config  # noqa: E402
from netconfig.inventory import Inventory, InventoryAdapter  # noqa: E402

SCANNER_RG = "rg-dspm-scanner"
NSG_ID = (
    f"/subscriptions/{DEFAULT_SUBSCRIPTION_ID}/resourceGroups/{SCANNER_RG}"
    "/providers/Microsoft.Network/networkSecurityGroups/nsg-dspm"
)


@pytest.fixture
def state() -> MockResourceState:
    """Scanner resource group with two tagged networks and three storage accounts.

    westus:    tagged network with one managed subnet, NAT gateway, storage account
    eastus:    tagged network with a managed and an unmanaged subnet, storage account
    centralus: storage account only (no paired network)
    """
    state = MockResourceState()
    state.add_resource_group(SCANNER_RG, "westus")
    state.add_resource_group("rg-shared-services", "westus")

    state.add_network(
        SCANNER_RG,
        "vnet-dspm-westus",
        "westus",
        ["10.0.1.0/24"],
        subnets=[
            {
                "name": "dspm-westus",
                "address_prefix": "10.0.1.0/24",
                "service_endpoints": ["Microsoft.Storage"],
                "nsg_id": NSG_ID,
            }
        ],
        tags={"dspm": "true"},
    )
    state.add_network(
        SCANNER_RG,
        "vnet-dspm-eastus",
        "eastus",
        ["10.0.2.0/24"],
        subnets=[
            {"name": "dspm-eastus", "address_prefix": "10.0.2.0/25"},
            {"name": "aux", "address_prefix": "10.0.2.128/25"},
        ],
        tags={"dspm": "true"},
    )
    state.add_network(SCANNER_RG, "vnet-unrelated", "westus", ["192.168.0.0/16"])

    state.add_storage_account(SCANNER_RG, "stdspmwestus", "westus")
    state.add_storage_account(SCANNER_RG, "stdspmeastus", "eastus")
    state.add_storage_account(SCANNER_RG, "stdspmcentralus", "centralus")

    state.add_nat_gateway(SCANNER_RG, "ng-dspm-westus", "westus")
    return state


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration for the mock subscription with instant retries."""
    return Config(
        subscription_id=DEFAULT_SUBSCRIPTION_ID,
        backup_dir=tmp_path / "backups",
        retry_backoff_base_seconds=0,
    )


@pytest.fixture
def applier(state: MockResourceState, config: Config) -> ConfigurationApplier:
    """Applier writing to the mock state."""
    return ConfigurationApplier(
        MockNetworkClient(state),
        MockStorageClient(state),
        SCANNER_RG,
        config,
        sleep=lambda _: None,
    )


@pytest.fixture
def discover(state: MockResourceState, config: Config) -> Callable[[], Inventory]:
    """Discover a fresh inventory snapshot from the mock state."""

    def _discover() -> Inventory:
        with MockAzureContext(state):
            return InventoryAdapter(MockCredential(), config).discover()

    return _discover
