"""Azure API Mock for Integration Testing.

In-memory stand-ins for the network, storage and resource management
clients, so that discovery and reconciliation can be exercised end to end
without Azure connectivity.

Key Features:
- In-memory state for resource groups, networks, storage accounts and NAT gateways
- SDK-shaped records readable by the inventory adapter
- Long-running operation pollers
- Call recording and per-resource error injection

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        ctx.state.add_resource_group("rg-dspm-scanner")
        ...
        assert ctx.state.calls_for(OP_STORAGE_UPDATE) == ["stwestus"]
"""

from .clients import MockNetworkClient, MockPoller, MockResourceClient, MockStorageClient
from .context import MockAzureContext
from .credential import MockCredential
from .resources import (
    OP_STORAGE_UPDATE,
    OP_SUBNET_UPDATE,
    OP_VNET_UPDATE,
    MockNetworkRuleSet,
    MockResourceState,
    make_http_error,
)

__all__ = [
    "OP_STORAGE_UPDATE",
    "OP_SUBNET_UPDATE",
    "OP_VNET_UPDATE",
    "MockAzureContext",
    "MockCredential",
    "MockNetworkClient",
    "MockNetworkRuleSet",
    "MockPoller",
    "MockResourceClient",
    "MockResourceState",
    "MockStorageClient",
    "make_http_error",
]
