"""Write operations against the Azure network and storage APIs.

Every call is bounded by the configured request timeout and retried with
exponential backoff on transient provider errors (throttling, 5xx, transport
failures). Non-transient errors propagate to the reconciler, which records
them against the resource being processed.

With dry_run enabled the applier logs the change it would make and issues
no write call at all.
"""

from __future__ import annotations

import ipaddress
import logging
import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from azure.core.exceptions import HttpResponseError, ServiceRequestError, ServiceResponseError
from azure.mgmt.network.models import (
    AddressSpace,
    ServiceEndpointPropertiesFormat,
    SubResource,
    Subnet,
)
from azure.mgmt.storage.models import (
    IPRule,
    NetworkRuleSet,
    StorageAccountUpdateParameters,
    VirtualNetworkRule,
)

from .config import Config
from .models import RULE_ACTION_ALLOW, FirewallRuleSet, NetworkResource, StorageResource, SubnetResource

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP status codes worth retrying
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

PUBLIC_NETWORK_ACCESS_ENABLED = "Enabled"


class ProviderError(Exception):
    """Raised when a provider operation cannot be completed."""

    pass


class ProviderTimeoutError(ProviderError):
    """Raised when a long-running provider operation exceeds its timeout."""

    pass


def is_transient_error(error: BaseException) -> bool:
    """Check whether a provider error is worth retrying."""
    if isinstance(error, ProviderTimeoutError | ServiceRequestError | ServiceResponseError):
        return True
    if isinstance(error, HttpResponseError):
        return error.status_code in TRANSIENT_STATUS_CODES
    return False


def storage_ip_rule_values(ip_range: str) -> list[str]:
    """Storage firewalls reject /31 and /32 ranges; their hosts are listed as bare addresses."""
    network = ipaddress.IPv4Network(ip_range, strict=False)
    if network.prefixlen >= 31:
        return [str(address) for address in network]
    return [ip_range]


@dataclass
class ApplyResult:
    """Result of a single write operation."""

    operation: str
    resource_name: str
    applied: bool
    attempts: int = 0
    response: Any = None


class ConfigurationApplier:
    """Applies desired configuration to networks and storage accounts.

    SAFETY: Each public method is one provider write. The reconciler treats
    each as an atomic unit and never issues partial updates.
    """

    def __init__(
        self,
        network_client: Any,
        storage_client: Any,
        resource_group_name: str,
        config: Config,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the applier.

        Args:
            network_client: azure.mgmt.network NetworkManagementClient.
            storage_client: azure.mgmt.storage StorageManagementClient.
            resource_group_name: Resource group all writes are scoped to.
            config: Run configuration (timeouts, retries, dry run).
            sleep: Sleep function used between retries.
        """
        self._network_client = network_client
        self._storage_client = storage_client
        self._resource_group_name = resource_group_name
        self._config = config
        self._sleep = sleep

    @property
    def dry_run(self) -> bool:
        return self._config.dry_run

    def update_subnet(
        self,
        network: NetworkResource,
        subnet_name: str,
        service_endpoints: Sequence[str],
    ) -> ApplyResult:
        """Set the service endpoints of an existing subnet.

        The current subnet is read and only its endpoints are replaced, so the
        address prefix, NSG, NAT gateway, route table, delegations and
        network policies are written back unchanged.
        """
        endpoints = [ServiceEndpointPropertiesFormat(service=s) for s in service_endpoints]

        def apply() -> Any:
            current = self._network_client.subnets.get(
                self._resource_group_name, network.name, subnet_name
            )
            current.service_endpoints = endpoints
            poller = self._network_client.subnets.begin_create_or_update(
                self._resource_group_name, network.name, subnet_name, current
            )
            return self._wait(poller, f"Subnet update ({subnet_name})")

        return self._execute(
            "update_subnet",
            subnet_name,
            apply,
            details={"network": network.name, "service_endpoints": list(service_endpoints)},
        )

    def update_storage_firewall(
        self,
        storage: StorageResource,
        rule_set: FirewallRuleSet,
        public_network_access: str | None = PUBLIC_NETWORK_ACCESS_ENABLED,
    ) -> ApplyResult:
        """Replace the network rule set of a storage account."""
        parameters = StorageAccountUpdateParameters(
            network_rule_set=NetworkRuleSet(
                bypass=", ".join(rule_set.bypass) if rule_set.bypass else "None",
                default_action=rule_set.default_action,
                ip_rules=[
                    IPRule(ip_address_or_range=value, action=RULE_ACTION_ALLOW)
                    for ip in rule_set.ip_rules
                    for value in storage_ip_rule_values(ip)
                ],
                virtual_network_rules=[
                    VirtualNetworkRule(virtual_network_resource_id=subnet_id, action=RULE_ACTION_ALLOW)
                    for subnet_id in rule_set.virtual_network_rules
                ],
            ),
            public_network_access=public_network_access,
        )

        def apply() -> Any:
            return self._storage_client.storage_accounts.update(
                self._resource_group_name,
                storage.name,
                parameters,
                connection_timeout=self._config.request_timeout_seconds,
                read_timeout=self._config.request_timeout_seconds,
            )

        return self._execute(
            "update_storage_firewall",
            storage.name,
            apply,
            details={
                "ip_rules": len(rule_set.ip_rules),
                "virtual_network_rules": len(rule_set.virtual_network_rules),
                "default_action": rule_set.default_action,
            },
        )

    def replace_network_address_space(
        self,
        network: NetworkResource,
        new_prefix: str,
        new_subnet: SubnetResource,
    ) -> ApplyResult:
        """Persist a network with a single address prefix and a single subnet.

        The current network is read and only its address space and subnets
        are replaced; every other property (DNS servers, DDoS plan, encryption,
        tags) is written back as found. The definition is written in one call:
        either the provider accepts the new address space and subnet together
        or nothing changes.
        """
        subnet = Subnet(
            name=new_subnet.name,
            address_prefix=new_subnet.address_prefix,
            service_endpoints=[
                ServiceEndpointPropertiesFormat(service=s) for s in new_subnet.service_endpoints
            ],
            nat_gateway=(
                SubResource(id=new_subnet.nat_gateway_id) if new_subnet.nat_gateway_id else None
            ),
        )

        def apply() -> Any:
            current = self._network_client.virtual_networks.get(
                self._resource_group_name, network.name
            )
            if current.address_space is None:
                current.address_space = AddressSpace()
            current.address_space.address_prefixes = [new_prefix]
            current.subnets = [subnet]
            poller = self._network_client.virtual_networks.begin_create_or_update(
                self._resource_group_name, network.name, current
            )
            return self._wait(poller, f"Network replace ({network.name})")

        return self._execute(
            "replace_network_address_space",
            network.name,
            apply,
            details={
                "old_prefixes": network.address_prefixes,
                "new_prefix": new_prefix,
                "subnet": new_subnet.name,
                "nat_gateway": new_subnet.nat_gateway_id,
            },
        )

    def _wait(self, poller: Any, operation_name: str) -> Any:
        """Wait for a long-running operation with timeout.

        Raises:
            ProviderTimeoutError: If the operation is still running after the timeout.
        """
        timeout_seconds = self._config.request_timeout_seconds
        result = poller.result(timeout=timeout_seconds)
        if not poller.done():
            logger.error(
                f"{operation_name} timed out",
                extra={"timeout_seconds": timeout_seconds},
            )
            raise ProviderTimeoutError(
                f"{operation_name} did not complete within {timeout_seconds} seconds"
            )
        return result

    def _execute(
        self,
        operation: str,
        resource_name: str,
        func: Callable[[], T],
        details: dict[str, Any],
    ) -> ApplyResult:
        """Run a write operation, honoring dry run and retrying transient errors.

        Raises:
            HttpResponseError: If the provider rejects the request.
            ProviderTimeoutError: If all attempts time out.
        """
        if self._config.dry_run:
            logger.info(
                "Dry run: skipping write",
                extra={"operation": operation, "resource": resource_name, **details},
            )
            return ApplyResult(operation=operation, resource_name=resource_name, applied=False)

        max_attempts = self._config.max_retries + 1
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                response = func()
            except (HttpResponseError, ServiceRequestError, ServiceResponseError, ProviderError) as e:
                last_error = e
                if attempt >= max_attempts or not is_transient_error(e):
                    break

                # Exponential backoff with jitter
                backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Provider call failed, retrying",
                    extra={
                        "operation": operation,
                        "resource": resource_name,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": round(wait_time, 2),
                        "error": str(e),
                    },
                )
                self._sleep(wait_time)
                continue

            logger.info(
                "Applied configuration",
                extra={
                    "operation": operation,
                    "resource": resource_name,
                    "attempt": attempt,
                    **details,
                },
            )
            return ApplyResult(
                operation=operation,
                resource_name=resource_name,
                applied=True,
                attempts=attempt,
                response=response,
            )

        # SAFETY: The loop runs at least once, so last_error is always set here
        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error
