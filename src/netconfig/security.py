"""Azure credential acquisition.

Runs inside Azure use a user-assigned managed identity (AZURE_CLIENT_ID).
Operator workstations fall back to DefaultAzureCredential, which picks up an
Azure CLI or VS Code login.
"""

from __future__ import annotations

import logging

from azure.core.credentials import TokenCredential
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)


def get_credential(managed_identity_client_id: str | None = None) -> TokenCredential:
    """Get the credential used for every management client.

    Args:
        managed_identity_client_id: Client ID of a user-assigned managed
            identity. If None, DefaultAzureCredential is used.

    Returns:
        A token credential for the Azure management plane.
    """
    if managed_identity_client_id:
        client_id = managed_identity_client_id
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential(exclude_interactive_browser_credential=True)
