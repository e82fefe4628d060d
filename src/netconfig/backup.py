"""Point-in-time backups of networks before destructive changes.

A backup is one JSON document per network, named
<network>-<region>-<timestamp>-<suffix>.json so that repeated runs never
overwrite each other. Backups are written, never read: recovery is a manual
step performed by an operator.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from datetime import UTC, datetime
from pathlib import Path

from .models import NetworkResource

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
TOOL_VERSION = os.environ.get("DSPM_NET_VERSION", "dev")

BACKUP_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"


class BackupError(Exception):
    """Raised when a backup cannot be written.

    The network must not be modified when this is raised.
    """

    pass


class BackupWriter:
    """Writes network snapshots to a local directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def backup(self, network: NetworkResource) -> Path:
        """Serialize the full network definition.

        Returns:
            Path of the written backup file.

        Raises:
            BackupError: If the directory or file cannot be written.
        """
        now = datetime.now(UTC)
        filename = (
            f"{network.name}-{network.region}-{now.strftime(BACKUP_TIMESTAMP_FORMAT)}"
            f"-{secrets.token_hex(4)}.json"
        )
        path = self.directory / filename

        document = {
            "backup_time": now.isoformat().replace("+00:00", "Z"),
            "tool_version": TOOL_VERSION,
            "network": network.model_dump(mode="json"),
        }

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # "x" refuses to overwrite an existing backup
            with path.open("x", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, sort_keys=True)
        except (OSError, TypeError, ValueError) as e:
            raise BackupError(f"Failed to write backup of network {network.name}: {e}") from e

        logger.info(
            "Network backup written",
            extra={"network": network.name, "region": network.region, "path": str(path)},
        )
        return path
