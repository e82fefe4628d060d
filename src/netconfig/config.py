"""Configuration management with validation.

Every run is configured from environment variables, overridden by command
line options, and validated once at construction so that a misconfigured run
aborts before any Azure resource is touched.
"""

from __future__ import annotations

import ipaddress
import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails.

    Configuration errors are fatal and always raised before any mutation.
    """

    pass


# Configuration constants with documented bounds
DEFAULT_RESOURCE_GROUP_PATTERN = "dspm"
DEFAULT_TAG = "dspm"
DEFAULT_BACKUP_DIR = "backups"

DEFAULT_REQUEST_TIMEOUT_SECONDS = 300
MIN_REQUEST_TIMEOUT_SECONDS = 10
MAX_REQUEST_TIMEOUT_SECONDS = 3600

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0

MAX_RESOURCE_GROUP_PATTERN_LENGTH = 90

# Egress addresses of the DSPM SaaS scanners, overridable with DSPM_ALLOWED_IPS
DEFAULT_DSPM_IPS: tuple[str, ...] = (
    "198.51.100.10",
    "198.51.100.11",
    "203.0.113.0/28",
)

# Service endpoints every scanner subnet must carry
REQUIRED_SERVICE_ENDPOINTS: tuple[str, ...] = (
    "Microsoft.AzureCosmosDB",
    "Microsoft.Sql",
    "Microsoft.Storage",
)

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_TAG_PATTERN = r"^[a-z][a-z0-9-]{0,30}$"
VALID_REGION_PATTERN = r"^[a-z][a-z0-9]*$"


@dataclass(frozen=True)
class Config:
    """Run configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-batch.
    """

    subscription_id: str

    # Discovery
    resource_group_pattern: str = DEFAULT_RESOURCE_GROUP_PATTERN
    tag: str = DEFAULT_TAG

    # Backups
    backup_dir: Path = field(default_factory=lambda: Path(DEFAULT_BACKUP_DIR))

    # Provider calls
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS

    # Behavior
    dry_run: bool = False

    # Authentication
    managed_identity_client_id: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.resource_group_pattern:
            errors.append("DSPM_RESOURCE_GROUP_PATTERN must not be empty")
        elif len(self.resource_group_pattern) > MAX_RESOURCE_GROUP_PATTERN_LENGTH:
            errors.append(
                "DSPM_RESOURCE_GROUP_PATTERN exceeds maximum length of "
                f"{MAX_RESOURCE_GROUP_PATTERN_LENGTH}"
            )

        if not re.match(VALID_TAG_PATTERN, self.tag):
            errors.append(f"DSPM_TAG must match pattern {VALID_TAG_PATTERN}: {self.tag}")

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"REQUEST_TIMEOUT must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if not (0 <= self.max_retries <= MAX_RETRIES_LIMIT):
            errors.append(f"MAX_RETRIES must be between 0 and {MAX_RETRIES_LIMIT}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("retry_backoff_base_seconds must not be negative")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Keyword overrides whose value is not None take precedence over the
        environment, which lets the CLI layer its options on top.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            DSPM_RESOURCE_GROUP_PATTERN: Marker matched against resource group names
            DSPM_TAG: Tag key carried by scanner networks (default: dspm)
            DSPM_BACKUP_DIR: Directory for network backups (default: ./backups)
            REQUEST_TIMEOUT: Seconds to wait on a single provider call (default: 300)
            MAX_RETRIES: Retries on transient provider errors (default: 3)
            DRY_RUN: If "true", log intended changes without applying them
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        values: dict[str, object] = {
            "subscription_id": os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            "resource_group_pattern": os.environ.get(
                "DSPM_RESOURCE_GROUP_PATTERN", DEFAULT_RESOURCE_GROUP_PATTERN
            ),
            "tag": os.environ.get("DSPM_TAG", DEFAULT_TAG),
            "backup_dir": Path(os.environ.get("DSPM_BACKUP_DIR", DEFAULT_BACKUP_DIR)),
            "request_timeout_seconds": get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            "max_retries": get_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
            "dry_run": get_bool("DRY_RUN", False),
            "managed_identity_client_id": os.environ.get("AZURE_CLIENT_ID") or None,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)  # type: ignore[arg-type]


def parse_csv_option(value: str | None) -> list[str]:
    """Split a comma-separated option value, dropping blanks and duplicates."""
    if not value:
        return []
    items: list[str] = []
    for raw in value.split(","):
        item = raw.strip()
        if item and item not in items:
            items.append(item)
    return items


def normalize_region(region: str) -> str:
    """Normalize an Azure region name ("West US 2" -> "westus2")."""
    return region.replace(" ", "").lower()


def parse_regions(value: str | None) -> set[str] | None:
    """Parse a region filter option.

    Returns:
        Set of normalized regions, or None when no filter was given.

    Raises:
        ConfigurationError: If a region name is malformed.
    """
    regions = [normalize_region(r) for r in parse_csv_option(value)]
    if not regions:
        return None
    invalid = [r for r in regions if not re.match(VALID_REGION_PATTERN, r)]
    if invalid:
        raise ConfigurationError(f"Invalid region names: {', '.join(invalid)}")
    return set(regions)


def parse_ip_ranges(value: str | None) -> list[str]:
    """Parse the IP allow-list option.

    Falls back to DSPM_ALLOWED_IPS and then to the built-in DSPM SaaS set.

    Raises:
        ConfigurationError: If an entry is not an IPv4 address or range.
    """
    entries = parse_csv_option(value) or parse_csv_option(os.environ.get("DSPM_ALLOWED_IPS"))
    if not entries:
        return list(DEFAULT_DSPM_IPS)

    invalid: list[str] = []
    for entry in entries:
        try:
            ipaddress.IPv4Network(entry, strict=True)
        except ValueError:
            invalid.append(entry)
    if invalid:
        raise ConfigurationError(f"Invalid IP addresses or ranges: {', '.join(invalid)}")
    return entries
