"""DSPM network configurator CLI (dspm-net).

Usage:
    dspm-net firewall                          # Lock storage down to the DSPM SaaS IPs
    dspm-net firewall --ips 1.2.3.4 --regions westus
    dspm-net replan --cidr 10.5.0.0/24 --backup
    dspm-net replan --csv plan.csv --regions eastus,westus
    dspm-net replan --interactive

Per-resource failures are reported as warnings and do not change the exit
code. Configuration errors abort the run before anything is modified.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import click

from .address_plan import (
    AddressPlanSource,
    CsvAddressPlan,
    InteractiveAddressPlan,
    LiteralAddressPlan,
    find_conflicts,
    resolve,
)
from .applier import ConfigurationApplier
from .backup import BackupWriter
from .config import Config, ConfigurationError, parse_ip_ranges, parse_regions
from .inventory import Inventory, InventoryAdapter
from .main import setup_logging
from .reconciler import OutcomeStatus, Progress, ReconcileResult, Reconciler
from .security import get_credential

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

_STATUS_COLORS = {
    OutcomeStatus.SUCCESS: "green",
    OutcomeStatus.SKIPPED: None,
    OutcomeStatus.FAILED: "yellow",
}


@dataclass
class Services:
    """Provider-facing collaborators for one run."""

    config: Config
    adapter: InventoryAdapter
    inventory: Inventory
    applier: ConfigurationApplier


def create_services(config: Config) -> Services:
    """Authenticate, discover the inventory and build the applier.

    Raises:
        ConfigurationError: If the scanner resource group cannot be resolved.
    """
    credential = get_credential(config.managed_identity_client_id)
    adapter = InventoryAdapter(credential, config)
    inventory = adapter.discover(config.resource_group_pattern)
    applier = ConfigurationApplier(
        adapter.network_client,
        adapter.storage_client,
        inventory.resource_group.name,
        config,
    )
    return Services(config=config, adapter=adapter, inventory=inventory, applier=applier)


def echo_progress(progress: Progress) -> None:
    """Print one progress line per processed resource."""
    click.echo(
        f"[{progress.processed}/{progress.total}] {progress.name} ({progress.region})",
        err=True,
    )


def report(result: ReconcileResult) -> None:
    """Print every outcome and a summary line."""
    for outcome in result.outcomes:
        line = f"{outcome.status.value:<8} {outcome.name} ({outcome.region})"
        if outcome.detail:
            line += f": {outcome.detail}"
        if outcome.status == OutcomeStatus.FAILED:
            click.secho(f"WARNING: {line}", fg=_STATUS_COLORS[outcome.status])
        else:
            click.secho(line, fg=_STATUS_COLORS[outcome.status])

    summary = (
        f"{result.operation}: {len(result.succeeded)} succeeded, "
        f"{len(result.skipped)} skipped, {len(result.failed)} failed"
    )
    if result.success:
        click.secho(summary, fg="green")
    else:
        click.secho(summary, fg="yellow")
        click.echo("Re-run the command to retry failed resources.")


def prompt_cidr(region: str) -> str | None:
    """Ask the operator for a region's CIDR; a cancelled prompt skips the region."""
    try:
        return click.prompt(f"CIDR for {region} (empty to skip)", default="", show_default=False)
    except click.Abort:
        click.echo(err=True)
        return None


def _load_config(ctx: click.Context, **overrides: object) -> Config:
    try:
        return Config.from_env(**ctx.obj, **overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="dspm-net")
@click.option("--subscription-id", help="Azure subscription (default: $AZURE_SUBSCRIPTION_ID).")
@click.option(
    "--resource-group-pattern",
    help="Marker or glob matched against resource group names (default: dspm).",
)
@click.option("--tag", help="Tag key carried by scanner networks (default: dspm).")
@click.option("--dry-run", is_flag=True, help="Log changes without applying them.")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="text",
    show_default=True,
    help="Log output format.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(
    ctx: click.Context,
    subscription_id: str | None,
    resource_group_pattern: str | None,
    tag: str | None,
    dry_run: bool,
    log_format: str,
    verbose: bool,
) -> None:
    """Configure network access for DSPM scanner resources.

    \b
    Discovers the resource group tagged for the DSPM scanner and reconciles
    storage firewalls, subnet service endpoints and network address ranges.
    """
    setup_logging(log_format=log_format, verbose=verbose)
    ctx.obj = {
        "subscription_id": subscription_id,
        "resource_group_pattern": resource_group_pattern,
        "tag": tag,
        "dry_run": True if dry_run else None,
    }


# =============================================================================
# Firewall Reconciliation
# =============================================================================


@cli.command()
@click.option("--ips", help="Comma-separated IPs or CIDRs to allow (default: DSPM SaaS IPs).")
@click.option("--regions", help="Comma-separated regions to process (default: all).")
@click.pass_context
def firewall(ctx: click.Context, ips: str | None, regions: str | None) -> None:
    """Restrict storage accounts to the allowed IPs and scanner subnets."""
    try:
        desired_ips = parse_ip_ranges(ips)
        region_filter = parse_regions(regions)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    config = _load_config(ctx)
    try:
        services = create_services(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    reconciler = Reconciler(services.applier, config.tag, progress=echo_progress)
    result = reconciler.reconcile_firewalls(services.inventory, desired_ips, region_filter)
    report(result)


# =============================================================================
# Address Replanning
# =============================================================================


@cli.command()
@click.option("--cidr", help="Single CIDR applied to every region.")
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(path_type=Path),
    help="CSV file with a Region,Cidr header.",
)
@click.option("--interactive", is_flag=True, help="Prompt for each region's CIDR.")
@click.option("--regions", help="Comma-separated regions to process (default: all).")
@click.option("--backup/--no-backup", default=False, help="Back up each network before replacing it.")
@click.option(
    "--backup-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Backup directory (default: $DSPM_BACKUP_DIR or ./backups).",
)
@click.option(
    "--force",
    is_flag=True,
    help="Replace networks already at the planned CIDR and accept overlapping plans.",
)
@click.pass_context
def replan(
    ctx: click.Context,
    cidr: str | None,
    csv_path: Path | None,
    interactive: bool,
    regions: str | None,
    backup: bool,
    backup_dir: Path | None,
    force: bool,
) -> None:
    """Replace scanner network address spaces and subnets.

    \b
    WARNING: every existing subnet of a replanned network is deleted and a
    single <tag>-<region> subnet is created in its place.
    """
    sources = [
        name
        for name, given in (("--cidr", cidr), ("--csv", csv_path), ("--interactive", interactive))
        if given
    ]
    if len(sources) != 1:
        raise click.UsageError("Specify exactly one of --cidr, --csv or --interactive.")

    try:
        region_filter = parse_regions(regions)
        source: AddressPlanSource
        if cidr:
            source = LiteralAddressPlan(cidr)
        elif csv_path:
            source = CsvAddressPlan(csv_path)
        else:
            source = InteractiveAddressPlan(prompt_cidr)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    config = _load_config(ctx, backup_dir=backup_dir)
    try:
        services = create_services(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    scope = services.inventory.regions
    if region_filter is not None:
        scope &= region_filter
    plan = resolve(source, scope)

    if not isinstance(source, LiteralAddressPlan):
        conflicts = find_conflicts(plan)
        if conflicts and not force:
            pairs = ", ".join(f"{a}/{b}" for a, b in conflicts)
            raise click.ClickException(
                f"Planned CIDRs overlap between regions: {pairs}. Use --force to proceed."
            )
        for region_a, region_b in conflicts:
            logger.warning(
                "Planned CIDRs overlap",
                extra={"regions": [region_a, region_b], "cidrs": [plan[region_a], plan[region_b]]},
            )

    backup_writer = BackupWriter(config.backup_dir) if backup else None
    reconciler = Reconciler(services.applier, config.tag, progress=echo_progress)
    result = reconciler.replan_networks(
        services.inventory,
        plan,
        region_filter=region_filter,
        backup_writer=backup_writer,
        force=force,
    )
    report(result)
