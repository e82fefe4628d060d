"""Address plan resolution for network replanning.

An address plan maps each region to the CIDR its scanner network should use.
Three sources are supported and share one interface:

    LiteralAddressPlan      one CIDR for every region
    CsvAddressPlan          per-region rows from a "Region,Cidr" file
    InteractiveAddressPlan  one operator prompt per region

A region without a resolvable CIDR is left out of the plan. Callers treat
a missing region as "skip", never as "use a default".
"""

from __future__ import annotations

import csv
import ipaddress
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .config import ConfigurationError, normalize_region
from .models import AddressPlanEntry, check_cidr

logger = logging.getLogger(__name__)

AddressPlan = dict[str, str]

CSV_REGION_COLUMN = "region"
CSV_CIDR_COLUMN = "cidr"


class InvalidCidrError(ConfigurationError):
    """Raised when a CIDR literal is malformed."""

    pass


def validate_cidr(value: str) -> str:
    """Validate a CIDR and return its canonical form.

    Raises:
        InvalidCidrError: If the value is not IPv4 a.b.c.d/n without host bits.
    """
    try:
        return check_cidr(value)
    except ValueError as e:
        raise InvalidCidrError(str(e)) from e


class AddressPlanSource(Protocol):
    """Given a region, produce a CIDR or indicate skip (None)."""

    def cidr_for(self, region: str) -> str | None: ...


# =============================================================================
# Sources
# =============================================================================


class LiteralAddressPlan:
    """Every region maps to the same CIDR."""

    def __init__(self, cidr: str) -> None:
        """Validate the literal once, up front.

        Raises:
            InvalidCidrError: If the CIDR is malformed.
        """
        self.cidr = validate_cidr(cidr)

    def cidr_for(self, region: str) -> str | None:
        return self.cidr


@dataclass
class CsvRowError:
    """A CSV row that was skipped."""

    line_number: int
    message: str


class CsvAddressPlan:
    """Per-region CIDRs loaded from a CSV file with a Region,Cidr header.

    The file is read once at construction. Malformed rows are logged and
    skipped; an unreadable file or a missing header is fatal.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.row_errors: list[CsvRowError] = []
        self._entries: AddressPlan = {}
        self._load()

    @property
    def entries(self) -> AddressPlan:
        return dict(self._entries)

    def cidr_for(self, region: str) -> str | None:
        return self._entries.get(normalize_region(region))

    def _load(self) -> None:
        """Parse the CSV file.

        Raises:
            ConfigurationError: If the file cannot be opened or decoded, is not
                valid CSV, or has no valid header.
        """
        try:
            handle = self.path.open(newline="", encoding="utf-8-sig")
        except OSError as e:
            raise ConfigurationError(f"Failed to open CSV file {self.path}: {e}") from e

        with handle:
            reader = csv.reader(handle)
            try:
                header = next(reader, None)
                columns = [c.strip().lower() for c in header] if header else []
                if columns != [CSV_REGION_COLUMN, CSV_CIDR_COLUMN]:
                    raise ConfigurationError(
                        f"CSV file {self.path} must start with the header 'Region,Cidr'"
                    )

                for row in reader:
                    line_number = reader.line_num
                    if not row or all(not cell.strip() for cell in row):
                        continue
                    self._add_row(line_number, row)
            except (UnicodeDecodeError, csv.Error) as e:
                raise ConfigurationError(
                    f"Failed to read CSV file {self.path}: {e}"
                ) from e

        logger.info(
            "Loaded address plan from CSV",
            extra={
                "path": str(self.path),
                "regions": len(self._entries),
                "rows_skipped": len(self.row_errors),
            },
        )

    def _add_row(self, line_number: int, row: list[str]) -> None:
        if len(row) != 2:
            self._reject(line_number, f"expected 2 columns, found {len(row)}")
            return

        try:
            entry = AddressPlanEntry(region=row[0].strip(), cidr=row[1].strip())
        except ValidationError as e:
            reasons = "; ".join(str(err["msg"]) for err in e.errors())
            self._reject(line_number, reasons)
            return

        if entry.region in self._entries:
            self._reject(line_number, f"duplicate region '{entry.region}'")
            return

        self._entries[entry.region] = entry.cidr

    def _reject(self, line_number: int, message: str) -> None:
        self.row_errors.append(CsvRowError(line_number=line_number, message=message))
        logger.error(
            "Skipping invalid CSV row",
            extra={"path": str(self.path), "line": line_number, "error": message},
        )


class InteractiveAddressPlan:
    """Asks the operator for each region's CIDR, one region at a time.

    An empty answer skips the region. An invalid answer is reported and the
    region is skipped as well; neither is retried.
    """

    def __init__(self, prompt: Callable[[str], str | None]) -> None:
        self._prompt = prompt

    def cidr_for(self, region: str) -> str | None:
        answer = self._prompt(region)
        if answer is None or not answer.strip():
            logger.info("No CIDR entered, skipping region", extra={"region": region})
            return None
        try:
            return validate_cidr(answer)
        except InvalidCidrError as e:
            logger.error(
                "Invalid CIDR entered, skipping region",
                extra={"region": region, "error": str(e)},
            )
            return None


# =============================================================================
# Resolution
# =============================================================================


def resolve(source: AddressPlanSource, regions: Iterable[str]) -> AddressPlan:
    """Resolve the desired CIDR of every region in scope.

    Regions are visited in sorted order so interactive prompts are stable.

    Returns:
        Mapping of region to CIDR. Regions without a CIDR are absent.
    """
    plan: AddressPlan = {}
    for region in sorted({normalize_region(r) for r in regions}):
        cidr = source.cidr_for(region)
        if cidr is None:
            logger.info("No CIDR resolved for region, it will be skipped", extra={"region": region})
            continue
        plan[region] = cidr
    return plan


def find_conflicts(plan: AddressPlan) -> list[tuple[str, str]]:
    """Find pairs of regions whose planned CIDRs overlap.

    Returns:
        Sorted list of (region_a, region_b) pairs with region_a < region_b.
    """
    networks = sorted((region, ipaddress.IPv4Network(cidr)) for region, cidr in plan.items())
    conflicts: list[tuple[str, str]] = []
    for index, (region_a, network_a) in enumerate(networks):
        for region_b, network_b in networks[index + 1 :]:
            if network_a.overlaps(network_b):
                conflicts.append((region_a, region_b))
    return conflicts
