"""
Bill-item assignment display.

A bill item can target schools, school groups, zones and regions at the same
time. Only one dimension is shown, picked by a fixed precedence:

    schools > groups (+ their regions and zones) > zones > regions > everyone

Ids that no longer resolve (entity removed since the assignment was made)
render as a "Deleted X" line instead of raising.
"""

from __future__ import annotations

from typing import Mapping, Sequence

from billing_core.domain.models import FeeTargeting, Lookups

ALL_SCHOOLS = "Assigned to all Schools"
DELETED_SCHOOL = "Deleted School"
DELETED_GROUP = "Deleted Group"
DELETED_ZONE = "Deleted Zone"
DELETED_REGION = "Deleted Region"

GROUPS_HEADING = "Groups:"
REGIONS_HEADING = "Regions:"
ZONES_HEADING = "Zones:"


def _names(ids: Sequence[int], table: Mapping[int, str]) -> list[str]:
    return [table[i] for i in ids if i in table]


def _names_or_placeholder(
    ids: Sequence[int], table: Mapping[int, str], placeholder: str
) -> list[str]:
    names = _names(ids, table)
    return names if names else [placeholder]


def _section(
    heading: str, ids: Sequence[int], table: Mapping[int, str], placeholder: str
) -> list[str]:
    names = _names(ids, table)
    if names:
        return [heading, *names]
    return [placeholder]


def resolve(targeting: FeeTargeting, lookups: Lookups) -> list[str]:
    """
    Display lines describing who a bill item is billed to.

    Args:
        targeting: The item's four targeting dimensions
        lookups: Name tables for schools, groups, zones and regions

    Returns:
        list[str]: Ordered display lines (never empty)
    """
    if targeting.school_ids:
        return _names_or_placeholder(targeting.school_ids, lookups.schools, DELETED_SCHOOL)

    if targeting.group_ids:
        # Group targeting is scoped within regions/zones, so provenance is shown too
        lines = _section(GROUPS_HEADING, targeting.group_ids, lookups.groups, DELETED_GROUP)
        if targeting.region_ids:
            lines += _section(
                REGIONS_HEADING, targeting.region_ids, lookups.regions, DELETED_REGION
            )
        if targeting.zone_ids:
            lines += _section(ZONES_HEADING, targeting.zone_ids, lookups.zones, DELETED_ZONE)
        return lines

    if targeting.zone_ids:
        return _names_or_placeholder(targeting.zone_ids, lookups.zones, DELETED_ZONE)

    if targeting.region_ids:
        return _names_or_placeholder(targeting.region_ids, lookups.regions, DELETED_REGION)

    return [ALL_SCHOOLS]


def assignment_text(targeting: FeeTargeting, lookups: Lookups) -> str:
    """Resolved lines joined for a single table cell."""
    return "\n".join(resolve(targeting, lookups))


def resolve_bill_items(
    items: Sequence[Mapping], lookups: Lookups
) -> dict[int, list[str]]:
    """Resolve every bill item record, keyed by item id."""
    return {
        int(item["id"]): resolve(FeeTargeting.from_bill_item(item), lookups)
        for item in items
    }
