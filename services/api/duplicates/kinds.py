"""
Per-kind merge strategies.

Each duplicate-capable entity kind is described once here: which model it
is, which favoritable type its bookmarks use, which foreign key or join
table points at it, and which counter (if any) is summed on merge. The
merge engine and the duplicate scanner are generic over these objects.

  kind       direct FK            join (own / partner)          counter
  venues     Event.venueId        -                             -
  promoters  Event.promoterId     -                             -
  vendors    -                    EventVendor.vendorId/eventId  -
  events     -                    EventVendor.eventId/vendorId  Event.viewCount
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.api.db.models import Event, EventVendor, Promoter, Vendor, Venue
from services.api.duplicates.errors import UnknownEntityTypeError
from services.api.duplicates.similarity import (
    event_comparison_string,
    promoter_comparison_string,
    vendor_comparison_string,
    venue_comparison_string,
)

EntityType = Literal["venues", "events", "vendors", "promoters"]

RelatedLoader = Callable[[AsyncSession, list[dict]], Awaitable[None]]
WarningRule = Callable[[dict, dict], list[str]]


@dataclass(frozen=True)
class JoinTable:
    """Many-to-many link whose rows are repointed with overlap dedupe."""
    model: type
    own_column: Any       # column pointing at the merged kind
    partner_column: Any   # the complementary key of the pair


@dataclass(frozen=True)
class MergeKind:
    entity_type: str
    model: type
    favoritable_type: str
    count_key: str
    name_column: Any
    comparison_string: Callable[[dict], str]
    fk_column: Any = None
    join: Optional[JoinTable] = None
    counter_column: Any = None
    owner_warning: Optional[str] = None
    overlap_warning: Optional[str] = None
    exact_match_key: Optional[Callable[[dict], Optional[str]]] = None
    attach_related: Optional[RelatedLoader] = None
    related_warnings: Optional[WarningRule] = None

    @property
    def count_column(self) -> Any:
        """Column counted for the ``_count`` annotation."""
        if self.join is not None:
            return self.join.own_column
        return self.fk_column


def entity_snapshot(entity: Any) -> dict:
    """Plain dict of an ORM row's mapped columns, keyed by attribute name."""
    mapper = sa_inspect(entity).mapper
    return {attr.key: getattr(entity, attr.key) for attr in mapper.column_attrs}


# ---------------------------------------------------------------------------
# Event relations
# ---------------------------------------------------------------------------

async def _attach_event_relations(db: AsyncSession, snapshots: list[dict]) -> None:
    """Add ``venue: {name}`` and ``promoter: {companyName}`` to event snapshots."""
    venue_ids = {s["venueId"] for s in snapshots if s.get("venueId")}
    promoter_ids = {s["promoterId"] for s in snapshots if s.get("promoterId")}

    venue_names: dict[str, str] = {}
    if venue_ids:
        result = await db.execute(select(Venue.id, Venue.name).where(Venue.id.in_(venue_ids)))
        venue_names = {row[0]: row[1] for row in result.all()}

    promoter_names: dict[str, str] = {}
    if promoter_ids:
        result = await db.execute(
            select(Promoter.id, Promoter.companyName).where(Promoter.id.in_(promoter_ids))
        )
        promoter_names = {row[0]: row[1] for row in result.all()}

    for snapshot in snapshots:
        venue_name = venue_names.get(snapshot.get("venueId"))
        promoter_name = promoter_names.get(snapshot.get("promoterId"))
        snapshot["venue"] = {"name": venue_name} if venue_name is not None else None
        snapshot["promoter"] = {"companyName": promoter_name} if promoter_name is not None else None


def _related_label(snapshot: dict, relation: str, field: str) -> str:
    related = snapshot.get(relation) or {}
    return related.get(field) or "Unknown"


def _event_warnings(primary: dict, duplicate: dict) -> list[str]:
    warnings = []
    if primary.get("promoterId") != duplicate.get("promoterId"):
        warnings.append(
            f'Events have different promoters: "{_related_label(primary, "promoter", "companyName")}" '
            f'vs "{_related_label(duplicate, "promoter", "companyName")}"'
        )
    if primary.get("venueId") != duplicate.get("venueId"):
        warnings.append(
            f'Events have different venues: "{_related_label(primary, "venue", "name")}" '
            f'vs "{_related_label(duplicate, "venue", "name")}"'
        )
    return warnings


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_EVENT_VENDORS_BY_VENDOR = JoinTable(
    model=EventVendor,
    own_column=EventVendor.vendorId,
    partner_column=EventVendor.eventId,
)

_EVENT_VENDORS_BY_EVENT = JoinTable(
    model=EventVendor,
    own_column=EventVendor.eventId,
    partner_column=EventVendor.vendorId,
)

MERGE_KINDS: dict[str, MergeKind] = {
    "venues": MergeKind(
        entity_type="venues",
        model=Venue,
        favoritable_type="VENUE",
        count_key="events",
        name_column=Venue.name,
        comparison_string=venue_comparison_string,
        fk_column=Event.venueId,
        exact_match_key=lambda venue: venue.get("googlePlaceId"),
    ),
    "promoters": MergeKind(
        entity_type="promoters",
        model=Promoter,
        favoritable_type="PROMOTER",
        count_key="events",
        name_column=Promoter.companyName,
        comparison_string=promoter_comparison_string,
        fk_column=Event.promoterId,
        owner_warning=(
            "These promoters are linked to different user accounts. "
            "Merging will only transfer events and favorites, not the user account."
        ),
    ),
    "vendors": MergeKind(
        entity_type="vendors",
        model=Vendor,
        favoritable_type="VENDOR",
        count_key="eventVendors",
        name_column=Vendor.businessName,
        comparison_string=vendor_comparison_string,
        join=_EVENT_VENDORS_BY_VENDOR,
        owner_warning=(
            "These vendors are linked to different user accounts. "
            "Merging will only transfer event participations and favorites, not the user account."
        ),
        overlap_warning="{count} event(s) have both vendors assigned. Duplicate assignments will be removed.",
    ),
    "events": MergeKind(
        entity_type="events",
        model=Event,
        favoritable_type="EVENT",
        count_key="eventVendors",
        name_column=Event.name,
        comparison_string=event_comparison_string,
        join=_EVENT_VENDORS_BY_EVENT,
        counter_column=Event.viewCount,
        overlap_warning="{count} vendor(s) are assigned to both events. Duplicate assignments will be removed.",
        attach_related=_attach_event_relations,
        related_warnings=_event_warnings,
    ),
}

ENTITY_TYPES: tuple[str, ...] = tuple(MERGE_KINDS)


def get_kind(entity_type: str) -> MergeKind:
    """Resolve an entity type tag. Raises before any I/O on an unknown tag."""
    try:
        return MERGE_KINDS[entity_type]
    except (KeyError, TypeError):
        raise UnknownEntityTypeError(entity_type) from None
