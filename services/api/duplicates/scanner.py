"""
Duplicate scan for one entity kind.

Loads a bounded batch of records ordered by display name, annotates each
with its relationship count, and scores every pair with the similarity
engine. Pure read path: nothing here writes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.api.config import settings
from services.api.duplicates.kinds import MergeKind, entity_snapshot, get_kind
from services.api.duplicates.similarity import DuplicatePair, find_duplicate_pairs

logger = logging.getLogger(__name__)

# Only names feed the comparison strings surfaced to the operator
MATCHED_FIELDS = ["name"]


@dataclass
class DuplicateScan:
    entity_type: str
    threshold: float
    pairs: list[DuplicatePair[dict]] = field(default_factory=list)
    total_entities: int = 0

    def to_dict(self) -> dict:
        return {
            "type": self.entity_type,
            "threshold": self.threshold,
            "duplicates": [
                {
                    "entity1": pair.entity1,
                    "entity2": pair.entity2,
                    "similarity": pair.similarity,
                    "matchedFields": list(MATCHED_FIELDS),
                }
                for pair in self.pairs
            ],
            "totalEntities": self.total_entities,
        }


async def _relationship_counts(db: AsyncSession, kind: MergeKind, ids: list[str]) -> dict[str, int]:
    """One grouped count query for the whole batch."""
    if not ids:
        return {}
    column = kind.count_column
    result = await db.execute(
        select(column, func.count()).where(column.in_(ids)).group_by(column)
    )
    return {row[0]: row[1] for row in result.all()}


async def load_entities(db: AsyncSession, kind: MergeKind, limit: int) -> list[dict]:
    """Snapshots of up to ``limit`` records, with ``_count`` and related names."""
    result = await db.execute(
        select(kind.model).order_by(kind.name_column, kind.model.id).limit(limit)
    )
    snapshots = [entity_snapshot(row) for row in result.scalars().all()]

    counts = await _relationship_counts(db, kind, [s["id"] for s in snapshots])
    for snapshot in snapshots:
        snapshot["_count"] = {kind.count_key: counts.get(snapshot["id"], 0)}

    if kind.attach_related is not None:
        await kind.attach_related(db, snapshots)
    return snapshots


async def scan_for_duplicates(
    db: AsyncSession,
    entity_type: str,
    threshold: Optional[float] = None,
    limit: Optional[int] = None,
) -> DuplicateScan:
    """
    Find likely duplicate pairs among records of ``entity_type``.

    Args:
        threshold: minimum similarity in [0, 1]; defaults to
            ``settings.duplicates_default_threshold``
        limit: batch cap; defaults to ``settings.duplicates_max_entities``.
            Pair scoring is quadratic, so the batch is always bounded.

    Raises:
        UnknownEntityTypeError: unknown tag, before any I/O
        ValueError: threshold outside [0, 1]
    """
    kind = get_kind(entity_type)
    if threshold is None:
        threshold = settings.duplicates_default_threshold
    if not 0 <= threshold <= 1:
        raise ValueError("Threshold must be between 0 and 1")
    limit = limit or settings.duplicates_max_entities

    entities = await load_entities(db, kind, limit)
    pairs = await asyncio.to_thread(
        find_duplicate_pairs,
        entities,
        kind.comparison_string,
        threshold=threshold,
        get_exact_match_key=kind.exact_match_key,
        levenshtein_weight=settings.duplicates_levenshtein_weight,
    )

    logger.info(
        "Duplicate scan: type=%s entities=%d threshold=%.2f pairs=%d",
        entity_type,
        len(entities),
        threshold,
        len(pairs),
    )
    return DuplicateScan(
        entity_type=entity_type,
        threshold=threshold,
        pairs=pairs,
        total_entities=len(entities),
    )
