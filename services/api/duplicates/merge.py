"""
Merge engine for duplicate venues, events, vendors and promoters.

Always Preview -> (operator decision) -> Execute. A merge never happens
without a human confirming it.

Execute protocol, one transaction, in this order:
  1. Lock both rows, verify both exist
  2. Repoint the direct FK (venues/promoters) or the join rows
     (vendors/events); join rows that would collide are deleted first
  3. Sum the counter onto the primary (events.viewCount)
  4. Move favorites for users who have not already favorited the primary;
     delete the rest
  5. Delete the duplicate
  6. Re-read the primary with its relationship count
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.api.db.models import UserFavorite
from services.api.duplicates.errors import (
    DuplicateError,
    EntityNotFoundError,
    MergeTransactionError,
    SelfMergeError,
)
from services.api.duplicates.kinds import JoinTable, MergeKind, entity_snapshot, get_kind

logger = logging.getLogger(__name__)

# Bulk statements bypass the identity map; the primary is re-read with
# populate_existing at the end instead.
_BULK = {"synchronize_session": False}


# ---------------------------------------------------------------------------
# Result structures
# ---------------------------------------------------------------------------

@dataclass
class MergePreview:
    """Non-destructive description of what a merge would do."""
    primary: dict
    duplicate: dict
    relationships_to_transfer: dict[str, int]
    warnings: list[str] = field(default_factory=list)
    # Advisory only: warnings never block a merge
    can_merge: bool = True

    def to_dict(self) -> dict:
        return {
            "primary": self.primary,
            "duplicate": self.duplicate,
            "relationshipsToTransfer": self.relationships_to_transfer,
            "warnings": self.warnings,
            "canMerge": self.can_merge,
        }


@dataclass
class MergeResult:
    """Outcome of an executed merge. Counts are actual rows moved."""
    merged_entity: dict
    transferred_relationships: dict[str, int]
    deleted_id: str
    success: bool = True

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "mergedEntity": self.merged_entity,
            "transferredRelationships": self.transferred_relationships,
            "deletedId": self.deleted_id,
        }


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class RecordLocks:
    """
    In-process per-record mutexes.

    A merge holds the locks of both records it touches, acquired in sorted
    key order so two merges sharing an id can never deadlock. Row locks
    (SELECT ... FOR UPDATE) cover other processes.

    A key's lock lives only while some merge holds or waits on it, so the
    registry stays as small as the set of merges in flight.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _claim(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _unclaim(self, key: str) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        claimed: list[str] = []
        acquired: list[asyncio.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._claim(key)
                claimed.append(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in claimed:
                self._unclaim(key)


merge_locks = RecordLocks()


@asynccontextmanager
async def merge_transaction(db: AsyncSession) -> AsyncIterator[None]:
    """
    Scoped transaction: commit on normal exit, rollback on any exception.

    If the caller already has a transaction open, the merge runs in a
    SAVEPOINT and the caller owns the final commit.
    """
    if db.in_transaction():
        async with db.begin_nested():
            yield
    else:
        async with db.begin():
            yield


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _favorites_of(kind: MergeKind, entity_id: str):
    return and_(
        UserFavorite.favoritableType == kind.favoritable_type,
        UserFavorite.favoritableId == entity_id,
    )


async def _count(db: AsyncSession, column: Any, value: str) -> int:
    result = await db.execute(select(func.count(column)).where(column == value))
    return result.scalar() or 0


async def _count_favorites(db: AsyncSession, kind: MergeKind, entity_id: str) -> int:
    result = await db.execute(
        select(func.count(UserFavorite.id)).where(_favorites_of(kind, entity_id))
    )
    return result.scalar() or 0


async def _partner_ids(db: AsyncSession, join: JoinTable, entity_id: str) -> list[str]:
    result = await db.execute(select(join.partner_column).where(join.own_column == entity_id))
    return list(result.scalars().all())


async def _load_pair(
    db: AsyncSession,
    kind: MergeKind,
    primary_id: str,
    duplicate_id: str,
    *,
    for_update: bool = False,
) -> tuple[Any, Any]:
    model = kind.model
    stmt = select(model).where(model.id.in_([primary_id, duplicate_id]))
    if for_update:
        stmt = stmt.with_for_update()
    rows = {row.id: row for row in (await db.execute(stmt)).scalars().all()}

    primary = rows.get(primary_id)
    duplicate = rows.get(duplicate_id)
    if primary is None or duplicate is None:
        raise EntityNotFoundError(kind.entity_type, primary_id, duplicate_id)
    return primary, duplicate


async def _annotate(db: AsyncSession, kind: MergeKind, entity: Any) -> dict:
    """Snapshot + ``_count`` (+ related names for events)."""
    snapshot = entity_snapshot(entity)
    if kind.attach_related is not None:
        await kind.attach_related(db, [snapshot])
    snapshot["_count"] = {kind.count_key: await _count(db, kind.count_column, entity.id)}
    return snapshot


def _ensure_distinct(primary_id: str, duplicate_id: str) -> None:
    if primary_id == duplicate_id:
        raise SelfMergeError(primary_id)


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

async def get_merge_preview(
    db: AsyncSession,
    entity_type: str,
    primary_id: str,
    duplicate_id: str,
) -> MergePreview:
    """
    Describe what merging ``duplicate_id`` into ``primary_id`` would do.

    Read-only. May report stale counts if raced with a concurrent execute;
    the operator re-confirms through execute anyway.

    Raises:
        UnknownEntityTypeError: before any I/O, for an unknown tag
        EntityNotFoundError: either id does not resolve
    """
    kind = get_kind(entity_type)
    _ensure_distinct(primary_id, duplicate_id)

    primary, duplicate = await _load_pair(db, kind, primary_id, duplicate_id)
    primary_snapshot = await _annotate(db, kind, primary)
    duplicate_snapshot = await _annotate(db, kind, duplicate)

    warnings: list[str] = []
    if kind.owner_warning and primary_snapshot.get("userId") != duplicate_snapshot.get("userId"):
        warnings.append(kind.owner_warning)
    if kind.related_warnings is not None:
        warnings.extend(kind.related_warnings(primary_snapshot, duplicate_snapshot))

    transferable = duplicate_snapshot["_count"][kind.count_key]
    if kind.join is not None:
        primary_partners = set(await _partner_ids(db, kind.join, primary_id))
        overlap = [
            p for p in await _partner_ids(db, kind.join, duplicate_id)
            if p in primary_partners
        ]
        if overlap:
            warnings.append(kind.overlap_warning.format(count=len(overlap)))
        # Overlapping join rows get deleted, not moved
        transferable -= len(overlap)

    return MergePreview(
        primary=primary_snapshot,
        duplicate=duplicate_snapshot,
        relationships_to_transfer={
            kind.count_key: transferable,
            "favorites": await _count_favorites(db, kind, duplicate_id),
        },
        warnings=warnings,
        can_merge=True,
    )


# ---------------------------------------------------------------------------
# Execute
# ---------------------------------------------------------------------------

@dataclass
class _MergeContext:
    kind: MergeKind
    primary_id: str
    duplicate_id: str
    transferred: dict[str, int]
    overlaps_removed: int = 0


MergeStep = Callable[[AsyncSession, _MergeContext], Awaitable[None]]


async def _repoint_foreign_keys(db: AsyncSession, ctx: _MergeContext) -> None:
    column = ctx.kind.fk_column
    result = await db.execute(
        update(column.class_)
        .where(column == ctx.duplicate_id)
        .values({column: ctx.primary_id})
        .execution_options(**_BULK)
    )
    ctx.transferred[ctx.kind.count_key] = result.rowcount or 0


async def _repoint_join_rows(db: AsyncSession, ctx: _MergeContext) -> None:
    join = ctx.kind.join

    # Rows whose partner already links to the primary would become
    # duplicate pairs after the repoint: drop them first.
    primary_partners = await _partner_ids(db, join, ctx.primary_id)
    if primary_partners:
        removed = await db.execute(
            delete(join.model)
            .where(join.own_column == ctx.duplicate_id, join.partner_column.in_(primary_partners))
            .execution_options(**_BULK)
        )
        ctx.overlaps_removed = removed.rowcount or 0

    result = await db.execute(
        update(join.model)
        .where(join.own_column == ctx.duplicate_id)
        .values({join.own_column: ctx.primary_id})
        .execution_options(**_BULK)
    )
    ctx.transferred[ctx.kind.count_key] = result.rowcount or 0


async def _aggregate_counter(db: AsyncSession, ctx: _MergeContext) -> None:
    model = ctx.kind.model
    column = ctx.kind.counter_column
    duplicate_value = (
        await db.execute(select(column).where(model.id == ctx.duplicate_id))
    ).scalar() or 0
    if not duplicate_value:
        return
    await db.execute(
        update(model)
        .where(model.id == ctx.primary_id)
        .values({column: func.coalesce(column, 0) + duplicate_value})
        .execution_options(**_BULK)
    )


async def _transfer_favorites(db: AsyncSession, ctx: _MergeContext) -> None:
    kind = ctx.kind
    existing = await db.execute(
        select(UserFavorite.userId).where(_favorites_of(kind, ctx.primary_id))
    )
    existing_user_ids = list(existing.scalars().all())

    stmt = update(UserFavorite).where(_favorites_of(kind, ctx.duplicate_id))
    if existing_user_ids:
        stmt = stmt.where(UserFavorite.userId.not_in(existing_user_ids))
    result = await db.execute(
        stmt.values({UserFavorite.favoritableId: ctx.primary_id}).execution_options(**_BULK)
    )
    ctx.transferred["favorites"] = result.rowcount or 0

    # Whatever is left would collide with an existing favorite
    await db.execute(
        delete(UserFavorite)
        .where(_favorites_of(kind, ctx.duplicate_id))
        .execution_options(**_BULK)
    )


async def _delete_duplicate(db: AsyncSession, ctx: _MergeContext) -> None:
    model = ctx.kind.model
    await db.execute(delete(model).where(model.id == ctx.duplicate_id).execution_options(**_BULK))


def merge_steps(kind: MergeKind) -> list[MergeStep]:
    """Ordered steps for one kind. Run inside a single transaction."""
    steps: list[MergeStep] = []
    if kind.fk_column is not None:
        steps.append(_repoint_foreign_keys)
    if kind.join is not None:
        steps.append(_repoint_join_rows)
    if kind.counter_column is not None:
        steps.append(_aggregate_counter)
    steps.append(_transfer_favorites)
    steps.append(_delete_duplicate)
    return steps


async def execute_merge(
    db: AsyncSession,
    entity_type: str,
    primary_id: str,
    duplicate_id: str,
) -> MergeResult:
    """
    Merge ``duplicate_id`` into ``primary_id`` as one all-or-nothing unit.

    Raises:
        UnknownEntityTypeError: before any I/O, for an unknown tag
        EntityNotFoundError: either id does not resolve (nothing written)
        MergeTransactionError: database failure; the transaction was rolled back
    """
    kind = get_kind(entity_type)
    _ensure_distinct(primary_id, duplicate_id)

    ctx = _MergeContext(
        kind=kind,
        primary_id=primary_id,
        duplicate_id=duplicate_id,
        transferred={kind.count_key: 0, "favorites": 0},
    )
    lock_keys = (f"{entity_type}:{primary_id}", f"{entity_type}:{duplicate_id}")

    async with merge_locks.hold(*lock_keys):
        try:
            async with merge_transaction(db):
                await _load_pair(db, kind, primary_id, duplicate_id, for_update=True)
                for step in merge_steps(kind):
                    await step(db, ctx)

                merged = (
                    await db.execute(
                        select(kind.model)
                        .where(kind.model.id == primary_id)
                        .execution_options(populate_existing=True)
                    )
                ).scalars().one()
                merged_snapshot = await _annotate(db, kind, merged)
        except DuplicateError:
            raise
        except SQLAlchemyError as exc:
            logger.exception(
                "Merge rolled back: %s %s → %s",
                entity_type,
                duplicate_id[:8],
                primary_id[:8],
            )
            raise MergeTransactionError(entity_type, primary_id, duplicate_id) from exc

    logger.info(
        "Merge complete: %s %s → %s | %s=%d favorites=%d overlaps_removed=%d",
        entity_type,
        duplicate_id[:8],
        primary_id[:8],
        kind.count_key,
        ctx.transferred[kind.count_key],
        ctx.transferred["favorites"],
        ctx.overlaps_removed,
    )

    return MergeResult(
        merged_entity=merged_snapshot,
        transferred_relationships=dict(ctx.transferred),
        deleted_id=duplicate_id,
    )
