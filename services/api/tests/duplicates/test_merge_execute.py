"""
Merge execution tests against an in-memory database.

Verifies:
- no dangling references to the deleted record for any kind
- favorites deduped per user, other favoritable kinds untouched
- event view counts summed
- EventVendor overlap rows removed, never duplicated
- NotFound and database failures leave every row unchanged
- per-record locks serialize merges touching the same record
"""

import asyncio

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from services.api.db.models import Event, EventVendor, Promoter, UserFavorite, Vendor, Venue
from services.api.duplicates import merge as merge_module
from services.api.duplicates.errors import (
    EntityNotFoundError,
    MergeTransactionError,
    UnknownEntityTypeError,
)
from services.api.duplicates.merge import RecordLocks, execute_merge, merge_locks
from services.api.tests.helpers.factories import (
    count_rows,
    insert_row,
    make_event,
    make_event_vendor,
    make_favorite,
    make_id,
    make_promoter,
    make_vendor,
    make_venue,
)

pytestmark = pytest.mark.asyncio


async def _favorite(db, kind: str, target_id: str, user_id: str):
    return await insert_row(
        db, UserFavorite, make_favorite(userId=user_id, favoritableType=kind, favoritableId=target_id)
    )


async def _favorite_users(db, kind: str, target_id: str) -> list[str]:
    result = await db.execute(
        select(UserFavorite.userId).where(
            UserFavorite.favoritableType == kind,
            UserFavorite.favoritableId == target_id,
        )
    )
    return sorted(result.scalars().all())


# ===================================================================
# Venues
# ===================================================================


class TestVenueMerge:
    async def test_events_repointed_and_duplicate_deleted(self, db):
        primary = await insert_row(db, Venue, make_venue(name="Expo Center"))
        duplicate = await insert_row(db, Venue, make_venue(name="Expo Centre"))
        await insert_row(db, Event, make_event(venueId=primary.id))
        await insert_row(db, Event, make_event(venueId=duplicate.id))
        await insert_row(db, Event, make_event(venueId=duplicate.id))

        result = await execute_merge(db, "venues", primary.id, duplicate.id)

        assert result.success is True
        assert result.deleted_id == duplicate.id
        assert result.transferred_relationships == {"events": 2, "favorites": 0}
        assert result.merged_entity["id"] == primary.id
        assert result.merged_entity["_count"] == {"events": 3}

        assert await count_rows(db, Venue, Venue.id == duplicate.id) == 0
        assert await count_rows(db, Event, Event.venueId == duplicate.id) == 0
        assert await count_rows(db, Event, Event.venueId == primary.id) == 3

    async def test_favorites_deduplicated_per_user(self, db):
        primary = await insert_row(db, Venue, make_venue())
        duplicate = await insert_row(db, Venue, make_venue())
        both_user, duplicate_user, other_kind_user = make_id(), make_id(), make_id()
        await _favorite(db, "VENUE", primary.id, both_user)
        await _favorite(db, "VENUE", duplicate.id, both_user)
        await _favorite(db, "VENUE", duplicate.id, duplicate_user)
        # Same id string under another favoritable type is a different target
        await _favorite(db, "EVENT", duplicate.id, other_kind_user)

        result = await execute_merge(db, "venues", primary.id, duplicate.id)

        assert result.transferred_relationships["favorites"] == 1
        assert await _favorite_users(db, "VENUE", primary.id) == sorted([both_user, duplicate_user])
        assert await _favorite_users(db, "VENUE", duplicate.id) == []
        assert await _favorite_users(db, "EVENT", duplicate.id) == [other_kind_user]

    async def test_result_to_dict(self, db):
        primary = await insert_row(db, Venue, make_venue())
        duplicate = await insert_row(db, Venue, make_venue())

        payload = (await execute_merge(db, "venues", primary.id, duplicate.id)).to_dict()
        assert payload["success"] is True
        assert payload["deletedId"] == duplicate.id
        assert payload["transferredRelationships"] == {"events": 0, "favorites": 0}
        assert payload["mergedEntity"]["id"] == primary.id


# ===================================================================
# Promoters
# ===================================================================


class TestPromoterMerge:
    async def test_events_and_favorites_move(self, db):
        primary = await insert_row(db, Promoter, make_promoter(companyName="Acme Shows"))
        duplicate = await insert_row(db, Promoter, make_promoter(companyName="ACME Shows LLC"))
        await insert_row(db, Event, make_event(promoterId=duplicate.id))
        fan = make_id()
        await _favorite(db, "PROMOTER", duplicate.id, fan)

        result = await execute_merge(db, "promoters", primary.id, duplicate.id)

        assert result.transferred_relationships == {"events": 1, "favorites": 1}
        assert await count_rows(db, Event, Event.promoterId == duplicate.id) == 0
        assert await count_rows(db, Promoter) == 1
        assert await _favorite_users(db, "PROMOTER", primary.id) == [fan]


# ===================================================================
# Vendors
# ===================================================================


class TestVendorMerge:
    async def test_overlapping_participations_removed(self, db):
        primary = await insert_row(db, Vendor, make_vendor())
        duplicate = await insert_row(db, Vendor, make_vendor())
        shared_event, duplicate_only = make_id(), make_id()
        await insert_row(db, EventVendor, make_event_vendor(eventId=shared_event, vendorId=primary.id))
        await insert_row(db, EventVendor, make_event_vendor(eventId=shared_event, vendorId=duplicate.id))
        await insert_row(db, EventVendor, make_event_vendor(eventId=duplicate_only, vendorId=duplicate.id))

        result = await execute_merge(db, "vendors", primary.id, duplicate.id)

        assert result.transferred_relationships == {"eventVendors": 1, "favorites": 0}
        assert result.merged_entity["_count"] == {"eventVendors": 2}
        assert await count_rows(db, EventVendor, EventVendor.vendorId == duplicate.id) == 0
        assert await count_rows(db, EventVendor, EventVendor.eventId == shared_event) == 1
        assert await count_rows(db, Vendor, Vendor.id == duplicate.id) == 0


# ===================================================================
# Events
# ===================================================================


class TestEventMerge:
    async def test_view_counts_summed(self, db):
        promoter_id = make_id()
        primary = await insert_row(db, Event, make_event(promoterId=promoter_id, viewCount=100))
        duplicate = await insert_row(db, Event, make_event(promoterId=promoter_id, viewCount=50))

        result = await execute_merge(db, "events", primary.id, duplicate.id)

        assert result.merged_entity["viewCount"] == 150
        stored = await db.execute(select(Event.viewCount).where(Event.id == primary.id))
        assert stored.scalar_one() == 150

    async def test_null_primary_view_count(self, db):
        promoter_id = make_id()
        primary = await insert_row(db, Event, make_event(promoterId=promoter_id))
        duplicate = await insert_row(db, Event, make_event(promoterId=promoter_id, viewCount=50))
        await db.execute(update(Event).where(Event.id == primary.id).values(viewCount=None))
        await db.commit()

        result = await execute_merge(db, "events", primary.id, duplicate.id)
        assert result.merged_entity["viewCount"] == 50

    async def test_vendor_assignments_merged_without_duplicates(self, db):
        promoter_id = make_id()
        primary = await insert_row(db, Event, make_event(promoterId=promoter_id))
        duplicate = await insert_row(db, Event, make_event(promoterId=promoter_id))
        vendor_1, vendor_2, vendor_3 = make_id(), make_id(), make_id()
        await insert_row(db, EventVendor, make_event_vendor(eventId=primary.id, vendorId=vendor_1))
        await insert_row(db, EventVendor, make_event_vendor(eventId=primary.id, vendorId=vendor_2))
        await insert_row(db, EventVendor, make_event_vendor(eventId=duplicate.id, vendorId=vendor_2))
        await insert_row(db, EventVendor, make_event_vendor(eventId=duplicate.id, vendorId=vendor_3))

        result = await execute_merge(db, "events", primary.id, duplicate.id)

        assert result.transferred_relationships["eventVendors"] == 1
        vendors = await db.execute(select(EventVendor.vendorId).where(EventVendor.eventId == primary.id))
        assert sorted(vendors.scalars().all()) == sorted([vendor_1, vendor_2, vendor_3])
        assert await count_rows(db, EventVendor, EventVendor.eventId == duplicate.id) == 0

    async def test_merged_event_carries_related_names(self, db):
        venue = await insert_row(db, Venue, make_venue(name="Expo Center"))
        promoter = await insert_row(db, Promoter, make_promoter(companyName="Acme Shows"))
        primary = await insert_row(db, Event, make_event(venueId=venue.id, promoterId=promoter.id))
        duplicate = await insert_row(db, Event, make_event(venueId=venue.id, promoterId=promoter.id))

        result = await execute_merge(db, "events", primary.id, duplicate.id)

        assert result.merged_entity["venue"] == {"name": "Expo Center"}
        assert result.merged_entity["promoter"] == {"companyName": "Acme Shows"}


# ===================================================================
# Failure paths
# ===================================================================


class TestMergeFailures:
    async def test_unknown_type_raises_before_io(self):
        with pytest.raises(UnknownEntityTypeError):
            await execute_merge(None, "booths", "a", "b")

    async def test_missing_duplicate_changes_nothing(self, db):
        primary = await insert_row(db, Venue, make_venue())
        await insert_row(db, Event, make_event(venueId=primary.id))

        with pytest.raises(EntityNotFoundError, match="One or both venues not found"):
            await execute_merge(db, "venues", primary.id, make_id())

        assert await count_rows(db, Venue) == 1
        assert await count_rows(db, Event, Event.venueId == primary.id) == 1

    async def test_database_error_rolls_back_every_step(self, db, monkeypatch):
        primary = await insert_row(db, Venue, make_venue())
        duplicate = await insert_row(db, Venue, make_venue())
        await insert_row(db, Event, make_event(venueId=duplicate.id))
        user_id = make_id()
        await _favorite(db, "VENUE", duplicate.id, user_id)

        async def failing_delete(session, ctx):
            raise SQLAlchemyError("disk I/O error")

        # Fails after events and favorites have already been repointed
        monkeypatch.setattr(merge_module, "_delete_duplicate", failing_delete)

        with pytest.raises(MergeTransactionError) as exc_info:
            await execute_merge(db, "venues", primary.id, duplicate.id)

        assert str(exc_info.value) == "Failed to merge venues: transaction rolled back"
        assert isinstance(exc_info.value.__cause__, SQLAlchemyError)
        assert await count_rows(db, Venue) == 2
        assert await count_rows(db, Event, Event.venueId == duplicate.id) == 1
        assert await _favorite_users(db, "VENUE", duplicate.id) == [user_id]
        assert await _favorite_users(db, "VENUE", primary.id) == []

    async def test_locks_released_after_failure(self, db):
        primary_id = make_id()
        with pytest.raises(EntityNotFoundError):
            await execute_merge(db, "venues", primary_id, make_id())
        assert not merge_locks.is_locked(f"venues:{primary_id}")


# ===================================================================
# Record locks
# ===================================================================


class TestRecordLocks:
    async def test_overlapping_keys_serialize(self):
        locks = RecordLocks()
        order: list[str] = []

        async def worker(name: str, keys: tuple[str, ...], delay: float):
            async with locks.hold(*keys):
                order.append(f"{name}-start")
                await asyncio.sleep(delay)
                order.append(f"{name}-end")

        await asyncio.gather(
            worker("first", ("venues:a", "venues:b"), 0.02),
            worker("second", ("venues:b", "venues:c"), 0),
        )
        assert order == ["first-start", "first-end", "second-start", "second-end"]

    async def test_opposite_key_order_does_not_deadlock(self):
        locks = RecordLocks()

        async def worker(keys: tuple[str, ...]):
            async with locks.hold(*keys):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(
            asyncio.gather(worker(("events:x", "events:y")), worker(("events:y", "events:x"))),
            timeout=1,
        )

    async def test_released_on_exception(self):
        locks = RecordLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("vendors:a", "vendors:b"):
                assert locks.is_locked("vendors:a")
                raise RuntimeError("boom")
        assert not locks.is_locked("vendors:a")
        assert not locks.is_locked("vendors:b")

    async def test_disjoint_keys_run_concurrently(self):
        locks = RecordLocks()
        inside = asyncio.Event()

        async def holder():
            async with locks.hold("promoters:a"):
                inside.set()
                await asyncio.sleep(0.05)

        task = asyncio.create_task(holder())
        await inside.wait()
        assert not locks.is_locked("promoters:b")
        async with locks.hold("promoters:b"):
            assert locks.is_locked("promoters:a")
        await task

    async def test_registry_empty_after_release(self):
        locks = RecordLocks()
        for n in range(50):
            async with locks.hold(f"venues:{n}", f"venues:{n + 1000}"):
                assert len(locks) == 2
        assert len(locks) == 0

    async def test_key_kept_while_waiter_queued(self):
        locks = RecordLocks()
        release = asyncio.Event()
        finish = asyncio.Event()
        waiter_in = asyncio.Event()

        async def holder():
            async with locks.hold("events:a"):
                await release.wait()

        async def waiter():
            async with locks.hold("events:a"):
                waiter_in.set()
                await finish.wait()

        first = asyncio.create_task(holder())
        await asyncio.sleep(0)
        second = asyncio.create_task(waiter())
        await asyncio.sleep(0)

        release.set()
        await first
        await waiter_in.wait()
        assert len(locks) == 1
        assert locks.is_locked("events:a")

        finish.set()
        await second
        assert len(locks) == 0

    async def test_cancelled_waiter_drops_its_claim(self):
        locks = RecordLocks()
        release = asyncio.Event()

        async def holder():
            async with locks.hold("vendors:a"):
                await release.wait()

        async def waiter():
            async with locks.hold("vendors:a"):
                pass

        first = asyncio.create_task(holder())
        await asyncio.sleep(0)
        second = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        second.cancel()
        with pytest.raises(asyncio.CancelledError):
            await second
        assert len(locks) == 1

        release.set()
        await first
        assert len(locks) == 0

    async def test_merge_leaves_no_lock_behind(self, db):
        with pytest.raises(EntityNotFoundError):
            await execute_merge(db, "venues", make_id(), make_id())
        assert len(merge_locks) == 0
