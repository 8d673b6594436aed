"""
SQLAlchemy DeclarativeBase models -- mirrors of the Drizzle schema subset
that the duplicate tooling touches.

Python attributes keep the camelCase names the front-end uses
(``venueId``, ``viewCount``); the underlying columns are snake_case, so
every column that differs is mapped explicitly.

IMPORTANT: These models are NOT used for migrations. Drizzle on the JS side
remains the migration tool. The unique constraints below mirror the
invariants the merge engine relies on.
"""

import uuid as _uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(_uuid.uuid4())


# Stored as TEXT with a fixed value set (SQLite/D1 has no native enums).
FavoritableTypeEnum = Enum(
    "EVENT", "VENUE", "VENDOR", "PROMOTER",
    name="FavoritableType", native_enum=False,
)
UserRoleEnum = Enum("ADMIN", "PROMOTER", "VENDOR", "USER", name="UserRole", native_enum=False)
VenueStatusEnum = Enum("ACTIVE", "INACTIVE", name="VenueStatus", native_enum=False)
EventStatusEnum = Enum(
    "DRAFT", "PENDING", "APPROVED", "REJECTED", "CANCELLED",
    name="EventStatus", native_enum=False,
)
EventVendorStatusEnum = Enum("PENDING", "APPROVED", "REJECTED", name="EventVendorStatus", native_enum=False)


class Base(DeclarativeBase):
    pass


class AuditLog(Base):
    """Append-only audit log. NEVER update or delete rows from this table."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    actorId: Mapped[str] = mapped_column("actor_id", String)
    action: Mapped[str] = mapped_column(String)
    targetType: Mapped[str] = mapped_column("target_type", String)
    targetId: Mapped[str] = mapped_column("target_id", String)
    before: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    after: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ipAddress: Mapped[str] = mapped_column("ip_address", String)
    userAgent: Mapped[str] = mapped_column("user_agent", String)
    createdAt: Mapped[datetime] = mapped_column("created_at", DateTime(timezone=True), default=_now)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(UserRoleEnum, default="USER")
    createdAt: Mapped[datetime] = mapped_column("created_at", DateTime(timezone=True), default=_now)
    updatedAt: Mapped[datetime] = mapped_column("updated_at", DateTime(timezone=True), default=_now)


class Venue(Base):
    __tablename__ = "venues"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True)
    address: Mapped[str] = mapped_column(String, default="")
    city: Mapped[str] = mapped_column(String, default="")
    state: Mapped[str] = mapped_column(String, default="")
    zip: Mapped[str] = mapped_column(String, default="")
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # Unique when present; NULL allowed on any number of rows
    googlePlaceId: Mapped[Optional[str]] = mapped_column("google_place_id", String, nullable=True, unique=True)
    website: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(VenueStatusEnum, default="ACTIVE")
    createdAt: Mapped[datetime] = mapped_column("created_at", DateTime(timezone=True), default=_now)
    updatedAt: Mapped[datetime] = mapped_column("updated_at", DateTime(timezone=True), default=_now)


class Promoter(Base):
    __tablename__ = "promoters"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    userId: Mapped[Optional[str]] = mapped_column("user_id", String, nullable=True)
    companyName: Mapped[str] = mapped_column("company_name", String)
    slug: Mapped[str] = mapped_column(String, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    createdAt: Mapped[datetime] = mapped_column("created_at", DateTime(timezone=True), default=_now)
    updatedAt: Mapped[datetime] = mapped_column("updated_at", DateTime(timezone=True), default=_now)


class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    promoterId: Mapped[str] = mapped_column("promoter_id", String)
    # Nullable since venues became ON DELETE SET NULL
    venueId: Mapped[Optional[str]] = mapped_column("venue_id", String, nullable=True)
    startDate: Mapped[Optional[datetime]] = mapped_column("start_date", DateTime(timezone=True), nullable=True)
    endDate: Mapped[Optional[datetime]] = mapped_column("end_date", DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(EventStatusEnum, default="DRAFT")
    viewCount: Mapped[Optional[int]] = mapped_column("view_count", Integer, default=0)
    sourceName: Mapped[Optional[str]] = mapped_column("source_name", String, nullable=True)
    sourceUrl: Mapped[Optional[str]] = mapped_column("source_url", String, nullable=True)
    createdAt: Mapped[datetime] = mapped_column("created_at", DateTime(timezone=True), default=_now)
    updatedAt: Mapped[datetime] = mapped_column("updated_at", DateTime(timezone=True), default=_now)


class Vendor(Base):
    __tablename__ = "vendors"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    userId: Mapped[Optional[str]] = mapped_column("user_id", String, nullable=True)
    businessName: Mapped[str] = mapped_column("business_name", String)
    slug: Mapped[str] = mapped_column(String, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vendorType: Mapped[Optional[str]] = mapped_column("vendor_type", String, nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    commercial: Mapped[bool] = mapped_column(Boolean, default=False)
    createdAt: Mapped[datetime] = mapped_column("created_at", DateTime(timezone=True), default=_now)
    updatedAt: Mapped[datetime] = mapped_column("updated_at", DateTime(timezone=True), default=_now)


class EventVendor(Base):
    """A vendor's participation in an event."""

    __tablename__ = "event_vendors"
    __table_args__ = (UniqueConstraint("event_id", "vendor_id", name="uq_event_vendors_event_vendor"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    eventId: Mapped[str] = mapped_column("event_id", String)
    vendorId: Mapped[str] = mapped_column("vendor_id", String)
    boothInfo: Mapped[Optional[str]] = mapped_column("booth_info", String, nullable=True)
    status: Mapped[str] = mapped_column(EventVendorStatusEnum, default="PENDING")
    createdAt: Mapped[datetime] = mapped_column("created_at", DateTime(timezone=True), default=_now)


class UserFavorite(Base):
    """Polymorphic bookmark: (favoritableType, favoritableId) points at any favoritable kind."""

    __tablename__ = "user_favorites"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "favoritable_type", "favoritable_id",
            name="uq_user_favorites_user_target",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    userId: Mapped[str] = mapped_column("user_id", String)
    favoritableType: Mapped[str] = mapped_column("favoritable_type", FavoritableTypeEnum)
    favoritableId: Mapped[str] = mapped_column("favoritable_id", String)
    createdAt: Mapped[datetime] = mapped_column("created_at", DateTime(timezone=True), default=_now)
