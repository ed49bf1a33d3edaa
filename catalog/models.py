# catalog/models.py
"""SQLAlchemy ORM models for the property catalog.

`Listing` is the central entity. Users, agents, images, inquiries, featured
placements and subscriptions are owned by other parts of the marketplace; the
catalog only reads them. `ViewEvent`, `AuditLog` and `Notification` back the
engagement tracker and the default audit/notification collaborators.
"""
import enum
import uuid
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Enum, Float, ForeignKey, Index,
    Integer, JSON, Numeric, String, Text,
)
from sqlalchemy.orm import relationship
from .db import Base
from .utils import utcnow


def new_id() -> str:
    return uuid.uuid4().hex


class UserRole(str, enum.Enum):
    USER = "USER"
    AGENT = "AGENT"
    ADMIN = "ADMIN"


class PropertyType(str, enum.Enum):
    HOUSE = "HOUSE"
    APARTMENT = "APARTMENT"
    LAND = "LAND"
    COMMERCIAL = "COMMERCIAL"
    ROOM = "ROOM"
    OFFICE = "OFFICE"
    WAREHOUSE = "WAREHOUSE"
    FARM = "FARM"


class ListingType(str, enum.Enum):
    SALE = "SALE"
    RENT = "RENT"


class ListingStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    WITHDRAWN = "WITHDRAWN"
    SOLD = "SOLD"
    RENTED = "RENTED"


class ApprovalStatus(str, enum.Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVISION_REQUESTED = "REVISION_REQUESTED"


# every (status, approval_status) combination a listing may be persisted with
STATUS_PAIRS = frozenset([
    (ListingStatus.DRAFT, ApprovalStatus.SUBMITTED),
    (ListingStatus.PENDING_APPROVAL, ApprovalStatus.SUBMITTED),
    (ListingStatus.APPROVED, ApprovalStatus.APPROVED),
    (ListingStatus.REJECTED, ApprovalStatus.REJECTED),
    (ListingStatus.REVISION_REQUESTED, ApprovalStatus.REVISION_REQUESTED),
    (ListingStatus.WITHDRAWN, ApprovalStatus.APPROVED),
    (ListingStatus.SOLD, ApprovalStatus.APPROVED),
    (ListingStatus.RENTED, ApprovalStatus.APPROVED),
])

TERMINAL_STATUSES = frozenset([ListingStatus.SOLD, ListingStatus.RENTED])


def _status_pair_check() -> str:
    clauses = [
        f"(status = '{status.value}' AND approval_status = '{approval.value}')"
        for status, approval in sorted(STATUS_PAIRS, key=lambda p: (p[0].value, p[1].value))
    ]
    return " OR ".join(clauses)


def _enum(cls):
    return Enum(cls, native_enum=False, length=32, validate_strings=True)


class User(Base):
    __tablename__ = "users"
    id = Column(String(32), primary_key=True, default=new_id)
    email = Column(Text, unique=True)
    first_name = Column(Text)
    last_name = Column(Text)
    phone = Column(Text)
    avatar_url = Column(Text)
    role = Column(_enum(UserRole), nullable=False, default=UserRole.USER)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Agent(Base):
    __tablename__ = "agents"
    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, unique=True)
    company_name = Column(Text)
    is_verified = Column(Boolean, nullable=False, default=False)

    user = relationship("User")


class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, unique=True)
    tier = Column(Text, nullable=False, default="FREE")
    # explicit per-user ceiling; NULL means "use the tier table"
    max_listings = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Listing(Base):
    __tablename__ = "listings"
    __table_args__ = (
        CheckConstraint(_status_pair_check(), name="ck_listings_status_pair"),
        Index("idx_listings_status_deleted", "status", "is_deleted"),
        Index("idx_listings_owner", "owner_id"),
        Index("idx_listings_price", "price"),
        Index("idx_listings_city", "city"),
        Index("idx_listings_created_at", "created_at"),
        Index("idx_listings_geo", "latitude", "longitude"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    slug = Column(String(220), nullable=False, unique=True, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    property_type = Column(_enum(PropertyType), nullable=False)
    listing_type = Column(_enum(ListingType), nullable=False)
    price = Column(Numeric(14, 2, asdecimal=False))
    currency = Column(String(3), nullable=False, default="ZMW")
    address = Column(Text)
    city = Column(Text)
    province = Column(Text)
    country = Column(Text, default="Zambia")
    latitude = Column(Float)
    longitude = Column(Float)
    bedrooms = Column(Integer)
    bathrooms = Column(Integer)
    floor_area = Column(Float)

    status = Column(_enum(ListingStatus), nullable=False, default=ListingStatus.DRAFT)
    approval_status = Column(_enum(ApprovalStatus), nullable=False, default=ApprovalStatus.SUBMITTED)
    rejection_reason = Column(Text)
    approved_at = Column(DateTime(timezone=True))
    approved_by = Column(String(32))
    published_at = Column(DateTime(timezone=True))
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True))

    view_count = Column(Integer, nullable=False, default=0)
    save_count = Column(Integer, nullable=False, default=0)

    owner_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    agent_id = Column(String(32), ForeignKey("agents.id"))

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    owner = relationship("User", foreign_keys=[owner_id])
    agent = relationship("Agent")
    images = relationship(
        "ListingImage", order_by="ListingImage.sort_order",
        cascade="all, delete-orphan", back_populates="listing",
    )
    tags = relationship("ListingTag", cascade="all, delete-orphan", back_populates="listing")
    featured = relationship("FeaturedListing", uselist=False, cascade="all, delete-orphan")

    @property
    def tag_names(self):
        return sorted(t.tag for t in self.tags)

    @property
    def agent_user_id(self):
        return self.agent.user_id if self.agent is not None else None


class ListingTag(Base):
    __tablename__ = "listing_tags"
    listing_id = Column(String(32), ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    tag = Column(String(64), primary_key=True)

    listing = relationship("Listing", back_populates="tags")

Index("idx_listing_tags_tag", ListingTag.tag)


class ListingImage(Base):
    __tablename__ = "listing_images"
    id = Column(String(32), primary_key=True, default=new_id)
    listing_id = Column(String(32), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True)
    url = Column(Text, nullable=False)
    thumbnail_url = Column(Text)
    alt_text = Column(Text)
    sort_order = Column(Integer, nullable=False, default=0)
    is_primary = Column(Boolean, nullable=False, default=False)

    listing = relationship("Listing", back_populates="images")


class Inquiry(Base):
    __tablename__ = "inquiries"
    id = Column(String(32), primary_key=True, default=new_id)
    listing_id = Column(String(32), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(32), ForeignKey("users.id"))
    subject = Column(Text)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User")


class FeaturedListing(Base):
    __tablename__ = "featured_listings"
    id = Column(Integer, primary_key=True, autoincrement=True)
    listing_id = Column(String(32), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, unique=True)
    tier = Column(Integer, nullable=False, default=1)
    sort_order = Column(Integer, nullable=False, default=0)
    start_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    end_date = Column(DateTime(timezone=True), nullable=False)
    amount_paid = Column(Numeric(12, 2, asdecimal=False), default=0)


class ViewEvent(Base):
    __tablename__ = "view_events"
    __table_args__ = (
        CheckConstraint("user_id IS NOT NULL OR session_id IS NOT NULL", name="ck_view_events_identity"),
        Index("idx_view_events_user", "listing_id", "user_id", "viewed_at"),
        Index("idx_view_events_session", "listing_id", "session_id", "viewed_at"),
        Index("idx_view_events_viewed_at", "viewed_at"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    listing_id = Column(String(32), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(32))
    session_id = Column(String(128))
    ip_address = Column(Text)
    user_agent = Column(Text)
    referrer = Column(Text)
    viewed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(32))
    target_user_id = Column(String(32))
    action = Column(String(32), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(64))
    old_values = Column(JSON)
    new_values = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow)

Index("idx_audit_logs_entity", AuditLog.entity_type, AuditLog.entity_id)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(32), nullable=False)
    data = Column(JSON)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
