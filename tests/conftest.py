# tests/conftest.py
from datetime import datetime, timedelta, timezone
import pytest
from catalog.cache import CacheLayer, InMemoryCacheBackend
from catalog.config import Settings
from catalog.db import init_schema, make_engine, make_session_factory
from catalog.dispatch import InlineDispatcher
from catalog.models import (
    Agent, ApprovalStatus, Listing, ListingImage, ListingStatus, ListingType,
    PropertyType, Subscription, User, UserRole,
)
from catalog.schemas import Actor, ImageIn, ListingCreate
from catalog.services import PropertyCatalogService


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingAudit:
    def __init__(self):
        self.entries = []

    def log(self, entry):
        self.entries.append(entry)

    def actions(self):
        return [e.action for e in self.entries]


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.admin_notices = []

    def create(self, user_id, title, message, type, data=None):
        self.sent.append({"user_id": user_id, "title": title, "message": message, "type": type, "data": data})

    def notify_admins(self, title, message, type, data=None):
        self.admin_notices.append({"title": title, "message": message, "type": type, "data": data})


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    init_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(background_side_effects=False, side_effect_tries=1, side_effect_delay_seconds=0)


@pytest.fixture
def cache():
    return CacheLayer(InMemoryCacheBackend())


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(db, cache, audit, notifier, settings, clock):
    return PropertyCatalogService(
        db, cache, audit, notifier, dispatcher=InlineDispatcher(), settings=settings, clock=clock
    )


@pytest.fixture
def owner(db):
    return make_user(db, "owner@example.com")


@pytest.fixture
def admin(db):
    return make_user(db, "admin@example.com", role=UserRole.ADMIN)


def make_user(db, email, role=UserRole.USER, tier=None, max_listings=None):
    user = User(email=email, first_name=email.split("@")[0], role=role)
    db.add(user)
    db.flush()
    if tier is not None or max_listings is not None:
        db.add(Subscription(user_id=user.id, tier=tier or "FREE", max_listings=max_listings))
    db.commit()
    return Actor(user_id=user.id, role=role)


def make_agent(db, email="agent@example.com", company="Copperbelt Homes"):
    actor = make_user(db, email, role=UserRole.AGENT)
    agent = Agent(user_id=actor.user_id, company_name=company, is_verified=True)
    db.add(agent)
    db.commit()
    return actor, agent.id


def listing_input(**overrides) -> ListingCreate:
    data = dict(
        title="Three bedroom house in Kabulonga",
        description="Quiet street, borehole, solar backup",
        property_type=PropertyType.HOUSE,
        listing_type=ListingType.SALE,
        price=1850000,
        address="12 Lukasu Road",
        city="Lusaka",
        province="Lusaka",
        bedrooms=3,
        bathrooms=2,
        features=["Borehole", "solar", "borehole"],
        images=[ImageIn(url="https://img.example.com/1.jpg", is_primary=True)],
    )
    data.update(overrides)
    return ListingCreate(**data)


def seed_listing(db, owner_id, status=ListingStatus.APPROVED, with_image=True, **fields) -> Listing:
    """Insert a listing directly, bypassing the service."""
    approval = {
        ListingStatus.DRAFT: ApprovalStatus.SUBMITTED,
        ListingStatus.PENDING_APPROVAL: ApprovalStatus.SUBMITTED,
        ListingStatus.REJECTED: ApprovalStatus.REJECTED,
        ListingStatus.REVISION_REQUESTED: ApprovalStatus.REVISION_REQUESTED,
    }.get(status, ApprovalStatus.APPROVED)
    values = dict(
        title="Flat in Rhodes Park",
        slug=None,
        description="Two bedroom flat",
        property_type=PropertyType.APARTMENT,
        listing_type=ListingType.RENT,
        price=9500,
        address="Plot 4, Addis Ababa Drive",
        city="Lusaka",
        province="Lusaka",
        bedrooms=2,
        bathrooms=1,
    )
    values.update(fields)
    if values["slug"] is None:
        values["slug"] = f"seed-{db.query(Listing).count() + 1}"
    listing = Listing(owner_id=owner_id, status=status, approval_status=approval, **values)
    if with_image:
        listing.images = [ListingImage(url="https://img.example.com/seed.jpg", is_primary=True)]
    db.add(listing)
    db.commit()
    return listing
