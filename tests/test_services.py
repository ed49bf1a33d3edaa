# tests/test_services.py
from datetime import timedelta
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from catalog import crud
from catalog.cache import detail_key, featured_key
from catalog.errors import (
    ErrorKind, ForbiddenError, InternalError, InvalidTransitionError, ListingLimitError, NotFoundError,
    StoreUnavailableError, ValidationError,
)
from catalog.models import AuditLog, Inquiry, Listing, ListingStatus, Notification
from catalog.notifications import SqlNotifier
from catalog.audit import SqlAuditLogger
from catalog.schemas import ImageIn, ListingUpdate, SearchFilters, ViewerIdentity
from catalog.services import PropertyCatalogService
from conftest import listing_input, make_agent, make_user, seed_listing


def test_create_normalizes_and_starts_as_draft(service, owner, audit):
    detail = service.create(listing_input(), owner)
    assert detail.slug == "three-bedroom-house-in-kabulonga"
    assert detail.status == ListingStatus.DRAFT
    assert detail.owner_id == owner.user_id
    assert detail.features == ["borehole", "solar"]
    assert detail.primary_image.url == "https://img.example.com/1.jpg"
    assert audit.actions() == ["CREATE"]


def test_duplicate_titles_get_suffixed_slugs(service, owner):
    first = service.create(listing_input(), owner)
    second = service.create(listing_input(), owner)
    assert second.slug == first.slug + "-1"


def test_create_respects_quota(service, db, owner):
    for _ in range(5):
        seed_listing(db, owner.user_id, status=ListingStatus.DRAFT)
    with pytest.raises(ListingLimitError):
        service.create(listing_input(), owner)
    assert db.query(Listing).count() == 5


def test_create_rejects_unknown_agent(service, owner):
    with pytest.raises(ValidationError):
        service.create(listing_input(agent_id="nope"), owner)


def test_full_lifecycle(service, owner, admin, notifier):
    listing_id = service.create(listing_input(), owner).id
    service.submit_for_approval(listing_id, owner)
    assert notifier.admin_notices[-1]["title"] == "New Property Pending Approval"

    service.approve(listing_id, admin)
    detail = service.get_by_id_or_slug(listing_id)
    assert detail.status == ListingStatus.APPROVED
    assert detail.approved_by == admin.user_id

    service.close(listing_id, owner, "SOLD")
    detail = service.get_by_id_or_slug(listing_id, owner)
    assert detail.status == ListingStatus.SOLD
    with pytest.raises(InvalidTransitionError):
        service.withdraw(listing_id, owner)


def test_moderation_requires_admin(service, db, owner):
    listing = seed_listing(db, owner.user_id, status=ListingStatus.PENDING_APPROVAL)
    with pytest.raises(ForbiddenError):
        service.approve(listing.id, owner)
    with pytest.raises(ForbiddenError):
        service.reject(listing.id, owner, "no")
    db.refresh(listing)
    assert listing.status == ListingStatus.PENDING_APPROVAL


def test_reject_requires_reason(service, db, owner, admin):
    listing = seed_listing(db, owner.user_id, status=ListingStatus.PENDING_APPROVAL)
    with pytest.raises(ValidationError):
        service.reject(listing.id, admin, "   ")


def test_only_owner_or_agent_may_edit(service, db, owner, admin):
    stranger = make_user(db, "stranger@example.com")
    agent_actor, agent_id = make_agent(db)
    listing = seed_listing(db, owner.user_id, status=ListingStatus.DRAFT, agent_id=agent_id)

    with pytest.raises(ForbiddenError):
        service.update(listing.id, ListingUpdate(title="Mine now"), stranger)
    # admins moderate but do not edit content
    with pytest.raises(ForbiddenError):
        service.update(listing.id, ListingUpdate(title="Admin edit"), admin)
    assert service.update(listing.id, ListingUpdate(bedrooms=4), agent_actor).bedrooms == 4


def test_update_invalidates_cached_detail(service, db, owner, cache):
    listing = seed_listing(db, owner.user_id, slug="flat-in-rhodes-park", price=9500)
    assert service.get_by_id_or_slug(listing.id).price == 9500
    assert service.get_by_id_or_slug("flat-in-rhodes-park").price == 9500
    assert cache.get(detail_key(listing.id)) is not None

    service.update(listing.id, ListingUpdate(description="Freshly painted"), owner)
    assert cache.get(detail_key(listing.id)) is None
    assert cache.get(detail_key("flat-in-rhodes-park")) is None
    assert service.get_by_id_or_slug("flat-in-rhodes-park").description == "Freshly painted"


def test_title_change_moves_slug_and_drops_old_key(service, db, owner, cache):
    listing = seed_listing(db, owner.user_id, slug="flat-in-rhodes-park", status=ListingStatus.DRAFT)
    service.get_by_id_or_slug("flat-in-rhodes-park", owner)

    detail = service.update(listing.id, ListingUpdate(title="Penthouse in Rhodes Park"), owner)
    assert detail.slug == "penthouse-in-rhodes-park"
    assert cache.get(detail_key("flat-in-rhodes-park")) is None
    with pytest.raises(NotFoundError):
        service.get_by_id_or_slug("flat-in-rhodes-park", owner)


def test_significant_edit_sends_listing_back_to_moderation(service, db, owner, audit, notifier):
    listing = seed_listing(db, owner.user_id, price=9500)
    detail = service.update(listing.id, ListingUpdate(price=12000), owner)
    assert detail.status == ListingStatus.PENDING_APPROVAL
    assert audit.actions() == ["UPDATE", "REQUEUE"]
    assert notifier.admin_notices[-1]["data"] == {"listing_id": listing.id}
    # no longer publicly visible
    with pytest.raises(NotFoundError):
        service.get_by_id_or_slug(listing.id)


def test_cosmetic_edit_keeps_listing_live(service, db, owner):
    listing = seed_listing(db, owner.user_id, price=9500)
    detail = service.update(listing.id, ListingUpdate(description="New photos", price=9500), owner)
    assert detail.status == ListingStatus.APPROVED


def test_update_replaces_tags_and_images(service, db, owner):
    listing_id = service.create(listing_input(), owner).id
    detail = service.update(listing_id, ListingUpdate(
        features=["Pool", "solar"],
        images=[ImageIn(url="https://img.example.com/a.jpg"), ImageIn(url="https://img.example.com/b.jpg", sort_order=1)],
    ), owner)
    assert detail.features == ["pool", "solar"]
    assert [i.url for i in detail.images] == ["https://img.example.com/a.jpg", "https://img.example.com/b.jpg"]


def test_delete_is_soft_and_hides_listing(service, db, owner, audit):
    listing = seed_listing(db, owner.user_id, slug="gone")
    service.get_by_id_or_slug("gone")
    service.delete(listing.id, owner)

    with pytest.raises(NotFoundError):
        service.get_by_id_or_slug("gone")
    db.expire_all()
    row = db.query(Listing).filter(Listing.id == listing.id).one()
    assert row.is_deleted
    assert row.status == ListingStatus.APPROVED
    assert audit.entries[-1].action == "DELETE"
    assert service.search(SearchFilters()).items == []


def test_delete_terminal_listing_is_rejected(service, db, owner):
    listing = seed_listing(db, owner.user_id, status=ListingStatus.RENTED)
    with pytest.raises(InvalidTransitionError):
        service.delete(listing.id, owner)


def test_unapproved_detail_hidden_from_public(service, db, owner, admin):
    listing = seed_listing(db, owner.user_id, status=ListingStatus.DRAFT)
    stranger = make_user(db, "stranger@example.com")
    # cache is filled by the owner's read; visibility must still hold afterwards
    assert service.get_by_id_or_slug(listing.id, owner).status == ListingStatus.DRAFT
    with pytest.raises(NotFoundError):
        service.get_by_id_or_slug(listing.id)
    with pytest.raises(NotFoundError):
        service.get_by_id_or_slug(listing.id, stranger)
    assert service.get_by_id_or_slug(listing.id, admin).id == listing.id


def test_inquiries_only_shown_to_owner(service, db, owner):
    listing = seed_listing(db, owner.user_id)
    for n in range(7):
        db.add(Inquiry(listing_id=listing.id, message=f"Is it still available? #{n}"))
    db.commit()

    mine = service.get_by_id_or_slug(listing.id, owner)
    assert len(mine.recent_inquiries) == 5
    assert mine.inquiry_count == 7

    public = service.get_by_id_or_slug(listing.id)
    assert public.recent_inquiries == []
    assert public.inquiry_count == 7


def test_unknown_listing_not_found(service):
    with pytest.raises(NotFoundError) as exc:
        service.get_by_id_or_slug("does-not-exist")
    assert exc.value.kind == ErrorKind.NOT_FOUND


def test_anonymous_search_is_cached(service, db, owner, cache):
    seed_listing(db, owner.user_id, city="Lusaka")
    first = service.search(SearchFilters(city="Lusaka"))
    seed_listing(db, owner.user_id, city="Lusaka")
    # served from cache until the TTL lapses
    assert service.search(SearchFilters(city="Lusaka")).pagination.total == first.pagination.total == 1
    # callers with an identity always hit the store
    assert service.search(SearchFilters(city="Lusaka"), actor=owner).pagination.total == 2


def test_feature_and_featured_listing(service, db, owner, admin, cache, clock):
    a = seed_listing(db, owner.user_id)
    b = seed_listing(db, owner.user_id)
    seed_listing(db, owner.user_id)
    assert service.get_featured(10) == []

    service.feature(a.id, admin, tier=1)
    service.feature(b.id, admin, tier=3)
    featured = service.get_featured(10)
    assert [s.id for s in featured] == [b.id, a.id]
    assert featured[0].featured_tier == 3
    assert cache.get(featured_key(10)) is not None

    service.unfeature(b.id, admin)
    assert cache.get(featured_key(10)) is None
    assert [s.id for s in service.get_featured(10)] == [a.id]

    clock.advance(days=31)
    cache.delete_pattern("listings:featured:*")
    assert service.get_featured(10) == []


def test_feature_rejects_past_end(service, db, owner, admin, clock):
    listing = seed_listing(db, owner.user_id)
    with pytest.raises(ValidationError):
        service.feature(listing.id, admin, until=clock() - timedelta(hours=1))


def test_record_view(service, db, owner):
    listing = seed_listing(db, owner.user_id)
    assert service.record_view(listing.id, ViewerIdentity(session_id="s1")).recorded
    assert service.record_view(listing.id, ViewerIdentity(session_id="s1")).deduplicated


def test_store_outage_maps_to_store_unavailable(db, cache, audit, notifier, settings, owner, monkeypatch):
    service = PropertyCatalogService(db, cache, audit, notifier, settings=settings)

    def boom(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr("catalog.crud.find_by_id_or_slug", boom)
    with pytest.raises(StoreUnavailableError) as exc:
        service.get_by_id_or_slug("anything")
    assert exc.value.status_code == 503


def test_sql_collaborators_persist(session_factory, db, cache, settings, owner, admin, clock):
    service = PropertyCatalogService(
        db, cache, SqlAuditLogger(session_factory), SqlNotifier(session_factory), settings=settings, clock=clock,
    )
    listing_id = service.create(listing_input(), owner).id
    service.submit_for_approval(listing_id, owner)
    service.approve(listing_id, admin)

    db.expire_all()
    actions = [a.action for a in db.query(AuditLog).order_by(AuditLog.id).all()]
    assert actions == ["CREATE", "SUBMISSION", "APPROVAL"]
    notices = db.query(Notification).all()
    assert {n.user_id for n in notices} == {admin.user_id, owner.user_id}


def test_non_slug_integrity_error_is_not_retried(service, owner, monkeypatch):
    calls = []

    def failing_insert(*args, **kwargs):
        calls.append(1)
        raise IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: listings.owner_id"))

    monkeypatch.setattr("catalog.crud.insert_listing", failing_insert)
    with pytest.raises(InternalError) as exc:
        service.create(listing_input(), owner)
    assert len(calls) == 1
    assert isinstance(exc.value.__cause__, IntegrityError)


def test_slug_conflict_is_retried(service, owner, monkeypatch):
    real_insert = crud.insert_listing
    calls = []

    def racing_insert(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: listings.slug"))
        return real_insert(*args, **kwargs)

    monkeypatch.setattr("catalog.crud.insert_listing", racing_insert)
    detail = service.create(listing_input(), owner)
    assert len(calls) == 2
    assert detail.slug == "three-bedroom-house-in-kabulonga"
