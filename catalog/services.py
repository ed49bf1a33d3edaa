# catalog/services.py
"""Property catalog façade.

One `PropertyCatalogService` is built per request around that request's
session; the cache, dispatcher and collaborators are shared process-wide.
Mutations follow the same order: authorize, change, commit, drop the detail
cache entries, then dispatch audit and notifications.
"""
from datetime import timedelta, timezone
from typing import List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, contains_eager, selectinload
from . import crud
from .audit import AuditEntry, AuditLogger
from .cache import FEATURED_PATTERN, CacheLayer, detail_key, detail_keys, featured_key, search_key
from .config import Settings
from .dispatch import InlineDispatcher
from .engagement import ViewDeduplicator
from .errors import (
    ForbiddenError, InternalError, InvalidTransitionError, NotFoundError, ValidationError, store_errors,
)
from .models import (
    TERMINAL_STATUSES, ApprovalStatus, FeaturedListing, Listing, ListingStatus,
)
from .notifications import Notifier
from .quota import QuotaGuard
from .schemas import (
    SIGNIFICANT_FIELDS, Actor, ListingCreate, ListingDetail, ListingSummary, ListingUpdate,
    PagedResult, Paging, SearchFilters, Sort, ViewerIdentity, ViewResult,
    detail_from_listing, normalize_tags, summary_from_listing,
)
from .search import SearchComposer
from .slugs import SlugAllocator
from .utils import get_logger, utcnow
from .workflow import ApprovalWorkflow, Trigger, status_snapshot

logger = get_logger("catalog.services")

SLUG_ATTEMPTS = 3
MAX_FEATURED_LIMIT = 50
# columns that may not be cleared through an update
NON_NULLABLE_UPDATES = ("title", "property_type", "listing_type", "currency")


def _is_slug_conflict(error: IntegrityError) -> bool:
    """True for a unique violation on `listings.slug` (SQLite or Postgres wording)."""
    message = str(getattr(error, "orig", None) or error).lower()
    return "slug" in message and ("unique" in message or "duplicate" in message)


class PropertyCatalogService:
    def __init__(
        self,
        db: Session,
        cache: CacheLayer,
        audit: AuditLogger,
        notifier: Notifier,
        dispatcher=None,
        settings: Settings = None,
        clock=utcnow,
    ):
        self.db = db
        self.cache = cache
        self.audit = audit
        self.settings = settings or Settings()
        self.dispatcher = dispatcher or InlineDispatcher()
        self.clock = clock
        self.slugs = SlugAllocator(db)
        self.quota = QuotaGuard(db, self.settings.tier_limits, self.settings.default_tier)
        self.views = ViewDeduplicator(db, self.settings.view_dedup_window_seconds, clock=clock)
        self.composer = SearchComposer(db, clock=clock)
        self.workflow = ApprovalWorkflow(audit, notifier, self.dispatcher, clock=clock)

    # ------------------------------------------------------------------ reads

    def search(self, filters: SearchFilters, paging: Paging = None, sort: Sort = None,
               actor: Optional[Actor] = None) -> PagedResult:
        paging = paging or Paging()
        sort = sort or Sort()
        if actor is not None:
            # results depend on who is asking; only the public view is shared
            return self.composer.search(filters, paging, sort, actor)
        key = search_key({
            "filters": filters.model_dump(mode="json", exclude_none=True),
            "paging": paging.model_dump(),
            "sort": sort.model_dump(),
        })
        data = self.cache.get_or_set(
            key,
            lambda: self.composer.search(filters, paging, sort, None).model_dump(mode="json"),
            self.settings.cache_ttl_seconds,
        )
        return PagedResult.model_validate(data)

    def get_by_id_or_slug(self, id_or_slug: str, actor: Optional[Actor] = None) -> ListingDetail:
        data = self.cache.get_or_set(
            detail_key(id_or_slug),
            lambda: self._load_detail(id_or_slug).model_dump(mode="json"),
            self.settings.cache_ttl_seconds,
        )
        # visibility is decided per caller, after the (shared) cache read
        return self._visible(ListingDetail.model_validate(data), actor)

    def get_featured(self, limit: int = 10) -> List[ListingSummary]:
        limit = max(1, min(int(limit), MAX_FEATURED_LIMIT))
        data = self.cache.get_or_set(
            featured_key(limit),
            lambda: [s.model_dump(mode="json") for s in self._load_featured(limit)],
            self.settings.cache_ttl_seconds,
        )
        return [ListingSummary.model_validate(d) for d in data]

    def record_view(self, listing_id: str, viewer: ViewerIdentity) -> ViewResult:
        return self.views.record_view(listing_id, viewer)

    # -------------------------------------------------------------- mutations

    def create(self, data: ListingCreate, actor: Actor) -> ListingDetail:
        self.quota.assert_within_quota(actor.user_id)
        if data.agent_id is not None:
            with store_errors(self.db):
                agent = crud.get_agent(self.db, data.agent_id)
            if agent is None:
                raise ValidationError("Unknown agent", details={"agent_id": data.agent_id})

        fields = data.model_dump(exclude={"features", "images"})
        fields.update(
            owner_id=actor.user_id,
            status=ListingStatus.DRAFT,
            approval_status=ApprovalStatus.SUBMITTED,
        )
        tags = normalize_tags(data.features)
        images = [img.model_dump() for img in data.images]
        listing = self._insert_with_unique_slug(data.title, fields, tags, images)

        self._audit(actor.user_id, "CREATE", listing.id, None, data.model_dump(mode="json"))
        logger.info("Listing %s created by %s as %s", listing.id, actor.user_id, listing.slug)
        return self._detail_for(listing.id)

    def update(self, listing_id: str, patch: ListingUpdate, actor: Actor) -> ListingDetail:
        listing = self._load_for_mutation(listing_id, actor)
        changes = patch.model_dump(exclude_unset=True)
        tags = changes.pop("features", None)
        images = changes.pop("images", None)
        for name in NON_NULLABLE_UPDATES:
            if name in changes and changes[name] is None:
                changes.pop(name)

        old_slug = listing.slug
        old_values = {k: getattr(listing, k) for k in changes}
        if "title" in changes and changes["title"] != listing.title:
            changes["slug"] = self.slugs.allocate(changes["title"], exclude_id=listing.id)
        significant = [f for f in SIGNIFICANT_FIELDS if f in changes and changes[f] != getattr(listing, f)]

        crud.apply_updates(listing, changes)
        if tags is not None:
            crud.replace_tags(listing, normalize_tags(tags))
        if images is not None:
            crud.replace_images(listing, images)

        record = None
        if significant and listing.status == ListingStatus.APPROVED:
            record = self.workflow.apply(listing, Trigger.REQUEUE, actor)
            logger.info("Listing %s re-queued for approval after edit to %s", listing_id, ", ".join(significant))

        self._commit()
        self._invalidate(listing_id, old_slug, changes.get("slug"))

        new_values = dict(changes)
        if tags is not None:
            new_values["features"] = tags
        if images is not None:
            new_values["images"] = len(images)
        self._audit(actor.user_id, "UPDATE", listing_id, old_values, new_values, target=listing.owner_id)
        if record is not None:
            self.workflow.emit(record)
        return self._detail_for(listing_id)

    def delete(self, listing_id: str, actor: Actor) -> None:
        listing = self._load_for_mutation(listing_id, actor, allow_admin=True)
        if listing.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Cannot delete a listing in status {listing.status.value}")
        before = dict(status_snapshot(listing), is_deleted=False)
        listing.is_deleted = True
        listing.deleted_at = self.clock()
        self._commit()
        self._invalidate(listing_id, listing.slug)
        self._audit(actor.user_id, "DELETE", listing_id, before,
                    dict(status_snapshot(listing), is_deleted=True), target=listing.owner_id)

    def submit_for_approval(self, listing_id: str, actor: Actor) -> None:
        listing = self._load_for_mutation(listing_id, actor)
        self._transition(listing, Trigger.SUBMIT, actor)

    def approve(self, listing_id: str, admin: Actor) -> None:
        listing = self._load_for_moderation(listing_id, admin)
        self._transition(listing, Trigger.APPROVE, admin)

    def reject(self, listing_id: str, admin: Actor, reason: str) -> None:
        listing = self._load_for_moderation(listing_id, admin)
        self._transition(listing, Trigger.REJECT, admin, self._require_reason(reason))

    def request_revision(self, listing_id: str, admin: Actor, reason: str) -> None:
        listing = self._load_for_moderation(listing_id, admin)
        self._transition(listing, Trigger.REQUEST_REVISION, admin, self._require_reason(reason))

    def withdraw(self, listing_id: str, actor: Actor) -> None:
        listing = self._load_for_mutation(listing_id, actor, allow_admin=True)
        self._transition(listing, Trigger.WITHDRAW, actor)

    def close(self, listing_id: str, actor: Actor, outcome: str) -> None:
        triggers = {ListingStatus.SOLD.value: Trigger.MARK_SOLD, ListingStatus.RENTED.value: Trigger.MARK_RENTED}
        trigger = triggers.get(str(outcome).upper())
        if trigger is None:
            raise ValidationError("Outcome must be SOLD or RENTED")
        listing = self._load_for_mutation(listing_id, actor, allow_admin=True)
        self._transition(listing, trigger, actor)

    def feature(self, listing_id: str, admin: Actor, until=None, tier: int = 1) -> None:
        listing = self._load_for_moderation(listing_id, admin)
        now = self.clock()
        end = until or now + timedelta(days=self.settings.featured_default_days)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        if end <= now:
            raise ValidationError("featured_until must be in the future")
        with store_errors(self.db):
            crud.upsert_featured(self.db, listing, now, end, tier)
        self._commit()
        self._invalidate(listing_id, listing.slug)
        self.cache.delete_pattern(FEATURED_PATTERN)
        self._audit(admin.user_id, "UPDATE", listing_id, None,
                    {"is_featured": True, "featured_until": end.isoformat(), "tier": tier},
                    target=listing.owner_id)

    def unfeature(self, listing_id: str, admin: Actor) -> None:
        listing = self._load_for_moderation(listing_id, admin)
        with store_errors(self.db):
            removed = crud.delete_featured(self.db, listing)
        self._commit()
        self._invalidate(listing_id, listing.slug)
        self.cache.delete_pattern(FEATURED_PATTERN)
        if removed:
            self._audit(admin.user_id, "UPDATE", listing_id, {"is_featured": True}, {"is_featured": False},
                        target=listing.owner_id)

    # ---------------------------------------------------------------- helpers

    def _transition(self, listing: Listing, trigger: Trigger, actor: Actor, reason: Optional[str] = None) -> None:
        record = self.workflow.apply(listing, trigger, actor, reason)
        self._commit()
        self._invalidate(listing.id, listing.slug)
        self.workflow.emit(record)

    def _insert_with_unique_slug(self, title, fields, tags, images) -> Listing:
        with store_errors(self.db):
            for attempt in range(1, SLUG_ATTEMPTS + 1):
                slug = self.slugs.allocate(title)
                try:
                    listing = crud.insert_listing(self.db, dict(fields, slug=slug), tags, images)
                    self.db.commit()
                    return listing
                except IntegrityError as e:
                    if not _is_slug_conflict(e):
                        raise
                    # another request took the slug between check and insert
                    self.db.rollback()
                    logger.warning("Slug %s taken concurrently (attempt %d/%d): %s", slug, attempt, SLUG_ATTEMPTS, e)
        raise InternalError("Could not allocate a unique slug")

    def _load_for_mutation(self, listing_id: str, actor: Actor, allow_admin: bool = False) -> Listing:
        with store_errors(self.db):
            listing = crud.get_listing(self.db, listing_id)
        if listing is None:
            raise NotFoundError()
        if actor.user_id in (listing.owner_id, listing.agent_user_id):
            return listing
        if allow_admin and actor.is_admin:
            return listing
        raise ForbiddenError()

    def _load_for_moderation(self, listing_id: str, admin: Actor) -> Listing:
        if not admin.is_admin:
            raise ForbiddenError("Admin access required")
        with store_errors(self.db):
            listing = crud.get_listing(self.db, listing_id)
        if listing is None:
            raise NotFoundError()
        return listing

    @staticmethod
    def _require_reason(reason: Optional[str]) -> str:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required")
        return reason

    def _commit(self) -> None:
        with store_errors(self.db):
            self.db.commit()

    def _invalidate(self, listing_id: str, *slugs: Optional[str]) -> None:
        self.cache.delete(*detail_keys(listing_id, *slugs))

    def _audit(self, actor_id, action, entity_id, old_values, new_values, target=None) -> None:
        entry = AuditEntry(
            actor_id=actor_id,
            action=action,
            entity_type="Property",
            entity_id=entity_id,
            old_values=old_values,
            new_values=new_values,
            target_user_id=target if target != actor_id else None,
        )
        self.dispatcher.submit(f"audit:{action}:{entity_id}", self.audit.log, entry)

    def _detail(self, listing: Listing) -> ListingDetail:
        with store_errors(self.db):
            inquiries = crud.recent_inquiries(self.db, listing.id, self.settings.recent_inquiries_limit)
            inquiry_count = crud.count_inquiries(self.db, listing.id)
        return detail_from_listing(listing, inquiries, inquiry_count)

    def _detail_for(self, listing_id: str) -> ListingDetail:
        with store_errors(self.db):
            listing = crud.get_listing(self.db, listing_id)
        if listing is None:
            raise NotFoundError()
        return self._detail(listing)

    def _load_detail(self, id_or_slug: str) -> ListingDetail:
        with store_errors(self.db):
            listing = crud.find_by_id_or_slug(self.db, id_or_slug)
        if listing is None:
            raise NotFoundError()
        return self._detail(listing)

    def _load_featured(self, limit: int) -> List[ListingSummary]:
        now = self.clock()
        with store_errors(self.db):
            rows = (
                self.db.query(Listing)
                .join(Listing.featured)
                .options(contains_eager(Listing.featured), selectinload(Listing.images))
                .filter(
                    Listing.is_deleted.is_(False),
                    Listing.status == ListingStatus.APPROVED,
                    FeaturedListing.start_date <= now,
                    FeaturedListing.end_date >= now,
                )
                .order_by(FeaturedListing.tier.desc(), FeaturedListing.sort_order.asc(), Listing.id.asc())
                .limit(limit)
                .all()
            )
        return [summary_from_listing(r) for r in rows]

    @staticmethod
    def _visible(detail: ListingDetail, actor: Optional[Actor]) -> ListingDetail:
        privileged = actor is not None and (
            actor.is_admin
            or actor.user_id == detail.owner_id
            or (detail.agent is not None and actor.user_id == detail.agent.user_id)
        )
        if detail.status != ListingStatus.APPROVED and not privileged:
            raise NotFoundError()
        if not privileged and detail.recent_inquiries:
            return detail.model_copy(update={"recent_inquiries": []})
        return detail
