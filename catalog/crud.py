# catalog/crud.py
"""Store-level helpers for listings and the records around them.

Callers own the transaction: nothing here commits. Everything takes the
session explicitly.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session, joinedload, selectinload
from .models import (
    Agent, FeaturedListing, Inquiry, Listing, ListingImage, ListingTag,
    Subscription, TERMINAL_STATUSES, User, UserRole, ViewEvent,
)


def _with_relations(q):
    return q.options(
        selectinload(Listing.images),
        selectinload(Listing.tags),
        joinedload(Listing.owner),
        joinedload(Listing.agent).joinedload(Agent.user),
        joinedload(Listing.featured),
    )


def get_listing(db: Session, listing_id: str, include_deleted: bool = False) -> Optional[Listing]:
    q = _with_relations(db.query(Listing)).filter(Listing.id == listing_id)
    if not include_deleted:
        q = q.filter(Listing.is_deleted.is_(False))
    return q.first()

def find_by_id_or_slug(db: Session, id_or_slug: str) -> Optional[Listing]:
    q = _with_relations(db.query(Listing)).filter(
        or_(Listing.id == id_or_slug, Listing.slug == id_or_slug),
        Listing.is_deleted.is_(False),
    )
    return q.first()

def insert_listing(db: Session, data: Dict[str, Any], tags: Iterable[str], images: Iterable[Dict[str, Any]]) -> Listing:
    obj = Listing(**data)
    obj.tags = [ListingTag(tag=t) for t in tags]
    obj.images = [ListingImage(**img) for img in images]
    db.add(obj)
    db.flush()
    return obj

def apply_updates(obj: Listing, updates: Dict[str, Any]) -> None:
    for k, v in updates.items():
        setattr(obj, k, v)

def replace_tags(obj: Listing, tags: Iterable[str]) -> None:
    wanted = list(tags)
    keep = [t for t in obj.tags if t.tag in wanted]
    have = {t.tag for t in keep}
    obj.tags = keep + [ListingTag(tag=t) for t in wanted if t not in have]

def replace_images(obj: Listing, images: Iterable[Dict[str, Any]]) -> None:
    obj.images = [ListingImage(**img) for img in images]

def get_agent(db: Session, agent_id: str) -> Optional[Agent]:
    return db.query(Agent).filter(Agent.id == agent_id).first()

def count_active_listings(db: Session, owner_id: str) -> int:
    return (
        db.query(func.count(Listing.id))
        .filter(
            Listing.owner_id == owner_id,
            Listing.is_deleted.is_(False),
            Listing.status.notin_(list(TERMINAL_STATUSES)),
        )
        .scalar()
    ) or 0

def get_subscription(db: Session, user_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.user_id == user_id).first()

def recent_inquiries(db: Session, listing_id: str, limit: int = 5) -> List[Inquiry]:
    return (
        db.query(Inquiry)
        .filter(Inquiry.listing_id == listing_id)
        .order_by(Inquiry.created_at.desc())
        .limit(limit)
        .all()
    )

def count_inquiries(db: Session, listing_id: str) -> int:
    return db.query(func.count(Inquiry.id)).filter(Inquiry.listing_id == listing_id).scalar() or 0

def find_recent_view(db: Session, listing_id: str, since: datetime,
                     user_id: Optional[str] = None, session_id: Optional[str] = None) -> Optional[ViewEvent]:
    q = db.query(ViewEvent).filter(ViewEvent.listing_id == listing_id, ViewEvent.viewed_at >= since)
    if user_id is not None:
        q = q.filter(ViewEvent.user_id == user_id)
    else:
        q = q.filter(ViewEvent.session_id == session_id)
    return q.order_by(ViewEvent.viewed_at.desc()).first()

def insert_view_event(db: Session, **fields) -> ViewEvent:
    event = ViewEvent(**fields)
    db.add(event)
    db.flush()
    return event

def increment_view_count(db: Session, listing_id: str) -> int:
    # single UPDATE ... SET view_count = view_count + 1, never read-modify-write
    return (
        db.query(Listing)
        .filter(Listing.id == listing_id, Listing.is_deleted.is_(False))
        .update({Listing.view_count: Listing.view_count + 1}, synchronize_session=False)
    )

def prune_view_events(db: Session, before: datetime) -> int:
    return db.query(ViewEvent).filter(ViewEvent.viewed_at < before).delete(synchronize_session=False)

def upsert_featured(db: Session, obj: Listing, start: datetime, end: datetime, tier: int) -> FeaturedListing:
    featured = obj.featured
    if featured is None:
        featured = FeaturedListing(listing_id=obj.id, start_date=start, end_date=end, tier=tier)
        obj.featured = featured
    else:
        featured.end_date = end
        featured.tier = tier
    db.flush()
    return featured

def delete_featured(db: Session, obj: Listing) -> bool:
    if obj.featured is None:
        return False
    obj.featured = None
    db.flush()
    return True

def featured_window_active(now: datetime):
    return Listing.featured.has(and_(FeaturedListing.start_date <= now, FeaturedListing.end_date >= now))

def admin_user_ids(db: Session) -> List[str]:
    rows = db.query(User.id).filter(User.role == UserRole.ADMIN, User.is_deleted.is_(False)).all()
    return [r[0] for r in rows]
