# catalog/engagement.py
"""View tracking.

A view counts once per identity (user id, else session token) per listing per
window. Tracking is best-effort: failures are logged and never reach the
browsing request.
"""
from datetime import timedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from . import crud
from .schemas import ViewerIdentity, ViewResult
from .utils import get_logger, utcnow

logger = get_logger("catalog.engagement")

DEFAULT_WINDOW_SECONDS = 3600


class ViewDeduplicator:
    def __init__(self, db: Session, window_seconds: int = DEFAULT_WINDOW_SECONDS, clock=utcnow):
        self.db = db
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock

    def record_view(self, listing_id: str, viewer: ViewerIdentity) -> ViewResult:
        if viewer.is_anonymous:
            logger.debug("View on %s without identity ignored", listing_id)
            return ViewResult(deduplicated=False, recorded=False)

        # a user id wins over a session token when both are present
        user_id = viewer.user_id
        session_id = None if user_id is not None else viewer.session_id
        now = self.clock()
        try:
            recent = crud.find_recent_view(
                self.db, listing_id, now - self.window, user_id=user_id, session_id=session_id
            )
            if recent is not None:
                return ViewResult(deduplicated=True, recorded=False)

            crud.insert_view_event(
                self.db,
                listing_id=listing_id,
                user_id=user_id,
                session_id=session_id,
                ip_address=viewer.ip_address,
                user_agent=viewer.user_agent,
                referrer=viewer.referrer,
                viewed_at=now,
            )
            if crud.increment_view_count(self.db, listing_id) == 0:
                # listing missing or soft-deleted
                self.db.rollback()
                return ViewResult(deduplicated=False, recorded=False)
            self.db.commit()
            return ViewResult(deduplicated=False, recorded=True)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("View tracking failed for %s: %s", listing_id, e)
            return ViewResult(deduplicated=False, recorded=False)


def prune_expired_views(db: Session, retention_days: int) -> int:
    cutoff = utcnow() - timedelta(days=retention_days)
    try:
        removed = crud.prune_view_events(db, cutoff)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Pruning view events failed: %s", e)
        return 0
    logger.info("Pruned %d view events older than %s", removed, cutoff.isoformat())
    return removed
