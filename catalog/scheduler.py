# catalog/scheduler.py
from apscheduler.schedulers.background import BackgroundScheduler
from .config import Settings
from .engagement import prune_expired_views
from .utils import logger


def prune_views_job(session_factory, retention_days: int) -> int:
    db = session_factory()
    try:
        return prune_expired_views(db, retention_days)
    finally:
        db.close()


def build_scheduler(settings: Settings, session_factory) -> BackgroundScheduler:
    """Background scheduler with the periodic jobs registered. Not started."""
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        prune_views_job,
        "interval",
        minutes=settings.view_prune_interval_minutes,
        args=[session_factory, settings.view_retention_days],
        id="prune-view-events",
        name="prune-view-events",
        coalesce=True,
        max_instances=1,
        replace_existing=True,
    )
    logger.info(
        "Scheduler configured: view events pruned every %d min (retention %d days)",
        settings.view_prune_interval_minutes, settings.view_retention_days,
    )
    return scheduler
