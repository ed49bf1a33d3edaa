# catalog/notifications.py
"""In-app notification collaborator (owner and admin notices)."""
from typing import Any, Dict, Optional, Protocol
from . import crud
from .audit import jsonable
from .models import Notification
from .utils import get_logger

logger = get_logger("catalog.notifications")


class Notifier(Protocol):
    def create(self, user_id: str, title: str, message: str, type: str,
               data: Optional[Dict[str, Any]] = None) -> None: ...

    def notify_admins(self, title: str, message: str, type: str,
                      data: Optional[Dict[str, Any]] = None) -> None: ...


class SqlNotifier:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create(self, user_id, title, message, type, data=None):
        db = self.session_factory()
        try:
            db.add(Notification(user_id=user_id, title=title, message=message, type=type, data=jsonable(data)))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def notify_admins(self, title, message, type, data=None):
        db = self.session_factory()
        try:
            admin_ids = crud.admin_user_ids(db)
            for admin_id in admin_ids:
                db.add(Notification(user_id=admin_id, title=title, message=message, type=type, data=jsonable(data)))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.debug("Notified %d admins: %s", len(admin_ids), title)
