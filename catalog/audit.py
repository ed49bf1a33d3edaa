# catalog/audit.py
"""Audit trail collaborator.

The catalog only ever calls `log(entry)`, after its own write has committed.
`SqlAuditLogger` is the default store; anything with the same method works.
"""
import json
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Protocol
from .models import AuditLog


def jsonable(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


@dataclass
class AuditEntry:
    actor_id: Optional[str]
    action: str
    entity_type: str
    entity_id: Optional[str]
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    target_user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger(Protocol):
    def log(self, entry: AuditEntry) -> None: ...


class SqlAuditLogger:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def log(self, entry: AuditEntry) -> None:
        db = self.session_factory()
        try:
            db.add(AuditLog(
                user_id=entry.actor_id,
                target_user_id=entry.target_user_id,
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                old_values=jsonable(entry.old_values),
                new_values=jsonable(entry.new_values),
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
