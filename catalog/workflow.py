# catalog/workflow.py
"""Moderation lifecycle of a listing.

`ApprovalWorkflow.apply` validates and performs a transition on a loaded
listing (no commit); `emit` hands the audit entry and notifications to the
dispatcher once the caller has committed. Status and approval status only
ever move together, along the table below.
"""
import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional
from .audit import AuditEntry, AuditLogger
from .dispatch import InlineDispatcher
from .errors import IncompletePropertyError, InternalError, InvalidTransitionError, NoImagesError
from .models import STATUS_PAIRS, ApprovalStatus, Listing, ListingStatus
from .notifications import Notifier
from .schemas import Actor
from .utils import get_logger, utcnow

logger = get_logger("catalog.workflow")

REQUIRED_FOR_SUBMISSION = ("title", "description", "price", "address", "city")


class Trigger(str, enum.Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_REVISION = "request_revision"
    REQUEUE = "requeue"
    WITHDRAW = "withdraw"
    MARK_SOLD = "mark_sold"
    MARK_RENTED = "mark_rented"


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[ListingStatus]
    target: ListingStatus
    approval: ApprovalStatus
    audit_action: str


S = ListingStatus
A = ApprovalStatus

TRANSITIONS: Dict[Trigger, Transition] = {
    Trigger.SUBMIT: Transition(
        frozenset([S.DRAFT, S.REVISION_REQUESTED, S.REJECTED]), S.PENDING_APPROVAL, A.SUBMITTED, "SUBMISSION"),
    Trigger.APPROVE: Transition(frozenset([S.PENDING_APPROVAL]), S.APPROVED, A.APPROVED, "APPROVAL"),
    Trigger.REJECT: Transition(frozenset([S.PENDING_APPROVAL]), S.REJECTED, A.REJECTED, "REJECTION"),
    Trigger.REQUEST_REVISION: Transition(
        frozenset([S.PENDING_APPROVAL]), S.REVISION_REQUESTED, A.REVISION_REQUESTED, "REVISION_REQUEST"),
    Trigger.REQUEUE: Transition(frozenset([S.APPROVED]), S.PENDING_APPROVAL, A.SUBMITTED, "REQUEUE"),
    Trigger.WITHDRAW: Transition(frozenset([S.APPROVED]), S.WITHDRAWN, A.APPROVED, "WITHDRAWAL"),
    Trigger.MARK_SOLD: Transition(frozenset([S.APPROVED]), S.SOLD, A.APPROVED, "STATUS_CHANGE"),
    Trigger.MARK_RENTED: Transition(frozenset([S.APPROVED]), S.RENTED, A.APPROVED, "STATUS_CHANGE"),
}


def status_snapshot(listing: Listing) -> Dict[str, str]:
    return {"status": listing.status.value, "approval_status": listing.approval_status.value}


@dataclass
class TransitionRecord:
    trigger: Trigger
    listing_id: str
    owner_id: str
    title: str
    actor_id: str
    before: Dict[str, str]
    after: Dict[str, str]
    reason: Optional[str] = None


def missing_fields(listing: Listing):
    return [f for f in REQUIRED_FOR_SUBMISSION if getattr(listing, f) in (None, "")]


class ApprovalWorkflow:
    def __init__(self, audit: AuditLogger, notifier: Notifier, dispatcher=None, clock=utcnow):
        self.audit = audit
        self.notifier = notifier
        self.dispatcher = dispatcher or InlineDispatcher()
        self.clock = clock

    @staticmethod
    def check_complete(listing: Listing) -> None:
        missing = missing_fields(listing)
        if missing:
            raise IncompletePropertyError(
                f"Missing required fields: {', '.join(missing)}", details={"missing": missing}
            )
        if not listing.images:
            raise NoImagesError()

    def apply(self, listing: Listing, trigger: Trigger, actor: Actor, reason: Optional[str] = None) -> TransitionRecord:
        """Move `listing` along `trigger`. Raises before touching it if not allowed."""
        transition = TRANSITIONS[trigger]
        if listing.status not in transition.sources:
            raise InvalidTransitionError(
                f"Cannot {trigger.value.replace('_', ' ')} a listing in status {listing.status.value}",
                details={"status": listing.status.value, "trigger": trigger.value},
            )
        if trigger == Trigger.SUBMIT:
            self.check_complete(listing)

        before = status_snapshot(listing)
        now = self.clock()
        listing.status = transition.target
        listing.approval_status = transition.approval

        if trigger == Trigger.APPROVE:
            listing.approved_at = now
            listing.approved_by = actor.user_id
            listing.published_at = now
            listing.rejection_reason = None
        elif trigger in (Trigger.REJECT, Trigger.REQUEST_REVISION):
            listing.rejection_reason = reason
        elif trigger == Trigger.SUBMIT:
            listing.rejection_reason = None

        if (listing.status, listing.approval_status) not in STATUS_PAIRS:
            raise InternalError(f"Transition {trigger.value} produced an invalid status pair")

        logger.info("Listing %s: %s -> %s by %s", listing.id, before["status"], listing.status.value, actor.user_id)
        return TransitionRecord(
            trigger=trigger,
            listing_id=listing.id,
            owner_id=listing.owner_id,
            title=listing.title,
            actor_id=actor.user_id,
            before=before,
            after=status_snapshot(listing),
            reason=reason,
        )

    def emit(self, record: TransitionRecord) -> None:
        """Dispatch audit and notifications for a committed transition."""
        transition = TRANSITIONS[record.trigger]
        new_values = dict(record.after)
        if record.reason:
            new_values["reason"] = record.reason
        target = record.owner_id if record.actor_id != record.owner_id else None
        self.dispatcher.submit(
            f"audit:{transition.audit_action}:{record.listing_id}",
            self.audit.log,
            AuditEntry(
                actor_id=record.actor_id,
                action=transition.audit_action,
                entity_type="Property",
                entity_id=record.listing_id,
                old_values=record.before,
                new_values=new_values,
                target_user_id=target,
            ),
        )

        data = {"listing_id": record.listing_id}
        title = record.title
        if record.trigger == Trigger.SUBMIT:
            self._notify_admins("New Property Pending Approval",
                                f'Property "{title}" is waiting for approval', data)
        elif record.trigger == Trigger.REQUEUE:
            self._notify_admins("Property Updated, Pending Re-approval",
                                f'Property "{title}" was edited and is waiting for approval again', data)
        elif record.trigger == Trigger.APPROVE:
            self._notify_owner(record, "Property Approved",
                               f'Your property "{title}" has been approved and is now live', data)
        elif record.trigger == Trigger.REJECT:
            self._notify_owner(record, "Property Rejected",
                               f'Your property "{title}" was rejected. Reason: {record.reason}',
                               dict(data, reason=record.reason))
        elif record.trigger == Trigger.REQUEST_REVISION:
            self._notify_owner(record, "Revision Requested",
                               f'Your property "{title}" needs changes before approval: {record.reason}',
                               dict(data, reason=record.reason))

    def _notify_admins(self, title, message, data):
        self.dispatcher.submit(
            f"notify-admins:{data['listing_id']}", self.notifier.notify_admins,
            title=title, message=message, type="approval", data=data,
        )

    def _notify_owner(self, record, title, message, data):
        self.dispatcher.submit(
            f"notify:{record.owner_id}:{record.listing_id}", self.notifier.create,
            user_id=record.owner_id, title=title, message=message, type="approval", data=data,
        )
