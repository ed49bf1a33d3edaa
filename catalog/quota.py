# catalog/quota.py
from dataclasses import dataclass
from typing import Dict
from sqlalchemy.orm import Session
from . import crud
from .config import DEFAULT_TIER_LIMITS
from .errors import ListingLimitError, store_errors
from .utils import get_logger

logger = get_logger("catalog.quota")

UNLIMITED = -1


@dataclass
class QuotaStatus:
    tier: str
    limit: int
    active: int

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def exhausted(self) -> bool:
        return not self.unlimited and self.active >= self.limit


class QuotaGuard:
    """Caps how many active listings an owner may hold, by subscription tier.

    Active means not soft-deleted and not closed as SOLD/RENTED.
    """

    def __init__(self, db: Session, tier_limits: Dict[str, int] = None, default_tier: str = "FREE"):
        self.db = db
        self.tier_limits = {k.upper(): v for k, v in (tier_limits or DEFAULT_TIER_LIMITS).items()}
        self.default_tier = default_tier.upper()

    def limit_for_tier(self, tier: str) -> int:
        tier = (tier or self.default_tier).upper()
        if tier in self.tier_limits:
            return self.tier_limits[tier]
        return self.tier_limits.get(self.default_tier, DEFAULT_TIER_LIMITS["FREE"])

    def status(self, owner_id: str) -> QuotaStatus:
        with store_errors(self.db):
            sub = crud.get_subscription(self.db, owner_id)
            active = crud.count_active_listings(self.db, owner_id)
        tier = (sub.tier if sub is not None and sub.tier else self.default_tier).upper()
        if sub is not None and sub.max_listings is not None:
            limit = sub.max_listings
        else:
            limit = self.limit_for_tier(tier)
        return QuotaStatus(tier=tier, limit=limit, active=active)

    def assert_within_quota(self, owner_id: str) -> QuotaStatus:
        status = self.status(owner_id)
        if status.exhausted:
            logger.info("Owner %s hit listing limit %s (tier %s)", owner_id, status.limit, status.tier)
            raise ListingLimitError(
                f"You have reached your listing limit of {status.limit}. "
                "Upgrade to list more properties.",
                details={"tier": status.tier, "limit": status.limit, "active": status.active},
            )
        return status
