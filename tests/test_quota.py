# tests/test_quota.py
import pytest
from catalog.errors import ErrorKind, ListingLimitError
from catalog.models import ListingStatus
from catalog.quota import QuotaGuard
from conftest import make_user, seed_listing


def test_free_tier_blocks_sixth_listing(db, owner):
    guard = QuotaGuard(db)
    for _ in range(5):
        seed_listing(db, owner.user_id, status=ListingStatus.DRAFT)
    with pytest.raises(ListingLimitError) as exc:
        guard.assert_within_quota(owner.user_id)
    assert exc.value.kind == ErrorKind.LISTING_LIMIT_REACHED
    assert "listing limit of 5" in exc.value.message


def test_closed_and_deleted_listings_do_not_count(db, owner):
    guard = QuotaGuard(db)
    for _ in range(3):
        seed_listing(db, owner.user_id)
    seed_listing(db, owner.user_id, status=ListingStatus.SOLD)
    seed_listing(db, owner.user_id, status=ListingStatus.RENTED)
    seed_listing(db, owner.user_id, is_deleted=True)
    status = guard.assert_within_quota(owner.user_id)
    assert status.active == 3
    assert status.limit == 5


def test_subscription_tier_and_override(db):
    basic = make_user(db, "basic@example.com", tier="basic")
    custom = make_user(db, "custom@example.com", tier="BASIC", max_listings=1)
    guard = QuotaGuard(db)
    assert guard.status(basic.user_id).limit == 20

    seed_listing(db, custom.user_id)
    with pytest.raises(ListingLimitError):
        guard.assert_within_quota(custom.user_id)


def test_enterprise_is_unlimited(db):
    big = make_user(db, "big@example.com", tier="ENTERPRISE")
    for _ in range(6):
        seed_listing(db, big.user_id)
    status = QuotaGuard(db).assert_within_quota(big.user_id)
    assert status.unlimited
    assert not status.exhausted


def test_unknown_tier_uses_default(db):
    odd = make_user(db, "odd@example.com", tier="GOLD")
    guard = QuotaGuard(db, tier_limits={"FREE": 2, "BASIC": 20}, default_tier="free")
    assert guard.status(odd.user_id).limit == 2
