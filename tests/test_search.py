# tests/test_search.py
from datetime import timedelta
import pytest
from catalog.models import FeaturedListing, ListingStatus, ListingTag, PropertyType, UserRole
from catalog.schemas import Actor, Paging, SearchFilters, Sort
from catalog.search import SearchComposer, bounding_box, haversine_km
from conftest import make_agent, make_user, seed_listing

LUSAKA = (-15.4167, 28.2833)


def ids(result):
    return [item.id for item in result.items]


@pytest.fixture
def composer(db, clock):
    return SearchComposer(db, clock=clock)


def test_haversine_lusaka_to_ndola():
    assert haversine_km(*LUSAKA, -12.9587, 28.6366) == pytest.approx(275, abs=5)


def test_bounding_box_contains_circle():
    min_lat, max_lat, min_lon, max_lon = bounding_box(*LUSAKA, 10)
    assert haversine_km(*LUSAKA, min_lat, LUSAKA[1]) == pytest.approx(10, rel=1e-6)
    assert haversine_km(*LUSAKA, LUSAKA[0], max_lon) >= 10 - 1e-6
    assert min_lon < LUSAKA[1] < max_lon


def test_bounding_box_near_pole_drops_longitude():
    assert bounding_box(89.99, 0, 50)[2:] == (None, None)


def test_anonymous_sees_only_approved(db, owner, composer):
    live = seed_listing(db, owner.user_id)
    seed_listing(db, owner.user_id, status=ListingStatus.PENDING_APPROVAL)
    seed_listing(db, owner.user_id, status=ListingStatus.DRAFT)
    # a caller-supplied status cannot widen visibility
    assert ids(composer.search(SearchFilters())) == [live.id]
    assert composer.search(SearchFilters(status=ListingStatus.DRAFT)).items == []


def test_owner_and_admin_visibility(db, owner, composer):
    other = make_user(db, "other@example.com")
    seed_listing(db, owner.user_id)
    mine = seed_listing(db, owner.user_id, status=ListingStatus.DRAFT)
    seed_listing(db, other.user_id, status=ListingStatus.DRAFT)

    as_owner = composer.search(SearchFilters(), actor=owner)
    assert mine.id in ids(as_owner)
    assert as_owner.pagination.total == 2

    as_admin = composer.search(SearchFilters(), actor=Actor(user_id="root", role=UserRole.ADMIN))
    assert as_admin.pagination.total == 3


def test_agent_sees_assigned_drafts(db, owner, composer):
    agent_actor, agent_id = make_agent(db)
    assigned = seed_listing(db, owner.user_id, status=ListingStatus.DRAFT, agent_id=agent_id)
    assert assigned.id in ids(composer.search(SearchFilters(), actor=agent_actor))


def test_filters_combine(db, owner, composer):
    cheap = seed_listing(db, owner.user_id, price=5000, bedrooms=1, city="Lusaka")
    seed_listing(db, owner.user_id, price=15000, bedrooms=3, city="Lusaka")
    seed_listing(db, owner.user_id, price=4000, bedrooms=1, city="Kitwe")
    seed_listing(db, owner.user_id, price=4500, property_type=PropertyType.LAND, city="lusaka")

    result = composer.search(SearchFilters(
        city="lusaka", max_price=10000, min_bedrooms=1, property_type=PropertyType.APARTMENT,
    ))
    assert ids(result) == [cheap.id]


def test_text_query_matches_any_field(db, owner, composer):
    by_title = seed_listing(db, owner.user_id, title="Garden cottage")
    by_address = seed_listing(db, owner.user_id, title="Flat", address="7 Garden Close")
    seed_listing(db, owner.user_id, title="Shop front")
    assert set(ids(composer.search(SearchFilters(q="garden")))) == {by_title.id, by_address.id}


def test_feature_tags_require_all(db, owner, composer):
    both = seed_listing(db, owner.user_id)
    both.tags = [ListingTag(tag="pool"), ListingTag(tag="borehole")]
    pool_only = seed_listing(db, owner.user_id)
    pool_only.tags = [ListingTag(tag="pool")]
    db.commit()

    assert ids(composer.search(SearchFilters(features="Pool, borehole"))) == [both.id]
    assert set(ids(composer.search(SearchFilters(features="pool")))) == {both.id, pool_only.id}


def test_featured_filter_uses_window(db, owner, composer, clock):
    current = seed_listing(db, owner.user_id)
    expired = seed_listing(db, owner.user_id)
    db.add(FeaturedListing(listing_id=current.id, start_date=clock() - timedelta(days=1),
                           end_date=clock() + timedelta(days=5)))
    db.add(FeaturedListing(listing_id=expired.id, start_date=clock() - timedelta(days=10),
                           end_date=clock() - timedelta(days=1)))
    db.commit()
    assert ids(composer.search(SearchFilters(featured=True))) == [current.id]


def test_radius_search_drops_box_corners(db, owner, composer):
    near = seed_listing(db, owner.user_id, latitude=-15.42, longitude=28.29)
    far = seed_listing(db, owner.user_id, latitude=-15.85, longitude=28.29)
    # inside the 10 km box but ~12 km away along the diagonal
    corner = seed_listing(db, owner.user_id, latitude=-15.4167 + 0.085, longitude=28.2833 + 0.088)
    seed_listing(db, owner.user_id, latitude=None, longitude=None)

    result = composer.search(SearchFilters(latitude=LUSAKA[0], longitude=LUSAKA[1], radius=10))
    assert ids(result) == [near.id]
    assert result.items[0].distance_km < 1
    assert far.id not in ids(result) and corner.id not in ids(result)


def test_paging_and_sort(db, owner, composer):
    for price in (300, 100, 500, 200, 400):
        seed_listing(db, owner.user_id, price=price)

    page1 = composer.search(SearchFilters(), Paging(page=1, limit=2), Sort(sort_by="price", sort_order="asc"))
    assert [i.price for i in page1.items] == [100, 200]
    assert page1.pagination.total == 5
    assert page1.pagination.total_pages == 3
    assert page1.pagination.has_more

    page3 = composer.search(SearchFilters(), Paging(page=3, limit=2), Sort(sort_by="price", sort_order="asc"))
    assert [i.price for i in page3.items] == [500]
    assert not page3.pagination.has_more


def test_empty_result_is_a_page(composer):
    result = composer.search(SearchFilters(city="Nowhere"))
    assert result.items == []
    assert result.pagination.total == 0
    assert result.pagination.total_pages == 0
    assert not result.pagination.has_more


def test_invalid_range_rejected():
    with pytest.raises(ValueError):
        SearchFilters(min_price=500, max_price=100)


def test_zero_lower_bound_keeps_rows_without_rooms(db, owner, composer):
    plot = seed_listing(db, owner.user_id, property_type=PropertyType.LAND, bedrooms=None, bathrooms=None)
    flat = seed_listing(db, owner.user_id)
    both = {plot.id, flat.id}
    assert set(ids(composer.search(SearchFilters(min_bedrooms=0)))) == both
    assert set(ids(composer.search(SearchFilters(min_bathrooms=0)))) == both
    assert ids(composer.search(SearchFilters(min_bedrooms=1))) == [flat.id]
