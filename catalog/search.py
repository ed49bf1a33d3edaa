# catalog/search.py
"""Listing search: structured filters to a SQL predicate, paging, sorting and
a radius filter.

Radius searches push a lat/lng bounding box into the SQL predicate so paging
happens over nearby rows, then drop the rows of the fetched page that fall in
the box corners (haversine distance > radius). A page can therefore hold
fewer than `limit` items while `total` still counts the whole box.
"""
import math
from typing import List, Optional, Tuple
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload, selectinload
from . import crud
from .errors import store_errors
from .models import Agent, Listing, ListingStatus, ListingTag
from .schemas import (
    SORT_FIELDS, Actor, PagedResult, Paging, Pagination, SearchFilters, Sort,
    summary_from_listing,
)
from .utils import utcnow

EARTH_RADIUS_KM = 6371.0

SORT_COLUMNS = {name: getattr(Listing, name) for name in SORT_FIELDS}


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounding_box(lat: float, lon: float, radius_km: float) -> Tuple[float, float, Optional[float], Optional[float]]:
    """(min_lat, max_lat, min_lon, max_lon) enclosing the circle.

    Longitude bounds are None when the box would wrap the antimeridian or
    touch a pole; only latitude is constrained then.
    """
    angular = radius_km / EARTH_RADIUS_KM
    d_lat = math.degrees(angular)
    min_lat, max_lat = lat - d_lat, lat + d_lat
    if min_lat <= -90 or max_lat >= 90:
        return max(min_lat, -90.0), min(max_lat, 90.0), None, None
    ratio = math.sin(angular) / math.cos(math.radians(lat))
    if ratio >= 1:
        return min_lat, max_lat, None, None
    d_lon = math.degrees(math.asin(ratio))
    min_lon, max_lon = lon - d_lon, lon + d_lon
    if min_lon < -180 or max_lon > 180:
        return min_lat, max_lat, None, None
    return min_lat, max_lat, min_lon, max_lon


def _contains(column, value: str):
    return column.ilike(f"%{value}%")


class SearchComposer:
    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self.clock = clock

    def filter_clauses(self, f: SearchFilters) -> list:
        clauses = [Listing.is_deleted.is_(False)]
        if f.status is not None:
            clauses.append(Listing.status == f.status)
        if f.property_type is not None:
            clauses.append(Listing.property_type == f.property_type)
        if f.listing_type is not None:
            clauses.append(Listing.listing_type == f.listing_type)
        if f.city:
            clauses.append(_contains(Listing.city, f.city))
        if f.province:
            clauses.append(_contains(Listing.province, f.province))
        if f.owner_id:
            clauses.append(Listing.owner_id == f.owner_id)
        if f.agent_id:
            clauses.append(Listing.agent_id == f.agent_id)

        ranges = (
            (Listing.price, f.min_price, f.max_price),
            (Listing.bedrooms, f.min_bedrooms, f.max_bedrooms),
            (Listing.bathrooms, f.min_bathrooms, f.max_bathrooms),
            (Listing.floor_area, f.min_area, f.max_area),
        )
        for column, lo, hi in ranges:
            # a lower bound of 0 means "any", including rows with no value (land)
            if lo:
                clauses.append(column >= lo)
            if hi is not None:
                clauses.append(column <= hi)

        if f.q:
            clauses.append(or_(
                _contains(Listing.title, f.q),
                _contains(Listing.description, f.q),
                _contains(Listing.address, f.q),
                _contains(Listing.city, f.q),
            ))

        # exact tag membership, every requested tag must be present
        for tag in f.feature_tags():
            clauses.append(Listing.tags.any(ListingTag.tag == tag))

        if f.featured:
            clauses.append(crud.featured_window_active(self.clock()))

        if f.has_geo:
            min_lat, max_lat, min_lon, max_lon = bounding_box(f.latitude, f.longitude, f.radius)
            clauses.append(Listing.latitude.isnot(None))
            clauses.append(Listing.longitude.isnot(None))
            clauses.append(Listing.latitude.between(min_lat, max_lat))
            if min_lon is not None:
                clauses.append(Listing.longitude.between(min_lon, max_lon))
        return clauses

    @staticmethod
    def visibility_clause(actor: Optional[Actor]):
        """Applied after every caller-supplied filter; cannot be widened by them."""
        if actor is None:
            return Listing.status == ListingStatus.APPROVED
        if actor.is_admin:
            return None
        return or_(
            Listing.status == ListingStatus.APPROVED,
            Listing.owner_id == actor.user_id,
            Listing.agent.has(Agent.user_id == actor.user_id),
        )

    def search(self, filters: SearchFilters, paging: Paging = None, sort: Sort = None,
               actor: Optional[Actor] = None) -> PagedResult:
        paging = paging or Paging()
        sort = sort or Sort()

        clauses = self.filter_clauses(filters)
        visibility = self.visibility_clause(actor)
        if visibility is not None:
            clauses.append(visibility)

        column = SORT_COLUMNS[sort.sort_by]
        ordering = column.asc() if sort.sort_order == "asc" else column.desc()

        with store_errors(self.db):
            q = self.db.query(Listing).filter(*clauses)
            total = q.order_by(None).count()
            rows = (
                q.options(
                    selectinload(Listing.images),
                    joinedload(Listing.featured),
                )
                .order_by(ordering, Listing.id.asc())
                .offset(paging.skip)
                .limit(paging.limit)
                .all()
            )

        items = self._project(rows, filters)
        return PagedResult(
            items=items,
            pagination=Pagination(
                page=paging.page,
                limit=paging.limit,
                total=total,
                total_pages=math.ceil(total / paging.limit) if total else 0,
                has_more=paging.skip + len(rows) < total,
            ),
        )

    def _project(self, rows: List[Listing], filters: SearchFilters):
        if not filters.has_geo:
            return [summary_from_listing(r) for r in rows]
        items = []
        for r in rows:
            if r.latitude is None or r.longitude is None:
                continue
            distance = haversine_km(filters.latitude, filters.longitude, r.latitude, r.longitude)
            if distance <= filters.radius:
                items.append(summary_from_listing(r, distance_km=distance))
        return items
