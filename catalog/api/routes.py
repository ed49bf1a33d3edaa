# catalog/api/routes.py
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import ValidationError as ModelValidationError
from sqlalchemy.orm import Session
from .. import schemas
from ..db import session_scope
from ..errors import ForbiddenError, ValidationError
from ..models import ListingStatus, ListingType, PropertyType, UserRole
from ..services import PropertyCatalogService
from ..utils import logger

router = APIRouter()


def get_db(request: Request):
    yield from session_scope(request.app.state.session_factory)


def get_service(request: Request, db: Session = Depends(get_db)) -> PropertyCatalogService:
    state = request.app.state
    return PropertyCatalogService(
        db,
        cache=state.cache,
        audit=state.audit,
        notifier=state.notifier,
        dispatcher=state.dispatcher,
        settings=state.settings,
    )


def optional_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Optional[schemas.Actor]:
    if not x_user_id:
        return None
    try:
        role = UserRole((x_user_role or UserRole.USER.value).upper())
    except ValueError:
        logger.warning("Unknown role %r for user %s, treating as USER", x_user_role, x_user_id)
        role = UserRole.USER
    return schemas.Actor(user_id=x_user_id, role=role)


def require_actor(actor: Optional[schemas.Actor] = Depends(optional_actor)) -> schemas.Actor:
    if actor is None:
        raise ForbiddenError("Authentication required")
    return actor


def viewer_identity(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
    referer: Optional[str] = Header(None),
) -> schemas.ViewerIdentity:
    return schemas.ViewerIdentity(
        user_id=x_user_id or None,
        session_id=x_session_id or None,
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
        referrer=referer,
    )


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/listings", response_model=schemas.PagedResult)
def listings(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
    status: Optional[ListingStatus] = Query(None),
    property_type: Optional[PropertyType] = Query(None),
    listing_type: Optional[ListingType] = Query(None),
    city: Optional[str] = Query(None),
    province: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None),
    max_price: Optional[float] = Query(None),
    min_bedrooms: Optional[int] = Query(None),
    max_bedrooms: Optional[int] = Query(None),
    min_bathrooms: Optional[int] = Query(None),
    max_bathrooms: Optional[int] = Query(None),
    min_area: Optional[float] = Query(None),
    max_area: Optional[float] = Query(None),
    latitude: Optional[float] = Query(None),
    longitude: Optional[float] = Query(None),
    radius: Optional[float] = Query(None),
    q: Optional[str] = Query(None),
    features: Optional[str] = Query(None),
    owner_id: Optional[str] = Query(None),
    agent_id: Optional[str] = Query(None),
    featured: Optional[bool] = Query(None),
    actor: Optional[schemas.Actor] = Depends(optional_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    try:
        filters = schemas.SearchFilters(
            status=status, property_type=property_type, listing_type=listing_type,
            city=city, province=province,
            min_price=min_price, max_price=max_price,
            min_bedrooms=min_bedrooms, max_bedrooms=max_bedrooms,
            min_bathrooms=min_bathrooms, max_bathrooms=max_bathrooms,
            min_area=min_area, max_area=max_area,
            latitude=latitude, longitude=longitude, radius=radius,
            q=q, features=features, owner_id=owner_id, agent_id=agent_id, featured=featured,
        )
        sort = schemas.Sort(sort_by=sort_by, sort_order=sort_order)
    except ModelValidationError as e:
        raise ValidationError("Invalid search parameters",
                              details={"errors": e.errors(include_url=False, include_context=False)})
    return service.search(filters, schemas.Paging(page=page, limit=limit), sort, actor)


@router.get("/listings/featured", response_model=List[schemas.ListingSummary])
def featured_listings(
    limit: int = Query(10, ge=1, le=50),
    service: PropertyCatalogService = Depends(get_service),
):
    return service.get_featured(limit)


@router.get("/listings/{id_or_slug}", response_model=schemas.ListingDetail)
def get_listing(
    id_or_slug: str,
    actor: Optional[schemas.Actor] = Depends(optional_actor),
    viewer: schemas.ViewerIdentity = Depends(viewer_identity),
    service: PropertyCatalogService = Depends(get_service),
):
    detail = service.get_by_id_or_slug(id_or_slug, actor)
    service.record_view(detail.id, viewer)
    return detail


@router.post("/listings", response_model=schemas.ListingDetail, status_code=201)
def create_listing(
    payload: schemas.ListingCreate,
    actor: schemas.Actor = Depends(require_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    return service.create(payload, actor)


@router.patch("/listings/{listing_id}", response_model=schemas.ListingDetail)
def update_listing(
    listing_id: str,
    payload: schemas.ListingUpdate,
    actor: schemas.Actor = Depends(require_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    return service.update(listing_id, payload, actor)


@router.delete("/listings/{listing_id}")
def delete_listing(
    listing_id: str,
    actor: schemas.Actor = Depends(require_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    service.delete(listing_id, actor)
    return {"status": "deleted"}


@router.post("/listings/{listing_id}/submit")
def submit_listing(
    listing_id: str,
    actor: schemas.Actor = Depends(require_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    service.submit_for_approval(listing_id, actor)
    return {"status": ListingStatus.PENDING_APPROVAL.value}


@router.post("/listings/{listing_id}/withdraw")
def withdraw_listing(
    listing_id: str,
    actor: schemas.Actor = Depends(require_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    service.withdraw(listing_id, actor)
    return {"status": ListingStatus.WITHDRAWN.value}


@router.post("/listings/{listing_id}/close")
def close_listing(
    listing_id: str,
    payload: schemas.CloseIn,
    actor: schemas.Actor = Depends(require_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    service.close(listing_id, actor, payload.outcome)
    return {"status": payload.outcome}


@router.post("/admin/listings/{listing_id}/approve")
def approve_listing(
    listing_id: str,
    admin: schemas.Actor = Depends(require_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    service.approve(listing_id, admin)
    return {"status": ListingStatus.APPROVED.value}


@router.post("/admin/listings/{listing_id}/reject")
def reject_listing(
    listing_id: str,
    payload: schemas.ReasonIn,
    admin: schemas.Actor = Depends(require_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    service.reject(listing_id, admin, payload.reason)
    return {"status": ListingStatus.REJECTED.value}


@router.post("/admin/listings/{listing_id}/request-revision")
def request_revision(
    listing_id: str,
    payload: schemas.ReasonIn,
    admin: schemas.Actor = Depends(require_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    service.request_revision(listing_id, admin, payload.reason)
    return {"status": ListingStatus.REVISION_REQUESTED.value}


@router.patch("/admin/listings/{listing_id}/feature")
def feature_listing(
    listing_id: str,
    payload: schemas.FeatureIn,
    admin: schemas.Actor = Depends(require_actor),
    service: PropertyCatalogService = Depends(get_service),
):
    if payload.featured:
        service.feature(listing_id, admin, payload.featured_until, payload.tier)
    else:
        service.unfeature(listing_id, admin)
    return {"featured": payload.featured}
