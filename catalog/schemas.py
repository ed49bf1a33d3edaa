# catalog/schemas.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import ApprovalStatus, ListingStatus, ListingType, PropertyType, UserRole

SORT_FIELDS = ("created_at", "price", "view_count", "bedrooms", "floor_area")

# Fields whose change on an approved listing sends it back to moderation
SIGNIFICANT_FIELDS = ("price", "address", "property_type", "listing_type", "bedrooms", "bathrooms")


class Actor(BaseModel):
    """Acting identity, authenticated upstream."""
    user_id: str
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class ViewerIdentity(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None and self.session_id is None


class ImageIn(BaseModel):
    url: str = Field(..., max_length=2000)
    thumbnail_url: Optional[str] = None
    alt_text: Optional[str] = Field(None, max_length=200)
    sort_order: int = Field(0, ge=0)
    is_primary: bool = False


class ListingBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = Field(None, max_length=10000)
    price: Optional[float] = Field(None, gt=0, le=999999999999)
    currency: str = Field("ZMW", min_length=3, max_length=3)
    address: Optional[str] = Field(None, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    province: Optional[str] = Field(None, max_length=100)
    country: Optional[str] = "Zambia"
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    bedrooms: Optional[int] = Field(None, ge=0, le=100)
    bathrooms: Optional[int] = Field(None, ge=0, le=100)
    floor_area: Optional[float] = Field(None, gt=0, le=1000000)
    features: List[str] = Field(default_factory=list)
    agent_id: Optional[str] = None


class ListingCreate(ListingBase):
    title: str = Field(..., min_length=3, max_length=200)
    property_type: PropertyType
    listing_type: ListingType
    images: List[ImageIn] = Field(default_factory=list, max_length=50)


class ListingUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=10000)
    property_type: Optional[PropertyType] = None
    listing_type: Optional[ListingType] = None
    price: Optional[float] = Field(None, gt=0, le=999999999999)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    address: Optional[str] = Field(None, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    province: Optional[str] = Field(None, max_length=100)
    country: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    bedrooms: Optional[int] = Field(None, ge=0, le=100)
    bathrooms: Optional[int] = Field(None, ge=0, le=100)
    floor_area: Optional[float] = Field(None, gt=0, le=1000000)
    features: Optional[List[str]] = None
    images: Optional[List[ImageIn]] = Field(None, max_length=50)


class SearchFilters(BaseModel):
    status: Optional[ListingStatus] = None
    property_type: Optional[PropertyType] = None
    listing_type: Optional[ListingType] = None
    city: Optional[str] = None
    province: Optional[str] = None
    min_price: Optional[float] = Field(None, gt=0)
    max_price: Optional[float] = Field(None, gt=0)
    min_bedrooms: Optional[int] = Field(None, ge=0)
    max_bedrooms: Optional[int] = Field(None, le=100)
    min_bathrooms: Optional[int] = Field(None, ge=0)
    max_bathrooms: Optional[int] = Field(None, le=100)
    min_area: Optional[float] = Field(None, gt=0)
    max_area: Optional[float] = Field(None, gt=0)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    radius: Optional[float] = Field(None, gt=0, le=100)
    q: Optional[str] = Field(None, max_length=200)
    features: Optional[str] = None
    owner_id: Optional[str] = None
    agent_id: Optional[str] = None
    featured: Optional[bool] = None

    @model_validator(mode="after")
    def check_ranges(self):
        pairs = (
            ("min_price", "max_price"),
            ("min_bedrooms", "max_bedrooms"),
            ("min_bathrooms", "max_bathrooms"),
            ("min_area", "max_area"),
        )
        for lo, hi in pairs:
            lo_v, hi_v = getattr(self, lo), getattr(self, hi)
            if lo_v is not None and hi_v is not None and lo_v > hi_v:
                raise ValueError(f"{lo} must be less than or equal to {hi}")
        return self

    @property
    def has_geo(self) -> bool:
        return self.latitude is not None and self.longitude is not None and self.radius is not None

    def feature_tags(self) -> List[str]:
        if not self.features:
            return []
        return normalize_tags(self.features.split(","))


class Paging(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


class Sort(BaseModel):
    sort_by: Literal["created_at", "price", "view_count", "bedrooms", "floor_area"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


# Response shapes

class ImageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    url: str
    thumbnail_url: Optional[str] = None
    alt_text: Optional[str] = None
    sort_order: int = 0
    is_primary: bool = False


class PrimaryImage(BaseModel):
    url: str
    thumbnail_url: Optional[str] = None
    alt_text: Optional[str] = None


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    phone: Optional[str] = None


class AgentSummary(BaseModel):
    id: str
    user_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: Optional[str] = None
    is_verified: bool = False


class InquiryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: Optional[str] = None
    subject: Optional[str] = None
    message: str
    created_at: Optional[datetime] = None


class FeaturedOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    tier: int
    start_date: datetime
    end_date: datetime


class ListingSummary(BaseModel):
    id: str
    title: str
    slug: str
    property_type: PropertyType
    listing_type: ListingType
    status: ListingStatus
    price: Optional[float] = None
    currency: str
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    floor_area: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    view_count: int = 0
    save_count: int = 0
    created_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    primary_image: Optional[PrimaryImage] = None
    featured_tier: Optional[int] = None
    distance_km: Optional[float] = None


class ListingDetail(ListingSummary):
    description: Optional[str] = None
    country: Optional[str] = None
    approval_status: ApprovalStatus
    rejection_reason: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    owner_id: str
    agent_id: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    images: List[ImageOut] = Field(default_factory=list)
    owner: Optional[UserSummary] = None
    agent: Optional[AgentSummary] = None
    featured: Optional[FeaturedOut] = None
    recent_inquiries: List[InquiryOut] = Field(default_factory=list)
    inquiry_count: int = 0


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_more: bool


class PagedResult(BaseModel):
    items: List[ListingSummary]
    pagination: Pagination


class ViewResult(BaseModel):
    deduplicated: bool
    recorded: bool


# Admin / workflow request bodies

class ReasonIn(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class CloseIn(BaseModel):
    outcome: Literal["SOLD", "RENTED"]


class FeatureIn(BaseModel):
    featured: bool
    featured_until: Optional[datetime] = None
    tier: int = Field(1, ge=1, le=10)


def normalize_tags(raw) -> List[str]:
    seen = []
    for tag in raw:
        t = (tag or "").strip().lower()
        if t and t not in seen:
            seen.append(t)
    return seen


def _primary_image(listing) -> Optional[PrimaryImage]:
    if not listing.images:
        return None
    image = next((i for i in listing.images if i.is_primary), listing.images[0])
    return PrimaryImage(url=image.url, thumbnail_url=image.thumbnail_url, alt_text=image.alt_text)


def _summary_fields(listing) -> dict:
    return dict(
        id=listing.id,
        title=listing.title,
        slug=listing.slug,
        property_type=listing.property_type,
        listing_type=listing.listing_type,
        status=listing.status,
        price=listing.price,
        currency=listing.currency,
        address=listing.address,
        city=listing.city,
        province=listing.province,
        bedrooms=listing.bedrooms,
        bathrooms=listing.bathrooms,
        floor_area=listing.floor_area,
        latitude=listing.latitude,
        longitude=listing.longitude,
        view_count=listing.view_count or 0,
        save_count=listing.save_count or 0,
        created_at=listing.created_at,
        published_at=listing.published_at,
        primary_image=_primary_image(listing),
        featured_tier=listing.featured.tier if listing.featured is not None else None,
    )


def summary_from_listing(listing, distance_km: Optional[float] = None) -> ListingSummary:
    fields = _summary_fields(listing)
    if distance_km is not None:
        fields["distance_km"] = round(distance_km, 3)
    return ListingSummary(**fields)


def detail_from_listing(listing, inquiries=(), inquiry_count: int = 0) -> ListingDetail:
    agent = None
    if listing.agent is not None:
        agent_user = listing.agent.user
        agent = AgentSummary(
            id=listing.agent.id,
            user_id=listing.agent.user_id,
            first_name=agent_user.first_name if agent_user else None,
            last_name=agent_user.last_name if agent_user else None,
            company_name=listing.agent.company_name,
            is_verified=bool(listing.agent.is_verified),
        )
    return ListingDetail(
        **_summary_fields(listing),
        description=listing.description,
        country=listing.country,
        approval_status=listing.approval_status,
        rejection_reason=listing.rejection_reason,
        approved_at=listing.approved_at,
        approved_by=listing.approved_by,
        updated_at=listing.updated_at,
        owner_id=listing.owner_id,
        agent_id=listing.agent_id,
        features=listing.tag_names,
        images=[ImageOut.model_validate(i) for i in listing.images],
        owner=UserSummary.model_validate(listing.owner) if listing.owner is not None else None,
        agent=agent,
        featured=FeaturedOut.model_validate(listing.featured) if listing.featured is not None else None,
        recent_inquiries=[InquiryOut.model_validate(i) for i in inquiries],
        inquiry_count=inquiry_count,
    )
