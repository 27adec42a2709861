from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

AttributeType = Literal["string", "number", "feature"]


class ParsedMedia(BaseModel):
    url: str
    thumbnail_url: str | None = None
    alt: str | None = None
    position: int


class ParsedAttribute(BaseModel):
    key: str
    label: str | None = None
    type: AttributeType = "string"
    string_value: str | None = None
    number_value: float | None = None
    bool_value: bool | None = None


class ParsedListing(BaseModel):
    title: str | None = None
    seo_title: str | None = None
    seo_description: str | None = None
    display_title: str | None = None
    display_subtitle: str | None = None
    description: str | None = None
    share_url: str | None = None
    permalink: str | None = None
    contact_uuid: str | None = None
    business_type: str | None = None
    conversion_type: str | None = None
    cat1: str | None = None
    cat2: str | None = None
    cat3: str | None = None
    province_id: int | None = None
    city_id: int | None = None
    city_slug: str | None = None
    city_name: str | None = None
    district_slug: str | None = None
    district_name: str | None = None
    price_total: float | None = None
    price_per_square: float | None = None
    deposit_amount: float | None = None
    rent_amount: float | None = None
    area: int | None = None
    rooms: int | None = None
    floor: int | None = None
    year_built: int | None = None
    has_parking: bool | None = None
    has_elevator: bool | None = None
    has_warehouse: bool | None = None
    has_balcony: bool | None = None
    photos_verified: bool | None = None
    image_count: int | None = None
    latitude: float | None = None
    longitude: float | None = None
    expires_at: datetime | None = None
    relative_publish_seconds: float | None = None
    medias: list[ParsedMedia] = Field(default_factory=list)
    attributes: list[ParsedAttribute] = Field(default_factory=list)


class ListingRecord(BaseModel):
    """Normalized row written by the analyzer; ``payload`` keeps the raw detail snapshot."""

    read_queue_id: str
    source: str
    external_id: str
    category_id: str | None = None
    category_slug: str
    province_id: int | None = None
    city_id: int | None = None
    published_at: datetime | None = None
    parsed: ParsedListing
    payload: dict[str, Any] = Field(default_factory=dict)
