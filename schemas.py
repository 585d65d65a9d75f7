"""
Database Schemas for the cooperative grocery ordering API

Each document model maps to a MongoDB collection. Stored field names are
camelCase because the storefront and back-office read them as-is; the models
accept both camelCase and snake_case input and dump with aliases.
"""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class CoopModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self, **kwargs) -> dict:
        return self.model_dump(by_alias=True, **kwargs)


# Catalogue

class Producer(CoopModel):
    name: str
    contact: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    coop_status: str = Field("active", pattern="^(active|inactive)$")
    notes: Optional[str] = None


class Category(CoopModel):
    name: str
    description: Optional[str] = None


class Product(CoopModel):
    producer_id: str = Field(..., description="Owning producer; required for visibility")
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_organic: bool = False
    category_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class Variant(CoopModel):
    label: str
    type: Optional[str] = None
    unit: Optional[str] = None
    price: float = Field(..., ge=0)
    active_dates: List[str] = Field(default_factory=list, description="Sale date keys (YYYY-MM-DD)")


# Distributions and offers

class Distribution(CoopModel):
    status: str = Field("planned", pattern="^(planned|open|finished)$")
    dates: List[datetime] = Field(..., min_length=3, max_length=3)
    opened_at: Optional[datetime] = None


class DistributionCreate(CoopModel):
    first_date: date = Field(..., description="Calendar day of the first pickup")


class PlanPeriodsRequest(CoopModel):
    count: int = Field(4, ge=1, le=12)
    start: Optional[date] = Field(None, description="First pickup day; defaults to next Wednesday")


class OfferDraft(CoopModel):
    enabled: bool = False
    limit_per_member: int = Field(0, ge=0, description="0 means unlimited")
    limit_total: int = Field(0, ge=0, description="0 means unlimited")


class OfferDraftEntry(OfferDraft):
    product_id: str
    variant_id: str
    date_index: int = Field(..., ge=0, le=2)


class OfferConfigurationRequest(CoopModel):
    producer_ids: List[str] = Field(default_factory=list)
    offers: List[OfferDraftEntry] = Field(default_factory=list)


# Cart and orders

class CartItem(CoopModel):
    id: Optional[str] = None
    product_id: str
    variant_id: str
    name: str
    variant_label: str = ""
    unit_price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    producer_id: str
    image_url: Optional[str] = None
    sale_date_key: Optional[str] = None
    sale_date_label: Optional[str] = None
    offer_item_id: Optional[str] = None


class CheckoutRequest(CoopModel):
    items: List[CartItem] = Field(..., min_length=1)


class Totals(CoopModel):
    total_amount: float = Field(..., ge=0)
    item_count: int = Field(..., ge=0)


class OrderItem(CoopModel):
    id: str
    offer_item_id: Optional[str] = None
    producer_id: str
    product_id: str
    variant_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    line_total: float = Field(..., ge=0)
    label: str
    variant_label: str = ""
    sale_date_key: Optional[str] = None
    sale_date_label: Optional[str] = None


class Order(CoopModel):
    distribution_id: Optional[str] = None
    member_id: str
    status: str = Field("validated", pattern="^(validated|draft|cancelled)$")
    totals: Totals
    items: List[OrderItem]
    created_at: Optional[datetime] = None
    validated_at: Optional[datetime] = None


# Members and invites

class MemberProfile(CoopModel):
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    membership_status: str = Field("en-attente", pattern="^(adherent|non-adherent|en-attente)$")


class InviteCreate(CoopModel):
    email: Optional[EmailStr] = Field(None, description="Restrict the invite to this email")
    role: str = Field("member", pattern="^(admin|member)$")


class SignupRequest(CoopModel):
    token: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(CoopModel):
    email: EmailStr
    password: str
