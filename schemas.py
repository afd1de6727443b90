"""
Database Schemas

Pydantic models describing the writable fields of each MongoDB collection.
Model name is converted to lowercase for the collection name:
- Product -> "product"
- PumpType -> "pumptype"
- BusinessType -> "businesstype"

References to other documents travel as string ids in request bodies and are
stored as ObjectId. Embedded sub-documents (product lines, sub pump types)
carry their own `id`; omit it to have one generated.
"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator

SLUG_PATTERN = r"^[a-z0-9-]+$"
WEBSITE_PATTERN = r"^https?://.+\..+"
IMAGE_PATTERN = r"(?i)^(https?://.+|/[\w\-/.]+)\.(jpg|jpeg|png|gif|webp|svg)$"

CustomerStatus = Literal["prospect", "active", "inactive", "partner", "distributor"]
CustomerTier = Literal["standard", "preferred", "premium", "enterprise"]


def _clean_slug(value):
    if isinstance(value, str):
        return value.strip().lower()
    return value


Slug = Annotated[str, Field(max_length=100, pattern=SLUG_PATTERN), BeforeValidator(_clean_slug)]


def _reject_duplicate_slugs(items, label: str) -> None:
    slugs = [item.slug for item in items]
    if len(slugs) != len(set(slugs)):
        raise ValueError(f"{label} slugs must be unique within the same parent")


# -----------------------------------------------------------------------------
# Catalog: brands, pump types, products
# -----------------------------------------------------------------------------

class ProductLine(BaseModel):
    """Embedded in brand.product_lines"""
    id: Optional[str] = Field(None, description="Product line id; generated when omitted")
    name: str = Field(..., min_length=1, max_length=100)
    slug: Slug
    description: Optional[str] = Field(None, max_length=500)
    is_active: bool = True
    display_order: int = 0


class Brand(BaseModel):
    """Brands collection schema (collection name: brand)"""
    name: str = Field(..., min_length=1, max_length=100, description="Unique, case-insensitive")
    slug: Slug
    country: Optional[str] = Field(None, max_length=100)
    year_established: Optional[int] = Field(None, ge=1800)
    description: Optional[str] = None
    product_lines: List[ProductLine] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Brand name is required")
        return v

    @field_validator("year_established")
    @classmethod
    def _not_in_future(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v > datetime.now().year:
            raise ValueError("Year established cannot be in the future")
        return v

    @model_validator(mode="after")
    def _unique_line_slugs(self):
        _reject_duplicate_slugs(self.product_lines, "Product line")
        return self


class SubPumpType(BaseModel):
    """Embedded in pumptype.sub_pump_types"""
    id: Optional[str] = Field(None, description="Sub pump type id; generated when omitted")
    name: str = Field(..., min_length=1, max_length=100)
    slug: Slug
    description: Optional[str] = Field(None, max_length=500)
    is_active: bool = True
    display_order: int = 0


class PumpType(BaseModel):
    """Pump types collection schema (collection name: pumptype)"""
    pump_type: str = Field(..., min_length=1, max_length=100, description="Display name, unique")
    slug: Slug
    description: Optional[str] = None
    sub_pump_types: List[SubPumpType] = Field(default_factory=list)

    @field_validator("pump_type")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Pump type is required")
        return v

    @model_validator(mode="after")
    def _unique_sub_slugs(self):
        _reject_duplicate_slugs(self.sub_pump_types, "Sub pump type")
        return self


class Product(BaseModel):
    """Products collection schema (collection name: product)"""
    name: str = Field(..., min_length=1, max_length=200)
    slug: Slug = Field(..., description="Globally unique")
    description: Optional[str] = None
    brand: Optional[str] = Field(None, description="Reference to brand _id")
    product_line_id: Optional[str] = Field(None, description="Id of a product line inside the brand")
    pump_type: Optional[str] = Field(None, description="Reference to pumptype _id")
    sub_pump_type: Optional[str] = Field(None, description="Id of a sub pump type inside the pump type")
    is_active: bool = True


# -----------------------------------------------------------------------------
# Customers and their classifications
# -----------------------------------------------------------------------------

class BusinessType(BaseModel):
    """Business types collection schema (collection name: businesstype)"""
    name: str = Field(..., min_length=1, max_length=100)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Business type name is required")
        return v


class Customer(BaseModel):
    """Customers collection schema (collection name: customer)"""
    name: str = Field(..., min_length=1, max_length=200)
    slug: Slug
    legal_name: Optional[str] = Field(None, max_length=300)
    business_type: str = Field(..., description="Reference to businesstype _id")
    industry: List[str] = Field(default_factory=list, description="References to industry _id")
    website: Optional[str] = Field(None, pattern=WEBSITE_PATTERN)
    logo: Optional[str] = Field(None, pattern=IMAGE_PATTERN)
    customer_status: CustomerStatus = "prospect"
    customer_tier: CustomerTier = "standard"
    complete_date: Optional[datetime] = None
    description: Optional[str] = Field(None, max_length=50000)
    is_active: bool = True

    @field_validator("website", "logo", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class IndustryStats(BaseModel):
    """Embedded in industry.stats, refreshed on demand"""
    customer_count: int = 0
    application_count: int = 0
    last_updated: Optional[datetime] = None


class Industry(BaseModel):
    """Industries collection schema (collection name: industry)"""
    name: str = Field(..., min_length=1, max_length=100)
    slug: Slug
    description: Optional[str] = Field(None, max_length=1000)
    is_active: bool = True
    display_order: int = 0


class Application(BaseModel):
    """Applications collection schema (collection name: application)"""
    name: str = Field(..., min_length=1, max_length=200)
    slug: Slug
    description: Optional[str] = None
    recommended_industries: List[str] = Field(default_factory=list)
    is_active: bool = True
