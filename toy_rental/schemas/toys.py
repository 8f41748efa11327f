import uuid
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CategoryUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=3, max_length=25)
    description: Optional[str] = Field(default=None, max_length=5000)


class ToyUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = Field(default=None, min_length=3, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    age_recommendation: Optional[str] = Field(default=None, pattern=r"^[0-9\-+]+$")
    condition: Optional[str] = None
    rental_price: Optional[Decimal] = Field(default=None, ge=0)
    late_fee_per_day: Optional[Decimal] = Field(default=None, ge=0)
    replacement_price: Optional[Decimal] = Field(default=None, ge=0)
    is_available: Optional[bool] = None
    stock: Optional[int] = Field(default=None, ge=0)
    category_ids: Optional[List[uuid.UUID]] = None


class ToyImageCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    image_url: str = Field(min_length=1, max_length=255)
    is_primary: bool = False
