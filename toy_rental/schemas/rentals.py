import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class CreateRentalItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toy_id: uuid.UUID
    quantity: int
    condition_before: str


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rental_date: datetime
    expected_return_date: datetime
    items: List[CreateRentalItemDto] = []
    notes: Optional[str] = None


class ReturnRentalItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rental_item_id: uuid.UUID
    condition_after: str
    damage_description: Optional[str] = None


class ReturnRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    actual_return_date: datetime
    items: List[ReturnRentalItemDto]
    notes: Optional[str] = None
