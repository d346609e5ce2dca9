"""Request schemas for tab operations."""

from __future__ import annotations

from datetime import date, time
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, Field, StringConstraints, model_validator

from tabapp.models import PaymentMethod, VerificationMethod

Email = Annotated[
    str,
    StringConstraints(
        strip_whitespace=True,
        to_lower=True,
        max_length=320,
        pattern=r'^[^@\s]+@[^@\s]+\.[^@\s]+$',
    ),
]


class TabConfig(BaseModel):
    """Every editable tab field."""

    payment_method: PaymentMethod
    organization: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=64)
    start_date: date
    end_date: date
    daily_start_time: time
    daily_end_time: time
    # bit 0 is Monday
    active_days_of_wk: int = Field(ge=1, le=127)
    dollar_limit_per_order: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    verification_method: VerificationMethod
    payment_details: str = Field(default='', max_length=512)
    billing_interval_days: int = Field(gt=0, le=365)
    verification_list: list[Email] = Field(default_factory=list)

    @model_validator(mode='after')
    def check_ranges(self) -> TabConfig:
        if self.end_date < self.start_date:
            raise ValueError('end_date must not be before start_date')
        if self.daily_end_time <= self.daily_start_time:
            raise ValueError('daily_end_time must be after daily_start_time')
        return self

    def config_values(self) -> dict:
        return self.model_dump(exclude={'verification_list', 'location_ids', 'owner_id'})


class TabCreate(TabConfig):
    location_ids: list[int] = Field(default_factory=list)
    # Only honoured for admins; everyone else owns the tabs they create.
    owner_id: int | None = None


class TabUpdate(TabConfig):
    # None leaves the live membership sets as they are.
    verification_list: list[Email] | None = None
    location_ids: list[int] | None = None


class OrderVariantIn(BaseModel):
    id: int
    quantity: int = Field(gt=0)


class OrderItemIn(BaseModel):
    id: int
    # 0 adds or removes only the variants listed under the item.
    quantity: int = Field(ge=0)
    variants: list[OrderVariantIn] = Field(default_factory=list)


class BillOrder(BaseModel):
    items: list[OrderItemIn] = Field(min_length=1)


class VerificationList(BaseModel):
    emails: list[Email]
