from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderLine(BaseModel):
    """A single line of an order."""

    model_config = ConfigDict(extra="forbid")

    catalog_id: UUID | None = Field(default=None, description="Catalog the item came from")
    name: str = Field(..., min_length=1, max_length=200, description="Item name")
    quantity: int = Field(..., ge=1, le=10_000, description="Units ordered")
    unit_price: Decimal = Field(
        ..., ge=0, max_digits=14, decimal_places=2, description="Price per unit"
    )

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class OrderCreate(BaseModel):
    """Schema for creating an order."""

    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., min_length=3, max_length=320, description="Customer email")
    customer_name: str | None = Field(default=None, max_length=200)
    currency: str | None = Field(
        default=None, min_length=3, max_length=3, description="ISO currency code"
    )
    items: list[OrderLine] = Field(..., min_length=1, description="Order lines")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        v = v.strip()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError(f"Invalid email address: {v}")
        return v

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if v else v

    @property
    def total(self) -> Decimal:
        return sum((line.subtotal for line in self.items), Decimal("0"))


class OrderResponse(BaseModel):
    """Schema for order responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_email: str
    customer_name: str | None
    currency: str
    total: Decimal
    status: str
    items: list[dict[str, Any]]
    created_at: datetime


class OrderCreated(BaseModel):
    """Result of the order-creation flow."""

    order_id: UUID
    status: str
    confirmation_job_id: UUID | None = None
    confirmation_status: str = Field(
        description="queued | not_queued | unknown", default="queued"
    )
