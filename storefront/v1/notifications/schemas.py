from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import Field, field_validator

from storefront.v1.infra.jobs.envelope import JobPayload

SEND_CONFIRMATION = "send-confirmation"


class OrderConfirmationPayload(JobPayload):
    """Everything the confirmation email needs, copied from the order.

    The worker never reads the orders table, so nothing here may be a
    reference the processor would have to resolve.
    """

    schema_version: Literal[1] = 1
    order_id: UUID
    user_email: str = Field(..., min_length=3, max_length=320)
    total: Decimal = Field(..., ge=0)
    currency: str = Field(default="IDR", min_length=3, max_length=3)
    customer_name: str | None = Field(default=None, max_length=200)
    ordered_at: datetime

    @field_validator("user_email")
    @classmethod
    def validate_email(cls, v):
        v = v.strip()
        local, _, domain = v.partition("@")
        if not local or not domain:
            raise ValueError(f"Invalid recipient address: {v}")
        return v
