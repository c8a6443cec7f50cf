from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config.settings import Settings, SettingsDep
from storefront.infra.database import SessionDep
from storefront.v1.core.exceptions import NotFoundError, create_success_response
from storefront.v1.infra.jobs.routes import get_job_queue
from storefront.v1.infra.jobs.service import JobQueue
from storefront.v1.orders.models import Order
from storefront.v1.orders.schemas import OrderCreate, OrderResponse
from storefront.v1.orders.service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_order(
    order_data: OrderCreate,
    request: Request,
    session: AsyncSession = SessionDep,
    job_queue: JobQueue = Depends(get_job_queue),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Create an order and queue its confirmation email.

    Returns as soon as the order and the job are durably written; email
    delivery happens in the worker.
    """
    request_id = getattr(request.state, "request_id", None)
    service = OrderService(job_queue, settings)
    result = await service.create_order(session, order_data, request_id=request_id)

    return create_success_response(
        data=result.model_dump(mode="json"), request_id=request_id
    )


@router.get("/{order_id}", response_model=dict)
async def get_order(
    order_id: UUID,
    session: AsyncSession = SessionDep,
) -> dict[str, Any]:
    """Get an order by ID."""

    result = await session.execute(select(Order).where(Order.id == order_id))
    order = result.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order not found", details={"order_id": str(order_id)})

    return create_success_response(
        data=OrderResponse.model_validate(order).model_dump(mode="json")
    )
