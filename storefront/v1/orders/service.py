"""
Order creation flow: persist the order, then enqueue its confirmation email.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config.logging import get_logger
from storefront.config.settings import EnqueueFailurePolicy, Settings
from storefront.v1.core.exceptions import QueueUnavailable
from storefront.v1.infra.jobs.schemas import JobOptions
from storefront.v1.infra.jobs.service import WRITE_UNKNOWN, JobQueue
from storefront.v1.notifications.schemas import (
    SEND_CONFIRMATION,
    OrderConfirmationPayload,
)
from storefront.v1.orders.models import Order, OrderStatus
from storefront.v1.orders.schemas import OrderCreate, OrderCreated

logger = get_logger(__name__)

CONFIRMATION_MAX_ATTEMPTS = 3
CONFIRMATION_BACKOFF = timedelta(seconds=5)


def confirmation_dedupe_key(order: Order) -> str:
    return f"order-confirmation:{order.id}"


class OrderService:
    """
    Creates orders and hands their confirmation email to the job queue.

    The order write and the enqueue are separate failure domains. When the
    enqueue fails, ``settings.order_enqueue_failure_policy`` decides:

    - ``compensate``: delete the just-committed order and re-raise
      QueueUnavailable, so no order exists without a confirmation job.
    - ``log``: keep the order, log the failure and report
      ``confirmation_status="not_queued"``.

    Either way, a timed-out enqueue whose job could not be looked up keeps
    the order and reports ``confirmation_status="unknown"``.
    """

    def __init__(self, job_queue: JobQueue, settings: Settings):
        self.job_queue = job_queue
        self.settings = settings

    async def create_order(
        self,
        session: AsyncSession,
        order_data: OrderCreate,
        request_id: str | None = None,
    ) -> OrderCreated:
        order = Order(
            customer_email=order_data.email,
            customer_name=order_data.customer_name,
            currency=order_data.currency or self.settings.default_currency,
            total=order_data.total,
            status=OrderStatus.PROCESSED,
            items=[line.model_dump(mode="json") for line in order_data.items],
            created_at=datetime.now(UTC),
        )
        session.add(order)
        await session.commit()
        await session.refresh(order)

        logger.info(
            "Order persisted",
            order_id=str(order.id),
            total=str(order.total),
            currency=order.currency,
        )

        payload = OrderConfirmationPayload(
            order_id=order.id,
            user_email=order.customer_email,
            total=order.total,
            currency=order.currency,
            customer_name=order.customer_name,
            ordered_at=order.created_at,
        )

        try:
            handle = await self.job_queue.enqueue(
                SEND_CONFIRMATION,
                payload,
                JobOptions(
                    max_attempts=CONFIRMATION_MAX_ATTEMPTS,
                    backoff_base_delay=CONFIRMATION_BACKOFF,
                ),
                channel=self.settings.order_email_channel,
                dedupe_key=confirmation_dedupe_key(order),
                request_id=request_id,
            )
        except QueueUnavailable as e:
            if e.details.get("write_outcome") == WRITE_UNKNOWN:
                # The job may exist; deleting the order could orphan it
                logger.error(
                    "Order confirmation enqueue outcome unknown, order kept",
                    order_id=str(order.id),
                    dedupe_key=confirmation_dedupe_key(order),
                )
                return OrderCreated(
                    order_id=order.id,
                    status=order.status,
                    confirmation_job_id=None,
                    confirmation_status="unknown",
                )

            if self.settings.order_enqueue_failure_policy == EnqueueFailurePolicy.LOG:
                logger.error(
                    "Order confirmation not queued",
                    order_id=str(order.id),
                    policy=EnqueueFailurePolicy.LOG.value,
                )
                return OrderCreated(
                    order_id=order.id,
                    status=order.status,
                    confirmation_job_id=None,
                    confirmation_status="not_queued",
                )

            await self._compensate(session, order)
            raise

        return OrderCreated(
            order_id=order.id,
            status=order.status,
            confirmation_job_id=handle.job_id,
            confirmation_status="queued",
        )

    async def _compensate(self, session: AsyncSession, order: Order) -> None:
        """Undo the order write after its confirmation could not be queued."""
        try:
            await session.delete(order)
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception(
                "Order compensation failed; order left without confirmation job",
                order_id=str(order.id),
            )
            raise

        logger.warning(
            "Order write compensated after enqueue failure",
            order_id=str(order.id),
            policy=EnqueueFailurePolicy.COMPENSATE.value,
        )
