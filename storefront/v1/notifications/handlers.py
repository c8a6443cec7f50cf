"""
Job handlers for customer notifications.

Handlers implement the JobHandler protocol and are attached to a channel
with ``WorkerRuntime.register_worker``.
"""

from typing import Any

from storefront.config.logging import get_logger
from storefront.config.settings import Settings
from storefront.v1.core.registries import MailTransport, mail_transport_registry
from storefront.v1.infra.jobs.schemas import JobContext
from storefront.v1.notifications.formatting import format_amount, format_friendly_date
from storefront.v1.notifications.schemas import (
    SEND_CONFIRMATION,
    OrderConfirmationPayload,
)
from storefront.v1.notifications.templates import TemplateStore

logger = get_logger(__name__)

ORDER_CONFIRMATION_TEMPLATE = "order-confirmation"


def confirmation_message_id(order_id: Any, domain: str = "storefront.local") -> str:
    """Deterministic Message-ID for an order's confirmation email."""
    return f"<order-confirmation.{order_id}@{domain}>"


class OrderConfirmationHandler:
    """
    Renders and sends the order confirmation email.

    Payload expected (OrderConfirmationPayload v1):
    {
        "order_id": "uuid-string",
        "user_email": "a@b.com",
        "total": "50000",
        "currency": "IDR",
        "customer_name": "Budi",   # optional
        "ordered_at": "2024-05-01T10:00:00Z"
    }

    Not idempotent: a send that reached the customer but reported failure
    is sent again on retry. The Message-ID header is stable across
    attempts so mail clients can collapse duplicates.
    """

    job_name = SEND_CONFIRMATION

    def __init__(self, templates: TemplateStore, transport: MailTransport):
        self.templates = templates
        self.transport = transport

    async def handle(
        self, payload: OrderConfirmationPayload, context: JobContext
    ) -> dict[str, Any] | None:
        """Render the template and dispatch one message."""
        subject = f"Order confirmation #{payload.order_id}"
        body = self.templates.render(
            ORDER_CONFIRMATION_TEMPLATE,
            {
                "customer_email": payload.user_email,
                "customer_name": payload.customer_name,
                "order_id": str(payload.order_id),
                "order_date": format_friendly_date(payload.ordered_at),
                "total_amount": format_amount(payload.total),
                "currency": payload.currency,
            },
        )

        logger.info(
            "Sending order confirmation",
            order_id=str(payload.order_id),
            recipient=payload.user_email,
            attempt=context.attempt,
        )

        await self.transport.send(
            payload.user_email,
            subject,
            body,
            headers={"Message-ID": confirmation_message_id(payload.order_id)},
        )

        logger.info(
            "Order confirmation sent",
            order_id=str(payload.order_id),
            recipient=payload.user_email,
        )

        return {
            "recipient": payload.user_email,
            "template": ORDER_CONFIRMATION_TEMPLATE,
            "attempt": context.attempt,
        }


def build_order_confirmation_handler(settings: Settings) -> OrderConfirmationHandler:
    """Build the handler with the transport selected by settings."""
    transport_factory = mail_transport_registry.get(settings.mail_transport.value)
    return OrderConfirmationHandler(
        templates=TemplateStore(settings.mail_templates_dir),
        transport=transport_factory(settings),
    )
