"""
Registry initialization for notification jobs.

Registers payload schemas and mail transports with the global registries.
"""

from storefront.config.logging import get_logger
from storefront.config.settings import MailTransportType
from storefront.v1.core.registries import mail_transport_registry, payload_registry
from storefront.v1.infra.jobs.envelope import register_payload
from storefront.v1.notifications.schemas import (
    SEND_CONFIRMATION,
    OrderConfirmationPayload,
)
from storefront.v1.notifications.transports import ConsoleTransport, SmtpTransport

logger = get_logger(__name__)


def register_notification_components() -> None:
    """Register notification payloads and transports."""

    if payload_registry.is_frozen():
        return

    # Job payload schemas
    register_payload(SEND_CONFIRMATION, OrderConfirmationPayload)

    # Mail transports
    mail_transport_registry.register(MailTransportType.CONSOLE.value, ConsoleTransport)
    mail_transport_registry.register(MailTransportType.SMTP.value, SmtpTransport)

    logger.debug(
        "Notification components registered",
        payloads=payload_registry.list(),
        transports=mail_transport_registry.list(),
    )


# Auto-register when module is imported
register_notification_components()
