# Pipeline Agents
# ===============
# Payment processor and mail adapters used by the fulfillment engine

from .checkout_gateway import CheckoutSessionGateway
from .notification_dispatcher import (
    InMemoryMailTransport,
    MailTransport,
    MessageTemplate,
    NotificationDispatcher,
    SendGridMailTransport,
)

__all__ = [
    # Checkout
    "CheckoutSessionGateway",
    # Notification
    "NotificationDispatcher",
    "MessageTemplate",
    "MailTransport",
    "InMemoryMailTransport",
    "SendGridMailTransport",
]
