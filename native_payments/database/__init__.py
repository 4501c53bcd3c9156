"""Database package for native payments."""
from .connection import get_db, get_session_factory, init_db, session_scope
from .models import (
    AnalyticsSnapshot,
    Base,
    Customer,
    Invoice,
    MembershipType,
    Order,
    OrderItem,
    OutboxEvent,
    Payment,
    PaymentEvent,
    PaymentMethod,
    PaymentProvider,
    PaymentWebhook,
    Product,
    ProviderCustomer,
    Subscription,
    UserMembership,
)

__all__ = [
    "Base",
    "AnalyticsSnapshot",
    "Customer",
    "Invoice",
    "MembershipType",
    "Order",
    "OrderItem",
    "OutboxEvent",
    "Payment",
    "PaymentEvent",
    "PaymentMethod",
    "PaymentProvider",
    "PaymentWebhook",
    "Product",
    "ProviderCustomer",
    "Subscription",
    "UserMembership",
    "get_db",
    "get_session_factory",
    "init_db",
    "session_scope",
]
