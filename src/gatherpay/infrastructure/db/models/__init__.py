# src/gatherpay/infrastructure/db/models/__init__.py
"""
This file makes the 'models' directory a package and ensures all SQLAlchemy ORM
models are discoverable by Alembic and the application.
"""

from .base import Base
from .user import User
from .event import Event
from .participation import Participation
from .payment import PaymentIntent, WebhookEvent
from .escrow import Escrow
from .discount import DiscountCode, DiscountRedemption, RewardDiscount
from .refund import RefundRequest

__all__ = [
    "Base",
    "User",
    "Event",
    "Participation",
    "PaymentIntent",
    "WebhookEvent",
    "Escrow",
    "DiscountCode",
    "DiscountRedemption",
    "RewardDiscount",
    "RefundRequest",
]
