# cobranca_app/models/__init__.py
# -*- coding: utf-8 -*-
from .user import User
from .setting import Setting
from .order import Order
from .payment_title import PaymentTitle
from .audit import AuditLog
from .outbox import NotificationOutbox
from .checkout_attempt import CheckoutAttempt


__all__ = [
    "User",
    "Setting",
    "Order",
    "PaymentTitle",
    "AuditLog",
    "NotificationOutbox",
    "CheckoutAttempt",
]
