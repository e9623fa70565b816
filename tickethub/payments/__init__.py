"""
Payment Webhook Module

Idempotent settlement of Telebirr payment confirmations.

Key Components:
- callback_parser.py: Typed parser with prioritized field aliases per source
- webhook.py: PaymentWebhookHandler (idempotency check, session recovery, settlement)
- router.py: POST/GET callback endpoints
- schemas.py: CallbackInput and WebhookResult
"""

from .router import router
from .callback_parser import CallbackParser, is_successful_payment, extract_session_id
from .webhook import PaymentWebhookHandler
from .schemas import CallbackInput, WebhookResult

__all__ = [
    "router",
    "CallbackParser",
    "is_successful_payment",
    "extract_session_id",
    "PaymentWebhookHandler",
    "CallbackInput",
    "WebhookResult",
]
