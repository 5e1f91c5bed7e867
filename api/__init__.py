"""FastAPI application and routes."""
from .main import app
from .schemas import (
    PaymentIntentRequest,
    PaymentIntentResponse,
    ProcessWithdrawalRequest,
    ProcessWithdrawalResponse,
    WebhookResponse,
)

__all__ = [
    "app",
    "PaymentIntentRequest",
    "PaymentIntentResponse",
    "ProcessWithdrawalRequest",
    "ProcessWithdrawalResponse",
    "WebhookResponse",
]
