"""
Wallet recharge entry points.

Nothing is persisted here: the wallet is only credited when Stripe confirms
the payment through the webhook.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core.money import AmountError, AmountLike, to_cents, to_decimal
from database.models import User
from integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)

RECHARGE_TYPE = "wallet_recharge"
CHECKOUT_PRODUCT_NAME = "KLIPZ campaign budget"


class DepositError(Exception):
    """Base exception for deposit creation."""

    pass


class DepositValidationError(DepositError):
    """Raised when a recharge amount is out of bounds."""

    pass


class DepositUserNotFoundError(DepositError):
    pass


class DepositService:
    """Creates PaymentIntents and Checkout Sessions for wallet recharges."""

    def __init__(self, stripe_client: Optional[StripeClient] = None):
        self.settings = get_settings()
        self.stripe_client = stripe_client or StripeClient()

    def validate_amount(self, amount: AmountLike) -> Decimal:
        """
        Check a recharge amount against the provider and product limits.

        Returns:
            Decimal: The amount quantized to cents

        Raises:
            DepositValidationError: If the amount is unusable
        """
        try:
            value = to_decimal(amount)
        except AmountError as e:
            raise DepositValidationError(str(e)) from e

        if value <= 0:
            raise DepositValidationError("Amount must be positive")
        if value < self.settings.min_deposit_amount:
            raise DepositValidationError(
                f"Amount must be at least {self.settings.min_deposit_amount}"
            )
        if value > self.settings.max_deposit_amount:
            raise DepositValidationError(
                f"Amount cannot exceed {self.settings.max_deposit_amount}"
            )
        if value > self.settings.product_max_deposit_amount:
            raise DepositValidationError(
                f"Amount cannot exceed {self.settings.product_max_deposit_amount} per recharge"
            )
        return value

    @staticmethod
    async def _require_user(db: AsyncSession, user_id: uuid.UUID) -> User:
        user = await db.get(User, user_id)
        if user is None:
            raise DepositUserNotFoundError(f"User {user_id} not found")
        return user

    async def create_payment_intent(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        amount: AmountLike,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a PaymentIntent the client confirms to recharge a wallet.

        Args:
            db: Database session
            user_id: Wallet owner
            amount: Recharge amount in major units
            idempotency_key: Optional client supplied key

        Returns:
            Dict[str, Any]: success, clientSecret and paymentIntentId

        Raises:
            DepositValidationError: If the amount is out of bounds
            DepositUserNotFoundError: If the user does not exist
            StripeError: If Stripe rejects the request
        """
        value = self.validate_amount(amount)
        await self._require_user(db, user_id)

        intent = await self.stripe_client.create_payment_intent(
            amount_cents=to_cents(value),
            currency=self.settings.currency,
            metadata={"userId": str(user_id), "type": RECHARGE_TYPE},
            idempotency_key=idempotency_key,
        )
        logger.info(
            "recharge_intent_created",
            user_id=str(user_id),
            amount=str(value),
            payment_intent_id=intent.id,
        )
        return {
            "success": True,
            "clientSecret": intent.client_secret,
            "paymentIntentId": intent.id,
        }

    async def create_checkout_session(
        self, db: AsyncSession, streamer_id: uuid.UUID, amount: AmountLike
    ) -> Dict[str, Any]:
        """Create a hosted Checkout Session funding a streamer's campaign budget."""
        value = self.validate_amount(amount)
        await self._require_user(db, streamer_id)

        session = await self.stripe_client.create_checkout_session(
            amount_cents=to_cents(value),
            currency=self.settings.currency,
            product_name=CHECKOUT_PRODUCT_NAME,
            metadata={"streamer_id": str(streamer_id), "type": RECHARGE_TYPE},
            success_url=self.settings.checkout_success_url,
            cancel_url=self.settings.checkout_cancel_url,
        )
        logger.info(
            "checkout_session_ready",
            streamer_id=str(streamer_id),
            amount=str(value),
            session_id=session.id,
        )
        return {"success": True, "url": session.url, "sessionId": session.id}
