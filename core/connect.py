"""Stripe Connect account provisioning for clippers."""
import uuid
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.models import User
from integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)


class ConnectError(Exception):
    """Base exception for Connect provisioning."""

    pass


class ConnectUserNotFoundError(ConnectError):
    pass


class ConnectAccountMissingError(ConnectError):
    """Raised when a status check targets a user without an account."""

    pass


class ConnectService:
    """
    Links users to Stripe Connect accounts.

    Account creation is keyed on the user id, so a request that created the
    account but failed to store its id gets the same account back on retry.
    """

    def __init__(self, stripe_client: Optional[StripeClient] = None):
        self.settings = get_settings()
        self.stripe_client = stripe_client or StripeClient()

    @staticmethod
    async def _load_user(db: AsyncSession, user_id: uuid.UUID) -> User:
        user = await db.get(User, user_id)
        if user is None:
            raise ConnectUserNotFoundError(f"User {user_id} not found")
        return user

    async def ensure_account(self, db: AsyncSession, user: User) -> str:
        """Return the user's Connect account id, creating and storing it if needed."""
        if user.stripe_account_id:
            return user.stripe_account_id

        account = await self.stripe_client.create_connect_account(
            email=user.email,
            idempotency_key=f"connect-account:{user.id}",
            metadata={"user_id": str(user.id)},
        )
        user.stripe_account_id = account.id
        await db.commit()
        logger.info("connect_account_linked", user_id=str(user.id), account_id=account.id)
        return account.id

    async def create_account_link(self, db: AsyncSession, user_id: uuid.UUID) -> Dict[str, Any]:
        """
        Create an onboarding link, provisioning the account first if needed.

        Returns:
            Dict[str, Any]: success, url and accountId

        Raises:
            ConnectUserNotFoundError: If the user does not exist
            StripeError: If Stripe rejects a call
        """
        user = await self._load_user(db, user_id)
        account_id = await self.ensure_account(db, user)

        link = await self.stripe_client.create_account_link(
            account_id=account_id,
            refresh_url=self.settings.connect_refresh_url,
            return_url=self.settings.connect_return_url,
        )
        logger.info("onboarding_link_created", user_id=str(user_id), account_id=account_id)
        return {"success": True, "url": link.url, "accountId": account_id}

    async def get_account_status(self, db: AsyncSession, user_id: uuid.UUID) -> Dict[str, Any]:
        """Report whether the user's Connect account can receive payouts."""
        user = await self._load_user(db, user_id)
        if not user.stripe_account_id:
            raise ConnectAccountMissingError(f"User {user_id} has no payout account")

        account = await self.stripe_client.retrieve_account(user.stripe_account_id)
        return {
            "accountId": account.id,
            "chargesEnabled": bool(account.charges_enabled),
            "payoutsEnabled": bool(account.payouts_enabled),
            "detailsSubmitted": bool(account.details_submitted),
        }
