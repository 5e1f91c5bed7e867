"""
Stripe API client with retry logic and error classification.

Implements:
- Exponential backoff for transient and rate-limit errors
- Circuit breaker around every outbound call
- Idempotency keys on every money-moving request
- PaymentIntent, Checkout Session, Connect account and Transfer calls

The stripe library is synchronous, so calls run in the default executor to
keep the event loop free.
"""
import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import get_settings
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def code(self) -> Optional[str]:
        return getattr(self.original_error, "code", None)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.error_type != StripeErrorType.PERMANENT


stripe_retry = retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=16),
    reraise=True,
)


def _is_retryable_with_key(error: BaseException) -> bool:
    """
    Stripe replays the stored response for a reused idempotency key, 500s
    included, so only errors where no response was stored are retried.
    """
    if not _is_retryable(error):
        return False
    original = getattr(error, "original_error", None)
    return original is None or isinstance(
        original, (stripe.APIConnectionError, stripe.RateLimitError)
    )


keyed_stripe_retry = retry(
    retry=retry_if_exception(_is_retryable_with_key),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=16),
    reraise=True,
)


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Opens after consecutive failures and rejects calls until the timeout
    elapses, then lets a few trial calls through before closing again.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Callable[[], T]) -> T:
        """
        Execute func with circuit breaker protection.

        Raises:
            StripeError: If the circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeError("Circuit breaker is open", StripeErrorType.TRANSIENT)

        try:
            result = func()
        except stripe.StripeError as e:
            # Card declines and bad requests say nothing about Stripe's health.
            if StripeClient.classify_error(e) != StripeErrorType.PERMANENT:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed")
        metrics.set_circuit_breaker_state(self.state)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)
        metrics.set_circuit_breaker_state(self.state)


class StripeClient:
    """
    Async facade over the Stripe SDK used by deposits, Connect and payouts.

    Every public method returns the Stripe object or raises StripeError with a
    classification the callers use to map to HTTP responses.
    """

    def __init__(self) -> None:
        """Initialize Stripe client."""
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        if isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        if isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        # Unknown errors are treated as transient
        return StripeErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a blocking SDK call through the breaker in the default executor."""
        started = time.perf_counter()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, self.circuit_breaker.call, func)
        except stripe.StripeError as e:
            error_type = self.classify_error(e)
            metrics.record_stripe_api_call(operation, "error", time.perf_counter() - started)
            metrics.record_stripe_api_error(error_type.value)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise StripeError(str(e), error_type, original_error=e) from e
        metrics.record_stripe_api_call(operation, "success", time.perf_counter() - started)
        return result

    @stripe_retry
    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a PaymentIntent with automatic payment methods.

        Args:
            amount_cents: Amount in cents
            currency: Currency code (e.g., 'eur')
            metadata: Metadata echoed back on the webhook
            idempotency_key: Optional idempotency key

        Returns:
            stripe.PaymentIntent: Created payment intent
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            kwargs: Dict[str, Any] = {}
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                **kwargs,
            )

        payment_intent = await self._call("create_payment_intent", _create)
        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return payment_intent

    @stripe_retry
    async def create_checkout_session(
        self,
        amount_cents: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        idempotency_key: Optional[str] = None,
    ) -> stripe.checkout.Session:
        """Create a one-line-item payment-mode Checkout Session."""
        logger.info("creating_checkout_session", amount_cents=amount_cents, currency=currency)

        def _create() -> stripe.checkout.Session:
            kwargs: Dict[str, Any] = {}
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "product_data": {"name": product_name},
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                metadata=metadata,
                success_url=success_url,
                cancel_url=cancel_url,
                **kwargs,
            )

        session = await self._call("create_checkout_session", _create)
        logger.info("checkout_session_created", session_id=session.id)
        return session

    @keyed_stripe_retry
    async def create_connect_account(
        self,
        email: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> stripe.Account:
        """
        Create a Connect account able to receive transfers.

        The idempotency key makes a retried creation return the account made
        by the first attempt.
        """
        logger.info("creating_connect_account", idempotency_key=idempotency_key)

        def _create() -> stripe.Account:
            return stripe.Account.create(
                type=self.settings.connect_account_type,
                country=self.settings.connect_country,
                email=email,
                capabilities={"transfers": {"requested": True}},
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )

        account = await self._call("create_connect_account", _create)
        logger.info("connect_account_created", account_id=account.id)
        return account

    @stripe_retry
    async def retrieve_account(self, account_id: str) -> stripe.Account:
        """Retrieve a Connect account."""

        def _retrieve() -> stripe.Account:
            return stripe.Account.retrieve(account_id)

        return await self._call("retrieve_account", _retrieve)

    @stripe_retry
    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> stripe.AccountLink:
        """Create a single-use onboarding link for a Connect account."""
        logger.info("creating_account_link", account_id=account_id)

        def _create() -> stripe.AccountLink:
            return stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )

        return await self._call("create_account_link", _create)

    @keyed_stripe_retry
    async def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> stripe.Transfer:
        """
        Move funds from the platform balance to a Connect account.

        Args:
            amount_cents: Amount in cents
            currency: Currency code
            destination: Connect account id
            idempotency_key: Key derived from the withdrawal id
            metadata: Optional metadata

        Returns:
            stripe.Transfer: Created transfer
        """
        logger.info(
            "creating_transfer",
            amount_cents=amount_cents,
            destination=destination,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.Transfer:
            return stripe.Transfer.create(
                amount=amount_cents,
                currency=currency.lower(),
                destination=destination,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )

        transfer = await self._call("create_transfer", _create)
        logger.info("transfer_created", transfer_id=transfer.id)
        return transfer

    @keyed_stripe_retry
    async def reverse_transfer(
        self,
        transfer_id: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> stripe.Reversal:
        """Reverse a transfer in full."""
        logger.info("reversing_transfer", transfer_id=transfer_id)

        def _reverse() -> stripe.Reversal:
            return stripe.Transfer.create_reversal(
                transfer_id,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )

        reversal = await self._call("reverse_transfer", _reverse)
        logger.info("transfer_reversed", transfer_id=transfer_id, reversal_id=reversal.id)
        return reversal

    @stripe_retry
    async def list_transfers(
        self,
        limit: int = 100,
        starting_after: Optional[str] = None,
        created_gte: Optional[int] = None,
        created_lte: Optional[int] = None,
    ) -> stripe.ListObject:
        """
        List transfers with pagination.

        Args:
            limit: Number of items to return
            starting_after: Cursor for pagination
            created_gte: Filter by creation time (greater than or equal)
            created_lte: Filter by creation time (less than or equal)
        """

        def _list() -> stripe.ListObject:
            kwargs: Dict[str, Any] = {"limit": limit}
            if starting_after:
                kwargs["starting_after"] = starting_after
            created: Dict[str, int] = {}
            if created_gte:
                created["gte"] = created_gte
            if created_lte:
                created["lte"] = created_lte
            if created:
                kwargs["created"] = created
            return stripe.Transfer.list(**kwargs)

        return await self._call("list_transfers", _list)
