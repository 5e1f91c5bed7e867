"""
Stripe webhook handler with signature verification and exactly-once crediting.

Implements:
- Webhook signature verification
- Event deduplication persisted in webhook_events, in the same transaction
  as the ledger credit
- An optional Redis fast path for replays
- Routing of recharge events to the ledger
"""
import json
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core import ledger
from database.models import User, WebhookEvent
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RECHARGE_TYPE = "wallet_recharge"

EventHandler = Callable[[Dict[str, Any], str, AsyncSession], Awaitable[str]]


class WebhookError(Exception):
    """Raised when a webhook cannot be verified or parsed."""

    pass


class WebhookProcessingError(WebhookError):
    """Raised when a verified event could not be applied."""

    pass


def _parse_user_id(raw: Any) -> Optional[uuid.UUID]:
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


class WebhookHandler:
    """
    Verifies Stripe webhooks and applies wallet recharges to the ledger.

    An event id is applied at most once: the webhook_events row and the
    ledger credit commit together, so a replay either finds the row or
    collides with it on insert.
    """

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize webhook handler.

        Args:
            redis_client: Optional Redis client for the replay fast path
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self._redis_initialized = redis_client is not None
        self.event_handlers: Dict[str, EventHandler] = {
            "checkout.session.completed": self.handle_checkout_session_completed,
            "payment_intent.succeeded": self.handle_payment_intent_succeeded,
            "payment_intent.payment_failed": self.handle_payment_intent_payment_failed,
        }

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None or not self._redis_initialized:
            self.redis_client = await aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    @staticmethod
    def _cache_key(event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and decode the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            Dict[str, Any]: The event as plain JSON data

        Raises:
            WebhookError: If the header is missing, the signature is invalid
                or the payload is not a Stripe event
        """
        if not signature:
            logger.warning("webhook_signature_missing")
            raise WebhookError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.settings.stripe_webhook_secret,
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {str(e)}") from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookError(f"Invalid webhook payload: {str(e)}") from e

        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise WebhookError("Invalid webhook payload: not a Stripe event")

        logger.info("webhook_signature_verified", event_id=event["id"], event_type=event["type"])
        return event

    async def _seen_in_cache(self, event_id: str) -> bool:
        if not self.settings.webhook_dedup_cache_enabled:
            return False
        try:
            redis = await self._ensure_redis()
            return bool(await redis.exists(self._cache_key(event_id)))
        except Exception as e:
            # Redis down: the database check still guarantees exactly-once.
            logger.warning("webhook_dedup_cache_error", error=str(e), event_id=event_id)
            return False

    async def _remember_in_cache(self, event_id: str) -> None:
        if not self.settings.webhook_dedup_cache_enabled:
            return
        try:
            redis = await self._ensure_redis()
            await redis.setex(self._cache_key(event_id), self.settings.webhook_dedup_ttl_seconds, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    @staticmethod
    async def _seen_in_database(db: AsyncSession, event_id: str) -> bool:
        result = await db.execute(
            select(WebhookEvent.id).where(WebhookEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    def _result(event_id: str, event_type: str, status: str, message: str) -> Dict[str, Any]:
        return {
            "status": status,
            "event_id": event_id,
            "event_type": event_type,
            "message": message,
        }

    async def process_event(self, event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        """
        Apply a verified event exactly once.

        Args:
            event: Verified event data
            db: Database session; committed or rolled back here

        Returns:
            Dict[str, Any]: status is processed, ignored or duplicate

        Raises:
            WebhookProcessingError: If the event could not be applied; the
                transaction is rolled back so Stripe's redelivery retries it
        """
        started = time.perf_counter()
        event_id = event["id"]
        event_type = event["type"]
        log = logger.bind(event_id=event_id, event_type=event_type)
        log.info("processing_webhook_event")

        if await self._seen_in_cache(event_id) or await self._seen_in_database(db, event_id):
            log.info("webhook_event_already_processed")
            metrics.record_webhook_event(event_type, "duplicate", time.perf_counter() - started)
            return self._result(event_id, event_type, "duplicate", "Event already processed")

        handler = self.event_handlers.get(event_type)
        data_object = event.get("data", {}).get("object", {})

        try:
            if handler is None:
                log.info("webhook_event_unhandled")
                status = "ignored"
            else:
                status = await handler(data_object, event_id, db)

            db.add(WebhookEvent(event_id=event_id, event_type=event_type, status=status))
            await db.commit()
        except (IntegrityError, ledger.DuplicateLedgerEntryError):
            # A concurrent delivery of the same event committed first.
            await db.rollback()
            log.info("webhook_event_concurrent_duplicate")
            metrics.record_webhook_event(event_type, "duplicate", time.perf_counter() - started)
            return self._result(event_id, event_type, "duplicate", "Event already processed")
        except Exception as e:
            await db.rollback()
            log.error("webhook_event_processing_failed", error=str(e))
            metrics.record_webhook_event(event_type, "failed", time.perf_counter() - started)
            raise WebhookProcessingError(f"Failed to process event {event_id}: {str(e)}") from e

        await self._remember_in_cache(event_id)
        metrics.record_webhook_event(event_type, status, time.perf_counter() - started)
        log.info("webhook_event_processed", status=status)
        message = "Event processed" if status == "processed" else "Event acknowledged"
        return self._result(event_id, event_type, status, message)

    async def handle(
        self, payload: bytes, signature: Optional[str], db: AsyncSession
    ) -> Dict[str, Any]:
        """Verify then process a raw webhook delivery."""
        event = self.verify_signature(payload, signature)
        return await self.process_event(event, db)

    async def _credit_recharge(
        self,
        db: AsyncSession,
        raw_user_id: Any,
        amount_cents: Any,
        reference_type: str,
        reference_id: str,
    ) -> str:
        user_id = _parse_user_id(raw_user_id)
        if user_id is None or await db.get(User, user_id) is None:
            logger.warning(
                "webhook_recharge_user_missing",
                reference=f"{reference_type}:{reference_id}",
                user_id=raw_user_id,
            )
            return "ignored"
        if not isinstance(amount_cents, int) or amount_cents <= 0:
            logger.warning(
                "webhook_recharge_amount_invalid",
                reference=f"{reference_type}:{reference_id}",
                amount=amount_cents,
            )
            return "ignored"

        await ledger.ensure_wallet(db, user_id)
        await ledger.credit(
            db,
            user_id,
            amount_cents,
            reference_type=reference_type,
            reference_id=reference_id,
            description="Wallet recharge",
        )
        return "processed"

    async def handle_checkout_session_completed(
        self, session: Dict[str, Any], event_id: str, db: AsyncSession
    ) -> str:
        """Credit the streamer named in the session metadata with amount_total."""
        metadata = session.get("metadata") or {}
        raw_user_id = metadata.get("streamer_id") or metadata.get("userId")
        logger.info(
            "handling_checkout_session_completed",
            session_id=session.get("id"),
            amount_total=session.get("amount_total"),
        )
        return await self._credit_recharge(
            db,
            raw_user_id,
            session.get("amount_total"),
            reference_type="checkout_session",
            reference_id=session.get("id") or event_id,
        )

    async def handle_payment_intent_succeeded(
        self, payment_intent: Dict[str, Any], event_id: str, db: AsyncSession
    ) -> str:
        """Credit wallet recharges; other payment intents are not ours to book."""
        metadata = payment_intent.get("metadata") or {}
        if metadata.get("type") != RECHARGE_TYPE:
            logger.info(
                "payment_intent_not_recharge",
                payment_intent_id=payment_intent.get("id"),
                type=metadata.get("type"),
            )
            return "ignored"

        logger.info(
            "handling_payment_intent_succeeded",
            payment_intent_id=payment_intent.get("id"),
            amount=payment_intent.get("amount"),
        )
        return await self._credit_recharge(
            db,
            metadata.get("userId"),
            payment_intent.get("amount"),
            reference_type="payment_intent",
            reference_id=payment_intent.get("id") or event_id,
        )

    async def handle_payment_intent_payment_failed(
        self, payment_intent: Dict[str, Any], event_id: str, db: AsyncSession
    ) -> str:
        error = payment_intent.get("last_payment_error") or {}
        logger.warning(
            "payment_intent_failed",
            payment_intent_id=payment_intent.get("id"),
            user_id=(payment_intent.get("metadata") or {}).get("userId"),
            error=error.get("message", "Unknown error"),
        )
        return "ignored"

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._redis_initialized:
            await self.redis_client.aclose()
