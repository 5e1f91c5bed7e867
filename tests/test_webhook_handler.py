"""
Tests for Stripe webhook verification and exactly-once recharge crediting.
"""
import uuid
from typing import Any
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from database.models import UserRole, WebhookEvent
from integrations.webhook_handler import WebhookError, WebhookHandler


def _recharge_intent(user_id: uuid.UUID, amount_cents: int, intent_id: str) -> dict:
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount_cents,
        "currency": "eur",
        "metadata": {"userId": str(user_id), "type": "wallet_recharge"},
    }


class TestWebhookSignature:
    """Signature verification."""

    @pytest.mark.unit
    def test_missing_signature_rejected(self) -> None:
        handler = WebhookHandler()
        with pytest.raises(WebhookError, match="Missing Stripe-Signature"):
            handler.verify_signature(b"{}", None)

    @pytest.mark.unit
    def test_invalid_signature_rejected(self, signed_event: Any) -> None:
        payload, _ = signed_event("payment_intent.succeeded", {"id": "pi_1"})
        with pytest.raises(WebhookError, match="Invalid webhook signature"):
            WebhookHandler().verify_signature(payload, "t=1,v1=deadbeef")

    @pytest.mark.unit
    def test_wrong_secret_rejected(self, signed_event: Any) -> None:
        payload, header = signed_event(
            "payment_intent.succeeded", {"id": "pi_1"}, secret="whsec_someone_else"
        )
        with pytest.raises(WebhookError):
            WebhookHandler().verify_signature(payload, header)

    @pytest.mark.unit
    def test_valid_signature_returns_event(self, signed_event: Any) -> None:
        payload, header = signed_event("payment_intent.succeeded", {"id": "pi_1"}, event_id="evt_1")
        event = WebhookHandler().verify_signature(payload, header)
        assert event["id"] == "evt_1"
        assert event["data"]["object"]["id"] == "pi_1"


class TestWebhookProcessing:
    """Event routing and deduplication."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replayed_event_credits_once(
        self, test_db: Any, make_user: Any, balance_of: Any, signed_event: Any
    ) -> None:
        """A 100.00 recharge delivered twice, then a 50.00 one, leaves 150.00."""
        user_id = await make_user(role=UserRole.STREAMER)
        handler = WebhookHandler()

        payload, header = signed_event(
            "payment_intent.succeeded",
            _recharge_intent(user_id, 10000, "pi_first"),
            event_id="evt_first",
        )
        first = await handler.handle(payload, header, test_db)
        replay = await handler.handle(payload, header, test_db)

        payload, header = signed_event(
            "payment_intent.succeeded",
            _recharge_intent(user_id, 5000, "pi_second"),
            event_id="evt_second",
        )
        second = await handler.handle(payload, header, test_db)

        assert first["status"] == "processed"
        assert replay["status"] == "duplicate"
        assert second["status"] == "processed"
        assert await balance_of(user_id) == 15000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_intent_under_new_event_id_is_duplicate(
        self, test_db: Any, make_user: Any, balance_of: Any
    ) -> None:
        user_id = await make_user()
        handler = WebhookHandler()
        data = {"object": _recharge_intent(user_id, 2500, "pi_twice")}

        await handler.process_event(
            {"id": "evt_a", "type": "payment_intent.succeeded", "data": data}, test_db
        )
        result = await handler.process_event(
            {"id": "evt_b", "type": "payment_intent.succeeded", "data": data}, test_db
        )

        assert result["status"] == "duplicate"
        assert await balance_of(user_id) == 2500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_checkout_session_credits_streamer(
        self, test_db: Any, make_user: Any, balance_of: Any
    ) -> None:
        streamer_id = await make_user(role=UserRole.STREAMER)
        event = {
            "id": "evt_checkout",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_1",
                    "amount_total": 20000,
                    "metadata": {"streamer_id": str(streamer_id)},
                }
            },
        }

        result = await WebhookHandler().process_event(event, test_db)

        assert result["status"] == "processed"
        assert await balance_of(streamer_id) == 20000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_recharge_intent_ignored(
        self, test_db: Any, make_user: Any, balance_of: Any
    ) -> None:
        user_id = await make_user()
        intent = _recharge_intent(user_id, 1000, "pi_other")
        intent["metadata"]["type"] = "subscription"

        result = await WebhookHandler().process_event(
            {"id": "evt_other", "type": "payment_intent.succeeded", "data": {"object": intent}},
            test_db,
        )

        assert result["status"] == "ignored"
        assert await balance_of(user_id) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_user_ignored(self, test_db: Any) -> None:
        result = await WebhookHandler().process_event(
            {
                "id": "evt_ghost",
                "type": "payment_intent.succeeded",
                "data": {"object": _recharge_intent(uuid.uuid4(), 1000, "pi_ghost")},
            },
            test_db,
        )
        assert result["status"] == "ignored"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unhandled_event_type_recorded(self, test_db: Any) -> None:
        result = await WebhookHandler().process_event(
            {"id": "evt_refund", "type": "charge.refunded", "data": {"object": {}}}, test_db
        )
        replay = await WebhookHandler().process_event(
            {"id": "evt_refund", "type": "charge.refunded", "data": {"object": {}}}, test_db
        )

        assert result["status"] == "ignored"
        assert replay["status"] == "duplicate"
        count = await test_db.scalar(select(func.count(WebhookEvent.id)))
        assert count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_cache_hit_short_circuits(self, test_db: Any, mocker: Any) -> None:
        redis_client = AsyncMock()
        redis_client.exists.return_value = 1
        handler = WebhookHandler(redis_client=redis_client)
        mocker.patch.object(handler.settings, "webhook_dedup_cache_enabled", True)

        result = await handler.process_event(
            {"id": "evt_cached", "type": "payment_intent.succeeded", "data": {"object": {}}},
            test_db,
        )

        assert result["status"] == "duplicate"
        redis_client.exists.assert_awaited_once_with("webhook:processed:evt_cached")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_failure_falls_back_to_database(
        self, test_db: Any, make_user: Any, balance_of: Any, mocker: Any
    ) -> None:
        user_id = await make_user()
        redis_client = AsyncMock()
        redis_client.exists.side_effect = ConnectionError("redis down")
        redis_client.setex.side_effect = ConnectionError("redis down")
        handler = WebhookHandler(redis_client=redis_client)
        mocker.patch.object(handler.settings, "webhook_dedup_cache_enabled", True)
        event = {
            "id": "evt_no_cache",
            "type": "payment_intent.succeeded",
            "data": {"object": _recharge_intent(user_id, 700, "pi_no_cache")},
        }

        first = await handler.process_event(event, test_db)
        second = await handler.process_event(event, test_db)

        assert first["status"] == "processed"
        assert second["status"] == "duplicate"
        assert await balance_of(user_id) == 700
