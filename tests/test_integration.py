"""
Integration tests for the HTTP API.

The app runs in-process over httpx's ASGI transport against the test
database; Stripe is mocked.
"""
import uuid
from typing import Any, Dict

import pytest
from httpx import AsyncClient

from integrations.stripe_client import StripeError, StripeErrorType
from monitoring.health import HealthCheck


async def _create_user(client: AsyncClient, role: str) -> Dict[str, Any]:
    response = await client.post(
        "/users", json={"email": f"{uuid.uuid4().hex[:10]}@klipz.test", "role": role}
    )
    assert response.status_code == 201
    return response.json()


def _recharge_event(user_id: str, amount_cents: int, intent_id: str) -> Dict[str, Any]:
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount_cents,
        "metadata": {"userId": user_id, "type": "wallet_recharge"},
    }


class TestWalletApi:
    """Recharges, wallets and withdrawals over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_user_and_read_wallet(self, client: AsyncClient) -> None:
        user = await _create_user(client, "streamer")

        assert user["balance"] == "0.00"
        response = await client.get(f"/wallets/{user['id']}")
        assert response.status_code == 200
        assert response.json() == {"user_id": user["id"], "balance": "0.00", "currency": "eur"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_intent_uses_camel_case(self, client: AsyncClient) -> None:
        user = await _create_user(client, "streamer")

        response = await client.post(
            "/payments/intents", json={"userId": user["id"], "amount": "150.00"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "clientSecret": "pi_test_123_secret_abc",
            "paymentIntentId": "pi_test_123",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_intent_amount_out_of_bounds(self, client: AsyncClient) -> None:
        user = await _create_user(client, "streamer")

        response = await client.post(
            "/payments/intents", json={"userId": user["id"], "amount": "0.10"}
        )

        assert response.status_code == 400
        assert response.json()["success"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_recharge_credits_once(
        self, client: AsyncClient, signed_event: Any
    ) -> None:
        user = await _create_user(client, "streamer")
        payload, header = signed_event(
            "payment_intent.succeeded", _recharge_event(user["id"], 10000, "pi_api_1")
        )

        first = await client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": header}
        )
        replay = await client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": header}
        )
        payload, header = signed_event(
            "payment_intent.succeeded", _recharge_event(user["id"], 5000, "pi_api_2")
        )
        await client.post("/webhooks/stripe", content=payload, headers={"Stripe-Signature": header})

        assert first.status_code == 200
        assert first.json()["status"] == "processed"
        assert replay.json()["status"] == "duplicate"
        wallet = (await client.get(f"/wallets/{user['id']}")).json()
        assert wallet["balance"] == "150.00"

        entries = (await client.get(f"/wallets/{user['id']}/entries")).json()
        assert [e["amount"] for e in entries] == ["50.00", "100.00"]
        assert entries[0]["balance_after"] == "150.00"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_without_signature_rejected(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks/stripe", content=b'{"id": "evt_1"}')

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Missing Stripe-Signature header"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_with_bad_signature_rejected(
        self, client: AsyncClient, signed_event: Any
    ) -> None:
        payload, _ = signed_event("payment_intent.succeeded", {"id": "pi_x"})

        response = await client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": "t=1,v1=bad"}
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_withdrawal_flow(
        self, client: AsyncClient, signed_event: Any, mock_stripe_client: Any
    ) -> None:
        user = await _create_user(client, "clipper")
        link = await client.post("/connect/account-link", json={"userId": user["id"]})
        assert link.json()["accountId"] == "acct_test_123"
        payload, header = signed_event(
            "payment_intent.succeeded", _recharge_event(user["id"], 5000, "pi_wd")
        )
        await client.post("/webhooks/stripe", content=payload, headers={"Stripe-Signature": header})

        created = await client.post(
            "/withdrawals", json={"userId": user["id"], "amount": "30.00"}
        )
        assert created.status_code == 201
        withdrawal = created.json()
        assert withdrawal["status"] == "pending"
        assert withdrawal["amount"] == "30.00"

        processed = await client.post(
            "/payouts/withdrawal", json={"withdrawalId": withdrawal["id"]}
        )
        assert processed.status_code == 200
        assert processed.json() == {
            "success": True,
            "transferId": "tr_test_123",
            "withdrawalId": withdrawal["id"],
            "status": "completed",
        }

        wallet = (await client.get(f"/wallets/{user['id']}")).json()
        assert wallet["balance"] == "20.00"
        listed = (await client.get("/withdrawals", params={"user_id": user["id"]})).json()
        assert listed[0]["status"] == "completed"
        assert listed[0]["stripeTransferId"] == "tr_test_123"

        again = await client.post("/payouts/withdrawal", json={"withdrawalId": withdrawal["id"]})
        assert again.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_withdrawal_above_balance_conflicts(
        self, client: AsyncClient, signed_event: Any
    ) -> None:
        user = await _create_user(client, "clipper")
        await client.post("/connect/account-link", json={"userId": user["id"]})
        payload, header = signed_event(
            "payment_intent.succeeded", _recharge_event(user["id"], 2000, "pi_small")
        )
        await client.post("/webhooks/stripe", content=payload, headers={"Stripe-Signature": header})

        response = await client.post(
            "/withdrawals", json={"userId": user["id"], "amount": "30.00"}
        )

        assert response.status_code == 409
        assert "Insufficient funds" in response.json()["error"]
        wallet = (await client.get(f"/wallets/{user['id']}")).json()
        assert wallet["balance"] == "20.00"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transient_stripe_failure_is_bad_gateway(
        self, client: AsyncClient, signed_event: Any, mock_stripe_client: Any
    ) -> None:
        user = await _create_user(client, "clipper")
        await client.post("/connect/account-link", json={"userId": user["id"]})
        payload, header = signed_event(
            "payment_intent.succeeded", _recharge_event(user["id"], 5000, "pi_gw")
        )
        await client.post("/webhooks/stripe", content=payload, headers={"Stripe-Signature": header})
        withdrawal = (
            await client.post("/withdrawals", json={"userId": user["id"], "amount": "30.00"})
        ).json()
        mock_stripe_client.create_transfer.side_effect = StripeError(
            "Connection reset", StripeErrorType.TRANSIENT
        )

        response = await client.post(
            "/payouts/withdrawal", json={"withdrawalId": withdrawal["id"]}
        )

        assert response.status_code == 502
        assert response.json()["success"] is False
        listed = (await client.get("/withdrawals", params={"user_id": user["id"]})).json()
        assert listed[0]["status"] == "transfer_initiated"
        wallet = (await client.get(f"/wallets/{user['id']}")).json()
        assert wallet["balance"] == "50.00"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_user_is_not_found(self, client: AsyncClient) -> None:
        response = await client.get(f"/users/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["success"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_body_is_bad_request(self, client: AsyncClient) -> None:
        response = await client.post("/withdrawals", json={"userId": "not-a-uuid"})
        assert response.status_code == 400
        assert response.json()["success"] is False


class TestMarketplaceApi:
    """Campaign to payout over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_submission_settlement_flow(
        self, client: AsyncClient, signed_event: Any, mock_stripe_client: Any
    ) -> None:
        admin = await _create_user(client, "admin")
        streamer = await _create_user(client, "streamer")
        clipper = await _create_user(client, "clipper")
        await client.post("/connect/account-link", json={"userId": clipper["id"]})
        payload, header = signed_event(
            "payment_intent.succeeded", _recharge_event(streamer["id"], 20000, "pi_budget")
        )
        await client.post("/webhooks/stripe", content=payload, headers={"Stripe-Signature": header})

        campaign = await client.post(
            "/campaigns",
            json={
                "streamer_id": streamer["id"],
                "title": "Season finale",
                "budget": "100.00",
                "cpm_rate": "0.30",
                "required_views": 10000,
            },
        )
        assert campaign.status_code == 201
        campaign_id = campaign.json()["id"]
        assert (await client.get(f"/wallets/{streamer['id']}")).json()["balance"] == "100.00"

        submission = await client.post(
            "/submissions",
            json={
                "campaign_id": campaign_id,
                "clipper_id": clipper["id"],
                "clip_url": "https://tiktok.com/@clipper/video/42",
            },
        )
        assert submission.status_code == 201
        submission_id = submission.json()["id"]

        metrics = await client.post(
            f"/submissions/{submission_id}/metrics", json={"views": 15000}
        )
        assert metrics.json()["earnings"] == "4.50"

        approved = await client.post(
            f"/admin/submissions/{submission_id}/approve", json={"admin_id": admin["id"]}
        )
        assert approved.json()["status"] == "ready_for_payment"

        pending = await client.get("/admin/submissions/pending", params={"admin_id": admin["id"]})
        assert [item["id"] for item in pending.json()] == [submission_id]

        validated = await client.post(
            f"/admin/submissions/{submission_id}/validate",
            json={"adminId": admin["id"], "approved": True},
        )
        assert validated.status_code == 200
        assert validated.json() == {
            "success": True,
            "paymentTriggered": True,
            "amount": "4.50",
            "transferId": "tr_test_123",
            "payoutError": None,
        }
        assert mock_stripe_client.create_transfer.call_args.kwargs["amount_cents"] == 450

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_routes_require_admin(self, client: AsyncClient) -> None:
        streamer = await _create_user(client, "streamer")

        response = await client.post(
            f"/admin/wallets/{streamer['id']}/credit",
            json={"adminId": streamer["id"], "amount": "10.00", "reason": "self-service"},
        )

        assert response.status_code == 403

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_credit(self, client: AsyncClient) -> None:
        admin = await _create_user(client, "admin")
        clipper = await _create_user(client, "clipper")

        response = await client.post(
            f"/admin/wallets/{clipper['id']}/credit",
            json={"adminId": admin["id"], "amount": "12.50", "reason": "Contest prize"},
        )

        assert response.status_code == 200
        assert response.json()["newBalance"] == "12.50"


class TestOperationsApi:
    """Reconciliation, health and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconcile_endpoint(self, client: AsyncClient) -> None:
        response = await client.post("/admin/reconcile", params={"reconciliation_date": "2026-03-14"})

        assert response.status_code == 200
        body = response.json()
        assert body["date"] == "2026-03-14"
        assert body["discrepancy_count"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient, mocker: Any) -> None:
        mocker.patch.object(
            HealthCheck,
            "check_stripe",
            mocker.AsyncMock(return_value={"status": "healthy", "service": "stripe"}),
        )

        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["redis"]["status"] == "disabled"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        """Test Prometheus metrics endpoint."""
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "ledger_mutations_total" in response.text
