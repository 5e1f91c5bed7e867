"""
API routes for the KLIPZ ledger and payout service.

Domain exceptions raised by the services are turned into the error envelope
by the handlers in api.errors.
"""
import uuid
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core import ledger
from core.connect import ConnectService
from core.deposits import DepositService
from core.money import from_cents
from core.payouts import PayoutService
from core.reconciliation import ReconciliationEngine
from core.submissions import SubmissionService
from database.connection import get_db
from database.models import Campaign, LedgerEntry, Submission, Withdrawal
from integrations.stripe_client import StripeClient
from integrations.webhook_handler import WebhookError, WebhookHandler, WebhookProcessingError
from monitoring.health import HealthCheck

from .errors import error_response
from .schemas import (
    AccountLinkRequest,
    AccountLinkResponse,
    AccountStatusResponse,
    AdminActionRequest,
    AdminCreditRequest,
    AdminCreditResponse,
    CampaignResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    ClipperPayoutRequest,
    ClipperPayoutResponse,
    CreateCampaignRequest,
    CreateSubmissionRequest,
    CreateUserRequest,
    HealthCheckResponse,
    LedgerEntryResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PendingSubmissionResponse,
    ProcessWithdrawalRequest,
    ProcessWithdrawalResponse,
    ReconciliationResponse,
    RefreshMetricsRequest,
    SubmissionResponse,
    UserResponse,
    ValidatePaymentRequest,
    ValidatePaymentResponse,
    WalletResponse,
    WebhookResponse,
    WithdrawalRequest,
    WithdrawalResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
connect_router = APIRouter(prefix="/connect", tags=["connect"])
payout_router = APIRouter(tags=["payouts"])
marketplace_router = APIRouter(tags=["marketplace"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


# Dependencies


@lru_cache()
def get_stripe_client() -> StripeClient:
    return StripeClient()


@lru_cache()
def get_webhook_handler() -> WebhookHandler:
    return WebhookHandler()


def get_payout_service(stripe_client: StripeClient = Depends(get_stripe_client)) -> PayoutService:
    return PayoutService(stripe_client)


def get_submission_service(
    payout_service: PayoutService = Depends(get_payout_service),
) -> SubmissionService:
    return SubmissionService(payout_service)


# Serializers


def _withdrawal(withdrawal: Withdrawal) -> Dict[str, Any]:
    return {
        "id": withdrawal.id,
        "user_id": withdrawal.user_id,
        "amount": from_cents(withdrawal.amount_cents),
        "status": withdrawal.status,
        "source": withdrawal.source,
        "submission_id": withdrawal.submission_id,
        "stripe_transfer_id": withdrawal.stripe_transfer_id,
        "failure_reason": withdrawal.failure_reason,
        "created_at": withdrawal.created_at,
        "processed_at": withdrawal.processed_at,
    }


def _campaign(campaign: Campaign) -> Dict[str, Any]:
    return {
        "id": campaign.id,
        "streamer_id": campaign.streamer_id,
        "title": campaign.title,
        "cpm_rate": campaign.cpm_rate,
        "budget": from_cents(campaign.budget_cents),
        "spent": from_cents(campaign.spent_cents),
        "required_views": campaign.required_views,
        "status": campaign.status,
    }


def _submission(submission: Submission) -> Dict[str, Any]:
    return {
        "id": submission.id,
        "campaign_id": submission.campaign_id,
        "clipper_id": submission.clipper_id,
        "clip_url": submission.clip_url,
        "platform": submission.platform,
        "views": submission.views,
        "earnings": from_cents(submission.earnings_cents),
        "status": submission.status,
        "payout_amount": (
            from_cents(submission.payout_amount_cents)
            if submission.payout_amount_cents is not None
            else None
        ),
        "paid_at": submission.paid_at,
    }


def _entry(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "direction": entry.direction,
        "amount": from_cents(entry.amount_cents),
        "balance_after": from_cents(entry.balance_after_cents),
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "description": entry.description,
        "created_at": entry.created_at,
    }


# Deposits


@payment_router.post(
    "/intents",
    response_model=PaymentIntentResponse,
    summary="Create a wallet recharge PaymentIntent",
)
async def create_payment_intent(
    request: PaymentIntentRequest,
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> Dict[str, Any]:
    """The wallet is credited later, when Stripe reports the payment succeeded."""
    logger.info("api_create_payment_intent", user_id=str(request.user_id), amount=str(request.amount))
    return await DepositService(stripe_client).create_payment_intent(
        db, request.user_id, request.amount, idempotency_key=request.idempotency_key
    )


@payment_router.post(
    "/checkout-sessions",
    response_model=CheckoutSessionResponse,
    summary="Create a Checkout Session funding a campaign budget",
)
async def create_checkout_session(
    request: CheckoutSessionRequest,
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> Dict[str, Any]:
    return await DepositService(stripe_client).create_checkout_session(
        db, request.streamer_id, request.amount
    )


# Webhooks


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    responses={400: {"description": "Missing or invalid signature"}},
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> Any:
    """Verify the signature, then credit recharges exactly once per event id."""
    body = await request.body()
    try:
        result = await handler.handle(body, stripe_signature, db)
    except WebhookProcessingError as e:
        logger.error("api_webhook_processing_error", error=str(e))
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook processing failed")
    except WebhookError as e:
        logger.warning("api_webhook_rejected", error=str(e))
        return error_response(status.HTTP_400_BAD_REQUEST, str(e))

    return {"success": True, **result}


# Connect


@connect_router.post(
    "/account-link",
    response_model=AccountLinkResponse,
    summary="Create a Connect onboarding link",
)
async def create_account_link(
    request: AccountLinkRequest,
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> Dict[str, Any]:
    return await ConnectService(stripe_client).create_account_link(db, request.user_id)


@connect_router.get(
    "/{user_id}/status",
    response_model=AccountStatusResponse,
    summary="Connect onboarding status",
)
async def get_account_status(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> Dict[str, Any]:
    return await ConnectService(stripe_client).get_account_status(db, user_id)


# Withdrawals and payouts


@payout_router.post(
    "/withdrawals",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a withdrawal",
)
async def request_withdrawal(
    request: WithdrawalRequest,
    db: AsyncSession = Depends(get_db),
    payout_service: PayoutService = Depends(get_payout_service),
) -> Dict[str, Any]:
    withdrawal = await payout_service.request_withdrawal(db, request.user_id, request.amount)
    return _withdrawal(withdrawal)


@payout_router.get(
    "/withdrawals",
    response_model=List[WithdrawalResponse],
    summary="List a user's withdrawals",
)
async def list_withdrawals(
    user_id: uuid.UUID = Query(...),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    payout_service: PayoutService = Depends(get_payout_service),
) -> List[Dict[str, Any]]:
    withdrawals = await payout_service.list_withdrawals(db, user_id, limit=limit)
    return [_withdrawal(w) for w in withdrawals]


@payout_router.post(
    "/payouts/withdrawal",
    response_model=ProcessWithdrawalResponse,
    summary="Pay out a pending withdrawal",
)
async def process_withdrawal(
    request: ProcessWithdrawalRequest,
    db: AsyncSession = Depends(get_db),
    payout_service: PayoutService = Depends(get_payout_service),
) -> Dict[str, Any]:
    """Transfer, then debit; the withdrawal completes only when both succeed."""
    return await payout_service.process_withdrawal(db, request.withdrawal_id)


@payout_router.post(
    "/payouts/clipper",
    response_model=ClipperPayoutResponse,
    summary="Pay a clipper immediately",
)
async def payout_clipper(
    request: ClipperPayoutRequest,
    db: AsyncSession = Depends(get_db),
    payout_service: PayoutService = Depends(get_payout_service),
) -> Dict[str, Any]:
    return await payout_service.payout_clipper(
        db, request.clipper_id, request.amount, submission_id=request.submission_id
    )


# Users, wallets, campaigns and submissions


@marketplace_router.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a user and its wallet",
)
async def create_user(
    request: CreateUserRequest,
    db: AsyncSession = Depends(get_db),
    submission_service: SubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    user = await submission_service.create_user(db, request.email, request.role)
    return await submission_service.get_user_summary(db, user.id)


@marketplace_router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    submission_service: SubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    return await submission_service.get_user_summary(db, user_id)


@marketplace_router.get("/wallets/{user_id}", response_model=WalletResponse)
async def get_wallet(user_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    balance = await ledger.get_balance(db, user_id)
    return {
        "user_id": user_id,
        "balance": from_cents(balance),
        "currency": get_settings().currency,
    }


@marketplace_router.get("/wallets/{user_id}/entries", response_model=List[LedgerEntryResponse])
async def list_wallet_entries(
    user_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    entries = await ledger.list_entries(db, user_id, limit=limit)
    return [_entry(e) for e in entries]


@marketplace_router.post(
    "/campaigns",
    response_model=CampaignResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a campaign funded from the streamer's wallet",
)
async def create_campaign(
    request: CreateCampaignRequest,
    db: AsyncSession = Depends(get_db),
    submission_service: SubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    campaign = await submission_service.create_campaign(
        db,
        request.streamer_id,
        request.title,
        request.budget,
        cpm_rate=request.cpm_rate,
        required_views=request.required_views,
    )
    return _campaign(campaign)


@marketplace_router.post(
    "/submissions",
    response_model=SubmissionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_submission(
    request: CreateSubmissionRequest,
    db: AsyncSession = Depends(get_db),
    submission_service: SubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    submission = await submission_service.create_submission(
        db,
        request.campaign_id,
        request.clipper_id,
        request.clip_url,
        platform=request.platform,
        views=request.views,
    )
    return _submission(submission)


@marketplace_router.post(
    "/submissions/{submission_id}/metrics",
    response_model=SubmissionResponse,
    summary="Report a new view count",
)
async def refresh_submission_metrics(
    submission_id: uuid.UUID,
    request: RefreshMetricsRequest,
    db: AsyncSession = Depends(get_db),
    submission_service: SubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    submission = await submission_service.refresh_metrics(db, submission_id, request.views)
    return _submission(submission)


# Admin


@admin_router.post("/submissions/{submission_id}/approve", response_model=SubmissionResponse)
async def approve_submission(
    submission_id: uuid.UUID,
    request: AdminActionRequest,
    db: AsyncSession = Depends(get_db),
    submission_service: SubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    submission = await submission_service.approve_submission(db, request.admin_id, submission_id)
    return _submission(submission)


@admin_router.post(
    "/submissions/{submission_id}/validate",
    response_model=ValidatePaymentResponse,
    summary="Reject, or settle and pay, a submission",
)
async def validate_payment(
    submission_id: uuid.UUID,
    request: ValidatePaymentRequest,
    db: AsyncSession = Depends(get_db),
    submission_service: SubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    return await submission_service.validate_payment(
        db, request.admin_id, submission_id, request.approved, notes=request.notes
    )


@admin_router.get(
    "/submissions/pending",
    response_model=List[PendingSubmissionResponse],
)
async def list_pending_submissions(
    admin_id: uuid.UUID = Query(...),
    db: AsyncSession = Depends(get_db),
    submission_service: SubmissionService = Depends(get_submission_service),
) -> List[Dict[str, Any]]:
    return await submission_service.list_pending_for_admin(db, admin_id)


@admin_router.post(
    "/wallets/{user_id}/credit",
    response_model=AdminCreditResponse,
    summary="Manual wallet adjustment",
)
async def admin_credit(
    user_id: uuid.UUID,
    request: AdminCreditRequest,
    db: AsyncSession = Depends(get_db),
    submission_service: SubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    return await submission_service.admin_credit(
        db, request.admin_id, user_id, request.amount, request.reason
    )


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Reconcile one UTC day; defaults to yesterday",
)
async def run_reconciliation(
    reconciliation_date: Optional[date] = Query(default=None),
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> Dict[str, Any]:
    recon_date = reconciliation_date or (datetime.now(timezone.utc).date() - timedelta(days=1))
    logger.info("api_reconciliation_started", date=recon_date.isoformat())
    return await ReconciliationEngine(stripe_client=stripe_client).reconcile_date(recon_date)


# Monitoring


@monitoring_router.get("/health", response_model=HealthCheckResponse, summary="Health check")
async def health() -> Dict[str, Any]:
    return await HealthCheck().check_all()


@monitoring_router.get("/health/live", response_model=HealthCheckResponse, summary="Liveness check")
async def liveness() -> Dict[str, Any]:
    return await HealthCheck().liveness()


@monitoring_router.get("/health/ready", response_model=HealthCheckResponse, summary="Readiness check")
async def readiness() -> Dict[str, Any]:
    result = await HealthCheck().readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
