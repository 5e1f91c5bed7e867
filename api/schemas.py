"""
Pydantic schemas for API request/response models.

Payment, Connect and payout payloads use camelCase keys; marketplace and
wallet payloads use snake_case. Money is exchanged as decimal strings with
two places ("150.00").
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from database.models import EntryDirection, UserRole

MAX_AMOUNT = Decimal("999999.99")


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(BaseModel):
    success: bool = False
    error: str


# Deposits


class PaymentIntentRequest(CamelModel):
    """Request schema for creating a wallet recharge PaymentIntent."""

    user_id: UUID = Field(..., description="Wallet owner")
    amount: Decimal = Field(..., description="Recharge amount, e.g. 150.00")
    idempotency_key: Optional[str] = Field(default=None, max_length=255)

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"userId": "123e4567-e89b-12d3-a456-426614174000", "amount": "150.00"}
            ]
        },
    )


class PaymentIntentResponse(CamelModel):
    success: bool = True
    client_secret: str
    payment_intent_id: str


class CheckoutSessionRequest(CamelModel):
    streamer_id: UUID
    amount: Decimal


class CheckoutSessionResponse(CamelModel):
    success: bool = True
    url: str
    session_id: str


# Connect


class AccountLinkRequest(CamelModel):
    user_id: UUID


class AccountLinkResponse(CamelModel):
    success: bool = True
    url: str
    account_id: str


class AccountStatusResponse(CamelModel):
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


# Withdrawals and payouts


class WithdrawalRequest(CamelModel):
    user_id: UUID
    amount: Decimal


class WithdrawalResponse(CamelModel):
    """A withdrawal as stored, amounts in major units."""

    id: UUID
    user_id: UUID
    amount: Decimal
    status: str
    source: str
    submission_id: Optional[UUID] = None
    stripe_transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class ProcessWithdrawalRequest(CamelModel):
    withdrawal_id: UUID


class ProcessWithdrawalResponse(CamelModel):
    success: bool
    transfer_id: Optional[str] = None
    withdrawal_id: UUID
    status: str


class ClipperPayoutRequest(CamelModel):
    clipper_id: UUID
    amount: Decimal
    submission_id: Optional[UUID] = None


class ClipperPayoutResponse(CamelModel):
    success: bool = True
    transfer_id: Optional[str] = None
    withdrawal_id: UUID
    amount: Decimal
    new_balance: Decimal


# Users and wallets


class CreateUserRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    role: UserRole

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Light shape check; ownership is verified elsewhere."""
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class UserResponse(BaseModel):
    id: UUID
    email: str
    role: str
    stripe_account_id: Optional[str] = None
    balance: Decimal


class WalletResponse(BaseModel):
    user_id: UUID
    balance: Decimal
    currency: str


class LedgerEntryResponse(BaseModel):
    id: int
    direction: EntryDirection
    amount: Decimal
    balance_after: Decimal
    reference_type: str
    reference_id: str
    description: Optional[str] = None
    created_at: datetime


# Campaigns and submissions


class CreateCampaignRequest(BaseModel):
    streamer_id: UUID
    title: str = Field(..., min_length=1, max_length=255)
    budget: Decimal
    cpm_rate: Optional[Decimal] = Field(default=None, gt=0)
    required_views: int = Field(default=0, ge=0)


class CampaignResponse(BaseModel):
    id: UUID
    streamer_id: UUID
    title: str
    cpm_rate: Decimal
    budget: Decimal
    spent: Decimal
    required_views: int
    status: str


class CreateSubmissionRequest(BaseModel):
    campaign_id: UUID
    clipper_id: UUID
    clip_url: str = Field(..., min_length=1)
    platform: str = Field(default="tiktok", max_length=20)
    views: int = Field(default=0, ge=0)


class RefreshMetricsRequest(BaseModel):
    views: int = Field(..., ge=0)


class SubmissionResponse(BaseModel):
    id: UUID
    campaign_id: UUID
    clipper_id: UUID
    clip_url: str
    platform: str
    views: int
    earnings: Decimal
    status: str
    payout_amount: Optional[Decimal] = None
    paid_at: Optional[datetime] = None


class AdminActionRequest(BaseModel):
    admin_id: UUID


class ValidatePaymentRequest(CamelModel):
    admin_id: UUID
    approved: bool
    notes: Optional[str] = None


class ValidatePaymentResponse(CamelModel):
    success: bool = True
    payment_triggered: bool
    amount: Decimal
    transfer_id: Optional[str] = None
    payout_error: Optional[str] = None


class PendingSubmissionResponse(BaseModel):
    id: UUID
    campaign_id: UUID
    campaign_title: str
    clipper_id: UUID
    clip_url: str
    views: int
    status: str
    required_views: int
    potential_earnings: Decimal
    meets_requirement: bool
    has_stripe_account: bool


class AdminCreditRequest(CamelModel):
    admin_id: UUID
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    reason: str = Field(..., min_length=1)


class AdminCreditResponse(CamelModel):
    success: bool = True
    entry_id: int
    new_balance: Decimal


# Webhooks, reconciliation, health


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    success: bool = True
    status: str = Field(..., description="processed, ignored or duplicate")
    event_id: str = Field(..., description="Stripe event ID")
    event_type: str
    message: Optional[str] = None


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation."""

    date: str
    database_total_cents: int
    database_count: int
    stripe_total_cents: int
    stripe_count: int
    discrepancy_cents: int
    ledger_drift_count: int
    discrepancy_count: int
    discrepancies: List[Dict[str, Any]]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
