"""
Marketplace flows that feed the ledger: users, campaigns, clip submissions
and their admin settlement.

Submission lifecycle:
    pending -> approved -> ready_for_payment -> paid
    pending | approved | ready_for_payment -> rejected

Settling a submission charges the campaign budget, credits the clipper's
wallet and, when the clipper can receive transfers, pays it straight out.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core import ledger
from core.earnings import compute_earnings, compute_earnings_cents, meets_view_requirement
from core.money import AmountError, AmountLike, from_cents, to_cents, to_decimal
from core.payouts import PayoutError, PayoutService
from database.models import (
    Campaign,
    CampaignStatus,
    Submission,
    SubmissionStatus,
    User,
    UserRole,
    WithdrawalSource,
    utcnow,
)

logger = structlog.get_logger(__name__)

UNSETTLED_STATUSES = (
    SubmissionStatus.PENDING.value,
    SubmissionStatus.APPROVED.value,
    SubmissionStatus.READY_FOR_PAYMENT.value,
)
AWAITING_PAYMENT_STATUSES = (
    SubmissionStatus.APPROVED.value,
    SubmissionStatus.READY_FOR_PAYMENT.value,
)


class SubmissionError(Exception):
    """Base exception for marketplace operations."""

    pass


class SubmissionValidationError(SubmissionError):
    pass


class SubmissionNotFoundError(SubmissionError):
    """Raised when a submission, campaign or user does not exist."""

    pass


class SubmissionStateError(SubmissionError):
    """Raised when an operation does not apply to the current status."""

    pass


class BudgetExhaustedError(SubmissionStateError):
    pass


class DuplicateUserError(SubmissionError):
    pass


class NotAuthorizedError(SubmissionError):
    """Raised when a non-admin calls an admin operation."""

    pass


class SubmissionService:
    """Users, campaigns, submissions and admin settlement."""

    def __init__(self, payout_service: Optional[PayoutService] = None):
        self.settings = get_settings()
        self.payout_service = payout_service or PayoutService()

    # Users

    async def create_user(self, db: AsyncSession, email: str, role: UserRole) -> User:
        """Create a user together with its empty wallet."""
        user = User(email=email.strip().lower(), role=role.value)
        db.add(user)
        try:
            await db.flush()
        except IntegrityError as e:
            await db.rollback()
            raise DuplicateUserError(f"User {email} already exists") from e
        await ledger.ensure_wallet(db, user.id)
        await db.commit()
        logger.info("user_created", user_id=str(user.id), role=user.role)
        return user

    @staticmethod
    async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User:
        user = await db.get(User, user_id)
        if user is None:
            raise SubmissionNotFoundError(f"User {user_id} not found")
        return user

    async def get_user_summary(self, db: AsyncSession, user_id: uuid.UUID) -> Dict[str, Any]:
        """User profile with its balance read from the wallet."""
        user = await self.get_user(db, user_id)
        await ledger.ensure_wallet(db, user_id)
        balance = await ledger.get_balance(db, user_id)
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "stripe_account_id": user.stripe_account_id,
            "balance": from_cents(balance),
        }

    async def _require_admin(self, db: AsyncSession, admin_id: uuid.UUID) -> User:
        admin = await db.get(User, admin_id)
        if admin is None or admin.role != UserRole.ADMIN.value:
            logger.warning("admin_access_denied", user_id=str(admin_id))
            raise NotAuthorizedError("Admin access required")
        return admin

    async def admin_credit(
        self,
        db: AsyncSession,
        admin_id: uuid.UUID,
        user_id: uuid.UUID,
        amount: AmountLike,
        reason: str,
    ) -> Dict[str, Any]:
        """Manual credit booked as a one-off adjustment."""
        await self._require_admin(db, admin_id)
        await self.get_user(db, user_id)
        amount_cents = self._positive_cents(amount)

        await ledger.ensure_wallet(db, user_id)
        entry = await ledger.credit(
            db,
            user_id,
            amount_cents,
            reference_type="admin_adjustment",
            reference_id=str(uuid.uuid4()),
            description=reason,
        )
        await db.commit()
        logger.info(
            "admin_credit_applied",
            admin_id=str(admin_id),
            user_id=str(user_id),
            amount_cents=amount_cents,
        )
        return {
            "success": True,
            "entryId": entry.id,
            "newBalance": from_cents(entry.balance_after_cents),
        }

    # Campaigns

    @staticmethod
    def _positive_cents(amount: AmountLike) -> int:
        try:
            value = to_decimal(amount)
        except AmountError as e:
            raise SubmissionValidationError(str(e)) from e
        if value <= 0:
            raise SubmissionValidationError("Amount must be positive")
        return to_cents(value)

    async def create_campaign(
        self,
        db: AsyncSession,
        streamer_id: uuid.UUID,
        title: str,
        budget: AmountLike,
        cpm_rate: Optional[Decimal] = None,
        required_views: int = 0,
    ) -> Campaign:
        """
        Create a campaign and reserve its budget from the streamer's wallet.

        Raises:
            SubmissionNotFoundError: If the streamer does not exist
            SubmissionValidationError: If the inputs are unusable
            InsufficientFundsError: If the wallet cannot cover the budget
        """
        streamer = await self.get_user(db, streamer_id)
        if streamer.role != UserRole.STREAMER.value:
            raise SubmissionValidationError("Only streamers can create campaigns")
        budget_cents = self._positive_cents(budget)
        rate = Decimal(str(cpm_rate)) if cpm_rate is not None else self.settings.default_cpm_rate
        if rate <= 0:
            raise SubmissionValidationError("CPM rate must be positive")
        if required_views < 0:
            raise SubmissionValidationError("Required views cannot be negative")

        campaign = Campaign(
            streamer_id=streamer_id,
            title=title,
            cpm_rate=rate,
            budget_cents=budget_cents,
            spent_cents=0,
            required_views=required_views,
            status=CampaignStatus.ACTIVE.value,
        )
        db.add(campaign)
        try:
            await db.flush()
            await ledger.ensure_wallet(db, streamer_id)
            await ledger.debit(
                db,
                streamer_id,
                budget_cents,
                reference_type="campaign",
                reference_id=str(campaign.id),
                description=f"Budget for campaign {title}",
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "campaign_created",
            campaign_id=str(campaign.id),
            streamer_id=str(streamer_id),
            budget_cents=budget_cents,
        )
        return campaign

    # Submissions

    async def _get_submission(self, db: AsyncSession, submission_id: uuid.UUID) -> Submission:
        result = await db.execute(
            select(Submission)
            .where(Submission.id == submission_id)
            .execution_options(populate_existing=True)
        )
        submission = result.scalar_one_or_none()
        if submission is None:
            raise SubmissionNotFoundError(f"Submission {submission_id} not found")
        return submission

    async def _get_campaign(self, db: AsyncSession, campaign_id: uuid.UUID) -> Campaign:
        campaign = await db.get(Campaign, campaign_id)
        if campaign is None:
            raise SubmissionNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def create_submission(
        self,
        db: AsyncSession,
        campaign_id: uuid.UUID,
        clipper_id: uuid.UUID,
        clip_url: str,
        platform: str = "tiktok",
        views: int = 0,
    ) -> Submission:
        campaign = await self._get_campaign(db, campaign_id)
        if campaign.status != CampaignStatus.ACTIVE.value:
            raise SubmissionStateError(f"Campaign {campaign_id} is not active")
        clipper = await self.get_user(db, clipper_id)
        if clipper.role != UserRole.CLIPPER.value:
            raise SubmissionValidationError("Only clippers can submit clips")
        if views < 0:
            raise SubmissionValidationError("Views cannot be negative")

        submission = Submission(
            campaign_id=campaign_id,
            clipper_id=clipper_id,
            clip_url=clip_url,
            platform=platform,
            views=views,
            earnings_cents=compute_earnings_cents(views, campaign.cpm_rate),
            status=SubmissionStatus.PENDING.value,
        )
        db.add(submission)
        await db.commit()
        logger.info(
            "submission_created",
            submission_id=str(submission.id),
            campaign_id=str(campaign_id),
            clipper_id=str(clipper_id),
        )
        return submission

    @staticmethod
    def _promote_if_ready(submission: Submission, campaign: Campaign) -> None:
        if submission.status == SubmissionStatus.APPROVED.value and meets_view_requirement(
            submission.views, campaign.required_views
        ):
            submission.status = SubmissionStatus.READY_FOR_PAYMENT.value
            logger.info("submission_ready_for_payment", submission_id=str(submission.id))

    async def approve_submission(
        self, db: AsyncSession, admin_id: uuid.UUID, submission_id: uuid.UUID
    ) -> Submission:
        await self._require_admin(db, admin_id)
        submission = await self._get_submission(db, submission_id)
        if submission.status != SubmissionStatus.PENDING.value:
            raise SubmissionStateError(
                f"Submission {submission_id} is {submission.status}, expected pending"
            )
        campaign = await self._get_campaign(db, submission.campaign_id)

        submission.status = SubmissionStatus.APPROVED.value
        submission.admin_validated_by = admin_id
        self._promote_if_ready(submission, campaign)
        await db.commit()
        logger.info("submission_approved", submission_id=str(submission_id), admin_id=str(admin_id))
        return submission

    async def refresh_metrics(
        self, db: AsyncSession, submission_id: uuid.UUID, views: int
    ) -> Submission:
        """
        Record a new view count and recompute earnings.

        View counts only ever go up; a lower reading is ignored. Settled
        submissions keep the earnings they were paid on.
        """
        if views < 0:
            raise SubmissionValidationError("Views cannot be negative")
        submission = await self._get_submission(db, submission_id)
        campaign = await self._get_campaign(db, submission.campaign_id)

        if views < submission.views:
            logger.info(
                "submission_views_not_increased",
                submission_id=str(submission_id),
                current=submission.views,
                reported=views,
            )
        elif submission.status in UNSETTLED_STATUSES:
            submission.views = views
            submission.earnings_cents = compute_earnings_cents(views, campaign.cpm_rate)
        self._promote_if_ready(submission, campaign)
        await db.commit()

        threshold = self.settings.auto_payout_threshold
        if (
            threshold is not None
            and submission.status == SubmissionStatus.READY_FOR_PAYMENT.value
            and submission.earnings_cents >= to_cents(threshold)
        ):
            logger.info("submission_auto_settling", submission_id=str(submission_id))
            try:
                await self._settle(db, submission, admin_id=None, notes="Automatic payout")
            except BudgetExhaustedError as e:
                logger.warning(
                    "submission_auto_settle_skipped", submission_id=str(submission_id), error=str(e)
                )
            submission = await self._get_submission(db, submission_id)

        return submission

    async def validate_payment(
        self,
        db: AsyncSession,
        admin_id: uuid.UUID,
        submission_id: uuid.UUID,
        approved: bool,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Admin decision on a submission: reject it, or settle and pay it.

        Returns:
            Dict[str, Any]: success, paymentTriggered, amount and, when a
                transfer happened, transferId

        Raises:
            NotAuthorizedError: If the caller is not an admin
            SubmissionNotFoundError: If the submission does not exist
            SubmissionStateError: If it is already paid or rejected, or the
                campaign budget is exhausted
        """
        await self._require_admin(db, admin_id)
        submission = await self._get_submission(db, submission_id)
        if submission.status not in UNSETTLED_STATUSES:
            raise SubmissionStateError(
                f"Submission {submission_id} is already {submission.status}"
            )

        if not approved:
            submission.status = SubmissionStatus.REJECTED.value
            submission.admin_validated_by = admin_id
            submission.admin_notes = notes
            await db.commit()
            logger.info("submission_rejected", submission_id=str(submission_id), admin_id=str(admin_id))
            return {"success": True, "paymentTriggered": False, "amount": from_cents(0)}

        return await self._settle(db, submission, admin_id=admin_id, notes=notes)

    async def _settle(
        self,
        db: AsyncSession,
        submission: Submission,
        admin_id: Optional[uuid.UUID],
        notes: Optional[str],
    ) -> Dict[str, Any]:
        submission_id = submission.id
        clipper_id = submission.clipper_id
        earnings_cents = submission.earnings_cents
        if earnings_cents <= 0:
            raise SubmissionValidationError(f"Submission {submission_id} has no earnings")

        try:
            charged = await db.execute(
                update(Campaign)
                .where(
                    Campaign.id == submission.campaign_id,
                    Campaign.spent_cents + earnings_cents <= Campaign.budget_cents,
                )
                .values(spent_cents=Campaign.spent_cents + earnings_cents)
                .execution_options(synchronize_session=False)
            )
            if charged.rowcount == 0:
                raise BudgetExhaustedError(
                    f"Campaign budget cannot cover submission {submission_id}"
                )

            await ledger.ensure_wallet(db, clipper_id)
            await ledger.credit(
                db,
                clipper_id,
                earnings_cents,
                reference_type="submission",
                reference_id=str(submission_id),
                description="Clip earnings",
            )
            submission.status = SubmissionStatus.PAID.value
            submission.paid_at = utcnow()
            submission.payout_amount_cents = earnings_cents
            submission.admin_validated_by = admin_id
            if notes:
                submission.admin_notes = notes
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "submission_settled",
            submission_id=str(submission_id),
            clipper_id=str(clipper_id),
            earnings_cents=earnings_cents,
        )

        response: Dict[str, Any] = {
            "success": True,
            "paymentTriggered": False,
            "amount": from_cents(earnings_cents),
        }

        clipper = await self.get_user(db, clipper_id)
        if not clipper.stripe_account_id or from_cents(earnings_cents) < self.settings.min_payout_amount:
            logger.info(
                "submission_payout_deferred",
                submission_id=str(submission_id),
                has_stripe_account=bool(clipper.stripe_account_id),
            )
            return response

        try:
            withdrawal = await self.payout_service.request_withdrawal(
                db,
                clipper_id,
                from_cents(earnings_cents),
                source=WithdrawalSource.SUBMISSION_PAYOUT,
                submission_id=submission_id,
            )
            payout = await self.payout_service.process_withdrawal(db, withdrawal.id)
        except (PayoutError, ledger.LedgerError) as e:
            # Earnings stay in the wallet; the clipper can withdraw them later.
            logger.warning(
                "submission_payout_failed",
                submission_id=str(submission_id),
                error=str(e),
            )
            response["payoutError"] = str(e)
            return response

        response["paymentTriggered"] = True
        response["transferId"] = payout["transferId"]
        return response

    async def list_pending_for_admin(
        self, db: AsyncSession, admin_id: uuid.UUID
    ) -> List[Dict[str, Any]]:
        """Submissions awaiting an admin payment decision, oldest first."""
        await self._require_admin(db, admin_id)
        result = await db.execute(
            select(Submission, Campaign, User)
            .join(Campaign, Submission.campaign_id == Campaign.id)
            .join(User, Submission.clipper_id == User.id)
            .where(Submission.status.in_(AWAITING_PAYMENT_STATUSES))
            .order_by(Submission.created_at)
        )

        items = []
        for submission, campaign, clipper in result.all():
            items.append(
                {
                    "id": submission.id,
                    "campaign_id": campaign.id,
                    "campaign_title": campaign.title,
                    "clipper_id": clipper.id,
                    "clip_url": submission.clip_url,
                    "views": submission.views,
                    "status": submission.status,
                    "required_views": campaign.required_views,
                    "potential_earnings": compute_earnings(submission.views, campaign.cpm_rate),
                    "meets_requirement": meets_view_requirement(
                        submission.views, campaign.required_views
                    ),
                    "has_stripe_account": bool(clipper.stripe_account_id),
                }
            )
        return items
