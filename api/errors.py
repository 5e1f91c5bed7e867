"""Mapping of domain exceptions onto the {success: false, error} envelope."""
from typing import Dict, Type

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.connect import ConnectAccountMissingError, ConnectError, ConnectUserNotFoundError
from core.deposits import DepositError, DepositUserNotFoundError, DepositValidationError
from core.ledger import (
    DuplicateLedgerEntryError,
    InsufficientFundsError,
    LedgerError,
    WalletNotFoundError,
)
from core.money import AmountError
from core.payouts import (
    PayoutAccountMissingError,
    PayoutError,
    PayoutTransferError,
    PayoutUserNotFoundError,
    PayoutValidationError,
    WithdrawalNotFoundError,
    WithdrawalStateError,
)
from core.reconciliation import ReconciliationError
from core.submissions import (
    DuplicateUserError,
    NotAuthorizedError,
    SubmissionError,
    SubmissionNotFoundError,
    SubmissionStateError,
    SubmissionValidationError,
)
from integrations.stripe_client import StripeError

logger = structlog.get_logger(__name__)

STRIPE_FAILURE_MESSAGE = "Payment provider request failed, please retry later"

# Starlette resolves handlers along the exception's MRO, so subclasses listed
# here win over their bases.
ERROR_STATUS: Dict[Type[Exception], int] = {
    AmountError: status.HTTP_400_BAD_REQUEST,
    LedgerError: status.HTTP_400_BAD_REQUEST,
    DepositError: status.HTTP_400_BAD_REQUEST,
    DepositValidationError: status.HTTP_400_BAD_REQUEST,
    ConnectError: status.HTTP_400_BAD_REQUEST,
    ConnectAccountMissingError: status.HTTP_400_BAD_REQUEST,
    PayoutError: status.HTTP_400_BAD_REQUEST,
    PayoutValidationError: status.HTTP_400_BAD_REQUEST,
    PayoutAccountMissingError: status.HTTP_400_BAD_REQUEST,
    SubmissionError: status.HTTP_400_BAD_REQUEST,
    SubmissionValidationError: status.HTTP_400_BAD_REQUEST,
    NotAuthorizedError: status.HTTP_403_FORBIDDEN,
    WalletNotFoundError: status.HTTP_404_NOT_FOUND,
    DepositUserNotFoundError: status.HTTP_404_NOT_FOUND,
    ConnectUserNotFoundError: status.HTTP_404_NOT_FOUND,
    PayoutUserNotFoundError: status.HTTP_404_NOT_FOUND,
    WithdrawalNotFoundError: status.HTTP_404_NOT_FOUND,
    SubmissionNotFoundError: status.HTTP_404_NOT_FOUND,
    InsufficientFundsError: status.HTTP_409_CONFLICT,
    DuplicateLedgerEntryError: status.HTTP_409_CONFLICT,
    WithdrawalStateError: status.HTTP_409_CONFLICT,
    SubmissionStateError: status.HTTP_409_CONFLICT,
    DuplicateUserError: status.HTTP_409_CONFLICT,
    StripeError: status.HTTP_502_BAD_GATEWAY,
    PayoutTransferError: status.HTTP_502_BAD_GATEWAY,
    ReconciliationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Translate a domain exception into its status code."""
    status_code = next(
        (ERROR_STATUS[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    # Provider messages can leak account details; clients get a generic one.
    if isinstance(exc, StripeError):
        message = STRIPE_FAILURE_MESSAGE
    elif isinstance(exc, PayoutTransferError) and not exc.retryable:
        message = STRIPE_FAILURE_MESSAGE
    else:
        message = str(exc)

    log = logger.warning if status_code < 500 else logger.error
    log(
        "api_request_rejected",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return error_response(status_code, message)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are client errors: 400 in the common envelope."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    logger.warning("api_request_invalid", path=request.url.path, errors=len(errors))
    return error_response(
        status.HTTP_400_BAD_REQUEST, f"{location}: {message}" if location else message
    )


def register_error_handlers(app: FastAPI) -> None:
    for exc_class in ERROR_STATUS:
        app.add_exception_handler(exc_class, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
