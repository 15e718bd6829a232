"""
Error responses for the HTTP adapter
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..exceptions import (
    WalletError, ValidationError, AuthError, PermissionDenied, NotFound, InsufficientFunds,
    InvalidPin, DuplicateReference, ExternalRailError, SignatureMismatch, LedgerIntegrityError
)
from ..logging_config import get_logger

logger = get_logger("banka.api")

# Most specific first
STATUS_CODES = [
    (PermissionDenied, 403),
    (AuthError, 401),
    (ValidationError, 400),
    (NotFound, 404),
    (InsufficientFunds, 400),
    (InvalidPin, 401),
    (DuplicateReference, 409),
    (ExternalRailError, 502),
    (SignatureMismatch, 400),
    (LedgerIntegrityError, 500),
]


def status_for(error: WalletError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message, "status": False})


async def wallet_error_handler(request: Request, exc: WalletError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return error_response(status_code, "Transaction failed, please contact support")
    if isinstance(exc, ExternalRailError):
        logger.warning(f"{request.method} {request.url.path} rail error: {exc}")
    return error_response(status_code, str(exc))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
        for error in exc.errors()
    )
    return error_response(400, problems or "Invalid request")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WalletError, wallet_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
