"""
Global exception handlers

CardLedgerError -> its own status and {"error": {"code", "message"}}
RequestValidationError -> 400 with field details
Anything else -> opaque 500
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..errors import CardLedgerError, EncryptionError


logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Register all global error handlers on the FastAPI app"""

    @app.exception_handler(CardLedgerError)
    async def card_ledger_error_handler(request: Request, exc: CardLedgerError):
        if isinstance(exc, EncryptionError):
            logger.error(f"Encryption failure on {request.url.path}: {exc.message}")
            # Do not describe key or ciphertext problems to callers
            return JSONResponse(
                status_code=exc.http_status,
                content={"error": {"code": exc.code, "message": "Stored card data cannot be read"}},
            )
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Invalid request data",
                    "details": [
                        {
                            "field": ".".join(str(loc) for loc in e["loc"]),
                            "message": e["msg"],
                        }
                        for e in exc.errors()
                    ],
                }
            },
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}},
        )
