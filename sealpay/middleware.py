"""
SealPay SDK - Layer 402 Middleware
Maps SealPay errors to HTTP responses, with a 402 Payment Required
body that tells the client how to pay.
"""

import logging
from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import (
    AuthenticationError,
    ExternalBackendError,
    IntegrityError,
    PaymentRequiredError,
    SealPayError,
)

logger = logging.getLogger("sealpay.middleware")


class Layer402Middleware(BaseHTTPMiddleware):
    """
    FastAPI middleware that turns SealPay exceptions into JSON responses.

    Example:
        app.add_middleware(Layer402Middleware)
    """

    PAYMENT_INSTRUCTIONS = [
        "POST /pay/{content_id} to open a payment intent",
        "Settle the intent with the returned payment request",
        "Poll GET /pay/{content_id}/status until payment_state is 'paid'",
        "Retry GET /keys/{content_id}",
    ]

    async def dispatch(self, request: Request, call_next: Callable):
        try:
            return await call_next(request)

        except PaymentRequiredError as e:
            body = e.to_dict()
            body["instructions"] = [
                step.replace("{content_id}", e.content_id) for step in self.PAYMENT_INSTRUCTIONS
            ]
            return JSONResponse(status_code=e.status_code, content=body)

        except (AuthenticationError, IntegrityError) as e:
            logger.error(f"{request.method} {request.url.path}: {e.code} - {e.message}")
            return JSONResponse(
                status_code=e.status_code,
                content={"error": e.code, "message": "Stored content failed verification."}
            )

        except ExternalBackendError as e:
            logger.warning(f"{request.method} {request.url.path}: backend unavailable - {e.message}")
            body = e.to_dict()
            body["retryable"] = e.retryable
            headers = {"Retry-After": "5"} if e.retryable else None
            return JSONResponse(status_code=e.status_code, content=body, headers=headers)

        except SealPayError as e:
            return JSONResponse(status_code=e.status_code, content=e.to_dict())

        except Exception as e:
            logger.error(f"Middleware error: {e}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"error": "internal_error", "message": "Internal processing error."}
            )
