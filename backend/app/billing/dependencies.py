"""Billing dependencies — gateway access and the cron shared-secret guard."""

import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from app.billing.midtrans_client import PaymentGateway
from app.config import settings

logger = logging.getLogger(__name__)


def get_gateway(request: Request) -> PaymentGateway:
    """Return the payment gateway constructed in the application lifespan."""
    return request.app.state.gateway


async def require_internal_access(
    x_internal_access: str | None = Header(default=None, alias="X-Internal-Access"),
) -> None:
    """Raise 401 unless the request carries the configured cron token."""
    expected = settings.internal_cron_token
    if not expected or not x_internal_access or not hmac.compare_digest(x_internal_access, expected):
        logger.warning("Rejected sweep call with missing or invalid X-Internal-Access header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
