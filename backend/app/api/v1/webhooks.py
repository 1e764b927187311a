"""Midtrans notification endpoint — receives and applies payment status pushes."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import get_database, get_gateway
from app.billing.exceptions import BillingError
from app.billing.midtrans_client import PaymentGateway
from app.billing.webhooks import handle_notification
from app.database import Database

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/midtrans")
async def midtrans_webhook(
    request: Request,
    database: Database = Depends(get_database),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict[str, str]:
    """Receive and process a Midtrans HTTP notification."""
    # 1. Parse the raw body (no auth context; the signature is the credential)
    try:
        notification = json.loads(await request.body())
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e
    if not isinstance(notification, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        )

    # 2. Verify, look up and apply in one transaction
    try:
        async with database.session() as db:
            await handle_notification(db, gateway, notification)
    except BillingError:
        raise
    except Exception as e:
        logger.exception("Error processing notification for order %s", notification.get("order_id"))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return {"status": "success"}
