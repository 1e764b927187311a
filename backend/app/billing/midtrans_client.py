"""Async Midtrans API wrapper — the payment gateway adapter.

The rest of the service only talks to :class:`PaymentGateway`; Midtrans
(Snap hosted checkout + Core API) is the concrete provider.
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from app.billing.exceptions import GatewayError
from app.models.subscription_enums import TransactionStatus

logger = logging.getLogger(__name__)

# Provider status -> internal status. Anything unknown stays PENDING.
STATUS_MAP: dict[str, TransactionStatus] = {
    "capture": TransactionStatus.PAID,
    "settlement": TransactionStatus.PAID,
    "pending": TransactionStatus.PENDING,
    "deny": TransactionStatus.CANCELLED,
    "cancel": TransactionStatus.CANCELLED,
    "expire": TransactionStatus.EXPIRED,
    "failure": TransactionStatus.FAILED,
}


def map_status(provider_status: str | None) -> TransactionStatus:
    """Map a Midtrans ``transaction_status`` to our transaction status."""
    return STATUS_MAP.get((provider_status or "").lower(), TransactionStatus.PENDING)


def generate_order_id(prefix: str = "ORDER") -> str:
    """Unique gateway order id, e.g. ``PLAN_UPGRADE-1718000000000-3F9A2C``."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def notification_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """SHA-512 of ``order_id + status_code + gross_amount + server_key``."""
    payload = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CheckoutCustomer:
    email: str
    first_name: str
    last_name: str = ""

    @classmethod
    def from_name(cls, name: str | None, email: str) -> "CheckoutCustomer":
        parts = (name or "").split()
        return cls(
            email=email,
            first_name=parts[0] if parts else "Customer",
            last_name=" ".join(parts[1:]),
        )


@dataclass(frozen=True)
class CheckoutItem:
    id: str
    price: int
    name: str
    category: str
    quantity: int = 1


@dataclass(frozen=True)
class CheckoutRequest:
    """Everything Snap needs to open a hosted checkout page."""

    order_id: str
    amount: int  # whole currency units
    currency: str
    customer: CheckoutCustomer
    items: list[CheckoutItem]
    callback_base_url: str
    expiry_unit: str = "minute"  # second, minute, hour, day
    expiry_duration: int = 30
    custom_fields: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class GatewayTransactionStatus:
    """Result of a status poll."""

    order_id: str
    transaction_status: str
    status_code: str
    payment_type: str | None = None
    gross_amount: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def mapped(self) -> TransactionStatus:
        return map_status(self.transaction_status)


class PaymentGateway(Protocol):
    """Capabilities the billing core needs from a hosted-checkout provider."""

    async def create_checkout_token(self, request: CheckoutRequest) -> str: ...

    async def get_transaction_status(self, order_id: str) -> GatewayTransactionStatus: ...

    async def cancel_transaction(self, order_id: str) -> None: ...

    def verify_notification_signature(self, notification: dict[str, Any]) -> bool: ...

    def map_status(self, provider_status: str | None) -> TransactionStatus: ...


def _start_time(now: float | None = None) -> str:
    """Midtrans expects ``yyyy-MM-dd HH:mm:ss Z``."""
    return time.strftime("%Y-%m-%d %H:%M:%S +0000", time.gmtime(now))


class MidtransGateway:
    """Midtrans Snap + Core API client with a bounded timeout.

    Calls are never retried here: Snap does not guarantee idempotent token
    creation, so a failed checkout is re-initiated with a new order id.
    """

    def __init__(
        self,
        server_key: str,
        snap_url: str,
        core_url: str,
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._server_key = server_key
        self._snap_url = snap_url.rstrip("/")
        self._core_url = core_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def _headers(self) -> dict[str, str]:
        auth = base64.b64encode(f"{self._server_key}:".encode()).decode()
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Basic {auth}",
        }

    async def _request(self, method: str, url: str, action: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, headers=self._headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("Midtrans %s timed out", action)
            raise GatewayError(f"Payment gateway timed out during {action}") from e
        except httpx.HTTPError as e:
            logger.error("Midtrans %s failed: %s", action, e)
            raise GatewayError(f"Payment gateway unreachable during {action}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            messages = body.get("error_messages") or [body.get("status_message") or response.text]
            logger.error("Midtrans %s rejected (%s): %s", action, response.status_code, messages)
            raise GatewayError(
                f"Payment gateway rejected {action}",
                context={"gateway_status": response.status_code, "messages": messages},
            )
        return body

    async def create_checkout_token(self, request: CheckoutRequest) -> str:
        """Create a Snap token for ``request`` (raises :class:`GatewayError`)."""
        payload: dict[str, Any] = {
            "transaction_details": {"order_id": request.order_id, "gross_amount": request.amount},
            "customer_details": {
                "first_name": request.customer.first_name,
                "last_name": request.customer.last_name,
                "email": request.customer.email,
            },
            "item_details": [
                {
                    "id": item.id,
                    "price": item.price,
                    "quantity": item.quantity,
                    "name": item.name[:50],
                    "category": item.category,
                }
                for item in request.items
            ],
            "credit_card": {"secure": True},
            "callbacks": {
                "finish": f"{request.callback_base_url}/success?order_id={request.order_id}",
                "error": f"{request.callback_base_url}/error?order_id={request.order_id}",
                "pending": f"{request.callback_base_url}/pending?order_id={request.order_id}",
            },
            "expiry": {
                "start_time": _start_time(),
                "unit": request.expiry_unit,
                "duration": request.expiry_duration,
            },
        }
        for index, value in enumerate(request.custom_fields[:3], start=1):
            payload[f"custom_field{index}"] = value

        logger.info("Creating Snap token for order %s (%s %s)", request.order_id, request.amount, request.currency)
        body = await self._request("POST", f"{self._snap_url}/transactions", "checkout", json=payload)
        token = body.get("token")
        if not token:
            raise GatewayError("Payment gateway returned no checkout token")
        return token

    async def get_transaction_status(self, order_id: str) -> GatewayTransactionStatus:
        """Poll the Core API for the live status of ``order_id``."""
        body = await self._request("GET", f"{self._core_url}/{order_id}/status", "status check")
        return GatewayTransactionStatus(
            order_id=order_id,
            # Core API answers 200 with status_code "404" for unknown orders
            transaction_status=body.get("transaction_status") or "not_found",
            status_code=str(body.get("status_code", "")),
            payment_type=body.get("payment_type"),
            gross_amount=body.get("gross_amount"),
            raw=body,
        )

    async def cancel_transaction(self, order_id: str) -> None:
        """Cancel an unpaid order so its checkout page stops accepting payment."""
        await self._request("POST", f"{self._core_url}/{order_id}/cancel", "cancellation")
        logger.info("Cancelled Midtrans order %s", order_id)

    def verify_notification_signature(self, notification: dict[str, Any]) -> bool:
        """Check ``signature_key`` of an inbound HTTP notification."""
        signature = notification.get("signature_key")
        if not isinstance(signature, str):
            return False
        expected = notification_signature(
            str(notification.get("order_id", "")),
            str(notification.get("status_code", "")),
            str(notification.get("gross_amount", "")),
            self._server_key,
        )
        return hmac.compare_digest(expected, signature)

    def map_status(self, provider_status: str | None) -> TransactionStatus:
        return map_status(provider_status)

    async def aclose(self) -> None:
        await self._client.aclose()
