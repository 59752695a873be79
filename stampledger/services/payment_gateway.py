"""
Payment Gateway - Read access to the gateway's payment API (polling path).

NO DICTIONARIES - Gateway answers are parsed into frozen dataclasses.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx
from structlog import get_logger

from stampledger.exceptions import PaymentGatewayError

logger = get_logger(__name__)

# Gateway payment statuses that mean the money arrived
CONFIRMED_STATUSES = frozenset({"CONFIRMED", "RECEIVED", "RECEIVED_IN_CASH"})


@dataclass(frozen=True)
class GatewayPaymentStatus:
    """A payment as the gateway currently reports it."""

    payment_id: str
    status: str
    value: Decimal
    external_reference: str | None = None
    subscription_id: str | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.status in CONFIRMED_STATUSES


class PaymentGateway(Protocol):
    """
    Payment gateway protocol.

    The polling path only needs to ask for the current state of a payment.
    """

    async def get_payment(self, payment_id: str) -> GatewayPaymentStatus:
        """
        Fetch a payment's current status.

        Raises:
            PaymentGatewayError: If the gateway call fails
        """
        ...


class GatewayClient:
    """HTTP client for the gateway's REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = httpx.Timeout(timeout_seconds)
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def get_payment(self, payment_id: str) -> GatewayPaymentStatus:
        """GET {base}/payments/{id} with the access_token header."""
        if not self.api_key:
            raise PaymentGatewayError("Gateway API key not configured")

        url = f"{self.base_url}/payments/{payment_id}"
        try:
            response = await self.http_client.get(
                url, headers={"access_token": self.api_key}, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            logger.warning("gateway_timeout", payment_id=payment_id)
            raise PaymentGatewayError(f"Timed out fetching payment {payment_id}") from e
        except httpx.HTTPError as e:
            logger.error("gateway_request_failed", payment_id=payment_id, error=str(e))
            raise PaymentGatewayError(f"Request failed: {e}") from e

        if response.status_code == 401:
            raise PaymentGatewayError("Invalid API credentials", status_code=401)
        elif response.status_code == 404:
            raise PaymentGatewayError(f"Payment not found: {payment_id}", status_code=404)
        elif response.status_code >= 400:
            logger.error(
                "gateway_api_error",
                status=response.status_code,
                error=response.text,
            )
            raise PaymentGatewayError(
                f"API error: {response.status_code}", status_code=response.status_code
            )

        try:
            body = response.json()
            return GatewayPaymentStatus(
                payment_id=str(body.get("id") or payment_id),
                status=str(body["status"]),
                value=Decimal(str(body.get("value", "0"))),
                external_reference=body.get("externalReference"),
                subscription_id=body.get("subscription"),
            )
        except (ValueError, KeyError, TypeError, AttributeError, InvalidOperation) as e:
            raise PaymentGatewayError(f"Unreadable payment response: {e}") from e

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
