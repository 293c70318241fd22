"""
HTTP client for the payment gateway.

The gateway accepts a checkout request and later reports the outcome
through POST /payments/callback.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from counselbot.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class PaymentInitiation:
    """Result of asking the gateway to start a payment."""

    status: str  # "pending" or "failed"
    checkout_id: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


class PaymentClient:
    """
    HTTP client for the payment gateway API.

    Exposes:
    - POST /api/payments - Start a payment (mobile money push or bank checkout)
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.base_url = base_url or settings.payment_gateway_url
        self.api_key = settings.payment_api_key
        self.timeout = timeout if timeout is not None else settings.payment_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def initiate(
        self,
        reference: str,
        amount_cents: int,
        method: str,
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> PaymentInitiation:
        """Start a payment for an appointment or order.

        Args:
            reference: Appointment code or order reference
            amount_cents: Amount to charge
            method: "mpesa" or "bank"
            phone: Payer phone for mobile money
            email: Payer email for bank checkout

        Returns:
            PaymentInitiation with status "pending" or "failed"
        """
        client = await self._get_client()

        payload: dict = {
            "reference": reference,
            "amount_cents": amount_cents,
            "method": method,
        }
        if phone:
            payload["phone"] = phone
        if email:
            payload["email"] = email

        try:
            response = await client.post("/api/payments", json=payload)
            data = response.json()

            if response.status_code in (200, 201, 202):
                return PaymentInitiation(
                    status="pending",
                    checkout_id=data.get("checkout_id", data.get("id")),
                    message=data.get("message"),
                )
            return PaymentInitiation(
                status="failed",
                message=data.get("message", data.get("error", "Payment could not be started")),
            )

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to initiate payment for {reference}: {e}")
            return PaymentInitiation(
                status="failed",
                message="Unable to reach the payment provider",
            )


# Singleton
_client: Optional[PaymentClient] = None


def get_payment_client() -> PaymentClient:
    """Get singleton PaymentClient."""
    global _client
    if _client is None:
        _client = PaymentClient()
    return _client
