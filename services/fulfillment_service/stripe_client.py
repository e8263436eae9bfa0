"""
Stripe Connect API client for vendor payouts.

Provides async methods for:
- Creating transfers from the platform balance to a connected account
- Retrieving a connected account's payout capability
- Refunding part of a buyer's payment
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TransferResult:
    """Result of creating a transfer."""

    transfer_id: str
    amount: int  # in cents
    currency: str
    destination: str


@dataclass
class RefundResult:
    """Result of refunding a payment intent."""

    refund_id: str
    amount: int  # in cents
    status: str


@dataclass
class AccountStatus:
    """Payout capability of a connected account."""

    account_id: str
    payouts_enabled: bool
    charges_enabled: bool
    details_submitted: bool


class PayoutGatewayError(Exception):
    """Base exception for Stripe API errors."""

    def __init__(
        self, message: str, status_code: int = None, response_data: dict = None
    ):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(message)


class StripeConnectClient:
    """Async client for the Stripe Transfers and Accounts APIs.

    Transfers are not deduplicated here beyond the idempotency key the
    caller passes; one key per payout row.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        currency: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.base_url = (base_url or settings.STRIPE_API_BASE_URL).rstrip("/")
        self.currency = currency or settings.STRIPE_CURRENCY
        self._transport = transport

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict = None,
        idempotency_key: str = None,
    ) -> dict:
        """Make an async request to the Stripe API (form-encoded)."""
        if not self.secret_key:
            raise PayoutGatewayError("STRIPE_SECRET_KEY is not configured")

        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=30.0, transport=self._transport
            ) as client:
                response = await client.request(
                    method=method, url=endpoint, headers=headers, data=data
                )
        except httpx.HTTPError as exc:
            logger.error("Stripe request %s %s failed: %s", method, endpoint, exc)
            raise PayoutGatewayError(f"Stripe unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if not response.is_success:
            error = payload.get("error") or {}
            logger.error(
                "Stripe API error: %s - %s", response.status_code, error or payload
            )
            raise PayoutGatewayError(
                message=error.get("message", "Unknown Stripe error"),
                status_code=response.status_code,
                response_data=payload,
            )

        return payload

    # =========================================================================
    # Transfer Methods
    # =========================================================================

    async def create_transfer(
        self,
        amount_cents: int,
        destination_account_id: str,
        order_id: Optional[str],
        order_item_id: Optional[str] = None,
        pickup_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        """
        Move funds from the platform balance to a vendor's connected account.

        Args:
            amount_cents: Amount in cents, must be positive
            destination_account_id: Connected account (acct_...)
            order_id / order_item_id / pickup_id: Stored as transfer metadata
            idempotency_key: Sent as Idempotency-Key so a retried request
                with the same key cannot transfer twice

        Returns:
            TransferResult with the Stripe transfer id

        Raises:
            PayoutGatewayError: If Stripe rejects the transfer
        """
        if amount_cents <= 0:
            raise PayoutGatewayError("Transfer amount must be positive")

        form = {
            "amount": str(amount_cents),
            "currency": self.currency,
            "destination": destination_account_id,
        }
        if order_id:
            form["metadata[order_id]"] = str(order_id)
            form["transfer_group"] = f"order_{order_id}"
        if order_item_id:
            form["metadata[order_item_id]"] = str(order_item_id)
        if pickup_id:
            form["metadata[pickup_id]"] = str(pickup_id)

        data = await self._request(
            "POST", "/v1/transfers", data=form, idempotency_key=idempotency_key
        )

        return TransferResult(
            transfer_id=data.get("id", ""),
            amount=data.get("amount", amount_cents),
            currency=data.get("currency", self.currency),
            destination=data.get("destination", destination_account_id),
        )

    # =========================================================================
    # Refund Methods
    # =========================================================================

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: int,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """Refund ``amount_cents`` of a buyer's payment back to their card."""
        if amount_cents <= 0:
            raise PayoutGatewayError("Refund amount must be positive")

        data = await self._request(
            "POST",
            "/v1/refunds",
            data={"payment_intent": payment_intent_id, "amount": str(amount_cents)},
            idempotency_key=idempotency_key,
        )

        return RefundResult(
            refund_id=data.get("id", ""),
            amount=data.get("amount", amount_cents),
            status=data.get("status", ""),
        )

    # =========================================================================
    # Account Methods
    # =========================================================================

    async def retrieve_account(self, account_id: str) -> AccountStatus:
        """Fetch the live payout capability of a connected account."""
        data = await self._request("GET", f"/v1/accounts/{account_id}")

        return AccountStatus(
            account_id=data.get("id", account_id),
            payouts_enabled=bool(data.get("payouts_enabled")),
            charges_enabled=bool(data.get("charges_enabled")),
            details_submitted=bool(data.get("details_submitted")),
        )


def get_payout_gateway() -> StripeConnectClient:
    """Get a StripeConnectClient instance."""
    return StripeConnectClient()
