"""
Banking system client for token-to-token transfers and card verification.

Every call is bounded by the configured timeout. The banking system is the
only place money moves, and a call that does not come back with an explicit
success is reported as a failure: timeouts, non-2xx responses and malformed
bodies all map to ``False`` / ``None``. Transfers are never retried here.
"""
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from biopay.config import Settings, get_settings
from biopay.monitoring.logging import mask_token
from biopay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TRANSFER_PATH = "/api/external/transfer"
VERIFY_CARD_PATH = "/api/external/verify-card"


@dataclass(frozen=True)
class TransferReceipt:
    """Outcome of a single transfer call."""

    success: bool
    reference: Optional[str] = None
    message: Optional[str] = None


class LedgerClient:
    """
    Async client for the external banking system.

    Args:
        settings: Optional settings, defaults to the cached application settings
        transport: Optional httpx transport (used by tests)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.banking_service_url,
            timeout=self.settings.banking_timeout_seconds,
            transport=transport,
        )

        logger.info(
            "ledger_client_initialized",
            base_url=self.settings.banking_service_url,
            timeout_seconds=self.settings.banking_timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def submit_transfer(
        self,
        sender_token: str,
        receiver_token: str,
        amount: Decimal,
        description: str = "Payment",
        leg: str = "principal",
    ) -> TransferReceipt:
        """
        Move ``amount`` from one settlement token to another.

        Args:
            sender_token: Token being debited
            receiver_token: Token being credited
            amount: Amount in major currency units
            description: Free-text description shown by the bank
            leg: Label for logs and metrics (principal, fee, ...)

        Returns:
            TransferReceipt: success flag plus the bank's reference when provided
        """
        payload = {
            "senderToken": sender_token,
            "receiverToken": receiver_token,
            "amount": float(amount),
            "description": description or "Payment",
        }
        log = logger.bind(
            leg=leg,
            sender=mask_token(sender_token),
            receiver=mask_token(receiver_token),
            amount=str(amount),
        )
        started = time.monotonic()

        try:
            response = await self._client.post(TRANSFER_PATH, json=payload)
            response.raise_for_status()
            body = self._parse_body(response)
        except httpx.TimeoutException:
            log.warning("ledger_transfer_timeout")
            metrics.record_transfer(leg, "timeout", time.monotonic() - started)
            return TransferReceipt(success=False, message="transfer timed out")
        except httpx.HTTPStatusError as e:
            log.warning("ledger_transfer_rejected", status_code=e.response.status_code)
            metrics.record_transfer(leg, "rejected", time.monotonic() - started)
            return TransferReceipt(success=False, message=f"HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            log.error("ledger_transfer_error", error=str(e))
            metrics.record_transfer(leg, "error", time.monotonic() - started)
            return TransferReceipt(success=False, message=str(e))

        if body is None or body.get("success") is not True:
            message = body.get("message") if body else "malformed response"
            log.warning("ledger_transfer_declined", message=message)
            metrics.record_transfer(leg, "declined", time.monotonic() - started)
            return TransferReceipt(success=False, message=message)

        reference = body.get("transactionId")
        log.info("ledger_transfer_succeeded", reference=reference)
        metrics.record_transfer(leg, "success", time.monotonic() - started)
        return TransferReceipt(
            success=True,
            reference=str(reference) if reference is not None else None,
            message=body.get("message"),
        )

    async def transfer(
        self,
        sender_token: str,
        receiver_token: str,
        amount: Decimal,
        description: str = "Payment",
    ) -> bool:
        """Move money between tokens, reporting only success or failure."""
        receipt = await self.submit_transfer(sender_token, receiver_token, amount, description)
        return receipt.success

    async def verify_card(self, card_number: str, cvv: str, expiry: str) -> Optional[str]:
        """
        Ask the bank to verify a card and issue a settlement token for it.

        Returns:
            Optional[str]: The issued token, or None when the card is refused
        """
        payload = {"cardNumber": card_number, "cvv": cvv, "expiry": expiry}

        try:
            response = await self._client.post(VERIFY_CARD_PATH, json=payload)
            response.raise_for_status()
            body = self._parse_body(response)
        except httpx.HTTPError as e:
            logger.warning("card_verification_error", card_last4=card_number[-4:], error=str(e))
            metrics.record_card_verification("error")
            return None

        token = body.get("paymentToken") if body else None
        if body is None or body.get("success") is not True or not token:
            logger.info("card_verification_refused", card_last4=card_number[-4:])
            metrics.record_card_verification("refused")
            return None

        logger.info("card_verified", card_last4=card_number[-4:], token=mask_token(token))
        metrics.record_card_verification("verified")
        return str(token)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Optional[Dict[str, Any]]:
        try:
            body = response.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None
