"""
Audit relay client with retry logic.

Implements:
- Settlement records on the append-only relay (blockchain relay)
- Exponential backoff with a bounded number of attempts
- Conflict responses treated as "already recorded"
- Fire-and-forget recording through the audit dispatcher
- Health and statistics probes
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from biopay.config import Settings, get_settings
from biopay.monitoring.metrics import metrics
from biopay.workers.audit_worker import AuditDispatcher

logger = structlog.get_logger(__name__)

PLATFORM_PARTY = "platform"


class AuditRelayError(Exception):
    """Raised when the relay does not accept a record."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409


class AuditReceipt(BaseModel):
    """Result of recording one settlement on the relay."""

    tx_id: str = Field(..., description="Off-chain transaction id")
    tx_hash: Optional[str] = Field(default=None, description="On-chain transaction hash")
    block_number: Optional[int] = Field(default=None, description="Block containing the record")
    already_recorded: bool = Field(
        default=False, description="Relay reported the record already exists"
    )


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether a failed record attempt should be retried.

    Conflicts mean the relay already holds the record; everything else the
    relay reports is treated as transient.
    """
    if isinstance(error, AuditRelayError):
        return not error.is_conflict
    return False


def backoff_seconds(attempt_number: int, base_delay: float = 2.0) -> float:
    """Delay after the given failed attempt: base, 2 * base, 4 * base, ..."""
    return base_delay * (2 ** (attempt_number - 1))


class wait_relay_backoff(wait_base):
    """Tenacity wait strategy driven by :func:`backoff_seconds`."""

    def __init__(self, base_delay: float) -> None:
        self.base_delay = base_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        return backoff_seconds(retry_state.attempt_number, self.base_delay)


def party_id(kind: str, account_id: str) -> str:
    """Render an account as a relay party, e.g. ``user_42`` or ``merchant_7``."""
    return f"{kind.lower()}_{account_id}"


class AuditRelayClient:
    """
    Client for the audit relay.

    ``record`` is the awaitable primitive; ``record_async`` hands the same
    work to the dispatcher and returns immediately.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        dispatcher: Optional[AuditDispatcher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher or AuditDispatcher(settings=self.settings)
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.settings.audit_relay_url,
            timeout=self.settings.audit_request_timeout_seconds,
            transport=transport,
        )

        logger.info(
            "audit_relay_client_initialized",
            relay_url=self.settings.audit_relay_url,
            enabled=self.settings.audit_enabled,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _post_record(self, payload: Dict[str, Any]) -> AuditReceipt:
        metrics.record_audit_attempt()
        try:
            response = await self._client.post("/record-transaction", json=payload)
        except httpx.HTTPError as e:
            raise AuditRelayError(f"Audit relay unreachable: {e}") from e

        if response.status_code >= 400:
            raise AuditRelayError(
                f"Audit relay returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise AuditRelayError("Audit relay returned a malformed body") from e

        data = body.get("data") if isinstance(body, dict) else None
        data = data or {}
        return AuditReceipt(
            tx_id=payload["txIdOffchain"],
            tx_hash=data.get("blockchainTxHash"),
            block_number=data.get("blockNumber"),
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "audit_record_retrying",
            attempt=retry_state.attempt_number,
            next_delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
        )

    async def record(
        self,
        tx_id: str,
        amount_minor_units: int,
        from_id: str,
        to_id: str,
        timestamp: Optional[int] = None,
    ) -> AuditReceipt:
        """
        Record a settlement on the relay, retrying transient failures.

        Args:
            tx_id: Off-chain transaction id
            amount_minor_units: Amount in minor currency units (cents)
            from_id: Debited party, e.g. ``user_42``
            to_id: Credited party, e.g. ``merchant_7``
            timestamp: Epoch seconds, defaults to now

        Returns:
            AuditReceipt: Relay receipt, ``already_recorded`` on a conflict

        Raises:
            AuditRelayError: When every attempt failed
        """
        payload = {
            "txIdOffchain": tx_id,
            "amount": amount_minor_units,
            "timestamp": timestamp if timestamp is not None else int(time.time()),
            "fromId": from_id,
            "toId": to_id,
        }

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.audit_retry_max_attempts),
            wait=wait_relay_backoff(self.settings.audit_retry_base_delay),
            retry=retry_if_exception(is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._post_record(payload)
        except AuditRelayError as e:
            if e.is_conflict:
                return AuditReceipt(tx_id=tx_id, already_recorded=True)
            raise

        raise AuditRelayError("Audit relay retry loop ended without a result")

    async def _record_and_log(
        self, tx_id: str, amount_minor_units: int, from_id: str, to_id: str
    ) -> None:
        try:
            receipt = await self.record(tx_id, amount_minor_units, from_id, to_id)
        except AuditRelayError as e:
            logger.error(
                "audit_record_failed",
                tx_id=tx_id,
                attempts=self.settings.audit_retry_max_attempts,
                status_code=e.status_code,
                error=str(e),
            )
            metrics.record_audit_outcome("failed")
            return

        if receipt.already_recorded:
            logger.info("audit_record_already_present", tx_id=tx_id)
            metrics.record_audit_outcome("already_recorded")
        else:
            logger.info(
                "audit_record_succeeded",
                tx_id=tx_id,
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
            )
            metrics.record_audit_outcome("recorded")

    def record_async(
        self, tx_id: str, amount_minor_units: int, from_id: str, to_id: str
    ) -> bool:
        """
        Fire-and-forget record. Outcomes are logged, never returned.

        Returns:
            bool: Whether the job was queued
        """
        if not self.settings.audit_enabled:
            logger.info("audit_record_skipped_disabled", tx_id=tx_id)
            metrics.record_audit_outcome("skipped")
            return False

        return self.dispatcher.submit(
            lambda: self._record_and_log(tx_id, amount_minor_units, from_id, to_id),
            job_name=f"audit:{tx_id}",
        )

    async def is_healthy(self) -> bool:
        """Check whether the relay reports ``status: ok``."""
        try:
            response = await self._client.get(
                "/health", timeout=self.settings.audit_health_timeout_seconds
            )
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("audit_relay_health_check_failed", error=str(e))
            return False

        return response.status_code == 200 and isinstance(body, dict) and body.get("status") == "ok"

    async def get_stats(self) -> Optional[Dict[str, Any]]:
        """Fetch the relay's statistics blob, or None when unavailable."""
        try:
            response = await self._client.get(
                "/stats", timeout=self.settings.audit_stats_timeout_seconds
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("audit_relay_stats_failed", error=str(e))
            return None
