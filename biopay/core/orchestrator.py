"""
Payment orchestrator for biometric payments.

Drives a transaction through its lifecycle:
1. initiate: merchant reserves a PENDING transaction, payer unknown
2. verify_and_charge: identify the payer from a face sample, move the
   money, split off the platform fee, complete, then audit
3. refund: compensating transfers for a COMPLETED transaction

The banking system, the biometric service and the audit relay are
independent and non-transactional. The local transaction row is the source
of truth, and it is committed at each point where an external side effect
is about to happen or has just happened:
- PROCESSING is committed before any money moves
- COMPLETED is committed before any audit record is dispatched
- a failed principal transfer ends the transaction as FAILED and is
  returned as a normal result
- fee leg failures are recorded and never change the outcome

Rows are version-checked on write. A checkpoint that finds the row changed
by another session (an expiry sweep, a second worker) rolls back and raises
InvalidStateError instead of overwriting the newer state.
"""
import time
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional, Set

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from biopay.config import Settings, get_settings
from biopay.core.accounts import AccountDirectory, AccountRef, SqlAccountDirectory
from biopay.core.fees import (
    BestEffortLegResult,
    CriticalLegResult,
    FeeSplit,
    LegStatus,
    fee_description,
    split_fee,
    to_minor_units,
    to_money,
)
from biopay.core.schemas import ChargeResult, InitiateResult, RefundResult, TransactionView
from biopay.core.token_store import PaymentTokenStore
from biopay.core.transaction_ledger import TransactionLedger
from biopay.database.models import Account, AccountKind, Transaction, TransactionStatus, utcnow
from biopay.exceptions import (
    IdentificationFailedError,
    InvalidStateError,
    NotReadyError,
    PaymentError,
    PaymentProcessingError,
    PaymentValidationError,
    TokenNotFoundError,
)
from biopay.integrations.audit_relay_client import PLATFORM_PARTY, AuditRelayClient, party_id
from biopay.integrations.identity_client import IdentityClient, IdentityGatewayError
from biopay.integrations.ledger_client import LedgerClient
from biopay.monitoring.logging import mask_token, transaction_context
from biopay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

REASON_NOT_IDENTIFIED = "payer not identified - no matching face found"
REASON_NO_FUNDING = "payer has not linked a payment card"
REASON_NO_FACE = "payer has not enrolled a face profile"
REASON_UNKNOWN_PAYER = "identified payer account not found"
REASON_MISSING_TOKEN = "missing payment token"
REASON_TRANSFER_DECLINED = "transfer declined - payment from payer to merchant failed"
REASON_EXPIRED = "verification window expired"


class PaymentOrchestrator:
    """
    Biometric payment orchestrator.

    All collaborators are injectable; by default they are built from the
    application settings.
    """

    def __init__(
        self,
        ledger_client: Optional[LedgerClient] = None,
        identity_client: Optional[IdentityClient] = None,
        audit_client: Optional[AuditRelayClient] = None,
        token_store: Optional[PaymentTokenStore] = None,
        accounts: Optional[AccountDirectory] = None,
        transactions: Optional[TransactionLedger] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment orchestrator.

        Args:
            ledger_client: Banking system client
            identity_client: Biometric service client
            audit_client: Audit relay client
            token_store: Settlement token store
            accounts: Account directory
            transactions: Transaction ledger
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self.ledger_client = ledger_client or LedgerClient(self.settings)
        self.identity_client = identity_client or IdentityClient(self.settings)
        self.audit_client = audit_client or AuditRelayClient(self.settings)
        self.accounts = accounts or SqlAccountDirectory()
        self.token_store = token_store or PaymentTokenStore(
            accounts=self.accounts, ledger_client=self.ledger_client
        )
        self.transactions = transactions or TransactionLedger()
        self._in_flight: Set[str] = set()

        logger.info(
            "payment_orchestrator_initialized",
            platform_fee_rate=str(self.settings.platform_fee_rate),
            audit_enabled=self.settings.audit_enabled,
        )

    @contextmanager
    def _claim(self, transaction_id: str) -> Iterator[None]:
        """Refuse a second concurrent operation on the same transaction in this process."""
        if transaction_id in self._in_flight:
            raise InvalidStateError(f"Transaction {transaction_id} is already being processed")
        self._in_flight.add(transaction_id)
        try:
            yield
        finally:
            self._in_flight.discard(transaction_id)

    def _validate_payment_request(self, payee_id: str, amount: Decimal, currency: str) -> Decimal:
        if not payee_id:
            raise PaymentValidationError("Payee ID is required")

        try:
            value = to_money(amount)
        except ArithmeticError as e:
            raise PaymentValidationError(f"Invalid amount: {amount}") from e
        if value <= 0:
            raise PaymentValidationError("Amount must be positive")

        if len(currency) != 3 or not currency.isalpha():
            raise PaymentValidationError("Currency must be 3-letter code")
        return value

    async def _record(
        self,
        db: AsyncSession,
        transaction: Transaction,
        event_type: str,
        correlation_id: str,
        **event_data: Any,
    ) -> None:
        data: Dict[str, Any] = {"status": transaction.status}
        data.update({key: str(value) if isinstance(value, Decimal) else value
                     for key, value in event_data.items()})
        await self.transactions.record_event(
            db=db,
            transaction_id=transaction.transaction_id,
            event_type=event_type,
            event_data=data,
            correlation_id=correlation_id,
        )

    async def _checkpoint(self, db: AsyncSession, transaction_id: str) -> None:
        """
        Commit the pending transaction changes.

        Raises:
            InvalidStateError: If another session changed the row since it was read
        """
        try:
            await db.commit()
        except StaleDataError as e:
            # Objects are expired after the rollback; only the id is used below
            await db.rollback()
            logger.warning("transaction_changed_concurrently", transaction_id=transaction_id)
            raise InvalidStateError(
                f"Transaction {transaction_id} was changed by another operation"
            ) from e

    async def _fail(
        self,
        db: AsyncSession,
        transaction: Transaction,
        reason: str,
        correlation_id: str,
    ) -> None:
        transaction_id = transaction.transaction_id
        transaction.transition_to(TransactionStatus.FAILED, reason)
        await self._record(db, transaction, "transaction.failed", correlation_id, reason=reason)
        await self._checkpoint(db, transaction_id)

        logger.warning("transaction_failed", transaction_id=transaction_id, reason=reason)

    async def initiate(
        self,
        payee_id: str,
        amount: Decimal,
        db: AsyncSession,
        currency: Optional[str] = None,
        description: Optional[str] = None,
    ) -> InitiateResult:
        """
        Reserve a PENDING transaction for a merchant. No money moves.

        Args:
            payee_id: Merchant account id
            amount: Amount in major currency units
            db: Database session
            currency: Currency code, defaults to the configured currency
            description: Optional description passed on to the bank

        Returns:
            InitiateResult: The new transaction id and status

        Raises:
            PaymentValidationError: If amount or currency are invalid
            NotReadyError: If the merchant is unknown or not funding ready
        """
        started = time.monotonic()
        currency = (currency or self.settings.default_currency).upper()

        with transaction_context() as correlation_id:
            value = self._validate_payment_request(payee_id, amount, currency)

            merchant = await self.accounts.get(AccountRef.merchant(payee_id), db)
            if merchant is None or not merchant.funding_ready:
                metrics.record_operation("initiate", "not_ready", time.monotonic() - started)
                raise NotReadyError(
                    f"Merchant {payee_id} must link a payment card before accepting payments"
                )

            transaction = await self.transactions.create(
                payee_id=payee_id,
                amount=value,
                currency=currency,
                db=db,
                description=description,
            )
            await self._record(
                db, transaction, "transaction.initiated", correlation_id,
                payee_id=payee_id, amount=value, currency=currency,
            )
            await db.commit()

            logger.info(
                "payment_initiated",
                transaction_id=transaction.transaction_id,
                payee_id=payee_id,
                amount=str(value),
                currency=currency,
            )
            metrics.record_operation("initiate", transaction.status, time.monotonic() - started)

            return InitiateResult(
                transaction_id=transaction.transaction_id,
                status=transaction.status,
                payee_id=payee_id,
                amount=transaction.amount,
                currency=transaction.currency,
            )

    @staticmethod
    def _readiness_failure(payer: Optional[Account]) -> Optional[str]:
        if payer is None:
            return REASON_UNKNOWN_PAYER
        if not payer.funding_ready:
            return REASON_NO_FUNDING
        if not payer.face_enrolled:
            return REASON_NO_FACE
        return None

    async def verify_and_charge(
        self, transaction_id: str, biometric_sample: str, db: AsyncSession
    ) -> ChargeResult:
        """
        Identify the payer and settle a PENDING transaction.

        A declined or timed-out principal transfer is an expected outcome:
        the transaction ends FAILED and the result says so, no exception.

        Args:
            transaction_id: Transaction ID returned by ``initiate``
            biometric_sample: Base64-encoded face image
            db: Database session

        Returns:
            ChargeResult: COMPLETED or FAILED outcome

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            InvalidStateError: If the transaction is not PENDING
            IdentificationFailedError: If no enrolled face matches
            NotReadyError: If the payer cannot pay
            PaymentProcessingError: If settlement cannot proceed
        """
        started = time.monotonic()
        outcome = "error"

        with transaction_context(transaction_id) as correlation_id:
            try:
                with self._claim(transaction_id):
                    result = await self._verify_and_charge(
                        transaction_id, biometric_sample, db, correlation_id
                    )
                outcome = result.status
                return result
            except PaymentError as e:
                outcome = type(e).__name__
                raise
            finally:
                metrics.record_operation(
                    "verify_and_charge", outcome, time.monotonic() - started
                )

    async def _verify_and_charge(
        self,
        transaction_id: str,
        biometric_sample: str,
        db: AsyncSession,
        correlation_id: str,
    ) -> ChargeResult:
        transaction = await self.transactions.get(transaction_id, db, for_update=True)
        if transaction.status != TransactionStatus.PENDING:
            raise InvalidStateError(
                "Transaction is not in pending state", status=transaction.status
            )

        logger.info("payment_verification_started", payee_id=transaction.payee_id)

        # Step 1: identify the payer
        try:
            payer_id = await self.identity_client.search_face(biometric_sample)
        except IdentityGatewayError as e:
            await db.rollback()
            logger.error("payment_identification_unavailable", error=str(e))
            raise PaymentProcessingError(
                "Biometric service unavailable; transaction left pending"
            ) from e

        if payer_id is None:
            await self._fail(db, transaction, REASON_NOT_IDENTIFIED, correlation_id)
            raise IdentificationFailedError("User not identified - no matching face found")

        # Step 2: payer readiness
        payer = await self.accounts.get(AccountRef.user(payer_id), db)
        reason = self._readiness_failure(payer)
        if reason is not None:
            if payer is not None:
                transaction.assign_payer(payer_id)
            await self._fail(db, transaction, reason, correlation_id)
            raise NotReadyError(reason)

        # Step 3: durable checkpoint before any money moves
        transaction.assign_payer(payer_id)
        transaction.biometric_verified = True
        transaction.transition_to(TransactionStatus.PROCESSING)
        await self._record(
            db, transaction, "transaction.identified", correlation_id, payer_id=payer_id
        )
        await self._checkpoint(db, transaction_id)

        logger.info("payment_payer_identified", payer_id=payer_id)

        # Step 4: settlement tokens
        try:
            payer_token = await self.token_store.get_default_token(
                AccountRef.user(payer_id), db
            )
            payee_token = await self.token_store.get_default_token(
                AccountRef.merchant(transaction.payee_id), db
            )
        except TokenNotFoundError as e:
            await self._fail(db, transaction, REASON_MISSING_TOKEN, correlation_id)
            raise PaymentProcessingError("Missing payment tokens") from e

        # Step 5: principal leg
        principal = await self._critical_leg(
            "principal",
            payer_token.token,
            payee_token.token,
            transaction.amount,
            transaction.description or "Payment",
        )
        if not principal.succeeded:
            await self._fail(db, transaction, REASON_TRANSFER_DECLINED, correlation_id)
            return ChargeResult(
                transaction_id=transaction.transaction_id,
                status=transaction.status,
                verified=True,
                amount=transaction.amount,
                currency=transaction.currency,
                payer_id=payer_id,
                message="Payment failed",
            )
        transaction.ledger_reference = principal.reference

        # Step 6: fee leg
        split = split_fee(transaction.amount, self.settings.platform_fee_rate)
        transaction.platform_fee = split.platform_fee
        transaction.merchant_net = split.merchant_net
        fee_leg = await self._best_effort_leg(
            "fee",
            payee_token.token,
            self.settings.platform_payment_token,
            split.platform_fee,
            fee_description(self.settings.platform_fee_rate, transaction.transaction_id),
        )
        transaction.fee_collected = fee_leg.succeeded
        if not fee_leg.succeeded:
            await self._record(
                db, transaction, "fee_leg.failed", correlation_id,
                leg_status=fee_leg.status.value,
                platform_fee=split.platform_fee,
                message=fee_leg.message,
            )

        # Step 7: completion
        transaction.transition_to(TransactionStatus.COMPLETED)
        await self._record(
            db, transaction, "transaction.completed", correlation_id,
            ledger_reference=principal.reference,
            merchant_net=split.merchant_net,
            platform_fee=split.platform_fee,
            fee_collected=fee_leg.succeeded,
        )
        await self._checkpoint(db, transaction_id)

        await self.token_store.touch_last_used(payer_token.token, db)
        await db.commit()

        logger.info(
            "payment_completed",
            payer_id=payer_id,
            payee_id=transaction.payee_id,
            amount=str(transaction.amount),
            merchant_net=str(split.merchant_net),
            platform_fee=str(split.platform_fee),
            fee_collected=fee_leg.succeeded,
        )
        metrics.record_settlement(transaction.currency, float(transaction.amount))

        # Step 8: audit, only after COMPLETED is durable
        self._dispatch_audit(transaction, payer_id, split)

        return ChargeResult(
            transaction_id=transaction.transaction_id,
            status=transaction.status,
            verified=True,
            amount=transaction.amount,
            currency=transaction.currency,
            payer_id=payer_id,
            merchant_net=split.merchant_net,
            platform_fee=split.platform_fee,
            fee_collected=fee_leg.succeeded,
            message="Payment successful",
        )

    async def _critical_leg(
        self,
        leg: str,
        sender_token: str,
        receiver_token: str,
        amount: Decimal,
        description: str,
    ) -> CriticalLegResult:
        receipt = await self.ledger_client.submit_transfer(
            sender_token, receiver_token, amount, description, leg=leg
        )
        return CriticalLegResult(
            leg=leg,
            succeeded=receipt.success,
            reference=receipt.reference,
            message=receipt.message,
        )

    async def _best_effort_leg(
        self,
        leg: str,
        sender_token: str,
        receiver_token: str,
        amount: Decimal,
        description: str,
    ) -> BestEffortLegResult:
        if not sender_token or not receiver_token:
            logger.warning("best_effort_leg_skipped_missing_token", leg=leg)
            return BestEffortLegResult(leg, LegStatus.SKIPPED, "settlement token not configured")
        if amount <= 0:
            return BestEffortLegResult(leg, LegStatus.SKIPPED, "nothing to transfer")

        receipt = await self.ledger_client.submit_transfer(
            sender_token, receiver_token, amount, description, leg=leg
        )
        if not receipt.success:
            logger.warning(
                "best_effort_leg_failed",
                leg=leg,
                amount=str(amount),
                sender=mask_token(sender_token),
                message=receipt.message,
            )
            return BestEffortLegResult(leg, LegStatus.FAILED, receipt.message)
        return BestEffortLegResult(leg, LegStatus.SUCCEEDED, receipt.message)

    def _dispatch_audit(self, transaction: Transaction, payer_id: str, split: FeeSplit) -> None:
        merchant = party_id(AccountKind.MERCHANT.value, transaction.payee_id)
        self.audit_client.record_async(
            transaction.transaction_id,
            to_minor_units(split.merchant_net),
            party_id(AccountKind.USER.value, payer_id),
            merchant,
        )
        self.audit_client.record_async(
            f"{transaction.transaction_id}_FEE",
            to_minor_units(split.platform_fee),
            merchant,
            PLATFORM_PARTY,
        )

    async def refund(self, transaction_id: str, reason: str, db: AsyncSession) -> RefundResult:
        """
        Refund a COMPLETED transaction.

        The fee is returned to the merchant first (best effort), then the
        full amount goes back to the payer. Both legs use the accounts'
        current default tokens.

        Args:
            transaction_id: Transaction ID
            reason: Refund reason, stored on the transaction
            db: Database session

        Returns:
            RefundResult: REFUNDED outcome

        Raises:
            InvalidStateError: If the transaction is not COMPLETED
            PaymentProcessingError: If the refund transfer fails; the
                transaction stays COMPLETED and the refund can be retried
        """
        started = time.monotonic()
        outcome = "error"

        with transaction_context(transaction_id) as correlation_id:
            try:
                with self._claim(transaction_id):
                    result = await self._refund(transaction_id, reason, db, correlation_id)
                outcome = result.status
                return result
            except PaymentError as e:
                outcome = type(e).__name__
                raise
            finally:
                metrics.record_operation("refund", outcome, time.monotonic() - started)

    async def _refund(
        self, transaction_id: str, reason: str, db: AsyncSession, correlation_id: str
    ) -> RefundResult:
        transaction = await self.transactions.get(transaction_id, db, for_update=True)
        if transaction.status != TransactionStatus.COMPLETED:
            raise InvalidStateError(
                "Only completed transactions can be refunded", status=transaction.status
            )
        payer_id = transaction.require_payer()

        logger.info("refund_started", payer_id=payer_id, payee_id=transaction.payee_id)

        # Current defaults, which may differ from the tokens used at settlement
        try:
            payer_token = await self.token_store.get_default_token(AccountRef.user(payer_id), db)
            payee_token = await self.token_store.get_default_token(
                AccountRef.merchant(transaction.payee_id), db
            )
        except TokenNotFoundError as e:
            await db.rollback()
            raise PaymentProcessingError("Missing payment tokens for refund") from e

        platform_fee = transaction.platform_fee
        if platform_fee is None:
            platform_fee = split_fee(transaction.amount, self.settings.platform_fee_rate).platform_fee

        # A retried refund must not pay the fee back a second time
        if transaction.fee_reversed:
            fee_leg = BestEffortLegResult("refund_fee", LegStatus.SUCCEEDED, "fee already reversed")
        elif transaction.fee_collected is False:
            fee_leg = BestEffortLegResult("refund_fee", LegStatus.SKIPPED, "fee was never collected")
        else:
            fee_leg = await self._best_effort_leg(
                "refund_fee",
                self.settings.platform_payment_token,
                payee_token.token,
                platform_fee,
                fee_description(
                    self.settings.platform_fee_rate, transaction.transaction_id, refund=True
                ),
            )

        principal = await self._critical_leg(
            "refund_principal",
            payee_token.token,
            payer_token.token,
            transaction.amount,
            f"Refund: {reason}",
        )
        transaction.fee_reversed = fee_leg.succeeded
        if not principal.succeeded:
            await self._record(
                db, transaction, "refund.failed", correlation_id,
                reason=reason,
                fee_leg_status=fee_leg.status.value,
                message=principal.message,
            )
            await self._checkpoint(db, transaction_id)
            logger.error(
                "refund_transfer_failed",
                amount=str(transaction.amount),
                fee_reversed=fee_leg.succeeded,
                message=principal.message,
            )
            raise PaymentProcessingError("Refund transfer from merchant to payer failed")

        transaction.transition_to(TransactionStatus.REFUNDED, reason)
        await self._record(
            db, transaction, "transaction.refunded", correlation_id,
            reason=reason,
            fee_reversed=fee_leg.succeeded,
            ledger_reference=principal.reference,
        )
        await self._checkpoint(db, transaction_id)

        logger.info(
            "refund_completed",
            amount=str(transaction.amount),
            fee_reversed=fee_leg.succeeded,
        )

        return RefundResult(
            transaction_id=transaction.transaction_id,
            status=transaction.status,
            amount=transaction.amount,
            currency=transaction.currency,
            fee_reversed=fee_leg.succeeded,
            reason=reason,
        )

    async def cancel(
        self,
        transaction_id: str,
        db: AsyncSession,
        reason: str = "cancelled before verification",
    ) -> TransactionView:
        """
        Abandon a PENDING transaction.

        Raises:
            InvalidStateError: If the transaction is no longer PENDING
        """
        with transaction_context(transaction_id) as correlation_id, self._claim(transaction_id):
            transaction = await self.transactions.get(transaction_id, db, for_update=True)
            if transaction.status != TransactionStatus.PENDING:
                raise InvalidStateError(
                    "Only pending transactions can be cancelled", status=transaction.status
                )
            transaction.transition_to(TransactionStatus.CANCELLED, reason)
            await self._record(db, transaction, "transaction.cancelled", correlation_id, reason=reason)
            await self._checkpoint(db, transaction_id)

            logger.info("transaction_cancelled", reason=reason)
        metrics.record_operation("cancel", transaction.status, 0.0)
        return TransactionView.from_transaction(transaction)

    async def expire_stale_pending(
        self, db: AsyncSession, older_than: Optional[timedelta] = None
    ) -> int:
        """
        Cancel PENDING transactions whose verification window has passed.

        Args:
            db: Database session
            older_than: Age threshold, defaults to the configured TTL

        Each transaction is cancelled and committed on its own. One that
        another session has locked or changed in the meantime is left alone.

        Returns:
            int: Number of transactions cancelled
        """
        if older_than is None:
            older_than = timedelta(minutes=self.settings.pending_transaction_ttl_minutes)
        cutoff = utcnow() - older_than

        with transaction_context() as correlation_id:
            stale = await self.transactions.find_stale(TransactionStatus.PENDING, cutoff, db)
            stale_ids = [transaction.transaction_id for transaction in stale]

            expired = 0
            for transaction_id in stale_ids:
                if transaction_id in self._in_flight:
                    continue
                transaction = await self.transactions.find(transaction_id, db, for_update=True)
                if transaction is None or transaction.status != TransactionStatus.PENDING:
                    continue
                transaction.transition_to(TransactionStatus.CANCELLED, REASON_EXPIRED)
                await self._record(
                    db, transaction, "transaction.cancelled", correlation_id, reason=REASON_EXPIRED
                )
                try:
                    await db.commit()
                except StaleDataError:
                    await db.rollback()
                    logger.info("stale_transaction_skipped", transaction_id=transaction_id)
                    continue
                expired += 1

            # Releases the row locks when nothing was cancelled
            await db.commit()

            if expired:
                logger.info("stale_transactions_expired", count=expired, cutoff=cutoff.isoformat())
        metrics.record_expiry_sweep(expired)
        return expired

    async def get_transaction(self, transaction_id: str, db: AsyncSession) -> TransactionView:
        """
        Get a transaction by ID.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
        """
        transaction = await self.transactions.get(transaction_id, db)
        return TransactionView.from_transaction(transaction)
