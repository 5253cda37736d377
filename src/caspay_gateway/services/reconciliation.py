"""Payment reconciliation between the Casper ledger and payment rows."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from caspay_gateway.core.exceptions import (
    DuplicateTransactionError,
    PlanNotFoundError,
    TransactionClaimedError,
)
from caspay_gateway.domain.enums import PaymentStatus, PaymentType, ReconciliationOutcome
from caspay_gateway.domain.events import PaymentEventData, SubscriptionEventData
from caspay_gateway.domain.models import (
    Payment,
    ReconciliationResult,
    Subscription,
    SubscriptionPlan,
    TransactionVerification,
    ValidatedMerchant,
)
from caspay_gateway.repositories.api_keys import MerchantRepository
from caspay_gateway.repositories.payments import PaymentRepository
from caspay_gateway.services.subscriptions import SubscriptionService
from caspay_gateway.services.transactions import TransactionVerifier
from caspay_gateway.services.webhooks import WebhookDispatcher
from caspay_gateway.tasks import spawn_detached

logger = structlog.get_logger(__name__)

PAYMENT_RECEIVED = "payment.received"
PAYMENT_CONFIRMED = "payment.confirmed"
PAYMENT_FAILED = "payment.failed"
SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_RENEWED = "subscription.renewed"


@dataclass
class RecordedPayment:
    payment: Payment | None
    verification: TransactionVerification | None
    duplicate: bool = False
    subscription: Subscription | None = None

    @property
    def ok(self) -> bool:
        return self.payment is not None


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class PaymentReconciler:
    def __init__(
        self,
        payment_repository: PaymentRepository,
        merchant_repository: MerchantRepository,
        verifier: TransactionVerifier,
        dispatcher: WebhookDispatcher,
        *,
        subscriptions: SubscriptionService | None = None,
    ):
        self._payments = payment_repository
        self._merchants = merchant_repository
        self._verifier = verifier
        self._dispatcher = dispatcher
        self._subscriptions = subscriptions

    async def reconcile(self, payment_id: UUID, deploy_hash: str) -> ReconciliationResult:
        """Confirm a pending payment against its deploy; safe to call repeatedly."""

        def result(
            outcome: ReconciliationOutcome,
            verification: TransactionVerification | None = None,
        ) -> ReconciliationResult:
            return ReconciliationResult(
                outcome=outcome,
                payment_id=payment_id,
                deploy_hash=deploy_hash,
                verification=verification,
            )

        if await self._verifier.is_already_processed(deploy_hash):
            return result(ReconciliationOutcome.ALREADY_PROCESSED)

        payment = await self._payments.get_by_id(payment_id)
        if payment is None:
            return result(ReconciliationOutcome.NOT_FOUND)
        if payment.status is not PaymentStatus.PENDING:
            return result(ReconciliationOutcome.NOT_PENDING)

        merchant = await self._merchants.get(payment.merchant_id)
        recipient = payment.expected_recipient or (merchant.wallet_address if merchant else None)
        if not recipient:
            return result(
                ReconciliationOutcome.INVALID,
                TransactionVerification(
                    valid=False, deploy_hash=deploy_hash, error="No expected recipient"
                ),
            )

        verification = await self._verifier.verify(
            deploy_hash,
            recipient,
            payment.amount,
            payment.network,
            sender_hint=payment.payer_address,
        )
        if not verification.valid:
            logger.info(
                "payment verification failed",
                payment_id=str(payment_id),
                deploy_hash=deploy_hash,
                error=verification.error,
            )
            return result(ReconciliationOutcome.INVALID, verification)

        try:
            confirmed = await self._payments.confirm_pending(
                payment_id,
                transaction_hash=deploy_hash,
                payer_address=verification.sender or None,
                block_timestamp=_parse_timestamp(verification.timestamp),
            )
        except DuplicateTransactionError:
            return result(ReconciliationOutcome.ALREADY_PROCESSED, verification)
        if confirmed is None:
            # another caller confirmed or failed the row first
            return result(ReconciliationOutcome.ALREADY_PROCESSED, verification)

        logger.info("payment confirmed", payment_id=str(payment_id), deploy_hash=deploy_hash)
        self._notify(
            confirmed,
            PAYMENT_CONFIRMED,
            public_merchant_id=merchant.merchant_id if merchant else None,
        )
        return result(ReconciliationOutcome.CONFIRMED, verification)

    async def record_payment(
        self,
        merchant: ValidatedMerchant,
        *,
        transaction_hash: str,
        amount: float,
        sender_address: str,
        product_id: str | None = None,
        subscription_plan_id: str | None = None,
        currency: str = "CSPR",
    ) -> RecordedPayment:
        """Verify a client-reported transfer and store it as a confirmed payment.

        With ``subscription_plan_id`` the payment also opens or extends the
        payer's subscription to that plan. A hash recorded for another merchant
        raises :class:`TransactionClaimedError`; an own pending row carrying
        the hash is confirmed through :meth:`reconcile`.
        """
        existing = await self._payments.get_by_transaction_hash(transaction_hash)
        if existing is not None:
            if existing.merchant_id != merchant.id:
                raise TransactionClaimedError(transaction_hash)
            if existing.status is PaymentStatus.PENDING:
                return await self._confirm_own_pending(existing, transaction_hash)
            return RecordedPayment(payment=existing, verification=None, duplicate=True)

        plan: SubscriptionPlan | None = None
        if subscription_plan_id is not None:
            if self._subscriptions is not None:
                plan = await self._subscriptions.get_plan(merchant.id, subscription_plan_id)
            if plan is None:
                raise PlanNotFoundError(f"Subscription plan {subscription_plan_id} not found")

        verification = await self._verifier.verify(
            transaction_hash,
            merchant.wallet_address,
            amount,
            merchant.network,
            sender_hint=sender_address,
        )
        if not verification.valid:
            return RecordedPayment(payment=None, verification=verification)
        if not verification.sender:
            return RecordedPayment(
                payment=None,
                verification=verification.model_copy(
                    update={"valid": False, "error": "Transaction sender address not found"}
                ),
            )

        try:
            payment = await self._payments.insert_confirmed(
                merchant_id=merchant.id,
                transaction_hash=transaction_hash,
                payer_address=verification.sender,
                amount=amount,
                token="NATIVE" if currency == "CSPR" else currency,
                product_id=None if plan else product_id,
                network=merchant.network.value,
                block_timestamp=_parse_timestamp(verification.timestamp),
                payment_type=(PaymentType.SUBSCRIPTION if plan else PaymentType.PRODUCT).value,
                subscription_plan_id=plan.id if plan else None,
            )
        except DuplicateTransactionError:
            existing = await self._payments.get_by_transaction_hash(transaction_hash)
            if existing is None or existing.merchant_id != merchant.id:
                raise TransactionClaimedError(transaction_hash) from None
            return RecordedPayment(payment=existing, verification=verification, duplicate=True)

        logger.info(
            "payment recorded",
            payment_id=str(payment.id),
            transaction_hash=transaction_hash,
            payment_type=payment.payment_type.value,
        )
        if plan is None:
            self._notify(
                payment,
                PAYMENT_RECEIVED,
                public_merchant_id=merchant.merchant_id,
                extra={"currency": currency},
            )
            return RecordedPayment(payment=payment, verification=verification)

        assert self._subscriptions is not None
        subscription, renewed = await self._subscriptions.renew(
            merchant.id, plan, verification.sender
        )
        data = SubscriptionEventData(
            subscription_id=str(subscription.id),
            plan_id=plan.plan_id,
            payment_id=str(payment.id),
            transaction_hash=transaction_hash,
            subscriber=verification.sender,
            amount=amount,
            currency=currency,
        )
        event_type = SUBSCRIPTION_RENEWED if renewed else SUBSCRIPTION_CREATED
        spawn_detached(
            self._dispatch(merchant.id, event_type, data, merchant.merchant_id),
            name=f"webhook:{event_type}:{subscription.id}",
        )
        return RecordedPayment(
            payment=payment, verification=verification, subscription=subscription
        )

    async def _confirm_own_pending(
        self, payment: Payment, transaction_hash: str
    ) -> RecordedPayment:
        outcome = await self.reconcile(payment.id, transaction_hash)
        if outcome.outcome is ReconciliationOutcome.INVALID:
            return RecordedPayment(payment=None, verification=outcome.verification)
        current = await self._payments.get_by_id(payment.id)
        return RecordedPayment(
            payment=current,
            verification=outcome.verification,
            duplicate=outcome.outcome is not ReconciliationOutcome.CONFIRMED,
        )

    async def find_payment(self, merchant_id: UUID, transaction_hash: str) -> Payment | None:
        payment = await self._payments.get_by_transaction_hash(transaction_hash)
        if payment is None or payment.merchant_id != merchant_id:
            return None
        return payment

    async def find_payment_by_id(self, merchant_id: UUID, payment_id: UUID) -> Payment | None:
        payment = await self._payments.get_by_id(payment_id)
        if payment is None or payment.merchant_id != merchant_id:
            return None
        return payment

    async def expire_pending(self, now: datetime) -> int:
        expired = await self._payments.expire_pending(now)
        for payment in expired:
            self._notify(payment, PAYMENT_FAILED, extra={"reason": "expired"})
        if expired:
            logger.info("expired pending payments", count=len(expired))
        return len(expired)

    async def sweep(self, now: datetime, *, limit: int = 100) -> dict[str, int]:
        summary = {"confirmed": 0, "expired": 0, "pending": 0, "errors": 0}
        summary["expired"] = await self.expire_pending(now)
        pending = await self._payments.list_pending_with_hash(limit=limit)
        for payment in pending:
            assert payment.transaction_hash is not None
            try:
                outcome = await self.reconcile(payment.id, payment.transaction_hash)
            except Exception:
                logger.exception("payment reconcile failed", payment_id=str(payment.id))
                summary["errors"] += 1
                continue
            if outcome.outcome is ReconciliationOutcome.CONFIRMED:
                summary["confirmed"] += 1
            else:
                summary["pending"] += 1
        return summary

    def _notify(
        self,
        payment: Payment,
        event_type: str,
        *,
        public_merchant_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        data = PaymentEventData(
            payment_id=str(payment.id),
            transaction_hash=payment.transaction_hash,
            payer=payment.payer_address,
            amount=payment.amount,
            product_id=payment.product_id,
            **(extra or {}),
        )
        spawn_detached(
            self._dispatch(payment.merchant_id, event_type, data, public_merchant_id),
            name=f"webhook:{event_type}:{payment.id}",
        )

    async def _dispatch(
        self,
        merchant_id: UUID,
        event_type: str,
        data: PaymentEventData | SubscriptionEventData,
        public_merchant_id: str | None,
    ) -> None:
        if public_merchant_id is None:
            merchant = await self._merchants.get(merchant_id)
            public_merchant_id = merchant.merchant_id if merchant else None
        await self._dispatcher.trigger(
            merchant_id, event_type, data, public_merchant_id=public_merchant_id
        )
