# tenderly/services/payment_service.py
"""Payment records held in the session store, keyed by session id."""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Awaitable, Callable, Tuple

from ..config import Settings
from ..errors import (
    ConflictError, NotFoundError, PaymentExpiredError, PaymentVerificationError,
)
from ..models import ConsultationType, PaymentStatus
from ..schemas import OrderRequest, PaymentRecord, RefundResult, VerificationResult
from ..session_store import SessionStore
from .payment_providers import PaymentProvider

logger = logging.getLogger(__name__)


def payment_key(session_id: str) -> str:
    return f"payment:{session_id}"


def payment_id_key(payment_id: str) -> str:
    return f"payment:id:{payment_id}"


def payment_order_key(order_id: str) -> str:
    return f"payment:order:{order_id}"


class PaymentService:

    def __init__(self, store: SessionStore, provider: PaymentProvider, settings: Settings,
                 clock: Optional[Callable[[], datetime]] = None,
                 run_blocking: Optional[Callable[..., Awaitable[Any]]] = None):
        self.store = store
        self.provider = provider
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.run_blocking = run_blocking or asyncio.to_thread

    def price_for(self, consultation_type: ConsultationType) -> int:
        prices = self.settings.consultation_prices
        if consultation_type.value not in prices:
            raise NotFoundError(f"No price configured for consultation type '{consultation_type.value}'")
        return int(prices[consultation_type.value])

    async def create_payment(self, session_id: str, patient_id: int, consultation_type: ConsultationType) -> PaymentRecord:
        """Create a gateway order and persist the pending payment record."""
        amount = self.price_for(consultation_type)
        payment_id = f"PAY-{uuid.uuid4().hex[:20].upper()}"
        order = await self.provider.create_order(OrderRequest(
            amount=amount,
            currency=self.settings.payment_currency,
            receipt=payment_id,
            notes={"sessionId": session_id, "consultationType": consultation_type.value},
            expires_in_minutes=self.settings.payment_order_expiry_minutes,
        ))
        record = PaymentRecord(
            payment_id=payment_id,
            session_id=session_id,
            patient_id=patient_id,
            order_id=order.order_id,
            provider=self.provider.name,
            consultation_type=consultation_type,
            amount=amount,
            currency=order.currency,
            payment_status=PaymentStatus.pending,
            payment_url=order.payment_url,
            expires_at=self.clock() + timedelta(minutes=self.settings.payment_order_expiry_minutes),
            created_at=self.clock(),
            gateway_response=order.raw,
        )
        await self.run_blocking(self.save, record)
        logger.info(f"Payment {payment_id} created for session {session_id}: {amount} {record.currency}")
        return record

    def save(self, record: PaymentRecord) -> None:
        ttl = self.settings.payment_record_ttl_seconds
        self.store.set(payment_key(record.session_id), record.to_json(), ttl)
        self.store.set(payment_id_key(record.payment_id), record.session_id, ttl)
        self.store.set(payment_order_key(record.order_id), record.session_id, ttl)

    def get_for_session(self, session_id: str) -> Optional[PaymentRecord]:
        raw = self.store.get(payment_key(session_id))
        return PaymentRecord.model_validate(raw) if raw else None

    def get_by_payment_id(self, payment_id: str) -> Optional[PaymentRecord]:
        session_id = self.store.get(payment_id_key(payment_id))
        return self.get_for_session(session_id) if session_id else None

    def get_by_order_id(self, order_id: str) -> Optional[PaymentRecord]:
        session_id = self.store.get(payment_order_key(order_id))
        return self.get_for_session(session_id) if session_id else None

    def is_expired(self, record: PaymentRecord) -> bool:
        return record.payment_status == PaymentStatus.pending and record.expires_at <= self.clock()

    def load_confirmable(self, session_id: str, payment_id: str) -> PaymentRecord:
        """The pending record for (session, payment), or the reason it cannot be confirmed."""
        record = self.get_for_session(session_id)
        if record is None:
            raise PaymentExpiredError("Payment session has expired; select a consultation type again.")
        if record.payment_id != payment_id:
            raise PaymentVerificationError(f"Payment {payment_id} does not belong to session {session_id}")
        if record.payment_status == PaymentStatus.refunded:
            raise ConflictError("Payment has been refunded", current_state=record.payment_status.value)
        if record.payment_status == PaymentStatus.failed:
            raise PaymentVerificationError("Payment previously failed verification", current_state=record.payment_status.value)
        if self.is_expired(record):
            raise PaymentExpiredError("Payment order has expired; select a consultation type again.")
        return record

    async def verify(self, record: PaymentRecord, gateway_transaction_id: Optional[str], signature: Optional[str]) -> VerificationResult:
        result = await self.provider.verify_payment(
            gateway_transaction_id or record.payment_id,
            signature=signature,
            order_id=record.order_id,
        )
        if result.order_expired:
            raise PaymentExpiredError("Payment order has expired at the gateway; select a consultation type again.")
        if result.status != PaymentStatus.completed:
            logger.warning(f"Payment {record.payment_id} verification returned {result.status.value}")
            raise PaymentVerificationError(
                f"Payment not completed (gateway status: {result.status.value})",
                current_state=result.status.value,
            )
        return result

    def completed_record(self, record: PaymentRecord, result: VerificationResult,
                         gateway_transaction_id: Optional[str], payment_method: Optional[str]) -> PaymentRecord:
        """Completed copy of ``record``; the caller saves it once the consultation exists."""
        return record.model_copy(update={
            "payment_status": PaymentStatus.completed,
            "gateway_transaction_id": gateway_transaction_id or result.payment_id,
            "payment_method": payment_method or result.method,
            "confirmed_at": self.clock(),
            "gateway_response": result.raw,
        })

    def mark_failed(self, record: PaymentRecord, reason: Optional[str] = None) -> PaymentRecord:
        if record.payment_status != PaymentStatus.pending:
            return record
        record = record.model_copy(update={
            "payment_status": PaymentStatus.failed,
            "gateway_response": dict(record.gateway_response, failureReason=reason),
        })
        self.save(record)
        logger.warning(f"Payment {record.payment_id} marked failed: {reason}")
        return record

    async def refund(self, record: PaymentRecord, amount: Optional[int] = None, reason: Optional[str] = None) -> Tuple[PaymentRecord, RefundResult]:
        if record.payment_status == PaymentStatus.refunded:
            raise ConflictError(f"Payment {record.payment_id} is already refunded", current_state=record.payment_status.value)
        if record.payment_status != PaymentStatus.completed:
            raise ConflictError("Only completed payments can be refunded", current_state=record.payment_status.value)
        if amount is not None and amount > record.amount:
            raise PaymentVerificationError(f"Refund amount {amount} exceeds paid amount {record.amount}")

        refund = await self.provider.refund_payment(record.gateway_transaction_id or record.payment_id, amount, reason)
        record = record.model_copy(update={
            "payment_status": PaymentStatus.refunded,
            "refund_id": refund.refund_id,
            "refunded_at": self.clock(),
        })
        await self.run_blocking(self.save, record)
        logger.info(f"Payment {record.payment_id} refunded ({refund.refund_id})")
        return record, refund

    async def get_details(self, payment_id: str) -> Dict[str, Any]:
        record = await self.run_blocking(self.get_by_payment_id, payment_id)
        if record is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        gateway_id = record.gateway_transaction_id or payment_id
        gateway = await self.provider.get_payment_details(gateway_id)
        return {"record": record, "gateway": gateway}
