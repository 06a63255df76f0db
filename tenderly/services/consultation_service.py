# tenderly/services/consultation_service.py
"""Session-to-consultation lifecycle: drafts, payment confirmation, assessment, status changes."""
import asyncio
import json
import logging
import math
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable, Awaitable, Tuple

import structlog
from sqlalchemy.orm import Session

from .. import crud, models
from ..audit import AuditEvent, AuditSink, safe_record
from ..config import Settings
from ..errors import (
    ConflictError, InvalidSignatureError, NotFoundError, PaymentExpiredError,
    PermissionDeniedError, PreconditionError,
)
from ..models import ConsultationStatus, PaymentStatus, PrescriptionStatus, UserRole
from ..schemas import (
    AIDiagnosis, ConflictReport, ConsultationDraft, PaymentConfirmationResponse, PaymentRecord,
    RefundResult, StatusUpdateResponse, StructuredAssessmentRequest,
)
from ..session_store import SessionStore
from ..transitions import apply_consultation_status, ensure_consultation_transition
from .ai_diagnosis import AIDiagnosisClient
from .payment_service import PaymentService
from .shift_service import DoctorShiftResolver

logger = logging.getLogger(__name__)
event_log = structlog.get_logger("tenderly.consultations")

LOCK_TTL_MARGIN_SECONDS = 30


def draft_key(session_id: str) -> str:
    return f"draft:{session_id}"


def patient_draft_key(patient_id: int) -> str:
    return f"patient-draft:{patient_id}"


def payment_lock_key(session_id: str) -> str:
    return f"payment-lock:{session_id}"


def confirmation_key(session_id: str) -> str:
    return f"payment-confirmed:{session_id}"


def new_consultation_id() -> str:
    return f"CONS-{uuid.uuid4().hex[:12].upper()}"


def new_clinical_session_id() -> str:
    return f"CS-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def can_view(consultation: models.Consultation, user: models.User) -> bool:
    if user.role == UserRole.admin:
        return True
    if user.role == UserRole.doctor:
        return consultation.doctor_id == user.id
    return consultation.patient_id == user.id


def ensure_can_view(consultation: models.Consultation, user: models.User) -> None:
    if not can_view(consultation, user):
        raise PermissionDeniedError("You do not have access to this consultation")


class ConsultationLifecycleManager:

    def __init__(self, store: SessionStore, payment_service: PaymentService, shift_resolver: DoctorShiftResolver,
                 ai_client: AIDiagnosisClient, settings: Settings, audit: Optional[AuditSink] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 run_blocking: Optional[Callable[..., Awaitable[Any]]] = None):
        self.store = store
        self.payments = payment_service
        self.shifts = shift_resolver
        self.ai_client = ai_client
        self.settings = settings
        self.audit = audit
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        # database and session-store calls run off the event loop
        self.run_blocking = run_blocking or asyncio.to_thread

    # ==================== DRAFTS ====================

    def load_draft(self, session_id: str) -> Optional[ConsultationDraft]:
        raw = self.store.get(draft_key(session_id))
        return ConsultationDraft.model_validate(raw) if raw else None

    def _save_draft(self, draft: ConsultationDraft) -> None:
        ttl = self.settings.draft_ttl_seconds
        self.store.set(draft_key(draft.session_id), draft.to_json(), ttl)
        self.store.set(patient_draft_key(draft.patient_id), draft.session_id, ttl)

    def _discard_draft(self, session_id: str, patient_id: int) -> None:
        self.store.delete(draft_key(session_id))
        if self.store.get(patient_draft_key(patient_id)) == session_id:
            self.store.delete(patient_draft_key(patient_id))

    def _draft_for(self, patient_id: int, session_id: str) -> ConsultationDraft:
        draft = self.load_draft(session_id)
        now = self.clock()
        if draft is None:
            return ConsultationDraft(session_id=session_id, patient_id=patient_id, created_at=now, updated_at=now)
        if draft.patient_id != patient_id:
            raise PermissionDeniedError("This session belongs to another patient")
        return draft

    def _pending_payment(self, session_id: str) -> Optional[PaymentRecord]:
        record = self.payments.get_for_session(session_id)
        if record is None or record.payment_status != PaymentStatus.pending or self.payments.is_expired(record):
            return None
        return record

    def _ensure_can_start(self, db: Session, patient_id: int, session_id: str) -> None:
        """Reject a new draft while another consultation or payment is live; supersede expired state."""
        active = crud.get_active_consultation(db, patient_id)
        if active is not None:
            raise ConflictError(
                crud.ACTIVE_CONFLICT_MESSAGE.format(consultation_id=active.consultation_id, status=active.status.value),
                current_state=active.status.value,
                details={"activeConsultationId": active.consultation_id},
            )
        if crud.get_consultation_by_session(db, session_id) is not None:
            raise ConflictError(f"Session {session_id} has already been converted to a consultation")

        pending_session = self.store.get(patient_draft_key(patient_id))
        if not pending_session or pending_session == session_id:
            return
        pending = self._pending_payment(pending_session)
        if pending is not None and self.load_draft(pending_session) is not None:
            raise ConflictError(
                "Patient has a pending payment for another consultation session",
                current_state=ConsultationStatus.payment_pending.value,
                details={"pendingSessionId": pending_session, "pendingPaymentId": pending.payment_id},
            )
        logger.info(f"Superseding stale draft {pending_session} for patient {patient_id}")
        self.store.delete(draft_key(pending_session))
        self.store.delete(patient_draft_key(patient_id))

    async def record_symptoms(self, db: Session, patient_id: int, session_id: str, symptoms: Dict[str, Any],
                              ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> Dict[str, Any]:
        """Attach symptoms and a preliminary AI diagnosis to the session's draft."""
        draft = await self.run_blocking(self._start_draft, db, patient_id, session_id)
        diagnosis = await self.ai_client.diagnose_symptoms(symptoms, session_id=session_id)
        draft = draft.model_copy(update={
            "detailed_symptoms": symptoms,
            "ai_diagnosis": diagnosis.to_json(),
            "updated_at": self.clock(),
        })
        await self.run_blocking(self._save_draft, draft)
        await self.run_blocking(safe_record, self.audit, AuditEvent(
            action="SYMPTOMS_RECORDED", actor_id=patient_id, resource_type="consultation_draft",
            resource_id=session_id, ip_address=ip_address, user_agent=user_agent,
        ))
        return {"sessionId": session_id, "aiDiagnosis": diagnosis.to_json(), "expiresInSeconds": self.settings.draft_ttl_seconds}

    def _start_draft(self, db: Session, patient_id: int, session_id: str) -> ConsultationDraft:
        self._ensure_can_start(db, patient_id, session_id)
        return self._draft_for(patient_id, session_id)

    async def select_consultation_type(self, db: Session, patient_id: int, session_id: str,
                                       consultation_type: models.ConsultationType,
                                       ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> PaymentRecord:
        draft = await self.run_blocking(self._start_draft, db, patient_id, session_id)

        existing = await self.run_blocking(self._pending_payment, session_id)
        if existing is not None and existing.consultation_type == consultation_type and existing.patient_id == patient_id:
            await self.run_blocking(self._save_draft, draft.model_copy(update={"updated_at": self.clock()}))
            return existing

        price = self.payments.price_for(consultation_type)
        draft = draft.model_copy(update={"consultation_type": consultation_type, "updated_at": self.clock()})
        record = await self.payments.create_payment(session_id, patient_id, consultation_type)
        await self.run_blocking(self._save_draft, draft)
        event_log.info("consultation_type_selected", session_id=session_id, consultation_type=consultation_type.value,
                       amount=price, payment_id=record.payment_id)
        await self.run_blocking(safe_record, self.audit, AuditEvent(
            action="CONSULTATION_TYPE_SELECTED", actor_id=patient_id, resource_type="payment",
            resource_id=record.payment_id, details={"consultationType": consultation_type.value, "amount": price},
            ip_address=ip_address, user_agent=user_agent,
        ))
        return record

    # ==================== PAYMENT CONFIRMATION ====================

    def confirmation_lock_ttl(self) -> int:
        """Confirmation lock lifetime; always outlasts the provider's slowest verification."""
        floor = math.ceil(self.payments.provider.max_verification_seconds) + LOCK_TTL_MARGIN_SECONDS
        return max(self.settings.payment_lock_ttl_seconds, floor)

    def _stored_confirmation(self, session_id: str, payment_id: str) -> Optional[PaymentConfirmationResponse]:
        raw = self.store.get(confirmation_key(session_id))
        if not raw:
            return None
        stored = PaymentConfirmationResponse.model_validate(raw)
        if stored.payment_id != payment_id:
            raise ConflictError(
                f"Session {session_id} was confirmed with a different payment",
                current_state=stored.status.value,
            )
        return stored.model_copy(update={"already_confirmed": True})

    @staticmethod
    def _confirmation_for(consultation: models.Consultation, payment_id: str,
                          already_confirmed: bool = False) -> PaymentConfirmationResponse:
        return PaymentConfirmationResponse(
            consultation_id=consultation.consultation_id,
            clinical_session_id=consultation.clinical_session_id,
            session_id=consultation.session_id,
            payment_id=payment_id,
            status=consultation.status,
            payment_status=PaymentStatus((consultation.payment_info or {}).get("paymentStatus", "completed")),
            doctor_id=consultation.doctor_id,
            already_confirmed=already_confirmed,
        )

    async def confirm_payment(self, db: Session, session_id: str, payment_id: str,
                              gateway_transaction_id: Optional[str] = None, payment_method: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None, patient_id: Optional[int] = None,
                              ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> PaymentConfirmationResponse:
        """Promote a paid draft into an active consultation, exactly once per (session, payment)."""
        metadata = dict(metadata or {})
        lock = payment_lock_key(session_id)
        token = await self.run_blocking(self.store.acquire_lock, lock, self.confirmation_lock_ttl())
        if token is None:
            stored = await self.run_blocking(self._stored_confirmation, session_id, payment_id)
            if stored is not None:
                return stored
            raise ConflictError("Payment confirmation for this session is already in progress; retry shortly.")

        try:
            done = await self.run_blocking(self._existing_confirmation, db, session_id, payment_id)
            if done is not None:
                return done
            record, draft = await self.run_blocking(self._confirmable, session_id, payment_id, patient_id)

            signature = metadata.get("razorpaySignature") or metadata.get("razorpay_signature") or metadata.get("signature")
            result = await self.payments.verify(record, gateway_transaction_id, signature)
            completed = self.payments.completed_record(record, result, gateway_transaction_id, payment_method)
            payment_info = completed.model_dump(mode="json", by_alias=True, exclude={"gateway_response", "payment_url"})
            payment_info["metadata"] = {k: v for k, v in metadata.items() if "signature" not in k.lower()}
            return await self.run_blocking(
                self._activate, db, completed, draft, payment_info, ip_address, user_agent,
            )
        finally:
            await self.run_blocking(self.store.release_lock, lock, token)

    def _existing_confirmation(self, db: Session, session_id: str,
                               payment_id: str) -> Optional[PaymentConfirmationResponse]:
        stored = self._stored_confirmation(session_id, payment_id)
        if stored is not None:
            return stored
        existing = crud.get_consultation_by_session(db, session_id)
        if existing is None:
            return None
        if (existing.payment_info or {}).get("paymentId") != payment_id:
            raise ConflictError(f"Session {session_id} was confirmed with a different payment",
                                current_state=existing.status.value)
        return self._confirmation_for(existing, payment_id, already_confirmed=True)

    def _confirmable(self, session_id: str, payment_id: str,
                     patient_id: Optional[int]) -> Tuple[PaymentRecord, ConsultationDraft]:
        record = self.payments.load_confirmable(session_id, payment_id)
        if patient_id is not None and record.patient_id != patient_id:
            raise PermissionDeniedError("This payment belongs to another patient")
        draft = self.load_draft(session_id)
        if draft is None:
            raise PaymentExpiredError("Consultation draft has expired; select a consultation type again.")
        return record, draft

    def _activate(self, db: Session, completed: PaymentRecord, draft: ConsultationDraft, payment_info: Dict[str, Any],
                  ip_address: Optional[str], user_agent: Optional[str]) -> PaymentConfirmationResponse:
        """Insert the active consultation for a verified payment and persist the confirmation."""
        session_id, payment_id = completed.session_id, completed.payment_id
        doctor_id = self.shifts.get_active_doctor_for_current_time(db)
        consultation = models.Consultation(
            consultation_id=new_consultation_id(),
            clinical_session_id=new_clinical_session_id(),
            session_id=session_id,
            patient_id=completed.patient_id,
            doctor_id=doctor_id,
            consultation_type=completed.consultation_type,
            status=ConsultationStatus.payment_pending,
            prescription_status=PrescriptionStatus.not_started,
            is_active=True,
            payment_info=payment_info,
            detailed_symptoms=draft.detailed_symptoms,
            ai_agent_output=draft.ai_diagnosis,
            chat_history=[],
            status_history=[],
            prescription_history=[],
        )
        apply_consultation_status(
            consultation, ConsultationStatus.payment_confirmed, changed_by=completed.patient_id,
            reason="Payment confirmed", source="payment", trigger="confirm_payment", now=self.clock(),
        )
        try:
            consultation = crud.insert_active_consultation(db, consultation)
        except ConflictError:
            # a replay that outlived this lock may already have confirmed the same payment
            existing = crud.get_consultation_by_session(db, session_id)
            if existing is not None and (existing.payment_info or {}).get("paymentId") == payment_id:
                logger.info(f"Session {session_id} was confirmed concurrently with the same payment")
                return self._confirmation_for(existing, payment_id, already_confirmed=True)
            raise

        self.payments.save(completed)
        response = self._confirmation_for(consultation, payment_id)
        self.store.set(confirmation_key(session_id), response.to_json(), self.settings.payment_record_ttl_seconds)
        self._discard_draft(session_id, completed.patient_id)

        event_log.info("payment_confirmed", session_id=session_id, payment_id=payment_id,
                       consultation_id=consultation.consultation_id, doctor_id=doctor_id)
        safe_record(self.audit, AuditEvent(
            action="PAYMENT_CONFIRMED", actor_id=completed.patient_id, resource_type="consultation",
            resource_id=consultation.consultation_id,
            details={"paymentId": payment_id, "amount": completed.amount, "doctorId": doctor_id},
            ip_address=ip_address, user_agent=user_agent,
        ))
        return response

    async def mock_complete_payment(self, db: Session, session_id: str, patient_id: Optional[int] = None,
                                    ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> PaymentConfirmationResponse:
        """Confirm a mock-provider payment without a gateway round trip."""
        if self.payments.provider.name != "mock":
            raise PreconditionError("Mock payments are only available when the mock payment provider is configured")
        record = await self.run_blocking(self.payments.get_for_session, session_id)
        if record is None:
            raise PaymentExpiredError("Payment session has expired; select a consultation type again.")
        return await self.confirm_payment(
            db, session_id, record.payment_id,
            gateway_transaction_id=f"mock_pay_{int(time.time() * 1000)}_{secrets.token_hex(4)}",
            payment_method="card",
            metadata={"mock": True},
            patient_id=patient_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def handle_payment_webhook(self, db: Session, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Gateway callback; captured payments go through the same idempotent confirmation."""
        if not self.payments.provider.verify_webhook_signature(body, signature):
            raise InvalidSignatureError("Webhook signature verification failed")
        try:
            event = json.loads(body)
        except ValueError:
            raise InvalidSignatureError("Webhook body is not valid JSON")

        name = event.get("event")
        entity = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
        order_id = entity.get("order_id")
        record = await self.run_blocking(self.payments.get_by_order_id, order_id) if order_id else None
        if record is None:
            logger.warning(f"Webhook {name} for unknown order {order_id}")
            return {"status": "ignored", "event": name}

        if name == "payment.captured":
            confirmation = await self.confirm_payment(
                db, record.session_id, record.payment_id,
                gateway_transaction_id=entity.get("id"),
                payment_method=entity.get("method"),
                metadata={"source": "webhook"},
            )
            return {"status": "processed", "event": name, "consultationId": confirmation.consultation_id}
        if name == "payment.failed":
            await self.run_blocking(self.payments.mark_failed, record, entity.get("error_description"))
            return {"status": "processed", "event": name}
        return {"status": "ignored", "event": name}

    # ==================== CLINICAL ASSESSMENT ====================

    def _assessment_target(self, db: Session, patient_id: int, clinical_session_id: Optional[str]) -> models.Consultation:
        if clinical_session_id:
            consultation = crud.get_consultation_by_clinical_session(db, clinical_session_id)
        else:
            consultation = crud.get_active_consultation(db, patient_id)
        if consultation is None:
            raise NotFoundError("No consultation found for this clinical session")
        if consultation.patient_id != patient_id:
            raise PermissionDeniedError("This consultation belongs to another patient")
        return consultation

    async def collect_structured_assessment(self, db: Session, patient_id: int, request: StructuredAssessmentRequest,
                                            ip_address: Optional[str] = None,
                                            user_agent: Optional[str] = None) -> Dict[str, Any]:
        consultation = await self.run_blocking(self._assessable, db, patient_id, request.clinical_session_id)
        assessment = request.assessment_payload()
        diagnosis = await self.ai_client.diagnose_structured(assessment, session_id=consultation.clinical_session_id)
        return await self.run_blocking(
            self._attach_assessment, db, consultation, patient_id, assessment, diagnosis, ip_address, user_agent,
        )

    def _assessable(self, db: Session, patient_id: int, clinical_session_id: Optional[str]) -> models.Consultation:
        consultation = self._assessment_target(db, patient_id, clinical_session_id)
        payment_status = (consultation.payment_info or {}).get("paymentStatus")
        if payment_status != PaymentStatus.completed.value:
            raise PreconditionError("Payment must be completed before the clinical assessment",
                                    current_state=payment_status)
        if consultation.status != ConsultationStatus.payment_confirmed:
            raise PreconditionError("Clinical assessment has already been collected for this consultation",
                                    current_state=consultation.status.value)
        return consultation

    def _attach_assessment(self, db: Session, consultation: models.Consultation, patient_id: int,
                           assessment: Dict[str, Any], diagnosis: AIDiagnosis, ip_address: Optional[str],
                           user_agent: Optional[str]) -> Dict[str, Any]:
        consultation.structured_assessment_input = assessment
        consultation.ai_agent_output = diagnosis.to_json()
        now = self.clock()
        apply_consultation_status(consultation, ConsultationStatus.clinical_assessment_pending, changed_by=patient_id,
                                  reason="Structured assessment submitted", source="patient",
                                  trigger="collect_structured_assessment", now=now)
        apply_consultation_status(consultation, ConsultationStatus.clinical_assessment_complete, changed_by=patient_id,
                                  reason="AI diagnosis attached", source="ai",
                                  trigger="collect_structured_assessment", now=now)
        crud.save_consultation(db, consultation)

        safe_record(self.audit, AuditEvent(
            action="STRUCTURED_ASSESSMENT_COLLECTED", actor_id=patient_id, resource_type="consultation",
            resource_id=consultation.consultation_id,
            details={"isFallback": diagnosis.is_fallback, "modelVersion": diagnosis.model_version},
            ip_address=ip_address, user_agent=user_agent,
        ))
        return {
            "consultationId": consultation.consultation_id,
            "clinicalSessionId": consultation.clinical_session_id,
            "status": consultation.status.value,
            "diagnosis": diagnosis.to_json(),
        }

    # ==================== STATUS & READS ====================

    def get_consultation(self, db: Session, consultation_id: str, user: models.User) -> models.Consultation:
        consultation = crud.get_consultation(db, consultation_id)
        if consultation is None:
            raise NotFoundError(f"Consultation {consultation_id} not found")
        ensure_can_view(consultation, user)
        return consultation

    def list_patient_consultations(self, db: Session, patient_id: int, user: models.User,
                                   skip: int = 0, limit: int = 20) -> List[models.Consultation]:
        if user.role == UserRole.patient and user.id != patient_id:
            raise PermissionDeniedError("Patients can only list their own consultations")
        consultations = crud.get_consultations_for_patient(db, patient_id, skip=skip, limit=limit)
        if user.role == UserRole.doctor:
            consultations = [c for c in consultations if c.doctor_id == user.id]
        return consultations

    def update_consultation_status(self, db: Session, consultation_id: str, new_status: ConsultationStatus,
                                   user: models.User, reason: Optional[str] = None, notes: Optional[str] = None,
                                   ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> StatusUpdateResponse:
        consultation = self.get_consultation(db, consultation_id, user)
        if user.role == UserRole.patient and new_status != ConsultationStatus.cancelled:
            raise PermissionDeniedError("Patients may only cancel their consultation")
        ensure_consultation_transition(consultation.status, new_status)
        if new_status == ConsultationStatus.refunded:
            payment_id = (consultation.payment_info or {}).get("paymentId")
            raise PreconditionError(
                f"Refunds must go through POST /payments/{payment_id}/refund so the payment is returned",
                current_state=consultation.status.value,
                details={"paymentId": payment_id},
            )
        if new_status == ConsultationStatus.completed and consultation.prescription_status != PrescriptionStatus.sent:
            raise PreconditionError(
                "The prescription must be sent before completing the consultation",
                current_state=PrescriptionStatus(consultation.prescription_status).value,
            )

        previous = consultation.status
        apply_consultation_status(consultation, new_status, changed_by=user.id, reason=reason,
                                  source=user.role.value, trigger="update_status", notes=notes, now=self.clock())
        crud.save_consultation(db, consultation)
        logger.info(f"Consultation {consultation_id} moved {previous.value} -> {new_status.value} by user {user.id}")
        safe_record(self.audit, AuditEvent(
            action="CONSULTATION_STATUS_CHANGED", actor_id=user.id, resource_type="consultation",
            resource_id=consultation_id, details={"from": previous.value, "to": new_status.value, "reason": reason},
            ip_address=ip_address, user_agent=user_agent,
        ))
        return StatusUpdateResponse(
            consultation_id=consultation_id,
            status=consultation.status,
            previous_status=previous,
            is_active=consultation.is_active,
        )

    def check_consultation_conflicts(self, db: Session, patient_id: int) -> ConflictReport:
        active = crud.get_active_consultation(db, patient_id)
        pending_session = self.store.get(patient_draft_key(patient_id))
        pending, expired = None, False
        if pending_session:
            has_draft = self.load_draft(pending_session) is not None
            record = self.payments.get_for_session(pending_session)
            if has_draft and record is not None and not self.payments.is_expired(record):
                pending = record if record.payment_status == PaymentStatus.pending else None
            # A pointer whose draft or order has lapsed is superseded on the next selection
            expired = not has_draft or (record is not None and self.payments.is_expired(record))
        return ConflictReport(
            has_active_consultation=active is not None,
            active_consultation_id=active.consultation_id if active else None,
            active_consultation_status=active.status if active else None,
            has_pending_payment=pending is not None,
            pending_session_id=pending_session if pending is not None else None,
            pending_payment_id=pending.payment_id if pending is not None else None,
            has_expired_draft=expired,
        )

    # ==================== REFUNDS ====================

    async def refund_payment(self, db: Session, payment_id: str, user: models.User, amount: Optional[int] = None,
                             reason: Optional[str] = None, ip_address: Optional[str] = None,
                             user_agent: Optional[str] = None) -> Dict[str, Any]:
        record, consultation = await self.run_blocking(self._refundable, db, payment_id)
        record, refund = await self.payments.refund(record, amount, reason)
        return await self.run_blocking(
            self._record_refund, db, record, refund, consultation, user, reason, ip_address, user_agent,
        )

    def _refundable(self, db: Session, payment_id: str) -> Tuple[PaymentRecord, Optional[models.Consultation]]:
        record = self.payments.get_by_payment_id(payment_id)
        if record is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        consultation = crud.get_consultation_by_session(db, record.session_id)
        if consultation is not None:
            ensure_consultation_transition(consultation.status, ConsultationStatus.refunded)
        return record, consultation

    def _record_refund(self, db: Session, record: PaymentRecord, refund: RefundResult,
                       consultation: Optional[models.Consultation], user: models.User, reason: Optional[str],
                       ip_address: Optional[str], user_agent: Optional[str]) -> Dict[str, Any]:
        payment_id = record.payment_id
        if consultation is not None:
            consultation.payment_info = dict(
                consultation.payment_info or {},
                paymentStatus=PaymentStatus.refunded.value,
                refundId=refund.refund_id,
                refundedAt=record.refunded_at.isoformat() if record.refunded_at else None,
            )
            apply_consultation_status(consultation, ConsultationStatus.refunded, changed_by=user.id, reason=reason,
                                      source="admin", trigger="refund", now=self.clock())
            crud.save_consultation(db, consultation)

        safe_record(self.audit, AuditEvent(
            action="PAYMENT_REFUNDED", actor_id=user.id, resource_type="payment", resource_id=payment_id,
            details={"refundId": refund.refund_id, "amount": refund.amount, "reason": reason},
            ip_address=ip_address, user_agent=user_agent,
        ))
        return {
            "paymentId": payment_id,
            "refundId": refund.refund_id,
            "amount": refund.amount if refund.amount is not None else record.amount,
            "status": refund.status,
            "consultationId": consultation.consultation_id if consultation else None,
        }
