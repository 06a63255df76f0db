# tests/test_consultation_lifecycle.py
import asyncio
import json
import threading

import httpx
import pytest

from tenderly import crud
from tenderly.errors import (
    ConflictError, ExternalServiceError, InvalidSignatureError, InvalidTransitionError, NotFoundError,
    PaymentExpiredError, PaymentVerificationError, PermissionDeniedError, PreconditionError,
)
from tenderly.models import ConsultationStatus, ConsultationType, PaymentStatus
from tenderly.schemas import (
    ConsultationDraft, DiagnosisUpdateRequest, PaymentConfirmationResponse, VerificationResult,
)
from tenderly.services.ai_diagnosis import AIDiagnosisClient
from tenderly.services.consultation_service import (
    ConsultationLifecycleManager, draft_key, payment_lock_key,
)
from tenderly.services.payment_providers import MockPaymentProvider, RazorpayPaymentProvider
from tenderly.services.payment_service import PaymentService

from conftest import ai_transport, assessment, no_sleep, run_inline


@pytest.mark.asyncio
async def test_chat_consultation_is_created_on_payment(lifecycle, db_session, patient, doctor, audit):
    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    assert record.amount == 150
    assert record.currency == "INR"
    assert record.payment_status == PaymentStatus.pending

    confirmation = await lifecycle.mock_complete_payment(db_session, "session-0001", patient_id=patient.id)
    consultation = crud.get_consultation(db_session, confirmation.consultation_id)

    assert consultation.status == ConsultationStatus.payment_confirmed
    assert consultation.is_active is True
    assert consultation.payment_info["paymentStatus"] == "completed"
    assert consultation.payment_info["amount"] == 150
    assert consultation.clinical_session_id.startswith("CS-")
    assert consultation.doctor_id == doctor.id
    assert [h["status"] for h in consultation.status_history] == ["payment_confirmed"]
    assert "PAYMENT_CONFIRMED" in audit.actions()

    # the draft is consumed by the conversion
    assert lifecycle.load_draft("session-0001") is None


@pytest.mark.asyncio
async def test_symptoms_carry_into_the_consultation(lifecycle, db_session, patient):
    symptoms = {"primary": "irregular periods", "duration": "6 months"}
    result = await lifecycle.record_symptoms(db_session, patient.id, "session-0001", symptoms)
    assert result["aiDiagnosis"]["possibleDiagnoses"][0]["name"] == "Polycystic ovary syndrome"
    assert result["expiresInSeconds"] == 900

    await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.video)
    confirmation = await lifecycle.mock_complete_payment(db_session, "session-0001", patient_id=patient.id)
    consultation = crud.get_consultation(db_session, confirmation.consultation_id)

    assert consultation.detailed_symptoms == symptoms
    assert consultation.consultation_type == ConsultationType.video
    assert consultation.payment_info["amount"] == 250


@pytest.mark.asyncio
async def test_confirming_twice_returns_the_same_consultation(lifecycle, payment_service, db_session, patient):
    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    first = await lifecycle.confirm_payment(db_session, "session-0001", record.payment_id, patient_id=patient.id)
    second = await lifecycle.confirm_payment(db_session, "session-0001", record.payment_id, patient_id=patient.id)

    assert first.already_confirmed is False
    assert second.already_confirmed is True
    assert second.consultation_id == first.consultation_id
    assert second.clinical_session_id == first.clinical_session_id
    assert crud.count_active_consultations(db_session, patient.id) == 1
    assert payment_service.get_for_session("session-0001").payment_status == PaymentStatus.completed


@pytest.mark.asyncio
async def test_confirming_with_another_payment_id_conflicts(lifecycle, db_session, patient):
    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    await lifecycle.confirm_payment(db_session, "session-0001", record.payment_id)

    with pytest.raises(ConflictError):
        await lifecycle.confirm_payment(db_session, "session-0001", "PAY-SOMETHINGELSE")


@pytest.mark.asyncio
async def test_concurrent_sessions_activate_at_most_one(payment_service, store, resolver, ai_client, settings, audit,
                                                         db_session, patient, clock):
    # both confirmations share one test Session, so their database work stays on the loop thread
    lifecycle = ConsultationLifecycleManager(store, payment_service, resolver, ai_client, settings, audit=audit,
                                             clock=clock, run_blocking=run_inline)
    records = []
    for session_id in ("session-A001", "session-B001"):
        draft = ConsultationDraft(session_id=session_id, patient_id=patient.id, consultation_type=ConsultationType.chat,
                                  created_at=clock(), updated_at=clock())
        store.set(draft_key(session_id), draft.to_json(), 900)
        records.append(await payment_service.create_payment(session_id, patient.id, ConsultationType.chat))

    results = await asyncio.gather(
        *(lifecycle.confirm_payment(db_session, r.session_id, r.payment_id) for r in records),
        return_exceptions=True,
    )

    confirmed = [r for r in results if isinstance(r, PaymentConfirmationResponse)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(confirmed) == 1
    assert len(conflicts) == 1
    assert confirmed[0].consultation_id in conflicts[0].message
    assert crud.count_active_consultations(db_session, patient.id) == 1

    loser = next(r for r in records if r.session_id != confirmed[0].session_id)
    assert payment_service.get_for_session(loser.session_id).payment_status == PaymentStatus.pending


@pytest.mark.asyncio
async def test_held_lock_rejects_confirmation(lifecycle, store, db_session, patient):
    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    token = store.acquire_lock(payment_lock_key("session-0001"), 30)
    assert token

    with pytest.raises(ConflictError) as exc:
        await lifecycle.confirm_payment(db_session, "session-0001", record.payment_id)
    assert "in progress" in exc.value.message
    assert crud.count_active_consultations(db_session, patient.id) == 0

    store.release_lock(payment_lock_key("session-0001"), token)
    confirmation = await lifecycle.confirm_payment(db_session, "session-0001", record.payment_id)
    assert confirmation.status == ConsultationStatus.payment_confirmed


@pytest.mark.asyncio
async def test_held_lock_after_confirmation_returns_stored_result(lifecycle, store, db_session, patient):
    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    first = await lifecycle.confirm_payment(db_session, "session-0001", record.payment_id)

    store.acquire_lock(payment_lock_key("session-0001"), 30)
    again = await lifecycle.confirm_payment(db_session, "session-0001", record.payment_id)
    assert again.already_confirmed is True
    assert again.consultation_id == first.consultation_id


@pytest.mark.asyncio
async def test_store_and_database_work_runs_off_the_event_loop(lifecycle, store, db_session, patient, monkeypatch):
    loop_thread = threading.get_ident()
    seen = []
    acquire = store.acquire_lock
    insert = crud.insert_active_consultation

    def recording_acquire(key, ttl_seconds):
        seen.append(("lock", threading.get_ident()))
        return acquire(key, ttl_seconds)

    def recording_insert(db, consultation):
        seen.append(("insert", threading.get_ident()))
        return insert(db, consultation)

    monkeypatch.setattr(store, "acquire_lock", recording_acquire)
    monkeypatch.setattr(crud, "insert_active_consultation", recording_insert)

    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    confirmation = await lifecycle.confirm_payment(db_session, "session-0001", record.payment_id)

    assert confirmation.status == ConsultationStatus.payment_confirmed
    assert [name for name, _ in seen] == ["lock", "insert"]
    assert all(ident != loop_thread for _, ident in seen)


class ScriptedGateway(MockPaymentProvider):
    """Mock gateway whose verification outcome is chosen by the test."""

    def __init__(self, status=PaymentStatus.completed, order_expired=False, on_verify=None):
        super().__init__()
        self.status = status
        self.order_expired = order_expired
        self.on_verify = on_verify

    async def verify_payment(self, payment_id, signature=None, order_id=None):
        if self.on_verify is not None:
            await self.on_verify()
        return VerificationResult(payment_id=payment_id, order_id=order_id, status=self.status,
                                  order_expired=self.order_expired, raw={"id": payment_id})


@pytest.fixture
def lifecycle_with(store, resolver, ai_client, settings, audit, clock):
    """Build a lifecycle manager over the given payment provider."""
    def build(provider):
        payments = PaymentService(store, provider, settings, clock=clock)
        return ConsultationLifecycleManager(store, payments, resolver, ai_client, settings, audit=audit, clock=clock)
    return build


@pytest.mark.asyncio
async def test_replay_after_lock_lapse_returns_the_same_consultation(lifecycle_with, store, clock, db_session,
                                                                     patient):
    gateway = ScriptedGateway()
    manager = lifecycle_with(gateway)
    record = await manager.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    replays = []

    async def slow_verification():
        # the first verification outlives the lock and a client retry gets through
        gateway.on_verify = None
        clock.advance(seconds=manager.confirmation_lock_ttl() + 1)
        replays.append(await manager.confirm_payment(db_session, "session-0001", record.payment_id))

    gateway.on_verify = slow_verification
    first = await manager.confirm_payment(db_session, "session-0001", record.payment_id)

    assert replays[0].already_confirmed is False
    assert first.already_confirmed is True
    assert first.consultation_id == replays[0].consultation_id
    assert crud.count_active_consultations(db_session, patient.id) == 1
    assert manager.payments.get_for_session("session-0001").payment_status == PaymentStatus.completed
    # the lapsed holder left the lock free rather than deleting someone else's
    assert store.acquire_lock(payment_lock_key("session-0001"), 30)


def test_lock_outlives_the_slowest_gateway_verification(lifecycle_with):
    gateway = RazorpayPaymentProvider("rzp_test_key", "rzp_test_secret", timeout=15.0, verify_retries=2)
    manager = lifecycle_with(gateway)

    assert manager.confirmation_lock_ttl() > gateway.max_verification_seconds


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [PaymentStatus.pending, PaymentStatus.failed])
async def test_unpaid_gateway_status_creates_nothing(lifecycle_with, db_session, patient, status):
    manager = lifecycle_with(ScriptedGateway(status=status))
    record = await manager.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)

    with pytest.raises(PaymentVerificationError) as exc:
        await manager.confirm_payment(db_session, "session-0001", record.payment_id, gateway_transaction_id="pay_1")

    assert exc.value.current_state == status.value
    assert crud.count_active_consultations(db_session, patient.id) == 0
    assert manager.payments.get_for_session("session-0001").payment_status == PaymentStatus.pending
    assert manager.load_draft("session-0001") is not None


@pytest.mark.asyncio
async def test_order_lapsed_at_the_gateway(lifecycle_with, db_session, patient):
    manager = lifecycle_with(ScriptedGateway(status=PaymentStatus.pending, order_expired=True))
    record = await manager.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)

    with pytest.raises(PaymentExpiredError):
        await manager.confirm_payment(db_session, "session-0001", record.payment_id, gateway_transaction_id="pay_1")
    assert crud.count_active_consultations(db_session, patient.id) == 0


@pytest.mark.asyncio
async def test_forged_gateway_signature_creates_nothing(lifecycle_with, db_session, patient):
    def handler(request):
        assert request.url.path == "/v1/orders", "only order creation may reach the gateway"
        return httpx.Response(200, json={"id": "order_rzp1", "currency": "INR", "status": "created"})

    manager = lifecycle_with(RazorpayPaymentProvider("rzp_test_key", "rzp_test_secret",
                                                     base_url="https://gateway.test/v1",
                                                     transport=httpx.MockTransport(handler)))
    record = await manager.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)

    with pytest.raises(InvalidSignatureError):
        await manager.confirm_payment(db_session, "session-0001", record.payment_id,
                                      gateway_transaction_id="pay_rzp1", metadata={"razorpaySignature": "0" * 64})

    assert crud.count_active_consultations(db_session, patient.id) == 0
    assert manager.payments.get_for_session("session-0001").payment_status == PaymentStatus.pending


@pytest.mark.asyncio
async def test_pending_payment_blocks_a_second_session(lifecycle, db_session, patient, clock):
    await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    clock.advance(minutes=5)

    with pytest.raises(ConflictError) as exc:
        await lifecycle.select_consultation_type(db_session, patient.id, "session-0002", ConsultationType.chat)
    assert exc.value.details["pendingSessionId"] == "session-0001"


@pytest.mark.asyncio
async def test_reselecting_the_same_type_reuses_the_order(lifecycle, db_session, patient):
    first = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    again = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    other = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.tele)

    assert again.payment_id == first.payment_id
    assert other.payment_id != first.payment_id
    assert other.amount == 200


@pytest.mark.asyncio
async def test_expired_draft_is_superseded(lifecycle, db_session, patient, clock):
    await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    clock.advance(minutes=16)

    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0002", ConsultationType.chat)
    assert record.session_id == "session-0002"

    with pytest.raises(PaymentExpiredError):
        await lifecycle.mock_complete_payment(db_session, "session-0001", patient_id=patient.id)

    confirmation = await lifecycle.mock_complete_payment(db_session, "session-0002", patient_id=patient.id)
    assert confirmation.session_id == "session-0002"


@pytest.mark.asyncio
async def test_active_consultation_blocks_new_selection(lifecycle, db_session, patient, paid_consultation):
    consultation = await paid_consultation()

    with pytest.raises(ConflictError) as exc:
        await lifecycle.select_consultation_type(db_session, patient.id, "session-0002", ConsultationType.chat)
    assert exc.value.message == (
        f"Patient already has an active consultation: {consultation.consultation_id} (status: payment_confirmed)"
    )
    assert exc.value.current_state == "payment_confirmed"


@pytest.mark.asyncio
async def test_session_of_another_patient_is_rejected(lifecycle, db_session, patient, other_patient):
    await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)

    with pytest.raises(PermissionDeniedError):
        await lifecycle.select_consultation_type(db_session, other_patient.id, "session-0001", ConsultationType.chat)
    with pytest.raises(PermissionDeniedError):
        await lifecycle.mock_complete_payment(db_session, "session-0001", patient_id=other_patient.id)


@pytest.mark.asyncio
async def test_unknown_session_payment_is_expired(lifecycle, db_session):
    with pytest.raises(PaymentExpiredError):
        await lifecycle.confirm_payment(db_session, "session-none", "PAY-NONE")


# ==================== WEBHOOK ====================

def webhook_body(event, order_id, payment_id="pay_hook_1"):
    return json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {
            "id": payment_id, "order_id": order_id, "method": "upi", "error_description": "Card declined",
        }}},
    }).encode()


@pytest.mark.asyncio
async def test_captured_webhook_confirms_once(lifecycle, db_session, patient):
    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)

    first = await lifecycle.handle_payment_webhook(db_session, webhook_body("payment.captured", record.order_id), None)
    second = await lifecycle.handle_payment_webhook(db_session, webhook_body("payment.captured", record.order_id), None)

    assert first["status"] == "processed"
    assert second["consultationId"] == first["consultationId"]
    consultation = crud.get_consultation(db_session, first["consultationId"])
    assert consultation.payment_info["gatewayTransactionId"] == "pay_hook_1"
    assert consultation.payment_info["paymentMethod"] == "upi"


@pytest.mark.asyncio
async def test_failed_webhook_marks_the_payment_failed(lifecycle, payment_service, db_session, patient):
    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)

    result = await lifecycle.handle_payment_webhook(db_session, webhook_body("payment.failed", record.order_id), None)
    assert result["status"] == "processed"
    assert payment_service.get_for_session("session-0001").payment_status == PaymentStatus.failed

    with pytest.raises(PaymentVerificationError):
        await lifecycle.confirm_payment(db_session, "session-0001", record.payment_id)


@pytest.mark.asyncio
async def test_webhook_for_unknown_order_is_ignored(lifecycle, db_session):
    result = await lifecycle.handle_payment_webhook(db_session, webhook_body("payment.captured", "order_x"), None)
    assert result == {"status": "ignored", "event": "payment.captured"}


# ==================== STRUCTURED ASSESSMENT ====================

@pytest.mark.asyncio
async def test_structured_assessment_completes_the_clinical_step(lifecycle, db_session, patient, paid_consultation):
    consultation = await paid_consultation()

    result = await lifecycle.collect_structured_assessment(db_session, patient.id, assessment())
    db_session.refresh(consultation)

    assert result["status"] == "clinical_assessment_complete"
    assert result["clinicalSessionId"] == consultation.clinical_session_id
    assert consultation.status == ConsultationStatus.clinical_assessment_complete
    assert consultation.structured_assessment_input["primary_complaint"]["main_symptom"] == "Irregular periods"
    assert consultation.ai_agent_output["possibleDiagnoses"][0]["name"] == "Polycystic ovary syndrome"
    assert [h["status"] for h in consultation.status_history] == [
        "payment_confirmed", "clinical_assessment_pending", "clinical_assessment_complete",
    ]


@pytest.mark.asyncio
async def test_assessment_requires_a_paid_consultation(lifecycle, db_session, patient):
    with pytest.raises(NotFoundError):
        await lifecycle.collect_structured_assessment(db_session, patient.id, assessment())


@pytest.mark.asyncio
async def test_second_assessment_is_a_precondition_failure(lifecycle, db_session, patient, assessed_consultation):
    consultation = await assessed_consultation()
    with pytest.raises(PreconditionError) as exc:
        await lifecycle.collect_structured_assessment(
            db_session, patient.id, assessment(clinical_session_id=consultation.clinical_session_id))
    assert exc.value.current_state == "clinical_assessment_complete"


@pytest.mark.asyncio
async def test_assessment_of_another_patients_consultation(lifecycle, db_session, other_patient, paid_consultation):
    consultation = await paid_consultation()
    with pytest.raises(PermissionDeniedError):
        await lifecycle.collect_structured_assessment(
            db_session, other_patient.id, assessment(clinical_session_id=consultation.clinical_session_id))


@pytest.mark.asyncio
async def test_rejected_ai_call_leaves_the_consultation_untouched(store, payment_service, resolver, settings, clock,
                                                                  db_session, patient, paid_consultation):
    consultation = await paid_consultation()
    rejecting = AIDiagnosisClient("http://ai.test", "ai-secret", transport=ai_transport({"detail": "bad"}, 400),
                                  sleep=no_sleep)
    manager = ConsultationLifecycleManager(store, payment_service, resolver, rejecting, settings, clock=clock)

    with pytest.raises(ExternalServiceError):
        await manager.collect_structured_assessment(db_session, patient.id, assessment())

    db_session.refresh(consultation)
    assert consultation.status == ConsultationStatus.payment_confirmed
    assert consultation.structured_assessment_input is None
    assert len(consultation.status_history) == 1


@pytest.mark.asyncio
async def test_unavailable_ai_service_yields_fallback_diagnosis(store, payment_service, resolver, settings, clock,
                                                                db_session, patient, paid_consultation):
    await paid_consultation()
    failing = AIDiagnosisClient("http://ai.test", "ai-secret", transport=ai_transport({}, 503), sleep=no_sleep)
    manager = ConsultationLifecycleManager(store, payment_service, resolver, failing, settings, clock=clock)

    result = await manager.collect_structured_assessment(db_session, patient.id, assessment())

    assert result["status"] == "clinical_assessment_complete"
    assert result["diagnosis"]["isFallback"] is True
    assert result["diagnosis"]["modelVersion"] == "fallback-v1.0"


# ==================== STATUS, READS, CONFLICTS ====================

@pytest.mark.asyncio
async def test_patient_may_only_cancel(lifecycle, db_session, patient, paid_consultation):
    consultation = await paid_consultation()

    with pytest.raises(PermissionDeniedError):
        lifecycle.update_consultation_status(db_session, consultation.consultation_id,
                                             ConsultationStatus.clinical_assessment_pending, patient)

    response = lifecycle.update_consultation_status(db_session, consultation.consultation_id,
                                                    ConsultationStatus.cancelled, patient, reason="Changed my mind")
    assert response.status == ConsultationStatus.cancelled
    assert response.previous_status == ConsultationStatus.payment_confirmed
    assert response.is_active is False

    # the active slot is free again
    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0002", ConsultationType.chat)
    assert record.session_id == "session-0002"


@pytest.mark.asyncio
async def test_illegal_status_change_is_rejected(lifecycle, db_session, doctor, paid_consultation):
    consultation = await paid_consultation()

    with pytest.raises(InvalidTransitionError) as exc:
        lifecycle.update_consultation_status(db_session, consultation.consultation_id,
                                             ConsultationStatus.completed, doctor)
    assert exc.value.current_state == "payment_confirmed"
    db_session.refresh(consultation)
    assert consultation.status == ConsultationStatus.payment_confirmed


@pytest.mark.asyncio
async def test_refund_status_goes_through_the_refund_path(lifecycle, payment_service, db_session, admin,
                                                          paid_consultation):
    consultation = await paid_consultation()
    payment_id = consultation.payment_info["paymentId"]

    with pytest.raises(PreconditionError) as exc:
        lifecycle.update_consultation_status(db_session, consultation.consultation_id,
                                             ConsultationStatus.refunded, admin)
    assert f"/payments/{payment_id}/refund" in exc.value.message
    assert exc.value.details == {"paymentId": payment_id}
    db_session.refresh(consultation)
    assert consultation.status == ConsultationStatus.payment_confirmed
    assert consultation.is_active is True

    # the real refund is still available
    await lifecycle.refund_payment(db_session, payment_id, admin, reason="Doctor unavailable")
    db_session.refresh(consultation)
    assert consultation.status == ConsultationStatus.refunded
    assert consultation.payment_info["paymentStatus"] == "refunded"
    assert payment_service.get_by_payment_id(payment_id).payment_status == PaymentStatus.refunded


@pytest.mark.asyncio
async def test_completion_requires_a_sent_prescription(lifecycle, prescriptions, db_session, doctor,
                                                       assessed_consultation):
    consultation = await assessed_consultation()
    cid = consultation.consultation_id
    prescriptions.update_diagnosis(db_session, cid, doctor, DiagnosisUpdateRequest(primary_diagnosis="PCOS"))

    with pytest.raises(PreconditionError) as exc:
        lifecycle.update_consultation_status(db_session, cid, ConsultationStatus.completed, doctor)
    assert exc.value.current_state == "diagnosis_modification"
    db_session.refresh(consultation)
    assert consultation.status == ConsultationStatus.in_progress
    assert consultation.is_active is True


@pytest.mark.asyncio
async def test_consultation_visibility(lifecycle, db_session, patient, other_patient, doctor, evening_doctor, admin,
                                       paid_consultation):
    consultation = await paid_consultation()
    cid = consultation.consultation_id

    assert lifecycle.get_consultation(db_session, cid, patient).consultation_id == cid
    assert lifecycle.get_consultation(db_session, cid, doctor).consultation_id == cid
    assert lifecycle.get_consultation(db_session, cid, admin).consultation_id == cid
    for outsider in (other_patient, evening_doctor):
        with pytest.raises(PermissionDeniedError):
            lifecycle.get_consultation(db_session, cid, outsider)
    with pytest.raises(NotFoundError):
        lifecycle.get_consultation(db_session, "CONS-MISSING", admin)

    assert [c.consultation_id for c in lifecycle.list_patient_consultations(db_session, patient.id, patient)] == [cid]
    assert lifecycle.list_patient_consultations(db_session, patient.id, evening_doctor) == []
    with pytest.raises(PermissionDeniedError):
        lifecycle.list_patient_consultations(db_session, patient.id, other_patient)


@pytest.mark.asyncio
async def test_conflict_report(lifecycle, db_session, patient, clock):
    report = lifecycle.check_consultation_conflicts(db_session, patient.id)
    assert not report.has_active_consultation and not report.has_pending_payment and not report.has_expired_draft

    record = await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    report = lifecycle.check_consultation_conflicts(db_session, patient.id)
    assert report.has_pending_payment
    assert report.pending_session_id == "session-0001"
    assert report.pending_payment_id == record.payment_id

    # reselecting refreshes the draft but not the order expiry
    clock.advance(minutes=10)
    await lifecycle.select_consultation_type(db_session, patient.id, "session-0001", ConsultationType.chat)
    clock.advance(minutes=6)
    report = lifecycle.check_consultation_conflicts(db_session, patient.id)
    assert not report.has_pending_payment
    assert report.has_expired_draft

    await lifecycle.select_consultation_type(db_session, patient.id, "session-0002", ConsultationType.chat)
    await lifecycle.mock_complete_payment(db_session, "session-0002", patient_id=patient.id)
    report = lifecycle.check_consultation_conflicts(db_session, patient.id)
    assert report.has_active_consultation
    assert report.active_consultation_status == ConsultationStatus.payment_confirmed


# ==================== REFUNDS ====================

@pytest.mark.asyncio
async def test_refund_closes_the_consultation(lifecycle, payment_service, db_session, admin, paid_consultation, audit):
    consultation = await paid_consultation()
    payment_id = consultation.payment_info["paymentId"]

    result = await lifecycle.refund_payment(db_session, payment_id, admin, reason="Doctor unavailable")
    db_session.refresh(consultation)

    assert result["refundId"].startswith("mock_refund_")
    assert result["amount"] == 150
    assert consultation.status == ConsultationStatus.refunded
    assert consultation.is_active is False
    assert consultation.payment_info["paymentStatus"] == "refunded"
    assert payment_service.get_by_payment_id(payment_id).payment_status == PaymentStatus.refunded
    assert "PAYMENT_REFUNDED" in audit.actions()

    with pytest.raises(InvalidTransitionError):
        await lifecycle.refund_payment(db_session, payment_id, admin)


@pytest.mark.asyncio
async def test_refund_after_assessment_is_rejected(lifecycle, payment_service, db_session, admin, assessed_consultation):
    consultation = await assessed_consultation()
    payment_id = consultation.payment_info["paymentId"]

    with pytest.raises(InvalidTransitionError):
        await lifecycle.refund_payment(db_session, payment_id, admin)
    assert payment_service.get_by_payment_id(payment_id).payment_status == PaymentStatus.completed


@pytest.mark.asyncio
async def test_refund_of_unknown_payment(lifecycle, db_session, admin):
    with pytest.raises(NotFoundError):
        await lifecycle.refund_payment(db_session, "PAY-UNKNOWN", admin)
