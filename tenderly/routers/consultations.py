# tenderly/routers/consultations.py
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
from typing import List, Dict, Any

from .. import schemas, security, models
from ..config import get_settings
from ..database import get_db
from ..dependencies import get_lifecycle_manager, get_prescription_manager
from ..limiter import limiter
from ..services.consultation_service import ConsultationLifecycleManager
from ..services.prescription_service import PrescriptionWorkflowManager

router = APIRouter(
    prefix="/consultations",
    tags=["Consultations"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)

PAYMENT_RATE_LIMIT = get_settings().payment_rate_limit


def _order_response(record: schemas.PaymentRecord) -> schemas.PaymentOrderResponse:
    return schemas.PaymentOrderResponse(
        payment_id=record.payment_id,
        amount=record.amount,
        currency=record.currency,
        status=record.payment_status,
        payment_url=record.payment_url,
        expires_at=record.expires_at,
    )


@router.post("/symptoms/collect")
async def collect_symptoms(
    body: schemas.SymptomCollectRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_patient),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
) -> Dict[str, Any]:
    """Store symptoms on the session draft and return a preliminary AI diagnosis."""
    return await manager.record_symptoms(db, current_user.id, body.session_id, body.symptoms,
                                         **security.client_info(request))


@router.post("/select-consultation", response_model=schemas.PaymentOrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def select_consultation(
    body: schemas.SelectConsultationRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_patient),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Choose a consultation type for the session and open a payment order.
    Fails with 409 while another consultation or payment is live for the patient.
    """
    record = await manager.select_consultation_type(
        db, current_user.id, body.session_id, body.selected_consultation_type, **security.client_info(request)
    )
    return _order_response(record)


@router.post("/confirm-payment", response_model=schemas.PaymentConfirmationResponse)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def confirm_payment(
    body: schemas.ConfirmPaymentRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_patient),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
):
    """Idempotent: replays with the same session and payment return the original result."""
    return await manager.confirm_payment(
        db,
        body.session_id,
        body.payment_id,
        gateway_transaction_id=body.gateway_transaction_id,
        payment_method=body.payment_method,
        metadata=body.payment_metadata,
        patient_id=current_user.id,
        **security.client_info(request),
    )


@router.post("/mock-payment/{session_id}", response_model=schemas.PaymentConfirmationResponse)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def mock_payment(
    session_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_patient),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
):
    return await manager.mock_complete_payment(db, session_id, patient_id=current_user.id,
                                               **security.client_info(request))


@router.get("/conflicts", response_model=schemas.ConflictReport)
def check_conflicts(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_patient),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.check_consultation_conflicts(db, current_user.id)


@router.post("/symptoms/collect-structured")
async def collect_structured_assessment(
    body: schemas.StructuredAssessmentRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_patient),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
) -> Dict[str, Any]:
    """Attach the structured assessment and AI diagnosis to the paid consultation."""
    return await manager.collect_structured_assessment(db, current_user.id, body, **security.client_info(request))


@router.get("/patient/{patient_id}", response_model=List[schemas.ConsultationResponse])
def get_consultations_for_patient_endpoint(
    patient_id: int,
    skip: int = 0,
    limit: int = 20,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
):
    """Consultations for a patient, newest first."""
    return manager.list_patient_consultations(db, patient_id, current_user, skip=skip, limit=limit)


@router.get("/{consultation_id}", response_model=schemas.ConsultationResponse)
def get_consultation_endpoint(
    consultation_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.get_consultation(db, consultation_id, current_user)


@router.patch("/{consultation_id}/status", response_model=schemas.StatusUpdateResponse)
def update_consultation_status(
    consultation_id: str,
    body: schemas.StatusUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
):
    return manager.update_consultation_status(
        db, consultation_id, body.status, current_user, reason=body.reason, notes=body.notes,
        **security.client_info(request),
    )


@router.post("/{consultation_id}/complete", response_model=schemas.PrescriptionActionResponse)
def complete_consultation(
    consultation_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    """Close the consultation once its prescription has been sent."""
    return manager.complete_consultation(db, consultation_id, current_user, **security.client_info(request))
