# tenderly/routers/payments.py
from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from typing import Optional, Dict, Any

from .. import schemas, security, models
from ..database import get_db
from ..dependencies import get_lifecycle_manager, get_payment_service
from ..errors import NotFoundError, PermissionDeniedError
from ..services.consultation_service import ConsultationLifecycleManager
from ..services.payment_service import PaymentService

router = APIRouter(
    prefix="/payments",
    tags=["Payments"],
    responses={404: {"description": "Not found"}},
)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
) -> Dict[str, Any]:
    """Gateway callback. Authenticated by the body signature, not by a bearer token."""
    body = await request.body()
    return await manager.handle_payment_webhook(db, body, x_razorpay_signature)


@router.get("/{payment_id}", response_model=schemas.PaymentDetailsResponse)
async def get_payment(
    payment_id: str,
    current_user: models.User = Depends(security.get_current_user),
    payments: PaymentService = Depends(get_payment_service),
):
    record = await run_in_threadpool(payments.get_by_payment_id, payment_id)
    if record is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    if current_user.role != models.UserRole.admin and record.patient_id != current_user.id:
        raise PermissionDeniedError("You do not have access to this payment")
    return await payments.get_details(payment_id)


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    body: schemas.RefundRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    manager: ConsultationLifecycleManager = Depends(get_lifecycle_manager),
) -> Dict[str, Any]:
    return await manager.refund_payment(db, payment_id, current_user, amount=body.amount, reason=body.reason,
                                        **security.client_info(request))
