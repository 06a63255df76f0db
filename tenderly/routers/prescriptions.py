# tenderly/routers/prescriptions.py
from io import BytesIO
from typing import List, Dict, Any, Optional

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from .. import schemas, security, models
from ..database import get_db
from ..dependencies import get_prescription_manager
from ..services.prescription_service import PrescriptionWorkflowManager

router = APIRouter(
    prefix="/consultations/{consultation_id}/prescription",
    tags=["Prescriptions"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)

documents_router = APIRouter(
    prefix="/prescriptions",
    tags=["Prescriptions"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


def _pdf_response(pdf: bytes, filename: str, disposition: str = "inline") -> StreamingResponse:
    return StreamingResponse(BytesIO(pdf), media_type="application/pdf", headers={
        "Content-Disposition": f"{disposition}; filename={filename}"
    })


@router.get("/workspace", response_model=schemas.WorkspaceResponse)
def get_workspace(
    consultation_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor_or_admin),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    """Everything the doctor needs to write the prescription: assessment, AI output, diagnosis, draft."""
    return manager.get_workspace(db, consultation_id, current_user)


@router.put("/diagnosis", response_model=schemas.PrescriptionActionResponse)
def update_diagnosis(
    consultation_id: str,
    body: schemas.DiagnosisUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    return manager.update_diagnosis(db, consultation_id, current_user, body, **security.client_info(request))


@router.put("/diagnosis/modify", response_model=schemas.PrescriptionActionResponse)
def modify_diagnosis(
    consultation_id: str,
    request: Request,
    body: Optional[schemas.ModifyDiagnosisRequest] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    """Edit the AI diagnosis; an empty body copies it unchanged."""
    return manager.modify_diagnosis(db, consultation_id, current_user, body or schemas.ModifyDiagnosisRequest(),
                                    **security.client_info(request))


@router.put("/draft", response_model=schemas.PrescriptionActionResponse)
def save_draft(
    consultation_id: str,
    body: schemas.PrescriptionDraftRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    return manager.save_prescription_draft(db, consultation_id, current_user, body, **security.client_info(request))


@router.post("/generate-preview", response_model=schemas.PrescriptionActionResponse)
def generate_preview(
    consultation_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    return manager.generate_preview(db, consultation_id, current_user, **security.client_info(request))


@router.post("/request-revision", response_model=schemas.PrescriptionActionResponse)
def request_revision(
    consultation_id: str,
    request: Request,
    reason: Optional[str] = Body(default=None, embed=True),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    return manager.request_revision(db, consultation_id, current_user, reason=reason,
                                    **security.client_info(request))


@router.post("/sign-and-send", response_model=schemas.SignAndSendResponse)
def sign_and_send(
    consultation_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    """Sign the reviewed prescription, issue it, and send it to the patient."""
    return manager.sign_and_send(db, consultation_id, current_user, **security.client_info(request))


@router.get("/pdf/preview")
def preview_pdf(
    consultation_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor_or_admin),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    pdf = manager.stream_draft_pdf(db, consultation_id, current_user)
    return _pdf_response(pdf, f"{consultation_id}-draft.pdf")


@router.get("/pdf/download")
def download_pdf(
    consultation_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    pdf, filename = manager.download_signed_pdf(db, consultation_id, current_user)
    return _pdf_response(pdf, filename, disposition="attachment")


@router.get("/history")
def get_history(
    consultation_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
) -> List[Dict[str, Any]]:
    return manager.get_prescription_history(db, consultation_id, current_user)


@documents_router.patch("/{prescription_id}/status", response_model=schemas.PrescriptionResponse)
def update_prescription_status(
    prescription_id: str,
    body: schemas.PrescriptionStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor_or_admin),
    manager: PrescriptionWorkflowManager = Depends(get_prescription_manager),
):
    """Issued prescriptions may only move to dispensed, expired or cancelled."""
    return manager.update_prescription_status(db, prescription_id, current_user, body.status)
