# tenderly/services/prescription_service.py
"""Doctor-side prescription authoring: diagnosis, draft, preview, signature, send."""
import json
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Callable, Tuple

import structlog
from pydantic import ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from .. import crud, models
from ..audit import AuditEvent, AuditSink, safe_record
from ..config import Settings
from ..errors import (
    ConflictError, IncompleteDataError, NotFoundError, PermissionDeniedError, PreconditionError,
)
from ..models import ConsultationStatus as CS, PrescriptionStatus as PS, UserRole
from ..schemas import (
    AIDiagnosis, DiagnosisUpdateRequest, ModifyDiagnosisRequest, PrescriptionActionResponse,
    PrescriptionDraftRequest, PrescriptionResponse, SignAndSendResponse, WorkspaceResponse,
)
from ..transitions import apply_consultation_status, apply_prescription_status, ensure_prescription_transition
from .consultation_service import ensure_can_view
from .file_storage import DRAFTS_FOLDER, SIGNED_FOLDER, FileStorage, sha256_hex
from .pdf_service import render_prescription_pdf
from .signature_service import SignatureService

logger = logging.getLogger(__name__)
event_log = structlog.get_logger("tenderly.prescriptions")

REQUIRED_MEDICATION_FIELDS = ("name", "dosage", "frequency", "duration", "instructions")

# Consultation steps taken automatically on the first prescription-side write
_AUTO_ADVANCE = {
    CS.clinical_assessment_complete: CS.doctor_assigned,
    CS.doctor_review_pending: CS.doctor_assigned,
    CS.doctor_assigned: CS.in_progress,
}


def _json_equal(a: Any, b: Any) -> bool:
    return json.dumps(a, sort_keys=True, default=str) == json.dumps(b, sort_keys=True, default=str)


def new_prescription_id(now: datetime) -> str:
    return f"RX-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


class PrescriptionWorkflowManager:

    def __init__(self, storage: FileStorage, signer: SignatureService, settings: Settings,
                 audit: Optional[AuditSink] = None, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.signer = signer
        self.settings = settings
        self.audit = audit
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ==================== HELPERS ====================

    def _load(self, db: Session, consultation_id: str) -> models.Consultation:
        consultation = crud.get_consultation(db, consultation_id)
        if consultation is None:
            raise NotFoundError(f"Consultation {consultation_id} not found")
        return consultation

    def _load_for_doctor(self, db: Session, consultation_id: str, user: models.User) -> models.Consultation:
        consultation = self._load(db, consultation_id)
        if user.role != UserRole.doctor or consultation.doctor_id != user.id:
            raise PermissionDeniedError("Only the assigned doctor can perform this action")
        return consultation

    def _ensure_workable(self, consultation: models.Consultation) -> None:
        status = CS(consultation.status)
        if status == CS.in_progress or status in _AUTO_ADVANCE:
            return
        raise PreconditionError(
            "Prescription work requires a consultation with a completed clinical assessment",
            current_state=status.value,
        )

    @staticmethod
    def _ensure_in_progress(consultation: models.Consultation) -> None:
        if CS(consultation.status) != CS.in_progress:
            raise PreconditionError(
                "The consultation is no longer in progress",
                current_state=CS(consultation.status).value,
            )

    def _advance_to_in_progress(self, consultation: models.Consultation, user: models.User, now: datetime) -> None:
        while CS(consultation.status) in _AUTO_ADVANCE:
            target = _AUTO_ADVANCE[CS(consultation.status)]
            apply_consultation_status(consultation, target, changed_by=user.id,
                                      reason="Doctor started prescription work", source="doctor",
                                      trigger="prescription_workflow", now=now)

    def _begin(self, consultation: models.Consultation, target: PS, user: models.User, now: datetime) -> None:
        """Validate both machines, then advance the consultation and set the prescription status."""
        self._ensure_workable(consultation)
        ensure_prescription_transition(PS(consultation.prescription_status), target)
        self._advance_to_in_progress(consultation, user, now)
        apply_prescription_status(consultation, target)

    def _append_history(self, consultation: models.Consultation, action: str, user: models.User, now: datetime,
                        details: Optional[Dict[str, Any]] = None, ip_address: Optional[str] = None,
                        user_agent: Optional[str] = None) -> None:
        entry = {
            "action": action,
            "performedBy": user.id,
            "timestamp": now.isoformat(),
            "details": details or {},
            "ipAddress": ip_address,
            "userAgent": user_agent,
        }
        consultation.prescription_history = list(consultation.prescription_history or []) + [entry]

    def _audit(self, action: str, user: models.User, consultation: models.Consultation,
               details: Optional[Dict[str, Any]] = None, ip_address: Optional[str] = None,
               user_agent: Optional[str] = None) -> None:
        safe_record(self.audit, AuditEvent(
            action=action, actor_id=user.id, resource_type="consultation",
            resource_id=consultation.consultation_id, details=details or {},
            ip_address=ip_address, user_agent=user_agent,
        ))

    @staticmethod
    def _ai_baseline(consultation: models.Consultation) -> AIDiagnosis:
        if not consultation.ai_agent_output:
            return AIDiagnosis()
        try:
            return AIDiagnosis.model_validate(consultation.ai_agent_output)
        except ValidationError:
            logger.warning(f"Stored AI output for {consultation.consultation_id} is not decodable; using empty baseline")
            return AIDiagnosis()

    def _action_response(self, consultation: models.Consultation, message: str,
                         pdf: Optional[Dict[str, Any]] = None) -> PrescriptionActionResponse:
        return PrescriptionActionResponse(
            consultation_id=consultation.consultation_id,
            prescription_status=consultation.prescription_status,
            message=message,
            pdf_url=pdf.get("url") if pdf else None,
            pdf_hash=pdf.get("hash") if pdf else None,
        )

    def _document(self, consultation: models.Consultation, now: datetime) -> Dict[str, Any]:
        data = consultation.prescription_data or {}
        return {
            "consultationId": consultation.consultation_id,
            "patientId": consultation.patient_id,
            "patientName": consultation.patient.full_name if consultation.patient else None,
            "doctorId": consultation.doctor_id,
            "doctorName": consultation.doctor.full_name if consultation.doctor else None,
            "date": now.date().isoformat(),
            "diagnosis": consultation.doctor_diagnosis or {},
            "medications": data.get("medications") or [],
            "investigations": data.get("investigations") or [],
            "lifestyleAdvice": data.get("lifestyleAdvice") or [],
            "followUp": data.get("followUp"),
            "additionalNotes": data.get("additionalNotes"),
        }

    # ==================== READS ====================

    def get_workspace(self, db: Session, consultation_id: str, user: models.User) -> WorkspaceResponse:
        consultation = self._load(db, consultation_id)
        if user.role != UserRole.admin and not (user.role == UserRole.doctor and consultation.doctor_id == user.id):
            raise PermissionDeniedError("Only the assigned doctor can open the prescription workspace")
        return WorkspaceResponse.model_validate(consultation)

    def get_prescription_history(self, db: Session, consultation_id: str, user: models.User) -> List[Dict[str, Any]]:
        consultation = self._load(db, consultation_id)
        ensure_can_view(consultation, user)
        return list(consultation.prescription_history or [])

    # ==================== DIAGNOSIS ====================

    def update_diagnosis(self, db: Session, consultation_id: str, user: models.User, request: DiagnosisUpdateRequest,
                         ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> PrescriptionActionResponse:
        consultation = self._load_for_doctor(db, consultation_id, user)
        now = self.clock()
        self._begin(consultation, PS.diagnosis_modification, user, now)

        ai = self._ai_baseline(consultation)
        ai_names = [d.name for d in ai.possible_diagnoses]
        ai_primary = ai_names[0] if ai_names else None
        added = [d for d in request.differential_diagnosis if d not in ai_names]
        removed = [d for d in ai_names[1:] if d not in request.differential_diagnosis]
        changes = []
        if request.primary_diagnosis != ai_primary:
            changes.append("primaryDiagnosis")
        if added or removed:
            changes.append("differentialDiagnosis")
        if request.clinical_reasoning is not None and request.clinical_reasoning != ai.clinical_reasoning:
            changes.append("clinicalReasoning")
        if request.confidence_score is not None and request.confidence_score != ai.confidence_score:
            changes.append("confidenceScore")
        previous = consultation.doctor_diagnosis or {}
        consultation.doctor_diagnosis = dict(
            previous,
            primaryDiagnosis=request.primary_diagnosis,
            differentialDiagnosis=request.differential_diagnosis,
            clinicalReasoning=request.clinical_reasoning,
            confidenceScore=request.confidence_score,
            changesFromAI=changes,
            createdAt=previous.get("createdAt") or now.isoformat(),
            updatedAt=now.isoformat(),
            modifiedBy=user.id,
        )
        self._append_history(consultation, "DIAGNOSIS_UPDATED", user, now,
                             {"changedFields": changes, "addedDifferentials": added, "removedDifferentials": removed},
                             ip_address, user_agent)
        crud.save_consultation(db, consultation)
        self._audit("DIAGNOSIS_UPDATED", user, consultation, ip_address=ip_address, user_agent=user_agent)
        return self._action_response(consultation, "Diagnosis updated")

    def modify_diagnosis(self, db: Session, consultation_id: str, user: models.User, request: ModifyDiagnosisRequest,
                         ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> PrescriptionActionResponse:
        """Overlay doctor edits on the AI output; an empty request copies the AI output as-is."""
        consultation = self._load_for_doctor(db, consultation_id, user)
        now = self.clock()
        self._begin(consultation, PS.diagnosis_modification, user, now)

        baseline = self._ai_baseline(consultation)
        base = baseline.model_dump(mode="json")
        updates = request.model_dump(mode="json", exclude_none=True)
        if not updates:
            modification_type, changed = "initial_copy", []
            merged = baseline
        else:
            changed = [key for key, value in updates.items() if not _json_equal(base.get(key), value)]
            modification_type = "enhanced" if changed else "no_changes"
            merged = AIDiagnosis.model_validate(dict(base, **updates))

        names = [d.name for d in merged.possible_diagnoses]
        previous = consultation.doctor_diagnosis or {}
        consultation.doctor_diagnosis = dict(
            previous,
            primaryDiagnosis=previous.get("primaryDiagnosis") or (names[0] if names else None),
            differentialDiagnosis=previous.get("differentialDiagnosis") or names[1:],
            clinicalReasoning=previous.get("clinicalReasoning") or merged.clinical_reasoning,
            confidenceScore=merged.confidence_score,
            modifiedDiagnosis=merged.to_json(),
            modificationType=modification_type,
            changesFromAI=[to_camel(k) for k in changed],
            createdAt=previous.get("createdAt") or now.isoformat(),
            updatedAt=now.isoformat(),
            modifiedBy=user.id,
        )
        self._append_history(consultation, "DIAGNOSIS_MODIFIED", user, now,
                             {"modificationType": modification_type, "changedFields": [to_camel(k) for k in changed]},
                             ip_address, user_agent)
        crud.save_consultation(db, consultation)
        self._audit("DIAGNOSIS_MODIFIED", user, consultation, {"modificationType": modification_type},
                    ip_address, user_agent)
        return self._action_response(consultation, f"Diagnosis saved ({modification_type})")

    # ==================== DRAFT & PREVIEW ====================

    def save_prescription_draft(self, db: Session, consultation_id: str, user: models.User,
                                request: PrescriptionDraftRequest, ip_address: Optional[str] = None,
                                user_agent: Optional[str] = None) -> PrescriptionActionResponse:
        consultation = self._load_for_doctor(db, consultation_id, user)
        if not (consultation.doctor_diagnosis or {}).get("primaryDiagnosis"):
            raise PreconditionError("A diagnosis must be recorded before drafting the prescription",
                                    current_state=PS(consultation.prescription_status).value)
        if not request.medications:
            raise IncompleteDataError("At least one medication is required", details={"missing": ["medications"]})
        gaps = {}
        for i, med in enumerate(request.medications):
            missing = [f for f in REQUIRED_MEDICATION_FIELDS if not (getattr(med, f) or "").strip()]
            if missing:
                gaps[f"medications[{i}]"] = missing
        if gaps:
            raise IncompleteDataError("Medications are missing required fields", details={"missing": gaps})

        now = self.clock()
        self._begin(consultation, PS.prescription_draft, user, now)
        data = dict(consultation.prescription_data or {})
        data.pop("draftPdf", None)
        data.update(
            medications=[m.to_json() for m in request.medications],
            investigations=[i.to_json() for i in request.investigations],
            lifestyleAdvice=request.lifestyle_advice,
            followUp=request.follow_up,
            additionalNotes=request.additional_notes,
            lastSavedAt=now.isoformat(),
            savedBy=user.id,
        )
        consultation.prescription_data = data
        self._append_history(consultation, "DRAFT_SAVED", user, now,
                             {"medicationCount": len(request.medications)}, ip_address, user_agent)
        crud.save_consultation(db, consultation)
        self._audit("PRESCRIPTION_DRAFT_SAVED", user, consultation, ip_address=ip_address, user_agent=user_agent)
        return self._action_response(consultation, "Prescription draft saved")

    def generate_preview(self, db: Session, consultation_id: str, user: models.User,
                         ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> PrescriptionActionResponse:
        consultation = self._load_for_doctor(db, consultation_id, user)
        if consultation.prescription_status != PS.prescription_draft:
            raise PreconditionError("Save a prescription draft before generating the preview",
                                    current_state=PS(consultation.prescription_status).value)
        self._ensure_in_progress(consultation)
        ensure_prescription_transition(PS.prescription_draft, PS.awaiting_review)

        now = self.clock()
        pdf = render_prescription_pdf(self._document(consultation, now), draft=True)
        stored = self.storage.upload(pdf, f"{consultation.consultation_id}-draft.pdf", DRAFTS_FOLDER)
        data = dict(consultation.prescription_data or {})
        stale = data.get("draftPdf")
        data["draftPdf"] = {"url": stored.url, "hash": stored.sha256, "generatedAt": now.isoformat()}
        consultation.prescription_data = data
        apply_prescription_status(consultation, PS.awaiting_review)
        self._append_history(consultation, "PREVIEW_GENERATED", user, now,
                             {"pdfHash": stored.sha256}, ip_address, user_agent)
        try:
            crud.save_consultation(db, consultation)
        except (ConflictError, crud.CRUDError):
            self.storage.delete(stored.key)
            raise
        if stale and stale.get("url") != stored.url:
            self.storage.delete(self.storage.key_for_url(stale["url"]))
        return self._action_response(consultation, "Preview generated; awaiting review", data["draftPdf"])

    def stream_draft_pdf(self, db: Session, consultation_id: str, user: models.User) -> bytes:
        """The stored draft PDF, or a freshly rendered one when none is stored."""
        consultation = self._load(db, consultation_id)
        if user.role != UserRole.admin and not (user.role == UserRole.doctor and consultation.doctor_id == user.id):
            raise PermissionDeniedError("Only the assigned doctor can preview the draft")
        data = consultation.prescription_data or {}
        if not data.get("medications"):
            raise PreconditionError("No prescription draft to preview",
                                    current_state=PS(consultation.prescription_status).value)
        draft = data.get("draftPdf")
        if draft:
            try:
                return self.storage.read(self.storage.key_for_url(draft["url"]))
            except FileNotFoundError:
                logger.warning(f"Draft PDF for {consultation_id} missing from storage, re-rendering")
        return render_prescription_pdf(self._document(consultation, self.clock()), draft=True)

    def request_revision(self, db: Session, consultation_id: str, user: models.User, reason: Optional[str] = None,
                         ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> PrescriptionActionResponse:
        consultation = self._load_for_doctor(db, consultation_id, user)
        if consultation.prescription_status not in (PS.awaiting_review, PS.awaiting_signature):
            raise PreconditionError("Only a prescription under review can be sent back for revision",
                                    current_state=PS(consultation.prescription_status).value)
        self._ensure_in_progress(consultation)
        now = self.clock()
        apply_prescription_status(consultation, PS.revision_required)
        self._append_history(consultation, "REVISION_REQUESTED", user, now, {"reason": reason}, ip_address, user_agent)
        crud.save_consultation(db, consultation)
        return self._action_response(consultation, "Revision requested")

    # ==================== SIGN & SEND ====================

    def _missing_for_signature(self, consultation: models.Consultation) -> List[str]:
        missing = []
        if not (consultation.doctor_diagnosis or {}).get("primaryDiagnosis"):
            missing.append("diagnosis")
        if not (consultation.prescription_data or {}).get("medications"):
            missing.append("medications")
        if consultation.doctor_id is None:
            missing.append("doctor")
        if consultation.patient_id is None:
            missing.append("patient")
        return missing

    def sign_and_send(self, db: Session, consultation_id: str, user: models.User,
                      ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> SignAndSendResponse:
        consultation = self._load_for_doctor(db, consultation_id, user)
        if consultation.prescription_status not in (PS.awaiting_review, PS.awaiting_signature):
            raise PreconditionError("The prescription must be reviewed before it can be signed",
                                    current_state=PS(consultation.prescription_status).value)
        self._ensure_in_progress(consultation)
        missing = self._missing_for_signature(consultation)
        if missing:
            raise IncompleteDataError(f"Missing required fields: {', '.join(missing)}", details={"missing": missing})

        now = self.clock()
        prescription_id = new_prescription_id(now)
        data = consultation.prescription_data or {}
        diagnosis = consultation.doctor_diagnosis or {}
        signed_payload = {
            "prescriptionId": prescription_id,
            "consultationId": consultation.consultation_id,
            "patientId": consultation.patient_id,
            "doctorId": consultation.doctor_id,
            "diagnosis": {
                "primaryDiagnosis": diagnosis.get("primaryDiagnosis"),
                "differentialDiagnosis": diagnosis.get("differentialDiagnosis") or [],
            },
            "medications": data.get("medications") or [],
            "investigations": data.get("investigations") or [],
            "lifestyleAdvice": data.get("lifestyleAdvice") or [],
            "followUp": data.get("followUp"),
            "issuedAt": now.isoformat(),
        }
        signature = self.signer.sign_data(signed_payload, signed_at=now)
        signature.update(ipAddress=ip_address, userAgent=user_agent)

        pdf = render_prescription_pdf(self._document(consultation, now), signature=signature)
        stored = self.storage.upload(pdf, f"{prescription_id}.pdf", SIGNED_FOLDER)

        apply_prescription_status(consultation, PS.signed)
        self._append_history(consultation, "SIGNATURE_APPLIED", user, now,
                             {"prescriptionId": prescription_id, "certificateId": signature["certificateId"]},
                             ip_address, user_agent)
        apply_prescription_status(consultation, PS.sent)
        self._append_history(consultation, "SENT_TO_PATIENT", user, now,
                             {"prescriptionId": prescription_id, "pdfHash": stored.sha256}, ip_address, user_agent)
        consultation.prescription_data = dict(
            data,
            prescriptionId=prescription_id,
            digitalSignature=signature,
            signedPdf={"url": stored.url, "hash": stored.sha256, "signedAt": now.isoformat()},
        )

        prescription = models.Prescription(
            prescription_id=prescription_id,
            consultation_pk=consultation.id,
            patient_id=consultation.patient_id,
            doctor_id=consultation.doctor_id,
            diagnosis=signed_payload["diagnosis"],
            medications=signed_payload["medications"],
            investigations=signed_payload["investigations"],
            lifestyle_advice=signed_payload["lifestyleAdvice"],
            follow_up=signed_payload["followUp"],
            digital_signature=signature,
            pdf_download_url=stored.url,
            pdf_hash=stored.sha256,
            status=models.PrescriptionDocumentStatus.issued,
            issued_at=now,
            valid_until=now + timedelta(days=self.settings.prescription_validity_days),
        )
        try:
            prescription = crud.save_signed_prescription(db, consultation, prescription)
        except (ConflictError, crud.CRUDError):
            self.storage.delete(stored.key)
            raise

        event_log.info("prescription_sent", consultation_id=consultation.consultation_id,
                       prescription_id=prescription_id, pdf_hash=stored.sha256)
        self._audit("PRESCRIPTION_SIGNED", user, consultation, {"prescriptionId": prescription_id},
                    ip_address, user_agent)
        return SignAndSendResponse(
            consultation_id=consultation.consultation_id,
            prescription_status=consultation.prescription_status,
            prescription=PrescriptionResponse.model_validate(prescription),
        )

    def download_signed_pdf(self, db: Session, consultation_id: str, user: models.User) -> Tuple[bytes, str]:
        consultation = self._load(db, consultation_id)
        ensure_can_view(consultation, user)
        signed = (consultation.prescription_data or {}).get("signedPdf")
        if consultation.prescription_status != PS.sent or not signed:
            raise PreconditionError("The prescription has not been signed and sent yet",
                                    current_state=PS(consultation.prescription_status).value)
        try:
            pdf = self.storage.read(self.storage.key_for_url(signed["url"]))
        except FileNotFoundError:
            raise NotFoundError("Signed prescription PDF is no longer available")
        if sha256_hex(pdf) != signed["hash"]:
            logger.error(f"Signed PDF hash mismatch for consultation {consultation_id}")
            raise ConflictError("Signed prescription PDF failed its integrity check")
        prescription_id = consultation.prescription_data.get("prescriptionId") or consultation.consultation_id
        return pdf, f"{prescription_id}.pdf"

    # ==================== COMPLETION ====================

    def complete_consultation(self, db: Session, consultation_id: str, user: models.User, notes: Optional[str] = None,
                              ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> PrescriptionActionResponse:
        consultation = self._load_for_doctor(db, consultation_id, user)
        if consultation.prescription_status != PS.sent:
            raise PreconditionError("The prescription must be sent before completing the consultation",
                                    current_state=PS(consultation.prescription_status).value)
        now = self.clock()
        apply_consultation_status(consultation, CS.completed, changed_by=user.id, reason="Consultation completed",
                                  source="doctor", trigger="complete_consultation", notes=notes, now=now)
        self._append_history(consultation, "CONSULTATION_COMPLETED", user, now, {"notes": notes}, ip_address, user_agent)
        crud.save_consultation(db, consultation)
        self._audit("CONSULTATION_COMPLETED", user, consultation, ip_address=ip_address, user_agent=user_agent)
        return self._action_response(consultation, "Consultation completed")

    def update_prescription_status(self, db: Session, prescription_id: str, user: models.User,
                                   new_status: models.PrescriptionDocumentStatus) -> models.Prescription:
        prescription = crud.get_prescription(db, prescription_id)
        if prescription is None:
            raise NotFoundError(f"Prescription {prescription_id} not found")
        if user.role != UserRole.admin and prescription.doctor_id != user.id:
            raise PermissionDeniedError("Only the prescribing doctor or an admin can change prescription status")
        return crud.update_prescription_status(db, prescription, new_status)
