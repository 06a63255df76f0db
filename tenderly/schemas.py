# tenderly/schemas.py
from datetime import datetime
from typing import List, Optional, Dict, Any, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models import (
    ConsultationType, ConsultationStatus, PrescriptionStatus, PrescriptionDocumentStatus,
    PaymentStatus, ShiftType, ShiftStatus,
)


# --- Base Schemas ---
class CamelSchema(BaseModel):
    """Wire format is camelCase; Python attributes stay snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# --- Session store documents ---
class ConsultationDraft(CamelSchema):
    session_id: str
    patient_id: int
    consultation_type: Optional[ConsultationType] = None
    detailed_symptoms: Optional[Dict[str, Any]] = None
    ai_diagnosis: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class PaymentRecord(CamelSchema):
    payment_id: str
    session_id: str
    patient_id: int
    order_id: str
    provider: str
    consultation_type: ConsultationType
    amount: int
    currency: str = "INR"
    payment_status: PaymentStatus = PaymentStatus.pending
    payment_url: Optional[str] = None
    expires_at: datetime
    created_at: datetime
    gateway_response: Dict[str, Any] = Field(default_factory=dict)
    gateway_transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    refunded_at: Optional[datetime] = None


# --- Payment provider contract ---
class OrderRequest(CamelSchema):
    amount: int
    currency: str = "INR"
    receipt: str
    notes: Dict[str, Any] = Field(default_factory=dict)
    expires_in_minutes: int = 15


class OrderResponse(CamelSchema):
    order_id: str
    amount: int
    currency: str
    status: str
    payment_url: Optional[str] = None
    expires_at: datetime
    raw: Dict[str, Any] = Field(default_factory=dict)


class VerificationResult(CamelSchema):
    payment_id: str
    order_id: Optional[str] = None
    status: PaymentStatus
    order_expired: bool = False
    amount: Optional[int] = None
    method: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class RefundResult(CamelSchema):
    refund_id: str
    payment_id: str
    amount: Optional[int] = None
    status: str
    raw: Dict[str, Any] = Field(default_factory=dict)


# --- Consultation requests / responses ---
class SymptomCollectRequest(CamelSchema):
    session_id: str = Field(..., min_length=8, max_length=128)
    symptoms: Dict[str, Any]


class SelectConsultationRequest(CamelSchema):
    session_id: str = Field(..., min_length=8, max_length=128)
    selected_consultation_type: ConsultationType


class PaymentOrderResponse(CamelSchema):
    payment_id: str
    amount: int
    currency: str
    status: PaymentStatus
    payment_url: Optional[str] = None
    expires_at: datetime


class ConfirmPaymentRequest(CamelSchema):
    session_id: str
    payment_id: str
    gateway_transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    payment_metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentConfirmationResponse(CamelSchema):
    consultation_id: str
    clinical_session_id: str
    session_id: str
    payment_id: str
    status: ConsultationStatus
    payment_status: PaymentStatus
    doctor_id: Optional[int] = None
    already_confirmed: bool = False


class StructuredAssessmentRequest(CamelSchema):
    """Structured gynecological assessment; unknown sections pass through."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    clinical_session_id: Optional[str] = None
    patient_profile: Dict[str, Any] = Field(default_factory=dict)
    primary_complaint: Dict[str, Any]
    symptom_specific_details: Optional[Dict[str, Any]] = None
    reproductive_history: Optional[Dict[str, Any]] = None
    associated_symptoms: Optional[Dict[str, Any]] = None
    medical_context: Dict[str, Any] = Field(default_factory=dict)
    healthcare_interaction: Optional[Dict[str, Any]] = None
    patient_concerns: Optional[Dict[str, Any]] = None

    @field_validator("primary_complaint")
    @classmethod
    def require_main_symptom(cls, v):
        if not v.get("main_symptom") and not v.get("mainSymptom"):
            raise ValueError("primary_complaint.main_symptom is required")
        return v

    def assessment_payload(self) -> Dict[str, Any]:
        """Snake-case body sent to the diagnosis service."""
        return self.model_dump(exclude={"clinical_session_id"}, exclude_none=True)


class StatusUpdateRequest(CamelSchema):
    status: ConsultationStatus
    reason: Optional[str] = None
    notes: Optional[str] = None


class StatusUpdateResponse(CamelSchema):
    consultation_id: str
    status: ConsultationStatus
    previous_status: ConsultationStatus
    is_active: bool


class ConsultationResponse(CamelSchema):
    consultation_id: str
    clinical_session_id: str
    session_id: str
    patient_id: int
    doctor_id: Optional[int] = None
    consultation_type: ConsultationType
    status: ConsultationStatus
    prescription_status: PrescriptionStatus
    is_active: bool
    payment_info: Dict[str, Any]
    detailed_symptoms: Optional[Dict[str, Any]] = None
    structured_assessment_input: Optional[Dict[str, Any]] = None
    ai_agent_output: Optional[Dict[str, Any]] = None
    doctor_diagnosis: Optional[Dict[str, Any]] = None
    prescription_data: Optional[Dict[str, Any]] = None
    status_history: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ConflictReport(CamelSchema):
    has_active_consultation: bool
    active_consultation_id: Optional[str] = None
    active_consultation_status: Optional[ConsultationStatus] = None
    has_pending_payment: bool
    pending_session_id: Optional[str] = None
    pending_payment_id: Optional[str] = None
    has_expired_draft: bool


# --- AI diagnosis payloads (versioned) ---
class DiagnosisCandidate(CamelSchema):
    name: str
    confidence: Optional[float] = None
    reasoning: Optional[str] = None


class SuggestedInvestigation(CamelSchema):
    name: str
    priority: Optional[str] = None
    reason: Optional[str] = None


class SuggestedMedication(CamelSchema):
    name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class AIDiagnosis(CamelSchema):
    """Typed, version-tagged AI output stored on a consultation."""
    schema_version: int = 2
    possible_diagnoses: List[DiagnosisCandidate] = Field(default_factory=list)
    clinical_reasoning: Optional[str] = None
    recommended_investigations: List[SuggestedInvestigation] = Field(default_factory=list)
    treatment_recommendations: List[SuggestedMedication] = Field(default_factory=list)
    patient_education: List[str] = Field(default_factory=list)
    warning_signs: List[str] = Field(default_factory=list)
    confidence_score: Optional[float] = None
    severity_level: Optional[str] = None
    follow_up: Optional[Union[str, Dict[str, Any]]] = None
    processing_notes: List[str] = Field(default_factory=list)
    disclaimer: Optional[str] = None
    is_fallback: bool = False
    model_version: Optional[str] = None
    generated_at: Optional[datetime] = None


# --- Prescription workflow ---
class DiagnosisUpdateRequest(CamelSchema):
    primary_diagnosis: str = Field(..., min_length=1)
    differential_diagnosis: List[str] = Field(default_factory=list)
    clinical_reasoning: Optional[str] = None
    confidence_score: Optional[float] = Field(default=None, ge=0, le=1)


class ModifyDiagnosisRequest(CamelSchema):
    possible_diagnoses: Optional[List[DiagnosisCandidate]] = None
    clinical_reasoning: Optional[str] = None
    recommended_investigations: Optional[List[SuggestedInvestigation]] = None
    treatment_recommendations: Optional[List[SuggestedMedication]] = None
    patient_education: Optional[List[str]] = None
    warning_signs: Optional[List[str]] = None
    confidence_score: Optional[float] = Field(default=None, ge=0, le=1)
    processing_notes: Optional[List[str]] = None
    disclaimer: Optional[str] = None


class MedicationInput(CamelSchema):
    """Fields are checked by the workflow so gaps are reported together."""
    name: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    instructions: Optional[str] = None
    route: Optional[str] = None


class PrescriptionDraftRequest(CamelSchema):
    medications: List[MedicationInput] = Field(default_factory=list)
    investigations: List[SuggestedInvestigation] = Field(default_factory=list)
    lifestyle_advice: List[str] = Field(default_factory=list)
    follow_up: Optional[Dict[str, Any]] = None
    additional_notes: Optional[str] = None


class PrescriptionActionResponse(CamelSchema):
    consultation_id: str
    prescription_status: PrescriptionStatus
    message: str
    pdf_url: Optional[str] = None
    pdf_hash: Optional[str] = None


class PrescriptionResponse(CamelSchema):
    prescription_id: str
    patient_id: int
    doctor_id: int
    medications: List[Dict[str, Any]]
    digital_signature: Dict[str, Any]
    pdf_download_url: str
    pdf_hash: str
    status: PrescriptionDocumentStatus
    issued_at: datetime
    valid_until: datetime


class SignAndSendResponse(CamelSchema):
    consultation_id: str
    prescription_status: PrescriptionStatus
    prescription: PrescriptionResponse


class PrescriptionStatusUpdate(CamelSchema):
    status: PrescriptionDocumentStatus


class WorkspaceResponse(CamelSchema):
    consultation_id: str
    patient_id: int
    doctor_id: Optional[int] = None
    consultation_type: ConsultationType
    status: ConsultationStatus
    prescription_status: PrescriptionStatus
    structured_assessment_input: Optional[Dict[str, Any]] = None
    ai_agent_output: Optional[Dict[str, Any]] = None
    doctor_diagnosis: Optional[Dict[str, Any]] = None
    prescription_data: Optional[Dict[str, Any]] = None
    prescription_history: List[Dict[str, Any]] = Field(default_factory=list)


# --- Doctor shifts ---
class ShiftCreate(CamelSchema):
    shift_type: ShiftType
    doctor_id: int
    start_hour: int = Field(..., ge=0, le=23)
    end_hour: int = Field(..., ge=0, le=23)
    status: ShiftStatus = ShiftStatus.active
    description: Optional[str] = None

    @model_validator(mode="after")
    def check_window(self):
        if self.start_hour >= self.end_hour:
            raise ValueError("start_hour must be before end_hour")
        return self


class ShiftStatusUpdate(CamelSchema):
    status: ShiftStatus


class ShiftResponse(CamelSchema):
    id: int
    shift_type: ShiftType
    doctor_id: int
    start_hour: int
    end_hour: int
    status: ShiftStatus
    description: Optional[str] = None
    updated_at: Optional[datetime] = None


class CurrentDoctorResponse(CamelSchema):
    doctor_id: int
    hour: int
    cached: bool = False


class ForceRefreshResponse(CamelSchema):
    doctor_id: int
    source: str
    shift_info: Optional[Dict[str, Any]] = None
    debug_info: Dict[str, Any] = Field(default_factory=dict)


# --- Payments ---
class RefundRequest(CamelSchema):
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None


class PaymentDetailsResponse(CamelSchema):
    record: Optional[PaymentRecord] = None
    gateway: Dict[str, Any] = Field(default_factory=dict)
