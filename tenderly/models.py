# tenderly/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text,
    Enum as SQLAlchemyEnum, Boolean, JSON, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func, expression
from .database import Base
import enum


class UserRole(str, enum.Enum):
    patient = "patient"
    doctor = "doctor"
    admin = "admin"


class ConsultationType(str, enum.Enum):
    chat = "chat"
    tele = "tele"
    video = "video"
    emergency = "emergency"
    follow_up = "follow_up"


class ConsultationStatus(str, enum.Enum):
    draft = "draft"
    payment_pending = "payment_pending"
    payment_confirmed = "payment_confirmed"
    clinical_assessment_pending = "clinical_assessment_pending"
    clinical_assessment_complete = "clinical_assessment_complete"
    doctor_review_pending = "doctor_review_pending"
    doctor_assigned = "doctor_assigned"
    in_progress = "in_progress"
    on_hold = "on_hold"
    completed = "completed"
    cancelled = "cancelled"
    expired = "expired"
    refunded = "refunded"


class PrescriptionStatus(str, enum.Enum):
    not_started = "not_started"
    diagnosis_modification = "diagnosis_modification"
    prescription_draft = "prescription_draft"
    awaiting_review = "awaiting_review"
    awaiting_signature = "awaiting_signature"
    signed = "signed"
    sent = "sent"
    cancelled = "cancelled"
    revision_required = "revision_required"


class PrescriptionDocumentStatus(str, enum.Enum):
    issued = "issued"
    dispensed = "dispensed"
    expired = "expired"
    cancelled = "cancelled"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


class ShiftType(str, enum.Enum):
    morning = "morning"
    evening = "evening"


class ShiftStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"


class User(Base):
    """Identity record for patients, doctors and admins"""
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_role_active', 'role', 'is_active'),
    )

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    phone_number = Column(String(20), nullable=True)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), default=UserRole.patient, nullable=False)
    specialization = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Consultation(Base):
    """A single paid clinical engagement, from payment confirmation to completion"""
    __tablename__ = "consultations"
    __table_args__ = (
        # At most one active consultation per patient, enforced by the database
        Index(
            'uq_consultations_one_active_per_patient', 'patient_id',
            unique=True,
            postgresql_where=expression.text('is_active'),
            sqlite_where=expression.text('is_active = 1'),
        ),
        Index('idx_consultations_patient_created', 'patient_id', 'created_at'),
        Index('idx_consultations_doctor_status', 'doctor_id', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    consultation_id = Column(String(64), unique=True, nullable=False, index=True)
    clinical_session_id = Column(String(64), unique=True, nullable=False, index=True)
    session_id = Column(String(128), unique=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    consultation_type = Column(SQLAlchemyEnum(ConsultationType, name='consultation_type'), nullable=False)

    status = Column(SQLAlchemyEnum(ConsultationStatus, name='consultation_status'), nullable=False, default=ConsultationStatus.payment_confirmed)
    prescription_status = Column(SQLAlchemyEnum(PrescriptionStatus, name='prescription_status'), nullable=False, default=PrescriptionStatus.not_started)
    is_active = Column(Boolean, nullable=False, default=True)

    payment_info = Column(JSON, nullable=False, default=dict)
    detailed_symptoms = Column(JSON, nullable=True)
    structured_assessment_input = Column(JSON, nullable=True)
    ai_agent_output = Column(JSON, nullable=True)
    doctor_diagnosis = Column(JSON, nullable=True)
    prescription_data = Column(JSON, nullable=True)

    # Append-only trails
    chat_history = Column(JSON, nullable=False, default=list)
    status_history = Column(JSON, nullable=False, default=list)
    prescription_history = Column(JSON, nullable=False, default=list)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])
    prescriptions = relationship("Prescription", back_populates="consultation")

    __mapper_args__ = {"version_id_col": version}


class Prescription(Base):
    """Signed prescription issued at the end of a consultation"""
    __tablename__ = "prescriptions"
    __table_args__ = (
        Index('idx_prescriptions_patient_issued', 'patient_id', 'issued_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(String(64), unique=True, nullable=False, index=True)
    consultation_pk = Column(Integer, ForeignKey("consultations.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    diagnosis = Column(JSON, nullable=True)
    medications = Column(JSON, nullable=False, default=list)
    investigations = Column(JSON, nullable=True)
    lifestyle_advice = Column(JSON, nullable=True)
    follow_up = Column(JSON, nullable=True)

    digital_signature = Column(JSON, nullable=False)
    pdf_download_url = Column(String(500), nullable=False)
    pdf_hash = Column(String(64), nullable=False)

    status = Column(SQLAlchemyEnum(PrescriptionDocumentStatus, name='prescription_document_status'), nullable=False, default=PrescriptionDocumentStatus.issued)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)
    status_changed_at = Column(DateTime(timezone=True), nullable=True)

    consultation = relationship("Consultation", back_populates="prescriptions")


class DoctorShift(Base):
    """Time-of-day window mapped to one on-duty doctor"""
    __tablename__ = "doctor_shifts"

    id = Column(Integer, primary_key=True, index=True)
    shift_type = Column(SQLAlchemyEnum(ShiftType, name='shift_type'), unique=True, nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    start_hour = Column(Integer, nullable=False)
    end_hour = Column(Integer, nullable=False)
    status = Column(SQLAlchemyEnum(ShiftStatus, name='shift_status'), nullable=False, default=ShiftStatus.active)
    description = Column(Text, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    doctor = relationship("User")


class AuditLog(Base):
    """Append-only record of workflow events"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_user_date', 'user_id', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True)
    action = Column(String(64), nullable=False, index=True)
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
