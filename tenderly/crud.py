# tenderly/crud.py
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
import logging

from . import models
from .errors import ConflictError, InvalidTransitionError

logger = logging.getLogger(__name__)


class CRUDError(Exception):
    pass


ACTIVE_CONFLICT_MESSAGE = "Patient already has an active consultation: {consultation_id} (status: {status})"


def commit(db: Session, what: str) -> None:
    """Commit, translating storage-level races into ConflictError."""
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"Concurrent modification while saving {what}: {e}")
        raise ConflictError(f"The {what} was modified by another request; reload and retry.")
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Integrity violation while saving {what}: {e}")
        raise ConflictError(f"Could not save {what} because it conflicts with existing data.")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error while saving {what}: {e}")
        raise CRUDError(f"A database error occurred while saving the {what}.")


# ==================== USERS ====================

def get_user(db: Session, user_id: int) -> Optional[models.User]:
    try:
        return db.query(models.User).filter(models.User.id == user_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching user {user_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def create_user(db: Session, email: str, role: models.UserRole, full_name: Optional[str] = None, specialization: Optional[str] = None) -> models.User:
    try:
        user = models.User(email=email, role=role, full_name=full_name, specialization=specialization)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating user: {e}")
        raise CRUDError("A database error occurred while creating the user.")


# ==================== CONSULTATIONS ====================

def get_consultation(db: Session, consultation_id: str) -> Optional[models.Consultation]:
    """Look up by public consultation id."""
    try:
        return db.query(models.Consultation).filter(models.Consultation.consultation_id == consultation_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching consultation {consultation_id}: {e}")
        raise CRUDError("A database error occurred while fetching the consultation.")


def get_consultation_by_clinical_session(db: Session, clinical_session_id: str) -> Optional[models.Consultation]:
    try:
        return db.query(models.Consultation).filter(models.Consultation.clinical_session_id == clinical_session_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching consultation for clinical session {clinical_session_id}: {e}")
        raise CRUDError("A database error occurred while fetching the consultation.")


def get_consultation_by_session(db: Session, session_id: str) -> Optional[models.Consultation]:
    try:
        return db.query(models.Consultation).filter(models.Consultation.session_id == session_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching consultation for session {session_id}: {e}")
        raise CRUDError("A database error occurred while fetching the consultation.")


def get_active_consultation(db: Session, patient_id: int) -> Optional[models.Consultation]:
    try:
        return db.query(models.Consultation).filter(
            models.Consultation.patient_id == patient_id,
            models.Consultation.is_active.is_(True),
        ).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching active consultation for patient {patient_id}: {e}")
        raise CRUDError("A database error occurred while checking active consultations.")


def count_active_consultations(db: Session, patient_id: int) -> int:
    return db.query(models.Consultation).filter(
        models.Consultation.patient_id == patient_id,
        models.Consultation.is_active.is_(True),
    ).count()


def get_consultations_for_patient(db: Session, patient_id: int, skip: int = 0, limit: int = 20) -> List[models.Consultation]:
    """Get all consultations for a patient, newest first."""
    try:
        return db.query(models.Consultation).filter(
            models.Consultation.patient_id == patient_id
        ).order_by(models.Consultation.id.desc()).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching consultations for patient {patient_id}: {e}")
        raise CRUDError("A database error occurred while fetching consultations.")


def insert_active_consultation(db: Session, consultation: models.Consultation) -> models.Consultation:
    """Insert a consultation with ``is_active=True``.

    The partial unique index on (patient_id WHERE is_active) is the guard;
    a violation means another activation won the race.
    """
    patient_id = consultation.patient_id
    try:
        db.add(consultation)
        db.commit()
        db.refresh(consultation)
        logger.info(f"Activated consultation {consultation.consultation_id} for patient {consultation.patient_id}")
        return consultation
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Activation rejected for patient {patient_id}: {e.orig}")
        existing = get_active_consultation(db, patient_id)
        if existing is not None:
            raise ConflictError(
                ACTIVE_CONFLICT_MESSAGE.format(consultation_id=existing.consultation_id, status=existing.status.value),
                current_state=existing.status.value,
                details={"activeConsultationId": existing.consultation_id},
            )
        raise ConflictError("Consultation for this session already exists.")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during consultation activation: {e}")
        raise CRUDError("A database error occurred while creating the consultation.")


def save_consultation(db: Session, consultation: models.Consultation) -> models.Consultation:
    commit(db, "consultation")
    db.refresh(consultation)
    return consultation


# ==================== PRESCRIPTIONS ====================

PRESCRIPTION_STATUS_TRANSITIONS = {
    models.PrescriptionDocumentStatus.issued: {
        models.PrescriptionDocumentStatus.dispensed,
        models.PrescriptionDocumentStatus.expired,
        models.PrescriptionDocumentStatus.cancelled,
    },
}


def get_prescription(db: Session, prescription_id: str) -> Optional[models.Prescription]:
    try:
        return db.query(models.Prescription).filter(models.Prescription.prescription_id == prescription_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching prescription {prescription_id}: {e}")
        raise CRUDError("A database error occurred while fetching the prescription.")


def save_signed_prescription(db: Session, consultation: models.Consultation, prescription: models.Prescription) -> models.Prescription:
    """Persist the issued prescription and the consultation's final workflow state in one commit."""
    db.add(prescription)
    commit(db, "prescription")
    db.refresh(prescription)
    db.refresh(consultation)
    return prescription


def update_prescription_status(db: Session, prescription: models.Prescription, new_status: models.PrescriptionDocumentStatus) -> models.Prescription:
    """Signed prescriptions only ever change status."""
    current = models.PrescriptionDocumentStatus(prescription.status)
    if new_status not in PRESCRIPTION_STATUS_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError("prescription document", current.value, models.PrescriptionDocumentStatus(new_status).value)
    prescription.status = new_status
    prescription.status_changed_at = datetime.now(timezone.utc)
    commit(db, "prescription")
    db.refresh(prescription)
    return prescription


# ==================== DOCTOR SHIFTS ====================

def get_shifts(db: Session) -> List[models.DoctorShift]:
    """All shifts in insertion order."""
    try:
        return db.query(models.DoctorShift).order_by(models.DoctorShift.id.asc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching doctor shifts: {e}")
        raise CRUDError("A database error occurred while fetching doctor shifts.")


def get_active_shifts_for_hour(db: Session, hour: int) -> List[models.DoctorShift]:
    try:
        return db.query(models.DoctorShift).filter(
            models.DoctorShift.status == models.ShiftStatus.active,
            models.DoctorShift.start_hour <= hour,
            models.DoctorShift.end_hour > hour,
        ).order_by(models.DoctorShift.id.asc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Error resolving shifts for hour {hour}: {e}")
        raise CRUDError("A database error occurred while resolving the current shift.")


def get_shift_by_type(db: Session, shift_type: models.ShiftType) -> Optional[models.DoctorShift]:
    return db.query(models.DoctorShift).filter(models.DoctorShift.shift_type == shift_type).first()


def count_shifts(db: Session) -> int:
    return db.query(models.DoctorShift).count()


def upsert_shift(db: Session, data: Dict[str, Any], updated_by: Optional[int] = None) -> models.DoctorShift:
    try:
        shift = get_shift_by_type(db, data["shift_type"])
        if shift is None:
            shift = models.DoctorShift(**data, updated_by=updated_by)
            db.add(shift)
        else:
            for key, value in data.items():
                setattr(shift, key, value)
            shift.updated_by = updated_by
        db.commit()
        db.refresh(shift)
        logger.info(f"Saved {shift.shift_type.value} shift {shift.start_hour}-{shift.end_hour} for doctor {shift.doctor_id}")
        return shift
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error saving doctor shift: {e}")
        raise CRUDError("A database error occurred while saving the doctor shift.")
