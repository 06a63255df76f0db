# tenderly/dependencies.py
"""Process-wide service instances, exposed as FastAPI dependencies."""
from functools import lru_cache

from .audit import AuditSink, DatabaseAuditSink
from .config import get_settings
from .database import SessionLocal
from .services.ai_diagnosis import get_ai_client
from .services.consultation_service import ConsultationLifecycleManager
from .services.file_storage import get_file_storage
from .services.payment_providers import get_payment_provider
from .services.payment_service import PaymentService
from .services.prescription_service import PrescriptionWorkflowManager
from .services.shift_service import DoctorShiftResolver
from .services.signature_service import get_signature_service
from .session_store import get_session_store


@lru_cache()
def get_audit_sink() -> AuditSink:
    return DatabaseAuditSink(SessionLocal)


@lru_cache()
def get_payment_service() -> PaymentService:
    return PaymentService(get_session_store(), get_payment_provider(), get_settings())


@lru_cache()
def get_shift_resolver() -> DoctorShiftResolver:
    return DoctorShiftResolver(get_session_store(), get_settings())


@lru_cache()
def get_lifecycle_manager() -> ConsultationLifecycleManager:
    return ConsultationLifecycleManager(
        store=get_session_store(),
        payment_service=get_payment_service(),
        shift_resolver=get_shift_resolver(),
        ai_client=get_ai_client(),
        settings=get_settings(),
        audit=get_audit_sink(),
    )


@lru_cache()
def get_prescription_manager() -> PrescriptionWorkflowManager:
    return PrescriptionWorkflowManager(
        storage=get_file_storage(),
        signer=get_signature_service(),
        settings=get_settings(),
        audit=get_audit_sink(),
    )
