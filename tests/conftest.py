# tests/conftest.py
import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-with-at-least-32-characters")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.pop("REDIS_URL", None)

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tenderly import crud, models
from tenderly.audit import MemoryAuditSink
from tenderly.config import get_settings
from tenderly.database import Base
from tenderly.schemas import StructuredAssessmentRequest
from tenderly.services.ai_diagnosis import AIDiagnosisClient
from tenderly.services.consultation_service import ConsultationLifecycleManager
from tenderly.services.file_storage import FileStorage
from tenderly.services.payment_providers import MockPaymentProvider
from tenderly.services.payment_service import PaymentService
from tenderly.services.prescription_service import PrescriptionWorkflowManager
from tenderly.services.shift_service import DoctorShiftResolver
from tenderly.services.signature_service import SignatureService
from tenderly.session_store import InMemorySessionStore

# 10:00 IST, inside the default morning shift
START = datetime(2026, 3, 2, 4, 30, tzinfo=timezone.utc)

AI_RESPONSE = {
    "schema_version": 2,
    "possible_diagnoses": [
        {"name": "Polycystic ovary syndrome", "confidence": 0.72},
        {"name": "Thyroid dysfunction", "confidence": 0.2},
    ],
    "clinical_reasoning": "Irregular cycles with weight gain",
    "recommended_investigations": [{"name": "Pelvic ultrasound", "priority": "high"}],
    "treatment_recommendations": [{"name": "Metformin", "dosage": "500mg"}],
    "patient_education": ["Regular exercise"],
    "warning_signs": ["Severe pelvic pain"],
    "confidence_score": 0.72,
    "model_version": "gyn-2.1",
}


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


async def no_sleep(seconds):
    return None


async def run_inline(fn, *args, **kwargs):
    return fn(*args, **kwargs)


def ai_transport(payload=None, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload if payload is not None else AI_RESPONSE)
    return httpx.MockTransport(handler)


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def patient(db_session):
    return crud.create_user(db_session, "asha@example.com", models.UserRole.patient, full_name="Asha Rao")


@pytest.fixture
def other_patient(db_session):
    return crud.create_user(db_session, "meera@example.com", models.UserRole.patient, full_name="Meera Iyer")


@pytest.fixture
def doctor(db_session):
    return crud.create_user(db_session, "dr.sen@example.com", models.UserRole.doctor,
                            full_name="Dr. Sen", specialization="Gynecology")


@pytest.fixture
def evening_doctor(db_session):
    return crud.create_user(db_session, "dr.kapoor@example.com", models.UserRole.doctor, full_name="Dr. Kapoor")


@pytest.fixture
def admin(db_session):
    return crud.create_user(db_session, "admin@example.com", models.UserRole.admin, full_name="Admin")


@pytest.fixture
def settings(doctor, evening_doctor):
    return get_settings().model_copy(update={
        "morning_doctor_id": doctor.id,
        "evening_doctor_id": evening_doctor.id,
    })


@pytest.fixture
def resolver(store, settings, clock, db_session):
    resolver = DoctorShiftResolver(store, settings, clock=clock)
    resolver.initialize_default_shifts(db_session)
    return resolver


@pytest.fixture
def payment_provider():
    return MockPaymentProvider(base_url="http://localhost:3000")


@pytest.fixture
def payment_service(store, payment_provider, settings, clock):
    return PaymentService(store, payment_provider, settings, clock=clock)


@pytest.fixture
def ai_client():
    return AIDiagnosisClient("http://ai.test", "ai-secret", max_retries=3, transport=ai_transport(), sleep=no_sleep)


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def lifecycle(store, payment_service, resolver, ai_client, settings, audit, clock):
    return ConsultationLifecycleManager(store, payment_service, resolver, ai_client, settings, audit=audit, clock=clock)


@pytest.fixture(scope="session")
def signer():
    return SignatureService.ephemeral("test-cert")


@pytest.fixture
def storage(tmp_path):
    return FileStorage(str(tmp_path / "files"), "/files")


@pytest.fixture
def prescriptions(storage, signer, settings, audit, clock):
    return PrescriptionWorkflowManager(storage, signer, settings, audit=audit, clock=clock)


def assessment(**overrides):
    data = {
        "patient_profile": {"age": 29},
        "primary_complaint": {"main_symptom": "Irregular periods", "duration": "6 months", "severity": "moderate"},
        "medical_context": {"current_medications": [], "allergies": []},
    }
    data.update(overrides)
    return StructuredAssessmentRequest(**data)


@pytest.fixture
def paid_consultation(lifecycle, db_session, patient):
    """Coroutine factory: select chat, pay with the mock provider, return the consultation row."""
    async def make(session_id="session-0001", patient_id=None):
        pid = patient_id or patient.id
        await lifecycle.select_consultation_type(db_session, pid, session_id, models.ConsultationType.chat)
        confirmation = await lifecycle.mock_complete_payment(db_session, session_id, patient_id=pid)
        return crud.get_consultation(db_session, confirmation.consultation_id)
    return make


@pytest.fixture
def assessed_consultation(lifecycle, db_session, patient, paid_consultation):
    async def make(session_id="session-0001"):
        consultation = await paid_consultation(session_id)
        await lifecycle.collect_structured_assessment(db_session, patient.id, assessment())
        db_session.refresh(consultation)
        return consultation
    return make
