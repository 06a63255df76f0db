# tenderly/services/ai_diagnosis.py
"""Client for the AI diagnosis microservice and decoding of its payloads."""
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional, Dict, Any, List, Callable, Awaitable

import httpx
import structlog
from jose import jwt
from pydantic import ValidationError

from ..config import get_settings, Settings
from ..errors import ExternalServiceError
from ..schemas import AIDiagnosis

logger = logging.getLogger(__name__)
event_log = structlog.get_logger("tenderly.ai")

CURRENT_SCHEMA_VERSION = 2

EMERGENCY_KEYWORDS = [
    "chest pain", "difficulty breathing", "severe bleeding", "loss of consciousness",
    "severe abdominal pain", "stroke", "heart attack",
]
HIGH_SEVERITY_KEYWORDS = ["high fever", "severe headache", "persistent vomiting", "severe pain"]


# ==================== PAYLOAD DECODING ====================

def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _named(items: Any, key: str = "name") -> List[Dict[str, Any]]:
    """Coerce bare strings to ``{key: str}`` objects and drop unusable entries."""
    out = []
    for item in _as_list(items):
        if isinstance(item, str) and item.strip():
            out.append({key: item.strip()})
        elif isinstance(item, dict) and item.get(key):
            out.append(item)
    return out


def _strings(items: Any) -> List[str]:
    return [str(i) for i in _as_list(items) if i not in (None, "")]


def detect_schema_version(raw: Dict[str, Any]) -> int:
    version = raw.get("schema_version", raw.get("schemaVersion"))
    if version is not None:
        try:
            return int(version)
        except (TypeError, ValueError):
            logger.warning(f"Unreadable schema_version {version!r}, inferring from shape")
    if "possible_diagnoses" in raw or "clinical_reasoning" in raw:
        return 2
    return 1


def _from_v1(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Legacy flat response: a single ``diagnosis`` string plus suggestions."""
    severity = raw.get("severity_assessment") or {}
    metadata = raw.get("response_metadata") or {}
    diagnosis = raw.get("diagnosis")
    return {
        "possible_diagnoses": _named([diagnosis] if isinstance(diagnosis, str) else diagnosis),
        "clinical_reasoning": severity.get("reasoning") if isinstance(severity, dict) else None,
        "recommended_investigations": _named(raw.get("suggested_investigations")),
        "treatment_recommendations": _named(raw.get("recommended_medications")),
        "patient_education": _strings(raw.get("lifestyle_advice")),
        "warning_signs": _strings(raw.get("red_flags")),
        "confidence_score": raw.get("confidence_score"),
        "severity_level": severity.get("level") if isinstance(severity, dict) else None,
        "follow_up": raw.get("follow_up_recommendations"),
        "disclaimer": raw.get("disclaimer"),
        "model_version": metadata.get("model_version"),
        "generated_at": raw.get("timestamp"),
    }


def _from_v2(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "possible_diagnoses": _named(raw.get("possible_diagnoses")),
        "clinical_reasoning": raw.get("clinical_reasoning"),
        "recommended_investigations": _named(raw.get("recommended_investigations")),
        "treatment_recommendations": _named(raw.get("treatment_recommendations")),
        "patient_education": _strings(raw.get("patient_education")),
        "warning_signs": _strings(raw.get("warning_signs")),
        "confidence_score": raw.get("confidence_score"),
        "severity_level": raw.get("severity_level"),
        "follow_up": raw.get("follow_up"),
        "processing_notes": _strings(raw.get("processing_notes")),
        "disclaimer": raw.get("disclaimer"),
        "is_fallback": bool(raw.get("is_fallback", False)),
        "model_version": raw.get("model_version"),
        "generated_at": raw.get("generated_at") or raw.get("timestamp"),
    }


def decode_ai_diagnosis(raw: Optional[Dict[str, Any]]) -> AIDiagnosis:
    """Lenient decode of any known payload version into ``AIDiagnosis``."""
    if not raw:
        return AIDiagnosis(schema_version=CURRENT_SCHEMA_VERSION)
    version = detect_schema_version(raw)
    if version not in (1, 2):
        logger.warning(f"Unknown AI payload schema_version {version}; decoding as version {CURRENT_SCHEMA_VERSION}")
    fields = _from_v1(raw) if version == 1 else _from_v2(raw)
    score = fields.get("confidence_score")
    if not isinstance(score, (int, float)):
        fields["confidence_score"] = None
    try:
        return AIDiagnosis(schema_version=CURRENT_SCHEMA_VERSION, **fields)
    except ValidationError as e:
        logger.warning(f"AI payload failed strict decode, keeping textual fields only: {e.error_count()} errors")
        return AIDiagnosis(
            schema_version=CURRENT_SCHEMA_VERSION,
            clinical_reasoning=fields.get("clinical_reasoning") if isinstance(fields.get("clinical_reasoning"), str) else None,
            disclaimer=fields.get("disclaimer") if isinstance(fields.get("disclaimer"), str) else None,
            processing_notes=["Original AI payload could not be fully decoded"],
        )


def fallback_diagnosis(request: Dict[str, Any]) -> AIDiagnosis:
    """Rule-based placeholder used when the AI service is unavailable."""
    complaint = request.get("primary_complaint") or {}
    concerns = request.get("patient_concerns") or {}
    text = " ".join([
        str(complaint.get("main_symptom") or ""),
        str(concerns.get("main_worry") or ""),
        " ".join(_strings(request.get("symptoms"))),
    ]).lower()
    if any(k in text for k in EMERGENCY_KEYWORDS):
        severity = "critical"
    elif any(k in text for k in HIGH_SEVERITY_KEYWORDS):
        severity = "high"
    else:
        severity = "moderate"
    return AIDiagnosis(
        schema_version=CURRENT_SCHEMA_VERSION,
        possible_diagnoses=[{"name": "Comprehensive assessment requires medical consultation"}],
        clinical_reasoning="Assessment based on fallback rules due to AI service unavailability",
        recommended_investigations=[{
            "name": "Basic physical examination",
            "priority": "medium",
            "reason": "Standard assessment recommended when detailed AI analysis is unavailable",
        }],
        patient_education=[
            "Maintain regular sleep schedule",
            "Stay hydrated",
            "Consult with healthcare provider for detailed assessment",
        ],
        warning_signs=["Seek immediate medical attention"] if severity == "critical" else [],
        confidence_score=0.5,
        severity_level=severity,
        follow_up={"timeline": "Within 1-2 weeks", "urgency": "urgent" if severity == "critical" else "medium"},
        disclaimer=(
            "This is a fallback assessment. AI diagnosis service was temporarily unavailable. "
            "Please consult with a healthcare provider for comprehensive evaluation."
        ),
        is_fallback=True,
        model_version="fallback-v1.0",
        generated_at=datetime.now(timezone.utc),
    )


# ==================== HTTP CLIENT ====================

class AIDiagnosisClient:

    def __init__(self, base_url: str, service_secret: Optional[str], timeout: float = 30.0, max_retries: int = 3,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.base_url = base_url.rstrip("/")
        self.service_secret = service_secret
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.transport = transport
        self.sleep = sleep
        self._token: Optional[str] = None
        self._token_expires: float = 0.0

    def service_token(self, refresh: bool = False) -> Optional[str]:
        """Short-lived HS256 token identifying this backend to the AI service."""
        if not self.service_secret:
            return None
        if refresh or not self._token or self._token_expires - time.time() < 60:
            expires = datetime.now(timezone.utc) + timedelta(hours=1)
            self._token = jwt.encode(
                {"sub": "tenderly-backend", "scope": "diagnosis", "exp": expires},
                self.service_secret,
                algorithm="HS256",
            )
            self._token_expires = expires.timestamp()
        return self._token

    def _headers(self, session_id: Optional[str], refresh_token: bool = False) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self.service_token(refresh=refresh_token)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if session_id:
            headers["X-Session-ID"] = session_id
        return headers

    async def _post(self, path: str, payload: Dict[str, Any], session_id: Optional[str]) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        refresh = False
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    response = await client.post(path, json=payload, headers=self._headers(session_id, refresh))
                    response.raise_for_status()
                    return response.json()
                except httpx.HTTPStatusError as e:
                    last_error = e
                    code = e.response.status_code
                    logger.warning(f"AI request attempt {attempt}/{self.max_retries} returned {code}")
                    if code == 401:
                        refresh = True
                        continue
                    if 400 <= code < 500 and code != 429:
                        break
                except (httpx.RequestError, ValueError) as e:
                    last_error = e
                    logger.warning(f"AI request attempt {attempt}/{self.max_retries} failed: {e}")
                if attempt < self.max_retries:
                    await self.sleep(min(2 ** (attempt - 1), 5))
        raise last_error

    async def _diagnose(self, path: str, payload: Dict[str, Any], session_id: Optional[str]) -> AIDiagnosis:
        started = time.monotonic()
        try:
            raw = await self._post(path, payload, session_id)
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500:
                event_log.warning("ai_diagnosis_fallback", reason="server_error", status=e.response.status_code)
                return fallback_diagnosis(payload)
            raise ExternalServiceError(f"AI diagnosis service rejected the request ({e.response.status_code})")
        except (httpx.RequestError, ValueError) as e:
            event_log.warning("ai_diagnosis_fallback", reason="unreachable", error=str(e))
            return fallback_diagnosis(payload)
        diagnosis = decode_ai_diagnosis(raw)
        event_log.info(
            "ai_diagnosis_received",
            path=path,
            diagnoses=len(diagnosis.possible_diagnoses),
            confidence=diagnosis.confidence_score,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return diagnosis

    async def diagnose_symptoms(self, symptoms: Dict[str, Any], session_id: Optional[str] = None) -> AIDiagnosis:
        """Preliminary diagnosis from free-form symptom input."""
        return await self._diagnose("/api/v1/diagnosis/", {"diagnosis_request": symptoms}, session_id)

    async def diagnose_structured(self, assessment: Dict[str, Any], session_id: Optional[str] = None) -> AIDiagnosis:
        """Full diagnosis from a structured clinical assessment."""
        return await self._diagnose("/api/v1/diagnosis/structure", assessment, session_id)

    async def health_check(self) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=5.0, transport=self.transport) as client:
                response = await client.get("/health")
                response.raise_for_status()
            return {"status": "healthy", "latency_ms": int((time.monotonic() - started) * 1000)}
        except httpx.HTTPError as e:
            return {"status": "unhealthy", "error": str(e)}


def build_ai_client(settings: Settings) -> AIDiagnosisClient:
    return AIDiagnosisClient(
        base_url=settings.ai_diagnosis_base_url,
        service_secret=settings.ai_service_secret,
        timeout=settings.ai_request_timeout_seconds,
        max_retries=settings.ai_max_retries,
    )


@lru_cache()
def get_ai_client() -> AIDiagnosisClient:
    return build_ai_client(get_settings())
