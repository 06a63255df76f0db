# tenderly/transitions.py
"""Transition tables for the consultation and prescription state machines.

Every write to ``Consultation.status`` or ``Consultation.prescription_status``
goes through :func:`apply_consultation_status` / :func:`apply_prescription_status`.
"""
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional, Any

from .errors import InvalidTransitionError
from .models import Consultation, ConsultationStatus as CS, PrescriptionStatus as PS


CONSULTATION_TRANSITIONS: Dict[CS, FrozenSet[CS]] = {
    CS.draft: frozenset({CS.payment_pending, CS.cancelled}),
    CS.payment_pending: frozenset({CS.payment_confirmed, CS.cancelled, CS.expired}),
    CS.payment_confirmed: frozenset({CS.clinical_assessment_pending, CS.cancelled, CS.refunded}),
    CS.clinical_assessment_pending: frozenset({CS.clinical_assessment_complete, CS.cancelled}),
    CS.clinical_assessment_complete: frozenset({CS.doctor_review_pending, CS.doctor_assigned, CS.cancelled}),
    CS.doctor_review_pending: frozenset({CS.doctor_assigned, CS.cancelled}),
    CS.doctor_assigned: frozenset({CS.in_progress, CS.cancelled}),
    CS.in_progress: frozenset({CS.completed, CS.on_hold, CS.cancelled}),
    CS.on_hold: frozenset({CS.in_progress, CS.cancelled}),
    CS.completed: frozenset(),
    CS.cancelled: frozenset(),
    CS.expired: frozenset(),
    CS.refunded: frozenset(),
}

TERMINAL_CONSULTATION_STATES = frozenset(s for s, targets in CONSULTATION_TRANSITIONS.items() if not targets)

PRESCRIPTION_TRANSITIONS: Dict[PS, FrozenSet[PS]] = {
    PS.not_started: frozenset({PS.diagnosis_modification, PS.cancelled}),
    PS.diagnosis_modification: frozenset({PS.diagnosis_modification, PS.prescription_draft, PS.cancelled}),
    PS.prescription_draft: frozenset({PS.prescription_draft, PS.diagnosis_modification, PS.awaiting_review, PS.cancelled}),
    PS.awaiting_review: frozenset({PS.prescription_draft, PS.awaiting_signature, PS.signed, PS.revision_required, PS.cancelled}),
    PS.awaiting_signature: frozenset({PS.signed, PS.revision_required, PS.cancelled}),
    PS.signed: frozenset({PS.sent}),
    PS.sent: frozenset(),
    PS.revision_required: frozenset({PS.prescription_draft, PS.diagnosis_modification}),
    PS.cancelled: frozenset({PS.prescription_draft}),
}

# Statuses that close a consultation and release the patient's active slot
_CLOSING_STATES = {CS.completed, CS.cancelled, CS.expired, CS.refunded}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition_consultation(current: CS, target: CS) -> bool:
    return target in CONSULTATION_TRANSITIONS.get(current, frozenset())


def can_transition_prescription(current: PS, target: PS) -> bool:
    return target in PRESCRIPTION_TRANSITIONS.get(current, frozenset())


def ensure_consultation_transition(current: CS, target: CS) -> None:
    if not can_transition_consultation(current, target):
        raise InvalidTransitionError("consultation", CS(current).value, CS(target).value)


def ensure_prescription_transition(current: PS, target: PS) -> None:
    if not can_transition_prescription(current, target):
        raise InvalidTransitionError("prescription", PS(current).value, PS(target).value)


def apply_consultation_status(
    consultation: Consultation,
    target: CS,
    changed_by: Optional[int],
    reason: Optional[str] = None,
    source: str = "system",
    trigger: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Validate and apply a status change, appending the history entry.

    The caller commits. Returns the appended history entry.
    """
    current = CS(consultation.status)
    target = CS(target)
    ensure_consultation_transition(current, target)

    now = now or _utcnow()
    entry = {
        "status": target.value,
        "previousStatus": current.value,
        "changedAt": now.isoformat(),
        "changedBy": changed_by,
        "reason": reason,
        "metadata": {"source": source, "trigger": trigger, "notes": notes},
    }
    consultation.status = target
    # JSON columns only detect reassignment
    consultation.status_history = list(consultation.status_history or []) + [entry]

    if target in _CLOSING_STATES:
        consultation.is_active = False
        if target == CS.completed:
            consultation.completed_at = now
        else:
            consultation.cancelled_at = now
    return entry


def apply_prescription_status(consultation: Consultation, target: PS) -> None:
    current = PS(consultation.prescription_status)
    target = PS(target)
    ensure_prescription_transition(current, target)
    consultation.prescription_status = target
