# tenderly/services/shift_service.py
"""Resolve the on-duty doctor from configured shift windows."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, Callable

from sqlalchemy.orm import Session

from .. import crud, models
from ..config import Settings
from ..errors import NotFoundError
from ..schemas import ShiftCreate
from ..session_store import SessionStore

logger = logging.getLogger(__name__)

# All shift hours are clinic-local (IST)
IST = timezone(timedelta(hours=5, minutes=30))

CACHE_PREFIX = "doctor-shift:current-doctor:"

DEFAULT_SHIFTS = [
    {"shift_type": models.ShiftType.morning, "start_hour": 7, "end_hour": 16,
     "description": "Morning shift (7 AM - 4 PM)"},
    {"shift_type": models.ShiftType.evening, "start_hour": 16, "end_hour": 23,
     "description": "Evening shift (4 PM - 11 PM)"},
]


def cache_key(hour: int) -> str:
    return f"{CACHE_PREFIX}{hour}"


class DoctorShiftResolver:

    def __init__(self, store: SessionStore, settings: Settings, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(IST))

    def current_hour(self) -> int:
        return self.clock().astimezone(IST).hour

    def fallback_doctor_id(self, hour: int) -> Optional[int]:
        """Morning fallback during day hours, evening fallback otherwise."""
        if 7 <= hour < 16:
            return self.settings.morning_doctor_id or self.settings.evening_doctor_id
        return self.settings.evening_doctor_id or self.settings.morning_doctor_id

    def _match(self, db: Session, hour: int) -> Optional[models.DoctorShift]:
        shifts = crud.get_active_shifts_for_hour(db, hour)
        if not shifts:
            return None
        if len(shifts) > 1:
            logger.warning(
                f"Overlapping shifts at hour {hour}: "
                f"{[s.shift_type.value for s in shifts]}; using {shifts[0].shift_type.value}"
            )
        return shifts[0]

    def get_active_doctor_for_current_time(self, db: Session) -> int:
        hour = self.current_hour()
        cached = self.store.get(cache_key(hour))
        if cached is not None:
            return int(cached)

        shift = self._match(db, hour)
        if shift is not None:
            self.store.set(cache_key(hour), shift.doctor_id, self.settings.shift_cache_ttl_seconds)
            return shift.doctor_id

        fallback = self.fallback_doctor_id(hour)
        if fallback is None:
            raise NotFoundError(f"No active doctor found for hour {hour}")
        logger.warning(f"No active shift for hour {hour}, using fallback doctor {fallback}")
        self.store.set(cache_key(hour), fallback, self.settings.shift_fallback_cache_ttl_seconds)
        return fallback

    def current_doctor(self, db: Session) -> Dict[str, Any]:
        hour = self.current_hour()
        cached = self.store.get(cache_key(hour)) is not None
        return {"doctor_id": self.get_active_doctor_for_current_time(db), "hour": hour, "cached": cached}

    def clear_cache(self) -> None:
        for hour in range(24):
            self.store.delete(cache_key(hour))

    def force_refresh_current_doctor(self, db: Session) -> Dict[str, Any]:
        hour = self.current_hour()
        self.clear_cache()
        shift = self._match(db, hour)
        doctor_id = shift.doctor_id if shift else self.fallback_doctor_id(hour)
        if doctor_id is None:
            raise NotFoundError(f"No active doctor found for hour {hour}")
        ttl = self.settings.shift_cache_ttl_seconds if shift else self.settings.shift_fallback_cache_ttl_seconds
        self.store.set(cache_key(hour), doctor_id, ttl)

        all_shifts = crud.get_shifts(db)
        return {
            "doctor_id": doctor_id,
            "source": "database" if shift else "fallback",
            "shift_info": {
                "shiftType": shift.shift_type.value,
                "startHour": shift.start_hour,
                "endHour": shift.end_hour,
            } if shift else None,
            "debug_info": {
                "currentHour": hour,
                "timezone": "Asia/Kolkata",
                "checkedAt": self.clock().isoformat(),
                "shifts": [
                    {
                        "shiftType": s.shift_type.value,
                        "doctorId": s.doctor_id,
                        "startHour": s.start_hour,
                        "endHour": s.end_hour,
                        "status": s.status.value,
                        "matches": s.status == models.ShiftStatus.active and s.start_hour <= hour < s.end_hour,
                    }
                    for s in all_shifts
                ],
                "fallbackDoctorId": self.fallback_doctor_id(hour),
            },
        }

    def initialize_default_shifts(self, db: Session) -> List[models.DoctorShift]:
        """Seed morning/evening shifts when none exist. Safe on every boot."""
        if crud.count_shifts(db) > 0:
            return []
        morning, evening = self.settings.morning_doctor_id, self.settings.evening_doctor_id
        if morning is None or evening is None:
            logger.warning("MORNING_DOCTOR_ID/EVENING_DOCTOR_ID not configured; default shifts not seeded")
            return []
        created = []
        for row, doctor_id in zip(DEFAULT_SHIFTS, (morning, evening)):
            created.append(crud.upsert_shift(db, dict(row, doctor_id=doctor_id, status=models.ShiftStatus.active)))
        self.clear_cache()
        logger.info("Default doctor shifts initialized")
        return created

    def save_shift(self, db: Session, shift: ShiftCreate, updated_by: Optional[int] = None) -> models.DoctorShift:
        doctor = crud.get_user(db, shift.doctor_id)
        if doctor is None or doctor.role != models.UserRole.doctor:
            raise NotFoundError(f"Doctor {shift.doctor_id} not found")
        saved = crud.upsert_shift(db, shift.model_dump(), updated_by=updated_by)
        self.clear_cache()
        return saved

    def update_shift_status(self, db: Session, shift_type: models.ShiftType, status: models.ShiftStatus,
                            updated_by: Optional[int] = None) -> models.DoctorShift:
        shift = crud.get_shift_by_type(db, shift_type)
        if shift is None:
            raise NotFoundError(f"No {shift_type.value} shift configured")
        saved = crud.upsert_shift(db, {"shift_type": shift_type, "status": status}, updated_by=updated_by)
        self.clear_cache()
        return saved
