# tests/test_shift_resolver.py
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from tenderly import crud
from tenderly.config import get_settings
from tenderly.errors import NotFoundError
from tenderly.models import ShiftStatus, ShiftType
from tenderly.schemas import ShiftCreate
from tenderly.services.shift_service import DoctorShiftResolver, cache_key

from conftest import FakeClock


def at_ist(hour, minute=0):
    """FakeClock for ``hour:minute`` IST on the test day."""
    total = hour * 60 + minute - 330
    day = 2 if total >= 0 else 1
    total %= 24 * 60
    return FakeClock(datetime(2026, 3, day, total // 60, total % 60, tzinfo=timezone.utc))


@pytest.mark.parametrize("hour,minute,expected", [
    (7, 0, "morning"),
    (10, 0, "morning"),
    (15, 59, "morning"),
    (16, 0, "evening"),
    (22, 59, "evening"),
])
def test_shift_window_boundaries(store, settings, db_session, doctor, evening_doctor, hour, minute, expected):
    resolver = DoctorShiftResolver(store, settings, clock=at_ist(hour, minute))
    resolver.initialize_default_shifts(db_session)

    expected_id = doctor.id if expected == "morning" else evening_doctor.id
    assert resolver.current_hour() == hour
    assert resolver.get_active_doctor_for_current_time(db_session) == expected_id


def test_outside_all_shifts_uses_the_evening_fallback(store, settings, db_session, evening_doctor, caplog):
    resolver = DoctorShiftResolver(store, settings, clock=at_ist(2))
    resolver.initialize_default_shifts(db_session)

    assert resolver.get_active_doctor_for_current_time(db_session) == evening_doctor.id
    assert "using fallback doctor" in caplog.text


def test_resolution_is_cached_per_hour(resolver, store, clock, db_session, doctor, evening_doctor):
    assert resolver.get_active_doctor_for_current_time(db_session) == doctor.id
    assert store.get(cache_key(10)) == doctor.id

    # a direct database change is not seen until the cache entry lapses
    crud.upsert_shift(db_session, {"shift_type": ShiftType.morning, "doctor_id": evening_doctor.id})
    clock.advance(minutes=29)
    assert resolver.get_active_doctor_for_current_time(db_session) == doctor.id

    clock.advance(minutes=1)
    assert resolver.get_active_doctor_for_current_time(db_session) == evening_doctor.id


def test_fallback_is_cached_for_a_shorter_time(resolver, store, clock, db_session, doctor):
    resolver.update_shift_status(db_session, ShiftType.morning, ShiftStatus.inactive)

    assert resolver.get_active_doctor_for_current_time(db_session) == doctor.id
    clock.advance(seconds=899)
    assert store.get(cache_key(10)) == doctor.id
    clock.advance(seconds=1)
    assert store.get(cache_key(10)) is None


def test_overlapping_shifts_pick_the_first_configured(resolver, db_session, doctor, evening_doctor, admin, caplog):
    resolver.save_shift(db_session, ShiftCreate(shift_type=ShiftType.evening, doctor_id=evening_doctor.id,
                                                start_hour=8, end_hour=23), updated_by=admin.id)

    assert resolver.get_active_doctor_for_current_time(db_session) == doctor.id
    assert "Overlapping shifts at hour 10" in caplog.text


def test_saving_a_shift_clears_the_cache(resolver, db_session, evening_doctor, admin):
    resolver.get_active_doctor_for_current_time(db_session)
    resolver.save_shift(db_session, ShiftCreate(shift_type=ShiftType.morning, doctor_id=evening_doctor.id,
                                                start_hour=7, end_hour=16), updated_by=admin.id)

    assert resolver.get_active_doctor_for_current_time(db_session) == evening_doctor.id
    assert crud.get_shift_by_type(db_session, ShiftType.morning).updated_by == admin.id


def test_shift_must_name_a_doctor(resolver, db_session, patient):
    with pytest.raises(NotFoundError):
        resolver.save_shift(db_session, ShiftCreate(shift_type=ShiftType.morning, doctor_id=patient.id,
                                                    start_hour=7, end_hour=16))


def test_shift_window_must_be_ordered():
    with pytest.raises(ValidationError):
        ShiftCreate(shift_type=ShiftType.morning, doctor_id=1, start_hour=16, end_hour=7)


def test_no_shift_and_no_fallback(store, clock, db_session):
    settings = get_settings().model_copy(update={"morning_doctor_id": None, "evening_doctor_id": None})
    resolver = DoctorShiftResolver(store, settings, clock=clock)

    assert resolver.initialize_default_shifts(db_session) == []
    with pytest.raises(NotFoundError):
        resolver.get_active_doctor_for_current_time(db_session)


def test_default_shifts_are_seeded_once(resolver, db_session):
    assert crud.count_shifts(db_session) == 2
    assert resolver.initialize_default_shifts(db_session) == []
    evening = crud.get_shift_by_type(db_session, ShiftType.evening)
    assert (evening.start_hour, evening.end_hour) == (16, 23)


def test_current_doctor_reports_cache_state(resolver, db_session, doctor):
    assert resolver.current_doctor(db_session) == {"doctor_id": doctor.id, "hour": 10, "cached": False}
    assert resolver.current_doctor(db_session) == {"doctor_id": doctor.id, "hour": 10, "cached": True}


def test_force_refresh_bypasses_the_cache(resolver, store, db_session, doctor, evening_doctor):
    store.set(cache_key(10), evening_doctor.id, 1800)

    result = resolver.force_refresh_current_doctor(db_session)

    assert result["doctor_id"] == doctor.id
    assert result["source"] == "database"
    assert result["shift_info"] == {"shiftType": "morning", "startHour": 7, "endHour": 16}
    assert [s["matches"] for s in result["debug_info"]["shifts"]] == [True, False]
    assert store.get(cache_key(10)) == doctor.id
