# tenderly/routers/doctor_shifts.py
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from .. import crud, schemas, security, models
from ..database import get_db
from ..dependencies import get_shift_resolver
from ..services.shift_service import DoctorShiftResolver

router = APIRouter(
    prefix="/doctor-shifts",
    tags=["Doctor Shifts"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


@router.post("/", response_model=schemas.ShiftResponse, status_code=status.HTTP_201_CREATED)
def create_or_update_shift(
    shift: schemas.ShiftCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    resolver: DoctorShiftResolver = Depends(get_shift_resolver),
):
    """Create the shift of this type, or replace its window and doctor."""
    return resolver.save_shift(db, shift, updated_by=current_user.id)


@router.get("/", response_model=List[schemas.ShiftResponse])
def list_shifts(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_doctor_or_admin),
):
    return crud.get_shifts(db)


@router.get("/current-doctor", response_model=schemas.CurrentDoctorResponse)
def get_current_doctor(
    db: Session = Depends(get_db),
    resolver: DoctorShiftResolver = Depends(get_shift_resolver),
):
    return resolver.current_doctor(db)


@router.patch("/{shift_type}/status", response_model=schemas.ShiftResponse)
def update_shift_status(
    shift_type: models.ShiftType,
    body: schemas.ShiftStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    resolver: DoctorShiftResolver = Depends(get_shift_resolver),
):
    return resolver.update_shift_status(db, shift_type, body.status, updated_by=current_user.id)


@router.post("/initialize-defaults", response_model=List[schemas.ShiftResponse])
def initialize_default_shifts(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    resolver: DoctorShiftResolver = Depends(get_shift_resolver),
):
    """Seed the morning/evening pair; returns an empty list when shifts already exist."""
    return resolver.initialize_default_shifts(db)


@router.post("/force-refresh", response_model=schemas.ForceRefreshResponse)
def force_refresh(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
    resolver: DoctorShiftResolver = Depends(get_shift_resolver),
):
    return resolver.force_refresh_current_doctor(db)
