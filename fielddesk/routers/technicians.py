"""Technician roster endpoints (staff only)."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..auth import PermissionChecker
from ..database import get_db
from ..schemas import TechnicianCreate, TechnicianResponse, TechnicianUpdate
from ..use_cases.technicians import (
    create_technician_use_case,
    list_technicians,
    update_technician_use_case,
)

router = APIRouter(
    prefix="/technicians",
    tags=["technicians"],
    dependencies=[Depends(PermissionChecker("canManageTechnicians"))],
)


@router.get("", response_model=list[TechnicianResponse])
def get_technicians(active: Optional[bool] = None, db: Session = Depends(get_db)):
    return list_technicians(db, active=active)


@router.post("", response_model=TechnicianResponse, status_code=status.HTTP_201_CREATED)
def create_technician(data: TechnicianCreate, db: Session = Depends(get_db)):
    return create_technician_use_case(
        db=db,
        name=data.name,
        phone=data.phone,
        user_id=data.user_id,
        is_available=data.is_available,
    )


@router.patch("/{technician_id}", response_model=TechnicianResponse)
def update_technician(technician_id: UUID, data: TechnicianUpdate, db: Session = Depends(get_db)):
    """Rename, change phone, (de)activate or toggle availability."""
    return update_technician_use_case(
        db=db,
        technician_id=technician_id,
        name=data.name,
        phone=data.phone,
        is_active=data.is_active,
        is_available=data.is_available,
    )
