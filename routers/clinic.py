import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from db.init import get_db
from models.clinic import Clinic
from utils.deps import get_current_user, role_required, require_clinic_access
from utils.subscription_ledger import subscription_status_view

router = APIRouter()


class ClinicCreate(BaseModel):
    # No hyphens: clinic ids are embedded in "-"-separated external references
    id: Optional[str] = Field(default=None, max_length=64, pattern=r"^[A-Za-z0-9_]+$")
    name: str = Field(..., min_length=2, max_length=150)
    email: Optional[str] = None


def clinic_to_dict(c: Clinic) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "email": c.email,
        "subscription": subscription_status_view(c),
        "createdAt": c.created_at.isoformat() if c.created_at else None,
    }


@router.post("/", dependencies=[Depends(role_required("admin"))])
def create_clinic(data: ClinicCreate, db: Session = Depends(get_db)):
    """
    Create a clinic. Its subscription starts inactive on the free tier.
    """
    clinic_id = data.id or uuid.uuid4().hex
    if db.get(Clinic, clinic_id):
        raise HTTPException(status_code=409, detail="Clinic already exists")

    c = Clinic(id=clinic_id, name=data.name, email=data.email)
    db.add(c)
    db.commit()
    db.refresh(c)
    return clinic_to_dict(c)


@router.get("/{clinic_id}")
def get_clinic(clinic_id: str, db: Session = Depends(get_db), current_user = Depends(get_current_user)):
    require_clinic_access(current_user, clinic_id)
    c = db.get(Clinic, clinic_id)
    if not c:
        raise HTTPException(404)
    return clinic_to_dict(c)
