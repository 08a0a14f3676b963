# ============================================================
# Hardware API Router
# ------------------------------------------------------------
# Les casiers poussent ici leur télémétrie. Indépendant du flux
# rental/payment : le dernier qui écrit gagne sur la ligne Locker.
# ============================================================
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, SQLModel

from locker_rental.ledger.db import get_session
from locker_rental.ledger.models import Locker
from locker_rental.ledger.repository import LockerRepository

router = APIRouter()


class LockerSync(SQLModel):
    lockerId: Optional[str] = None
    status: Optional[str] = None
    sensorData: Optional[dict] = None


@router.post("/v1/lockers/sync")
def sync_hardware_status(body: LockerSync, s: Session = Depends(get_session)):
    if not body.lockerId:
        raise HTTPException(400, "Missing lockerId")
    try:
        LockerRepository(s).upsert(body.lockerId, body.status or "unknown", body.sensorData or {})
        s.commit()
    except Exception as e:
        s.rollback()
        print(f"[hardware] error syncing locker {body.lockerId}: {e!r}", flush=True)
        raise HTTPException(500, "Internal Server Error")
    return {"ok": True}


@router.get("/v1/lockers/{locker_id}", response_model=Locker)
def get_locker(locker_id: str, s: Session = Depends(get_session)):
    locker = LockerRepository(s).get(locker_id)
    if not locker:
        raise HTTPException(404, "not found")
    return locker
