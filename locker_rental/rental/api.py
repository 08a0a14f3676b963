# ============================================================
# Rental API Router
# ------------------------------------------------------------
# Expose les endpoints REST pour créer/consulter une location,
# relancer sa facture, l'annuler et la prolonger. La création
# prépare RentalCreated dans l'outbox ; le consumer rental ouvre
# ensuite la facture.
# ============================================================
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, SQLModel

from locker_rental import config
from locker_rental.broker import get_publisher
from locker_rental.errors import GatewayError, NotFoundError, ServiceError, StateConflictError, ValidationError
from locker_rental.ledger.db import get_session
from locker_rental.ledger.models import Payment, Rental, utcnow
from locker_rental.ledger.outbox import add_event, relay_outbox
from locker_rental.ledger.repository import PaymentRepository, RentalRepository
from locker_rental.payment.gateway import InvoiceGateway
from locker_rental.rental.issuer import issue_invoice

router = APIRouter()

HTTP_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    StateConflictError: 409,
    GatewayError: 502,
}


class RentalCreate(SQLModel):
    userId: str
    userEmail: Optional[str] = None
    amount: int
    startTime: datetime
    endTime: datetime


class RentalExtend(SQLModel):
    minutes: int


def get_gateway():
    return InvoiceGateway()


# si pas de tz, on suppose la timezone locale, puis on normalise en UTC
def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=config.LOCAL_TZ)
    return dt.astimezone(timezone.utc)


def to_local(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(config.LOCAL_TZ).isoformat()


def serialize_rental(r: Rental, p: Optional[Payment] = None) -> dict:
    return {
        "id": r.id,
        "userId": r.user_id,
        "userEmail": r.user_email,
        "amount": r.amount,
        "status": r.status,
        "accessCode": r.access_code,
        "startTime": to_local(r.start_time),
        "endTime": to_local(r.end_time),
        "createdAt": to_local(r.created_at),
        "updatedAt": to_local(r.updated_at),
        "payment": {
            "status": p.status,
            "providerInvoiceId": p.provider_invoice_id,
            "invoiceUrl": p.invoice_url,
            "currency": p.currency,
        } if p else None,
    }


def _get_or_404(s: Session, rental_id: str) -> Rental:
    r = RentalRepository(s).get(rental_id)
    if not r:
        raise HTTPException(404, "not found")
    return r


# ------------------------------------------------------------
# POST /v1/rentals — Créer une location
# ------------------------------------------------------------
# - amount doit être positif, start avant end
# - la location et son événement RentalCreated partent dans le même commit
# ------------------------------------------------------------
@router.post("/v1/rentals", status_code=201)
def create_rental(body: RentalCreate, s: Session = Depends(get_session), publish=Depends(get_publisher)):
    if body.amount <= 0:
        raise HTTPException(400, "amount must be positive")
    start, end = to_utc(body.startTime), to_utc(body.endTime)
    if start >= end:
        raise HTTPException(400, "startTime must be before endTime")

    r = RentalRepository(s).create(Rental(
        user_id=body.userId,
        user_email=body.userEmail,
        amount=body.amount,
        start_time=start,
        end_time=end,
    ))
    add_event(s, "RentalCreated", {
        "rentalId": r.id,
        "userId": r.user_id,
        "amount": r.amount,
    }, message_id=f"RentalCreated:{r.id}")
    s.commit()
    print(f"[rentals] rental {r.id} created for user {r.user_id} amount={r.amount}", flush=True)
    relay_outbox(s, publish)
    return serialize_rental(r)


@router.get("/v1/rentals/{rental_id}")
def get_rental(rental_id: str, s: Session = Depends(get_session)):
    r = _get_or_404(s, rental_id)
    return serialize_rental(r, PaymentRepository(s).get(rental_id))


# ------------------------------------------------------------
# POST /v1/rentals/{id}/invoice — Relancer l'émission de la facture
# ------------------------------------------------------------
# Pour les locations restées pending après un échec du fournisseur.
# Renvoie le paiement existant si la facture a déjà été émise.
# ------------------------------------------------------------
@router.post("/v1/rentals/{rental_id}/invoice")
def retry_invoice(rental_id: str, s: Session = Depends(get_session),
                  gateway: InvoiceGateway = Depends(get_gateway), publish=Depends(get_publisher)):
    try:
        p = issue_invoice(s, rental_id, gateway)
    except ServiceError as e:
        s.rollback()
        print(f"[rentals] invoice retry for {rental_id} failed: {type(e).__name__}: {e}", flush=True)
        raise HTTPException(HTTP_STATUS.get(type(e), 500), str(e))
    relay_outbox(s, publish)
    return {
        "rentalId": p.rental_id,
        "providerInvoiceId": p.provider_invoice_id,
        "status": p.status,
        "invoiceUrl": p.invoice_url,
    }


@router.post("/v1/rentals/{rental_id}/cancel")
def cancel_rental(rental_id: str, s: Session = Depends(get_session)):
    r = _get_or_404(s, rental_id)
    if not RentalRepository(s).cancel(rental_id, utcnow()):
        raise HTTPException(409, f"rental is {r.status}")
    s.commit()
    print(f"[rentals] rental {rental_id} cancelled", flush=True)
    return {"status": "cancelled"}


# ------------------------------------------------------------
# POST /v1/rentals/{id}/extend — Repousser la fin d'une location active
# ------------------------------------------------------------
@router.post("/v1/rentals/{rental_id}/extend")
def extend_rental(rental_id: str, body: RentalExtend, s: Session = Depends(get_session)):
    if body.minutes <= 0:
        raise HTTPException(400, "minutes must be positive")
    r = _get_or_404(s, rental_id)
    if r.status != "active":
        raise HTTPException(409, "not active")
    current_end = r.end_time
    new_end = current_end + timedelta(minutes=body.minutes)
    if not RentalRepository(s).extend(rental_id, current_end, new_end, utcnow()):
        raise HTTPException(409, "rental changed concurrently")
    s.commit()
    print(f"[rentals] rental {rental_id} extended by {body.minutes} min", flush=True)
    return {"status": "active", "endTime": to_local(new_end)}
