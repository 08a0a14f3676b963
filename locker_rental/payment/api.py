# ============================================================
# Payment API Router
# ------------------------------------------------------------
# Endpoint public des callbacks du fournisseur de paiement et
# lecture du paiement d'une location.
#   200 : callback traité, ignoré, mis en attente ou rejeté
#   403 : x-callback-token invalide, rien n'est touché
#   500 : échec pendant le traitement, le fournisseur réessaiera
# ============================================================
import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlmodel import Session, SQLModel

from locker_rental import config
from locker_rental.broker import get_publisher
from locker_rental.ledger.db import get_session
from locker_rental.ledger.models import Payment
from locker_rental.ledger.outbox import relay_outbox
from locker_rental.ledger.repository import PaymentRepository
from locker_rental.payment.webhook import ingest_callback

router = APIRouter()


class InvoiceCallback(SQLModel):
    type: Optional[str] = None
    data: Optional[dict] = None


# Exécuté avant toute lecture du body : un appelant avec un mauvais
# token n'atteint jamais le ledger.
def verify_callback_token(x_callback_token: Optional[str] = Header(None)):
    expected = config.XENDIT_WEBHOOK_TOKEN
    if not expected or not x_callback_token or not hmac.compare_digest(
        x_callback_token.encode("utf-8"), expected.encode("utf-8")
    ):
        print("[webhook] invalid callback token", flush=True)
        raise HTTPException(403, "Forbidden")


@router.post("/v1/payments/webhook", dependencies=[Depends(verify_callback_token)])
def handle_invoice_callback(event: InvoiceCallback, s: Session = Depends(get_session),
                            publish=Depends(get_publisher)):
    try:
        outcome = ingest_callback(s, event.type, event.data)
    except Exception as e:
        s.rollback()
        print(f"[webhook] error handling {event.type} data={event.data}: {e!r}", flush=True)
        raise HTTPException(500, "Internal Server Error")
    relay_outbox(s, publish)
    return {"ok": True, "outcome": outcome}


@router.get("/v1/payments/{rental_id}", response_model=Payment)
def get_payment(rental_id: str, s: Session = Depends(get_session)):
    p = PaymentRepository(s).get(rental_id)
    if not p:
        raise HTTPException(404, "not found")
    return p
