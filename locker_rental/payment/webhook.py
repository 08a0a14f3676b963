# ============================================================
# webhook.py — Webhook Ingestor
# ------------------------------------------------------------
# Applique les callbacks du fournisseur (invoice.paid /
# invoice.expired / invoice.failed) au Payment dont l'id est la
# référence externe sans son préfixe "rental_".
#
# Le changement de statut est un UPDATE conditionnel depuis
# "pending", donc un callback aboutit toujours à l'un de :
#   applied   : pending → terminal, PaymentStatusChanged préparé
#   duplicate : même statut terminal, rien à faire
#   conflict  : un autre statut terminal est déjà posé ; le
#               callback est rejeté et une alerte est mise en queue
#   deferred  : le Payment n'existe pas encore (émission de la
#               facture en cours) ; le callback est mis de côté et
#               rejoué une fois le Payment écrit
#   ignored   : autres types d'événement, payloads inutilisables
# ============================================================
from typing import Optional
from sqlalchemy import delete
from sqlmodel import Session, select

from locker_rental import config
from locker_rental.ledger.models import DeferredCallback, PAYMENT_TERMINAL, utcnow
from locker_rental.ledger.outbox import add_event, queue_notification
from locker_rental.ledger.repository import PaymentRepository

HANDLED_EVENTS = ("invoice.paid", "invoice.expired", "invoice.failed")

# graphies du fournisseur qui valent le même statut du ledger
STATUS_ALIASES = {"settled": "paid"}


def normalize_status(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    status = str(raw).strip().lower()
    return STATUS_ALIASES.get(status, status)


def rental_id_from_ref(external_id: Optional[str]) -> Optional[str]:
    if not isinstance(external_id, str) or not external_id.startswith(config.EXTERNAL_REF_PREFIX):
        return None
    return external_id[len(config.EXTERNAL_REF_PREFIX):] or None


def ingest_callback(s: Session, event_type: Optional[str], data: Optional[dict]) -> str:
    if event_type not in HANDLED_EVENTS:
        print(f"[webhook] ignoring event type={event_type}", flush=True)
        return "ignored"

    if not isinstance(data, dict):
        data = {}
    invoice_id = data.get("id")
    if invoice_id is not None:
        invoice_id = str(invoice_id)
    external_id = data.get("external_id")
    rental_id = rental_id_from_ref(external_id)
    status = normalize_status(data.get("status"))
    if not rental_id or status not in PAYMENT_TERMINAL:
        print(f"[webhook] unusable {event_type} invoice={invoice_id} external_id={external_id} "
              f"status={data.get('status')}, ignoring", flush=True)
        return "ignored"

    return apply_payment_status(s, rental_id, status, invoice_id=invoice_id, event_type=event_type)


def apply_payment_status(s: Session, rental_id: str, status: str, invoice_id: Optional[str] = None,
                         event_type: str = "", now=None) -> str:
    repo = PaymentRepository(s)
    now = now or utcnow()

    if repo.transition(rental_id, status, now):
        add_event(s, "PaymentStatusChanged", {
            "rentalId": rental_id,
            "invoiceId": invoice_id,
            "before": "pending",
            "after": status,
        }, message_id=f"PaymentStatusChanged:{rental_id}:{status}")
        s.commit()
        print(f"[webhook] payment {rental_id} invoice={invoice_id} pending -> {status} ({event_type})", flush=True)
        return "applied"

    p = repo.get(rental_id)
    if p is None:
        s.add(DeferredCallback(rental_id=rental_id, invoice_id=invoice_id,
                               event_type=event_type, status=status, received_at=now))
        s.commit()
        print(f"[webhook] payment {rental_id} not found yet, deferred {event_type} invoice={invoice_id}", flush=True)
        return "deferred"

    if p.status == status:
        print(f"[webhook] payment {rental_id} already {status}, duplicate {event_type} ignored", flush=True)
        return "duplicate"

    print(f"[webhook] CONFLICT payment {rental_id} invoice={invoice_id} is {p.status}, "
          f"rejected {event_type} -> {status}", flush=True)
    queue_notification(
        s, "payment_conflict", config.OPS_EMAIL,
        subject=f"Payment conflict on rental {rental_id}",
        body=(f"Callback {event_type} for invoice {invoice_id} tried to move payment {rental_id} "
              f"from {p.status} to {status}. The payment was left unchanged."),
        dedupe_key=f"PaymentConflict:{rental_id}:{p.status}:{status}",
    )
    s.commit()
    return "conflict"


# ------------------------------------------------------------
# Callbacks en attente
# ------------------------------------------------------------
# Rejoués dans l'ordre d'arrivée une fois leur Payment présent.
# Ceux dont le Payment manque encore restent en attente. Une ligne
# est réclamée en la supprimant ; si un rejeu concurrent l'a
# supprimée avant, on passe.
# ------------------------------------------------------------
def replay_deferred(s: Session, rental_id: Optional[str] = None) -> int:
    query = select(DeferredCallback).order_by(DeferredCallback.id)
    if rental_id is not None:
        query = query.where(DeferredCallback.rental_id == rental_id)
    parked = [(cb.id, cb.rental_id, cb.status, cb.invoice_id, cb.event_type) for cb in s.exec(query).all()]

    repo = PaymentRepository(s)
    replayed = 0
    for cb_id, rid, status, invoice_id, event_type in parked:
        if repo.get(rid) is None:
            continue
        claimed = s.exec(
            delete(DeferredCallback).where(DeferredCallback.id == cb_id)
        ).rowcount == 1
        if not claimed:
            s.rollback()
            continue
        outcome = apply_payment_status(s, rid, status, invoice_id=invoice_id, event_type=event_type)
        s.commit()
        print(f"[webhook] replayed deferred {event_type} for {rid}: {outcome}", flush=True)
        replayed += 1
    return replayed
