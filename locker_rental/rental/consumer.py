# ============================================================
# Rental Service — RabbitMQ Consumer
# ------------------------------------------------------------
# Écoute l'échange "events" (queue rental.events) :
#   - RentalCreated        → Invoice Issuer
#   - PaymentStatusChanged → Unlock Trigger
# Les événements préparés par les handlers (notifications,
# callbacks rejoués) sont relayés avant l'ack du message.
# ============================================================
from typing import Optional
from sqlmodel import Session

from locker_rental import broker
from locker_rental.errors import ServiceError
from locker_rental.ledger.outbox import relay_outbox
from locker_rental.payment.gateway import InvoiceGateway
from locker_rental.rental.issuer import issue_invoice
from locker_rental.rental.unlock import unlock_rental

RENTAL_QUEUE = "rental.events"


def on_rental_created(s: Session, payload: dict, gateway: Optional[InvoiceGateway] = None,
                      publish=broker.publish_event):
    rental_id = payload.get("rentalId")
    if not rental_id:
        print("[rental-consumer] RentalCreated without rentalId, skipping", flush=True)
        return
    try:
        issue_invoice(s, rental_id, gateway or InvoiceGateway())
    except ServiceError as e:
        # abandon : la location reste pending, POST /v1/rentals/{id}/invoice relance
        s.rollback()
        print(f"[issuer] invoice for rental {rental_id} abandoned: {type(e).__name__}: {e}", flush=True)
    relay_outbox(s, publish)


def on_payment_status_changed(s: Session, payload: dict, publish=broker.publish_event):
    rental_id = payload.get("rentalId")
    if not rental_id:
        print("[rental-consumer] PaymentStatusChanged without rentalId, skipping", flush=True)
        return
    unlock_rental(s, rental_id, payload.get("before"), payload.get("after"))
    relay_outbox(s, publish)


def build_handlers(gateway: Optional[InvoiceGateway] = None, publish=broker.publish_event):
    return {
        "RentalCreated": lambda s, p: on_rental_created(s, p, gateway, publish),
        "PaymentStatusChanged": lambda s, p: on_payment_status_changed(s, p, publish),
    }


def start_consumer():
    broker.start_consumer("rental-consumer", RENTAL_QUEUE, build_handlers())
