# ============================================================
# issuer.py — Invoice Issuer
# ------------------------------------------------------------
# Ouvre la facture fournisseur d'une location pending et écrit son
# Payment (id = id de la location). Le Payment est écrit en un seul
# commit après la réponse du fournisseur : il est complet ou absent.
# La référence externe "rental_<id>" est déterministe, relancer
# cette étape n'ouvre pas une seconde facture chez le fournisseur.
# ============================================================
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from locker_rental import config
from locker_rental.errors import GatewayError, NotFoundError, StateConflictError, ValidationError
from locker_rental.ledger.models import Payment, PAYMENT_STATUSES
from locker_rental.ledger.outbox import add_event
from locker_rental.ledger.repository import PaymentRepository, RentalRepository
from locker_rental.payment.gateway import InvoiceGateway
from locker_rental.payment.webhook import normalize_status, replay_deferred


def issue_invoice(s: Session, rental_id: str, gateway: InvoiceGateway) -> Payment:
    rentals = RentalRepository(s)
    payments = PaymentRepository(s)

    rental = rentals.get(rental_id)
    if rental is None:
        raise NotFoundError(f"rental {rental_id} not found")

    existing = payments.get(rental_id)
    if existing is not None:
        print(f"[issuer] payment for rental {rental_id} already exists (invoice={existing.provider_invoice_id})", flush=True)
        return existing

    if rental.status != "pending":
        raise StateConflictError(f"rental {rental_id} is {rental.status}, not pending")
    if not rental.user_id or rental.amount is None or rental.amount <= 0:
        raise ValidationError(f"rental {rental_id} has no user or amount")

    external_ref = f"{config.EXTERNAL_REF_PREFIX}{rental.id}"
    result = gateway.issue_invoice(
        amount=rental.amount,
        external_ref=external_ref,
        payer_email=rental.user_email or config.DEFAULT_PAYER_EMAIL,
        description=f"Invoice for rental {rental.id}",
    )
    if not result.ok:
        raise GatewayError(result.failure or "unknown", result.detail)

    inv = result.invoice
    status = normalize_status(inv.status)
    if status not in PAYMENT_STATUSES:
        print(f"[issuer] unknown invoice status {inv.status!r} for rental {rental_id}, storing pending", flush=True)
        status = "pending"

    p = Payment(
        id=rental.id,
        rental_id=rental.id,
        provider_invoice_id=inv.id,
        amount=inv.amount,
        currency=inv.currency,
        status=status,
        invoice_url=inv.invoice_url,
    )
    try:
        payments.create(p)
        # une facture peut déjà être payée à sa création : c'est aussi
        # le passage à paid
        if status == "paid":
            add_event(s, "PaymentStatusChanged", {
                "rentalId": rental.id, "invoiceId": inv.id, "before": None, "after": "paid",
            }, message_id=f"PaymentStatusChanged:{rental.id}:paid")
        s.commit()
    except IntegrityError:
        # une émission concurrente a écrit le paiement avant nous
        s.rollback()
        print(f"[issuer] payment for rental {rental_id} written concurrently, keeping the first one", flush=True)
        return payments.get(rental_id)

    print(f"[issuer] invoice {inv.id} created for rental {rental_id} status={status}", flush=True)
    replay_deferred(s, rental_id)
    return payments.get(rental_id)
