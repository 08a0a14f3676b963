# ============================================================
# unlock.py — Unlock Trigger
# ------------------------------------------------------------
# Réagit à PaymentStatusChanged. Seul le passage "non payé → paid"
# ouvre la location : une mise à jour qui laisse le paiement à paid
# ne fait rien. La mise à jour de la location est conditionnée à
# l'absence de code d'accès : si le même passage est livré deux
# fois, la seconde livraison trouve le code de la première et
# s'arrête.
# ============================================================
import secrets
from typing import Callable, Optional
from sqlmodel import Session

from locker_rental import config
from locker_rental.ledger.models import utcnow
from locker_rental.ledger.outbox import queue_notification
from locker_rental.ledger.repository import RentalRepository


# uniforme sur 100000..999999
def generate_access_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def is_paid_edge(before: Optional[str], after: Optional[str]) -> bool:
    return before != "paid" and after == "paid"


def unlock_rental(s: Session, rental_id: str, before: Optional[str], after: Optional[str],
                  code_factory: Callable[[], str] = generate_access_code) -> str:
    if not is_paid_edge(before, after):
        return "skipped"

    rentals = RentalRepository(s)
    if rentals.activate(rental_id, code_factory(), utcnow()):
        rental = rentals.get(rental_id)
        queue_notification(
            s, "rental_unlocked", rental.user_email or config.DEFAULT_PAYER_EMAIL,
            subject="Your locker rental is active",
            body=f"Payment received for rental {rental_id}. Your access code is {rental.access_code}.",
            dedupe_key=f"RentalUnlocked:{rental_id}",
        )
        s.commit()
        print(f"[unlock] access code issued, rental {rental_id} active", flush=True)
        return "unlocked"

    rental = rentals.get(rental_id)
    if rental is None:
        print(f"[unlock] ERROR rental {rental_id} not found for paid payment", flush=True)
        return "missing"
    if rental.access_code:
        print(f"[unlock] rental {rental_id} already unlocked, nothing to do", flush=True)
        return "already_unlocked"

    # payé mais la location ne peut plus être activée (annulée)
    print(f"[unlock] ERROR rental {rental_id} is {rental.status} but its payment is paid", flush=True)
    queue_notification(
        s, "payment_conflict", config.OPS_EMAIL,
        subject=f"Paid rental {rental_id} could not be activated",
        body=f"Payment for rental {rental_id} was confirmed while the rental is {rental.status}.",
        dedupe_key=f"PaidNotActivated:{rental_id}",
    )
    s.commit()
    return "not_activatable"
