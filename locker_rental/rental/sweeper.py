# ============================================================
# sweeper.py — Balayage d'expiration et nettoyage quotidien
# ------------------------------------------------------------
# expire_rentals() sélectionne les locations actives dont la fin
# est passée, prépare une mise à jour conditionnelle
# "active → expired" par location et commit le tout d'un coup :
# soit tout le lot passe, soit rien. Les locations restées actives
# après un commit raté sont reprises au balayage suivant.
#
# La sélection est une simple lecture, pas un verrou. Une location
# annulée entre la lecture et le commit ne correspond plus au
# filtre "status = active" et garde son nouveau statut.
# ============================================================
from datetime import datetime, timedelta
from typing import Dict, Optional
from sqlalchemy import delete
from sqlmodel import Session, select

from locker_rental import config
from locker_rental.ledger.models import DeferredCallback, Notification, OutboxEvent, ProcessedMessage, utcnow
from locker_rental.ledger.repository import RentalRepository


def expire_rentals(s: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    rentals = RentalRepository(s)
    due = [r.id for r in rentals.list_expirable(now)]
    if not due:
        return 0

    expired = 0
    try:
        for rental_id in due:
            if rentals.expire(rental_id, now):
                expired += 1
        s.commit()
    except Exception:
        s.rollback()
        print(f"[sweeper] batch of {len(due)} rentals rolled back", flush=True)
        raise
    print(f"[sweeper] expired {expired} rentals ({len(due)} selected)", flush=True)
    return expired


# ------------------------------------------------------------
# Nettoyage des lignes de suivi plus vieilles que la rétention :
#  - clés d'idempotence des consumers
#  - événements d'outbox déjà relayés
#  - notifications envoyées
#  - callbacks en attente dont le Payment n'est jamais arrivé
# Les Rental et Payment ne sont jamais supprimés.
# ------------------------------------------------------------
def cleanup_expired_data(s: Session, now: Optional[datetime] = None,
                         retention_days: Optional[int] = None) -> Dict[str, int]:
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days if retention_days is not None else config.RETENTION_DAYS)

    stale = s.exec(select(DeferredCallback).where(DeferredCallback.received_at < cutoff)).all()
    for cb in stale:
        print(f"[sweeper] dropping parked {cb.event_type} for rental {cb.rental_id} "
              f"invoice={cb.invoice_id} status={cb.status} received {cb.received_at.isoformat()}", flush=True)
    stale_ids = [cb.id for cb in stale]

    removed = {
        "processed_messages": s.exec(
            delete(ProcessedMessage).where(ProcessedMessage.processed_at < cutoff)
        ).rowcount,
        "outbox_events": s.exec(
            delete(OutboxEvent).where(OutboxEvent.published_at.is_not(None), OutboxEvent.published_at < cutoff)
        ).rowcount,
        "notifications": s.exec(
            delete(Notification).where(Notification.status == "sent", Notification.sent_at < cutoff)
        ).rowcount,
        "deferred_callbacks": s.exec(
            delete(DeferredCallback).where(DeferredCallback.id.in_(stale_ids))
        ).rowcount if stale_ids else 0,
    }
    s.commit()
    print(f"[sweeper] cleanup before {cutoff.isoformat()}: {removed}", flush=True)
    return removed
