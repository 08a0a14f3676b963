# ============================================================
# outbox.py — Flux de changements écrit à côté des données
# ------------------------------------------------------------
# Un handler qui modifie un enregistrement prépare aussi un
# OutboxEvent dans la même transaction. relay_outbox() publie
# ensuite les événements en attente vers RabbitMQ dans l'ordre
# d'insertion et les marque. Un crash entre le commit et la
# publication ne fait que retarder l'événement : le relais suivant
# (après la prochaine requête ou au tick du scheduler) l'envoie.
#
# Livraison "au moins une fois". Les messageId sont déterministes,
# les consumers écartent les doublons avec ProcessedMessage.
# ============================================================
from typing import Callable, Optional
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
from locker_rental.ledger.models import OutboxEvent, ProcessedMessage, utcnow
from locker_rental.ledger.repository import NotificationRepository

Publisher = Callable[[str, dict, Optional[str]], None]


def add_event(s: Session, event_type: str, payload: dict, message_id: str) -> OutboxEvent:
    ev = OutboxEvent(message_id=message_id, type=event_type, payload=payload)
    s.add(ev)
    return ev


def event_exists(s: Session, message_id: str) -> bool:
    return s.exec(select(OutboxEvent).where(OutboxEvent.message_id == message_id)).first() is not None


def relay_outbox(s: Session, publish: Publisher, limit: int = 100) -> int:
    pending = s.exec(
        select(OutboxEvent)
        .where(OutboxEvent.published_at.is_(None))
        .order_by(OutboxEvent.id)
        .limit(limit)
    ).all()
    sent = 0
    for ev in pending:
        try:
            publish(ev.type, ev.payload, ev.message_id)
        except Exception as e:
            # broker indisponible : on garde le reste pour le prochain relais
            print(f"[outbox] publish failed for {ev.message_id}: {e}", flush=True)
            break
        ev.published_at = utcnow()
        s.commit()
        sent += 1
    return sent


# ------------------------------------------------------------
# Côté consumer : clés d'idempotence par message
# ------------------------------------------------------------
# On garde en base (table ProcessedMessage) l'ID des messages
# déjà traités : une redélivrance du broker, ou un second relais
# de la même ligne d'outbox, est ignorée.
# ------------------------------------------------------------
def already_processed(s: Session, mid: str) -> bool:
    return s.exec(select(ProcessedMessage).where(ProcessedMessage.message_id == mid)).first() is not None


def mark_processed(s: Session, mid: str) -> bool:
    s.add(ProcessedMessage(message_id=mid))
    try:
        s.commit()
    except IntegrityError:
        # un autre consumer l'a marqué avant nous
        s.rollback()
        return False
    return True


# ------------------------------------------------------------
# Les notifications passent aussi par l'outbox : la ligne et son
# événement NotificationCreated partent dans le même commit. Avec
# une dedupe_key, un second appel pour la même clé est ignoré
# (alertes qu'un callback redélivré répéterait sinon).
# ------------------------------------------------------------
def queue_notification(s: Session, kind: str, recipient: str, subject: str, body: str = "",
                       dedupe_key: Optional[str] = None):
    if dedupe_key and event_exists(s, dedupe_key):
        return None
    n = NotificationRepository(s).create(kind, recipient, subject, body)
    add_event(s, "NotificationCreated", {"notificationId": n.id, "kind": kind},
              message_id=dedupe_key or f"NotificationCreated:{n.id}")
    return n
