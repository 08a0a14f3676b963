from sqlmodel import Session

from locker_rental import broker
from locker_rental.ledger.repository import NotificationRepository

NOTIFICATION_QUEUE = "notification.events"


def send_notification(s: Session, payload: dict) -> bool:
    nid = payload.get("notificationId")
    if nid is None:
        print("[notification] NotificationCreated without notificationId, skipping", flush=True)
        return False
    repo = NotificationRepository(s)
    n = repo.get(int(nid))
    if n is None:
        print(f"[notification] notification {nid} not found", flush=True)
        return False
    if n.status == "sent":
        return False
    print(f"[notification] {n.kind} -> mock email to {n.recipient}: {n.subject}", flush=True)
    repo.mark_sent(n.id)
    s.commit()
    return True


def start_consumer():
    broker.start_consumer("notification", NOTIFICATION_QUEUE, {"NotificationCreated": send_notification})
