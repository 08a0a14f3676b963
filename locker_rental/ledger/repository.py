# ============================================================
# repository.py — Accès aux données du ledger
# ------------------------------------------------------------
# Pattern Repository sur les tables du ledger. Les repositories ne
# font que préparer les changements sur la Session reçue : c'est le
# handler appelant qui possède la transaction et décide du commit,
# ainsi un changement de statut et l'événement d'outbox qui le
# décrit partent dans le même commit.
#
# Les transitions de statut sont des UPDATE conditionnels
# (UPDATE ... WHERE id = :id AND status = :attendu). La base
# sérialise les mises à jour concurrentes d'une ligne : quand deux
# handlers se battent sur le même enregistrement, un seul voit
# rowcount == 1.
# ============================================================
from datetime import datetime
from typing import List, Optional
from sqlalchemy import update
from sqlmodel import Session, select
from locker_rental.ledger.models import Rental, Payment, Locker, Notification, utcnow


class RentalRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, r: Rental) -> Rental:
        self.session.add(r)
        self.session.flush()
        return r

    def get(self, rental_id: str) -> Optional[Rental]:
        return self.session.exec(select(Rental).where(Rental.id == rental_id)).first()

    # pending → active, le premier qui écrit gagne : le code d'accès
    # n'est posé que si aucun n'a encore été émis
    def activate(self, rental_id: str, access_code: str, now: Optional[datetime] = None) -> bool:
        stmt = (
            update(Rental)
            .where(Rental.id == rental_id, Rental.access_code.is_(None), Rental.status == "pending")
            .values(access_code=access_code, status="active", updated_at=now or utcnow())
        )
        return self._apply(stmt)

    def expire(self, rental_id: str, now: Optional[datetime] = None) -> bool:
        stmt = (
            update(Rental)
            .where(Rental.id == rental_id, Rental.status == "active")
            .values(status="expired", updated_at=now or utcnow())
        )
        return self._apply(stmt)

    def cancel(self, rental_id: str, now: Optional[datetime] = None) -> bool:
        stmt = (
            update(Rental)
            .where(Rental.id == rental_id, Rental.status.in_(["pending", "active"]))
            .values(status="cancelled", updated_at=now or utcnow())
        )
        return self._apply(stmt)

    # conditionné sur le end_time lu : deux prolongations ne
    # s'écrasent jamais
    def extend(self, rental_id: str, current_end: datetime, new_end: datetime,
               now: Optional[datetime] = None) -> bool:
        stmt = (
            update(Rental)
            .where(Rental.id == rental_id, Rental.status == "active", Rental.end_time == current_end)
            .values(end_time=new_end, updated_at=now or utcnow())
        )
        return self._apply(stmt)

    def list_expirable(self, now: datetime) -> List[Rental]:
        return self.session.exec(
            select(Rental).where(Rental.status == "active", Rental.end_time <= now)
        ).all()

    def _apply(self, stmt) -> bool:
        result = self.session.exec(stmt)
        return result.rowcount == 1


class PaymentRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, p: Payment) -> Payment:
        self.session.add(p)
        self.session.flush()
        return p

    def get(self, payment_id: str) -> Optional[Payment]:
        return self.session.exec(select(Payment).where(Payment.id == payment_id)).first()

    # pending → terminal. On ne sort jamais d'un statut terminal.
    def transition(self, payment_id: str, status: str, now: Optional[datetime] = None) -> bool:
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == "pending")
            .values(status=status, updated_at=now or utcnow())
        )
        return self.session.exec(stmt).rowcount == 1


class LockerRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, locker_id: str) -> Optional[Locker]:
        return self.session.get(Locker, locker_id)

    def upsert(self, locker_id: str, status: str, sensor_data: dict,
               now: Optional[datetime] = None) -> Locker:
        now = now or utcnow()
        locker = self.get(locker_id)
        if locker is None:
            locker = Locker(id=locker_id)
            self.session.add(locker)
        locker.status = status
        locker.sensor_data = sensor_data
        locker.last_sync = now
        locker.updated_at = now
        self.session.flush()
        return locker


class NotificationRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, kind: str, recipient: str, subject: str, body: str = "") -> Notification:
        n = Notification(kind=kind, recipient=recipient, subject=subject, body=body)
        self.session.add(n)
        self.session.flush()
        return n

    def get(self, notification_id: int) -> Optional[Notification]:
        return self.session.get(Notification, notification_id)

    def mark_sent(self, notification_id: int, now: Optional[datetime] = None) -> bool:
        stmt = (
            update(Notification)
            .where(Notification.id == notification_id, Notification.status == "queued")
            .values(status="sent", sent_at=now or utcnow())
        )
        return self.session.exec(stmt).rowcount == 1
