# ============================================================
# models.py — Tables du ledger (SQLModel)
# ------------------------------------------------------------
# Une seule base partagée par tous les services :
#   1. Rental : cycle de vie pending → active → expired (ou cancelled)
#   2. Payment : facture du fournisseur, 1-1 avec Rental (même id)
#   3. Locker : télémétrie matérielle, le dernier qui écrit gagne
#   4. Notification : consommée par le service de notification
#   5. ProcessedMessage / OutboxEvent / DeferredCallback : suivi de la
#      livraison "au moins une fois" des événements et des callbacks
# Toutes les dates sont stockées en UTC avec fuseau (UTCDateTime).
# ============================================================
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, JSON
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timezone
from typing import Optional
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ------------------------------------------------------------
# UTCDateTime
# ------------------------------------------------------------
# Colonne TIMESTAMP WITH TIME ZONE :
#  - en écriture, toute date est ramenée en UTC (une date sans
#    fuseau est considérée comme déjà en UTC)
#  - en lecture, on renvoie toujours une date UTC avec fuseau
#    (SQLite perd le fuseau, Postgres renvoie un décalage fixe)
# ------------------------------------------------------------
class UTCDateTime(TypeDecorator):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


RENTAL_STATUSES = ("pending", "active", "expired", "cancelled")

PAYMENT_STATUSES = ("pending", "paid", "expired", "failed")
PAYMENT_TERMINAL = ("paid", "expired", "failed")


# ------------------------------------------------------------
# Rental
# ------------------------------------------------------------
# - créée en pending par l'API rentals
# - pending → active par le déclencheur d'ouverture (code posé une fois)
# - active → expired par le balayage d'expiration
# - pending|active → cancelled par l'API rentals
# ------------------------------------------------------------
class Rental(SQLModel, table=True):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    user_id: str = Field(index=True)
    user_email: Optional[str] = None
    amount: int
    start_time: datetime = Field(sa_type=UTCDateTime)
    end_time: datetime = Field(index=True, sa_type=UTCDateTime)
    status: str = Field(default="pending", index=True)
    access_code: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


# ------------------------------------------------------------
# Payment
# ------------------------------------------------------------
# le statut ne bouge que de pending → paid | expired | failed
# ------------------------------------------------------------
class Payment(SQLModel, table=True):
    id: str = Field(primary_key=True)  # même valeur que rental_id
    rental_id: str = Field(index=True)
    provider_invoice_id: str = Field(index=True)
    amount: int
    currency: str
    status: str = "pending"
    invoice_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Locker(SQLModel, table=True):
    id: str = Field(primary_key=True)
    status: str = "unknown"
    sensor_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    last_sync: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str                                   # rental_unlocked | payment_conflict
    recipient: str
    subject: str
    body: str = ""
    status: str = "queued"                      # queued | sent
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    sent_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class ProcessedMessage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: str = Field(index=True, unique=True)
    processed_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


# Événements en attente d'envoi vers RabbitMQ, écrits dans la même
# transaction que le changement qu'ils décrivent.
class OutboxEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: str = Field(index=True, unique=True)
    type: str
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    published_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime)


# Callbacks du fournisseur reçus avant l'écriture du Payment.
class DeferredCallback(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    rental_id: str = Field(index=True)
    invoice_id: Optional[str] = None
    event_type: str
    status: str
    received_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)
