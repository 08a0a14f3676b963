# ============================================================
# broker.py — Publication et consommation RabbitMQ
# ------------------------------------------------------------
# Les services communiquent via l'échange fanout "events". Chaque
# message est en JSON : {"type": ..., "messageId": ..., "payload": ...}.
#
# Les consumers se lient à une queue nommée durable et ackent à la
# main : un message n'est retiré qu'une fois traité (ou écarté
# volontairement). Une TransientError levée par un handler, ou une
# perte de connexion à la base, remet le message en queue.
# ============================================================
import json, time
from typing import Callable, Dict, Optional

import pika
from pika.exceptions import AMQPError
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from locker_rental.config import RABBITMQ_HOST, EVENTS_EXCHANGE
from locker_rental.errors import TransientError
from locker_rental.ledger.db import session_scope
from locker_rental.ledger.outbox import already_processed, mark_processed

Handler = Callable[[Session, dict], None]


def _channel(conn):
    ch = conn.channel()
    # durable=True pour survivre aux redémarrages de RabbitMQ
    ch.exchange_declare(exchange=EVENTS_EXCHANGE, exchange_type="fanout", durable=True)
    return ch


# Publie un événement sur l'échange fanout : chaque queue liée
# en reçoit une copie.
def publish_event(event_type: str, payload: dict, message_id: Optional[str] = None):
    conn = pika.BlockingConnection(pika.ConnectionParameters(host=RABBITMQ_HOST))
    try:
        ch = _channel(conn)
        message = {"type": event_type, "messageId": message_id, "payload": payload}
        ch.basic_publish(
            exchange=EVENTS_EXCHANGE,
            routing_key="",
            body=json.dumps(message),
            properties=pika.BasicProperties(
                content_type="application/json",
                delivery_mode=2,  # persistant
                message_id=message_id,
            ),
        )
        print(f"[event] {event_type} mid={message_id} {payload}", flush=True)
    finally:
        conn.close()


# Dépendance FastAPI : les routes relaient leur outbox par elle,
# les tests la remplacent par un enregistreur
def get_publisher():
    return publish_event


# ------------------------------------------------------------
# process_message — une livraison, indépendante de pika
# ------------------------------------------------------------
# Renvoie le résultat pour que l'appelant acke ou remette en queue :
#   "ok" | "ignored" | "duplicate" | "malformed" | "retry" | "failed"
# Sans messageId on construit "Type:rentalId".
# ------------------------------------------------------------
def process_message(name: str, body, handlers: Dict[str, Handler], bind=None) -> str:
    try:
        msg = json.loads(body)
    except (TypeError, ValueError) as e:
        print(f"[{name}] bad payload: {e}", flush=True)
        return "malformed"
    if not isinstance(msg, dict):
        print(f"[{name}] bad payload: not an object", flush=True)
        return "malformed"

    etype = msg.get("type")
    payload = msg.get("payload") or {}
    handler = handlers.get(etype)
    if handler is None:
        return "ignored"

    message_id = msg.get("messageId") or f"{etype}:{payload.get('rentalId', '?')}"
    print(f"[{name}] received {etype} mid={message_id} payload={payload}", flush=True)

    with session_scope(bind) as s:
        try:
            if already_processed(s, message_id):
                print(f"[{name}] already processed {message_id}, skipping", flush=True)
                return "duplicate"
            handler(s, payload)
            mark_processed(s, message_id)
        except (TransientError, OperationalError) as e:
            s.rollback()
            print(f"[{name}] transient failure on {message_id}: {e} — requeue", flush=True)
            return "retry"
        except Exception as e:
            s.rollback()
            print(f"[{name}] handler failed on {message_id} ({etype}): {e!r}", flush=True)
            return "failed"
    return "ok"


def start_consumer(name: str, queue: str, handlers: Dict[str, Handler]):
    def on_message(ch, method, properties, body):
        outcome = process_message(name, body, handlers)
        if outcome == "retry":
            time.sleep(1)
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
        else:
            ch.basic_ack(delivery_tag=method.delivery_tag)

    # petit retry loop pour attendre RabbitMQ
    attempt = 0
    while True:
        try:
            print(f"[{name}] connecting to rabbitmq at {RABBITMQ_HOST}...", flush=True)
            conn = pika.BlockingConnection(pika.ConnectionParameters(host=RABBITMQ_HOST, heartbeat=60))
            ch = _channel(conn)
            ch.queue_declare(queue=queue, durable=True)
            ch.queue_bind(exchange=EVENTS_EXCHANGE, queue=queue)
            ch.basic_qos(prefetch_count=10)
            print(f"[{name}] bound to exchange '{EVENTS_EXCHANGE}' queue='{queue}'. waiting for messages...", flush=True)
            attempt = 0
            ch.basic_consume(queue=queue, on_message_callback=on_message, auto_ack=False)
            ch.start_consuming()
        except AMQPError as e:
            attempt += 1
            wait = min(5 * attempt, 30)
            print(f"[{name}] connection error: {e} — retrying in {wait}s", flush=True)
            time.sleep(wait)
