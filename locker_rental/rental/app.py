# ============================================================
# app.py — Point d'entrée du service Rental
# ------------------------------------------------------------
# Initialise l'application FastAPI du service Rental :
#   - crée les tables du ledger
#   - démarre le consumer RabbitMQ (invoice issuer, unlock trigger)
#   - démarre le scheduler (expiration, nettoyage, relais outbox)
#   - monte l'API rentals
# ============================================================
from fastapi import FastAPI
import threading

from locker_rental.ledger.db import init_db
from locker_rental.rental.api import router
from locker_rental.rental.consumer import start_consumer
from locker_rental.rental.scheduler import start_scheduler

app = FastAPI(title="Rental Service")


# Les deux workers tournent dans des threads daemon pour ne pas bloquer l'API.
@app.on_event("startup")
def start():
    init_db()
    threading.Thread(target=start_consumer, daemon=True).start()
    threading.Thread(target=start_scheduler, daemon=True).start()


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(router)
