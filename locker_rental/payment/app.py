# ============================================================
# app.py — Point d'entrée du service Payment
# ------------------------------------------------------------
# Reçoit les callbacks du fournisseur. Crée les tables du ledger au
# démarrage ; pas de consumer propre.
# ============================================================
from fastapi import FastAPI
from locker_rental.ledger.db import init_db
from locker_rental.payment.api import router

app = FastAPI(title="Payment Service")


@app.on_event("startup")
def start():
    init_db()


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(router)
