from fastapi import FastAPI
import threading
from locker_rental.ledger.db import init_db
from locker_rental.notification.consumer import start_consumer

app = FastAPI(title="Notification Service")


@app.on_event("startup")
def startup():
    init_db()
    threading.Thread(target=start_consumer, daemon=True).start()


@app.get("/health")
def health():
    return {"ok": True}
