from fastapi import FastAPI
from locker_rental.ledger.db import init_db
from locker_rental.hardware.api import router

app = FastAPI(title="Hardware Service")


@app.on_event("startup")
def startup():
    init_db()


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(router)
