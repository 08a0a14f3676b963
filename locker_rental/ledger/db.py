# ============================================================
# db.py — Moteur du ledger et dépendance Session
# ------------------------------------------------------------
# Chaque handler reçoit sa Session explicitement : les routes
# FastAPI via get_session, les consumers et les tâches planifiées
# via session_scope(). Les tests remplacent le moteur par SQLite
# en mémoire.
# ============================================================
from contextlib import contextmanager
from sqlmodel import SQLModel, Session, create_engine
from locker_rental.config import DATABASE_URL

import locker_rental.ledger.models  # noqa: F401  (enregistre les tables sur la metadata)

engine = create_engine(DATABASE_URL, pool_pre_ping=True)


def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)


# Dépendance FastAPI : une Session DB par requête, auto-close
def get_session():
    with Session(engine) as s:
        yield s


@contextmanager
def session_scope(bind=None):
    with Session(bind or engine) as s:
        yield s
