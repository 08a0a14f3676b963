# ============================================================
# scheduler.py — Tâches planifiées du service Rental
# ------------------------------------------------------------
# Tourne dans un thread daemon à côté du consumer. À chaque tick :
#   1. rejoue les callbacks en attente dont le Payment existe
#   2. balayage d'expiration, toutes les EXPIRY_SWEEP_INTERVAL_SECONDS (5 min)
#   3. nettoyage, une fois par jour à 00:00 UTC
#   4. relais de l'outbox (événements laissés par une requête plantée)
# Une tâche en échec est loggée et n'arrête pas les autres.
# ============================================================
import time
from datetime import datetime, timedelta, timezone, time as dtime
from typing import List, Optional

from locker_rental import config
from locker_rental.broker import publish_event
from locker_rental.ledger.db import session_scope
from locker_rental.ledger.models import utcnow
from locker_rental.ledger.outbox import relay_outbox
from locker_rental.payment.webhook import replay_deferred
from locker_rental.rental.sweeper import cleanup_expired_data, expire_rentals


# minuit UTC suivant
def next_midnight(now: datetime) -> datetime:
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return datetime.combine(now.date() + timedelta(days=1), dtime.min, tzinfo=timezone.utc)


class Scheduler:
    def __init__(self, publish=publish_event, bind=None, sweep_interval: Optional[int] = None,
                 now: Optional[datetime] = None):
        now = now or utcnow()
        self.publish = publish
        self.bind = bind
        self.sweep_interval = timedelta(seconds=sweep_interval or config.EXPIRY_SWEEP_INTERVAL_SECONDS)
        self.next_sweep = now
        self.next_cleanup = next_midnight(now)

    def _run(self, name, job) -> bool:
        try:
            with session_scope(self.bind) as s:
                job(s)
            return True
        except Exception as e:
            print(f"[scheduler] {name} failed: {e!r}", flush=True)
            return False

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        now = now or utcnow()
        ran = []
        if self._run("replay_deferred", replay_deferred):
            ran.append("replay_deferred")
        if now >= self.next_sweep:
            if self._run("expire_rentals", lambda s: expire_rentals(s, now)):
                ran.append("expire_rentals")
            self.next_sweep = now + self.sweep_interval
        if now >= self.next_cleanup:
            if self._run("cleanup_expired_data", lambda s: cleanup_expired_data(s, now)):
                ran.append("cleanup_expired_data")
            self.next_cleanup = next_midnight(now)
        if self._run("relay_outbox", lambda s: relay_outbox(s, self.publish)):
            ran.append("relay_outbox")
        return ran

    def run_forever(self):
        print(f"[scheduler] started, sweep every {self.sweep_interval.total_seconds():.0f}s", flush=True)
        while True:
            self.tick()
            time.sleep(config.SCHEDULER_TICK_SECONDS)


def start_scheduler():
    Scheduler().run_forever()
