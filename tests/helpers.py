import json
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlmodel import Session

from locker_rental.ledger.models import Payment, Rental, utcnow
from locker_rental.payment.gateway import InvoiceHandle, InvoiceResult

CALLBACK_TOKEN = "callback-token-test"


class RecordingPublisher:
    def __init__(self):
        self.events: List[Tuple[str, dict, Optional[str]]] = []
        self.down = False

    def __call__(self, event_type: str, payload: dict, message_id: Optional[str] = None):
        if self.down:
            raise ConnectionError("broker unreachable")
        self.events.append((event_type, payload, message_id))

    def of_type(self, event_type: str) -> List[Tuple[str, dict, Optional[str]]]:
        return [e for e in self.events if e[0] == event_type]

    # le body JSON que le broker livrerait pour un événement enregistré
    def body(self, event) -> bytes:
        event_type, payload, message_id = event
        return json.dumps({"type": event_type, "messageId": message_id, "payload": payload}).encode()


class FakeGateway:
    def __init__(self, invoice_id: str = "inv_1", status: str = "PENDING",
                 failure: Optional[str] = None):
        self.invoice_id = invoice_id
        self.status = status
        self.failure = failure
        self.calls: List[dict] = []

    def issue_invoice(self, amount, external_ref, payer_email, description, **kwargs) -> InvoiceResult:
        self.calls.append({
            "amount": amount,
            "external_ref": external_ref,
            "payer_email": payer_email,
            "description": description,
        })
        if self.failure:
            return InvoiceResult(ok=False, failure=self.failure, detail="simulated")
        return InvoiceResult(ok=True, invoice=InvoiceHandle(
            id=self.invoice_id,
            amount=amount,
            currency="IDR",
            status=self.status,
            invoice_url=f"https://checkout.xendit.co/web/{self.invoice_id}",
        ))


def make_rental(s: Session, rental_id: str = "r1", status: str = "pending", amount: int = 50000,
                end_time: Optional[datetime] = None, access_code: Optional[str] = None,
                user_email: Optional[str] = "renter@example.com") -> Rental:
    now = utcnow()
    r = Rental(
        id=rental_id,
        user_id="u1",
        user_email=user_email,
        amount=amount,
        start_time=now - timedelta(hours=1),
        end_time=end_time or now + timedelta(hours=2),
        status=status,
        access_code=access_code,
    )
    s.add(r)
    s.commit()
    return r


def make_payment(s: Session, rental_id: str = "r1", status: str = "pending",
                 invoice_id: str = "inv_1") -> Payment:
    p = Payment(
        id=rental_id,
        rental_id=rental_id,
        provider_invoice_id=invoice_id,
        amount=50000,
        currency="IDR",
        status=status,
    )
    s.add(p)
    s.commit()
    return p


def reload(s: Session, model, key):
    s.expire_all()
    return s.get(model, key)


def callback(event_type: str, status: str, rental_id: str = "r1", invoice_id: str = "inv_1") -> dict:
    return {
        "type": event_type,
        "data": {"id": invoice_id, "status": status, "external_id": f"rental_{rental_id}"},
    }
