import pytest
from sqlmodel import select

from locker_rental.errors import GatewayError, NotFoundError, StateConflictError, ValidationError
from locker_rental.ledger.models import DeferredCallback, OutboxEvent, Payment, Rental
from locker_rental.payment.webhook import apply_payment_status
from locker_rental.rental.consumer import on_rental_created
from locker_rental.rental.issuer import issue_invoice
from tests.helpers import FakeGateway, make_rental, reload


def test_pending_rental_gets_payment(session, gateway):
    make_rental(session, "r1", amount=50000)

    p = issue_invoice(session, "r1", gateway)

    assert p.id == "r1"
    assert p.rental_id == "r1"
    assert p.provider_invoice_id == "inv_1"
    assert p.status == "pending"
    assert p.amount == 50000
    assert p.currency == "IDR"
    assert p.invoice_url == "https://checkout.xendit.co/web/inv_1"
    assert gateway.calls == [{
        "amount": 50000,
        "external_ref": "rental_r1",
        "payer_email": "renter@example.com",
        "description": "Invoice for rental r1",
    }]


def test_payer_email_falls_back_to_default(session, gateway):
    make_rental(session, "r1", user_email=None)
    issue_invoice(session, "r1", gateway)
    assert gateway.calls[0]["payer_email"] == "user@example.com"


def test_second_issuance_reuses_payment(session, gateway):
    make_rental(session, "r1")
    issue_invoice(session, "r1", gateway)
    again = issue_invoice(session, "r1", gateway)

    assert again.provider_invoice_id == "inv_1"
    assert len(gateway.calls) == 1


def test_gateway_failure_writes_nothing(session):
    make_rental(session, "r1")

    with pytest.raises(GatewayError) as err:
        issue_invoice(session, "r1", FakeGateway(failure="timeout"))

    assert err.value.kind == "timeout"
    session.rollback()
    assert reload(session, Payment, "r1") is None
    assert reload(session, Rental, "r1").status == "pending"


def test_missing_rental(session, gateway):
    with pytest.raises(NotFoundError):
        issue_invoice(session, "nope", gateway)
    assert gateway.calls == []


def test_rental_not_pending(session, gateway):
    make_rental(session, "r1", status="cancelled")
    with pytest.raises(StateConflictError):
        issue_invoice(session, "r1", gateway)
    assert gateway.calls == []


def test_rental_without_amount(session, gateway):
    make_rental(session, "r1", amount=0)
    with pytest.raises(ValidationError):
        issue_invoice(session, "r1", gateway)


def test_deferred_callback_replayed_after_payment_written(session, gateway):
    make_rental(session, "r1")
    # le callback arrive avant l'issuer
    assert apply_payment_status(session, "r1", "paid", invoice_id="inv_1", event_type="invoice.paid") == "deferred"

    issue_invoice(session, "r1", gateway)

    assert reload(session, Payment, "r1").status == "paid"
    assert session.exec(select(DeferredCallback)).all() == []
    events = session.exec(select(OutboxEvent).where(OutboxEvent.type == "PaymentStatusChanged")).all()
    assert [(e.payload["before"], e.payload["after"]) for e in events] == [("pending", "paid")]


def test_invoice_paid_at_creation_emits_edge(session):
    make_rental(session, "r1")
    p = issue_invoice(session, "r1", FakeGateway(status="PAID"))

    assert p.status == "paid"
    ev = session.exec(select(OutboxEvent).where(OutboxEvent.type == "PaymentStatusChanged")).one()
    assert ev.payload == {"rentalId": "r1", "invoiceId": "inv_1", "before": None, "after": "paid"}


def test_consumer_abandons_on_gateway_failure(session, publisher):
    make_rental(session, "r1")

    on_rental_created(session, {"rentalId": "r1"}, FakeGateway(failure="server_error"), publisher)

    assert reload(session, Payment, "r1") is None
    assert reload(session, Rental, "r1").status == "pending"


def test_consumer_abandons_unknown_rental(session, gateway, publisher):
    on_rental_created(session, {"rentalId": "ghost"}, gateway, publisher)
    on_rental_created(session, {}, gateway, publisher)
    assert gateway.calls == []
