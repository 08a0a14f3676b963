from datetime import timedelta

from locker_rental.broker import process_message
from locker_rental.ledger.models import Payment, Rental, utcnow
from locker_rental.rental.consumer import build_handlers
from tests.helpers import CALLBACK_TOKEN, FakeGateway, callback, make_payment, make_rental, reload

NEW_RENTAL = {
    "userId": "u1",
    "userEmail": "renter@example.com",
    "amount": 50000,
    "startTime": "2026-10-18T10:00:00+07:00",
    "endTime": "2026-10-18T12:00:00+07:00",
}


def test_create_rental(client, session, publisher):
    r = client["rental"].post("/v1/rentals", json=NEW_RENTAL)

    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "pending"
    assert body["accessCode"] is None
    assert body["payment"] is None

    stored = reload(session, Rental, body["id"])
    assert stored.amount == 50000
    # stocké en UTC
    assert stored.start_time.hour == 3
    assert stored.end_time - stored.start_time == timedelta(hours=2)

    [(event_type, payload, message_id)] = publisher.events
    assert event_type == "RentalCreated"
    assert payload == {"rentalId": body["id"], "userId": "u1", "amount": 50000}
    assert message_id == f"RentalCreated:{body['id']}"


def test_create_rental_validation(client):
    bad_amount = dict(NEW_RENTAL, amount=0)
    assert client["rental"].post("/v1/rentals", json=bad_amount).status_code == 400

    reversed_times = dict(NEW_RENTAL, startTime=NEW_RENTAL["endTime"], endTime=NEW_RENTAL["startTime"])
    assert client["rental"].post("/v1/rentals", json=reversed_times).status_code == 400

    missing_user = {k: v for k, v in NEW_RENTAL.items() if k != "userId"}
    assert client["rental"].post("/v1/rentals", json=missing_user).status_code == 422


def test_create_rental_keeps_event_when_broker_is_down(client, session, publisher):
    publisher.down = True
    r = client["rental"].post("/v1/rentals", json=NEW_RENTAL)
    assert r.status_code == 201
    assert publisher.events == []

    # relayé par la requête suivante une fois le broker revenu
    publisher.down = False
    client["rental"].post("/v1/rentals", json=NEW_RENTAL)
    assert [e[0] for e in publisher.events] == ["RentalCreated", "RentalCreated"]
    assert publisher.events[0][1]["rentalId"] == r.json()["id"]


def test_get_rental(client, session):
    make_rental(session, "r1")
    make_payment(session, "r1")

    r = client["rental"].get("/v1/rentals/r1")
    assert r.status_code == 200
    assert r.json()["payment"]["providerInvoiceId"] == "inv_1"
    assert client["rental"].get("/v1/rentals/nope").status_code == 404


def test_retry_invoice(client, session, gateway):
    make_rental(session, "r1")

    r = client["rental"].post("/v1/rentals/r1/invoice")
    assert r.status_code == 200
    assert r.json()["providerInvoiceId"] == "inv_1"
    assert reload(session, Payment, "r1").status == "pending"

    # déjà émise : même paiement, pas de second appel au fournisseur
    assert client["rental"].post("/v1/rentals/r1/invoice").status_code == 200
    assert len(gateway.calls) == 1


def test_retry_invoice_errors(client, session, gateway):
    assert client["rental"].post("/v1/rentals/nope/invoice").status_code == 404

    make_rental(session, "r2", status="cancelled")
    assert client["rental"].post("/v1/rentals/r2/invoice").status_code == 409

    make_rental(session, "r3")
    gateway.failure = "server_error"
    assert client["rental"].post("/v1/rentals/r3/invoice").status_code == 502
    assert reload(session, Payment, "r3") is None


def test_cancel_rental(client, session):
    make_rental(session, "r1")
    make_rental(session, "r2", status="expired", access_code="123456")

    assert client["rental"].post("/v1/rentals/r1/cancel").status_code == 200
    assert reload(session, Rental, "r1").status == "cancelled"
    assert client["rental"].post("/v1/rentals/r1/cancel").status_code == 409
    assert client["rental"].post("/v1/rentals/r2/cancel").status_code == 409
    assert client["rental"].post("/v1/rentals/nope/cancel").status_code == 404


def test_extend_rental(client, session):
    end = utcnow() + timedelta(minutes=30)
    make_rental(session, "r1", status="active", access_code="123456", end_time=end)
    make_rental(session, "r2")

    r = client["rental"].post("/v1/rentals/r1/extend", json={"minutes": 60})
    assert r.status_code == 200
    assert reload(session, Rental, "r1").end_time == end + timedelta(minutes=60)

    assert client["rental"].post("/v1/rentals/r1/extend", json={"minutes": 0}).status_code == 400
    assert client["rental"].post("/v1/rentals/r2/extend", json={"minutes": 60}).status_code == 409
    assert client["rental"].post("/v1/rentals/nope/extend", json={"minutes": 60}).status_code == 404


# ------------------------------------------------------------
# Flux complet : création → facture → callback paid → ouverture,
# chaque événement passant par le consumer comme le broker le
# livrerait, puis redélivrance de tout.
# ------------------------------------------------------------
def test_rental_paid_and_unlocked(client, session, engine, publisher):
    gateway = FakeGateway(invoice_id="inv_1")
    handlers = build_handlers(gateway, publisher)

    rental_id = client["rental"].post("/v1/rentals", json=NEW_RENTAL).json()["id"]
    [created] = publisher.of_type("RentalCreated")
    assert process_message("rental-consumer", publisher.body(created), handlers, bind=engine) == "ok"

    p = reload(session, Payment, rental_id)
    assert (p.status, p.provider_invoice_id) == ("pending", "inv_1")

    cb = callback("invoice.paid", "PAID", rental_id=rental_id, invoice_id="inv_1")
    r = client["payment"].post("/v1/payments/webhook", json=cb, headers={"x-callback-token": CALLBACK_TOKEN})
    assert r.status_code == 200
    assert reload(session, Payment, rental_id).status == "paid"

    [edge] = publisher.of_type("PaymentStatusChanged")
    assert process_message("rental-consumer", publisher.body(edge), handlers, bind=engine) == "ok"

    rental = reload(session, Rental, rental_id)
    assert rental.status == "active"
    code = rental.access_code
    assert len(code) == 6 and code.isdigit()
    assert len(publisher.of_type("NotificationCreated")) == 1

    # redélivrer le callback et les deux événements ne change rien
    r = client["payment"].post("/v1/payments/webhook", json=cb, headers={"x-callback-token": CALLBACK_TOKEN})
    assert r.json()["outcome"] == "duplicate"
    assert process_message("rental-consumer", publisher.body(created), handlers, bind=engine) == "duplicate"
    assert process_message("rental-consumer", publisher.body(edge), handlers, bind=engine) == "duplicate"

    rental = reload(session, Rental, rental_id)
    assert (rental.status, rental.access_code) == ("active", code)
    assert reload(session, Payment, rental_id).status == "paid"
    assert len(gateway.calls) == 1
    assert len(publisher.of_type("PaymentStatusChanged")) == 1
