"""End-to-end checks of the HTTP surface through the Flask test client."""

import json
import logging
import uuid

import pytest

from app import create_app
from conftest import BILLING_INFO, WEBHOOK_SECRET
from payment_gateway import SIGNATURE_HEADER, sign_payload


def as_user(user_id):
    return {"X-User-Id": user_id}


def reserve(client, event, quantity=2, user_id='buyer-1', ticket_type_id=None):
    return client.post('/checkout/reserve', headers=as_user(user_id), json={
        "event_id": str(event.id),
        "items": [{"ticket_type_id": str(ticket_type_id or event.general_id), "quantity": quantity}],
    })


def webhook(client, session_id, result='approved', secret=WEBHOOK_SECRET, **extra):
    body = json.dumps({"session_id": session_id, "result": result, **extra}).encode()
    return client.post('/checkout/webhook', data=body, content_type='application/json', headers={
        SIGNATURE_HEADER: sign_payload(secret, body),
    })


def checkout(client, event, quantity=2, user_id='buyer-1'):
    reservation_id = reserve(client, event, quantity, user_id).get_json()["reservation_id"]
    payment = client.post('/checkout/payment', headers=as_user(user_id), json={
        "reservation_id": reservation_id,
        "billing_info": BILLING_INFO,
    })
    assert payment.status_code == 200
    return reservation_id, payment.get_json()["payment_session_id"]


def test_health(client, event):
    body = client.get('/health').get_json()
    assert body["status"] == "healthy"
    assert body["events"] == 1


def test_identity_is_required(client, event):
    response = client.post('/checkout/reserve', json={"event_id": str(event.id), "items": []})
    assert response.status_code == 401
    assert client.get('/reservations').status_code == 401


@pytest.mark.parametrize("payload", [
    {"items": [{"ticket_type_id": "x", "quantity": 1}]},
    {"event_id": "e", "items": []},
    {"event_id": "e", "items": [{"ticket_type_id": "x", "quantity": "1"}]},
    {"event_id": "e", "items": [{"ticket_type_id": "x", "quantity": True}]},
    {"event_id": "e", "items": ["x"]},
])
def test_reserve_rejects_malformed_carts(client, payload):
    response = client.post('/checkout/reserve', headers=as_user('buyer-1'), json=payload)
    assert response.status_code == 400


def test_reserve_requires_json_object(client):
    response = client.post('/checkout/reserve', headers=as_user('buyer-1'), data="[]",
                           content_type='application/json')
    assert response.status_code == 400


def test_reserve_and_availability(client, event):
    response = reserve(client, event, 3)

    assert response.status_code == 201
    body = response.get_json()
    assert body["total_amount"] == "150000.00"
    assert body["hold_duration_minutes"] == 10

    availability = client.get(f'/events/{event.id}/availability').get_json()
    general = next(row for row in availability["ticket_types"] if row["name"] == "General")
    assert general["reserved_count"] == 3
    assert general["available"] == 7


def test_core_errors_map_to_status_codes(client, event):
    response = reserve(client, event, 5)
    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_QUANTITY"

    assert reserve(client, event, 2, 'a', event.vip_id).status_code == 201
    response = reserve(client, event, 1, 'b', event.vip_id)
    assert response.status_code == 409
    assert response.get_json() == {
        "error": "Only 0 tickets available",
        "code": "INSUFFICIENT_INVENTORY",
        "ticket_type_id": str(event.vip_id),
        "available": 0,
    }

    response = client.post('/checkout/reserve', headers=as_user('buyer-1'), json={
        "event_id": str(uuid.uuid4()),
        "items": [{"ticket_type_id": str(event.general_id), "quantity": 1}],
    })
    assert response.status_code == 404
    assert response.get_json()["code"] == "EVENT_NOT_ACTIVE"


def test_full_purchase_flow(client, event):
    reservation_id, session_id = checkout(client, event, 2)

    response = webhook(client, session_id, processor_fee="3500.00")
    assert response.status_code == 200
    body = response.get_json()
    assert body["payment_status"] == "paid"
    assert len(body["ticket_codes"]) == 2

    # Processors redeliver; the second notification changes nothing
    again = webhook(client, session_id).get_json()
    assert again["order_id"] == body["order_id"]

    order = client.get(f'/orders/{body["order_id"]}', headers=as_user('buyer-1')).get_json()
    assert order["reservation_id"] == reservation_id
    assert order["processor_fee"] == "3500.00"
    assert order["marketplace_fee"] == "5000.00"
    assert len(order["tickets"]) == 2

    assert client.get(f'/orders/{body["order_id"]}', headers=as_user('intruder')).status_code == 404

    reservations = client.get('/reservations?status=converted', headers=as_user('buyer-1')).get_json()
    assert [r["reservation_id"] for r in reservations["reservations"]] == [reservation_id]


def test_webhook_signature_is_checked(client, event):
    _, session_id = checkout(client, event)

    response = webhook(client, session_id, secret='wrong')
    assert response.status_code == 401
    assert response.get_json()["code"] == "INVALID_WEBHOOK_SIGNATURE"


def test_failed_and_unknown_webhook_results(client, event):
    reservation_id, session_id = checkout(client, event)

    failed = webhook(client, session_id, result='rejected').get_json()
    assert failed["payment_status"] == "failed"
    assert failed["reservation_status"] == "active"

    assert webhook(client, session_id, result='in_process').get_json()["ignored"] is True
    assert webhook(client, 'sbx_unknown').status_code == 404


def test_webhook_for_cancelled_hold_alerts_for_refund(client, event, caplog):
    reservation_id, session_id = checkout(client, event)
    client.post(f'/checkout/reservations/{reservation_id}/cancel', headers=as_user('buyer-1'))

    with caplog.at_level(logging.ERROR, logger='checkout'):
        response = webhook(client, session_id)

    assert response.status_code == 200
    assert response.get_json()["requires_refund"] is True
    [record] = [r for r in caplog.records if r.name == 'checkout' and r.levelno == logging.ERROR]
    assert "RECONCILIATION REQUIRED" in record.getMessage()
    assert session_id in record.getMessage()
    assert reservation_id in record.getMessage()


def test_payment_requires_billing_info(client, event):
    reservation_id = reserve(client, event).get_json()["reservation_id"]
    response = client.post('/checkout/payment', headers=as_user('buyer-1'), json={
        "reservation_id": reservation_id,
        "billing_info": dict(BILLING_INFO, document_type="ZZ"),
    })
    assert response.status_code == 400
    assert response.get_json()["field"] == "document_type"


def test_cancel_and_list(client, event):
    reservation_id = reserve(client, event, 2).get_json()["reservation_id"]

    assert client.post(f'/checkout/reservations/{reservation_id}/cancel',
                       headers=as_user('intruder')).status_code == 404
    response = client.post(f'/checkout/reservations/{reservation_id}/cancel', headers=as_user('buyer-1'))
    assert response.status_code == 200
    assert response.get_json()["released_tickets"] == 2

    assert client.get('/reservations', headers=as_user('buyer-1')).get_json()["reservations"] == []
    listed = client.get('/reservations?status=all', headers=as_user('buyer-1')).get_json()["reservations"]
    assert [r["status"] for r in listed] == ["cancelled"]
    assert client.get('/reservations?status=bogus', headers=as_user('buyer-1')).status_code == 400


def test_refund_endpoint(client, event):
    _, session_id = checkout(client, event, 2)
    order_id = webhook(client, session_id).get_json()["order_id"]

    response = client.post(f'/orders/{order_id}/refund', headers=as_user('ops-1'), json={"reason": "duplicate"})
    assert response.status_code == 200
    assert response.get_json()["returned_to_inventory"] == 2
    assert client.post(f'/orders/{order_id}/refund', headers=as_user('ops-1')).status_code == 409


def test_cash_sale_endpoint(client, event, cash_event):
    items = [{"ticket_type_id": str(cash_event.general_id), "quantity": 2}]
    response = client.post(f'/events/{cash_event.id}/cash-sale', headers=as_user('seller-1'),
                           json={"buyer_id": "walk-in", "items": items})
    assert response.status_code == 201
    assert len(response.get_json()["ticket_ids"]) == 2

    response = client.post(f'/events/{event.id}/cash-sale', headers=as_user('seller-1'), json={
        "buyer_id": "walk-in",
        "items": [{"ticket_type_id": str(event.general_id), "quantity": 1}],
    })
    assert response.status_code == 403


def test_initialize_event_endpoint(client):
    event_id = str(uuid.uuid4())
    payload = {
        "name": "Jazz Night",
        "currency": "USD",
        "ticket_types": [{"name": "Floor", "price": 45.5, "capacity": 100, "max_per_order": 6}],
    }

    response = client.post(f'/events/{event_id}/initialize', json=payload)
    assert response.status_code == 201
    assert response.get_json()["ticket_types"][0]["name"] == "Floor"
    assert client.post(f'/events/{event_id}/initialize', json=payload).status_code == 409
    assert client.post('/events/not-a-uuid/initialize', json=payload).status_code == 400

    bad = dict(payload, ticket_types=[{"name": "Floor", "price": 10, "capacity": 0}])
    assert client.post(f'/events/{uuid.uuid4()}/initialize', json=bad).status_code == 400

    availability = client.get(f'/events/{event_id}/availability').get_json()
    assert availability["ticket_types"][0]["price"] == "45.50"


def test_reset(client, event):
    checkout(client, event, 2)

    response = client.post('/reset')
    assert response.status_code == 200
    assert response.get_json()["reservations_cleared"] == 1
    assert response.get_json()["orders_cleared"] == 1

    general = next(row for row in client.get(f'/events/{event.id}/availability').get_json()["ticket_types"]
                   if row["name"] == "General")
    assert general["available"] == 10


def test_lapsed_hold_cannot_start_payment(settings, db, gateway, event):
    settings.hold_duration_minutes = 0
    client = create_app(settings=settings, db=db, gateway=gateway).test_client()

    reservation_id = reserve(client, event).get_json()["reservation_id"]
    response = client.post('/checkout/payment', headers=as_user('buyer-1'), json={
        "reservation_id": reservation_id,
        "billing_info": BILLING_INFO,
    })
    assert response.status_code == 410
    assert response.get_json()["code"] == "RESERVATION_EXPIRED"
