import hashlib
import hmac
import json
import time

import pytest

import main
from conftest import auth
from database import USERS
from errors import BadRequest
from payments import PaymentGateway, get_payment_gateway, lookup, to_minor_units

WEBHOOK_SECRET = "whsec_test"


def signed(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    ts = int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def event(kind, email):
    return json.dumps({
        "id": "evt_1",
        "object": "event",
        "type": kind,
        "data": {"object": {"id": "pi_1", "object": "payment_intent", "metadata": {"email": email}}},
    })


@pytest.fixture
def stripe_client(client):
    main.app.dependency_overrides[get_payment_gateway] = lambda: PaymentGateway("sk_test", WEBHOOK_SECRET)
    return client


def is_premium(db, email):
    return db[USERS].find_one({"email": email})["isPremium"]


def test_minor_units():
    assert to_minor_units(19.99) == 1999
    assert to_minor_units(5) == 500


def test_lookup_walks_nested_keys():
    obj = {"data": {"object": {"metadata": {"email": "a@example.com"}}}}
    assert lookup(obj, "data", "object", "metadata", "email") == "a@example.com"
    assert lookup(obj, "data", "missing", "email") is None


def test_zero_amount_rejected():
    with pytest.raises(BadRequest):
        PaymentGateway("sk_test", WEBHOOK_SECRET).create_payment_intent(0)


def test_create_payment_intent_route(client, alice, gateway):
    res = client.post("/create-payment-intent", json={"price": 19.99}, headers=auth(alice))
    assert res.json() == {"clientSecret": "pi_secret_123"}
    assert gateway.created == [(1999, {"email": "alice@example.com", "uid": "uid-alice"})]

    assert client.post("/create-payment-intent", json={"price": 0}, headers=auth(alice)).status_code == 400
    assert client.post("/create-payment-intent", json={"price": 5}).status_code == 401


def test_upgrade_with_succeeded_intent(client, alice, gateway, db):
    gateway.intents["pi_ok"] = {"status": "succeeded", "metadata": {"email": "alice@example.com"}}
    res = client.patch("/users/upgrade", json={"paymentIntentId": "pi_ok"}, headers=auth(alice))
    assert res.json() == {"success": True, "isPremium": True}
    assert is_premium(db, "alice@example.com") is True


def test_upgrade_refuses_unfinished_or_foreign_payment(client, alice, gateway, db):
    gateway.intents["pi_pending"] = {"status": "requires_payment_method", "metadata": {"email": "alice@example.com"}}
    gateway.intents["pi_other"] = {"status": "succeeded", "metadata": {"email": "bob@example.com"}}

    assert client.patch("/users/upgrade", json={"paymentIntentId": "pi_pending"},
                        headers=auth(alice)).status_code == 400
    assert client.patch("/users/upgrade", json={"paymentIntentId": "pi_other"},
                        headers=auth(alice)).status_code == 403
    assert is_premium(db, "alice@example.com") is False


def test_webhook_upgrades_payer(stripe_client, alice, db):
    payload = event("payment_intent.succeeded", "alice@example.com")
    res = stripe_client.post("/webhook", content=payload, headers={"stripe-signature": signed(payload)})

    assert res.json() == {"received": True}
    assert is_premium(db, "alice@example.com") is True


def test_webhook_ignores_other_events(stripe_client, alice, db):
    payload = event("payment_intent.created", "alice@example.com")
    res = stripe_client.post("/webhook", content=payload, headers={"stripe-signature": signed(payload)})
    assert res.status_code == 200
    assert is_premium(db, "alice@example.com") is False


def test_webhook_for_unknown_account_is_acknowledged(stripe_client):
    payload = event("payment_intent.succeeded", "ghost@example.com")
    res = stripe_client.post("/webhook", content=payload, headers={"stripe-signature": signed(payload)})
    assert res.json() == {"received": True}


def test_webhook_rejects_bad_signature(stripe_client, alice, db):
    payload = event("payment_intent.succeeded", "alice@example.com")
    res = stripe_client.post("/webhook", content=payload,
                             headers={"stripe-signature": signed(payload, secret="whsec_wrong")})

    assert res.status_code == 400
    assert res.json()["message"].startswith("Webhook Error")
    assert is_premium(db, "alice@example.com") is False


def test_webhook_without_signature_header(stripe_client, alice, db):
    payload = event("payment_intent.succeeded", "alice@example.com")
    res = stripe_client.post("/webhook", content=payload)

    assert res.status_code == 400
    assert res.json() == {"message": "Webhook Error: missing signature"}
    assert is_premium(db, "alice@example.com") is False
