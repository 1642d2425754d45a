"""Stripe webhook: signature checks, event extraction and order reconciliation."""

import json
import time
from unittest.mock import patch

import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import webhook
from conftest import sign, stripe_event

URL = "/api/checkout/webhook"


def _post(client, payload: bytes, header: str = None):
    headers = {"Content-Type": "application/json"}
    headers["stripe-signature"] = header if header is not None else sign(payload)
    return client.post(URL, content=payload, headers=headers)


def _games(*items):
    return json.dumps([
        {"_id": gid, "title": title, "price": 10, "discount": 0, "quantity": qty}
        for gid, title, qty in items
    ])


def _completed(order_id, user_id, games_json, amount_total=2000):
    return stripe_event("checkout.session.completed", {
        "object": "checkout.session",
        "id": "cs_test_1",
        "amount_total": amount_total,
        "metadata": {"orderId": order_id, "userId": user_id, "games": games_json},
    })


def _failed(order_id, user_id, games_json="[]", amount=2000):
    return stripe_event("payment_intent.payment_failed", {
        "object": "payment_intent",
        "id": "pi_test_1",
        "amount": amount,
        "metadata": {"orderId": order_id, "userId": user_id, "games": games_json},
    })


# ── Signature Verification ────────────────────────────────────────────────


class TestSignature:

    def test_bad_signature_is_400(self, client, db):
        payload = _completed("o1", "u1", "[]")
        res = _post(client, payload, header=f"t={int(time.time())},v1=deadbeef")
        assert res.status_code == 400
        assert db.order.count_documents({}) == 0

    def test_missing_header_is_400(self, client):
        payload = _completed("o1", "u1", "[]")
        res = client.post(URL, content=payload, headers={"Content-Type": "application/json"})
        assert res.status_code == 400

    def test_wrong_secret_is_400(self, client):
        payload = _completed("o1", "u1", "[]")
        assert _post(client, payload, header=sign(payload, secret="whsec_other")).status_code == 400

    def test_tampered_body_is_400(self, client):
        payload = _completed("o1", "u1", "[]")
        header = sign(payload)
        tampered = payload.replace(b"o1", b"o2")
        assert _post(client, tampered, header=header).status_code == 400

    def test_stale_timestamp_is_400(self, client):
        payload = _completed("o1", "u1", "[]")
        old = sign(payload, timestamp=int(time.time()) - 3600)
        assert _post(client, payload, header=old).status_code == 400

    def test_unconfigured_secret_rejects(self, client, monkeypatch):
        from config import settings
        monkeypatch.setattr(settings, "stripe_webhook_secret", "")
        payload = _completed("o1", "u1", "[]")
        assert _post(client, payload).status_code == 400


# ── Event Extraction ──────────────────────────────────────────────────────


class TestExtraction:

    def test_parse_games_tolerates_garbage(self):
        assert webhook.parse_games(None) == []
        assert webhook.parse_games("") == []
        assert webhook.parse_games("{not json") == []
        assert webhook.parse_games('{"a": 1}') == []
        assert webhook.parse_games('[1, "x", {"_id": "g", "quantity": "lots"}]') == []

    def test_parse_games_reads_items(self):
        games = webhook.parse_games('[{"_id": "g1", "title": "T", "price": 5, "discount": 10, "quantity": 3}]')
        assert games == [webhook.PurchasedGame(id="g1", title="T", price=5.0, discount=10.0, quantity=3)]

    def test_resolve_kinds(self):
        completed = webhook.resolve_event(json.loads(_completed("o1", "u1", "[]", amount_total=1999)))
        assert isinstance(completed, webhook.CheckoutCompleted)
        assert completed.order_id == "o1"
        assert completed.amount == pytest.approx(19.99)

        failed = webhook.resolve_event(json.loads(_failed("o2", "u2", amount=500)))
        assert isinstance(failed, webhook.PaymentFailed)
        assert (failed.order_id, failed.user_id, failed.amount) == ("o2", "u2", 5.0)

        other = webhook.resolve_event({"type": "charge.refunded", "data": {"object": {}}})
        assert isinstance(other, webhook.IgnoredEvent)

    def test_resolve_without_metadata(self):
        evt = webhook.resolve_event({"type": "checkout.session.completed", "data": {"object": {"amount_total": 100}}})
        assert evt.order_id is None
        assert evt.games == []


# ── Checkout Completed ────────────────────────────────────────────────────


class TestCheckoutCompleted:

    def test_creates_paid_order_decrements_stock_and_emails(self, client, db, make_user, make_game, outbox):
        user_id, _ = make_user(username="buyer", email="buyer@example.com")
        g1 = make_game(title="Alpha", stock=5)
        g2 = make_game(title="Beta", stock=1)
        payload = _completed("order-1", user_id, _games((g1, "Alpha", 2), (g2, "Beta", 3)), amount_total=5000)

        res = _post(client, payload)
        assert res.status_code == 200
        assert res.json() == {"received": True}

        order = db.order.find_one({"_id": "order-1"})
        assert order["status"] == "paid"
        assert order["total"] == 50.0
        assert order["user_id"] == user_id
        assert order["game_titles"] == ["Alpha", "Beta"]
        assert [line["quantity"] for line in order["games"]] == [2, 3]

        assert db.game.find_one({"_id": ObjectId(g1)})["stock"] == 3
        assert db.game.find_one({"_id": ObjectId(g2)})["stock"] == 0

        assert len(outbox) == 1
        to, subject, body = outbox[0]
        assert to == "buyer@example.com"
        assert "order-1" in body and "Alpha, Beta" in body and "/orders" in body

    def test_duplicate_delivery_is_idempotent(self, client, db, make_user, make_game, outbox):
        user_id, _ = make_user()
        g1 = make_game(stock=10)
        payload = _completed("order-dup", user_id, _games((g1, "Game", 4)))

        assert _post(client, payload).status_code == 200
        assert _post(client, payload).status_code == 200

        assert db.order.count_documents({"_id": "order-dup"}) == 1
        assert db.game.find_one({"_id": ObjectId(g1)})["stock"] == 6
        assert len(outbox) == 1

    def test_missing_catalog_items_are_skipped(self, client, db, make_user, make_game):
        user_id, _ = make_user()
        real = make_game(stock=2)
        payload = _completed("order-2", user_id, _games((str(ObjectId()), "Gone", 1), ("bad-id", "Bad", 1), (real, "Real", 1)))
        assert _post(client, payload).status_code == 200
        assert db.order.count_documents({"_id": "order-2"}) == 1
        assert db.game.find_one({"_id": ObjectId(real)})["stock"] == 1

    def test_non_numeric_stock_untouched(self, client, db, make_user, make_game):
        user_id, _ = make_user()
        game_id = make_game(stock=None)
        assert _post(client, _completed("order-3", user_id, _games((game_id, "X", 1)))).status_code == 200
        assert db.game.find_one({"_id": ObjectId(game_id)})["stock"] is None

    def test_malformed_games_metadata_still_records_order(self, client, db, make_user):
        user_id, _ = make_user()
        assert _post(client, _completed("order-4", user_id, "not-json")).status_code == 200
        order = db.order.find_one({"_id": "order-4"})
        assert order["status"] == "paid"
        assert order["games"] == []

    def test_unknown_buyer_still_records_order(self, client, db, outbox):
        assert _post(client, _completed("order-5", str(ObjectId()), "[]")).status_code == 200
        assert db.order.count_documents({"_id": "order-5"}) == 1
        assert outbox == []

    def test_store_failure_returns_200_and_notifies(self, client, make_user, outbox):
        user_id, _ = make_user(email="buyer@example.com")
        with patch("webhook.decrement_stock", side_effect=RuntimeError("db down")):
            res = _post(client, _completed("order-6", user_id, _games((str(ObjectId()), "X", 1))))
        assert res.status_code == 200
        assert len(outbox) == 1
        assert outbox[0][0] == "buyer@example.com"
        assert "Error" in outbox[0][1]


# ── Payment Failed ────────────────────────────────────────────────────────


class TestPaymentFailed:

    def test_records_failed_order_and_emails(self, client, db, make_user, outbox):
        user_id, _ = make_user(email="buyer@example.com")
        res = _post(client, _failed("order-f", user_id, _games((str(ObjectId()), "Gamma", 1)), amount=1500))
        assert res.status_code == 200

        order = db.order.find_one({"_id": "order-f"})
        assert order["status"] == "failed"
        assert order["total"] == 15.0
        assert order["game_titles"] == ["Gamma"]
        assert len(outbox) == 1
        assert "Gamma" in outbox[0][2]

    def test_failed_after_paid_keeps_paid(self, client, db, make_user, make_game):
        user_id, _ = make_user()
        g1 = make_game(stock=3)
        assert _post(client, _completed("order-p", user_id, _games((g1, "Paid", 1)), amount_total=1000)).status_code == 200
        assert _post(client, _failed("order-p", user_id, amount=999)).status_code == 200

        order = db.order.find_one({"_id": "order-p"})
        assert order["status"] == "paid"
        assert order["total"] == 10.0
        assert db.game.find_one({"_id": ObjectId(g1)})["stock"] == 2

    def test_failed_twice_is_reapplied(self, client, db, make_user):
        user_id, _ = make_user()
        assert _post(client, _failed("order-ff", user_id, amount=1000)).status_code == 200
        assert _post(client, _failed("order-ff", user_id, amount=1200)).status_code == 200
        assert db.order.count_documents({"_id": "order-ff"}) == 1
        order = db.order.find_one({"_id": "order-ff"})
        assert order["status"] == "failed"
        assert order["total"] == 12.0

    def test_failed_overwrites_awaiting_verification(self, client, db, make_user):
        user_id, _ = make_user()
        db.order.insert_one({"_id": "order-w", "user_id": user_id, "games": [], "total": 1,
                             "status": "awaiting_verification", "game_titles": ["Stored"]})
        assert _post(client, _failed("order-w", user_id, amount=700)).status_code == 200
        order = db.order.find_one({"_id": "order-w"})
        assert order["status"] == "failed"
        assert order["total"] == 7.0
        # no games metadata: titles recovered from the stored order
        assert order["game_titles"] == ["Stored"]

    def test_completed_after_failed_is_a_duplicate(self, client, db, make_user, make_game):
        user_id, _ = make_user()
        g1 = make_game(stock=3)
        assert _post(client, _failed("order-x", user_id)).status_code == 200
        assert _post(client, _completed("order-x", user_id, _games((g1, "X", 1)))).status_code == 200
        assert db.order.find_one({"_id": "order-x"})["status"] == "failed"
        assert db.game.find_one({"_id": ObjectId(g1)})["stock"] == 3


def _losing_upsert(original):
    """update_one that fails every upsert as if a concurrent delivery inserted first."""

    def update_one(self, filter, update, upsert=False, **kwargs):
        if upsert:
            raise DuplicateKeyError("E11000 duplicate key error collection: order")
        return original(self, filter, update, upsert=upsert, **kwargs)

    return update_one


class TestConcurrentDelivery:

    def test_completed_losing_the_insert_race_is_a_duplicate(self, client, db, make_user, make_game, outbox):
        user_id, _ = make_user()
        g1 = make_game(stock=5)
        payload = _completed("order-race", user_id, _games((g1, "Raced", 2)))
        with patch.object(mongomock.Collection, "update_one", _losing_upsert(mongomock.Collection.update_one)):
            res = _post(client, payload)
        assert res.status_code == 200
        assert db.game.find_one({"_id": ObjectId(g1)})["stock"] == 5
        assert outbox == []

    def test_failed_losing_the_insert_race_updates_existing(self, client, db, make_user):
        user_id, _ = make_user()
        db.order.insert_one({"_id": "order-rf", "user_id": user_id, "games": [], "total": 1,
                             "status": "awaiting_verification", "game_titles": ["Stored"]})
        with patch.object(mongomock.Collection, "update_one", _losing_upsert(mongomock.Collection.update_one)):
            res = _post(client, _failed("order-rf", user_id, amount=800))
        assert res.status_code == 200
        order = db.order.find_one({"_id": "order-rf"})
        assert order["status"] == "failed"
        assert order["total"] == 8.0


class TestOtherEvents:

    def test_ignored_event_has_no_side_effects(self, client, db, outbox):
        payload = stripe_event("charge.refunded", {"object": "charge", "metadata": {"orderId": "o"}})
        res = _post(client, payload)
        assert res.status_code == 200
        assert db.order.count_documents({}) == 0
        assert outbox == []
