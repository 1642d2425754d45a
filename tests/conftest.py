"""Shared fixtures: app on an in-memory Mongo, captured email, user factories."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import mailer
import main
from auth import create_access_token, hash_password
from config import settings
from database import get_db

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture()
def outbox(monkeypatch):
    """Every email the app tries to send, as (to, subject, html) tuples."""
    sent = []

    def fake_send(to, subject, html_body):
        sent.append((to, subject, html_body))
        return True

    monkeypatch.setattr(mailer, "send_email", fake_send)
    return sent


@pytest.fixture()
def client(monkeypatch, tmp_path, outbox):
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "upload_dir", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "image_host_url", "")
    main.app.state.mongo_client = mongomock.MongoClient()
    main.limiter.reset()
    try:
        with TestClient(main.app) as c:
            yield c
    finally:
        del main.app.state.mongo_client


@pytest.fixture()
def db(client):
    return get_db()


@pytest.fixture()
def make_user(db):
    """Insert a user directly and return (user_id, auth_headers)."""

    def _make(username="player", email="player@example.com", password="secret123",
              verified=True, admin=False, **extra):
        doc = {
            "username": username,
            "email": email,
            "password": hash_password(password),
            "is_verified": verified,
            "is_admin": admin,
            **extra,
        }
        user_id = str(db.user.insert_one(doc).inserted_id)
        headers = {"Authorization": f"Bearer {create_access_token(user_id, admin)}"}
        return user_id, headers

    return _make


@pytest.fixture()
def make_game(db):
    counter = {"n": 0}

    def _make(**fields):
        counter["n"] += 1
        doc = {
            "title": f"Game {counter['n']}",
            "genre": "Action",
            "price": 10.0,
            "discount": 0,
            "stock": 5,
            "type": "Game",
            "preorder": False,
            "upcoming": False,
            "reviews_avg": 0,
            "created_at": datetime(2024, 1, 1) + timedelta(days=counter["n"]),
        }
        doc.update(fields)
        return str(db.game.insert_one(doc).inserted_id)

    return _make


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a valid Stripe-Signature header for the payload."""
    ts = timestamp or int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def stripe_event(event_type: str, obj: dict) -> bytes:
    return json.dumps({
        "id": f"evt_{ObjectId()}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode()
