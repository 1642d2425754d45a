"""App-wide behaviour: the per-IP request budget."""

from conftest import stripe_event, sign
from config import settings


class TestRateLimit:

    def test_requests_over_budget_get_429(self, client, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit", "2/minute")
        assert client.get("/").status_code == 200
        assert client.get("/").status_code == 200
        res = client.get("/")
        assert res.status_code == 429
        assert res.json() == {"detail": "Too many requests, please try again later."}

    def test_budget_is_shared_across_routes(self, client, monkeypatch, make_game):
        monkeypatch.setattr(settings, "rate_limit", "1/minute")
        game_id = make_game()
        assert client.get(f"/api/games/{game_id}").status_code == 200
        assert client.get("/api/games").status_code == 429

    def test_webhook_is_exempt(self, client, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit", "1/minute")
        for _ in range(3):
            payload = stripe_event("charge.refunded", {"object": "charge"})
            res = client.post("/api/checkout/webhook", content=payload,
                              headers={"Content-Type": "application/json", "stripe-signature": sign(payload)})
            assert res.status_code == 200
