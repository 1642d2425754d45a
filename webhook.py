"""Stripe webhook reconciliation.

Turns signed payment events into order state exactly once:

- Signature verification is delegated to the Stripe SDK. Failure is the only
  outcome the caller surfaces as a non-200 response.
- Each event is resolved once into a typed event (completed / failed /
  ignored). The metadata of each kind is read from its own event object.
- Order creation is an insert-if-absent upsert keyed by the order id, so a
  redelivered event never creates a second order or decrements stock twice.
- Downstream failures are logged and never raised; Stripe retries non-2xx
  responses and would re-run the side effects.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import stripe
from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import mailer
from auth import find_user
from config import settings
from database import get_db
from schemas import Order, OrderLine

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_FAILED = "payment_intent.payment_failed"


class InvalidSignature(Exception):
    """The payload could not be authenticated as coming from Stripe."""


# ---------------------------- Event types ----------------------------------
@dataclass
class PurchasedGame:
    id: Optional[str]
    title: Optional[str]
    price: float = 0.0
    discount: float = 0.0
    quantity: int = 1


@dataclass
class CheckoutCompleted:
    order_id: Optional[str]
    user_id: Optional[str]
    amount: float
    games: List[PurchasedGame] = field(default_factory=list)


@dataclass
class PaymentFailed:
    order_id: Optional[str]
    user_id: Optional[str]
    amount: float
    games: List[PurchasedGame] = field(default_factory=list)


@dataclass
class IgnoredEvent:
    event_type: str


WebhookEvent = Union[CheckoutCompleted, PaymentFailed, IgnoredEvent]


# ---------------------------- Verification ---------------------------------
def verify_event(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Check the Stripe-Signature header and return the decoded event."""
    if not settings.stripe_webhook_secret:
        raise InvalidSignature("STRIPE_WEBHOOK_SECRET not configured")
    if not sig_header:
        raise InvalidSignature("Missing Stripe-Signature header")
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            payload,
            sig_header,
            settings.stripe_webhook_secret,
            tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
        )
        event = json.loads(payload)
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(str(e))
    except ValueError as e:
        raise InvalidSignature(f"Invalid payload: {e}")
    if not isinstance(event, dict):
        raise InvalidSignature("Invalid payload: not an event object")
    return event


# ---------------------------- Extraction -----------------------------------
def parse_games(raw: Any) -> List[PurchasedGame]:
    """Decode the `games` metadata string; anything malformed gives []."""
    if not raw:
        return []
    try:
        items = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError as e:
        logger.error("Could not parse games metadata: %s", e)
        return []
    if not isinstance(items, list):
        return []

    games = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            quantity = max(int(item.get("quantity") or 1), 1)
            price = float(item.get("price") or 0)
            discount = float(item.get("discount") or 0)
        except (TypeError, ValueError):
            logger.warning("Skipping malformed games metadata entry: %r", item)
            continue
        games.append(PurchasedGame(
            id=str(item["_id"]) if item.get("_id") else None,
            title=item.get("title"),
            price=price,
            discount=discount,
            quantity=quantity,
        ))
    return games


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    md = obj.get("metadata")
    return md if isinstance(md, dict) else {}


def _cents(value: Any) -> float:
    try:
        return max(float(value or 0), 0.0) / 100
    except (TypeError, ValueError):
        return 0.0


def _from_checkout_session(session: Dict[str, Any]) -> CheckoutCompleted:
    md = _metadata(session)
    return CheckoutCompleted(
        order_id=md.get("orderId"),
        user_id=md.get("userId"),
        amount=_cents(session.get("amount_total")),
        games=parse_games(md.get("games")),
    )


def _from_payment_intent(intent: Dict[str, Any]) -> PaymentFailed:
    md = _metadata(intent)
    return PaymentFailed(
        order_id=md.get("orderId"),
        user_id=md.get("userId"),
        amount=_cents(intent.get("amount")),
        games=parse_games(md.get("games")),
    )


_EXTRACTORS = {
    CHECKOUT_COMPLETED: _from_checkout_session,
    PAYMENT_FAILED: _from_payment_intent,
}


def resolve_event(event: Dict[str, Any]) -> WebhookEvent:
    event_type = str(event.get("type") or "")
    extractor = _EXTRACTORS.get(event_type)
    if extractor is None:
        return IgnoredEvent(event_type=event_type)
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}
    return extractor(obj)


# ---------------------------- Handlers -------------------------------------
def _titles(evt: Union[CheckoutCompleted, PaymentFailed], db: Database) -> List[str]:
    titles = [g.title for g in evt.games if g.title]
    if titles or not evt.order_id:
        return titles
    # older sessions carried no games metadata; fall back to the stored order
    existing = db.order.find_one({"_id": evt.order_id}, {"game_titles": 1})
    return list(existing.get("game_titles") or []) if existing else []


def _order_lines(games: List[PurchasedGame]) -> List[OrderLine]:
    return [OrderLine(game_id=g.id, quantity=g.quantity) for g in games if g.id]


def decrement_stock(db: Database, game_id: Optional[str], quantity: int) -> None:
    """Take `quantity` off a game's numeric stock, never going below zero."""
    if not game_id or not ObjectId.is_valid(game_id):
        logger.warning("Skipping stock update for invalid game id %r", game_id)
        return
    oid = ObjectId(game_id)
    res = db.game.update_one({"_id": oid, "stock": {"$gte": quantity}}, {"$inc": {"stock": -quantity}})
    if res.matched_count == 0:
        db.game.update_one({"_id": oid, "stock": {"$gt": 0, "$lt": quantity}}, {"$set": {"stock": 0}})


def _notify_failure(user_id: Optional[str], order_id: Optional[str], titles: List[str],
                    date: datetime, subject: str) -> None:
    user = find_user(user_id)
    if not user:
        logger.warning("No user found with id %s for failure email", user_id)
        return
    mailer.send_email(
        user["email"],
        subject,
        mailer.order_failure_email(user.get("username", ""), order_id, date, titles),
    )


def handle_checkout_completed(evt: CheckoutCompleted, db: Database) -> None:
    titles = [g.title for g in evt.games if g.title]
    now = datetime.utcnow()
    try:
        if not evt.order_id:
            raise ValueError("checkout session carries no orderId")
        order = Order(
            id=evt.order_id,
            user_id=evt.user_id or "",
            games=_order_lines(evt.games),
            total=evt.amount,
            status="paid",
            game_titles=titles,
            date=now,
        )
        doc = order.model_dump(exclude={"id"})
        doc.update(created_at=now, updated_at=now)
        try:
            res = db.order.update_one({"_id": evt.order_id}, {"$setOnInsert": doc}, upsert=True)
            inserted = res.upserted_id is not None
        except DuplicateKeyError:
            # concurrent delivery won the upsert
            inserted = False
        if not inserted:
            logger.info("Order %s already exists (webhook delivered more than once)", evt.order_id)
            return
        logger.info("Order %s saved as paid", evt.order_id)

        for g in evt.games:
            decrement_stock(db, g.id, g.quantity)
        logger.info("Stock updated for order %s", evt.order_id)

        user = find_user(evt.user_id)
        if user:
            mailer.send_email(
                user["email"],
                "Order Confirmation - Payment Successful",
                mailer.order_success_email(
                    username=user.get("username", ""),
                    order_id=evt.order_id,
                    total=order.total,
                    date=now,
                    orders_url=f"{settings.client_origin}/orders",
                    game_titles=titles,
                ),
            )
        else:
            logger.warning("No user found with id %s for success email", evt.user_id)
    except Exception:
        logger.exception("Failed to record order %s (checkout.session.completed)", evt.order_id)
        try:
            _notify_failure(evt.user_id, evt.order_id, titles, now, "Order Error - Contact Support")
        except Exception:
            logger.exception("Failure email for order %s could not be sent", evt.order_id)


def handle_payment_failed(evt: PaymentFailed, db: Database) -> None:
    now = datetime.utcnow()
    try:
        titles = _titles(evt, db)
        _notify_failure(evt.user_id, evt.order_id, titles, now, "Payment Failed - Order Not Completed")

        if not evt.order_id:
            logger.warning("payment_intent.payment_failed without orderId; nothing to record")
            return
        fields = {"status": "failed", "date": now, "total": evt.amount, "game_titles": titles, "updated_at": now}
        on_insert = {
            "user_id": evt.user_id or "",
            "games": [line.model_dump() for line in _order_lines(evt.games)],
            "created_at": now,
        }
        try:
            res = db.order.update_one({"_id": evt.order_id}, {"$setOnInsert": {**on_insert, **fields}}, upsert=True)
            inserted = res.upserted_id is not None
        except DuplicateKeyError:
            inserted = False
        if inserted:
            logger.info("Failed order %s recorded", evt.order_id)
            return
        # paid is final; only unpaid orders are moved to failed
        res = db.order.update_one({"_id": evt.order_id, "status": {"$ne": "paid"}}, {"$set": fields})
        if res.modified_count:
            logger.info("Order %s marked as failed", evt.order_id)
        else:
            logger.info("Order %s already paid; failure event ignored", evt.order_id)
    except Exception:
        logger.exception("Error handling payment failure for order %s", evt.order_id)


def reconcile(event: Dict[str, Any], db: Optional[Database] = None) -> WebhookEvent:
    """Apply a verified event to the store. Never raises."""
    db = db if db is not None else get_db()
    evt = resolve_event(event)
    if isinstance(evt, CheckoutCompleted):
        handle_checkout_completed(evt, db)
    elif isinstance(evt, PaymentFailed):
        handle_payment_failed(evt, db)
    else:
        logger.debug("Ignoring Stripe event %s", evt.event_type)
    return evt
