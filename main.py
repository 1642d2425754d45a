import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Annotated, List, Optional, Dict, Any
from urllib.parse import urlencode

import stripe
from bson import ObjectId
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import AfterValidator, BaseModel, EmailStr, Field, ValidationError
from pymongo.errors import DuplicateKeyError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool

import catalog
import mailer
import webhook
from auth import (
    MAX_PASSWORD_BYTES,
    CurrentUser,
    check_password,
    create_access_token,
    find_user,
    get_current_user,
    hash_password,
    new_token,
    require_admin,
)
from config import settings
from database import close_db, create_document, get_db, init_db, serialize
from schemas import Game as GameSchema, Order as OrderSchema, OrderLine, Review as ReviewSchema, User as UserSchema
from schemas import is_available, normalize_game
from storage import save_upload, upload_root

logger = logging.getLogger(__name__)

RESET_TOKEN_TTL = timedelta(hours=1)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # tests hand in an in-memory client through app.state
    init_db(client=getattr(app.state, "mongo_client", None))
    try:
        yield
    finally:
        close_db()


app = FastAPI(title="Game Store API", lifespan=lifespan)

# per-IP request budget; the limit string is read from settings on every request
limiter = Limiter(key_func=get_remote_address, default_limits=[lambda: settings.rate_limit])
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", settings.client_origin],
    allow_origin_regex=r"https://.*\.vercel\.app",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.mount("/uploads", StaticFiles(directory=str(upload_root()), check_dir=False), name="uploads")


# ---------------------------- Errors ---------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())})


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning("Rate limit exceeded for %s on %s", get_remote_address(request), request.url.path)
    return JSONResponse(status_code=429, content={"detail": "Too many requests, please try again later."})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---------------------------- Utilities ------------------------------------
def oid(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid id")
    return ObjectId(id_str)


def game_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize(doc)
    out["is_available"] = is_available(doc.get("stock"))
    return out


def user_summary(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "username": user.get("username"),
        "email": user.get("email"),
        "isAdmin": user.get("is_admin", False),
        "profilePic": user.get("profile_pic"),
    }


def frontend_link(path: str, **params: str) -> str:
    return f"{settings.client_origin}{path}?{urlencode(params)}"


def require_self_or_admin(user: CurrentUser, user_id: str) -> None:
    if user.id != user_id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Not allowed")


# ---------------------------- Root -----------------------------------------
@app.get("/")
def read_root():
    return {"message": "Game Store backend running"}


# ---------------------------- Auth -----------------------------------------
def _fits_bcrypt(password: str) -> str:
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return password


Password = Annotated[str, Field(min_length=1), AfterValidator(_fits_bcrypt)]


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1)
    email: EmailStr
    password: Password


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ResetRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    token: str
    newPassword: Password


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest):
    verification_token = new_token()
    user = UserSchema(
        username=payload.username,
        email=payload.email,
        password=hash_password(payload.password),
        verification_token=verification_token,
        is_verified=False,
    )
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email or username already in use")

    link = frontend_link("/verify-email", token=verification_token, email=payload.email)
    mailer.send_email(payload.email, "Verify your email address", mailer.verification_email(link))
    return {"message": "Registration complete. Check your email to verify your account.", "userId": user_id}


@app.post("/api/auth/login")
def login(payload: LoginRequest):
    user = get_db().user.find_one({"email": payload.email})
    if not user or not check_password(payload.password, user.get("password")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_verified"):
        raise HTTPException(status_code=403, detail="Verify your email first")

    token = create_access_token(str(user["_id"]), bool(user.get("is_admin")))
    summary = user_summary(user)
    summary.pop("email")
    return {"token": token, "user": summary}


@app.get("/api/auth/verify-email")
def verify_email(email: str, token: str):
    db = get_db()
    user = db.user.find_one({"email": email})
    if not user:
        raise HTTPException(status_code=400, detail="User not found")
    if not user.get("verification_token") or user["verification_token"] != token:
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    if user.get("is_verified"):
        return {"message": "Email already verified."}

    db.user.update_one(
        {"_id": user["_id"]},
        {"$set": {"is_verified": True, "updated_at": datetime.utcnow()}, "$unset": {"verification_token": ""}},
    )
    return {"message": "Email verified. You can now log in."}


@app.post("/api/auth/request-reset")
def request_password_reset(payload: ResetRequest):
    db = get_db()
    user = db.user.find_one({"email": payload.email})
    if not user:
        raise HTTPException(status_code=400, detail="User not found")

    token = new_token()
    db.user.update_one(
        {"_id": user["_id"]},
        {"$set": {"reset_token": token, "reset_expires": datetime.utcnow() + RESET_TOKEN_TTL}},
    )
    link = frontend_link("/reset-password", token=token, email=payload.email)
    mailer.send_email(payload.email, "Password reset", mailer.reset_email(link))
    return {"message": "Password reset email sent"}


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordRequest):
    db = get_db()
    user = db.user.find_one({
        "email": payload.email,
        "reset_token": payload.token,
        "reset_expires": {"$gt": datetime.utcnow()},
    })
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired token")

    db.user.update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password": hash_password(payload.newPassword), "updated_at": datetime.utcnow()},
            "$unset": {"reset_token": "", "reset_expires": ""},
        },
    )
    return {"message": "Password updated"}


@app.put("/api/auth/update-profile")
def update_profile(
    username: Optional[str] = Form(None),
    profilePic: Optional[UploadFile] = File(None),
    current: CurrentUser = Depends(get_current_user),
):
    db = get_db()
    user = find_user(current.id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    updates: Dict[str, Any] = {}
    if username:
        updates["username"] = username
    if profilePic is not None and profilePic.filename:
        updates["profile_pic"] = save_upload(profilePic)
    if updates:
        updates["updated_at"] = datetime.utcnow()
        try:
            db.user.update_one({"_id": user["_id"]}, {"$set": updates})
        except DuplicateKeyError:
            raise HTTPException(status_code=400, detail="Username already in use")
        user.update(updates)
    return {"message": "Profile updated", "user": user_summary(user)}


# ---------------------------- Catalog --------------------------------------
@app.get("/api/games")
def list_games(
    genre: Optional[str] = None,
    platform: Optional[str] = None,
    system: Optional[str] = None,
    type_: Optional[str] = Query(None, alias="type"),
    sort: Optional[str] = None,
    price_min: Optional[float] = Query(None, alias="priceMin"),
    price_max: Optional[float] = Query(None, alias="priceMax"),
    in_stock: Optional[str] = Query(None, alias="inStock"),
    page: int = Query(1, ge=1),
    limit: int = Query(catalog.DEFAULT_PAGE_SIZE, ge=1, le=100),
):
    flt = catalog.build_filter(
        genre=genre,
        platform=platform,
        system=system,
        type=type_,
        price_min=price_min,
        price_max=price_max,
        in_stock=in_stock == "true",
    )
    skip, limit = catalog.page_window(page, limit)
    db = get_db()
    docs = db.game.find(flt).sort(catalog.sort_for(sort)).skip(skip).limit(limit)
    total = db.game.count_documents(flt)
    return {
        "games": [game_out(d) for d in docs],
        "totalGames": total,
        "totalPages": catalog.total_pages(total, limit),
        "currentPage": page,
    }


@app.get("/api/games/{game_id}")
def get_game(game_id: str):
    doc = get_db().game.find_one({"_id": oid(game_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Game not found")
    return game_out(doc)


def _game_fields(**form: Any) -> Dict[str, Any]:
    return {k: v for k, v in form.items() if v is not None}


def _validated_game(fields: Dict[str, Any]) -> GameSchema:
    try:
        return GameSchema(**normalize_game(fields))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False))


@app.post("/api/games", status_code=201)
def create_game(
    title: str = Form(...),
    price: float = Form(...),
    genre: Optional[str] = Form(None),
    discount: Optional[float] = Form(None),
    stock: Optional[int] = Form(None),
    platform: Optional[str] = Form(None),
    system: Optional[str] = Form(None),
    type: Optional[str] = Form(None),
    preorder: bool = Form(False),
    upcoming: bool = Form(False),
    description: Optional[str] = Form(None),
    trailerUrl: Optional[str] = Form(None),
    dlcLink: Optional[str] = Form(None),
    baseGameLink: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    admin: CurrentUser = Depends(require_admin),
):
    fields = _game_fields(
        title=title, price=price, genre=genre, discount=discount, stock=stock,
        platform=platform, system=system, type=type, preorder=preorder, upcoming=upcoming,
        description=description, trailer_url=trailerUrl, dlc_link=dlcLink, base_game_link=baseGameLink,
    )
    game = _validated_game(fields)
    if image is not None and image.filename:
        game.image_url = save_upload(image)
    game_id = create_document("game", game)
    logger.info("Game %s created by %s", game_id, admin.id)
    return game_out(get_db().game.find_one({"_id": ObjectId(game_id)}))


@app.put("/api/games/{game_id}")
def update_game(
    game_id: str,
    title: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    genre: Optional[str] = Form(None),
    discount: Optional[float] = Form(None),
    stock: Optional[int] = Form(None),
    platform: Optional[str] = Form(None),
    system: Optional[str] = Form(None),
    type: Optional[str] = Form(None),
    preorder: Optional[bool] = Form(None),
    upcoming: Optional[bool] = Form(None),
    description: Optional[str] = Form(None),
    trailerUrl: Optional[str] = Form(None),
    dlcLink: Optional[str] = Form(None),
    baseGameLink: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    admin: CurrentUser = Depends(require_admin),
):
    db = get_db()
    current = db.game.find_one({"_id": oid(game_id)})
    if not current:
        raise HTTPException(status_code=404, detail="Game not found")

    updates = _game_fields(
        title=title, price=price, genre=genre, discount=discount, stock=stock,
        platform=platform, system=system, type=type, preorder=preorder, upcoming=upcoming,
        description=description, trailer_url=trailerUrl, dlc_link=dlcLink, base_game_link=baseGameLink,
    )
    known = {k: v for k, v in current.items() if k in GameSchema.model_fields}
    game = _validated_game({**known, **updates})
    if image is not None and image.filename:
        game.image_url = save_upload(image)

    changes = game.model_dump()
    changes["updated_at"] = datetime.utcnow()
    db.game.update_one({"_id": current["_id"]}, {"$set": changes})
    logger.info("Game %s updated by %s", game_id, admin.id)
    return game_out(db.game.find_one({"_id": current["_id"]}))


@app.delete("/api/games/{game_id}", status_code=204)
def delete_game(game_id: str, admin: CurrentUser = Depends(require_admin)):
    get_db().game.delete_one({"_id": oid(game_id)})
    logger.info("Game %s deleted by %s", game_id, admin.id)
    return Response(status_code=204)


# ---------------------------- Orders ---------------------------------------
class OrderItemIn(BaseModel):
    gameId: str
    quantity: int = Field(1, ge=1)


class CreateOrderRequest(BaseModel):
    userId: str
    games: List[OrderItemIn]
    total: float


def _numeric_stock(stock: Any) -> int:
    if isinstance(stock, bool):
        return 0
    if isinstance(stock, (int, float)):
        return int(stock)
    try:
        return int(stock)
    except (TypeError, ValueError):
        return 0


@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrderRequest, user: CurrentUser = Depends(get_current_user)):
    if not payload.userId or not payload.games or payload.total < 0:
        raise HTTPException(status_code=400, detail="Missing or invalid order data")
    require_self_or_admin(user, payload.userId)

    db = get_db()
    ids = [oid(item.gameId) for item in payload.games]
    found = {str(g["_id"]): g for g in db.game.find({"_id": {"$in": ids}})}

    lines = []
    for item in payload.games:
        game = found.get(item.gameId)
        if not game:
            raise HTTPException(status_code=400, detail=f"Game {item.gameId} not found")
        available = _numeric_stock(game.get("stock"))
        if item.quantity > available:
            raise HTTPException(
                status_code=400,
                detail=f'Requested quantity ({item.quantity}) for "{game.get("title")}" exceeds available stock ({available})',
            )
        lines.append(OrderLine(game_id=item.gameId, quantity=item.quantity, is_preorder=game.get("preorder") is True))

    order = OrderSchema(
        id=str(ObjectId()),
        user_id=payload.userId,
        games=lines,
        total=payload.total,
        status="awaiting_verification",
        game_titles=[found[line.game_id].get("title", "") for line in lines],
    )
    order_id = create_document("order", order)
    return serialize(db.order.find_one({"_id": order_id}))


@app.get("/api/orders/user/{user_id}")
def get_user_orders(user_id: str, user: CurrentUser = Depends(get_current_user)):
    require_self_or_admin(user, user_id)
    db = get_db()
    orders = list(db.order.find({"user_id": user_id}).sort("date", -1))

    game_ids = {line["game_id"] for o in orders for line in o.get("games", []) if ObjectId.is_valid(line.get("game_id", ""))}
    games = {str(g["_id"]): game_out(g) for g in db.game.find({"_id": {"$in": [ObjectId(i) for i in game_ids]}})}
    out = []
    for o in orders:
        o = serialize(o)
        for line in o.get("games", []):
            line["game"] = games.get(line.get("game_id"))
        out.append(o)
    return out


# ------------------------------ Checkout -----------------------------------
class CheckoutGame(BaseModel):
    id: str = Field(..., alias="_id")
    title: str
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)
    quantity: int = Field(1, ge=1)


class CheckoutRequest(BaseModel):
    games: List[CheckoutGame] = []
    userId: Optional[str] = None


@app.post("/api/checkout/create-checkout-session")
def create_checkout_session(req: CheckoutRequest, user: CurrentUser = Depends(get_current_user)):
    if not req.games:
        raise HTTPException(status_code=400, detail="No games provided for checkout")
    user_id = req.userId or user.id
    require_self_or_admin(user, user_id)

    order_id = str(uuid.uuid4())
    line_items = []
    for g in req.games:
        unit = g.price * (1 - g.discount / 100) if g.discount > 0 else g.price
        line_items.append({
            "price_data": {
                "currency": "eur",
                "product_data": {"name": g.title},
                "unit_amount": round(unit * 100),
            },
            "quantity": g.quantity,
        })

    games_json = games_metadata(req.games)
    metadata = {"orderId": order_id, "userId": user_id, "games": games_json}

    stripe.api_key = settings.stripe_secret_key
    try:
        session = stripe.checkout.Session.create(
            payment_method_types=["card"],
            mode="payment",
            customer_creation="always",
            line_items=line_items,
            success_url=f"{settings.client_origin}/success?orderId={order_id}",
            cancel_url=f"{settings.client_origin}/cancel?orderId={order_id}",
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
        )
    except stripe.StripeError as e:
        logger.error("Checkout session creation failed: %s", e)
        raise HTTPException(status_code=500, detail="Could not create payment session")
    return {"url": session.url, "orderId": order_id}


def games_metadata(games: List[CheckoutGame]) -> str:
    # Stripe metadata values are plain strings
    return json.dumps([
        {"_id": g.id, "title": g.title, "price": g.price, "discount": g.discount, "quantity": g.quantity}
        for g in games
    ], separators=(",", ":"))


@app.post("/api/checkout/webhook")
@limiter.exempt
async def stripe_webhook(request: Request):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        event = webhook.verify_event(payload, sig_header)
    except webhook.InvalidSignature as e:
        logger.error("Webhook signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    await run_in_threadpool(webhook.reconcile, event)
    return {"received": True}


# ------------------------------ Reviews ------------------------------------
class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


def refresh_reviews_avg(game_id: str) -> None:
    db = get_db()
    agg = list(db.review.aggregate([
        {"$match": {"game_id": game_id}},
        {"$group": {"_id": None, "avg": {"$avg": "$rating"}}},
    ]))
    avg = round(agg[0]["avg"], 2) if agg and agg[0].get("avg") is not None else 0
    if ObjectId.is_valid(game_id):
        db.game.update_one({"_id": ObjectId(game_id)}, {"$set": {"reviews_avg": avg}})


@app.get("/api/reviews/{game_id}")
def get_reviews(game_id: str):
    db = get_db()
    reviews = list(db.review.find({"game_id": game_id}).sort("date", -1))
    user_ids = [ObjectId(r["user_id"]) for r in reviews if ObjectId.is_valid(r.get("user_id", ""))]
    names = {str(u["_id"]): u.get("username") for u in db.user.find({"_id": {"$in": user_ids}}, {"username": 1})}
    out = []
    for r in reviews:
        r = serialize(r)
        r["username"] = names.get(r.get("user_id"))
        out.append(r)
    return out


@app.post("/api/reviews/{game_id}", status_code=201)
def add_review(game_id: str, payload: ReviewIn, user: CurrentUser = Depends(get_current_user)):
    db = get_db()
    if not db.game.find_one({"_id": oid(game_id)}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Game not found")
    review = ReviewSchema(game_id=game_id, user_id=user.id, rating=payload.rating, comment=payload.comment)
    try:
        review_id = create_document("review", review)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="You have already reviewed this game")
    refresh_reviews_avg(game_id)
    return serialize(db.review.find_one({"_id": ObjectId(review_id)}))


@app.put("/api/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewIn, user: CurrentUser = Depends(get_current_user)):
    db = get_db()
    review = db.review.find_one({"_id": oid(review_id)})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    if review.get("user_id") != user.id:
        raise HTTPException(status_code=403, detail="Not allowed to edit this review")

    now = datetime.utcnow()
    db.review.update_one(
        {"_id": review["_id"]},
        {"$set": {"rating": payload.rating, "comment": payload.comment, "date": now, "updated_at": now}},
    )
    refresh_reviews_avg(review["game_id"])
    return serialize(db.review.find_one({"_id": review["_id"]}))


@app.delete("/api/reviews/{review_id}", status_code=204)
def delete_review(review_id: str, user: CurrentUser = Depends(get_current_user)):
    db = get_db()
    review = db.review.find_one({"_id": oid(review_id)})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    if not (user.is_admin or review.get("user_id") == user.id):
        raise HTTPException(status_code=403, detail="Not allowed to delete this review")
    db.review.delete_one({"_id": review["_id"]})
    refresh_reviews_avg(review["game_id"])
    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
