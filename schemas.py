"""
Database Schemas for the Game Store

Each Pydantic model below maps to a MongoDB collection using the lowercase
class name as the collection name (e.g., Game -> "game").

These schemas are used for validation at the API boundaries and to keep
collections consistent. Documents are normalised explicitly (see
`normalize_game`) before every write; nothing happens behind a save hook.
"""
from datetime import datetime
from typing import List, Literal, Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

PLATFORMS = (
    "Steam",
    "Epic Games",
    "EA App",
    "Rockstar",
    "Ubisoft Connect",
    "Nintendo eShop",
    "PlayStation Store",
    "Xbox Store",
    "Microsoft Store",
    "Blizzard",
    "NetEase",
)
SYSTEMS = ("PC", "PlayStation 5", "Xbox Series X/S", "Switch", "Switch 2")

GameType = Literal["Game", "DLC", "Preorder", "Gift Card", "Game + DLC", "Demo", "Free to Play"]
Platform = Literal[PLATFORMS]
System = Literal[SYSTEMS]
OrderStatus = Literal["paid", "failed", "awaiting_verification"]

FREE_TO_PLAY = "Free to Play"
DEMO = "Demo"

# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------
class User(BaseModel):
    username: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., description="bcrypt hash")
    is_admin: bool = False
    is_verified: bool = False
    verification_token: Optional[str] = None
    reset_token: Optional[str] = None
    reset_expires: Optional[datetime] = None
    profile_pic: Optional[str] = None

# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
class Game(BaseModel):
    title: str = Field(..., min_length=1)
    genre: Optional[str] = None
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)
    image_url: Optional[str] = None
    platform: Optional[Platform] = None
    system: Optional[System] = None
    type: GameType = "Game"
    description: Optional[str] = None
    trailer_url: Optional[str] = None
    dlc_link: str = ""
    base_game_link: str = ""
    stock: Optional[int] = 1
    upcoming: bool = False
    preorder: bool = False
    reviews_avg: float = 0


def normalize_game(data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply the catalog write rules to a game document (or partial update).

    A preorder that is not free to play is stored as a demo, and an upcoming
    game never carries stock.
    """
    out = dict(data)
    if out.get("preorder") and out.get("type") != FREE_TO_PLAY:
        out["type"] = DEMO
    if out.get("upcoming"):
        out["stock"] = 0
    return out


def is_available(stock: Any) -> bool:
    return isinstance(stock, (int, float)) and not isinstance(stock, bool) and stock > 0

# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------
class OrderLine(BaseModel):
    game_id: str
    quantity: int = Field(..., ge=1)
    is_preorder: bool = False


class Order(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id", description="Externally generated order id")
    user_id: str
    games: List[OrderLine] = []
    total: float = Field(..., ge=0)
    status: OrderStatus = "paid"
    game_titles: List[str] = []
    date: datetime = Field(default_factory=datetime.utcnow)

# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------
class Review(BaseModel):
    game_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    date: datetime = Field(default_factory=datetime.utcnow)
