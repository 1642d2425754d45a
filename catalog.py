"""Catalog listing: query parameters -> Mongo filter, sort and page window."""
import math
import re
from typing import Any, Dict, List, Optional, Tuple

TYPE_ALL = "All"
TYPE_PREORDER = "Preorder"
TYPE_UPCOMING = "Upcoming"

DEFAULT_PAGE_SIZE = 9

SORT_OPTIONS: Dict[str, Tuple[str, int]] = {
    "Price: low to high": ("price", 1),
    "Price: high to low": ("price", -1),
    "Discount: best": ("discount", -1),
    "Reviews: best": ("reviews_avg", -1),
    "Release: newest": ("created_at", -1),
    "Release: oldest": ("created_at", 1),
}
DEFAULT_SORT = ("created_at", -1)


def build_filter(
    genre: Optional[str] = None,
    platform: Optional[str] = None,
    system: Optional[str] = None,
    type: Optional[str] = None,
    price_min: Optional[float] = None,
    price_max: Optional[float] = None,
    in_stock: bool = False,
) -> Dict[str, Any]:
    flt: Dict[str, Any] = {}
    if genre:
        flt["genre"] = {"$regex": re.escape(genre), "$options": "i"}
    if platform:
        flt["platform"] = platform
    if system:
        flt["system"] = system

    if type and type != TYPE_ALL:
        if type == TYPE_PREORDER:
            flt["$or"] = [{"type": TYPE_PREORDER}, {"preorder": True}]
        elif type == TYPE_UPCOMING:
            flt["upcoming"] = True
        else:
            flt["type"] = type

    if price_min is not None or price_max is not None:
        flt["price"] = {}
        if price_min is not None:
            flt["price"]["$gte"] = price_min
        if price_max is not None:
            flt["price"]["$lte"] = price_max

    if in_stock:
        flt["stock"] = {"$gt": 0}
    return flt


def sort_for(label: Optional[str]) -> List[Tuple[str, int]]:
    # _id breaks ties so pages never overlap
    field, direction = SORT_OPTIONS.get(label or "", DEFAULT_SORT)
    return [(field, direction), ("_id", direction)]


def page_window(page: int, limit: int) -> Tuple[int, int]:
    """Return (skip, limit) for a 1-indexed page."""
    page = max(page, 1)
    limit = max(limit, 1)
    return (page - 1) * limit, limit


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / max(limit, 1))
