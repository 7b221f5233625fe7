import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List

import structlog
from bson import ObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pymongo.database import Database

from auth import get_current_user_id
from catalog import get_product, get_products
from database import create_document, get_db, serialize, utcnow
from errors import NotFound
from schemas import Cart, CartItem

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])


class UserLocks:
    """Process-local mutex table keyed by user id.

    Serializes read-modify-write on a user's cart, and checkout (which
    consumes the cart), across FastAPI's worker threads. An entry lives only
    while some thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # user id -> [lock, number of holders and waiters]
        self._locks: Dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def __call__(self, user_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[user_id]


user_locks = UserLocks()


class AddToCart(BaseModel):
    product_id: str
    quantity: int = 1


class UpdateCartItem(BaseModel):
    quantity: int


def find_cart(db: Database, user_id: str):
    return db["cart"].find_one({"user_id": user_id})


def _get_or_create_cart(db: Database, user_id: str) -> dict:
    cart = find_cart(db, user_id)
    if cart is None:
        create_document(db, "cart", Cart(user_id=user_id))
        cart = find_cart(db, user_id)
    return cart


def _find_item(cart: dict, item_id: str):
    for it in cart.get("items", []):
        if str(it.get("_id")) == item_id:
            return it
    return None


def save_items(db: Database, cart: dict, items: List[dict]) -> None:
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": utcnow()}})
    cart["items"] = items


def with_products(db: Database, items: List[dict]) -> List[dict]:
    """Attach the current catalog document (or None) to each cart line."""
    products = get_products(db, [it["product_id"] for it in items])
    return [{**it, "product": products.get(it["product_id"])} for it in items]


def resolve_cart(db: Database, cart: dict) -> dict:
    items = with_products(db, cart.get("items", []))
    subtotal = 0.0
    for it in items:
        # deleted products stay visible with product=None but cost nothing
        if it["product"] is not None:
            subtotal += float(it["product"].get("price", 0)) * int(it["quantity"])
    return serialize({**cart, "items": items, "subtotal": round(subtotal, 2)})


# Operations

def fetch_cart(db: Database, user_id: str) -> dict:
    with user_locks(user_id):
        cart = _get_or_create_cart(db, user_id)
    return resolve_cart(db, cart)


def add_item(db: Database, user_id: str, product_id: str, quantity: int = 1) -> dict:
    product = get_product(db, product_id)
    if product is None:
        raise NotFound("Product not found")
    product_id = str(product["_id"])
    quantity = max(1, quantity)

    with user_locks(user_id):
        cart = _get_or_create_cart(db, user_id)
        items = cart.get("items", [])
        for it in items:
            if it["product_id"] == product_id:
                it["quantity"] += quantity
                break
        else:
            line = CartItem(product_id=product_id, quantity=quantity).model_dump()
            items.append({"_id": ObjectId(), **line})
        save_items(db, cart, items)

    logger.info("Added item to cart", user_id=user_id, product_id=product_id, quantity=quantity)
    return resolve_cart(db, cart)


def update_item(db: Database, user_id: str, item_id: str, quantity: int) -> dict:
    with user_locks(user_id):
        cart = find_cart(db, user_id)
        if cart is None:
            raise NotFound("Cart not found")
        item = _find_item(cart, item_id)
        if item is None:
            raise NotFound("Item not found")
        # 0 and negative quantities are clamped, not rejected
        item["quantity"] = max(1, quantity)
        save_items(db, cart, cart["items"])
    return resolve_cart(db, cart)


def remove_item(db: Database, user_id: str, item_id: str) -> dict:
    with user_locks(user_id):
        cart = find_cart(db, user_id)
        if cart is None:
            raise NotFound("Cart not found")
        if _find_item(cart, item_id) is None:
            raise NotFound("Item not found")
        items = [it for it in cart["items"] if str(it.get("_id")) != item_id]
        save_items(db, cart, items)
    return resolve_cart(db, cart)


def clear_cart(db: Database, user_id: str) -> dict:
    with user_locks(user_id):
        cart = find_cart(db, user_id)
        if cart is None:
            raise NotFound("Cart not found")
        save_items(db, cart, [])
    return resolve_cart(db, cart)


# Routes

@router.get("")
def get_cart(user_id: str = Depends(get_current_user_id), db: Database = Depends(get_db)):
    return fetch_cart(db, user_id)


@router.post("")
def add_to_cart(
    payload: AddToCart,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    return add_item(db, user_id, payload.product_id, payload.quantity)


@router.put("/{item_id}")
def update_cart_item(
    item_id: str,
    payload: UpdateCartItem,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    return update_item(db, user_id, item_id, payload.quantity)


@router.delete("/{item_id}")
def remove_cart_item(item_id: str, user_id: str = Depends(get_current_user_id), db: Database = Depends(get_db)):
    return remove_item(db, user_id, item_id)


@router.delete("")
def delete_cart(user_id: str = Depends(get_current_user_id), db: Database = Depends(get_db)):
    return clear_cart(db, user_id)
