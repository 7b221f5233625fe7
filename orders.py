from typing import List, Optional, Tuple

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import get_current_user_id
from cart import find_cart, save_items, user_locks, with_products
from config import get_settings
from database import create_document, get_db, get_documents, serialize, to_object_id
from errors import Forbidden, Internal, InvalidState, NotFound
from schemas import Order, OrderItem, ShippingAddress

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])

FREE_SHIPPING_THRESHOLD = 150
FLAT_SHIPPING_FEE = 15.0


class CreateOrderRequest(BaseModel):
    shipping_address: ShippingAddress
    payment_intent_id: Optional[str] = None


def shipping_fee(subtotal: float) -> float:
    """Free shipping strictly above the threshold, flat fee otherwise."""
    return 0.0 if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING_FEE


def build_order(db: Database, user_id: str, shipping_address: ShippingAddress, **fields) -> Tuple[dict, Order]:
    """Price the caller's cart and snapshot it into an unsaved Order.

    Returns the cart document alongside the order so the caller can clear it
    once the order is stored. Extra keyword fields are set on the Order.
    """
    cart = find_cart(db, user_id)
    if cart is None or not cart.get("items"):
        raise InvalidState("Cart is empty")

    lines: List[OrderItem] = []
    for it in with_products(db, cart["items"]):
        product = it["product"]
        if product is None:
            logger.warning("Dropping cart line for missing product", user_id=user_id, product_id=it["product_id"])
            continue
        lines.append(
            OrderItem(
                product_id=it["product_id"],
                name=product.get("name", ""),
                price=float(product.get("price", 0)),
                quantity=int(it["quantity"]),
                image=product.get("image"),
            )
        )
    if not lines:
        raise InvalidState("Cart is empty")

    subtotal = round(sum(line.price * line.quantity for line in lines), 2)
    shipping = shipping_fee(subtotal)
    fields.setdefault("currency", get_settings().default_currency)
    order = Order(
        user_id=user_id,
        items=lines,
        shipping_address=shipping_address,
        subtotal=subtotal,
        shipping=shipping,
        total=round(subtotal + shipping, 2),
        **fields,
    )
    return cart, order


def commit_order(db: Database, cart: dict, order: Order) -> str:
    """Store the order, then empty the cart it came from.

    If the cart cannot be cleared the stored order is removed again so the
    customer is not left with both a live cart and an order for it.
    """
    order_id = create_document(db, "order", order)
    try:
        save_items(db, cart, [])
    except PyMongoError:
        logger.exception("Clearing cart failed, removing order", user_id=order.user_id, order_id=order_id)
        db["order"].delete_one({"_id": to_object_id(order_id)})
        raise Internal("Order could not be completed")
    return order_id


def resolve_order(db: Database, order: dict) -> dict:
    return serialize({**order, "items": with_products(db, order.get("items", []))})


def load_order(db: Database, user_id: str, order_id: str) -> dict:
    """Fetch an order owned by the caller. Existence is checked before ownership."""
    oid = to_object_id(order_id)
    order = db["order"].find_one({"_id": oid}) if oid is not None else None
    if order is None:
        raise NotFound("Order not found")
    if order.get("user_id") != user_id:
        raise Forbidden("Not authorized")
    return order


# Operations

def place_order(db: Database, user_id: str, shipping_address: ShippingAddress, payment_intent_id: Optional[str] = None) -> dict:
    with user_locks(user_id):
        cart, order = build_order(db, user_id, shipping_address, payment_intent_id=payment_intent_id)
        order_id = commit_order(db, cart, order)
    logger.info("Order placed", user_id=user_id, order_id=order_id, total=order.total, items=len(order.items))
    return resolve_order(db, db["order"].find_one({"_id": to_object_id(order_id)}))


def list_orders(db: Database, user_id: str) -> List[dict]:
    docs = get_documents(db, "order", {"user_id": user_id}, sort=[("created_at", -1), ("_id", -1)])
    return [resolve_order(db, d) for d in docs]


def fetch_order(db: Database, user_id: str, order_id: str) -> dict:
    return resolve_order(db, load_order(db, user_id, order_id))


# Routes

@router.get("")
def get_orders(user_id: str = Depends(get_current_user_id), db: Database = Depends(get_db)):
    return list_orders(db, user_id)


@router.get("/{order_id}")
def get_order(order_id: str, user_id: str = Depends(get_current_user_id), db: Database = Depends(get_db)):
    return fetch_order(db, user_id, order_id)


@router.post("", status_code=201)
def create_order(
    req: CreateOrderRequest,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
):
    return place_order(db, user_id, req.shipping_address, req.payment_intent_id)
