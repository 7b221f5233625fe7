import time
from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import get_current_user_id
from cart import user_locks
from config import get_settings
from database import get_db, utcnow
from errors import Internal, InvalidArgument, InvalidState, Unavailable, VerificationFailure
from gateway import PaymentGateway, get_gateway
from orders import build_order, commit_order, load_order
from schemas import ShippingAddress

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

# client amount may differ from the server total by rounding only
AMOUNT_TOLERANCE = 0.005

NOT_CONFIGURED = (
    "Payment service is not configured. "
    "Please set STRIPE_SECRET_KEY and PAYMENT_SIGNING_SECRET in environment variables."
)


class CreatePaymentOrderRequest(BaseModel):
    amount: Optional[float] = None
    currency: Optional[str] = None
    shipping_address: ShippingAddress


class VerifyPaymentRequest(BaseModel):
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None


def _receipt(user_id: str) -> str:
    # short enough for gateway receipt limits (40 chars)
    return f"rcpt_{user_id[-12:]}_{int(time.time() * 1000)}"


def _verified(order: dict) -> dict:
    return {"success": True, "message": "Payment verified successfully", "order_id": str(order["_id"])}


def _already_paid(order: dict, payment_id: str) -> dict:
    if order.get("gateway_payment_id") != payment_id:
        raise InvalidState("Order is already paid")
    return _verified(order)


# Operations

def initiate_payment(
    db: Database,
    gateway: Optional[PaymentGateway],
    user_id: str,
    amount: Optional[float],
    currency: Optional[str],
    shipping_address: ShippingAddress,
) -> dict:
    """Open a gateway order for the caller's cart and store a pending Order.

    Line items and the total always come from the cart; the client amount is
    only checked against it.
    """
    if gateway is None:
        raise Unavailable(NOT_CONFIGURED)
    if amount is None or amount < 1:
        raise InvalidArgument("Invalid amount")
    currency = (currency or get_settings().default_currency).upper()

    with user_locks(user_id):
        cart, order = build_order(db, user_id, shipping_address, currency=currency, payment_method=gateway.name)
        if abs(order.total - amount) > AMOUNT_TOLERANCE:
            raise InvalidArgument("Amount does not match cart total")

        remote = gateway.create_order(amount=int(round(order.total * 100)), currency=currency, receipt=_receipt(user_id))
        order = order.model_copy(update={"gateway_order_id": remote.id})
        try:
            order_id = commit_order(db, cart, order)
        except (PyMongoError, Internal):
            logger.error("Order not stored for open gateway order", user_id=user_id, gateway_order_id=remote.id)
            raise

    logger.info("Payment initiated", user_id=user_id, order_id=order_id, gateway_order_id=remote.id, total=order.total)
    return {"order_id": order_id, "gateway_order_id": remote.id, "amount": order.total, "currency": currency}


def verify_payment(
    db: Database,
    gateway: Optional[PaymentGateway],
    user_id: str,
    order_id: Optional[str],
    payment_id: Optional[str],
    signature: Optional[str],
) -> dict:
    if not order_id or not payment_id or not signature:
        raise InvalidArgument("Missing payment details")
    if gateway is None:
        raise Unavailable(NOT_CONFIGURED)

    order = load_order(db, user_id, order_id)
    gateway_order_id = order.get("gateway_order_id")
    if not gateway_order_id or not gateway.verify_payment_signature(gateway_order_id, payment_id, signature):
        logger.warning("Payment verification failed", user_id=user_id, order_id=order_id)
        raise VerificationFailure()

    if order.get("payment_status") == "completed":
        return _already_paid(order, payment_id)

    now = utcnow()
    result = db["order"].update_one(
        {"_id": order["_id"], "payment_status": {"$ne": "completed"}},
        {
            "$set": {
                "payment_status": "completed",
                "gateway_payment_id": payment_id,
                "is_paid": True,
                "paid_at": now,
                "updated_at": now,
            }
        },
    )
    if result.modified_count == 0:
        # another request completed it first
        return _already_paid(db["order"].find_one({"_id": order["_id"]}), payment_id)

    logger.info("Payment verified", user_id=user_id, order_id=order_id, gateway_order_id=gateway_order_id)
    return _verified(order)


# Routes

@router.post("/create-order")
def create_payment_order(
    req: CreatePaymentOrderRequest,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
):
    return initiate_payment(db, gateway, user_id, req.amount, req.currency, req.shipping_address)


@router.post("/verify-payment")
def verify_payment_route(
    req: VerifyPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
):
    return verify_payment(db, gateway, user_id, req.order_id, req.payment_id, req.signature)
