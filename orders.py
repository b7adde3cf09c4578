import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pymongo.errors import DuplicateKeyError

import notifications
from auth import get_current_user
from config import PAYMENT_ACCOUNTS
from database import db
from pricing import CouponError, compute_order_totals, estimate_shipping, evaluate_coupon, find_coupon, split_payment
from schemas import Order as OrderSchema, OrderCreateInput, PaymentProofInput
from store_settings import get_settings
from utils import generate_reference, serialize_doc, to_object_id, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])

CANCELLABLE_STATUSES = ("pending", "confirmed")
TRACKING_FIELDS = {
    "order_number": 1, "status": 1, "status_history": 1, "items": 1, "total": 1,
    "shipping_address": 1, "tracking_number": 1, "tracking_url": 1,
    "shipping_carrier": 1, "estimated_delivery": 1, "created_at": 1,
}
PAYMENT_METHODS = {
    "easypaisa": ("easypaisa_enabled", "Easypaisa"),
    "jazzcash": ("jazzcash_enabled", "JazzCash"),
    "bank_transfer": ("bank_transfer_enabled", "Bank transfer"),
}


def history_entry(status: str, note: str, updated_by: Optional[Any] = None) -> Dict[str, Any]:
    entry = {"status": status, "note": note, "timestamp": utcnow()}
    if updated_by is not None:
        entry["updated_by"] = ObjectId(updated_by) if isinstance(updated_by, str) else updated_by
    return entry


def require_payment_method(method: str, settings: Optional[Dict[str, Any]] = None):
    settings = settings or get_settings(db)
    toggle, label = PAYMENT_METHODS[method]
    if not settings.get("payment", {}).get(toggle, False):
        raise HTTPException(status_code=400, detail=f"{label} payments are currently unavailable")


def insert_order(order: Dict[str, Any], attempts: int = 5) -> Dict[str, Any]:
    """Insert with a fresh ABD order number, retrying on the rare collision."""
    for _ in range(attempts):
        order["order_number"] = generate_reference("ABD")
        try:
            db["order"].insert_one(order)
            return order
        except DuplicateKeyError:
            order.pop("_id", None)
            logger.warning("Order number %s already taken, retrying", order["order_number"])
    raise HTTPException(status_code=500, detail="Could not allocate an order number")


def payment_instructions(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "advance_amount": order["advance_payment"]["amount"],
        "advance_method": "online",
        "final_amount": order["final_payment"]["amount"],
        "final_method": order["final_payment"].get("method", "cod"),
        "payment_method": order["payment_method"],
        "accounts": PAYMENT_ACCOUNTS,
    }


def _quantities(items: List[Dict[str, Any]]) -> Dict[ObjectId, int]:
    totals: Dict[ObjectId, int] = defaultdict(int)
    for item in items:
        totals[item["product"]] += item["quantity"]
    return totals


def reserve_stock(items: List[Dict[str, Any]]) -> bool:
    """Decrement stock for every product, or undo everything and return False."""
    made_to_order = {it["product"] for it in items if it.get("made_to_order")}
    applied: List[tuple] = []
    for product_id, qty in _quantities(items).items():
        if product_id in made_to_order:
            db["product"].update_one({"_id": product_id}, {"$inc": {"sold_count": qty}})
            applied.append((product_id, qty, False))
            continue
        res = db["product"].update_one(
            {"_id": product_id, "stock": {"$gte": qty}},
            {"$inc": {"stock": -qty, "sold_count": qty}},
        )
        if res.modified_count == 0:
            for pid, done_qty, stocked in applied:
                inc = {"sold_count": -done_qty}
                if stocked:
                    inc["stock"] = done_qty
                db["product"].update_one({"_id": pid}, {"$inc": inc})
            return False
        applied.append((product_id, qty, True))
    return True


def restore_stock(order: Dict[str, Any]) -> bool:
    """Return the order's units to stock. Only the first call for an order has any effect."""
    res = db["order"].update_one(
        {"_id": order["_id"], "stock_restored": {"$ne": True}},
        {"$set": {"stock_restored": True}},
    )
    if res.modified_count == 0:
        return False
    for item in order.get("items", []):
        if not item.get("product"):
            continue
        inc = {"sold_count": -item["quantity"]}
        if not item.get("made_to_order"):
            inc["stock"] = item["quantity"]
        db["product"].update_one({"_id": item["product"]}, {"$inc": inc})
    return True


def get_own_order(order_id: str, current_user: dict) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order"), "user": ObjectId(current_user["id"])})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


# Routes

@router.post("", status_code=201)
def create_order(payload: OrderCreateInput, current_user: dict = Depends(get_current_user)):
    user_id = ObjectId(current_user["id"])
    cart = db["cart"].find_one({"user": user_id})
    if not cart or not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty")
    settings = get_settings(db)
    require_payment_method(payload.payment_method, settings)

    cart_items = cart["items"]
    ids = list({it["product"] for it in cart_items})
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}})}

    order_items = []
    for it in cart_items:
        product = products.get(it["product"])
        if not product or not product.get("is_active"):
            name = (product or {}).get("name", {}).get("en", "Unknown")
            raise HTTPException(status_code=400, detail=f"Product {name} is no longer available")
        images = product.get("images") or []
        order_item = {
            "product": product["_id"],
            "name": product["name"]["en"],
            "image": images[0]["url"] if images else None,
            "price": it["price"],
            "quantity": it["quantity"],
            "age_range": it.get("age_range"),
            "made_to_order": bool(product.get("made_to_order")),
        }
        if it.get("color") and it["color"].get("name"):
            order_item["color"] = it["color"]
        order_items.append(order_item)

    for product_id, qty in _quantities(order_items).items():
        product = products[product_id]
        if not product.get("made_to_order") and product.get("stock", 0) < qty:
            raise HTTPException(status_code=409, detail=f"Insufficient stock for {product['name']['en']}")

    discount = 0
    coupon = None
    if cart.get("coupon_code"):
        coupon = find_coupon(db, cart["coupon_code"])
        try:
            discount = evaluate_coupon(db, coupon, user_id, cart_items)
        except CouponError as e:
            raise HTTPException(status_code=400, detail=str(e))

    subtotal = sum(it["price"] * it["quantity"] for it in order_items)
    shipping = estimate_shipping(settings, subtotal)
    totals = compute_order_totals(subtotal, shipping, discount)
    split = split_payment(subtotal, shipping, totals["discount"])

    screenshot = payload.screenshot.model_dump() if payload.screenshot else None
    now = utcnow()
    order_model = OrderSchema(
        order_number="pending",
        user=user_id,
        items=order_items,
        subtotal=totals["subtotal"],
        shipping_cost=totals["shipping_cost"],
        discount=totals["discount"],
        coupon_code=coupon["code"] if coupon else None,
        total=totals["total"],
        payment_method=payload.payment_method,
        payment_status="advance_submitted" if screenshot else "pending_advance",
        advance_payment={
            "amount": split["advance"],
            "status": "submitted" if screenshot else "pending",
            "screenshot": screenshot,
            "submitted_at": now if screenshot else None,
        },
        final_payment={"amount": split["final"], "method": "cod", "status": "cod_pending"},
        shipping_address=payload.shipping_address.model_dump(),
        notes=payload.notes,
        status_history=[history_entry("pending", "Order placed")],
    )
    order = insert_order(order_model.model_dump())

    if not reserve_stock(order_items):
        db["order"].delete_one({"_id": order["_id"]})
        logger.warning("Stock changed while placing order %s, rolled back", order["order_number"])
        raise HTTPException(status_code=409, detail="Insufficient stock for one or more items")

    if coupon:
        db["coupon"].update_one(
            {"_id": coupon["_id"]},
            {"$inc": {"usage_count": 1}, "$push": {"used_by": {"user": user_id, "order": order["_id"], "used_at": now}}},
        )
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$set": {"items": [], "coupon_code": None, "discount": 0, "updated_at": now}},
    )
    logger.info("Order %s placed by %s for Rs. %s", order["order_number"], current_user.get("email"), order["total"])

    notifications.notify_customer(
        order,
        f"Order confirmed - {order['order_number']}",
        notifications.order_confirmation_message(order),
        email=order["shipping_address"].get("email") or current_user.get("email"),
        email_toggle="order_confirmation_email",
    )
    notifications.notify_admin(f"New order {order['order_number']}", notifications.new_order_admin_message(order))

    return {"order": serialize_doc(order), "payment_details": payment_instructions(order)}


@router.get("/my-orders")
def my_orders(current_user: dict = Depends(get_current_user)):
    cursor = db["order"].find({"user": ObjectId(current_user["id"])}).sort("created_at", -1)
    return [serialize_doc(o) for o in cursor]


@router.get("/payment-accounts")
def payment_accounts():
    return PAYMENT_ACCOUNTS


@router.get("/track/{order_number}")
def track_order(order_number: str):
    order = db["order"].find_one({"order_number": order_number.upper()}, TRACKING_FIELDS)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return serialize_doc(order)


@router.get("/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(get_current_user)):
    return serialize_doc(get_own_order(order_id, current_user))


@router.put("/{order_id}/cancel")
def cancel_order(order_id: str, current_user: dict = Depends(get_current_user)):
    order = get_own_order(order_id, current_user)
    if order["status"] not in CANCELLABLE_STATUSES:
        raise HTTPException(status_code=400, detail="Order cannot be cancelled at this stage")
    res = db["order"].update_one(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {
            "$set": {"status": "cancelled", "payment_status": "rejected", "updated_at": utcnow()},
            "$push": {"status_history": history_entry("cancelled", "Cancelled by customer", current_user["id"])},
        },
    )
    if res.modified_count == 0:
        raise HTTPException(status_code=400, detail="Order cannot be cancelled at this stage")
    restore_stock(order)
    logger.info("Order %s cancelled by customer", order["order_number"])
    return serialize_doc(db["order"].find_one({"_id": order["_id"]}))


@router.post("/{order_id}/advance-payment")
def submit_advance_payment(order_id: str, payload: PaymentProofInput, current_user: dict = Depends(get_current_user)):
    order = get_own_order(order_id, current_user)
    if order["advance_payment"].get("status") not in ("pending", "rejected"):
        raise HTTPException(status_code=400, detail="Advance payment already submitted")
    now = utcnow()
    advance = {
        **order["advance_payment"],
        "status": "submitted",
        "screenshot": payload.screenshot.model_dump(),
        "submitted_at": now,
        "rejection_reason": None,
    }
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"advance_payment": advance, "payment_status": "advance_submitted", "updated_at": now}},
    )
    logger.info("Advance payment proof submitted for order %s", order["order_number"])
    notifications.notify_admin(
        f"Advance payment submitted - {order['order_number']}",
        f"Order {order['order_number']} has a new advance payment proof to review.",
    )
    return serialize_doc(db["order"].find_one({"_id": order["_id"]}))


@router.post("/{order_id}/final-payment")
def submit_final_payment(order_id: str, payload: PaymentProofInput, current_user: dict = Depends(get_current_user)):
    order = get_own_order(order_id, current_user)
    if order["advance_payment"].get("status") != "approved":
        raise HTTPException(status_code=400, detail="Advance payment must be approved first")
    if order["final_payment"].get("status") not in ("pending", "rejected", "cod_pending"):
        raise HTTPException(status_code=400, detail="Final payment already submitted")
    now = utcnow()
    final = {
        **order["final_payment"],
        "method": "online",
        "status": "submitted",
        "screenshot": payload.screenshot.model_dump(),
        "submitted_at": now,
        "rejection_reason": None,
    }
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"final_payment": final, "payment_status": "final_submitted", "updated_at": now}},
    )
    logger.info("Final payment proof submitted for order %s", order["order_number"])
    notifications.notify_admin(
        f"Final payment submitted - {order['order_number']}",
        f"Order {order['order_number']} has a final payment proof to review.",
    )
    return serialize_doc(db["order"].find_one({"_id": order["_id"]}))
