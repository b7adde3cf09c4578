import logging
from typing import Any, Dict, List

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException

from auth import get_current_user
from database import db
from pricing import CouponError, evaluate_coupon, find_coupon, get_effective_price
from schemas import CartAddInput, CartUpdateInput, CouponApplyInput
from utils import serialize_doc, to_object_id, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])

PRODUCT_FIELDS = {
    "name": 1, "slug": 1, "images": 1, "price": 1, "sale_price": 1,
    "stock": 1, "made_to_order": 1, "age_pricing": 1, "weight": 1, "is_active": 1,
}


def get_or_create_cart(user_id: ObjectId) -> Dict[str, Any]:
    cart = db["cart"].find_one({"user": user_id})
    if not cart:
        now = utcnow()
        cart = {"user": user_id, "items": [], "coupon_code": None, "discount": 0, "created_at": now, "updated_at": now}
        db["cart"].insert_one(cart)
    return cart


def cart_summary(cart: Dict[str, Any]) -> Dict[str, Any]:
    items = cart.get("items", [])
    ids = [it["product"] for it in items]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}}, PRODUCT_FIELDS)} if ids else {}
    populated = []
    for it in items:
        populated.append({**it, "product": products.get(it["product"]) or it["product"]})
    subtotal = sum(it["price"] * it["quantity"] for it in items)
    discount = cart.get("discount", 0) or 0
    return serialize_doc({
        "_id": cart.get("_id"),
        "user": cart.get("user"),
        "items": populated,
        "coupon_code": cart.get("coupon_code"),
        "subtotal": subtotal,
        "item_count": sum(it["quantity"] for it in items),
        "discount": discount,
        "total": max(subtotal - discount, 0),
    })


def save_items(cart: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Persist new items and re-check any applied coupon against them."""
    update: Dict[str, Any] = {"items": items, "updated_at": utcnow()}
    if cart.get("coupon_code"):
        try:
            update["discount"] = evaluate_coupon(db, find_coupon(db, cart["coupon_code"]), cart["user"], items)
        except CouponError as e:
            logger.info("Dropping coupon %s from cart %s: %s", cart["coupon_code"], cart["_id"], e)
            update["coupon_code"] = None
            update["discount"] = 0
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": update})
    return db["cart"].find_one({"_id": cart["_id"]})


@router.get("")
def get_cart(current_user: dict = Depends(get_current_user)):
    return cart_summary(get_or_create_cart(ObjectId(current_user["id"])))


@router.post("/add")
def add_to_cart(payload: CartAddInput, current_user: dict = Depends(get_current_user)):
    pid = to_object_id(payload.product_id, "product")
    product = db["product"].find_one({"_id": pid, "is_active": True})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    price = get_effective_price(db, product, payload.age_range)
    color = payload.color.model_dump() if payload.color else None
    color_name = color["name"] if color else None

    cart = get_or_create_cart(ObjectId(current_user["id"]))
    items = cart.get("items", [])
    # merge if same product, age range and colour
    for it in items:
        if (
            it["product"] == pid
            and it.get("age_range") == payload.age_range
            and (it.get("color") or {}).get("name") == color_name
        ):
            it["quantity"] = int(it["quantity"]) + payload.quantity
            it["price"] = price
            break
    else:
        items.append({
            "_id": ObjectId(),
            "product": pid,
            "quantity": payload.quantity,
            "age_range": payload.age_range,
            "color": color,
            "price": price,
        })
    return cart_summary(save_items(cart, items))


@router.put("/update")
def update_cart_item(payload: CartUpdateInput, current_user: dict = Depends(get_current_user)):
    cart = db["cart"].find_one({"user": ObjectId(current_user["id"])})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    item_id = to_object_id(payload.item_id, "item")
    items = cart.get("items", [])
    item = next((it for it in items if it["_id"] == item_id), None)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found in cart")
    item["quantity"] = payload.quantity
    return cart_summary(save_items(cart, items))


@router.delete("/remove/{item_id}")
def remove_cart_item(item_id: str, current_user: dict = Depends(get_current_user)):
    cart = db["cart"].find_one({"user": ObjectId(current_user["id"])})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    oid = to_object_id(item_id, "item")
    items = [it for it in cart.get("items", []) if it["_id"] != oid]
    return cart_summary(save_items(cart, items))


@router.delete("/clear")
def clear_cart(current_user: dict = Depends(get_current_user)):
    cart = get_or_create_cart(ObjectId(current_user["id"]))
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$set": {"items": [], "coupon_code": None, "discount": 0, "updated_at": utcnow()}},
    )
    return cart_summary(db["cart"].find_one({"_id": cart["_id"]}))


@router.post("/coupon")
def apply_coupon(payload: CouponApplyInput, current_user: dict = Depends(get_current_user)):
    user_id = ObjectId(current_user["id"])
    cart = get_or_create_cart(user_id)
    coupon = find_coupon(db, payload.code)
    try:
        discount = evaluate_coupon(db, coupon, user_id, cart.get("items", []))
    except CouponError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$set": {"coupon_code": coupon["code"], "discount": discount, "updated_at": utcnow()}},
    )
    return cart_summary(db["cart"].find_one({"_id": cart["_id"]}))


@router.delete("/coupon")
def remove_coupon(current_user: dict = Depends(get_current_user)):
    cart = get_or_create_cart(ObjectId(current_user["id"]))
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$set": {"coupon_code": None, "discount": 0, "updated_at": utcnow()}},
    )
    return cart_summary(db["cart"].find_one({"_id": cart["_id"]}))
