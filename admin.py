"""
Admin API

Everything under /api/admin requires a user with the admin role. Mutations are
logged with the acting admin's email.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, HTTPException
from pymongo.errors import DuplicateKeyError

import notifications
from auth import require_admin
from config import LOW_STOCK_THRESHOLD
from custom_designs import message_entry
from database import db
from orders import history_entry, restore_stock
from pricing import clear_sales_cache, shipping_cost_for_weight, split_payment
from reviews import recompute_product_rating
from schemas import (
    Category as CategorySchema,
    CategoryInput,
    CategoryUpdate,
    Coupon as CouponSchema,
    CouponInput,
    CouponUpdate,
    DesignAdminUpdate,
    DesignMessageInput,
    OrderStatusUpdate,
    PaymentRejectInput,
    Product as ProductSchema,
    ProductInput,
    ProductUpdate,
    ReviewModerationInput,
    Sale as SaleSchema,
    SaleInput,
    SaleUpdate,
    ShippingWeightInput,
)
from store_settings import get_settings, update_settings
from utils import escape_search, naive_utc, paginate, pagination_info, serialize_doc, to_object_id, unique_slug, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])

PAID_STATUSES = ["fully_paid", "paid"]
PROMOTION_BATCH_SIZE = 10
STATUS_EMAIL_TOGGLES = {"shipped": "order_shipped_email", "delivered": "order_delivered_email"}


def _regex(text: str) -> Dict[str, str]:
    return {"$regex": escape_search(text), "$options": "i"}


def _object_ids(values: Optional[List[str]], label: str) -> List[ObjectId]:
    return [to_object_id(v, label) for v in values or []]


def _find_or_404(collection: str, item_id: str, label: str) -> Dict[str, Any]:
    doc = db[collection].find_one({"_id": to_object_id(item_id, label)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label.capitalize()} not found")
    return doc


def _check_dates(start: Optional[datetime], end: Optional[datetime]):
    if start and end and end <= start:
        raise HTTPException(status_code=400, detail="End date must be after start date")


# Dashboard

@router.get("/dashboard")
def dashboard():
    now = utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = today.replace(day=1)
    week_start = today - timedelta(days=6)

    paid_orders = list(db["order"].find({"payment_status": {"$in": PAID_STATUSES}}, {"total": 1, "created_at": 1}))
    chart: Dict[str, Dict[str, Any]] = {}
    for offset in range(7):
        day = (week_start + timedelta(days=offset)).strftime("%Y-%m-%d")
        chart[day] = {"date": day, "revenue": 0, "orders": 0}
    for o in paid_orders:
        day = o["created_at"].strftime("%Y-%m-%d")
        if day in chart:
            chart[day]["revenue"] += o["total"]
            chart[day]["orders"] += 1

    recent = list(db["order"].find().sort("created_at", -1).limit(10))
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": [o["user"] for o in recent]}}, {"name": 1, "email": 1})}

    return serialize_doc({
        "orders": {
            "total": db["order"].count_documents({}),
            "today": db["order"].count_documents({"created_at": {"$gte": today}}),
            "pending": db["order"].count_documents({"status": "pending"}),
        },
        "revenue": {
            "total": sum(o["total"] for o in paid_orders),
            "monthly": sum(o["total"] for o in paid_orders if o["created_at"] >= month_start),
        },
        "products": {
            "total": db["product"].count_documents({}),
            "low_stock": db["product"].count_documents({"stock": {"$gt": 0, "$lt": LOW_STOCK_THRESHOLD}}),
            "out_of_stock": db["product"].count_documents({"stock": 0}),
        },
        "customers": {
            "total": db["user"].count_documents({"role": "customer"}),
            "new": db["user"].count_documents({"role": "customer", "created_at": {"$gte": month_start}}),
        },
        "custom_designs": {"pending": db["customdesign"].count_documents({"status": "pending"})},
        "recent_orders": [{**o, "user": users.get(o["user"], o["user"])} for o in recent],
        "sales_chart": list(chart.values()),
    })


# Products

def _category_id(value: Optional[str]) -> Optional[ObjectId]:
    if not value:
        return None
    category_id = to_object_id(value, "category")
    if not db["category"].find_one({"_id": category_id}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Category does not exist")
    return category_id


def _bump_category(category_id: Optional[ObjectId], amount: int):
    if category_id:
        db["category"].update_one({"_id": category_id}, {"$inc": {"product_count": amount}})


@router.get("/products")
def list_products(search: Optional[str] = None, category: Optional[str] = None, status: Optional[str] = None,
                  page: int = 1, limit: Optional[int] = None):
    page, limit, skip = paginate(page, limit, default_limit=20)
    query: Dict[str, Any] = {}
    if search:
        query["$or"] = [{"name.en": _regex(search)}, {"name.ur": _regex(search)}, {"sku": _regex(search)}]
    if category:
        query["category"] = to_object_id(category, "category")
    if status == "active":
        query["is_active"] = True
    elif status == "inactive":
        query["is_active"] = False
    elif status == "low_stock":
        query["stock"] = {"$gt": 0, "$lt": LOW_STOCK_THRESHOLD}
    elif status == "out_of_stock":
        query["stock"] = 0
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort("created_at", -1).skip(skip).limit(limit)
    return {"items": [serialize_doc(p) for p in cursor], **pagination_info(total, page, limit)}


@router.get("/products/{product_id}")
def get_product(product_id: str):
    return serialize_doc(_find_or_404("product", product_id, "product"))


@router.post("/products", status_code=201)
def create_product(data: ProductInput, admin: dict = Depends(require_admin)):
    values = data.model_dump()
    values["category"] = _category_id(values.get("category"))
    values["slug"] = unique_slug(db["product"], data.name.en)
    product = ProductSchema(**values).model_dump()
    if not (product.get("sku") or "").strip():
        product.pop("sku", None)
    try:
        db["product"].insert_one(product)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="A product with this SKU already exists")
    _bump_category(product["category"], 1)
    logger.info("Product %s created by %s", product["slug"], admin["email"])
    return serialize_doc(product)


@router.put("/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, admin: dict = Depends(require_admin)):
    product = _find_or_404("product", product_id, "product")
    update = data.model_dump(exclude_unset=True)
    if not update:
        raise HTTPException(status_code=400, detail="No fields to update")
    unset: Dict[str, str] = {}
    if "sku" in update and not (update["sku"] or "").strip():
        update.pop("sku")
        unset["sku"] = ""
    if "category" in update:
        update["category"] = _category_id(update["category"])
    if update.get("name") and update["name"]["en"] != product["name"]["en"]:
        update["slug"] = unique_slug(db["product"], update["name"]["en"], exclude_id=product["_id"])
    update["updated_at"] = utcnow()

    changes: Dict[str, Any] = {"$set": update}
    if unset:
        changes["$unset"] = unset
    try:
        db["product"].update_one({"_id": product["_id"]}, changes)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="A product with this SKU already exists")
    if "category" in update and update["category"] != product.get("category"):
        _bump_category(product.get("category"), -1)
        _bump_category(update["category"], 1)
    logger.info("Product %s updated by %s", product["_id"], admin["email"])
    return serialize_doc(db["product"].find_one({"_id": product["_id"]}))


@router.delete("/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(require_admin)):
    product = _find_or_404("product", product_id, "product")
    db["product"].delete_one({"_id": product["_id"]})
    _bump_category(product.get("category"), -1)
    logger.info("Product %s deleted by %s", product["_id"], admin["email"])
    return {"ok": True}


# Categories

@router.get("/categories")
def list_categories():
    return [serialize_doc(c) for c in db["category"].find().sort("sort_order", 1)]


@router.post("/categories", status_code=201)
def create_category(data: CategoryInput, admin: dict = Depends(require_admin)):
    values = data.model_dump()
    values["parent"] = _category_id(values.get("parent"))
    values["slug"] = unique_slug(db["category"], data.name.en)
    category = CategorySchema(**values).model_dump()
    db["category"].insert_one(category)
    logger.info("Category %s created by %s", category["slug"], admin["email"])
    return serialize_doc(category)


@router.put("/categories/{category_id}")
def update_category(category_id: str, data: CategoryUpdate, admin: dict = Depends(require_admin)):
    category = _find_or_404("category", category_id, "category")
    update = data.model_dump(exclude_unset=True)
    if not update:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "parent" in update:
        update["parent"] = _category_id(update["parent"])
        if update["parent"] == category["_id"]:
            raise HTTPException(status_code=400, detail="A category cannot be its own parent")
    if update.get("name") and update["name"]["en"] != category["name"]["en"]:
        update["slug"] = unique_slug(db["category"], update["name"]["en"], exclude_id=category["_id"])
    update["updated_at"] = utcnow()
    db["category"].update_one({"_id": category["_id"]}, {"$set": update})
    logger.info("Category %s updated by %s", category["_id"], admin["email"])
    return serialize_doc(db["category"].find_one({"_id": category["_id"]}))


@router.delete("/categories/{category_id}")
def delete_category(category_id: str, admin: dict = Depends(require_admin)):
    category = _find_or_404("category", category_id, "category")
    if db["product"].find_one({"category": category["_id"]}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Cannot delete a category that has products")
    if db["category"].find_one({"parent": category["_id"]}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Cannot delete a category that has subcategories")
    db["category"].delete_one({"_id": category["_id"]})
    logger.info("Category %s deleted by %s", category["slug"], admin["email"])
    return {"ok": True}


# Orders

@router.get("/orders")
def list_orders(status: Optional[str] = None, payment_status: Optional[str] = None, search: Optional[str] = None,
                start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                page: int = 1, limit: Optional[int] = None):
    page, limit, skip = paginate(page, limit, default_limit=20)
    query: Dict[str, Any] = {}
    conditions: List[Dict[str, Any]] = []
    if status:
        query["status"] = status
    if payment_status == "needs_review":
        conditions.append({"$or": [{"advance_payment.status": "submitted"}, {"final_payment.status": "submitted"}]})
    elif payment_status:
        query["payment_status"] = payment_status
    if search:
        conditions.append({"$or": [
            {"order_number": _regex(search)},
            {"shipping_address.full_name": _regex(search)},
            {"shipping_address.phone": _regex(search)},
        ]})
    created: Dict[str, Any] = {}
    if start_date:
        created["$gte"] = naive_utc(start_date)
    if end_date:
        created["$lte"] = naive_utc(end_date)
    if created:
        query["created_at"] = created
    if conditions:
        query["$and"] = conditions

    total = db["order"].count_documents(query)
    orders = list(db["order"].find(query).sort("created_at", -1).skip(skip).limit(limit))
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": [o["user"] for o in orders]}}, {"name": 1, "email": 1})}
    items = [serialize_doc({**o, "user": users.get(o["user"], o["user"])}) for o in orders]
    return {"items": items, **pagination_info(total, page, limit)}


@router.get("/orders/{order_id}")
def get_order(order_id: str):
    order = _find_or_404("order", order_id, "order")
    order["user"] = db["user"].find_one({"_id": order["user"]}, {"name": 1, "email": 1, "phone": 1}) or order["user"]
    if order.get("custom_design"):
        order["custom_design"] = db["customdesign"].find_one(
            {"_id": order["custom_design"]}, {"uploaded_images": 1, "design_number": 1, "description": 1}
        ) or order["custom_design"]
    return serialize_doc(order)


def _save_order(order: Dict[str, Any], update: Dict[str, Any], history: Optional[Dict[str, Any]] = None):
    update["updated_at"] = utcnow()
    changes: Dict[str, Any] = {"$set": update}
    if history:
        changes["$push"] = {"status_history": history}
    db["order"].update_one({"_id": order["_id"]}, changes)
    return db["order"].find_one({"_id": order["_id"]})


@router.put("/orders/{order_id}/status")
def update_order_status(order_id: str, data: OrderStatusUpdate, admin: dict = Depends(require_admin)):
    order = _find_or_404("order", order_id, "order")
    previous = order["status"]
    if previous == "cancelled" and data.status != "cancelled":
        raise HTTPException(status_code=400, detail="Cancelled orders cannot be reopened")
    update: Dict[str, Any] = {"status": data.status}
    for field in ("tracking_number", "tracking_url", "shipping_carrier", "admin_notes"):
        value = getattr(data, field)
        if value:
            update[field] = value
    if data.status == "delivered":
        update["delivered_at"] = utcnow()
        final = order.get("final_payment", {})
        if final.get("method") == "cod" and final.get("status") == "cod_pending":
            update["final_payment"] = {**final, "status": "cod_collected", "collected_at": utcnow()}
            update["payment_status"] = "fully_paid"
    note = data.admin_notes or f"Status changed from {previous} to {data.status}"
    order = _save_order(order, update, history_entry(data.status, note, admin["id"]))
    if data.status == "cancelled":
        restore_stock(order)
    logger.info("Order %s status %s -> %s by %s", order["order_number"], previous, data.status, admin["email"])
    notifications.notify_customer(
        order, f"Order {order['order_number']} update", notifications.status_update_message(order),
        email_toggle=STATUS_EMAIL_TOGGLES.get(data.status),
    )
    return serialize_doc(order)


@router.put("/orders/{order_id}/approve-advance")
def approve_advance(order_id: str, admin: dict = Depends(require_admin)):
    order = _find_or_404("order", order_id, "order")
    if order["advance_payment"].get("status") != "submitted":
        raise HTTPException(status_code=400, detail="No pending advance payment to approve")
    advance = {**order["advance_payment"], "status": "approved", "reviewed_at": utcnow(), "reviewed_by": ObjectId(admin["id"])}
    order = _save_order(
        order,
        {"advance_payment": advance, "payment_status": "advance_approved", "status": "confirmed"},
        history_entry("confirmed", "Advance payment approved - Order confirmed", admin["id"]),
    )
    logger.info("Advance payment for %s approved by %s", order["order_number"], admin["email"])
    notifications.notify_customer(
        order, f"Payment approved - {order['order_number']}",
        notifications.payment_status_message(order, "advance", approved=True),
    )
    return serialize_doc(order)


@router.put("/orders/{order_id}/reject-advance")
def reject_advance(order_id: str, data: Optional[PaymentRejectInput] = None,
                   admin: dict = Depends(require_admin)):
    order = _find_or_404("order", order_id, "order")
    if order["advance_payment"].get("status") != "submitted":
        raise HTTPException(status_code=400, detail="No pending advance payment to reject")
    reason = (data.reason if data else None) or "Payment could not be verified"
    advance = {
        **order["advance_payment"], "status": "rejected", "rejection_reason": reason,
        "reviewed_at": utcnow(), "reviewed_by": ObjectId(admin["id"]),
    }
    order = _save_order(order, {"advance_payment": advance, "payment_status": "pending_advance"})
    logger.info("Advance payment for %s rejected by %s: %s", order["order_number"], admin["email"], reason)
    notifications.notify_customer(
        order, f"Payment not verified - {order['order_number']}",
        notifications.payment_status_message(order, "advance", approved=False, reason=reason),
    )
    return serialize_doc(order)


@router.put("/orders/{order_id}/approve-final")
def approve_final(order_id: str, admin: dict = Depends(require_admin)):
    order = _find_or_404("order", order_id, "order")
    if order["final_payment"].get("status") != "submitted":
        raise HTTPException(status_code=400, detail="No pending final payment to approve")
    final = {**order["final_payment"], "status": "approved", "reviewed_at": utcnow(), "reviewed_by": ObjectId(admin["id"])}
    order = _save_order(order, {"final_payment": final, "payment_status": "fully_paid"})
    logger.info("Final payment for %s approved by %s", order["order_number"], admin["email"])
    notifications.notify_customer(
        order, f"Payment approved - {order['order_number']}",
        notifications.payment_status_message(order, "final", approved=True),
    )
    return serialize_doc(order)


@router.put("/orders/{order_id}/reject-final")
def reject_final(order_id: str, data: Optional[PaymentRejectInput] = None,
                 admin: dict = Depends(require_admin)):
    order = _find_or_404("order", order_id, "order")
    if order["final_payment"].get("status") != "submitted":
        raise HTTPException(status_code=400, detail="No pending final payment to reject")
    reason = (data.reason if data else None) or "Payment could not be verified"
    final = {
        **order["final_payment"], "status": "rejected", "rejection_reason": reason,
        "reviewed_at": utcnow(), "reviewed_by": ObjectId(admin["id"]),
    }
    order = _save_order(order, {"final_payment": final, "payment_status": "pending_final"})
    logger.info("Final payment for %s rejected by %s: %s", order["order_number"], admin["email"], reason)
    notifications.notify_customer(
        order, f"Payment not verified - {order['order_number']}",
        notifications.payment_status_message(order, "final", approved=False, reason=reason),
    )
    return serialize_doc(order)


def _apply_shipping(order: Dict[str, Any], weight_in_kg: Optional[float], admin: dict, processing: bool):
    if order["advance_payment"].get("status") != "approved":
        raise HTTPException(status_code=400, detail="Advance payment must be approved first")
    weight = weight_in_kg or 1
    shipping = shipping_cost_for_weight(weight)
    discount = order.get("discount", 0)
    split = split_payment(order["subtotal"], shipping, discount, advance=order["advance_payment"]["amount"])
    final_amount = split["final"]
    update = {
        "order_weight": weight * 1000,
        "shipping_cost": shipping,
        "final_payment": {**order["final_payment"], "amount": final_amount, "method": "cod", "status": "cod_pending"},
        "total": split["advance"] + final_amount,
        "payment_status": "pending_final",
    }
    status = order["status"]
    if processing:
        update["status"] = status = "processing"
    note = f"Weight: {weight:g}kg, Shipping: Rs {shipping}, COD Amount: Rs {final_amount:g}"
    order = _save_order(order, update, history_entry(status, note, admin["id"]))
    logger.info("Shipping for %s set to Rs %s by %s", order["order_number"], shipping, admin["email"])
    notifications.notify_customer(
        order, f"Shipping details - {order['order_number']}", notifications.shipping_set_message(order)
    )
    return serialize_doc(order)


@router.put("/orders/{order_id}/set-shipping")
def set_shipping(order_id: str, data: Optional[ShippingWeightInput] = None,
                 admin: dict = Depends(require_admin)):
    return _apply_shipping(_find_or_404("order", order_id, "order"), data.weight_in_kg if data else None, admin, processing=False)


@router.put("/orders/{order_id}/request-final-payment")
def request_final_payment(order_id: str, data: Optional[ShippingWeightInput] = None,
                          admin: dict = Depends(require_admin)):
    return _apply_shipping(_find_or_404("order", order_id, "order"), data.weight_in_kg if data else None, admin, processing=True)


@router.put("/orders/{order_id}/cod-collected")
def cod_collected(order_id: str, admin: dict = Depends(require_admin)):
    order = _find_or_404("order", order_id, "order")
    if order["final_payment"].get("method") != "cod":
        raise HTTPException(status_code=400, detail="This order is not cash on delivery")
    final = {**order["final_payment"], "status": "cod_collected", "collected_at": utcnow()}
    order = _save_order(
        order,
        {"final_payment": final, "payment_status": "fully_paid"},
        history_entry(order["status"], "COD amount collected", admin["id"]),
    )
    logger.info("COD for %s collected, recorded by %s", order["order_number"], admin["email"])
    return serialize_doc(order)


# Custom designs

@router.get("/custom-designs")
def list_designs(status: Optional[str] = None, page: int = 1, limit: Optional[int] = None):
    page, limit, skip = paginate(page, limit, default_limit=20)
    query = {"status": status} if status else {}
    total = db["customdesign"].count_documents(query)
    designs = list(db["customdesign"].find(query).sort("created_at", -1).skip(skip).limit(limit))
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": [d["user"] for d in designs]}}, {"name": 1, "email": 1, "phone": 1})}
    items = [serialize_doc({**d, "user": users.get(d["user"], d["user"])}) for d in designs]
    return {"items": items, **pagination_info(total, page, limit)}


@router.get("/custom-designs/{design_id}")
def get_design(design_id: str):
    design = _find_or_404("customdesign", design_id, "design")
    design["user"] = db["user"].find_one({"_id": design["user"]}, {"name": 1, "email": 1, "phone": 1}) or design["user"]
    return serialize_doc(design)


@router.put("/custom-designs/{design_id}")
def update_design(design_id: str, data: DesignAdminUpdate, admin: dict = Depends(require_admin)):
    design = _find_or_404("customdesign", design_id, "design")
    update = data.model_dump(exclude_unset=True, exclude_none=True)
    if not update:
        raise HTTPException(status_code=400, detail="No fields to update")
    quoted = "quoted_price" in update
    if quoted and "status" not in update:
        update["status"] = "quoted"
    update["updated_at"] = utcnow()
    db["customdesign"].update_one({"_id": design["_id"]}, {"$set": update})
    design = db["customdesign"].find_one({"_id": design["_id"]})
    logger.info("Custom design %s updated by %s", design["design_number"], admin["email"])

    if quoted:
        user = db["user"].find_one({"_id": design["user"]}, {"email": 1}) or {}
        message = notifications.design_quote_message(design)
        notifications.send_email(user.get("email"), f"Your custom design quote - {design['design_number']}", message)
        notifications.send_whatsapp(design.get("customer_contact", {}).get("whatsapp"), message)
    return serialize_doc(design)


@router.post("/custom-designs/{design_id}/message")
def add_design_message(design_id: str, data: DesignMessageInput, admin: dict = Depends(require_admin)):
    design = _find_or_404("customdesign", design_id, "design")
    entry = message_entry("admin", data.message, [a.model_dump() for a in data.attachments])
    db["customdesign"].update_one(
        {"_id": design["_id"]},
        {"$push": {"conversation": entry}, "$set": {"updated_at": utcnow()}},
    )
    notifications.send_whatsapp(
        design.get("customer_contact", {}).get("whatsapp"),
        f"New message about your design {design['design_number']}:\n{data.message}",
    )
    return serialize_doc(db["customdesign"].find_one({"_id": design["_id"]}))


# Customers

@router.get("/customers")
def list_customers(search: Optional[str] = None, page: int = 1, limit: Optional[int] = None):
    page, limit, skip = paginate(page, limit, default_limit=20)
    query: Dict[str, Any] = {"role": "customer"}
    if search:
        query["$or"] = [{"name": _regex(search)}, {"email": _regex(search)}, {"phone": _regex(search)}]
    total = db["user"].count_documents(query)
    customers = list(
        db["user"].find(query, {"password_hash": 0, "reset_password_token": 0, "reset_password_expire": 0})
        .sort("created_at", -1).skip(skip).limit(limit)
    )
    stats: Dict[ObjectId, Dict[str, float]] = {c["_id"]: {"order_count": 0, "total_spent": 0} for c in customers}
    for o in db["order"].find({"user": {"$in": list(stats)}}, {"user": 1, "total": 1, "payment_status": 1}):
        stats[o["user"]]["order_count"] += 1
        if o.get("payment_status") in PAID_STATUSES:
            stats[o["user"]]["total_spent"] += o["total"]
    items = [serialize_doc({**c, **stats[c["_id"]]}) for c in customers]
    return {"items": items, **pagination_info(total, page, limit)}


@router.get("/customers/{customer_id}")
def get_customer(customer_id: str):
    customer = db["user"].find_one(
        {"_id": to_object_id(customer_id, "customer")},
        {"password_hash": 0, "reset_password_token": 0, "reset_password_expire": 0},
    )
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    orders = list(db["order"].find({"user": customer["_id"]}).sort("created_at", -1))
    return {"customer": serialize_doc(customer), "orders": [serialize_doc(o) for o in orders]}


# Sales

def _sale_values(values: Dict[str, Any]) -> Dict[str, Any]:
    for field, label in (("categories", "category"), ("products", "product"), ("excluded_products", "product")):
        if field in values:
            values[field] = _object_ids(values[field], label)
    return values


def _send_promotion(sale: Dict[str, Any]) -> Dict[str, int]:
    emails = [u["email"] for u in db["user"].find({}, {"email": 1}) if u.get("email")]
    name = (sale.get("name") or {}).get("en", "Sale")
    message = notifications.sale_promotion_message(sale)
    sent = failed = 0
    for start in range(0, len(emails), PROMOTION_BATCH_SIZE):
        for email in emails[start:start + PROMOTION_BATCH_SIZE]:
            if notifications.send_email(email, f"{name} is on now at Angel Baby Dresses", message).get("success"):
                sent += 1
            else:
                failed += 1
        logger.info("Promotion %s: batch %d sent", sale["_id"], start // PROMOTION_BATCH_SIZE + 1)
    return {"sent": sent, "failed": failed, "total": len(emails)}


@router.get("/sales")
def list_sales():
    return [serialize_doc(s) for s in db["sale"].find().sort([("priority", -1), ("created_at", -1)])]


@router.get("/sales/{sale_id}")
def get_sale(sale_id: str):
    return serialize_doc(_find_or_404("sale", sale_id, "sale"))


@router.post("/sales", status_code=201)
def create_sale(data: SaleInput, admin: dict = Depends(require_admin)):
    _check_dates(data.start_date, data.end_date)
    values = _sale_values(data.model_dump(exclude={"send_promotional_emails"}))
    sale = SaleSchema(**values).model_dump()
    db["sale"].insert_one(sale)
    clear_sales_cache()
    logger.info("Sale %s created by %s", sale["_id"], admin["email"])
    result = serialize_doc(sale)
    if data.send_promotional_emails:
        result["promotion"] = _send_promotion(sale)
    return result


@router.put("/sales/{sale_id}")
def update_sale(sale_id: str, data: SaleUpdate, admin: dict = Depends(require_admin)):
    sale = _find_or_404("sale", sale_id, "sale")
    update = _sale_values(data.model_dump(exclude_unset=True))
    if not update:
        raise HTTPException(status_code=400, detail="No fields to update")
    _check_dates(update.get("start_date", sale["start_date"]), update.get("end_date", sale["end_date"]))
    update["updated_at"] = utcnow()
    db["sale"].update_one({"_id": sale["_id"]}, {"$set": update})
    clear_sales_cache()
    logger.info("Sale %s updated by %s", sale["_id"], admin["email"])
    return serialize_doc(db["sale"].find_one({"_id": sale["_id"]}))


@router.delete("/sales/{sale_id}")
def delete_sale(sale_id: str, admin: dict = Depends(require_admin)):
    sale = _find_or_404("sale", sale_id, "sale")
    db["sale"].delete_one({"_id": sale["_id"]})
    clear_sales_cache()
    logger.info("Sale %s deleted by %s", sale["_id"], admin["email"])
    return {"ok": True}


@router.post("/sales/{sale_id}/send-promotion")
def send_sale_promotion(sale_id: str, admin: dict = Depends(require_admin)):
    sale = _find_or_404("sale", sale_id, "sale")
    result = _send_promotion(sale)
    logger.info("Promotion for sale %s sent by %s: %s", sale["_id"], admin["email"], result)
    return result


# Coupons

@router.get("/coupons")
def list_coupons():
    return [serialize_doc(c) for c in db["coupon"].find().sort("created_at", -1)]


@router.get("/coupons/{coupon_id}")
def get_coupon(coupon_id: str):
    return serialize_doc(_find_or_404("coupon", coupon_id, "coupon"))


@router.post("/coupons", status_code=201)
def create_coupon(data: CouponInput, admin: dict = Depends(require_admin)):
    _check_dates(data.start_date, data.end_date)
    values = data.model_dump()
    values["code"] = values["code"].strip().upper()
    values["categories"] = _object_ids(values["categories"], "category")
    values["products"] = _object_ids(values["products"], "product")
    if db["coupon"].find_one({"code": values["code"]}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Coupon code already exists")
    coupon = CouponSchema(**values).model_dump()
    try:
        db["coupon"].insert_one(coupon)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Coupon code already exists")
    logger.info("Coupon %s created by %s", coupon["code"], admin["email"])
    return serialize_doc(coupon)


@router.put("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, data: CouponUpdate, admin: dict = Depends(require_admin)):
    coupon = _find_or_404("coupon", coupon_id, "coupon")
    update = data.model_dump(exclude_unset=True)
    if not update:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "categories" in update:
        update["categories"] = _object_ids(update["categories"], "category")
    if "products" in update:
        update["products"] = _object_ids(update["products"], "product")
    _check_dates(update.get("start_date", coupon["start_date"]), update.get("end_date", coupon["end_date"]))
    update["updated_at"] = utcnow()
    db["coupon"].update_one({"_id": coupon["_id"]}, {"$set": update})
    logger.info("Coupon %s updated by %s", coupon["code"], admin["email"])
    return serialize_doc(db["coupon"].find_one({"_id": coupon["_id"]}))


@router.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, admin: dict = Depends(require_admin)):
    coupon = _find_or_404("coupon", coupon_id, "coupon")
    db["coupon"].delete_one({"_id": coupon["_id"]})
    logger.info("Coupon %s deleted by %s", coupon["code"], admin["email"])
    return {"ok": True}


# Reviews

@router.get("/reviews")
def list_reviews(status: Optional[str] = None, page: int = 1, limit: Optional[int] = None):
    page, limit, skip = paginate(page, limit, default_limit=20)
    query: Dict[str, Any] = {}
    if status == "pending":
        query["is_approved"] = False
    elif status == "approved":
        query["is_approved"] = True
    total = db["review"].count_documents(query)
    reviews = list(db["review"].find(query).sort("created_at", -1).skip(skip).limit(limit))
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": [r["user"] for r in reviews]}}, {"name": 1, "email": 1})}
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": [r["product"] for r in reviews]}}, {"name": 1, "slug": 1})}
    items = [
        serialize_doc({**r, "user": users.get(r["user"], r["user"]), "product": products.get(r["product"], r["product"])})
        for r in reviews
    ]
    return {"items": items, **pagination_info(total, page, limit)}


@router.put("/reviews/{review_id}")
def moderate_review(review_id: str, data: ReviewModerationInput, admin: dict = Depends(require_admin)):
    review = _find_or_404("review", review_id, "review")
    update: Dict[str, Any] = {"updated_at": utcnow()}
    if data.is_approved is not None:
        update["is_approved"] = data.is_approved
    if data.response:
        update["response"] = {"text": data.response, "responded_at": utcnow(), "responded_by": ObjectId(admin["id"])}
    db["review"].update_one({"_id": review["_id"]}, {"$set": update})
    recompute_product_rating(review["product"])
    logger.info("Review %s moderated by %s", review["_id"], admin["email"])
    return serialize_doc(db["review"].find_one({"_id": review["_id"]}))


@router.delete("/reviews/{review_id}")
def delete_review(review_id: str, admin: dict = Depends(require_admin)):
    review = _find_or_404("review", review_id, "review")
    db["review"].delete_one({"_id": review["_id"]})
    recompute_product_rating(review["product"])
    logger.info("Review %s deleted by %s", review["_id"], admin["email"])
    return {"ok": True}


# Settings

@router.get("/settings")
def read_settings():
    return serialize_doc(get_settings(db))


@router.put("/settings")
def write_settings(data: Dict[str, Any] = Body(...), admin: dict = Depends(require_admin)):
    settings = update_settings(db, data)
    logger.info("Site settings updated by %s", admin["email"])
    return serialize_doc(settings)
