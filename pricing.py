"""
Pricing rules

Time-boxed sales, coupons, shipping and order totals. Every price a customer
pays is computed here from the stored product, never taken from the client.
"""
import logging
import math
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId

from config import ADVANCE_PAYMENT_SHARE, SALE_CACHE_TTL, SHIPPING_RATE_PER_KG
from utils import utcnow

logger = logging.getLogger(__name__)

_sales_cache: Dict[str, Any] = {"sales": None, "loaded_at": 0.0}


class CouponError(Exception):
    """Raised when a coupon cannot be applied; the message is shown to the customer."""


# Sales

def clear_sales_cache():
    _sales_cache["sales"] = None
    _sales_cache["loaded_at"] = 0.0


def get_active_sales(db) -> List[Dict[str, Any]]:
    now = time.monotonic()
    if _sales_cache["sales"] is not None and now - _sales_cache["loaded_at"] < SALE_CACHE_TTL:
        return _sales_cache["sales"]
    current = utcnow()
    sales = list(
        db["sale"]
        .find({"is_active": True, "start_date": {"$lte": current}, "end_date": {"$gte": current}})
        .sort("priority", -1)
    )
    _sales_cache["sales"] = sales
    _sales_cache["loaded_at"] = now
    logger.debug("Loaded %d active sales", len(sales))
    return sales


def _id_in(value: Any, ids: Optional[Iterable[Any]]) -> bool:
    if value is None or not ids:
        return False
    value = str(value)
    return any(str(i) == value for i in ids)


def find_applicable_sale(product: Dict[str, Any], sales: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    product_id = product.get("_id")
    category = product.get("category")
    if isinstance(category, dict):
        category = category.get("_id")
    for sale in sales:
        if sale.get("usage_limit") and sale.get("usage_count", 0) >= sale["usage_limit"]:
            continue
        if _id_in(product_id, sale.get("excluded_products")):
            continue
        applicable_to = sale.get("applicable_to", "all")
        if applicable_to == "all":
            return sale
        if applicable_to == "categories" and _id_in(category, sale.get("categories")):
            return sale
        if applicable_to == "products" and _id_in(product_id, sale.get("products")):
            return sale
    return None


def calculate_discounted_price(price: Optional[float], sale: Optional[Dict[str, Any]]) -> Optional[float]:
    if not sale or not price or price <= 0:
        return price
    if sale.get("type") == "percentage":
        discount = price * sale.get("discount_value", 0) / 100
        max_discount = sale.get("max_discount")
        if max_discount and discount > max_discount:
            discount = max_discount
        discounted = price - discount
    elif sale.get("type") == "fixed":
        discounted = price - sale.get("discount_value", 0)
    else:
        # buy_get is not a per-unit price change
        return price
    return max(0, round(discounted))


def _valid_manual_sale(sale_price: Optional[float], price: Optional[float]) -> bool:
    return bool(sale_price) and sale_price > 0 and price is not None and sale_price < price


def apply_sales_to_product(product: Dict[str, Any], sales: List[Dict[str, Any]]) -> Dict[str, Any]:
    if not product:
        return product
    sale = find_applicable_sale(product, sales)
    if not sale:
        return product
    product = dict(product)

    dynamic_price = calculate_discounted_price(product.get("price"), sale)
    if _valid_manual_sale(product.get("sale_price"), product.get("price")):
        product["sale_price"] = min(product["sale_price"], dynamic_price)
    else:
        product["sale_price"] = dynamic_price

    age_pricing = []
    for entry in product.get("age_pricing") or []:
        entry = dict(entry)
        dynamic_age_price = calculate_discounted_price(entry.get("price"), sale)
        if _valid_manual_sale(entry.get("sale_price"), entry.get("price")):
            entry["sale_price"] = min(entry["sale_price"], dynamic_age_price)
        else:
            entry["sale_price"] = dynamic_age_price
        age_pricing.append(entry)
    if age_pricing:
        product["age_pricing"] = age_pricing

    product["active_sale"] = {
        "sale_name": sale.get("name"),
        "type": sale.get("type"),
        "discount_value": sale.get("discount_value"),
        "end_date": sale.get("end_date"),
    }
    return product


def apply_sales_to_products(db, products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not products:
        return products
    sales = get_active_sales(db)
    if not sales:
        return products
    return [apply_sales_to_product(p, sales) for p in products]


def get_effective_price(db, product: Dict[str, Any], age_range: Optional[str] = None) -> float:
    """Authoritative unit price for a product, optionally for one age band."""
    base_price = product.get("price", 0)
    manual_sale_price = product.get("sale_price")
    if age_range:
        for entry in product.get("age_pricing") or []:
            if entry.get("age_range") == age_range:
                base_price = entry.get("price", base_price)
                manual_sale_price = entry.get("sale_price")
                break

    sale = find_applicable_sale(product, get_active_sales(db))
    dynamic_price = calculate_discounted_price(base_price, sale) if sale else None

    candidates = [base_price]
    if _valid_manual_sale(manual_sale_price, base_price):
        candidates.append(manual_sale_price)
    if dynamic_price is not None and dynamic_price < base_price:
        candidates.append(dynamic_price)
    return min(candidates)


def is_on_sale(product: Dict[str, Any]) -> bool:
    if _valid_manual_sale(product.get("sale_price"), product.get("price")):
        return True
    return any(
        _valid_manual_sale(entry.get("sale_price"), entry.get("price"))
        for entry in product.get("age_pricing") or []
    )


# Coupons

def find_coupon(db, code: str) -> Optional[Dict[str, Any]]:
    if not code:
        return None
    return db["coupon"].find_one({"code": code.strip().upper()})


def _coupon_running(coupon: Optional[Dict[str, Any]], now: datetime) -> bool:
    if not coupon or not coupon.get("is_active"):
        return False
    start, end = coupon.get("start_date"), coupon.get("end_date")
    return bool(start and end and start <= now <= end)


def _coupon_exhausted(coupon: Dict[str, Any]) -> bool:
    return bool(coupon.get("usage_limit")) and coupon.get("usage_count", 0) >= coupon["usage_limit"]


def coupon_is_valid(coupon: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    return _coupon_running(coupon, now or utcnow()) and not _coupon_exhausted(coupon)


def _eligible_subtotal(db, coupon: Dict[str, Any], items: List[Dict[str, Any]]) -> float:
    applicable_to = coupon.get("applicable_to", "all")
    if applicable_to in ("all", "first_order"):
        return sum(i["price"] * i["quantity"] for i in items)

    eligible = 0.0
    product_ids = [i["product"] for i in items]
    categories = {
        p["_id"]: p.get("category")
        for p in db["product"].find({"_id": {"$in": product_ids}}, {"category": 1})
    }
    for item in items:
        if applicable_to == "products":
            matches = _id_in(item["product"], coupon.get("products"))
        else:
            matches = _id_in(categories.get(item["product"]), coupon.get("categories"))
        if matches:
            eligible += item["price"] * item["quantity"]
    return eligible


def evaluate_coupon(db, coupon: Optional[Dict[str, Any]], user_id: ObjectId, items: List[Dict[str, Any]]) -> float:
    """Return the discount a coupon grants on these cart items, or raise CouponError."""
    if not _coupon_running(coupon, utcnow()):
        raise CouponError("Invalid or expired coupon code")
    if _coupon_exhausted(coupon):
        raise CouponError("Coupon usage limit reached")
    user_uses = sum(1 for u in coupon.get("used_by", []) if str(u.get("user")) == str(user_id))
    if user_uses >= coupon.get("usage_per_user", 1):
        raise CouponError("You have already used this coupon")
    if not items:
        raise CouponError("Cart is empty")
    if coupon.get("applicable_to") == "first_order" and db["order"].find_one({"user": user_id}, {"_id": 1}):
        raise CouponError("This coupon is only valid on your first order")

    eligible = _eligible_subtotal(db, coupon, items)
    if eligible <= 0:
        raise CouponError("Coupon does not apply to items in your cart")

    subtotal = sum(i["price"] * i["quantity"] for i in items)
    min_order = coupon.get("min_order_amount") or 0
    if subtotal < min_order:
        raise CouponError(f"Minimum order amount is Rs. {min_order:g}")

    if coupon.get("type") == "percentage":
        discount = eligible * coupon.get("discount_value", 0) / 100
        max_discount = coupon.get("max_discount")
        if max_discount and discount > max_discount:
            discount = max_discount
    else:
        discount = coupon.get("discount_value", 0)
    return round(min(max(discount, 0), eligible), 2)


# Shipping and totals

def shipping_cost_for_weight(weight_in_kg: Optional[float]) -> int:
    kg = weight_in_kg if weight_in_kg and weight_in_kg > 0 else 1
    return math.ceil(kg) * SHIPPING_RATE_PER_KG


def estimate_shipping(settings: Dict[str, Any], subtotal: float) -> float:
    shipping = settings.get("shipping", {})
    threshold = shipping.get("free_shipping_threshold")
    if threshold is not None and subtotal >= threshold:
        return 0
    return shipping.get("standard_shipping_rate", 0)


def compute_order_totals(subtotal: float, shipping: float, discount: float) -> Dict[str, float]:
    discount = min(max(discount or 0, 0), subtotal)
    total = max(subtotal + (shipping or 0) - discount, 0)
    return {"subtotal": subtotal, "shipping_cost": shipping or 0, "discount": discount, "total": total}


def split_payment(subtotal: float, shipping: float = 0, discount: float = 0,
                  advance: Optional[float] = None) -> Dict[str, float]:
    """Split the order total into the online advance and the amount collected later.

    The advance is half the subtotal unless one was already charged, and never
    more than the total. Whatever is left of the total is the final payment.
    """
    total = compute_order_totals(subtotal, shipping, discount)["total"]
    if advance is None:
        advance = math.ceil(subtotal * ADVANCE_PAYMENT_SHARE)
    advance = min(advance, total)
    return {"advance": advance, "final": total - advance}
