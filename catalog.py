"""
Storefront catalog: products and categories.

Every product that leaves these routes has the currently running sales applied.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query

from database import db
from pricing import apply_sales_to_products, is_on_sale
from utils import escape_search, paginate, pagination_info, serialize_doc

router = APIRouter(prefix="/api/products", tags=["products"])
categories_router = APIRouter(prefix="/api/categories", tags=["categories"])

SORT_OPTIONS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "newest": [("created_at", -1)],
    "popular": [("sold_count", -1)],
    "rating": [("ratings.average", -1)],
}


def populate_categories(products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = {p.get("category") for p in products if p.get("category")}
    if not ids:
        return products
    categories = {
        c["_id"]: c for c in db["category"].find({"_id": {"$in": list(ids)}}, {"name": 1, "slug": 1})
    }
    populated = []
    for p in products:
        p = dict(p)
        if p.get("category") in categories:
            p["category"] = categories[p["category"]]
        populated.append(p)
    return populated


def present(products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Populate categories, apply running sales and serialize."""
    return [serialize_doc(p) for p in apply_sales_to_products(db, populate_categories(products))]


def _split(value: Optional[str]) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


# Products

@router.get("")
def list_products(
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    color: Optional[str] = None,
    age_range: Optional[str] = None,
    featured: Optional[bool] = None,
    new_arrivals: Optional[bool] = None,
    on_sale: Optional[bool] = None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: Optional[int] = None,
):
    page, limit, skip = paginate(page, limit)
    query: Dict[str, Any] = {"is_active": True}
    if category:
        cat = db["category"].find_one({"slug": category})
        if not cat:
            return {"items": [], **pagination_info(0, page, limit)}
        query["category"] = cat["_id"]
    price_filter: Dict[str, Any] = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["price"] = price_filter
    if _split(color):
        query["colors.name"] = {"$in": _split(color)}
    if _split(age_range):
        query["age_pricing.age_range"] = {"$in": _split(age_range)}
    if featured:
        query["featured"] = True
    if new_arrivals:
        query["is_new_arrival"] = True

    sort_option = SORT_OPTIONS.get(sort, SORT_OPTIONS["newest"])
    collection = db["product"]

    if on_sale:
        # Sale state depends on running sales, so filter after pricing
        products = present(list(collection.find(query).sort(sort_option)))
        products = [p for p in products if is_on_sale(p)]
        total = len(products)
        items = products[skip:skip + limit]
    else:
        total = collection.count_documents(query)
        items = present(list(collection.find(query).sort(sort_option).skip(skip).limit(limit)))
    return {"items": items, **pagination_info(total, page, limit)}


def _highlighted(query: Dict[str, Any], sort_field: str, limit: int):
    query = {"is_active": True, **query}
    return present(list(db["product"].find(query).sort(sort_field, -1).limit(limit)))


@router.get("/featured")
def featured_products(limit: int = Query(8, ge=1, le=100)):
    return _highlighted({"featured": True}, "created_at", limit)


@router.get("/new-arrivals")
def new_arrivals(limit: int = Query(8, ge=1, le=100)):
    return _highlighted({"is_new_arrival": True}, "created_at", limit)


@router.get("/best-sellers")
def best_sellers(limit: int = Query(8, ge=1, le=100)):
    return _highlighted({"is_best_seller": True}, "sold_count", limit)


@router.get("/sale")
def sale_products(page: int = 1, limit: Optional[int] = None):
    page, limit, skip = paginate(page, limit)
    products = present(list(db["product"].find({"is_active": True}).sort("created_at", -1)))
    products = [p for p in products if is_on_sale(p)]
    return {"items": products[skip:skip + limit], **pagination_info(len(products), page, limit)}


@router.get("/search")
def search_products(q: Optional[str] = None, page: int = 1, limit: Optional[int] = None):
    if not q or not q.strip():
        raise HTTPException(status_code=400, detail="Search query is required")
    page, limit, skip = paginate(page, limit)
    regex = {"$regex": escape_search(q.strip()), "$options": "i"}
    query = {
        "is_active": True,
        "$or": [
            {"name.en": regex},
            {"name.ur": regex},
            {"description.en": regex},
            {"description.ur": regex},
            {"tags": regex},
        ],
    }
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort("ratings.average", -1).skip(skip).limit(limit)
    return {"items": present(list(cursor)), **pagination_info(total, page, limit)}


@router.get("/category/{slug}")
def products_by_category(slug: str, page: int = 1, limit: Optional[int] = None):
    category = db["category"].find_one({"slug": slug})
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    page, limit, skip = paginate(page, limit)
    ids = [category["_id"]] + [c["_id"] for c in db["category"].find({"parent": category["_id"]}, {"_id": 1})]
    query = {"is_active": True, "category": {"$in": ids}}
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort("created_at", -1).skip(skip).limit(limit)
    return {
        "category": serialize_doc(category),
        "items": present(list(cursor)),
        **pagination_info(total, page, limit),
    }


@router.get("/{slug}")
def get_product(slug: str):
    product = db["product"].find_one({"slug": slug, "is_active": True})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    db["product"].update_one({"_id": product["_id"]}, {"$inc": {"view_count": 1}})
    product["view_count"] = product.get("view_count", 0) + 1
    return present([product])[0]


@router.get("/{slug}/related")
def related_products(slug: str, limit: int = Query(4, ge=1, le=100)):
    product = db["product"].find_one({"slug": slug})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    alternatives: List[Dict[str, Any]] = []
    if product.get("category"):
        alternatives.append({"category": product["category"]})
    if product.get("tags"):
        alternatives.append({"tags": {"$in": product["tags"]}})
    if not alternatives:
        return []
    query = {"_id": {"$ne": product["_id"]}, "is_active": True, "$or": alternatives}
    return present(list(db["product"].find(query).limit(limit)))


# Categories

@categories_router.get("")
def list_categories():
    categories = list(db["category"].find({"is_active": True}).sort("sort_order", 1))
    children: Dict[Any, List[Dict[str, Any]]] = {}
    for c in categories:
        if c.get("parent"):
            children.setdefault(c["parent"], []).append(c)
    result = []
    for c in categories:
        if c.get("parent"):
            continue
        doc = serialize_doc(c)
        doc["subcategories"] = [serialize_doc(s) for s in children.get(c["_id"], [])]
        result.append(doc)
    return result


@categories_router.get("/all")
def all_categories():
    return [serialize_doc(c) for c in db["category"].find({"is_active": True}).sort("sort_order", 1)]


@categories_router.get("/{slug}")
def get_category(slug: str):
    category = db["category"].find_one({"slug": slug, "is_active": True})
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    doc = serialize_doc(category)
    doc["subcategories"] = [
        serialize_doc(c) for c in db["category"].find({"parent": category["_id"], "is_active": True}).sort("sort_order", 1)
    ]
    return doc
