import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pymongo.errors import DuplicateKeyError

from auth import get_current_user
from database import db
from schemas import Review as ReviewSchema, ReviewInput, ReviewUpdate
from utils import paginate, pagination_info, serialize_doc, to_object_id, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reviews", tags=["reviews"])

SORT_OPTIONS = {
    "rating_high": [("rating", -1)],
    "rating_low": [("rating", 1)],
    "helpful": [("helpful_count", -1)],
}


def recompute_product_rating(product_id: ObjectId) -> Dict[str, float]:
    ratings = [r["rating"] for r in db["review"].find({"product": product_id, "is_approved": True}, {"rating": 1})]
    summary = {
        "average": round(sum(ratings) / len(ratings), 1) if ratings else 0,
        "count": len(ratings),
    }
    db["product"].update_one({"_id": product_id}, {"$set": {"ratings": summary}})
    return summary


def with_user_names(reviews: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = list({r["user"] for r in reviews})
    users = {u["_id"]: {"_id": u["_id"], "name": u.get("name")} for u in db["user"].find({"_id": {"$in": ids}}, {"name": 1})}
    return [serialize_doc({**r, "user": users.get(r["user"], r["user"])}) for r in reviews]


def _own_review(review_id: str, current_user: dict) -> Dict[str, Any]:
    review = db["review"].find_one({"_id": to_object_id(review_id, "review"), "user": ObjectId(current_user["id"])})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return review


@router.get("/product/{product_id}")
def product_reviews(product_id: str, sort: Optional[str] = None, page: int = 1, limit: Optional[int] = None):
    page, limit, skip = paginate(page, limit, default_limit=10)
    query = {"product": to_object_id(product_id, "product"), "is_approved": True}
    total = db["review"].count_documents(query)
    cursor = db["review"].find(query).sort(SORT_OPTIONS.get(sort, [("created_at", -1)])).skip(skip).limit(limit)

    distribution = {str(star): 0 for star in range(5, 0, -1)}
    for r in db["review"].find(query, {"rating": 1}):
        distribution[str(r["rating"])] += 1
    return {
        "items": with_user_names(list(cursor)),
        "rating_distribution": distribution,
        **pagination_info(total, page, limit),
    }


@router.post("", status_code=201)
def create_review(payload: ReviewInput, current_user: dict = Depends(get_current_user)):
    user_id = ObjectId(current_user["id"])
    product_id = to_object_id(payload.product_id, "product")
    if not db["product"].find_one({"_id": product_id}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Product not found")
    if db["review"].find_one({"user": user_id, "product": product_id}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="You have already reviewed this product")

    purchase = db["order"].find_one({"user": user_id, "items.product": product_id, "status": "delivered"}, {"_id": 1})
    review = ReviewSchema(
        user=user_id,
        product=product_id,
        order=purchase["_id"] if purchase else None,
        rating=payload.rating,
        title=payload.title,
        comment=payload.comment,
        images=payload.images,
        is_verified_purchase=bool(purchase),
    ).model_dump()
    try:
        db["review"].insert_one(review)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="You have already reviewed this product")
    recompute_product_rating(product_id)
    return with_user_names([review])[0]


@router.get("/my-reviews")
def my_reviews(current_user: dict = Depends(get_current_user)):
    reviews = list(db["review"].find({"user": ObjectId(current_user["id"])}).sort("created_at", -1))
    ids = [r["product"] for r in reviews]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}}, {"name": 1, "slug": 1, "images": 1})}
    return [serialize_doc({**r, "product": products.get(r["product"], r["product"])}) for r in reviews]


@router.put("/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate, current_user: dict = Depends(get_current_user)):
    review = _own_review(review_id, current_user)
    update = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update:
        raise HTTPException(status_code=400, detail="No fields to update")
    update["updated_at"] = utcnow()
    db["review"].update_one({"_id": review["_id"]}, {"$set": update})
    recompute_product_rating(review["product"])
    return with_user_names([db["review"].find_one({"_id": review["_id"]})])[0]


@router.delete("/{review_id}")
def delete_review(review_id: str, current_user: dict = Depends(get_current_user)):
    review = _own_review(review_id, current_user)
    db["review"].delete_one({"_id": review["_id"]})
    recompute_product_rating(review["product"])
    return {"ok": True}


@router.post("/{review_id}/helpful")
def mark_helpful(review_id: str, current_user: dict = Depends(get_current_user)):
    user_id = ObjectId(current_user["id"])
    review = db["review"].find_one({"_id": to_object_id(review_id, "review")})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    if user_id in review.get("helpful_by", []):
        raise HTTPException(status_code=400, detail="You already marked this review as helpful")
    db["review"].update_one(
        {"_id": review["_id"]},
        {"$inc": {"helpful_count": 1}, "$push": {"helpful_by": user_id}},
    )
    return {"helpful_count": review.get("helpful_count", 0) + 1}
