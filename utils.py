import math
import random
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from fastapi import HTTPException
from slugify import slugify


def utcnow() -> datetime:
    # Naive UTC, matching what pymongo hands back by default
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any, label: str = "resource") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except Exception:
        raise HTTPException(status_code=400, detail=f"Invalid {label} id")


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        doc[k] = _serialize_value(v)
    return doc


def paginate(page: Optional[int] = 1, limit: Optional[int] = None, default_limit: int = 12) -> Tuple[int, int, int]:
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or default_limit), 1), 100)
    return page, limit, (page - 1) * limit


def pagination_info(total: int, page: int, limit: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def escape_search(query: Optional[str]) -> str:
    if not query:
        return ""
    return re.escape(query)


def generate_reference(prefix: str) -> str:
    """Human-facing reference such as ABD25070042: prefix, 2-digit year, month, 4 random digits."""
    now = utcnow()
    return f"{prefix}{now:%y%m}{random.randint(0, 9999):04d}"


def unique_slug(collection, text: str, exclude_id: Optional[ObjectId] = None) -> str:
    base_slug = slugify(text) or "item"
    slug = base_slug
    counter = 1
    while True:
        query: Dict[str, Any] = {"slug": slug}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if not collection.find_one(query, {"_id": 1}):
            return slug
        slug = f"{base_slug}-{counter}"
        counter += 1
