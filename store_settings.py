"""
Site settings

A single document in the "setting" collection, created with defaults the first
time it is read. Updates are merged into nested objects rather than replacing them.
"""
import copy
import logging
from typing import Any, Dict

from utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "site_name": {"en": "Angel Baby Dresses", "ur": "اینجل بیبی ڈریسز"},
    "site_tagline": {
        "en": "Beautiful Clothes for Beautiful Kids",
        "ur": "خوبصورت بچوں کے لیے خوبصورت کپڑے",
    },
    "logo": None,
    "contact": {"email": None, "phone": None, "whatsapp": None, "address": {"en": None, "ur": None}},
    "social_links": {"facebook": None, "instagram": None, "twitter": None, "youtube": None, "tiktok": None},
    "shipping": {
        "free_shipping_threshold": 3000,
        "standard_shipping_rate": 200,
        "express_shipping_rate": 400,
        "estimated_delivery_days": {"standard": 5, "express": 2},
    },
    "payment": {
        "jazzcash_enabled": True,
        "easypaisa_enabled": True,
        "cod_enabled": True,
        "bank_transfer_enabled": False,
    },
    "notifications": {
        "order_confirmation_email": True,
        "order_shipped_email": True,
        "order_delivered_email": True,
        "whatsapp_notifications": True,
    },
    "maintenance": {"is_enabled": False, "message": {"en": None, "ur": None}},
}


def deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_settings(db) -> Dict[str, Any]:
    settings = db["setting"].find_one()
    if settings:
        return settings
    doc = copy.deepcopy(DEFAULT_SETTINGS)
    doc["created_at"] = doc["updated_at"] = utcnow()
    db["setting"].insert_one(doc)
    logger.info("Created default site settings")
    return db["setting"].find_one({"_id": doc["_id"]})


def update_settings(db, data: Dict[str, Any]) -> Dict[str, Any]:
    settings = get_settings(db)
    data = {k: v for k, v in data.items() if k not in ("_id", "id", "created_at", "updated_at")}
    merged = deep_merge(settings, data)
    merged["updated_at"] = utcnow()
    merged.pop("_id", None)
    db["setting"].update_one({"_id": settings["_id"]}, {"$set": merged})
    return db["setting"].find_one({"_id": settings["_id"]})


def public_settings(db) -> Dict[str, Any]:
    settings = get_settings(db)
    return {
        "site_name": settings.get("site_name"),
        "site_tagline": settings.get("site_tagline"),
        "logo": settings.get("logo"),
        "contact": settings.get("contact"),
        "social_links": settings.get("social_links"),
        "free_shipping_threshold": settings.get("shipping", {}).get("free_shipping_threshold"),
    }
