"""
MongoDB access

A single lazily-connecting client is shared by the whole app. Collections are
addressed by the lowercased model name, e.g. db["product"], db["order"].
"""
import logging

from pymongo import ASCENDING, DESCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=10000, connect=False)
db = client[DATABASE_NAME]


def ensure_indexes(database=None):
    database = db if database is None else database
    database["user"].create_index("email", unique=True)
    database["product"].create_index("slug", unique=True)
    database["product"].create_index("sku", unique=True, sparse=True)
    database["product"].create_index([("category", ASCENDING), ("is_active", ASCENDING)])
    database["product"].create_index([("created_at", DESCENDING)])
    database["category"].create_index("slug", unique=True)
    database["cart"].create_index("user", unique=True)
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("payment_status")
    database["coupon"].create_index("code", unique=True)
    database["sale"].create_index([("is_active", ASCENDING), ("start_date", ASCENDING), ("end_date", ASCENDING)])
    database["review"].create_index([("user", ASCENDING), ("product", ASCENDING)], unique=True)
    database["customdesign"].create_index("design_number", unique=True)
    logger.info("Indexes ensured on %s", database.name)
