import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

import admin
import auth
import cart
import catalog
import custom_designs
import orders
import payments
import reviews
from config import CORS_ORIGINS, configure_logging
from database import db, ensure_indexes
from store_settings import public_settings

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes()
    except PyMongoError as e:
        logger.error("Could not create indexes: %s", e)
    yield


app = FastAPI(title="Angel Baby Dresses API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(catalog.router)
app.include_router(catalog.categories_router)
app.include_router(cart.router)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(custom_designs.router)
app.include_router(reviews.router)
app.include_router(admin.router)


# Routes
@app.get("/")
def read_root():
    return {"message": "Angel Baby Dresses API"}


@app.get("/api/health")
def health():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["database_name"] = db.name
        response["collections"] = db.list_collection_names()
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        logger.warning("Health check could not reach the database: %s", e)
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


@app.get("/api/settings")
def site_settings():
    return public_settings(db)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
