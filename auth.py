import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext

import notifications
from config import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ALGORITHM,
    BCRYPT_ROUNDS,
    CLIENT_URL,
    RESET_TOKEN_EXPIRE_MINUTES,
    SECRET_KEY,
)
from database import db
from schemas import (
    Address,
    AddressUpdate,
    ForgotPasswordInput,
    LoginInput,
    PasswordUpdate,
    ProfileUpdate,
    RegisterInput,
    ResetPasswordInput,
    TokenResponse,
    User as UserSchema,
)
from utils import serialize_doc, to_object_id, utcnow

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)

router = APIRouter(prefix="/api/auth", tags=["auth"])

RESET_MESSAGE = "If an account with this email exists, you will receive a password reset link shortly."
PRIVATE_FIELDS = ("password_hash", "reset_password_token", "reset_password_expire")

# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(user)
    for field in PRIVATE_FIELDS:
        user.pop(field, None)
    return user


def _hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


# Dependencies

def get_current_user(authorization: Optional[str] = Header(default=None)):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = authorization.split(" ", 1)[1]
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return public_user(user)


def require_admin(current_user: dict = Depends(get_current_user)):
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return current_user


def _load_user(current_user: dict) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": ObjectId(current_user["id"])})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _wishlist_products(user: Dict[str, Any]) -> List[Dict[str, Any]]:
    ids = user.get("wishlist") or []
    if not ids:
        return []
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}})}
    return [serialize_doc(products[i]) for i in ids if i in products]


# Account

@router.post("/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterInput):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user_model = UserSchema(
        name=payload.name.strip(),
        email=email,
        password_hash=hash_password(payload.password),
        phone=payload.phone,
        role="customer",
    )
    result = db["user"].insert_one(user_model.model_dump())
    token = create_access_token({"sub": str(result.inserted_id)})
    user = db["user"].find_one({"_id": result.inserted_id})
    logger.info("Registered user %s", email)
    return TokenResponse(access_token=token, user=public_user(user))


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginInput):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": utcnow()}})
    token = create_access_token({"sub": str(user["_id"])})
    user = db["user"].find_one({"_id": user["_id"]})
    return TokenResponse(access_token=token, user=public_user(user))


@router.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    user = _load_user(current_user)
    result = public_user(user)
    result["wishlist"] = _wishlist_products(user)
    return result


@router.put("/profile")
def update_profile(payload: ProfileUpdate, current_user: dict = Depends(get_current_user)):
    update = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update:
        raise HTTPException(status_code=400, detail="No fields to update")
    update["updated_at"] = utcnow()
    user_id = ObjectId(current_user["id"])
    db["user"].update_one({"_id": user_id}, {"$set": update})
    return public_user(db["user"].find_one({"_id": user_id}))


@router.put("/password")
def update_password(payload: PasswordUpdate, current_user: dict = Depends(get_current_user)):
    user = _load_user(current_user)
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": utcnow()}},
    )
    return {"message": "Password updated", "access_token": create_access_token({"sub": str(user["_id"])})}


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordInput):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        return {"message": RESET_MESSAGE}

    token = secrets.token_hex(32)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "reset_password_token": _hash_reset_token(token),
            "reset_password_expire": utcnow() + timedelta(minutes=RESET_TOKEN_EXPIRE_MINUTES),
        }},
    )
    reset_url = f"{CLIENT_URL}/reset-password/{token}"
    result = notifications.send_email(
        user["email"], "Reset your password", notifications.password_reset_message(reset_url)
    )
    if not result.get("success"):
        db["user"].update_one(
            {"_id": user["_id"]},
            {"$unset": {"reset_password_token": "", "reset_password_expire": ""}},
        )
        logger.error("Password reset email to %s failed: %s", user["email"], result.get("error"))
        raise HTTPException(
            status_code=500,
            detail="Unable to send reset email. Please try again later or contact support.",
        )
    logger.info("Password reset email sent to %s", user["email"])
    return {"message": RESET_MESSAGE}


@router.put("/reset-password/{token}")
def reset_password(token: str, payload: ResetPasswordInput):
    if len(payload.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters long")
    hashed = _hash_reset_token(token)
    user = db["user"].find_one({"reset_password_token": hashed})
    if not user:
        raise HTTPException(
            status_code=400,
            detail={"message": "This reset link is invalid. Please request a new password reset.", "code": "TOKEN_INVALID"},
        )
    clear = {"$unset": {"reset_password_token": "", "reset_password_expire": ""}}
    expires = user.get("reset_password_expire")
    if not expires or expires <= utcnow():
        db["user"].update_one({"_id": user["_id"]}, clear)
        raise HTTPException(
            status_code=400,
            detail={"message": "Your reset link has expired. Please request a new password reset.", "code": "TOKEN_EXPIRED"},
        )
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.password), "updated_at": utcnow()}, **clear},
    )
    logger.info("Password reset for %s", user["email"])
    return {"message": "Your password has been reset successfully! You can now log in with your new password."}


# Addresses

def _save_addresses(user_id: ObjectId, addresses: List[dict]):
    db["user"].update_one({"_id": user_id}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})
    return [serialize_doc(a) for a in addresses]


@router.post("/addresses", status_code=201)
def add_address(payload: Address, current_user: dict = Depends(get_current_user)):
    user = _load_user(current_user)
    addresses = user.get("addresses", [])
    address = payload.model_dump()
    if address["is_default"] or not addresses:
        for a in addresses:
            a["is_default"] = False
        address["is_default"] = True
    address["_id"] = ObjectId()
    addresses.append(address)
    return _save_addresses(user["_id"], addresses)


@router.put("/addresses/{address_id}")
def update_address(address_id: str, payload: AddressUpdate, current_user: dict = Depends(get_current_user)):
    user = _load_user(current_user)
    oid = to_object_id(address_id, "address")
    addresses = user.get("addresses", [])
    target = next((a for a in addresses if a.get("_id") == oid), None)
    if not target:
        raise HTTPException(status_code=404, detail="Address not found")
    update = payload.model_dump(exclude_unset=True, exclude_none=True)
    if update.get("is_default"):
        for a in addresses:
            a["is_default"] = False
    target.update(update)
    return _save_addresses(user["_id"], addresses)


@router.delete("/addresses/{address_id}")
def delete_address(address_id: str, current_user: dict = Depends(get_current_user)):
    user = _load_user(current_user)
    oid = to_object_id(address_id, "address")
    addresses = [a for a in user.get("addresses", []) if a.get("_id") != oid]
    if addresses and not any(a.get("is_default") for a in addresses):
        addresses[0]["is_default"] = True
    return _save_addresses(user["_id"], addresses)


# Wishlist

@router.get("/wishlist")
def get_wishlist(current_user: dict = Depends(get_current_user)):
    return _wishlist_products(_load_user(current_user))


@router.post("/wishlist/{product_id}")
def toggle_wishlist(product_id: str, current_user: dict = Depends(get_current_user)):
    user = _load_user(current_user)
    pid = to_object_id(product_id, "product")
    wishlist = list(user.get("wishlist") or [])
    if pid in wishlist:
        wishlist.remove(pid)
        message = "Removed from wishlist"
    else:
        if not db["product"].find_one({"_id": pid}, {"_id": 1}):
            raise HTTPException(status_code=404, detail="Product not found")
        wishlist.append(pid)
        message = "Added to wishlist"
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"wishlist": wishlist}})
    user["wishlist"] = wishlist
    return {"message": message, "wishlist": _wishlist_products(user)}
