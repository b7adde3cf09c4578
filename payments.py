"""
Online payment gateways

JazzCash (MWALLET) and Easypaisa (hosted checkout) collect the advance leg of
an order. Gateway calls never raise: they return a result dict with
``success`` and either the gateway data or an ``error`` message.
"""
import hashlib
import hmac
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse

import notifications
from auth import get_current_user
from config import (
    CLIENT_URL,
    EASYPAISA_API_URL,
    EASYPAISA_HASH_KEY,
    EASYPAISA_STORE_ID,
    JAZZCASH_API_URL,
    JAZZCASH_INTEGRITY_SALT,
    JAZZCASH_MERCHANT_ID,
    JAZZCASH_PASSWORD,
    JAZZCASH_RETURN_URL,
)
from database import db
from orders import get_own_order, history_entry, require_payment_method
from schemas import PaymentInitiateInput
from utils import serialize_doc, to_object_id, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

GATEWAY_TIMEOUT = 30


def _format_datetime(value: datetime) -> str:
    return value.strftime("%Y%m%d%H%M%S")


class JazzCashGateway:
    def __init__(self, merchant_id=JAZZCASH_MERCHANT_ID, password=JAZZCASH_PASSWORD,
                 integrity_salt=JAZZCASH_INTEGRITY_SALT, return_url=JAZZCASH_RETURN_URL,
                 api_url=JAZZCASH_API_URL):
        self.merchant_id = merchant_id
        self.password = password
        self.integrity_salt = integrity_salt
        self.return_url = return_url
        self.api_url = api_url

    def generate_secure_hash(self, data: Dict[str, Any]) -> str:
        """HMAC-SHA256 over the salt and every non-empty value, in key order."""
        hash_string = self.integrity_salt
        for key in sorted(data):
            if key == "pp_SecureHash" or data[key] in ("", None):
                continue
            hash_string += f"&{data[key]}"
        return hmac.new(self.integrity_salt.encode(), hash_string.encode(), hashlib.sha256).hexdigest().upper()

    def _post(self, url: str, data: Dict[str, Any]) -> Dict[str, Any]:
        response = requests.post(url, data=data, timeout=GATEWAY_TIMEOUT)
        response.raise_for_status()
        return response.json()

    def initiate_payment(self, order: Dict[str, Any], amount: Optional[float] = None) -> Dict[str, Any]:
        amount = order["total"] if amount is None else amount
        now = datetime.now()
        txn_ref = f"T{int(time.time() * 1000)}"
        data = {
            "pp_Version": "1.1",
            "pp_TxnType": "MWALLET",
            "pp_Language": "EN",
            "pp_MerchantID": self.merchant_id,
            "pp_SubMerchantID": "",
            "pp_Password": self.password,
            "pp_BankID": "TBANK",
            "pp_ProductID": "RETL",
            "pp_TxnRefNo": txn_ref,
            "pp_Amount": str(round(amount * 100)),
            "pp_TxnCurrency": "PKR",
            "pp_TxnDateTime": _format_datetime(now),
            "pp_BillReference": order["order_number"],
            "pp_Description": f"Order {order['order_number']}",
            "pp_TxnExpiryDateTime": _format_datetime(now + timedelta(hours=1)),
            "pp_ReturnURL": self.return_url,
            "pp_SecureHash": "",
        }
        data["pp_SecureHash"] = self.generate_secure_hash(data)
        logger.info("Initiating JazzCash payment %s for order %s", txn_ref, order["order_number"])
        try:
            body = self._post(self.api_url, data)
        except (requests.RequestException, ValueError) as e:
            logger.error("JazzCash initiation for %s failed: %s", order["order_number"], e)
            return {"success": False, "error": str(e)}
        if body.get("pp_ResponseCode") == "000":
            return {
                "success": True,
                "transaction_ref": txn_ref,
                "redirect_url": body.get("pp_BankURL"),
                "data": body,
            }
        logger.warning("JazzCash rejected %s: %s", order["order_number"], body.get("pp_ResponseMessage"))
        return {"success": False, "error": body.get("pp_ResponseMessage") or "Payment initiation failed", "data": body}

    def verify_payment(self, callback: Dict[str, Any]) -> Dict[str, Any]:
        received = callback.get("pp_SecureHash") or ""
        data = {k: v for k, v in callback.items() if k != "pp_SecureHash"}
        if not hmac.compare_digest(received.upper(), self.generate_secure_hash(data)):
            return {"success": False, "error": "Invalid secure hash"}
        if callback.get("pp_ResponseCode") != "000":
            return {
                "success": False,
                "error": callback.get("pp_ResponseMessage") or "Payment verification failed",
                "data": callback,
            }
        try:
            amount = int(callback.get("pp_Amount") or 0) / 100
        except ValueError:
            return {"success": False, "error": "Invalid amount", "data": callback}
        return {
            "success": True,
            "transaction_id": callback.get("pp_TxnRefNo"),
            "bill_reference": callback.get("pp_BillReference"),
            "amount": amount,
            "data": callback,
        }

    def get_payment_status(self, txn_ref: str) -> Dict[str, Any]:
        data = {
            "pp_Version": "1.1",
            "pp_TxnType": "MIGS",
            "pp_Language": "EN",
            "pp_MerchantID": self.merchant_id,
            "pp_Password": self.password,
            "pp_TxnRefNo": txn_ref,
            "pp_TxnDateTime": _format_datetime(datetime.now()),
            "pp_SecureHash": "",
        }
        data["pp_SecureHash"] = self.generate_secure_hash(data)
        try:
            body = self._post(self.api_url.replace("DoTransaction", "TransactionInquiry"), data)
        except (requests.RequestException, ValueError) as e:
            logger.error("JazzCash status check for %s failed: %s", txn_ref, e)
            return {"success": False, "error": str(e)}
        return {"success": body.get("pp_ResponseCode") == "000", "data": body}


class EasypaisaGateway:
    def __init__(self, store_id=EASYPAISA_STORE_ID, hash_key=EASYPAISA_HASH_KEY, api_url=EASYPAISA_API_URL,
                 post_back_url=None):
        self.store_id = store_id
        self.hash_key = hash_key
        self.api_url = api_url.rstrip("/")
        self.post_back_url = post_back_url

    def generate_hash(self, data: Dict[str, Any]) -> str:
        raw = f"{data.get('amount', '')}{data.get('orderRefNum', '')}{data.get('storeId', '')}{self.hash_key}"
        return hashlib.sha256(raw.encode()).hexdigest()

    def verify_hash(self, data: Dict[str, Any]) -> bool:
        return hmac.compare_digest(str(data.get("hashRequest") or ""), self.generate_hash(data))

    def initiate_payment(self, order: Dict[str, Any], amount: Optional[float] = None,
                         email: Optional[str] = None) -> Dict[str, Any]:
        amount = order["total"] if amount is None else amount
        order_ref = f"EP{int(time.time() * 1000)}"
        data = {
            "storeId": self.store_id,
            "orderId": order["order_number"],
            "orderRefNum": order_ref,
            "amount": f"{amount:.1f}",
            "transactionType": "MA",
            "mobileAccountNo": order.get("shipping_address", {}).get("phone", ""),
            "emailAddress": email or order.get("shipping_address", {}).get("email") or "",
            "expiryDate": (datetime.now() + timedelta(hours=24)).strftime("%Y%m%d"),
            "postBackURL": self.post_back_url or f"{CLIENT_URL}/payment/easypaisa/callback",
        }
        data["merchantHashedReq"] = self.generate_hash(data)
        logger.info("Prepared Easypaisa checkout %s for order %s", order_ref, order["order_number"])
        return {
            "success": True,
            "order_ref_num": order_ref,
            "payment_url": f"{self.api_url}/checkout",
            "data": data,
        }

    def verify_payment(self, callback: Dict[str, Any]) -> Dict[str, Any]:
        if not self.verify_hash(callback):
            return {"success": False, "error": "Invalid hash"}
        if callback.get("responseCode") != "0000":
            return {
                "success": False,
                "error": callback.get("responseDesc") or "Payment verification failed",
                "data": callback,
            }
        try:
            amount = float(callback.get("amount") or 0)
        except ValueError:
            return {"success": False, "error": "Invalid amount", "data": callback}
        return {
            "success": True,
            "transaction_id": callback.get("transactionRefNumber"),
            "order_ref_num": callback.get("orderRefNum"),
            "amount": amount,
            "data": callback,
        }

    def get_payment_status(self, order_ref_num: str) -> Dict[str, Any]:
        payload = {"storeId": self.store_id, "orderRefNum": order_ref_num}
        payload["merchantHashedReq"] = self.generate_hash(payload)
        try:
            response = requests.post(f"{self.api_url}/inquiry", json=payload, timeout=GATEWAY_TIMEOUT)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("Easypaisa status check for %s failed: %s", order_ref_num, e)
            return {"success": False, "error": str(e)}
        return {"success": body.get("responseCode") == "0000", "data": body}


jazzcash = JazzCashGateway()
easypaisa = EasypaisaGateway()


# Order state

PAYABLE_STATUSES = ("pending_advance", "advance_submitted")
CLOSED_ORDER_STATUSES = ("cancelled", "refunded", "returned")


def mark_advance_paid(order: Dict[str, Any], result: Dict[str, Any], gateway: str) -> Optional[Dict[str, Any]]:
    """Approve the advance for a verified gateway payment.

    Returns the updated order, or None when the order can no longer take an
    advance (cancelled, or already past the advance stage).
    """
    if order["advance_payment"].get("status") == "approved" and order["status"] not in CLOSED_ORDER_STATUSES:
        logger.info("Repeated %s callback for order %s ignored", gateway, order["order_number"])
        return order
    now = utcnow()
    advance = {**order["advance_payment"], "status": "approved", "approved_at": now}
    details = {
        **order.get("payment_details", {}),
        "transaction_id": result.get("transaction_id"),
        "paid_at": now,
        "payment_response": result.get("data"),
    }
    res = db["order"].update_one(
        {
            "_id": order["_id"],
            "status": {"$nin": list(CLOSED_ORDER_STATUSES)},
            "payment_status": {"$in": list(PAYABLE_STATUSES)},
        },
        {
            "$set": {
                "advance_payment": advance,
                "payment_status": "advance_approved",
                "status": "confirmed",
                "payment_details": details,
                "updated_at": now,
            },
            "$push": {"status_history": history_entry("confirmed", f"Advance paid via {gateway}")},
        },
    )
    if res.modified_count == 0:
        logger.warning(
            "%s payment %s for order %s not applied: order is %s / %s",
            gateway, result.get("transaction_id"), order["order_number"], order["status"], order["payment_status"],
        )
        return None
    order = db["order"].find_one({"_id": order["_id"]})
    logger.info("Advance for order %s paid via %s (%s)", order["order_number"], gateway, result.get("transaction_id"))
    notifications.notify_customer(
        order,
        f"Payment received - {order['order_number']}",
        notifications.payment_status_message(order, "advance", approved=True),
    )
    return order


def _payable_order(order_id: str, current_user: dict) -> Dict[str, Any]:
    order = db["order"].find_one({
        "_id": to_object_id(order_id, "order"),
        "user": ObjectId(current_user["id"]),
        "payment_status": "pending_advance",
    })
    if not order:
        raise HTTPException(status_code=404, detail="Order not found or already paid")
    return order


async def _callback_data(request: Request) -> Dict[str, Any]:
    data = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        data.update({k: v for k, v in form.items() if isinstance(v, str)})
    return data


def _failure_redirect(error: str) -> RedirectResponse:
    return RedirectResponse(f"{CLIENT_URL}/payment-failed?error={quote(error)}", status_code=302)


def _complete_payment(result: Dict[str, Any], order: Optional[Dict[str, Any]], gateway: str) -> RedirectResponse:
    if not order:
        return _failure_redirect("Order not found")
    if not mark_advance_paid(order, result, gateway):
        return _failure_redirect("Order can no longer be paid")
    return RedirectResponse(f"{CLIENT_URL}/order-success/{order['order_number']}", status_code=302)


def complete_jazzcash(data: Dict[str, Any]) -> RedirectResponse:
    result = jazzcash.verify_payment(data)
    if not result["success"]:
        logger.warning("JazzCash callback rejected: %s", result["error"])
        return _failure_redirect(result["error"])
    order = db["order"].find_one({"order_number": result["bill_reference"]})
    if not order:
        logger.error("JazzCash callback for unknown order %s", result["bill_reference"])
    return _complete_payment(result, order, "JazzCash")


def complete_easypaisa(data: Dict[str, Any]) -> RedirectResponse:
    result = easypaisa.verify_payment(data)
    if not result["success"]:
        logger.warning("Easypaisa callback rejected: %s", result["error"])
        return _failure_redirect(result["error"])
    order = db["order"].find_one({"payment_details.order_ref_num": result["order_ref_num"]})
    if not order:
        logger.error("Easypaisa callback for unknown reference %s", result["order_ref_num"])
    return _complete_payment(result, order, "Easypaisa")


# Routes

@router.post("/jazzcash/initiate")
def initiate_jazzcash(payload: PaymentInitiateInput, current_user: dict = Depends(get_current_user)):
    require_payment_method("jazzcash")
    order = _payable_order(payload.order_id, current_user)
    result = jazzcash.initiate_payment(order, amount=order["advance_payment"]["amount"])
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["error"])
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_details.transaction_ref": result["transaction_ref"], "updated_at": utcnow()}},
    )
    return result


# Callbacks only await the request body; verification and database work run in the threadpool.
@router.api_route("/jazzcash/callback", methods=["GET", "POST"])
async def jazzcash_callback(request: Request):
    return await run_in_threadpool(complete_jazzcash, await _callback_data(request))


@router.post("/easypaisa/initiate")
def initiate_easypaisa(payload: PaymentInitiateInput, current_user: dict = Depends(get_current_user)):
    require_payment_method("easypaisa")
    order = _payable_order(payload.order_id, current_user)
    result = easypaisa.initiate_payment(
        order, amount=order["advance_payment"]["amount"], email=current_user.get("email")
    )
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["error"])
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_details.order_ref_num": result["order_ref_num"], "updated_at": utcnow()}},
    )
    return result


@router.api_route("/easypaisa/callback", methods=["GET", "POST"])
async def easypaisa_callback(request: Request):
    return await run_in_threadpool(complete_easypaisa, await _callback_data(request))


@router.get("/status/{order_id}")
def payment_status(order_id: str, current_user: dict = Depends(get_current_user)):
    order = get_own_order(order_id, current_user)
    return serialize_doc({
        "order_number": order["order_number"],
        "payment_status": order["payment_status"],
        "payment_method": order["payment_method"],
        "paid_at": order.get("payment_details", {}).get("paid_at"),
    })
