"""
Customer and admin notifications

Email goes out through Resend, WhatsApp through the Cloud API. Delivery is best
effort: failures are logged and reported in the returned dict, never raised.
"""
import logging
from typing import Any, Dict, Optional

import requests
import resend

from config import (
    ADMIN_EMAIL,
    CLIENT_URL,
    FROM_EMAIL,
    RESEND_API_KEY,
    WHATSAPP_ACCESS_TOKEN,
    WHATSAPP_API_URL,
    WHATSAPP_PHONE_NUMBER_ID,
)
from database import db
from store_settings import get_settings

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY


def normalize_phone(phone: str) -> str:
    """03001234567 -> 923001234567"""
    formatted = "".join(phone.split()).lstrip("+")
    if formatted.startswith("0"):
        return "92" + formatted[1:]
    if not formatted.startswith("92"):
        return "92" + formatted
    return formatted


def send_email(to: Optional[str], subject: str, text: str) -> Dict[str, Any]:
    if not to:
        return {"success": False, "skipped": True, "error": "No recipient"}
    if not resend.api_key:
        logger.warning("Resend API key not configured, skipping email to %s", to)
        return {"success": False, "skipped": True, "error": "Email service not configured"}
    try:
        result = resend.Emails.send({"from": FROM_EMAIL, "to": [to], "subject": subject, "text": text})
    except Exception as e:
        logger.error("Failed to send email to %s: %s", to, e)
        return {"success": False, "error": str(e)}
    logger.info("Email sent to %s: %s", to, subject)
    return {"success": True, "id": result.get("id") if isinstance(result, dict) else None}


def send_whatsapp(phone: Optional[str], message: str) -> Dict[str, Any]:
    if not phone:
        return {"success": False, "skipped": True, "error": "No phone number"}
    if not (WHATSAPP_PHONE_NUMBER_ID and WHATSAPP_ACCESS_TOKEN):
        logger.info("WhatsApp not configured, skipping message to %s", phone)
        return {"success": False, "skipped": True, "error": "WhatsApp not configured"}
    try:
        response = requests.post(
            f"{WHATSAPP_API_URL}/{WHATSAPP_PHONE_NUMBER_ID}/messages",
            json={
                "messaging_product": "whatsapp",
                "to": normalize_phone(phone),
                "type": "text",
                "text": {"body": message},
            },
            headers={"Authorization": f"Bearer {WHATSAPP_ACCESS_TOKEN}"},
            timeout=10,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error("WhatsApp message to %s failed: %s", phone, e)
        return {"success": False, "error": str(e)}
    logger.info("WhatsApp message sent to %s", phone)
    return {"success": True, "data": response.json()}


# Plain-text messages

def order_confirmation_message(order: Dict[str, Any]) -> str:
    advance = order.get("advance_payment", {}).get("amount", 0)
    return (
        f"Thank you for your order {order['order_number']}!\n"
        f"Total: Rs. {order['total']:g}\n"
        f"Advance due now: Rs. {advance:g}. The balance plus shipping is paid on delivery.\n"
        f"Track it at {CLIENT_URL}/track/{order['order_number']}"
    )


def new_order_admin_message(order: Dict[str, Any]) -> str:
    address = order.get("shipping_address", {})
    return (
        f"New order {order['order_number']} from {address.get('full_name')} ({address.get('phone')}).\n"
        f"Total: Rs. {order['total']:g}, payment via {order['payment_method']}."
    )


def status_update_message(order: Dict[str, Any]) -> str:
    message = f"Your order {order['order_number']} is now {order['status'].replace('_', ' ')}."
    if order.get("tracking_number"):
        message += f"\nTracking number: {order['tracking_number']}"
    if order.get("tracking_url"):
        message += f"\nTrack: {order['tracking_url']}"
    return message


def payment_status_message(order: Dict[str, Any], stage: str, approved: bool, reason: Optional[str] = None) -> str:
    if approved:
        return f"Your {stage} payment for order {order['order_number']} has been approved. Thank you!"
    message = f"Your {stage} payment for order {order['order_number']} could not be verified."
    if reason:
        message += f"\nReason: {reason}"
    return message + "\nPlease submit the payment proof again."


def shipping_set_message(order: Dict[str, Any]) -> str:
    final = order.get("final_payment", {}).get("amount", 0)
    return (
        f"Shipping for order {order['order_number']} is Rs. {order['shipping_cost']:g}.\n"
        f"Remaining amount due on delivery: Rs. {final:g}."
    )


def design_quote_message(design: Dict[str, Any]) -> str:
    message = f"Your custom design {design['design_number']} has been quoted at Rs. {design['quoted_price']:g} per piece."
    if design.get("estimated_days"):
        message += f"\nEstimated time: {design['estimated_days']} days."
    return message + f"\nReview and accept it at {CLIENT_URL}/custom-design/{design['_id']}"


def password_reset_message(reset_url: str) -> str:
    return (
        "You requested a password reset for your Angel Baby Dresses account.\n"
        f"Open this link within 30 minutes to choose a new password: {reset_url}\n"
        "If you did not request this, you can ignore this email."
    )


def sale_promotion_message(sale: Dict[str, Any]) -> str:
    name = (sale.get("name") or {}).get("en", "Sale")
    if sale.get("type") == "percentage":
        offer = f"{sale['discount_value']:g}% off"
    else:
        offer = f"Rs. {sale['discount_value']:g} off"
    end_date = sale.get("end_date")
    ends = f" until {end_date:%d %b %Y}" if end_date else ""
    return f"{name}: {offer}{ends}!\nShop now at {CLIENT_URL}/sale"


# Delivery helpers

def notify_customer(order: Dict[str, Any], subject: str, text: str, email: Optional[str] = None,
                    email_toggle: Optional[str] = None) -> None:
    """Email and WhatsApp the customer, honouring the store's notification toggles.

    ``email_toggle`` names the setting under ``notifications`` that must be on
    for the email to go out; without one the email is always sent.
    """
    toggles = get_settings(db).get("notifications", {})
    address = order.get("shipping_address") or {}
    if email_toggle is None or toggles.get(email_toggle, True):
        send_email(email or address.get("email"), subject, text)
    if toggles.get("whatsapp_notifications", False):
        send_whatsapp(address.get("phone"), text)


def notify_admin(subject: str, text: str) -> None:
    send_email(ADMIN_EMAIL, subject, text)
