import logging
from typing import Any, Dict

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pymongo.errors import DuplicateKeyError

import notifications
from auth import get_current_user
from database import db
from orders import history_entry, insert_order, payment_instructions, require_payment_method
from pricing import split_payment
from schemas import AcceptQuoteInput, CustomDesign as CustomDesignSchema, CustomDesignInput, DesignMessageInput, Order as OrderSchema
from utils import generate_reference, serialize_doc, to_object_id, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/custom-design", tags=["custom-design"])

CANCELLABLE_STATUSES = ("pending", "reviewing", "quoted")


def get_own_design(design_id: str, current_user: dict) -> Dict[str, Any]:
    design = db["customdesign"].find_one({
        "_id": to_object_id(design_id, "design"),
        "user": ObjectId(current_user["id"]),
    })
    if not design:
        raise HTTPException(status_code=404, detail="Custom design not found")
    return design


def message_entry(sender: str, message: str, attachments=None) -> Dict[str, Any]:
    return {"sender": sender, "message": message, "attachments": attachments or [], "sent_at": utcnow()}


@router.post("", status_code=201)
def create_design(payload: CustomDesignInput, current_user: dict = Depends(get_current_user)):
    colors = payload.preferred_colors or []
    if isinstance(colors, str):
        colors = [c.strip() for c in colors.split(",") if c.strip()]
    notes = payload.additional_notes
    if payload.fabric_preference:
        notes = f"{notes or ''}\nFabric Preference: {payload.fabric_preference}".strip()

    design = CustomDesignSchema(
        user=ObjectId(current_user["id"]),
        design_number="pending",
        type="upload",
        uploaded_images=payload.uploaded_images,
        description=payload.description,
        product_type=payload.product_type,
        size=payload.size,
        quantity=payload.quantity,
        preferred_colors=colors,
        additional_notes=notes,
        reference_links=payload.reference_links,
        customer_contact={
            "phone": payload.whatsapp_number,
            "whatsapp": payload.whatsapp_number,
            "preferred_contact": "whatsapp",
        },
    ).model_dump()
    for _ in range(5):
        design["design_number"] = generate_reference("CD")
        try:
            db["customdesign"].insert_one(design)
            break
        except DuplicateKeyError:
            design.pop("_id", None)
    else:
        raise HTTPException(status_code=500, detail="Could not allocate a design number")

    logger.info("Custom design %s submitted by %s", design["design_number"], current_user.get("email"))
    notifications.notify_admin(
        f"New custom design request {design['design_number']}",
        f"{current_user.get('name')} requested a custom {design['product_type']} ({design['size']}, qty {design['quantity']}).",
    )
    return serialize_doc(design)


@router.get("/my-designs")
def my_designs(current_user: dict = Depends(get_current_user)):
    cursor = db["customdesign"].find({"user": ObjectId(current_user["id"])}).sort("created_at", -1)
    return [serialize_doc(d) for d in cursor]


@router.get("/{design_id}")
def get_design(design_id: str, current_user: dict = Depends(get_current_user)):
    design = get_own_design(design_id, current_user)
    if design.get("order"):
        design["order"] = db["order"].find_one({"_id": design["order"]}) or design["order"]
    return serialize_doc(design)


@router.post("/{design_id}/message")
def add_message(design_id: str, payload: DesignMessageInput, current_user: dict = Depends(get_current_user)):
    design = get_own_design(design_id, current_user)
    attachments = [a.model_dump() for a in payload.attachments]
    db["customdesign"].update_one(
        {"_id": design["_id"]},
        {
            "$push": {"conversation": message_entry("customer", payload.message, attachments)},
            "$set": {"updated_at": utcnow()},
        },
    )
    notifications.notify_admin(
        f"New message on design {design['design_number']}",
        payload.message,
    )
    return serialize_doc(db["customdesign"].find_one({"_id": design["_id"]}))


@router.post("/{design_id}/accept")
def accept_quote(design_id: str, payload: AcceptQuoteInput, current_user: dict = Depends(get_current_user)):
    design = get_own_design(design_id, current_user)
    if design.get("status") != "quoted":
        raise HTTPException(status_code=400, detail="Design has not been quoted yet")
    if not design.get("quoted_price"):
        raise HTTPException(status_code=400, detail="No quote available for this design")
    require_payment_method(payload.payment_method)

    subtotal = design["quoted_price"] * design["quantity"]
    split = split_payment(subtotal)
    images = design.get("uploaded_images") or []
    order = OrderSchema(
        order_number="pending",
        user=design["user"],
        items=[{
            "product": None,
            "name": f"Custom Design - {design['design_number']}",
            "image": images[0]["url"] if images else None,
            "price": design["quoted_price"],
            "quantity": design["quantity"],
            "age_range": design["size"],
            "made_to_order": True,
        }],
        subtotal=subtotal,
        shipping_cost=0,
        discount=0,
        total=subtotal,
        payment_method=payload.payment_method,
        payment_status="pending_advance",
        advance_payment={"amount": split["advance"], "status": "pending"},
        final_payment={"amount": split["final"], "method": "cod", "status": "cod_pending"},
        shipping_address=payload.shipping_address.model_dump(),
        is_custom_order=True,
        custom_design=design["_id"],
        status_history=[history_entry("pending", "Custom design order created - awaiting advance payment")],
    ).model_dump()

    order = insert_order(order)
    res = db["customdesign"].update_one(
        {"_id": design["_id"], "status": "quoted"},
        {"$set": {"status": "accepted", "order": order["_id"], "updated_at": utcnow()}},
    )
    if res.modified_count == 0:
        db["order"].delete_one({"_id": order["_id"]})
        raise HTTPException(status_code=400, detail="Design has not been quoted yet")
    logger.info("Quote for design %s accepted, order %s created", design["design_number"], order["order_number"])

    return {
        "design": serialize_doc(db["customdesign"].find_one({"_id": design["_id"]})),
        "order": serialize_doc(order),
        "payment_details": payment_instructions(order),
    }


@router.put("/{design_id}/cancel")
def cancel_design(design_id: str, current_user: dict = Depends(get_current_user)):
    design = get_own_design(design_id, current_user)
    if design.get("status") not in CANCELLABLE_STATUSES:
        raise HTTPException(status_code=400, detail="Design cannot be cancelled at this stage")
    db["customdesign"].update_one(
        {"_id": design["_id"]},
        {"$set": {"status": "cancelled", "updated_at": utcnow()}},
    )
    logger.info("Custom design %s cancelled by customer", design["design_number"])
    return serialize_doc(db["customdesign"].find_one({"_id": design["_id"]}))
