import pytest
from bson import ObjectId

DESIGN = {
    "description": "Pastel lehenga with mirror work for a 3 year old",
    "product_type": "outfit",
    "size": "2-3 Years",
    "quantity": 2,
    "whatsapp_number": "03001234567",
    "preferred_colors": "peach, mint ,",
    "fabric_preference": "Chiffon",
    "additional_notes": "Needed before Eid",
    "uploaded_images": [{"url": "https://img.test/inspo.jpg"}],
}


@pytest.fixture
def design(client, customer_headers):
    res = client.post("/api/custom-design", json=DESIGN, headers=customer_headers)
    assert res.status_code == 201, res.text
    return res.json()


def _quote(db, design, price=2500):
    db["customdesign"].update_one(
        {"_id": ObjectId(design["id"])}, {"$set": {"status": "quoted", "quoted_price": price}}
    )


def test_submit_design(design):
    assert design["design_number"].startswith("CD")
    assert design["status"] == "pending"
    assert design["preferred_colors"] == ["peach", "mint"]
    assert design["additional_notes"] == "Needed before Eid\nFabric Preference: Chiffon"
    assert design["customer_contact"]["whatsapp"] == "03001234567"


def test_invalid_whatsapp_number(client, customer_headers):
    res = client.post("/api/custom-design", json={**DESIGN, "whatsapp_number": "12-34"}, headers=customer_headers)
    assert res.status_code == 422


def test_designs_are_private(client, design, customer_headers, other_headers):
    assert len(client.get("/api/custom-design/my-designs", headers=customer_headers).json()) == 1
    assert client.get("/api/custom-design/my-designs", headers=other_headers).json() == []
    assert client.get(f"/api/custom-design/{design['id']}", headers=other_headers).status_code == 404


def test_customer_message(client, design, customer_headers):
    res = client.post(
        f"/api/custom-design/{design['id']}/message",
        json={"message": "Can you add a dupatta?"},
        headers=customer_headers,
    )
    assert res.status_code == 200
    entry = res.json()["conversation"][-1]
    assert entry["sender"] == "customer"
    assert entry["message"] == "Can you add a dupatta?"


def test_accept_requires_quote(client, design, customer_headers, shipping_address):
    res = client.post(
        f"/api/custom-design/{design['id']}/accept",
        json={"shipping_address": shipping_address, "payment_method": "easypaisa"},
        headers=customer_headers,
    )
    assert res.status_code == 400


def test_accept_quote_creates_order(client, design, customer_headers, shipping_address, db):
    _quote(db, design, price=2500)
    res = client.post(
        f"/api/custom-design/{design['id']}/accept",
        json={"shipping_address": shipping_address, "payment_method": "easypaisa"},
        headers=customer_headers,
    )
    assert res.status_code == 200
    body = res.json()
    order = body["order"]
    assert body["design"]["status"] == "accepted"
    assert body["design"]["order"] == order["id"]
    assert order["is_custom_order"] is True
    assert order["subtotal"] == 5000
    assert order["advance_payment"]["amount"] == 2500
    assert order["final_payment"]["amount"] == 2500
    assert order["items"][0]["product"] is None
    assert body["payment_details"]["advance_amount"] == 2500

    res = client.post(
        f"/api/custom-design/{design['id']}/accept",
        json={"shipping_address": shipping_address, "payment_method": "easypaisa"},
        headers=customer_headers,
    )
    assert res.status_code == 400
    assert db["order"].count_documents({}) == 1

    detail = client.get(f"/api/custom-design/{design['id']}", headers=customer_headers).json()
    assert detail["order"]["order_number"] == order["order_number"]


def test_cancelling_custom_order_leaves_products_alone(client, design, customer_headers, shipping_address, db):
    _quote(db, design)
    order = client.post(
        f"/api/custom-design/{design['id']}/accept",
        json={"shipping_address": shipping_address, "payment_method": "jazzcash"},
        headers=customer_headers,
    ).json()["order"]
    res = client.put(f"/api/orders/{order['id']}/cancel", headers=customer_headers)
    assert res.status_code == 200


def test_cancel_design(client, design, customer_headers, db):
    res = client.put(f"/api/custom-design/{design['id']}/cancel", headers=customer_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"
    assert client.put(f"/api/custom-design/{design['id']}/cancel", headers=customer_headers).status_code == 400


def test_failed_order_creation_leaves_design_quoted(client, design, customer_headers, shipping_address, monkeypatch, db):
    import custom_designs
    from fastapi import HTTPException

    def no_order_number(order):
        raise HTTPException(status_code=500, detail="Could not allocate an order number")

    _quote(db, design)
    monkeypatch.setattr(custom_designs, "insert_order", no_order_number)
    res = client.post(
        f"/api/custom-design/{design['id']}/accept",
        json={"shipping_address": shipping_address, "payment_method": "easypaisa"},
        headers=customer_headers,
    )
    assert res.status_code == 500
    stored = db["customdesign"].find_one({"_id": ObjectId(design["id"])})
    assert stored["status"] == "quoted"
    assert stored.get("order") is None
    assert db["order"].count_documents({}) == 0


def test_concurrent_accept_keeps_a_single_order(client, design, customer_headers, shipping_address, monkeypatch, db):
    import custom_designs

    real_insert = custom_designs.insert_order

    def accepted_elsewhere(order):
        order = real_insert(order)
        db["customdesign"].update_one({"_id": ObjectId(design["id"])}, {"$set": {"status": "accepted"}})
        return order

    _quote(db, design)
    monkeypatch.setattr(custom_designs, "insert_order", accepted_elsewhere)
    res = client.post(
        f"/api/custom-design/{design['id']}/accept",
        json={"shipping_address": shipping_address, "payment_method": "easypaisa"},
        headers=customer_headers,
    )
    assert res.status_code == 400
    assert db["order"].count_documents({}) == 0


def test_accept_refuses_disabled_payment_method(client, design, customer_headers, shipping_address, db):
    _quote(db, design)
    res = client.post(
        f"/api/custom-design/{design['id']}/accept",
        json={"shipping_address": shipping_address, "payment_method": "bank_transfer"},
        headers=customer_headers,
    )
    assert res.status_code == 400
    assert db["customdesign"].find_one({"_id": ObjectId(design["id"])})["status"] == "quoted"
