def _add(client, headers, product, quantity=1):
    res = client.post("/api/cart/add", json={"product_id": str(product["_id"]), "quantity": quantity}, headers=headers)
    assert res.status_code == 200, res.text


def _checkout(client, headers, shipping_address, **extra):
    return client.post(
        "/api/orders",
        json={"shipping_address": shipping_address, "payment_method": "jazzcash", **extra},
        headers=headers,
    )


def test_empty_cart_cannot_be_ordered(client, customer_headers, shipping_address):
    res = _checkout(client, customer_headers, shipping_address)
    assert res.status_code == 400
    assert res.json()["detail"] == "Cart is empty"


def test_place_order(client, customer_headers, product, shipping_address, db):
    _add(client, customer_headers, product, quantity=2)
    res = _checkout(client, customer_headers, shipping_address, notes="Gift wrap please")
    assert res.status_code == 201
    body = res.json()
    order = body["order"]

    assert order["order_number"].startswith("ABD")
    assert order["subtotal"] == 2000
    assert order["shipping_cost"] == 200
    assert order["total"] == 2200
    assert order["advance_payment"] == {"amount": 1000, "status": "pending", "screenshot": None, "submitted_at": None}
    assert order["final_payment"]["amount"] == 1200
    assert order["payment_status"] == "pending_advance"
    assert order["status_history"][0]["status"] == "pending"
    assert order["items"][0]["name"] == product["name"]["en"]
    assert body["payment_details"]["advance_amount"] == 1000
    assert "easypaisa" in body["payment_details"]["accounts"]

    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["stock"] == 8
    assert stored["sold_count"] == 2
    assert db["cart"].find_one({})["items"] == []


def test_free_shipping_over_threshold(client, customer_headers, make_product, shipping_address):
    _add(client, customer_headers, make_product(price=3500))
    order = _checkout(client, customer_headers, shipping_address).json()["order"]
    assert order["shipping_cost"] == 0
    assert order["total"] == 3500


def test_order_with_screenshot_is_submitted(client, customer_headers, product, shipping_address):
    _add(client, customer_headers, product)
    res = _checkout(client, customer_headers, shipping_address, screenshot={"url": "https://img.test/proof.jpg"})
    order = res.json()["order"]
    assert order["payment_status"] == "advance_submitted"
    assert order["advance_payment"]["status"] == "submitted"


def test_insufficient_stock(client, customer_headers, make_product, shipping_address, db):
    product = make_product(stock=1)
    _add(client, customer_headers, product, quantity=3)
    res = _checkout(client, customer_headers, shipping_address)
    assert res.status_code == 409
    assert res.json()["detail"] == f"Insufficient stock for {product['name']['en']}"
    assert db["order"].count_documents({}) == 0
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 1


def test_made_to_order_ignores_stock(client, customer_headers, make_product, shipping_address, db):
    product = make_product(stock=0, made_to_order=True)
    _add(client, customer_headers, product, quantity=2)
    res = _checkout(client, customer_headers, shipping_address)
    assert res.status_code == 201
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["stock"] == 0
    assert stored["sold_count"] == 2


def test_deactivated_product_blocks_checkout(client, customer_headers, product, shipping_address, db):
    _add(client, customer_headers, product)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"is_active": False}})
    res = _checkout(client, customer_headers, shipping_address)
    assert res.status_code == 400
    assert "no longer available" in res.json()["detail"]


def test_coupon_is_applied_and_recorded(client, customer, customer_headers, product, make_coupon, shipping_address, db):
    make_coupon()
    _add(client, customer_headers, product, quantity=2)
    client.post("/api/cart/coupon", json={"code": "WELCOME10"}, headers=customer_headers)

    order = _checkout(client, customer_headers, shipping_address).json()["order"]
    assert order["discount"] == 200
    assert order["coupon_code"] == "WELCOME10"
    assert order["total"] == 2000
    assert order["final_payment"]["amount"] == 1000

    coupon = db["coupon"].find_one({"code": "WELCOME10"})
    assert coupon["usage_count"] == 1
    assert coupon["used_by"][0]["user"] == customer["_id"]


def test_coupon_used_up_meanwhile_fails_checkout(client, customer_headers, product, make_coupon, shipping_address, db):
    make_coupon(usage_limit=1)
    _add(client, customer_headers, product)
    client.post("/api/cart/coupon", json={"code": "WELCOME10"}, headers=customer_headers)
    db["coupon"].update_one({"code": "WELCOME10"}, {"$set": {"usage_count": 1}})

    res = _checkout(client, customer_headers, shipping_address)
    assert res.status_code == 400
    assert res.json()["detail"] == "Coupon usage limit reached"


def test_my_orders_and_detail(client, customer_headers, other_headers, product, place_order):
    order = place_order(customer_headers, product)
    assert [o["id"] for o in client.get("/api/orders/my-orders", headers=customer_headers).json()] == [order["id"]]
    assert client.get(f"/api/orders/{order['id']}", headers=customer_headers).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=other_headers).status_code == 404


def test_track_order_by_number(client, customer_headers, product, place_order):
    order = place_order(customer_headers, product)
    res = client.get(f"/api/orders/track/{order['order_number'].lower()}")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "pending"
    assert "advance_payment" not in body
    assert client.get("/api/orders/track/ABD00000000").status_code == 404


def test_payment_accounts_are_public(client):
    body = client.get("/api/orders/payment-accounts").json()
    assert set(body) == {"easypaisa", "jazzcash", "bank"}


def test_cancel_restores_stock(client, customer_headers, product, place_order, db):
    order = place_order(customer_headers, product, quantity=3)
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 7

    res = client.put(f"/api/orders/{order['id']}/cancel", headers=customer_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["stock"] == 10
    assert stored["sold_count"] == 0

    res = client.put(f"/api/orders/{order['id']}/cancel", headers=customer_headers)
    assert res.status_code == 400
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 10


def test_shipped_order_cannot_be_cancelled(client, customer_headers, product, place_order, db):
    order = place_order(customer_headers, product)
    db["order"].update_one({"order_number": order["order_number"]}, {"$set": {"status": "shipped"}})
    res = client.put(f"/api/orders/{order['id']}/cancel", headers=customer_headers)
    assert res.status_code == 400


def test_advance_payment_proof(client, customer_headers, product, place_order):
    order = place_order(customer_headers, product)
    proof = {"screenshot": {"url": "https://img.test/advance.jpg"}}

    res = client.post(f"/api/orders/{order['id']}/advance-payment", json=proof, headers=customer_headers)
    assert res.status_code == 200
    assert res.json()["payment_status"] == "advance_submitted"
    assert res.json()["advance_payment"]["screenshot"]["url"] == "https://img.test/advance.jpg"

    res = client.post(f"/api/orders/{order['id']}/advance-payment", json=proof, headers=customer_headers)
    assert res.status_code == 400


def test_final_payment_needs_approved_advance(client, customer_headers, product, place_order, db):
    order = place_order(customer_headers, product)
    proof = {"screenshot": {"url": "https://img.test/final.jpg"}}

    res = client.post(f"/api/orders/{order['id']}/final-payment", json=proof, headers=customer_headers)
    assert res.status_code == 400

    db["order"].update_one(
        {"order_number": order["order_number"]},
        {"$set": {"advance_payment.status": "approved", "payment_status": "advance_approved"}},
    )
    res = client.post(f"/api/orders/{order['id']}/final-payment", json=proof, headers=customer_headers)
    assert res.status_code == 200
    assert res.json()["payment_status"] == "final_submitted"
    assert res.json()["final_payment"]["method"] == "online"


def test_new_order_notifies_customer_and_admin(client, customer_headers, product, place_order, monkeypatch):
    import notifications

    sent = []
    monkeypatch.setattr(notifications, "send_email", lambda to, subject, text: sent.append((to, subject)) or {"success": True})
    order = place_order(customer_headers, product)
    recipients = [to for to, _ in sent]
    assert "ayesha@example.com" in recipients
    assert notifications.ADMIN_EMAIL in recipients
    assert any(order["order_number"] in subject for _, subject in sent)


def test_large_coupon_never_makes_advance_exceed_total(client, customer_headers, product, make_coupon, shipping_address):
    make_coupon(code="FREEFROCK", type="fixed", discount_value=1000)
    _add(client, customer_headers, product)
    client.post("/api/cart/coupon", json={"code": "FREEFROCK"}, headers=customer_headers)

    body = _checkout(client, customer_headers, shipping_address).json()
    order = body["order"]
    assert order["discount"] == 1000
    assert order["total"] == 200
    assert order["advance_payment"]["amount"] == 200
    assert order["final_payment"]["amount"] == 0
    assert body["payment_details"]["advance_amount"] + body["payment_details"]["final_amount"] == order["total"]


def test_stock_reservation_rolls_back_on_conflict(client, customer_headers, make_product, shipping_address,
                                                  monkeypatch, db):
    import orders

    first = make_product(stock=5)
    second = make_product(stock=5)
    _add(client, customer_headers, first, quantity=2)
    _add(client, customer_headers, second, quantity=2)

    insert_order = orders.insert_order

    def insert_then_sell_out(order):
        inserted = insert_order(order)
        db["product"].update_one({"_id": second["_id"]}, {"$set": {"stock": 1}})
        return inserted

    monkeypatch.setattr(orders, "insert_order", insert_then_sell_out)
    res = _checkout(client, customer_headers, shipping_address)
    assert res.status_code == 409
    assert res.json()["detail"] == "Insufficient stock for one or more items"
    assert db["order"].count_documents({}) == 0

    restored = db["product"].find_one({"_id": first["_id"]})
    assert restored["stock"] == 5
    assert restored["sold_count"] == 0
    assert db["product"].find_one({"_id": second["_id"]})["stock"] == 1
    assert len(db["cart"].find_one({})["items"]) == 2


def test_disabled_payment_method_is_refused(client, customer_headers, product, shipping_address, db):
    _add(client, customer_headers, product)
    res = _checkout(client, customer_headers, shipping_address, payment_method="bank_transfer")
    assert res.status_code == 400
    assert res.json()["detail"] == "Bank transfer payments are currently unavailable"

    db["setting"].update_one({}, {"$set": {"payment.bank_transfer_enabled": True}})
    res = _checkout(client, customer_headers, shipping_address, payment_method="bank_transfer")
    assert res.status_code == 201


def test_whatsapp_follows_notification_setting(client, customer_headers, product, place_order, monkeypatch, db):
    import notifications

    messages = []
    monkeypatch.setattr(notifications, "send_whatsapp", lambda phone, text: messages.append(phone) or {"success": True})

    place_order(customer_headers, product)
    assert messages == ["03001234567"]

    db["setting"].update_one({}, {"$set": {"notifications.whatsapp_notifications": False}})
    place_order(customer_headers, product)
    assert messages == ["03001234567"]
