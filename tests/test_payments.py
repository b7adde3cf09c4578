import hashlib
import hmac

import pytest
import requests

import payments
from payments import EasypaisaGateway, JazzCashGateway


@pytest.fixture
def jazzcash(monkeypatch):
    gateway = JazzCashGateway(
        merchant_id="MC1234", password="pass", integrity_salt="s3cr3t",
        return_url="http://shop.test/callback", api_url="https://sandbox.test/Payment/DoTransaction",
    )
    monkeypatch.setattr(payments, "jazzcash", gateway)
    return gateway


@pytest.fixture
def easypaisa(monkeypatch):
    gateway = EasypaisaGateway(store_id="1234", hash_key="hk", api_url="https://easypay.test/easypay/")
    monkeypatch.setattr(payments, "easypaisa", gateway)
    return gateway


def _signed_callback(gateway, **values):
    data = {
        "pp_ResponseCode": "000",
        "pp_ResponseMessage": "Thank you for Using JazzCash",
        "pp_TxnRefNo": "T1700000000000",
        "pp_Amount": "50000",
        "pp_BillReference": "ABD25010001",
        **values,
    }
    data["pp_SecureHash"] = gateway.generate_secure_hash(data)
    return data


# JazzCash

def test_jazzcash_hash_skips_empty_values_and_sorts_keys(jazzcash):
    expected = hmac.new(b"s3cr3t", b"s3cr3t&1&3", hashlib.sha256).hexdigest().upper()
    assert jazzcash.generate_secure_hash({"b": "", "c": "3", "a": "1", "pp_SecureHash": "x"}) == expected


def test_jazzcash_verify_accepts_signed_callback(jazzcash):
    result = jazzcash.verify_payment(_signed_callback(jazzcash))
    assert result["success"] is True
    assert result["amount"] == 500
    assert result["bill_reference"] == "ABD25010001"


def test_jazzcash_verify_rejects_tampering(jazzcash):
    callback = _signed_callback(jazzcash)
    callback["pp_Amount"] = "100"
    assert jazzcash.verify_payment(callback) == {"success": False, "error": "Invalid secure hash"}


def test_jazzcash_verify_reports_gateway_decline(jazzcash):
    result = jazzcash.verify_payment(_signed_callback(jazzcash, pp_ResponseCode="124", pp_ResponseMessage="Declined"))
    assert result["success"] is False
    assert result["error"] == "Declined"


def test_jazzcash_initiate_sends_amount_in_paisa(jazzcash, monkeypatch):
    sent = {}

    def fake_post(url, data):
        sent.update(data)
        return {"pp_ResponseCode": "000", "pp_BankURL": "https://bank.test/pay"}

    monkeypatch.setattr(jazzcash, "_post", fake_post)
    result = jazzcash.initiate_payment({"order_number": "ABD25010001", "total": 1200}, amount=500)
    assert result["success"] is True
    assert result["redirect_url"] == "https://bank.test/pay"
    assert sent["pp_Amount"] == "50000"
    assert sent["pp_BillReference"] == "ABD25010001"
    assert sent["pp_SecureHash"] == jazzcash.generate_secure_hash(sent)


def test_jazzcash_transport_error_is_reported(jazzcash, monkeypatch):
    def broken(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(payments.requests, "post", broken)
    result = jazzcash.initiate_payment({"order_number": "ABD25010001", "total": 1200})
    assert result == {"success": False, "error": "connection refused"}


# Easypaisa

def test_easypaisa_hash(easypaisa):
    data = {"amount": "500.0", "orderRefNum": "EP1", "storeId": "1234"}
    assert easypaisa.generate_hash(data) == hashlib.sha256(b"500.0EP11234hk").hexdigest()


def test_easypaisa_verify(easypaisa):
    data = {
        "amount": "500.0", "orderRefNum": "EP1", "storeId": "1234",
        "responseCode": "0000", "transactionRefNumber": "99",
    }
    data["hashRequest"] = easypaisa.generate_hash(data)
    result = easypaisa.verify_payment(data)
    assert result["success"] is True
    assert result["transaction_id"] == "99"
    assert result["amount"] == 500.0

    data["amount"] = "1.0"
    assert easypaisa.verify_payment(data) == {"success": False, "error": "Invalid hash"}


def test_easypaisa_initiate_builds_checkout(easypaisa):
    order = {"order_number": "ABD25010001", "total": 1200, "shipping_address": {"phone": "03001234567"}}
    result = easypaisa.initiate_payment(order, amount=500, email="ayesha@example.com")
    assert result["payment_url"] == "https://easypay.test/easypay/checkout"
    assert result["order_ref_num"].startswith("EP")
    assert result["data"]["amount"] == "500.0"
    assert result["data"]["emailAddress"] == "ayesha@example.com"
    assert result["data"]["mobileAccountNo"] == "03001234567"
    assert result["data"]["merchantHashedReq"] == easypaisa.generate_hash(result["data"])


def test_easypaisa_status_inquiry_is_signed(easypaisa, monkeypatch):
    sent = {}

    class Response:
        def raise_for_status(self):
            pass

        def json(self):
            return {"responseCode": "0000", "transactionStatus": "PAID"}

    def fake_post(url, json, timeout):
        sent.update(url=url, **json)
        return Response()

    monkeypatch.setattr(payments.requests, "post", fake_post)
    result = easypaisa.get_payment_status("EP1")
    assert result["success"] is True
    assert sent["url"] == "https://easypay.test/easypay/inquiry"
    assert sent["merchantHashedReq"] == easypaisa.generate_hash({"orderRefNum": "EP1", "storeId": "1234"})


# Routes

def test_jazzcash_flow_confirms_order(client, customer_headers, product, place_order, jazzcash, monkeypatch, db):
    monkeypatch.setattr(jazzcash, "_post", lambda url, data: {"pp_ResponseCode": "000", "pp_BankURL": "https://bank.test"})
    order = place_order(customer_headers, product)

    res = client.post("/api/payments/jazzcash/initiate", json={"order_id": order["id"]}, headers=customer_headers)
    assert res.status_code == 200
    txn_ref = res.json()["transaction_ref"]

    callback = _signed_callback(jazzcash, pp_TxnRefNo=txn_ref, pp_BillReference=order["order_number"])
    res = client.get("/api/payments/jazzcash/callback", params=callback, follow_redirects=False)
    assert res.status_code == 302
    assert res.headers["location"].endswith(f"/order-success/{order['order_number']}")

    stored = db["order"].find_one({"order_number": order["order_number"]})
    assert stored["status"] == "confirmed"
    assert stored["payment_status"] == "advance_approved"
    assert stored["advance_payment"]["status"] == "approved"
    assert stored["payment_details"]["transaction_id"] == txn_ref

    res = client.post("/api/payments/jazzcash/initiate", json={"order_id": order["id"]}, headers=customer_headers)
    assert res.status_code == 404


def test_jazzcash_callback_with_bad_hash_redirects_to_failure(client, jazzcash):
    callback = _signed_callback(jazzcash)
    callback["pp_SecureHash"] = "0" * 64
    res = client.get("/api/payments/jazzcash/callback", params=callback, follow_redirects=False)
    assert res.status_code == 302
    assert "/payment-failed?error=Invalid%20secure%20hash" in res.headers["location"]


def test_jazzcash_initiate_failure_is_400(client, customer_headers, product, place_order, jazzcash, monkeypatch):
    monkeypatch.setattr(
        jazzcash, "_post", lambda url, data: {"pp_ResponseCode": "110", "pp_ResponseMessage": "Invalid merchant"}
    )
    order = place_order(customer_headers, product)
    res = client.post("/api/payments/jazzcash/initiate", json={"order_id": order["id"]}, headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid merchant"


def test_easypaisa_flow_confirms_order(client, customer_headers, product, place_order, easypaisa, db):
    order = place_order(customer_headers, product)
    res = client.post("/api/payments/easypaisa/initiate", json={"order_id": order["id"]}, headers=customer_headers)
    assert res.status_code == 200
    ref = res.json()["order_ref_num"]

    callback = {
        "amount": "500.0", "orderRefNum": ref, "storeId": "1234",
        "responseCode": "0000", "transactionRefNumber": "77",
    }
    callback["hashRequest"] = easypaisa.generate_hash(callback)
    res = client.post("/api/payments/easypaisa/callback", data=callback, follow_redirects=False)
    assert res.status_code == 302

    stored = db["order"].find_one({"order_number": order["order_number"]})
    assert stored["payment_status"] == "advance_approved"
    assert stored["payment_details"]["transaction_id"] == "77"

    res = client.get(f"/api/payments/status/{order['id']}", headers=customer_headers)
    assert res.json()["payment_status"] == "advance_approved"


def test_cannot_pay_someone_elses_order(client, customer_headers, other_headers, product, place_order, easypaisa):
    order = place_order(customer_headers, product)
    res = client.post("/api/payments/easypaisa/initiate", json={"order_id": order["id"]}, headers=other_headers)
    assert res.status_code == 404


def test_callback_for_cancelled_order_is_not_applied(client, customer_headers, make_product, place_order, jazzcash, db):
    product = make_product(stock=10)
    order = place_order(customer_headers, product, quantity=2)
    client.put(f"/api/orders/{order['id']}/cancel", headers=customer_headers)

    callback = _signed_callback(jazzcash, pp_BillReference=order["order_number"])
    res = client.get("/api/payments/jazzcash/callback", params=callback, follow_redirects=False)
    assert res.status_code == 302
    assert "/payment-failed?error=" in res.headers["location"]

    stored = db["order"].find_one({"order_number": order["order_number"]})
    assert stored["status"] == "cancelled"
    assert stored["payment_status"] == "rejected"
    assert stored["advance_payment"]["status"] == "pending"
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 10


def test_repeated_callback_is_recorded_once(client, customer_headers, product, place_order, jazzcash, db):
    order = place_order(customer_headers, product)
    callback = _signed_callback(jazzcash, pp_BillReference=order["order_number"])
    for _ in range(2):
        res = client.post("/api/payments/jazzcash/callback", data=callback, follow_redirects=False)
        assert res.headers["location"].endswith(f"/order-success/{order['order_number']}")

    history = db["order"].find_one({"order_number": order["order_number"]})["status_history"]
    assert [h["status"] for h in history] == ["pending", "confirmed"]


def test_disabled_gateway_cannot_be_started(client, customer_headers, product, place_order, easypaisa, db):
    order = place_order(customer_headers, product)
    db["setting"].update_one({}, {"$set": {"payment.easypaisa_enabled": False}})
    res = client.post("/api/payments/easypaisa/initiate", json={"order_id": order["id"]}, headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Easypaisa payments are currently unavailable"
