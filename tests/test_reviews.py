def _review(client, headers, product, rating=5, **extra):
    body = {"product_id": str(product["_id"]), "rating": rating, "comment": "Lovely stitching", **extra}
    return client.post("/api/reviews", json=body, headers=headers)


def test_create_review_updates_rating(client, customer_headers, other_headers, product, db):
    res = _review(client, customer_headers, product, rating=5, title="Perfect fit")
    assert res.status_code == 201
    assert res.json()["user"]["name"] == "Ayesha Khan"
    assert res.json()["is_verified_purchase"] is False

    _review(client, other_headers, product, rating=2)
    ratings = db["product"].find_one({"_id": product["_id"]})["ratings"]
    assert ratings == {"average": 3.5, "count": 2}


def test_one_review_per_product(client, customer_headers, product):
    _review(client, customer_headers, product)
    res = _review(client, customer_headers, product)
    assert res.status_code == 400
    assert res.json()["detail"] == "You have already reviewed this product"


def test_review_unknown_product(client, customer_headers):
    res = _review(client, customer_headers, {"_id": "64b7f0c2a1b2c3d4e5f60718"})
    assert res.status_code == 404


def test_verified_purchase(client, customer_headers, product, place_order, db):
    order = place_order(customer_headers, product)
    db["order"].update_one({"order_number": order["order_number"]}, {"$set": {"status": "delivered"}})
    res = _review(client, customer_headers, product)
    assert res.json()["is_verified_purchase"] is True
    assert res.json()["order"] == order["id"]


def test_product_reviews_with_distribution(client, customer_headers, other_headers, product, db):
    _review(client, customer_headers, product, rating=4)
    _review(client, other_headers, product, rating=2)
    db["review"].update_one({"rating": 2}, {"$set": {"is_approved": False}})

    body = client.get(f"/api/reviews/product/{product['_id']}").json()
    assert body["total"] == 1
    assert body["rating_distribution"] == {"5": 0, "4": 1, "3": 0, "2": 0, "1": 0}
    assert body["items"][0]["user"]["name"] == "Ayesha Khan"


def test_update_and_delete_own_review(client, customer_headers, other_headers, product, db):
    review_id = _review(client, customer_headers, product, rating=5).json()["id"]

    assert client.put(f"/api/reviews/{review_id}", json={"rating": 1}, headers=other_headers).status_code == 404
    res = client.put(f"/api/reviews/{review_id}", json={"rating": 3}, headers=customer_headers)
    assert res.status_code == 200
    assert db["product"].find_one({"_id": product["_id"]})["ratings"]["average"] == 3

    mine = client.get("/api/reviews/my-reviews", headers=customer_headers).json()
    assert mine[0]["product"]["slug"] == product["slug"]

    assert client.delete(f"/api/reviews/{review_id}", headers=customer_headers).status_code == 200
    assert db["product"].find_one({"_id": product["_id"]})["ratings"] == {"average": 0, "count": 0}


def test_mark_helpful_once(client, customer_headers, other_headers, product):
    review_id = _review(client, customer_headers, product).json()["id"]
    res = client.post(f"/api/reviews/{review_id}/helpful", headers=other_headers)
    assert res.json() == {"helpful_count": 1}
    assert client.post(f"/api/reviews/{review_id}/helpful", headers=other_headers).status_code == 400
