import pytest


@pytest.mark.django_db
def test_list_orders_filters_by_buyer_and_status(client, make_product, place_order):
    p = make_product(stock=20)
    o1 = place_order("buyer-1", [(p, 1)])
    place_order("buyer-1", [(p, 1)])
    place_order("buyer-2", [(p, 1)])

    r = client.get("/api/orders/?buyerId=buyer-1")
    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 2
    assert all(o["buyerId"] == "buyer-1" for o in body["results"])
    assert "productOrders" not in body["results"][0]

    client.patch(f"/api/orders/{o1.pk}/checkout/", data={"buyerId": "buyer-1"}, content_type="application/json")
    r = client.get("/api/orders/?buyerId=buyer-1&status=pending_payment")
    assert [o["id"] for o in r.json()["results"]] == [str(o1.pk)]


@pytest.mark.django_db
def test_list_orders_paginates(client, make_product, place_order):
    p = make_product(stock=20)
    for _ in range(3):
        place_order("buyer-1", [(p, 1)])
    r = client.get("/api/orders/?page=2&page_size=2")
    body = r.json()
    assert (body["count"], body["page"], body["page_size"], len(body["results"])) == (3, 2, 2, 1)


@pytest.mark.django_db
def test_list_orders_bad_page_is_400(client):
    r = client.get("/api/orders/?page=zero")
    assert r.status_code == 400


@pytest.mark.django_db
def test_retrieve_order_with_vendor_groups(client, make_product, place_order):
    a = make_product(seller_id="s1", price="2.00")
    b = make_product(seller_id="s1", price="3.00")
    c = make_product(seller_id="s2", price="7.00")
    order = place_order("buyer-1", [(a, 1), (b, 2), (c, 1)])

    r = client.get(f"/api/orders/{order.pk}/")
    assert r.status_code == 200
    body = r.json()
    assert body["id"] == str(order.pk)
    assert body["totalAmount"] == "15.00"
    assert len(body["productOrders"]) == 3
    groups = {g["sellerId"]: g for g in body["vendorGroups"]}
    assert groups["s1"]["subtotal"] == "8.00"
    assert len(groups["s1"]["items"]) == 2
    assert groups["s2"]["status"] == "pending"


@pytest.mark.django_db
def test_retrieve_unknown_order_is_404(client):
    r = client.get("/api/orders/5b0a3a3e-3f4e-4c1a-9a53-0b4f9b8f1c11/")
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


@pytest.mark.django_db
def test_seller_lines_with_summary(client, make_product, place_order):
    a = make_product(seller_id="s1", price="5.00")
    b = make_product(seller_id="s2", price="1.00")
    place_order("buyer-1", [(a, 2), (b, 1)])
    place_order("buyer-2", [(a, 1)])

    r = client.get("/api/product-orders/?sellerId=s1")
    assert r.status_code == 200
    body = r.json()
    assert len(body["results"]) == 2
    assert all(line["sellerId"] == "s1" for line in body["results"])
    assert body["summary"] == {"totalOrders": 2, "totalRevenue": "15.00", "pendingOrders": 2}

    r = client.get("/api/product-orders/?sellerId=s1&status=shipped")
    assert r.json()["results"] == []


@pytest.mark.django_db
def test_seller_lines_require_seller(client):
    assert client.get("/api/product-orders/").status_code == 400
    assert client.get("/api/product-orders/", HTTP_X_USER_ID="s1").status_code == 200
