from datetime import datetime, timedelta, timezone

import payfast
from conftest import auth_header, make_voucher, tomorrow


def _itn(reference, amount, passphrase, kind="order"):
    data = {
        "m_payment_id": reference,
        "pf_payment_id": "1089250",
        "payment_status": "COMPLETE",
        "item_name": f"Tassel Group {kind.capitalize()}",
        "amount_gross": amount,
        "custom_str1": kind,
    }
    data["signature"] = payfast.generate_signature(data, passphrase)
    return data


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_orders_require_token(client, product):
    r = client.post("/orders", json={"items": [{"product": str(product["_id"]), "quantity": 1}]})
    assert r.status_code == 401
    assert r.json() == {"message": "No token, authorization denied", "error": "unauthorized"}


def test_bad_token(client):
    r = client.get("/orders/my-orders", headers={"Authorization": "Bearer nonsense"})
    assert r.status_code == 401


def test_create_order_with_voucher(client, db, customer, product):
    make_voucher(db, code="SAVE10")

    r = client.post(
        "/orders",
        json={"items": [{"product": str(product["_id"]), "quantity": 2}], "voucherCode": "SAVE10"},
        headers=auth_header(customer),
    )

    assert r.status_code == 201
    body = r.json()
    assert body["total"] == 200.0
    assert body["discount"] == 20.0
    assert body["finalTotal"] == 180.0
    assert "id" in body

    mine = client.get("/orders/my-orders", headers=auth_header(customer)).json()
    assert [o["id"] for o in mine] == [body["id"]]


def test_out_of_stock_error_shape(client, customer, product):
    r = client.post("/orders", json={"items": [{"product": str(product["_id"]), "quantity": 50}]}, headers=auth_header(customer))

    assert r.status_code == 400
    assert r.json()["error"] == "insufficient_stock"


def test_exhausted_voucher_error_shape(client, db, customer, product):
    make_voucher(db, code="DONE", used=5, max_uses=5)

    r = client.post(
        "/orders",
        json={"items": [{"product": str(product["_id"]), "quantity": 1}], "voucherCode": "DONE"},
        headers=auth_header(customer),
    )

    assert r.status_code == 400
    assert r.json()["error"] == "voucher_unavailable"


def test_request_validation_is_400(client, customer):
    r = client.post("/orders", json={"items": []}, headers=auth_header(customer))

    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"


def test_order_status_requires_staff(client, db, customer, staff, product):
    order = client.post("/orders", json={"items": [{"product": str(product["_id"]), "quantity": 2}]}, headers=auth_header(customer)).json()

    assert client.patch(f"/orders/{order['id']}/status", json={"status": "cancelled"}, headers=auth_header(customer)).status_code == 403

    r = client.put(f"/orders/{order['id']}/status", json={"status": "cancelled"}, headers=auth_header(staff))
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert db["product"].find_one({"_id": product["_id"]})["stockQuantity"] == 10


def test_staff_sees_only_processed_orders(client, customer, staff, admin, product):
    headers = auth_header(customer)
    client.post("/orders", json={"items": [{"product": str(product["_id"]), "quantity": 1}], "processedBy": str(staff["_id"])}, headers=headers)
    client.post("/orders", json={"items": [{"product": str(product["_id"]), "quantity": 1}]}, headers=headers)

    assert len(client.get("/orders", headers=auth_header(staff)).json()) == 1
    assert len(client.get("/orders", headers=auth_header(admin)).json()) == 2


def test_product_crud_is_admin_only(client, customer, admin):
    payload = {"name": "Rose Toner", "price": 150, "stockQuantity": 0}

    assert client.post("/products", json=payload, headers=auth_header(customer)).status_code == 403

    r = client.post("/products", json=payload, headers=auth_header(admin))
    assert r.status_code == 201
    assert r.json()["inStock"] is False

    product_id = r.json()["id"]
    r = client.put(f"/products/{product_id}", json={**payload, "stockQuantity": 4}, headers=auth_header(admin))
    assert r.json()["inStock"] is True

    assert client.delete(f"/products/{product_id}", headers=auth_header(admin)).status_code == 200
    r = client.get(f"/products/{product_id}")
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"


def test_booking_and_assignment(client, customer, admin, staff, service):
    r = client.post("/bookings", json={"service": str(service["_id"]), "date": tomorrow(), "time": "11:00"}, headers=auth_header(customer))
    assert r.status_code == 201
    booking_id = r.json()["id"]

    r = client.patch(f"/bookings/{booking_id}/assign-staff", json={"staffId": str(staff["_id"])}, headers=auth_header(admin))
    assert r.status_code == 200
    assert r.json()["booking"]["status"] == "confirmed"

    staff_view = client.get("/bookings", headers=auth_header(staff)).json()
    assert [b["id"] for b in staff_view] == [booking_id]


def test_gift_order_route(client, customer, gift_package):
    r = client.post(
        "/gift-orders",
        json={"giftPackage": str(gift_package["_id"]), "recipientName": "Naledi", "recipientEmail": "naledi@gmail.com", "deliveryDate": tomorrow()},
        headers=auth_header(customer),
    )

    assert r.status_code == 201
    assert r.json()["price"] == 1200.0


def test_voucher_admin_flow(client, admin, customer):
    valid_until = (datetime.now(timezone.utc) + timedelta(days=10)).isoformat()
    payload = {"code": "winter20", "discount": 20, "type": "percentage", "maxUses": 3, "validUntil": valid_until}

    r = client.post("/vouchers", json=payload, headers=auth_header(admin))
    assert r.status_code == 201
    assert r.json()["code"] == "WINTER20"

    r = client.post("/vouchers", json={**payload, "code": "WINTER20"}, headers=auth_header(admin))
    assert r.status_code == 400
    assert r.json()["error"] == "duplicate_code"

    r = client.post("/vouchers/validate", json={"code": "winter20", "total": 500}, headers=auth_header(customer))
    assert r.json()["discount"] == 100.0
    assert r.json()["finalTotal"] == 400.0


def test_voucher_rejects_large_percentage(client, admin):
    valid_until = (datetime.now(timezone.utc) + timedelta(days=10)).isoformat()
    r = client.post(
        "/vouchers",
        json={"code": "HUGE", "discount": 150, "type": "percentage", "maxUses": 1, "validUntil": valid_until},
        headers=auth_header(admin),
    )
    assert r.status_code == 400


def test_payment_flow_sends_email_once(client, db, customer, product, passphrase, sent_emails):
    r = client.post(
        "/payment/initiate",
        json={"type": "order", "totalAmount": 200, "items": [{"product": str(product["_id"]), "quantity": 2}]},
        headers=auth_header(customer),
    )
    assert r.status_code == 200
    reference = r.json()["merchantReference"]

    itn = _itn(reference, "200.00", passphrase)
    first = client.post("/payment/notify", data=itn)
    second = client.post("/payment/notify", data=itn)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert db["order"].count_documents({"paymentReference": reference}) == 1
    assert len(sent_emails) == 1
    assert sent_emails[0]["reference"] == reference


def test_tampered_notification_creates_nothing(client, db, customer, product, passphrase, sent_emails):
    r = client.post(
        "/payment/initiate",
        json={"type": "order", "totalAmount": 200, "items": [{"product": str(product["_id"]), "quantity": 2}]},
        headers=auth_header(customer),
    )
    itn = _itn(r.json()["merchantReference"], "200.00", passphrase)
    itn["amount_gross"] = "1.00"

    r = client.post("/payment/notify", data=itn)

    assert r.status_code == 400
    assert r.json()["error"] == "signature_mismatch"
    assert db["order"].count_documents({}) == 0
    assert db["product"].find_one({"_id": product["_id"]})["stockQuantity"] == 10
    assert sent_emails == []


def test_manual_order_route(client, db, customer, staff, service, sent_emails):
    r = client.post(
        "/payment/manual-order",
        json={"type": "booking", "customerId": str(customer["_id"]), "bookingData": {"serviceId": str(service["_id"]), "date": tomorrow(), "time": "15:00"}},
        headers=auth_header(staff),
    )

    assert r.status_code == 200
    assert r.json()["order"]["type"] == "booking"
    booking = db["booking"].find_one({"paymentMethod": "manual"})
    assert booking["user"] == str(customer["_id"])
    assert booking["staff"] == str(staff["_id"])
    assert sent_emails[0]["amount"] == 450.0
    assert sent_emails[0]["user"]["email"] == customer["email"]


def test_manual_order_is_staff_only(client, db, customer, product):
    r = client.post(
        "/payment/manual-order",
        json={"type": "order", "items": [{"product": str(product["_id"]), "quantity": 2}]},
        headers=auth_header(customer),
    )

    assert r.status_code == 403
    assert db["order"].count_documents({}) == 0
    assert db["product"].find_one({"_id": product["_id"]})["stockQuantity"] == 10


def test_initiate_rejects_client_chosen_total(client, db, customer, product):
    r = client.post(
        "/payment/initiate",
        json={"type": "order", "totalAmount": 1, "items": [{"product": str(product["_id"]), "quantity": 2}]},
        headers=auth_header(customer),
    )

    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"
    assert db["payment"].count_documents({}) == 0


def test_payment_cancel_redirects(client, db, customer, product):
    r = client.post(
        "/payment/initiate",
        json={"type": "order", "totalAmount": 100, "items": [{"product": str(product["_id"]), "quantity": 1}]},
        headers=auth_header(customer),
    )
    reference = r.json()["merchantReference"]

    r = client.get(f"/payment/cancel?m_payment_id={reference}", follow_redirects=False)

    assert r.status_code == 307
    assert r.headers["location"].endswith("?payment=cancelled")
    assert payfast.get_transaction(db, reference)["status"] == "cancelled"


def test_dashboards(client, customer, staff, admin, product):
    client.post("/orders", json={"items": [{"product": str(product["_id"]), "quantity": 3}], "processedBy": str(staff["_id"])}, headers=auth_header(customer))

    assert client.get("/dashboard/admin", headers=auth_header(staff)).status_code == 403

    stats = client.get("/dashboard/admin", headers=auth_header(admin)).json()["stats"]
    assert stats["totalOrders"] == 1
    assert stats["totalRevenue"] == 300.0

    mine = client.get("/dashboard/staff", headers=auth_header(staff)).json()
    assert mine["stats"]["totalSales"] == 1

    public = client.get("/dashboard/public-stats").json()
    assert public["stats"]["totalProducts"] == 1

    assert client.get("/orders/public-stats").json() == {"totalOrders": 1, "totalRevenue": 300.0}
