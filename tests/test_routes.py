import json
from dataclasses import replace
from datetime import datetime
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from storefront.auth import create_access_token
from storefront.models import Booking, CartItem, Order
from storefront.webhook_security import SIGNATURE_HEADER, compute_hmac_sha256_base64

SESSION = "x-cart-session"


def new_cart(client):
    response = client.get("/api/cart")
    assert response.status_code == 200
    return response.json(), {SESSION: response.headers[SESSION]}


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_cart_flow(client, make_product):
    soap = make_product()
    cart, headers = new_cart(client)
    assert cart["items"] == []
    assert headers[SESSION] == cart["sessionId"]

    client.post("/api/cart/items", json={"productId": soap.id, "quantity": 1}, headers=headers)
    response = client.post("/api/cart/items", json={"productId": soap.id, "quantity": 2}, headers=headers)
    assert response.status_code == 200
    data = response.json()
    assert data["id"] == cart["id"]
    assert len(data["items"]) == 1
    assert data["items"][0]["quantity"] == 3
    assert data["totals"] == {"subtotal": 30.0, "itemCount": 3}

    item_id = data["items"][0]["id"]
    data = client.patch(f"/api/cart/items/{item_id}", json={"quantity": 0}, headers=headers).json()
    assert data["items"] == []


def test_session_id_accepted_as_query_param(client):
    cart, headers = new_cart(client)

    response = client.get(f"/api/cart?sessionId={headers[SESSION]}")

    assert response.json()["id"] == cart["id"]


def test_cart_item_of_another_session_is_forbidden(client, make_product):
    soap = make_product()
    _, headers = new_cart(client)
    item_id = client.post("/api/cart/items", json={"productId": soap.id}, headers=headers).json()["items"][0]["id"]

    response = client.delete(f"/api/cart/items/{item_id}", headers={SESSION: "someone-else"})

    assert response.status_code == 403
    assert response.json() == {"success": False, "message": "Cart item does not belong to this session"}


def test_add_validation_and_unknown_product(client, make_product):
    _, headers = new_cart(client)

    assert client.post("/api/cart/items", json={"productId": 1, "quantity": 0}, headers=headers).status_code == 422
    response = client.post("/api/cart/items", json={"productId": 9999}, headers=headers)
    assert response.status_code == 404
    assert response.json()["message"] == "Product not found"


def test_clear_cart(client, make_product):
    soap = make_product()
    _, headers = new_cart(client)
    client.post("/api/cart/items", json={"productId": soap.id, "quantity": 2}, headers=headers)

    data = client.delete("/api/cart", headers=headers).json()

    assert data["items"] == []
    assert data["totals"]["itemCount"] == 0


def test_checkout_payment(client, make_product, fake_square, db):
    soap = make_product()
    cart, headers = new_cart(client)
    client.post("/api/cart/items", json={"productId": soap.id, "quantity": 2}, headers=headers)
    fake_square.on("POST", "/v2/orders", {"order": {"id": "ORD1"}})
    fake_square.on(
        "POST",
        "/v2/payments",
        {"payment": {"id": "PAY1", "status": "COMPLETED", "receipt_url": "https://squareup.com/r/PAY1"}},
    )

    response = client.post(
        "/api/checkout/payment",
        json={
            "cartId": cart["id"],
            "sourceId": "cnon:card-nonce-ok",
            "buyerEmail": "Buyer@Example.com",
            "billingAddress": {"addressLine1": "1 Market St", "city": "San Francisco", "postalCode": "94105"},
        },
        headers=headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["squareOrderId"] == "ORD1"
    assert data["squarePaymentId"] == "PAY1"
    assert data["receiptUrl"] == "https://squareup.com/r/PAY1"
    assert data["total"] == 20.0

    payment = fake_square.bodies("POST", "/v2/payments")[0]
    assert payment["buyer_email_address"] == "buyer@example.com"
    assert payment["billing_address"] == {
        "address_line_1": "1 Market St",
        "locality": "San Francisco",
        "postal_code": "94105",
        "country": "US",
    }
    assert db.query(Order).count() == 1
    assert db.query(CartItem).filter(CartItem.cart_id == cart["id"]).count() == 0


def test_checkout_declined_is_402(client, make_product, fake_square):
    soap = make_product()
    cart, headers = new_cart(client)
    client.post("/api/cart/items", json={"productId": soap.id}, headers=headers)
    fake_square.on("POST", "/v2/orders", {"order": {"id": "ORD1"}})
    fake_square.on(
        "POST",
        "/v2/payments",
        {"errors": [{"category": "PAYMENT_METHOD_ERROR", "code": "CARD_DECLINED", "detail": "Declined"}]},
        status=402,
    )

    response = client.post(
        "/api/checkout/payment", json={"cartId": cart["id"], "sourceId": "cnon:declined"}, headers=headers
    )

    assert response.status_code == 402
    assert response.json() == {"success": False, "message": "Payment failed"}


def test_checkout_of_foreign_cart_is_403(client, make_product):
    cart, _ = new_cart(client)

    response = client.post(
        "/api/checkout/payment", json={"cartId": cart["id"], "sourceId": "cnon:ok"}, headers={SESSION: "nope"}
    )

    assert response.status_code == 403


def test_square_routes_answer_503_when_disabled(app_factory, static_settings, make_product):
    client = TestClient(app_factory(replace(static_settings, square_enabled=False)))
    cart, headers = new_cart(client)

    response = client.post("/api/checkout/payment", json={"cartId": cart["id"], "sourceId": "cnon:ok"}, headers=headers)

    assert response.status_code == 503
    assert response.json() == {"success": False, "message": "Square is not configured"}
    assert client.get("/api/bookings/availability?serviceId=1&startAt=2025-03-10T00:00:00Z&endAt=2025-03-11T00:00:00Z").status_code == 503


def test_availability_route(client, make_service, fake_square):
    service = make_service()
    fake_square.on("POST", "/v2/bookings/availability/search", {"availabilities": []})

    response = client.get(
        "/api/bookings/availability",
        params={"serviceId": service.id, "startAt": "2025-03-10T00:00:00Z", "endAt": "2025-03-11T00:00:00Z"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "serviceId": service.id,
        "serviceVariationId": "SVC-VAR-1",
        "serviceVariationVersion": "3",
        "availabilities": [],
    }


def test_availability_rejects_inverted_range(client, make_service):
    service = make_service()

    response = client.get(
        "/api/bookings/availability",
        params={"serviceId": service.id, "startAt": "2025-03-11T00:00:00Z", "endAt": "2025-03-10T00:00:00Z"},
    )

    assert response.status_code == 400


def test_create_booking_route(client, make_service, fake_square):
    service = make_service(duration=60)
    fake_square.on("POST", "/v2/customers", {"customer": {"id": "CUST1"}})
    fake_square.on("POST", "/v2/bookings", {"booking": {"id": "BK1", "status": "ACCEPTED"}})

    response = client.post(
        "/api/bookings",
        json={
            "serviceId": service.id,
            "startAt": "2025-03-10T15:00:00Z",
            "teamMemberId": "TM1",
            "serviceVariationVersion": 3,
            "customerName": "Ada Lovelace",
            "customerEmail": "ada@example.com",
            "customerPhone": "555-123-4567",
        },
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["squareBookingId"] == "BK1"
    assert data["status"] == "ACCEPTED"
    assert data["endAt"].startswith("2025-03-10T16:00:00")


def test_create_booking_rejects_bad_email(client, make_service):
    service = make_service()

    response = client.post(
        "/api/bookings",
        json={
            "serviceId": service.id,
            "startAt": "2025-03-10T15:00:00Z",
            "teamMemberId": "TM1",
            "customerName": "Ada",
            "customerEmail": "nope",
        },
    )

    assert response.status_code == 422


def signed_webhook(client, payload, settings, signature=None):
    body = json.dumps(payload).encode()
    url = "http://testserver/webhooks/square"
    signature = signature or compute_hmac_sha256_base64(settings.square_webhook_signature_key, url.encode() + body)
    return client.post(
        "/webhooks/square",
        content=body,
        headers={SIGNATURE_HEADER: signature, "Content-Type": "application/json"},
    )


def test_webhook_with_bad_signature_is_401(client, static_settings):
    response = signed_webhook(client, {"type": "booking.updated"}, static_settings, signature="bm9wZQ==")

    assert response.status_code == 401


def test_booking_webhook_updates_cached_status(client, static_settings, make_service, db):
    service = make_service()
    db.add(
        Booking(
            square_booking_id="BK1",
            service_id=service.id,
            start_at=datetime(2025, 3, 10, 15, 0),
            end_at=datetime(2025, 3, 10, 15, 45),
            status="ACCEPTED",
            customer_name="Ada",
            customer_email="ada@example.com",
        )
    )
    db.commit()

    response = signed_webhook(
        client,
        {
            "type": "booking.updated",
            "event_id": "evt-1",
            "data": {"type": "booking", "id": "BK1", "object": {"booking": {"id": "BK1", "status": "CANCELLED_BY_SELLER"}}},
        },
        static_settings,
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    db.expire_all()
    assert db.query(Booking).filter(Booking.square_booking_id == "BK1").one().status == "CANCELLED_BY_SELLER"


def test_unknown_webhook_event_is_acknowledged(client, static_settings):
    response = signed_webhook(client, {"type": "inventory.count.updated", "data": {}}, static_settings)

    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_admin_routes_require_admin(client, static_settings, admin_headers):
    user_token = create_access_token("user-1", static_settings.secret_key)

    assert client.get("/api/square/status").status_code == 401
    assert client.get("/api/square/status", headers={"Authorization": f"Bearer {user_token}"}).status_code == 403
    assert client.get("/api/square/status", headers={"Authorization": "Bearer garbage"}).status_code == 401

    response = client.get("/api/square/status", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["connected"] is True
    assert response.json()["locationId"] == "LOC1"


def test_oauth_round_trip(client, admin_headers, fake_square):
    fake_square.on(
        "POST",
        "/oauth2/token",
        {
            "access_token": "EAAA-access-1",
            "refresh_token": "EQAA-refresh-1",
            "expires_at": "2030-01-01T00:00:00Z",
            "merchant_id": "MERCHANT1",
        },
    )

    url = client.post("/api/square/oauth/start", headers=admin_headers).json()["url"]
    state = parse_qs(urlparse(url).query)["state"][0]

    response = client.get(
        "/api/square/oauth/callback", params={"code": "code-1", "state": state}, follow_redirects=False
    )
    assert response.status_code in (302, 307)
    assert response.headers["location"] == "https://shop.example.com/admin?square=connected"

    response = client.get(
        "/api/square/oauth/callback", params={"code": "code-1", "state": "1.forged.state"}, follow_redirects=False
    )
    assert response.headers["location"] == "https://shop.example.com/admin?square=error"
    assert len(fake_square.calls("POST", "/oauth2/token")) == 1


def test_catalog_sync_route(client, admin_headers, fake_square, make_product):
    make_product(sku="SOAP-1")
    fake_square.on(
        "GET",
        "/v2/catalog/list",
        {
            "objects": [
                {
                    "type": "ITEM",
                    "id": "ITEM-SOAP",
                    "item_data": {
                        "name": "Lavender Soap",
                        "variations": [
                            {
                                "id": "VAR-1",
                                "item_variation_data": {"sku": "SOAP-1", "price_money": {"amount": 1100}},
                            }
                        ],
                    },
                }
            ]
        },
    )

    response = client.post("/api/square/catalog/sync", headers=admin_headers)

    assert response.status_code == 200
    assert response.json() == {"total": 1, "updated": 1, "skipped": 0, "errors": 0}
