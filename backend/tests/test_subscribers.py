import io
import json

import pytest
import resend

from conftest import wait_for_notifications


def subscribe(client, email):
    return client.post("/api/subscribers", json={"email": email})


@pytest.fixture
def subscribers(client):
    emails = ["ana@example.com", "budi@example.com", "citra@example.com"]
    for email in emails:
        subscribe(client, email)
    return emails


def test_subscribe_lifecycle(client, database):
    created = subscribe(client, "Ana@Example.com")
    duplicate = subscribe(client, "ana@example.com")

    assert created.status_code == 201
    assert created.get_json() == {"success": True, "message": "Subscribed successfully"}
    assert duplicate.status_code == 200
    assert duplicate.get_json()["alreadySubscribed"] is True

    unsubscribed = client.put("/api/subscribers/unsubscribe", json={"email": "ana@example.com"})
    assert unsubscribed.get_json()["success"] is True
    assert database.subscribers.find_one({"email": "ana@example.com"})["is_active"] is False

    reactivated = subscribe(client, "ana@example.com").get_json()
    assert reactivated["message"] == "Subscription reactivated successfully"
    assert database.subscribers.count_documents({}) == 1


def test_subscribe_validation(client):
    missing = subscribe(client, "")
    invalid = subscribe(client, "not-an-email")
    unknown = client.put("/api/subscribers/unsubscribe", json={"email": "ghost@example.com"})

    assert missing.status_code == 400
    assert invalid.status_code == 400
    assert unknown.status_code == 404
    assert unknown.get_json()["message"] == "Subscriber not found"


def test_list_subscribers_is_admin_only(client, subscribers, admin_token, user_token, auth_header):
    admin_view = client.get("/api/subscribers", headers=auth_header(admin_token))
    user_view = client.get("/api/subscribers", headers=auth_header(user_token))

    listed = admin_view.get_json()["subscribers"]
    assert sorted(entry["email"] for entry in listed) == sorted(subscribers)
    assert all(entry["isActive"] for entry in listed)
    assert user_view.status_code == 403


def test_notify_sends_only_to_active_subscribers(
    client, database, subscribers, admin_token, auth_header, sent_emails
):
    client.put("/api/subscribers/unsubscribe", json={"email": "citra@example.com"})

    body = client.post(
        "/api/subscribers/notify",
        json={"subject": "Weekend sale", "message": "Everything 20% off"},
        headers=auth_header(admin_token),
    ).get_json()

    assert body["success"] is True
    assert body["message"] == "Emails sent to 2 subscribers (0 failed)"
    recipients = sorted(payload["to"][0] for payload in sent_emails)
    assert recipients == ["ana@example.com", "budi@example.com"]
    first = sent_emails[0]
    assert first["subject"] == "Weekend sale"
    assert "Everything 20% off" in first["html"]
    assert "http://shop.test/unsubscribe?email=" in first["html"]
    assert database.subscribers.find_one({"email": "ana@example.com"})["last_email_sent"]
    assert database.subscribers.find_one({"email": "citra@example.com"})["last_email_sent"] is None


def test_notify_reports_individual_failures(
    client, database, monkeypatch, subscribers, admin_token, auth_header
):
    def flaky_send(payload):
        if payload["to"] == ["budi@example.com"]:
            raise RuntimeError("mailbox unavailable")
        return {"id": "email-ok"}

    monkeypatch.setattr(resend.Emails, "send", flaky_send)

    body = client.post(
        "/api/subscribers/notify",
        json={"subject": "News", "message": "Hello"},
        headers=auth_header(admin_token),
    ).get_json()

    assert body["sent"] == 2
    assert body["failed"] == 1
    failed = [result for result in body["results"] if result["status"] == "failed"]
    assert failed == [
        {"email": "budi@example.com", "status": "failed", "error": "mailbox unavailable"}
    ]
    assert database.subscribers.find_one({"email": "budi@example.com"})["last_email_sent"] is None


def test_notify_validation(client, admin_token, auth_header):
    headers = auth_header(admin_token)

    missing = client.post("/api/subscribers/notify", json={"subject": "Hi"}, headers=headers)
    nobody = client.post(
        "/api/subscribers/notify", json={"subject": "Hi", "message": "There"}, headers=headers
    )

    assert missing.status_code == 400
    assert missing.get_json()["message"] == "Subject and message are required"
    assert nobody.status_code == 404
    assert nobody.get_json()["message"] == "No active subscribers found"


def test_notify_new_product_endpoint(client, subscribers, admin_token, auth_header, sent_emails):
    headers = auth_header(admin_token)

    missing = client.post(
        "/api/subscribers/notify-new-product", json={"productId": "p1"}, headers=headers
    )
    body = client.post(
        "/api/subscribers/notify-new-product",
        json={"productId": "p1", "productName": "Batik Dress", "productDescription": "Hand made"},
        headers=headers,
    ).get_json()

    assert missing.status_code == 400
    assert body["sent"] == 3
    assert {payload["subject"] for payload in sent_emails} == {"New Product: Batik Dress"}
    assert "http://shop.test/product/p1" in sent_emails[0]["html"]


def test_product_creation_notifies_subscribers(
    client, subscribers, admin_token, auth_header, sent_emails
):
    response = client.post(
        "/api/product/add",
        data={
            "name": "Kebaya Top",
            "description": "Lace kebaya",
            "price": "300",
            "colors": json.dumps(["cream"]),
            "image1": (io.BytesIO(b"image"), "kebaya.png"),
        },
        headers=auth_header(admin_token),
        content_type="multipart/form-data",
    )
    wait_for_notifications()

    product = response.get_json()["product"]
    assert len(sent_emails) == 3
    assert all(payload["subject"] == "New Product: Kebaya Top" for payload in sent_emails)
    assert f"/product/{product['_id']}" in sent_emails[0]["html"]


def test_product_creation_survives_email_outage(
    client, monkeypatch, subscribers, admin_token, auth_header, database
):
    def outage(payload):
        raise RuntimeError("resend down")

    monkeypatch.setattr(resend.Emails, "send", outage)

    response = client.post(
        "/api/product/add",
        data={"name": "Sarong", "price": "90"},
        headers=auth_header(admin_token),
        content_type="multipart/form-data",
    )
    wait_for_notifications()

    assert response.get_json()["success"] is True
    assert database.products.count_documents({"name": "Sarong"}) == 1
