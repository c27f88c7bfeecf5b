import io
import threading
from urllib.parse import urlsplit

import mongomock
import pytest
import resend
from bson import ObjectId

from app import create_app

ADMIN_EMAIL = "admin@arianshop.test"
ADMIN_PASSWORD = "admin-password-123"


@pytest.fixture
def database():
    return mongomock.MongoClient().arianshop_test


@pytest.fixture
def upload_folder(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def app(database, upload_folder):
    return create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-0123456789-abcdefghijklmnop",
            "ADMIN_EMAIL": ADMIN_EMAIL,
            "ADMIN_PASSWORD": ADMIN_PASSWORD,
            "UPLOAD_FOLDER": str(upload_folder),
            "FRONTEND_URL": "http://shop.test",
            "RESEND_NEWSLETTER_API_KEY": "re_test_key",
            "STRIPE_SECRET_KEY": "sk_test_key",
            "DELIVERY_CHARGE": 10,
            "PRICE_MULTIPLIER": 1000,
            "ORDER_STATUS_FORWARD_ONLY": True,
        },
        database=database,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    sent = []
    lock = threading.Lock()

    def fake_send(payload):
        with lock:
            sent.append(payload)
            return {"id": f"email-{len(sent)}"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    return sent


@pytest.fixture
def auth_header():
    def build(token):
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest.fixture
def register(client):
    def create(email="dina@example.com", name="Dina", password="password123"):
        response = client.post(
            "/api/user/register",
            json={"name": name, "email": email, "password": password},
        )
        body = response.get_json()
        assert body["success"], body
        return body["token"]

    return create


@pytest.fixture
def user_token(register):
    return register()


@pytest.fixture
def admin_token(client):
    response = client.post(
        "/api/user/admin", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}
    )
    return response.get_json()["token"]


@pytest.fixture
def product_factory(database):
    def create(name="Linen Shirt", price=50, colors=("black", "white")):
        result = database.products.insert_one(
            {
                "name": name,
                "description": f"{name} description",
                "price": price,
                "category": "Men",
                "colors": list(colors),
                "image": ["https://dummyimage.com/150"],
                "popular": False,
            }
        )
        return str(result.inserted_id)

    return create


@pytest.fixture
def address():
    return {
        "firstName": "Dina",
        "lastName": "Putri",
        "email": "dina@example.com",
        "street": "Jl. Merdeka 1",
        "city": "Bandung",
        "state": "Jawa Barat",
        "country": "Indonesia",
        "zipcode": "40111",
        "phone": "08123456789",
    }


def user_id_from(database, email):
    return database.users.find_one({"email": email})["_id"]


def find_order(database, order_id):
    return database.orders.find_one({"_id": ObjectId(order_id)})


def wait_for_notifications(timeout=5):
    for thread in threading.enumerate():
        if thread.name == "notify-new-product":
            thread.join(timeout)


class FlaskResponseAdapter:
    def __init__(self, response):
        self._response = response
        self.status_code = response.status_code

    def json(self):
        body = self._response.get_json(silent=True)
        if body is None:
            raise ValueError("Response body is not JSON")
        return body


class FlaskTestSession:
    """Routes ``requests``-style calls into the Flask test client."""

    def __init__(self, client):
        self.client = client
        self.calls = []
        self._lock = threading.Lock()

    def request(self, method, url, json=None, data=None, files=None, headers=None, timeout=None):
        parts = urlsplit(url)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
        with self._lock:
            self.calls.append((method, path))
            if files:
                form = dict(data or {})
                for field, file_spec in files.items():
                    filename, content = file_spec[0], file_spec[1]
                    if isinstance(content, bytes):
                        content = io.BytesIO(content)
                    form[field] = (content, filename)
                response = self.client.open(
                    path,
                    method=method,
                    data=form,
                    headers=headers or {},
                    content_type="multipart/form-data",
                )
            else:
                response = self.client.open(
                    path, method=method, json=json, headers=headers or {}
                )
        return FlaskResponseAdapter(response)


@pytest.fixture
def api_session(client):
    return FlaskTestSession(client)
