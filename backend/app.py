import hmac
import json
import math
import os
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from threading import Thread
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, urljoin
from uuid import uuid4

import bcrypt
import resend
import stripe
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, render_template, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from cart_utils import coerce_quantity, is_valid_cart_key, normalize_cart

load_dotenv()

ORDER_STATUSES = (
    "Order Placed",
    "Packing",
    "Shipped",
    "Out for Delivery",
    "Delivered",
)
DELIVERED_STATUS = "Delivered"
PAYMENT_METHOD_COD = "COD"
PAYMENT_METHOD_STRIPE = "Stripe"


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_flag(name: str, default: bool) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


class LegacyTokenHeaderMiddleware:
    """Expose the storefront's legacy ``token`` header as a bearer token."""

    def __init__(self, wsgi_app):
        self.wsgi_app = wsgi_app

    def __call__(self, environ, start_response):
        legacy_token = (environ.get("HTTP_TOKEN") or "").strip()
        if legacy_token and not environ.get("HTTP_AUTHORIZATION"):
            environ["HTTP_AUTHORIZATION"] = f"Bearer {legacy_token}"
        return self.wsgi_app(environ, start_response)


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        days=env_int("JWT_EXPIRES_DAYS", 7)
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/arianshop"
    )
    max_upload_mb = env_int("MAX_UPLOAD_SIZE_MB", 16)
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["UPLOAD_FOLDER"] = os.getenv("UPLOAD_FOLDER") or os.path.join(
        app.root_path, "uploads"
    )
    app.config["ALLOWED_IMAGE_EXTENSIONS"] = {"png", "jpg", "jpeg", "gif", "webp"}
    app.config["DEFAULT_PRODUCT_IMAGE"] = "https://dummyimage.com/150"
    app.config["MAX_PRODUCT_IMAGES"] = 4

    app.config["ADMIN_EMAIL"] = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
    app.config["ADMIN_PASSWORD"] = os.getenv("ADMIN_PASSWORD") or ""
    app.config["FRONTEND_URL"] = (
        os.getenv("FRONTEND_URL", "http://localhost:5173") or "http://localhost:5173"
    ).rstrip("/")
    app.config["SHOP_NAME"] = os.getenv("SHOP_NAME", "Arian Shop") or "Arian Shop"

    app.config["STRIPE_SECRET_KEY"] = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    app.config["STRIPE_CURRENCY"] = (
        os.getenv("STRIPE_CURRENCY", "idr") or "idr"
    ).strip().lower()
    app.config["DELIVERY_CHARGE"] = env_int("DELIVERY_CHARGE", 10)
    app.config["PRICE_MULTIPLIER"] = env_int("PRICE_MULTIPLIER", 1000)
    app.config["ORDER_STATUS_FORWARD_ONLY"] = env_flag(
        "ORDER_STATUS_FORWARD_ONLY", True
    )

    app.config["RESEND_NEWSLETTER_API_KEY"] = (
        os.getenv("RESEND_NEWSLETTER_API_KEY") or os.getenv("RESEND_API_KEY") or ""
    ).strip()
    app.config["NEWSLETTER_SENDER_EMAIL"] = (
        os.getenv("NEWSLETTER_SENDER_EMAIL", "newsletter@arianshop.store")
        or "newsletter@arianshop.store"
    )
    app.config["NOTIFY_MAX_WORKERS"] = max(1, env_int("NOTIFY_MAX_WORKERS", 8))

    if test_config:
        app.config.update(test_config)

    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    # Honor proxy headers so generated upload links keep the public origin.
    trusted_proxy_hops = max(0, env_int("TRUSTED_PROXY_HOPS", 1))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )
    app.wsgi_app = LegacyTokenHeaderMiddleware(app.wsgi_app)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:5173",
        "http://localhost:5174",
        app.config["FRONTEND_URL"],
        (os.getenv("ADMIN_URL") or "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(
        app,
        supports_credentials=True,
        origins=allowed_origins or "*",
        allow_headers=["Content-Type", "Authorization", "token", "x-requested-with"],
        expose_headers=["token"],
    )

    jwt = JWTManager(app)

    if database is None:
        mongo = PyMongo(app)
        db = mongo.db
    else:
        db = database

    try:
        db.subscribers.create_index("email", unique=True)
        db.orders.create_index([("user_id", 1), ("date", -1)])
        db.users.create_index("email")
    except Exception as exc:
        app.logger.warning("Unable to ensure storefront indexes: %s", exc)

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    address_fields = (
        "firstName",
        "lastName",
        "email",
        "street",
        "city",
        "state",
        "country",
        "zipcode",
        "phone",
    )
    address_field_aliases = {
        "firstName": ("firstName", "first_name", "firstname"),
        "lastName": ("lastName", "last_name", "lastname"),
        "email": ("email",),
        "street": ("street", "line1", "address_line_1", "addressLine1"),
        "city": ("city", "town"),
        "state": ("state", "province", "region"),
        "country": ("country",),
        "zipcode": ("zipcode", "zipCode", "zip_code", "zip", "postcode", "postal_code"),
        "phone": ("phone", "phone_number", "phoneNumber"),
    }
    address_required_fields = (
        "firstName",
        "lastName",
        "street",
        "city",
        "state",
        "country",
        "zipcode",
        "phone",
    )

    # --- JWT responses ---

    @jwt.unauthorized_loader
    def handle_missing_token(reason):
        return (
            jsonify({"success": False, "message": "Not authorized, login again."}),
            401,
        )

    @jwt.invalid_token_loader
    def handle_invalid_token(reason):
        return jsonify({"success": False, "message": "Invalid token"}), 401

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return (
            jsonify({"success": False, "message": "Session expired, login again."}),
            401,
        )

    @app.errorhandler(PyMongoError)
    def handle_database_error(exc):
        app.logger.error("Database error on %s: %s", request.path, exc)
        return (
            jsonify({"success": False, "message": "Database error, please try again."}),
            500,
        )

    # --- Helpers ---

    def error_response(message: str, status: int = 200):
        return jsonify({"success": False, "message": message}), status

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def parse_object_id(value) -> Optional[ObjectId]:
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(str(value or "").strip())
        except (InvalidId, TypeError):
            return None

    def parse_flag(value, default: bool = False) -> bool:
        if isinstance(value, bool):
            return value
        if value is None:
            return default
        return str(value).strip().lower() in {"1", "true", "yes", "on"}

    def safe_float(value, default=0.0):
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return default
        if math.isfinite(numeric):
            return numeric
        return default

    def isoformat(value) -> Optional[str]:
        if isinstance(value, datetime):
            return value.isoformat() + "Z"
        return None

    def request_payload() -> Dict:
        if request.form:
            return request.form.to_dict()
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def hash_password(password: str) -> bytes:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())

    def check_password(password: str, stored_hash) -> bool:
        if not stored_hash:
            return False
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        try:
            return bcrypt.checkpw(password.encode("utf-8"), bytes(stored_hash))
        except ValueError:
            return False

    def issue_user_token(user_document) -> str:
        return create_access_token(identity=str(user_document["_id"]))

    def load_current_user(missing_status: int = 401):
        user_id = parse_object_id(get_jwt_identity())
        user = db.users.find_one({"_id": user_id}) if user_id else None
        if not user:
            return None, error_response("User not found", missing_status)
        return user, None

    def require_admin():
        admin_email = app.config["ADMIN_EMAIL"]
        if not admin_email:
            return error_response("Not authorized as an admin", 403)

        identity = str(get_jwt_identity() or "")
        if get_jwt().get("role") == "admin" and normalize_email(identity) == admin_email:
            return None

        return error_response("Not authorized as an admin", 403)

    def is_reserved_email(email: str) -> bool:
        admin_email = app.config["ADMIN_EMAIL"]
        return bool(admin_email) and hmac.compare_digest(email, admin_email)

    # --- Image storage ---

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in app.config["ALLOWED_IMAGE_EXTENSIONS"]

    def store_uploaded_image(image_file):
        if not image_file or not getattr(image_file, "filename", ""):
            return None, "An image file is required."

        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            return None, "Please choose a valid file name."

        if not allowed_image_extension(original_filename):
            return (
                None,
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
            )

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        destination = os.path.join(app.config["UPLOAD_FOLDER"], unique_filename)

        try:
            image_file.save(destination)
        except OSError as exc:
            app.logger.error("Image upload failed for %s: %s", original_filename, exc)
            return None, "We could not store the uploaded image. Please try again."

        return unique_filename, None

    def store_uploaded_images(image_files):
        saved_filenames: List[str] = []
        for image_file in image_files:
            if not image_file or not getattr(image_file, "filename", ""):
                continue
            new_filename, image_error = store_uploaded_image(image_file)
            if image_error:
                remove_uploaded_image(saved_filenames)
                return [], image_error
            saved_filenames.append(new_filename)
        return saved_filenames, None

    def is_remote_reference(reference) -> bool:
        return str(reference or "").startswith(("http://", "https://"))

    def remove_uploaded_image(reference):
        if not reference:
            return

        if isinstance(reference, (list, tuple, set)):
            for item in reference:
                remove_uploaded_image(item)
            return

        if is_remote_reference(reference):
            return

        target = os.path.join(
            app.config["UPLOAD_FOLDER"], os.path.basename(str(reference))
        )
        try:
            os.remove(target)
        except OSError:
            return

    def build_image_url(reference: Optional[str]) -> str:
        if not reference:
            return ""

        sanitized = str(reference).strip()
        if not sanitized or is_remote_reference(sanitized):
            return sanitized

        return urljoin(request.host_url, f"uploads/{sanitized}")

    # --- Serializers ---

    def serialize_user(user_document) -> Dict:
        if not user_document:
            return {}

        wishlist = user_document.get("wishlist")
        return {
            "_id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "bio": user_document.get("bio", "") or "",
            "phone": user_document.get("phone", "") or "",
            "address": user_document.get("address", "") or "",
            "avatar": build_image_url(user_document.get("avatar")),
            "googleLogin": bool(user_document.get("google_id")),
            "wishlist": [str(item) for item in wishlist]
            if isinstance(wishlist, list)
            else [],
            "cartData": normalize_cart(user_document.get("cart_data")),
            "created_at": isoformat(user_document.get("created_at")),
        }

    def serialize_product(product_document) -> Dict:
        if not product_document:
            return {}

        images = product_document.get("image")
        colors = product_document.get("colors")
        return {
            "_id": str(product_document.get("_id")),
            "name": product_document.get("name", "") or "",
            "description": product_document.get("description", "") or "",
            "price": product_document.get("price", 0) or 0,
            "category": product_document.get("category", "") or "",
            "colors": [str(color) for color in colors]
            if isinstance(colors, list)
            else [],
            "image": [build_image_url(image) for image in images if image]
            if isinstance(images, list)
            else [],
            "popular": bool(product_document.get("popular")),
            "date": isoformat(product_document.get("date")),
        }

    def serialize_order(order_document) -> Dict:
        if not order_document:
            return {}

        address = order_document.get("address")
        return {
            "_id": str(order_document.get("_id")),
            "userId": str(order_document.get("user_id") or ""),
            "items": [dict(item) for item in order_document.get("items") or []],
            "address": address if isinstance(address, dict) else {},
            "amount": order_document.get("amount", 0),
            "paymentMethod": order_document.get("payment_method", ""),
            "payment": bool(order_document.get("payment")),
            "status": order_document.get("status", ORDER_STATUSES[0]),
            "deliveryEvidence": build_image_url(
                order_document.get("delivery_evidence")
            ),
            "date": isoformat(order_document.get("date")),
        }

    def serialize_subscriber(subscriber_document) -> Dict:
        return {
            "_id": str(subscriber_document.get("_id")),
            "email": subscriber_document.get("email", ""),
            "isActive": bool(subscriber_document.get("is_active")),
            "subscribedAt": isoformat(subscriber_document.get("subscribed_at")),
            "lastEmailSent": isoformat(subscriber_document.get("last_email_sent")),
            "createdAt": isoformat(subscriber_document.get("created_at")),
        }

    # --- Orders ---

    def normalize_order_item(payload):
        if not isinstance(payload, dict):
            return None, "Order items are missing product details."

        product_identifier = (
            payload.get("product_id")
            or payload.get("productId")
            or payload.get("_id")
            or payload.get("id")
        )
        product_id = str(product_identifier or "").strip()
        if not product_id:
            return None, "Order items are missing product details."

        name = str(payload.get("name") or "").strip()
        label = name or product_id

        quantity = coerce_quantity(payload.get("quantity", 1))
        if quantity is None or quantity <= 0:
            return None, f"Invalid quantity for {label}"

        price = safe_float(payload.get("price"), None)
        if price is None or price < 0:
            return None, f"Invalid price for {label}"

        image_value = payload.get("image") or payload.get("image_url") or ""
        if isinstance(image_value, list):
            image_value = image_value[0] if image_value else ""

        return (
            {
                "product_id": product_id,
                "name": name,
                "price": round(price, 2),
                "quantity": quantity,
                "color": str(payload.get("color") or "").strip(),
                "image": str(image_value or "").strip(),
            },
            None,
        )

    def normalize_order_address(payload) -> Tuple[Dict[str, str], List[str]]:
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError:
                payload = {}
        if not isinstance(payload, dict):
            payload = {}

        normalized: Dict[str, str] = {}
        for field in address_fields:
            for alias in address_field_aliases.get(field, (field,)):
                value = payload.get(alias)
                if value is None:
                    continue
                trimmed = str(value).strip()
                if trimmed:
                    normalized[field] = trimmed
                    break

        missing = [field for field in address_required_fields if not normalized.get(field)]
        return normalized, missing

    def delivery_fee() -> int:
        return app.config["DELIVERY_CHARGE"] * app.config["PRICE_MULTIPLIER"]

    def calculate_order_amount(items: List[Dict]) -> float:
        subtotal = sum(item["price"] * item["quantity"] for item in items)
        return round(subtotal + delivery_fee(), 2)

    def prepare_order_document(payload: Dict, user_document, payment_method: str):
        raw_items = payload.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            return None, error_response("Your order has no items.")

        normalized_items = []
        for entry in raw_items:
            normalized_entry, item_error = normalize_order_item(entry)
            if item_error:
                return None, error_response(item_error)
            normalized_items.append(normalized_entry)

        address, missing_fields = normalize_order_address(payload.get("address"))
        if missing_fields:
            return (
                None,
                error_response(
                    "Please complete the delivery address: "
                    + ", ".join(missing_fields)
                ),
            )

        return (
            {
                "user_id": str(user_document["_id"]),
                "items": normalized_items,
                "address": address,
                "amount": calculate_order_amount(normalized_items),
                "payment_method": payment_method,
                "payment": False,
                "status": ORDER_STATUSES[0],
                "direct_checkout": parse_flag(payload.get("directCheckout")),
                "date": datetime.utcnow(),
            },
            None,
        )

    def clear_user_cart(user_id):
        db.users.update_one({"_id": user_id}, {"$set": {"cart_data": {}}})

    def build_stripe_line_items(items: List[Dict]) -> List[Dict]:
        currency = app.config["STRIPE_CURRENCY"]
        line_items = []
        for item in items:
            line_items.append(
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": item.get("name") or "Item"},
                        "unit_amount": int(round(item["price"] * 100)),
                    },
                    "quantity": item["quantity"],
                }
            )
        line_items.append(
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": "Delivery Charges"},
                    "unit_amount": int(round(delivery_fee() * 100)),
                },
                "quantity": 1,
            }
        )
        return line_items

    def verify_paid_checkout_session(order_document):
        """Confirm with Stripe that the order's Checkout Session has been paid."""
        session_id = order_document.get("checkout_session_id")
        if not session_id or not app.config["STRIPE_SECRET_KEY"]:
            return error_response("Payment session not found")

        try:
            checkout_session = stripe.checkout.Session.retrieve(
                session_id, api_key=app.config["STRIPE_SECRET_KEY"]
            )
        except Exception as exc:
            app.logger.error(
                "Stripe session lookup failed for order %s: %s",
                order_document["_id"],
                exc,
            )
            return error_response("Unable to verify payment.")

        if getattr(checkout_session, "payment_status", None) != "paid":
            return error_response("Payment not completed")
        return None

    def find_order(order_identifier, extra_filter: Optional[Dict] = None):
        order_id = parse_object_id(order_identifier)
        if not order_id:
            return None, error_response("Order not found")

        query: Dict[str, object] = {"_id": order_id}
        if extra_filter:
            query.update(extra_filter)
        order_document = db.orders.find_one(query)
        if not order_document:
            return None, error_response("Order not found")
        return order_document, None

    def flatten_order_rows(order_documents) -> List[Dict]:
        rows: List[Dict] = []
        for order_document in order_documents:
            serialized = serialize_order(order_document)
            for item in serialized["items"]:
                row = dict(item)
                row["orderId"] = serialized["_id"]
                row["status"] = serialized["status"]
                row["payment"] = serialized["payment"]
                row["paymentMethod"] = serialized["paymentMethod"]
                row["date"] = serialized["date"]
                row["deliveryEvidence"] = serialized["deliveryEvidence"]
                rows.append(row)
        return rows

    # --- Newsletter ---

    def send_email_via_resend(payload: Dict[str, object], api_key: str):
        if not (api_key or "").strip():
            return False, "Resend API key is not configured."

        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def build_newsletter_html(
        recipient_email: str, message: str, product: Optional[Dict]
    ) -> str:
        frontend_url = app.config["FRONTEND_URL"]
        product_link = (
            f"{frontend_url}/product/{product['id']}"
            if product and product.get("id")
            else f"{frontend_url}/collection"
        )
        return render_template(
            "emails/new_product_email.html",
            shop_name=app.config["SHOP_NAME"],
            message=message,
            product=product,
            product_link=product_link,
            unsubscribe_link=f"{frontend_url}/unsubscribe?email={quote(recipient_email)}",
            year=datetime.utcnow().year,
        )

    def notify_active_subscribers(
        subject: str, message: str, product: Optional[Dict] = None
    ):
        subscribers = list(db.subscribers.find({"is_active": True}))
        if not subscribers:
            return None

        api_key = app.config["RESEND_NEWSLETTER_API_KEY"]
        if api_key:
            resend.api_key = api_key
        sender = f"{app.config['SHOP_NAME']} <{app.config['NEWSLETTER_SENDER_EMAIL']}>"

        outgoing = []
        for subscriber in subscribers:
            recipient = subscriber.get("email", "")
            outgoing.append(
                (
                    recipient,
                    {
                        "from": sender,
                        "to": [recipient],
                        "subject": subject,
                        "html": build_newsletter_html(recipient, message, product),
                    },
                )
            )

        def deliver(entry):
            recipient, email_payload = entry
            sent, error_details = send_email_via_resend(email_payload, api_key)
            if sent:
                return {"email": recipient, "status": "success"}
            app.logger.error(
                "Newsletter delivery failed for %s: %s", recipient, error_details
            )
            return {"email": recipient, "status": "failed", "error": error_details}

        worker_count = min(app.config["NOTIFY_MAX_WORKERS"], len(outgoing))
        with ThreadPoolExecutor(max_workers=worker_count) as executor:
            results = list(executor.map(deliver, outgoing))

        delivered = [result["email"] for result in results if result["status"] == "success"]
        if delivered:
            db.subscribers.update_many(
                {"email": {"$in": delivered}},
                {"$set": {"last_email_sent": datetime.utcnow()}},
            )

        failed_count = len(results) - len(delivered)
        summary = f"Emails sent to {len(delivered)} subscribers ({failed_count} failed)"
        app.logger.info("Newsletter '%s': %s", subject, summary)
        return {
            "message": summary,
            "sent": len(delivered),
            "failed": failed_count,
            "results": results,
        }

    def notify_new_product(product: Dict):
        name = product.get("name") or "New product"
        description = product.get("description") or ""
        subject = f"New Product: {name}"
        message = (
            f"We're excited to announce a new product in our store: {name}. {description}"
        ).strip()
        return notify_active_subscribers(subject, message, product)

    def dispatch_new_product_notification(product: Dict) -> Thread:
        def run():
            with app.app_context():
                try:
                    summary = notify_new_product(product)
                except Exception as exc:
                    app.logger.error(
                        "New product notification failed for %s: %s",
                        product.get("id"),
                        exc,
                    )
                    return
                if summary is None:
                    app.logger.info(
                        "No active subscribers to notify about %s", product.get("name")
                    )

        worker = Thread(target=run, name="notify-new-product", daemon=True)
        worker.start()
        return worker

    # --- ROUTES ---

    @app.route("/")
    @app.route("/health")
    def health():
        return jsonify({"message": "API Working", "status": "success"})

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    # Users
    @app.route("/api/user/register", methods=["POST"])
    def register_user():
        payload = request_payload()
        name = str(payload.get("name") or "").strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not name or not email or not password:
            return error_response("Name, email, and password are required.")

        if is_reserved_email(email) or db.users.find_one({"email": email}):
            return error_response("User already exists")

        if not is_valid_email(email):
            return error_response("Please enter a valid email")

        if len(password) < 8:
            return error_response("Please enter a strong password")

        user_document = {
            "name": name,
            "email": email,
            "password": hash_password(password),
            "google_id": None,
            "bio": "",
            "phone": "",
            "address": "",
            "avatar": "",
            "wishlist": [],
            "cart_data": {},
            "created_at": datetime.utcnow(),
        }
        insert_result = db.users.insert_one(user_document)
        user_document["_id"] = insert_result.inserted_id

        return jsonify({"success": True, "token": issue_user_token(user_document)})

    @app.route("/api/user/login", methods=["POST"])
    def login_user():
        payload = request_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        user = db.users.find_one({"email": email}) if email else None
        if not user:
            return error_response("User doesn't exist")

        if not user.get("password"):
            return error_response("Use Google Login instead")

        if not check_password(password, user.get("password")):
            return error_response("Invalid credentials")

        return jsonify({"success": True, "token": issue_user_token(user)})

    @app.route("/api/user/login-google", methods=["POST"])
    def google_login_user():
        payload = request_payload()
        email = normalize_email(payload.get("email"))
        google_id = str(payload.get("googleId") or "").strip()
        name = str(payload.get("name") or "").strip()
        avatar = str(payload.get("avatar") or "").strip()

        if not is_valid_email(email) or not google_id or is_reserved_email(email):
            return error_response("Google login failed")

        user = db.users.find_one({"email": email})
        if user:
            if not user.get("google_id"):
                return error_response(
                    "This email is already registered with password. "
                    "Please login using email & password."
                )
            if not user.get("avatar") and avatar:
                db.users.update_one({"_id": user["_id"]}, {"$set": {"avatar": avatar}})
        else:
            user = {
                "name": name or email.split("@")[0],
                "email": email,
                "google_id": google_id,
                "bio": "",
                "phone": "",
                "address": "",
                "avatar": avatar,
                "wishlist": [],
                "cart_data": {},
                "created_at": datetime.utcnow(),
            }
            insert_result = db.users.insert_one(user)
            user["_id"] = insert_result.inserted_id
            app.logger.info("Created Google account for %s", email)

        return jsonify({"success": True, "token": issue_user_token(user)})

    @app.route("/api/user/admin", methods=["POST"])
    def admin_login():
        payload = request_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        admin_email = app.config["ADMIN_EMAIL"]
        admin_password = app.config["ADMIN_PASSWORD"]
        if (
            admin_email
            and admin_password
            and hmac.compare_digest(email, admin_email)
            and hmac.compare_digest(password, admin_password)
        ):
            token = create_access_token(
                identity=admin_email, additional_claims={"role": "admin"}
            )
            return jsonify({"success": True, "token": token})

        return error_response("Invalid Credentials")

    @app.route("/api/user/me", methods=["GET"])
    @jwt_required()
    def user_detail():
        user, user_error = load_current_user(missing_status=404)
        if user_error:
            return user_error
        return jsonify({"success": True, "user": serialize_user(user)})

    @app.route("/api/user/update", methods=["PUT"])
    @jwt_required()
    def update_profile():
        user, user_error = load_current_user(missing_status=404)
        if user_error:
            return user_error

        payload = request_payload()
        updates: Dict[str, object] = {}
        for field in ("name", "bio", "phone", "address"):
            if field in payload and payload.get(field) is not None:
                updates[field] = str(payload.get(field)).strip()

        if "name" in updates and not updates["name"]:
            return error_response("Name cannot be empty.", 400)

        password = str(payload.get("password") or "")
        if password:
            if len(password) < 8:
                return error_response("Please enter a strong password", 400)
            updates["password"] = hash_password(password)

        avatar_file = request.files.get("avatar") or request.files.get("image")
        new_avatar = None
        if avatar_file and getattr(avatar_file, "filename", ""):
            new_avatar, image_error = store_uploaded_image(avatar_file)
            if image_error:
                return error_response(image_error, 400)
            updates["avatar"] = new_avatar

        if updates:
            updates["updated_at"] = datetime.utcnow()
            db.users.update_one({"_id": user["_id"]}, {"$set": updates})

        previous_avatar = user.get("avatar")
        if new_avatar and previous_avatar and previous_avatar != new_avatar:
            remove_uploaded_image(previous_avatar)

        updated_user = db.users.find_one({"_id": user["_id"]})
        return jsonify(
            {
                "success": True,
                "message": "Profile updated",
                "user": serialize_user(updated_user),
            }
        )

    # Wishlist
    @app.route("/api/user/wishlist", methods=["GET"])
    @app.route("/api/user/wishlist/get", methods=["GET"])
    @jwt_required()
    def get_wishlist():
        user, user_error = load_current_user()
        if user_error:
            return user_error
        return jsonify({"success": True, "wishlist": serialize_user(user)["wishlist"]})

    @app.route("/api/user/wishlist/toggle", methods=["POST"])
    @jwt_required()
    def toggle_wishlist_item():
        user, user_error = load_current_user()
        if user_error:
            return user_error

        payload = request_payload()
        product_id = str(payload.get("productId") or "").strip()
        if not product_id:
            return error_response("Product is required")

        current_wishlist = serialize_user(user)["wishlist"]
        if product_id in current_wishlist:
            db.users.update_one({"_id": user["_id"]}, {"$pull": {"wishlist": product_id}})
            message = "Removed from wishlist"
        else:
            product_object_id = parse_object_id(product_id)
            if not product_object_id or not db.products.find_one(
                {"_id": product_object_id}
            ):
                return error_response("Product not found")
            db.users.update_one(
                {"_id": user["_id"]}, {"$addToSet": {"wishlist": product_id}}
            )
            message = "Added to wishlist"

        updated_user = db.users.find_one({"_id": user["_id"]})
        return jsonify(
            {
                "success": True,
                "message": message,
                "wishlist": serialize_user(updated_user)["wishlist"],
            }
        )

    @app.route("/api/user/wishlist/remove", methods=["POST"])
    @jwt_required()
    def remove_from_wishlist():
        user, user_error = load_current_user()
        if user_error:
            return user_error

        payload = request_payload()
        product_id = str(payload.get("productId") or "").strip()
        if not product_id:
            return error_response("Product is required")

        db.users.update_one({"_id": user["_id"]}, {"$pull": {"wishlist": product_id}})
        updated_user = db.users.find_one({"_id": user["_id"]})
        return jsonify(
            {
                "success": True,
                "message": "Removed from wishlist",
                "wishlist": serialize_user(updated_user)["wishlist"],
            }
        )

    # Products
    @app.route("/api/product/list", methods=["GET"])
    def list_products():
        product_documents = db.products.find().sort([("date", -1), ("_id", -1)])
        return jsonify(
            {
                "success": True,
                "products": [serialize_product(document) for document in product_documents],
            }
        )

    @app.route("/api/product/single", methods=["POST"])
    def single_product():
        payload = request_payload()
        product_id = parse_object_id(payload.get("productId"))
        product_document = db.products.find_one({"_id": product_id}) if product_id else None
        if not product_document:
            return error_response("Product not found")
        return jsonify({"success": True, "product": serialize_product(product_document)})

    @app.route("/api/product/add", methods=["POST"])
    @jwt_required()
    def add_product():
        admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = request_payload()
        name = str(payload.get("name") or "").strip()
        description = str(payload.get("description") or "").strip()
        category = str(payload.get("category") or "").strip()

        if not name:
            return error_response("A product name is required.")

        price_value = coerce_quantity(payload.get("price"))
        if price_value is None or price_value <= 0:
            return error_response("Price must be a whole number greater than zero.")

        raw_colors = payload.get("colors")
        colors: List[str] = []
        if isinstance(raw_colors, list):
            colors = raw_colors
        elif raw_colors not in (None, ""):
            try:
                colors = json.loads(raw_colors)
            except (TypeError, ValueError):
                return error_response("Colors must be a JSON list.")
            if not isinstance(colors, list):
                return error_response("Colors must be a JSON list.")
        colors = [str(color).strip() for color in colors if str(color).strip()]
        invalid_colors = [color for color in colors if not is_valid_cart_key(color)]
        if invalid_colors:
            return error_response(
                "Color names cannot contain '.' or start with '$': "
                + ", ".join(invalid_colors)
            )

        image_files = [
            request.files.get(f"image{index}")
            for index in range(1, app.config["MAX_PRODUCT_IMAGES"] + 1)
        ]
        saved_images, image_error = store_uploaded_images(
            [image_file for image_file in image_files if image_file]
        )
        if image_error:
            return error_response(image_error)

        product_document = {
            "name": name,
            "description": description,
            "price": price_value,
            "category": category,
            "colors": colors,
            "image": saved_images or [app.config["DEFAULT_PRODUCT_IMAGE"]],
            "popular": parse_flag(payload.get("popular")),
            "date": datetime.utcnow(),
        }
        insert_result = db.products.insert_one(product_document)
        created_product = db.products.find_one({"_id": insert_result.inserted_id})
        serialized_product = serialize_product(created_product)

        notification_product = {
            "id": serialized_product["_id"],
            "name": serialized_product["name"],
            "description": serialized_product["description"],
            "image": serialized_product["image"][0] if serialized_product["image"] else "",
        }
        try:
            dispatch_new_product_notification(notification_product)
        except Exception as exc:
            app.logger.error("Unable to start subscriber notification: %s", exc)

        return jsonify(
            {"success": True, "message": "Product Added", "product": serialized_product}
        )

    @app.route("/api/product/remove", methods=["POST"])
    @jwt_required()
    def remove_product():
        admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = request_payload()
        product_id = parse_object_id(payload.get("id") or payload.get("productId"))
        product_document = db.products.find_one({"_id": product_id}) if product_id else None
        if not product_document:
            return error_response("Product not found")

        db.products.delete_one({"_id": product_document["_id"]})
        remove_uploaded_image(product_document.get("image") or [])

        return jsonify({"success": True, "message": "Product Removed"})

    # Cart
    def resolve_cart_target(payload: Dict):
        item_id = str(
            payload.get("itemId") or payload.get("item_id") or payload.get("productId") or ""
        ).strip()
        color = str(payload.get("color") or "").strip()

        if not item_id:
            return None, None, error_response("Product is required")
        if not color:
            return None, None, error_response("Please select a color first")
        if not is_valid_cart_key(item_id) or not is_valid_cart_key(color):
            return None, None, error_response("Invalid cart item")
        return item_id, color, None

    @app.route("/api/cart/add", methods=["POST"])
    @jwt_required()
    def add_to_cart():
        user, user_error = load_current_user()
        if user_error:
            return user_error

        payload = request_payload()
        item_id, color, target_error = resolve_cart_target(payload)
        if target_error:
            return target_error

        quantity = coerce_quantity(payload.get("quantity", 1))
        if quantity is None or quantity <= 0:
            return error_response("Quantity must be a positive whole number")

        db.users.update_one(
            {"_id": user["_id"]},
            {"$inc": {f"cart_data.{item_id}.{color}": quantity}},
        )
        return jsonify({"success": True, "message": "Added To Cart"})

    @app.route("/api/cart/update", methods=["POST"])
    @jwt_required()
    def update_cart():
        user, user_error = load_current_user()
        if user_error:
            return user_error

        payload = request_payload()
        item_id, color, target_error = resolve_cart_target(payload)
        if target_error:
            return target_error

        quantity = coerce_quantity(payload.get("quantity"))
        if quantity is None or quantity < 0:
            return error_response("Quantity must be zero or a positive whole number")

        field_path = f"cart_data.{item_id}.{color}"
        if quantity:
            db.users.update_one({"_id": user["_id"]}, {"$set": {field_path: quantity}})
        else:
            db.users.update_one({"_id": user["_id"]}, {"$unset": {field_path: ""}})
            refreshed = db.users.find_one({"_id": user["_id"]}) or {}
            remaining = (refreshed.get("cart_data") or {}).get(item_id)
            if isinstance(remaining, dict) and not remaining:
                db.users.update_one(
                    {"_id": user["_id"]}, {"$unset": {f"cart_data.{item_id}": ""}}
                )

        return jsonify({"success": True, "message": "Cart Updated"})

    @app.route("/api/cart/get", methods=["POST"])
    @jwt_required()
    def get_user_cart():
        user, user_error = load_current_user()
        if user_error:
            return user_error
        return jsonify({"success": True, "cartData": normalize_cart(user.get("cart_data"))})

    @app.route("/api/cart/clear", methods=["POST"])
    @jwt_required()
    def clear_cart():
        user, user_error = load_current_user()
        if user_error:
            return user_error
        clear_user_cart(user["_id"])
        return jsonify({"success": True, "message": "Cart Cleared"})

    # Orders
    @app.route("/api/order/place", methods=["POST"])
    @jwt_required()
    def place_order():
        user, user_error = load_current_user()
        if user_error:
            return user_error

        order_document, order_error = prepare_order_document(
            request_payload(), user, PAYMENT_METHOD_COD
        )
        if order_error:
            return order_error

        insert_result = db.orders.insert_one(order_document)
        if not order_document["direct_checkout"]:
            clear_user_cart(user["_id"])

        app.logger.info(
            "COD order %s placed by %s", insert_result.inserted_id, user.get("email")
        )
        return jsonify(
            {
                "success": True,
                "message": "Order Placed",
                "orderId": str(insert_result.inserted_id),
            }
        )

    @app.route("/api/order/stripe", methods=["POST"])
    @jwt_required()
    def place_order_stripe():
        user, user_error = load_current_user()
        if user_error:
            return user_error

        if not app.config["STRIPE_SECRET_KEY"]:
            return error_response("Card payments are not configured.")

        order_document, order_error = prepare_order_document(
            request_payload(), user, PAYMENT_METHOD_STRIPE
        )
        if order_error:
            return order_error

        insert_result = db.orders.insert_one(order_document)
        order_id = str(insert_result.inserted_id)
        origin = (request.headers.get("Origin") or app.config["FRONTEND_URL"]).rstrip("/")

        try:
            checkout_session = stripe.checkout.Session.create(
                api_key=app.config["STRIPE_SECRET_KEY"],
                mode="payment",
                line_items=build_stripe_line_items(order_document["items"]),
                metadata={"order_id": order_id},
                success_url=f"{origin}/payment-success?order_id={order_id}",
                cancel_url=f"{origin}/payment-cancel?order_id={order_id}",
            )
        except Exception as exc:
            app.logger.error("Stripe checkout failed for order %s: %s", order_id, exc)
            db.orders.delete_one({"_id": insert_result.inserted_id})
            return error_response("Failed to create payment session.")

        db.orders.update_one(
            {"_id": insert_result.inserted_id},
            {"$set": {"checkout_session_id": getattr(checkout_session, "id", None)}},
        )
        app.logger.info("Created Stripe checkout for order %s", order_id)
        return jsonify(
            {"success": True, "session_url": checkout_session.url, "orderId": order_id}
        )

    @app.route("/api/order/update-payment", methods=["POST"])
    @app.route("/api/order/verifyStripe", methods=["POST"])
    @jwt_required()
    def update_payment_status():
        user, user_error = load_current_user()
        if user_error:
            return user_error

        payload = request_payload()
        order_document, order_error = find_order(
            payload.get("orderId") or payload.get("order_id"),
            {"user_id": str(user["_id"])},
        )
        if order_error:
            return order_error

        if order_document.get("payment_method") != PAYMENT_METHOD_STRIPE:
            return error_response("Only card payments can be confirmed")

        payment_confirmed = parse_flag(
            payload.get("paymentStatus", payload.get("success")), default=True
        )
        if not payment_confirmed:
            if order_document.get("payment"):
                return error_response("Order has already been paid")
            db.orders.delete_one({"_id": order_document["_id"]})
            app.logger.info("Discarded unpaid order %s", order_document["_id"])
            return error_response("Payment cancelled")

        if order_document.get("payment"):
            return jsonify(
                {
                    "success": True,
                    "message": "Payment already confirmed",
                    "order": serialize_order(order_document),
                }
            )

        verification_error = verify_paid_checkout_session(order_document)
        if verification_error:
            return verification_error

        db.orders.update_one(
            {"_id": order_document["_id"]},
            {"$set": {"payment": True, "paid_at": datetime.utcnow()}},
        )
        if not order_document.get("direct_checkout"):
            clear_user_cart(user["_id"])

        updated_order = db.orders.find_one({"_id": order_document["_id"]})
        app.logger.info("Payment confirmed for order %s", order_document["_id"])
        return jsonify(
            {
                "success": True,
                "message": "Payment confirmed",
                "order": serialize_order(updated_order),
            }
        )

    @app.route("/api/order/userorders", methods=["POST"])
    @jwt_required()
    def user_orders():
        user, user_error = load_current_user()
        if user_error:
            return user_error

        order_documents = list(
            db.orders.find({"user_id": str(user["_id"])}).sort([("date", -1), ("_id", -1)])
        )
        return jsonify(
            {
                "success": True,
                "orders": [serialize_order(document) for document in order_documents],
                "items": flatten_order_rows(order_documents),
            }
        )

    @app.route("/api/order/list", methods=["POST"])
    @jwt_required()
    def all_orders():
        admin_error = require_admin()
        if admin_error:
            return admin_error

        order_documents = db.orders.find().sort([("date", -1), ("_id", -1)])
        return jsonify(
            {
                "success": True,
                "orders": [serialize_order(document) for document in order_documents],
            }
        )

    @app.route("/api/order/status", methods=["POST"])
    @jwt_required()
    def update_order_status():
        admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = request_payload()
        new_status = str(payload.get("status") or "").strip()
        if new_status not in ORDER_STATUSES:
            return error_response("Invalid order status")

        order_document, order_error = find_order(
            payload.get("orderId") or payload.get("order_id")
        )
        if order_error:
            return order_error

        current_status = order_document.get("status") or ORDER_STATUSES[0]
        if (
            app.config["ORDER_STATUS_FORWARD_ONLY"]
            and current_status in ORDER_STATUSES
            and ORDER_STATUSES.index(new_status) < ORDER_STATUSES.index(current_status)
        ):
            return error_response(
                f"Order status cannot move back from {current_status} to {new_status}"
            )

        updates: Dict[str, object] = {
            "status": new_status,
            "status_updated_at": datetime.utcnow(),
        }
        evidence_filename = None
        if new_status == DELIVERED_STATUS:
            evidence_file = request.files.get("deliveryEvidence")
            if not evidence_file or not getattr(evidence_file, "filename", ""):
                return error_response(
                    "Delivery evidence image is required to mark an order as delivered"
                )
            evidence_filename, image_error = store_uploaded_image(evidence_file)
            if image_error:
                return error_response(image_error)
            updates["delivery_evidence"] = evidence_filename

        try:
            db.orders.update_one({"_id": order_document["_id"]}, {"$set": updates})
        except PyMongoError:
            remove_uploaded_image(evidence_filename)
            raise

        previous_evidence = order_document.get("delivery_evidence")
        if evidence_filename and previous_evidence and previous_evidence != evidence_filename:
            remove_uploaded_image(previous_evidence)

        updated_order = db.orders.find_one({"_id": order_document["_id"]})
        app.logger.info(
            "Order %s moved from %s to %s", order_document["_id"], current_status, new_status
        )
        return jsonify(
            {
                "success": True,
                "message": "Status Updated",
                "order": serialize_order(updated_order),
            }
        )

    @app.route("/api/order/delete", methods=["POST"])
    @jwt_required()
    def delete_order():
        admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = request_payload()
        order_document, order_error = find_order(
            payload.get("orderId") or payload.get("order_id")
        )
        if order_error:
            return order_error

        db.orders.delete_one({"_id": order_document["_id"]})
        remove_uploaded_image(order_document.get("delivery_evidence"))
        app.logger.info("Deleted order %s", order_document["_id"])
        return jsonify({"success": True, "message": "Order Deleted"})

    # Subscribers
    @app.route("/api/subscribers", methods=["POST"])
    def add_subscriber():
        payload = request_payload()
        email = normalize_email(payload.get("email"))

        if not email:
            return error_response("Email is required", 400)
        if not is_valid_email(email):
            return error_response("Please enter a valid email", 400)

        existing = db.subscribers.find_one({"email": email})
        if existing:
            if existing.get("is_active"):
                return jsonify(
                    {
                        "success": True,
                        "message": "You are already subscribed",
                        "alreadySubscribed": True,
                    }
                )
            db.subscribers.update_one(
                {"_id": existing["_id"]},
                {"$set": {"is_active": True, "updated_at": datetime.utcnow()}},
            )
            return jsonify(
                {"success": True, "message": "Subscription reactivated successfully"}
            )

        timestamp = datetime.utcnow()
        try:
            db.subscribers.insert_one(
                {
                    "email": email,
                    "is_active": True,
                    "subscribed_at": timestamp,
                    "last_email_sent": None,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
            )
        except DuplicateKeyError:
            return jsonify(
                {
                    "success": True,
                    "message": "You are already subscribed",
                    "alreadySubscribed": True,
                }
            )

        return jsonify({"success": True, "message": "Subscribed successfully"}), 201

    @app.route("/api/subscribers/unsubscribe", methods=["PUT"])
    def unsubscribe_subscriber():
        payload = request_payload()
        email = normalize_email(payload.get("email"))

        subscriber = db.subscribers.find_one({"email": email}) if email else None
        if not subscriber:
            return error_response("Subscriber not found", 404)

        db.subscribers.update_one(
            {"_id": subscriber["_id"]},
            {"$set": {"is_active": False, "updated_at": datetime.utcnow()}},
        )
        return jsonify({"success": True, "message": "Unsubscribed successfully"})

    @app.route("/api/subscribers", methods=["GET"])
    @jwt_required()
    def list_subscribers():
        admin_error = require_admin()
        if admin_error:
            return admin_error

        subscriber_documents = db.subscribers.find().sort([("created_at", -1), ("_id", -1)])
        return jsonify(
            {
                "success": True,
                "subscribers": [
                    serialize_subscriber(document) for document in subscriber_documents
                ],
            }
        )

    @app.route("/api/subscribers/notify", methods=["POST"])
    @jwt_required()
    def notify_subscribers():
        admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = request_payload()
        subject = str(payload.get("subject") or "").strip()
        message = str(payload.get("message") or "").strip()
        if not subject or not message:
            return error_response("Subject and message are required", 400)

        product = None
        if payload.get("productName"):
            product = {
                "id": str(payload.get("productId") or "").strip(),
                "name": str(payload.get("productName")).strip(),
                "image": str(payload.get("productImage") or "").strip(),
            }

        summary = notify_active_subscribers(subject, message, product)
        if summary is None:
            return error_response("No active subscribers found", 404)
        return jsonify({"success": True, **summary})

    @app.route("/api/subscribers/notify-new-product", methods=["POST"])
    @jwt_required()
    def notify_subscribers_new_product():
        admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = request_payload()
        product_id = str(payload.get("productId") or "").strip()
        product_name = str(payload.get("productName") or "").strip()
        if not product_id or not product_name:
            return error_response("Product ID and name are required", 400)

        summary = notify_new_product(
            {
                "id": product_id,
                "name": product_name,
                "image": str(payload.get("productImage") or "").strip(),
                "description": str(payload.get("productDescription") or "").strip(),
            }
        )
        if summary is None:
            return error_response("No active subscribers found", 404)
        return jsonify({"success": True, **summary})

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 4000))
    create_app().run(host="0.0.0.0", port=port)
