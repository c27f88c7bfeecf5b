import copy
import json
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

import requests

from cart_utils import (
    add_to_cart,
    cart_count,
    cart_total,
    coerce_quantity,
    is_valid_cart_key,
    iter_cart_entries,
    normalize_cart,
    set_cart_quantity,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15
DEFAULT_READ_RETRIES = 1
DEFAULT_RETRY_DELAY_SECONDS = 1.0
CUSTOMER_POLL_INTERVAL_SECONDS = 30
ADMIN_POLL_INTERVAL_SECONDS = 10
USER_CART_MAX_AGE_SECONDS = 300


class ShopApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


class CartValidationError(ValueError):
    pass


class LocalCache:
    """Client-side key/value store persisted as a single JSON document.

    Every entry records when it was written so callers can ask for values no
    older than ``max_age`` seconds. Without a ``path`` the cache lives in
    memory only.
    """

    def __init__(self, path: Optional[str] = None, clock: Callable[[], float] = time.time):
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict] = self._load()

    def _load(self) -> Dict[str, Dict]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                entries = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable local cache %s: %s", self.path, exc)
            return {}
        return entries if isinstance(entries, dict) else {}

    def _flush(self):
        if not self.path:
            return
        temporary_path = f"{self.path}.tmp"
        with open(temporary_path, "w", encoding="utf-8") as handle:
            json.dump(self._entries, handle)
        os.replace(temporary_path, self.path)

    def get(self, key: str, default=None, max_age: Optional[float] = None):
        with self._lock:
            entry = self._entries.get(key)
        if not isinstance(entry, dict) or "value" not in entry:
            return default
        if max_age is not None and self._clock() - entry.get("stored_at", 0) > max_age:
            return default
        return copy.deepcopy(entry["value"])

    def set(self, key: str, value):
        with self._lock:
            self._entries[key] = {
                "value": copy.deepcopy(value),
                "stored_at": self._clock(),
            }
            self._flush()

    def invalidate(self, *keys: str):
        with self._lock:
            removed = [self._entries.pop(key, None) for key in keys]
            if any(entry is not None for entry in removed):
                self._flush()

    def age(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._entries.get(key)
        if not isinstance(entry, dict):
            return None
        return self._clock() - entry.get("stored_at", 0)


class ShopApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        read_retries: int = DEFAULT_READ_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        session=None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.read_retries = max(0, read_retries)
        self.retry_delay = retry_delay
        self._shared_session = session
        self._session_factory = session_factory
        self._local = threading.local()

    @property
    def session(self):
        """The HTTP session for the calling thread.

        An explicitly injected session is shared by every thread and must be
        thread-safe; otherwise each thread lazily gets its own session.
        """
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            self._local.session = session
        return session

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict] = None,
        data: Optional[Dict] = None,
        files: Optional[Dict] = None,
        read: bool = False,
    ) -> Dict:
        attempts = 1 + (self.read_retries if read else 0)
        url = f"{self.base_url}{path}"
        response = None
        for attempt in range(attempts):
            try:
                response = self.session.request(
                    method,
                    url,
                    json=json_body,
                    data=data,
                    files=files,
                    headers=self._headers(),
                    timeout=self.timeout,
                )
                break
            except (requests.ConnectionError, requests.Timeout) as exc:
                remaining = attempts - attempt - 1
                if not remaining:
                    raise ShopApiError(f"Request to {path} failed: {exc}") from exc
                logger.info(
                    "Retrying %s %s, %d retries left: %s", method, path, remaining, exc
                )
                time.sleep(self.retry_delay)

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        if response.status_code >= 400 or body.get("success") is False:
            message = body.get("message") or f"{method} {path} failed with {response.status_code}"
            raise ShopApiError(message, response.status_code, body)
        return body

    # Users
    def register(self, name: str, email: str, password: str) -> str:
        body = self.request(
            "POST",
            "/api/user/register",
            json_body={"name": name, "email": email, "password": password},
        )
        return body["token"]

    def login(self, email: str, password: str) -> str:
        body = self.request(
            "POST", "/api/user/login", json_body={"email": email, "password": password}
        )
        return body["token"]

    def admin_login(self, email: str, password: str) -> str:
        body = self.request(
            "POST", "/api/user/admin", json_body={"email": email, "password": password}
        )
        return body["token"]

    def me(self) -> Dict:
        return self.request("GET", "/api/user/me", read=True)["user"]

    def wishlist(self) -> List[str]:
        return self.request("GET", "/api/user/wishlist", read=True).get("wishlist", [])

    def toggle_wishlist(self, product_id: str) -> List[str]:
        body = self.request(
            "POST", "/api/user/wishlist/toggle", json_body={"productId": product_id}
        )
        return body.get("wishlist", [])

    # Catalog
    def list_products(self) -> List[Dict]:
        return self.request("GET", "/api/product/list", read=True).get("products", [])

    # Cart
    def cart_add(self, item_id: str, color: str, quantity: int = 1) -> Dict:
        return self.request(
            "POST",
            "/api/cart/add",
            json_body={"itemId": item_id, "color": color, "quantity": quantity},
        )

    def cart_update(self, item_id: str, color: str, quantity: int) -> Dict:
        return self.request(
            "POST",
            "/api/cart/update",
            json_body={"itemId": item_id, "color": color, "quantity": quantity},
        )

    def cart_get(self) -> Dict:
        return self.request("POST", "/api/cart/get", json_body={}, read=True).get(
            "cartData", {}
        )

    def cart_clear(self) -> Dict:
        return self.request("POST", "/api/cart/clear", json_body={})

    # Orders
    def place_order(
        self, items: List[Dict], address: Dict, direct_checkout: bool = False
    ) -> Dict:
        return self.request(
            "POST",
            "/api/order/place",
            json_body={
                "items": items,
                "address": address,
                "directCheckout": direct_checkout,
            },
        )

    def place_order_stripe(
        self, items: List[Dict], address: Dict, direct_checkout: bool = False
    ) -> Dict:
        return self.request(
            "POST",
            "/api/order/stripe",
            json_body={
                "items": items,
                "address": address,
                "directCheckout": direct_checkout,
            },
        )

    def confirm_payment(self, order_id: str, paid: bool = True) -> Dict:
        return self.request(
            "POST",
            "/api/order/update-payment",
            json_body={"orderId": order_id, "paymentStatus": paid},
        )

    def user_orders(self) -> Dict:
        return self.request("POST", "/api/order/userorders", json_body={}, read=True)

    def all_orders(self) -> List[Dict]:
        return self.request("POST", "/api/order/list", json_body={}, read=True).get(
            "orders", []
        )

    def update_order_status(
        self,
        order_id: str,
        status: str,
        evidence: Optional[Tuple] = None,
    ) -> Dict:
        if evidence is None:
            return self.request(
                "POST",
                "/api/order/status",
                json_body={"orderId": order_id, "status": status},
            )
        return self.request(
            "POST",
            "/api/order/status",
            data={"orderId": order_id, "status": status},
            files={"deliveryEvidence": evidence},
        )

    def delete_order(self, order_id: str) -> Dict:
        return self.request("POST", "/api/order/delete", json_body={"orderId": order_id})

    # Newsletter
    def subscribe(self, email: str) -> Dict:
        return self.request("POST", "/api/subscribers", json_body={"email": email})

    def unsubscribe(self, email: str) -> Dict:
        return self.request(
            "PUT", "/api/subscribers/unsubscribe", json_body={"email": email}
        )


class CartSession:
    """Shopper cart view backed by the local cache and, once signed in, the server."""

    GUEST_CART_KEY = "guest_cart"
    USER_CART_KEY = "user_cart"
    TOKEN_KEY = "token"

    def __init__(
        self,
        api: ShopApiClient,
        cache: Optional[LocalCache] = None,
        merge_workers: int = 4,
        cart_max_age: float = USER_CART_MAX_AGE_SECONDS,
    ):
        self.api = api
        self.cache = cache or LocalCache()
        self.merge_workers = max(1, merge_workers)
        self.cart_max_age = cart_max_age
        self._merge_lock = threading.Lock()

        stored_token = self.cache.get(self.TOKEN_KEY)
        if stored_token and not self.api.token:
            self.api.token = stored_token

        if self.is_authenticated:
            cached = self.cache.get(self.USER_CART_KEY, {}, max_age=self.cart_max_age)
        else:
            cached = self.cache.get(self.GUEST_CART_KEY, {})
        self.cart_items = normalize_cart(cached)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.api.token)

    @property
    def is_syncing(self) -> bool:
        return self._merge_lock.locked()

    def _validated_target(self, product_id, color) -> Tuple[str, str]:
        normalized_color = str(color or "").strip()
        if not normalized_color:
            raise CartValidationError("Please select a color first")
        normalized_product = str(product_id or "").strip()
        if not is_valid_cart_key(normalized_product) or not is_valid_cart_key(
            normalized_color
        ):
            raise CartValidationError("Invalid cart item")
        return normalized_product, normalized_color

    def add_item(self, product_id: str, color: str, quantity_delta: int = 1) -> Dict:
        product_id, color = self._validated_target(product_id, color)
        delta = coerce_quantity(quantity_delta)
        if delta is None or delta <= 0:
            raise CartValidationError("Quantity must be a positive whole number")

        self.cart_items = add_to_cart(self.cart_items, product_id, color, delta)
        if not self.is_authenticated:
            self.cache.set(self.GUEST_CART_KEY, self.cart_items)
            return self.cart_items

        self.api.cart_add(product_id, color, delta)
        self.cache.set(self.USER_CART_KEY, self.cart_items)
        return self.cart_items

    def set_quantity(self, product_id: str, color: str, quantity: int) -> Dict:
        product_id, color = self._validated_target(product_id, color)
        normalized_quantity = coerce_quantity(quantity)
        if normalized_quantity is None or normalized_quantity < 0:
            raise CartValidationError("Quantity must be zero or a positive whole number")

        self.cart_items = set_cart_quantity(
            self.cart_items, product_id, color, normalized_quantity
        )
        if not self.is_authenticated:
            self.cache.set(self.GUEST_CART_KEY, self.cart_items)
            return self.cart_items

        self.api.cart_update(product_id, color, normalized_quantity)
        self.cache.set(self.USER_CART_KEY, self.cart_items)
        return self.cart_items

    def refresh_from_server(self) -> Dict:
        server_cart = normalize_cart(self.api.cart_get())
        self.cart_items = server_cart
        self.cache.set(self.USER_CART_KEY, server_cart)
        return server_cart

    def ensure_fresh(self) -> Dict:
        """Refetch the server cart once the cached copy is older than ``cart_max_age``."""
        if not self.is_authenticated:
            return self.cart_items
        cached_age = self.cache.age(self.USER_CART_KEY)
        if cached_age is None or cached_age > self.cart_max_age:
            return self.refresh_from_server()
        return self.cart_items

    def merge_guest_cart_into_server(self) -> bool:
        if not self.is_authenticated:
            return False
        if not self._merge_lock.acquire(blocking=False):
            logger.debug("Guest cart merge already running, ignoring trigger")
            return False

        try:
            guest_cart = normalize_cart(self.cache.get(self.GUEST_CART_KEY, {}))
            entries = list(iter_cart_entries(guest_cart))
            if not entries:
                self.cache.invalidate(self.GUEST_CART_KEY)
                return False

            logger.info("Syncing %d guest cart entries to the server", len(entries))
            pending = guest_cart
            failures: List[ShopApiError] = []
            with ThreadPoolExecutor(
                max_workers=min(self.merge_workers, len(entries))
            ) as executor:
                futures = [
                    (
                        product_id,
                        color,
                        quantity,
                        executor.submit(self.api.cart_add, product_id, color, quantity),
                    )
                    for product_id, color, quantity in entries
                ]
                for product_id, color, quantity, future in futures:
                    try:
                        future.result()
                    except ShopApiError as exc:
                        failures.append(exc)
                        continue
                    pending = set_cart_quantity(pending, product_id, color, 0)

            if failures:
                self.cache.set(self.GUEST_CART_KEY, pending)
                raise ShopApiError(
                    f"Failed to sync {len(failures)} cart item(s): {failures[0].message}"
                )

            self.cache.invalidate(self.GUEST_CART_KEY)
            self.refresh_from_server()
            return True
        finally:
            self._merge_lock.release()

    def login(self, email: str, password: str) -> bool:
        return self.login_with_token(self.api.login(email, password))

    def login_with_token(self, token: str) -> bool:
        was_authenticated = self.is_authenticated
        self.api.token = token
        self.cache.set(self.TOKEN_KEY, token)

        merged = False
        if not was_authenticated:
            merged = self.merge_guest_cart_into_server()
        if not merged:
            self.refresh_from_server()
        return merged

    def logout(self):
        self.api.token = None
        self.cache.invalidate(self.TOKEN_KEY, self.USER_CART_KEY)
        self.cart_items = normalize_cart(self.cache.get(self.GUEST_CART_KEY, {}))

    def clear_cart(self):
        try:
            if self.is_authenticated:
                self.api.cart_clear()
                self.cache.invalidate(self.USER_CART_KEY)
            else:
                self.cache.invalidate(self.GUEST_CART_KEY)
        finally:
            self.cart_items = {}

    def cart_count(self) -> int:
        return cart_count(self.cart_items)

    def cart_total(self, catalog: List[Dict]) -> float:
        return cart_total(self.cart_items, catalog)


class OrderStatusPoller:
    """Re-fetches order state on a fixed interval until stopped.

    Fetch failures are logged and skipped; the next tick is the retry.
    """

    def __init__(
        self,
        fetch: Callable[[], object],
        on_update: Optional[Callable[[object], None]] = None,
        interval: float = CUSTOMER_POLL_INTERVAL_SECONDS,
    ):
        self.fetch = fetch
        self.on_update = on_update
        self.interval = interval
        self.last_result = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def for_customer(cls, api: ShopApiClient, on_update=None, interval=CUSTOMER_POLL_INTERVAL_SECONDS):
        return cls(api.user_orders, on_update, interval)

    @classmethod
    def for_admin(cls, api: ShopApiClient, on_update=None, interval=ADMIN_POLL_INTERVAL_SECONDS):
        return cls(api.all_orders, on_update, interval)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def poll_once(self) -> bool:
        try:
            result = self.fetch()
        except ShopApiError as exc:
            logger.debug("Order poll failed: %s", exc)
            return False

        self.last_result = result
        if self.on_update:
            self.on_update(result)
        return True

    def _run(self):
        self.poll_once()
        while not self._stop_event.wait(self.interval):
            self.poll_once()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="order-status-poller", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
        self._thread = None
