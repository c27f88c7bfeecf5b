import threading
import time

import pytest
import requests

from conftest import ADMIN_EMAIL, ADMIN_PASSWORD
from shop_client import (
    CartSession,
    CartValidationError,
    LocalCache,
    OrderStatusPoller,
    ShopApiClient,
    ShopApiError,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class StubResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {"success": True}

    def json(self):
        return self._body


class StubSession:
    def __init__(self):
        self.calls = 0

    def request(self, method, url, **kwargs):
        self.calls += 1
        return StubResponse(body={"success": True, "products": []})


class FlakySession:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def request(self, method, url, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise requests.ConnectionError("connection reset")
        return StubResponse(body={"success": True, "products": [{"_id": "p1"}]})


@pytest.fixture
def api(api_session):
    return ShopApiClient("http://api.test", session=api_session, retry_delay=0)


@pytest.fixture
def cache(tmp_path):
    return LocalCache(str(tmp_path / "storefront.json"))


# LocalCache

def test_local_cache_expires_entries_by_age():
    clock = FakeClock()
    cache = LocalCache(clock=clock)
    cache.set("products", [{"_id": "p1"}])

    clock.now += 30
    assert cache.get("products", max_age=60) == [{"_id": "p1"}]
    assert cache.age("products") == 30

    clock.now += 60
    assert cache.get("products", default=[], max_age=60) == []
    assert cache.get("products") == [{"_id": "p1"}]


def test_local_cache_persists_to_disk(tmp_path):
    path = str(tmp_path / "cache.json")
    LocalCache(path).set("guest_cart", {"p1": {"black": 2}})

    reloaded = LocalCache(path)
    assert reloaded.get("guest_cart") == {"p1": {"black": 2}}

    reloaded.invalidate("guest_cart")
    assert LocalCache(path).get("guest_cart") is None


def test_local_cache_ignores_corrupt_file(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text("{not json", encoding="utf-8")

    assert LocalCache(str(path)).get("token") is None


# ShopApiClient

def test_client_raises_on_unsuccessful_response(api):
    with pytest.raises(ShopApiError) as excinfo:
        api.login("ghost@example.com", "password123")

    assert excinfo.value.message == "User doesn't exist"


def test_client_raises_with_status_code(api):
    with pytest.raises(ShopApiError) as excinfo:
        api.me()

    assert excinfo.value.status_code == 401


def test_reads_are_retried_once():
    session = FlakySession(failures=1)
    client = ShopApiClient("http://api.test", session=session, retry_delay=0)

    assert client.list_products() == [{"_id": "p1"}]
    assert session.calls == 2


def test_writes_are_not_retried():
    session = FlakySession(failures=1)
    client = ShopApiClient("http://api.test", token="t", session=session, retry_delay=0)

    with pytest.raises(ShopApiError):
        client.cart_add("p1", "black")
    assert session.calls == 1


def test_read_retry_budget_is_bounded():
    session = FlakySession(failures=5)
    client = ShopApiClient("http://api.test", session=session, retry_delay=0)

    with pytest.raises(ShopApiError):
        client.list_products()
    assert session.calls == 2


# CartSession

def test_guest_cart_is_kept_locally(api, cache, api_session):
    session = CartSession(api, cache)

    session.add_item("p1", "black", 2)
    session.set_quantity("p1", "white", 1)

    assert session.cart_items == {"p1": {"black": 2, "white": 1}}
    assert cache.get("guest_cart") == {"p1": {"black": 2, "white": 1}}
    assert session.cart_count() == 3
    assert api_session.calls == []


def test_cart_validation_happens_before_any_change(api, cache):
    session = CartSession(api, cache)

    with pytest.raises(CartValidationError, match="Please select a color first"):
        session.add_item("p1", "")
    with pytest.raises(CartValidationError):
        session.add_item("p1", "black", 0)
    with pytest.raises(CartValidationError):
        session.set_quantity("p1", "black", -1)

    assert session.cart_items == {}


def test_guest_cart_merges_on_login(api, cache, register, api_session):
    register(email="dina@example.com")
    session = CartSession(api, cache)
    session.add_item("X", "black", 2)

    merged = session.login("dina@example.com", "password123")

    assert merged is True
    assert session.cart_items == {"X": {"black": 2}}
    assert cache.get("guest_cart") is None
    assert cache.get("token") == api.token
    assert api.cart_get() == {"X": {"black": 2}}


def test_merge_adds_to_existing_server_cart(api, cache, register, database):
    token = register(email="dina@example.com")
    database.users.update_one(
        {"email": "dina@example.com"}, {"$set": {"cart_data": {"A": {"red": 1}}}}
    )
    cache.set("guest_cart", {"A": {"red": 2}, "B": {"blue": 1}})
    session = CartSession(api, cache, merge_workers=1)

    session.login_with_token(token)

    assert session.cart_items == {"A": {"red": 3}, "B": {"blue": 1}}


def test_login_without_guest_cart_loads_server_cart(api, cache, register, database):
    token = register(email="dina@example.com")
    database.users.update_one(
        {"email": "dina@example.com"}, {"$set": {"cart_data": {"A": {"red": 4}}}}
    )
    session = CartSession(api, cache)

    merged = session.login_with_token(token)

    assert merged is False
    assert session.cart_items == {"A": {"red": 4}}
    assert cache.get("user_cart") == {"A": {"red": 4}}


def test_merge_ignores_concurrent_trigger(api, cache, user_token):
    cache.set("guest_cart", {"A": {"red": 1}})
    api.token = user_token
    session = CartSession(api, cache)

    session._merge_lock.acquire()
    try:
        assert session.is_syncing is True
        assert session.merge_guest_cart_into_server() is False
    finally:
        session._merge_lock.release()

    assert cache.get("guest_cart") == {"A": {"red": 1}}
    assert session.merge_guest_cart_into_server() is True
    assert session.is_syncing is False


def test_partial_merge_failure_keeps_only_failed_entries(api, cache, user_token, monkeypatch):
    cache.set("guest_cart", {"A": {"red": 3}, "B": {"blue": 1}})
    api.token = user_token
    original_cart_add = api.cart_add

    def cart_add(item_id, color, quantity=1):
        if item_id == "B":
            raise ShopApiError("Server unavailable", 503)
        return original_cart_add(item_id, color, quantity)

    monkeypatch.setattr(api, "cart_add", cart_add)
    session = CartSession(api, cache, merge_workers=1)

    with pytest.raises(ShopApiError, match="Failed to sync 1 cart item"):
        session.merge_guest_cart_into_server()

    assert cache.get("guest_cart") == {"B": {"blue": 1}}
    assert api.cart_get() == {"A": {"red": 3}}


def test_authenticated_add_failure_keeps_local_state(api, cache, user_token, monkeypatch):
    api.token = user_token
    session = CartSession(api, cache)

    def failing_cart_add(item_id, color, quantity=1):
        raise ShopApiError("Server unavailable", 503)

    monkeypatch.setattr(api, "cart_add", failing_cart_add)

    with pytest.raises(ShopApiError):
        session.add_item("p1", "black")
    assert session.cart_items == {"p1": {"black": 1}}


def test_authenticated_updates_reach_server(api, cache, user_token):
    api.token = user_token
    session = CartSession(api, cache)

    session.add_item("p1", "black", 2)
    session.set_quantity("p1", "black", 0)
    session.add_item("p2", "red")

    assert api.cart_get() == {"p2": {"red": 1}}
    assert session.cart_items == {"p2": {"red": 1}}


def test_stored_token_restores_session(api_session, cache, user_token):
    cache.set("token", user_token)
    cache.set("user_cart", {"p1": {"black": 1}})

    session = CartSession(ShopApiClient("http://api.test", session=api_session), cache)

    assert session.is_authenticated
    assert session.cart_items == {"p1": {"black": 1}}


def test_authenticated_changes_survive_restart(api, cache, user_token):
    api.token = user_token
    session = CartSession(api, cache)
    session.add_item("p1", "black", 2)
    session.set_quantity("p2", "red", 3)

    restarted = CartSession(api, cache)

    assert restarted.cart_items == {"p1": {"black": 2}, "p2": {"red": 3}}


def test_stale_user_cart_is_refetched(api, api_session, user_token, database):
    clock = FakeClock()
    cache = LocalCache(clock=clock)
    cache.set("token", user_token)
    cache.set("user_cart", {"old": {"red": 1}})
    database.users.update_one(
        {"email": "dina@example.com"}, {"$set": {"cart_data": {"p1": {"black": 2}}}}
    )

    fresh = CartSession(api, cache, cart_max_age=300)
    assert fresh.cart_items == {"old": {"red": 1}}
    assert fresh.ensure_fresh() == {"old": {"red": 1}}
    assert api_session.calls == []

    clock.now += 301
    stale = CartSession(api, cache, cart_max_age=300)
    assert stale.cart_items == {}
    assert stale.ensure_fresh() == {"p1": {"black": 2}}
    assert cache.age("user_cart") == 0


def test_each_thread_gets_its_own_http_session():
    created = []

    def factory():
        created.append(StubSession())
        return created[-1]

    client = ShopApiClient("http://api.test", session_factory=factory)
    sessions = []

    def use_session():
        sessions.append(client.session)
        client.list_products()

    workers = [threading.Thread(target=use_session) for _ in range(3)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()
    use_session()
    use_session()

    assert len(created) == 4
    assert len({id(session) for session in sessions}) == 4
    assert sum(session.calls for session in created) == 5


def test_logout_and_clear(api, cache, user_token):
    cache.set("guest_cart", {"g": {"red": 1}})
    api.token = user_token
    session = CartSession(api, cache)
    session.add_item("p1", "black")

    session.clear_cart()
    assert session.cart_items == {}
    assert api.cart_get() == {}

    session.logout()
    assert not session.is_authenticated
    assert cache.get("token") is None
    assert session.cart_items == {"g": {"red": 1}}


def test_cart_total_uses_catalog_prices(api, cache):
    session = CartSession(api, cache)
    session.add_item("p1", "black", 2)
    session.add_item("p2", "red", 1)

    assert session.cart_total([{"_id": "p1", "price": 150}, {"_id": "p2", "price": 90}]) == 390


# Orders through the client

def test_customer_and_admin_order_flow(api_session, register, address):
    customer = ShopApiClient("http://api.test", session=api_session)
    customer.token = register(email="dina@example.com")
    admin = ShopApiClient("http://api.test", session=api_session)
    admin.token = admin.admin_login(ADMIN_EMAIL, ADMIN_PASSWORD)

    items = [{"_id": "p1", "name": "Linen Shirt", "price": 150, "quantity": 1, "color": "black"}]
    order_id = customer.place_order(items, address)["orderId"]

    admin.update_order_status(order_id, "Packing")
    delivered = admin.update_order_status(
        order_id, "Delivered", ("doorstep.jpg", b"photo", "image/jpeg")
    )

    assert delivered["order"]["status"] == "Delivered"
    assert customer.user_orders()["orders"][0]["status"] == "Delivered"
    assert [order["_id"] for order in admin.all_orders()] == [order_id]

    admin.delete_order(order_id)
    assert customer.user_orders()["orders"] == []


# OrderStatusPoller

def test_poller_delivers_updates_and_skips_failures():
    responses = iter([ShopApiError("offline"), {"orders": [1]}])
    updates = []

    def fetch():
        result = next(responses)
        if isinstance(result, Exception):
            raise result
        return result

    poller = OrderStatusPoller(fetch, updates.append, interval=0.01)

    assert poller.poll_once() is False
    assert poller.poll_once() is True
    assert updates == [{"orders": [1]}]
    assert poller.last_result == {"orders": [1]}


def test_poller_runs_until_stopped():
    ticked = threading.Event()
    calls = []

    def fetch():
        calls.append(1)
        if len(calls) >= 3:
            ticked.set()
        return len(calls)

    poller = OrderStatusPoller(fetch, interval=0.01)
    poller.start()
    assert ticked.wait(2)
    poller.stop(timeout=2)

    assert not poller.running
    stopped_at = len(calls)
    time.sleep(0.05)
    assert len(calls) == stopped_at


def test_poller_factories_use_role_intervals(api):
    customer = OrderStatusPoller.for_customer(api)
    admin = OrderStatusPoller.for_admin(api)

    assert customer.interval == 30
    assert admin.interval == 10
    assert customer.fetch == api.user_orders
    assert admin.fetch == api.all_orders
