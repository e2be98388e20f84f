import pytest
from fastapi.testclient import TestClient

import frontend_client
from backend_api.main import app
from logic import services
from tracking import ApiOrderSource, Identity, OrderQueryError, OrderQueryLayer

ITEM = {"product_name": "Diavola", "quantity": 2, "product_price": 9.0}


@pytest.fixture
def api(db_engine_and_session, monkeypatch):
    """Send the client's requests to the app in-process instead of over a socket."""
    client = TestClient(app)

    def _request_json(method, path, *, token=None, json_body=None, params=None, timeout=30.0):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        query = {k: v for k, v in (params or {}).items() if v is not None}
        resp = client.request(method, path, headers=headers, json=json_body, params=query)
        if resp.status_code >= 400:
            raise frontend_client.APIError(
                status_code=resp.status_code,
                detail=str(resp.json().get("detail")),
                body=resp.text,
            )
        return resp.json() if resp.content else None

    monkeypatch.setattr(frontend_client, "_request_json", _request_json)
    return client


def test_base_url_comes_from_env(monkeypatch):
    monkeypatch.setenv("API_BASE_URL", "http://orders.internal:9000/")
    assert frontend_client.api_base_url() == "http://orders.internal:9000"


def test_health_and_account_calls(api):
    assert frontend_client.api_health() is True

    signed_up = frontend_client.signup("luigi", "GoodPassword12")
    assert signed_up["username"] == "luigi"

    logged_in = frontend_client.login("luigi", "GoodPassword12")
    assert logged_in["user_id"] == signed_up["user_id"]
    assert frontend_client.me(logged_in["access_token"])["username"] == "luigi"

    with pytest.raises(frontend_client.APIError) as exc:
        frontend_client.login("luigi", "wrong-password")
    assert exc.value.status_code == 401


def test_unreachable_api_reports_unhealthy(monkeypatch):
    def _down(*args, **kwargs):
        raise frontend_client.APIError(status_code=0, detail="Cannot reach API")

    monkeypatch.setattr(frontend_client, "_request_json", _down)
    assert frontend_client.api_health() is False


def test_order_calls_for_anonymous_and_signed_in_customers(api):
    anon = frontend_client.create_order(
        customer_name="Mario", customer_email="m@example.com", items=[ITEM], client_id="client_a"
    )
    assert [o["id"] for o in frontend_client.list_client_orders("client_a")] == [anon["id"]]
    assert frontend_client.get_order(anon["id"], client_id="client_a")["total_amount"] == 18.0
    assert frontend_client.get_order(anon["id"], client_id="client_b") is None

    token = frontend_client.signup("peach", "GoodPassword12")["access_token"]
    mine = frontend_client.create_order(customer_name="Peach", customer_email="p@example.com", items=[ITEM], token=token)
    assert [o["id"] for o in frontend_client.list_my_orders(token)] == [mine["id"]]
    assert frontend_client.get_order(mine["id"], token=token)["id"] == mine["id"]


def test_staff_calls(api):
    services.create_user("chef", "GoodPassword12", is_staff=True)
    token = frontend_client.login("chef", "GoodPassword12")["access_token"]
    oid = frontend_client.create_order(
        customer_name="Mario", customer_email="m@example.com", items=[ITEM], client_id="client_a"
    )["id"]

    assert [o["id"] for o in frontend_client.admin_list_orders(token)] == [oid]

    updated = frontend_client.update_order_status(token, oid, "preparing")
    assert updated["status"] == "preparing"
    assert updated["metadata"]["clientId"] == "client_a"
    assert frontend_client.update_order_status(token, "missing", "ready") is None

    assert frontend_client.mark_order_read(token, oid) is True
    assert frontend_client.mark_order_done(token, oid) is True
    assert frontend_client.mark_order_done(token, "missing") is False
    assert frontend_client.admin_list_orders(token, include_done=False) == []


def test_api_order_source_feeds_the_query_layer(api):
    token = frontend_client.signup("toad", "GoodPassword12")["access_token"]
    mine = frontend_client.create_order(
        customer_name="Toad", customer_email="t@example.com", items=[ITEM], token=token, client_id="client_t"
    )["id"]
    anon = frontend_client.create_order(
        customer_name="Toad", customer_email="t@example.com", items=[ITEM], client_id="client_t"
    )["id"]
    user_id = frontend_client.me(token)["user_id"]

    result = OrderQueryLayer(ApiOrderSource(token)).fetch_visible_orders(Identity(user_id=user_id, client_id="client_t"))
    assert sorted(o.id for o in result.orders) == sorted([mine, anon])
    assert not result.partial


def test_api_order_source_without_token(api):
    with pytest.raises(OrderQueryError):
        ApiOrderSource(None).orders_for_user("u1")

    frontend_client.create_order(customer_name="Anon", customer_email="a@example.com", items=[ITEM], client_id="c1")
    result = OrderQueryLayer(ApiOrderSource(None)).fetch_visible_orders(Identity(user_id="u1", client_id="c1"))
    assert len(result.orders) == 1
    assert set(result.errors) == {"user_id"}
