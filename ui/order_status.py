import os
import uuid
from collections import deque

import streamlit as st

from frontend_client import APIError
from frontend_client import create_order as api_create_order
from frontend_client import login as api_login
from logic import services
from realtime import get_change_feed
from tracking import (
    ApiOrderSource,
    ClientIdentityProvider,
    DatabaseOrderSource,
    LiveUpdateSubscriber,
    OrderQueryLayer,
    OrderTracker,
    SqliteClientStorage,
    SubscriptionState,
    TrackerRegistry,
    migrate_legacy_tracking,
)
from ui.utils import money, status_badge

_TRACKER_KEY = "_order_tracker_key"
_TOASTS_KEY = "_order_toasts"
_DEVICE_PARAM = "device"


def _device_id() -> str:
    # The device id rides in the URL so a bookmarked tracking page finds its
    # client storage namespace again after the browser restarts.
    device = st.query_params.get(_DEVICE_PARAM)
    if not device:
        device = uuid.uuid4().hex
        st.query_params[_DEVICE_PARAM] = device
    return str(device)


def _use_api() -> bool:
    return str(os.getenv("ORDER_SOURCE", "db")).strip().lower() == "api"


def _order_source():
    if _use_api():
        return ApiOrderSource(st.session_state.get("token"))
    return DatabaseOrderSource()


def _sign_in(username: str, password: str):
    if _use_api():
        try:
            resp = api_login(username, password)
        except APIError:
            return None, None
        return resp.get("user_id"), resp.get("access_token")
    return services.authenticate_user(username, password), None


def _set_token(tracker: OrderTracker, token) -> None:
    source = tracker.query_layer.source
    if isinstance(source, ApiOrderSource):
        source.token = token


def _render_account(tracker: OrderTracker) -> None:
    user_id = st.session_state.get("user_id")
    with st.sidebar.expander("Your account", expanded=False):
        if user_id:
            st.caption(f"Signed in as {st.session_state.get('username')}")
            if st.button("Sign out"):
                for key in ("user_id", "username", "token"):
                    st.session_state.pop(key, None)
                _set_token(tracker, None)
                tracker.set_user(None)
                st.rerun()
            return

        with st.form("customer_login"):
            username = st.text_input("Username")
            password = st.text_input("Password", type="password")
            submitted = st.form_submit_button("Sign in")
        if submitted:
            uid, token = _sign_in(username, password)
            if not uid:
                st.error("Invalid username or password")
                return
            st.session_state["user_id"] = uid
            st.session_state["username"] = username
            st.session_state["token"] = token
            _set_token(tracker, token)
            tracker.set_user(uid)
            st.rerun()


@st.cache_resource
def _tracker_registry() -> TrackerRegistry:
    return TrackerRegistry()


def get_tracker() -> OrderTracker:
    # The registry owns the tracker; it stops trackers of sessions that went away.
    registry = _tracker_registry()
    key = st.session_state.setdefault(_TRACKER_KEY, uuid.uuid4().hex)
    tracker = registry.get(key)
    if tracker is not None:
        return tracker

    storage = SqliteClientStorage(namespace=_device_id())
    # Logs and skips when storage is down; the identity provider degrades on its own.
    migrate_legacy_tracking(storage)

    toasts = deque(maxlen=20)
    st.session_state[_TOASTS_KEY] = toasts
    tracker = OrderTracker(
        ClientIdentityProvider(storage),
        OrderQueryLayer(_order_source()),
        LiveUpdateSubscriber(get_change_feed()),
        user_id=st.session_state.get("user_id"),
        # Runs on the writer's thread: only queue, render on the next rerun.
        on_update=lambda order: toasts.append(f"Order #{order.order_number}: {status_badge(order.current_status)}"),
    )
    tracker.start()
    return registry.put(key, tracker)


def _flush_toasts() -> None:
    toasts = st.session_state.get(_TOASTS_KEY)
    while toasts:
        st.toast(toasts.popleft(), icon="🔄")


def _render_order(order, *, expanded: bool) -> None:
    title = f"#{order.order_number} · {status_badge(order.current_status)}"
    with st.expander(title, expanded=expanded):
        c1, c2 = st.columns(2)
        c1.caption(f"Placed {order.created_at:%d %b %H:%M}" if order.created_at else "Placed")
        c2.caption(f"Updated {order.updated_at:%H:%M:%S}" if order.updated_at else "")
        for item in order.order_items or []:
            extra = f" ({', '.join(item.toppings)})" if item.toppings else ""
            st.write(f"{item.quantity}× {item.product_name}{extra} · {money(item.subtotal)}")
        st.markdown(f"**Total: {money(order.total_amount)}**")


def _render_orders(tracker: OrderTracker) -> None:
    _flush_toasts()
    if tracker.warning:
        st.warning(tracker.warning, icon="⚠️")

    active = tracker.active_orders()
    past = [o for o in tracker.orders() if not o.is_active]
    if not active and not past:
        st.info("No orders yet. Orders placed from this device show up here.")
        return

    st.subheader("In progress")
    if not active:
        st.caption("Nothing in progress.")
    for order in active:
        _render_order(order, expanded=True)

    if past:
        st.subheader("Past orders")
        for order in past:
            _render_order(order, expanded=False)


def _render_test_order_form(tracker: OrderTracker) -> None:
    with st.expander("Place a test order", expanded=False):
        with st.form("test_order_form"):
            name = st.text_input("Name", value="Guest")
            email = st.text_input("Email", value="guest@example.com")
            pizza = st.selectbox("Pizza", ["Margherita", "Diavola", "Capricciosa", "Quattro Formaggi"])
            qty = st.number_input("Quantity", min_value=1, max_value=20, value=1)
            submitted = st.form_submit_button("Order")
        if submitted:
            identity = tracker.identity
            items = [{"product_name": pizza, "quantity": int(qty), "product_price": 8.5}]
            try:
                if _use_api():
                    api_create_order(
                        customer_name=name,
                        customer_email=email,
                        items=items,
                        token=st.session_state.get("token"),
                        client_id=identity.client_id,
                    )
                else:
                    services.create_order(
                        customer_name=name,
                        customer_email=email,
                        items=items,
                        user_id=identity.user_id,
                        client_id=identity.client_id,
                    )
            except (ValueError, APIError) as e:
                st.error(str(e))
            else:
                st.toast("Order placed", icon="✅")


def render_order_status_page() -> None:
    st.header("Your orders")
    tracker = get_tracker()
    _render_account(tracker)

    identity = tracker.identity
    who = "signed in" if identity.user_id else "this device"
    st.caption(f"Showing orders for {who} · device id …{(identity.client_id or '')[-8:]}")
    if tracker.identity_provider.degraded:
        st.caption("Storage is unavailable: orders placed now will not be found after a reload.")

    c1, c2 = st.columns(2)
    if c1.button("Refresh", type="secondary"):
        tracker.refresh()
    if tracker.subscription_state is SubscriptionState.ERROR:
        if c2.button("Reconnect live updates", type="primary"):
            tracker.resubscribe()

    _render_test_order_form(tracker)

    _live_orders()


@st.fragment(run_every=5)
def _live_orders() -> None:
    # Re-fetched every run so the registry sees the session as alive.
    _render_orders(get_tracker())
