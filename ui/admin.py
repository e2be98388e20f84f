import plotly.express as px
import streamlit as st

from database.models import OrderStatus
from logic import services
from ui.utils import next_status, status_badge


def _staff_login() -> bool:
    if st.session_state.get("staff_user"):
        return True

    st.subheader("Staff sign in")
    with st.form("staff_login"):
        username = st.text_input("Username")
        password = st.text_input("Password", type="password")
        submitted = st.form_submit_button("Sign in")
    if submitted:
        user_id = services.authenticate_user(username, password)
        user = services.get_user(user_id) if user_id else None
        if not user or not user.get("is_staff"):
            st.error("Invalid credentials or not a staff account.")
            return False
        st.session_state["staff_user"] = user
        st.rerun()
    return False


def _status_chart(df) -> None:
    counts = df.groupby("status").size().reset_index(name="orders")
    fig = px.bar(counts, x="status", y="orders", color="status", title="Orders by status")
    fig.update_layout(showlegend=False, height=280, margin=dict(l=10, r=10, t=40, b=10))
    st.plotly_chart(fig, use_container_width=True)


def render_admin_board() -> None:
    st.header("Kitchen board")
    if not _staff_login():
        return

    staff = st.session_state["staff_user"]
    st.caption(f"Signed in as {staff['username']}")

    include_done = st.toggle("Show completed orders", value=False)
    orders = services.list_recent_orders(limit=100, include_done=include_done)
    if not orders:
        st.caption("No orders yet.")
        return

    df = services.orders_frame(orders)
    _status_chart(df)
    st.dataframe(
        df.drop(columns=["id"]),
        hide_index=True,
        use_container_width=True,
    )

    st.subheader("Update an order")
    by_label = {f"#{o['order_number']} · {status_badge(o['status'])} · {o['customer_name']}": o for o in orders}
    label = st.selectbox("Order", list(by_label))
    order = by_label[label]

    c1, c2, c3, c4 = st.columns(4)
    nxt = next_status(order["status"])
    if nxt and c1.button(f"Move to {status_badge(nxt)}", type="primary"):
        services.update_order_status(order["id"], nxt)
        st.toast(f"#{order['order_number']} → {nxt}", icon="✅")
        st.rerun()

    chosen = c2.selectbox("Set status", [s.value for s in OrderStatus], index=0, label_visibility="collapsed")
    if c2.button("Apply"):
        services.update_order_status(order["id"], chosen)
        st.rerun()

    if order.get("admin_read_at") is None and c3.button("Mark read"):
        services.mark_order_read(order["id"])
        st.rerun()
    if order.get("admin_done_at") is None and c4.button("Mark done"):
        services.mark_order_done(order["id"])
        st.rerun()
