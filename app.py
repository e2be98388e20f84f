import streamlit as st

from database.models import init_db
from logic.logging import configure_logging
from ui.admin import render_admin_board
from ui.order_status import render_order_status_page

st.set_page_config(page_title="Pizzeria · Orders", page_icon="🍕", layout="centered")


@st.cache_resource
def _bootstrap() -> bool:
    configure_logging()
    init_db()
    return True


_bootstrap()

# --- CSS STYLING ---
st.markdown(
    """
    <style>
    [data-testid="stSidebar"] { background-color: #fff8f0; }
    [data-testid="stSidebar"] h1 { color: #c0392b !important; }
    div[data-testid="stExpander"] { border-radius: 12px; }
    </style>
    """,
    unsafe_allow_html=True,
)

st.sidebar.title("🍕 Pizzeria")
mode = st.sidebar.radio("Menu", ["Order status", "Kitchen"], label_visibility="collapsed")

if mode == "Order status":
    render_order_status_page()
else:
    render_admin_board()
