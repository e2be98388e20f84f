from database.models import OrderStatus

STATUS_LABELS = {
    OrderStatus.PENDING.value: ("Received", "🧾"),
    OrderStatus.CONFIRMED.value: ("Confirmed", "✅"),
    OrderStatus.PREPARING.value: ("In the oven", "🍕"),
    OrderStatus.READY.value: ("Ready", "📦"),
    OrderStatus.ARRIVED.value: ("Rider arrived", "🛵"),
    OrderStatus.DELIVERED.value: ("Delivered", "🎉"),
    OrderStatus.CANCELLED.value: ("Cancelled", "✖️"),
}

# Order in which staff move an order along.
STATUS_FLOW = [s.value for s in OrderStatus if s is not OrderStatus.CANCELLED]


def status_badge(status):
    label, icon = STATUS_LABELS.get(str(status or "").lower(), (str(status or "unknown").title(), "❔"))
    return f"{icon} {label}"


def next_status(status):
    s = str(status or "").lower()
    if s not in STATUS_FLOW:
        return None
    idx = STATUS_FLOW.index(s)
    return STATUS_FLOW[idx + 1] if idx + 1 < len(STATUS_FLOW) else None


def money(amount):
    try:
        return f"€{float(amount):,.2f}"
    except (TypeError, ValueError):
        return "€0.00"
