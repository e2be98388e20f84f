"""End-to-end check of live order status propagation.

Picks the most recent order (or creates one), subscribes as its owner, moves it
to the next status, and reports whether the owner's subscription saw the change
and whether `metadata.clientId` survived the write.

  python3 scripts/verify_realtime.py [--timeout 5]
"""
import argparse
import os
import sys
import threading

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--timeout', type=float, default=5.0)
    args = p.parse_args()

    from database.models import init_db
    from logic import services
    from logic.logging import configure_logging
    from realtime import get_change_feed
    from tracking import Identity, LiveUpdateSubscriber, SubscriptionState
    from ui.utils import next_status

    configure_logging()
    init_db()

    recent = services.list_recent_orders(limit=1)
    if recent:
        order = recent[0]
    else:
        oid = services.create_order(
            customer_name='Realtime Check',
            customer_email='check@example.com',
            items=[{'product_name': 'Margherita', 'quantity': 1, 'product_price': 8.5}],
            client_id='client_realtime_check',
        )
        order = services.get_order(oid)

    client_id = (order.get('metadata') or {}).get('clientId')
    identity = Identity(user_id=order.get('user_id'), client_id=client_id)
    print(f"Order {order['order_number']}: status={order['status']} user={order.get('user_id')} client=…{(client_id or '')[-8:]}")

    seen = threading.Event()
    received = {}

    def on_change(rec):
        if rec.id == order['id']:
            received['order'] = rec
            seen.set()

    sub = LiveUpdateSubscriber(get_change_feed(), connect_timeout=args.timeout).subscribe(identity, on_change)
    if sub.state is not SubscriptionState.SUBSCRIBED:
        print(f'Subscription not active: {sub.state.value} ({sub.error})')
        return 1

    target = next_status(order['status']) or 'confirmed'
    print(f"Updating {order['order_number']} from {order['status']!r} to {target!r}")
    services.update_order_status(order['id'], target)

    ok = seen.wait(args.timeout)
    sub.unsubscribe()
    if not ok:
        print('No live update received.')
        return 1

    rec = received['order']
    print(f'Live update received: status={rec.current_status}')
    if client_id and rec.client_id != client_id:
        print('metadata.clientId was LOST on write.')
        return 1
    print('metadata.clientId preserved.' if client_id else 'Order has no clientId (user order).')
    return 0


if __name__ == '__main__':
    sys.exit(main())
