import sys
import os

# Run from anywhere: make the repo root importable.
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import random

from database.models import OrderStatus, get_engine, init_db, Order, OrderItem
from logic import services
from sqlalchemy.orm import sessionmaker

MENU = [
    ("Margherita", 7.5),
    ("Marinara", 6.0),
    ("Diavola", 9.0),
    ("Capricciosa", 10.0),
    ("Quattro Formaggi", 10.5),
    ("Calzone", 9.5),
]
TOPPINGS = ["basil", "extra mozzarella", "olives", "nduja", "mushrooms"]


def clear_data():
    """Wipes existing orders so we don't have duplicates."""
    session = sessionmaker(bind=get_engine())()
    try:
        session.query(OrderItem).delete()
        session.query(Order).delete()
        session.commit()
        print("🧹 Old orders cleared.")
    except Exception as e:
        session.rollback()
        print(f"⚠️ Warning during clear: {e}")
    finally:
        session.close()


def create_fake_data(n_orders=12):
    print("🌱 Seeding orders...")
    client_ids = [f"client_demo_{i}" for i in range(3)]
    statuses = [s.value for s in OrderStatus]

    for i in range(n_orders):
        items = []
        for name, price in random.sample(MENU, k=random.randint(1, 3)):
            items.append({
                "product_name": name,
                "quantity": random.randint(1, 3),
                "product_price": price,
                "toppings": random.sample(TOPPINGS, k=random.randint(0, 2)),
            })
        oid = services.create_order(
            customer_name=f"Guest {i + 1}",
            customer_email=f"guest{i + 1}@example.com",
            items=items,
            client_id=random.choice(client_ids),
            metadata={"source": "seed"},
        )
        status = random.choice(statuses)
        if status != OrderStatus.PENDING.value:
            services.update_order_status(oid, status)

    print(f"✅ SUCCESS: {n_orders} demo orders for clients {', '.join(client_ids)}")


if __name__ == "__main__":
    init_db()
    clear_data()
    create_fake_data()
