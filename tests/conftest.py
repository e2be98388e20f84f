import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from database import models as dbmodels
import logic.services as services
from realtime import LocalChangeFeed


@pytest.fixture(scope='function')
def db_engine_and_session(monkeypatch, tmp_path):
    """Provide a temporary SQLite database and Session and patch services to use them.

    File-backed (not :memory:) so worker threads of the query layer see the same data.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'orders.db'}",
        connect_args={"check_same_thread": False},
        poolclass=NullPool,
    )
    Session = sessionmaker(bind=engine)
    dbmodels.Base.metadata.create_all(engine)

    monkeypatch.setattr(services, 'engine', engine)

    yield engine, Session
    engine.dispose()


@pytest.fixture(autouse=True)
def change_feed(monkeypatch):
    """A fresh in-process change feed per test, wired into the write path."""
    feed = LocalChangeFeed()
    monkeypatch.setattr(services, 'feed', feed)
    return feed


@pytest.fixture
def place_order(db_engine_and_session):
    def _place(*, user_id=None, client_id=None, name="Mario", items=None, **kwargs):
        return services.create_order(
            customer_name=name,
            customer_email=f"{name.lower()}@example.com",
            items=items or [{"product_name": "Margherita", "quantity": 1, "product_price": 8.5}],
            user_id=user_id,
            client_id=client_id,
            **kwargs,
        )

    return _place
