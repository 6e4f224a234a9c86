import threading
from datetime import datetime
from decimal import Decimal
from itertools import count

import pytest

from library_service.app import create_app
from library_service.clock import FixedClock
from library_service.db import make_engine, make_session_factory
from library_service.errors import LedgerError
from library_service.ledger import Ledger

# Wednesday
NOW = datetime(2026, 3, 4, 10, 0, 0)

_isbns = count(1)


def next_isbn():
    return f"978{next(_isbns):010d}"


def race(*calls):
    """
    Run the calls on separate threads released together by a barrier.
    Returns each call's result, or the LedgerError it raised, in order.
    """
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def run(i, call):
        barrier.wait()
        try:
            outcomes[i] = call()
        except LedgerError as e:
            outcomes[i] = e

    threads = [threading.Thread(target=run, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def session_factory(tmp_path):
    # File database so that threads share it
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def ledger(session_factory, clock):
    return Ledger(session_factory, clock=clock)


@pytest.fixture
def make_book(ledger):
    def _make_book(
        title="Clean Code",
        total_copies=3,
        price="50.00",
        borrow_price="10.00",
        borrow_fine="2.00",
        category=None,
    ):
        return ledger.catalog.add_book(
            title=title,
            author="Robert C. Martin",
            isbn=next_isbn(),
            total_copies=total_copies,
            price=price,
            borrow_price=borrow_price,
            borrow_fine=borrow_fine,
            category=category,
        )

    return _make_book


@pytest.fixture
def make_user(ledger):
    names = count(1)

    def _make_user(wallet_balance="1000.00", role="user"):
        n = next(names)
        return ledger.catalog.register_user(
            user_name=f"reader{n}",
            email=f"reader{n}@example.com",
            full_name=f"Reader {n}",
            wallet_balance=Decimal(wallet_balance),
            role=role,
        )

    return _make_user


@pytest.fixture
def app(tmp_path, clock):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'api.db'}",
            "SERVICE_API_KEY": "test-key",
        },
        clock=clock,
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()
