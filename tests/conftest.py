import os
import tempfile

# Point the app's module-level engine at a throwaway database before anything imports db.py
_tmpdir = tempfile.mkdtemp(prefix="checkout-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_tmpdir, 'checkout.db')}")
os.environ.pop("DEMO_FALLBACK_ENABLED", None)

from decimal import Decimal

import pytest

from db import init_db, make_engine, make_session_factory
from models import PaymentIntent, PaymentMethod


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def intent():
    return PaymentIntent(
        tx_ref="TX123",
        method=PaymentMethod.MPESA,
        amount=Decimal("2500"),
        plan_name="Growth",
        email="abebe@example.com",
    )
