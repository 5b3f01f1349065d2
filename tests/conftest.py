import os

# Must be set before linkpay.database builds its engine
os.environ["DATABASE_URL"] = "sqlite:///./test_app.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["LINKPAY_BASE_FEE"] = "6000000"
os.environ["LINKPAY_PROTOCOL_FEE_RATE"] = "0.0035"

import threading
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from linkpay.database import Base
from linkpay.fees import FeeSchedule
from linkpay.store import SqlLinkStore
from linkpay.withdrawal_gateway import WithdrawalResult
import linkpay.models  # noqa: F401

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_linkpay.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False, "timeout": 30})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def store():
    return SqlLinkStore(TestingSessionLocal)


@pytest.fixture
def fee_schedule():
    return FeeSchedule(base_fee=6_000_000, protocol_fee_rate=Decimal("0.0035"))


class FakeGateway:
    """Records every withdrawal and answers with a canned result or error."""

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def withdraw(self, amount, recipient_address):
        with self._lock:
            self.calls.append((amount, recipient_address))
        if self.delay:
            threading.Event().wait(self.delay)
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        fee = 6_000_000 + (amount * 35 + 9_999) // 10_000
        return WithdrawalResult(
            tx_ref=f"wd_tx_{len(self.calls)}",
            net_amount_delivered=amount - fee,
            fee_charged=fee,
            is_partial=False,
        )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_gateway():
    return FakeGateway


@pytest.fixture
def session_factory():
    return TestingSessionLocal
