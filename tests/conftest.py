# tests/conftest.py
import os
import tempfile
from datetime import datetime, timedelta

os.environ["SKIP_DB_INIT"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from slotswap.auth import create_access_token
from slotswap.db import Base, build_engine, get_db
from slotswap.engine import NegotiationEngine
from slotswap.main import app
from slotswap.models import Slot, SlotStatus, SwapRequest, SwapStatus, User
from slotswap.notifications import NotificationDispatcher, get_dispatcher


class RecordingTransport:
    """Collects published events instead of pushing them."""

    def __init__(self):
        self.events = []

    def publish(self, user_id, event, payload):
        self.events.append((user_id, event, payload))

    def for_user(self, user_id):
        return [(event, payload) for uid, event, payload in self.events if uid == user_id]


@pytest.fixture(scope="function")
def session_factory():
    # temp DB shared by every session of the test
    tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    tmp.close()
    engine = build_engine(f"sqlite:///{tmp.name}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        engine.dispose()
        os.unlink(tmp.name)


@pytest.fixture(scope="function")
def test_db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(transport):
    return NotificationDispatcher(transport)


@pytest.fixture
def engine(test_db_session, dispatcher):
    return NegotiationEngine(test_db_session, dispatcher)


@pytest.fixture(scope="function")
def client(test_db_session, dispatcher):
    def override_get_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _auth_headers(user_id):
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}
    return _auth_headers


# —— Factories ——
@pytest.fixture
def make_user(test_db_session):
    def _make_user(user_id="u-1", name="User1", email=None):
        u = User(id=user_id, name=name, email=email or f"{user_id}@example.com")
        test_db_session.add(u)
        test_db_session.commit()
        return u
    return _make_user


@pytest.fixture
def make_slot(test_db_session):
    counter = {"n": 0}

    def _make_slot(owner_id, title="Slot", start=None, end=None, status=SlotStatus.SWAPPABLE, slot_id=None):
        counter["n"] += 1
        base = datetime(2030, 1, 7, 9, 0)
        start = start or (base + timedelta(hours=counter["n"]))
        end = end or (start + timedelta(minutes=30))
        s = Slot(
            id=slot_id or f"s-{counter['n']}",
            owner_id=owner_id,
            title=title,
            start_time=start,
            end_time=end,
            status=SlotStatus(status).value,
        )
        test_db_session.add(s)
        test_db_session.commit()
        return s
    return _make_slot


@pytest.fixture
def assert_swap_invariant(session_factory):
    """SWAP_PENDING <=> referenced by exactly one PENDING request, for every slot."""
    def _check():
        session = session_factory()
        try:
            pending = session.query(SwapRequest).filter(SwapRequest.status == SwapStatus.PENDING.value).all()
            for slot in session.query(Slot).all():
                refs = [
                    r for r in pending
                    if slot.id in (r.requester_slot_id, r.target_slot_id)
                ]
                if slot.status == SlotStatus.SWAP_PENDING.value:
                    assert len(refs) == 1, f"slot {slot.id} is SWAP_PENDING with {len(refs)} pending requests"
                else:
                    assert refs == [], f"slot {slot.id} is {slot.status} but has pending requests"
        finally:
            session.close()
    return _check
