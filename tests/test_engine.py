from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

from slotswap.engine import NegotiationEngine
from slotswap.exceptions import (
    ConflictException,
    ConsistencyException,
    ForbiddenException,
    InvalidOperationException,
    NotFoundException,
)
from slotswap.models import Slot, SlotStatus, SwapStatus
from slotswap.notifications import NotificationDispatcher
from slotswap.request_store import SwapRequestStore


@pytest.fixture
def users(make_user):
    return make_user("u-1", "Ana"), make_user("u-2", "Ben"), make_user("u-3", "Cai")


@pytest.fixture
def pair(users, make_slot):
    a = make_slot("u-1", "Standup")
    b = make_slot("u-2", "Review")
    return a.id, b.id


def _slot(session, slot_id):
    return session.get(Slot, slot_id, populate_existing=True)


def test_request_swap_claims_both_slots_and_notifies_target(engine, test_db_session, transport, pair,
                                                            assert_swap_invariant):
    a, b = pair
    swap = engine.request_swap("u-1", a, b)

    assert swap.status == SwapStatus.PENDING.value
    assert swap.target_user_id == "u-2"
    assert _slot(test_db_session, a).status == SlotStatus.SWAP_PENDING.value
    assert _slot(test_db_session, b).status == SlotStatus.SWAP_PENDING.value
    assert transport.for_user("u-2") == [
        ("swapRequestReceived", {
            "message": "Ana wants to swap 'Standup' for your 'Review'",
            "requesterName": "Ana",
        })
    ]
    assert transport.for_user("u-1") == []
    assert_swap_invariant()


def test_accept_exchanges_owners(engine, test_db_session, transport, pair, assert_swap_invariant):
    a, b = pair
    swap = engine.request_swap("u-1", a, b)

    accepted = engine.respond_to_swap(swap.id, "u-2", accept=True)

    assert accepted.status == SwapStatus.ACCEPTED.value
    slot_a, slot_b = _slot(test_db_session, a), _slot(test_db_session, b)
    assert (slot_a.owner_id, slot_a.status) == ("u-2", SlotStatus.BUSY.value)
    assert (slot_b.owner_id, slot_b.status) == ("u-1", SlotStatus.BUSY.value)
    assert transport.for_user("u-1") == [
        ("swapRequestAccepted", {"message": "Ben accepted your swap request: 'Review' is now yours"})
    ]
    assert_swap_invariant()


def test_reject_releases_slots(engine, test_db_session, transport, pair, assert_swap_invariant):
    a, b = pair
    swap = engine.request_swap("u-1", a, b)

    rejected = engine.respond_to_swap(swap.id, "u-2", accept=False)

    assert rejected.status == SwapStatus.REJECTED.value
    slot_a, slot_b = _slot(test_db_session, a), _slot(test_db_session, b)
    assert (slot_a.owner_id, slot_a.status) == ("u-1", SlotStatus.SWAPPABLE.value)
    assert (slot_b.owner_id, slot_b.status) == ("u-2", SlotStatus.SWAPPABLE.value)
    event, payload = transport.for_user("u-1")[0]
    assert event == "swapRequestRejected"
    assert "Review" in payload["message"]
    assert_swap_invariant()


@pytest.mark.parametrize("first, second", [(True, True), (True, False), (False, False), (False, True)])
def test_second_response_is_invalid_and_not_reapplied(engine, test_db_session, pair, first, second):
    a, b = pair
    swap = engine.request_swap("u-1", a, b)
    engine.respond_to_swap(swap.id, "u-2", accept=first)
    owners = (_slot(test_db_session, a).owner_id, _slot(test_db_session, b).owner_id)

    with pytest.raises(InvalidOperationException):
        engine.respond_to_swap(swap.id, "u-2", accept=second)

    assert (_slot(test_db_session, a).owner_id, _slot(test_db_session, b).owner_id) == owners
    expected = SwapStatus.ACCEPTED if first else SwapStatus.REJECTED
    assert engine.requests.get(swap.id).status == expected.value


def test_request_swap_boundaries(engine, users, make_slot, pair):
    a, b = pair
    also_mine = make_slot("u-1", "Lunch").id
    busy = make_slot("u-2", "Busy", status=SlotStatus.BUSY).id

    with pytest.raises(InvalidOperationException):
        engine.request_swap("u-1", a, a)
    with pytest.raises(InvalidOperationException):
        engine.request_swap("u-1", a, also_mine)
    with pytest.raises(InvalidOperationException):
        engine.request_swap("u-1", a, busy)
    with pytest.raises(ForbiddenException):
        engine.request_swap("u-3", a, b)
    with pytest.raises(NotFoundException):
        engine.request_swap("u-1", a, "missing")
    assert engine.outgoing("u-1") == []


def test_request_on_claimed_slot_conflicts(engine, users, make_slot, pair, assert_swap_invariant):
    a, b = pair
    c = make_slot("u-3", "Retro").id
    first = engine.request_swap("u-1", a, b)

    with pytest.raises(ConflictException):
        engine.request_swap("u-3", c, b)

    assert [r.id for r in engine.incoming("u-2")] == [first.id]
    assert engine.slots.get(c).status == SlotStatus.SWAPPABLE.value
    assert_swap_invariant()


def test_only_target_owner_may_respond(engine, pair):
    a, b = pair
    swap = engine.request_swap("u-1", a, b)

    with pytest.raises(ForbiddenException):
        engine.respond_to_swap(swap.id, "u-1", accept=True)
    with pytest.raises(ForbiddenException):
        engine.respond_to_swap(swap.id, "u-3", accept=True)
    with pytest.raises(NotFoundException):
        engine.respond_to_swap("missing", "u-2", accept=True)
    assert engine.requests.get(swap.id).status == SwapStatus.PENDING.value


def test_lost_slot_claim_rolls_back_request(engine, test_db_session, transport, pair, monkeypatch,
                                            assert_swap_invariant):
    a, b = pair
    real_cas = engine.slots.compare_and_set_status

    def cas_losing_target(slot_id, expected, new, **kwargs):
        if slot_id == b and SlotStatus(expected) == SlotStatus.SWAPPABLE:
            raise ConflictException("Slot was claimed")
        return real_cas(slot_id, expected, new, **kwargs)

    monkeypatch.setattr(engine.slots, "compare_and_set_status", cas_losing_target)

    with pytest.raises(ConflictException):
        engine.request_swap("u-1", a, b)

    [swap] = engine.outgoing("u-1")
    assert swap.status == SwapStatus.REJECTED.value
    assert _slot(test_db_session, a).status == SlotStatus.SWAPPABLE.value
    assert _slot(test_db_session, b).status == SlotStatus.SWAPPABLE.value
    assert transport.events == []
    assert_swap_invariant()


def test_rollback_retries_after_database_error(engine, test_db_session, pair, monkeypatch, assert_swap_invariant):
    a, b = pair
    real_cas = engine.slots.compare_and_set_status
    real_transition = engine.requests.transition
    failures = {"transition": 1}

    def cas_losing_target(slot_id, expected, new, **kwargs):
        if slot_id == b and SlotStatus(expected) == SlotStatus.SWAPPABLE:
            raise ConflictException("Slot was claimed")
        return real_cas(slot_id, expected, new, **kwargs)

    def flaky_transition(request_id, to_status, **kwargs):
        if failures["transition"]:
            failures["transition"] -= 1
            raise OperationalError("UPDATE swap_requests", {}, Exception("database is locked"))
        return real_transition(request_id, to_status, **kwargs)

    monkeypatch.setattr(engine.slots, "compare_and_set_status", cas_losing_target)
    monkeypatch.setattr(engine.requests, "transition", flaky_transition)

    with pytest.raises(ConflictException):
        engine.request_swap("u-1", a, b)

    assert failures["transition"] == 0
    assert engine.outgoing("u-1")[0].status == SwapStatus.REJECTED.value
    assert _slot(test_db_session, a).status == SlotStatus.SWAPPABLE.value
    assert_swap_invariant()


def test_exhausted_rollback_is_an_internal_error(test_db_session, dispatcher, pair, monkeypatch):
    a, b = pair
    engine = NegotiationEngine(test_db_session, dispatcher, rollback_attempts=2)
    real_cas = engine.slots.compare_and_set_status
    calls = {"transition": 0}

    def cas_losing_target(slot_id, expected, new, **kwargs):
        if slot_id == b and SlotStatus(expected) == SlotStatus.SWAPPABLE:
            raise ConflictException("Slot was claimed")
        return real_cas(slot_id, expected, new, **kwargs)

    def broken_transition(request_id, to_status, **kwargs):
        calls["transition"] += 1
        raise OperationalError("UPDATE swap_requests", {}, Exception("disk I/O error"))

    monkeypatch.setattr(engine.slots, "compare_and_set_status", cas_losing_target)
    monkeypatch.setattr(engine.requests, "transition", broken_transition)

    with pytest.raises(ConsistencyException):
        engine.request_swap("u-1", a, b)
    assert calls["transition"] == 2


def test_respond_before_creation_completes_conflicts(engine, test_db_session, pair):
    a, b = pair
    # request row persisted, slots not yet claimed
    swap = SwapRequestStore(test_db_session).create(a, b, "u-1")

    with pytest.raises(ConflictException):
        engine.respond_to_swap(swap.id, "u-2", accept=True)

    assert engine.requests.get(swap.id).status == SwapStatus.PENDING.value
    assert _slot(test_db_session, a).owner_id == "u-1"


def test_slot_fault_during_response_is_rolled_back(engine, test_db_session, transport, pair, monkeypatch):
    a, b = pair
    swap = engine.request_swap("u-1", a, b)
    real_cas = engine.slots.compare_and_set_status

    def cas_failing_second(slot_id, expected, new, **kwargs):
        if slot_id == b and SlotStatus(expected) == SlotStatus.SWAP_PENDING:
            raise ConflictException("Slot was not pending")
        return real_cas(slot_id, expected, new, **kwargs)

    monkeypatch.setattr(engine.slots, "compare_and_set_status", cas_failing_second)

    with pytest.raises(ConsistencyException):
        engine.respond_to_swap(swap.id, "u-2", accept=True)

    # nothing from the failed transaction survives
    assert engine.requests.get(swap.id).status == SwapStatus.PENDING.value
    assert _slot(test_db_session, a).owner_id == "u-1"
    assert _slot(test_db_session, a).status == SlotStatus.SWAP_PENDING.value
    assert transport.for_user("u-1") == []


def test_dispatch_failure_does_not_affect_outcome(test_db_session, pair, assert_swap_invariant):
    class BrokenTransport:
        def publish(self, user_id, event, payload):
            raise ConnectionError("push service down")

    a, b = pair
    engine = NegotiationEngine(test_db_session, NotificationDispatcher(BrokenTransport()))

    swap = engine.request_swap("u-1", a, b)
    accepted = engine.respond_to_swap(swap.id, "u-2", accept=True)

    assert accepted.status == SwapStatus.ACCEPTED.value
    assert_swap_invariant()


def test_standup_for_review_end_to_end(engine, test_db_session, transport, users, assert_swap_invariant):
    slots = engine.slots
    standup = slots.create("u-1", "Standup", datetime(2030, 1, 7, 9, 0), datetime(2030, 1, 7, 9, 30),
                           SlotStatus.SWAPPABLE)
    review = slots.create("u-2", "Review", datetime(2030, 1, 7, 14, 0), datetime(2030, 1, 7, 14, 30),
                          SlotStatus.SWAPPABLE)
    standup_id, review_id = standup.id, review.id

    assert [s.id for s in engine.swappable_slots("u-1")] == [review_id]
    swap = engine.request_swap("u-1", standup_id, review_id)
    engine.respond_to_swap(swap.id, "u-2", accept=True)

    assert [(s.title, s.status) for s in slots.list_by_owner("u-1")] == [("Review", "BUSY")]
    assert [(s.title, s.status) for s in slots.list_by_owner("u-2")] == [("Standup", "BUSY")]
    assert engine.requests.get(swap.id).status == SwapStatus.ACCEPTED.value
    assert [event for event, _ in transport.for_user("u-2")] == ["swapRequestReceived"]
    assert [event for event, _ in transport.for_user("u-1")] == ["swapRequestAccepted"]
    assert_swap_invariant()
