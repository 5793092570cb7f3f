"""Tests for server/store.py -- contract aggregate + ticket persistence."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from contract import build_contract
from protocol import (
    CancelStatus, Party, TicketKind, ConcurrencyConflict, UploadKind, UploadStatus,
    ResolutionStatus, TargetType,
)
from server.tickets import CancellationTicket, ProofUpload, ResolutionTicket
from conftest import T0


def _contract():
    return build_contract("client_1", "artist_1", 100_000, now=T0)


def _cancel(store, cid, expires_at=T0 + 100):
    return CancellationTicket(
        id=store.new_ticket_id(), contract_id=cid, status=CancelStatus.PENDING,
        created_at=T0, expires_at=expires_at,
        requested_by=Party.CLIENT, requested_by_id="client_1", reason="changed my mind",
    )


def test_create_and_get(store):
    cid = store.create_contract(_contract())
    c = store.get_contract(cid)
    assert c["id"] == cid
    assert c["status"] == "active"
    assert c["lock_version"] == 0
    assert c["finance"]["total"] == 100_000


def test_get_missing(store):
    assert store.get_contract("nope") is None


def test_save_bumps_lock_version(store):
    cid = store.create_contract(_contract())
    c = store.get_contract(cid)
    c["status"] = "disputed"
    with store.transaction():
        assert store.save_contract(c, 0) == 1
    stored = store.get_contract(cid)
    assert stored["lock_version"] == 1
    assert stored["status"] == "disputed"


def test_stale_write_conflicts(store):
    cid = store.create_contract(_contract())
    first = store.get_contract(cid)
    second = store.get_contract(cid)
    with store.transaction():
        store.save_contract(first, 0)
    with pytest.raises(ConcurrencyConflict):
        with store.transaction():
            store.save_contract(second, 0)
    assert second["lock_version"] == 0
    assert store.get_contract(cid)["lock_version"] == 1


def test_transaction_rolls_back_tickets_and_contract(store):
    cid = store.create_contract(_contract())
    c = store.get_contract(cid)
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.insert_ticket(_cancel(store, cid))
            c["status"] = "cancelled"
            store.save_contract(c, 0)
            raise RuntimeError("boom")
    assert store.tickets_for(cid) == []
    assert store.get_contract(cid)["status"] == "active"


def test_ticket_round_trip(store):
    cid = store.create_contract(_contract())
    t = _cancel(store, cid)
    with store.transaction():
        store.insert_ticket(t)
    loaded = store.get_ticket(t.id)
    assert isinstance(loaded, CancellationTicket)
    assert loaded.status is CancelStatus.PENDING
    assert loaded.requested_by is Party.CLIENT
    assert store.get_ticket(t.id, TicketKind.REVISION) is None


def test_tickets_for_filters_by_kind(store):
    cid = store.create_contract(_contract())
    upload = ProofUpload(
        id=store.new_ticket_id(), contract_id=cid, status=UploadStatus.SUBMITTED,
        created_at=T0, upload_kind=UploadKind.FINAL, refs=["img"],
    )
    with store.transaction():
        store.insert_ticket(_cancel(store, cid))
        store.insert_ticket(upload)
    assert len(store.tickets_for(cid)) == 2
    assert [t.id for t in store.tickets_for(cid, TicketKind.UPLOAD)] == [upload.id]


def test_due_tickets_track_status(store):
    cid = store.create_contract(_contract())
    t = _cancel(store, cid, expires_at=T0 + 10)
    with store.transaction():
        store.insert_ticket(t)
    assert store.due_tickets(T0) == []
    assert [d["id"] for d in store.due_tickets(T0 + 10)] == [t.id]

    # Once answered, nothing is due any more
    t.transition(CancelStatus.ACCEPTED, resolved_at=T0 + 5)
    with store.transaction():
        store.save_ticket(t)
    assert store.due_tickets(T0 + 100) == []


def test_due_tickets_leave_out_frozen_and_closed(store):
    disputed = store.create_contract(_contract())
    closed = store.create_contract(_contract())
    free = store.create_contract(_contract())
    frozen, done, live = _cancel(store, disputed), _cancel(store, closed), _cancel(store, free)
    resolution = ResolutionTicket(
        id=store.new_ticket_id(), contract_id=disputed, status=ResolutionStatus.AWAITING_REVIEW,
        created_at=T0, target_type=TargetType.CANCEL, target_id=frozen.id,
    )
    c = store.get_contract(closed)
    c["status"] = "cancelled"
    with store.transaction():
        for t in (frozen, done, live, resolution):
            store.insert_ticket(t)
        store.save_contract(c, 0)
    assert [d["id"] for d in store.due_tickets(T0 + 100)] == [live.id]

    resolution.transition(ResolutionStatus.RESOLVED, resolved_at=T0 + 50)
    with store.transaction():
        store.save_ticket(resolution)
    assert sorted(d["id"] for d in store.due_tickets(T0 + 100)) == sorted([frozen.id, live.id])


def test_list_contracts_by_status(store):
    a = store.create_contract(_contract())
    store.create_contract(_contract())
    c = store.get_contract(a)
    c["status"] = "completed"
    with store.transaction():
        store.save_contract(c, 0)
    assert [x["id"] for x in store.list_contracts("completed")] == [a]
    assert len(store.list_contracts()) == 2
