"""Tests for cancellation tickets and cancellation settlement."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from protocol import (
    CancelStatus, ContractStatus, IntentStatus,
    NotFound, PreconditionFailed, ValidationFailed, ConcurrencyConflict,
)
from conftest import CLIENT, ARTIST, HOUR, DAY, REASON, make_contract, make_milestone_contract


@pytest.fixture
def contract(engine):
    return make_contract(engine, cancellation_fee={"kind": "flat", "amount": 50_000})


def test_open_cancellation(engine, contract):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    assert t.status is CancelStatus.PENDING
    assert t.requested_by.value == "client"
    assert t.expires_at == engine.clock() + 48 * HOUR
    assert engine.get_contract(contract["id"])["lock_version"] == 1


def test_only_one_active_cancellation(engine, contract):
    engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    with pytest.raises(PreconditionFailed):
        engine.open_cancellation(contract["id"], ARTIST, "too busy now")


def test_outsider_cannot_open(engine, contract):
    with pytest.raises(PreconditionFailed) as exc:
        engine.open_cancellation(contract["id"], "mallory", "let me out")
    assert exc.value.status_code == 403


def test_reason_required(engine, contract):
    with pytest.raises(ValidationFailed):
        engine.open_cancellation(contract["id"], CLIENT, "   ")


def test_unknown_contract(engine):
    with pytest.raises(NotFound):
        engine.open_cancellation("missing", CLIENT, "whatever")


def test_stale_expected_version(engine, contract):
    with pytest.raises(ConcurrencyConflict) as exc:
        engine.open_cancellation(contract["id"], CLIENT, "changed my mind", expected_version=7)
    assert exc.value.retryable
    assert engine.store.tickets_for(contract["id"]) == []


def test_requester_cannot_respond(engine, contract):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    with pytest.raises(PreconditionFailed) as exc:
        engine.respond_cancellation(contract["id"], t.id, CLIENT, "accept")
    assert exc.value.forbidden


def test_accept(engine, contract):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    t = engine.respond_cancellation(contract["id"], t.id, ARTIST, "accept")
    assert t.status is CancelStatus.ACCEPTED
    assert t.resolved_at == engine.clock()
    # Contract stays active until proof settles it
    assert engine.get_contract(contract["id"])["status"] == "active"


def test_reject_needs_reason(engine, contract):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    with pytest.raises(ValidationFailed):
        engine.respond_cancellation(contract["id"], t.id, ARTIST, "reject", "no")
    t = engine.respond_cancellation(contract["id"], t.id, ARTIST, "reject", REASON)
    assert t.status is CancelStatus.REJECTED
    assert t.rejection_reason == REASON


def test_rejected_cancellation_frees_the_slot(engine, contract):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    engine.respond_cancellation(contract["id"], t.id, ARTIST, "reject", REASON)
    engine.open_cancellation(contract["id"], CLIENT, "changed my mind again")


def test_response_after_window(engine, contract, clock):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    clock.advance(49 * HOUR)
    with pytest.raises(PreconditionFailed):
        engine.respond_cancellation(contract["id"], t.id, ARTIST, "accept")


def test_cannot_respond_twice(engine, contract):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    engine.respond_cancellation(contract["id"], t.id, ARTIST, "accept")
    with pytest.raises(PreconditionFailed):
        engine.respond_cancellation(contract["id"], t.id, ARTIST, "reject", REASON)


def test_bad_decision(engine, contract):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    with pytest.raises(ValidationFailed):
        engine.respond_cancellation(contract["id"], t.id, ARTIST, "maybe")


def test_estimate_touches_nothing(engine, contract):
    est = engine.estimate_cancellation(contract["id"], "client", 0)
    assert (est["artist_amount"], est["client_amount"]) == (50_000, 450_000)
    assert engine.get_contract(contract["id"])["lock_version"] == 0


# --- Settlement via cancellation proof ---

def test_cancellation_settles_on_accepted_proof(engine, contract, gateway):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    engine.respond_cancellation(contract["id"], t.id, ARTIST, "accept")
    upload = engine.submit_upload(contract["id"], ARTIST, "final", ["wip.png"],
                                  work_progress=0, cancel_ticket_id=t.id)
    engine.review_upload(contract["id"], upload.id, CLIENT, "accept")

    c = engine.get_contract(contract["id"])
    assert c["status"] == ContractStatus.CANCELLED.value
    assert c["settlement"]["artist_amount"] == 50_000
    assert c["settlement"]["client_amount"] == 450_000
    assert c["settlement"]["cancel_ticket_id"] == t.id

    cancel = engine.store.get_ticket(t.id)
    assert cancel.settled
    assert cancel.upload_id == upload.id

    # Payouts were queued and dispatched in the same request
    assert sorted((r["payee"], r["amount"]) for r in gateway.releases) == [
        (ARTIST, 50_000), (CLIENT, 450_000),
    ]
    intents = engine.escrow.list_intents(contract["id"])
    assert {i["status"] for i in intents} == {IntentStatus.ISSUED.value}


def test_artist_cancel_at_30_percent_milestones(engine):
    c = make_milestone_contract(engine, cancellation_fee={"kind": "percent", "amount": 10})
    up = engine.submit_upload(c["id"], ARTIST, "milestone", ["sketch.png"], milestone_idx=0)
    engine.review_upload(c["id"], up.id, CLIENT, "accept")

    t = engine.open_cancellation(c["id"], ARTIST, "family emergency")
    engine.respond_cancellation(c["id"], t.id, CLIENT, "accept")
    # work_progress defaults to accepted milestone percents (30)
    proof = engine.submit_upload(c["id"], ARTIST, "final", ["lineart.png"], cancel_ticket_id=t.id)
    assert proof.work_progress == 30
    engine.review_upload(c["id"], proof.id, CLIENT, "accept")

    settlement = engine.get_contract(c["id"])["settlement"]
    assert settlement["fee"] == 100_000
    assert settlement["artist_amount"] == 270_000
    assert settlement["client_amount"] == 730_000


def test_cancellation_proof_requires_accepted_ticket(engine, contract):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    with pytest.raises(PreconditionFailed):
        engine.submit_upload(contract["id"], ARTIST, "final", ["wip.png"],
                             work_progress=10, cancel_ticket_id=t.id)


def test_cancellation_proof_below_100(engine, contract):
    t = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    engine.respond_cancellation(contract["id"], t.id, ARTIST, "accept")
    with pytest.raises(ValidationFailed):
        engine.submit_upload(contract["id"], ARTIST, "final", ["done.png"],
                             work_progress=100, cancel_ticket_id=t.id)
    with pytest.raises(ValidationFailed):
        engine.submit_upload(contract["id"], ARTIST, "final", ["wip.png"], cancel_ticket_id=t.id)


def test_late_client_cancellation_waives_fee(engine, clock):
    c = make_contract(engine, deadline_at=clock() + DAY, cancellation_fee={"kind": "flat", "amount": 50_000})
    clock.advance(2 * DAY)
    t = engine.open_cancellation(c["id"], CLIENT, "you are late")
    engine.respond_cancellation(c["id"], t.id, ARTIST, "accept")
    up = engine.submit_upload(c["id"], ARTIST, "final", ["wip.png"], work_progress=50, cancel_ticket_id=t.id)
    engine.review_upload(c["id"], up.id, CLIENT, "accept")
    s = engine.get_contract(c["id"])["settlement"]
    assert s["late"] and s["fee"] == 0
    assert s["artist_amount"] == 200_000
    assert s["artist_amount"] + s["client_amount"] == 500_000


def test_settlement_closes_open_tickets(engine, contract):
    cancel = engine.open_cancellation(contract["id"], CLIENT, "changed my mind")
    engine.respond_cancellation(contract["id"], cancel.id, ARTIST, "accept")
    change = engine.open_change(contract["id"], CLIENT, "bigger canvas", {"description": "A3 canvas"})
    up = engine.submit_upload(contract["id"], ARTIST, "final", ["wip.png"],
                              work_progress=20, cancel_ticket_id=cancel.id)
    engine.review_upload(contract["id"], up.id, CLIENT, "accept")
    assert engine.store.get_ticket(change.id).status.value == "cancelled"
    with pytest.raises(PreconditionFailed):
        engine.open_cancellation(contract["id"], CLIENT, "once more")
