"""Tests for proof uploads: completion, milestones, review windows."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from protocol import (
    UploadStatus, ContractStatus, CancelStatus, RevisionStatus, PreconditionFailed, ValidationFailed,
)
from conftest import CLIENT, ARTIST, HOUR, DAY, REASON, make_contract, make_milestone_contract, revisable


def test_final_delivery_completes(engine, gateway):
    c = make_contract(engine)
    up = engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])
    assert up.status is UploadStatus.SUBMITTED
    assert up.work_progress == 100
    up = engine.review_upload(c["id"], up.id, CLIENT, "accept")
    assert up.status is UploadStatus.ACCEPTED

    c = engine.get_contract(c["id"])
    assert c["status"] == ContractStatus.COMPLETED.value
    assert c["settlement"]["kind"] == "completion"
    assert [(r["payee"], r["amount"]) for r in gateway.releases] == [(ARTIST, 500_000)]


def test_late_delivery_penalty(engine, clock, gateway):
    c = make_contract(engine, deadline_at=clock() + DAY, late_penalty_percent=20)
    clock.advance(3 * DAY)
    up = engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])
    engine.review_upload(c["id"], up.id, CLIENT, "accept")
    s = engine.get_contract(c["id"])["settlement"]
    assert s["late"]
    assert (s["artist_amount"], s["client_amount"]) == (400_000, 100_000)


def test_final_must_be_complete(engine):
    c = make_contract(engine)
    with pytest.raises(ValidationFailed):
        engine.submit_upload(c["id"], ARTIST, "final", ["wip.png"], work_progress=80)


def test_refs_required(engine):
    c = make_contract(engine)
    with pytest.raises(ValidationFailed):
        engine.submit_upload(c["id"], ARTIST, "final", [])
    with pytest.raises(ValidationFailed):
        engine.submit_upload(c["id"], ARTIST, "final", [""])


def test_only_artist_uploads(engine):
    c = make_contract(engine)
    with pytest.raises(PreconditionFailed):
        engine.submit_upload(c["id"], CLIENT, "final", ["final.png"])


def test_only_client_reviews(engine):
    c = make_contract(engine)
    up = engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])
    with pytest.raises(PreconditionFailed):
        engine.review_upload(c["id"], up.id, ARTIST, "accept")


def test_final_blocked_by_open_cancellation(engine):
    c = make_contract(engine)
    engine.open_cancellation(c["id"], CLIENT, "changed my mind")
    with pytest.raises(PreconditionFailed):
        engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])


def test_one_submitted_final_at_a_time(engine):
    c = make_contract(engine)
    engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])
    with pytest.raises(PreconditionFailed):
        engine.submit_upload(c["id"], ARTIST, "final", ["final_v2.png"])


def test_reject_then_resubmit(engine):
    c = make_contract(engine)
    up = engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])
    with pytest.raises(ValidationFailed):
        engine.review_upload(c["id"], up.id, CLIENT, "reject")
    up = engine.review_upload(c["id"], up.id, CLIENT, "reject", REASON)
    assert up.status is UploadStatus.REJECTED
    assert engine.get_contract(c["id"])["status"] == "active"
    engine.submit_upload(c["id"], ARTIST, "final", ["final_v2.png"])


def test_review_after_window(engine, clock):
    c = make_contract(engine)
    up = engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])
    clock.advance(48 * HOUR + 1)
    with pytest.raises(PreconditionFailed):
        engine.review_upload(c["id"], up.id, CLIENT, "accept")


# --- Milestones ---

def test_milestone_cycle(engine):
    c = make_milestone_contract(engine)
    up = engine.submit_upload(c["id"], ARTIST, "milestone", ["sketch.png"], milestone_idx=0)
    assert engine.get_contract(c["id"])["milestones"][0]["status"] == "submitted"
    engine.review_upload(c["id"], up.id, CLIENT, "accept")
    c = engine.get_contract(c["id"])
    assert c["milestones"][0]["status"] == "accepted"
    assert c["status"] == "active"


def test_accepted_milestone_is_immutable(engine):
    c = make_milestone_contract(engine)
    up = engine.submit_upload(c["id"], ARTIST, "milestone", ["sketch.png"], milestone_idx=0)
    engine.review_upload(c["id"], up.id, CLIENT, "accept")
    with pytest.raises(PreconditionFailed):
        engine.submit_upload(c["id"], ARTIST, "milestone", ["sketch_v2.png"], milestone_idx=0)


def test_rejected_milestone_resubmits(engine):
    c = make_milestone_contract(engine)
    up = engine.submit_upload(c["id"], ARTIST, "milestone", ["sketch.png"], milestone_idx=1)
    engine.review_upload(c["id"], up.id, CLIENT, "reject", REASON)
    assert engine.get_contract(c["id"])["milestones"][1]["status"] == "rejected"
    engine.submit_upload(c["id"], ARTIST, "milestone", ["sketch_v2.png"], milestone_idx=1)
    assert engine.get_contract(c["id"])["milestones"][1]["status"] == "submitted"


def test_milestone_upload_needs_milestone_flow(engine):
    c = make_contract(engine)
    with pytest.raises(ValidationFailed):
        engine.submit_upload(c["id"], ARTIST, "milestone", ["sketch.png"], milestone_idx=0)


def test_milestone_out_of_range(engine):
    c = make_milestone_contract(engine)
    with pytest.raises(ValidationFailed):
        engine.submit_upload(c["id"], ARTIST, "milestone", ["sketch.png"], milestone_idx=3)


def test_unknown_upload_kind(engine):
    c = make_contract(engine)
    with pytest.raises(ValidationFailed):
        engine.submit_upload(c["id"], ARTIST, "draft", ["sketch.png"])


def _accept_milestone(engine, c, idx):
    up = engine.submit_upload(c["id"], ARTIST, "milestone", [f"m{idx}.png"], milestone_idx=idx)
    engine.review_upload(c["id"], up.id, CLIENT, "accept")


def test_final_needs_every_milestone_accepted(engine):
    c = make_milestone_contract(engine)
    _accept_milestone(engine, c, 0)
    _accept_milestone(engine, c, 1)
    with pytest.raises(PreconditionFailed, match="milestones"):
        engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])

    _accept_milestone(engine, c, 2)
    up = engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])
    engine.review_upload(c["id"], up.id, CLIENT, "accept")
    assert engine.get_contract(c["id"])["status"] == ContractStatus.COMPLETED.value


def test_cancellation_proof_skips_milestone_gate(engine):
    c = make_milestone_contract(engine)
    cancel = engine.open_cancellation(c["id"], CLIENT, "changed my mind")
    engine.respond_cancellation(c["id"], cancel.id, ARTIST, "accept")
    up = engine.submit_upload(c["id"], ARTIST, "final", ["wip.png"], cancel_ticket_id=cancel.id)
    assert up.work_progress == 0


# --- Revision uploads ---

def _agreed_revision(engine, c, milestone_idx=None):
    t = engine.open_revision(c["id"], CLIENT, "make the eyes bigger", milestone_idx=milestone_idx)
    return engine.respond_revision(c["id"], t.id, ARTIST, "accept")


def test_revision_upload_delivers_revision(engine):
    c = make_contract(engine, revision_policy=revisable())
    t = _agreed_revision(engine, c)
    up = engine.submit_upload(c["id"], ARTIST, "revision", ["eyes.png"], revision_ticket_id=t.id)
    assert up.upload_kind.value == "revision"
    assert up.revision_ticket_id == t.id
    engine.review_upload(c["id"], up.id, CLIENT, "accept")

    t = engine.store.get_ticket(t.id)
    assert t.delivered_upload_id == up.id
    assert not t.awaiting_delivery()
    assert engine.get_contract(c["id"])["status"] == "active"
    with pytest.raises(PreconditionFailed, match="already delivered"):
        engine.submit_upload(c["id"], ARTIST, "revision", ["eyes_v2.png"], revision_ticket_id=t.id)


def test_final_waits_for_revision_delivery(engine):
    c = make_contract(engine, revision_policy=revisable())
    t = _agreed_revision(engine, c)
    with pytest.raises(PreconditionFailed, match="revision"):
        engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])

    up = engine.submit_upload(c["id"], ARTIST, "revision", ["eyes.png"], revision_ticket_id=t.id)
    engine.review_upload(c["id"], up.id, CLIENT, "reject", REASON)
    with pytest.raises(PreconditionFailed, match="revision"):
        engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])

    up = engine.submit_upload(c["id"], ARTIST, "revision", ["eyes_v2.png"], revision_ticket_id=t.id)
    engine.review_upload(c["id"], up.id, CLIENT, "accept")
    engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])


def test_milestone_upload_waits_for_revision_delivery(engine):
    c = make_milestone_contract(engine, revision_policy=revisable())
    _accept_milestone(engine, c, 0)
    t = _agreed_revision(engine, c, milestone_idx=0)
    with pytest.raises(PreconditionFailed, match="revision"):
        engine.submit_upload(c["id"], ARTIST, "milestone", ["lineart.png"], milestone_idx=1)
    up = engine.submit_upload(c["id"], ARTIST, "revision", ["sketch_v2.png"], revision_ticket_id=t.id)
    assert up.milestone_idx == 0
    engine.review_upload(c["id"], up.id, CLIENT, "accept")
    engine.submit_upload(c["id"], ARTIST, "milestone", ["lineart.png"], milestone_idx=1)


def test_revision_upload_needs_agreed_revision(engine):
    c = make_contract(engine, revision_policy=revisable())
    t = engine.open_revision(c["id"], CLIENT, "make the eyes bigger")
    with pytest.raises(PreconditionFailed, match="pending"):
        engine.submit_upload(c["id"], ARTIST, "revision", ["eyes.png"], revision_ticket_id=t.id)
    with pytest.raises(ValidationFailed):
        engine.submit_upload(c["id"], ARTIST, "revision", ["eyes.png"])
    with pytest.raises(ValidationFailed):
        engine.submit_upload(c["id"], ARTIST, "final", ["final.png"], revision_ticket_id=t.id)
    engine.respond_revision(c["id"], t.id, ARTIST, "accept")
    with pytest.raises(PreconditionFailed):
        engine.submit_upload(c["id"], CLIENT, "revision", ["eyes.png"], revision_ticket_id=t.id)


def test_paid_revision_delivered_after_payment(engine):
    c = make_contract(engine, revision_policy=revisable(free=0, extra_allowed=True, fee=5_000))
    t = _agreed_revision(engine, c)
    assert t.paid_fee == 5_000
    # Fee still owed: nothing to deliver yet
    assert not t.awaiting_delivery()
    with pytest.raises(PreconditionFailed):
        engine.submit_upload(c["id"], ARTIST, "revision", ["eyes.png"], revision_ticket_id=t.id)

    t = engine.pay_revision(c["id"], t.id, CLIENT)
    t = engine.on_charge_confirmed(t.pending_intent_id, "txn_7")
    assert t.status is RevisionStatus.PAID
    with pytest.raises(PreconditionFailed, match="revision"):
        engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])
    up = engine.submit_upload(c["id"], ARTIST, "revision", ["eyes.png"], revision_ticket_id=t.id)
    engine.review_upload(c["id"], up.id, CLIENT, "accept")
    assert engine.store.get_ticket(t.id).delivered_upload_id == up.id


def test_one_submitted_revision_upload_per_revision(engine):
    c = make_contract(engine, revision_policy=revisable())
    t = _agreed_revision(engine, c)
    engine.submit_upload(c["id"], ARTIST, "revision", ["eyes.png"], revision_ticket_id=t.id)
    with pytest.raises(PreconditionFailed):
        engine.submit_upload(c["id"], ARTIST, "revision", ["eyes_v2.png"], revision_ticket_id=t.id)


def test_unreviewed_revision_upload_expires_into_delivery(engine, clock):
    c = make_contract(engine, revision_policy=revisable())
    t = _agreed_revision(engine, c)
    up = engine.submit_upload(c["id"], ARTIST, "revision", ["eyes.png"], revision_ticket_id=t.id)
    clock.advance(48 * HOUR + 1)
    engine.expire_ticket(up.id)
    assert engine.store.get_ticket(up.id).status is UploadStatus.FORCED_ACCEPTED
    assert engine.store.get_ticket(t.id).delivered_upload_id == up.id
    assert engine.get_contract(c["id"])["status"] == "active"


# --- Closing the contract ---

def test_completion_rejects_agreed_cancellation(engine, gateway):
    c = make_contract(engine)
    up = engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])
    cancel = engine.open_cancellation(c["id"], CLIENT, "changed my mind")
    engine.respond_cancellation(c["id"], cancel.id, ARTIST, "accept")
    engine.review_upload(c["id"], up.id, CLIENT, "accept")

    assert engine.get_contract(c["id"])["status"] == ContractStatus.COMPLETED.value
    cancel = engine.store.get_ticket(cancel.id)
    assert cancel.status is CancelStatus.REJECTED
    assert not cancel.is_active()
    assert not cancel.settled
    assert [r["payee"] for r in gateway.releases] == [ARTIST]


def test_no_delivery_after_grace(engine, clock):
    c = make_contract(engine, deadline_at=clock() + DAY, grace_days=2)
    clock.advance(3 * DAY + 1)
    with pytest.raises(PreconditionFailed, match="grace"):
        engine.submit_upload(c["id"], ARTIST, "final", ["final.png"])

    # Winding the contract down is still possible
    cancel = engine.open_cancellation(c["id"], CLIENT, "the artist never delivered")
    engine.respond_cancellation(c["id"], cancel.id, ARTIST, "accept")
    engine.submit_upload(c["id"], ARTIST, "final", ["wip.png"], work_progress=60, cancel_ticket_id=cancel.id)


def test_no_milestone_upload_after_grace(engine, clock):
    c = make_milestone_contract(engine, deadline_at=clock() + DAY, grace_days=1)
    clock.advance(2 * DAY + 1)
    with pytest.raises(PreconditionFailed, match="grace"):
        engine.submit_upload(c["id"], ARTIST, "milestone", ["sketch.png"], milestone_idx=0)


def test_contract_view_groups_tickets(engine):
    c = make_contract(engine)
    engine.open_cancellation(c["id"], CLIENT, "changed my mind")
    view = engine.contract_view(c["id"])
    assert view["contract"]["id"] == c["id"]
    assert len(view["tickets"]["cancel"]) == 1
    assert view["tickets"]["upload"] == []
    assert view["intents"] == []
