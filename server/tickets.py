"""Ticket variants for the commission engine.

Every ticket shares id, contract_id, status and timestamps; each variant adds
its own fields and its own transition table. Tickets reference the contract
and each other by id only.
"""

import logging
from dataclasses import dataclass, field, fields
from typing import ClassVar

from protocol import (
    CANCEL_TRANSITIONS, REVISION_TRANSITIONS, CHANGE_TRANSITIONS,
    RESOLUTION_TRANSITIONS, UPLOAD_TRANSITIONS,
    CancelStatus, RevisionStatus, ChangeStatus, ResolutionStatus, UploadStatus,
    TicketKind, TargetType, Decision, Party, UploadKind,
    PreconditionFailed,
)

logger = logging.getLogger(__name__)


@dataclass
class Ticket:
    """Common shape of every ticket."""
    id: str
    contract_id: str
    status: object
    created_at: float
    resolved_at: float | None = None
    expires_at: float | None = None

    kind: ClassVar[TicketKind]
    status_type: ClassVar[type]
    transitions: ClassVar[dict]
    # field name -> Enum type, for (de)serialization
    enum_fields: ClassVar[dict] = {}

    def transition(self, new_status, resolved_at: float | None = None):
        """Move to new_status if the transition table allows it.

        Pass resolved_at when the move settles the request (accept, reject,
        forced outcome); intermediate moves leave it untouched.
        """
        if new_status not in self.transitions.get(self.status, set()):
            raise PreconditionFailed(
                f"{self.kind.value} {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        logger.info("%s %s: %s -> %s", self.kind.value, self.id, self.status.value, new_status.value)
        self.status = new_status
        if resolved_at is not None:
            self.resolved_at = resolved_at

    def can_move_to(self, new_status) -> bool:
        return new_status in self.transitions.get(self.status, set())

    def due_at(self) -> float | None:
        """Deadline the expiry sweep watches, or None when nothing is due."""
        return None

    def is_active(self) -> bool:
        """True while the ticket counts against the one-active-ticket rule."""
        return False

    def uniqueness_key(self):
        return (self.contract_id, self.kind.value)

    def to_dict(self) -> dict:
        d = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "status" or f.name in self.enum_fields:
                value = value.value if value is not None else None
            d[f.name] = value
        d["kind"] = self.kind.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Ticket":
        kwargs = {}
        for f in fields(cls):
            if f.name not in d:
                continue
            value = d[f.name]
            if f.name == "status":
                value = cls.status_type(value)
            elif f.name in cls.enum_fields and value is not None:
                value = cls.enum_fields[f.name](value)
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass
class CancellationTicket(Ticket):
    requested_by: Party = Party.CLIENT
    requested_by_id: str = ""
    reason: str = ""
    rejection_reason: str | None = None
    # Set once the cancellation proof is accepted and funds are split
    settled: bool = False
    upload_id: str | None = None

    kind = TicketKind.CANCEL
    status_type = CancelStatus
    transitions = CANCEL_TRANSITIONS
    enum_fields = {"requested_by": Party}

    def due_at(self):
        return self.expires_at if self.status is CancelStatus.PENDING else None

    def is_active(self):
        if self.status in (CancelStatus.PENDING, CancelStatus.DISPUTED):
            return True
        return self.status in (CancelStatus.ACCEPTED, CancelStatus.FORCED_ACCEPTED) and not self.settled

    @property
    def counterparty(self) -> Party:
        return self.requested_by.other


@dataclass
class RevisionTicket(Ticket):
    requested_by_id: str = ""
    description: str = ""
    milestone_idx: int | None = None
    paid_fee: int | None = None
    rejection_reason: str | None = None
    pending_intent_id: str | None = None
    escrow_txn_id: str | None = None
    paid_at: float | None = None
    # Accepted revision upload that delivered this revision
    delivered_upload_id: str | None = None

    kind = TicketKind.REVISION
    status_type = RevisionStatus
    transitions = REVISION_TRANSITIONS

    @property
    def is_paid_change(self) -> bool:
        return bool(self.paid_fee)

    def due_at(self):
        return self.expires_at if self.status is RevisionStatus.PENDING else None

    def is_active(self):
        if self.status in (RevisionStatus.PENDING, RevisionStatus.DISPUTED):
            return True
        if self.status in (RevisionStatus.ACCEPTED, RevisionStatus.FORCED_ACCEPTED):
            return self.is_paid_change and self.escrow_txn_id is None
        return False

    def awaiting_delivery(self) -> bool:
        """Agreed (and paid, if it has a fee) but no revision upload accepted yet."""
        if self.delivered_upload_id is not None:
            return False
        if self.status is RevisionStatus.PAID:
            return True
        return self.status in (RevisionStatus.ACCEPTED, RevisionStatus.FORCED_ACCEPTED) and not self.is_paid_change

    def uniqueness_key(self):
        return (self.contract_id, self.kind.value, self.milestone_idx)


@dataclass
class ChangeTicket(Ticket):
    requested_by_id: str = ""
    reason: str = ""
    change_set: dict = field(default_factory=dict)
    paid_fee: int | None = None
    fee_waived: bool = False
    rejection_reason: str | None = None
    pending_intent_id: str | None = None
    escrow_txn_id: str | None = None
    paid_at: float | None = None
    # Guards the one-time overlay of change_set onto the contract
    applied: bool = False
    contract_version_before: int | None = None
    contract_version_after: int | None = None
    # Parked for admin review; the sweep leaves it alone
    escalated: bool = False

    kind = TicketKind.CHANGE
    status_type = ChangeStatus
    transitions = CHANGE_TRANSITIONS

    @property
    def is_paid_change(self) -> bool:
        return bool(self.paid_fee) and not self.fee_waived

    def due_at(self):
        if self.escalated:
            return None
        if self.status in (ChangeStatus.PENDING_ARTIST, ChangeStatus.PENDING_CLIENT):
            return self.expires_at
        return None

    def is_active(self):
        if self.status in (ChangeStatus.PENDING_ARTIST, ChangeStatus.PENDING_CLIENT):
            return True
        return self.status is ChangeStatus.FORCED_ACCEPTED_CLIENT and not self.applied


@dataclass
class ResolutionTicket(Ticket):
    submitted_by: Party = Party.CLIENT
    submitted_by_id: str = ""
    target_type: TargetType = TargetType.CANCEL
    target_id: str = ""
    description: str = ""
    proof_images: list = field(default_factory=list)
    counterparty: Party = Party.ARTIST
    counter_description: str | None = None
    counter_proof_images: list | None = None
    counter_expires_at: float | None = None
    decision: Decision | None = None
    resolution_note: str | None = None
    resolved_by: str | None = None

    kind = TicketKind.RESOLUTION
    status_type = ResolutionStatus
    transitions = RESOLUTION_TRANSITIONS
    enum_fields = {
        "submitted_by": Party, "counterparty": Party,
        "target_type": TargetType, "decision": Decision,
    }

    def due_at(self):
        return self.counter_expires_at if self.status is ResolutionStatus.OPEN else None

    def is_active(self):
        return self.status in (ResolutionStatus.OPEN, ResolutionStatus.AWAITING_REVIEW)

    def uniqueness_key(self):
        return (self.contract_id, self.kind.value, self.target_id)


@dataclass
class ProofUpload(Ticket):
    """Final, milestone or revision proof-of-work submitted by the artist."""
    upload_kind: UploadKind = UploadKind.FINAL
    submitted_by_id: str = ""
    refs: list = field(default_factory=list)
    work_progress: int = 100
    milestone_idx: int | None = None
    cancel_ticket_id: str | None = None
    revision_ticket_id: str | None = None
    rejection_reason: str | None = None

    kind = TicketKind.UPLOAD
    status_type = UploadStatus
    transitions = UPLOAD_TRANSITIONS
    enum_fields = {"upload_kind": UploadKind}

    def due_at(self):
        return self.expires_at if self.status is UploadStatus.SUBMITTED else None

    def is_active(self):
        return self.status is UploadStatus.SUBMITTED

    def uniqueness_key(self):
        return (self.contract_id, self.kind.value, self.upload_kind.value,
                self.milestone_idx, self.revision_ticket_id)


TICKET_TYPES = {
    TicketKind.CANCEL: CancellationTicket,
    TicketKind.REVISION: RevisionTicket,
    TicketKind.CHANGE: ChangeTicket,
    TicketKind.RESOLUTION: ResolutionTicket,
    TicketKind.UPLOAD: ProofUpload,
}


def ticket_from_dict(d: dict) -> Ticket:
    """Rebuild the right variant from a stored dict (dispatch on "kind")."""
    cls = TICKET_TYPES[TicketKind(d["kind"])]
    return cls.from_dict(d)
