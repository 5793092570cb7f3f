"""Ticket engine: every amendment and dispute operation on a contract.

Each mutating operation runs as one unit of work against a single Contract
Aggregate: take the writer lock, load the contract, check preconditions,
mutate tickets/contract, write back with the lock_version check, commit.
Any EngineError rolls the whole unit back. Gateway calls (fee charges,
payouts) happen outside that unit.
"""

import logging
from contextlib import contextmanager

from config import EngineConfig
from contract import (
    build_contract, validate_contract, validate_change_set, apply_change_set,
    milestone_in_range, default_work_progress, revision_terms, count_revision,
)
from protocol import (
    MIN_REASON_LENGTH, MAX_COUNTERPROOF_IMAGES,
    CONTRACT_TRANSITIONS, MILESTONE_TRANSITIONS, OPEN_CONTRACT_STATES,
    ContractStatus, MilestoneStatus, Party, TicketKind, TargetType, Decision,
    ExpiryPolicy, IntentType, IntentStatus, UploadKind,
    CancelStatus, RevisionStatus, ChangeStatus, ResolutionStatus, UploadStatus,
    NotFound, PreconditionFailed, ValidationFailed, ConcurrencyConflict, SchedulerSkip,
)
from server.escrow import Escrow, EscrowManager, check_work_progress
from server.tickets import (
    CancellationTicket, RevisionTicket, ChangeTicket, ResolutionTicket, ProofUpload,
)

logger = logging.getLogger(__name__)

ACCEPTED_CANCEL = (CancelStatus.ACCEPTED, CancelStatus.FORCED_ACCEPTED)
ACCEPTED_REVISION = (RevisionStatus.ACCEPTED, RevisionStatus.FORCED_ACCEPTED)

TARGET_KINDS = {
    TargetType.CANCEL: TicketKind.CANCEL,
    TargetType.REVISION: TicketKind.REVISION,
    TargetType.CHANGE: TicketKind.CHANGE,
    TargetType.FINAL: TicketKind.UPLOAD,
    TargetType.MILESTONE: TicketKind.UPLOAD,
    TargetType.REVISION_UPLOAD: TicketKind.UPLOAD,
}

TARGET_UPLOAD_KINDS = {
    TargetType.FINAL: UploadKind.FINAL,
    TargetType.MILESTONE: UploadKind.MILESTONE,
    TargetType.REVISION_UPLOAD: UploadKind.REVISION,
}


def _parse(enum_type, value, what):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationFailed(f"invalid {what}: {value!r}")


def _check_reason(text, what="rejection reason"):
    if not isinstance(text, str) or len(text.strip()) < MIN_REASON_LENGTH:
        raise ValidationFailed(f"{what} must be at least {MIN_REASON_LENGTH} characters")
    return text.strip()


def _check_text(text, what):
    if not isinstance(text, str) or not text.strip():
        raise ValidationFailed(f"{what} is required")
    return text.strip()


def _check_refs(refs, what, minimum=1, maximum=None):
    if not isinstance(refs, list) or not all(isinstance(r, str) and r for r in refs):
        raise ValidationFailed(f"{what} must be a list of upload refs")
    if len(refs) < minimum:
        raise ValidationFailed(f"{what} needs at least {minimum} ref(s)")
    if maximum is not None and len(refs) > maximum:
        raise ValidationFailed(f"{what} allows at most {maximum} ref(s)")
    return list(refs)


class TicketEngine:
    """Cancellation, revision, change and resolution tickets plus proof uploads."""

    def __init__(self, store, escrow_mgr: EscrowManager | None = None,
                 config: EngineConfig | None = None, clock=None):
        self.store = store
        self.escrow = escrow_mgr or EscrowManager(store)
        self.config = config or EngineConfig()
        self.clock = clock or store.clock

    # --- Unit of work ---

    @contextmanager
    def _mutate(self, contract_id: str, expected_version: int | None = None):
        """Lock, load and yield the contract; write it back when the body succeeds."""
        with self.store.transaction():
            contract = self.store.get_contract(contract_id)
            if contract is None:
                raise NotFound(f"Contract {contract_id} not found")
            read_version = contract["lock_version"]
            if expected_version is not None and expected_version != read_version:
                raise ConcurrencyConflict(
                    f"Contract {contract_id} is at lock_version {read_version}, expected {expected_version}"
                )
            yield contract
            self.store.save_contract(contract, read_version)

    @contextmanager
    def _read(self, contract_id: str, expected_version: int | None = None):
        """Lock and load the contract without writing anything back."""
        with self.store.transaction():
            contract = self.store.get_contract(contract_id)
            if contract is None:
                raise NotFound(f"Contract {contract_id} not found")
            if expected_version is not None and expected_version != contract["lock_version"]:
                raise ConcurrencyConflict(
                    f"Contract {contract_id} is at lock_version {contract['lock_version']}, expected {expected_version}"
                )
            yield contract

    def _dispatch(self, contract_id: str):
        """Send any payouts a settlement queued. Failures wait for the sweeper."""
        self.escrow.dispatch_pending(contract_id)

    # --- Lookups & guards ---

    def _load(self, contract_id: str, ticket_id: str, kind: TicketKind):
        ticket = self.store.get_ticket(ticket_id, kind)
        if ticket is None or ticket.contract_id != contract_id:
            raise NotFound(f"No {kind.value} ticket {ticket_id} on contract {contract_id}")
        return ticket

    def _role_of(self, contract: dict, actor_id: str) -> Party:
        if actor_id and actor_id == contract["client_id"]:
            return Party.CLIENT
        if actor_id and actor_id == contract["artist_id"]:
            return Party.ARTIST
        raise PreconditionFailed("Not a party to this contract", forbidden=True)

    def _require_role(self, contract: dict, actor_id: str, role: Party):
        if self._role_of(contract, actor_id) is not role:
            raise PreconditionFailed(f"Only the {role.value} can do this", forbidden=True)

    def _require_active(self, contract: dict):
        if contract["status"] != ContractStatus.ACTIVE.value:
            raise PreconditionFailed(f"Contract is {contract['status']}, not active")

    def _require_open(self, contract: dict):
        if ContractStatus(contract["status"]) not in OPEN_CONTRACT_STATES:
            raise PreconditionFailed(f"Contract is {contract['status']}")

    def _active_resolutions(self, contract_id: str) -> list[ResolutionTicket]:
        return [t for t in self.store.tickets_for(contract_id, TicketKind.RESOLUTION) if t.is_active()]

    def _require_no_resolution(self, contract_id: str):
        if self._active_resolutions(contract_id):
            raise PreconditionFailed("An active resolution blocks changes to this contract")

    def _disputed_by(self, ticket) -> ResolutionTicket | None:
        for r in self._active_resolutions(ticket.contract_id):
            if r.target_id == ticket.id:
                return r
        return None

    def _require_not_disputed(self, ticket):
        r = self._disputed_by(ticket)
        if r is not None:
            raise PreconditionFailed(f"{ticket.kind.value} {ticket.id} is under dispute ({r.id})")

    def _require_unique(self, ticket):
        key = ticket.uniqueness_key()
        for other in self.store.tickets_for(ticket.contract_id, ticket.kind):
            if other.is_active() and other.uniqueness_key() == key:
                raise PreconditionFailed(
                    f"An active {ticket.kind.value} ticket ({other.id}) already exists"
                )

    def _require_window(self, ticket, now: float, deadline: float | None = None):
        deadline = ticket.expires_at if deadline is None else deadline
        if deadline is not None and now > deadline:
            raise PreconditionFailed(f"{ticket.kind.value} {ticket.id}: response window closed")

    def _set_contract_status(self, contract: dict, status: ContractStatus):
        current = ContractStatus(contract["status"])
        if current is status:
            return
        if status not in CONTRACT_TRANSITIONS[current]:
            raise PreconditionFailed(f"Contract cannot move from {current.value} to {status.value}")
        logger.info("contract %s: %s -> %s", contract["id"], current.value, status.value)
        contract["status"] = status.value

    def _set_milestone(self, contract: dict, idx: int, status: MilestoneStatus):
        m = contract["milestones"][idx]
        current = MilestoneStatus(m["status"])
        if status not in MILESTONE_TRANSITIONS[current]:
            raise PreconditionFailed(f"Milestone {idx} cannot move from {current.value} to {status.value}")
        m["status"] = status.value

    # --- Contracts ---

    def create_contract(self, client_id: str, artist_id: str, total: int, **terms) -> dict:
        contract = build_contract(client_id, artist_id, total, now=self.clock(), **terms)
        ok, errors = validate_contract(contract)
        if not ok:
            raise ValidationFailed("; ".join(errors))
        contract_id = self.store.create_contract(contract)
        logger.info("contract %s created: total %d, %s flow", contract_id, total, contract["flow"])
        return self.store.get_contract(contract_id)

    def get_contract(self, contract_id: str) -> dict:
        contract = self.store.get_contract(contract_id)
        if contract is None:
            raise NotFound(f"Contract {contract_id} not found")
        return contract

    def contract_view(self, contract_id: str) -> dict:
        """Contract plus its tickets grouped by kind and its escrow ledger."""
        contract = self.get_contract(contract_id)
        tickets = {kind.value: [] for kind in TicketKind}
        for t in self.store.tickets_for(contract_id):
            tickets[t.kind.value].append(t.to_dict())
        return {
            "contract": contract,
            "tickets": tickets,
            "intents": self.escrow.list_intents(contract_id),
        }

    def estimate_cancellation(self, contract_id: str, requested_by, work_progress: int | None = None) -> dict:
        """Preview the cancellation split. Touches no state."""
        contract = self.get_contract(contract_id)
        requested_by = _parse(Party, requested_by, "requested_by")
        if work_progress is None:
            work_progress = default_work_progress(contract)
        return Escrow(contract).cancellation(requested_by, work_progress, self.clock())

    # --- Cancellation ---

    def open_cancellation(self, contract_id: str, actor_id: str, reason: str,
                          expected_version: int | None = None) -> CancellationTicket:
        with self._mutate(contract_id, expected_version) as contract:
            role = self._role_of(contract, actor_id)
            self._require_active(contract)
            self._require_no_resolution(contract_id)
            now = self.clock()
            ticket = CancellationTicket(
                id=self.store.new_ticket_id(),
                contract_id=contract_id,
                status=CancelStatus.PENDING,
                created_at=now,
                expires_at=now + self.config.cancel_window,
                requested_by=role,
                requested_by_id=actor_id,
                reason=_check_text(reason, "reason"),
            )
            self._require_unique(ticket)
            self.store.insert_ticket(ticket)
        logger.info("cancel %s opened on %s by %s", ticket.id, contract_id, role.value)
        return ticket

    def respond_cancellation(self, contract_id: str, ticket_id: str, actor_id: str, decision: str,
                             rejection_reason: str | None = None,
                             expected_version: int | None = None) -> CancellationTicket:
        with self._mutate(contract_id, expected_version) as contract:
            ticket = self._load(contract_id, ticket_id, TicketKind.CANCEL)
            role = self._role_of(contract, actor_id)
            if role is ticket.requested_by:
                raise PreconditionFailed("Only the counterparty can respond to a cancellation", forbidden=True)
            self._require_open(contract)
            if ticket.status is not CancelStatus.PENDING:
                raise PreconditionFailed(f"cancel {ticket_id} is {ticket.status.value}, not pending")
            self._require_not_disputed(ticket)
            now = self.clock()
            self._require_window(ticket, now)

            if decision == "accept":
                ticket.transition(CancelStatus.ACCEPTED, resolved_at=now)
            elif decision == "reject":
                ticket.rejection_reason = _check_reason(rejection_reason)
                ticket.transition(CancelStatus.REJECTED, resolved_at=now)
            else:
                raise ValidationFailed(f"decision must be 'accept' or 'reject', got {decision!r}")
            self.store.save_ticket(ticket)
        return ticket

    # --- Revision ---

    def open_revision(self, contract_id: str, actor_id: str, description: str,
                      milestone_idx: int | None = None,
                      expected_version: int | None = None) -> RevisionTicket:
        with self._mutate(contract_id, expected_version) as contract:
            self._require_role(contract, actor_id, Party.CLIENT)
            self._require_active(contract)
            self._require_no_resolution(contract_id)

            if milestone_idx is not None:
                if contract["flow"] != "milestone":
                    raise ValidationFailed("milestone_idx only applies to milestone-flow contracts")
                if not milestone_in_range(contract, milestone_idx):
                    raise ValidationFailed(f"milestone_idx {milestone_idx} out of range")

            allowed, fee, message = revision_terms(contract, milestone_idx)
            if not allowed:
                raise PreconditionFailed(message)

            now = self.clock()
            ticket = RevisionTicket(
                id=self.store.new_ticket_id(),
                contract_id=contract_id,
                status=RevisionStatus.PENDING,
                created_at=now,
                expires_at=now + self.config.revision_window,
                requested_by_id=actor_id,
                description=_check_text(description, "description"),
                milestone_idx=milestone_idx,
                paid_fee=fee,
            )
            self._require_unique(ticket)
            self.store.insert_ticket(ticket)
        logger.info("revision %s opened on %s (fee %s)", ticket.id, contract_id, ticket.paid_fee)
        return ticket

    def respond_revision(self, contract_id: str, ticket_id: str, actor_id: str, decision: str,
                         rejection_reason: str | None = None,
                         expected_version: int | None = None) -> RevisionTicket:
        with self._mutate(contract_id, expected_version) as contract:
            ticket = self._load(contract_id, ticket_id, TicketKind.REVISION)
            self._require_role(contract, actor_id, Party.ARTIST)
            self._require_open(contract)
            if ticket.status is not RevisionStatus.PENDING:
                raise PreconditionFailed(f"revision {ticket_id} is {ticket.status.value}, not pending")
            self._require_not_disputed(ticket)
            now = self.clock()
            self._require_window(ticket, now)

            if decision == "accept":
                ticket.transition(RevisionStatus.ACCEPTED, resolved_at=now)
                count_revision(contract, ticket.milestone_idx)
            elif decision == "reject":
                ticket.rejection_reason = _check_reason(rejection_reason)
                ticket.transition(RevisionStatus.REJECTED, resolved_at=now)
            else:
                raise ValidationFailed(f"decision must be 'accept' or 'reject', got {decision!r}")
            self.store.save_ticket(ticket)
        return ticket

    def pay_revision(self, contract_id: str, ticket_id: str, actor_id: str,
                     expected_version: int | None = None) -> RevisionTicket:
        return self._pay(contract_id, ticket_id, TicketKind.REVISION, actor_id, expected_version)

    # --- Change ---

    def open_change(self, contract_id: str, actor_id: str, reason: str, change_set: dict,
                    expected_version: int | None = None) -> ChangeTicket:
        with self._mutate(contract_id, expected_version) as contract:
            self._require_role(contract, actor_id, Party.CLIENT)
            self._require_active(contract)
            self._require_no_resolution(contract_id)
            ok, errors = validate_change_set(contract, change_set)
            if not ok:
                raise ValidationFailed("; ".join(errors))

            now = self.clock()
            ticket = ChangeTicket(
                id=self.store.new_ticket_id(),
                contract_id=contract_id,
                status=ChangeStatus.PENDING_ARTIST,
                created_at=now,
                expires_at=now + self.config.change_window,
                requested_by_id=actor_id,
                reason=_check_text(reason, "reason"),
                change_set=dict(change_set),
                contract_version_before=contract["version"],
            )
            self._require_unique(ticket)
            self.store.insert_ticket(ticket)
        logger.info("change %s opened on %s: %s", ticket.id, contract_id, sorted(change_set))
        return ticket

    def respond_change(self, contract_id: str, ticket_id: str, actor_id: str, response: str,
                       paid_fee: int | None = None, rejection_reason: str | None = None,
                       expected_version: int | None = None) -> ChangeTicket:
        """Artist: accept / propose (with paid_fee) / reject. Client: reject a proposed fee."""
        with self._mutate(contract_id, expected_version) as contract:
            ticket = self._load(contract_id, ticket_id, TicketKind.CHANGE)
            role = self._role_of(contract, actor_id)
            self._require_open(contract)
            if ticket.escalated:
                raise PreconditionFailed(f"change {ticket_id} is escalated for admin review")
            self._require_not_disputed(ticket)
            now = self.clock()

            if ticket.status is ChangeStatus.PENDING_ARTIST:
                if role is not Party.ARTIST:
                    raise PreconditionFailed("Only the artist can answer this change request", forbidden=True)
                self._require_window(ticket, now)
                if response == "accept":
                    ticket.transition(ChangeStatus.ACCEPTED_ARTIST, resolved_at=now)
                    self._apply_change(contract, ticket, now)
                elif response == "propose":
                    if not isinstance(paid_fee, int) or isinstance(paid_fee, bool) or paid_fee <= 0:
                        raise ValidationFailed("propose needs a paid_fee > 0")
                    ticket.paid_fee = paid_fee
                    ticket.transition(ChangeStatus.PENDING_CLIENT)
                    # Client gets a fresh window to pay or reject
                    ticket.expires_at = now + self.config.change_window
                elif response == "reject":
                    ticket.rejection_reason = _check_reason(rejection_reason)
                    ticket.transition(ChangeStatus.REJECTED_ARTIST, resolved_at=now)
                else:
                    raise ValidationFailed(f"response must be accept, propose or reject, got {response!r}")

            elif ticket.status is ChangeStatus.PENDING_CLIENT:
                if role is not Party.CLIENT:
                    raise PreconditionFailed("Only the client can answer a proposed fee", forbidden=True)
                self._require_window(ticket, now)
                if response != "reject":
                    raise ValidationFailed("client accepts a proposed fee by paying it; response must be 'reject'")
                ticket.rejection_reason = _check_reason(rejection_reason)
                ticket.transition(ChangeStatus.REJECTED_CLIENT, resolved_at=now)

            else:
                raise PreconditionFailed(f"change {ticket_id} is {ticket.status.value}; nothing to respond to")
            self.store.save_ticket(ticket)
        return ticket

    def pay_change(self, contract_id: str, ticket_id: str, actor_id: str,
                   expected_version: int | None = None) -> ChangeTicket:
        return self._pay(contract_id, ticket_id, TicketKind.CHANGE, actor_id, expected_version)

    def _apply_change(self, contract: dict, ticket: ChangeTicket, now: float):
        """Overlay the change set onto the contract, once per ticket."""
        if ticket.applied:
            return
        before = contract["version"]
        ticket.contract_version_after = apply_change_set(contract, ticket.change_set, now)
        ticket.applied = True
        logger.info("change %s applied to %s: v%d -> v%d",
                    ticket.id, contract["id"], before, ticket.contract_version_after)

    # --- Fee payments ---

    def _check_payable(self, contract: dict, ticket, actor_id: str, now: float):
        self._require_role(contract, actor_id, Party.CLIENT)
        self._require_open(contract)
        if ticket.escrow_txn_id is not None:
            raise PreconditionFailed(f"{ticket.kind.value} {ticket.id} is already paid")
        if not ticket.is_paid_change:
            raise PreconditionFailed(f"{ticket.kind.value} {ticket.id} has no fee to pay")
        if ticket.kind is TicketKind.REVISION:
            if ticket.status not in ACCEPTED_REVISION:
                raise PreconditionFailed(f"revision {ticket.id} is {ticket.status.value}, not accepted")
        else:
            if ticket.status not in (ChangeStatus.PENDING_CLIENT, ChangeStatus.FORCED_ACCEPTED_CLIENT):
                raise PreconditionFailed(f"change {ticket.id} is {ticket.status.value}; no fee is due")
            if ticket.escalated:
                raise PreconditionFailed(f"change {ticket.id} is escalated for admin review")
            if ticket.status is ChangeStatus.PENDING_CLIENT:
                self._require_window(ticket, now)
        self._require_not_disputed(ticket)

    def _pay(self, contract_id, ticket_id, kind, actor_id, expected_version):
        """Issue a charge intent for a ticket's fee.

        The gateway is called between two short locked reads so the lock is
        never held across the network. Confirmation arrives later through
        on_charge_confirmed().
        """
        with self._read(contract_id, expected_version) as contract:
            ticket = self._load(contract_id, ticket_id, kind)
            self._check_payable(contract, ticket, actor_id, self.clock())
            amount = ticket.paid_fee

        intent_type = IntentType.REVISION_FEE if kind is TicketKind.REVISION else IntentType.CHANGE_FEE
        intent_id = self.escrow.charge_intent(contract_id, ticket_id, intent_type, amount, actor_id)

        with self._mutate(contract_id) as contract:
            ticket = self._load(contract_id, ticket_id, kind)
            self._check_payable(contract, ticket, actor_id, self.clock())
            if ticket.pending_intent_id:
                logger.info("%s %s: intent %s supersedes %s", kind.value, ticket_id, intent_id, ticket.pending_intent_id)
            ticket.pending_intent_id = intent_id
            self.store.save_ticket(ticket)
        return ticket

    def on_charge_confirmed(self, intent_id: str, txn_id: str | None = None):
        """Gateway webhook: a charge (or payout) went through.

        The first confirmed charge for a ticket finalizes it. Later or
        no-longer-wanted charges are flagged stale for out-of-band refund.
        Repeated confirmations are no-ops. Returns the affected ticket, or
        None for payouts and duplicates.
        """
        intent = self.escrow.get_intent(intent_id)
        if intent is None:
            logger.warning("confirmation for unknown intent %s", intent_id)
            raise NotFound(f"No escrow intent {intent_id}")

        if intent["status"] in (IntentStatus.CONFIRMED.value, IntentStatus.STALE.value):
            logger.info("intent %s already %s; ignoring repeat confirmation", intent["id"], intent["status"])
            return None

        if intent["type"] in (IntentType.RELEASE.value, IntentType.REFUND.value):
            with self.store.transaction():
                self.escrow.mark(intent["id"], IntentStatus.CONFIRMED)
            logger.info("payout %s confirmed", intent["id"])
            return None

        kind = TicketKind.REVISION if intent["type"] == IntentType.REVISION_FEE.value else TicketKind.CHANGE
        with self._mutate(intent["contract_id"]) as contract:
            ticket = self._load(intent["contract_id"], intent["ticket_id"], kind)
            if ticket.kind is TicketKind.REVISION:
                payable = ticket.status in ACCEPTED_REVISION
            else:
                payable = ticket.status in (ChangeStatus.PENDING_CLIENT, ChangeStatus.FORCED_ACCEPTED_CLIENT)
            if ticket.escrow_txn_id is not None or not payable or not ticket.is_paid_change:
                self.escrow.mark(intent["id"], IntentStatus.STALE)
                logger.warning("intent %s for %s %s is stale (ticket %s); refund out-of-band",
                               intent["id"], kind.value, ticket.id, ticket.status.value)
                return ticket

            now = self.clock()
            ticket.escrow_txn_id = txn_id or intent["id"]
            ticket.paid_at = now
            ticket.pending_intent_id = None
            paid = RevisionStatus.PAID if kind is TicketKind.REVISION else ChangeStatus.PAID
            ticket.transition(paid, resolved_at=now)
            if kind is TicketKind.CHANGE:
                self._apply_change(contract, ticket, now)

            finance = contract["finance"]
            finance["extra_fees"] += intent["amount"]
            finance["total"] += intent["amount"]
            self.escrow.mark(intent["id"], IntentStatus.CONFIRMED)
            self.store.save_ticket(ticket)
        logger.info("%s %s paid (%d) via %s", kind.value, ticket.id, intent["amount"], intent["id"])
        return ticket

    # --- Proof uploads ---

    def _unfinished_revisions(self, contract_id: str) -> list[RevisionTicket]:
        return [t for t in self.store.tickets_for(contract_id, TicketKind.REVISION) if t.awaiting_delivery()]

    def _require_revisions_delivered(self, contract_id: str):
        pending = self._unfinished_revisions(contract_id)
        if pending:
            raise PreconditionFailed(
                f"revision {pending[0].id} still needs its revision upload before final work"
            )

    def _require_within_grace(self, contract: dict, now: float):
        if now > contract["grace_ends_at"]:
            raise PreconditionFailed(
                f"Contract {contract['id']} is past its grace period; only cancellation proof is accepted"
            )

    def submit_upload(self, contract_id: str, actor_id: str, upload_kind, refs: list,
                      work_progress: int | None = None, milestone_idx: int | None = None,
                      cancel_ticket_id: str | None = None,
                      revision_ticket_id: str | None = None,
                      expected_version: int | None = None) -> ProofUpload:
        upload_kind = _parse(UploadKind, upload_kind, "upload kind")
        with self._mutate(contract_id, expected_version) as contract:
            self._require_role(contract, actor_id, Party.ARTIST)
            self._require_open(contract)
            self._require_no_resolution(contract_id)
            refs = _check_refs(refs, "refs")
            now = self.clock()
            if revision_ticket_id and upload_kind is not UploadKind.REVISION:
                raise ValidationFailed("only revision uploads take a revision_ticket_id")

            if upload_kind is UploadKind.REVISION:
                if cancel_ticket_id:
                    raise ValidationFailed("revision uploads cannot settle a cancellation")
                if not revision_ticket_id:
                    raise ValidationFailed("revision uploads need a revision_ticket_id")
                revision = self._load(contract_id, revision_ticket_id, TicketKind.REVISION)
                if not revision.awaiting_delivery():
                    raise PreconditionFailed(
                        f"revision {revision.id} is {revision.status.value}"
                        + (" and already delivered" if revision.delivered_upload_id else "; nothing to deliver")
                    )
                if milestone_idx is not None and milestone_idx != revision.milestone_idx:
                    raise ValidationFailed(f"revision {revision.id} is for milestone {revision.milestone_idx}")
                milestone_idx = revision.milestone_idx
                work_progress = 100 if work_progress is None else work_progress
                check_work_progress(work_progress)

            elif upload_kind is UploadKind.FINAL:
                if milestone_idx is not None:
                    raise ValidationFailed("final uploads do not take a milestone_idx")
                if cancel_ticket_id:
                    cancel = self._load(contract_id, cancel_ticket_id, TicketKind.CANCEL)
                    if cancel.status not in ACCEPTED_CANCEL or cancel.settled:
                        raise PreconditionFailed(f"cancel {cancel_ticket_id} is not an accepted, unsettled cancellation")
                    if work_progress is None:
                        if contract["flow"] != "milestone":
                            raise ValidationFailed("work_progress is required for cancellation proof")
                        work_progress = default_work_progress(contract)
                    check_work_progress(work_progress)
                    if work_progress >= 100:
                        raise ValidationFailed("cancellation proof must show work_progress below 100")
                else:
                    work_progress = 100 if work_progress is None else work_progress
                    if work_progress != 100:
                        raise ValidationFailed("final delivery must show work_progress 100")
                    for c in self.store.tickets_for(contract_id, TicketKind.CANCEL):
                        if c.is_active():
                            raise PreconditionFailed(f"cancellation {c.id} is in progress; deliver against it instead")
                    self._require_within_grace(contract, now)
                    open_milestones = [i for i, m in enumerate(contract["milestones"])
                                       if m["status"] != MilestoneStatus.ACCEPTED.value]
                    if open_milestones:
                        raise PreconditionFailed(
                            f"all milestones must be accepted before final delivery (open: {open_milestones})"
                        )
                    self._require_revisions_delivered(contract_id)
            else:
                if cancel_ticket_id:
                    raise ValidationFailed("milestone uploads cannot settle a cancellation")
                if contract["flow"] != "milestone":
                    raise ValidationFailed("milestone uploads need a milestone-flow contract")
                if not milestone_in_range(contract, milestone_idx):
                    raise ValidationFailed(f"milestone_idx {milestone_idx} out of range")
                if contract["milestones"][milestone_idx]["status"] == MilestoneStatus.ACCEPTED.value:
                    raise PreconditionFailed(f"milestone {milestone_idx} is already accepted")
                work_progress = 100 if work_progress is None else work_progress
                check_work_progress(work_progress)
                self._require_within_grace(contract, now)
                self._require_revisions_delivered(contract_id)

            upload = ProofUpload(
                id=self.store.new_ticket_id(),
                contract_id=contract_id,
                status=UploadStatus.SUBMITTED,
                created_at=now,
                expires_at=now + self.config.review_window,
                upload_kind=upload_kind,
                submitted_by_id=actor_id,
                refs=refs,
                work_progress=work_progress,
                milestone_idx=milestone_idx,
                cancel_ticket_id=cancel_ticket_id or None,
                revision_ticket_id=revision_ticket_id or None,
            )
            self._require_unique(upload)
            if upload_kind is UploadKind.MILESTONE:
                self._set_milestone(contract, milestone_idx, MilestoneStatus.SUBMITTED)
            self.store.insert_ticket(upload)
        logger.info("upload %s (%s) submitted on %s, work_progress %d",
                    upload.id, upload_kind.value, contract_id, work_progress)
        return upload

    def review_upload(self, contract_id: str, upload_id: str, actor_id: str, decision: str,
                      rejection_reason: str | None = None,
                      expected_version: int | None = None) -> ProofUpload:
        with self._mutate(contract_id, expected_version) as contract:
            upload = self._load(contract_id, upload_id, TicketKind.UPLOAD)
            self._require_role(contract, actor_id, Party.CLIENT)
            self._require_open(contract)
            self._require_no_resolution(contract_id)
            if upload.status is not UploadStatus.SUBMITTED:
                raise PreconditionFailed(f"upload {upload_id} is {upload.status.value}, not submitted")
            now = self.clock()
            self._require_window(upload, now)

            if decision == "accept":
                upload.transition(UploadStatus.ACCEPTED, resolved_at=now)
                self._accept_upload(contract, upload, now)
            elif decision == "reject":
                upload.rejection_reason = _check_reason(rejection_reason)
                self._reject_upload(contract, upload, now)
            else:
                raise ValidationFailed(f"decision must be 'accept' or 'reject', got {decision!r}")
            self.store.save_ticket(upload)
        self._dispatch(contract_id)
        return upload

    def _reject_upload(self, contract: dict, upload: ProofUpload, now: float):
        upload.transition(UploadStatus.REJECTED, resolved_at=now)
        if upload.upload_kind is UploadKind.MILESTONE:
            m = contract["milestones"][upload.milestone_idx]
            if m["status"] == MilestoneStatus.SUBMITTED.value:
                self._set_milestone(contract, upload.milestone_idx, MilestoneStatus.REJECTED)

    def _accept_upload(self, contract: dict, upload: ProofUpload, now: float):
        """Effects of an accepted (or force-accepted) upload. Caller moves its status."""
        if upload.upload_kind is UploadKind.MILESTONE:
            idx = upload.milestone_idx
            if contract["milestones"][idx]["status"] == MilestoneStatus.ACCEPTED.value:
                logger.info("milestone %d of %s already accepted; upload %s recorded only",
                            idx, contract["id"], upload.id)
                return
            self._set_milestone(contract, idx, MilestoneStatus.ACCEPTED)
            for other in self.store.tickets_for(contract["id"], TicketKind.UPLOAD):
                if (other.id != upload.id and other.upload_kind is UploadKind.MILESTONE
                        and other.milestone_idx == idx and other.status is UploadStatus.SUBMITTED):
                    other.rejection_reason = f"milestone {idx} already accepted"
                    other.transition(UploadStatus.REJECTED, resolved_at=now)
                    self.store.save_ticket(other)
            logger.info("milestone %d of %s accepted", idx, contract["id"])
            return
        if upload.upload_kind is UploadKind.REVISION:
            self._deliver_revision(contract, upload, now)
            return

        escrow = Escrow(contract)
        if upload.cancel_ticket_id:
            cancel = self._load(contract["id"], upload.cancel_ticket_id, TicketKind.CANCEL)
            if cancel.status not in ACCEPTED_CANCEL or cancel.settled:
                raise PreconditionFailed(f"cancel {cancel.id} is no longer an accepted, unsettled cancellation")
            split = escrow.cancellation(cancel.requested_by, upload.work_progress, now)
            cancel.settled = True
            cancel.upload_id = upload.id
            self.store.save_ticket(cancel)
            self._settle(contract, split, ContractStatus.CANCELLED, cancel.id, upload.id, now)
        else:
            split = escrow.completion(now)
            self._settle(contract, split, ContractStatus.COMPLETED, None, upload.id, now)

    def _deliver_revision(self, contract: dict, upload: ProofUpload, now: float):
        revision = self._load(contract["id"], upload.revision_ticket_id, TicketKind.REVISION)
        if revision.delivered_upload_id is not None:
            logger.info("revision %s already delivered by %s; upload %s recorded only",
                        revision.id, revision.delivered_upload_id, upload.id)
            return
        revision.delivered_upload_id = upload.id
        self.store.save_ticket(revision)
        logger.info("revision %s delivered by upload %s", revision.id, upload.id)

    def _settle(self, contract: dict, split: dict, status: ContractStatus,
                cancel_ticket_id: str | None, upload_id: str, now: float, keep=()):
        """Close the contract and queue its payouts inside the current unit of work."""
        self._set_contract_status(contract, status)
        contract["settlement"] = {
            **split,
            "cancel_ticket_id": cancel_ticket_id,
            "upload_id": upload_id,
            "settled_at": now,
        }
        for intent_type, payee, amount in Escrow(contract).payouts(split):
            self.escrow.record_payout(contract["id"], cancel_ticket_id or upload_id, intent_type, amount, payee)
        self._close_open_tickets(contract, now, keep={upload_id, cancel_ticket_id, *keep})
        logger.info("contract %s settled (%s): artist %d, client %d",
                    contract["id"], split["kind"], split["artist_amount"], split["client_amount"])

    def _close_open_tickets(self, contract: dict, now: float, keep):
        """Wind down tickets that can no longer progress on a closed contract."""
        for t in self.store.tickets_for(contract["id"]):
            if t.id in keep:
                continue
            if t.kind is TicketKind.CANCEL and t.is_active():
                # Includes agreed cancels that proof never settled
                t.rejection_reason = f"contract {contract['status']}"
                t.transition(CancelStatus.REJECTED, resolved_at=now)
            elif t.kind is TicketKind.REVISION and t.status is RevisionStatus.PENDING:
                t.transition(RevisionStatus.CANCELLED, resolved_at=now)
            elif t.kind is TicketKind.REVISION and t.status is RevisionStatus.DISPUTED:
                t.transition(RevisionStatus.REJECTED, resolved_at=now)
            elif t.kind is TicketKind.CHANGE and t.status in (ChangeStatus.PENDING_ARTIST, ChangeStatus.PENDING_CLIENT):
                t.transition(ChangeStatus.CANCELLED, resolved_at=now)
            elif t.kind is TicketKind.UPLOAD and t.status is UploadStatus.SUBMITTED:
                t.rejection_reason = f"contract {contract['status']}"
                t.transition(UploadStatus.REJECTED, resolved_at=now)
            elif t.kind is TicketKind.RESOLUTION and t.is_active():
                t.resolution_note = f"contract {contract['status']}"
                t.transition(ResolutionStatus.CANCELLED, resolved_at=now)
            else:
                continue
            self.store.save_ticket(t)

    # --- Resolution ---

    def _resolution_target(self, contract_id: str, target_type: TargetType, target_id: str):
        target = self._load(contract_id, target_id, TARGET_KINDS[target_type])
        if target.kind is TicketKind.UPLOAD and target.upload_kind is not TARGET_UPLOAD_KINDS[target_type]:
            raise ValidationFailed(f"upload {target_id} is a {target.upload_kind.value} upload, not {target_type.value}")
        return target

    def _get_resolution(self, resolution_id: str) -> ResolutionTicket:
        ticket = self.store.get_ticket(resolution_id, TicketKind.RESOLUTION)
        if ticket is None:
            raise NotFound(f"No resolution ticket {resolution_id}")
        return ticket

    def open_resolution(self, contract_id: str, actor_id: str, target_type, target_id: str,
                        description: str, proof_images: list,
                        expected_version: int | None = None) -> ResolutionTicket:
        target_type = _parse(TargetType, target_type, "target type")
        with self._mutate(contract_id, expected_version) as contract:
            role = self._role_of(contract, actor_id)
            self._require_open(contract)
            description = _check_reason(description, "description")
            proof_images = _check_refs(proof_images, "proof_images")
            self._resolution_target(contract_id, target_type, target_id)

            now = self.clock()
            ticket = ResolutionTicket(
                id=self.store.new_ticket_id(),
                contract_id=contract_id,
                status=ResolutionStatus.OPEN,
                created_at=now,
                submitted_by=role,
                submitted_by_id=actor_id,
                target_type=target_type,
                target_id=target_id,
                description=description,
                proof_images=proof_images,
                counterparty=role.other,
                counter_expires_at=now + self.config.counter_window,
            )
            self._require_unique(ticket)
            self.store.insert_ticket(ticket)
            self._set_contract_status(contract, ContractStatus.DISPUTED)
        logger.info("resolution %s opened on %s by %s against %s %s",
                    ticket.id, contract_id, role.value, target_type.value, target_id)
        return ticket

    def submit_counterproof(self, resolution_id: str, actor_id: str, counter_description: str,
                            counter_proof_images: list | None = None,
                            expected_version: int | None = None) -> ResolutionTicket:
        contract_id = self._get_resolution(resolution_id).contract_id
        with self._mutate(contract_id, expected_version) as contract:
            ticket = self._load(contract_id, resolution_id, TicketKind.RESOLUTION)
            role = self._role_of(contract, actor_id)
            if role is not ticket.counterparty:
                raise PreconditionFailed("Only the counterparty can submit counterproof", forbidden=True)
            if ticket.status is not ResolutionStatus.OPEN:
                raise PreconditionFailed(f"resolution {resolution_id} is {ticket.status.value}, not open")
            if ticket.counter_description is not None:
                raise PreconditionFailed("Counterproof already submitted")
            now = self.clock()
            self._require_window(ticket, now, ticket.counter_expires_at)

            ticket.counter_description = _check_text(counter_description, "counter description")
            ticket.counter_proof_images = _check_refs(
                counter_proof_images or [], "counter_proof_images",
                minimum=0, maximum=MAX_COUNTERPROOF_IMAGES,
            )
            ticket.transition(ResolutionStatus.AWAITING_REVIEW)
            self.store.save_ticket(ticket)
        return ticket

    def cancel_resolution(self, resolution_id: str, actor_id: str,
                          expected_version: int | None = None) -> ResolutionTicket:
        """Submitter withdraws the dispute. The disputed ticket is left as it is."""
        contract_id = self._get_resolution(resolution_id).contract_id
        with self._mutate(contract_id, expected_version) as contract:
            ticket = self._load(contract_id, resolution_id, TicketKind.RESOLUTION)
            if actor_id != ticket.submitted_by_id:
                raise PreconditionFailed("Only the submitter can cancel a resolution", forbidden=True)
            if not ticket.is_active():
                raise PreconditionFailed(f"resolution {resolution_id} is {ticket.status.value}")
            ticket.transition(ResolutionStatus.CANCELLED, resolved_at=self.clock())
            self.store.save_ticket(ticket)
            self._release_dispute(contract)
        return ticket

    def resolve(self, resolution_id: str, admin_id: str, decision, resolution_note: str,
                expected_version: int | None = None) -> ResolutionTicket:
        """Admin decision. Applied to the disputed ticket in the same unit of work."""
        decision = _parse(Decision, decision, "decision")
        contract_id = self._get_resolution(resolution_id).contract_id
        with self._mutate(contract_id, expected_version) as contract:
            ticket = self._load(contract_id, resolution_id, TicketKind.RESOLUTION)
            if not admin_id or admin_id in (contract["client_id"], contract["artist_id"]):
                raise PreconditionFailed("Only an admin can resolve a dispute", forbidden=True)
            if ticket.status is not ResolutionStatus.AWAITING_REVIEW:
                raise PreconditionFailed(f"resolution {resolution_id} is {ticket.status.value}, not awaiting review")

            now = self.clock()
            ticket.decision = decision
            ticket.resolution_note = _check_text(resolution_note, "resolution note")
            ticket.resolved_by = admin_id
            ticket.transition(ResolutionStatus.RESOLVED, resolved_at=now)
            self.store.save_ticket(ticket)
            self.apply_resolution(contract, ticket, now)
            self._release_dispute(contract)
        logger.info("resolution %s resolved: %s", resolution_id, decision.value)
        self._dispatch(contract_id)
        return ticket

    def _release_dispute(self, contract: dict):
        if contract["status"] != ContractStatus.DISPUTED.value:
            return
        if not self._active_resolutions(contract["id"]):
            self._set_contract_status(contract, ContractStatus.ACTIVE)

    def apply_resolution(self, contract: dict, resolution: ResolutionTicket, now: float):
        """Force the disputed ticket or upload to the outcome the decision favours."""
        target_type = resolution.target_type
        target = self._resolution_target(contract["id"], target_type, resolution.target_id)
        decision = resolution.decision

        if target_type is TargetType.CANCEL:
            self._apply_to_cancel(contract, target, decision, now)
        elif target_type is TargetType.REVISION:
            self._apply_to_revision(contract, target, decision, now)
        elif target_type is TargetType.CHANGE:
            self._apply_to_change(contract, target, decision, now)
        else:
            self._apply_to_upload(contract, target, decision, resolution, now)

    def _force(self, ticket, status, now) -> bool:
        if ticket.status is status:
            return False
        if not ticket.can_move_to(status):
            logger.info("%s %s left %s; ruling cannot move it to %s",
                        ticket.kind.value, ticket.id, ticket.status.value, status.value)
            return False
        ticket.transition(status, resolved_at=now)
        return True

    def _apply_to_cancel(self, contract, ticket: CancellationTicket, decision: Decision, now):
        if ticket.settled:
            logger.info("cancel %s already settled; ruling recorded only", ticket.id)
            return
        if decision.favored is ticket.requested_by:
            self._force(ticket, CancelStatus.FORCED_ACCEPTED, now)
        elif self._force(ticket, CancelStatus.REJECTED, now):
            # Proof waiting on an overturned cancellation has nothing left to settle
            for u in self.store.tickets_for(contract["id"], TicketKind.UPLOAD):
                if u.cancel_ticket_id == ticket.id and u.status is UploadStatus.SUBMITTED:
                    u.rejection_reason = "cancellation overturned by resolution"
                    u.transition(UploadStatus.REJECTED, resolved_at=now)
                    self.store.save_ticket(u)
        self.store.save_ticket(ticket)

    def _apply_to_revision(self, contract, ticket: RevisionTicket, decision: Decision, now):
        if decision is Decision.FAVOR_CLIENT:
            was_accepted = ticket.status in ACCEPTED_REVISION
            if self._force(ticket, RevisionStatus.FORCED_ACCEPTED, now) and not was_accepted:
                count_revision(contract, ticket.milestone_idx)
        else:
            self._force(ticket, RevisionStatus.REJECTED, now)
        self.store.save_ticket(ticket)

    def _apply_to_change(self, contract, ticket: ChangeTicket, decision: Decision, now):
        ticket.escalated = False
        if decision is Decision.FAVOR_CLIENT:
            if ticket.status in (ChangeStatus.PENDING_ARTIST, ChangeStatus.REJECTED_ARTIST, ChangeStatus.REJECTED_CLIENT):
                ticket.fee_waived = True
                self._force(ticket, ChangeStatus.FORCED_ACCEPTED_ARTIST, now)
                self._apply_change(contract, ticket, now)
            elif ticket.status in (ChangeStatus.PENDING_CLIENT, ChangeStatus.FORCED_ACCEPTED_CLIENT):
                ticket.fee_waived = True
                ticket.pending_intent_id = None
                self._force(ticket, ChangeStatus.FORCED_ACCEPTED_CLIENT, now)
                self._apply_change(contract, ticket, now)
            else:
                logger.info("change %s is %s; ruling recorded only", ticket.id, ticket.status.value)
        else:
            if ticket.status is ChangeStatus.PENDING_CLIENT and ticket.is_paid_change:
                self._force(ticket, ChangeStatus.FORCED_ACCEPTED_CLIENT, now)
            elif ticket.is_active() and ticket.status is not ChangeStatus.FORCED_ACCEPTED_CLIENT:
                self._force(ticket, ChangeStatus.CANCELLED, now)
            else:
                logger.info("change %s is %s; ruling recorded only", ticket.id, ticket.status.value)
        self.store.save_ticket(ticket)

    def _apply_to_upload(self, contract, upload: ProofUpload, decision: Decision,
                         resolution: ResolutionTicket, now):
        if decision is Decision.FAVOR_CLIENT:
            if upload.status is UploadStatus.SUBMITTED:
                upload.rejection_reason = resolution.resolution_note
                self._reject_upload(contract, upload, now)
            else:
                logger.info("upload %s is %s; ruling recorded only", upload.id, upload.status.value)
        else:
            if upload.cancel_ticket_id:
                cancel = self._load(contract["id"], upload.cancel_ticket_id, TicketKind.CANCEL)
                if cancel.status not in ACCEPTED_CANCEL or cancel.settled:
                    logger.info("upload %s: cancel %s is %s; ruling recorded only",
                                upload.id, cancel.id, cancel.status.value)
                    return
            if self._force(upload, UploadStatus.FORCED_ACCEPTED, now):
                self.store.save_ticket(upload)
                self._accept_upload(contract, upload, now)
        self.store.save_ticket(upload)

    # --- Expiry ---

    def expire_ticket(self, ticket_id: str):
        """Apply the no-response outcome to one overdue ticket.

        Raises SchedulerSkip if the ticket is not (or no longer) due, so
        overlapping sweeps process each deadline exactly once.
        """
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound(f"No ticket {ticket_id}")
        contract_id = ticket.contract_id

        with self._mutate(contract_id) as contract:
            ticket = self.store.get_ticket(ticket_id)
            now = self.clock()
            due = ticket.due_at()
            if due is None or due > now:
                raise SchedulerSkip(f"{ticket.kind.value} {ticket_id} is not due")
            if ContractStatus(contract["status"]) not in OPEN_CONTRACT_STATES:
                raise SchedulerSkip(f"contract {contract_id} is {contract['status']}")
            if ticket.kind is not TicketKind.RESOLUTION and self._disputed_by(ticket):
                raise SchedulerSkip(f"{ticket.kind.value} {ticket_id} is under dispute")

            if ticket.kind is TicketKind.CANCEL:
                self._expire_cancel(ticket, now)
            elif ticket.kind is TicketKind.REVISION:
                self._expire_revision(contract, ticket, now)
            elif ticket.kind is TicketKind.CHANGE:
                self._expire_change(contract, ticket, now)
            elif ticket.kind is TicketKind.RESOLUTION:
                ticket.transition(ResolutionStatus.AWAITING_REVIEW)
            else:
                if self._active_resolutions(contract_id):
                    raise SchedulerSkip(f"upload {ticket_id} waits for the open dispute")
                ticket.transition(UploadStatus.FORCED_ACCEPTED, resolved_at=now)
                self.store.save_ticket(ticket)
                self._accept_upload(contract, ticket, now)
            self.store.save_ticket(ticket)
        self._dispatch(contract_id)
        return ticket

    def _expire_cancel(self, ticket: CancellationTicket, now):
        policy = self.config.cancel_expiry
        if policy is ExpiryPolicy.AUTO_ACCEPT:
            ticket.transition(CancelStatus.FORCED_ACCEPTED, resolved_at=now)
        elif policy is ExpiryPolicy.AUTO_REJECT:
            ticket.transition(CancelStatus.REJECTED, resolved_at=now)
        else:
            ticket.transition(CancelStatus.DISPUTED)

    def _expire_revision(self, contract, ticket: RevisionTicket, now):
        policy = self.config.revision_expiry
        if policy is ExpiryPolicy.AUTO_ACCEPT:
            ticket.transition(RevisionStatus.FORCED_ACCEPTED, resolved_at=now)
            count_revision(contract, ticket.milestone_idx)
        elif policy is ExpiryPolicy.AUTO_REJECT:
            ticket.transition(RevisionStatus.REJECTED, resolved_at=now)
        else:
            ticket.transition(RevisionStatus.DISPUTED)

    def _expire_change(self, contract, ticket: ChangeTicket, now):
        policy = self.config.change_expiry
        if policy is ExpiryPolicy.ADMIN_REVIEW:
            ticket.escalated = True
            logger.info("change %s escalated for admin review", ticket.id)
            return

        if ticket.status is ChangeStatus.PENDING_ARTIST:
            if policy is ExpiryPolicy.AUTO_ACCEPT:
                ticket.transition(ChangeStatus.FORCED_ACCEPTED_ARTIST, resolved_at=now)
                self._apply_change(contract, ticket, now)
            else:
                ticket.transition(ChangeStatus.REJECTED_ARTIST, resolved_at=now)
        else:
            if policy is ExpiryPolicy.AUTO_ACCEPT:
                # Client still owes the fee; the change set lands on payment
                ticket.transition(ChangeStatus.FORCED_ACCEPTED_CLIENT, resolved_at=now)
            else:
                ticket.transition(ChangeStatus.REJECTED_CLIENT, resolved_at=now)
