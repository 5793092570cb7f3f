# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the commission engine (FastAPI).

Endpoints for the contract amendment lifecycle: create a contract, open and
answer cancellation / revision / change tickets, pay fees, submit and review
proof uploads, and escalate any of them to an admin-reviewed resolution.

Actor identity arrives in the request body; authentication happens in front
of this service. The admin resolve endpoint can additionally require a shared
key (COMMISSION_ADMIN_KEY) in the X-Admin-Key header.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from typing import Optional

from config import EngineConfig
from protocol import EngineError, Party
from server.store import CommissionStore
from server.escrow import EscrowManager
from server.engine import TicketEngine
from server.scheduler import ExpirySweeper

logger = logging.getLogger(__name__)


# --- Request/Response models ---

class CreateContractRequest(BaseModel):
    client_id: str
    artist_id: str
    total: int
    deadline_at: Optional[float] = None
    grace_days: Optional[int] = None
    milestones: Optional[list[dict]] = None
    cancellation_fee: Optional[dict] = None
    late_penalty_percent: Optional[int] = None
    revision_policy: Optional[dict] = None
    changeable: Optional[list[str]] = None
    description: str = ""
    reference_images: list[str] = []
    general_options: dict = {}
    subject_options: dict = {}
    currency: Optional[str] = None

class OpenCancelRequest(BaseModel):
    actor_id: str
    reason: str
    expected_version: Optional[int] = None

class RespondRequest(BaseModel):
    actor_id: str
    decision: str  # "accept" or "reject"
    rejection_reason: Optional[str] = None
    expected_version: Optional[int] = None

class OpenRevisionRequest(BaseModel):
    actor_id: str
    description: str
    milestone_idx: Optional[int] = None
    expected_version: Optional[int] = None

class OpenChangeRequest(BaseModel):
    actor_id: str
    reason: str
    change_set: dict
    expected_version: Optional[int] = None

class ChangeResponseRequest(BaseModel):
    actor_id: str
    response: str  # "accept", "propose" or "reject"
    paid_fee: Optional[int] = None
    rejection_reason: Optional[str] = None
    expected_version: Optional[int] = None

class PayRequest(BaseModel):
    actor_id: str
    expected_version: Optional[int] = None

class UploadRequest(BaseModel):
    actor_id: str
    upload_kind: str  # "final", "milestone" or "revision"
    refs: list[str]
    work_progress: Optional[int] = None
    milestone_idx: Optional[int] = None
    cancel_ticket_id: Optional[str] = None
    revision_ticket_id: Optional[str] = None
    expected_version: Optional[int] = None

class OpenResolutionRequest(BaseModel):
    actor_id: str
    target_type: str
    target_id: str
    description: str
    proof_images: list[str]
    expected_version: Optional[int] = None

class CounterproofRequest(BaseModel):
    actor_id: str
    counter_description: str
    counter_proof_images: list[str] = []

class CancelResolutionRequest(BaseModel):
    actor_id: str

class ResolveRequest(BaseModel):
    admin_id: str
    decision: str  # "favorClient" or "favorArtist"
    resolution_note: str

class ChargeConfirmation(BaseModel):
    intent_id: str
    txn_id: Optional[str] = None


def _ticket_response(ticket) -> dict:
    return {"ticket": ticket.to_dict()}


def create_app(
    engine: TicketEngine | None = None,
    store: CommissionStore | None = None,
    escrow_mgr: EscrowManager | None = None,
    config: EngineConfig | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Anything not passed in is built from config (or EngineConfig defaults):
    an in-memory store and a stub escrow gateway.
    """

    app = FastAPI(title="Commission Engine", version="1.0")

    _config = config or (engine.config if engine else EngineConfig())
    if engine is None:
        store = store or CommissionStore(_config.db_path)
        escrow_mgr = escrow_mgr or EscrowManager(store)
        engine = TicketEngine(store, escrow_mgr, _config)
    _engine = engine
    _sweeper = ExpirySweeper(_engine, _config.sweep_interval)

    # Expose for testing and for run_server's background thread
    app.state.engine = _engine
    app.state.store = _engine.store
    app.state.escrow = _engine.escrow
    app.state.sweeper = _sweeper
    app.state.config = _config

    # --- Helpers ---

    def _call(fn, *args, **kwargs):
        """Run an engine operation, mapping engine errors onto HTTP statuses."""
        try:
            return fn(*args, **kwargs)
        except EngineError as e:
            if e.retryable:
                logger.info("%s: retryable %s: %s", fn.__name__, type(e).__name__, e.message)
                raise HTTPException(e.status_code, e.message, headers={"X-Retryable": "true"})
            raise HTTPException(e.status_code, e.message)

    def _check_admin(request: Request):
        if _config.admin_key and request.headers.get("X-Admin-Key", "") != _config.admin_key:
            raise HTTPException(403, "Admin key required")

    # --- Contracts ---

    @app.post("/contracts")
    async def create_contract(req: CreateContractRequest):
        terms = req.model_dump(exclude_none=True, exclude={"client_id", "artist_id", "total"})
        contract = _call(_engine.create_contract, req.client_id, req.artist_id, req.total, **terms)
        return {"contract_id": contract["id"], "contract": contract}

    @app.get("/contracts")
    async def list_contracts(status: Optional[str] = None, limit: int = 50):
        limit = min(limit, 200)  # cap to prevent DB dump
        return {"contracts": _engine.store.list_contracts(status, limit)}

    @app.get("/contracts/{contract_id}")
    async def get_contract(contract_id: str):
        """Contract, its tickets grouped by kind, and its escrow ledger."""
        return _call(_engine.contract_view, contract_id)

    @app.get("/contracts/{contract_id}/estimate")
    async def estimate_cancellation(contract_id: str, requested_by: str = Party.CLIENT.value,
                                    work_progress: Optional[int] = None):
        return _call(_engine.estimate_cancellation, contract_id, requested_by, work_progress)

    # --- Cancellation ---

    @app.post("/contracts/{contract_id}/cancel")
    async def open_cancellation(contract_id: str, req: OpenCancelRequest):
        ticket = _call(_engine.open_cancellation, contract_id, req.actor_id, req.reason,
                       expected_version=req.expected_version)
        return _ticket_response(ticket)

    @app.post("/contracts/{contract_id}/cancel/{ticket_id}/respond")
    async def respond_cancellation(contract_id: str, ticket_id: str, req: RespondRequest):
        ticket = _call(_engine.respond_cancellation, contract_id, ticket_id, req.actor_id,
                       req.decision, req.rejection_reason, expected_version=req.expected_version)
        return _ticket_response(ticket)

    # --- Revision ---

    @app.post("/contracts/{contract_id}/revision")
    async def open_revision(contract_id: str, req: OpenRevisionRequest):
        ticket = _call(_engine.open_revision, contract_id, req.actor_id, req.description,
                       req.milestone_idx, expected_version=req.expected_version)
        return _ticket_response(ticket)

    @app.post("/contracts/{contract_id}/revision/{ticket_id}/respond")
    async def respond_revision(contract_id: str, ticket_id: str, req: RespondRequest):
        ticket = _call(_engine.respond_revision, contract_id, ticket_id, req.actor_id,
                       req.decision, req.rejection_reason, expected_version=req.expected_version)
        return _ticket_response(ticket)

    @app.post("/contracts/{contract_id}/revision/{ticket_id}/pay")
    async def pay_revision(contract_id: str, ticket_id: str, req: PayRequest):
        """Open a charge intent for the revision fee. Paid once the gateway confirms."""
        ticket = _call(_engine.pay_revision, contract_id, ticket_id, req.actor_id,
                       expected_version=req.expected_version)
        return {"ticket": ticket.to_dict(), "intent_id": ticket.pending_intent_id}

    # --- Change ---

    @app.post("/contracts/{contract_id}/change")
    async def open_change(contract_id: str, req: OpenChangeRequest):
        ticket = _call(_engine.open_change, contract_id, req.actor_id, req.reason, req.change_set,
                       expected_version=req.expected_version)
        return _ticket_response(ticket)

    @app.post("/contracts/{contract_id}/change/{ticket_id}/respond")
    async def respond_change(contract_id: str, ticket_id: str, req: ChangeResponseRequest):
        ticket = _call(_engine.respond_change, contract_id, ticket_id, req.actor_id, req.response,
                       req.paid_fee, req.rejection_reason, expected_version=req.expected_version)
        return _ticket_response(ticket)

    @app.post("/contracts/{contract_id}/change/{ticket_id}/pay")
    async def pay_change(contract_id: str, ticket_id: str, req: PayRequest):
        ticket = _call(_engine.pay_change, contract_id, ticket_id, req.actor_id,
                       expected_version=req.expected_version)
        return {"ticket": ticket.to_dict(), "intent_id": ticket.pending_intent_id}

    # --- Proof uploads ---

    @app.post("/contracts/{contract_id}/uploads")
    async def submit_upload(contract_id: str, req: UploadRequest):
        upload = _call(_engine.submit_upload, contract_id, req.actor_id, req.upload_kind, req.refs,
                       work_progress=req.work_progress, milestone_idx=req.milestone_idx,
                       cancel_ticket_id=req.cancel_ticket_id, revision_ticket_id=req.revision_ticket_id,
                       expected_version=req.expected_version)
        return _ticket_response(upload)

    @app.post("/contracts/{contract_id}/uploads/{upload_id}/review")
    async def review_upload(contract_id: str, upload_id: str, req: RespondRequest):
        """Client accepts or rejects proof. Accepting final proof settles the contract."""
        upload = _call(_engine.review_upload, contract_id, upload_id, req.actor_id,
                       req.decision, req.rejection_reason, expected_version=req.expected_version)
        return {"ticket": upload.to_dict(), "contract": _engine.get_contract(contract_id)}

    # --- Resolution ---

    @app.post("/contracts/{contract_id}/resolution")
    async def open_resolution(contract_id: str, req: OpenResolutionRequest):
        ticket = _call(_engine.open_resolution, contract_id, req.actor_id, req.target_type,
                       req.target_id, req.description, req.proof_images,
                       expected_version=req.expected_version)
        return _ticket_response(ticket)

    @app.post("/resolution/{resolution_id}/counterproof")
    async def submit_counterproof(resolution_id: str, req: CounterproofRequest):
        ticket = _call(_engine.submit_counterproof, resolution_id, req.actor_id,
                       req.counter_description, req.counter_proof_images)
        return _ticket_response(ticket)

    @app.post("/resolution/{resolution_id}/cancel")
    async def cancel_resolution(resolution_id: str, req: CancelResolutionRequest):
        ticket = _call(_engine.cancel_resolution, resolution_id, req.actor_id)
        return _ticket_response(ticket)

    @app.post("/resolution/{resolution_id}/resolve")
    async def resolve(resolution_id: str, req: ResolveRequest, request: Request):
        """Admin decision. Applies the outcome to the disputed ticket."""
        _check_admin(request)
        ticket = _call(_engine.resolve, resolution_id, req.admin_id, req.decision, req.resolution_note)
        return {"ticket": ticket.to_dict(), "contract": _engine.get_contract(ticket.contract_id)}

    # --- Escrow & sweeps ---

    @app.post("/escrow/confirm")
    async def confirm_charge(req: ChargeConfirmation):
        """Gateway webhook: a charge intent or payout was confirmed."""
        ticket = _call(_engine.on_charge_confirmed, req.intent_id, req.txn_id)
        return {"intent": _engine.escrow.get_intent(req.intent_id),
                "ticket": ticket.to_dict() if ticket else None}

    @app.get("/contracts/{contract_id}/escrow")
    async def get_escrow(contract_id: str):
        _call(_engine.get_contract, contract_id)
        return {"intents": _engine.escrow.list_intents(contract_id)}

    @app.post("/sweep")
    async def sweep(request: Request):
        """Run one expiry sweep now instead of waiting for the background loop."""
        _check_admin(request)
        return _sweeper.sweep_once()

    @app.get("/platform_info")
    async def platform_info():
        """Advertised windows and expiry policies."""
        return {
            "windows": {
                "cancel": _config.cancel_window,
                "revision": _config.revision_window,
                "change": _config.change_window,
                "counter": _config.counter_window,
                "review": _config.review_window,
            },
            "expiry": {
                "cancel": _config.cancel_expiry.value,
                "revision": _config.revision_expiry.value,
                "change": _config.change_expiry.value,
            },
            "sweep_interval": _config.sweep_interval,
        }

    return app
