"""API client for the commission engine.

Thin async HTTP client with a pluggable transport interface.
Default transport: JSON over HTTP (httpx).

Mutating calls carry the contract's lock_version as expected_version and are
retried on a retryable conflict (someone else wrote the contract first).
"""

import json
from abc import ABC, abstractmethod

import httpx


class Transport(ABC):
    """Override this to talk to the engine some other way (in-process, queue, ...)."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to the engine's FastAPI service over HTTP."""

    def __init__(self, base_url: str = "http://localhost:8000", api_key: str = "", admin_key: str = ""):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.admin_key = admin_key

    def _headers(self) -> dict:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        if self.admin_key:
            h["X-Admin-Key"] = self.admin_key
        return h

    async def post(self, path: str, data: dict) -> dict:
        body = json.dumps(data)
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.base_url}{path}",
                content=body,
                headers=self._headers(),
                timeout=30.0,
            )
            if resp.status_code == 409:
                return {
                    "status": 409,
                    "retryable": resp.headers.get("X-Retryable") == "true",
                    **resp.json(),
                }
            resp.raise_for_status()
            return resp.json()

    async def get(self, path: str, params: dict | None = None) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers(),
                timeout=30.0,
            )
            resp.raise_for_status()
            return resp.json()


class CommissionClient:
    """High-level client for the commission engine."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000",
                 actor_id: str = "", admin_key: str = ""):
        self.actor_id = actor_id
        if transport:
            self.transport = transport
        else:
            self.transport = HTTPTransport(base_url, admin_key=admin_key)

    async def _versioned_action(self, contract_id: str, path: str, payload: dict,
                                max_retries: int = 3) -> dict:
        """POST with the current lock_version, re-reading and retrying on a retryable 409.

        Non-retryable 409s (wrong status, window closed) are returned as-is.
        """
        for attempt in range(max_retries):
            view = await self.get_contract(contract_id)
            body = {**payload, "expected_version": view["contract"]["lock_version"]}
            resp = await self.transport.post(path, body)
            if resp.get("status") == 409 and resp.get("retryable"):
                continue
            return resp
        raise RuntimeError(f"Contract conflict after {max_retries} retries on {path}")

    def _actor(self, actor_id: str) -> str:
        return actor_id or self.actor_id

    # --- Contracts ---

    async def create_contract(self, client_id: str, artist_id: str, total: int, **terms) -> str:
        """Create a contract. Returns contract_id."""
        resp = await self.transport.post("/contracts", {
            "client_id": client_id,
            "artist_id": artist_id,
            "total": total,
            **terms,
        })
        return resp["contract_id"]

    async def list_contracts(self, status: str | None = None, limit: int = 50) -> list[dict]:
        params = {"limit": limit}
        if status:
            params["status"] = status
        resp = await self.transport.get("/contracts", params)
        return resp["contracts"]

    async def get_contract(self, contract_id: str) -> dict:
        """Contract plus tickets grouped by kind and the escrow ledger."""
        return await self.transport.get(f"/contracts/{contract_id}")

    async def estimate_cancellation(self, contract_id: str, requested_by: str,
                                    work_progress: int | None = None) -> dict:
        params = {"requested_by": requested_by}
        if work_progress is not None:
            params["work_progress"] = work_progress
        return await self.transport.get(f"/contracts/{contract_id}/estimate", params)

    # --- Cancellation ---

    async def open_cancellation(self, contract_id: str, reason: str, actor_id: str = "") -> dict:
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/cancel", {
            "actor_id": self._actor(actor_id), "reason": reason,
        })

    async def respond_cancellation(self, contract_id: str, ticket_id: str, decision: str,
                                   rejection_reason: str | None = None, actor_id: str = "") -> dict:
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/cancel/{ticket_id}/respond", {
            "actor_id": self._actor(actor_id), "decision": decision, "rejection_reason": rejection_reason,
        })

    # --- Revision ---

    async def open_revision(self, contract_id: str, description: str,
                            milestone_idx: int | None = None, actor_id: str = "") -> dict:
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/revision", {
            "actor_id": self._actor(actor_id), "description": description, "milestone_idx": milestone_idx,
        })

    async def respond_revision(self, contract_id: str, ticket_id: str, decision: str,
                               rejection_reason: str | None = None, actor_id: str = "") -> dict:
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/revision/{ticket_id}/respond", {
            "actor_id": self._actor(actor_id), "decision": decision, "rejection_reason": rejection_reason,
        })

    async def pay_revision(self, contract_id: str, ticket_id: str, actor_id: str = "") -> dict:
        """Open a charge intent. Returns {"ticket", "intent_id"}."""
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/revision/{ticket_id}/pay", {
            "actor_id": self._actor(actor_id),
        })

    # --- Change ---

    async def open_change(self, contract_id: str, reason: str, change_set: dict, actor_id: str = "") -> dict:
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/change", {
            "actor_id": self._actor(actor_id), "reason": reason, "change_set": change_set,
        })

    async def respond_change(self, contract_id: str, ticket_id: str, response: str,
                             paid_fee: int | None = None, rejection_reason: str | None = None,
                             actor_id: str = "") -> dict:
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/change/{ticket_id}/respond", {
            "actor_id": self._actor(actor_id), "response": response,
            "paid_fee": paid_fee, "rejection_reason": rejection_reason,
        })

    async def pay_change(self, contract_id: str, ticket_id: str, actor_id: str = "") -> dict:
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/change/{ticket_id}/pay", {
            "actor_id": self._actor(actor_id),
        })

    # --- Proof uploads ---

    async def submit_upload(self, contract_id: str, upload_kind: str, refs: list[str],
                            work_progress: int | None = None, milestone_idx: int | None = None,
                            cancel_ticket_id: str | None = None, revision_ticket_id: str | None = None,
                            actor_id: str = "") -> dict:
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/uploads", {
            "actor_id": self._actor(actor_id), "upload_kind": upload_kind, "refs": refs,
            "work_progress": work_progress, "milestone_idx": milestone_idx,
            "cancel_ticket_id": cancel_ticket_id, "revision_ticket_id": revision_ticket_id,
        })

    async def review_upload(self, contract_id: str, upload_id: str, decision: str,
                            rejection_reason: str | None = None, actor_id: str = "") -> dict:
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/uploads/{upload_id}/review", {
            "actor_id": self._actor(actor_id), "decision": decision, "rejection_reason": rejection_reason,
        })

    # --- Resolution ---

    async def open_resolution(self, contract_id: str, target_type: str, target_id: str,
                              description: str, proof_images: list[str], actor_id: str = "") -> dict:
        return await self._versioned_action(contract_id, f"/contracts/{contract_id}/resolution", {
            "actor_id": self._actor(actor_id), "target_type": target_type, "target_id": target_id,
            "description": description, "proof_images": proof_images,
        })

    async def submit_counterproof(self, resolution_id: str, counter_description: str,
                                  counter_proof_images: list[str] | None = None, actor_id: str = "") -> dict:
        return await self.transport.post(f"/resolution/{resolution_id}/counterproof", {
            "actor_id": self._actor(actor_id),
            "counter_description": counter_description,
            "counter_proof_images": counter_proof_images or [],
        })

    async def cancel_resolution(self, resolution_id: str, actor_id: str = "") -> dict:
        return await self.transport.post(f"/resolution/{resolution_id}/cancel", {
            "actor_id": self._actor(actor_id),
        })

    async def resolve(self, resolution_id: str, decision: str, resolution_note: str, admin_id: str = "") -> dict:
        """Admin ruling. The transport must carry the admin key if the server requires one."""
        return await self.transport.post(f"/resolution/{resolution_id}/resolve", {
            "admin_id": self._actor(admin_id), "decision": decision, "resolution_note": resolution_note,
        })

    # --- Escrow ---

    async def confirm_charge(self, intent_id: str, txn_id: str | None = None) -> dict:
        """Forward a gateway confirmation (normally the gateway calls this itself)."""
        return await self.transport.post("/escrow/confirm", {"intent_id": intent_id, "txn_id": txn_id})

    async def get_escrow(self, contract_id: str) -> list[dict]:
        resp = await self.transport.get(f"/contracts/{contract_id}/escrow")
        return resp["intents"]

    async def sweep(self) -> dict:
        return await self.transport.post("/sweep", {})
