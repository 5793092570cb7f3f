"""Escrow gateway backends for the commission engine.

The engine never moves money itself. It asks a gateway to open a charge
intent (client pays a fee into escrow) or to release held funds to a party,
and later receives a confirmation callback for charges.

HttpGateway talks to a payment service over plain JSON/HTTP.
StubGateway records everything in memory for tests and local runs.
"""

import os
import logging
import requests
from abc import ABC, abstractmethod

from protocol import GatewayFailure

logger = logging.getLogger(__name__)


class EscrowGateway(ABC):
    """Abstract escrow gateway. Platform injects one of these into EscrowManager."""

    @abstractmethod
    def charge_intent(self, amount: int, payer: str, reference: str) -> str:
        """Ask the payer to pay `amount` minor units into escrow.
        Returns the gateway's intent id. Confirmation arrives later via webhook.
        """
        ...

    @abstractmethod
    def release(self, amount: int, payee: str, reference: str) -> str:
        """Pay `amount` minor units out of escrow to payee.
        Returns the gateway's transfer reference.
        """
        ...


class HttpGateway(EscrowGateway):
    """Payment-service backend over JSON/HTTP.

    Expects POST {base}/charges and POST {base}/releases, each answering
    {"id": "..."}. Auth via bearer key (COMMISSION_GATEWAY_KEY).
    """

    def __init__(self, base_url: str | None = None, api_key: str | None = None, timeout: float = 30):
        self.base_url = (base_url or os.environ.get("COMMISSION_GATEWAY_URL", "")).rstrip("/")
        if not self.base_url:
            raise ValueError("Gateway URL required: set COMMISSION_GATEWAY_URL or pass base_url=")
        self.api_key = api_key if api_key is not None else os.environ.get("COMMISSION_GATEWAY_KEY", "")
        self.timeout = timeout

    def _post(self, path: str, payload: dict) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = requests.post(f"{self.base_url}{path}", json=payload, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            result = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("gateway %s failed: %s", path, e)
            raise GatewayFailure(f"Gateway call {path} failed: {e}") from e
        if "error" in result:
            raise GatewayFailure(f"Gateway error: {result['error']}")
        if not result.get("id"):
            raise GatewayFailure(f"Gateway call {path} returned no id")
        return result

    def charge_intent(self, amount: int, payer: str, reference: str) -> str:
        return self._post("/charges", {"amount": amount, "payer": payer, "reference": reference})["id"]

    def release(self, amount: int, payee: str, reference: str) -> str:
        return self._post("/releases", {"amount": amount, "payee": payee, "reference": reference})["id"]


class StubGateway(EscrowGateway):
    """In-memory backend for testing. Succeeds unless told to fail."""

    def __init__(self):
        self.charges: list[dict] = []   # log of charge intents for test assertions
        self.releases: list[dict] = []  # log of payouts for test assertions
        self.fail_next = 0              # number of upcoming calls that raise GatewayFailure

    def _maybe_fail(self, what: str):
        if self.fail_next > 0:
            self.fail_next -= 1
            raise GatewayFailure(f"stub gateway refused {what}")

    def charge_intent(self, amount: int, payer: str, reference: str) -> str:
        self._maybe_fail("charge")
        intent_id = f"stub_charge_{len(self.charges) + 1}"
        self.charges.append({"id": intent_id, "amount": amount, "payer": payer, "reference": reference})
        return intent_id

    def release(self, amount: int, payee: str, reference: str) -> str:
        self._maybe_fail("release")
        ref = f"stub_release_{len(self.releases) + 1}"
        self.releases.append({"id": ref, "amount": amount, "payee": payee, "reference": reference})
        return ref
