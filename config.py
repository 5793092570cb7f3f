"""Runtime configuration for the commission engine.

Every knob reads a COMMISSION_* environment variable and falls back to the
defaults in protocol.py.
"""

import os
from dataclasses import dataclass

from protocol import (
    DEFAULT_CANCEL_WINDOW, DEFAULT_REVISION_WINDOW, DEFAULT_CHANGE_WINDOW,
    DEFAULT_COUNTER_WINDOW, DEFAULT_REVIEW_WINDOW, DEFAULT_SWEEP_INTERVAL,
    DEFAULT_CANCEL_EXPIRY, DEFAULT_REVISION_EXPIRY, DEFAULT_CHANGE_EXPIRY,
    ExpiryPolicy,
)


@dataclass
class EngineConfig:
    db_path: str = ":memory:"
    port: int = 8000
    cancel_window: float = DEFAULT_CANCEL_WINDOW
    revision_window: float = DEFAULT_REVISION_WINDOW
    change_window: float = DEFAULT_CHANGE_WINDOW
    counter_window: float = DEFAULT_COUNTER_WINDOW
    review_window: float = DEFAULT_REVIEW_WINDOW
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    cancel_expiry: ExpiryPolicy = DEFAULT_CANCEL_EXPIRY
    revision_expiry: ExpiryPolicy = DEFAULT_REVISION_EXPIRY
    change_expiry: ExpiryPolicy = DEFAULT_CHANGE_EXPIRY
    gateway_url: str = ""
    gateway_key: str = ""
    # Shared secret for the admin-only resolve endpoint; empty disables the check
    admin_key: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env=None) -> "EngineConfig":
        env = os.environ if env is None else env

        def seconds(name, default):
            return float(env.get(name, default))

        def policy(name, default):
            raw = env.get(name, "")
            if not raw:
                return default
            try:
                return ExpiryPolicy(raw)
            except ValueError:
                raise ValueError(
                    f"{name} must be one of {[p.value for p in ExpiryPolicy]}, got '{raw}'"
                )

        return cls(
            db_path=env.get("COMMISSION_DB", ":memory:"),
            port=int(env.get("COMMISSION_PORT", "8000")),
            cancel_window=seconds("COMMISSION_CANCEL_WINDOW", DEFAULT_CANCEL_WINDOW),
            revision_window=seconds("COMMISSION_REVISION_WINDOW", DEFAULT_REVISION_WINDOW),
            change_window=seconds("COMMISSION_CHANGE_WINDOW", DEFAULT_CHANGE_WINDOW),
            counter_window=seconds("COMMISSION_COUNTER_WINDOW", DEFAULT_COUNTER_WINDOW),
            review_window=seconds("COMMISSION_REVIEW_WINDOW", DEFAULT_REVIEW_WINDOW),
            sweep_interval=seconds("COMMISSION_SWEEP_INTERVAL", DEFAULT_SWEEP_INTERVAL),
            cancel_expiry=policy("COMMISSION_CANCEL_EXPIRY", DEFAULT_CANCEL_EXPIRY),
            revision_expiry=policy("COMMISSION_REVISION_EXPIRY", DEFAULT_REVISION_EXPIRY),
            change_expiry=policy("COMMISSION_CHANGE_EXPIRY", DEFAULT_CHANGE_EXPIRY),
            gateway_url=env.get("COMMISSION_GATEWAY_URL", ""),
            gateway_key=env.get("COMMISSION_GATEWAY_KEY", ""),
            admin_key=env.get("COMMISSION_ADMIN_KEY", ""),
            log_level=env.get("COMMISSION_LOG_LEVEL", "INFO").upper(),
        )
