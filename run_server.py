#!/usr/bin/env python3
"""Commission engine server with the background expiry sweeper.

Configuration comes from COMMISSION_* env vars (see config.py). Without
COMMISSION_GATEWAY_URL the server runs against the in-memory stub gateway.
"""

import os, sys, logging
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from config import EngineConfig
from server.app import create_app
from server.store import CommissionStore
from server.escrow import EscrowManager
from server.gateway import HttpGateway, StubGateway
from server.engine import TicketEngine

config = EngineConfig.from_env()

logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("commission")


# --- Main ---
if config.db_path != ":memory:" and os.path.dirname(config.db_path):
    os.makedirs(os.path.dirname(config.db_path), exist_ok=True)

store = CommissionStore(config.db_path)
if config.gateway_url:
    gateway = HttpGateway(config.gateway_url, config.gateway_key)
else:
    logger.warning("COMMISSION_GATEWAY_URL not set; using stub gateway (no real money moves)")
    gateway = StubGateway()
escrow_mgr = EscrowManager(store, gateway)
engine = TicketEngine(store, escrow_mgr, config)

app = create_app(engine=engine)

# Start expiry sweeper in background
app.state.sweeper.start()
logger.info("expiry sweeper every %ss (cancel=%s, revision=%s, change=%s)",
            config.sweep_interval, config.cancel_expiry.value,
            config.revision_expiry.value, config.change_expiry.value)
logger.info("listening on :%d", config.port)

uvicorn.run(app, host="0.0.0.0", port=config.port)
