"""
Main FastAPI Application for the construction finance engine.
Serves the v1 REST API and runs the periodic ledger sweep.
"""
import logging

from fastapi import FastAPI

from buildledger import __version__
from buildledger.models import init_db
from buildledger.config import get_config
from buildledger.domain.events import get_recalculation_dispatcher
from buildledger.api.v1 import api_router as v1_router

logger = logging.getLogger(__name__)


# Initialize FastAPI app
app = FastAPI(
    title="BuildLedger",
    description="Budget model, capital ledger and purchase-order settlement for construction projects",
    version=__version__,
)

app.include_router(v1_router)


# Initialize database and background sweep on startup
@app.on_event("startup")
async def startup_event():
    init_db()
    config = get_config()
    if config.sweep_enabled:
        get_recalculation_dispatcher().start_sweep(config.sweep_interval_minutes)
    logger.info(f"BuildLedger {__version__} started (config {config.version})")


@app.on_event("shutdown")
async def shutdown_event():
    get_recalculation_dispatcher().shutdown(wait=False)


@app.get("/health")
def health():
    return {"status": "ok", "version": __version__}
