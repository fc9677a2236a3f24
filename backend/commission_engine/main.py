"""
Commission Engine API

FastAPI app hosting the admin settlement routes and the Inngest serve
endpoint. The lifespan builds the settlement services once and starts the
recurring settlement scheduler.
"""

import logging
from contextlib import asynccontextmanager

import inngest.fast_api
from fastapi import FastAPI

from commission_engine.config import LOG_LEVEL, SCHEDULER_ENABLED
from commission_engine.deps import build_store
from commission_engine.gateways import GatewayRegistry
from commission_engine.inngest.client import inngest_client
from commission_engine.inngest.functions import all_functions
from commission_engine.routers.admin import router as admin_router
from commission_engine.scheduler import SettlementScheduler
from commission_engine.services.affiliate_service import AffiliateService
from commission_engine.services.settlement_pipeline import SettlementPipeline
from commission_engine.services.withdrawal_service import WithdrawalService

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = build_store()
    pipeline = SettlementPipeline(store, GatewayRegistry())
    scheduler = SettlementScheduler(pipeline)

    app.state.pipeline = pipeline
    app.state.scheduler = scheduler
    app.state.affiliate_service = AffiliateService(store)
    app.state.withdrawal_service = WithdrawalService(store)

    if SCHEDULER_ENABLED:
        scheduler.start()
    else:
        logger.info("Settlement scheduler disabled (SCHEDULER_ENABLED=false)")

    try:
        yield
    finally:
        scheduler.stop()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Commission Engine",
        description="Affiliate commission settlement: hold period, refund checks and payouts",
        lifespan=lifespan,
    )
    app.include_router(admin_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    inngest.fast_api.serve(app, inngest_client, all_functions)
    return app


app = create_app()
