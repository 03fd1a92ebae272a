from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import create_store

# ENV
from config.env import CORS_ALLOWED_ORIGINS, ENV, LOG_LEVEL, RUN_WORKERS, validate_production_env

# ROUTES
from routes.cod import router as cod_router
from routes.payments import router as payments_router
from routes.payouts import router as payouts_router
from routes.vendor_accounts import router as accounts_router
from routes.webhooks import router as webhook_router

from settlement import Settlement, build_settlement, create_gateway
from utils.errors import GatewayError, SettlementError

# WORKERS
from workers.hold_release_worker import hold_release_worker
from workers.payout_retry_worker import payout_retry_worker
from workers.scheduled_payout_worker import scheduled_payout_worker

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(settlement: Optional[Settlement] = None, *, run_workers: bool = RUN_WORKERS) -> FastAPI:
    app = FastAPI(
        title="Marketplace Settlement API",
        version="1.0.0",
        docs_url=None if ENV == "production" else "/docs",
        redoc_url=None if ENV == "production" else "/redoc",
        openapi_url=None if ENV == "production" else "/openapi.json",
    )
    app.state.settlement = settlement
    app.state.worker_tasks = []

    # -----------------------------
    # CORS
    # -----------------------------

    allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
    if not allowed_origins:
        allowed_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------
    # ERRORS
    # -----------------------------

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": exc.__class__.__name__},
        )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        logger.warning("GATEWAY_ERROR path=%s code=%s", request.url.path, exc.code)
        return JSONResponse(
            status_code=502,
            content={"detail": exc.description, "error": "GatewayError", "gateway": exc.to_detail()},
        )

    # -----------------------------
    # ROUTES
    # -----------------------------

    app.include_router(webhook_router)
    app.include_router(accounts_router)
    app.include_router(payouts_router)
    app.include_router(payments_router)
    app.include_router(cod_router)

    # -----------------------------
    # HEALTH CHECKS
    # -----------------------------

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/health/store")
    async def health_store(request: Request):
        await request.app.state.settlement.store.ping()
        return {"status": "store connected"}

    # -----------------------------
    # STARTUP WORKERS (ONE PLACE ONLY)
    # -----------------------------

    @app.on_event("startup")
    async def start_settlement():
        if app.state.settlement is None:
            validate_production_env()
            store = await create_store()
            app.state.settlement = build_settlement(store, create_gateway())
            logger.info("SETTLEMENT_READY env=%s", ENV)

        if run_workers:
            app.state.worker_tasks = [
                asyncio.create_task(payout_retry_worker(app.state.settlement)),
                asyncio.create_task(hold_release_worker(app.state.settlement)),
                asyncio.create_task(scheduled_payout_worker(app.state.settlement)),
            ]

    @app.on_event("shutdown")
    async def stop_workers():
        for task in app.state.worker_tasks:
            task.cancel()

    return app


app = create_app()
