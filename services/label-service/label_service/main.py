"""FastAPI application wiring for the label service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.deps import install_error_handlers
from .api.routes import router as v1_router
from .config import get_settings
from .domain.batches import BatchService
from .domain.labels import LabelOrchestrator
from .domain.ledger import LedgerService
from .domain.service import AccountService
from .domain.transfers import CreditTransferEngine
from .providers.shippo import ShippoClient, ShippoConfig
from .repository import AccountRepository, LedgerRepository, ShipmentRepository, apply_schema
from .security.login_throttle import build_login_throttle

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, provider client, services) for the app lifecycle."""
    pool = ConnectionPool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        open=False,
    )
    pool.open()
    if settings.db_auto_migrate:
        apply_schema(pool)

    accounts = AccountRepository(pool)
    ledger = LedgerRepository(pool)
    shipments = ShipmentRepository(pool)
    provider = ShippoClient(ShippoConfig.from_settings(settings))
    engine = CreditTransferEngine(accounts, ledger, max_amount=settings.max_credit_per_call)
    orchestrator = LabelOrchestrator(accounts, ledger, shipments, provider)

    app.state.pool = pool
    app.state.transfer_engine = engine
    app.state.account_service = AccountService(accounts, ledger, engine, build_login_throttle(settings))
    app.state.ledger_service = LedgerService(accounts, ledger)
    app.state.label_orchestrator = orchestrator
    app.state.batch_service = BatchService(accounts, shipments, orchestrator, max_rows=settings.max_batch_rows)
    logger.info("%s %s started", settings.app_name, settings.version)
    try:
        yield
    finally:
        provider.close()
        # Blocks until the pool workers have stopped.
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for local frontend dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)

install_error_handlers(app)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


app.include_router(v1_router)


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
