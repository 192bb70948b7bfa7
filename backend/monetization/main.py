import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from monetization.api.v1.router import api_router
from monetization.config import settings
from monetization.database import async_session, engine
from monetization.errors import (
    EarningNotFound,
    EligibilityError,
    GatewayTimeout,
    InsufficientBalance,
    InvalidTransition,
    LedgerError,
    LedgerInvariantError,
    PayoutMethodNotFound,
    ValidationError,
    WithdrawalNotFound,
)
from monetization.services.context import build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting Creator Monetization API [%s]", settings.APP_ENV)
    app.state.services = build_services(settings, async_session)
    yield
    await app.state.services.aclose()
    await engine.dispose()


app = FastAPI(
    title="Creator Monetization API",
    description="Creator earnings and mobile money withdrawals",
    version="1.0.0",
    docs_url="/docs" if settings.APP_DEBUG else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_ERROR = [
    (EligibilityError, 400),
    (InsufficientBalance, 400),
    (InvalidTransition, 400),
    (ValidationError, 400),
    (WithdrawalNotFound, 404),
    (EarningNotFound, 404),
    (PayoutMethodNotFound, 404),
    (GatewayTimeout, 504),
]


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if isinstance(exc, LedgerInvariantError):
        logger.critical("[Ledger] Invariant violation on %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "error": {"code": "INTERNAL_ERROR", "message": "Internal ledger error"}},
        )

    status_code = next((status for cls, status in STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    error = {"code": exc.code, "message": exc.message}
    if isinstance(exc, EligibilityError):
        error["reasons"] = exc.reasons
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error})


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": "1.0.0"}

app.include_router(api_router, prefix="/api/v1")
