import logging
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from core.config import settings
from core.database import create_db_and_tables
from core.exceptions import (
    AccessDenied,
    ChangeRequestLimitReached,
    CheckoutRejected,
    ExternalSyncFailed,
    InfrastructureError,
    InsufficientHours,
    InvalidStateTransition,
    PlanConflict,
)
from routes.access import router as access_router
from routes.maintenance_plans import router as maintenance_plans_router
from routes.hours import router as hours_router
from routes.admin import router as admin_router
from routes.webhooks import router as webhooks_router

logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)
logger = logging.getLogger(__name__)


# =========================================
# 🏁 Lifespan (DB initialization)
# =========================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    logger.info("✅ Database tables created on startup.")
    yield
    logger.info("✅ Application shutting down.")

# =========================================
#  ✅ FastAPI App
# =========================================
app = FastAPI(
    lifespan=lifespan,
    title="StudioDesk Backend",
    docs_url=None if settings.IS_PRODUCTION else "/docs",
    redoc_url=None if settings.IS_PRODUCTION else "/redoc",
)

allowed_origins = [
    settings.FRONTEND_URL,
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =========================================
# 🚦 Domain errors → HTTP
# =========================================
@app.exception_handler(AccessDenied)
async def access_denied_handler(request: Request, exc: AccessDenied):
    # Missing and forbidden look the same from outside
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Resource not found"})


@app.exception_handler(InvalidStateTransition)
async def invalid_transition_handler(request: Request, exc: InvalidStateTransition):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": exc.message, "current": exc.current, "target": exc.target},
    )


@app.exception_handler(PlanConflict)
async def plan_conflict_handler(request: Request, exc: PlanConflict):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": exc.message, "project_id": exc.project_id},
    )


@app.exception_handler(InsufficientHours)
async def insufficient_hours_handler(request: Request, exc: InsufficientHours):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": exc.message, "requested": exc.requested, "available": exc.available},
    )


@app.exception_handler(ChangeRequestLimitReached)
async def change_request_limit_handler(request: Request, exc: ChangeRequestLimitReached):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": exc.message, "included": exc.included},
    )


@app.exception_handler(CheckoutRejected)
async def checkout_rejected_handler(request: Request, exc: CheckoutRejected):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": exc.message})


@app.exception_handler(ExternalSyncFailed)
async def external_sync_handler(request: Request, exc: ExternalSyncFailed):
    logger.warning("⚠️ Payment processor error on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": "Payment processor unavailable", "transient": exc.transient},
    )


@app.exception_handler(InfrastructureError)
async def infrastructure_handler(request: Request, exc: InfrastructureError):
    logger.error("❌ Infrastructure failure on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "A database error occurred. Nothing was changed."},
    )


# =========================================
# 📦 Routers
# =========================================
app.include_router(access_router)
app.include_router(maintenance_plans_router)
app.include_router(hours_router)
app.include_router(admin_router)
app.include_router(webhooks_router)


# =========================================
# 🩺 Health Check
# =========================================
@app.get("/health")
def health_check():
    return {"status": "ok", "message": "Backend is running"}


@app.get("/")
def read_root():
    return {"message": "Welcome to StudioDesk Backend!"}
