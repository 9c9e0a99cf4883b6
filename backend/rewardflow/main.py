from __future__ import annotations
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from rewardflow.config import settings
from rewardflow.db import build_engine
from rewardflow.errors import DomainError
from rewardflow.logging_setup import configure_logging
from rewardflow.services.reward_provider import build_reward_provider
from rewardflow.routes.system import router as system_router
from rewardflow.routes.submissions import router as submissions_router
from rewardflow.routes.reviews import router as reviews_router
from rewardflow.routes.rewards import router as rewards_router
from rewardflow.routes.budgets import router as budgets_router
from rewardflow.routes.challenges import router as challenges_router
from rewardflow.routes.webhooks import router as webhooks_router
import structlog

configure_logging()
log = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    engine, sessionmaker = build_engine(settings.database_url)
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.reward_provider = build_reward_provider(settings)
    log.info(
        "startup",
        env=settings.environment,
        version=settings.app_version,
        git_sha=settings.git_sha,
        reward_provider=app.state.reward_provider.name,
    )
    yield
    # Shutdown
    await app.state.reward_provider.aclose()
    await engine.dispose()
    log.info("shutdown")

app = FastAPI(
    title=f"{settings.app_display_name} API",
    version=settings.app_version,
    lifespan=lifespan,
    description=f"{settings.app_display_name} API for challenge submission review and reward issuance"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "dev" else settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(system_router)
app.include_router(submissions_router)
app.include_router(reviews_router)
app.include_router(rewards_router)
app.include_router(budgets_router)
app.include_router(challenges_router)
app.include_router(webhooks_router)

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    log.info("request.domain_error", code=exc.code, status=exc.status_code, path=request.url.path, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    structlog.contextvars.bind_contextvars(request_id=rid)
    response: Response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    structlog.contextvars.clear_contextvars()
    return response
