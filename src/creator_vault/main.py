from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis
from redis.exceptions import RedisError

from creator_vault.config import settings
from creator_vault.api.connect import router as connect_router
from creator_vault.api.creator import router as creator_router
from creator_vault.api.diagnostics import router as diagnostics_router
from creator_vault.api.membership import router as membership_router
from creator_vault.api.product_boxes import router as product_boxes_router
from creator_vault.api.purchases import router as purchases_router
from creator_vault.api.webhooks import callback_router as webhook_callback_router
from creator_vault.api.webhooks import router as webhooks_router
from creator_vault.database import create_engine, create_session_factory
from creator_vault.integrations.firebase_app import close_firebase_app, init_firebase_app
from creator_vault.integrations.media_storage import MediaStorage, create_r2_client
from creator_vault.integrations.stripe_connect import StripeConnectService
from creator_vault.middleware.rate_limit import RateLimitMiddleware
from creator_vault.middleware.security import SecurityHeadersMiddleware
from creator_vault.services.auth_service import IdentityVerifier

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        (
            structlog.dev.ConsoleRenderer()
            if settings.APP_ENV == "development"
            else structlog.processors.JSONRenderer()
        ),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(0),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: every provider client is built here and handed out via app.state
    log.info("starting_up", env=settings.APP_ENV)

    engine = create_engine(settings.DATABASE_URL)
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)

    redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        await redis.ping()
        log.info("redis_connected", url=settings.REDIS_URL)
    except (RedisError, OSError) as e:
        log.warning("redis_connection_failed", error=str(e))
    app.state.redis = redis

    firebase_app = init_firebase_app()
    app.state.identity_verifier = IdentityVerifier(firebase_app)
    app.state.stripe_connect = StripeConnectService(api_key=settings.STRIPE_SECRET_KEY)
    app.state.media_storage = MediaStorage(create_r2_client())

    yield

    # Shutdown
    log.info("shutting_down")
    await redis.aclose()
    close_firebase_app(firebase_app)
    await engine.dispose()


app = FastAPI(
    title="Creator Vault",
    lifespan=lifespan,
)

# CORS middleware for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "development" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Security headers (outermost -- runs last on request, first on response)
app.add_middleware(SecurityHeadersMiddleware)

# Rate limiting (runs after security headers are already queued)
app.add_middleware(RateLimitMiddleware)


app.include_router(membership_router)
app.include_router(purchases_router)
app.include_router(product_boxes_router)
app.include_router(connect_router)
app.include_router(creator_router)
app.include_router(diagnostics_router)
app.include_router(webhooks_router)
app.include_router(webhook_callback_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
