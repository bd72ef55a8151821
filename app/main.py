import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.context import build_context
from app.core.global_error_handler import register_global_exception_handlers
from app.modules.subscription.api import router as subscription_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service context on startup and close database connections on shutdown."""
    if getattr(app.state, "context", None) is None:
        app.state.context = build_context(settings)
    yield
    await app.state.context.close()
    logger.info("Database engine closed.")


app = FastAPI(
    title=settings.APP_NAME,
    description="Subscription billing core: plan changes, proration and PayPlus payment reconciliation.",
    version="1.0.0",
    lifespan=lifespan,
)

# Register global exception handlers
register_global_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(subscription_router, prefix="/api")


@app.get("/api/")
async def root():
    return {"message": f"{settings.APP_NAME} API is running"}


@app.get("/api/health")
async def health_check():
    return {"status": "ok"}
