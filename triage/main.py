"""FastAPI application wiring for the inbox triage service.

- Configures logging, optional CORS for the agent inbox UI, Prometheus
  metrics and rate limiting.
- Binds the caller's tenant from the bearer token for every API request.
- Mounts the AI agent and conversation routers and owns the background
  runner used for analytics writes.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .core.rate_limit import limiter
from .core.tenant_middleware import TenantContextMiddleware
from .routers import agents, conversations
from .tasks import SideEffectRunner

load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.side_effects = SideEffectRunner.from_env()
    logger.info("Triage service %s started", __version__)
    try:
        yield
    finally:
        app.state.side_effects.shutdown()


app = FastAPI(title="Inbox Triage", version=__version__, lifespan=lifespan)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(TenantContextMiddleware)
inbox_ui_origins = os.getenv("INBOX_UI_ORIGINS")
if inbox_ui_origins:
    origins = [o.strip() for o in inbox_ui_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(agents.router)
app.include_router(conversations.router)

Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
