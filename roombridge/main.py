"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from roombridge.api import appservice, connections, instances, user_links, webhooks
from roombridge.config import settings
from roombridge.models.base import SessionLocal, init_db
from roombridge.scheduler import scheduler
from roombridge.security import BasicAuthMiddleware
from roombridge.services.comment_ledger import CommentLedger
from roombridge.services.connection_manager import ConnectionManager
from roombridge.services.delivery import MatrixDeliverySink
from roombridge.services.identity import DatabaseIdentityResolver

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_bridge() -> ConnectionManager:
    """Wire the ledger, identity resolver and delivery sink into a connection manager"""
    sink = MatrixDeliverySink(
        settings.homeserver_url, settings.as_token, bot_user_id=settings.bot_user_id
    )
    ledger = CommentLedger(
        max_entries=settings.ledger_max_entries,
        min_retention_seconds=settings.ledger_min_retention_seconds,
    )
    identities = DatabaseIdentityResolver(
        SessionLocal,
        sink,
        server_name=settings.server_name,
        virtual_user_prefix=settings.virtual_user_prefix,
    )
    virtual_prefix = f"@{settings.virtual_user_prefix}"
    return ConnectionManager(
        SessionLocal,
        ledger=ledger,
        identities=identities,
        sink=sink,
        grace_period=settings.comment_grace_period_ms / 1000.0,
        ignored_sender=lambda user_id: user_id == settings.bot_user_id
        or user_id.startswith(virtual_prefix),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting GitLab Room Bridge")
    init_db()
    bridge = build_bridge()
    bridge.load_from_db()
    app.state.bridge = bridge
    scheduler.start()
    scheduler.schedule_ledger_pruning(bridge.ledger, settings.ledger_prune_interval_minutes)
    yield
    # Shutdown
    logger.info("Stopping GitLab Room Bridge")
    scheduler.stop()
    await bridge.sink.aclose()


app = FastAPI(
    title="GitLab Room Bridge",
    description="Bridge GitLab issues and chat rooms",
    version="1.0.0",
    lifespan=lifespan,
)

# Optional built-in auth for the admin API (recommended if exposed beyond private networks)
if settings.auth_enabled:
    if not settings.auth_username or not settings.auth_password:
        raise RuntimeError("AUTH_ENABLED=true requires AUTH_USERNAME and AUTH_PASSWORD to be set")
    app.add_middleware(
        BasicAuthMiddleware,
        username=settings.auth_username,
        password=settings.auth_password,
        allow_paths={"/health"},
        allow_prefixes=("/api/webhooks/", "/_matrix/", "/transactions/"),
    )

# Include API routers
app.include_router(webhooks.router)
app.include_router(appservice.router)
app.include_router(connections.router)
app.include_router(instances.router)
app.include_router(user_links.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "GitLab Room Bridge"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "roombridge.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
