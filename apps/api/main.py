from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from apps.api.db import get_sessionmaker, init_db
from apps.api.routes.connections import router as connections_router
from apps.api.routes.health import router as health_router
from apps.connections.gateway import UazapiGateway
from apps.connections.manager import ConnectionManager
from apps.connections.settings import get_settings
from apps.connections.store import ConnectionStore
from apps.observability import get_logger
from apps.shared.config import ConfigError, validate_config
from apps.shared.secrets import get_secret

logger = get_logger(__name__)

_CORS_ORIGINS = [
    o.strip() for o in (get_secret("CORS_ALLOWED_ORIGINS") or "").split(",") if o.strip()
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        validate_config()
    except ConfigError as e:
        logger.error("startup_config_invalid", key=e.key, error=str(e))
        raise
    settings = get_settings()
    logger.info(
        "config_loaded",
        gateway=settings.UAZAPI_BASE_URL,
        poll_interval=settings.POLL_INTERVAL_SECONDS,
        deadline=settings.PAIRING_DEADLINE_SECONDS,
        webhook=bool(settings.WEBHOOK_URL),
    )
    init_db()

    gateway = UazapiGateway.from_settings(settings)
    app.state.manager = ConnectionManager(ConnectionStore(get_sessionmaker()), gateway, settings=settings)

    yield

    # Shutdown: roll back live pairing attempts, then close the provider client
    await app.state.manager.shutdown()
    await gateway.aclose()
    app.state.manager = None


app = FastAPI(title="wa-connection-manager API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ORIGINS if _CORS_ORIGINS else [],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "X-API-Key", "Content-Type"],
)

app.include_router(health_router)
app.include_router(connections_router)
