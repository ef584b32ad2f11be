# backend/scopegate/main.py
from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, FastAPI, Response

from .core import config as core_config
from .database import init_db
from .errors import register_error_handlers
from .middleware.permission_enforcer import PermissionEnforcer
from .monitoring.prometheus_metrics import prometheus_metrics
from .ratelimit.redis_backend import close_rate_limit_redis_client
from .routes.v1 import health as health_v1
from .routes.v1 import permissions as permissions_v1
from .routes.v1 import rate_limits as rate_limits_v1
from .services.permission_service import PermissionService

API_TITLE = "scopegate"
API_VERSION = "1.0.0"

# Configure logging
logging.basicConfig(
    level=getattr(logging, core_config.settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown."""
    settings = core_config.settings
    logger.info(f"{API_TITLE} starting up...")
    logger.info(
        f"Environment: {settings.environment}, "
        f"failure policy: {settings.authz_failure_policy.value}"
    )
    if core_config.is_running_tests():
        logger.info("Running under pytest (test mode active)")

    init_db()

    yield

    logger.info(f"{API_TITLE} shutting down...")
    await close_rate_limit_redis_client()


def create_app(service: Optional[PermissionService] = None) -> FastAPI:
    app = FastAPI(title=API_TITLE, version=API_VERSION, lifespan=app_lifespan)
    register_error_handlers(app)

    permission_service = service or PermissionService()
    app.state.permission_service = permission_service
    app.state.permission_enforcer = PermissionEnforcer(permission_service)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(permissions_v1.router, prefix="/permissions")
    api_v1.include_router(rate_limits_v1.router, prefix="/rate-limits")
    app.include_router(api_v1)
    app.include_router(health_v1.router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(
            content=prometheus_metrics.get_metrics(),
            media_type=prometheus_metrics.get_content_type(),
        )

    return app


app = create_app()
