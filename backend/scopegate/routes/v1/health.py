# backend/scopegate/routes/v1/health.py
from fastapi import APIRouter

from ...core import config as core_config
from ...schemas.permission import HealthResponse

router = APIRouter(tags=["health-v1"])


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        environment=core_config.settings.environment,
        failure_policy=core_config.settings.authz_failure_policy.value,
    )
