"""Health and metrics endpoints.

``GET /health`` requires HTTP Basic credentials and answers 200 for
ok/warning and 503 for error. ``GET /metrics`` is the Prometheus
exposition and is unauthenticated.
"""

from __future__ import annotations

import secrets

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from src.kaspi_amo.config import Settings, get_settings
from src.kaspi_amo.core.monitoring import get_metrics_response
from src.kaspi_amo.sync.health import HealthReporter
from src.kaspi_amo.sync.schemas import HealthState

router = APIRouter(tags=["health"])

security = HTTPBasic(auto_error=False)


def require_basic_auth(
    credentials: HTTPBasicCredentials | None = Depends(security),
    settings: Settings = Depends(get_settings),
) -> str:
    """Check Basic credentials against HEALTH_BASIC_USER / HEALTH_BASIC_PASS."""
    if credentials is not None:
        user_ok = secrets.compare_digest(
            credentials.username.encode(), settings.HEALTH_BASIC_USER.encode()
        )
        pass_ok = secrets.compare_digest(
            credentials.password.encode(), settings.HEALTH_BASIC_PASS.encode()
        )
        if user_ok and pass_ok:
            return credentials.username
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": 'Basic realm="Health Check"'},
    )


def get_reporter(request: Request) -> HealthReporter:
    return request.app.state.health_reporter


@router.get("/health")
async def health_check(
    _: str = Depends(require_basic_auth),
    reporter: HealthReporter = Depends(get_reporter),
):
    report = await reporter.get_status()
    return JSONResponse(
        status_code=(
            status.HTTP_503_SERVICE_UNAVAILABLE
            if report.status == HealthState.ERROR
            else status.HTTP_200_OK
        ),
        content=report.model_dump(mode="json"),
    )


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return get_metrics_response()
