"""Health check endpoints.

- /health: per-component detail (circuit breakers, storage root)
- /liveness: process is up
- /readiness: storage is writable and no dependency circuit is open
"""

import time
from datetime import datetime, timezone
from typing import Dict, List, Literal

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from kapture import __version__
from kapture.api.schemas import ComponentHealth, HealthResponse, LivenessResponse, ReadinessResponse
from kapture.clients.storage import LocalObjectStorage
from kapture.core.circuit_breaker import CircuitBreakerRegistry, CircuitState

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])

# Track application start time for uptime calculation
_start_time: float = time.time()


def reset_start_time() -> None:
    """Reset the start time (for testing)."""
    global _start_time
    _start_time = time.time()


# Dependency placeholders (to be configured in main app)
async def get_breaker_registry() -> CircuitBreakerRegistry:
    """Get circuit breaker registry instance."""
    raise NotImplementedError("Circuit breaker registry dependency not configured")


async def get_storage() -> LocalObjectStorage:
    """Get object storage instance."""
    raise NotImplementedError("Storage dependency not configured")


def _check_circuits(registry: CircuitBreakerRegistry) -> Dict[str, ComponentHealth]:
    components: Dict[str, ComponentHealth] = {}
    for name, snapshot in registry.snapshots().items():
        if snapshot.state is CircuitState.CLOSED:
            health: Literal["healthy", "degraded", "unhealthy"] = "healthy"
        elif snapshot.state is CircuitState.HALF_OPEN:
            health = "degraded"
        else:
            health = "unhealthy"
        components[name] = ComponentHealth(status=health, details=snapshot.to_dict())
    return components


def _check_storage(storage: LocalObjectStorage) -> ComponentHealth:
    if storage.is_writable():
        return ComponentHealth(status="healthy", details={"root_dir": str(storage.root)})
    return ComponentHealth(
        status="unhealthy",
        details={"error": "Storage root is not writable", "root_dir": str(storage.root)},
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        200: {"description": "All components healthy or degraded"},
        503: {"description": "One or more components unhealthy"},
    },
)
async def health_check(
    registry: CircuitBreakerRegistry = Depends(get_breaker_registry),  # noqa: B008
    storage: LocalObjectStorage = Depends(get_storage),  # noqa: B008
) -> JSONResponse:
    """
    Detailed health check endpoint.

    Reports the circuit state of every external dependency and whether the
    storage root accepts writes. Returns HTTP 503 if any component is
    unhealthy.
    """
    components = _check_circuits(registry)
    components["storage_root"] = _check_storage(storage)

    states = {c.status for c in components.values()}
    if "unhealthy" in states:
        overall: Literal["healthy", "degraded", "unhealthy"] = "unhealthy"
    elif "degraded" in states:
        overall = "degraded"
    else:
        overall = "healthy"

    response = HealthResponse(
        status=overall,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        uptime_seconds=round(time.time() - _start_time, 2),
        components=components,
    )

    logger.info(
        "health_check_completed",
        status=overall,
        components={k: v.status for k, v in components.items()},
    )

    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE if overall == "unhealthy" else status.HTTP_200_OK
    )
    return JSONResponse(content=response.model_dump(), status_code=status_code)


@router.get("/liveness", response_model=LivenessResponse)
async def liveness_check() -> LivenessResponse:
    """Liveness probe endpoint. Returns HTTP 200 if the process is alive."""
    return LivenessResponse(status="alive")


@router.get(
    "/readiness",
    response_model=ReadinessResponse,
    responses={
        200: {"description": "Service is ready to accept traffic"},
        503: {"description": "Service is not ready"},
    },
)
async def readiness_check(
    registry: CircuitBreakerRegistry = Depends(get_breaker_registry),  # noqa: B008
    storage: LocalObjectStorage = Depends(get_storage),  # noqa: B008
) -> JSONResponse:
    """
    Readiness probe endpoint.

    Not ready while the storage root is unwritable or a dependency circuit
    is open.
    """
    issues: List[str] = []

    if not storage.is_writable():
        issues.append("Storage not writable")

    for name, snapshot in registry.snapshots().items():
        if snapshot.state is CircuitState.OPEN:
            issues.append(f"{name} circuit open")

    if issues:
        response = ReadinessResponse(status="not_ready", ready=False, message="; ".join(issues))
        return JSONResponse(
            content=response.model_dump(),
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return JSONResponse(
        content=ReadinessResponse(status="ready", ready=True).model_dump(),
        status_code=status.HTTP_200_OK,
    )
