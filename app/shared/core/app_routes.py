from typing import Annotated, Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import Gauge
from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.db.session import get_db

SYSTEM_HEALTH = Gauge(
    "admin_trust_system_health",
    "System health status (1=healthy, 0.5=degraded, 0=unhealthy)",
)

_REQUIRED_API_PREFIXES = {
    "/api/v1/admin-auth",
    "/api/v1/admin/approvals",
}


def _validate_router_registry(routes: list[tuple[Any, str]]) -> None:
    seen_prefixes: set[str] = set()
    for router, prefix in routes:
        route_list = getattr(router, "routes", None)
        if not isinstance(route_list, list) or not route_list:
            raise RuntimeError("Router registry includes an empty router definition")
        normalized_prefix = prefix.strip()
        if not normalized_prefix.startswith("/"):
            raise RuntimeError(f"Router prefix must start with '/': {prefix!r}")
        if normalized_prefix in seen_prefixes:
            raise RuntimeError(f"Duplicate router prefix registered: {normalized_prefix}")
        seen_prefixes.add(normalized_prefix)

    missing_prefixes = sorted(_REQUIRED_API_PREFIXES - seen_prefixes)
    if missing_prefixes:
        raise RuntimeError(
            "Router registry is missing required API prefixes: "
            + ", ".join(missing_prefixes)
        )

    unexpected_prefixes = sorted(seen_prefixes - _REQUIRED_API_PREFIXES)
    if unexpected_prefixes:
        raise RuntimeError(
            "Router registry includes unexpected API prefixes: "
            + ", ".join(unexpected_prefixes)
        )


def register_lifecycle_routes(
    app: FastAPI,
    *,
    app_name: str,
    version: str,
) -> None:
    """Register lifecycle and health endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        """Root endpoint for basic reachability."""
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Fast liveness check without dependencies."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def health_check(
        request: Request, db: Annotated[AsyncSession, Depends(get_db)]
    ) -> Any:
        """
        Readiness check for load balancers.
        Checks the database, the session TTL store and the cleanup scheduler.
        """
        from app.shared.core.health import HealthService

        service = HealthService(
            db,
            ttl_store=getattr(request.app.state, "ttl_store", None),
            scheduler=getattr(request.app.state, "approval_cleanup_scheduler", None),
        )
        health = await service.check_all()

        status_map = {"healthy": 1.0, "degraded": 0.5, "unhealthy": 0.0}
        SYSTEM_HEALTH.set(status_map.get(health["status"], 0.0))

        if health["status"] == "unhealthy":
            return JSONResponse(status_code=503, content=health)

        return health


def register_api_routers(app: FastAPI) -> None:
    """Register API route modules in one place to keep app entrypoint focused."""
    from app.modules.approvals.api.v1.approvals import router as approvals_router
    from app.modules.sessions.api.v1.sessions import router as sessions_router

    routes: list[tuple[Any, str]] = [
        (sessions_router, "/api/v1/admin-auth"),
        (approvals_router, "/api/v1/admin/approvals"),
    ]

    _validate_router_registry(routes)

    for router, prefix in routes:
        app.include_router(router, prefix=prefix)
