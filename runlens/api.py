"""
runlens - Read-Only Dashboard HTTP API

Serves dashboard snapshots, single metrics and advanced analytics.
This API is STRICTLY READ-ONLY: only GET endpoints exist.

Error mapping:
--------------
ConfigurationError   503  no catalog configured
UnknownMetricError   404
ValidationError      400  e.g. unknown business unit
DataSourceError      502  catalog unreachable or timed out
ComputationError     500

Security Warning:
-----------------
Binds to localhost by default. RUNLENS_LAN=true exposes execution history
to the network with no authentication.
"""

import logging
import math
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict

from runlens import __version__
from runlens.config import LAN_HOST, DashboardSettings
from runlens.errors import (
    ComputationError,
    ConfigurationError,
    DataSourceError,
    UnknownMetricError,
    ValidationError,
)
from runlens.facade import (
    AggregationFacade,
    Analytic,
    DashboardMetric,
    create_facade,
    resolve_metric,
)
from runlens.models import to_jsonable
from runlens.partitions import get_partitioner


logger = logging.getLogger(__name__)


# =============================================================================
# Response models
# =============================================================================

class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    model_config = ConfigDict(extra="forbid")

    status: str = "ok"
    configured: bool


class ServiceInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    service: str = "runlens"
    version: str
    read_only: bool = True
    dashboard_metrics: List[str]
    analytics: List[str]


class BusinessUnitsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    business_units: List[str]


class CacheStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hits: int
    misses: int
    size: int
    hit_rate: float
    default_ttl_seconds: float
    single_flight: bool
    keys: List[str]


def to_http_error(error: Exception) -> HTTPException:
    """Map a runlens exception onto an HTTP error response."""
    if isinstance(error, ConfigurationError):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, UnknownMetricError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, DataSourceError):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, ComputationError):
        return HTTPException(status_code=500, detail=str(error))
    logger.exception("[API] unexpected failure")
    return HTTPException(status_code=500, detail=str(error))


def create_dashboard_app(
    settings: Optional[DashboardSettings] = None,
    facade: Optional[AggregationFacade] = None,
) -> FastAPI:
    """
    Create the read-only dashboard API application.

    Args:
        settings: Service settings. Loaded from the environment if not provided.
        facade: Aggregation facade. Built from settings if not provided.

    Returns:
        FastAPI application with read-only endpoints
    """
    settings = settings or DashboardSettings.from_env()
    facade = facade or create_facade(settings)
    source = settings.source()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("[API] shutting down aggregation workers")
        facade.shutdown()

    app = FastAPI(
        title="runlens Dashboard API",
        description=(
            "Read-only execution analytics over a workflow catalog.\n\n"
            "**This API provides visibility only.**"
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.facade = facade
    app.state.source = source

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET"],  # Only GET allowed
        allow_headers=["*"],
    )

    # =========================================================================
    # SERVICE ENDPOINTS
    # =========================================================================

    @app.get("/", response_model=ServiceInfo)
    async def root():
        return ServiceInfo(
            version=__version__,
            dashboard_metrics=[m.value for m in DashboardMetric],
            analytics=[a.value for a in Analytic],
        )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Liveness. Does not touch the catalog."""
        return HealthResponse(configured=source.is_configured)

    @app.get("/business-units", response_model=BusinessUnitsResponse)
    async def business_units():
        return BusinessUnitsResponse(business_units=get_partitioner().labels)

    @app.get("/cache/stats", response_model=CacheStatsResponse)
    async def cache_stats():
        stats = facade.cache.stats()
        return CacheStatsResponse(
            hits=stats.hits,
            misses=stats.misses,
            size=stats.size,
            hit_rate=round(stats.hit_rate, 4),
            default_ttl_seconds=facade.cache.default_ttl_seconds,
            single_flight=facade.cache.single_flight,
            keys=facade.cache.keys(),
        )

    # =========================================================================
    # DASHBOARD ENDPOINTS
    # =========================================================================

    @app.get("/dashboard")
    async def dashboard(
        business_unit: Optional[str] = Query(None, description="Filter by business unit"),
    ):
        """Every dashboard metric for one business unit, or all of them."""
        try:
            snapshot = await facade.load_dashboard(source, business_unit)
            return snapshot.to_dict()
        except HTTPException:
            raise
        except Exception as e:
            raise to_http_error(e) from e

    @app.get("/dashboard/{metric}")
    async def dashboard_metric(
        metric: str,
        response: Response,
        business_unit: Optional[str] = Query(None, description="Filter by business unit"),
    ):
        try:
            name = resolve_metric(metric)
            if not isinstance(name, DashboardMetric):
                raise UnknownMetricError(metric, valid=[m.value for m in DashboardMetric])
            value = await facade.fetch_metric(source, name, business_unit)
            response.headers["Cache-Control"] = f"max-age={math.ceil(facade.ttl_for(name))}"
            return {"metric": name.value, "business_unit": business_unit, "data": to_jsonable(value)}
        except HTTPException:
            raise
        except Exception as e:
            raise to_http_error(e) from e

    # =========================================================================
    # ADVANCED ANALYTICS ENDPOINTS
    # =========================================================================

    @app.get("/analytics")
    async def analytics():
        """All advanced analytics across every business unit."""
        try:
            snapshot = await facade.load_advanced_analytics(source)
            return snapshot.to_dict()
        except HTTPException:
            raise
        except Exception as e:
            raise to_http_error(e) from e

    @app.get("/analytics/{name}")
    async def analytics_item(name: str, response: Response):
        try:
            analytic = resolve_metric(name)
            if not isinstance(analytic, Analytic):
                raise UnknownMetricError(name, valid=[a.value for a in Analytic])
            value = await facade.fetch_metric(source, analytic)
            response.headers["Cache-Control"] = f"max-age={math.ceil(facade.ttl_for(analytic))}"
            return {"analytic": analytic.value, "data": to_jsonable(value)}
        except HTTPException:
            raise
        except Exception as e:
            raise to_http_error(e) from e

    return app


def run_dashboard_server(
    settings: Optional[DashboardSettings] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> None:
    """
    Run the dashboard API server.

    Args:
        settings: Service settings. Loaded from the environment if not provided.
        host: Host to bind to. Defaults to settings.bind_host.
        port: Port to listen on. Defaults to settings.port.
    """
    import uvicorn

    settings = settings or DashboardSettings.from_env()
    host = host or settings.bind_host
    port = port or settings.port
    app = create_dashboard_app(settings=settings)

    logger.info(f"Starting runlens dashboard API (read-only) on {host}:{port}")
    if not settings.source().is_configured:
        logger.warning("No catalog configured. Data endpoints will return 503.")

    if host == LAN_HOST:
        logger.warning("=" * 60)
        logger.warning("LAN exposure is enabled.")
        logger.warning("Anyone on the network can view execution history.")
        logger.warning("No authentication is configured.")
        logger.warning("=" * 60)

    uvicorn.run(app, host=host, port=port)
