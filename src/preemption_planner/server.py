"""HTTP server for the preemption planner."""

import logging
import os
import pathlib

import prometheus_client
import prometheus_client.core
import pydantic
import starlette.applications
import starlette.requests
import starlette.responses
import starlette.routing
import structlog

from . import collector, preemption, stats
from .structs import Allocation, Resources

CONFIG_ENV_VAR = "PREEMPTION_PLANNER_CONFIG_PATH"
logger = structlog.get_logger(__name__)


class PlannerConfig(pydantic.BaseModel):
    """Configuration for the preemption planner server."""

    port: int = pydantic.Field(9093, description="HTTP server port", gt=0, lt=65536)
    metrics_path: str = pydantic.Field(
        "/metrics",
        description="URL path for metrics endpoint",
    )
    plan_path: str = pydantic.Field(
        "/v1/preemption/plan",
        description="URL path for the preemption planning endpoint",
    )
    log_level: str = pydantic.Field("INFO", description="Logging level")


class PlanRequest(pydantic.BaseModel):
    """Body of a planning request."""

    job_priority: int
    ask: Resources
    allocations: list[Allocation] = pydantic.Field(default_factory=list)


class PlanResponse(pydantic.BaseModel):
    """Result of a planning request.

    ``preempt`` lists allocation IDs in preemption order and is empty when no
    feasible set exists.
    """

    feasible: bool
    preempt: list[str] = pydantic.Field(default_factory=list)
    considered: int = 0
    eligible: int = 0


def configure_logging(log_level_name: str) -> None:
    """Configure structlog for logfmt output."""
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            structlog.processors.LogfmtRenderer(
                key_order=("timestamp", "level", "msg"),
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(config_path: str) -> PlannerConfig:
    """Load planner configuration from a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If a field is invalid.
    """
    path = pathlib.Path(config_path)
    if not path.is_file():
        msg = (
            f"Planner config not found: {config_path} "
            f"(set {CONFIG_ENV_VAR} to point at the JSON config)"
        )
        raise FileNotFoundError(msg)

    config = PlannerConfig.model_validate_json(path.read_text())
    logger.debug("Loaded planner config", path=str(path), plan_path=config.plan_path)
    return config


def create_registry(
    planner_stats: stats.PreemptionStats,
) -> prometheus_client.core.CollectorRegistry:
    """Create a Prometheus registry exposing the planner statistics.

    A private registry is used instead of the global REGISTRY so that several
    apps can live in one process (e.g. in tests).
    """
    registry = prometheus_client.core.CollectorRegistry()
    registry.register(collector.PlannerCollector(fetcher=planner_stats.snapshot))
    logger.info("Registered collector", metric_prefix=collector.METRIC_PREFIX)
    return registry


def _error_response(
    status_code: int,
    detail: object,
) -> starlette.responses.JSONResponse:
    return starlette.responses.JSONResponse({"detail": detail}, status_code=status_code)


def create_starlette_app(
    config: PlannerConfig,
    planner_stats: stats.PreemptionStats,
    registry: prometheus_client.core.CollectorRegistry,
) -> starlette.applications.Starlette:
    """Create a Starlette application serving plans and metrics.

    Args:
        config: Validated planner configuration.
        planner_stats: Statistics updated by every planning request.
        registry: Prometheus collector registry.

    Returns:
        Configured Starlette application.
    """

    async def plan_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Compute a preemption plan for the posted ask and allocations."""
        try:
            body = await request.json()
        except ValueError:
            logger.warning("Rejected plan request", reason="invalid JSON")
            return _error_response(400, "request body is not valid JSON")

        try:
            plan_request = PlanRequest.model_validate(body)
        except pydantic.ValidationError as exc:
            logger.warning(
                "Rejected plan request",
                reason="validation failed",
                error_count=exc.error_count(),
            )
            return _error_response(
                422,
                exc.errors(include_url=False, include_context=False),
            )

        plan = preemption.plan_preemption(
            plan_request.job_priority,
            plan_request.allocations,
            plan_request.ask,
        )
        planner_stats.record(plan)

        response = PlanResponse(
            feasible=plan.feasible,
            preempt=[alloc.id for alloc in plan.allocs or []],
            considered=plan.considered,
            eligible=plan.eligible,
        )
        return starlette.responses.JSONResponse(response.model_dump())

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Serve planner statistics in Prometheus exposition format."""
        logger.debug(
            "Serving planner metrics",
            client_ip=request.client.host if request.client else "unknown",
        )
        return starlette.responses.Response(
            content=prometheus_client.generate_latest(registry),
            media_type=prometheus_client.CONTENT_TYPE_LATEST,
        )

    routes = [
        starlette.routing.Route(config.plan_path, plan_endpoint, methods=["POST"]),
        starlette.routing.Route(
            config.metrics_path,
            metrics_endpoint,
            methods=["GET"],
        ),
    ]

    return starlette.applications.Starlette(routes=routes)


def create_planner(config: PlannerConfig) -> starlette.applications.Starlette:
    """Construct the planner ASGI app from validated config."""
    planner_stats = stats.PreemptionStats()
    registry = create_registry(planner_stats)
    return create_starlette_app(
        config=config,
        planner_stats=planner_stats,
        registry=registry,
    )


def create_app(config_path: str | None = None) -> starlette.applications.Starlette:
    """Create the planner ASGI app using a config path or environment default."""
    resolved_path = config_path or os.environ.get(CONFIG_ENV_VAR, "/config.json")
    config = load_config(resolved_path)
    configure_logging(config.log_level)
    return create_planner(config)
