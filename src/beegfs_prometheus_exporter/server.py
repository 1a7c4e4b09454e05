"""HTTP server and configuration for the BeeGFS Prometheus Exporter."""

import json
import logging
import os
import pathlib
import threading
import time
from typing import Literal

import prometheus_client
import prometheus_client.core
import pydantic
import starlette.applications
import starlette.requests
import starlette.responses
import starlette.routing
import structlog
import uvicorn

from . import collector, supervisor, translator
from .loop import ExporterStats
from .registry import MetricRegistry
from .source import ClusterStatusSource, ctl, rest

CONFIG_ENV_VAR = "BEEGFS_EXPORTER_CONFIG_PATH"
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
DEFAULT_BIND_ADDRESS = "127.0.0.1:13337"
logger = structlog.get_logger(__name__)


def parse_bind_address(bind_address: str) -> tuple[str, int]:
    """Split a ``host:port`` string, accepting bracketed IPv6 hosts.

    Raises:
        ValueError: If the address has no valid port.
    """
    host, sep, port_text = bind_address.rpartition(":")
    if not sep or not host:
        msg = f"Bind address must be host:port, got {bind_address!r}"
        raise ValueError(msg)
    try:
        port = int(port_text)
    except ValueError:
        msg = f"Invalid port in bind address {bind_address!r}"
        raise ValueError(msg) from None
    if not 0 <= port < 65536:  # noqa: PLR2004
        msg = f"Port out of range in bind address {bind_address!r}"
        raise ValueError(msg)
    return host.strip("[]"), port


class ExporterConfig(pydantic.BaseModel):
    """Configuration for the BeeGFS Prometheus Exporter."""

    source: Literal["beegfs-ctl", "http"] = pydantic.Field(
        "beegfs-ctl",
        description="Kind of cluster status source",
    )
    beegfs_config_file: str | None = pydantic.Field(
        None,
        description="BeeGFS client config file passed to beegfs-ctl",
    )
    node_type: str = pydantic.Field(
        ctl.DEFAULT_NODE_TYPE,
        description="BeeGFS node type queried by beegfs-ctl",
    )
    status_url: str | None = pydantic.Field(
        None,
        description="Base URL of the HTTP status source",
    )
    status_path: str = pydantic.Field(
        rest.DEFAULT_PATH,
        description="Path of the HTTP status document",
    )
    source_timeout: float = pydantic.Field(
        ctl.DEFAULT_TIMEOUT,
        description="Upper bound for one status fetch in seconds",
        gt=0,
    )
    bind_address: str = pydantic.Field(
        DEFAULT_BIND_ADDRESS,
        description="host:port the metrics server listens on",
    )
    metrics_path: str = pydantic.Field(
        "/metrics",
        description="URL path for metrics endpoint",
    )
    poll_interval: float = pydantic.Field(
        5.0,
        description="Seconds between the starts of two collection cycles",
        gt=0,
    )
    max_restart_attempts: int = pydantic.Field(
        supervisor.DEFAULT_MAX_RESTART_ATTEMPTS,
        description="Collector loop restarts allowed before giving up",
        ge=0,
    )
    stale_series_ttl: float = pydantic.Field(
        0.0,
        description="Seconds a vanished series is still exported",
        ge=0,
    )
    metric_prefix: str = pydantic.Field(
        translator.DEFAULT_PREFIX,
        description="Metric name prefix",
    )
    log_level: str = pydantic.Field("INFO", description="Logging level")

    @pydantic.field_validator("bind_address")
    @classmethod
    def _check_bind_address(cls, value: str) -> str:
        parse_bind_address(value)
        return value

    @pydantic.field_validator("metrics_path", "status_path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        if not value.startswith("/"):
            msg = "path must start with '/'"
            raise ValueError(msg)
        return value

    @pydantic.model_validator(mode="after")
    def _check_source(self) -> "ExporterConfig":
        if self.source == "http" and not self.status_url:
            msg = "status_url is required for the http source"
            raise ValueError(msg)
        return self

    @property
    def host(self) -> str:
        """Host part of ``bind_address``."""
        return parse_bind_address(self.bind_address)[0]

    @property
    def port(self) -> int:
        """Port part of ``bind_address``."""
        return parse_bind_address(self.bind_address)[1]


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


def load_config(config_path: str) -> ExporterConfig:
    """Load configuration from JSON file."""
    path = pathlib.Path(config_path)
    if not path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with path.open("r") as f:
        data = json.load(f)

    return ExporterConfig(**data)


def resolve_config_path(config_path: str | None = None) -> str | None:
    """Return the explicit config path or the one named by the environment."""
    return config_path or os.environ.get(CONFIG_ENV_VAR)


def create_source(
    config: ExporterConfig,
    cancel_event: threading.Event | None = None,
) -> ClusterStatusSource:
    """Build the configured cluster status source."""
    if config.source == "http":
        status_source: ClusterStatusSource = rest.HttpStatusSource(
            base_url=str(config.status_url),
            path=config.status_path,
            timeout=config.source_timeout,
        )
        logger.info("Created HTTP status source", base_url=config.status_url)
        return status_source

    # Request enough history to cover one poll interval
    history = max(1, int(config.poll_interval) + 1)
    status_source = ctl.BeegfsCtlSource(
        node_type=config.node_type,
        config_file=config.beegfs_config_file,
        history=history,
        timeout=config.source_timeout,
        cancel_event=cancel_event,
    )
    logger.info(
        "Created beegfs-ctl status source",
        node_type=config.node_type,
        config_file=config.beegfs_config_file,
    )
    return status_source


def create_prometheus_registry(
    registry: MetricRegistry,
    stats: ExporterStats,
    metric_prefix: str = translator.DEFAULT_PREFIX,
) -> prometheus_client.core.CollectorRegistry:
    """Create a Prometheus registry exposing the metric registry.

    Creates a custom registry (not the global one) so that only the exporter's
    own collector is rendered.
    """
    prom_registry = prometheus_client.core.CollectorRegistry()
    prom_registry.register(
        collector.RegistryCollector(
            registry=registry,
            stats=stats,
            metric_prefix=metric_prefix,
        ),
    )
    return prom_registry


def create_starlette_app(
    metrics_path: str,
    registry: prometheus_client.core.CollectorRegistry,
) -> starlette.applications.Starlette:
    """Create a Starlette application for serving Prometheus metrics.

    Args:
        metrics_path: URL path for metrics endpoint (e.g., "/metrics").
        registry: Prometheus collector registry.

    Returns:
        Configured Starlette application.
    """

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Generate and serve Prometheus metrics.

        Args:
            request: The incoming HTTP request.

        Returns:
            PlainTextResponse with metrics in Prometheus exposition format,
            or a 500 response if rendering failed.
        """
        client_ip = request.client.host if request.client else "unknown"
        try:
            metrics_output = prometheus_client.generate_latest(registry)
        except Exception:
            logger.exception(
                "Failed to render metrics",
                client_ip=client_ip,
                path=request.url.path,
            )
            return starlette.responses.PlainTextResponse(
                content="Failed to render metrics\n",
                status_code=500,
            )
        logger.info(
            "HTTP request",
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )
        return starlette.responses.PlainTextResponse(
            content=metrics_output,
            media_type=CONTENT_TYPE,
        )

    def index_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        return starlette.responses.HTMLResponse(
            "<html><head><title>BeeGFS Exporter</title></head><body>"
            "<h1>BeeGFS Exporter</h1>"
            f'<p><a href="{metrics_path}">Metrics</a></p>'
            "</body></html>",
        )

    routes = [
        starlette.routing.Route(metrics_path, metrics_endpoint, methods=["GET"]),
        starlette.routing.Route("/", index_endpoint, methods=["GET"]),
    ]

    return starlette.applications.Starlette(routes=routes)


class ExporterServer:
    """Runs a uvicorn server for the exporter app on a background thread."""

    def __init__(
        self,
        app: starlette.applications.Starlette,
        host: str,
        port: int,
        startup_timeout: float = 10.0,
    ):
        self._server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level="warning"),
        )
        self._startup_timeout = startup_timeout
        self._thread = threading.Thread(
            target=self._server.run,
            name="metrics-server",
            daemon=True,
        )

    @property
    def bound_port(self) -> int | None:
        """Port actually bound, useful when configured with port 0."""
        for server in getattr(self._server, "servers", []):
            for sock in server.sockets:
                return sock.getsockname()[1]
        return None

    def start(self) -> None:
        """Start serving and wait until the socket is bound.

        Raises:
            RuntimeError: If the server did not come up within the timeout.
        """
        self._thread.start()
        deadline = time.monotonic() + self._startup_timeout
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                msg = "Metrics server failed to start"
                raise RuntimeError(msg)
            time.sleep(0.05)
        logger.info(
            "Metrics server listening",
            host=self._server.config.host,
            port=self.bound_port,
        )

    def stop(self) -> None:
        """Ask the server to exit and wait for its thread."""
        self._server.should_exit = True
        if self._thread.is_alive():
            self._thread.join(timeout=self._startup_timeout)
