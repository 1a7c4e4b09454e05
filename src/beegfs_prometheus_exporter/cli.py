"""Command-line entry point for the BeeGFS Prometheus Exporter."""

import argparse
import json
import signal
import sys
import threading

import pydantic
import structlog

from . import __version__, server
from .loop import CollectorLoop, ExporterStats
from .registry import MetricRegistry
from .source import ClusterStatusSource
from .supervisor import RestartBudget, RestartBudgetExhausted, Supervisor

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="beegfs-prometheus-exporter",
        description="Prometheus exporter for BeeGFS server statistics",
    )
    parser.add_argument(
        "--config",
        help=f"Exporter JSON config file (default: ${server.CONFIG_ENV_VAR})",
    )
    parser.add_argument(
        "-c",
        "--config-file",
        dest="beegfs_config_file",
        help="Path to the BeeGFS client configuration file",
    )
    parser.add_argument(
        "-b",
        "--bind-address",
        help=f"host:port to serve metrics on (default: {server.DEFAULT_BIND_ADDRESS})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every collection cycle",
    )
    parser.add_argument(
        "-r",
        "--restart-attempts",
        dest="max_restart_attempts",
        type=int,
        help="Max number of collector crashes before giving up (default: 10)",
    )
    parser.add_argument(
        "-i",
        "--interval",
        dest="poll_interval",
        type=float,
        help="Seconds between collection cycles",
    )
    parser.add_argument(
        "--source",
        choices=["beegfs-ctl", "http"],
        help="Cluster status source",
    )
    parser.add_argument("--status-url", help="Base URL of the HTTP status source")
    parser.add_argument("--node-type", help="BeeGFS node type for beegfs-ctl")
    parser.add_argument("--version", action="version", version=__version__)
    return parser


def config_from_args(args: argparse.Namespace) -> server.ExporterConfig:
    """Resolve the exporter config: JSON file first, CLI flags override.

    Raises:
        FileNotFoundError: If a config file was named but does not exist.
        pydantic.ValidationError: If the merged values are invalid.
    """
    data = {}
    config_path = server.resolve_config_path(args.config)
    if config_path:
        data = server.load_config(config_path).model_dump(exclude_unset=True)

    overrides = {
        "beegfs_config_file": args.beegfs_config_file,
        "bind_address": args.bind_address,
        "max_restart_attempts": args.max_restart_attempts,
        "poll_interval": args.poll_interval,
        "source": args.source,
        "status_url": args.status_url,
        "node_type": args.node_type,
    }
    data.update({key: value for key, value in overrides.items() if value is not None})
    if args.verbose:
        data["log_level"] = "DEBUG"

    return server.ExporterConfig(**data)


def run(
    config: server.ExporterConfig,
    status_source: ClusterStatusSource,
    stop_event: threading.Event | None = None,
) -> int:
    """Serve metrics and supervise collection until stopped or out of restarts.

    Args:
        config: Resolved exporter configuration.
        status_source: Cluster status source polled by the collector loop.
        stop_event: Event requesting a graceful shutdown.

    Returns:
        Process exit code.
    """
    stop_event = stop_event if stop_event is not None else threading.Event()
    registry = MetricRegistry(stale_series_ttl=config.stale_series_ttl)
    stats = ExporterStats()

    prom_registry = server.create_prometheus_registry(
        registry=registry,
        stats=stats,
        metric_prefix=config.metric_prefix,
    )
    app = server.create_starlette_app(
        metrics_path=config.metrics_path,
        registry=prom_registry,
    )
    http_server = server.ExporterServer(app, host=config.host, port=config.port)
    try:
        http_server.start()
    except RuntimeError:
        logger.exception("Could not start metrics server", bind=config.bind_address)
        return EXIT_FAILURE

    def loop_factory() -> CollectorLoop:
        return CollectorLoop(
            source=status_source,
            registry=registry,
            interval=config.poll_interval,
            stats=stats,
            prefix=config.metric_prefix,
        )

    supervisor = Supervisor(
        loop_factory=loop_factory,
        budget=RestartBudget(max_attempts=config.max_restart_attempts),
        stats=stats,
    )
    try:
        supervisor.run(stop_event)
    except RestartBudgetExhausted:
        logger.exception(
            "Collector kept crashing, giving up",
            max_restarts=config.max_restart_attempts,
        )
        return EXIT_FAILURE
    finally:
        http_server.stop()
        close = getattr(status_source, "close", None)
        if callable(close):
            close()

    logger.info("Exporter stopped")
    return EXIT_OK


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def handle(signum, frame):
        logger.info("Received signal, shutting down", signal=signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def main(argv: list[str] | None = None) -> None:
    """Parse arguments, start the exporter and exit with its status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = config_from_args(args)
    except (FileNotFoundError, json.JSONDecodeError, pydantic.ValidationError) as exc:
        parser.error(str(exc))

    server.configure_logging(config.log_level)

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    try:
        status_source = server.create_source(config, cancel_event=stop_event)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("Invalid status source configuration", error=str(exc))
        sys.exit(EXIT_USAGE)

    logger.info(
        "Starting exporter",
        version=__version__,
        source=config.source,
        bind=config.bind_address,
        interval_seconds=config.poll_interval,
        max_restarts=config.max_restart_attempts,
    )
    sys.exit(run(config, status_source, stop_event))
