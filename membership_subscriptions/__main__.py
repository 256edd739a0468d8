"""Entry point for running the service as a module.

The configuration is loaded and validated before uvicorn starts, so a bad
service.yaml or STORAGE_BACKEND fails the process immediately instead of on
the first request.
"""

import argparse
import os
import sys
from typing import Optional, Sequence

import uvicorn

from membership_subscriptions.config import Config, ConfigurationError
from membership_subscriptions.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Membership subscription service - yearly subscriptions, rollover and resignation"
    )
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8080")),
        help="Port to bind to (default: 8080)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
    )
    parser.add_argument("--log-format", choices=["json", "console"], default=os.getenv("LOG_FORMAT", "json"))
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/service.yaml"),
        help="Path to service.yaml (default: config/service.yaml)",
    )
    parser.add_argument(
        "--storage",
        choices=["memory", "mongo"],
        default=None,
        help="Override storage.backend (memory keeps nothing across restarts)",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration and exit without starting the server",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Enable auto-reload for development",
    )
    return parser


def load_config(args: argparse.Namespace) -> Config:
    """Validate configuration with the same environment the app will see.

    Raises:
        ConfigurationError: service.yaml or an override is invalid
    """
    if args.storage:
        os.environ["STORAGE_BACKEND"] = args.storage
    config = Config(args.config)
    storage = config.storage

    logger.info(
        "service_config_loaded",
        config_path=str(config.config_path),
        storage_backend=storage.backend,
        database=storage.database if storage.backend == "mongo" else None,
        pubsub_project_id=config.pubsub_project_id,
        events_enabled=config.events_enabled,
    )
    if not config.auth.token_secret:
        logger.warning(
            "access_token_secret_missing",
            message="ACCESS_TOKEN_SECRET is not set; CRM endpoints will reject every token",
        )
    if storage.backend == "memory":
        logger.warning("storage_not_durable", message="Records and pending notifications are lost on restart")
    return config


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point for the subscription service."""
    args = build_parser().parse_args(argv)

    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config
    configure_logging(log_level=args.log_level, json_format=args.log_format == "json")

    try:
        load_config(args)
    except ConfigurationError as e:
        logger.error("service_config_invalid", config_path=args.config, error=str(e))
        sys.exit(2)

    if args.check_config:
        return

    try:
        uvicorn.run(
            "membership_subscriptions.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,  # RequestLoggingMiddleware writes access logs
        )
    except KeyboardInterrupt:
        logger.info("service_interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("service_start_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
