"""Command line entry point: ``serve`` runs the API, ``check-config`` validates billing.yaml."""

import argparse
import os
import sys
from typing import Optional

import uvicorn

from storefront_billing.config import Config, ConfigurationError
from storefront_billing.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storefront_billing", description="Subscription lifecycle service")
    parser.add_argument("--config", default=os.getenv("CONFIG_PATH", "config/billing.yaml"))
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
    )
    parser.add_argument("--log-format", choices=["json", "console"], default=os.getenv("LOG_FORMAT", "json"))

    commands = parser.add_subparsers(dest="command")
    serve = commands.add_parser("serve", help="Run the HTTP API (default)")
    serve.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")))
    serve.add_argument("--reload", action="store_true", default=os.getenv("RELOAD", "false").lower() == "true")
    commands.add_parser("check-config", help="Validate the configuration file and exit")
    return parser


def check_config(config_path: str) -> int:
    """Load ``config_path``; 0 when it validates, 1 otherwise."""
    try:
        config = Config(config_path)
    except ConfigurationError as e:
        logger.error("config_invalid", config_path=config_path, error=str(e))
        return 1
    settings = config.settings
    logger.info(
        "config_valid",
        config_path=str(config.config_path),
        data_store=settings.data_store.backend,
        billing_gateway="enabled" if settings.billing_gateway.enabled else "disabled",
        pubsub="enabled" if settings.pubsub.enabled else "disabled",
        plan_overrides=[plan.plan_type.value for plan in settings.plans],
    )
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # create_app reads these when uvicorn imports the factory.
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config
    configure_logging(log_level=args.log_level, json_format=args.log_format == "json")

    if args.command == "check-config":
        return check_config(args.config)

    host = getattr(args, "host", os.getenv("HOST", "0.0.0.0"))
    port = getattr(args, "port", int(os.getenv("PORT", "8080")))
    logger.info("service_starting", host=host, port=port, config_path=args.config)
    uvicorn.run(
        "storefront_billing.main:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=args.log_level.lower(),
        reload=getattr(args, "reload", False),
        access_log=False,  # RequestLoggingMiddleware logs requests
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
