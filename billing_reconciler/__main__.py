"""Command line entry point.

    python -m billing_reconciler [serve] [--host ...] [--port ...]
    python -m billing_reconciler check-config [--config ...]
"""

import argparse
import os
import sys
from typing import Optional, Sequence

import uvicorn

from billing_reconciler.config import Config, ConfigurationError

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="billing-reconciler",
        description="Stripe webhook receiver keeping local subscription state",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH"),
        help="Path to billing.yaml (default: $CONFIG_PATH, then config/billing.yaml when present)",
    )
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Run the webhook endpoint (default)")
    serve.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")))
    serve.add_argument("--log-level", choices=LOG_LEVELS, default=os.getenv("LOG_LEVEL", "INFO"))
    serve.add_argument("--log-format", choices=["json", "console"], default=os.getenv("LOG_FORMAT", "json"))
    serve.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Restart on code changes (development only)",
    )

    commands.add_parser("check-config", help="Validate configuration and exit")
    return parser


def check_config(config_path: Optional[str]) -> int:
    """Print the resolved configuration, secrets masked. Returns the exit code."""
    try:
        config = Config(config_path)
        settings = config.validate_required()
    except ConfigurationError as e:
        print(f"Configuration invalid: {e}", file=sys.stderr)
        return 1

    print(f"Config file: {config.config_path}")
    for plan, price_id in settings.price_ids().items():
        print(f"  {plan.value:<11} price: {price_id}")
    print(f"  webhook secret: {_mask(settings.webhook_secret)}")
    print(f"  api key:        {_mask(settings.processor_api_key)}")
    print(f"  enforce event ordering:      {settings.enforce_event_ordering}")
    print(f"  refetch subscription events: {settings.refetch_subscription_events}")
    print(f"  pubsub: {'enabled' if settings.pubsub.enabled else 'disabled'}")
    return 0


def serve(args: argparse.Namespace) -> int:
    # The app module reads these when uvicorn imports it
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    if args.config:
        os.environ["CONFIG_PATH"] = args.config

    try:
        uvicorn.run(
            "billing_reconciler.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,  # RequestLoggingMiddleware writes access logs
        )
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        print(f"Failed to start reconciler: {e}", file=sys.stderr)
        return 1
    return 0


def _mask(secret: Optional[str]) -> str:
    if not secret:
        return "<unset>"
    return f"{secret[:6]}...{secret[-4:]}" if len(secret) > 12 else "****"


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "check-config":
        return check_config(args.config)
    if args.command is None:
        args = parser.parse_args([*(argv if argv is not None else sys.argv[1:]), "serve"])
    return serve(args)


if __name__ == "__main__":
    sys.exit(main())
