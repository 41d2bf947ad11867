"""Command line entry point: ``python -m iap_entitlements``."""

import argparse
import os
import sys
from typing import Optional, Sequence

import uvicorn

from iap_entitlements.config import Config, ConfigurationError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iap-entitlements",
        description="Subscription entitlement service: purchase verification and provider webhooks",
    )
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Bind address (default: 0.0.0.0)")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8080")),
        help="Bind port (default: 8080)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
    )
    parser.add_argument("--log-format", choices=["json", "console"], default=os.getenv("LOG_FORMAT", "json"))
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/entitlements.yaml"),
        help="Path to entitlements.yaml (default: config/entitlements.yaml)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.getenv("RELOAD", "false").lower() == "true",
        help="Enable auto-reload for development",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration file and exit",
    )
    return parser


def check_config(path: str) -> int:
    """Validate ``path`` and report which provider sections are present."""
    try:
        config = Config(path)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    providers = config.providers
    for name in ("apple", "google", "stripe"):
        state = "present" if getattr(providers, name) is not None else "absent"
        print(f"{name}: {state}")
    print(f"rtdn: {'enabled' if config.rtdn.enabled else 'disabled'}")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    if args.check_config:
        sys.exit(check_config(args.config))

    # create_app runs inside uvicorn (possibly in a reload worker) and reads these
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config

    try:
        uvicorn.run(
            "iap_entitlements.main:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=args.log_level.lower(),
            access_log=False,  # RequestLoggingMiddleware logs requests
        )
    except KeyboardInterrupt:
        print("\nShutting down gracefully...")
        sys.exit(0)
    except Exception as e:
        print(f"Failed to start entitlement service: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
