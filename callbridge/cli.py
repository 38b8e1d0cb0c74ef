"""callbridge CLI entry point.

Usage:
    callbridge run [--config bridge.yaml] [--port 3000]
    callbridge providers
    callbridge init [--output bridge.yaml]
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from loguru import logger


def cmd_run(args: argparse.Namespace) -> None:
    """Run the callbridge server."""
    from callbridge.config import load_config

    config_path = args.config
    if config_path and not Path(config_path).exists():
        logger.error(f"Config file not found: {config_path}")
        sys.exit(1)

    # Without a config file, everything comes from defaults and the environment
    config = load_config(config_path or None)

    # Configure logging
    logger.remove()
    logger.add(sys.stderr, level=config.logging.level)

    missing = config.missing_credentials()
    if missing:
        logger.error(f"Missing required credentials: {', '.join(missing)}")
        sys.exit(1)

    logger.info(f"callbridge starting with config: {config_path or '<environment>'}")
    logger.info(f"Provider: {config.telephony.provider}")
    logger.info(f"Listening on: {args.host or config.server.host}:{args.port or config.server.port}")
    logger.info(f"Webhook path: {config.server.webhook_path}")
    logger.info(f"Media stream URL: {config.media_stream_url('<call_id>')}")

    from callbridge.server import run_server

    run_server(config, host=args.host, port=args.port)


def cmd_providers(args: argparse.Namespace) -> None:
    """List available telephony providers."""
    from callbridge.serializers.registry import serializer_registry

    providers = serializer_registry.available
    print("\nAvailable callbridge Providers:")
    print("=" * 40)
    for name in providers:
        serializer = serializer_registry.create(name)
        print(f"  {name:<20} media framing={serializer.framing.value}")
    print(f"\nTotal: {len(providers)} providers")
    print()


def cmd_init(args: argparse.Namespace) -> None:
    """Generate a starter configuration file."""
    output = Path(args.output)

    if output.exists() and not args.force:
        logger.error(f"File already exists: {output}. Use --force to overwrite.")
        sys.exit(1)

    from callbridge.config import DEFAULT_CONFIG_YAML

    output.write_text(DEFAULT_CONFIG_YAML)
    print(f"Configuration written to: {output}")
    print(f"\nEdit the file and run: callbridge run --config {output}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="callbridge",
        description="callbridge - Bridge telephony calls to realtime speech AI",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # `callbridge run`
    run_parser = subparsers.add_parser("run", help="Run the callbridge server")
    run_parser.add_argument(
        "--config", "-c",
        default="",
        help="Path to the bridge YAML config file (default: environment only)",
    )
    run_parser.add_argument("--host", default=None, help="Override the listen host")
    run_parser.add_argument("--port", "-p", type=int, default=None, help="Override the listen port")

    # `callbridge providers`
    subparsers.add_parser("providers", help="List available telephony providers")

    # `callbridge init`
    init_parser = subparsers.add_parser("init", help="Generate a starter config file")
    init_parser.add_argument(
        "--output", "-o",
        default="bridge.yaml",
        help="Output file path (default: bridge.yaml)",
    )
    init_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite existing file",
    )

    args = parser.parse_args(argv)

    if args.command == "run":
        cmd_run(args)
    elif args.command == "providers":
        cmd_providers(args)
    elif args.command == "init":
        cmd_init(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
