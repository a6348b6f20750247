"""CLI entry point for dali-server."""

__version__ = "0.1.0"

import argparse
import logging
import sys

from dali_server.config import (
    ROOT,
    Location,
    PayloadConfig,
    SizeConfig,
    load_config,
    parse_location,
    parse_size,
)
from dali_server.errors import ConfigError
from dali_server.planner import Strategy
from dali_server.server import DEFAULT_HOST, DEFAULT_PORT, PayloadServer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("dali-server")


def build_config(args) -> PayloadConfig:
    """Combine the config file, --size/--strategy and --location options."""
    config = load_config(args.config) if args.config else PayloadConfig()

    if args.size is not None or args.strategy is not None:
        length = None
        if args.size is not None:
            length = parse_size(args.size)
            if length is None:
                raise ConfigError(f"Invalid size '{args.size}'. Use bytes or a unit suffix (e.g. 500, 10k, 1m)")
        strategy = Strategy.parse(args.strategy) if args.strategy else None
        config.add(Location(ROOT, SizeConfig(length), strategy))

    for spec in args.location:
        config.add(parse_location(spec))

    if len(config) == 0:
        raise ConfigError("No locations configured. Use --size, --location or --config")
    config.finalize()
    return config


def main():
    parser = argparse.ArgumentParser(
        description="Serve synthetic payloads of a configured size for network and load testing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dali-server --size 1m                        # 1 MiB of zeros on every path (dashboard)
  dali-server --size 1m --cli                  # Run without the dashboard
  dali-server --size 10000 --strategy pattern  # Pattern fill, rounded up to 4 KiB
  dali-server -l /=1g -l /small=10k:timed      # Per-location sizes and strategies
  dali-server -c dali.conf -p 9000             # Locations from a config file
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging and the access log")
    parser.add_argument("-c", "--config", help="Path to a locations config file")
    parser.add_argument("--size", metavar="SIZE", help="Payload size for / (e.g. 500, 10k, 1m)")
    parser.add_argument(
        "--strategy",
        choices=[s.value for s in Strategy],
        help="Payload strategy for / (default: zero)",
    )
    parser.add_argument(
        "-l",
        "--location",
        action="append",
        default=[],
        metavar="PATH=SIZE[:STRATEGY]",
        help="Configure a location; repeatable (e.g. /small=10k:pattern)",
    )
    parser.add_argument("-H", "--host", default=DEFAULT_HOST, help=f"Address to listen on (default: {DEFAULT_HOST})")
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_PORT, help=f"Port to listen on (default: {DEFAULT_PORT})")
    parser.add_argument(
        "--cli",
        action="store_true",
        help="Run in CLI mode instead of dashboard",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger("dali-server").setLevel(logging.DEBUG)

    try:
        config = build_config(args)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    server = PayloadServer(
        config,
        host=args.host,
        port=args.port,
        access_log=args.verbose,
    )

    if args.cli:
        server.run()
    else:
        # Dashboard is the default
        server.run_dashboard()


if __name__ == "__main__":
    main()
