"""vodscale: on-demand video downscaling server with a disk cache."""

from __future__ import annotations

import argparse
import logging
import sys

from config import DEFAULT_CONFIG_FILE, ConfigError, load_config
from server import TranscodeServer, create_app
from supervisor import Supervisor


log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="vodscale", description="Serve downscaled copies of a video library"
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_FILE,
        help=f"path to JSON config file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="override LogLevel from the config file",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level or "INFO")
    try:
        config = load_config(args.config)
    except ConfigError as e:
        log.error("Error loading configuration from %s: %s", args.config, e)
        return 1
    if not args.log_level:
        logging.getLogger().setLevel(config.log_level)

    server = TranscodeServer(config)
    app = create_app(config, server)
    log.info("Listening on %s:%d", config.host or "0.0.0.0", config.port)
    Supervisor(app, config, server.transcoder).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
