"""geogate entry point: load config, set up logging, serve until signalled."""

import argparse
import logging
import sys
from pathlib import Path

from geogate.config import load_config
from geogate.errors import ConfigError, LoadError
from geogate.server import create_app

log = logging.getLogger("geogate")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="geogate", description="IP geolocation service")
    parser.add_argument("--config", type=Path, help="YAML config file")
    parser.add_argument("--port", type=int, help="override server.port")
    parser.add_argument("--csv", help="override geo.path")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    from aiohttp import web

    args = _parse_args(argv)
    config = load_config(args.config)
    if args.port is not None:
        config["server"]["port"] = args.port
    if args.csv:
        config["geo"]["path"] = args.csv

    logging.basicConfig(
        level=getattr(logging, str(config["logging"]["level"]).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        app = create_app(config)
        web.run_app(app, port=config["server"]["port"])
    except (ConfigError, LoadError) as exc:
        log.error("Failed to start geogate: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
