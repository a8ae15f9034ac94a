from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from foilshop.app import app, configure_shop
from foilshop.auth import AuthFileError
from foilshop.config import ConfigError, load_settings
from foilshop.scanner import ScanError

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s (%(module)s) %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="foilshop", description="Serve a game-content library over HTTP")
    parser.add_argument("-c", "--config", default=None, help="path to a JSON config file")
    parser.add_argument(
        "-l",
        "--library-folder",
        "--library-root",
        dest="library_root",
        default=None,
        help="directory holding .nsp/.nsz/.xci/.xcz files",
    )
    parser.add_argument("--auth-file", default=None, help="JSON file with Basic auth users")
    parser.add_argument("--public", dest="public_shop", action="store_true", default=None, help="serve without auth")
    parser.add_argument("--scan-interval-seconds", type=int, default=None)
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(
            args.config,
            library_root=args.library_root,
            auth_file=args.auth_file,
            public_shop=args.public_shop,
            scan_interval_seconds=args.scan_interval_seconds,
            host=args.host,
            port=args.port,
            log_level=args.log_level,
        )
        configure_logging(settings.log_level)
        logger.info(
            "configuration loaded root=%s host=%s port=%d scan_interval_seconds=%d",
            settings.library_root,
            settings.host,
            settings.port,
            settings.scan_interval_seconds,
        )
        configure_shop(settings)
    except (ConfigError, AuthFileError, ScanError) as exc:
        configure_logging()
        logger.error("startup failed: %s", exc)
        return 1

    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
