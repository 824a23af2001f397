"""
Command line entry point: parse flags, set up logging and serve the gateway.

Every flag defaults to its ``CHOWDER_*`` environment variable (see
``chowder.config``), so the same image can be configured either way.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

import uvicorn

from .config import Settings, load_settings, parse_bind
from .logging_config import LEVELS, setup_structured_logging
from .main import create_app
from .security import load_users

logger = logging.getLogger("chowder")


def build_parser(defaults: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chowder",
        description="HTTP gateway that streams uploads to a clamd daemon for scanning",
    )
    parser.add_argument("--level", default=defaults.log_level,
                        help=f"Log level is one of {', '.join(LEVELS)}")
    parser.add_argument("--bind", default=defaults.bind, help="Binding address")
    parser.add_argument("--antivirus", default=defaults.antivirus, help="Destination antivirus address")
    parser.add_argument("--certfile", default=defaults.certfile, help="Server TLS certificate")
    parser.add_argument("--keyfile", default=defaults.keyfile, help="Server TLS key")
    parser.add_argument("--pretty", action="store_true", default=defaults.pretty,
                        help="Use pretty logging (instead of JSON)")
    parser.add_argument("--usersfile", default=defaults.users_file,
                        help="Users file containing auth tokens in the format `token: username`; "
                             "if not supplied or empty authentication will be disabled")
    parser.add_argument("--unixtime", action="store_true", default=defaults.unix_time,
                        help="Log unix timestamps instead of RFC 3339")
    parser.add_argument("--floatdur", action="store_true", default=defaults.float_durations,
                        help="Log float durations instead of integers")
    return parser


def parse_settings(argv: Optional[List[str]] = None) -> Settings:
    parser = build_parser(load_settings(validate=False))
    args = parser.parse_args(argv)
    settings = Settings(
        log_level=args.level,
        bind=args.bind,
        antivirus=args.antivirus,
        certfile=args.certfile,
        keyfile=args.keyfile,
        pretty=args.pretty,
        users_file=args.usersfile,
        unix_time=args.unixtime,
        float_durations=args.floatdur,
    )
    try:
        settings.validate()
    except ValueError as e:
        parser.error(str(e))
    return settings


def tls_available(certfile: str, keyfile: str) -> bool:
    """Serve HTTPS when either credential file is present."""
    return os.path.exists(certfile) or os.path.exists(keyfile)


def main(argv: Optional[List[str]] = None) -> int:
    settings = parse_settings(argv)
    setup_structured_logging(
        use_json=not settings.pretty,
        log_level=settings.log_level,
        unix_time=settings.unix_time,
        float_durations=settings.float_durations,
    )
    logger.info("configuration loaded", extra={"settings": vars(settings)})

    try:
        users = load_users(settings.users_file)
    except ValueError as e:
        logger.critical(f"could not load users file: {e}")
        return 1

    app = create_app(users=users, settings=settings)
    host, port = parse_bind(settings.bind)
    options = {}
    if tls_available(settings.certfile, settings.keyfile):
        logger.info("starting server")
        options = {"ssl_certfile": settings.certfile, "ssl_keyfile": settings.keyfile}
    else:
        logger.warning("no tls credentials found, starting server without tls")

    uvicorn.run(app, host=host, port=port, log_config=None, access_log=False, **options)
    logger.critical("closed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
