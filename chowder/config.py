"""
Process configuration read from the environment.

A ``.env`` file in the working directory is loaded first but never
overrides variables that are already set (e.g. by docker-compose).
"""

import os
from dataclasses import dataclass
from typing import Tuple

from dotenv import load_dotenv

from .logging_config import parse_level

DEFAULT_BIND = ":3399"
DEFAULT_ANTIVIRUS = "127.0.0.1:3310"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    log_level: str = "info"
    bind: str = DEFAULT_BIND
    antivirus: str = DEFAULT_ANTIVIRUS
    certfile: str = "server.crt"
    keyfile: str = "server.key"
    pretty: bool = False
    users_file: str = "users.yml"
    unix_time: bool = False
    float_durations: bool = False

    def validate(self) -> None:
        parse_level(self.log_level)
        parse_bind(self.bind)


def load_settings(env_file: str = ".env", validate: bool = True) -> Settings:
    """Build ``Settings`` from ``CHOWDER_*`` environment variables."""
    load_dotenv(dotenv_path=env_file, override=False)
    settings = Settings(
        log_level=os.getenv("CHOWDER_LOG_LEVEL", "info"),
        bind=os.getenv("CHOWDER_BIND", DEFAULT_BIND),
        antivirus=os.getenv("CHOWDER_ANTIVIRUS", DEFAULT_ANTIVIRUS),
        certfile=os.getenv("CHOWDER_CERTFILE", "server.crt"),
        keyfile=os.getenv("CHOWDER_KEYFILE", "server.key"),
        pretty=_env_bool("CHOWDER_PRETTY"),
        users_file=os.getenv("CHOWDER_USERS_FILE", "users.yml"),
        unix_time=_env_bool("CHOWDER_UNIX_TIME"),
        float_durations=_env_bool("CHOWDER_FLOAT_DURATIONS"),
    )
    if validate:
        settings.validate()
    return settings


def parse_bind(bind: str) -> Tuple[str, int]:
    """Split a ``host:port`` binding; an empty host listens everywhere.

    >>> parse_bind(":3399")
    ('0.0.0.0', 3399)
    """
    host, sep, port = bind.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"bind address must look like host:port, got {bind!r}")
    return host.strip("[]") or "0.0.0.0", int(port)
