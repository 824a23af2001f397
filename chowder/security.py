"""Token based authentication backed by a YAML users file."""

import logging
from pathlib import Path
from typing import Dict, Optional

import yaml

logger = logging.getLogger(__name__)


def load_users(path: str) -> Dict[str, str]:
    """Load a ``token: username`` map.

    A missing file disables authentication. Anything that is not a flat
    mapping is rejected.
    """
    users_path = Path(path)
    if not users_path.exists():
        logger.info(f"users file {path} not found")
        return {}
    try:
        data = yaml.safe_load(users_path.read_text())
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"failed reading user list {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"users file {path} must map tokens to usernames")
    users = {str(token): str(user) for token, user in data.items()}
    logger.info(f"loaded {len(users)} users from {path}")
    return users


def extract_token(authorization: Optional[str]) -> str:
    """Token from an ``Authorization`` header, with or without ``Bearer``."""
    if not authorization:
        return ""
    token = authorization.strip()
    if token.lower().startswith("bearer "):
        token = token.split(None, 1)[1].strip()
    return token


def auth_failure_message(token: str) -> str:
    if not token:
        return "no authorisation token supplied"
    return f"token '{token}' not recognised"
