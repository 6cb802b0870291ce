"""
Bearer token resolution for the usage API.

A token comes from the TOKEN_SYNC_TOKEN environment variable or from
`auth.json` in the config directory (written by `token-sync login`).
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
import os

from token_sync.config.loader import get_config_dir
from token_sync.core.scheduler import format_iso, parse_iso, utc_now
from token_sync.storage.files import write_private_file

ENV_TOKEN = "TOKEN_SYNC_TOKEN"
AUTH_FILE = "auth.json"
DEFAULT_TOKEN_TYPE = "Bearer"


class AuthStatus(Enum):
    MISSING = "missing"
    VALID = "valid"
    EXPIRED = "expired"


class AuthSource(Enum):
    ENV = "env"
    STORE = "store"


@dataclass(frozen=True)
class AuthToken:
    """Resolved credentials and why they are (not) usable."""
    status: AuthStatus
    token: Optional[str] = None
    token_type: str = DEFAULT_TOKEN_TYPE
    source: Optional[AuthSource] = None
    expires_at: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.status == AuthStatus.VALID and bool(self.token)


def get_auth_file_path(config_dir: Optional[Path] = None) -> Path:
    return (config_dir or get_config_dir()) / AUTH_FILE


def _read_store(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def resolve_auth_token(
    config_dir: Optional[Path] = None, now: Optional[datetime] = None
) -> AuthToken:
    """Find the token to upload with.

    The environment variable takes precedence over the stored token. A
    stored token whose `expires_at` has passed is reported as expired.
    """
    env_token = os.environ.get(ENV_TOKEN, "").strip()
    if env_token:
        return AuthToken(status=AuthStatus.VALID, token=env_token, source=AuthSource.ENV)

    path = get_auth_file_path(config_dir)
    stored = _read_store(path)
    if stored is None:
        message = "Not logged in. Run `token-sync login`."
        if path.exists():
            message = f"Stored credentials at {path} are unreadable. Run `token-sync login`."
        return AuthToken(status=AuthStatus.MISSING, message=message)

    token = stored.get("token")
    if not isinstance(token, str) or not token.strip():
        return AuthToken(status=AuthStatus.MISSING, message="Not logged in. Run `token-sync login`.")

    expires_at = stored.get("expires_at")
    expiry = parse_iso(expires_at) if isinstance(expires_at, str) else None
    token_type = stored.get("token_type") or DEFAULT_TOKEN_TYPE
    if expiry is not None and expiry <= (now or utc_now()):
        return AuthToken(
            status=AuthStatus.EXPIRED,
            source=AuthSource.STORE,
            expires_at=expires_at,
            message="Stored token expired. Run `token-sync login`.",
        )

    return AuthToken(
        status=AuthStatus.VALID,
        token=token.strip(),
        token_type=token_type,
        source=AuthSource.STORE,
        expires_at=expires_at if isinstance(expires_at, str) else None,
    )


def store_auth_token(
    token: str,
    config_dir: Optional[Path] = None,
    token_type: str = DEFAULT_TOKEN_TYPE,
    expires_at: Optional[str] = None,
) -> Path:
    data: Dict[str, Any] = {
        "token": token.strip(),
        "token_type": token_type,
        "saved_at": format_iso(utc_now()),
    }
    if expires_at:
        data["expires_at"] = expires_at
    path = get_auth_file_path(config_dir)
    write_private_file(path, json.dumps(data, indent=2) + "\n")
    return path


def clear_auth_token(config_dir: Optional[Path] = None) -> bool:
    """Delete stored credentials. Returns False when there were none."""
    path = get_auth_file_path(config_dir)
    if not path.exists():
        return False
    path.unlink()
    return True


def record_auth_error(message: str, code: str, config_dir: Optional[Path] = None) -> None:
    """Remember that the API rejected the stored token."""
    path = get_auth_file_path(config_dir)
    stored = _read_store(path)
    if stored is None:
        return
    stored["last_error"] = {"message": message, "code": code, "at": format_iso(utc_now())}
    write_private_file(path, json.dumps(stored, indent=2) + "\n")
