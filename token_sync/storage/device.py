"""
Device identity.

Each install has a stable random id and a display name, stored in
`device.json`. Version 1 files carried no name; they are migrated to
version 2 the first time they are loaded.
"""

import json
import socket
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from token_sync.config.loader import get_config_dir
from token_sync.core.scheduler import format_iso, utc_now
from .files import write_private_file

DEVICE_FILE = "device.json"
DEVICE_VERSION = 2
DEVICE_NAME_MAX = 128
DEFAULT_DEVICE_NAME = "unknown"


class DeviceError(Exception):
    """Raised when device.json exists but cannot be parsed."""


@dataclass(frozen=True)
class DeviceInfo:
    device_id: str
    device_name: str
    created_at: str
    version: int = DEVICE_VERSION


def normalize_device_name(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed[:DEVICE_NAME_MAX]


def resolve_device_name() -> str:
    return normalize_device_name(socket.gethostname()) or DEFAULT_DEVICE_NAME


def migrate_device(data: Dict[str, Any]) -> Optional[DeviceInfo]:
    """Upgrade a raw device mapping to the current version.

    Returns None when the mapping has no usable device id.
    """
    device_id = data.get("device_id", data.get("deviceId"))
    if not isinstance(device_id, str) or not device_id:
        return None
    name = normalize_device_name(data.get("device_name", data.get("deviceName")))
    created_at = data.get("created_at", data.get("createdAt"))
    return DeviceInfo(
        device_id=device_id,
        device_name=name or resolve_device_name(),
        created_at=created_at if isinstance(created_at, str) else format_iso(utc_now()),
    )


def _write_device(path: Path, device: DeviceInfo) -> None:
    write_private_file(path, json.dumps(asdict(device), indent=2) + "\n")


def get_or_create_device_info(config_dir: Optional[Path] = None) -> DeviceInfo:
    """Load this install's identity, creating or upgrading it as needed.

    Raises:
        DeviceError: If device.json is not valid JSON
    """
    path = (config_dir or get_config_dir()) / DEVICE_FILE
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise DeviceError(f"Invalid device JSON at {path}.")

        device = migrate_device(raw) if isinstance(raw, dict) else None
        if device is not None:
            if raw.get("version") != DEVICE_VERSION or raw != asdict(device):
                _write_device(path, device)
            return device

    device = DeviceInfo(
        device_id=str(uuid.uuid4()),
        device_name=resolve_device_name(),
        created_at=format_iso(utc_now()),
    )
    _write_device(path, device)
    return device
