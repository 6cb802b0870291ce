"""
Private file helpers for everything stored in the config directory.
"""

import os
import tempfile
from pathlib import Path

DIR_MODE = 0o700
FILE_MODE = 0o600


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True, mode=DIR_MODE)


def write_private_file(path: Path, content: str) -> None:
    """Atomically replace `path` with `content`, readable only by the owner.

    The content is written to a temporary file in the same directory and
    moved into place, so readers never observe a half-written file.
    """
    ensure_private_dir(path.parent)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, FILE_MODE)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
