"""
Usage source discovery.

Finds candidate usage log files under a configured base path.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

USAGE_EXTENSIONS = (".json", ".jsonl")
KNOWN_SUBDIRS = ("usage", "sessions")
MAX_WALK_DEPTH = 4
EXCLUDED_FILENAMES = frozenset({"history.jsonl"})


class SourceKind(Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class UsageSource:
    path: str
    kind: SourceKind


@dataclass
class UsageDiscovery:
    """Sources found under a base path, plus anything worth telling the user."""
    base_path: str
    sources: List[UsageSource] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def files(self) -> List[UsageSource]:
        return [source for source in self.sources if source.kind == SourceKind.FILE]


def resolve_codex_home() -> str:
    """Default base path: $CODEX_HOME, else ~/.codex."""
    env_home = os.environ.get("CODEX_HOME", "")
    if env_home.strip():
        return env_home
    return str(Path.home() / ".codex")


def _is_usage_file(entry: os.DirEntry) -> bool:
    if entry.name in EXCLUDED_FILENAMES:
        return False
    return entry.name.lower().endswith(USAGE_EXTENSIONS)


def list_usage_files(directory: str) -> List[UsageSource]:
    """Usage files directly inside a directory (no recursion)."""
    with os.scandir(directory) as entries:
        return [
            UsageSource(path=os.path.join(directory, entry.name), kind=SourceKind.FILE)
            for entry in sorted(entries, key=lambda e: e.name)
            if entry.is_file() and _is_usage_file(entry)
        ]


def walk_usage_files(directory: str, depth: int = 0) -> List[UsageSource]:
    """Usage files under a directory, at most MAX_WALK_DEPTH levels down."""
    if depth > MAX_WALK_DEPTH:
        return []

    sources: List[UsageSource] = []
    with os.scandir(directory) as iterator:
        entries = sorted(iterator, key=lambda e: e.name)

    for entry in entries:
        entry_path = os.path.join(directory, entry.name)
        if entry.is_dir():
            sources.extend(walk_usage_files(entry_path, depth + 1))
        elif entry.is_file() and _is_usage_file(entry):
            sources.append(UsageSource(path=entry_path, kind=SourceKind.FILE))
    return sources


def discover_usage_sources(usage_path: Optional[str] = None) -> UsageDiscovery:
    """Discover usage sources from a base path.

    A file path is returned as the only source. A configured directory is
    walked recursively, while the default home is only listed at its top
    level. The `usage` and `sessions` subdirectories are always included.

    Args:
        usage_path: Configured path; falls back to the Codex home directory

    Returns:
        UsageDiscovery with sources and human readable warnings
    """
    custom_path = (usage_path or "").strip()
    base_path = custom_path or resolve_codex_home()
    discovery = UsageDiscovery(base_path=base_path)

    if not os.path.exists(base_path):
        discovery.warnings.append(f"Usage path does not exist: {base_path}")
        return discovery

    try:
        is_file = os.path.isfile(base_path)
        is_dir = os.path.isdir(base_path)
    except OSError as e:
        discovery.warnings.append(f"Unable to read usage path: {e}")
        return discovery

    if is_file:
        discovery.sources.append(UsageSource(path=base_path, kind=SourceKind.FILE))
        return discovery

    if not is_dir:
        discovery.warnings.append(f"Usage path is not a file or directory: {base_path}")
        return discovery

    try:
        if custom_path:
            discovery.sources.extend(walk_usage_files(base_path))
        else:
            discovery.sources.extend(list_usage_files(base_path))
    except OSError as e:
        discovery.warnings.append(f"Unable to scan usage path {base_path}: {e}")

    for subdir in KNOWN_SUBDIRS:
        candidate = os.path.join(base_path, subdir)
        if not os.path.exists(candidate):
            continue
        try:
            if os.path.isdir(candidate):
                discovery.sources.append(UsageSource(path=candidate, kind=SourceKind.DIRECTORY))
                discovery.sources.extend(walk_usage_files(candidate))
            elif os.path.isfile(candidate):
                discovery.sources.append(UsageSource(path=candidate, kind=SourceKind.FILE))
        except OSError as e:
            discovery.warnings.append(f"Unable to inspect {candidate}: {e}")

    return discovery
