"""
Unit tests for usage source discovery.
"""

import os
import shutil
import tempfile
from unittest.mock import patch

from token_sync.core.sources import SourceKind, discover_usage_sources


class TestDiscoverUsageSources:
    """Test discovery from files, directories and the default home."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _touch(self, *parts):
        path = os.path.join(self.temp_dir, *parts)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write("{}\n")
        return path

    def test_file_path_is_single_source(self):
        path = self._touch("usage.jsonl")

        discovery = discover_usage_sources(path)

        assert [source.path for source in discovery.sources] == [path]
        assert discovery.sources[0].kind == SourceKind.FILE

    def test_missing_path_warns(self):
        missing = os.path.join(self.temp_dir, "nope")

        discovery = discover_usage_sources(missing)

        assert discovery.sources == []
        assert discovery.warnings == [f"Usage path does not exist: {missing}"]

    def test_custom_directory_is_walked(self):
        a = self._touch("a.jsonl")
        b = self._touch("sub", "b.json")
        self._touch("notes.txt")
        self._touch("history.jsonl")

        discovery = discover_usage_sources(self.temp_dir)

        assert [source.path for source in discovery.files] == [a, b]

    def test_walk_depth_is_limited(self):
        shallow = self._touch("1", "2", "3", "4", "ok.jsonl")
        self._touch("1", "2", "3", "4", "5", "deep.jsonl")

        discovery = discover_usage_sources(self.temp_dir)

        assert [source.path for source in discovery.files] == [shallow]

    def test_default_home_lists_top_level_and_sessions(self):
        top = self._touch("top.jsonl")
        self._touch("archive", "old.jsonl")
        session = self._touch("sessions", "2025", "01", "rollout.jsonl")

        with patch.dict(os.environ, {"CODEX_HOME": self.temp_dir}):
            discovery = discover_usage_sources()

        assert discovery.base_path == self.temp_dir
        assert [source.path for source in discovery.files] == [top, session]
        directories = [s.path for s in discovery.sources if s.kind == SourceKind.DIRECTORY]
        assert directories == [os.path.join(self.temp_dir, "sessions")]

    def test_blank_usage_path_uses_default(self):
        with patch.dict(os.environ, {"CODEX_HOME": self.temp_dir}):
            discovery = discover_usage_sources("   ")

        assert discovery.base_path == self.temp_dir
