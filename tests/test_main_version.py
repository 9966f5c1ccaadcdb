"""Tests for main module version loading."""

import unittest
from pathlib import Path
from unittest.mock import patch

from events_recorder.main import _load_version


class TestLoadVersion(unittest.TestCase):
    """Tests for _load_version startup behavior."""

    def test_load_version_returns_string_from_version_txt(self) -> None:
        """When version.txt exists at the project root, return its stripped contents."""
        result = _load_version()
        self.assertIsInstance(result, str)
        self.assertNotEqual(result, "unknown")

    def test_load_version_returns_unknown_when_file_missing(self) -> None:
        real_exists = Path.exists

        def mock_exists(self: object) -> bool:
            if getattr(self, "name", "") == "version.txt":
                return False
            return real_exists(self)

        with patch.object(Path, "exists", mock_exists):
            self.assertEqual(_load_version(), "unknown")


if __name__ == "__main__":
    unittest.main()
