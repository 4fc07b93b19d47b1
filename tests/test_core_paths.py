import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from core import paths as core_paths


class CorePathsTests(unittest.TestCase):
    def test_env_home_wins_when_writable(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "curatarr-home"
            with mock.patch.dict(os.environ, {"CURATARR_HOME": str(target)}):
                resolved = core_paths.resolve_working_dir()
            self.assertEqual(resolved, target.resolve())
            self.assertTrue((resolved / "data").is_dir())

    def test_falls_back_to_home_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with mock.patch.dict(os.environ, {"CURATARR_HOME": "  "}), mock.patch.object(
                Path, "home", return_value=Path(tmp)
            ):
                resolved = core_paths.resolve_working_dir()
            self.assertEqual(resolved, Path(tmp) / ".curatarr")

    def test_catalog_db_lives_under_data(self) -> None:
        working = Path("/srv/curatarr")
        self.assertEqual(core_paths.get_catalog_db_path(working), working / "data" / "catalog.db")
        self.assertEqual(core_paths.get_logs_dir(working), working / "logs")
        self.assertEqual(core_paths.get_default_settings_paths(working)[0], working / "settings.json")

    def test_ensure_structure_creates_directories(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            working = Path(tmp) / "w"
            core_paths.ensure_working_dir_structure(working)
            self.assertTrue((working / "data").is_dir())
            self.assertTrue((working / "logs").is_dir())


if __name__ == "__main__":
    unittest.main()
