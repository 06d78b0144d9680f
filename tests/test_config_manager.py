import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from paddlesync.config_manager import ConfigManager
from paddlesync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load().sync.max_feed_bytes, 5 * 1024 * 1024)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "sync": {"fetch_timeout_seconds": 20, "batch_size": 250},
                    "cron": {"secret": "cron-secret"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["sync"]["batch_size"], 250)
            self.assertEqual(data["cron"]["secret"], "cron-secret")

    def test_masked_hides_cron_secret(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir, mock.patch.dict(os.environ, {"CRON_SECRET": ""}):
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.save(AppConfig.from_dict({"cron": {"secret": "cron-secret"}}))
            self.assertEqual(manager.masked()["cron"]["secret"], "***")
            self.assertEqual(manager.load().cron.secret, "cron-secret")

    def test_cron_secret_from_environment_overrides_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.save(AppConfig.from_dict({"cron": {"secret": "from-file"}}))
            with mock.patch.dict(os.environ, {"CRON_SECRET": " from-env "}):
                self.assertEqual(manager.load().cron.secret, "from-env")
            with mock.patch.dict(os.environ, {"CRON_SECRET": ""}):
                self.assertEqual(manager.load().cron.secret, "from-file")
            data = yaml.safe_load((Path(temp_dir) / "config.yaml").read_text(encoding="utf-8"))
            self.assertEqual(data["cron"]["secret"], "from-file")


if __name__ == "__main__":
    unittest.main()
