import tempfile
import unittest
from pathlib import Path

from ledger import config
from ledger.config import load_project_settings


class ProjectSettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.project = Path(tmpdir.name)
        (self.project / config.LEDGER_DIR_NAME).mkdir()
        self.config_path = self.project / config.LEDGER_DIR_NAME / config.PROJECT_CONFIG_FILENAME

    def test_missing_file_uses_defaults(self) -> None:
        self.config_path.unlink(missing_ok=True)
        settings = load_project_settings(self.project)
        self.assertEqual(settings.policy, config.CLEANUP_POLICY)
        self.assertEqual(settings.grace_days, config.GRACE_DAYS)

    def test_yaml_overrides_retention_and_link_window(self) -> None:
        self.config_path.write_text(
            "retention:\n  policy: immediate\n  graceDays: 3\nlinks:\n  breadcrumbMaxAgeSeconds: 60\n",
            encoding="utf-8",
        )
        settings = load_project_settings(self.project)
        self.assertEqual(settings.policy, "immediate")
        self.assertEqual(settings.grace_days, 3)
        self.assertEqual(settings.breadcrumb_max_age_seconds, 60)

    def test_unknown_policy_and_bad_numbers_fall_back(self) -> None:
        self.config_path.write_text("retention:\n  policy: forever\n  graceDays: soon\n", encoding="utf-8")
        with self.assertLogs("ledger.config", level="WARNING"):
            settings = load_project_settings(self.project)
        self.assertEqual(settings.policy, config.CLEANUP_POLICY)
        self.assertEqual(settings.grace_days, config.GRACE_DAYS)

    def test_malformed_yaml_is_ignored(self) -> None:
        self.config_path.write_text("retention: [unclosed\n", encoding="utf-8")
        with self.assertLogs("ledger.config", level="WARNING"):
            settings = load_project_settings(self.project)
        self.assertEqual(settings.policy, config.CLEANUP_POLICY)


if __name__ == "__main__":
    unittest.main()
