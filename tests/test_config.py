import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from re_metaai import config

CONFIG_TEMPLATE = """[metaai]
email = {email}
password = {password}
locale = fr-FR
timezone = Europe/Paris
proxy = http://127.0.0.1:8080
"""


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config_path = Path(self.tmp.name) / "config.ini"
        self.env = patch.dict(os.environ, {}, clear=True)
        self.env.start()

    def tearDown(self):
        self.env.stop()
        self.tmp.cleanup()

    def _write(self, email="user@example.com", password="secret"):
        self.config_path.write_text(
            CONFIG_TEMPLATE.format(email=email, password=password), encoding="utf-8"
        )

    def test_defaults_without_config(self):
        self.assertEqual(config.get_credentials(self.config_path), (None, None))
        self.assertEqual(config.get_cookie_cache_path(self.config_path), Path(".metaai-cookies.json"))
        self.assertEqual(config.get_default_locale(self.config_path), "en-US")
        self.assertEqual(config.get_default_timezone(self.config_path), "UTC")
        self.assertEqual(config.get_default_user_agent(self.config_path), config.DEFAULT_USER_AGENT)
        self.assertIsNone(config.get_proxy(self.config_path))

    def test_values_from_config_file(self):
        self._write()
        self.assertEqual(config.get_credentials(self.config_path), ("user@example.com", "secret"))
        self.assertEqual(config.get_default_locale(self.config_path), "fr-FR")
        self.assertEqual(config.get_default_timezone(self.config_path), "Europe/Paris")
        self.assertEqual(
            config.get_proxy(self.config_path),
            {"http": "http://127.0.0.1:8080", "https": "http://127.0.0.1:8080"},
        )

    def test_environment_overrides_config_file(self):
        self._write()
        os.environ["RE_METAAI_LOCALE"] = "de-DE"
        os.environ["RE_METAAI_COOKIE_CACHE"] = "/tmp/other-cookies.json"
        self.assertEqual(config.get_default_locale(self.config_path), "de-DE")
        self.assertEqual(
            config.get_cookie_cache_path(self.config_path), Path("/tmp/other-cookies.json")
        )

    def test_placeholders_are_ignored(self):
        self._write(email="YOUR_EMAIL", password="YOUR_PASSWORD")
        self.assertEqual(config.get_credentials(self.config_path), (None, None))

    def test_half_configured_credentials_are_ignored(self):
        os.environ["RE_METAAI_EMAIL"] = "user@example.com"
        self.assertEqual(config.get_credentials(self.config_path), (None, None))

    def test_timezone_from_tz_variable(self):
        os.environ["TZ"] = ":America/New_York"
        self.assertEqual(config.get_default_timezone(self.config_path), "America/New_York")

        os.environ["TZ"] = "EST5EDT"
        self.assertEqual(config.get_default_timezone(self.config_path), "UTC")
