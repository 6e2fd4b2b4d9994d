"""
Unit tests for configuration.
"""

import json
import os
import tempfile
import unittest
from argparse import Namespace
from datetime import datetime

from sdpctl.config import (
    DEFAULT_TIMEOUT,
    SdpctlConfig,
    default_config_dir,
    normalize_url,
    read_config_file,
)
from sdpctl.errors import ConfigError, TokenExpiredError


class TestSdpctlConfig(unittest.TestCase):
    """Test SdpctlConfig data model."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.environ = {"SDPCTL_CONFIG_DIR": self.tmp.name}

    def write_config(self, data):
        with open(os.path.join(self.tmp.name, "config.json"), "w") as f:
            f.write(data if isinstance(data, str) else json.dumps(data))

    def test_config_defaults(self):
        """Test default configuration values."""
        config = SdpctlConfig(url="https://ctrl:8443/admin", bearer="t")
        self.assertEqual(config.timeout, DEFAULT_TIMEOUT)
        self.assertEqual(config.throttle, 5)
        self.assertEqual(config.order_by, ["name"])
        self.assertFalse(config.no_interactive)
        self.assertEqual(config.admin_hostname, "ctrl")

    def test_config_from_args(self):
        """Test flags win over the environment, which wins over config.json."""
        self.write_config(
            {"url": "file.example.com", "bearer": "file-token", "api_version": 17}
        )
        self.environ["SDPCTL_BEARER"] = "env-token"
        args = Namespace(
            url="flag.example.com",
            bearer=None,
            timeout=3600,
            throttle=3,
            include=["site=a"],
            no_interactive=True,
            verbose=False,
        )
        config = SdpctlConfig.from_args(args, self.environ)

        self.assertEqual(config.url, "https://flag.example.com:8443/admin")
        self.assertEqual(config.bearer, "env-token")
        self.assertEqual(config.peer_version, 17)
        self.assertEqual(config.timeout, 3600)
        self.assertEqual(config.throttle, 3)
        self.assertEqual(config.include, ["site=a"])
        self.assertTrue(config.no_interactive)
        self.assertIsNone(config.token_expiry)

    def test_token_expiry_from_stored_login(self):
        self.write_config(
            {"url": "ctrl", "bearer": "t", "expires_at": "2030-01-01T10:00:00Z"}
        )
        config = SdpctlConfig.from_args(Namespace(), self.environ)
        self.assertEqual(config.token_expiry, datetime(2030, 1, 1, 10, 0, 0))

    def test_timeout_minimum(self):
        self.write_config({"url": "ctrl", "bearer": "t"})
        with self.assertLogs("sdpctl.config", level="WARNING"):
            config = SdpctlConfig.from_args(Namespace(timeout=60), self.environ)
        self.assertEqual(config.timeout, DEFAULT_TIMEOUT)

    def test_debug_environment(self):
        self.write_config({"url": "ctrl", "bearer": "t"})
        self.environ["SDPCTL_LOG_LEVEL"] = "DEBUG"
        self.assertTrue(SdpctlConfig.from_args(Namespace(), self.environ).verbose)

    def test_missing_url_or_token(self):
        with self.assertRaises(ConfigError):
            SdpctlConfig.from_args(Namespace(bearer="t"), self.environ)
        with self.assertRaises(ConfigError):
            SdpctlConfig.from_args(Namespace(url="ctrl"), self.environ)

    def test_invalid_config_file(self):
        self.write_config("{not json")
        with self.assertRaises(ConfigError):
            read_config_file(self.tmp.name)

    def test_empty_config_file(self):
        self.write_config("  ")
        self.assertEqual(read_config_file(self.tmp.name), {})

    def test_default_config_dir(self):
        self.assertEqual(default_config_dir({"XDG_CONFIG_HOME": "/xdg"}), "/xdg/sdpctl")

    def test_normalize_url(self):
        self.assertEqual(normalize_url("ctrl.example.com"), "https://ctrl.example.com:8443/admin")
        self.assertEqual(
            normalize_url("https://ctrl.example.com:444/admin/"), "https://ctrl.example.com:444/admin"
        )
        with self.assertRaises(ConfigError):
            normalize_url("")

    def test_ensure_token_valid(self):
        """Test a token expiring before the deadline is rejected."""
        config = SdpctlConfig(
            url="https://ctrl:8443/admin", bearer="t", token_expiry=datetime(2030, 1, 1, 10, 0)
        )
        config.ensure_token_valid(1800, now=datetime(2030, 1, 1, 9, 0))
        with self.assertRaises(TokenExpiredError):
            config.ensure_token_valid(1800, now=datetime(2030, 1, 1, 9, 45))


if __name__ == "__main__":
    unittest.main()
