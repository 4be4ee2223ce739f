import os
import unittest
from unittest import mock

from anonbridge.config import BridgeConfig, load_config_from_env


class ConfigTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config_from_env()

        self.assertEqual(config, BridgeConfig())
        self.assertEqual(config.handle_space, 899)
        self.assertEqual(config.store_timeout_s, 5.0)
        self.assertEqual(config.session_ttl_ms, 3_600_000)

    def test_overrides(self):
        env = {
            "ANONBRIDGE_DB_PATH": "/tmp/x.db",
            "ANONBRIDGE_STORE_TIMEOUT_MS": "250",
            "ANONBRIDGE_STORE_RETRIES": "0",
            "ANONBRIDGE_HANDLE_MIN": "10",
            "ANONBRIDGE_HANDLE_MAX": "20",
            "ANONBRIDGE_REPORTS_PER_MIN": "3",
            "ANONBRIDGE_LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config_from_env()

        self.assertEqual(config.db_path, "/tmp/x.db")
        self.assertEqual(config.store_timeout_ms, 250)
        self.assertEqual(config.store_retries, 0)
        self.assertEqual((config.handle_min, config.handle_max), (10, 20))
        self.assertEqual(config.reports_per_min, 3)
        self.assertEqual(config.log_level, "DEBUG")

    def test_malformed_values_raise(self):
        cases = [
            {"ANONBRIDGE_STORE_TIMEOUT_MS": "soon"},
            {"ANONBRIDGE_STORE_TIMEOUT_MS": "0"},
            {"ANONBRIDGE_STORE_RETRIES": "-1"},
            {"ANONBRIDGE_HANDLE_MIN": "50", "ANONBRIDGE_HANDLE_MAX": "40"},
            {"ANONBRIDGE_LOG_LEVEL": "chatty"},
        ]
        for env in cases:
            with self.subTest(env=env), mock.patch.dict(os.environ, env, clear=True):
                with self.assertRaises(ValueError):
                    load_config_from_env()


if __name__ == "__main__":
    unittest.main()
