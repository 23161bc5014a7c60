#!/usr/bin/env python3
"""
Unit tests for configuration loading and validation
Run with: python -m pytest test_config.py -v
"""

import json
import os
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import DEFAULTS, ConfigError, load_config, validate_config, with_defaults


class TestConfigValidation(unittest.TestCase):
    """Test configuration validation"""

    def setUp(self):
        with tempfile.NamedTemporaryFile(delete=False) as f:
            f.write(b'test_macaroon_data')
            self.macaroon_path = f.name

    def tearDown(self):
        os.unlink(self.macaroon_path)

    def valid_config(self):
        return with_defaults({
            "server": {"host": "127.0.0.1", "port": 8000},
            "lnd": {"node": "localhost:8080", "macaroon_path": self.macaroon_path},
        })

    def test_validate_config_valid(self):
        """Test valid configuration"""
        self.assertEqual(validate_config(self.valid_config()), [])

    def test_validate_config_invalid_port(self):
        """Test invalid port numbers"""
        for port in [0, 65536, "8000", None]:
            with self.subTest(port=port):
                cfg = self.valid_config()
                cfg["server"]["port"] = port
                errors = validate_config(cfg)
                self.assertTrue(any("server.port" in err for err in errors))

    def test_validate_config_missing_macaroon(self):
        cfg = self.valid_config()
        cfg["lnd"]["macaroon_path"] = "/nonexistent/admin.macaroon"
        errors = validate_config(cfg)
        self.assertTrue(any("Macaroon file not found" in err for err in errors))

        cfg["lnd"]["macaroon_path"] = ""
        errors = validate_config(cfg)
        self.assertIn("lnd.macaroon_path is required", errors)

    def test_validate_config_missing_tls_cert(self):
        cfg = self.valid_config()
        cfg["lnd"]["tls_cert_path"] = "/nonexistent/tls.cert"
        errors = validate_config(cfg)
        self.assertTrue(any("TLS certificate not found" in err for err in errors))

    def test_validate_config_invoice_limits(self):
        """Test cooldown and ceiling validation"""
        invalid = [
            ("cooldown_seconds", -1),
            ("cooldown_seconds", "60"),
            ("max_amount", 0),
            ("max_amount", True),
            ("charge_failed_attempts", "yes"),
        ]
        for key, value in invalid:
            with self.subTest(key=key, value=value):
                cfg = self.valid_config()
                cfg["invoice"][key] = value
                errors = validate_config(cfg)
                self.assertTrue(any(f"invoice.{key}" in err for err in errors))

    def test_validate_config_timeout(self):
        cfg = self.valid_config()
        cfg["lnd"]["timeout"] = 0
        self.assertIn("lnd.timeout must be a positive number of seconds", validate_config(cfg))

    def test_user_nodes_do_not_need_operator_node(self):
        cfg = with_defaults({"user_nodes": {"enabled": True, "allowed_nodes": ["node:8080"]}})
        self.assertEqual(validate_config(cfg), [])

    def test_user_nodes_allow_list_type(self):
        cfg = with_defaults({"user_nodes": {"enabled": True, "allowed_nodes": "node:8080"}})
        errors = validate_config(cfg)
        self.assertTrue(any("user_nodes.allowed_nodes" in err for err in errors))


class TestLoadConfig(unittest.TestCase):
    """Test reading the config file"""

    def _write(self, content):
        f = tempfile.NamedTemporaryFile("w", suffix=".json", delete=False)
        with f:
            f.write(content)
        self.addCleanup(os.unlink, f.name)
        return f.name

    def test_defaults_merged(self):
        path = self._write(json.dumps({"server": {"port": 9000}, "invoice": {"max_amount": 0.1}}))
        cfg = load_config(path)
        self.assertEqual(cfg["server"]["port"], 9000)
        self.assertEqual(cfg["server"]["host"], DEFAULTS["server"]["host"])
        self.assertEqual(cfg["invoice"]["max_amount"], 0.1)
        self.assertEqual(cfg["invoice"]["cooldown_seconds"], 60)
        self.assertFalse(cfg["user_nodes"]["enabled"])

    def test_defaults_not_mutated(self):
        with_defaults({"server": {"port": 1}})
        self.assertEqual(DEFAULTS["server"]["port"], 8000)

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            load_config("/nonexistent/config.json")

    def test_invalid_json(self):
        path = self._write("{not json")
        with self.assertRaises(ConfigError):
            load_config(path)

    def test_non_object(self):
        path = self._write("[1, 2]")
        with self.assertRaises(ConfigError):
            load_config(path)


def run_tests():
    """Run all tests"""
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    return 0 if result.wasSuccessful() else 1


if __name__ == '__main__':
    sys.exit(run_tests())
