#!/usr/bin/env python3
import copy
import json
import os

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.json")

DEFAULTS = {
    "server": {
        "host": "0.0.0.0",
        "port": 8000,
        "log_file": "",
        "max_body_bytes": 64 * 1024,
    },
    "lnd": {
        "node": "localhost:8080",
        "macaroon_path": "",
        "tls_cert_path": "",
        "verify_ssl": True,
        "timeout": 30,
        "node_addr": "",
    },
    "tor": {
        "proxy": "",
    },
    "invoice": {
        "cooldown_seconds": 60,
        "max_amount": 0.2,
        "charge_failed_attempts": True,
    },
    "user_nodes": {
        "enabled": False,
        "allowed_nodes": [],
    },
}


class ConfigError(Exception):
    """Raised when the config file cannot be read"""


def with_defaults(cfg):
    """Return a copy of cfg with every missing key filled from DEFAULTS"""
    merged = copy.deepcopy(DEFAULTS)
    for section, values in (cfg or {}).items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def load_config(path=DEFAULT_CONFIG_PATH):
    try:
        with open(path, "r") as f:
            cfg = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigError("Config file must contain a JSON object")
    return with_defaults(cfg)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(cfg):
    """Validate configuration values"""
    errors = []

    server_port = cfg.get("server", {}).get("port")
    if not isinstance(server_port, int) or not (1 <= server_port <= 65535):
        errors.append("server.port must be an integer between 1 and 65535")

    max_body = cfg.get("server", {}).get("max_body_bytes")
    if not isinstance(max_body, int) or max_body < 1024:
        errors.append("server.max_body_bytes must be an integer of at least 1024")

    user_nodes = cfg.get("user_nodes", {}).get("enabled", False)
    if not isinstance(user_nodes, bool):
        errors.append("user_nodes.enabled must be true or false")

    allowed_nodes = cfg.get("user_nodes", {}).get("allowed_nodes", [])
    if not isinstance(allowed_nodes, list) or not all(isinstance(n, str) for n in allowed_nodes):
        errors.append("user_nodes.allowed_nodes must be a list of host:port strings")

    lnd = cfg.get("lnd", {})
    # The operator's node is only needed when visitors cannot bring their own
    if user_nodes is not True:
        if not lnd.get("node"):
            errors.append("lnd.node is required")

        macaroon_path = lnd.get("macaroon_path", "")
        if not macaroon_path:
            errors.append("lnd.macaroon_path is required")
        elif not os.path.exists(macaroon_path):
            errors.append(f"Macaroon file not found: {macaroon_path}")

        tls_cert_path = lnd.get("tls_cert_path", "")
        if tls_cert_path and not os.path.exists(tls_cert_path):
            errors.append(f"TLS certificate not found: {tls_cert_path}")

    timeout = lnd.get("timeout")
    if not _is_number(timeout) or timeout <= 0:
        errors.append("lnd.timeout must be a positive number of seconds")

    cooldown = cfg.get("invoice", {}).get("cooldown_seconds")
    if not _is_number(cooldown) or cooldown < 0:
        errors.append("invoice.cooldown_seconds must be a non-negative number")

    max_amount = cfg.get("invoice", {}).get("max_amount")
    if not _is_number(max_amount) or max_amount <= 0:
        errors.append("invoice.max_amount must be a positive number of DCR")

    if not isinstance(cfg.get("invoice", {}).get("charge_failed_attempts"), bool):
        errors.append("invoice.charge_failed_attempts must be true or false")

    return errors
