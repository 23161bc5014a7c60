#!/usr/bin/env python3
"""
Installation verification script for the Decred Lightning invoice server
Checks that all dependencies and configuration are correct
"""

import importlib
import json
import os
import sys

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.path.join(BASE_DIR, "config.json")
REQUIRED_MODULES = ["requests", "urllib3", "jinja2"]


def check_python_version():
    """Verify Python version is 3.8+"""
    if sys.version_info < (3, 8):
        print("❌ Python 3.8+ required")
        print(f"   Current version: {sys.version}")
        return False
    print(f"✅ Python version: {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}")
    return True


def check_dependencies(modules=REQUIRED_MODULES):
    """Check if required Python packages are installed"""
    ok = True
    for name in modules:
        try:
            module = importlib.import_module(name)
        except ImportError:
            print(f"❌ {name} module not installed")
            print("   Run: pip install -e .")
            ok = False
            continue
        version = getattr(module, "__version__", "unknown")
        print(f"✅ {name} module installed (version {version})")
    return ok


def _load_config(config_path):
    with open(config_path, 'r') as f:
        return json.load(f)


def check_config_file(config_path=CONFIG_PATH):
    """Verify config.json exists and is valid"""
    if not os.path.exists(config_path):
        print(f"❌ {os.path.basename(config_path)} not found")
        print("   Run: cp config.json.example config.json")
        return False

    try:
        config = _load_config(config_path)
    except json.JSONDecodeError as e:
        print(f"❌ config file is invalid JSON: {e}")
        return False
    print("✅ config file found and valid JSON")

    from config import validate_config, with_defaults
    errors = validate_config(with_defaults(config))
    if errors:
        for error in errors:
            print(f"⚠️  {error}")
        return False

    print("✅ Configuration values valid")
    return True


def check_credential_files(config_path=CONFIG_PATH):
    """Verify the macaroon and TLS certificate files are readable"""
    if not os.path.exists(config_path):
        print("⚠️  Skipping credential check (no config file)")
        return True

    try:
        lnd = _load_config(config_path).get("lnd", {})
    except (OSError, ValueError) as e:
        print(f"⚠️  Could not read config: {e}")
        return True

    ok = True
    for label, key in (("Macaroon", "macaroon_path"), ("TLS certificate", "tls_cert_path")):
        path = lnd.get(key, "")
        if not path:
            print(f"⚠️  {label} path not configured")
            continue
        try:
            with open(path, 'rb') as f:
                data = f.read()
        except FileNotFoundError:
            print(f"❌ {label} file not found: {path}")
            ok = False
            continue
        except PermissionError:
            print(f"❌ Cannot read {label.lower()} file (permission denied): {path}")
            ok = False
            continue
        if not data:
            print(f"❌ {label} file is empty: {path}")
            ok = False
            continue
        print(f"✅ {label} file readable ({len(data)} bytes)")
    return ok


def check_templates():
    """Verify the page template compiles"""
    try:
        from pages import Pages
        Pages()
    except Exception as e:
        print(f"❌ Page template could not be loaded: {e}")
        return False
    print("✅ Page template compiles")
    return True


def main():
    print("=" * 60)
    print("Decred Lightning invoice server - Installation Verification")
    print("=" * 60)
    print()

    checks = [
        ("Python Version", check_python_version),
        ("Dependencies", check_dependencies),
        ("Configuration File", check_config_file),
        ("Credential Files", check_credential_files),
        ("Templates", check_templates),
    ]

    results = []
    for name, check_func in checks:
        print(f"\nChecking {name}...")
        results.append(check_func())

    print("\n" + "=" * 60)

    if all(results):
        print("✅ All checks passed! Server is ready to start.")
        print("\nTo start the server, run:")
        print("  python server.py --config config.json")
        return 0
    else:
        print("❌ Some checks failed. Please fix the issues above.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
