#!/usr/bin/env python3
"""
Validation script for LDAP User Watch.

Checks that dependencies import, that the package modules load, and that
the core pieces work against a throwaway configuration and ledger.
"""

import os
import sys
import shutil
import tempfile
import importlib


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
    ]
    test_dependencies = [
        ("pytest", "pytest"),
        ("pytest-mock", "pytest_mock"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        all_ok = all_ok and ok

    print("\n  Test dependencies:")
    for pkg_name, import_name in test_dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    print("\n=== Core Module Validation ===")

    modules = [
        "ldap_watch.config",
        "ldap_watch.logging_setup",
        "ldap_watch.retry",
        "ldap_watch.ldap_client",
        "ldap_watch.events",
        "ldap_watch.ledger",
        "ldap_watch.verifier",
        "ldap_watch.subscriber",
        "ldap_watch.engine",
        "ldap_watch.seed",
        "ldap_watch.notifications",
        "ldap_watch.actions.command",
        "ldap_watch.actions.webhook",
        "ldap_watch.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_functionality():
    print("\n=== Functionality Validation ===")

    temp_dir = tempfile.mkdtemp()
    try:
        from ldap_watch.ledger import Ledger
        from ldap_watch.seed import seed_ledger
        from ldap_watch.events import ChangeEvent
        from ldap_watch.actions import load_action
        from ldap_watch.retry import retry_call

        with Ledger(os.path.join(temp_dir, 'ledger.db')) as ledger:
            seed_ledger(ledger, ['existing'])
            ledger.mark_reacted('newhire')
            assert ledger.exists('existing') and not ledger.has_reacted('existing')
            assert ledger.has_reacted('newhire')
        print("  ✓ Ledger and seeding")

        event = ChangeEvent.from_ldap_response({
            'dn': 'CN=newhire,DC=example,DC=com',
            'attributes': {'objectClass': ['user'], 'sAMAccountName': 'newhire'}
        })
        assert event.is_object_of_class('user') and event.account_id() == 'newhire'
        print("  ✓ Change event decoding")

        load_action({'module': 'command', 'command': ['true', '{account}']})
        load_action({'module': 'webhook', 'url': 'https://hooks.example.com/new-user'})
        print("  ✓ Action module loading")

        retry_call(lambda: "test", max_attempts=1, delay=0)
        print("  ✓ Retry mechanism")
        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


def validate_cli():
    print("\n=== CLI Validation ===")

    import subprocess

    result = subprocess.run([sys.executable, "-m", "ldap_watch.main", "--help"],
                            capture_output=True, text=True)
    if result.returncode == 0:
        print("  ✓ Help command working")
        return True
    print(f"  ✗ Help command failed: {result.stderr.strip()}")
    return False


def main():
    print("LDAP User Watch - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and fill in your directory and action")
        print("  2. Test with: python -m ldap_watch.main --health-check")
        print("  3. Test email with: python -m ldap_watch.main --test-email")
        print("  4. Start watching: python -m ldap_watch.main")
        return 0

    print("✗ Some validations failed!")
    print("Please resolve the issues above before using the application.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
