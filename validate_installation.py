#!/usr/bin/env python3
"""
Validation script for LDAP SCIM Sync.

This script validates that all dependencies are installed correctly
and that the core modules import and behave as expected.
"""

import sys
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
    """Validate all required dependencies."""
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
        ("boto3", "boto3"),
        ("botocore", "botocore"),
    ]

    test_dependencies = [
        ("pytest", "pytest"),
        ("pytest-mock", "pytest_mock"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    print("\n  Test dependencies:")
    for pkg_name, import_name in test_dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "ldap_scim_sync.config",
        "ldap_scim_sync.main",
        "ldap_scim_sync.ldap_client",
        "ldap_scim_sync.notifications",
        "ldap_scim_sync.retry",
        "ldap_scim_sync.reconcile",
        "ldap_scim_sync.sync",
        "ldap_scim_sync.target.scim",
        "ldap_scim_sync.target.identitystore",
        "ldap_scim_sync.target.dryrun",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    """Validate key functionality without touching LDAP or the target."""
    print("\n=== Functionality Validation ===")

    try:
        from ldap_scim_sync.models import SourceUser, TargetUser
        from ldap_scim_sync.reconcile import compute_user_diff
        diff = compute_user_diff(
            [TargetUser(username='alice@example.com', id='1')],
            [SourceUser(id='a', email='alice@example.com'), SourceUser(id='b', email='bob@example.com')]
        )
        assert [u.username for u in diff.add] == ['bob@example.com']
        print("  ✓ Reconciliation engine")

        from ldap_scim_sync.batching import chunked
        assert [len(c) for c in chunked(list(range(250)))] == [100, 100, 50]
        print("  ✓ Membership batching")

        from ldap_scim_sync.retry import retry_call
        retry_call(lambda: "test", max_attempts=1, delay=0, exceptions=())
        print("  ✓ Retry mechanism")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    import subprocess

    result = subprocess.run([sys.executable, "-m", "ldap_scim_sync.main", "--help"],
                            capture_output=True, text=True)
    if result.returncode == 0:
        print("  ✓ Help command working")
        return True

    print("  ✗ Help command failed")
    return False


def main():
    """Run all validations."""
    print("LDAP SCIM Sync - Installation Validation")
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
        print("  1. Configure LDAP, SCIM and Identity Store settings in config.yaml")
        print("  2. Test with: ldap-scim-sync --health-check")
        print("  3. Preview changes with: ldap-scim-sync --dry-run")
        print("  4. Run sync: ldap-scim-sync")
        return 0

    print("✗ Some validations failed!")
    print("Please resolve the issues above before using the application.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
