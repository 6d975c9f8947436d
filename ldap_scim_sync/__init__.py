"""
LDAP SCIM Sync - Keep a SCIM identity directory in step with an LDAP directory.

This package reconciles users, groups and group memberships read from an LDAP
directory into a SCIM 2.0 target (such as AWS IAM Identity Center), using the
target's Identity Store API for paginated listings and membership checks.
"""

__version__ = "1.0.0"
__author__ = "LDAP SCIM Sync Team"
