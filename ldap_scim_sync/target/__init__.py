"""
Target directory adapters.

``scim`` talks to the SCIM 2.0 endpoint, ``identitystore`` to the Identity
Store API, and ``dryrun`` wraps both so that mutations are only logged.
"""
