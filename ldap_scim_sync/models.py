"""
Value objects shared by the source client, the target clients and the
reconciliation engine.

Snapshots built from these types are recreated on every run; nothing here is
persisted between runs.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

SCIM_SCHEMA_USER = 'urn:ietf:params:scim:schemas:core:2.0:User'
SCIM_SCHEMA_GROUP = 'urn:ietf:params:scim:schemas:core:2.0:Group'

MEMBER_USER = 'USER'
MEMBER_GROUP = 'GROUP'


def normalize_key(value: Optional[str]) -> str:
    """Return the correlation key for an email/username or group name."""
    return (value or '').strip().lower()


@dataclass
class SourceUser:
    """A user as read from the source directory."""

    id: str
    email: str
    dn: str = ''
    username: str = ''
    given_name: str = ''
    family_name: str = ''
    suspended: bool = False

    @property
    def key(self) -> str:
        return normalize_key(self.email or self.username)


@dataclass
class SourceGroup:
    """A group as read from the source directory."""

    id: str
    name: str
    dn: str = ''
    email: str = ''
    description: str = ''

    @property
    def key(self) -> str:
        return normalize_key(self.name)


@dataclass
class SourceMember:
    """A direct member entry of a source group, either a user or a nested group."""

    dn: str
    kind: str = MEMBER_USER
    user: Optional[SourceUser] = None


@dataclass
class TargetUser:
    """Canonical target-side user shared by the SCIM and Identity Store adapters."""

    username: str
    given_name: str = ''
    family_name: str = ''
    display_name: str = ''
    active: bool = True
    id: Optional[str] = None
    external_id: Optional[str] = None
    emails: List[Dict] = field(default_factory=list)
    addresses: List[Dict] = field(default_factory=list)

    @property
    def key(self) -> str:
        return normalize_key(self.username)

    @classmethod
    def from_source(cls, source: SourceUser, user_id: Optional[str] = None) -> 'TargetUser':
        """
        Build the target representation of a source user.

        ``active`` is the logical inverse of the source ``suspended`` flag.
        """
        email = source.email or source.username
        return cls(
            username=email,
            given_name=source.given_name,
            family_name=source.family_name,
            display_name=' '.join(part for part in (source.given_name, source.family_name) if part),
            active=not source.suspended,
            id=user_id,
            external_id=source.id,
            emails=[{'value': email, 'type': 'work', 'primary': True}],
            addresses=[{'type': 'work'}],
        )

    def with_id(self, user_id: str) -> 'TargetUser':
        return replace(self, id=user_id)


@dataclass
class TargetGroup:
    """Canonical target-side group."""

    display_name: str
    id: Optional[str] = None
    external_id: Optional[str] = None
    members: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return normalize_key(self.display_name)

    @classmethod
    def from_source(cls, source: SourceGroup) -> 'TargetGroup':
        return cls(display_name=source.name, external_id=source.id)

    def with_id(self, group_id: str) -> 'TargetGroup':
        return replace(self, id=group_id)
