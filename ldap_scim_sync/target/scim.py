"""
SCIM 2.0 client for the target directory.

Implements user and group CRUD, filtered lookups and bulk membership PATCH
requests on top of ``TargetAPIBase``. Conversion between SCIM resources and
``TargetUser``/``TargetGroup`` happens here and nowhere else.
"""

import logging
from typing import Dict, List, Any, Optional

from ldap_scim_sync.models import (
    SCIM_SCHEMA_USER, SCIM_SCHEMA_GROUP, TargetUser, TargetGroup
)
from ldap_scim_sync.target.base import (
    TargetAPIBase, NotFoundError, AmbiguousError, ProtocolError
)

logger = logging.getLogger(__name__)

SCIM_SCHEMA_PATCH_OP = 'urn:ietf:params:scim:api:messages:2.0:PatchOp'


def _filter_value(value: str) -> str:
    """Quote a value for use in a SCIM ``eq`` filter."""
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


def user_to_scim(user: TargetUser) -> Dict[str, Any]:
    """Serialize a TargetUser into a SCIM User resource."""
    resource = {
        'schemas': [SCIM_SCHEMA_USER],
        'userName': user.username,
        'name': {
            'givenName': user.given_name,
            'familyName': user.family_name,
        },
        'displayName': user.display_name,
        'active': user.active,
        'emails': list(user.emails),
        'addresses': list(user.addresses),
    }
    if user.id:
        resource['id'] = user.id
    if user.external_id:
        resource['externalId'] = user.external_id
    return resource


def user_from_scim(resource: Dict[str, Any]) -> TargetUser:
    """Parse a SCIM User resource into a TargetUser."""
    name = resource.get('name') or {}
    return TargetUser(
        username=resource.get('userName', ''),
        given_name=name.get('givenName', ''),
        family_name=name.get('familyName', ''),
        display_name=resource.get('displayName', ''),
        active=resource.get('active', True),
        id=resource.get('id'),
        external_id=resource.get('externalId'),
        emails=resource.get('emails') or [],
        addresses=resource.get('addresses') or [],
    )


def group_from_scim(resource: Dict[str, Any]) -> TargetGroup:
    """Parse a SCIM Group resource into a TargetGroup."""
    return TargetGroup(
        display_name=resource.get('displayName', ''),
        id=resource.get('id'),
        external_id=resource.get('externalId'),
        members=[member.get('value') for member in resource.get('members') or [] if member.get('value')],
    )


class SCIMClient(TargetAPIBase):
    """
    SCIM 2.0 client.

    Lookups that must resolve to exactly one entity raise ``NotFoundError``
    for zero results and ``AmbiguousError`` for more than one.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        super().__init__(config, error_handling)
        logger.info(f"Initialized SCIM client for {self.base_url}")

    def _find_one(self, resource_type: str, attribute: str, value: str) -> Dict[str, Any]:
        operation = f"find {resource_type} by {attribute}"
        response = self.request(
            'GET', f'/{resource_type}',
            params={'filter': f'{attribute} eq {_filter_value(value)}'},
            operation=operation
        )

        resources = response.get('Resources') or []
        if not resources:
            raise NotFoundError(f"{operation}: no match for '{value}'", operation=operation)
        if len(resources) > 1:
            raise AmbiguousError(f"{operation}: {len(resources)} matches for '{value}'", operation=operation)
        return resources[0]

    def find_user_by_email(self, email: str) -> TargetUser:
        """
        Look up a user by userName (the primary email).

        Raises:
            NotFoundError: No user matched
            AmbiguousError: More than one user matched
        """
        return user_from_scim(self._find_one('Users', 'userName', email))

    def find_group_by_display_name(self, display_name: str) -> TargetGroup:
        """
        Look up a group by displayName.

        Raises:
            NotFoundError: No group matched
            AmbiguousError: More than one group matched
        """
        return group_from_scim(self._find_one('Groups', 'displayName', display_name))

    def create_user(self, user: TargetUser) -> TargetUser:
        """
        Create a user and return it with the target-assigned id.

        Raises:
            ConflictError: The user already exists
        """
        payload = user_to_scim(user)
        payload.pop('id', None)
        response = self.request('POST', '/Users', body=payload, operation='create user')
        created = user_from_scim(response)
        if not created.id:
            raise ProtocolError(f"create user: response for '{user.username}' has no id",
                                operation='create user')
        logger.info(f"Created user '{user.username}' with id {created.id}")
        return created

    def update_user(self, user: TargetUser) -> TargetUser:
        """
        Replace a user's attributes.

        Raises:
            NotFoundError: The user id no longer exists
        """
        if not user.id:
            raise ValueError(f"Cannot update user '{user.username}' without an id")

        response = self.request('PUT', f'/Users/{user.id}', body=user_to_scim(user),
                                operation='update user')
        logger.info(f"Updated user '{user.username}' (active={user.active})")
        return user_from_scim(response) if response else user

    def delete_user(self, user_id: str):
        """Delete a user by id."""
        self.request('DELETE', f'/Users/{user_id}', operation='delete user')
        logger.info(f"Deleted user {user_id}")

    def create_group(self, group: TargetGroup) -> TargetGroup:
        """Create a group (without members) and return it with its id."""
        payload = {
            'schemas': [SCIM_SCHEMA_GROUP],
            'displayName': group.display_name,
            'members': [],
        }
        if group.external_id:
            payload['externalId'] = group.external_id

        response = self.request('POST', '/Groups', body=payload, operation='create group')
        created = group_from_scim(response)
        if not created.id:
            raise ProtocolError(f"create group: response for '{group.display_name}' has no id",
                                operation='create group')
        if not created.external_id:
            created.external_id = group.external_id
        logger.info(f"Created group '{group.display_name}' with id {created.id}")
        return created

    def update_group(self, group: TargetGroup) -> TargetGroup:
        """Rename a group to ``group.display_name``."""
        if not group.id:
            raise ValueError(f"Cannot update group '{group.display_name}' without an id")

        body = {
            'schemas': [SCIM_SCHEMA_PATCH_OP],
            'Operations': [
                {'op': 'replace', 'path': 'displayName', 'value': group.display_name}
            ],
        }
        self.request('PATCH', f'/Groups/{group.id}', body=body, operation='update group')
        logger.info(f"Renamed group {group.id} to '{group.display_name}'")
        return group

    def delete_group(self, group_id: str):
        """Delete a group by id."""
        self.request('DELETE', f'/Groups/{group_id}', operation='delete group')
        logger.info(f"Deleted group {group_id}")

    def patch_group_membership(self, group_id: str, op: str, member_ids: List[str]):
        """
        Add or remove members of a group in one PATCH request.

        Callers chunk ``member_ids`` with ``batching.apply_member_batches``;
        one request carries a single operation kind.
        """
        body = {
            'schemas': [SCIM_SCHEMA_PATCH_OP],
            'Operations': [
                {
                    'op': op,
                    'path': 'members',
                    'value': [{'value': member_id} for member_id in member_ids],
                }
            ],
        }
        self.request('PATCH', f'/Groups/{group_id}', body=body, operation=f'{op} group members')
        logger.debug(f"Patched group {group_id}: {op} {len(member_ids)} members")

    def get_service_provider_config(self) -> Dict[str, Any]:
        """Fetch ``/ServiceProviderConfig``; used by the health check."""
        return self.request('GET', '/ServiceProviderConfig', operation='service provider config')
