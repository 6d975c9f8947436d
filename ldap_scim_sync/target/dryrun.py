"""
Dry-run wrappers for the target clients.

Reads are delegated to the real clients. Mutations are only logged and
return synthesized results with placeholder ids, so the rest of a run can
proceed exactly as it would against a live target.
"""

import logging
from typing import Dict, List

from ldap_scim_sync.models import TargetUser, TargetGroup, normalize_key
from ldap_scim_sync.target.base import NotFoundError

logger = logging.getLogger(__name__)

VIRTUAL_SUFFIX = '-virtual'
VIRTUAL_MEMBERSHIP_ID = 'virtual-membership-id'


def virtual_id(name: str) -> str:
    return f"{name}{VIRTUAL_SUFFIX}"


def is_virtual_id(entity_id: str) -> bool:
    return bool(entity_id) and entity_id.endswith(VIRTUAL_SUFFIX)


class DryRunSCIMClient:
    """
    SCIM client stand-in that never mutates the target.

    Users and groups "created" during the run are remembered so that later
    lookups of the same userName or displayName resolve to them.
    """

    def __init__(self, client):
        self.client = client
        self.users: Dict[str, TargetUser] = {}
        self.groups: Dict[str, TargetGroup] = {}

    def find_user_by_email(self, email: str) -> TargetUser:
        try:
            return self.client.find_user_by_email(email)
        except NotFoundError:
            user = self.users.get(normalize_key(email))
            if user is None:
                raise
            return user

    def find_group_by_display_name(self, display_name: str) -> TargetGroup:
        try:
            return self.client.find_group_by_display_name(display_name)
        except NotFoundError:
            group = self.groups.get(normalize_key(display_name))
            if group is None:
                raise
            return group

    def create_user(self, user: TargetUser) -> TargetUser:
        created = user.with_id(virtual_id(user.username))
        self.users[created.key] = created
        logger.info(f"DRY RUN: would create user '{user.username}' (active={user.active})")
        return created

    def update_user(self, user: TargetUser) -> TargetUser:
        logger.info(f"DRY RUN: would update user '{user.username}' (active={user.active})")
        return user

    def delete_user(self, user_id: str):
        logger.info(f"DRY RUN: would delete user {user_id}")

    def create_group(self, group: TargetGroup) -> TargetGroup:
        created = group.with_id(virtual_id(group.display_name))
        self.groups[created.key] = created
        logger.info(f"DRY RUN: would create group '{group.display_name}'")
        return created

    def update_group(self, group: TargetGroup) -> TargetGroup:
        logger.info(f"DRY RUN: would rename group {group.id} to '{group.display_name}'")
        return group

    def delete_group(self, group_id: str):
        logger.info(f"DRY RUN: would delete group {group_id}")

    def patch_group_membership(self, group_id: str, op: str, member_ids: List[str]):
        logger.info(f"DRY RUN: would {op} {len(member_ids)} members in group {group_id}")

    def get_service_provider_config(self) -> Dict:
        return self.client.get_service_provider_config()

    def close_connection(self):
        self.client.close_connection()


class DryRunIdentityStore:
    """Identity Store stand-in that never mutates the target."""

    def __init__(self, client):
        self.client = client

    def list_users(self) -> List[TargetUser]:
        return self.client.list_users()

    def list_groups(self) -> List[TargetGroup]:
        return self.client.list_groups()

    def list_groups_page(self) -> List[TargetGroup]:
        return self.client.list_groups_page()

    def list_group_memberships(self, group_id: str) -> List[str]:
        if is_virtual_id(group_id):
            return []
        return self.client.list_group_memberships(group_id)

    def get_group_membership_id(self, group_id: str, user_id: str) -> str:
        if is_virtual_id(group_id) or is_virtual_id(user_id):
            return VIRTUAL_MEMBERSHIP_ID
        return self.client.get_group_membership_id(group_id, user_id)

    def create_group_membership(self, group_id: str, user_id: str) -> str:
        logger.info(f"DRY RUN: would add user {user_id} to group {group_id}")
        return VIRTUAL_MEMBERSHIP_ID

    def delete_group_membership(self, membership_id: str):
        logger.info(f"DRY RUN: would delete group membership {membership_id}")

    def is_member_in_groups(self, user_id: str, group_ids: List[str]) -> Dict[str, bool]:
        result = {group_id: False for group_id in group_ids}
        if is_virtual_id(user_id):
            return result

        real_group_ids = [group_id for group_id in group_ids if not is_virtual_id(group_id)]
        if real_group_ids:
            result.update(self.client.is_member_in_groups(user_id, real_group_ids))
        return result

    def delete_user(self, user_id: str):
        logger.info(f"DRY RUN: would delete identity store user {user_id}")

    def delete_group(self, group_id: str):
        logger.info(f"DRY RUN: would delete identity store group {group_id}")
