"""
Directory synchronization.

``DirectorySync`` builds fresh snapshots of the LDAP source and the target
directory, asks the reconciliation engine for the differences and applies
them to the target in dependency order:

1. delete users that left the source
2. update users whose state or names drifted
3. create new users
4. rename groups, first deleting stale groups that hold a new name
5. create new groups with their initial members
6. reconcile the members of existing and renamed groups
7. delete the remaining groups that left the source

All user changes finish before any group change is made. A group created
in step 5 never resolves to a group that another source group owns. Failed
mutations are handled according to ``sync.on_error``.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Any, Optional, Set, Tuple

from ldap3.utils.conv import escape_filter_chars

from ldap_scim_sync.batching import apply_member_batches, BatchApplyError, OP_ADD, OP_REMOVE
from ldap_scim_sync.config import SYNC_METHOD_USERS_GROUPS, ON_ERROR_ABORT
from ldap_scim_sync.logging_setup import audit_logger
from ldap_scim_sync.mapping import AttributeMapper
from ldap_scim_sync.models import (
    SourceUser, SourceGroup, TargetUser, TargetGroup, normalize_key
)
from ldap_scim_sync.reconcile import (
    compute_user_diff, compute_group_diff, compute_group_membership_diff
)
from ldap_scim_sync.retry import MaxRetriesExceeded, is_retryable_error
from ldap_scim_sync.target.base import (
    TargetAPIError, TargetAuthenticationError, NotFoundError, AmbiguousError, ConflictError
)

logger = logging.getLogger(__name__)

# Errors that end the run regardless of the failure policy
FATAL_ERRORS = (AmbiguousError, TargetAuthenticationError, MaxRetriesExceeded)


class SyncAbortedError(Exception):
    """Raised when the failure policy stops the run."""

    def __init__(self, message: str, report: 'SyncReport'):
        self.report = report
        super().__init__(message)


@dataclass
class SyncReport:
    """Counters and failures collected during one run."""

    method: str = 'groups'
    dry_run: bool = False
    users_created: int = 0
    users_updated: int = 0
    users_deleted: int = 0
    groups_created: int = 0
    groups_renamed: int = 0
    groups_deleted: int = 0
    members_added: int = 0
    members_removed: int = 0
    errors: List[str] = field(default_factory=list)
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.method,
            'dry_run': self.dry_run,
            'users_created': self.users_created,
            'users_updated': self.users_updated,
            'users_deleted': self.users_deleted,
            'groups_created': self.groups_created,
            'groups_renamed': self.groups_renamed,
            'groups_deleted': self.groups_deleted,
            'members_added': self.members_added,
            'members_removed': self.members_removed,
            'errors': len(self.errors),
            'aborted': self.aborted,
        }


def _or_filter(clauses: List[str]) -> Optional[str]:
    clauses = [clause if clause.startswith('(') else f"({clause})" for clause in clauses if clause]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return f"(|{''.join(clauses)})"


def _order_renames(renames: List[TargetGroup], target_groups: List[TargetGroup],
                   removed_ids: Set[str]) -> List[TargetGroup]:
    """
    Order renames so that a group takes a name only after the group holding
    it has moved away. Renames caught in a cycle keep their sorted order.
    """
    holders = {group.key: group.id for group in target_groups if group.id not in removed_ids}
    current_keys = {group.id: group.key for group in target_groups}

    pending = list(renames)
    ordered = []
    while pending:
        ready_ids = {group.id for group in pending if holders.get(group.key) in (None, group.id)}
        if not ready_ids:
            ordered.extend(pending)
            break
        for group in pending:
            if group.id in ready_ids:
                holders.pop(current_keys.get(group.id), None)
                holders[group.key] = group.id
                ordered.append(group)
        pending = [group for group in pending if group.id not in ready_ids]
    return ordered


class DirectorySync:
    """
    Applies the differences between the LDAP source and the target.

    Args:
        config: Full application configuration
        source: LDAPClient (connected)
        scim: SCIMClient or DryRunSCIMClient
        identity_store: IdentityStoreClient or DryRunIdentityStore
        mapper: Attribute mapper applied before users are written
    """

    def __init__(self, config: Dict[str, Any], source, scim, identity_store,
                 mapper: Optional[AttributeMapper] = None):
        self.config = config
        self.source = source
        self.scim = scim
        self.identity_store = identity_store
        self.mapper = mapper or AttributeMapper()

        sync_config = config.get('sync', {})
        self.method = sync_config.get('method', 'groups')
        self.dry_run = sync_config.get('dry_run', False)
        self.on_error = sync_config.get('on_error', ON_ERROR_ABORT)
        self.max_errors = sync_config.get('max_errors', 10)
        self.batch_size = sync_config.get('membership_batch_size', 100)
        self.user_match = sync_config.get('user_match', '') or ''
        self.group_match = sync_config.get('group_match', '') or ''
        self.include_users = sync_config.get('include_users') or []
        self.include_groups = sync_config.get('include_groups') or []
        self.ignore_users = {normalize_key(u) for u in sync_config.get('ignore_users') or []}
        self.ignore_groups = {normalize_key(g) for g in sync_config.get('ignore_groups') or []}

        self.report = SyncReport(method=self.method, dry_run=self.dry_run)

        # Target users resolved by the users_groups method, by correlation key
        self.users: Dict[str, TargetUser] = {}

    def run(self) -> SyncReport:
        """Run the configured sync method and return the report."""
        logger.info(f"Syncing with method '{self.method}' (dry_run={self.dry_run})")

        if self.method == SYNC_METHOD_USERS_GROUPS:
            self.sync_users()
            self.sync_groups()
        else:
            self.sync_groups_users()

        logger.info("Sync completed")
        return self.report

    # Failure handling

    def _apply(self, operation: str, entity: str, func: Callable[[], Any]) -> Any:
        """
        Run one target mutation under the failure policy.

        Returns the mutation's result, or None when the failure was recorded
        and the run continues.
        """
        try:
            result = func()
        except Exception as e:
            audit_logger.log_mutation(operation, entity, self.dry_run, False, str(e))

            cause = e.cause if isinstance(e, BatchApplyError) else e
            if not isinstance(e, (TargetAPIError, BatchApplyError)):
                raise
            # Transient errors reaching this point have exhausted their retries
            if isinstance(cause, FATAL_ERRORS) or is_retryable_error(cause):
                raise

            self._record_error(f"{operation} {entity}: {e}", e)
            return None

        audit_logger.log_mutation(operation, entity, self.dry_run, True)
        return result

    def _record_error(self, message: str, error: Exception):
        self.report.errors.append(message)
        logger.error(message)

        if self.on_error == ON_ERROR_ABORT:
            self.report.aborted = True
            raise SyncAbortedError(f"Sync aborted: {message}", self.report) from error

        if len(self.report.errors) >= self.max_errors:
            self.report.aborted = True
            raise SyncAbortedError(
                f"Sync aborted after {len(self.report.errors)} errors (max_errors={self.max_errors})",
                self.report
            ) from error

    # Source snapshot

    def _ignore_user(self, user: SourceUser) -> bool:
        return user.key in self.ignore_users or normalize_key(user.username) in self.ignore_users

    def _ignore_group(self, group: SourceGroup) -> bool:
        return group.key in self.ignore_groups or (group.email and normalize_key(group.email) in self.ignore_groups)

    def _source_users(self) -> List[SourceUser]:
        """
        List standalone source users selected by user_match and include_users.

        Each include_users entry is looked up on its own, so a missing user
        is reported by name.
        """
        if self.user_match == '*':
            users = list(self.source.list_users())
        elif self.user_match:
            users = list(self.source.list_users(_or_filter([self.user_match])))
        else:
            users = []

        if self.user_match != '*':
            for email in self.include_users:
                user = self.source.get_user(email)
                if user is None:
                    logger.warning(f"Included user {email} not found in LDAP")
                    continue
                users.append(user)

        if not self.user_match and not self.include_users:
            logger.info("No user_match configured; users are taken from group membership only")

        selected = {}
        for user in users:
            if self._ignore_user(user):
                logger.debug(f"Ignoring user {user.key}")
                continue
            selected[user.key] = user
        return list(selected.values())

    def _source_groups(self) -> List[SourceGroup]:
        """List source groups selected by group_match and include_groups."""
        if self.group_match == '*':
            groups = self.source.list_groups()
        else:
            clauses = [self.group_match]
            clauses.extend(f"({self.source.group_name_attribute}={escape_filter_chars(name)})"
                           for name in self.include_groups)
            search_filter = _or_filter(clauses)
            if search_filter is None:
                logger.info("No group_match configured; no groups will be synced")
                return []
            groups = self.source.list_groups(search_filter)

        selected = []
        for group in groups:
            if self._ignore_group(group):
                logger.debug(f"Ignoring group {group.name}")
                continue
            selected.append(group)
        return selected

    def _group_members(self, group: SourceGroup) -> List[SourceUser]:
        members = {}
        for member in self.source.list_group_members(group):
            user = member.user
            if user is None or not user.key or self._ignore_user(user):
                continue
            members[user.key] = user
        return list(members.values())

    def _source_snapshot(self) -> Tuple[List[SourceGroup], List[SourceUser], Dict[str, List[SourceUser]]]:
        """
        Read groups, users and flattened group membership from LDAP.

        Members of synced groups are synced as users even when user_match
        does not select them.
        """
        logger.info("Retrieving source directory")
        groups = self._source_groups()

        users = {user.key: user for user in self._source_users()}
        memberships = {}

        for group in groups:
            members = self._group_members(group)
            for user in members:
                users[user.key] = user
            memberships[group.key] = members

        logger.info(f"Source directory: {len(users)} users, {len(groups)} groups")
        return groups, list(users.values()), memberships

    # Target snapshot

    def _target_users(self) -> List[TargetUser]:
        """
        List target users with their active flag.

        The Identity Store API does not expose ``active``, so it is read from
        SCIM for each user.
        """
        users = []
        for user in self.identity_store.list_users():
            if user.key in self.ignore_users:
                continue
            try:
                user.active = self.scim.find_user_by_email(user.username).active
            except NotFoundError:
                logger.warning(f"No SCIM user for identity store user {user.username}; assuming active")
            users.append(user)
        return users

    def _target_snapshot(self) -> Tuple[List[TargetGroup], List[TargetUser], Dict[str, List[TargetUser]]]:
        logger.info("Retrieving target directory")
        groups = [group for group in self.identity_store.list_groups() if group.key not in self.ignore_groups]
        users = self._target_users()

        users_by_id = {user.id: user for user in users}
        memberships = {}

        for group in groups:
            group.members = self.identity_store.list_group_memberships(group.id)
            memberships[group.key] = [users_by_id[user_id] for user_id in group.members if user_id in users_by_id]

        logger.info(f"Target directory: {len(users)} users, {len(groups)} groups")
        return groups, users, memberships

    # Mutations

    def _delete_user(self, user: TargetUser):
        def delete():
            try:
                self.identity_store.delete_user(user.id)
            except NotFoundError:
                logger.debug(f"User {user.username} already deleted")
            return True

        logger.warning(f"Deleting user {user.username}")
        if self._apply('delete user', user.username, delete):
            self.report.users_deleted += 1

    def _create_user(self, user: TargetUser, source: SourceUser) -> Optional[TargetUser]:
        target = self.mapper.map_attributes(user, source)

        def create():
            try:
                return self.scim.create_user(target)
            except ConflictError:
                logger.warning(f"User {target.username} already exists, resolving existing user")
                existing = self.scim.find_user_by_email(target.username)
                if existing.active != target.active:
                    return self.scim.update_user(target.with_id(existing.id))
                return existing

        logger.info(f"Creating user {target.username}")
        created = self._apply('create user', target.username, create)
        if created:
            self.report.users_created += 1
        return created

    def _update_user(self, user: TargetUser, source: SourceUser) -> Optional[TargetUser]:
        target = self.mapper.map_attributes(user, source)

        def update():
            try:
                return self.scim.update_user(target)
            except NotFoundError:
                logger.warning(f"User {target.username} disappeared before update, creating it")
                return self.scim.create_user(target.with_id(None))

        logger.info(f"Updating user {target.username} (active={target.active})")
        updated = self._apply('update user', target.username, update)
        if updated:
            self.report.users_updated += 1
        return updated

    def _create_group(self, group: TargetGroup, claimed_ids: Optional[Set[str]] = None) -> Optional[TargetGroup]:
        """
        Create a group, resolving a 409 to the existing group of that name.

        A resolved group whose id is in ``claimed_ids`` already belongs to
        another source group and is reported as a conflict instead.
        """
        def create():
            try:
                return self.scim.create_group(group)
            except ConflictError:
                logger.warning(f"Group {group.display_name} already exists, resolving existing group")
                existing = self.scim.find_group_by_display_name(group.display_name)
                if claimed_ids and existing.id in claimed_ids:
                    raise ConflictError(
                        f"Name is held by group {existing.id}, which is synced from another source group",
                        409, 'create group'
                    )
                return existing

        logger.info(f"Creating group {group.display_name}")
        created = self._apply('create group', group.display_name, create)
        if created:
            self.report.groups_created += 1
        return created

    def _rename_group(self, group: TargetGroup) -> bool:
        logger.info(f"Renaming group {group.id} to {group.display_name}")
        if self._apply('rename group', group.display_name, lambda: self.scim.update_group(group)):
            self.report.groups_renamed += 1
            return True
        return False

    def _delete_group(self, group: TargetGroup):
        def delete():
            try:
                self.identity_store.delete_group(group.id)
            except NotFoundError:
                logger.debug(f"Group {group.display_name} already deleted")
            return True

        logger.warning(f"Deleting group {group.display_name}")
        if self._apply('delete group', group.display_name, delete):
            self.report.groups_deleted += 1

    def _patch_members(self, group: TargetGroup, op: str, member_ids: List[str]):
        if not member_ids:
            return

        def patch():
            apply_member_batches(self.scim.patch_group_membership, group.id, op, member_ids, self.batch_size)
            return True

        verb = 'Adding' if op == OP_ADD else 'Removing'
        logger.info(f"{verb} {len(member_ids)} members {'to' if op == OP_ADD else 'from'} group {group.display_name}")

        if self._apply(f'{op} group members', group.display_name, patch):
            if op == OP_ADD:
                self.report.members_added += len(member_ids)
            else:
                self.report.members_removed += len(member_ids)

    def _resolve_user_id(self, user: SourceUser, resolved: Dict[str, str]) -> Optional[str]:
        if user.key in resolved:
            return resolved[user.key]
        try:
            target = self.scim.find_user_by_email(user.email or user.username)
        except NotFoundError:
            logger.warning(f"User {user.key} not found in target; skipping membership")
            return None
        resolved[user.key] = target.id
        return target.id

    # groups method

    def sync_groups_users(self):
        """Sync the users and groups selected by the group filters, with their memberships."""
        source_groups, source_users, source_members = self._source_snapshot()
        target_groups, target_users, target_members = self._target_snapshot()

        sources_by_key = {user.key: user for user in source_users}
        user_diff = compute_user_diff(target_users, source_users)
        group_diff = compute_group_diff(target_groups, source_groups)

        logger.info(f"Planned changes: users +{len(user_diff.add)} ~{len(user_diff.update)} "
                    f"-{len(user_diff.delete)}, groups +{len(group_diff.add)} ~{len(group_diff.rename)} "
                    f"-{len(group_diff.delete)}")

        resolved = {user.key: user.id for user in user_diff.equal if user.id}

        for user in user_diff.delete:
            self._delete_user(user)

        for user in user_diff.update:
            updated = self._update_user(user, sources_by_key[user.key])
            if updated and updated.id:
                resolved[user.key] = updated.id

        for user in user_diff.add:
            created = self._create_user(user, sources_by_key[user.key])
            if created and created.id:
                resolved[user.key] = created.id

        # Stale groups holding a name that a rename needs are deleted first
        renamed_names = {group.key for group in group_diff.rename}
        blocking = [group for group in group_diff.delete if group.key in renamed_names]
        for group in blocking:
            self._delete_group(group)
        blocking_ids = {group.id for group in blocking}

        for group in _order_renames(group_diff.rename, target_groups, blocking_ids):
            self._rename_group(group)

        claimed_ids = {group.id for group in group_diff.equal + group_diff.rename}
        for group in group_diff.add:
            created = self._create_group(group, claimed_ids)
            if created is None:
                continue
            member_ids = [user_id for user_id in (self._resolve_user_id(user, resolved)
                                                  for user in source_members.get(group.key, [])) if user_id]
            self._patch_members(created, OP_ADD, member_ids)

        self._reconcile_memberships(group_diff, target_groups, source_members, target_members, resolved)

        for group in group_diff.delete:
            if group.id not in blocking_ids:
                self._delete_group(group)

    def _reconcile_memberships(self, group_diff, target_groups: List[TargetGroup],
                               source_members: Dict[str, List[SourceUser]],
                               target_members: Dict[str, List[TargetUser]],
                               resolved: Dict[str, str]):
        """Add missing and remove extra members of existing and renamed groups."""
        previous_keys = {group.id: group.key for group in target_groups}

        aligned_source = dict(source_members)
        for group in group_diff.rename:
            aligned_source[previous_keys[group.id]] = source_members.get(group.key, [])

        membership_diff = compute_group_membership_diff(aligned_source, target_members)

        for group in sorted(group_diff.equal + group_diff.rename, key=lambda g: g.key):
            current_ids = set(group.members)

            to_add = []
            for user in source_members.get(group.key, []):
                user_id = self._resolve_user_id(user, resolved)
                if user_id and user_id not in current_ids and user_id not in to_add:
                    to_add.append(user_id)

            to_remove = [user.id for user in membership_diff.delete.get(previous_keys.get(group.id, group.key), [])]

            self._patch_members(group, OP_ADD, to_add)
            self._patch_members(group, OP_REMOVE, to_remove)

    # users_groups method

    def sync_users(self):
        """
        Sync users independently of groups.

        Deleted source users are removed from the target, then selected users
        are updated or created. Users that are merely not selected are left
        alone.
        """
        for deleted in self.source.list_deleted_users():
            if self._ignore_user(deleted):
                continue
            try:
                target = self.scim.find_user_by_email(deleted.email or deleted.username)
            except NotFoundError:
                logger.debug(f"Deleted user {deleted.key} is not in the target")
                continue
            self._delete_user(target)

        source_users = self._source_users()
        sources_by_key = {user.key: user for user in source_users}
        diff = compute_user_diff(self._target_users(), source_users)

        for user in diff.equal:
            self.users[user.key] = user

        for user in diff.update:
            updated = self._update_user(user, sources_by_key[user.key])
            if updated:
                self.users[user.key] = updated

        for user in diff.add:
            created = self._create_user(user, sources_by_key[user.key])
            if created:
                self.users[user.key] = created

        logger.info(f"User sync finished: {len(self.users)} users in scope")

    def sync_groups(self):
        """
        Sync selected groups and the memberships of the users from ``sync_users``.

        Membership of users outside that set is not touched.
        """
        synced = []
        for group in self._source_groups():
            try:
                target = self.scim.find_group_by_display_name(group.name)
            except NotFoundError:
                target = self._create_group(TargetGroup.from_source(group))
                if target is None:
                    continue

            members = {user.key for user in self._group_members(group)}
            synced.append((target, members))

        if not synced or not self.users:
            return

        group_ids = [target.id for target, _ in synced]

        for key in sorted(self.users):
            user = self.users[key]
            flags = self.identity_store.is_member_in_groups(user.id, group_ids)

            for target, members in synced:
                is_member = flags.get(target.id, False)
                should_be_member = key in members

                if should_be_member and not is_member:
                    self._add_membership(target, user)
                elif is_member and not should_be_member:
                    self._remove_membership(target, user)

    def _add_membership(self, group: TargetGroup, user: TargetUser):
        def add():
            try:
                self.identity_store.create_group_membership(group.id, user.id)
            except ConflictError:
                logger.debug(f"{user.username} is already a member of {group.display_name}")
            return True

        logger.info(f"Adding {user.username} to group {group.display_name}")
        if self._apply('add group member', f"{group.display_name}/{user.username}", add):
            self.report.members_added += 1

    def _remove_membership(self, group: TargetGroup, user: TargetUser):
        def remove():
            try:
                membership_id = self.identity_store.get_group_membership_id(group.id, user.id)
                self.identity_store.delete_group_membership(membership_id)
            except NotFoundError:
                logger.debug(f"{user.username} is no longer a member of {group.display_name}")
            return True

        logger.warning(f"Removing {user.username} from group {group.display_name}")
        if self._apply('remove group member', f"{group.display_name}/{user.username}", remove):
            self.report.members_removed += 1
