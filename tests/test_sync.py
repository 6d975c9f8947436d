#!/usr/bin/env python3
"""
Tests for DirectorySync against an in-memory target.

``FakeDirectory`` holds the target state; ``FakeSCIM`` and ``FakeStore``
expose it through the same methods as the SCIM and Identity Store clients
and record every mutation in order.
"""

import unittest
from dataclasses import replace
from unittest.mock import Mock
import sys
import os

# Add parent directory to path to import ldap_scim_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_scim_sync.models import (
    SourceUser, SourceGroup, SourceMember, TargetUser, TargetGroup, MEMBER_USER, normalize_key
)
from ldap_scim_sync.retry import MaxRetriesExceeded
from ldap_scim_sync.sync import DirectorySync, SyncAbortedError, SyncReport, _or_filter, _order_renames
from ldap_scim_sync.target.base import (
    NotFoundError, ConflictError, ProtocolError, TargetAuthenticationError, TransientError
)
from ldap_scim_sync.target.dryrun import DryRunSCIMClient, DryRunIdentityStore


class FakeDirectory:
    """Target state shared by FakeSCIM and FakeStore."""

    def __init__(self):
        self.users = {}
        self.groups = {}
        self.members = {}
        self.hidden_users = set()
        self.failures = {}
        self.calls = []
        self._counter = 0

    def new_id(self, prefix):
        self._counter += 1
        return f"{prefix}{self._counter}"

    def add_user(self, email, active=True, given='Test', family='User', hidden=False):
        user = TargetUser(username=email, given_name=given, family_name=family,
                          display_name=f"{given} {family}", active=active, id=self.new_id('u'))
        self.users[user.id] = user
        if hidden:
            self.hidden_users.add(user.id)
        return user

    def add_group(self, name, members=(), external_id=None):
        group = TargetGroup(display_name=name, id=self.new_id('g'), external_id=external_id)
        self.groups[group.id] = group
        self.members[group.id] = [user.id for user in members]
        return group

    def record(self, method, key, *extra):
        self.calls.append((method, key) + extra)
        failure = self.failures.get((method, key))
        if failure is not None:
            raise failure

    def call_names(self):
        return [call[0] for call in self.calls]

    def user_by_email(self, email):
        for user in self.users.values():
            if user.key == normalize_key(email):
                return user
        return None

    def group_by_name(self, name):
        for group in self.groups.values():
            if group.key == normalize_key(name):
                return group
        return None


class FakeSCIM:

    def __init__(self, directory):
        self.directory = directory

    def find_user_by_email(self, email):
        user = self.directory.user_by_email(email)
        if user is None:
            raise NotFoundError(f"no user {email}")
        return replace(user)

    def find_group_by_display_name(self, name):
        for group in self.directory.groups.values():
            if group.key == normalize_key(name):
                return replace(group, members=list(self.directory.members[group.id]))
        raise NotFoundError(f"no group {name}")

    def create_user(self, user):
        self.directory.record('create_user', user.username)
        if self.directory.user_by_email(user.username):
            raise ConflictError("exists", 409)
        created = user.with_id(self.directory.new_id('u'))
        self.directory.users[created.id] = created
        return created

    def update_user(self, user):
        self.directory.record('update_user', user.username)
        if user.id not in self.directory.users:
            raise NotFoundError("gone", 404)
        self.directory.users[user.id] = user
        return user

    def create_group(self, group):
        self.directory.record('create_group', group.display_name)
        if self.directory.group_by_name(group.display_name):
            raise ConflictError("exists", 409)
        created = group.with_id(self.directory.new_id('g'))
        self.directory.groups[created.id] = created
        self.directory.members[created.id] = []
        return created

    def update_group(self, group):
        self.directory.record('update_group', group.display_name, group.id)
        holder = self.directory.group_by_name(group.display_name)
        if holder is not None and holder.id != group.id:
            raise ConflictError("name taken", 409)
        self.directory.groups[group.id] = replace(self.directory.groups[group.id], display_name=group.display_name)
        return group

    def patch_group_membership(self, group_id, op, member_ids):
        self.directory.record('patch_group_membership', group_id, op, list(member_ids))
        members = self.directory.members[group_id]
        for member_id in member_ids:
            if op == 'add' and member_id not in members:
                members.append(member_id)
            elif op == 'remove' and member_id in members:
                members.remove(member_id)


class FakeStore:

    def __init__(self, directory):
        self.directory = directory

    def list_users(self):
        # The Identity Store API does not report the active flag
        return [replace(user, active=True) for user_id, user in self.directory.users.items()
                if user_id not in self.directory.hidden_users]

    def list_groups(self):
        return [replace(group, members=[]) for group in self.directory.groups.values()]

    def list_group_memberships(self, group_id):
        return list(self.directory.members.get(group_id, []))

    def get_group_membership_id(self, group_id, user_id):
        if user_id not in self.directory.members.get(group_id, []):
            raise NotFoundError("no membership", 404)
        return f"{group_id}:{user_id}"

    def create_group_membership(self, group_id, user_id):
        self.directory.record('create_group_membership', group_id, user_id)
        members = self.directory.members[group_id]
        if user_id in members:
            raise ConflictError("exists", 409)
        members.append(user_id)
        return f"{group_id}:{user_id}"

    def delete_group_membership(self, membership_id):
        self.directory.record('delete_group_membership', membership_id)
        group_id, user_id = membership_id.split(':')
        self.directory.members[group_id].remove(user_id)

    def is_member_in_groups(self, user_id, group_ids):
        return {group_id: user_id in self.directory.members.get(group_id, []) for group_id in group_ids}

    def delete_user(self, user_id):
        self.directory.record('delete_user', user_id)
        if user_id not in self.directory.users:
            raise NotFoundError("gone", 404)
        del self.directory.users[user_id]

    def delete_group(self, group_id):
        self.directory.record('delete_group', group_id)
        if group_id not in self.directory.groups:
            raise NotFoundError("gone", 404)
        del self.directory.groups[group_id]
        self.directory.members.pop(group_id, None)


def src(email, suspended=False, given='Test', family='User'):
    return SourceUser(id=f"guid-{email}", email=email, dn=f"CN={email},DC=example,DC=com",
                      username=email.split('@')[0], given_name=given, family_name=family,
                      suspended=suspended)


def src_group(name, group_id=None):
    return SourceGroup(id=group_id or f"guid-{name}", name=name, dn=f"CN={name},DC=example,DC=com")


def make_source(groups=(), members=None, users=(), deleted=()):
    members = members or {}
    source = Mock()
    source.email_attribute = 'mail'
    source.group_name_attribute = 'cn'
    source.list_groups.return_value = list(groups)
    source.list_users.return_value = list(users)
    source.list_deleted_users.return_value = list(deleted)
    source.get_user.return_value = None
    source.list_group_members.side_effect = lambda group: [
        SourceMember(dn=user.dn, kind=MEMBER_USER, user=user) for user in members.get(group.name, [])
    ]
    return source


class SyncTestCase(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectory()
        self.sync_config = {'method': 'groups', 'group_match': '*', 'user_match': '', 'on_error': 'abort'}

    def make_sync(self, source, dry_run=False, **sync_overrides):
        sync_config = dict(self.sync_config, dry_run=dry_run, **sync_overrides)
        scim = FakeSCIM(self.directory)
        store = FakeStore(self.directory)
        if dry_run:
            scim = DryRunSCIMClient(scim)
            store = DryRunIdentityStore(store)
        return DirectorySync({'sync': sync_config}, source, scim, store)


class TestGroupsMethod(SyncTestCase):
    """The default method: users come from the selected groups."""

    def test_new_suspended_user_is_created_inactive_and_added(self):
        alice = self.directory.add_user('alice@example.com')
        engineering = self.directory.add_group('Engineering', [alice])

        source = make_source(
            groups=[src_group('Engineering')],
            members={'Engineering': [src('alice@example.com'), src('bob@example.com', suspended=True)]}
        )

        report = self.make_sync(source).run()

        bob = self.directory.user_by_email('bob@example.com')
        self.assertIsNotNone(bob)
        self.assertFalse(bob.active)
        self.assertEqual(self.directory.members[engineering.id], [alice.id, bob.id])
        self.assertEqual(self.directory.call_names(), ['create_user', 'patch_group_membership'])
        self.assertEqual(report.users_created, 1)
        self.assertEqual(report.members_added, 1)
        self.assertEqual(report.errors, [])

    def test_changes_are_applied_in_dependency_order(self):
        gone = self.directory.add_user('gone@example.com')
        carol = self.directory.add_user('carol@example.com', family='Old')
        legacy = self.directory.add_group('Legacy', [gone])

        source = make_source(
            groups=[src_group('Engineering')],
            members={'Engineering': [src('carol@example.com', family='New'), src('dan@example.com')]}
        )

        report = self.make_sync(source).run()

        self.assertEqual(self.directory.call_names(), [
            'delete_user', 'update_user', 'create_user', 'create_group',
            'patch_group_membership', 'delete_group',
        ])
        self.assertEqual(self.directory.calls[0][1], gone.id)
        self.assertEqual(self.directory.calls[-1][1], legacy.id)

        patch_call = self.directory.calls[4]
        dan = self.directory.user_by_email('dan@example.com')
        self.assertEqual(patch_call[2:], ('add', [carol.id, dan.id]))
        self.assertEqual(self.directory.users[carol.id].family_name, 'New')

        self.assertEqual(report.to_dict()['users_deleted'], 1)
        self.assertEqual(report.groups_created, 1)
        self.assertEqual(report.groups_deleted, 1)

    def test_in_sync_directory_makes_no_changes(self):
        alice = self.directory.add_user('alice@example.com')
        self.directory.add_group('Engineering', [alice])

        source = make_source(groups=[src_group('Engineering')],
                             members={'Engineering': [src('alice@example.com')]})

        report = self.make_sync(source).run()

        self.assertEqual(self.directory.calls, [])
        self.assertEqual(report.to_dict()['errors'], 0)

    def test_suspended_user_is_deactivated(self):
        alice = self.directory.add_user('alice@example.com', active=True)
        self.directory.add_group('Engineering', [alice])

        source = make_source(groups=[src_group('Engineering')],
                             members={'Engineering': [src('alice@example.com', suspended=True)]})

        self.make_sync(source).run()

        self.assertFalse(self.directory.users[alice.id].active)
        self.assertEqual(self.directory.call_names(), ['update_user'])

    def test_removed_members_are_patched_out(self):
        alice = self.directory.add_user('alice@example.com')
        mallory = self.directory.add_user('mallory@example.com')
        engineering = self.directory.add_group('Engineering', [alice, mallory])
        self.directory.add_group('Sales', [mallory])

        source = make_source(
            groups=[src_group('Engineering'), src_group('Sales')],
            members={'Engineering': [src('alice@example.com')], 'Sales': [src('mallory@example.com')]}
        )

        report = self.make_sync(source).run()

        self.assertEqual(self.directory.calls, [('patch_group_membership', engineering.id, 'remove', [mallory.id])])
        self.assertEqual(report.members_removed, 1)

    def test_group_rename_keeps_group_and_members(self):
        alice = self.directory.add_user('alice@example.com')
        self.directory.add_user('bob@example.com')
        group = self.directory.add_group('Old Name', [alice], external_id='guid-eng')

        source = make_source(
            groups=[src_group('Engineering', group_id='guid-eng')],
            members={'Engineering': [src('alice@example.com'), src('bob@example.com')]}
        )

        report = self.make_sync(source).run()

        bob = self.directory.user_by_email('bob@example.com')
        self.assertEqual(self.directory.call_names(), ['update_group', 'patch_group_membership'])
        self.assertEqual(self.directory.groups[group.id].display_name, 'Engineering')
        self.assertEqual(self.directory.members[group.id], [alice.id, bob.id])
        self.assertEqual(report.groups_renamed, 1)
        self.assertEqual(report.groups_created + report.groups_deleted, 0)

    def test_new_group_may_reuse_the_name_of_a_renamed_group(self):
        alice = self.directory.add_user('alice@example.com')
        eng = self.directory.add_group('Eng', [alice], external_id='guid-1')

        source = make_source(
            groups=[src_group('Platform', group_id='guid-1'), src_group('Eng', group_id='guid-2')],
            members={'Platform': [src('alice@example.com')], 'Eng': [src('bob@example.com')]}
        )

        report = self.make_sync(source).run()

        bob = self.directory.user_by_email('bob@example.com')
        new_eng = self.directory.group_by_name('Eng')
        self.assertEqual(self.directory.calls, [
            ('create_user', 'bob@example.com'),
            ('update_group', 'Platform', eng.id),
            ('create_group', 'Eng'),
            ('patch_group_membership', new_eng.id, 'add', [bob.id]),
        ])
        self.assertEqual(sorted(g.display_name for g in self.directory.groups.values()), ['Eng', 'Platform'])
        self.assertEqual(self.directory.members[eng.id], [alice.id])
        self.assertEqual(self.directory.members[new_eng.id], [bob.id])
        self.assertEqual(report.groups_renamed, 1)
        self.assertEqual(report.groups_created, 1)

    def test_create_conflict_never_populates_a_group_owned_by_another_source_group(self):
        alice = self.directory.add_user('alice@example.com')
        eng = self.directory.add_group('Eng', [alice], external_id='guid-1')
        self.directory.failures[('update_group', 'Platform')] = ProtocolError("rename rejected", 400)

        source = make_source(
            groups=[src_group('Platform', group_id='guid-1'), src_group('Eng', group_id='guid-2')],
            members={'Platform': [src('alice@example.com')], 'Eng': [src('bob@example.com')]}
        )

        report = self.make_sync(source, on_error='continue').run()

        self.assertNotIn('patch_group_membership', self.directory.call_names())
        self.assertEqual(self.directory.members[eng.id], [alice.id])
        self.assertEqual(len(report.errors), 2)
        self.assertIn('create group Eng', report.errors[1])
        self.assertEqual(report.groups_created, 0)

    def test_rename_onto_a_stale_group_deletes_it_first(self):
        alice = self.directory.add_user('alice@example.com')
        bob = self.directory.add_user('bob@example.com')
        old = self.directory.add_group('Old', [alice], external_id='guid-1')
        stale = self.directory.add_group('New', [bob])

        source = make_source(groups=[src_group('New', group_id='guid-1')],
                             members={'New': [src('alice@example.com')]})

        report = self.make_sync(source).run()

        self.assertEqual(self.directory.calls, [
            ('delete_user', bob.id),
            ('delete_group', stale.id),
            ('update_group', 'New', old.id),
        ])
        self.assertEqual([g.display_name for g in self.directory.groups.values()], ['New'])
        self.assertEqual(self.directory.members[old.id], [alice.id])
        self.assertEqual(report.groups_deleted, 1)
        self.assertEqual(report.groups_renamed, 1)

        self.directory.calls.clear()
        self.make_sync(source).run()
        self.assertEqual(self.directory.calls, [])

    def test_chained_renames_free_each_name_before_it_is_taken(self):
        first = self.directory.add_group('X', external_id='guid-1')
        second = self.directory.add_group('Y', external_id='guid-2')

        source = make_source(groups=[src_group('Y', group_id='guid-1'), src_group('Z', group_id='guid-2')])

        report = self.make_sync(source).run()

        self.assertEqual(self.directory.calls, [
            ('update_group', 'Z', second.id),
            ('update_group', 'Y', first.id),
        ])
        self.assertEqual(report.groups_renamed, 2)
        self.assertEqual(report.errors, [])

    def test_large_groups_are_patched_in_chunks(self):
        users = [self.directory.add_user(f"user{i:03d}@example.com") for i in range(250)]

        source = make_source(groups=[src_group('Everyone')],
                             members={'Everyone': [src(user.username) for user in users]})

        report = self.make_sync(source).run()

        patches = [call for call in self.directory.calls if call[0] == 'patch_group_membership']
        self.assertEqual([len(call[3]) for call in patches], [100, 100, 50])
        self.assertEqual(report.members_added, 250)

    def test_membership_batch_size_is_configurable(self):
        users = [self.directory.add_user(f"user{i}@example.com") for i in range(5)]

        source = make_source(groups=[src_group('Team')],
                             members={'Team': [src(user.username) for user in users]})

        self.make_sync(source, membership_batch_size=2).run()

        patches = [call for call in self.directory.calls if call[0] == 'patch_group_membership']
        self.assertEqual([len(call[3]) for call in patches], [2, 2, 1])

    def test_create_conflict_resolves_existing_user(self):
        erin = self.directory.add_user('erin@example.com', active=False, hidden=True)

        source = make_source(groups=[src_group('Engineering')],
                             members={'Engineering': [src('erin@example.com')]})

        report = self.make_sync(source).run()

        self.assertTrue(self.directory.users[erin.id].active)
        self.assertEqual(self.directory.call_names()[:3], ['create_user', 'update_user', 'create_group'])
        self.assertEqual(self.directory.calls[3][2:], ('add', [erin.id]))
        self.assertEqual(report.errors, [])

    def test_delete_of_missing_user_counts_as_done(self):
        gone = self.directory.add_user('gone@example.com')
        self.directory.failures[('delete_user', gone.id)] = NotFoundError("already gone", 404)

        report = self.make_sync(make_source()).run()

        self.assertEqual(report.users_deleted, 1)
        self.assertEqual(report.errors, [])

    def test_update_of_vanished_user_creates_it(self):
        carol = self.directory.add_user('carol@example.com', family='Old')
        source = make_source(groups=[src_group('Team')],
                             members={'Team': [src('carol@example.com', family='New')]})
        sync = self.make_sync(source)
        update_user = sync.scim.update_user

        def vanish_then_update(user):
            del self.directory.users[carol.id]
            return update_user(user)

        sync.scim.update_user = vanish_then_update

        report = sync.run()

        self.assertEqual(self.directory.call_names()[:2], ['update_user', 'create_user'])
        recreated = self.directory.user_by_email('carol@example.com')
        self.assertNotEqual(recreated.id, carol.id)
        self.assertEqual(recreated.family_name, 'New')
        self.assertEqual(report.users_updated, 1)

    def test_ignored_entities_are_never_deleted(self):
        self.directory.add_user('svc@example.com')
        self.directory.add_group('Admins')

        report = self.make_sync(make_source(), ignore_users=['SVC@example.com'], ignore_groups=['admins']).run()

        self.assertEqual(self.directory.calls, [])
        self.assertEqual(report.users_deleted + report.groups_deleted, 0)

    def test_ignored_source_members_are_skipped(self):
        source = make_source(groups=[src_group('Team')],
                             members={'Team': [src('svc@example.com'), src('alice@example.com')]})

        self.make_sync(source, ignore_users=['svc@example.com']).run()

        self.assertIsNone(self.directory.user_by_email('svc@example.com'))
        self.assertIsNotNone(self.directory.user_by_email('alice@example.com'))


class TestFailurePolicy(SyncTestCase):

    def setUp(self):
        super().setUp()
        self.directory.add_user('carol@example.com', family='Old')
        self.source = make_source(
            groups=[src_group('Team')],
            members={'Team': [src('carol@example.com', family='New'), src('dan@example.com')]}
        )
        self.directory.failures[('update_user', 'carol@example.com')] = ProtocolError("invalid", 400)

    def test_abort_stops_at_first_failure(self):
        with self.assertRaises(SyncAbortedError) as ctx:
            self.make_sync(self.source).run()

        self.assertTrue(ctx.exception.report.aborted)
        self.assertEqual(len(ctx.exception.report.errors), 1)
        self.assertNotIn('create_user', self.directory.call_names())

    def test_continue_records_and_moves_on(self):
        report = self.make_sync(self.source, on_error='continue').run()

        self.assertEqual(len(report.errors), 1)
        self.assertIn('carol@example.com', report.errors[0])
        self.assertFalse(report.aborted)
        self.assertIsNotNone(self.directory.user_by_email('dan@example.com'))
        self.assertEqual(report.groups_created, 1)

    def test_continue_aborts_at_max_errors(self):
        self.directory.failures[('create_user', 'dan@example.com')] = ProtocolError("invalid", 400)

        with self.assertRaises(SyncAbortedError) as ctx:
            self.make_sync(self.source, on_error='continue', max_errors=2).run()

        self.assertEqual(len(ctx.exception.report.errors), 2)
        self.assertNotIn('create_group', self.directory.call_names())

    def test_authentication_errors_are_fatal(self):
        self.directory.failures[('update_user', 'carol@example.com')] = TargetAuthenticationError("denied", 401)

        with self.assertRaises(TargetAuthenticationError):
            self.make_sync(self.source, on_error='continue').run()

    def test_exhausted_retries_are_fatal(self):
        self.directory.failures[('update_user', 'carol@example.com')] = MaxRetriesExceeded(
            4, TransientError("throttled", 429))

        with self.assertRaises(MaxRetriesExceeded):
            self.make_sync(self.source, on_error='continue').run()

    def test_failed_member_batch_is_recorded(self):
        del self.directory.failures[('update_user', 'carol@example.com')]
        self.directory.failures[('patch_group_membership', 'g3')] = ProtocolError("too many members", 400)

        report = self.make_sync(self.source, on_error='continue').run()

        self.assertEqual(len(report.errors), 1)
        self.assertIn('add group members', report.errors[0])
        self.assertEqual(report.members_added, 0)


class TestDryRun(SyncTestCase):

    def test_dry_run_reports_without_mutating(self):
        alice = self.directory.add_user('alice@example.com')
        engineering = self.directory.add_group('Engineering', [alice])
        self.directory.add_group('Legacy')
        self.directory.add_user('gone@example.com')

        source = make_source(
            groups=[src_group('Engineering'), src_group('Sales')],
            members={
                'Engineering': [src('alice@example.com'), src('bob@example.com', suspended=True)],
                'Sales': [src('bob@example.com', suspended=True)],
            }
        )

        report = self.make_sync(source, dry_run=True).run()

        self.assertEqual(self.directory.calls, [])
        self.assertIsNone(self.directory.user_by_email('bob@example.com'))
        self.assertEqual(self.directory.members[engineering.id], [alice.id])
        self.assertTrue(report.dry_run)
        self.assertEqual(report.users_created, 1)
        self.assertEqual(report.users_deleted, 1)
        self.assertEqual(report.groups_created, 1)
        self.assertEqual(report.groups_deleted, 1)
        self.assertEqual(report.members_added, 2)


class TestUsersGroupsMethod(SyncTestCase):
    """users_groups: users and groups are selected independently."""

    def setUp(self):
        super().setUp()
        self.sync_config = {
            'method': 'users_groups', 'group_match': '*', 'user_match': '(department=IT)', 'on_error': 'abort'
        }

    def test_users_then_group_memberships(self):
        alice = self.directory.add_user('alice@example.com')
        bob = self.directory.add_user('bob@example.com')
        old = self.directory.add_user('old@example.com')
        engineering = self.directory.add_group('Engineering', [bob])

        source = make_source(
            users=[src('alice@example.com'), src('bob@example.com')],
            deleted=[src('old@example.com', suspended=True)],
            groups=[src_group('Engineering')],
            members={'Engineering': [src('alice@example.com')]}
        )

        report = self.make_sync(source).run()

        source.list_users.assert_called_once_with('(department=IT)')
        self.assertEqual(self.directory.call_names(), [
            'delete_user', 'create_group_membership', 'delete_group_membership'
        ])
        self.assertEqual(self.directory.calls[0][1], old.id)
        self.assertEqual(self.directory.members[engineering.id], [alice.id])
        self.assertEqual(report.users_deleted, 1)
        self.assertEqual(report.members_added, 1)
        self.assertEqual(report.members_removed, 1)

    def test_users_outside_selection_are_left_alone(self):
        self.directory.add_user('contractor@example.com')

        source = make_source(users=[src('alice@example.com')])

        self.make_sync(source).run()

        self.assertIsNotNone(self.directory.user_by_email('contractor@example.com'))
        self.assertEqual(self.directory.call_names(), ['create_user'])

    def test_missing_group_is_created(self):
        alice = self.directory.add_user('alice@example.com')

        source = make_source(users=[src('alice@example.com')], groups=[src_group('Sales')],
                             members={'Sales': [src('alice@example.com')]})

        report = self.make_sync(source).run()

        self.assertEqual(self.directory.call_names(), ['create_group', 'create_group_membership'])
        self.assertEqual(self.directory.calls[1][2], alice.id)
        self.assertEqual(report.groups_created, 1)

    def test_include_lists_extend_selection(self):
        source = make_source()
        source.get_user.side_effect = lambda email: src(email)

        self.make_sync(source, user_match='(department=IT)', include_users=['ceo@example.com'],
                       group_match='(cn=Eng*)', include_groups=['Sales']).run()

        source.list_users.assert_called_once_with('(department=IT)')
        source.get_user.assert_called_once_with('ceo@example.com')
        source.list_groups.assert_called_once_with('(|(cn=Eng*)(cn=Sales))')
        self.assertEqual(self.directory.calls, [('create_user', 'ceo@example.com')])

    def test_missing_included_user_is_reported(self):
        source = make_source()

        with self.assertLogs('ldap_scim_sync.sync', level='WARNING') as logs:
            self.make_sync(source, user_match='', include_users=['nobody@example.com']).run()

        source.list_users.assert_not_called()
        self.assertIn('nobody@example.com', logs.output[0])
        self.assertEqual(self.directory.calls, [])


class TestHelpers(unittest.TestCase):

    def test_or_filter(self):
        self.assertIsNone(_or_filter([]))
        self.assertIsNone(_or_filter(['']))
        self.assertEqual(_or_filter(['cn=A']), '(cn=A)')
        self.assertEqual(_or_filter(['(cn=A)', 'cn=B']), '(|(cn=A)(cn=B))')

    def test_order_renames(self):
        x = TargetGroup(display_name='X', id='g1')
        y = TargetGroup(display_name='Y', id='g2')
        swapped = [replace(x, display_name='Y'), replace(y, display_name='X')]

        self.assertEqual([g.id for g in _order_renames(swapped, [x, y], set())], ['g1', 'g2'])
        self.assertEqual([g.id for g in _order_renames(swapped, [x, y], {'g2'})], ['g1', 'g2'])
        self.assertEqual([g.id for g in _order_renames(swapped[1:], [x, y], set())], ['g2'])

    def test_report_to_dict(self):
        report = SyncReport(method='groups', users_created=2, errors=['x'])

        summary = report.to_dict()

        self.assertEqual(summary['users_created'], 2)
        self.assertEqual(summary['errors'], 1)
        self.assertFalse(summary['aborted'])


if __name__ == '__main__':
    unittest.main()
