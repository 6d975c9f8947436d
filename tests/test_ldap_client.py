#!/usr/bin/env python3
"""
Tests for the LDAP client.

The ldap3 connection is replaced by an in-memory directory so that paging,
nested group expansion and entry conversion can be exercised without a
server.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import BASE
from ldap3.core.exceptions import LDAPSocketOpenError

from ldap_scim_sync.ldap_client import (
    LDAPClient, LDAPConnectionError, LDAPQueryError, PAGED_RESULTS_OID, SHOW_DELETED_OID
)
from ldap_scim_sync.models import SourceGroup, MEMBER_USER

BASE_DN = 'DC=example,DC=com'


def make_entry(dn, **attributes):
    entry = Mock()
    entry.entry_dn = dn
    entry.entry_attributes_as_dict = {name: list(values) for name, values in attributes.items()}
    return entry


def user_entry(dn, mail, uac=512, given='Test', sn='User', guid=None):
    return make_entry(
        dn,
        objectClass=['top', 'person', 'user'],
        mail=[mail],
        sAMAccountName=[mail.split('@')[0]],
        givenName=[given],
        sn=[sn],
        userAccountControl=[uac],
        objectGUID=[guid or '{' + mail + '}'],
    )


def group_entry(dn, name, members=()):
    return make_entry(dn, objectClass=['top', 'group'], cn=[name], member=list(members))


class FakeConnection:
    """Answers BASE reads from a DN map and subtree searches from canned pages."""

    def __init__(self, directory=None, pages=None):
        self.directory = {dn.lower(): entry for dn, entry in (directory or {}).items()}
        self.pages = pages or []
        self.entries = []
        self.result = {}
        self.searches = []

    def search(self, search_base, search_filter, search_scope=None, attributes=None,
               paged_size=None, paged_cookie=None, controls=None, size_limit=0):
        self.searches.append({
            'base': search_base, 'filter': search_filter, 'scope': search_scope,
            'cookie': paged_cookie, 'controls': controls,
        })
        if search_scope == BASE:
            entry = self.directory.get(search_base.lower())
            self.entries = [entry] if entry else []
            self.result = {'result': 0 if entry else 32}
            return bool(entry)

        index = 0 if paged_cookie is None else int(paged_cookie)
        entries, next_cookie = self.pages[index] if self.pages else ([], None)
        self.entries = entries
        self.result = {
            'result': 0,
            'controls': {PAGED_RESULTS_OID: {'value': {'size': 0, 'cookie': next_cookie}}},
        }
        return True

    def unbind(self):
        return True


class TestLDAPClientBase(unittest.TestCase):

    def setUp(self):
        self.config = {
            'server_url': 'ldaps://dc1.example.com:636',
            'bind_dn': 'CN=svc-sync,OU=Service,DC=example,DC=com',
            'bind_password': 'secret',
            'user_base_dn': BASE_DN,
            'user_filter': '(objectClass=user)',
            'group_filter': '(objectClass=group)',
            'page_size': 2,
        }

    def make_client(self, connection, **overrides):
        config = dict(self.config, **overrides)
        client = LDAPClient(config, {'max_retries': 2, 'retry_wait_seconds': 0})
        client.connection = connection
        client._connected = True
        return client


class TestInitialization(TestLDAPClientBase):

    def test_defaults(self):
        client = LDAPClient(self.config)

        self.assertTrue(client.use_ssl)
        self.assertFalse(client.start_tls)
        self.assertEqual(client.email_attribute, 'mail')
        self.assertEqual(client.suspended_attribute, 'userAccountControl')
        self.assertEqual(client.max_retries, 3)

    def test_error_handling_settings(self):
        client = LDAPClient(self.config, {'max_retries': 5, 'retry_wait_seconds': 1})

        self.assertEqual(client.max_retries, 5)
        self.assertEqual(client.retry_wait, 1)

    def test_no_tls_for_plain_ldap(self):
        client = LDAPClient(dict(self.config, server_url='ldap://dc1.example.com'))
        self.assertIsNone(client._create_tls_config())

    def test_queries_require_connection(self):
        client = LDAPClient(self.config)
        with self.assertRaises(LDAPQueryError):
            client.list_users()


class TestConnect(TestLDAPClientBase):

    @patch('ldap_scim_sync.ldap_client.time.sleep')
    @patch('ldap_scim_sync.ldap_client.Connection')
    @patch('ldap_scim_sync.ldap_client.Server')
    def test_connect_success(self, mock_server, mock_connection, mock_sleep):
        conn = Mock()
        conn.open.return_value = True
        conn.bind.return_value = True
        mock_connection.return_value = conn

        client = LDAPClient(self.config)

        self.assertTrue(client.connect())
        self.assertTrue(client._connected)
        mock_sleep.assert_not_called()

    @patch('ldap_scim_sync.ldap_client.time.sleep')
    @patch('ldap_scim_sync.ldap_client.Connection')
    @patch('ldap_scim_sync.ldap_client.Server')
    def test_connect_retries_then_fails(self, mock_server, mock_connection, mock_sleep):
        conn = Mock()
        conn.open.side_effect = LDAPSocketOpenError("unreachable")
        mock_connection.return_value = conn

        client = LDAPClient(self.config, {'max_retries': 3, 'retry_wait_seconds': 1})

        with self.assertRaises(LDAPConnectionError) as ctx:
            client.connect()

        self.assertIn("after 3 attempts", str(ctx.exception))
        self.assertEqual(conn.open.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)
        self.assertIsNone(client.connection)

    @patch('ldap_scim_sync.ldap_client.time.sleep')
    @patch('ldap_scim_sync.ldap_client.Connection')
    @patch('ldap_scim_sync.ldap_client.Server')
    def test_bind_failure(self, mock_server, mock_connection, mock_sleep):
        conn = Mock()
        conn.open.return_value = True
        conn.bind.return_value = False
        conn.result = {'description': 'invalidCredentials'}
        mock_connection.return_value = conn

        client = LDAPClient(self.config, {'max_retries': 1, 'retry_wait_seconds': 0})

        with self.assertRaises(LDAPConnectionError) as ctx:
            client.connect()
        self.assertIn("Bind failed", str(ctx.exception))


class TestListUsers(TestLDAPClientBase):

    def test_users_across_pages(self):
        pages = [
            ([user_entry(f'CN=Alice,{BASE_DN}', 'alice@example.com'),
              user_entry(f'CN=Bob,{BASE_DN}', 'bob@example.com', uac=514)], '1'),
            ([user_entry(f'CN=Carol,{BASE_DN}', 'carol@example.com')], None),
        ]
        connection = FakeConnection(pages=pages)
        client = self.make_client(connection)

        users = client.list_users()

        self.assertEqual([u.email for u in users], ['alice@example.com', 'bob@example.com', 'carol@example.com'])
        self.assertEqual([u.suspended for u in users], [False, True, False])
        self.assertEqual([s['cookie'] for s in connection.searches], [None, '1'])

    def test_user_conversion(self):
        entry = user_entry(f'CN=Alice,{BASE_DN}', 'alice@example.com', given='Alice', sn='Smith', guid='{abc-123}')
        client = self.make_client(FakeConnection(pages=[([entry], None)]))

        user = client.list_users()[0]

        self.assertEqual(user.id, 'abc-123')
        self.assertEqual(user.username, 'alice')
        self.assertEqual(user.given_name, 'Alice')
        self.assertEqual(user.family_name, 'Smith')
        self.assertEqual(user.dn, f'CN=Alice,{BASE_DN}')

    def test_binary_guid_is_hex_encoded(self):
        entry = user_entry(f'CN=Alice,{BASE_DN}', 'alice@example.com', guid=b'\x01\xab')
        client = self.make_client(FakeConnection(pages=[([entry], None)]))

        self.assertEqual(client.list_users()[0].id, '01ab')

    def test_entries_without_identifier_are_skipped(self):
        entry = make_entry(f'CN=Ghost,{BASE_DN}', objectClass=['user'])
        client = self.make_client(FakeConnection(pages=[([entry], None)]))

        self.assertEqual(client.list_users(), [])

    def test_extra_filter_is_anded(self):
        connection = FakeConnection(pages=[([], None)])
        client = self.make_client(connection)

        client.list_users('(department=IT)')

        self.assertEqual(connection.searches[0]['filter'], '(&(objectClass=user)(department=IT))')

    def test_boolean_suspended_attribute(self):
        entry = make_entry(f'CN=Dan,{BASE_DN}', mail=['dan@example.com'], disabled=['TRUE'])
        client = self.make_client(FakeConnection(pages=[([entry], None)]), suspended_attribute='disabled')

        self.assertTrue(client.list_users()[0].suspended)

    def test_missing_base_returns_empty(self):
        connection = FakeConnection()
        connection.search = Mock(return_value=False)
        connection.result = {'result': 32, 'description': 'noSuchObject'}
        connection.entries = []
        client = self.make_client(connection)

        self.assertEqual(client.list_users(), [])

    def test_search_failure_raises(self):
        connection = FakeConnection()
        connection.search = Mock(return_value=False)
        connection.result = {'result': 50, 'description': 'insufficientAccessRights'}
        client = self.make_client(connection)

        with self.assertRaises(LDAPQueryError):
            client.list_users()

    def test_repeated_cookie_raises(self):
        pages = [([user_entry(f'CN=A,{BASE_DN}', 'a@example.com')], '0')]
        client = self.make_client(FakeConnection(pages=pages))

        with self.assertRaises(LDAPQueryError):
            client.list_users()

    def test_get_user(self):
        entry = user_entry(f'CN=Alice,{BASE_DN}', 'alice@example.com')
        connection = FakeConnection(pages=[([entry], None)])
        client = self.make_client(connection)

        self.assertEqual(client.get_user('alice@example.com').email, 'alice@example.com')
        self.assertIn('(mail=alice@example.com)', connection.searches[0]['filter'])

    def test_get_user_escapes_filter_value(self):
        connection = FakeConnection(pages=[([], None)])
        client = self.make_client(connection)

        self.assertIsNone(client.get_user('a*b@example.com'))
        self.assertIn('(mail=a\\2ab@example.com)', connection.searches[0]['filter'])

    def test_get_user_ambiguous(self):
        entries = [user_entry(f'CN=A1,{BASE_DN}', 'a@example.com'), user_entry(f'CN=A2,{BASE_DN}', 'a@example.com')]
        client = self.make_client(FakeConnection(pages=[(entries, None)]))

        with self.assertRaises(LDAPQueryError):
            client.get_user('a@example.com')


class TestDeletedUsers(TestLDAPClientBase):

    def test_disabled_by_default(self):
        connection = FakeConnection()
        client = self.make_client(connection)

        self.assertEqual(client.list_deleted_users(), [])
        self.assertEqual(connection.searches, [])

    def test_deleted_users_are_suspended(self):
        entry = user_entry(f'CN=Old\\0ADEL:1,CN=Deleted Objects,{BASE_DN}', 'old@example.com')
        connection = FakeConnection(pages=[([entry], None)])
        client = self.make_client(connection, include_deleted_users=True)

        users = client.list_deleted_users()

        self.assertEqual([u.email for u in users], ['old@example.com'])
        self.assertTrue(users[0].suspended)
        search = connection.searches[0]
        self.assertEqual(search['base'], f'CN=Deleted Objects,{BASE_DN}')
        self.assertEqual(search['controls'][0][0], SHOW_DELETED_OID)


class TestGroups(TestLDAPClientBase):

    def test_list_groups(self):
        pages = [([group_entry(f'CN=Engineering,{BASE_DN}', 'Engineering')], None)]
        client = self.make_client(FakeConnection(pages=pages))

        groups = client.list_groups()

        self.assertEqual([g.name for g in groups], ['Engineering'])
        self.assertEqual(groups[0].dn, f'CN=Engineering,{BASE_DN}')

    def test_direct_members(self):
        alice_dn = f'CN=Alice,{BASE_DN}'
        bob_dn = f'CN=Bob,{BASE_DN}'
        group_dn = f'CN=Engineering,{BASE_DN}'
        directory = {
            group_dn: group_entry(group_dn, 'Engineering', [alice_dn, bob_dn]),
            alice_dn: user_entry(alice_dn, 'alice@example.com'),
            bob_dn: user_entry(bob_dn, 'bob@example.com'),
        }
        client = self.make_client(FakeConnection(directory))

        members = client.list_group_members(SourceGroup(id='g', name='Engineering', dn=group_dn))

        self.assertEqual([m.user.email for m in members], ['alice@example.com', 'bob@example.com'])
        self.assertTrue(all(m.kind == MEMBER_USER for m in members))

    def test_nested_groups_are_expanded(self):
        user_dn = f'CN=Uma,{BASE_DN}'
        a_dn = f'CN=A,{BASE_DN}'
        b_dn = f'CN=B,{BASE_DN}'
        directory = {
            a_dn: group_entry(a_dn, 'A', [b_dn]),
            b_dn: group_entry(b_dn, 'B', [user_dn]),
            user_dn: user_entry(user_dn, 'uma@example.com'),
        }
        client = self.make_client(FakeConnection(directory))

        members = client.list_group_members(SourceGroup(id='a', name='A', dn=a_dn))

        self.assertEqual([m.user.email for m in members], ['uma@example.com'])

    def test_membership_cycle_terminates(self):
        user_dn = f'CN=Uma,{BASE_DN}'
        a_dn = f'CN=A,{BASE_DN}'
        b_dn = f'CN=B,{BASE_DN}'
        directory = {
            a_dn: group_entry(a_dn, 'A', [b_dn, user_dn]),
            b_dn: group_entry(b_dn, 'B', [a_dn, user_dn]),
            user_dn: user_entry(user_dn, 'uma@example.com'),
        }
        connection = FakeConnection(directory)
        client = self.make_client(connection)

        members = client.list_group_members(SourceGroup(id='a', name='A', dn=a_dn))

        self.assertEqual([m.user.email for m in members], ['uma@example.com'])
        group_reads = [s for s in connection.searches if s['base'] in (a_dn, b_dn)]
        self.assertLessEqual(len(group_reads), 4)

    def test_missing_member_entries_are_skipped(self):
        group_dn = f'CN=Engineering,{BASE_DN}'
        directory = {group_dn: group_entry(group_dn, 'Engineering', [f'CN=Gone,{BASE_DN}'])}
        client = self.make_client(FakeConnection(directory))

        self.assertEqual(client.list_group_members(SourceGroup(id='g', name='Engineering', dn=group_dn)), [])


class TestDomainBase(TestLDAPClientBase):

    def test_domain_from_bind_dn(self):
        client = LDAPClient(dict(self.config, user_base_dn=''))
        self.assertEqual(client._get_domain_base(), 'DC=example,DC=com')

    def test_no_domain_available(self):
        client = LDAPClient(dict(self.config, user_base_dn='', bind_dn='svc-sync@example.com'))
        with self.assertRaises(LDAPQueryError):
            client._get_domain_base()


if __name__ == '__main__':
    unittest.main()
