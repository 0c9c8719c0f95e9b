#!/usr/bin/env python3
"""
Unit tests for the LDAP client.

Tests connection handling (retry of unreachable servers, no retry of
rejected binds), TLS configuration and group member resolution for both
DN-valued and uid-valued member attributes.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

from ldap3.core.exceptions import LDAPSocketOpenError

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cf_org_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from cf_org_sync.models import DirectoryMember


def ldap_entry(dn, **attributes):
    return Mock(entry_dn=dn, entry_attributes_as_dict=attributes)


def connected_client(config, directory):
    """Client whose connection answers searches from a {(base, filter): entries} map."""
    client = LDAPClient(config)
    connection = Mock()
    connection.entries = []

    def search(search_base, search_filter, search_scope, attributes, **kwargs):
        connection.entries = directory.get((search_base, search_filter), [])
        return bool(connection.entries)

    connection.search.side_effect = search
    client.connection = connection
    client._connected = True
    return client


class TestLDAPClientConfiguration(unittest.TestCase):
    """Test cases for client initialization and TLS setup."""

    def test_defaults(self):
        client = LDAPClient({
            'server_url': 'ldaps://ldap.example.com:636',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'password123'
        })

        self.assertTrue(client.use_ssl)
        self.assertFalse(client.start_tls)
        self.assertEqual(client.user_name_attribute, 'uid')
        self.assertEqual(client.user_mail_attribute, 'mail')
        self.assertEqual(client.group_member_attribute, 'member')

    def test_tls_config_only_when_needed(self):
        plain = LDAPClient({
            'server_url': 'ldap://ldap.example.com:389',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'password123'
        })
        self.assertIsNone(plain._create_tls_config())

        start_tls = LDAPClient({
            'server_url': 'ldap://ldap.example.com:389',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'password123',
            'start_tls': True,
            'verify_ssl': False
        })
        self.assertIsNotNone(start_tls._create_tls_config())


class TestLDAPConnection(unittest.TestCase):
    """Test cases for connect."""

    def setUp(self):
        self.config = {
            'server_url': 'ldap://ldap.example.com:389',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'password123'
        }

    @patch('cf_org_sync.ldap_client.Server')
    @patch('cf_org_sync.ldap_client.Connection')
    def test_successful_bind(self, mock_connection, mock_server):
        mock_connection.return_value.bind.return_value = True
        client = LDAPClient(self.config)

        self.assertTrue(client.connect(max_retries=2, retry_wait=0))
        mock_connection.return_value.open.assert_called_once_with()

    @patch('cf_org_sync.ldap_client.Server')
    @patch('cf_org_sync.ldap_client.Connection')
    def test_rejected_bind_is_not_retried(self, mock_connection, mock_server):
        mock_connection.return_value.bind.return_value = False
        client = LDAPClient(self.config)

        with self.assertRaises(LDAPConnectionError):
            client.connect(max_retries=3, retry_wait=0)
        self.assertEqual(mock_connection.call_count, 1)

    @patch('cf_org_sync.retry.time.sleep')
    @patch('cf_org_sync.ldap_client.Server')
    @patch('cf_org_sync.ldap_client.Connection')
    def test_unreachable_server_is_retried(self, mock_connection, mock_server, mock_sleep):
        mock_connection.return_value.open.side_effect = LDAPSocketOpenError('unable to open socket')
        client = LDAPClient(self.config)

        with self.assertRaises(LDAPConnectionError) as ctx:
            client.connect(max_retries=3, retry_wait=2)

        self.assertEqual(mock_connection.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)
        self.assertIn('3 attempts', str(ctx.exception))

    @patch('cf_org_sync.ldap_client.Server')
    @patch('cf_org_sync.ldap_client.Connection')
    def test_test_connection_binds_and_reads_root_dse(self, mock_connection, mock_server):
        connection = mock_connection.return_value
        connection.bind.return_value = True
        connection.search.return_value = True
        client = LDAPClient(self.config)

        self.assertTrue(client.test_connection())
        self.assertEqual(connection.search.call_args[1]['search_base'], '')

    @patch('cf_org_sync.ldap_client.Server')
    @patch('cf_org_sync.ldap_client.Connection')
    def test_test_connection_reports_rejected_bind(self, mock_connection, mock_server):
        mock_connection.return_value.bind.return_value = False
        client = LDAPClient(self.config)

        with self.assertLogs('cf_org_sync.ldap_client', level='WARNING'):
            self.assertFalse(client.test_connection())
        self.assertEqual(mock_connection.call_count, 1)

    def test_query_requires_connection(self):
        client = LDAPClient(self.config)

        with self.assertRaises(LDAPQueryError):
            client.get_group_members('admins')


class TestGroupMembers(unittest.TestCase):
    """Test cases for get_group_members."""

    def setUp(self):
        self.config = {
            'server_url': 'ldaps://ldap.example.com',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'password123',
            'user_search_base': 'ou=users,dc=example,dc=com',
            'group_search_base': 'ou=groups,dc=example,dc=com'
        }

    def test_member_dns_are_resolved_in_order(self):
        bob_dn = 'uid=bob,ou=users,dc=example,dc=com'
        smith_dn = 'cn=Smith\\, Jane,ou=users,dc=example,dc=com'
        client = connected_client(self.config, {
            ('ou=groups,dc=example,dc=com', '(cn=admins)'): [
                ldap_entry('cn=admins,ou=groups,dc=example,dc=com',
                           member=[bob_dn, 'uid=ghost,ou=users,dc=example,dc=com', smith_dn])
            ],
            (bob_dn, '(objectClass=*)'): [ldap_entry(bob_dn, uid=['bob'], mail=['bob@example.com'])],
            (smith_dn, '(objectClass=*)'): [ldap_entry(smith_dn, uid=['jsmith'], mail=[])],
        })

        members = client.get_group_members('admins')

        self.assertEqual(members, [
            DirectoryMember(user_id='bob', email='bob@example.com', user_dn=bob_dn),
            DirectoryMember(user_id='jsmith', email='', user_dn=smith_dn),
        ])

    def test_member_uid_values_are_looked_up_under_user_base(self):
        self.config['group_member_attribute'] = 'memberUid'
        client = connected_client(self.config, {
            ('ou=groups,dc=example,dc=com', '(cn=auditors)'): [
                ldap_entry('cn=auditors,ou=groups,dc=example,dc=com', memberUid=['carol'])
            ],
            ('ou=users,dc=example,dc=com', '(uid=carol)'): [
                ldap_entry('uid=carol,ou=users,dc=example,dc=com', uid=['carol'], mail=['carol@example.com'])
            ],
        })

        members = client.get_group_members('auditors')

        self.assertEqual(members, [
            DirectoryMember(user_id='carol', email='carol@example.com',
                            user_dn='uid=carol,ou=users,dc=example,dc=com')
        ])

    def test_attribute_names_match_case_insensitively(self):
        dn = 'uid=dave,ou=users,dc=example,dc=com'
        client = connected_client(self.config, {
            ('ou=groups,dc=example,dc=com', '(cn=admins)'): [ldap_entry('cn=admins', Member=[dn])],
            (dn, '(objectClass=*)'): [ldap_entry(dn, UID=['dave'], Mail=['dave@example.com'])],
        })

        members = client.get_group_members('admins')

        self.assertEqual([m.user_id for m in members], ['dave'])

    def test_entries_without_user_id_are_skipped(self):
        dn = 'cn=service-account,ou=users,dc=example,dc=com'
        client = connected_client(self.config, {
            ('ou=groups,dc=example,dc=com', '(cn=admins)'): [ldap_entry('cn=admins', member=[dn])],
            (dn, '(objectClass=*)'): [ldap_entry(dn, mail=['svc@example.com'])],
        })

        self.assertEqual(client.get_group_members('admins'), [])

    def test_unknown_group_yields_no_members(self):
        client = connected_client(self.config, {})

        self.assertEqual(client.get_group_members('nobody'), [])

    def test_group_name_is_filter_escaped(self):
        client = connected_client(self.config, {})

        client.get_group_members('ops*(team)')

        search_filter = client.connection.search.call_args[1]['search_filter']
        self.assertEqual(search_filter, '(cn=ops\\2a\\28team\\29)')


if __name__ == '__main__':
    unittest.main()
