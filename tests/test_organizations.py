#!/usr/bin/env python3
"""
Unit tests for the organization manager.

Tests the organization snapshot, lookups, create-then-resolve, ensuring the
configured organizations exist, and membership and role PUTs.
"""

import os
import sys
import unittest
from unittest.mock import Mock, call

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cf_org_sync.http_client import TransportError
from cf_org_sync.models import Organization, Role, CreateOrgRequest, UsernameRequest
from cf_org_sync.organizations import OrganizationManager, OrganizationNotFoundError, NotFoundError

ORGS_URL = 'https://api.sys.example.com/v2/organizations'


def org_listing(*names):
    return {
        'next_url': None,
        'resources': [{'metadata': {'guid': f'guid-{name}'}, 'entity': {'name': name}} for name in names]
    }


class TestOrganizationLookup(unittest.TestCase):
    """Test cases for refresh, find and exists."""

    def setUp(self):
        self.http = Mock()
        self.http.get.return_value = org_listing('acme', 'Beta')
        self.orgs = OrganizationManager(self.http, 'sys.example.com', 'cf-token')

    def test_find_by_exact_name(self):
        org = self.orgs.find('acme')

        self.assertEqual(org, Organization(guid='guid-acme', name='acme'))
        self.http.get.assert_called_once_with(ORGS_URL, 'cf-token')

    def test_find_is_case_sensitive(self):
        with self.assertRaises(OrganizationNotFoundError):
            self.orgs.find('beta')
        self.assertTrue(issubclass(OrganizationNotFoundError, NotFoundError))

    def test_exists(self):
        self.assertTrue(self.orgs.exists('Beta'))
        self.assertFalse(self.orgs.exists('gamma'))

    def test_lookups_share_one_snapshot(self):
        self.orgs.find('acme')
        self.orgs.exists('Beta')
        self.orgs.exists('gamma')

        self.assertEqual(self.http.get.call_count, 1)

    def test_refresh_replaces_snapshot(self):
        self.orgs.refresh()
        self.http.get.return_value = org_listing('acme', 'Beta', 'gamma')

        self.assertFalse(self.orgs.exists('gamma'))
        self.orgs.refresh()
        self.assertTrue(self.orgs.exists('gamma'))


class TestOrganizationCreation(unittest.TestCase):
    """Test cases for create and ensure_orgs."""

    def setUp(self):
        self.http = Mock()
        self.listings = [org_listing('acme'), org_listing('acme', 'newco')]
        self.http.get.side_effect = lambda url, token: self.listings.pop(0) if len(self.listings) > 1 else self.listings[0]
        self.orgs = OrganizationManager(self.http, 'sys.example.com', 'cf-token')

    def test_create_posts_then_resolves_from_fresh_listing(self):
        self.http.post.return_value = {'metadata': {'guid': 'ignored'}}
        self.orgs.refresh()

        org = self.orgs.create('newco')

        self.assertEqual(org, Organization(guid='guid-newco', name='newco'))
        self.http.post.assert_called_once_with(ORGS_URL, 'cf-token', CreateOrgRequest('newco'))
        self.assertEqual(self.http.get.call_count, 2)

    def test_duplicate_name_surfaces_as_transport_error(self):
        self.http.post.side_effect = TransportError('HTTP 409 Conflict', status_code=409)

        with self.assertRaises(TransportError) as ctx:
            self.orgs.create('acme')
        self.assertEqual(ctx.exception.status_code, 409)

    def test_ensure_orgs_creates_only_missing(self):
        created = self.orgs.ensure_orgs(['acme', 'newco'])

        self.assertEqual(created, ['newco'])
        self.http.post.assert_called_once_with(ORGS_URL, 'cf-token', CreateOrgRequest('newco'))

    def test_ensure_orgs_with_empty_list_does_nothing(self):
        self.assertEqual(self.orgs.ensure_orgs([]), [])
        self.http.get.assert_not_called()
        self.http.post.assert_not_called()

    def test_dry_run_create_sends_nothing(self):
        orgs = OrganizationManager(self.http, 'sys.example.com', 'cf-token', dry_run=True)

        self.assertEqual(orgs.ensure_orgs(['acme', 'newco']), ['newco'])
        self.http.post.assert_not_called()


class TestMembershipAndRoles(unittest.TestCase):
    """Test cases for add_user and grant_role."""

    def setUp(self):
        self.http = Mock()
        self.orgs = OrganizationManager(self.http, 'sys.example.com', 'cf-token')
        self.org = Organization(guid='guid-acme', name='acme')

    def test_add_user(self):
        self.orgs.add_user(self.org, 'bob')

        self.http.put.assert_called_once_with(f'{ORGS_URL}/guid-acme/users', 'cf-token', UsernameRequest('bob'))

    def test_grant_role_uses_role_path(self):
        for role in Role:
            self.orgs.grant_role(self.org, 'bob', role)

        self.assertEqual(self.http.put.call_args_list, [
            call(f'{ORGS_URL}/guid-acme/managers', 'cf-token', UsernameRequest('bob')),
            call(f'{ORGS_URL}/guid-acme/auditors', 'cf-token', UsernameRequest('bob')),
            call(f'{ORGS_URL}/guid-acme/billing_managers', 'cf-token', UsernameRequest('bob')),
        ])

    def test_grant_role_propagates_errors(self):
        self.http.put.side_effect = TransportError('HTTP 500', status_code=500)

        with self.assertRaises(TransportError):
            self.orgs.grant_role(self.org, 'bob', Role.AUDITOR)

    def test_dry_run_skips_puts(self):
        orgs = OrganizationManager(self.http, 'sys.example.com', 'cf-token', dry_run=True)

        orgs.add_user(self.org, 'bob')
        orgs.grant_role(self.org, 'bob', Role.MANAGER)

        self.http.put.assert_not_called()


if __name__ == '__main__':
    unittest.main()
