#!/usr/bin/env python3
"""
Unit tests for the directory connector reconciliation workflow.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.cache import DirectoryCacheManager
from directory_sync.connector import DirectoryConnector, MEMBER_ROLE
from directory_sync.directory_client import DirectoryClient, DirectoryAPIError
from directory_sync.models import DeletionPolicy, Group
from fake_registry import FakeRegistry


class FakeClock:

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def make_directory():
    """Directory client mock that echoes created objects back."""
    directory = Mock(spec=DirectoryClient)
    directory.retrieve_all_users.return_value = []
    directory.retrieve_all_groups.return_value = []
    directory.retrieve_group.return_value = None
    directory.retrieve_user.return_value = None
    directory.add_group.side_effect = lambda group: dict(group, id='g-1')
    directory.add_user.side_effect = lambda user: dict(user, id='u-1')
    directory.retrieve_group_settings.side_effect = lambda key: {'archiveOnly': 'false', 'whoCanJoin': 'CAN_REQUEST_TO_JOIN'}
    directory.update_group.side_effect = lambda key, group: dict(group, email=key)
    return directory


class ConnectorTestCase(unittest.TestCase):
    """Shared fixtures for connector tests."""

    def setUp(self):
        self.clock = FakeClock()
        self.registry = FakeRegistry()
        self.registry.add_stem('science')
        self.registry.assign('science', 'syncToDirectoryGoogle')
        self.physics = self.registry.add_group('science:physics-majors', description='Physics majors')
        self.registry.add_subject('jdoe', name='Jane Doe', email='jane.doe@example.edu')
        self.registry.add_subject('rroe', name='Richard Roe')
        self.registry.add_member('science:physics-majors', 'jdoe')
        self.registry.add_member('science:physics-majors', 'rroe')
        self.registry.add_group_member('science:physics-majors', 'science:staff')

        self.directory = make_directory()
        self.cache_manager = DirectoryCacheManager(clock=self.clock)
        self.config = {
            'domain': 'example.edu',
            'provision_users': True,
            'default_group_settings': {'whoCanJoin': 'INVITED_CAN_JOIN', 'whoCanViewMembership': 'ALL_MEMBERS_CAN_VIEW'},
        }

    def make_connector(self, **overrides):
        config = dict(self.config)
        config.update(overrides)
        connector = DirectoryConnector('Google', config, self.registry, self.directory,
                                       self.cache_manager, clock=self.clock)
        connector.initialize()
        return connector


class TestInitialization(ConnectorTestCase):
    """Test cases for connector start-up."""

    def test_defaults(self):
        connector = self.make_connector()

        self.assertEqual(connector.sync_marker, 'syncToDirectoryGoogle')
        self.assertIs(connector.deletion_policy, DeletionPolicy.DELETE)
        self.assertIn('Google', self.cache_manager.consumers)

    def test_initialize_populates_expired_remote_caches(self):
        self.directory.retrieve_all_groups.return_value = [{'email': 'existing@example.edu'}]
        self.directory.retrieve_all_users.return_value = [{'primaryEmail': 'someone@example.edu'}]

        self.make_connector()

        self.assertIn('existing@example.edu', self.cache_manager.groups)
        self.assertIn('someone@example.edu', self.cache_manager.users)

    def test_second_connector_reuses_fresh_remote_caches(self):
        self.make_connector(remote_group_cache_validity_minutes=30)
        DirectoryConnector('Other', dict(self.config), self.registry, self.directory,
                           self.cache_manager, clock=self.clock).initialize()

        self.assertEqual(self.directory.retrieve_all_groups.call_count, 1)
        self.assertEqual(self.cache_manager.consumers, {'Google', 'Other'})

    def test_population_failure_is_logged_not_raised(self):
        self.directory.retrieve_all_users.side_effect = DirectoryAPIError('boom', 500)

        with self.assertLogs('directory_sync.connector', level='ERROR'):
            self.make_connector()

        self.assertTrue(self.cache_manager.users.is_expired())

    def test_unknown_deletion_policy_rejected(self):
        with self.assertRaises(ValueError):
            self.make_connector(handle_deleted_group='purge')

    def test_close_detaches(self):
        connector = self.make_connector()
        connector.close()

        self.assertNotIn('Google', self.cache_manager.consumers)


class TestReadThroughLookups(ConnectorTestCase):
    """Test cases for cached lookups."""

    def test_remote_group_lookup_is_cached(self):
        self.directory.retrieve_group.return_value = {'email': 'x@example.edu'}
        connector = self.make_connector()

        first = connector.fetch_remote_group('x@example.edu')
        second = connector.fetch_remote_group('x@example.edu')

        self.assertEqual(first, second)
        self.directory.retrieve_group.assert_called_once_with('x@example.edu')

    def test_remote_lookup_miss_is_not_cached(self):
        connector = self.make_connector()

        self.assertIsNone(connector.fetch_remote_user('nobody@example.edu'))
        self.assertIsNone(connector.fetch_remote_user('nobody@example.edu'))
        self.assertEqual(self.directory.retrieve_user.call_count, 2)

    def test_remote_lookup_error_returns_none(self):
        self.directory.retrieve_group.side_effect = DirectoryAPIError('server error', 500)
        connector = self.make_connector()

        with self.assertLogs('directory_sync.connector', level='WARNING'):
            self.assertIsNone(connector.fetch_remote_group('x@example.edu'))

    def test_local_group_lookup_is_cached(self):
        connector = self.make_connector()

        connector.fetch_local_group('science:physics-majors')
        group = connector.fetch_local_group('science:physics-majors')

        self.assertEqual(group.description, 'Physics majors')
        self.assertEqual(self.registry.calls['find_group_by_name'], 1)

    def test_local_subject_lookup_is_cached(self):
        connector = self.make_connector()

        connector.fetch_local_subject('ldap', 'jdoe')
        subject = connector.fetch_local_subject('ldap', 'jdoe')

        self.assertEqual(subject.name, 'Jane Doe')
        self.assertEqual(self.registry.calls['find_subject'], 1)
        self.assertIsNone(connector.fetch_local_subject('ldap', 'missing'))


class TestGroupCreation(ConnectorTestCase):
    """Test cases for create_group_if_necessary."""

    def test_creates_group_with_settings_and_members(self):
        connector = self.make_connector()

        remote = connector.create_group_if_necessary(self.physics)

        self.assertEqual(remote['email'], 'science-physics-majors@example.edu')
        self.directory.add_group.assert_called_once_with({
            'name': 'physics-majors',
            'email': 'science-physics-majors@example.edu',
            'description': 'Physics majors'
        })
        self.directory.update_group_settings.assert_called_once_with(
            'science-physics-majors@example.edu',
            {'archiveOnly': 'false', 'whoCanJoin': 'INVITED_CAN_JOIN', 'whoCanViewMembership': 'ALL_MEMBERS_CAN_VIEW'}
        )

        # One membership per person member; the nested group is skipped
        self.assertEqual(self.directory.add_group_member.call_count, 2)
        self.directory.add_group_member.assert_any_call(
            'science-physics-majors@example.edu', {'email': 'jane.doe@example.edu', 'role': MEMBER_ROLE})
        self.directory.add_group_member.assert_any_call(
            'science-physics-majors@example.edu', {'email': 'rroe@example.edu', 'role': MEMBER_ROLE})

        self.assertIn('science-physics-majors@example.edu', self.cache_manager.groups)

    def test_created_users_get_password_that_is_not_cached(self):
        connector = self.make_connector()
        connector.create_group_if_necessary(self.physics)

        self.assertEqual(self.directory.add_user.call_count, 2)
        created = self.directory.add_user.call_args_list[0][0][0]
        self.assertTrue(created['password'])
        self.assertEqual(created['name'], {'fullName': 'Jane Doe', 'givenName': 'Jane', 'familyName': 'Doe'})
        self.assertNotIn('password', self.cache_manager.users.get('jane.doe@example.edu'))

    def test_existing_users_are_not_recreated(self):
        self.directory.retrieve_all_users.return_value = [{'primaryEmail': 'jane.doe@example.edu'}]
        connector = self.make_connector()

        connector.create_group_if_necessary(self.physics)

        self.assertEqual(self.directory.add_user.call_count, 1)
        self.assertEqual(self.directory.add_group_member.call_count, 2)

    def test_without_provisioning_unknown_users_are_skipped(self):
        connector = self.make_connector(provision_users=False)

        connector.create_group_if_necessary(self.physics)

        self.directory.add_user.assert_not_called()
        self.directory.add_group_member.assert_not_called()

    def test_existing_archived_group_is_unarchived(self):
        self.directory.retrieve_all_groups.return_value = [{'email': 'science-physics-majors@example.edu'}]
        self.directory.retrieve_group_settings.side_effect = lambda key: {'archiveOnly': 'true'}
        connector = self.make_connector()

        connector.create_group_if_necessary(self.physics)

        self.directory.add_group.assert_not_called()
        self.directory.update_group_settings.assert_called_once_with(
            'science-physics-majors@example.edu', {'archiveOnly': 'false'})

    def test_existing_active_group_is_left_alone(self):
        self.directory.retrieve_all_groups.return_value = [{'email': 'science-physics-majors@example.edu'}]
        connector = self.make_connector()

        connector.create_group_if_necessary(self.physics)

        self.directory.add_group.assert_not_called()
        self.directory.update_group_settings.assert_not_called()

    def test_add_group_failure_propagates(self):
        self.directory.add_group.side_effect = DirectoryAPIError('quota', 403)
        connector = self.make_connector()

        with self.assertRaises(DirectoryAPIError):
            connector.create_group_if_necessary(self.physics)


class TestUsers(ConnectorTestCase):
    """Test cases for user creation and memberships."""

    def test_subject_address_prefers_email(self):
        connector = self.make_connector(subject_identifier_format='{id}.staff')

        self.assertEqual(connector.subject_address(self.registry.subjects[('ldap', 'jdoe')]), 'jane.doe@example.edu')
        self.assertEqual(connector.subject_address(self.registry.subjects[('ldap', 'rroe')]), 'rroe.staff@example.edu')

    def test_subject_address_normalizes_email(self):
        subject = self.registry.add_subject('jqdoe', name='Jane Q. Doe', email=' Jane.Q.Doe@Example.edu ')
        connector = self.make_connector()

        self.assertEqual(connector.subject_address(subject), 'jane.q.doe@example.edu')

    def test_mixed_case_email_lookup_is_cached(self):
        subject = self.registry.add_subject('jqdoe', name='Jane Q. Doe', email='Jane.Q.Doe@Example.edu')
        self.directory.retrieve_user.return_value = {'primaryEmail': 'jane.q.doe@example.edu'}
        connector = self.make_connector()
        key = connector.subject_address(subject)

        first = connector.fetch_remote_user(key)
        second = connector.fetch_remote_user(key)

        self.assertEqual(first, second)
        self.directory.retrieve_user.assert_called_once_with('jane.q.doe@example.edu')

    def test_attribute_naming(self):
        subject = self.registry.add_subject('asmith', name='Dr. Alice B. Smith', givenName='Alice', sn='Smith')
        connector = self.make_connector(simple_subject_naming=False)

        user = connector.create_user(subject)

        self.assertEqual(user['name'], {'fullName': 'Dr. Alice B. Smith', 'givenName': 'Alice', 'familyName': 'Smith'})
        self.assertTrue(user['includeInGlobalAddressList'])

    def test_global_address_list_setting(self):
        connector = self.make_connector(include_user_in_global_address_list=False)

        user = connector.create_user(self.registry.subjects[('ldap', 'rroe')])

        self.assertFalse(user['includeInGlobalAddressList'])

    def test_create_user_disabled(self):
        connector = self.make_connector(provision_users=False)

        self.assertIsNone(connector.create_user(self.registry.subjects[('ldap', 'jdoe')]))
        self.directory.add_user.assert_not_called()

    def test_add_membership_to_existing_group(self):
        self.directory.retrieve_all_groups.return_value = [{'email': 'science-physics-majors@example.edu'}]
        connector = self.make_connector()

        added = connector.add_membership('science:physics-majors', self.registry.subjects[('ldap', 'rroe')])

        self.assertTrue(added)
        self.directory.add_group_member.assert_called_once_with(
            'science-physics-majors@example.edu', {'email': 'rroe@example.edu', 'role': MEMBER_ROLE})

    def test_add_membership_creates_missing_group(self):
        connector = self.make_connector()

        added = connector.add_membership('science:physics-majors', self.registry.subjects[('ldap', 'jdoe')])

        self.assertTrue(added)
        self.directory.add_group.assert_called_once()
        self.assertEqual(self.directory.add_group_member.call_count, 2)

    def test_add_membership_for_unknown_group(self):
        connector = self.make_connector()

        self.assertFalse(connector.add_membership('science:gone', self.registry.subjects[('ldap', 'jdoe')]))
        self.directory.add_group.assert_not_called()

    def test_remove_membership(self):
        connector = self.make_connector()

        connector.remove_membership('science:physics-majors', self.registry.subjects[('ldap', 'jdoe')])

        self.directory.remove_group_member.assert_called_once_with(
            'science-physics-majors@example.edu', 'jane.doe@example.edu')

    def test_remove_membership_with_deprovisioning_keeps_account(self):
        connector = self.make_connector(deprovision_users=True)

        with self.assertLogs('directory_sync.connector', level='INFO') as logs:
            connector.remove_membership('science:physics-majors', self.registry.subjects[('ldap', 'jdoe')])

        self.assertTrue(any('not supported yet' in line for line in logs.output))
        self.directory.remove_group_member.assert_called_once()


class TestGroupUpdates(ConnectorTestCase):
    """Test cases for group updates and membership listing."""

    def test_update_group_refreshes_cache(self):
        connector = self.make_connector()

        connector.update_group('science-physics-majors@example.edu', {'name': 'Physics', 'description': 'new'})

        self.assertEqual(self.cache_manager.groups.get('science-physics-majors@example.edu')['description'], 'new')

    def test_get_membership(self):
        self.directory.retrieve_group_members.return_value = [{'email': 'a@example.edu', 'role': 'MEMBER'}]
        connector = self.make_connector()

        self.assertEqual(len(connector.get_membership('science-physics-majors@example.edu')), 1)


class TestGroupDeletion(ConnectorTestCase):
    """Test cases for the deletion policies."""

    group_key = 'science-physics-majors@example.edu'

    def prepare(self, policy):
        self.directory.retrieve_all_groups.return_value = [{'email': self.group_key}]
        connector = self.make_connector(handle_deleted_group=policy)
        connector.fetch_local_group('science:physics-majors')
        self.assertTrue(connector.should_sync_group(self.physics))
        return connector

    def assert_forgotten(self, connector):
        self.assertIsNone(connector.resolver.decision_for('science:physics-majors'))
        self.assertNotIn('science:physics-majors', connector.local_groups)

    def test_delete_policy(self):
        connector = self.prepare('delete')

        connector.delete_group(self.physics)

        self.directory.remove_group.assert_called_once_with(self.group_key)
        self.assertNotIn(self.group_key, self.cache_manager.groups)
        self.assert_forgotten(connector)

    def test_archive_policy(self):
        connector = self.prepare('archive')

        connector.delete_group_by_name('science:physics-majors')

        self.directory.remove_group.assert_not_called()
        self.directory.update_group_settings.assert_called_once_with(
            self.group_key, {'archiveOnly': 'true', 'whoCanJoin': 'CAN_REQUEST_TO_JOIN'})
        self.assertIn(self.group_key, self.cache_manager.groups)
        self.assert_forgotten(connector)

    def test_ignore_policy(self):
        connector = self.prepare('ignore')

        connector.delete_group_by_name('science:physics-majors')

        self.directory.remove_group.assert_not_called()
        self.directory.update_group_settings.assert_not_called()
        self.assert_forgotten(connector)

    def test_failed_delete_still_forgets_group(self):
        connector = self.prepare('delete')
        self.directory.remove_group.side_effect = DirectoryAPIError('server error', 500)

        with self.assertRaises(DirectoryAPIError):
            connector.delete_group_by_name('science:physics-majors')

        self.assertNotIn(self.group_key, self.cache_manager.groups)
        self.assert_forgotten(connector)


class TestSyncEligibility(ConnectorTestCase):
    """Test cases for the eligibility delegates."""

    def test_direct_group_assignment_end_to_end(self):
        self.registry.assignments.clear()
        self.registry.assign('science:physics-majors', 'syncToDirectoryGoogle')
        connector = self.make_connector()

        self.assertTrue(connector.should_sync_group(self.physics))
        self.assertIsNone(connector.resolver.decision_for('science'))

        connector.create_group_if_necessary(self.physics)

        self.directory.add_group.assert_called_once()
        self.directory.update_group_settings.assert_called_once()
        settings = self.directory.update_group_settings.call_args[0][1]
        self.assertEqual(settings['whoCanJoin'], 'INVITED_CAN_JOIN')
        self.assertEqual(self.directory.add_user.call_count, 2)
        for created in self.directory.add_user.call_args_list:
            self.assertTrue(created[0][0]['password'])
        self.assertEqual(self.directory.add_group_member.call_count, 2)

    def test_should_sync_and_bulk_cache(self):
        self.registry.add_group('arts:painters')
        connector = self.make_connector()

        self.assertEqual(connector.cache_synced_objects(fully_populate=True), 2)
        self.assertEqual(connector.synced_objects, {'science': True, 'science:physics-majors': True})
        self.assertFalse(connector.should_sync_group(Group('arts:painters')))

        connector.clear_sync_decisions()
        self.assertEqual(connector.synced_objects, {})


if __name__ == '__main__':
    unittest.main()
