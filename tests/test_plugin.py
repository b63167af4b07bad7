#!/usr/bin/env python3
"""
Unit tests for the event handlers and dispatcher.
"""

import threading
import unittest
from unittest.mock import Mock, patch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fake_directory import FakeDirectory
from posix_ids import plugin
from posix_ids.reconciler import ReconcileContext, SchemaError


class TestPluginHandlers(unittest.TestCase):
    """Test cases for init and the created-event listeners."""
    
    def setUp(self):
        self.directory = FakeDirectory(
            users=[('admin', {}), ('alice', {})],
            groups=[(1, 'lldap_admin', {}), (2, 'developers', {})]
        )
        self.context = ReconcileContext(self.directory)
    
    def test_init_reconciles_everything(self):
        result = plugin.init(self.context)
        
        self.assertEqual(result['schema_attributes_created'], 3)
        self.assertEqual(result['users']['uids_assigned'], 2)
        self.assertEqual(result['groups']['gids_assigned'], 2)
        
        for group in self.directory.groups:
            self.assertEqual(group['attributes']['gidnumber'], 100000 + group['group_id'])
        for user in self.directory.users:
            self.assertIn('uidnumber', user['attributes'])
            self.assertEqual(user['attributes']['gidnumber'], 100003)
    
    def test_init_order(self):
        calls = []
        with patch('posix_ids.plugin.ensure_schema', side_effect=lambda c: calls.append('schema') or 0), \
             patch('posix_ids.plugin.assign_user_attributes', side_effect=lambda c: calls.append('users') or {}), \
             patch('posix_ids.plugin.assign_group_attributes', side_effect=lambda c: calls.append('groups') or {}):
            plugin.init(self.context)
        
        self.assertEqual(calls, ['schema', 'users', 'groups'])
    
    def test_init_stops_on_schema_failure(self):
        with patch('posix_ids.plugin.ensure_schema', side_effect=SchemaError("rejected")), \
             patch('posix_ids.plugin.assign_user_attributes') as mock_users:
            with self.assertRaises(SchemaError):
                plugin.init(self.context)
        mock_users.assert_not_called()
    
    def test_created_user_returns_args_unchanged(self):
        args = {'user_id': 'alice', 'email': 'alice@example.com'}
        with patch('posix_ids.plugin.assign_group_attributes') as mock_groups:
            result = plugin.on_created_user(self.context, args)
        
        self.assertIs(result, args)
        self.assertEqual(args, {'user_id': 'alice', 'email': 'alice@example.com'})
        mock_groups.assert_not_called()
        self.assertIn('uidnumber', self.directory.user('alice')['attributes'])
    
    def test_created_group_only_touches_groups(self):
        args = {'display_name': 'developers'}
        result = plugin.on_created_group(self.context, args)
        
        self.assertIs(result, args)
        self.assertEqual(self.directory.groups_named('pam_users'), [])
        self.assertNotIn('uidnumber', self.directory.user('alice')['attributes'])
        self.assertEqual(self.directory.groups[1]['attributes']['gidnumber'], 100002)
    
    def test_listener_registration(self):
        events = {listener['event']: listener for listener in plugin.LISTENERS}
        
        self.assertEqual(set(events), {'on_created_user', 'on_created_group'})
        self.assertIs(events['on_created_user']['impl'], plugin.on_created_user)
        self.assertIs(events['on_created_group']['impl'], plugin.on_created_group)
        self.assertTrue(all(listener['priority'] == 50 for listener in plugin.LISTENERS))
        self.assertIs(plugin.PLUGIN['init'], plugin.init)
        self.assertEqual(plugin.PLUGIN['name'], 'pam')


class TestDispatch(unittest.TestCase):
    """Test cases for dispatch."""
    
    def setUp(self):
        self.context = Mock()
    
    def test_startup_runs_init(self):
        with patch('posix_ids.plugin.init', return_value={'ok': True}) as mock_init:
            result = plugin.dispatch(self.context, 'startup')
        
        mock_init.assert_called_once_with(self.context)
        self.assertEqual(result, {'ok': True})
    
    def test_created_user_routes_to_user_pass(self):
        args = {'user_id': 'bob'}
        with patch('posix_ids.plugin.assign_user_attributes') as mock_users, \
             patch('posix_ids.plugin.assign_group_attributes') as mock_groups:
            result = plugin.dispatch(self.context, 'on_created_user', args)
        
        self.assertIs(result, args)
        mock_users.assert_called_once_with(self.context)
        mock_groups.assert_not_called()
    
    def test_created_group_routes_to_group_pass(self):
        args = {'group_id': 5}
        with patch('posix_ids.plugin.assign_user_attributes') as mock_users, \
             patch('posix_ids.plugin.assign_group_attributes') as mock_groups:
            result = plugin.dispatch(self.context, 'on_created_group', args)
        
        self.assertIs(result, args)
        mock_groups.assert_called_once_with(self.context)
        mock_users.assert_not_called()
    
    def test_unknown_event(self):
        with self.assertRaises(ValueError):
            plugin.dispatch(self.context, 'on_deleted_user', {})
    
    def test_concurrent_passes_run_one_at_a_time(self):
        first_context, second_context = Mock(), Mock()
        calls = []
        first_entered = threading.Event()
        release_first = threading.Event()
        
        def blocking_pass(context):
            calls.append(('enter', context))
            if context is first_context:
                first_entered.set()
                release_first.wait(5)
            calls.append(('exit', context))
        
        with patch('posix_ids.plugin.assign_user_attributes', side_effect=blocking_pass):
            first = threading.Thread(target=plugin.dispatch, args=(first_context, 'on_created_user', {}))
            first.start()
            self.assertTrue(first_entered.wait(5))
            
            second = threading.Thread(target=plugin.dispatch, args=(second_context, 'on_created_user', {}))
            second.start()
            second.join(0.2)
            
            self.assertTrue(second.is_alive())
            self.assertEqual(calls, [('enter', first_context)])
            
            release_first.set()
            first.join(5)
            second.join(5)
        
        self.assertFalse(first.is_alive())
        self.assertFalse(second.is_alive())
        self.assertEqual(calls, [
            ('enter', first_context), ('exit', first_context),
            ('enter', second_context), ('exit', second_context),
        ])
    
    def test_lock_released_after_failure(self):
        with patch('posix_ids.plugin.init', side_effect=SchemaError("rejected")):
            with self.assertRaises(SchemaError):
                plugin.dispatch(self.context, 'startup')
        self.assertFalse(plugin._pass_lock.locked())


if __name__ == '__main__':
    unittest.main()
