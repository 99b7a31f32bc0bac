#!/usr/bin/env python3
"""
Unit tests for pair discovery: naming convention, legacy pairs, skipping.
"""

import os
import sys
import unittest
from unittest.mock import Mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fake_directory import FakeDirectory, BASE_DN
from group_flatten.config import SyncConfig
from group_flatten.ldap_client import GroupNotFoundError, DirectoryQueryError
from group_flatten.pairing import PairingResolver, conventional_target_name


def make_config(**kwargs):
    return SyncConfig(ldap={}, **kwargs)


class TestConventionalTargetName(unittest.TestCase):

    def test_suffix_swap(self):
        self.assertEqual(conventional_target_name('app-NESTED', '-NESTED', '-UNNESTED'), 'app-UNNESTED')

    def test_suffix_match_is_case_insensitive(self):
        self.assertEqual(conventional_target_name('app-nested', '-NESTED', '-UNNESTED'), 'app-UNNESTED')

    def test_no_suffix(self):
        self.assertIsNone(conventional_target_name('legacy-group', '-NESTED', '-UNNESTED'))


class TestPairingResolver(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectory()
        self.directory.add_group('app-dummy-access-NESTED')
        self.directory.add_group('app-dummy-access-UNNESTED')
        self.directory.add_group('billing-NESTED')
        self.directory.add_group('billing-UNNESTED')
        self.directory.add_group('unrelated')

    def resolve(self, **kwargs):
        resolver = PairingResolver(self.directory, make_config(**kwargs), BASE_DN)
        return resolver, resolver.resolve()

    def test_convention_pairs_sorted_by_source_name(self):
        _, pairs = self.resolve()

        self.assertEqual([p.source.name for p in pairs], ['app-dummy-access-NESTED', 'billing-NESTED'])
        self.assertEqual([t.name for t in pairs[0].targets], ['app-dummy-access-UNNESTED'])

    def test_legacy_targets_merged_with_conventional_target(self):
        self.directory.add_group('legacyapp2-access')
        self.directory.add_group('legacyapp1-access')

        _, pairs = self.resolve(legacy_pairs={
            'app-dummy-access-NESTED': ('legacyapp2-access', 'legacyapp1-access', 'app-dummy-access-UNNESTED'),
        })

        targets = [t.name for t in pairs[0].targets]
        self.assertEqual(targets, ['app-dummy-access-UNNESTED', 'legacyapp1-access', 'legacyapp2-access'])

    def test_legacy_source_outside_convention_is_added(self):
        self.directory.add_group('OldAppUsers')
        self.directory.add_group('OldAppUsersFlat')

        _, pairs = self.resolve(legacy_pairs={'OldAppUsers': ('OldAppUsersFlat',)})

        self.assertIn('OldAppUsers', [p.source.name for p in pairs])
        old = next(p for p in pairs if p.source.name == 'OldAppUsers')
        self.assertEqual([t.name for t in old.targets], ['OldAppUsersFlat'])

    def test_missing_legacy_source_is_skipped_with_warning(self):
        with self.assertLogs('group_flatten.pairing', level='WARNING') as logs:
            _, pairs = self.resolve(legacy_pairs={'DoesNotExist': ('billing-UNNESTED',)})

        self.assertEqual(len(pairs), 2)
        self.assertTrue(any('DoesNotExist' in line for line in logs.output))

    def test_missing_legacy_target_is_ignored(self):
        with self.assertLogs('group_flatten.pairing', level='WARNING') as logs:
            _, pairs = self.resolve(legacy_pairs={'billing-NESTED': ('gone-group',)})

        billing = next(p for p in pairs if p.source.name == 'billing-NESTED')
        self.assertEqual([t.name for t in billing.targets], ['billing-UNNESTED'])
        self.assertTrue(any('gone-group' in line for line in logs.output))

    def test_source_without_target_is_skipped(self):
        self.directory.add_group('orphan-NESTED')

        with self.assertLogs('group_flatten.pairing', level='WARNING') as logs:
            resolver, pairs = self.resolve()

        self.assertNotIn('orphan-NESTED', [p.source.name for p in pairs])
        self.assertEqual(resolver.skipped_sources, ['orphan-NESTED'])
        self.assertTrue(any('No target group found for source group orphan-NESTED' in line for line in logs.output))

    def test_custom_suffixes(self):
        self.directory.add_group('crm-SRC')
        self.directory.add_group('crm-FLAT')

        _, pairs = self.resolve(source_suffix='-SRC', target_suffix='-FLAT')

        self.assertEqual([(p.source.name, p.targets[0].name) for p in pairs], [('crm-SRC', 'crm-FLAT')])

    def test_resolution_is_deterministic(self):
        legacy = {'app-dummy-access-NESTED': ('billing-UNNESTED',)}
        _, first = self.resolve(legacy_pairs=legacy)
        _, second = self.resolve(legacy_pairs=legacy)

        self.assertEqual(first, second)

    def test_discovery_failure_propagates(self):
        gateway = Mock()
        gateway.find_groups.side_effect = DirectoryQueryError("Search base does not exist")

        with self.assertRaises(DirectoryQueryError):
            PairingResolver(gateway, make_config(), BASE_DN).resolve()

    def test_lookups_use_configured_server(self):
        gateway = Mock()
        gateway.find_groups.return_value = []
        gateway.get_group.side_effect = GroupNotFoundError("nope")

        PairingResolver(gateway, make_config(server='dc02.example.com', legacy_pairs={'x': ('y',)}), BASE_DN).resolve()

        self.assertEqual(gateway.find_groups.call_args[0][2], 'dc02.example.com')
        gateway.get_group.assert_called_once_with('x', 'dc02.example.com')


if __name__ == '__main__':
    unittest.main()
