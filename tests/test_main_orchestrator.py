#!/usr/bin/env python3
"""
Scenario tests for the flattening orchestrator.

The directory is the in-memory FakeDirectory, patched in place of the ldap3
gateway, so each test runs a complete reconciliation end to end.
"""

import io
import os
import sys
import json
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fake_directory import FakeDirectory
from group_flatten.config import ConfigurationError, SyncConfig
from group_flatten.ldap_client import DirectoryConnectionError, DirectoryPermissionError, DirectoryQueryError
from group_flatten.main import (
    FlattenOrchestrator, build_parser, main,
    EXIT_OK, EXIT_COMPLETED_WITH_FAILURES, EXIT_CONFIGURATION_ERROR, EXIT_CONNECTION_ERROR,
    EXIT_UNEXPECTED_ERROR
)


def make_config(**kwargs):
    kwargs.setdefault('error_handling', {'max_retries': 2, 'retry_wait_seconds': 0})
    return SyncConfig(
        ldap={
            'server_url': 'ldaps://dc01.example.com',
            'bind_dn': 'CN=svc,OU=Service,DC=example,DC=com',
            'bind_password': 'test_password',
        },
        **kwargs
    )


class OrchestratorTestCase(unittest.TestCase):

    def setUp(self):
        # app-dummy-access-NESTED: john.doe directly, sam.smith through a nested group
        self.directory = FakeDirectory()
        team = self.directory.add_group('dummy-team', ['sam.smith'])
        self.source = self.directory.add_group('app-dummy-access-NESTED', ['john.doe'])
        self.directory.nest(self.source, team)
        self.target = self.directory.add_group('app-dummy-access-UNNESTED', ['tom.tonkins'])

        self.config = make_config()
        self.stream = io.StringIO()

        load_patch = patch('group_flatten.main.load_config', side_effect=lambda *args: self.config)
        gateway_patch = patch('group_flatten.main.DirectoryGateway', return_value=self.directory)
        logging_patch = patch('group_flatten.main.setup_logging')
        self.mock_load_config = load_patch.start()
        self.mock_gateway = gateway_patch.start()
        logging_patch.start()
        self.addCleanup(load_patch.stop)
        self.addCleanup(gateway_patch.stop)
        self.addCleanup(logging_patch.stop)

    def run_sync(self, **kwargs):
        if kwargs:
            self.config = make_config(**kwargs)
        orchestrator = FlattenOrchestrator(record_stream=self.stream)
        return orchestrator, orchestrator.run()

    def emitted(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines()]


class TestReconciliation(OrchestratorTestCase):

    def test_flattens_nested_membership(self):
        orchestrator, exit_code = self.run_sync(pass_through=True)

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(self.directory.direct_names('app-dummy-access-UNNESTED'), ['john.doe', 'sam.smith'])
        self.assertEqual(self.emitted(), [
            {'SourceGroup': 'app-dummy-access-NESTED', 'TargetGroup': 'app-dummy-access-UNNESTED',
             'AccountName': 'john.doe', 'Action': 'Add'},
            {'SourceGroup': 'app-dummy-access-NESTED', 'TargetGroup': 'app-dummy-access-UNNESTED',
             'AccountName': 'sam.smith', 'Action': 'Add'},
            {'SourceGroup': 'app-dummy-access-NESTED', 'TargetGroup': 'app-dummy-access-UNNESTED',
             'AccountName': 'tom.tonkins', 'Action': 'Remove'},
        ])
        self.assertEqual(orchestrator.stats['members_added'], 2)
        self.assertEqual(orchestrator.stats['members_removed'], 1)
        self.assertFalse(self.directory.connected)

    def test_nested_group_is_never_written_into_target(self):
        self.run_sync()

        target_members = self.directory.members[self.target.dn]
        self.assertNotIn(self.directory._by_name('dummy-team').dn, target_members)

    def test_no_records_without_pass_through(self):
        _, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(self.stream.getvalue(), '')
        self.assertEqual(len(self.directory.mutations), 3)

    def test_legacy_targets_fan_out_from_one_source_read(self):
        self.directory.add_group('legacyapp1-access')
        self.directory.add_group('legacyapp2-access', ['john.doe'])

        orchestrator, exit_code = self.run_sync(pass_through=True, legacy_pairs={
            'app-dummy-access-NESTED': ('legacyapp1-access', 'legacyapp2-access'),
        })

        self.assertEqual(exit_code, EXIT_OK)
        for name in ('app-dummy-access-UNNESTED', 'legacyapp1-access', 'legacyapp2-access'):
            self.assertEqual(self.directory.direct_names(name), ['john.doe', 'sam.smith'])

        records = self.emitted()
        self.assertEqual([r['TargetGroup'] for r in records], [
            'app-dummy-access-UNNESTED', 'app-dummy-access-UNNESTED', 'app-dummy-access-UNNESTED',
            'legacyapp1-access', 'legacyapp1-access',
            'legacyapp2-access',
        ])
        self.assertEqual(self.directory.member_reads.count(('app-dummy-access-NESTED', True)), 1)
        self.assertEqual(orchestrator.stats['targets_processed'], 3)

    def test_empty_legacy_targets_get_every_source_member(self):
        directory = FakeDirectory()
        directory.add_group('app-dummy-access-NESTED', ['john.doe', 'sam.smith', 'tom.tonkins'])
        directory.add_group('legacyapp1-access')
        directory.add_group('legacyapp2-access')
        self.mock_gateway.return_value = directory

        _, exit_code = self.run_sync(pass_through=True, legacy_pairs={
            'app-dummy-access-NESTED': ('legacyapp1-access', 'legacyapp2-access'),
        })

        self.assertEqual(exit_code, EXIT_OK)
        records = self.emitted()
        for name in ('legacyapp1-access', 'legacyapp2-access'):
            self.assertEqual(directory.direct_names(name), ['john.doe', 'sam.smith', 'tom.tonkins'])
            self.assertEqual(
                [(r['AccountName'], r['Action']) for r in records if r['TargetGroup'] == name],
                [('john.doe', 'Add'), ('sam.smith', 'Add'), ('tom.tonkins', 'Add')]
            )
        self.assertEqual(len(records), 6)

    def test_orphan_source_is_skipped(self):
        self.directory.add_group('orphan-NESTED', ['john.doe'])

        with self.assertLogs('group_flatten.pairing', level='WARNING') as logs:
            orchestrator, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_OK)
        self.assertTrue(any('No target group found for source group orphan-NESTED' in line for line in logs.output))
        self.assertEqual(orchestrator.stats['sources_skipped'], 1)

    def test_second_run_changes_nothing(self):
        self.run_sync(pass_through=True)
        mutations = list(self.directory.mutations)
        self.stream = io.StringIO()

        orchestrator, exit_code = self.run_sync(pass_through=True)

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(self.directory.mutations, mutations)
        self.assertEqual(self.stream.getvalue(), '')
        self.assertEqual(orchestrator.stats['changes_planned'], 0)

    def test_dry_run_reports_plan_and_changes_nothing(self):
        with self.assertLogs('group_flatten.plan', level='INFO') as logs:
            orchestrator, exit_code = self.run_sync(dry_run=True, pass_through=True)

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(self.directory.mutations, [])
        self.assertEqual(self.directory.direct_names('app-dummy-access-UNNESTED'), ['tom.tonkins'])
        self.assertEqual(self.stream.getvalue(), '')
        self.assertTrue(any('Would add john.doe to app-dummy-access-UNNESTED' in line for line in logs.output))
        self.assertTrue(any('Would remove tom.tonkins from app-dummy-access-UNNESTED' in line
                            for line in logs.output))
        self.assertEqual(orchestrator.stats['changes_planned'], 3)

    def test_server_override_is_passed_to_gateway_calls(self):
        directory = Mock(wraps=self.directory)
        self.mock_gateway.return_value = directory

        self.run_sync(server='dc02.example.com')

        directory.connect.assert_called_once_with(server='dc02.example.com')
        for call in directory.get_members.call_args_list:
            self.assertEqual(call[0][2], 'dc02.example.com')


class TestFailures(OrchestratorTestCase):

    def test_configuration_error(self):
        self.mock_load_config.side_effect = ConfigurationError("Missing required configuration: ldap.bind_dn")

        _, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_CONFIGURATION_ERROR)
        self.mock_gateway.assert_not_called()

    def test_connection_error(self):
        self.directory.connect = Mock(side_effect=DirectoryConnectionError("Failed to connect"))

        _, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_CONNECTION_ERROR)
        self.assertEqual(self.directory.mutations, [])

    def test_unusable_search_base(self):
        _, exit_code = self.run_sync(search_base='OU=Groups,DC=other,DC=org')

        self.assertEqual(exit_code, EXIT_CONFIGURATION_ERROR)
        self.assertEqual(self.directory.member_reads, [])

    def test_discovery_failure_aborts(self):
        self.directory.find_groups = Mock(side_effect=DirectoryQueryError("Group search failed"))

        _, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_UNEXPECTED_ERROR)

    @patch('group_flatten.main.send_failure_notification')
    def test_failure_notification_reports_changes_already_applied(self, mock_notify):
        self.directory.add_group('billing-NESTED', ['john.doe'])
        self.directory.add_group('billing-UNNESTED')
        read_members = self.directory.get_members

        def get_members(group, recursive, server=None):
            if group.name == 'billing-NESTED':
                raise RuntimeError("unexpected response")
            return read_members(group, recursive, server)

        self.directory.get_members = get_members

        _, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_UNEXPECTED_ERROR)
        self.assertEqual(len(self.directory.mutations), 3)
        info = mock_notify.call_args[1]['additional_info']
        self.assertEqual(info['Members added before failure'], 2)
        self.assertEqual(info['Members removed before failure'], 1)

    def test_failed_mutation_completes_with_failures(self):
        self.directory.failures[('add', 'john.doe')] = DirectoryPermissionError("insufficient access rights", 50)

        orchestrator, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_COMPLETED_WITH_FAILURES)
        self.assertEqual(self.directory.direct_names('app-dummy-access-UNNESTED'), ['sam.smith'])
        self.assertEqual(orchestrator.stats['mutations_failed'], 1)

    def test_unreadable_target_does_not_stop_other_targets(self):
        broken = self.directory.add_group('legacyapp1-access')
        self.directory.add_group('legacyapp2-access')
        del self.directory.members[broken.dn]

        orchestrator, exit_code = self.run_sync(legacy_pairs={
            'app-dummy-access-NESTED': ('legacyapp1-access', 'legacyapp2-access'),
        })

        self.assertEqual(exit_code, EXIT_COMPLETED_WITH_FAILURES)
        self.assertEqual(orchestrator.stats['targets_failed'], 1)
        self.assertEqual(self.directory.direct_names('legacyapp2-access'), ['john.doe', 'sam.smith'])

    def test_unreadable_source_does_not_stop_other_pairs(self):
        broken = self.directory.add_group('billing-NESTED')
        self.directory.add_group('billing-UNNESTED')
        del self.directory.members[broken.dn]

        orchestrator, exit_code = self.run_sync()

        self.assertEqual(exit_code, EXIT_COMPLETED_WITH_FAILURES)
        self.assertEqual(orchestrator.stats['pairs_failed'], 1)
        self.assertEqual(self.directory.direct_names('app-dummy-access-UNNESTED'), ['john.doe', 'sam.smith'])


class TestHealthCheck(OrchestratorTestCase):

    def test_healthy(self):
        status = FlattenOrchestrator().health_check()

        self.assertEqual(status['status'], 'healthy')
        self.assertEqual(status['checks']['directory']['status'], 'pass')
        self.assertEqual(self.directory.mutations, [])

    def test_unhealthy_configuration(self):
        self.mock_load_config.side_effect = ConfigurationError("bad config")

        status = FlattenOrchestrator().health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['configuration']['status'], 'fail')


class TestCommandLine(unittest.TestCase):

    def test_parser(self):
        args = build_parser().parse_args([
            '--search-base', 'OU=Groups,DC=example,DC=com',
            '--legacy-pair', 'app-NESTED=legacy1',
            '--legacy-pair', 'app-NESTED=legacy2',
            '--dry-run', '-v',
        ])

        self.assertEqual(args.search_base, 'OU=Groups,DC=example,DC=com')
        self.assertEqual(args.legacy_pairs, ['app-NESTED=legacy1', 'app-NESTED=legacy2'])
        self.assertTrue(args.dry_run)
        self.assertTrue(args.verbose)
        self.assertFalse(args.pass_through)
        self.assertIsNone(args.server)

    @patch('group_flatten.main.FlattenOrchestrator')
    def test_main_exits_with_run_code(self, mock_orchestrator):
        mock_orchestrator.return_value.run.return_value = EXIT_COMPLETED_WITH_FAILURES

        with self.assertRaises(SystemExit) as ctx:
            main(['--config', 'custom.yaml', '--server', 'dc02', '--pass-through'])

        self.assertEqual(ctx.exception.code, EXIT_COMPLETED_WITH_FAILURES)
        kwargs = mock_orchestrator.call_args[1]
        self.assertEqual(kwargs['config_path'], 'custom.yaml')
        self.assertEqual(kwargs['overrides']['server'], 'dc02')
        self.assertTrue(kwargs['overrides']['pass_through'])
        self.assertFalse(kwargs['overrides']['dry_run'])


if __name__ == '__main__':
    unittest.main()
